import logging
import uuid

from celery import Celery
from fastapi import HTTPException

from backoffice.business.billing.service import billing_service
from backoffice.business.subscription.service import subscription_service
from backoffice.context import request_scope
from backoffice.core.config import get_settings
from backoffice.core.database import SessionLocal
from backoffice.metrics import observe_scheduled_task
from backoffice.platform.security.context import AuthContext

settings = get_settings()
logger = logging.getLogger("backoffice.tasks")

celery_app = Celery("backoffice_billing", broker=settings.redis_url, backend=settings.redis_url)
celery_app.conf.beat_schedule = {
    "roll-due-subscriptions": {"task": "backoffice.tasks.roll_due_subscriptions", "schedule": 3600.0},
    "refresh-overdue-invoices": {"task": "backoffice.tasks.refresh_overdue_invoices", "schedule": 3600.0},
}


def _system_context(task_name: str) -> AuthContext:
    return AuthContext(
        user_id="system.scheduler",
        correlation_id=f"{task_name}-{uuid.uuid4()}",
        is_super_admin=True,
        roles=["system.admin"],
    )


@celery_app.task(name="backoffice.tasks.roll_due_subscriptions")
def roll_due_subscriptions() -> dict[str, int]:
    ctx = _system_context("roll_due_subscriptions")
    processed = 0
    failed = 0
    session = SessionLocal()
    try:
        with request_scope(ctx.correlation_id):
            for subscription_id in subscription_service.due_for_rollover(session, limit=settings.rollover_batch_size):
                try:
                    subscription_service.roll_period(session, ctx, subscription_id)
                    processed += 1
                except HTTPException as exc:
                    failed += 1
                    logger.error(
                        "tasks.roll_period_failed",
                        extra={
                            "task": "roll_due_subscriptions",
                            "subscription_id": str(subscription_id),
                            "error": str(exc.detail),
                        },
                    )
    finally:
        session.close()

    observe_scheduled_task("roll_due_subscriptions", "ok" if failed == 0 else "partial")
    logger.info("tasks.completed", extra={"task": "roll_due_subscriptions", "processed": processed})
    return {"processed": processed, "failed": failed}


@celery_app.task(name="backoffice.tasks.refresh_overdue_invoices")
def refresh_overdue_invoices() -> dict[str, int]:
    ctx = _system_context("refresh_overdue_invoices")
    processed = 0
    failed = 0
    session = SessionLocal()
    try:
        with request_scope(ctx.correlation_id):
            for invoice_id in billing_service.overdue_candidates(session, limit=settings.rollover_batch_size):
                try:
                    result = billing_service.refresh_overdue(session, ctx, invoice_id)
                    processed += int(result.overdue)
                except HTTPException as exc:
                    failed += 1
                    logger.error(
                        "tasks.refresh_overdue_failed",
                        extra={"task": "refresh_overdue_invoices", "invoice_id": str(invoice_id), "error": str(exc.detail)},
                    )
    finally:
        session.close()

    observe_scheduled_task("refresh_overdue_invoices", "ok" if failed == 0 else "partial")
    logger.info("tasks.completed", extra={"task": "refresh_overdue_invoices", "processed": processed})
    return {"processed": processed, "failed": failed}
