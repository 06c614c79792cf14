from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Protocol

from fastapi import HTTPException, status
from pydantic import TypeAdapter
from sqlalchemy import Select, and_, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backoffice import audit, events
from backoffice.business.billing.models import Invoice
from backoffice.business.billing.repository import InvoiceRepository
from backoffice.business.billing.schemas import (
    InvoiceCreate,
    InvoicePaymentResult,
    InvoiceRead,
    MarkInvoicePaidRequest,
    RefreshOverdueResponse,
    VoidInvoiceRequest,
)
from backoffice.business.pricing.types import LineItem
from backoffice.business.subscription.models import Subscription
from backoffice.business.subscription.service import SubscriptionService, subscription_service
from backoffice.core.clock import Clock, system_clock
from backoffice.core.config import get_settings
from backoffice.metrics import observe_invoice_generated, observe_invoice_transition
from backoffice.otel import get_tracer, set_span_attributes
from backoffice.platform.security.context import AuthContext
from backoffice.platform.security.errors import AuthorizationError


logger = logging.getLogger("backoffice.billing")
tracer = get_tracer("backoffice.billing")

_line_items_adapter = TypeAdapter(list[LineItem])


VALID_INVOICE_TRANSITIONS: dict[str, set[str]] = {
    "draft": {"final", "canceled"},
    "final": {"paid", "overdue", "canceled"},
    "overdue": {"paid", "canceled"},
    "paid": set(),
    "canceled": set(),
}


class TaxProvider(Protocol):
    def tax_for(self, subtotal: int, currency: str, region: str | None) -> int: ...


@dataclass(slots=True)
class BillingService:
    invoice_repository: InvoiceRepository = InvoiceRepository()
    subscription_service: SubscriptionService = field(default_factory=lambda: subscription_service)
    clock: Clock = system_clock
    tax_provider: TaxProvider | None = None

    def __post_init__(self) -> None:
        self.subscription_service.invoicer = self

    def generate_invoice(
        self,
        session: Session,
        ctx: AuthContext,
        subscription_id: uuid.UUID,
        period_start: date,
        period_end: date,
    ) -> InvoiceRead:
        if period_end <= period_start:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="period_end must be after period_start")
        subscription = self.subscription_service.get_subscription_model(session, ctx, subscription_id)
        if subscription.status == "canceled":
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="subscription is canceled")

        try:
            invoice = self.invoice_subscription_period(session, ctx, subscription, period_start, period_end)
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="invoice number conflict")
        except HTTPException:
            session.rollback()
            raise
        return self.get_invoice(session, ctx, invoice.id)

    def create_invoice(self, session: Session, ctx: AuthContext, payload: InvoiceCreate) -> InvoiceRead:
        if ctx.organization_id is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="organization context required")

        subtotal = sum(item.total for item in payload.line_items)
        issue_date = payload.issue_date or self.clock.today()
        write_payload = {
            "organization_id": ctx.organization_id,
            "customer_org_id": payload.customer_org_id,
            "subscription_id": None,
            "invoice_number": self._next_number(session, ctx.organization_id),
            "status": "draft",
            "currency": payload.currency,
            "subtotal": subtotal,
            "tax": payload.tax,
            "total": subtotal + payload.tax,
            "line_items": _line_items_adapter.dump_python(payload.line_items, by_alias=True),
            "issue_date": issue_date,
            "due_date": payload.due_date or issue_date + timedelta(days=get_settings().invoice_due_days),
            "notes": payload.notes,
        }
        try:
            self.invoice_repository.validate_write_security(write_payload, ctx, action="create")
        except AuthorizationError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))

        invoice = Invoice(**write_payload)
        try:
            session.add(invoice)
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="invoice number conflict")
        session.refresh(invoice)

        observe_invoice_generated(invoice.currency, invoice.total)
        audit.record_status_change(
            ctx,
            entity_type="invoice",
            entity_id=invoice.id,
            organization_id=invoice.organization_id,
            old_status=None,
            new_status="draft",
            extra={"total": invoice.total},
        )
        logger.info(
            "invoice.created",
            extra={"invoice_id": str(invoice.id), "customer_org_id": invoice.customer_org_id, "total": invoice.total},
        )
        self._emit_invoice_event("invoice.generated", invoice, ctx)
        return self._to_invoice_read(invoice)

    def invoice_subscription_period(
        self,
        session: Session,
        ctx: AuthContext,
        subscription: Subscription,
        period_start: date,
        period_end: date,
        *,
        usage_start: date | None = None,
        usage_end: date | None = None,
        is_gating: bool = False,
    ) -> Invoice:
        """Price one subscription period into a draft invoice, flushed but not committed.

        Usage is summed over ``[usage_start, usage_end)``, which defaults to the invoiced
        period. A pending free cycle is consumed by the invoice.
        """

        with tracer.start_as_current_span("invoice.generate") as span:
            set_span_attributes(
                span, {"subscription_id": subscription.id, "period_start": period_start, "period_end": period_end}
            )

            usage = self.subscription_service.usage_for_period(
                session,
                subscription,
                usage_start or period_start,
                usage_end or period_end,
            )
            free_cycle = subscription.free_cycles_remaining > 0
            first_invoice = not self._has_invoices(session, subscription.id)
            result = self.subscription_service.price_subscription(
                session, ctx, subscription, usage=usage, free_cycle=free_cycle, first_invoice=first_invoice
            )

            subtotal = result.subtotal
            tax = self.tax_provider.tax_for(subtotal, result.currency, subscription.region) if self.tax_provider is not None else 0
            issue_date = self.clock.today()
            payload = {
                "organization_id": subscription.organization_id,
                "customer_org_id": subscription.customer_org_id,
                "subscription_id": subscription.id,
                "invoice_number": self._next_number(session, subscription.organization_id),
                "status": "draft",
                "currency": result.currency,
                "subtotal": subtotal,
                "tax": tax,
                "total": subtotal + tax,
                "line_items": _line_items_adapter.dump_python(result.line_item_preview, by_alias=True),
                "period_start": period_start,
                "period_end": period_end,
                "issue_date": issue_date,
                "due_date": issue_date + timedelta(days=get_settings().invoice_due_days),
                "is_gating": is_gating,
            }
            try:
                self.invoice_repository.validate_write_security(
                    payload,
                    ctx,
                    existing_scope={"organization_id": subscription.organization_id},
                    action="create",
                )
            except AuthorizationError as exc:
                raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))

            invoice = Invoice(**payload)
            session.add(invoice)
            if free_cycle:
                subscription.free_cycles_remaining -= 1
                session.add(subscription)
            session.flush()
            set_span_attributes(span, {"invoice_number": invoice.invoice_number, "total": invoice.total})

        observe_invoice_generated(invoice.currency, invoice.total)
        logger.info(
            "invoice.generated",
            extra={"invoice_id": str(invoice.id), "subscription_id": str(subscription.id), "total": invoice.total},
        )
        self._emit_invoice_event("invoice.generated", invoice, ctx)
        return invoice

    def finalize(self, session: Session, ctx: AuthContext, invoice_id: uuid.UUID) -> InvoiceRead:
        invoice = self._get_invoice(session, ctx, invoice_id)
        self._assert_transition(invoice.status, "final")

        issue_date = self.clock.today()
        write_payload = {
            "status": "final",
            "issue_date": issue_date,
            "due_date": issue_date + timedelta(days=get_settings().invoice_due_days),
        }
        self._validate_invoice_write(write_payload, invoice, ctx)

        invoice.status = "final"
        invoice.issue_date = write_payload["issue_date"]
        invoice.due_date = write_payload["due_date"]
        session.add(invoice)
        session.commit()
        session.refresh(invoice)

        self._record_transition(ctx, invoice, "draft")
        self._emit_invoice_event("invoice.finalized", invoice, ctx)
        return self._to_invoice_read(invoice)

    def mark_invoice_paid(
        self,
        session: Session,
        ctx: AuthContext,
        invoice_id: uuid.UUID,
        payload: MarkInvoicePaidRequest | None = None,
    ) -> InvoicePaymentResult:
        invoice = self._get_invoice(session, ctx, invoice_id)
        self._assert_transition(invoice.status, "paid")
        paid_at = payload.paid_at if payload is not None and payload.paid_at is not None else self.clock.now()
        self._validate_invoice_write({"status": "paid", "paid_at": paid_at}, invoice, ctx)

        old_status = invoice.status
        was_overdue = old_status == "overdue"
        invoice.status = "paid"
        invoice.paid_at = paid_at
        session.add(invoice)

        subscription: Subscription | None = None
        try:
            if invoice.subscription_id is not None:
                subscription = self.subscription_service.get_subscription_model(session, ctx, invoice.subscription_id)
                if invoice.is_gating and subscription.status in ("draft", "trial"):
                    self.subscription_service.activate_on_payment(
                        session,
                        ctx,
                        subscription.id,
                        paid_on=paid_at.date(),
                        commit=False,
                    )
                elif (
                    was_overdue
                    and subscription.status == "past_due"
                    and not self._has_open_overdue(session, subscription.id, exclude_id=invoice.id)
                ):
                    self.subscription_service.mark_overdue_resolved(session, ctx, subscription.id, commit=False)
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="customer already has a live subscription")
        except HTTPException:
            session.rollback()
            raise

        self._record_transition(ctx, invoice, old_status)
        logger.info("invoice.paid", extra={"invoice_id": str(invoice.id), "total": invoice.total})
        self._emit_invoice_event("invoice.paid", invoice, ctx)
        return InvoicePaymentResult(
            invoice=self.get_invoice(session, ctx, invoice.id),
            subscription=(
                self.subscription_service.get_subscription(session, ctx, subscription.id) if subscription is not None else None
            ),
        )

    def refresh_overdue(self, session: Session, ctx: AuthContext, invoice_id: uuid.UUID) -> RefreshOverdueResponse:
        invoice = self._get_invoice(session, ctx, invoice_id)
        is_overdue = invoice.status == "final" and self.clock.today() > invoice.due_date and invoice.total > 0
        subscription_status: str | None = None
        if is_overdue:
            self._validate_invoice_write({"status": "overdue"}, invoice, ctx)
            invoice.status = "overdue"
            session.add(invoice)
            if invoice.subscription_id is not None:
                subscription = self.subscription_service.get_subscription_model(session, ctx, invoice.subscription_id)
                if subscription.status == "active":
                    self.subscription_service.mark_past_due(session, ctx, subscription.id, commit=False)
                subscription_status = subscription.status
            session.commit()
            self._record_transition(ctx, invoice, "final")
            logger.info("invoice.overdue", extra={"invoice_id": str(invoice.id), "new_status": "overdue"})
            self._emit_invoice_event("invoice.overdue", invoice, ctx)
        return RefreshOverdueResponse(
            invoice_id=invoice.id,
            status=invoice.status,
            overdue=is_overdue,
            subscription_status=subscription_status,
        )

    def void(
        self,
        session: Session,
        ctx: AuthContext,
        invoice_id: uuid.UUID,
        payload: VoidInvoiceRequest | None = None,
    ) -> InvoiceRead:
        invoice = self._get_invoice(session, ctx, invoice_id)
        old_status = invoice.status
        self._assert_transition(old_status, "canceled")
        self._validate_invoice_write({"status": "canceled"}, invoice, ctx)

        invoice.status = "canceled"
        if payload is not None and payload.reason:
            invoice.notes = payload.reason
        session.add(invoice)
        session.commit()
        session.refresh(invoice)

        self._record_transition(ctx, invoice, old_status)
        self._emit_invoice_event("invoice.voided", invoice, ctx)
        return self._to_invoice_read(invoice)

    def list_invoices(
        self,
        session: Session,
        ctx: AuthContext,
        *,
        invoice_status: str | None = None,
        subscription_id: uuid.UUID | None = None,
        customer_org_id: str | None = None,
    ) -> list[InvoiceRead]:
        stmt: Select[tuple[Invoice]] = select(Invoice)
        if invoice_status is not None:
            stmt = stmt.where(Invoice.status == invoice_status)
        if subscription_id is not None:
            stmt = stmt.where(Invoice.subscription_id == subscription_id)
        if customer_org_id is not None:
            stmt = stmt.where(Invoice.customer_org_id == customer_org_id)
        stmt = self.invoice_repository.apply_scope_query(stmt, ctx)
        rows = session.scalars(stmt.order_by(Invoice.created_at.desc())).all()
        return [self._to_invoice_read(row) for row in rows]

    def get_invoice(self, session: Session, ctx: AuthContext, invoice_id: uuid.UUID) -> InvoiceRead:
        return self._to_invoice_read(self._get_invoice(session, ctx, invoice_id))

    def overdue_candidates(self, session: Session, *, limit: int) -> list[uuid.UUID]:
        today = self.clock.today()
        return list(
            session.scalars(
                select(Invoice.id)
                .where(and_(Invoice.status == "final", Invoice.due_date < today))
                .order_by(Invoice.due_date.asc())
                .limit(limit)
            ).all()
        )

    def _has_invoices(self, session: Session, subscription_id: uuid.UUID) -> bool:
        stmt = select(Invoice.id).where(and_(Invoice.subscription_id == subscription_id, Invoice.status != "canceled"))
        return session.scalar(stmt.limit(1)) is not None

    def _has_open_overdue(self, session: Session, subscription_id: uuid.UUID, *, exclude_id: uuid.UUID) -> bool:
        stmt = select(Invoice.id).where(
            and_(Invoice.subscription_id == subscription_id, Invoice.status == "overdue", Invoice.id != exclude_id)
        )
        return session.scalar(stmt.limit(1)) is not None

    @staticmethod
    def _assert_transition(current: str, target: str) -> None:
        allowed = VALID_INVOICE_TRANSITIONS.get(current, set())
        if target not in allowed:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"invalid invoice transition {current} -> {target}")

    def _record_transition(self, ctx: AuthContext, invoice: Invoice, old_status: str) -> None:
        observe_invoice_transition(invoice.status)
        audit.record_status_change(
            ctx,
            entity_type="invoice",
            entity_id=invoice.id,
            organization_id=invoice.organization_id,
            old_status=old_status,
            new_status=invoice.status,
            extra={"total": invoice.total},
        )

    def _validate_invoice_write(self, payload: dict[str, object], invoice: Invoice, ctx: AuthContext) -> None:
        try:
            self.invoice_repository.validate_write_security(
                payload,
                ctx,
                existing_scope={"organization_id": invoice.organization_id},
                action="update",
            )
        except AuthorizationError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))

    def _get_invoice(self, session: Session, ctx: AuthContext, invoice_id: uuid.UUID) -> Invoice:
        invoice = self.invoice_repository.get_scoped(session, ctx, invoice_id)
        if invoice is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="invoice not found")
        return invoice

    def _emit_invoice_event(self, event_type: str, invoice: Invoice, ctx: AuthContext) -> None:
        events.publish(
            {
                "event_type": event_type,
                "invoice_id": str(invoice.id),
                "invoice_number": invoice.invoice_number,
                "subscription_id": str(invoice.subscription_id) if invoice.subscription_id else None,
                "organization_id": invoice.organization_id,
                "customer_org_id": invoice.customer_org_id,
                "status": invoice.status,
                "currency": invoice.currency,
                "total": invoice.total,
                "correlation_id": ctx.correlation_id,
            }
        )

    @staticmethod
    def _to_invoice_read(invoice: Invoice) -> InvoiceRead:
        return InvoiceRead(
            id=invoice.id,
            organization_id=invoice.organization_id,
            customer_org_id=invoice.customer_org_id,
            subscription_id=invoice.subscription_id,
            invoice_number=invoice.invoice_number,
            status=invoice.status,
            currency=invoice.currency,
            subtotal=invoice.subtotal,
            tax=invoice.tax,
            total=invoice.total,
            line_items=_line_items_adapter.validate_python(invoice.line_items or []),
            period_start=invoice.period_start,
            period_end=invoice.period_end,
            issue_date=invoice.issue_date,
            due_date=invoice.due_date,
            paid_at=invoice.paid_at,
            is_gating=invoice.is_gating,
            notes=invoice.notes,
            created_at=invoice.created_at,
            updated_at=invoice.updated_at,
        )

    def _next_number(self, session: Session, organization_id: str) -> str:
        counter = session.scalar(select(func.count()).select_from(Invoice).where(Invoice.organization_id == organization_id)) or 0
        return f"INV-{get_settings().invoice_number_start + counter}"


billing_service = BillingService()
