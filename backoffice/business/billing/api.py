from __future__ import annotations

import uuid
from datetime import date

from fastapi import APIRouter, Depends, Header, Query, Request, status
from sqlalchemy.orm import Session

from backoffice.business.billing.schemas import (
    InvoiceCreate,
    InvoicePaymentResult,
    InvoiceRead,
    MarkInvoicePaidRequest,
    RefreshOverdueResponse,
    VoidInvoiceRequest,
)
from backoffice.business.billing.service import billing_service
from backoffice.context import get_correlation_id
from backoffice.core.auth import AuthUser, get_current_user as get_auth_user
from backoffice.core.database import get_db
from backoffice.platform.security.context import AuthContext


router = APIRouter(prefix="/billing", tags=["billing"])


def get_billing_auth_context(
    request: Request,
    auth_user: AuthUser = Depends(get_auth_user),
    organization_id_header: str | None = Header(default=None, alias="x-organization-id"),
) -> AuthContext:
    return AuthContext.for_caller(
        auth_user.sub,
        auth_user.roles,
        organization_id=organization_id_header,
        correlation_id=get_correlation_id() or request.headers.get("x-correlation-id"),
    )


@router.post("/invoices", response_model=InvoiceRead, status_code=status.HTTP_201_CREATED)
def create_invoice(
    payload: InvoiceCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_billing_auth_context),
) -> InvoiceRead:
    return billing_service.create_invoice(db, ctx, payload)


@router.post("/invoices/from-subscription/{subscription_id}", response_model=InvoiceRead, status_code=status.HTTP_201_CREATED)
def create_invoice_from_subscription(
    subscription_id: uuid.UUID,
    period_start: date = Query(),
    period_end: date = Query(),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_billing_auth_context),
) -> InvoiceRead:
    return billing_service.generate_invoice(db, ctx, subscription_id, period_start, period_end)


@router.get("/invoices", response_model=list[InvoiceRead])
def list_invoices(
    status_filter: str | None = Query(default=None, alias="status"),
    subscription_id: uuid.UUID | None = Query(default=None),
    customer_org_id: str | None = Query(default=None),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_billing_auth_context),
) -> list[InvoiceRead]:
    return billing_service.list_invoices(
        db,
        ctx,
        invoice_status=status_filter,
        subscription_id=subscription_id,
        customer_org_id=customer_org_id,
    )


@router.get("/invoices/{invoice_id}", response_model=InvoiceRead)
def get_invoice(
    invoice_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_billing_auth_context),
) -> InvoiceRead:
    return billing_service.get_invoice(db, ctx, invoice_id)


@router.post("/invoices/{invoice_id}/finalize", response_model=InvoiceRead)
def finalize_invoice(
    invoice_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_billing_auth_context),
) -> InvoiceRead:
    return billing_service.finalize(db, ctx, invoice_id)


@router.post("/invoices/{invoice_id}/pay", response_model=InvoicePaymentResult)
def mark_invoice_paid(
    invoice_id: uuid.UUID,
    payload: MarkInvoicePaidRequest | None = None,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_billing_auth_context),
) -> InvoicePaymentResult:
    return billing_service.mark_invoice_paid(db, ctx, invoice_id, payload)


@router.post("/invoices/{invoice_id}/void", response_model=InvoiceRead)
def void_invoice(
    invoice_id: uuid.UUID,
    payload: VoidInvoiceRequest | None = None,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_billing_auth_context),
) -> InvoiceRead:
    return billing_service.void(db, ctx, invoice_id, payload)


@router.post("/invoices/{invoice_id}/refresh-overdue", response_model=RefreshOverdueResponse)
def refresh_overdue(
    invoice_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_billing_auth_context),
) -> RefreshOverdueResponse:
    return billing_service.refresh_overdue(db, ctx, invoice_id)
