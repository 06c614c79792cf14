from __future__ import annotations

from datetime import date, datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator

from backoffice.business.pricing.types import LineItem
from backoffice.business.subscription.schemas import SubscriptionRead
from backoffice.core.config import get_settings


InvoiceStatus = Literal["draft", "final", "paid", "overdue", "canceled"]


class InvoiceRead(BaseModel):
    id: UUID
    organization_id: str
    customer_org_id: str
    subscription_id: UUID | None
    invoice_number: str
    status: InvoiceStatus | str
    currency: str
    subtotal: int
    tax: int
    total: int
    line_items: list[LineItem] = Field(default_factory=list)
    period_start: date | None
    period_end: date | None
    issue_date: date
    due_date: date
    paid_at: datetime | None
    is_gating: bool
    notes: str | None
    created_at: datetime
    updated_at: datetime


class InvoiceCreate(BaseModel):
    """A one-off invoice billed to a customer outside any subscription."""

    customer_org_id: str = Field(min_length=1, max_length=128)
    line_items: list[LineItem] = Field(min_length=1)
    currency: str = Field(default_factory=lambda: get_settings().default_currency, min_length=3, max_length=16)
    tax: int = Field(default=0, ge=0)
    issue_date: date | None = None
    due_date: date | None = None
    notes: str | None = None

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.strip().upper()

    @field_validator("line_items")
    @classmethod
    def _described_lines(cls, value: list[LineItem]) -> list[LineItem]:
        for item in value:
            if not item.description.strip():
                raise ValueError("line item description must not be blank")
            if item.quantity <= 0:
                raise ValueError("line item quantity must be positive")
        return value

    @model_validator(mode="after")
    def _due_after_issue(self) -> InvoiceCreate:
        if self.issue_date is not None and self.due_date is not None and self.due_date < self.issue_date:
            raise ValueError("due_date cannot precede issue_date")
        return self


class MarkInvoicePaidRequest(BaseModel):
    paid_at: datetime | None = None


class VoidInvoiceRequest(BaseModel):
    reason: str | None = None


class InvoicePaymentResult(BaseModel):
    invoice: InvoiceRead
    subscription: SubscriptionRead | None = None


class RefreshOverdueResponse(BaseModel):
    invoice_id: UUID
    status: str
    overdue: bool
    subscription_status: str | None = None
