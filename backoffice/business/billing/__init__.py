from backoffice.business.billing.api import router
from backoffice.business.billing.models import Invoice
from backoffice.business.billing.schemas import InvoicePaymentResult, InvoiceRead, RefreshOverdueResponse
from backoffice.business.billing.service import BillingService, TaxProvider, billing_service

__all__ = [
    "router",
    "Invoice",
    "InvoicePaymentResult",
    "InvoiceRead",
    "RefreshOverdueResponse",
    "BillingService",
    "TaxProvider",
    "billing_service",
]
