from __future__ import annotations

from backoffice.business.billing.models import Invoice
from backoffice.platform.security.repository import BaseRepository


class InvoiceRepository(BaseRepository[Invoice]):
    resource = "billing.invoice"
    model = Invoice
