from __future__ import annotations

from printshop.platform.security.repository import BaseRepository


class InvoiceRepository(BaseRepository):
    resource = "billing.invoice"


class RefundRequestRepository(BaseRepository):
    resource = "billing.refund_request"
