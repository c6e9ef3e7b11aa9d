from printshop.business.invoices.models import Invoice, RefundRequest
from printshop.business.invoices.schemas import InvoiceRead, RefundRequestCreate, RefundRequestRead

__all__ = [
    "Invoice",
    "RefundRequest",
    "InvoiceRead",
    "RefundRequestCreate",
    "RefundRequestRead",
]
