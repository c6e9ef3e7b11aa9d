from printshop.business.payments.models import ProcessedPaymentEvent, ReconciliationIssue

__all__ = [
    "ProcessedPaymentEvent",
    "ReconciliationIssue",
]
