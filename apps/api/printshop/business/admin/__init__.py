from printshop.business.admin.schemas import AdminActionResponse, ReconciliationIssueRead

__all__ = [
    "AdminActionResponse",
    "ReconciliationIssueRead",
]
