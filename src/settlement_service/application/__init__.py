"""Application layer - settlement orchestration and purchase use cases."""

from settlement_service.application.approval import (
    ApprovalWindow,
    ApprovalWindowOpener,
    RedirectApprovalRegistry,
    RedirectApprovalWindow,
)
from settlement_service.application.guards import InMemorySubmissionGuard, SubmissionGuard
from settlement_service.application.notifications import (
    BuyerNotice,
    LoggingOperatorAlerter,
    OperatorAlerter,
    buyer_notice,
)
from settlement_service.application.orchestrator import PaymentGateway, SettlementOrchestrator
from settlement_service.application.services import (
    PreparedPurchase,
    PurchaseCommand,
    PurchaseOutcome,
    PurchaseService,
)
from settlement_service.application.unit_of_work import UnitOfWork, unit_of_work_factory


__all__ = [
    "ApprovalWindow",
    "ApprovalWindowOpener",
    "BuyerNotice",
    "InMemorySubmissionGuard",
    "LoggingOperatorAlerter",
    "OperatorAlerter",
    "PaymentGateway",
    "PreparedPurchase",
    "PurchaseCommand",
    "PurchaseOutcome",
    "PurchaseService",
    "RedirectApprovalRegistry",
    "RedirectApprovalWindow",
    "SettlementOrchestrator",
    "SubmissionGuard",
    "UnitOfWork",
    "buyer_notice",
    "unit_of_work_factory",
]
