"""Repository implementations."""

from settlement_service.infrastructure.repositories.ban import BanRepository, BanStatus
from settlement_service.infrastructure.repositories.outbox import OutboxRepository
from settlement_service.infrastructure.repositories.product import ProductRepository
from settlement_service.infrastructure.repositories.settlement import SettlementRepository


__all__ = [
    "BanRepository",
    "BanStatus",
    "OutboxRepository",
    "ProductRepository",
    "SettlementRepository",
]
