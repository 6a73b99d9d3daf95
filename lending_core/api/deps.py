"""
Service container and request dependencies
"""

from typing import Optional
from fastapi import Header

from ..audit import AuditTrail
from ..config import LendingConfig, get_config
from ..errors import ValidationError
from ..loans import LoanManager
from ..storage import create_storage


class LendingSystem:
    """Storage, audit trail and lifecycle engine wired from configuration"""

    def __init__(self, settings: Optional[LendingConfig] = None, database_url: Optional[str] = None):
        settings = settings or get_config()
        self.storage = create_storage(
            database_url or settings.database_url,
            lock_timeout=settings.database_lock_timeout
        )
        self.audit_trail = AuditTrail(self.storage) if settings.enable_audit_logging else None
        self.loan_manager = LoanManager(
            self.storage,
            self.audit_trail,
            default_frequency=settings.default_payment_frequency
        )

    def close(self) -> None:
        self.storage.close()


# Global lending system instance, built on first request
lending_system: Optional[LendingSystem] = None


def get_lending_system() -> LendingSystem:
    global lending_system
    if lending_system is None:
        lending_system = LendingSystem()
    return lending_system


def get_actor_id(x_actor_id: Optional[str] = Header(None)) -> Optional[str]:
    """Acting user from the X-Actor-Id header, if any"""
    return x_actor_id.strip() if x_actor_id and x_actor_id.strip() else None


def require_actor_id(x_actor_id: Optional[str] = Header(None)) -> str:
    """Acting user for approvals and reversals"""
    actor_id = get_actor_id(x_actor_id)
    if actor_id is None:
        raise ValidationError("X-Actor-Id header is required for this operation")
    return actor_id
