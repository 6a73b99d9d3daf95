"""
Error Taxonomy Module

Every failure the lifecycle engine surfaces is a LendingError subclass with a
stable ``kind`` so callers map it to a transport response without parsing
messages.
"""

from typing import Any, Dict, Optional


class LendingError(Exception):
    """Base exception for all lending errors"""

    kind = "lending"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        """Structured form for the HTTP layer"""
        return {"kind": self.kind, "message": self.message, "details": self.details}


class ValidationError(LendingError):
    """Malformed or out-of-range input. Nothing was persisted."""

    kind = "validation"


class NotFoundError(LendingError):
    """Referenced loan or payment does not exist"""

    kind = "not_found"

    def __init__(self, entity_type: str, entity_id: str):
        super().__init__(
            f"{entity_type.capitalize()} '{entity_id}' not found",
            {"entity_type": entity_type, "entity_id": entity_id}
        )
        self.entity_type = entity_type
        self.entity_id = entity_id


class ConflictError(LendingError):
    """A guarded transition lost a race or was based on stale state"""

    kind = "conflict"


class DomainError(LendingError):
    """Operation is invalid for the loan's current lifecycle state"""

    kind = "domain"


class StorageError(LendingError):
    """The transactional store failed (connection loss, constraint violation)"""

    kind = "storage"
