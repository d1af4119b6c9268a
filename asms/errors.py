"""
Error kinds raised by the appointment core.

Every failure path of a core operation maps to exactly one of these
classes so a transport layer can translate them into its own status codes
without inspecting messages.
"""

from typing import Any, Optional


class ASMSError(Exception):
    """Base class for all classified core errors."""

    kind = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.kind, "message": self.message}


class NotFoundError(ASMSError):
    """The referenced entity id does not exist."""

    kind = "not_found"

    def __init__(self, entity: str, entity_id: Any) -> None:
        super().__init__(f"{entity} not found: {entity_id}")
        self.entity = entity
        self.entity_id = entity_id


class ForbiddenError(ASMSError):
    """The actor does not own, or is not allowed to act on, the target entity."""

    kind = "forbidden"


class InvalidStateError(ASMSError):
    """The operation is illegal in the entity's current state."""

    kind = "invalid_state"


class ConflictError(ASMSError):
    """A uniqueness or capacity invariant would be violated.

    ``reason`` is a machine-readable sub-reason so callers can tell a slot
    taken by someone else apart from a service that has no capacity left.
    """

    kind = "conflict"

    SLOT_TAKEN = "slot_taken"
    CAPACITY_EXHAUSTED = "capacity_exhausted"
    SERVICE_INACTIVE = "service_inactive"
    PENDING_REQUEST_EXISTS = "pending_request_exists"

    def __init__(self, message: str, reason: str) -> None:
        super().__init__(message)
        self.reason = reason

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "reason": self.reason}


class ValidationError(ASMSError):
    """Malformed input, e.g. an unknown enum value or a missing field."""

    kind = "validation_error"

    def __init__(self, message: str, fields: Optional[list[str]] = None) -> None:
        super().__init__(message)
        self.fields = fields or []

    @classmethod
    def from_pydantic(cls, exc: Any, model_name: str) -> "ValidationError":
        """Flatten a pydantic ValidationError into field paths and one readable message."""
        fields = []
        problems = []
        for err in exc.errors():
            path = ".".join(str(part) for part in err.get("loc", ())) or model_name
            fields.append(path)
            problems.append(f"{path}: {err.get('msg', 'invalid value')}")
        return cls(f"Invalid {model_name}: " + "; ".join(problems), fields)

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "fields": list(self.fields)}


class StorageError(ASMSError):
    """A persistence operation failed. Always propagated to the caller."""

    kind = "storage_error"


class PushDeliveryError(ASMSError):
    """A live push could not be delivered in time. Never fatal to the caller."""

    kind = "push_delivery_error"
