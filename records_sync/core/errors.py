from __future__ import annotations

from collections.abc import Iterable


class AppError(Exception):
    pass


class BusinessError(AppError):
    pass


class ValidationError(BusinessError):
    pass


class InvalidPayloadError(ValidationError):
    def __init__(self, entity_type: str, missing_fields: Iterable[str]) -> None:
        self.entity_type = entity_type
        self.missing_fields = tuple(missing_fields)
        super().__init__(
            f"Invalid {entity_type} payload: missing required fields: {', '.join(self.missing_fields)}"
        )


class UnsupportedEntityTypeError(ValidationError):
    def __init__(self, entity_type: str) -> None:
        self.entity_type = entity_type
        super().__init__(f"Unsupported entity type: {entity_type}")


class UnsupportedOperationError(ValidationError):
    def __init__(self, entity_type: str, operation: str) -> None:
        self.entity_type = entity_type
        self.operation = operation
        super().__init__(f"Unsupported operation: {operation} for {entity_type}")


class NotFoundError(BusinessError):
    def __init__(self, entry_id: str) -> None:
        self.entry_id = entry_id
        super().__init__(f"SyncQueue entry {entry_id} not found")


class InvalidTransitionError(BusinessError):
    def __init__(self, entry_id: str, current: str, target: str) -> None:
        self.entry_id = entry_id
        self.current = current
        self.target = target
        super().__init__(f"SyncQueue entry {entry_id} cannot move from {current} to {target}")


class InfraError(AppError):
    pass


class PersistenceError(InfraError):
    pass


class ExternalServiceError(InfraError):
    pass


class TransientExternalError(ExternalServiceError):
    pass


class CommitFailureError(ExternalServiceError):
    pass


class CommitTimeoutError(CommitFailureError, TransientExternalError):
    def __init__(self, entity_type: str, timeout_seconds: float) -> None:
        self.entity_type = entity_type
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Commit for {entity_type} timed out after {timeout_seconds:g} seconds")
