from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from records_sync.core.errors import (
    InvalidPayloadError,
    UnsupportedEntityTypeError,
    UnsupportedOperationError,
)
from records_sync.domain.sync_models import EntityType, SyncOperation

_ALL_OPERATIONS = frozenset(operation.value for operation in SyncOperation)


@dataclass(frozen=True)
class PayloadRule:
    """Minimum shape a queued payload needs before it can be committed."""

    entity_type: str
    required_fields: tuple[str, ...]
    allowed_operations: frozenset[str] = _ALL_OPERATIONS
    schema_version: int = 1


_RULES: dict[str, PayloadRule] = {}


def register_rule(rule: PayloadRule) -> None:
    _RULES[rule.entity_type] = rule


def get_rule(entity_type: str) -> PayloadRule:
    rule = _RULES.get(str(entity_type))
    if rule is None:
        raise UnsupportedEntityTypeError(str(entity_type))
    return rule


def supported_entity_types() -> tuple[str, ...]:
    return tuple(_RULES)


def current_schema_version(entity_type: str) -> int:
    return get_rule(entity_type).schema_version


def missing_fields(payload: Any, required_fields: tuple[str, ...]) -> list[str]:
    if not isinstance(payload, Mapping):
        return list(required_fields)
    return [name for name in required_fields if _is_blank(payload.get(name))]


def validate_payload(entity_type: str, payload: Any, operation: str | None = None) -> None:
    """Raises when the payload cannot be committed for ``entity_type``.

    Pure function: no I/O, safe to call before claiming any entry.
    """
    rule = get_rule(entity_type)
    if operation is not None and str(operation) not in rule.allowed_operations:
        raise UnsupportedOperationError(rule.entity_type, str(operation))
    missing = missing_fields(payload, rule.required_fields)
    if missing:
        raise InvalidPayloadError(rule.entity_type, missing)


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    return False


register_rule(PayloadRule(EntityType.CASE.value, ("caseNumber", "title", "officerId")))
register_rule(PayloadRule(EntityType.PERSON.value, ("nin", "firstName", "lastName")))
register_rule(PayloadRule(EntityType.EVIDENCE.value, ("caseId", "type", "description")))
register_rule(
    PayloadRule(
        EntityType.CASE_PERSON.value,
        ("caseId", "personId", "role"),
        allowed_operations=frozenset({SyncOperation.CREATE.value, SyncOperation.DELETE.value}),
    )
)
