"""Shared helpers for status enums and their transition tables."""

from collections.abc import Mapping
from enum import Enum

from sqlalchemy import Enum as SAEnum

from ..core.exceptions import InvalidTransitionError


def status_type(enum_cls: type[Enum]) -> SAEnum:
    """Column type storing an enum by value as a plain VARCHAR."""
    return SAEnum(
        enum_cls,
        native_enum=False,
        length=20,
        values_callable=lambda members: [member.value for member in members],
        validate_strings=True,
    )


def check_transition(
    entity: str,
    table: Mapping[Enum, frozenset],
    current: Enum,
    target: Enum,
) -> None:
    """
    Reject a status change that is not an edge of ``table``.

    Raises:
        InvalidTransitionError: If ``current -> target`` is not allowed
    """
    if target not in table.get(current, frozenset()):
        raise InvalidTransitionError(entity, current.value, target.value)
