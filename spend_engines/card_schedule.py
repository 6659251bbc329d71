"""
spend_engines.card_schedule -- Pure scheduled card action engine.

Responsibility:
    Decide which scheduled card actions are due and in what order, compute
    the next occurrence of a recurring series, validate action details,
    and apply an action to a card's control state.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - Due actions are ordered by (scheduled_date, seq, id) so a FREEZE
      created before an UNFREEZE due at the same instant always nets to
      ACTIVE.
    - Recurring dates are anchored on the series root: occurrence n is
      ``root + n weeks`` or ``root + n calendar months`` (day clamped to
      month end), so short months never cause drift.
    - BLOCKED and CANCELLED cards are never re-activated by a schedule.
"""

from __future__ import annotations

import calendar
from collections.abc import Iterable, Mapping
from dataclasses import replace
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any

from spend_kernel.domain.card_action import (
    ActionType,
    CardActionStatus,
    CardControlState,
    CardStatus,
    Recurrence,
    ScheduledCardAction,
    SpendLimits,
)
from spend_kernel.exceptions import InvalidCardActionError

_LIMIT_KEYS = (
    ("perTransaction", "per_transaction"),
    ("daily", "daily"),
    ("monthly", "monthly"),
)


def is_due(action: ScheduledCardAction, now: datetime) -> bool:
    return action.status == CardActionStatus.PENDING and action.scheduled_date <= now


def order_due(
    actions: Iterable[ScheduledCardAction],
    now: datetime,
) -> list[ScheduledCardAction]:
    """PENDING actions due at ``now``, in deterministic firing order."""
    due = [a for a in actions if is_due(a, now)]
    return sorted(due, key=lambda a: (a.scheduled_date, a.seq, str(a.action_id)))


def add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def next_occurrence(
    root_date: datetime,
    recurrence: Recurrence,
    occurrence: int,
) -> datetime | None:
    """Date of occurrence ``occurrence`` of a series rooted at ``root_date``.

    Returns None for ONCE actions.
    """
    match recurrence:
        case Recurrence.ONCE:
            return None
        case Recurrence.WEEKLY:
            return root_date + timedelta(weeks=occurrence)
        case Recurrence.MONTHLY:
            return add_months(root_date, occurrence)


def parse_limits(details: Mapping[str, Any]) -> SpendLimits:
    """Read ``details.newLimit`` into SpendLimits.

    Raises:
        InvalidCardActionError: Missing, non-numeric or negative limits.
    """
    new_limit = details.get("newLimit") if details else None
    if not isinstance(new_limit, Mapping):
        raise InvalidCardActionError("LIMIT_CHANGE requires details.newLimit")

    values: dict[str, Decimal] = {}
    for key, attr in _LIMIT_KEYS:
        raw = new_limit.get(key)
        if raw is None or isinstance(raw, bool):
            raise InvalidCardActionError(f"newLimit.{key} is required")
        try:
            amount = Decimal(str(raw))
        except (InvalidOperation, ValueError):
            raise InvalidCardActionError(f"newLimit.{key} must be a number")
        if not amount.is_finite() or amount < 0:
            raise InvalidCardActionError(f"newLimit.{key} must be non-negative")
        values[attr] = amount
    return SpendLimits(**values)


def validate_details(action_type: ActionType, details: Mapping[str, Any] | None) -> dict[str, Any]:
    """Validate and return a plain-dict copy of ``details``."""
    details = dict(details or {})
    if action_type == ActionType.LIMIT_CHANGE:
        parse_limits(details)
    return details


def apply_action(
    card: CardControlState,
    action: ScheduledCardAction,
) -> CardControlState:
    """Return the card state after ``action`` fires."""
    match action.action_type:
        case ActionType.FREEZE:
            if card.status in (CardStatus.ACTIVE, CardStatus.FROZEN):
                return replace(card, status=CardStatus.FROZEN)
            return card
        case ActionType.UNFREEZE:
            if card.status in (CardStatus.ACTIVE, CardStatus.FROZEN):
                return replace(card, status=CardStatus.ACTIVE)
            return card
        case ActionType.LIMIT_CHANGE:
            return replace(card, spend_limits=parse_limits(action.details))
