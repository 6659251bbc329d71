"""
Card control and scheduled card action types.

Responsibility:
    Value objects for card control state and the scheduled actions that
    mutate it.  Recurring actions are append-only: each firing is its own
    row linked to its predecessor and to the root of the series.

Architecture position:
    Kernel > Domain -- pure value objects, zero I/O.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


class ActionType(str, Enum):
    FREEZE = "FREEZE"
    UNFREEZE = "UNFREEZE"
    LIMIT_CHANGE = "LIMIT_CHANGE"


class Recurrence(str, Enum):
    ONCE = "ONCE"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"


class CardActionStatus(str, Enum):
    PENDING = "PENDING"
    EXECUTED = "EXECUTED"
    CANCELLED = "CANCELLED"


class CardStatus(str, Enum):
    ACTIVE = "ACTIVE"
    FROZEN = "FROZEN"
    BLOCKED = "BLOCKED"
    CANCELLED = "CANCELLED"


@dataclass(frozen=True)
class SpendLimits:
    per_transaction: Decimal
    daily: Decimal
    monthly: Decimal

    def to_dict(self) -> dict[str, str]:
        return {
            "perTransaction": str(self.per_transaction),
            "daily": str(self.daily),
            "monthly": str(self.monthly),
        }


@dataclass(frozen=True)
class CardControlState:
    """The parts of a card the executor may change."""

    card_id: UUID
    status: CardStatus
    spend_limits: SpendLimits
    version: int = 1
    last4: str | None = None
    employee_id: UUID | None = None


@dataclass(frozen=True)
class ScheduledCardAction:
    action_id: UUID
    card_id: UUID
    action_type: ActionType
    scheduled_date: datetime
    recurrence: Recurrence
    status: CardActionStatus
    details: dict[str, Any] = field(default_factory=dict)
    seq: int = 0
    previous_action_id: UUID | None = None
    root_action_id: UUID | None = None
    occurrence: int = 0
    executed_at: datetime | None = None
    cancelled_at: datetime | None = None

    @property
    def series_root_id(self) -> UUID:
        return self.root_action_id or self.action_id


@dataclass(frozen=True)
class ExecutedAction:
    """Result record for one action fired by a tick."""

    action_id: UUID
    card_id: UUID
    action_type: ActionType
    scheduled_date: datetime
    executed_at: datetime
    card_status: CardStatus
    spend_limits: SpendLimits
    successor_id: UUID | None = None
    successor_date: datetime | None = None
