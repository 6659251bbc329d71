"""
ORM models for cards and scheduled card actions.

Invariants enforced:
    - CardModel.version is a SQLAlchemy ``version_id_col``: a stale UPDATE
      raises StaleDataError, which the card directory maps to
      OptimisticLockError.
    - ScheduledCardActionModel rows are append-only per firing; a recurring
      series is linked by previous_action_id / root_action_id.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from spend_kernel.db.base import TrackedBase, UUIDString
from spend_kernel.domain.clock import as_utc

if TYPE_CHECKING:
    from spend_kernel.domain.card_action import CardControlState, ScheduledCardAction


class CardModel(TrackedBase):
    __tablename__ = "cards"

    last4: Mapped[str] = mapped_column(String(4), nullable=False)
    employee_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="ACTIVE")
    limit_per_transaction: Mapped[Decimal] = mapped_column(nullable=False)
    limit_daily: Mapped[Decimal] = mapped_column(nullable=False)
    limit_monthly: Mapped[Decimal] = mapped_column(nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def to_dto(self) -> CardControlState:
        from spend_kernel.domain.card_action import CardControlState, CardStatus, SpendLimits

        return CardControlState(
            card_id=self.id,
            status=CardStatus(self.status),
            spend_limits=SpendLimits(
                per_transaction=self.limit_per_transaction,
                daily=self.limit_daily,
                monthly=self.limit_monthly,
            ),
            version=self.version,
            last4=self.last4,
            employee_id=self.employee_id,
        )


class ScheduledCardActionModel(TrackedBase):
    __tablename__ = "scheduled_card_actions"

    __table_args__ = (
        Index("ix_card_actions_due", "status", "scheduled_date"),
        Index("ix_card_actions_root", "root_action_id"),
    )

    card_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("cards.id"), nullable=False,
    )
    action_type: Mapped[str] = mapped_column(String(20), nullable=False)
    scheduled_date: Mapped[datetime] = mapped_column(nullable=False)
    recurrence: Mapped[str] = mapped_column(String(10), nullable=False, default="ONCE")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="PENDING")
    details: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    seq: Mapped[int] = mapped_column(nullable=False, unique=True)
    previous_action_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("scheduled_card_actions.id"), nullable=True, unique=True,
    )
    root_action_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    occurrence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    executed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def to_dto(self) -> ScheduledCardAction:
        from spend_kernel.domain.card_action import (
            ActionType,
            CardActionStatus,
            Recurrence,
            ScheduledCardAction,
        )

        return ScheduledCardAction(
            action_id=self.id,
            card_id=self.card_id,
            action_type=ActionType(self.action_type),
            scheduled_date=as_utc(self.scheduled_date),
            recurrence=Recurrence(self.recurrence),
            status=CardActionStatus(self.status),
            details=dict(self.details or {}),
            seq=self.seq,
            previous_action_id=self.previous_action_id,
            root_action_id=self.root_action_id,
            occurrence=self.occurrence,
            executed_at=as_utc(self.executed_at),
            cancelled_at=as_utc(self.cancelled_at),
        )
