"""
CardActionExecutor -- fires scheduled card actions on a periodic tick.

Contract:
    ``schedule`` stores a PENDING action against an existing card.  ``tick``
    fires every PENDING action due at ``now`` in (scheduled_date, seq, id)
    order, applies it to the card through the ``CardDirectory`` port, marks
    it EXECUTED and, for WEEKLY / MONTHLY actions, creates the next
    occurrence of the series.

Guarantees:
    - Each occurrence fires at most once: its status is re-read under a row
      lock before firing, and the update runs in its own SAVEPOINT.
    - A card is mutated under a per-card keyed lock and an optimistic
      version check; a version conflict leaves the action PENDING for the
      next tick.
    - Ticks never overlap on one executor (TickInProgressError).
    - A successor created in a tick is never fired in that same tick, so a
      series that fell behind catches up one occurrence per tick.

Failure modes:
    - Missing card, version conflict or invalid details: logged, the action
      stays PENDING, the rest of the tick continues.
"""

from __future__ import annotations

import threading
from collections.abc import Mapping
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy.orm.exc import StaleDataError

from spend_engines import card_schedule
from spend_kernel.concurrency import KeyedLocks
from spend_kernel.domain.card_action import (
    ActionType,
    CardActionStatus,
    CardControlState,
    CardStatus,
    ExecutedAction,
    Recurrence,
    ScheduledCardAction,
    SpendLimits,
)
from spend_kernel.domain.clock import Clock, SystemClock, as_utc
from spend_kernel.domain.ports import CardDirectory, Notifier
from spend_kernel.exceptions import (
    CardActionAlreadyCancelledError,
    CardActionAlreadyExecutedError,
    CardActionNotFoundError,
    CardNotFoundError,
    InvalidCardActionError,
    OptimisticLockError,
    TickInProgressError,
)
from spend_kernel.logging_config import LogContext, get_logger
from spend_kernel.models.card import CardModel, ScheduledCardActionModel
from spend_kernel.repositories import Store
from spend_services.notifications import LoggingNotifier, notify_safely

logger = get_logger("services.card_actions")

# Actor recorded on rows written by the scheduler itself.
SYSTEM_ACTOR_ID = UUID("00000000-0000-0000-0000-000000000000")


class SqlCardDirectory:
    """``CardDirectory`` over the cards table of the same store."""

    def __init__(self, store: Store):
        self._store = store

    def register_card(
        self,
        last4: str,
        employee_id: UUID,
        spend_limits: SpendLimits,
        actor_id: UUID,
        status: CardStatus = CardStatus.ACTIVE,
    ) -> CardControlState:
        try:
            row = self._store.cards.add(CardModel(
                last4=last4,
                employee_id=employee_id,
                status=status.value,
                limit_per_transaction=spend_limits.per_transaction,
                limit_daily=spend_limits.daily,
                limit_monthly=spend_limits.monthly,
                created_by_id=actor_id,
            ))
            card = row.to_dto()
            self._store.commit()
        except Exception:
            self._store.rollback()
            raise
        return card

    def get_card(self, card_id: UUID) -> CardControlState | None:
        row = self._store.cards.get(card_id)
        return row.to_dto() if row is not None else None

    def update_card(
        self,
        card_id: UUID,
        *,
        expected_version: int,
        status: CardStatus | None = None,
        spend_limits: SpendLimits | None = None,
    ) -> CardControlState:
        """Write status and/or limits if the card is still at ``expected_version``.

        Flushes only; the caller owns the transaction.

        Raises:
            CardNotFoundError: Unknown card.
            OptimisticLockError: The card moved on since it was read.
        """
        row = self._store.cards.get(card_id, for_update=True)
        if row is None:
            raise CardNotFoundError(str(card_id))
        if row.version != expected_version:
            raise OptimisticLockError("Card", str(card_id))

        if status is not None:
            row.status = status.value
        if spend_limits is not None:
            row.limit_per_transaction = spend_limits.per_transaction
            row.limit_daily = spend_limits.daily
            row.limit_monthly = spend_limits.monthly
        try:
            self._store.flush()
        except StaleDataError as exc:
            raise OptimisticLockError("Card", str(card_id)) from exc
        return row.to_dto()


class CardActionExecutor:
    """Schedules card actions and fires the due ones on each tick."""

    def __init__(
        self,
        store: Store,
        card_directory: CardDirectory | None = None,
        clock: Clock | None = None,
        notifier: Notifier | None = None,
        card_locks: KeyedLocks | None = None,
    ):
        self._store = store
        self._cards = card_directory or SqlCardDirectory(store)
        self._clock = clock or SystemClock()
        self._notifier = notifier or LoggingNotifier()
        self._card_locks = card_locks if card_locks is not None else KeyedLocks()
        self._tick_lock = threading.Lock()

    # =========================================================================
    # Scheduling
    # =========================================================================

    def schedule(
        self,
        card_id: UUID,
        action_type: ActionType | str,
        scheduled_date: datetime,
        actor_id: UUID,
        recurrence: Recurrence | str = Recurrence.ONCE,
        details: Mapping[str, Any] | None = None,
    ) -> ScheduledCardAction:
        """Store a PENDING action.

        Raises:
            CardNotFoundError: Unknown card.
            InvalidCardActionError: Bad type, recurrence or LIMIT_CHANGE details.
        """
        try:
            action_type = ActionType(action_type)
            recurrence = Recurrence(recurrence)
        except ValueError as exc:
            raise InvalidCardActionError(str(exc)) from exc
        if self._cards.get_card(card_id) is None:
            raise CardNotFoundError(str(card_id))
        payload = card_schedule.validate_details(action_type, details)

        try:
            row = self._store.card_actions.add(ScheduledCardActionModel(
                card_id=card_id,
                action_type=action_type.value,
                scheduled_date=as_utc(scheduled_date),
                recurrence=recurrence.value,
                status=CardActionStatus.PENDING.value,
                details=payload,
                seq=self._store.card_actions.next_seq(),
                occurrence=0,
                created_by_id=actor_id,
            ))
            action = row.to_dto()
            self._store.commit()
        except Exception:
            self._store.rollback()
            raise

        logger.info("card_action_scheduled", extra={
            "action_id": str(action.action_id),
            "card_id": str(card_id),
            "action_type": action_type.value,
            "recurrence": recurrence.value,
            "scheduled_date": action.scheduled_date,
        })
        return action

    def cancel(self, action_id: UUID, actor_id: UUID) -> ScheduledCardAction:
        """Cancel a PENDING action (one occurrence of a series)."""
        try:
            row = self._get_row(action_id, for_update=True)
            match CardActionStatus(row.status):
                case CardActionStatus.EXECUTED:
                    raise CardActionAlreadyExecutedError(str(action_id))
                case CardActionStatus.CANCELLED:
                    raise CardActionAlreadyCancelledError(str(action_id))
            row.status = CardActionStatus.CANCELLED.value
            row.cancelled_at = self._clock.now()
            row.updated_by_id = actor_id
            self._store.flush()
            action = row.to_dto()
            self._store.commit()
        except Exception:
            self._store.rollback()
            raise

        logger.info("card_action_cancelled", extra={"action_id": str(action_id)})
        return action

    # =========================================================================
    # Tick
    # =========================================================================

    def tick(self, now: datetime | None = None, actor_id: UUID | None = None) -> tuple[ExecutedAction, ...]:
        """Fire every action due at ``now``.

        Raises:
            TickInProgressError: Another tick is still running.
        """
        if not self._tick_lock.acquire(blocking=False):
            raise TickInProgressError()
        try:
            with LogContext.bind(correlation_id=uuid4()):
                return self._tick(as_utc(now or self._clock.now()), actor_id or SYSTEM_ACTOR_ID)
        finally:
            self._tick_lock.release()

    def _tick(self, now: datetime, actor_id: UUID) -> tuple[ExecutedAction, ...]:
        pending = [
            row.to_dto()
            for row in self._store.card_actions.list(statuses=[CardActionStatus.PENDING.value])
        ]
        due = card_schedule.order_due(pending, now)
        executed: list[ExecutedAction] = []

        try:
            for action in due:
                with LogContext.bind(actor_id=actor_id, entity_type="card_action", entity_id=action.action_id):
                    try:
                        with self._store.savepoint():
                            result = self._fire(action, now, actor_id)
                    except (CardNotFoundError, OptimisticLockError, InvalidCardActionError) as exc:
                        logger.warning("card_action_deferred", extra={
                            "card_id": str(action.card_id),
                            "error_code": exc.code,
                            "reason": str(exc),
                        })
                        continue
                if result is not None:
                    executed.append(result)
            self._store.commit()
        except Exception:
            self._store.rollback()
            raise

        logger.info("card_tick_completed", extra={
            "due": len(due),
            "executed": len(executed),
        })
        for result in executed:
            notify_safely(self._notifier, "card_action_executed", {
                "action_id": str(result.action_id),
                "card_id": str(result.card_id),
                "action_type": result.action_type.value,
                "card_status": result.card_status.value,
            })
        return tuple(executed)

    def _fire(self, action: ScheduledCardAction, now: datetime, actor_id: UUID) -> ExecutedAction | None:
        row = self._get_row(action.action_id, for_update=True)
        if row.status != CardActionStatus.PENDING.value:
            logger.info("card_action_already_resolved", extra={"status": row.status})
            return None

        with self._card_locks.hold(action.card_id):
            card = self._cards.get_card(action.card_id)
            if card is None:
                raise CardNotFoundError(str(action.card_id))
            target = card_schedule.apply_action(card, action)
            if target == card:
                updated = card
                if action.action_type != ActionType.LIMIT_CHANGE:
                    logger.info("card_action_noop", extra={"card_status": card.status.value})
            else:
                updated = self._cards.update_card(
                    action.card_id,
                    expected_version=card.version,
                    status=target.status if target.status != card.status else None,
                    spend_limits=(
                        target.spend_limits if target.spend_limits != card.spend_limits else None
                    ),
                )

        row.status = CardActionStatus.EXECUTED.value
        row.executed_at = now
        row.updated_by_id = actor_id
        successor = self._schedule_successor(row, action, actor_id)
        self._store.flush()

        logger.info("card_action_executed", extra={
            "card_id": str(action.card_id),
            "action_type": action.action_type.value,
            "card_status": updated.status.value,
        })
        return ExecutedAction(
            action_id=action.action_id,
            card_id=action.card_id,
            action_type=action.action_type,
            scheduled_date=action.scheduled_date,
            executed_at=now,
            card_status=updated.status,
            spend_limits=updated.spend_limits,
            successor_id=successor.id if successor is not None else None,
            successor_date=as_utc(successor.scheduled_date) if successor is not None else None,
        )

    def _schedule_successor(
        self,
        row: ScheduledCardActionModel,
        action: ScheduledCardAction,
        actor_id: UUID,
    ) -> ScheduledCardActionModel | None:
        if action.recurrence == Recurrence.ONCE:
            return None
        existing = self._store.card_actions.successor_of(action.action_id)
        if existing is not None:
            return existing

        root_id = action.series_root_id
        if root_id == action.action_id:
            root_date = action.scheduled_date
        else:
            root = self._get_row(root_id)
            root_date = as_utc(root.scheduled_date)
        occurrence = action.occurrence + 1
        next_date = card_schedule.next_occurrence(root_date, action.recurrence, occurrence)

        return self._store.card_actions.add(ScheduledCardActionModel(
            card_id=row.card_id,
            action_type=row.action_type,
            scheduled_date=next_date,
            recurrence=row.recurrence,
            status=CardActionStatus.PENDING.value,
            details=dict(row.details or {}),
            seq=self._store.card_actions.next_seq(),
            previous_action_id=row.id,
            root_action_id=root_id,
            occurrence=occurrence,
            created_by_id=actor_id,
        ))

    # =========================================================================
    # Queries
    # =========================================================================

    def get_action(self, action_id: UUID) -> ScheduledCardAction:
        return self._get_row(action_id).to_dto()

    def list_actions(
        self,
        card_id: UUID | None = None,
        status: CardActionStatus | str | None = None,
    ) -> tuple[ScheduledCardAction, ...]:
        statuses = None if status is None else [CardActionStatus(status).value]
        rows = self._store.card_actions.list(card_id=card_id, statuses=statuses)
        return tuple(row.to_dto() for row in rows)

    def series(self, action_id: UUID) -> tuple[ScheduledCardAction, ...]:
        """Every occurrence of the series ``action_id`` belongs to."""
        root_id = self.get_action(action_id).series_root_id
        return tuple(row.to_dto() for row in self._store.card_actions.series(root_id))

    def _get_row(self, action_id: UUID, *, for_update: bool = False) -> ScheduledCardActionModel:
        row = self._store.card_actions.get(action_id, for_update=for_update)
        if row is None:
            raise CardActionNotFoundError(str(action_id))
        return row


