"""
Tests for the scheduled card action engine.

Covers:
- Due selection and deterministic ordering
- Weekly / monthly occurrence dates anchored on the series root
- LIMIT_CHANGE detail validation
- Applying actions to card state
"""

from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from spend_engines.card_schedule import (
    add_months,
    apply_action,
    is_due,
    next_occurrence,
    order_due,
    parse_limits,
    validate_details,
)
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

NOW = datetime(2026, 1, 31, 9, 0, tzinfo=timezone.utc)
LIMITS = SpendLimits(Decimal("10000"), Decimal("50000"), Decimal("200000"))
NEW_LIMIT = {"newLimit": {"perTransaction": 5000, "daily": "20000", "monthly": 80000}}


def make_action(action_type=ActionType.FREEZE, when=NOW, seq=1, **kwargs):
    return ScheduledCardAction(
        action_id=kwargs.pop("action_id", uuid4()),
        card_id=kwargs.pop("card_id", uuid4()),
        action_type=action_type,
        scheduled_date=when,
        recurrence=kwargs.pop("recurrence", Recurrence.ONCE),
        status=kwargs.pop("status", CardActionStatus.PENDING),
        seq=seq,
        **kwargs,
    )


def make_card(status=CardStatus.ACTIVE):
    return CardControlState(card_id=uuid4(), status=status, spend_limits=LIMITS)


class TestDue:

    def test_only_pending_and_past(self):
        assert is_due(make_action(when=NOW), NOW)
        assert not is_due(make_action(when=datetime(2026, 2, 1, tzinfo=timezone.utc)), NOW)
        assert not is_due(make_action(status=CardActionStatus.CANCELLED), NOW)

    def test_ordered_by_date_then_seq(self):
        later = make_action(when=NOW, seq=1)
        unfreeze = make_action(ActionType.UNFREEZE, when=datetime(2026, 1, 30, tzinfo=timezone.utc), seq=3)
        freeze = make_action(ActionType.FREEZE, when=datetime(2026, 1, 30, tzinfo=timezone.utc), seq=2)

        ordered = order_due([later, unfreeze, freeze], NOW)

        assert ordered == [freeze, unfreeze, later]


class TestOccurrences:

    def test_once_has_no_successor(self):
        assert next_occurrence(NOW, Recurrence.ONCE, 1) is None

    def test_weekly(self):
        assert next_occurrence(NOW, Recurrence.WEEKLY, 2) == datetime(2026, 2, 14, 9, 0, tzinfo=timezone.utc)

    def test_monthly_clamps_without_drift(self):
        assert next_occurrence(NOW, Recurrence.MONTHLY, 1) == datetime(2026, 2, 28, 9, 0, tzinfo=timezone.utc)
        assert next_occurrence(NOW, Recurrence.MONTHLY, 2) == datetime(2026, 3, 31, 9, 0, tzinfo=timezone.utc)

    def test_add_months_crosses_year(self):
        assert add_months(datetime(2026, 11, 15), 3) == datetime(2027, 2, 15)


class TestLimitDetails:

    def test_parse_limits(self):
        assert parse_limits(NEW_LIMIT) == SpendLimits(Decimal("5000"), Decimal("20000"), Decimal("80000"))

    @pytest.mark.parametrize("details", [
        {},
        {"newLimit": {"perTransaction": 1, "daily": 2}},
        {"newLimit": {"perTransaction": "x", "daily": 2, "monthly": 3}},
        {"newLimit": {"perTransaction": -1, "daily": 2, "monthly": 3}},
    ])
    def test_invalid_limits(self, details):
        with pytest.raises(InvalidCardActionError):
            validate_details(ActionType.LIMIT_CHANGE, details)

    def test_freeze_needs_no_details(self):
        assert validate_details(ActionType.FREEZE, None) == {}


class TestApplyAction:

    def test_freeze_and_unfreeze(self):
        card = make_card()
        frozen = apply_action(card, make_action(ActionType.FREEZE))
        assert frozen.status == CardStatus.FROZEN
        assert apply_action(frozen, make_action(ActionType.UNFREEZE)).status == CardStatus.ACTIVE

    def test_freeze_is_idempotent(self):
        card = make_card(CardStatus.FROZEN)
        assert apply_action(card, make_action(ActionType.FREEZE)) == card

    def test_blocked_card_not_reactivated(self):
        card = make_card(CardStatus.BLOCKED)
        assert apply_action(card, make_action(ActionType.UNFREEZE)) == card

    def test_limit_change(self):
        updated = apply_action(make_card(), make_action(ActionType.LIMIT_CHANGE, details=NEW_LIMIT))
        assert updated.spend_limits.daily == Decimal("20000")
        assert updated.status == CardStatus.ACTIVE
