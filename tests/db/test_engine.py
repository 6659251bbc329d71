"""
Tests for the module-level engine and the ORM column types.

Covers:
- session_scope commits on success and rolls back on error
- reset_engine clears module state
- Timestamps with an offset are stored as the same UTC instant
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from spend_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_engine,
    get_session,
    init_engine_from_url,
    reset_engine,
    session_scope,
)
from spend_kernel.models.card import CardModel, ScheduledCardActionModel

IST = timezone(timedelta(hours=5, minutes=30))


@pytest.fixture
def module_engine():
    engine = init_engine_from_url("sqlite://")
    create_tables()
    yield engine
    drop_tables()
    reset_engine()


def _card(actor_id):
    return CardModel(
        last4="4242",
        employee_id=uuid4(),
        status="ACTIVE",
        limit_per_transaction=Decimal("1000"),
        limit_daily=Decimal("5000"),
        limit_monthly=Decimal("20000"),
        created_by_id=actor_id,
    )


def _card_count():
    session = get_session()
    try:
        return session.execute(select(func.count()).select_from(CardModel)).scalar_one()
    finally:
        session.close()


class TestSessionScope:

    def test_commits_on_exit(self, module_engine, actor_id):
        with session_scope() as session:
            session.add(_card(actor_id))

        assert _card_count() == 1

    def test_rolls_back_on_error(self, module_engine, actor_id, captured_logs):
        with pytest.raises(RuntimeError):
            with session_scope() as session:
                session.add(_card(actor_id))
                session.flush()
                raise RuntimeError("boom")

        assert _card_count() == 0
        assert any(r["message"] == "transaction_rolled_back" for r in captured_logs())


class TestResetEngine:

    def test_reset_clears_state(self, actor_id):
        init_engine_from_url("sqlite://")
        assert get_engine().dialect.name == "sqlite"

        reset_engine()

        with pytest.raises(RuntimeError):
            get_engine()
        with pytest.raises(RuntimeError):
            get_session()
        with pytest.raises(RuntimeError):
            with session_scope():
                pass


class TestUTCDateTime:

    def test_offset_stored_as_utc_instant(self, module_engine, actor_id):
        with session_scope() as session:
            card = _card(actor_id)
            session.add(card)
            session.flush()
            action = ScheduledCardActionModel(
                card_id=card.id,
                action_type="FREEZE",
                scheduled_date=datetime(2026, 1, 1, 17, 0, tzinfo=IST),
                recurrence="ONCE",
                status="PENDING",
                details={},
                seq=1,
                occurrence=0,
                created_by_id=actor_id,
            )
            session.add(action)
            session.flush()
            action_id = action.id

        session = get_session()
        try:
            stored = session.get(ScheduledCardActionModel, action_id).scheduled_date
        finally:
            session.close()

        assert stored == datetime(2026, 1, 1, 11, 30, tzinfo=timezone.utc)
        assert stored.utcoffset() == timedelta(0)
