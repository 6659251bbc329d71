"""
Pytest fixtures for the spend control test suite.

Provides:
- An in-memory SQLite database per test (StaticPool, SAVEPOINT enabled)
- A SqlAlchemyStore and fully wired services over it
- A DeterministicClock and a RecordingNotifier
- Structured log capture

Environment Variables:
- SPEND_TEST_DATABASE_URL: run the suite against another database
  (e.g. PostgreSQL).  Defaults to in-memory SQLite.
"""

import json
import logging
import os
from datetime import date, datetime, timezone
from decimal import Decimal
from io import StringIO
from uuid import uuid4

import pytest
from sqlalchemy.orm import sessionmaker

from spend_config import DEFAULT_CONFIG_PATH, get_active_config
from spend_kernel.db.engine import build_engine, create_tables, drop_tables
from spend_kernel.domain.card_action import SpendLimits
from spend_kernel.domain.clock import DeterministicClock
from spend_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from spend_kernel.repositories import SqlAlchemyStore
from spend_services.approval_router import ApprovalRouter
from spend_services.card_action_executor import CardActionExecutor, SqlCardDirectory
from spend_services.compliance_service import ComplianceService
from spend_services.reimbursement_service import ReimbursementService
from spend_services.ruleset_service import RuleSetService

# Test actor ID for all test operations
TEST_ACTOR_ID = uuid4()

DEFAULT_TEST_URL = "sqlite:///:memory:"

START_TIME = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class RecordingNotifier:
    """Notifier that keeps every event in memory."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict]] = []

    def notify(self, event: str, payload: dict) -> None:
        self.events.append((event, dict(payload)))

    def of(self, event: str) -> list[dict]:
        return [payload for name, payload in self.events if name == event]


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture spend_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, compliance):
            compliance.record_expense(...)
            logs = captured_logs()
            assert any(r["message"] == "policy_evaluated" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("spend_kernel")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def engine():
    eng = build_engine(os.environ.get("SPEND_TEST_DATABASE_URL", DEFAULT_TEST_URL))
    create_tables(eng)
    yield eng
    drop_tables(eng)
    eng.dispose()


@pytest.fixture
def session(engine):
    factory = sessionmaker(bind=engine, expire_on_commit=False)
    sess = factory()
    yield sess
    sess.rollback()
    sess.close()


@pytest.fixture
def store(session):
    return SqlAlchemyStore(session)


# =============================================================================
# Collaborators
# =============================================================================


@pytest.fixture
def clock():
    return DeterministicClock(START_TIME)


@pytest.fixture
def config():
    return get_active_config(DEFAULT_CONFIG_PATH)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def actor_id():
    return TEST_ACTOR_ID


# =============================================================================
# Services
# =============================================================================


@pytest.fixture
def compliance(store, config, clock):
    return ComplianceService(store, config, clock)


@pytest.fixture
def ruleset(store, compliance):
    return RuleSetService(store, listeners=[compliance])


@pytest.fixture
def reimbursements(store, config, clock, notifier):
    return ReimbursementService(store, config, clock, notifier)


@pytest.fixture
def router(store, config, clock, notifier, reimbursements):
    return ApprovalRouter(store, config, clock, notifier, listeners=[reimbursements])


@pytest.fixture
def card_directory(store):
    return SqlCardDirectory(store)


@pytest.fixture
def card_executor(store, card_directory, clock, notifier):
    return CardActionExecutor(store, card_directory, clock, notifier)


@pytest.fixture
def seeded(ruleset, config, actor_id):
    """Default policies and chain rules from defaults.yaml."""
    return ruleset.seed_defaults(config, actor_id)


# =============================================================================
# Factories
# =============================================================================


@pytest.fixture
def make_expense(compliance, actor_id):
    employee_id = uuid4()

    def _make(amount="1000", category="Meals", **kwargs):
        kwargs.setdefault("has_receipt", True)
        return compliance.record_expense(
            kwargs.pop("employee_id", employee_id),
            Decimal(str(amount)),
            category,
            kwargs.pop("expense_date", date(2026, 1, 1)),
            actor_id,
            **kwargs,
        )

    return _make


@pytest.fixture
def make_report(compliance, actor_id):
    counter = iter(range(1, 10_000))

    def _make(total="10000", category="Travel", expense_ids=(), **kwargs):
        kwargs.setdefault("department", "Engineering")
        kwargs.setdefault("bank_account", "50100012345678")
        kwargs.setdefault("ifsc_code", "HDFC0001234")
        kwargs.setdefault("bank_name", "HDFC Bank")
        return compliance.create_report(
            kwargs.pop("report_number", f"EXP-2026-{next(counter):04d}"),
            kwargs.pop("employee_id", uuid4()),
            kwargs.pop("employee_name", "Asha Rao"),
            category,
            Decimal(str(total)),
            actor_id,
            expense_ids=expense_ids,
            **kwargs,
        )

    return _make


@pytest.fixture
def make_card(card_directory, actor_id):
    def _make(status=None, limits=None):
        kwargs = {} if status is None else {"status": status}
        return card_directory.register_card(
            "4242",
            uuid4(),
            limits or SpendLimits(Decimal("10000"), Decimal("50000"), Decimal("200000")),
            actor_id,
            **kwargs,
        )

    return _make
