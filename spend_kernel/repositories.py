"""
Store interface and its SQLAlchemy implementation.

Contract:
    Services receive a ``Store`` and never build queries themselves.  A
    store bundles one repository per aggregate plus the unit-of-work
    controls (``commit``, ``rollback``, ``savepoint``).

Architecture position:
    Kernel > persistence.  Imports ORM models; never imports engines or
    services.

Invariants enforced:
    - ``get(..., for_update=True)`` issues SELECT ... FOR UPDATE (ignored
      by SQLite) so concurrent writers serialize on the row.
    - Sequence numbers (chain rules, card actions) are allocated as
      max + 1 under a UNIQUE constraint; a collision fails the flush.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from typing import Generic, Protocol, TypeVar
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from spend_kernel.db.base import Base
from spend_kernel.models.approval import ApprovalChainRuleModel, WorkflowRequestModel
from spend_kernel.models.card import CardModel, ScheduledCardActionModel
from spend_kernel.models.expense import ExpenseModel, ExpenseReportModel
from spend_kernel.models.policy import PolicyEvaluationModel, PolicyModel, PolicyVersionModel
from spend_kernel.models.reimbursement import ReimbursementModel

M = TypeVar("M", bound=Base)


class _Repository(Generic[M]):
    model: type[M]

    def __init__(self, session: Session):
        self._session = session

    def add(self, row: M) -> M:
        self._session.add(row)
        self._session.flush()
        return row

    def get(self, entity_id: UUID, *, for_update: bool = False) -> M | None:
        if not for_update:
            return self._session.get(self.model, entity_id)
        stmt = select(self.model).where(self.model.id == entity_id).with_for_update()
        return self._session.execute(stmt).scalars().first()

    def _all(self, stmt) -> list[M]:
        return list(self._session.execute(stmt).scalars().all())

    def _next_seq(self) -> int:
        current = self._session.execute(select(func.max(self.model.seq))).scalar()
        return (current or 0) + 1


class PolicyRepository(_Repository[PolicyModel]):
    model = PolicyModel

    def list(self, *, include_inactive: bool = False, include_deleted: bool = False) -> list[PolicyModel]:
        stmt = select(PolicyModel)
        if not include_deleted:
            stmt = stmt.where(PolicyModel.is_deleted.is_(False))
        if not include_inactive:
            stmt = stmt.where(PolicyModel.is_active.is_(True))
        return self._all(stmt.order_by(PolicyModel.created_at, PolicyModel.name))

    def add_version(self, row: PolicyVersionModel) -> PolicyVersionModel:
        self._session.add(row)
        self._session.flush()
        return row

    def versions(self, policy_id: UUID) -> list[PolicyVersionModel]:
        stmt = (
            select(PolicyVersionModel)
            .where(PolicyVersionModel.policy_id == policy_id)
            .order_by(PolicyVersionModel.version)
        )
        return list(self._session.execute(stmt).scalars().all())


class ChainRuleRepository(_Repository[ApprovalChainRuleModel]):
    model = ApprovalChainRuleModel

    def list(self, *, include_inactive: bool = False) -> list[ApprovalChainRuleModel]:
        stmt = select(ApprovalChainRuleModel).where(
            ApprovalChainRuleModel.is_deleted.is_(False)
        )
        if not include_inactive:
            stmt = stmt.where(ApprovalChainRuleModel.is_active.is_(True))
        return self._all(stmt.order_by(ApprovalChainRuleModel.seq))

    def next_seq(self) -> int:
        return self._next_seq()


class ExpenseRepository(_Repository[ExpenseModel]):
    model = ExpenseModel

    def list(self, expense_ids: Iterable[UUID] | None = None) -> list[ExpenseModel]:
        stmt = select(ExpenseModel)
        if expense_ids is not None:
            stmt = stmt.where(ExpenseModel.id.in_(list(expense_ids)))
        return self._all(stmt.order_by(ExpenseModel.expense_date, ExpenseModel.created_at))

    def list_by_report(self, report_id: UUID) -> list[ExpenseModel]:
        stmt = select(ExpenseModel).where(ExpenseModel.report_id == report_id)
        return self._all(stmt.order_by(ExpenseModel.expense_date))

    def list_open(self, closed_report_statuses: Iterable[str]) -> list[ExpenseModel]:
        """Expenses that are unreported or sit in a report not yet closed."""
        closed = (
            select(ExpenseReportModel.id)
            .where(ExpenseReportModel.status.in_(list(closed_report_statuses)))
        )
        stmt = select(ExpenseModel).where(
            (ExpenseModel.report_id.is_(None)) | (ExpenseModel.report_id.not_in(closed))
        )
        return self._all(stmt.order_by(ExpenseModel.expense_date))


class ReportRepository(_Repository[ExpenseReportModel]):
    model = ExpenseReportModel


class EvaluationRepository(_Repository[PolicyEvaluationModel]):
    model = PolicyEvaluationModel

    def history(self, expense_id: UUID) -> list[PolicyEvaluationModel]:
        stmt = (
            select(PolicyEvaluationModel)
            .where(PolicyEvaluationModel.expense_id == expense_id)
            .order_by(PolicyEvaluationModel.evaluated_at)
        )
        return self._all(stmt)


class WorkflowRepository(_Repository[WorkflowRequestModel]):
    model = WorkflowRequestModel

    def list(self, statuses: Iterable[str] | None = None) -> list[WorkflowRequestModel]:
        stmt = select(WorkflowRequestModel)
        if statuses is not None:
            stmt = stmt.where(WorkflowRequestModel.status.in_(list(statuses)))
        return self._all(stmt.order_by(WorkflowRequestModel.opened_at))


class ReimbursementRepository(_Repository[ReimbursementModel]):
    model = ReimbursementModel

    def get_by_report(self, report_id: UUID) -> ReimbursementModel | None:
        stmt = select(ReimbursementModel).where(
            ReimbursementModel.expense_report_id == report_id
        )
        return self._session.execute(stmt).scalars().first()

    def list(self, statuses: Iterable[str] | None = None) -> list[ReimbursementModel]:
        stmt = select(ReimbursementModel)
        if statuses is not None:
            stmt = stmt.where(ReimbursementModel.status.in_(list(statuses)))
        return self._all(stmt.order_by(ReimbursementModel.created_at, ReimbursementModel.report_number))


class CardRepository(_Repository[CardModel]):
    model = CardModel


class CardActionRepository(_Repository[ScheduledCardActionModel]):
    model = ScheduledCardActionModel

    def list(
        self,
        *,
        card_id: UUID | None = None,
        statuses: Iterable[str] | None = None,
    ) -> list[ScheduledCardActionModel]:
        stmt = select(ScheduledCardActionModel)
        if card_id is not None:
            stmt = stmt.where(ScheduledCardActionModel.card_id == card_id)
        if statuses is not None:
            stmt = stmt.where(ScheduledCardActionModel.status.in_(list(statuses)))
        return self._all(
            stmt.order_by(ScheduledCardActionModel.scheduled_date, ScheduledCardActionModel.seq)
        )

    def series(self, root_action_id: UUID) -> list[ScheduledCardActionModel]:
        stmt = select(ScheduledCardActionModel).where(
            (ScheduledCardActionModel.id == root_action_id)
            | (ScheduledCardActionModel.root_action_id == root_action_id)
        )
        return self._all(stmt.order_by(ScheduledCardActionModel.occurrence))

    def successor_of(self, action_id: UUID) -> ScheduledCardActionModel | None:
        stmt = select(ScheduledCardActionModel).where(
            ScheduledCardActionModel.previous_action_id == action_id
        )
        return self._session.execute(stmt).scalars().first()

    def next_seq(self) -> int:
        return self._next_seq()


# =========================================================================
# Store
# =========================================================================


class Store(Protocol):
    """Unit of work over every aggregate the core touches."""

    policies: PolicyRepository
    chain_rules: ChainRuleRepository
    expenses: ExpenseRepository
    reports: ReportRepository
    evaluations: EvaluationRepository
    workflows: WorkflowRepository
    reimbursements: ReimbursementRepository
    cards: CardRepository
    card_actions: CardActionRepository

    def commit(self) -> None: ...

    def rollback(self) -> None: ...

    def flush(self) -> None: ...

    def savepoint(self): ...


class SqlAlchemyStore:
    """``Store`` backed by one SQLAlchemy session."""

    def __init__(self, session: Session):
        self.session = session
        self.policies = PolicyRepository(session)
        self.chain_rules = ChainRuleRepository(session)
        self.expenses = ExpenseRepository(session)
        self.reports = ReportRepository(session)
        self.evaluations = EvaluationRepository(session)
        self.workflows = WorkflowRepository(session)
        self.reimbursements = ReimbursementRepository(session)
        self.cards = CardRepository(session)
        self.card_actions = CardActionRepository(session)

    def commit(self) -> None:
        self.session.commit()
        # Long-lived stores (the tick driver) must not serve stale rows.
        self.session.expire_all()

    def rollback(self) -> None:
        self.session.rollback()

    def flush(self) -> None:
        self.session.flush()

    @contextmanager
    def savepoint(self) -> Iterator[None]:
        """SAVEPOINT scope: released on success, rolled back on exception."""
        with self.session.begin_nested():
            yield

    def close(self) -> None:
        self.session.close()
