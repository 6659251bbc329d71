"""
ApprovalRouter -- resolves approver chains and drives workflow requests.

Contract:
    Opens workflow requests with a chain materialized from the matching
    ApprovalChainRule, submits expense reports for approval, and applies
    approver decisions one step at a time.

Guarantees:
    - ``advance`` is serialized per request: an in-process keyed lock plus
      a row lock (FOR UPDATE) mean two approvers can never decide the same
      step concurrently.
    - The stored status is always derived from the stored chain.
    - A report containing a HARD_VIOLATION expense is never submitted.
    - When an expense-report request reaches APPROVED the report is marked
      APPROVED in the same transaction; ``ReportApprovalListener``s are
      called after commit.

Failure modes:
    - NoMatchingChainRuleError (ConfigurationError) is logged at CRITICAL
      and fails only the operation that hit it.

Transaction boundary: each public mutator commits on success and rolls
    back on failure.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from spend_config.schema import SpendConfig
from spend_engines import approval_chain
from spend_kernel.concurrency import KeyedLocks
from spend_kernel.domain.clock import Clock, SystemClock
from spend_kernel.domain.policy import PolicyStatus
from spend_kernel.domain.ports import ApproverDirectory, Notifier, ReportApprovalListener
from spend_kernel.domain.report import SUBMITTABLE_REPORT_STATUSES, ReportStatus
from spend_kernel.domain.workflow import (
    ApproverAction,
    ApproverStep,
    WorkflowRequest,
    WorkflowStatus,
    WorkflowType,
)
from spend_kernel.exceptions import (
    ExpenseReportNotFoundError,
    HardViolationBlockedError,
    NoMatchingChainRuleError,
    ReportNotSubmittableError,
    WorkflowNotFoundError,
)
from spend_kernel.logging_config import LogContext, get_logger
from spend_kernel.models.approval import WorkflowRequestModel
from spend_kernel.models.expense import ExpenseReportModel
from spend_kernel.repositories import Store
from spend_services.notifications import ConfigApproverDirectory, LoggingNotifier, notify_safely

logger = get_logger("services.approval_router")


class ApprovalRouter:
    """Approval chain router over the workflow store."""

    def __init__(
        self,
        store: Store,
        config: SpendConfig,
        clock: Clock | None = None,
        notifier: Notifier | None = None,
        approver_directory: ApproverDirectory | None = None,
        listeners: Sequence[ReportApprovalListener] = (),
        locks: KeyedLocks | None = None,
    ):
        self._store = store
        self._config = config
        self._clock = clock or SystemClock()
        self._notifier = notifier or LoggingNotifier()
        self._approvers = approver_directory or ConfigApproverDirectory(config.approvers)
        self._listeners: list[ReportApprovalListener] = list(listeners)
        self._locks = locks if locks is not None else KeyedLocks()

    def add_listener(self, listener: ReportApprovalListener) -> None:
        self._listeners.append(listener)

    # =========================================================================
    # Resolution
    # =========================================================================

    def resolve_chain(self, amount: Decimal, category: str) -> tuple[ApproverStep, ...]:
        rules = [row.to_dto() for row in self._store.chain_rules.list()]
        try:
            return approval_chain.resolve_chain(rules, amount, category)
        except NoMatchingChainRuleError:
            logger.critical("chain_rule_missing", extra={
                "amount": str(amount),
                "category": category,
                "active_rules": len(rules),
            })
            raise

    # =========================================================================
    # Opening requests
    # =========================================================================

    def open_request(
        self,
        request_type: WorkflowType | str,
        requestor_id: UUID,
        requestor_name: str,
        amount: Decimal,
        category: str,
        department: str | None = None,
        subject_id: UUID | None = None,
        details: dict[str, Any] | None = None,
    ) -> WorkflowRequest:
        try:
            request = self._open(
                WorkflowType(request_type), requestor_id, requestor_name,
                amount, category, department, subject_id, details,
            )
            self._store.commit()
        except Exception:
            self._store.rollback()
            raise
        self._announce(request)
        return request

    def submit_report(self, report_id: UUID, actor_id: UUID) -> WorkflowRequest:
        """Submit a DRAFT or REJECTED report into its approval chain.

        Raises:
            ReportNotSubmittableError: Report is not DRAFT / REJECTED.
            HardViolationBlockedError: Report holds HARD_VIOLATION expenses.
        """
        with LogContext.bind(actor_id=actor_id, entity_type="expense_report", entity_id=report_id):
            try:
                report = self._store.reports.get(report_id, for_update=True)
                if report is None:
                    raise ExpenseReportNotFoundError(str(report_id))
                if ReportStatus(report.status) not in SUBMITTABLE_REPORT_STATUSES:
                    raise ReportNotSubmittableError(str(report_id), report.status)

                blocked = tuple(
                    str(row.id)
                    for row in self._store.expenses.list_by_report(report_id)
                    if row.policy_status == PolicyStatus.HARD_VIOLATION.value
                )
                if blocked:
                    logger.warning("report_submission_blocked", extra={
                        "hard_violations": len(blocked),
                    })
                    raise HardViolationBlockedError(str(report_id), blocked)

                request = self._open(
                    WorkflowType.EXPENSE_REPORT,
                    report.employee_id,
                    report.employee_name,
                    report.total_amount,
                    report.category,
                    report.department,
                    report.id,
                    {"report_number": report.report_number},
                )
                report.status = ReportStatus.SUBMITTED.value
                report.workflow_request_id = request.request_id
                report.updated_by_id = actor_id
                self._store.commit()
            except Exception:
                self._store.rollback()
                raise

            logger.info("report_submitted", extra={
                "request_id": str(request.request_id),
                "steps": len(request.approval_chain),
            })
        self._announce(request)
        return request

    def _open(
        self,
        request_type: WorkflowType,
        requestor_id: UUID,
        requestor_name: str,
        amount: Decimal,
        category: str,
        department: str | None,
        subject_id: UUID | None,
        details: dict[str, Any] | None,
    ) -> WorkflowRequest:
        steps = self.resolve_chain(amount, category)
        chain = approval_chain.materialize_chain(
            steps, lambda role: self._approvers.approver_name(role, department)
        )
        now = self._clock.now()
        row = self._store.workflows.add(WorkflowRequestModel(
            request_type=request_type.value,
            requestor_id=requestor_id,
            requestor_name=requestor_name,
            department=department,
            subject_id=subject_id,
            amount=amount,
            category=category,
            status=approval_chain.derive_status(chain).value,
            approval_chain=[entry.to_dict() for entry in chain],
            comments=[],
            details=dict(details or {}),
            opened_at=now,
            last_action_at=now,
            created_by_id=requestor_id,
        ))
        return row.to_dto()

    # =========================================================================
    # Advancing
    # =========================================================================

    def advance(self, request_id: UUID, action: ApproverAction) -> WorkflowRequest:
        """Apply one approver decision (serialized per request)."""
        approved_report = None
        with self._locks.hold(request_id), LogContext.bind(
            actor_id=action.actor_id, entity_type="workflow_request", entity_id=request_id,
        ):
            try:
                row = self._get_row(request_id, for_update=True)
                before = row.to_dto()
                updated = approval_chain.advance(before, action, self._clock.now())
                row.apply(updated, action.actor_id)

                if updated.request_type == WorkflowType.EXPENSE_REPORT and updated.subject_id:
                    approved_report = self._sync_report(updated, action.actor_id)
                self._store.commit()
            except Exception:
                self._store.rollback()
                raise

            logger.info("workflow_advanced", extra={
                "decision": action.decision.value,
                "from_status": before.status.value,
                "to_status": updated.status.value,
                "current_approver": updated.current_approver,
            })

        notify_safely(self._notifier, "workflow_advanced", {
            "request_id": str(request_id),
            "status": updated.status.value,
            "decision": action.decision.value,
            "current_approver": updated.current_approver,
        })
        if approved_report is not None:
            for listener in self._listeners:
                try:
                    listener.on_report_approved(approved_report, action.actor_id)
                except Exception:
                    logger.exception("report_approval_listener_failed", extra={
                        "report_id": str(approved_report.report_id),
                        "listener": type(listener).__name__,
                    })
        return updated

    def _sync_report(self, request: WorkflowRequest, actor_id: UUID):
        """Mirror a resolved report request onto its report; returns it if APPROVED."""
        report: ExpenseReportModel | None = self._store.reports.get(
            request.subject_id, for_update=True
        )
        if report is None:
            raise ExpenseReportNotFoundError(str(request.subject_id))
        match request.status:
            case WorkflowStatus.APPROVED:
                report.status = ReportStatus.APPROVED.value
            case WorkflowStatus.REJECTED:
                report.status = ReportStatus.REJECTED.value
            case WorkflowStatus.CANCELLED:
                report.status = ReportStatus.DRAFT.value
            case _:
                return None
        report.updated_by_id = actor_id
        self._store.flush()
        return report.to_dto() if request.status == WorkflowStatus.APPROVED else None

    def withdraw(
        self,
        request_id: UUID,
        requestor_id: UUID,
        reason: str | None = None,
    ) -> WorkflowRequest:
        """Requestor withdrawal from PENDING / IN_REVIEW."""
        with self._locks.hold(request_id):
            try:
                row = self._get_row(request_id, for_update=True)
                updated = approval_chain.withdraw(
                    row.to_dto(), requestor_id, self._clock.now(), reason
                )
                row.apply(updated, requestor_id)
                if updated.request_type == WorkflowType.EXPENSE_REPORT and updated.subject_id:
                    self._sync_report(updated, requestor_id)
                self._store.commit()
            except Exception:
                self._store.rollback()
                raise

        logger.info("workflow_withdrawn", extra={"request_id": str(request_id)})
        notify_safely(self._notifier, "workflow_withdrawn", {"request_id": str(request_id)})
        return updated

    # =========================================================================
    # Queries
    # =========================================================================

    def find_overdue(
        self,
        now: datetime | None = None,
        hours: int | None = None,
    ) -> tuple[WorkflowRequest, ...]:
        """Open requests whose current step has waited past the window.

        Each overdue request is reported to the notifier as
        ``approval_overdue``.
        """
        now = now or self._clock.now()
        window = hours if hours is not None else self._config.escalation_hours
        open_statuses = (WorkflowStatus.PENDING.value, WorkflowStatus.IN_REVIEW.value)
        overdue = tuple(
            request
            for request in (row.to_dto() for row in self._store.workflows.list(open_statuses))
            if approval_chain.is_overdue(request, now, window)
        )
        for request in overdue:
            notify_safely(self._notifier, "approval_overdue", {
                "request_id": str(request.request_id),
                "current_approver": request.current_approver,
                "waiting_since": approval_chain.waiting_since(request),
            })
        if overdue:
            logger.warning("approvals_overdue", extra={"count": len(overdue), "hours": window})
        return overdue

    def get_request(self, request_id: UUID) -> WorkflowRequest:
        return self._get_row(request_id).to_dto()

    def list_requests(self, status: WorkflowStatus | str | None = None) -> tuple[WorkflowRequest, ...]:
        statuses = None if status is None else [WorkflowStatus(status).value]
        return tuple(row.to_dto() for row in self._store.workflows.list(statuses))

    def _get_row(self, request_id: UUID, *, for_update: bool = False) -> WorkflowRequestModel:
        row = self._store.workflows.get(request_id, for_update=for_update)
        if row is None:
            raise WorkflowNotFoundError(str(request_id))
        return row

    def _announce(self, request: WorkflowRequest) -> None:
        notify_safely(self._notifier, "approval_requested", {
            "request_id": str(request.request_id),
            "request_type": request.request_type.value,
            "amount": str(request.amount),
            "current_approver": request.current_approver,
        })
