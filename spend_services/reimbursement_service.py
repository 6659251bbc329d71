"""
ReimbursementService -- settlement and payment state machine.

Contract:
    Creates one reimbursement per APPROVED expense report (gross / TDS /
    net), drives it PENDING -> INITIATED -> PROCESSING -> PAID | FAILED,
    and exports the NEFT payment file over INITIATED and PROCESSING
    records.  Registered with the approval router as a
    ``ReportApprovalListener`` so approval triggers settlement.

Guarantees:
    - ``net_amount == gross_amount - tds_amount`` on every stored record.
    - ``compute_settlement`` is idempotent per report.
    - ``initiate`` is a no-op on INITIATED-or-later records (including
      FAILED, which needs ``reinitiate``).
    - ``bulk_initiate`` runs each id in its own SAVEPOINT; one failure
      never blocks the others.

Transaction boundary: each public mutator commits on success and rolls
    back on failure.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import date
from uuid import UUID

from spend_config.schema import SpendConfig
from spend_engines import settlement
from spend_kernel.domain.clock import Clock, SystemClock
from spend_kernel.domain.ports import Notifier
from spend_kernel.domain.reimbursement import (
    INITIATED_OR_LATER,
    PAYABLE_STATUSES,
    BulkInitiateOutcome,
    Reimbursement,
    ReimbursementStatus,
)
from spend_kernel.domain.report import ExpenseReport, ReportStatus
from spend_kernel.exceptions import (
    EmptyPaymentFileError,
    ExpenseReportNotFoundError,
    InvalidReimbursementTransitionError,
    MissingBankDetailsError,
    NegativeNetAmountError,
    ReimbursementNotFoundError,
    ReportNotApprovedError,
    SpendKernelError,
)
from spend_kernel.logging_config import LogContext, get_logger
from spend_kernel.models.reimbursement import ReimbursementModel
from spend_kernel.repositories import Store
from spend_services.notifications import LoggingNotifier, notify_safely

logger = get_logger("services.reimbursement")


class ReimbursementService:
    """Settlement calculator and payment state machine."""

    def __init__(
        self,
        store: Store,
        config: SpendConfig,
        clock: Clock | None = None,
        notifier: Notifier | None = None,
    ):
        self._store = store
        self._config = config
        self._clock = clock or SystemClock()
        self._notifier = notifier or LoggingNotifier()

    # =========================================================================
    # Settlement
    # =========================================================================

    def compute_settlement(self, report_id: UUID, actor_id: UUID) -> Reimbursement:
        """Create the reimbursement for an APPROVED report.

        Returns the existing record when the report was already settled.

        Raises:
            ReportNotApprovedError: Report is not APPROVED.
            NegativeNetAmountError: TDS would exceed gross (config bug).
        """
        with LogContext.bind(actor_id=actor_id, entity_type="expense_report", entity_id=report_id):
            try:
                existing = self._store.reimbursements.get_by_report(report_id)
                if existing is not None:
                    logger.info("settlement_exists", extra={
                        "reimbursement_id": str(existing.id),
                    })
                    return existing.to_dto()

                report = self._store.reports.get(report_id, for_update=True)
                if report is None:
                    raise ExpenseReportNotFoundError(str(report_id))
                if report.status != ReportStatus.APPROVED.value:
                    raise ReportNotApprovedError(str(report_id), report.status)

                amounts = settlement.compute_settlement(
                    report.total_amount, report.category, self._config.tds_sections
                )
                if amounts.clamped:
                    raise NegativeNetAmountError(
                        str(report_id), str(amounts.gross_amount), str(amounts.tds_amount)
                    )

                row = self._store.reimbursements.add(ReimbursementModel(
                    expense_report_id=report.id,
                    report_number=report.report_number,
                    employee_id=report.employee_id,
                    employee_name=report.employee_name,
                    department=report.department,
                    gross_amount=amounts.gross_amount,
                    tds_section=amounts.tds_section,
                    tds_rate=amounts.tds_rate,
                    tds_amount=amounts.tds_amount,
                    net_amount=amounts.net_amount,
                    status=ReimbursementStatus.PENDING.value,
                    payment_method=self._config.payment_method,
                    bank_account=report.bank_account,
                    ifsc_code=report.ifsc_code,
                    bank_name=report.bank_name,
                    created_by_id=actor_id,
                ))
                reimbursement = row.to_dto()
                self._store.commit()
            except Exception:
                self._store.rollback()
                raise

            logger.info("settlement_computed", extra={
                "reimbursement_id": str(reimbursement.reimbursement_id),
                "gross_amount": str(reimbursement.gross_amount),
                "tds_section": reimbursement.tds_section,
                "tds_amount": str(reimbursement.tds_amount),
                "net_amount": str(reimbursement.net_amount),
            })
        return reimbursement

    def on_report_approved(self, report: ExpenseReport, actor_id: UUID) -> None:
        self.compute_settlement(report.report_id, actor_id)

    # =========================================================================
    # State machine
    # =========================================================================

    def initiate(self, reimbursement_id: UUID, actor_id: UUID) -> Reimbursement:
        """PENDING -> INITIATED; a no-op returning the record if already past it.

        Raises:
            MissingBankDetailsError: No bank account or IFSC on record.
        """
        try:
            result = self._initiate_row(reimbursement_id, actor_id)
            self._store.commit()
        except Exception:
            self._store.rollback()
            raise
        return result

    def bulk_initiate(
        self,
        reimbursement_ids: Iterable[UUID],
        actor_id: UUID,
    ) -> tuple[BulkInitiateOutcome, ...]:
        """Initiate each id in its own SAVEPOINT and report per-id outcomes."""
        outcomes: list[BulkInitiateOutcome] = []
        try:
            for reimbursement_id in reimbursement_ids:
                try:
                    with self._store.savepoint():
                        result = self._initiate_row(reimbursement_id, actor_id)
                except SpendKernelError as exc:
                    logger.warning("bulk_initiate_item_failed", extra={
                        "reimbursement_id": str(reimbursement_id),
                        "error_code": exc.code,
                    })
                    outcomes.append(BulkInitiateOutcome(
                        reimbursement_id=reimbursement_id,
                        succeeded=False,
                        error_code=exc.code,
                        error_message=str(exc),
                    ))
                    continue
                outcomes.append(BulkInitiateOutcome(
                    reimbursement_id=reimbursement_id,
                    succeeded=True,
                    status=result.status,
                ))
            self._store.commit()
        except Exception:
            self._store.rollback()
            raise

        logger.info("bulk_initiate_completed", extra={
            "requested": len(outcomes),
            "succeeded": sum(1 for o in outcomes if o.succeeded),
        })
        return tuple(outcomes)

    def mark_processing(self, reimbursement_id: UUID, payment_ref: str, actor_id: UUID) -> Reimbursement:
        def mutate(row: ReimbursementModel) -> None:
            row.payment_ref = payment_ref
            row.processed_at = self._clock.now()

        return self._transition(
            reimbursement_id, ReimbursementStatus.PROCESSING, actor_id, mutate
        )

    def mark_paid(self, reimbursement_id: UUID, actor_id: UUID) -> Reimbursement:
        """PROCESSING -> PAID; the report becomes REIMBURSED."""

        def mutate(row: ReimbursementModel) -> None:
            row.paid_at = self._clock.now()
            report = self._store.reports.get(row.expense_report_id, for_update=True)
            if report is not None:
                report.status = ReportStatus.REIMBURSED.value
                report.updated_by_id = actor_id

        result = self._transition(reimbursement_id, ReimbursementStatus.PAID, actor_id, mutate)
        notify_safely(self._notifier, "reimbursement_paid", {
            "reimbursement_id": str(result.reimbursement_id),
            "employee_id": str(result.employee_id),
            "net_amount": str(result.net_amount),
            "payment_ref": result.payment_ref,
        })
        return result

    def mark_failed(self, reimbursement_id: UUID, reason: str, actor_id: UUID) -> Reimbursement:
        def mutate(row: ReimbursementModel) -> None:
            row.failure_reason = reason or "Payment failed"

        result = self._transition(reimbursement_id, ReimbursementStatus.FAILED, actor_id, mutate)
        notify_safely(self._notifier, "reimbursement_failed", {
            "reimbursement_id": str(result.reimbursement_id),
            "reason": result.failure_reason,
        })
        return result

    def reinitiate(self, reimbursement_id: UUID, actor_id: UUID) -> Reimbursement:
        """Manual re-initiation: FAILED -> INITIATED only."""

        def mutate(row: ReimbursementModel) -> None:
            if row.status != ReimbursementStatus.FAILED.value:
                raise InvalidReimbursementTransitionError(
                    str(row.id), row.status, ReimbursementStatus.INITIATED.value
                )
            self._require_bank_details(row)
            row.initiated_at = self._clock.now()
            row.processed_at = None
            row.payment_ref = None
            row.failure_reason = None

        return self._transition(reimbursement_id, ReimbursementStatus.INITIATED, actor_id, mutate)

    # =========================================================================
    # Queries / export
    # =========================================================================

    def get(self, reimbursement_id: UUID) -> Reimbursement:
        return self._get_row(reimbursement_id).to_dto()

    def list(self, status: ReimbursementStatus | str | None = None) -> tuple[Reimbursement, ...]:
        statuses = None if status is None else [ReimbursementStatus(status).value]
        return tuple(row.to_dto() for row in self._store.reimbursements.list(statuses))

    def export_neft(self, as_of: date | None = None) -> str:
        """NEFT file over INITIATED and PROCESSING reimbursements.

        Raises:
            EmptyPaymentFileError: Nothing is payable.
        """
        rows = [
            row.to_dto()
            for row in self._store.reimbursements.list(s.value for s in PAYABLE_STATUSES)
        ]
        if not rows:
            raise EmptyPaymentFileError()
        as_of = as_of or self._clock.now().date()
        content = settlement.render_neft_file(rows, as_of)
        logger.info("neft_file_exported", extra={"payments": len(rows), "as_of": as_of})
        return content

    # =========================================================================
    # Internal
    # =========================================================================

    def _get_row(self, reimbursement_id: UUID, *, for_update: bool = False) -> ReimbursementModel:
        row = self._store.reimbursements.get(reimbursement_id, for_update=for_update)
        if row is None:
            raise ReimbursementNotFoundError(str(reimbursement_id))
        return row

    def _require_bank_details(self, row: ReimbursementModel) -> None:
        missing = tuple(
            name
            for name, value in (("bank_account", row.bank_account), ("ifsc_code", row.ifsc_code))
            if not value
        )
        if missing:
            raise MissingBankDetailsError(str(row.id), missing)

    def _initiate_row(self, reimbursement_id: UUID, actor_id: UUID) -> Reimbursement:
        row = self._get_row(reimbursement_id, for_update=True)
        status = ReimbursementStatus(row.status)
        if status in INITIATED_OR_LATER:
            logger.info("reimbursement_initiate_noop", extra={
                "reimbursement_id": str(reimbursement_id),
                "status": status.value,
            })
            return row.to_dto()

        self._require_bank_details(row)
        settlement.assert_transition(str(row.id), status, ReimbursementStatus.INITIATED)
        row.status = ReimbursementStatus.INITIATED.value
        row.initiated_at = self._clock.now()
        row.updated_by_id = actor_id
        self._store.flush()
        logger.info("reimbursement_initiated", extra={"reimbursement_id": str(reimbursement_id)})
        return row.to_dto()

    def _transition(self, reimbursement_id, to_status: ReimbursementStatus, actor_id, mutate) -> Reimbursement:
        try:
            row = self._get_row(reimbursement_id, for_update=True)
            from_status = ReimbursementStatus(row.status)
            settlement.assert_transition(str(row.id), from_status, to_status)
            mutate(row)
            row.status = to_status.value
            row.updated_by_id = actor_id
            self._store.flush()
            result = row.to_dto()
            self._store.commit()
        except Exception:
            self._store.rollback()
            raise

        logger.info("reimbursement_transitioned", extra={
            "reimbursement_id": str(reimbursement_id),
            "from_status": from_status.value,
            "to_status": to_status.value,
        })
        return result
