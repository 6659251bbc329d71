"""
Tests for the settlement engine.

Covers:
- TDS section selection (category coverage, strict threshold)
- Gross / TDS / net arithmetic and half-up rounding
- Negative net clamping
- Reimbursement transition table
- NEFT file rendering
"""

import csv
import io
from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from spend_engines.settlement import (
    NEFT_HEADER,
    assert_transition,
    can_transition,
    compute_settlement,
    render_neft_file,
    select_tds_section,
)
from spend_kernel.domain.reimbursement import (
    Reimbursement,
    ReimbursementStatus,
    TdsSection,
)
from spend_kernel.exceptions import InvalidReimbursementTransitionError

FLAT_2 = TdsSection(code="X2", rate=Decimal("2"), threshold=Decimal("30000"))
CONTRACTOR = TdsSection(
    code="194C", rate=Decimal("1"), threshold=Decimal("30000"), categories=("Contractor",)
)


class TestSectionSelection:

    def test_first_covering_section_wins(self):
        section = select_tds_section("Contractor", Decimal("40000"), [CONTRACTOR, FLAT_2])
        assert section is CONTRACTOR

    def test_threshold_is_strict(self):
        assert select_tds_section("Travel", Decimal("30000"), [FLAT_2]) is None
        assert select_tds_section("Travel", Decimal("30000.01"), [FLAT_2]) is FLAT_2

    def test_uncovered_category(self):
        assert select_tds_section("Travel", Decimal("90000"), [CONTRACTOR]) is None


class TestComputeSettlement:

    def test_two_percent_over_threshold(self):
        """40000 at 2% above a 30000 threshold: TDS 800, net 39200."""
        amounts = compute_settlement(Decimal("40000"), "Travel", [FLAT_2])

        assert amounts.tds_amount == Decimal("800.00")
        assert amounts.net_amount == Decimal("39200.00")
        assert amounts.tds_section == "X2"
        assert amounts.net_amount + amounts.tds_amount == amounts.gross_amount

    def test_below_threshold_no_tds(self):
        amounts = compute_settlement(Decimal("12000"), "Travel", [FLAT_2])
        assert amounts.tds_amount == Decimal("0.00")
        assert amounts.net_amount == Decimal("12000")
        assert amounts.tds_section is None

    def test_tds_rounds_half_up(self):
        section = TdsSection("R", Decimal("1"), Decimal("0"))
        amounts = compute_settlement(Decimal("100.50"), "Any", [section])
        # 1.005 -> 1.01
        assert amounts.tds_amount == Decimal("1.01")
        assert amounts.net_amount == Decimal("99.49")

    def test_negative_net_clamped(self, captured_logs):
        broken = TdsSection("BAD", Decimal("150"), Decimal("0"))
        amounts = compute_settlement(Decimal("1000"), "Any", [broken])

        assert amounts.clamped
        assert amounts.net_amount == Decimal("0")
        assert any(r["message"] == "settlement_negative_net" for r in captured_logs())

    def test_idempotent(self):
        assert compute_settlement(Decimal("40000"), "Travel", [FLAT_2]) == compute_settlement(
            Decimal("40000"), "Travel", [FLAT_2]
        )


class TestTransitions:

    @pytest.mark.parametrize("from_status,to_status", [
        (ReimbursementStatus.PENDING, ReimbursementStatus.INITIATED),
        (ReimbursementStatus.INITIATED, ReimbursementStatus.PROCESSING),
        (ReimbursementStatus.INITIATED, ReimbursementStatus.FAILED),
        (ReimbursementStatus.PROCESSING, ReimbursementStatus.PAID),
        (ReimbursementStatus.PROCESSING, ReimbursementStatus.FAILED),
        (ReimbursementStatus.FAILED, ReimbursementStatus.INITIATED),
    ])
    def test_allowed(self, from_status, to_status):
        assert can_transition(from_status, to_status)

    @pytest.mark.parametrize("from_status,to_status", [
        (ReimbursementStatus.PENDING, ReimbursementStatus.PAID),
        (ReimbursementStatus.PAID, ReimbursementStatus.FAILED),
        (ReimbursementStatus.PAID, ReimbursementStatus.INITIATED),
        (ReimbursementStatus.INITIATED, ReimbursementStatus.PAID),
    ])
    def test_rejected(self, from_status, to_status):
        with pytest.raises(InvalidReimbursementTransitionError):
            assert_transition("r-1", from_status, to_status)


def make_reimbursement(net, **kwargs):
    return Reimbursement(
        reimbursement_id=uuid4(),
        expense_report_id=uuid4(),
        employee_id=uuid4(),
        gross_amount=Decimal(net),
        tds_amount=Decimal("0"),
        net_amount=Decimal(net),
        status=ReimbursementStatus.INITIATED,
        employee_name=kwargs.pop("employee_name", "Asha Rao"),
        bank_account="50100012345678",
        ifsc_code="HDFC0001234",
        bank_name="HDFC Bank",
        report_number=kwargs.pop("report_number", "EXP-1"),
        department="Engineering",
        **kwargs,
    )


class TestNeftFile:

    def test_rows_and_total(self):
        rows = [
            make_reimbursement("39200"),
            make_reimbursement("1500.5", payment_ref="UTR123", report_number="EXP-2"),
        ]
        content = render_neft_file(rows, date(2026, 2, 1))
        parsed = list(csv.reader(io.StringIO(content)))

        assert tuple(parsed[0]) == NEFT_HEADER
        assert parsed[1][0] == "1"
        assert parsed[1][5] == "39200.00"
        assert parsed[1][6] == "NEFT-20260201-1"
        assert parsed[2][5] == "1500.50"
        assert parsed[2][6] == "UTR123"
        assert parsed[3] == []
        assert parsed[4][4:6] == ["TOTAL", "40700.50"]
        assert parsed[4][8] == "2 payments"
