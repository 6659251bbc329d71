"""
Tests for ComplianceService.

Covers:
- Expenses evaluated against the active policy set on write
- Evaluation audit rows
- Overrides restricted to configured roles
- Edits clear overrides; closed reports are read-only
- Re-evaluation when policies change
- Compliance score
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from spend_kernel.domain.policy import PolicyStatus
from spend_kernel.domain.report import ReportStatus
from spend_kernel.exceptions import (
    ExpenseNotFoundError,
    ExpenseReportNotFoundError,
    InvalidExpenseError,
    UnauthorizedOverrideError,
)


class TestRecordExpense:

    def test_meal_over_cap_is_soft_violation(self, seeded, make_expense):
        expense = make_expense("12000", "Meals", has_receipt=True)
        assert expense.policy_status == PolicyStatus.SOFT_VIOLATION

    def test_missing_receipt_is_hard(self, seeded, make_expense):
        expense = make_expense("800", "Travel", has_receipt=False)
        assert expense.policy_status == PolicyStatus.HARD_VIOLATION

    def test_compliant(self, seeded, make_expense):
        assert make_expense("400", "Travel").policy_status == PolicyStatus.COMPLIANT

    def test_blocked_mcc(self, seeded, make_expense):
        assert make_expense("100", "Other", mcc="7995").policy_status == PolicyStatus.HARD_VIOLATION

    @pytest.mark.parametrize("kwargs", [
        {"amount": "0"},
        {"amount": "-5"},
        {"amount": "abc"},
        {"category": "  "},
        {"mcc": "79"},
        {"merchant_country": "IND"},
    ])
    def test_invalid_input(self, compliance, actor_id, kwargs):
        amount = kwargs.pop("amount", "100")
        category = kwargs.pop("category", "Meals")
        with pytest.raises(InvalidExpenseError):
            compliance.record_expense(uuid4(), amount, category, date(2026, 1, 1), actor_id, **kwargs)

    def test_float_amount_rejected(self, compliance, actor_id):
        with pytest.raises(InvalidExpenseError):
            compliance.record_expense(uuid4(), 10.5, "Meals", date(2026, 1, 1), actor_id)

    def test_unknown_report(self, compliance, actor_id):
        with pytest.raises(ExpenseReportNotFoundError):
            compliance.record_expense(uuid4(), "10", "Meals", date(2026, 1, 1), actor_id, report_id=uuid4())

    def test_evaluation_history_recorded(self, seeded, compliance, make_expense, clock):
        expense = make_expense("12000", "Meals")
        history = compliance.evaluation_history(expense.expense_id)

        assert len(history) == 1
        assert history[0].status == PolicyStatus.SOFT_VIOLATION
        assert history[0].violations[0].policy_name == "Meal Expense Cap"
        assert history[0].evaluated_at == clock.now()

    def test_unknown_expense(self, compliance):
        with pytest.raises(ExpenseNotFoundError):
            compliance.get_expense(uuid4())


class TestOverrides:

    def test_finance_can_override(self, seeded, compliance, make_expense):
        expense = make_expense("800", "Travel", has_receipt=False)

        result = compliance.apply_override(expense.expense_id, uuid4(), "finance", "Receipt lost in transit")

        assert result.status == PolicyStatus.EXCEPTION
        assert result.computed_status == PolicyStatus.HARD_VIOLATION
        stored = compliance.get_expense(expense.expense_id)
        assert stored.policy_status == PolicyStatus.EXCEPTION
        assert stored.override.approver_role == "FINANCE"

    def test_manager_cannot_override(self, seeded, compliance, make_expense):
        expense = make_expense("800", "Travel", has_receipt=False)
        with pytest.raises(UnauthorizedOverrideError):
            compliance.apply_override(expense.expense_id, uuid4(), "MANAGER", "please")
        assert compliance.get_expense(expense.expense_id).policy_status == PolicyStatus.HARD_VIOLATION

    def test_reason_required(self, seeded, compliance, make_expense):
        expense = make_expense("800", "Travel", has_receipt=False)
        with pytest.raises(InvalidExpenseError):
            compliance.apply_override(expense.expense_id, uuid4(), "CFO", "   ")

    def test_edit_clears_override(self, seeded, compliance, make_expense, actor_id):
        expense = make_expense("800", "Travel", has_receipt=False)
        compliance.apply_override(expense.expense_id, uuid4(), "CFO", "ok")

        edited = compliance.update_expense(expense.expense_id, actor_id, business_purpose="Client visit")

        assert edited.override is None
        assert edited.policy_status == PolicyStatus.HARD_VIOLATION

    def test_edit_can_fix_violation(self, seeded, compliance, make_expense, actor_id):
        expense = make_expense("800", "Travel", has_receipt=False)
        edited = compliance.update_expense(expense.expense_id, actor_id, has_receipt=True)
        assert edited.policy_status == PolicyStatus.COMPLIANT

    def test_unknown_field_not_editable(self, seeded, compliance, make_expense, actor_id):
        expense = make_expense()
        with pytest.raises(InvalidExpenseError):
            compliance.update_expense(expense.expense_id, actor_id, policy_status="COMPLIANT")


class TestPolicyChanges:

    def test_new_policy_reevaluates_open_expenses(self, seeded, ruleset, make_expense, compliance, actor_id):
        expense = make_expense("3000", "Meals")
        assert expense.policy_status == PolicyStatus.COMPLIANT

        ruleset.create_policy("Tight meals", "CATEGORY", {"category": "Meals", "maxAmount": 1000}, "HARD", actor_id)

        assert compliance.get_expense(expense.expense_id).policy_status == PolicyStatus.HARD_VIOLATION

    def test_closed_report_expenses_untouched(
        self, seeded, ruleset, make_expense, make_report, compliance, store, actor_id
    ):
        expense = make_expense("3000", "Meals")
        report = make_report("3000", "Meals", expense_ids=[expense.expense_id])
        store.reports.get(report.report_id).status = ReportStatus.APPROVED.value
        store.commit()

        ruleset.create_policy("Tight meals", "CATEGORY", {"category": "Meals", "maxAmount": 1000}, "HARD", actor_id)

        assert compliance.get_expense(expense.expense_id).policy_status == PolicyStatus.COMPLIANT
        with pytest.raises(InvalidExpenseError):
            compliance.update_expense(expense.expense_id, actor_id, amount="100")

    def test_deactivating_policy_clears_violation(self, seeded, ruleset, make_expense, compliance, actor_id):
        expense = make_expense("12000", "Meals")
        meal_cap = next(p for p in ruleset.active_policies() if p.name == "Meal Expense Cap")

        ruleset.set_policy_active(meal_cap.policy_id, False, actor_id)

        assert compliance.get_expense(expense.expense_id).policy_status == PolicyStatus.COMPLIANT


class TestComplianceScore:

    def test_score(self, seeded, compliance, make_expense):
        make_expense("100", "Travel")
        make_expense("200", "Travel")
        make_expense("12000", "Meals")

        assert compliance.compliance_score() == 67

    def test_empty_score(self, compliance):
        assert compliance.compliance_score() == 100


class TestReports:

    def test_create_report_links_expenses(self, compliance, make_expense, make_report):
        first = make_expense("100", "Travel")
        second = make_expense("200", "Travel")

        report = make_report("300", "Travel", expense_ids=[first.expense_id, second.expense_id])

        assert report.status == ReportStatus.DRAFT
        assert report.total_amount == Decimal("300")
        assert {e.expense_id for e in compliance.report_expenses(report.report_id)} == {
            first.expense_id, second.expense_id,
        }
