"""
Tests for the pure policy evaluator.

Covers:
- Severity aggregation (HARD dominates SOFT)
- Rule types: category cap, receipt threshold, MCC block, geo lists
- Category scoping and merchant-data applicability
- Overrides (EXCEPTION with computed status retained)
- Malformed policies are skipped, not fatal
- Compliance score rounding
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from spend_engines.policy_evaluator import (
    aggregate_status,
    compliance_score,
    evaluate,
    is_submittable,
)
from spend_kernel.domain.policy import (
    Expense,
    InvalidRule,
    Policy,
    PolicyOverride,
    PolicyStatus,
    PolicyType,
    Severity,
    load_rule,
    parse_rule,
    rule_to_dict,
)
from spend_kernel.exceptions import MalformedPolicyError

NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def make_policy(policy_type, rules, severity=Severity.SOFT, **kwargs):
    return Policy(
        policy_id=kwargs.pop("policy_id", uuid4()),
        name=kwargs.pop("name", f"{policy_type} policy"),
        policy_type=PolicyType(policy_type),
        rule=load_rule(policy_type, rules),
        severity=Severity(severity),
        **kwargs,
    )


def make_expense(amount="1000", category="Meals", **kwargs):
    return Expense(
        expense_id=kwargs.pop("expense_id", uuid4()),
        employee_id=kwargs.pop("employee_id", uuid4()),
        amount=Decimal(amount),
        category=category,
        expense_date=date(2026, 3, 1),
        **kwargs,
    )


MEAL_CAP = {"category": "Meals", "maxAmount": 5000}


class TestSeverityAggregation:
    """Worst severity wins."""

    def test_no_violations_is_compliant(self):
        assert aggregate_status([]) == PolicyStatus.COMPLIANT

    def test_soft_only(self):
        assert aggregate_status([Severity.SOFT, Severity.SOFT]) == PolicyStatus.SOFT_VIOLATION

    def test_hard_dominates_soft(self):
        assert aggregate_status([Severity.SOFT, Severity.HARD]) == PolicyStatus.HARD_VIOLATION

    def test_all_violations_recorded_when_hard_present(self):
        policies = [
            make_policy("CATEGORY", MEAL_CAP, Severity.SOFT),
            make_policy("RECEIPT", {"threshold": 500}, Severity.HARD),
        ]
        result = evaluate(make_expense("12000"), policies, NOW)

        assert result.status == PolicyStatus.HARD_VIOLATION
        assert {v.severity for v in result.violations} == {Severity.SOFT, Severity.HARD}
        assert not result.is_submittable


class TestCategoryCap:

    def test_meal_over_soft_cap_is_submittable(self):
        """A 12000 meal against a SOFT 5000 cap warns but can be submitted."""
        result = evaluate(
            make_expense("12000", has_receipt=True),
            [make_policy("CATEGORY", MEAL_CAP, Severity.SOFT)],
            NOW,
        )

        assert result.status == PolicyStatus.SOFT_VIOLATION
        assert result.is_submittable
        assert len(result.violations) == 1
        assert "exceeds limit" in result.violations[0].message

    def test_amount_equal_to_cap_is_compliant(self):
        result = evaluate(make_expense("5000"), [make_policy("CATEGORY", MEAL_CAP)], NOW)
        assert result.status == PolicyStatus.COMPLIANT

    def test_other_category_not_checked(self):
        result = evaluate(
            make_expense("90000", category="Travel"),
            [make_policy("CATEGORY", MEAL_CAP, Severity.HARD)],
            NOW,
        )
        assert result.status == PolicyStatus.COMPLIANT
        assert result.evaluated == ()


class TestReceiptRule:

    def test_missing_receipt_above_threshold(self):
        result = evaluate(
            make_expense("501", has_receipt=False),
            [make_policy("RECEIPT", {"threshold": 500}, Severity.HARD)],
            NOW,
        )
        assert result.status == PolicyStatus.HARD_VIOLATION

    def test_receipt_present(self):
        result = evaluate(
            make_expense("5010", has_receipt=True),
            [make_policy("RECEIPT", {"threshold": 500}, Severity.HARD)],
            NOW,
        )
        assert result.status == PolicyStatus.COMPLIANT

    def test_at_threshold_needs_no_receipt(self):
        result = evaluate(
            make_expense("500", has_receipt=False),
            [make_policy("RECEIPT", {"threshold": 500}, Severity.HARD)],
            NOW,
        )
        assert result.status == PolicyStatus.COMPLIANT


class TestMerchantRules:

    def test_blocked_mcc(self):
        policy = make_policy("MCC", {"blockedMCCs": ["7995"]}, Severity.HARD)
        result = evaluate(make_expense(mcc="7995"), [policy], NOW)
        assert result.status == PolicyStatus.HARD_VIOLATION

    def test_mcc_rule_ignored_without_mcc(self):
        policy = make_policy("MCC", {"blockedMCCs": ["7995"]}, Severity.HARD)
        result = evaluate(make_expense(), [policy], NOW)
        assert result.status == PolicyStatus.COMPLIANT
        assert result.evaluated == ()

    def test_blocked_country(self):
        policy = make_policy("GEO", {"blockedCountries": ["kp"]}, Severity.HARD)
        result = evaluate(make_expense(merchant_country="KP"), [policy], NOW)
        assert result.status == PolicyStatus.HARD_VIOLATION

    def test_country_outside_allow_list(self):
        policy = make_policy("GEO", {"allowedCountries": ["IN", "SG"]})
        assert evaluate(make_expense(merchant_country="US"), [policy], NOW).status == (
            PolicyStatus.SOFT_VIOLATION
        )
        assert evaluate(make_expense(merchant_country="SG"), [policy], NOW).status == (
            PolicyStatus.COMPLIANT
        )


class TestPolicySnapshot:

    def test_inactive_and_deleted_policies_ignored(self):
        policies = [
            make_policy("CATEGORY", MEAL_CAP, Severity.HARD, is_active=False),
            make_policy("CATEGORY", MEAL_CAP, Severity.HARD, is_deleted=True),
        ]
        result = evaluate(make_expense("9000"), policies, NOW)
        assert result.status == PolicyStatus.COMPLIANT

    def test_evaluated_records_policy_versions(self):
        policy = make_policy("CATEGORY", MEAL_CAP, version=3)
        result = evaluate(make_expense("100"), [policy], NOW)
        assert result.evaluated == ((policy.policy_id, 3),)
        assert result.evaluated_at == NOW


class TestOverride:

    def test_override_yields_exception_and_keeps_computed(self):
        override = PolicyOverride(uuid4(), "FINANCE", "Client dinner", NOW)
        policy = make_policy("CATEGORY", MEAL_CAP, Severity.HARD)
        result = evaluate(make_expense("9000", override=override), [policy], NOW)

        assert result.status == PolicyStatus.EXCEPTION
        assert result.computed_status == PolicyStatus.HARD_VIOLATION
        assert result.is_submittable


class TestMalformedPolicies:

    def test_malformed_policy_skipped_others_evaluated(self, captured_logs):
        broken = make_policy("AMOUNT", {"maxAmount": "lots"}, Severity.HARD)
        good = make_policy("CATEGORY", MEAL_CAP, Severity.SOFT)

        result = evaluate(make_expense("6000"), [broken, good], NOW)

        assert isinstance(broken.rule, InvalidRule)
        assert result.status == PolicyStatus.SOFT_VIOLATION
        assert [s.policy_id for s in result.skipped] == [broken.policy_id]
        assert any(r["message"] == "policy_skipped_malformed" for r in captured_logs())

    def test_parse_rule_is_strict(self):
        with pytest.raises(MalformedPolicyError):
            parse_rule("CATEGORY", {"maxAmount": 100})
        with pytest.raises(MalformedPolicyError):
            parse_rule("MCC", {"blockedMCCs": []})
        with pytest.raises(MalformedPolicyError):
            parse_rule("GEO", {})

    def test_rule_serializes_back(self):
        rule = parse_rule("CATEGORY", MEAL_CAP)
        assert rule_to_dict(rule) == {"category": "Meals", "maxAmount": "5000"}


class TestComplianceScore:

    def test_empty_is_100(self):
        assert compliance_score([]) == 100

    def test_rounds_half_up(self):
        statuses = [PolicyStatus.COMPLIANT] * 5 + [PolicyStatus.SOFT_VIOLATION] * 3
        # 5 / 8 = 62.5
        assert compliance_score(statuses) == 63

    def test_exception_is_not_compliant(self):
        assert compliance_score([PolicyStatus.COMPLIANT, PolicyStatus.EXCEPTION]) == 50

    def test_is_submittable(self):
        assert is_submittable(PolicyStatus.SOFT_VIOLATION)
        assert is_submittable(PolicyStatus.EXCEPTION)
        assert not is_submittable(PolicyStatus.HARD_VIOLATION)
