"""
Tests for RuleSetService (policy and chain rule administration).

Covers:
- Policy CRUD with version history and soft delete
- Strict rule validation on write
- Listeners notified on policy changes
- Chain rule CRUD and range validation
- Seeding from configuration
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from spend_kernel.domain.policy import AmountRule, PolicyType, Severity
from spend_kernel.domain.workflow import ApproverStep
from spend_kernel.exceptions import (
    ChainRuleNotFoundError,
    InvalidChainRuleError,
    MalformedPolicyError,
    PolicyNotFoundError,
)
from spend_services.ruleset_service import RuleSetService


class _CountingListener:
    def __init__(self):
        self.calls = 0

    def on_policies_changed(self):
        self.calls += 1


class _BrokenListener:
    def on_policies_changed(self):
        raise RuntimeError("listener down")


class TestPolicies:

    def test_create_policy(self, ruleset, actor_id):
        policy = ruleset.create_policy(
            "Meal Expense Cap", "category", {"category": "Meals", "maxAmount": 5000}, "soft", actor_id
        )

        assert policy.policy_type == PolicyType.CATEGORY
        assert policy.severity == Severity.SOFT
        assert policy.version == 1
        assert policy.rule == AmountRule(Decimal("5000"), "Meals")
        assert ruleset.active_policies() == (policy,)

    def test_malformed_rules_rejected(self, ruleset, actor_id):
        with pytest.raises(MalformedPolicyError):
            ruleset.create_policy("Bad", "RECEIPT", {}, "HARD", actor_id)
        with pytest.raises(MalformedPolicyError):
            ruleset.create_policy("Bad", "AMOUNT", {"maxAmount": 1}, "FATAL", actor_id)
        assert ruleset.list_policies(include_inactive=True) == ()

    def test_update_bumps_version_and_keeps_history(self, ruleset, actor_id):
        policy = ruleset.create_policy("Cap", "AMOUNT", {"maxAmount": 100}, "SOFT", actor_id)

        updated = ruleset.update_policy(policy.policy_id, actor_id, rules={"maxAmount": 250}, severity="HARD")

        assert updated.version == 2
        assert updated.severity == Severity.HARD
        history = ruleset.policy_history(policy.policy_id)
        assert [p.version for p in history] == [1, 2]
        assert history[0].rule.max_amount == Decimal("100")

    def test_deactivate_removes_from_active_set(self, ruleset, actor_id):
        policy = ruleset.create_policy("Cap", "AMOUNT", {"maxAmount": 100}, "SOFT", actor_id)
        ruleset.set_policy_active(policy.policy_id, False, actor_id)

        assert ruleset.active_policies() == ()
        assert len(ruleset.list_policies(include_inactive=True)) == 1

    def test_soft_delete(self, ruleset, actor_id):
        policy = ruleset.create_policy("Cap", "AMOUNT", {"maxAmount": 100}, "SOFT", actor_id)
        deleted = ruleset.delete_policy(policy.policy_id, actor_id)

        assert deleted.is_deleted
        assert ruleset.list_policies(include_inactive=True) == ()
        assert len(ruleset.policy_history(policy.policy_id)) == 2
        with pytest.raises(PolicyNotFoundError):
            ruleset.delete_policy(policy.policy_id, actor_id)

    def test_unknown_policy(self, ruleset, actor_id):
        with pytest.raises(PolicyNotFoundError):
            ruleset.update_policy(uuid4(), actor_id, name="x")

    def test_listeners_notified_and_failures_isolated(self, store, actor_id, captured_logs):
        counting = _CountingListener()
        service = RuleSetService(store, listeners=[_BrokenListener(), counting])

        service.create_policy("Cap", "AMOUNT", {"maxAmount": 100}, "SOFT", actor_id)

        assert counting.calls == 1
        assert any(r["message"] == "policy_listener_failed" for r in captured_logs())


class TestChainRules:

    def test_create_chain_rule(self, ruleset, actor_id):
        rule = ruleset.create_chain_rule(
            "Mid", 25000, 100000, "ALL",
            [{"role": "HOD", "level": 2}, {"role": "MANAGER", "level": 1}],
            actor_id,
        )

        assert rule.approver_chain == (ApproverStep("MANAGER", 1), ApproverStep("HOD", 2))
        assert rule.amount_max == Decimal("100000")
        assert rule.is_fallback

    def test_sequence_increases(self, ruleset, actor_id):
        first = ruleset.create_chain_rule("A", 0, 10, "ALL", [{"role": "M", "level": 1}], actor_id)
        second = ruleset.create_chain_rule("B", 0, 10, "ALL", [{"role": "M", "level": 1}], actor_id)
        assert second.seq > first.seq

    @pytest.mark.parametrize("amount_min,amount_max,chain", [
        (-1, 10, [{"role": "M", "level": 1}]),
        (10, 10, [{"role": "M", "level": 1}]),
        (0, 10, []),
        (0, 10, [{"role": "M", "level": 0}]),
        (0, 10, [{"role": "", "level": 1}]),
    ])
    def test_invalid_chain_rules(self, ruleset, actor_id, amount_min, amount_max, chain):
        with pytest.raises(InvalidChainRuleError):
            ruleset.create_chain_rule("Bad", amount_min, amount_max, "ALL", chain, actor_id)

    def test_update_to_unbounded(self, ruleset, actor_id):
        rule = ruleset.create_chain_rule("Top", 100000, 500000, "ALL", [{"role": "CFO", "level": 1}], actor_id)
        updated = ruleset.update_chain_rule(rule.rule_id, actor_id, amount_max=None)
        assert updated.amount_max is None

    def test_delete_chain_rule(self, ruleset, actor_id):
        rule = ruleset.create_chain_rule("A", 0, 10, "ALL", [{"role": "M", "level": 1}], actor_id)
        ruleset.delete_chain_rule(rule.rule_id, actor_id)

        assert ruleset.list_chain_rules(include_inactive=True) == ()
        with pytest.raises(ChainRuleNotFoundError):
            ruleset.get_chain_rule(rule.rule_id)


class TestSeeding:

    def test_seed_defaults_once(self, ruleset, config, actor_id):
        assert ruleset.seed_defaults(config, actor_id) == (4, 4)
        assert ruleset.seed_defaults(config, actor_id) == (0, 0)
        assert len(ruleset.active_policies()) == 4
        assert len(ruleset.list_chain_rules()) == 4
