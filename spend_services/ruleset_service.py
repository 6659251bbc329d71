"""
RuleSetService -- versioned policy and approval chain rule store.

Contract:
    CRUD and activation toggling for policies and approval chain rules.
    Every policy mutation bumps ``version`` and appends a row to the
    policy version history; deletion is soft.  After a committed change to
    the policy set, registered ``PolicyChangeListener``s are told so that
    cached expense statuses get recomputed.

Architecture: spend_services.  Uses spend_kernel domain parsing for
    strict rule validation and the Store for persistence.

Transaction boundary: each public mutator commits on success and rolls
    back on failure.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from decimal import Decimal, InvalidOperation
from typing import Any
from uuid import UUID

from spend_config.schema import SpendConfig
from spend_kernel.domain.policy import Policy, PolicyType, Severity, parse_rule, rule_to_dict
from spend_kernel.domain.ports import PolicyChangeListener
from spend_kernel.domain.workflow import ALL_CATEGORIES, ApprovalChainRule, ApproverStep
from spend_kernel.exceptions import (
    ChainRuleNotFoundError,
    InvalidChainRuleError,
    MalformedPolicyError,
    PolicyNotFoundError,
)
from spend_kernel.logging_config import get_logger
from spend_kernel.models.approval import ApprovalChainRuleModel
from spend_kernel.models.policy import PolicyModel, PolicyVersionModel
from spend_kernel.repositories import Store

logger = get_logger("services.ruleset")

_UNSET: Any = object()


def _parse_type(policy_type: PolicyType | str) -> PolicyType:
    try:
        return PolicyType(str(getattr(policy_type, "value", policy_type)).upper())
    except ValueError:
        raise MalformedPolicyError(str(policy_type), "unknown policy type")


def _parse_severity(policy_type: PolicyType, severity: Severity | str) -> Severity:
    try:
        return Severity(str(getattr(severity, "value", severity)).upper())
    except ValueError:
        raise MalformedPolicyError(policy_type.value, f"unknown severity '{severity}'")


def _amount(value: Any, label: str) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidChainRuleError(f"{label} must be a number")
    if not amount.is_finite():
        raise InvalidChainRuleError(f"{label} must be finite")
    return amount


def parse_approver_chain(chain: Iterable[ApproverStep | Mapping[str, Any]]) -> tuple[ApproverStep, ...]:
    steps: list[ApproverStep] = []
    for raw in chain or ():
        if isinstance(raw, ApproverStep):
            role, level = raw.role, raw.level
        else:
            role, level = raw.get("role"), raw.get("level")
        if not role or not str(role).strip():
            raise InvalidChainRuleError("every approver step needs a role")
        if isinstance(level, bool) or not isinstance(level, int) or level < 1:
            raise InvalidChainRuleError(f"level for role '{role}' must be a positive integer")
        steps.append(ApproverStep(role=str(role).strip(), level=level))
    if not steps:
        raise InvalidChainRuleError("approver_chain must not be empty")
    return tuple(sorted(steps, key=lambda s: s.level))


def validate_range(amount_min: Decimal, amount_max: Decimal | None) -> None:
    if amount_min < 0:
        raise InvalidChainRuleError("amount_min must be >= 0")
    if amount_max is not None and amount_max <= amount_min:
        raise InvalidChainRuleError("amount_max must be greater than amount_min")


class RuleSetService:
    """Admin operations over policies and approval chain rules."""

    def __init__(
        self,
        store: Store,
        listeners: Sequence[PolicyChangeListener] = (),
    ):
        self._store = store
        self._listeners: list[PolicyChangeListener] = list(listeners)

    def add_listener(self, listener: PolicyChangeListener) -> None:
        self._listeners.append(listener)

    # =========================================================================
    # Policies
    # =========================================================================

    def create_policy(
        self,
        name: str,
        policy_type: PolicyType | str,
        rules: Mapping[str, Any],
        severity: Severity | str,
        actor_id: UUID,
        is_active: bool = True,
    ) -> Policy:
        """Create a policy at version 1.

        Raises:
            MalformedPolicyError: Unknown type/severity, empty name, or rules
                missing the fields required by the type.
        """
        ptype = _parse_type(policy_type)
        sev = _parse_severity(ptype, severity)
        if not name or not name.strip():
            raise MalformedPolicyError(ptype.value, "name is required")
        rule = parse_rule(ptype, rules)

        try:
            row = self._store.policies.add(PolicyModel(
                name=name.strip(),
                policy_type=ptype.value,
                rules=rule_to_dict(rule),
                severity=sev.value,
                is_active=is_active,
                is_deleted=False,
                version=1,
                created_by_id=actor_id,
            ))
            self._store.policies.add_version(PolicyVersionModel.snapshot(row, actor_id))
            policy = row.to_dto()
            self._store.commit()
        except Exception:
            self._store.rollback()
            raise

        logger.info("policy_created", extra={
            "policy_id": str(policy.policy_id),
            "policy_type": ptype.value,
            "severity": sev.value,
        })
        self._policies_changed()
        return policy

    def update_policy(
        self,
        policy_id: UUID,
        actor_id: UUID,
        *,
        name: str | None = None,
        rules: Mapping[str, Any] | None = None,
        severity: Severity | str | None = None,
    ) -> Policy:
        """Edit a policy; the version is bumped even for no-op edits."""

        def mutate(row: PolicyModel) -> None:
            ptype = PolicyType(row.policy_type)
            if name is not None:
                if not name.strip():
                    raise MalformedPolicyError(ptype.value, "name is required", str(policy_id))
                row.name = name.strip()
            if rules is not None:
                row.rules = rule_to_dict(parse_rule(ptype, rules))
            if severity is not None:
                row.severity = _parse_severity(ptype, severity).value

        return self._mutate_policy(policy_id, actor_id, mutate, "policy_updated")

    def set_policy_active(self, policy_id: UUID, is_active: bool, actor_id: UUID) -> Policy:
        def mutate(row: PolicyModel) -> None:
            row.is_active = is_active

        return self._mutate_policy(policy_id, actor_id, mutate, "policy_activation_changed")

    def delete_policy(self, policy_id: UUID, actor_id: UUID) -> Policy:
        """Soft delete: leaves the active set, history and evaluations stay."""

        def mutate(row: PolicyModel) -> None:
            row.is_deleted = True
            row.is_active = False

        return self._mutate_policy(policy_id, actor_id, mutate, "policy_deleted")

    def get_policy(self, policy_id: UUID) -> Policy:
        row = self._store.policies.get(policy_id)
        if row is None:
            raise PolicyNotFoundError(str(policy_id))
        return row.to_dto()

    def list_policies(self, include_inactive: bool = False) -> tuple[Policy, ...]:
        rows = self._store.policies.list(include_inactive=include_inactive)
        return tuple(row.to_dto() for row in rows)

    def active_policies(self) -> tuple[Policy, ...]:
        return self.list_policies(include_inactive=False)

    def policy_history(self, policy_id: UUID) -> tuple[Policy, ...]:
        if self._store.policies.get(policy_id) is None:
            raise PolicyNotFoundError(str(policy_id))
        return tuple(row.to_dto() for row in self._store.policies.versions(policy_id))

    def _mutate_policy(self, policy_id, actor_id, mutate, event: str) -> Policy:
        try:
            row = self._store.policies.get(policy_id, for_update=True)
            if row is None or row.is_deleted:
                raise PolicyNotFoundError(str(policy_id))
            mutate(row)
            row.version += 1
            row.updated_by_id = actor_id
            self._store.flush()
            self._store.policies.add_version(PolicyVersionModel.snapshot(row, actor_id))
            policy = row.to_dto()
            self._store.commit()
        except Exception:
            self._store.rollback()
            raise

        logger.info(event, extra={"policy_id": str(policy_id), "version": policy.version})
        self._policies_changed()
        return policy

    def _policies_changed(self) -> None:
        for listener in self._listeners:
            try:
                listener.on_policies_changed()
            except Exception:
                logger.exception("policy_listener_failed", extra={
                    "listener": type(listener).__name__,
                })

    # =========================================================================
    # Approval chain rules
    # =========================================================================

    def create_chain_rule(
        self,
        name: str,
        amount_min: Decimal | int | str,
        amount_max: Decimal | int | str | None,
        category: str,
        approver_chain: Iterable[ApproverStep | Mapping[str, Any]],
        actor_id: UUID,
        is_active: bool = True,
    ) -> ApprovalChainRule:
        """Create a chain rule; ``amount_max=None`` means unbounded."""
        if not name or not name.strip():
            raise InvalidChainRuleError("name is required")
        low = _amount(amount_min, "amount_min")
        high = None if amount_max is None else _amount(amount_max, "amount_max")
        validate_range(low, high)
        steps = parse_approver_chain(approver_chain)
        category = (category or ALL_CATEGORIES).strip() or ALL_CATEGORIES

        try:
            row = self._store.chain_rules.add(ApprovalChainRuleModel(
                name=name.strip(),
                amount_min=low,
                amount_max=high,
                category=category,
                approver_chain=[{"role": s.role, "level": s.level} for s in steps],
                is_active=is_active,
                is_deleted=False,
                seq=self._store.chain_rules.next_seq(),
                created_by_id=actor_id,
            ))
            rule = row.to_dto()
            self._store.commit()
        except Exception:
            self._store.rollback()
            raise

        logger.info("chain_rule_created", extra={
            "rule_id": str(rule.rule_id),
            "category": category,
            "amount_min": str(low),
            "amount_max": str(high) if high is not None else None,
            "steps": len(steps),
        })
        return rule

    def update_chain_rule(
        self,
        rule_id: UUID,
        actor_id: UUID,
        *,
        name: str | None = None,
        amount_min: Decimal | int | str | None = None,
        amount_max: Any = _UNSET,
        category: str | None = None,
        approver_chain: Iterable[ApproverStep | Mapping[str, Any]] | None = None,
    ) -> ApprovalChainRule:
        """Edit a chain rule.  Pass ``amount_max=None`` to make it unbounded."""

        def mutate(row: ApprovalChainRuleModel) -> None:
            if name is not None:
                if not name.strip():
                    raise InvalidChainRuleError("name is required")
                row.name = name.strip()
            low = row.amount_min if amount_min is None else _amount(amount_min, "amount_min")
            high = row.amount_max
            if amount_max is not _UNSET:
                high = None if amount_max is None else _amount(amount_max, "amount_max")
            validate_range(low, high)
            row.amount_min, row.amount_max = low, high
            if category is not None:
                row.category = category.strip() or ALL_CATEGORIES
            if approver_chain is not None:
                steps = parse_approver_chain(approver_chain)
                row.approver_chain = [{"role": s.role, "level": s.level} for s in steps]

        return self._mutate_chain_rule(rule_id, actor_id, mutate, "chain_rule_updated")

    def set_chain_rule_active(self, rule_id: UUID, is_active: bool, actor_id: UUID) -> ApprovalChainRule:
        def mutate(row: ApprovalChainRuleModel) -> None:
            row.is_active = is_active

        return self._mutate_chain_rule(rule_id, actor_id, mutate, "chain_rule_activation_changed")

    def delete_chain_rule(self, rule_id: UUID, actor_id: UUID) -> ApprovalChainRule:
        def mutate(row: ApprovalChainRuleModel) -> None:
            row.is_deleted = True
            row.is_active = False

        return self._mutate_chain_rule(rule_id, actor_id, mutate, "chain_rule_deleted")

    def get_chain_rule(self, rule_id: UUID) -> ApprovalChainRule:
        row = self._store.chain_rules.get(rule_id)
        if row is None or row.is_deleted:
            raise ChainRuleNotFoundError(str(rule_id))
        return row.to_dto()

    def list_chain_rules(self, include_inactive: bool = False) -> tuple[ApprovalChainRule, ...]:
        rows = self._store.chain_rules.list(include_inactive=include_inactive)
        return tuple(row.to_dto() for row in rows)

    def _mutate_chain_rule(self, rule_id, actor_id, mutate, event: str) -> ApprovalChainRule:
        try:
            row = self._store.chain_rules.get(rule_id, for_update=True)
            if row is None or row.is_deleted:
                raise ChainRuleNotFoundError(str(rule_id))
            mutate(row)
            row.updated_by_id = actor_id
            self._store.flush()
            rule = row.to_dto()
            self._store.commit()
        except Exception:
            self._store.rollback()
            raise

        logger.info(event, extra={"rule_id": str(rule_id)})
        return rule

    # =========================================================================
    # Bootstrap
    # =========================================================================

    def seed_defaults(self, config: SpendConfig, actor_id: UUID) -> tuple[int, int]:
        """Load the configured seed policies and chain rules into an empty store.

        Returns:
            (policies created, chain rules created).  Each set is seeded only
            when the store holds none of that kind yet.
        """
        policies = 0
        if not self._store.policies.list(include_inactive=True, include_deleted=True):
            for seed in config.seed_policies:
                self.create_policy(
                    seed.name, seed.policy_type, seed.rules, seed.severity,
                    actor_id, is_active=seed.is_active,
                )
                policies += 1

        rules = 0
        if not self._store.chain_rules.list(include_inactive=True):
            for seed in config.seed_chain_rules:
                self.create_chain_rule(
                    seed.name, seed.amount_min, seed.amount_max, seed.category,
                    [{"role": role, "level": level} for role, level in seed.approver_chain],
                    actor_id,
                )
                rules += 1

        logger.info("ruleset_seeded", extra={"policies": policies, "chain_rules": rules})
        return policies, rules
