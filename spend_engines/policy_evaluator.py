"""
spend_engines.policy_evaluator -- Pure expense policy evaluation engine.

Responsibility:
    Determine the compliance status of one expense against a snapshot of
    policies, and aggregate statuses into a compliance score.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import spend_kernel/domain/ types and the logger.

Invariants enforced:
    - Any violated HARD policy yields HARD_VIOLATION regardless of how many
      SOFT policies also fire; every violated policy is still recorded.
    - A manual override yields EXCEPTION while the computed status is kept
      alongside it.
    - Purity: no clock access (``evaluated_at`` is supplied), no database.

Failure modes:
    - A malformed policy (``InvalidRule`` or an unusable rule value) is
      skipped with a logged warning and listed in ``skipped``; the
      remaining policies are still evaluated.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from spend_kernel.domain.policy import (
    AmountRule,
    Expense,
    GeoRule,
    InvalidRule,
    MccRule,
    Policy,
    PolicyEvaluationResult,
    PolicyStatus,
    PolicyViolation,
    ReceiptRule,
    Severity,
    SkippedPolicy,
)
from spend_kernel.logging_config import get_logger

logger = get_logger("engines.policy_evaluator")


class _Skip(Exception):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


def evaluate(
    expense: Expense,
    policies: Sequence[Policy],
    evaluated_at: datetime | None = None,
) -> PolicyEvaluationResult:
    """Evaluate ``expense`` against every in-force, applicable policy.

    Args:
        expense: The expense snapshot.
        policies: Policy snapshot; inactive and deleted entries are ignored.
        evaluated_at: Timestamp stamped on the result.

    Returns:
        PolicyEvaluationResult with final and computed statuses.
    """
    violations: list[PolicyViolation] = []
    evaluated: list[tuple] = []
    skipped: list[SkippedPolicy] = []

    for policy in policies:
        if not policy.in_force or not applies_to(policy, expense):
            continue
        try:
            message = _check(policy, expense)
        except _Skip as skip:
            logger.warning(
                "policy_skipped_malformed",
                extra={
                    "policy_id": str(policy.policy_id),
                    "policy_version": policy.version,
                    "policy_type": policy.policy_type.value,
                    "reason": skip.reason,
                },
            )
            skipped.append(SkippedPolicy(policy.policy_id, policy.version, skip.reason))
            continue

        evaluated.append((policy.policy_id, policy.version))
        if message is not None:
            violations.append(
                PolicyViolation(
                    policy_id=policy.policy_id,
                    policy_name=policy.name,
                    policy_version=policy.version,
                    policy_type=policy.policy_type,
                    severity=policy.severity,
                    message=message,
                )
            )

    computed = aggregate_status(v.severity for v in violations)
    status = PolicyStatus.EXCEPTION if expense.override is not None else computed

    return PolicyEvaluationResult(
        expense_id=expense.expense_id,
        status=status,
        computed_status=computed,
        violations=tuple(violations),
        evaluated=tuple(evaluated),
        skipped=tuple(skipped),
        evaluated_at=evaluated_at,
    )


def applies_to(policy: Policy, expense: Expense) -> bool:
    """Category filter plus merchant-data filter for MCC / GEO rules."""
    rule = policy.rule
    if rule.category is not None and rule.category != expense.category:
        return False
    match rule:
        case MccRule():
            return bool(expense.mcc)
        case GeoRule():
            return bool(expense.merchant_country)
        case _:
            return True


def aggregate_status(severities: Iterable[Severity]) -> PolicyStatus:
    seen = set(severities)
    if Severity.HARD in seen:
        return PolicyStatus.HARD_VIOLATION
    if Severity.SOFT in seen:
        return PolicyStatus.SOFT_VIOLATION
    return PolicyStatus.COMPLIANT


def _check(policy: Policy, expense: Expense) -> str | None:
    """Return a violation message, None when compliant.  Raises _Skip."""
    match policy.rule:
        case InvalidRule(reason=reason):
            raise _Skip(reason)
        case AmountRule(max_amount=max_amount):
            if expense.amount > max_amount:
                return f"Amount {expense.amount} exceeds limit {max_amount}"
            return None
        case ReceiptRule(threshold=threshold):
            if not expense.has_receipt and expense.amount > threshold:
                return f"Receipt required for amounts above {threshold}"
            return None
        case MccRule(blocked_mccs=blocked):
            if not blocked:
                raise _Skip("blocked MCC list is empty")
            if expense.mcc.strip().upper() in blocked:
                return f"Merchant category {expense.mcc} is blocked"
            return None
        case GeoRule(blocked_countries=blocked, allowed_countries=allowed):
            if not blocked and not allowed:
                raise _Skip("no country restrictions defined")
            country = expense.merchant_country.strip().upper()
            if country in blocked:
                return f"Merchant country {country} is blocked"
            if allowed and country not in allowed:
                return f"Merchant country {country} is not permitted"
            return None


def compliance_score(statuses: Iterable[PolicyStatus]) -> int:
    """``round(100 * compliant / total)`` half-up; 100 for an empty set.

    EXCEPTION counts as non-compliant: an override acknowledges a
    violation rather than removing it.
    """
    statuses = list(statuses)
    if not statuses:
        return 100
    compliant = sum(1 for s in statuses if s == PolicyStatus.COMPLIANT)
    score = Decimal(100 * compliant) / Decimal(len(statuses))
    return int(score.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def is_submittable(status: PolicyStatus) -> bool:
    return status != PolicyStatus.HARD_VIOLATION
