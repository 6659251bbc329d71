"""
Policy domain types (``spend_kernel.domain.policy``).

Responsibility
--------------
Pure value objects for spend policies and the expenses they are
evaluated against: the policy rule tagged union, expense snapshot,
manual override, and evaluation result records.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``models/`` or outer layers.

Invariants enforced
-------------------
* Rules are a closed tagged union: ``AmountRule``, ``ReceiptRule``,
  ``MccRule``, ``GeoRule`` plus ``InvalidRule`` for stored definitions
  that could not be parsed.  Evaluators dispatch with ``match`` and
  never inspect loose dict keys.
* ``parse_rule`` is strict (admin writes); ``load_rule`` is lenient
  (stored rows) and degrades to ``InvalidRule`` instead of raising.
* Amounts are ``Decimal``; JSON numbers go through ``str`` first.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any
from uuid import UUID

from spend_kernel.exceptions import MalformedPolicyError


class PolicyType(str, Enum):
    """Kind of check a policy performs."""

    CATEGORY = "CATEGORY"
    RECEIPT = "RECEIPT"
    MCC = "MCC"
    AMOUNT = "AMOUNT"
    GEO = "GEO"


class Severity(str, Enum):
    """SOFT warns but allows submission; HARD blocks it."""

    SOFT = "SOFT"
    HARD = "HARD"


class PolicyStatus(str, Enum):
    """Cached compliance status of an expense."""

    COMPLIANT = "COMPLIANT"
    SOFT_VIOLATION = "SOFT_VIOLATION"
    HARD_VIOLATION = "HARD_VIOLATION"
    EXCEPTION = "EXCEPTION"


# =========================================================================
# Rule tagged union
# =========================================================================


@dataclass(frozen=True)
class AmountRule:
    """CATEGORY / AMOUNT policies: amount must not exceed ``max_amount``."""

    max_amount: Decimal
    category: str | None = None


@dataclass(frozen=True)
class ReceiptRule:
    """RECEIPT policies: receipt required above ``threshold``."""

    threshold: Decimal
    category: str | None = None


@dataclass(frozen=True)
class MccRule:
    """MCC policies: merchant category codes that may not be used."""

    blocked_mccs: frozenset[str]
    category: str | None = None


@dataclass(frozen=True)
class GeoRule:
    """GEO policies: merchant country block / allow lists."""

    blocked_countries: frozenset[str] = frozenset()
    allowed_countries: frozenset[str] = frozenset()
    category: str | None = None


@dataclass(frozen=True)
class InvalidRule:
    """A stored rule definition that does not parse for its policy type."""

    reason: str
    raw: Mapping[str, Any] = field(default_factory=dict)
    category: str | None = None


PolicyRule = AmountRule | ReceiptRule | MccRule | GeoRule | InvalidRule


def _decimal_field(policy_type: PolicyType, raw: Mapping[str, Any], key: str) -> Decimal:
    if key not in raw or raw[key] is None:
        raise MalformedPolicyError(policy_type.value, f"'{key}' is required")
    value = raw[key]
    if isinstance(value, bool):
        raise MalformedPolicyError(policy_type.value, f"'{key}' must be a number")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise MalformedPolicyError(policy_type.value, f"'{key}' must be a number")
    if not amount.is_finite() or amount < 0:
        raise MalformedPolicyError(
            policy_type.value, f"'{key}' must be a non-negative number"
        )
    return amount


def _code_set(value: Any) -> frozenset[str]:
    if value is None:
        return frozenset()
    if isinstance(value, str):
        return frozenset({value.strip().upper()}) if value.strip() else frozenset()
    return frozenset(str(v).strip().upper() for v in value if str(v).strip())


def _category(raw: Mapping[str, Any]) -> str | None:
    category = raw.get("category")
    if category is None:
        return None
    category = str(category).strip()
    return category or None


def parse_rule(policy_type: PolicyType | str, raw: Mapping[str, Any] | None) -> PolicyRule:
    """Build the typed rule for ``policy_type`` from its JSON form.

    Raises:
        MalformedPolicyError: If required fields are missing or invalid.
    """
    policy_type = PolicyType(policy_type)
    raw = raw or {}
    if not isinstance(raw, Mapping):
        raise MalformedPolicyError(policy_type.value, "rules must be an object")

    match policy_type:
        case PolicyType.CATEGORY | PolicyType.AMOUNT:
            rule: PolicyRule = AmountRule(
                max_amount=_decimal_field(policy_type, raw, "maxAmount"),
                category=_category(raw),
            )
            if policy_type == PolicyType.CATEGORY and rule.category is None:
                raise MalformedPolicyError(policy_type.value, "'category' is required")
            return rule
        case PolicyType.RECEIPT:
            return ReceiptRule(
                threshold=_decimal_field(policy_type, raw, "threshold"),
                category=_category(raw),
            )
        case PolicyType.MCC:
            blocked = _code_set(raw.get("blockedMCCs"))
            if not blocked:
                raise MalformedPolicyError(
                    policy_type.value, "'blockedMCCs' must list at least one code"
                )
            return MccRule(blocked_mccs=blocked, category=_category(raw))
        case PolicyType.GEO:
            blocked = _code_set(raw.get("blockedCountries"))
            allowed = _code_set(raw.get("allowedCountries"))
            if not blocked and not allowed:
                raise MalformedPolicyError(
                    policy_type.value,
                    "one of 'blockedCountries' or 'allowedCountries' is required",
                )
            return GeoRule(
                blocked_countries=blocked,
                allowed_countries=allowed,
                category=_category(raw),
            )


def load_rule(policy_type: PolicyType | str, raw: Mapping[str, Any] | None) -> PolicyRule:
    """Lenient ``parse_rule`` for stored rows: failures become ``InvalidRule``."""
    try:
        return parse_rule(policy_type, raw)
    except MalformedPolicyError as exc:
        raw_map = dict(raw) if isinstance(raw, Mapping) else {}
        return InvalidRule(reason=exc.reason, raw=raw_map, category=_category(raw_map))
    except ValueError as exc:
        return InvalidRule(reason=str(exc), raw={})


def rule_to_dict(rule: PolicyRule) -> dict[str, Any]:
    """Serialize a rule back to its stored JSON form."""
    data: dict[str, Any] = {}
    match rule:
        case AmountRule(max_amount=max_amount):
            data["maxAmount"] = str(max_amount)
        case ReceiptRule(threshold=threshold):
            data["threshold"] = str(threshold)
        case MccRule(blocked_mccs=blocked):
            data["blockedMCCs"] = sorted(blocked)
        case GeoRule(blocked_countries=blocked, allowed_countries=allowed):
            if blocked:
                data["blockedCountries"] = sorted(blocked)
            if allowed:
                data["allowedCountries"] = sorted(allowed)
        case InvalidRule(raw=raw):
            data.update(raw)
    if rule.category is not None:
        data["category"] = rule.category
    return data


# =========================================================================
# Policy
# =========================================================================


@dataclass(frozen=True)
class Policy:
    """Immutable snapshot of one policy version."""

    policy_id: UUID
    name: str
    policy_type: PolicyType
    rule: PolicyRule
    severity: Severity
    is_active: bool = True
    version: int = 1
    is_deleted: bool = False

    @property
    def in_force(self) -> bool:
        return self.is_active and not self.is_deleted


# =========================================================================
# Expense
# =========================================================================


@dataclass(frozen=True)
class GstDetails:
    """GST breakdown captured on the expense (no registry validation)."""

    gstin: str | None = None
    cgst: Decimal = Decimal("0")
    sgst: Decimal = Decimal("0")
    igst: Decimal = Decimal("0")


@dataclass(frozen=True)
class PolicyOverride:
    """Manual EXCEPTION applied by an authorized approver."""

    approver_id: UUID
    approver_role: str
    reason: str
    applied_at: datetime | None = None


@dataclass(frozen=True)
class Expense:
    """Expense snapshot consumed by the policy evaluator."""

    expense_id: UUID
    employee_id: UUID
    amount: Decimal
    category: str
    expense_date: date
    has_receipt: bool = False
    mcc: str | None = None
    merchant_country: str | None = None
    gl_code: str | None = None
    cost_center_id: str | None = None
    business_purpose: str | None = None
    gst_details: GstDetails = field(default_factory=GstDetails)
    report_id: UUID | None = None
    policy_status: PolicyStatus = PolicyStatus.COMPLIANT
    override: PolicyOverride | None = None


# =========================================================================
# Evaluation records
# =========================================================================


@dataclass(frozen=True)
class PolicyViolation:
    """A violated policy, snapshotted at its evaluated version."""

    policy_id: UUID
    policy_name: str
    policy_version: int
    policy_type: PolicyType
    severity: Severity
    message: str


@dataclass(frozen=True)
class SkippedPolicy:
    """A policy that could not be evaluated (malformed definition)."""

    policy_id: UUID
    policy_version: int
    reason: str


@dataclass(frozen=True)
class PolicyEvaluationResult:
    """Outcome of evaluating one expense against a policy snapshot."""

    expense_id: UUID
    status: PolicyStatus
    computed_status: PolicyStatus
    violations: tuple[PolicyViolation, ...] = ()
    evaluated: tuple[tuple[UUID, int], ...] = ()
    skipped: tuple[SkippedPolicy, ...] = ()
    evaluated_at: datetime | None = None

    @property
    def is_submittable(self) -> bool:
        return self.status != PolicyStatus.HARD_VIOLATION
