"""
Configuration Loader (``spend_config.loader``).

Responsibility
--------------
Loads the YAML configuration file and parses it into a typed
``SpendConfig``.  Callers obtain runtime config through
``spend_config.get_active_config()``.

Invariants enforced
-------------------
* Every parsed object is a frozen dataclass from ``schema.py``.
* Monetary values and rates are ``Decimal`` (parsed via ``str``).
* ``compute_checksum`` produces a deterministic SHA-256 hash of the raw
  document for configuration identity and change detection.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys or invalid values (negative rate, unknown type,
  non-integer level, non-positive interval)
  -> ``InvalidConfigurationError``.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from spend_config.schema import ChainRuleSeed, PolicySeed, SpendConfig
from spend_kernel.domain.policy import PolicyType, Severity
from spend_kernel.domain.reimbursement import TdsSection
from spend_kernel.exceptions import InvalidConfigurationError


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a YAML file; an empty document yields ``{}``."""
    with open(path) as f:
        return yaml.safe_load(f) or {}


def compute_checksum(data: dict[str, Any]) -> str:
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def _decimal(key: str, value: Any, *, allow_none: bool = False) -> Decimal | None:
    if value is None and allow_none:
        return None
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidConfigurationError(key, f"'{value}' is not a number")
    if not result.is_finite() or result < 0:
        raise InvalidConfigurationError(key, "must be a non-negative number")
    return result


def _positive_int(key: str, value: Any) -> int:
    try:
        result = int(value)
    except (TypeError, ValueError):
        raise InvalidConfigurationError(key, f"'{value}' is not an integer")
    if result <= 0:
        raise InvalidConfigurationError(key, "must be positive")
    return result


def _required(data: Any, key: str, where: str) -> Any:
    if not isinstance(data, dict):
        raise InvalidConfigurationError(where, "must be a mapping")
    value = data.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise InvalidConfigurationError(f"{where}.{key}", "is required")
    return value


def _approver_step(step: Any, where: str) -> tuple[str, int]:
    role = str(_required(step, "role", where)).strip()
    return role, _positive_int(f"{where}.level", _required(step, "level", where))


def parse_tds_section(data: dict[str, Any]) -> TdsSection:
    code = str(_required(data, "code", "tds_sections"))
    rate = _decimal(f"tds_sections.{code}.rate", _required(data, "rate", f"tds_sections.{code}"))
    if rate > 100:
        raise InvalidConfigurationError(f"tds_sections.{code}.rate", "must not exceed 100")
    categories = data.get("categories") or ["*"]
    if isinstance(categories, str):
        categories = [categories]
    return TdsSection(
        code=code,
        rate=rate,
        threshold=_decimal(f"tds_sections.{code}.threshold", data.get("threshold", 0)),
        categories=tuple(str(c) for c in categories),
        label=str(data.get("label", "")),
    )


def parse_policy_seed(data: dict[str, Any]) -> PolicySeed:
    name = str(_required(data, "name", "seed.policies"))
    try:
        policy_type = PolicyType(str(_required(data, "type", f"seed.policies.{name}")).upper()).value
        severity = Severity(str(data.get("severity", "SOFT")).upper()).value
    except ValueError as exc:
        raise InvalidConfigurationError(f"seed.policies.{name}", str(exc))
    return PolicySeed(
        name=name,
        policy_type=policy_type,
        severity=severity,
        rules=dict(data.get("rules") or {}),
        is_active=bool(data.get("is_active", True)),
    )


def parse_chain_rule_seed(data: dict[str, Any]) -> ChainRuleSeed:
    name = str(_required(data, "name", "seed.chain_rules"))
    where = f"seed.chain_rules.{name}.approver_chain"
    chain = tuple(_approver_step(step, where) for step in data.get("approver_chain") or [])
    if not chain:
        raise InvalidConfigurationError(f"seed.chain_rules.{name}", "approver_chain is empty")
    return ChainRuleSeed(
        name=name,
        amount_min=_decimal(f"seed.chain_rules.{name}.amount_min", data.get("amount_min", 0)),
        amount_max=_decimal(
            f"seed.chain_rules.{name}.amount_max", data.get("amount_max"), allow_none=True
        ),
        approver_chain=chain,
        category=str(data.get("category", "ALL")),
    )


def parse_config(data: dict[str, Any]) -> SpendConfig:
    """Parse a raw YAML document into ``SpendConfig``."""
    seed = data.get("seed") or {}
    return SpendConfig(
        currency=str(data.get("currency", "INR")),
        tds_sections=tuple(parse_tds_section(s) for s in data.get("tds_sections") or []),
        override_roles=frozenset(str(r).upper() for r in data.get("override_roles") or []),
        tick_interval_seconds=_positive_int(
            "tick_interval_seconds", data.get("tick_interval_seconds", 60)
        ),
        escalation_hours=_positive_int("escalation_hours", data.get("escalation_hours", 48)),
        payment_method=str(data.get("payment_method", "NEFT")),
        approvers={str(k): str(v) for k, v in (data.get("approvers") or {}).items()},
        seed_policies=tuple(parse_policy_seed(p) for p in seed.get("policies") or []),
        seed_chain_rules=tuple(parse_chain_rule_seed(r) for r in seed.get("chain_rules") or []),
        checksum=compute_checksum(data),
    )


def load_config(path: Path | str) -> SpendConfig:
    return parse_config(load_yaml_file(Path(path)))
