"""
Typed configuration schema (``spend_config.schema``).

Every section of the YAML file parses into one of these frozen
dataclasses.  The kernel never imports this package; services receive a
``SpendConfig`` through their constructors.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from spend_kernel.domain.reimbursement import TdsSection


@dataclass(frozen=True)
class PolicySeed:
    name: str
    policy_type: str
    severity: str
    rules: dict[str, Any] = field(default_factory=dict)
    is_active: bool = True


@dataclass(frozen=True)
class ChainRuleSeed:
    name: str
    amount_min: Decimal
    amount_max: Decimal | None
    approver_chain: tuple[tuple[str, int], ...]
    category: str = "ALL"


@dataclass(frozen=True)
class SpendConfig:
    """Runtime configuration for the spend compliance core."""

    currency: str = "INR"
    tds_sections: tuple[TdsSection, ...] = ()
    override_roles: frozenset[str] = frozenset()
    tick_interval_seconds: int = 60
    escalation_hours: int = 48
    payment_method: str = "NEFT"
    approvers: dict[str, str] = field(default_factory=dict)
    seed_policies: tuple[PolicySeed, ...] = ()
    seed_chain_rules: tuple[ChainRuleSeed, ...] = ()
    checksum: str = ""

    def can_override(self, role: str) -> bool:
        return role.upper() in self.override_roles
