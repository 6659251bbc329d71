"""
ORM models for policies, their version history and evaluation audit rows.

Contract:
    PolicyModel holds the live row (current version).  Every version is
    also appended to PolicyVersionModel.  PolicyEvaluationModel stores a
    snapshot of each evaluation (policy id + version), never a live
    reference, so historical results survive later edits and deletion.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import JSON, Boolean, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from spend_kernel.db.base import Base, TrackedBase, UUIDString
from spend_kernel.domain.clock import as_utc

if TYPE_CHECKING:
    from spend_kernel.domain.policy import Policy, PolicyEvaluationResult


class PolicyModel(TrackedBase):
    __tablename__ = "policies"

    __table_args__ = (
        Index("ix_policies_active", "is_active", "is_deleted"),
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    policy_type: Mapped[str] = mapped_column(String(20), nullable=False)
    rules: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    severity: Mapped[str] = mapped_column(String(10), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    def to_dto(self) -> Policy:
        from spend_kernel.domain.policy import Policy, PolicyType, Severity, load_rule

        return Policy(
            policy_id=self.id,
            name=self.name,
            policy_type=PolicyType(self.policy_type),
            rule=load_rule(self.policy_type, self.rules),
            severity=Severity(self.severity),
            is_active=self.is_active,
            version=self.version,
            is_deleted=self.is_deleted,
        )


class PolicyVersionModel(TrackedBase):
    """Append-only history: one row per policy version."""

    __tablename__ = "policy_versions"

    __table_args__ = (
        UniqueConstraint("policy_id", "version", name="uq_policy_versions_policy_version"),
    )

    policy_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("policies.id"), nullable=False,
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    policy_type: Mapped[str] = mapped_column(String(20), nullable=False)
    rules: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    severity: Mapped[str] = mapped_column(String(10), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False)
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False)

    @classmethod
    def snapshot(cls, policy: PolicyModel, actor_id: UUID) -> PolicyVersionModel:
        return cls(
            policy_id=policy.id,
            version=policy.version,
            name=policy.name,
            policy_type=policy.policy_type,
            rules=dict(policy.rules or {}),
            severity=policy.severity,
            is_active=policy.is_active,
            is_deleted=policy.is_deleted,
            created_by_id=actor_id,
        )

    def to_dto(self) -> Policy:
        from spend_kernel.domain.policy import Policy, PolicyType, Severity, load_rule

        return Policy(
            policy_id=self.policy_id,
            name=self.name,
            policy_type=PolicyType(self.policy_type),
            rule=load_rule(self.policy_type, self.rules),
            severity=Severity(self.severity),
            is_active=self.is_active,
            version=self.version,
            is_deleted=self.is_deleted,
        )


class PolicyEvaluationModel(Base):
    """Immutable evaluation audit row."""

    __tablename__ = "policy_evaluations"

    __table_args__ = (
        Index("ix_policy_evaluations_expense", "expense_id", "evaluated_at"),
    )

    expense_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("expenses.id"), nullable=False,
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    computed_status: Mapped[str] = mapped_column(String(20), nullable=False)
    violations: Mapped[list[Any]] = mapped_column(JSON, nullable=False, default=list)
    evaluated_policies: Mapped[list[Any]] = mapped_column(JSON, nullable=False, default=list)
    skipped_policies: Mapped[list[Any]] = mapped_column(JSON, nullable=False, default=list)
    evaluated_at: Mapped[datetime] = mapped_column(nullable=False)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)

    @classmethod
    def from_result(cls, result: PolicyEvaluationResult) -> PolicyEvaluationModel:
        return cls(
            expense_id=result.expense_id,
            status=result.status.value,
            computed_status=result.computed_status.value,
            violations=[
                {
                    "policy_id": str(v.policy_id),
                    "policy_name": v.policy_name,
                    "policy_version": v.policy_version,
                    "policy_type": v.policy_type.value,
                    "severity": v.severity.value,
                    "message": v.message,
                }
                for v in result.violations
            ],
            evaluated_policies=[
                {"policy_id": str(pid), "version": version}
                for pid, version in result.evaluated
            ],
            skipped_policies=[
                {"policy_id": str(s.policy_id), "version": s.policy_version, "reason": s.reason}
                for s in result.skipped
            ],
            evaluated_at=result.evaluated_at,
        )

    def to_dto(self) -> PolicyEvaluationResult:
        from spend_kernel.domain.policy import (
            PolicyEvaluationResult,
            PolicyStatus,
            PolicyType,
            PolicyViolation,
            Severity,
            SkippedPolicy,
        )

        return PolicyEvaluationResult(
            expense_id=self.expense_id,
            status=PolicyStatus(self.status),
            computed_status=PolicyStatus(self.computed_status),
            violations=tuple(
                PolicyViolation(
                    policy_id=UUID(v["policy_id"]),
                    policy_name=v["policy_name"],
                    policy_version=int(v["policy_version"]),
                    policy_type=PolicyType(v["policy_type"]),
                    severity=Severity(v["severity"]),
                    message=v["message"],
                )
                for v in self.violations or []
            ),
            evaluated=tuple(
                (UUID(e["policy_id"]), int(e["version"]))
                for e in self.evaluated_policies or []
            ),
            skipped=tuple(
                SkippedPolicy(
                    policy_id=UUID(s["policy_id"]),
                    policy_version=int(s["version"]),
                    reason=s["reason"],
                )
                for s in self.skipped_policies or []
            ),
            evaluated_at=as_utc(self.evaluated_at),
        )
