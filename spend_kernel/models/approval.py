"""ORM models for approval chain rules and workflow requests."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import JSON, Boolean, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from spend_kernel.db.base import TrackedBase, UUIDString
from spend_kernel.domain.clock import as_utc

if TYPE_CHECKING:
    from spend_kernel.domain.workflow import ApprovalChainRule, WorkflowRequest


class ApprovalChainRuleModel(TrackedBase):
    __tablename__ = "approval_chain_rules"

    __table_args__ = (
        Index("ix_chain_rules_category", "category", "is_active"),
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    amount_min: Mapped[Decimal] = mapped_column(nullable=False)
    amount_max: Mapped[Decimal | None] = mapped_column(nullable=True)
    category: Mapped[str] = mapped_column(String(100), nullable=False, default="ALL")
    approver_chain: Mapped[list[Any]] = mapped_column(JSON, nullable=False, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    seq: Mapped[int] = mapped_column(nullable=False, unique=True)

    def to_dto(self) -> ApprovalChainRule:
        from spend_kernel.domain.workflow import ApprovalChainRule, ApproverStep

        return ApprovalChainRule(
            rule_id=self.id,
            name=self.name,
            amount_min=self.amount_min,
            amount_max=self.amount_max,
            category=self.category,
            approver_chain=tuple(
                ApproverStep(role=step["role"], level=int(step["level"]))
                for step in self.approver_chain or []
            ),
            is_active=self.is_active and not self.is_deleted,
            seq=self.seq,
        )


class WorkflowRequestModel(TrackedBase):
    """Workflow request row.  ``status`` is always written from the chain."""

    __tablename__ = "workflow_requests"

    __table_args__ = (
        Index("ix_workflow_requests_status", "status"),
        Index("ix_workflow_requests_subject", "subject_id"),
    )

    request_type: Mapped[str] = mapped_column(String(50), nullable=False)
    requestor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    requestor_name: Mapped[str] = mapped_column(String(200), nullable=False)
    department: Mapped[str | None] = mapped_column(String(100), nullable=True)
    subject_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    approval_chain: Mapped[list[Any]] = mapped_column(JSON, nullable=False, default=list)
    comments: Mapped[list[Any]] = mapped_column(JSON, nullable=False, default=list)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    opened_at: Mapped[datetime] = mapped_column(nullable=False)
    last_action_at: Mapped[datetime] = mapped_column(nullable=False)

    def apply(self, request: WorkflowRequest, actor_id: UUID) -> None:
        """Copy the mutable parts of ``request`` onto this row."""
        self.status = request.status.value
        self.approval_chain = [entry.to_dict() for entry in request.approval_chain]
        self.comments = [comment.to_dict() for comment in request.comments]
        if request.updated_at is not None:
            self.last_action_at = request.updated_at
        self.updated_by_id = actor_id

    def to_dto(self) -> WorkflowRequest:
        from spend_kernel.domain.workflow import (
            ChainEntry,
            WorkflowComment,
            WorkflowRequest,
            WorkflowStatus,
            WorkflowType,
        )

        return WorkflowRequest(
            request_id=self.id,
            request_type=WorkflowType(self.request_type),
            requestor_id=self.requestor_id,
            requestor_name=self.requestor_name,
            amount=self.amount,
            category=self.category,
            status=WorkflowStatus(self.status),
            approval_chain=tuple(ChainEntry.from_dict(e) for e in self.approval_chain or []),
            department=self.department,
            subject_id=self.subject_id,
            comments=tuple(WorkflowComment.from_dict(c) for c in self.comments or []),
            details=dict(self.details or {}),
            created_at=as_utc(self.opened_at),
            updated_at=as_utc(self.last_action_at),
        )
