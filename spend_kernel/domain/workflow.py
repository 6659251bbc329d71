"""
Approval workflow domain types.

Responsibility:
    Value objects for approval chain rules and the workflow requests that
    walk through them.  ``WorkflowRequest.status`` is always a pure
    function of ``approval_chain``; the current approver is computed on
    read and never stored.

Architecture position:
    Kernel > Domain -- pure value objects, zero I/O.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

ALL_CATEGORIES = "ALL"


class WorkflowStatus(str, Enum):
    PENDING = "PENDING"
    IN_REVIEW = "IN_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset(
    {WorkflowStatus.APPROVED, WorkflowStatus.REJECTED, WorkflowStatus.CANCELLED}
)


# PENDING -> IN_REVIEW -> {APPROVED | REJECTED}; CANCELLED by withdrawal only.
WORKFLOW_TRANSITIONS: dict[WorkflowStatus, frozenset[WorkflowStatus]] = {
    WorkflowStatus.PENDING: frozenset({
        WorkflowStatus.IN_REVIEW,
        WorkflowStatus.APPROVED,
        WorkflowStatus.REJECTED,
        WorkflowStatus.CANCELLED,
    }),
    WorkflowStatus.IN_REVIEW: frozenset({
        WorkflowStatus.IN_REVIEW,
        WorkflowStatus.APPROVED,
        WorkflowStatus.REJECTED,
        WorkflowStatus.CANCELLED,
    }),
    WorkflowStatus.APPROVED: frozenset(),
    WorkflowStatus.REJECTED: frozenset(),
    WorkflowStatus.CANCELLED: frozenset(),
}


class ChainEntryStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class Decision(str, Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"


class WorkflowType(str, Enum):
    EXPENSE_REPORT = "EXPENSE_REPORT"
    CARD_REQUEST = "CARD_REQUEST"
    LIMIT_CHANGE = "LIMIT_CHANGE"
    PURCHASE = "PURCHASE"


@dataclass(frozen=True)
class ApproverStep:
    """One ``{role, level}`` element of a chain rule."""

    role: str
    level: int


@dataclass(frozen=True)
class ApprovalChainRule:
    """Range/category rule selecting an approver chain.

    ``amount_max`` of None means the range is unbounded above.
    """

    rule_id: UUID
    name: str
    amount_min: Decimal
    amount_max: Decimal | None
    category: str
    approver_chain: tuple[ApproverStep, ...]
    is_active: bool = True
    seq: int = 0

    def contains(self, amount: Decimal) -> bool:
        if amount < self.amount_min:
            return False
        return self.amount_max is None or amount < self.amount_max

    @property
    def is_fallback(self) -> bool:
        return self.category == ALL_CATEGORIES


@dataclass(frozen=True)
class ChainEntry:
    """A materialized approver slot on a workflow request."""

    name: str
    role: str
    level: int
    status: ChainEntryStatus = ChainEntryStatus.PENDING
    date: datetime | None = None
    comment: str | None = None
    actor_id: UUID | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "role": self.role,
            "level": self.level,
            "status": self.status.value,
            "date": self.date.isoformat() if self.date else None,
            "comment": self.comment,
            "actor_id": str(self.actor_id) if self.actor_id else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChainEntry:
        date = data.get("date")
        actor_id = data.get("actor_id")
        return cls(
            name=data["name"],
            role=data["role"],
            level=int(data["level"]),
            status=ChainEntryStatus(data.get("status", ChainEntryStatus.PENDING.value)),
            date=datetime.fromisoformat(date) if date else None,
            comment=data.get("comment"),
            actor_id=UUID(actor_id) if actor_id else None,
        )


@dataclass(frozen=True)
class WorkflowComment:
    author: str
    text: str
    date: datetime

    def to_dict(self) -> dict[str, Any]:
        return {"author": self.author, "text": self.text, "date": self.date.isoformat()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkflowComment:
        return cls(
            author=data["author"],
            text=data["text"],
            date=datetime.fromisoformat(data["date"]),
        )


@dataclass(frozen=True)
class ApproverAction:
    """A decision by an approver on the current step."""

    actor_id: UUID
    actor_role: str
    decision: Decision
    actor_name: str | None = None
    comment: str | None = None
    level: int | None = None


@dataclass(frozen=True)
class WorkflowRequest:
    """Immutable snapshot of a workflow request."""

    request_id: UUID
    request_type: WorkflowType
    requestor_id: UUID
    requestor_name: str
    amount: Decimal
    category: str
    status: WorkflowStatus
    approval_chain: tuple[ChainEntry, ...]
    department: str | None = None
    subject_id: UUID | None = None
    comments: tuple[WorkflowComment, ...] = ()
    details: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def current_entry(self) -> ChainEntry | None:
        if self.status.is_terminal:
            return None
        for entry in self.approval_chain:
            if entry.status == ChainEntryStatus.PENDING:
                return entry
        return None

    @property
    def current_approver(self) -> str | None:
        entry = self.current_entry
        return entry.name if entry else None
