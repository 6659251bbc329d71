"""
Collaborator ports (``typing.Protocol``) consumed by the services.

The core never imports concrete collaborators; services receive
implementations through their constructors.
"""

from __future__ import annotations

from typing import Any, Protocol
from uuid import UUID

from spend_kernel.domain.card_action import CardControlState, CardStatus, SpendLimits
from spend_kernel.domain.report import ExpenseReport


class CardDirectory(Protocol):
    """Card directory: ``get_card`` / ``update_card``."""

    def get_card(self, card_id: UUID) -> CardControlState | None: ...

    def update_card(
        self,
        card_id: UUID,
        *,
        expected_version: int,
        status: CardStatus | None = None,
        spend_limits: SpendLimits | None = None,
    ) -> CardControlState: ...


class Notifier(Protocol):
    """Fire-and-forget notification sink."""

    def notify(self, event: str, payload: dict[str, Any]) -> None: ...


class ApproverDirectory(Protocol):
    """Resolves a display name for the holder of a role."""

    def approver_name(self, role: str, department: str | None) -> str: ...


class PolicyChangeListener(Protocol):
    def on_policies_changed(self) -> None: ...


class ReportApprovalListener(Protocol):
    def on_report_approved(self, report: ExpenseReport, actor_id: UUID) -> None: ...
