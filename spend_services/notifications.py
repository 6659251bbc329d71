"""
Notification and approver-name adapters.

Notifications are fire-and-forget: ``notify_safely`` logs a failing
notifier and returns, so a broken mail relay never rolls back an approval
or a payment that has already been committed.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from spend_kernel.domain.ports import Notifier
from spend_kernel.logging_config import get_logger

logger = get_logger("services.notifications")


class LoggingNotifier:
    """Default notifier: every event becomes a structured log line."""

    def notify(self, event: str, payload: dict[str, Any]) -> None:
        logger.info("notification", extra={"event": event, "payload": payload})


def notify_safely(notifier: Notifier, event: str, payload: dict[str, Any]) -> None:
    try:
        notifier.notify(event, payload)
    except Exception:
        logger.exception("notification_failed", extra={"event": event})


class ConfigApproverDirectory:
    """Resolves role display names from the ``approvers`` config map."""

    def __init__(self, names: Mapping[str, str] | None = None):
        self._names = dict(names or {})

    def approver_name(self, role: str, department: str | None) -> str:
        name = self._names.get(role, role)
        if department:
            return f"{name} ({department})"
        return name
