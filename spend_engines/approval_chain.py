"""
spend_engines.approval_chain -- Pure approval chain routing engine.

Responsibility:
    Select the approval chain rule for an (amount, category), materialize
    its approver steps onto a workflow request, and advance / withdraw
    that request one decision at a time.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import spend_kernel/domain/ types and spend_kernel.exceptions.

Invariants enforced:
    - Deterministic rule selection: active rules whose half-open range
      ``[amount_min, amount_max)`` contains the amount; a category-specific
      rule beats the 'ALL' fallback; then the narrowest range wins; then
      the most recently created rule (highest ``seq``).
    - ``WorkflowRequest.status`` is always ``derive_status(approval_chain)``.
    - Rejecting step k cancels every later PENDING step; none stay PENDING.
    - Single writer per step: only the current step's role may decide it.

Failure modes:
    - NoMatchingChainRuleError when no rule (not even 'ALL') matches.
    - WorkflowAlreadyResolvedError / UnauthorizedApproverError /
      StepOutOfTurnError / InvalidWorkflowTransitionError on advance or
      withdraw.  The input request is never modified.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import replace
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import UUID

from spend_kernel.domain.workflow import (
    WORKFLOW_TRANSITIONS,
    ApprovalChainRule,
    ApproverAction,
    ApproverStep,
    ChainEntry,
    ChainEntryStatus,
    Decision,
    WorkflowComment,
    WorkflowRequest,
    WorkflowStatus,
)
from spend_kernel.exceptions import (
    InvalidWorkflowTransitionError,
    NoMatchingChainRuleError,
    StepOutOfTurnError,
    UnauthorizedApproverError,
    WorkflowAlreadyResolvedError,
)

_UNBOUNDED = Decimal("Infinity")


# =========================================================================
# Resolution
# =========================================================================


def select_chain_rule(
    rules: Sequence[ApprovalChainRule],
    amount: Decimal,
    category: str,
) -> ApprovalChainRule:
    """Pick the single rule governing ``(amount, category)``.

    Raises:
        NoMatchingChainRuleError: No active rule covers the amount, not
            even an 'ALL' fallback.
    """
    candidates = [r for r in rules if r.is_active and r.contains(amount)]
    specific = [r for r in candidates if not r.is_fallback and r.category == category]
    pool = specific or [r for r in candidates if r.is_fallback]
    if not pool:
        raise NoMatchingChainRuleError(str(amount), category)
    return min(pool, key=lambda r: (_width(r), -r.seq))


def _width(rule: ApprovalChainRule) -> Decimal:
    if rule.amount_max is None:
        return _UNBOUNDED
    return rule.amount_max - rule.amount_min


def resolve_chain(
    rules: Sequence[ApprovalChainRule],
    amount: Decimal,
    category: str,
) -> tuple[ApproverStep, ...]:
    """Approver steps of the selected rule in ascending level (stable)."""
    rule = select_chain_rule(rules, amount, category)
    return tuple(sorted(rule.approver_chain, key=lambda step: step.level))


def materialize_chain(
    steps: Sequence[ApproverStep],
    name_resolver: Callable[[str], str] | None = None,
) -> tuple[ChainEntry, ...]:
    """Turn approver steps into PENDING chain entries."""
    resolve = name_resolver or (lambda role: role)
    return tuple(
        ChainEntry(name=resolve(step.role), role=step.role, level=step.level)
        for step in sorted(steps, key=lambda step: step.level)
    )


# =========================================================================
# Status
# =========================================================================


def derive_status(chain: Sequence[ChainEntry]) -> WorkflowStatus:
    """Status as a pure function of the chain entries.

    Precedence: any REJECTED, then all APPROVED, then any CANCELLED
    (withdrawal), then any APPROVED (in review), else PENDING.
    """
    statuses = [entry.status for entry in chain]
    if ChainEntryStatus.REJECTED in statuses:
        return WorkflowStatus.REJECTED
    if all(s == ChainEntryStatus.APPROVED for s in statuses):
        return WorkflowStatus.APPROVED
    if ChainEntryStatus.CANCELLED in statuses:
        return WorkflowStatus.CANCELLED
    if ChainEntryStatus.APPROVED in statuses:
        return WorkflowStatus.IN_REVIEW
    return WorkflowStatus.PENDING


def current_entry(request: WorkflowRequest) -> ChainEntry | None:
    return request.current_entry


def _assert_transition(request: WorkflowRequest, to_status: WorkflowStatus) -> None:
    if to_status == request.status:
        return
    if to_status not in WORKFLOW_TRANSITIONS[request.status]:
        raise InvalidWorkflowTransitionError(
            str(request.request_id), request.status.value, to_status.value
        )


# =========================================================================
# Advance / withdraw
# =========================================================================


def advance(
    request: WorkflowRequest,
    action: ApproverAction,
    now: datetime,
) -> WorkflowRequest:
    """Apply one approver decision to the current step.

    Returns:
        A new WorkflowRequest; ``request`` is untouched.
    """
    if request.status.is_terminal:
        raise WorkflowAlreadyResolvedError(str(request.request_id), request.status.value)

    entry = request.current_entry
    if entry is None:
        raise WorkflowAlreadyResolvedError(str(request.request_id), request.status.value)

    if action.level is not None and action.level != entry.level:
        raise StepOutOfTurnError(str(request.request_id), action.level, entry.level)

    if action.actor_role.casefold() != entry.role.casefold():
        raise UnauthorizedApproverError(
            str(request.request_id), action.actor_role, entry.role
        )

    index = request.approval_chain.index(entry)
    decided = replace(
        entry,
        name=action.actor_name or entry.name,
        status=(
            ChainEntryStatus.APPROVED
            if action.decision == Decision.APPROVE
            else ChainEntryStatus.REJECTED
        ),
        date=now,
        comment=action.comment,
        actor_id=action.actor_id,
    )

    chain = list(request.approval_chain)
    chain[index] = decided
    if action.decision == Decision.REJECT:
        for i in range(index + 1, len(chain)):
            if chain[i].status == ChainEntryStatus.PENDING:
                chain[i] = replace(chain[i], status=ChainEntryStatus.CANCELLED, date=now)

    comments = request.comments
    if action.comment:
        comments = comments + (
            WorkflowComment(author=decided.name, text=action.comment, date=now),
        )

    status = derive_status(chain)
    _assert_transition(request, status)
    return replace(
        request,
        approval_chain=tuple(chain),
        status=status,
        comments=comments,
        updated_at=now,
    )


def withdraw(
    request: WorkflowRequest,
    requestor_id: UUID,
    now: datetime,
    reason: str | None = None,
) -> WorkflowRequest:
    """Requestor withdrawal: remaining PENDING steps become CANCELLED."""
    if requestor_id != request.requestor_id:
        raise UnauthorizedApproverError(
            str(request.request_id), str(requestor_id), "REQUESTOR"
        )
    if request.status.is_terminal:
        raise InvalidWorkflowTransitionError(
            str(request.request_id), request.status.value, WorkflowStatus.CANCELLED.value
        )

    chain = tuple(
        replace(e, status=ChainEntryStatus.CANCELLED, date=now)
        if e.status == ChainEntryStatus.PENDING
        else e
        for e in request.approval_chain
    )
    comments = request.comments
    if reason:
        comments = comments + (
            WorkflowComment(author=request.requestor_name, text=reason, date=now),
        )
    return replace(
        request,
        approval_chain=chain,
        status=derive_status(chain),
        comments=comments,
        updated_at=now,
    )


def waiting_since(request: WorkflowRequest) -> datetime | None:
    """When the current step became active (last decision, else creation)."""
    decided = [e.date for e in request.approval_chain if e.date is not None]
    if decided:
        return max(decided)
    return request.created_at


def is_overdue(request: WorkflowRequest, now: datetime, hours: int) -> bool:
    if request.status.is_terminal:
        return False
    since = waiting_since(request)
    if since is None:
        return False
    return now - since > timedelta(hours=hours)
