"""
Typed Exception Hierarchy for the Spend Compliance Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

The UI/API layer maps errors to user-facing messages and HTTP statuses.
Parsing message strings for that is fragile, so:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)

Example:
    try:
        router.advance(request_id, action)
    except UnauthorizedApproverError as e:
        api_response(409, code=e.code, expected=e.expected_role)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from SpendKernelError:

    SpendKernelError (base)
    |
    +-- ValidationError              rejected before any state change
    |   +-- MalformedPolicyError
    |   +-- InvalidChainRuleError
    |   +-- InvalidExpenseError
    |   +-- NegativeNetAmountError
    |   +-- MissingBankDetailsError
    |   +-- InvalidCardActionError
    |   +-- EmptyPaymentFileError
    |
    +-- ConflictError                rejected, no state change, user-facing
    |   +-- WorkflowAlreadyResolvedError
    |   +-- UnauthorizedApproverError
    |   +-- StepOutOfTurnError
    |   +-- InvalidWorkflowTransitionError
    |   +-- HardViolationBlockedError
    |   +-- ReportNotSubmittableError
    |   +-- UnauthorizedOverrideError
    |   +-- ReportNotApprovedError
    |   +-- InvalidReimbursementTransitionError
    |   +-- CardActionAlreadyExecutedError
    |   +-- CardActionAlreadyCancelledError
    |   +-- TickInProgressError
    |   +-- OptimisticLockError
    |
    +-- NotFoundError
    |   +-- PolicyNotFoundError
    |   +-- ChainRuleNotFoundError
    |   +-- ExpenseNotFoundError
    |   +-- ExpenseReportNotFoundError
    |   +-- WorkflowNotFoundError
    |   +-- ReimbursementNotFoundError
    |   +-- CardNotFoundError
    |   +-- CardActionNotFoundError
    |
    +-- ConfigurationError           deployment bug, fatal to one operation
        +-- NoMatchingChainRuleError
        +-- InvalidConfigurationError

===============================================================================
HANDLING PATTERNS
===============================================================================

1. ValidationError -> 400, the caller corrects its input.
2. ConflictError -> 409, surfaced verbatim to the user.
3. NotFoundError -> 404.
4. ConfigurationError -> 500, logged at CRITICAL by the raiser.  Other
   requests are unaffected.

===============================================================================
"""


class SpendKernelError(Exception):
    """
    Base exception for all spend kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "SPEND_KERNEL_ERROR"


# =============================================================================
# Validation errors
# =============================================================================


class ValidationError(SpendKernelError):
    """Base exception for rejected input."""

    code: str = "VALIDATION_ERROR"


class MalformedPolicyError(ValidationError):
    """Policy rule definition is missing or has invalid fields for its type."""

    code: str = "MALFORMED_POLICY"

    def __init__(self, policy_type: str, reason: str, policy_id: str | None = None):
        self.policy_type = policy_type
        self.reason = reason
        self.policy_id = policy_id
        where = f" (policy {policy_id})" if policy_id else ""
        super().__init__(f"Malformed {policy_type} policy{where}: {reason}")


class InvalidChainRuleError(ValidationError):
    """Approval chain rule definition is invalid."""

    code: str = "INVALID_CHAIN_RULE"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid approval chain rule: {reason}")


class InvalidExpenseError(ValidationError):
    """Expense is missing a required field or carries an invalid value."""

    code: str = "INVALID_EXPENSE"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid expense field '{field}': {reason}")


class NegativeNetAmountError(ValidationError):
    """
    Settlement would produce a negative net amount.

    This indicates a TDS configuration bug, not a valid business state.
    """

    code: str = "NEGATIVE_NET_AMOUNT"

    def __init__(self, report_id: str, gross_amount: str, tds_amount: str):
        self.report_id = report_id
        self.gross_amount = gross_amount
        self.tds_amount = tds_amount
        super().__init__(
            f"Settlement for report {report_id} would be negative: "
            f"gross {gross_amount} - tds {tds_amount}"
        )


class MissingBankDetailsError(ValidationError):
    """Reimbursement cannot be initiated without beneficiary bank details."""

    code: str = "MISSING_BANK_DETAILS"

    def __init__(self, reimbursement_id: str, missing: tuple[str, ...]):
        self.reimbursement_id = reimbursement_id
        self.missing = missing
        super().__init__(
            f"Reimbursement {reimbursement_id} is missing bank details: "
            f"{', '.join(missing)}"
        )


class InvalidCardActionError(ValidationError):
    """Scheduled card action request is invalid."""

    code: str = "INVALID_CARD_ACTION"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid scheduled card action: {reason}")


class EmptyPaymentFileError(ValidationError):
    """No INITIATED/PROCESSING reimbursements to export."""

    code: str = "EMPTY_PAYMENT_FILE"

    def __init__(self):
        super().__init__("No pending reimbursements for payment file")


# =============================================================================
# Conflict errors
# =============================================================================


class ConflictError(SpendKernelError):
    """Base exception for operations rejected because of current state."""

    code: str = "CONFLICT"


class WorkflowAlreadyResolvedError(ConflictError):
    """Workflow request is in a terminal state."""

    code: str = "WORKFLOW_ALREADY_RESOLVED"

    def __init__(self, request_id: str, status: str):
        self.request_id = request_id
        self.status = status
        super().__init__(
            f"Workflow request {request_id} is already {status}"
        )


class UnauthorizedApproverError(ConflictError):
    """Actor's role does not match the active chain entry."""

    code: str = "UNAUTHORIZED_APPROVER"

    def __init__(self, request_id: str, actor_role: str, expected_role: str):
        self.request_id = request_id
        self.actor_role = actor_role
        self.expected_role = expected_role
        super().__init__(
            f"Role '{actor_role}' cannot act on workflow request {request_id}: "
            f"current step belongs to '{expected_role}'"
        )


class StepOutOfTurnError(ConflictError):
    """Action targets a chain step that is not the active one."""

    code: str = "STEP_OUT_OF_TURN"

    def __init__(self, request_id: str, level: int, current_level: int):
        self.request_id = request_id
        self.level = level
        self.current_level = current_level
        super().__init__(
            f"Step {level} of workflow request {request_id} is not active "
            f"(active step: {current_level})"
        )


class InvalidWorkflowTransitionError(ConflictError):
    """Workflow status change is not allowed."""

    code: str = "INVALID_WORKFLOW_TRANSITION"

    def __init__(self, request_id: str, from_status: str, to_status: str):
        self.request_id = request_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Workflow request {request_id} cannot move "
            f"from {from_status} to {to_status}"
        )


class HardViolationBlockedError(ConflictError):
    """Report contains expenses with HARD policy violations."""

    code: str = "HARD_VIOLATION_BLOCKED"

    def __init__(self, report_id: str, expense_ids: tuple[str, ...]):
        self.report_id = report_id
        self.expense_ids = expense_ids
        super().__init__(
            f"Report {report_id} cannot be submitted: "
            f"{len(expense_ids)} expense(s) have hard policy violations"
        )


class ReportNotSubmittableError(ConflictError):
    """Report is not in a state that allows submission."""

    code: str = "REPORT_NOT_SUBMITTABLE"

    def __init__(self, report_id: str, status: str):
        self.report_id = report_id
        self.status = status
        super().__init__(f"Report {report_id} cannot be submitted from {status}")


class UnauthorizedOverrideError(ConflictError):
    """Actor's role may not apply a policy exception override."""

    code: str = "UNAUTHORIZED_OVERRIDE"

    def __init__(self, expense_id: str, role: str):
        self.expense_id = expense_id
        self.role = role
        super().__init__(
            f"Role '{role}' is not authorized to override policy status "
            f"of expense {expense_id}"
        )


class ReportNotApprovedError(ConflictError):
    """Settlement requested for a report that is not APPROVED."""

    code: str = "REPORT_NOT_APPROVED"

    def __init__(self, report_id: str, status: str):
        self.report_id = report_id
        self.status = status
        super().__init__(
            f"Report {report_id} is {status}; only APPROVED reports settle"
        )


class InvalidReimbursementTransitionError(ConflictError):
    """Reimbursement status change is not allowed."""

    code: str = "INVALID_REIMBURSEMENT_TRANSITION"

    def __init__(self, reimbursement_id: str, from_status: str, to_status: str):
        self.reimbursement_id = reimbursement_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Reimbursement {reimbursement_id} cannot move "
            f"from {from_status} to {to_status}"
        )


class CardActionAlreadyExecutedError(ConflictError):
    """Executed card actions cannot be cancelled."""

    code: str = "CARD_ACTION_ALREADY_EXECUTED"

    def __init__(self, action_id: str):
        self.action_id = action_id
        super().__init__(
            f"Scheduled card action {action_id} has already executed; "
            "schedule a compensating action instead"
        )


class CardActionAlreadyCancelledError(ConflictError):
    """Card action was already cancelled."""

    code: str = "CARD_ACTION_ALREADY_CANCELLED"

    def __init__(self, action_id: str):
        self.action_id = action_id
        super().__init__(f"Scheduled card action {action_id} is already cancelled")


class TickInProgressError(ConflictError):
    """Another tick is running on the same executor."""

    code: str = "TICK_IN_PROGRESS"

    def __init__(self):
        super().__init__("A scheduled card action tick is already running")


class OptimisticLockError(ConflictError):
    """Optimistic locking conflict detected."""

    code: str = "OPTIMISTIC_LOCK_CONFLICT"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"Optimistic lock conflict on {entity_type} {entity_id}: "
            "entity was modified by another transaction"
        )


# =============================================================================
# Not-found errors
# =============================================================================


class NotFoundError(SpendKernelError):
    """Base exception for unknown ids."""

    code: str = "NOT_FOUND"
    entity_type: str = "entity"

    def __init__(self, entity_id: str):
        self.entity_id = entity_id
        super().__init__(f"{self.entity_type} not found: {entity_id}")


class PolicyNotFoundError(NotFoundError):
    code: str = "POLICY_NOT_FOUND"
    entity_type: str = "Policy"


class ChainRuleNotFoundError(NotFoundError):
    code: str = "CHAIN_RULE_NOT_FOUND"
    entity_type: str = "Approval chain rule"


class ExpenseNotFoundError(NotFoundError):
    code: str = "EXPENSE_NOT_FOUND"
    entity_type: str = "Expense"


class ExpenseReportNotFoundError(NotFoundError):
    code: str = "EXPENSE_REPORT_NOT_FOUND"
    entity_type: str = "Expense report"


class WorkflowNotFoundError(NotFoundError):
    code: str = "WORKFLOW_NOT_FOUND"
    entity_type: str = "Workflow request"


class ReimbursementNotFoundError(NotFoundError):
    code: str = "REIMBURSEMENT_NOT_FOUND"
    entity_type: str = "Reimbursement"


class CardNotFoundError(NotFoundError):
    code: str = "CARD_NOT_FOUND"
    entity_type: str = "Card"


class CardActionNotFoundError(NotFoundError):
    code: str = "CARD_ACTION_NOT_FOUND"
    entity_type: str = "Scheduled card action"


# =============================================================================
# Configuration errors
# =============================================================================


class ConfigurationError(SpendKernelError):
    """Base exception for deployment/configuration bugs."""

    code: str = "CONFIGURATION_ERROR"


class NoMatchingChainRuleError(ConfigurationError):
    """
    No approval chain rule covers an (amount, category) pair.

    An 'ALL'-category fallback rule must always exist; its absence is a
    deployment bug.
    """

    code: str = "NO_MATCHING_CHAIN_RULE"

    def __init__(self, amount: str, category: str):
        self.amount = amount
        self.category = category
        super().__init__(
            f"No approval chain rule matches amount {amount} in category "
            f"'{category}' and no 'ALL' fallback covers it"
        )


class InvalidConfigurationError(ConfigurationError):
    """Loaded configuration is invalid."""

    code: str = "INVALID_CONFIGURATION"

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Invalid configuration '{key}': {reason}")
