"""ORM models.  ``import_all_models`` registers every table on ``Base.metadata``."""


def import_all_models() -> None:
    from spend_kernel.models import approval, card, expense, policy, reimbursement  # noqa: F401
