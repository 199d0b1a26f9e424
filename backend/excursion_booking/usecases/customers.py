from ..domain.errors import CustomerConflictError
from ..domain.repositories import CustomerRepository
from ..domain.services import normalize_email


async def find_or_create_customer(
    customer_repo: CustomerRepository,
    *,
    email: str,
    name: str,
    phone: str | None,
) -> int:
    """Return the id of the customer owning `email`, inserting one if needed.

    An existing customer keeps its stored name and phone.
    """
    normalized = normalize_email(email)
    existing = await customer_repo.get_by_email(normalized)
    if existing is not None:
        return existing.id

    try:
        customer = await customer_repo.insert(email=normalized, full_name=name.strip(), phone=phone or None)
    except CustomerConflictError:
        # Lost the race to a concurrent insert; the winner's row is committed by now.
        winner = await customer_repo.get_by_email_for_update(normalized)
        if winner is None:
            raise
        return winner.id
    return customer.id
