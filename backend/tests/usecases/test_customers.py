import asyncio
from datetime import datetime
from typing import Optional

import pytest
from excursion_booking.domain.errors import CustomerConflictError
from excursion_booking.models import Customer
from excursion_booking.usecases.customers import find_or_create_customer


class RacingCustomerRepo:
    """Auto-commit fake: every await yields so concurrent callers interleave."""

    def __init__(self) -> None:
        self.rows: dict[str, Customer] = {}
        self.inserts = 0
        self.locking_reads = 0

    async def get_by_email(self, email: str) -> Optional[Customer]:
        await asyncio.sleep(0)
        return self.rows.get(email)

    async def get_by_email_for_update(self, email: str) -> Optional[Customer]:
        self.locking_reads += 1
        return self.rows.get(email)

    async def insert(self, *, email: str, full_name: str, phone: Optional[str]) -> Customer:
        await asyncio.sleep(0)
        if email in self.rows:
            raise CustomerConflictError(f"customer {email} already exists")
        now = datetime(2030, 1, 1)
        customer = Customer(
            id=len(self.rows) + 1,
            email=email,
            full_name=full_name,
            phone=phone,
            created_at=now,
            updated_at=now,
        )
        self.rows[email] = customer
        self.inserts += 1
        return customer


@pytest.mark.asyncio
async def test_concurrent_calls_converge_on_one_customer() -> None:
    repo = RacingCustomerRepo()
    ids = await asyncio.gather(
        *(find_or_create_customer(repo, email="ada@example.com", name="Ada Lovelace", phone=None) for _ in range(10))
    )
    assert len(set(ids)) == 1
    assert repo.inserts == 1
    assert repo.locking_reads == 9


@pytest.mark.asyncio
async def test_email_is_normalized_before_lookup() -> None:
    repo = RacingCustomerRepo()
    first = await find_or_create_customer(repo, email="Ada@Example.com ", name="Ada Lovelace", phone="123")
    second = await find_or_create_customer(repo, email="ada@example.com", name="Someone Else", phone=None)
    assert first == second
    assert list(repo.rows) == ["ada@example.com"]


@pytest.mark.asyncio
async def test_existing_customer_keeps_name_and_phone() -> None:
    repo = RacingCustomerRepo()
    await find_or_create_customer(repo, email="ada@example.com", name="Ada Lovelace", phone="123")
    await find_or_create_customer(repo, email="ada@example.com", name="Ada King", phone="999")
    stored = repo.rows["ada@example.com"]
    assert stored.full_name == "Ada Lovelace"
    assert stored.phone == "123"
