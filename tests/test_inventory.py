"""在庫台帳: 実 SQLite ファイルに対する条件付き引き当て・戻し"""

import asyncio

import pytest

from marketplace.errors import InsufficientInventory, NotFoundError, ValidationError


async def test_get_product(ledger, seed_product):
    await seed_product("p1", unit_price=12.5, available=4, owner_id="farmer-9", name="Tomatoes")

    product = await ledger.get_product("p1")

    assert product.owner_id == "farmer-9"
    assert product.name == "Tomatoes"
    assert product.unit_price == 12.5
    assert product.available_quantity == 4


async def test_get_missing_product(ledger):
    with pytest.raises(NotFoundError):
        await ledger.get_product("nope")


async def test_reserve_decrements_and_snapshots_price(ledger, seed_product):
    await seed_product("p1", unit_price=10.0, available=5)

    reservation = await ledger.reserve("p1", 3)

    assert reservation.available_quantity == 2
    assert reservation.unit_price == 10.0
    assert (await ledger.get_product("p1")).available_quantity == 2


async def test_reserve_exact_remaining_quantity(ledger, seed_product):
    await seed_product("p1", available=3)
    assert (await ledger.reserve("p1", 3)).available_quantity == 0


async def test_reserve_more_than_available(ledger, seed_product):
    await seed_product("p1", available=2)

    with pytest.raises(InsufficientInventory) as exc_info:
        await ledger.reserve("p1", 3)

    assert exc_info.value.requested == 3
    assert exc_info.value.available == 2
    assert (await ledger.get_product("p1")).available_quantity == 2


async def test_reserve_missing_product(ledger):
    with pytest.raises(NotFoundError):
        await ledger.reserve("nope", 1)


@pytest.mark.parametrize("quantity", [0, -1])
async def test_reserve_rejects_non_positive_quantity(ledger, seed_product, quantity):
    await seed_product("p1", available=5)
    with pytest.raises(ValidationError):
        await ledger.reserve("p1", quantity)


async def test_fractional_quantities(ledger, seed_product):
    await seed_product("p1", available=2.5)
    assert (await ledger.reserve("p1", 1.5)).available_quantity == pytest.approx(1.0)


async def test_release_increments(ledger, seed_product):
    await seed_product("p1", available=5)
    await ledger.reserve("p1", 3)

    assert await ledger.release("p1", 3) == 5


async def test_release_missing_product(ledger):
    with pytest.raises(NotFoundError):
        await ledger.release("nope", 1)


async def test_concurrent_reservations_never_oversell(ledger, seed_product):
    await seed_product("p1", available=5)

    results = await asyncio.gather(
        *(ledger.reserve("p1", 1) for _ in range(8)),
        return_exceptions=True,
    )

    succeeded = [r for r in results if not isinstance(r, Exception)]
    refused = [r for r in results if isinstance(r, InsufficientInventory)]
    assert len(succeeded) == 5
    assert len(refused) == 3
    assert (await ledger.get_product("p1")).available_quantity == 0


async def test_race_on_last_units(ledger, seed_product):
    await seed_product("p1", available=5)

    results = await asyncio.gather(
        ledger.reserve("p1", 3), ledger.reserve("p1", 3), return_exceptions=True
    )

    assert sum(isinstance(r, InsufficientInventory) for r in results) == 1
    assert (await ledger.get_product("p1")).available_quantity == 2
