import asyncio
from decimal import Decimal

import pytest
from eth_account import Account

from energy_market.core.exceptions.handler import AuthError, ServiceErrorCode
from energy_market.core.service.auth.cache.session_store import SessionStore
from energy_market.core.service.auth.session_service import SessionBinder
from energy_market.core.service.ledger.balance_reconciler import BalanceReconciler


@pytest.fixture
def session_store(redis_client):
    return SessionStore(redis_client, ttl_seconds=3600)


@pytest.fixture
def binder(session_store, database, settlement, lock_manager):
    reconciler = BalanceReconciler(database.session_factory, settlement, lock_manager, timeout_seconds=2.0)
    return SessionBinder(
        session_store,
        database.session_factory,
        settlement,
        reconciler,
        initial_energy_grant=Decimal("1000"),
        grant_timeout_seconds=2.0
    )


async def test_first_sign_in_creates_user_with_initial_grant(binder, settlement):
    wallet = Account.create().address
    anonymous = await binder.ensure_session(None)

    user, bound = await binder.bind(anonymous, wallet)
    await binder.wait_for_background_tasks()

    assert user.wallet_address == wallet.lower()
    assert user.energy_balance == Decimal("1000")
    assert user.eth_balance == Decimal("0")
    assert user.is_new_user is True
    assert bound.user_id == user.id
    assert bound.wallet_address == wallet.lower()
    assert settlement.calls_for("mint_initial_tokens") == [(wallet.lower(), Decimal("1000"))]


async def test_failed_initial_mint_does_not_fail_sign_in(binder, settlement, get_user_row):
    settlement.fail_operations.add("mint_initial_tokens")
    anonymous = await binder.ensure_session(None)

    user, bound = await binder.bind(anonymous, Account.create().address)
    await binder.wait_for_background_tasks()

    assert bound.is_authenticated
    assert (await get_user_row(user.id)).energy_balance == Decimal("1000")


async def test_bind_regenerates_session_id(binder, session_store):
    anonymous = await binder.ensure_session(None)

    _, bound = await binder.bind(anonymous, Account.create().address)

    assert bound.id != anonymous.id
    assert await session_store.get_session(anonymous.id) is None
    assert (await session_store.get_session(bound.id)).is_authenticated


async def test_returning_user_is_reconciled_without_second_grant(binder, settlement, make_user):
    wallet = Account.create().address
    user_id = await make_user(energy="5", eth="0", wallet_address=wallet)
    settlement.chain_balances[wallet.lower()] = (Decimal("2.5"), Decimal("40"))

    user, _ = await binder.bind(await binder.ensure_session(None), wallet.upper().replace("0X", "0x"))

    assert user.id == user_id
    assert user.eth_balance == Decimal("2.5")
    assert user.energy_balance == Decimal("40")
    assert settlement.calls_for("mint_initial_tokens") == []


async def test_returning_user_keeps_cached_balances_when_chain_unreachable(binder, make_user):
    wallet = Account.create().address
    user_id = await make_user(energy="5", eth="1", wallet_address=wallet)

    user, _ = await binder.bind(await binder.ensure_session(None), wallet)

    assert user.id == user_id
    assert user.energy_balance == Decimal("5")
    assert user.eth_balance == Decimal("1")


async def test_concurrent_first_sign_ins_share_one_user(binder):
    wallet = Account.create().address
    first, second = await binder.ensure_session(None), await binder.ensure_session(None)

    (user_a, _), (user_b, _) = await asyncio.gather(binder.bind(first, wallet), binder.bind(second, wallet))
    await binder.wait_for_background_tasks()

    assert user_a.id == user_b.id


async def test_ensure_session_reuses_live_session(binder):
    session = await binder.ensure_session(None)

    assert (await binder.ensure_session(session.id)).id == session.id
    assert (await binder.ensure_session("unknown")).id != "unknown"


async def test_resolve_requires_authenticated_session(binder):
    anonymous = await binder.ensure_session(None)

    for session_id in (None, "", "unknown", anonymous.id):
        with pytest.raises(AuthError) as exc_info:
            await binder.resolve(session_id)
        assert exc_info.value.code == ServiceErrorCode.AUTHENTICATION_REQUIRED
        assert exc_info.value.status_code == 401

    _, bound = await binder.bind(anonymous, Account.create().address)
    assert (await binder.resolve(bound.id)).id == bound.id


async def test_current_user_returns_bound_user(binder):
    user, bound = await binder.bind(await binder.ensure_session(None), Account.create().address)

    assert (await binder.current_user(bound)).id == user.id


async def test_logout_destroys_session(binder, session_store):
    _, bound = await binder.bind(await binder.ensure_session(None), Account.create().address)

    await binder.logout(bound.id)

    assert await session_store.get_session(bound.id) is None
    with pytest.raises(AuthError):
        await binder.resolve(bound.id)


async def test_logout_without_session_is_noop(binder):
    await binder.logout(None)
