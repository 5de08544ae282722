"""
Shared test configuration and fixtures.

Storage is real (SQLite through aiosqlite, one file per test); Redis and the
escrow contract are replaced by in-process doubles so the suite runs without
external services.
"""

import asyncio
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct
from fastapi.testclient import TestClient

from energy_market.app import create_app
from energy_market.core.service.auth import siwe_message
from energy_market.core.service.auth.models.challenge import SignInMessage
from energy_market.core.service.blockchain.settlement_client import (
    SettlementClient,
    SettlementError,
    SettlementReceipt,
)
from energy_market.core.service.ledger.entity_lock import EntityLockManager
from energy_market.core.service.ledger.ledger_coordinator import LedgerCoordinator
from energy_market.infra.config.settings import Settings, SettlementMode
from energy_market.infra.database import DatabaseManager
from energy_market.infra.models import UserModel

TEST_HOST = "testserver"
TEST_ORIGIN = "http://testserver"
TEST_CHAIN_ID = 11155111


class InMemoryRedis:
    """The subset of the redis.asyncio client used by the session and challenge stores"""

    def __init__(self):
        self._data: Dict[str, str] = {}
        self._expiry: Dict[str, float] = {}

    def _alive(self, key: str) -> bool:
        deadline = self._expiry.get(key)
        if deadline is not None and deadline <= time.monotonic():
            self._data.pop(key, None)
            self._expiry.pop(key, None)
        return key in self._data

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key) if self._alive(key) else None

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        self._data[key] = value
        if ex:
            self._expiry[key] = time.monotonic() + ex
        else:
            self._expiry.pop(key, None)
        return True

    async def setex(self, key: str, seconds: int, value: str) -> bool:
        return await self.set(key, value, ex=seconds)

    async def getdel(self, key: str) -> Optional[str]:
        if not self._alive(key):
            return None
        self._expiry.pop(key, None)
        return self._data.pop(key)

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._alive(key):
                removed += 1
            self._data.pop(key, None)
            self._expiry.pop(key, None)
        return removed

    async def exists(self, *keys: str) -> int:
        return sum(1 for key in keys if self._alive(key))

    def keys_with_prefix(self, prefix: str) -> List[str]:
        return [key for key in list(self._data) if key.startswith(prefix) and self._alive(key)]


class FakeSettlementClient(SettlementClient):
    """Escrow double: records calls, can be told to fail, serves configured chain balances"""

    mode = SettlementMode.SIMULATED

    def __init__(self):
        self.calls: List[Tuple[str, tuple]] = []
        self.fail_operations = set()
        self.delay_seconds = 0.0
        self.chain_balances: Dict[str, Tuple[Decimal, Decimal]] = {}
        self._counter = 0

    async def _call(self, operation: str, *args) -> SettlementReceipt:
        self.calls.append((operation, args))
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if operation in self.fail_operations:
            raise SettlementError(f"{operation} reverted")
        self._counter += 1
        return SettlementReceipt(tx_ref=f"0x{self._counter:064x}", external_listing_id=self._counter)

    def calls_for(self, operation: str) -> List[tuple]:
        return [args for name, args in self.calls if name == operation]

    async def create_listing(self, seller_address, amount_kwh, rate_per_kwh):
        return await self._call("create_listing", seller_address, amount_kwh, rate_per_kwh)

    async def buy_energy(self, buyer_address, seller_address, external_listing_id, amount_kwh, total_cost):
        return await self._call("buy_energy", buyer_address, seller_address, external_listing_id, amount_kwh, total_cost)

    async def cancel_listing(self, seller_address, external_listing_id):
        return await self._call("cancel_listing", seller_address, external_listing_id)

    async def mint_initial_tokens(self, wallet_address, amount):
        return await self._call("mint_initial_tokens", wallet_address, amount)

    async def get_eth_balance(self, wallet_address):
        if wallet_address.lower() not in self.chain_balances:
            raise SettlementError("RPC unreachable")
        return self.chain_balances[wallet_address.lower()][0]

    async def get_energy_balance(self, wallet_address):
        if wallet_address.lower() not in self.chain_balances:
            raise SettlementError("RPC unreachable")
        return self.chain_balances[wallet_address.lower()][1]

    async def check_health(self):
        return {"status": "healthy", "mode": self.mode.value}


def build_sign_in_message(
    address: str,
    nonce: str,
    domain: str = TEST_HOST,
    uri: str = TEST_ORIGIN,
    chain_id: int = TEST_CHAIN_ID,
    issued_at: Optional[str] = None
) -> str:
    return siwe_message.serialize(SignInMessage(
        domain=domain,
        address=address,
        statement="Sign in with Ethereum to EnergyMarket",
        uri=uri,
        version="1",
        chain_id=chain_id,
        nonce=nonce,
        issued_at=issued_at or datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
    ))


def sign_text(account, text: str) -> str:
    return Account.sign_message(encode_defunct(text=text), private_key=account.key).signature.hex()


def sign_in(client: TestClient, account, **message_overrides):
    """Run the nonce/verify exchange for ``account`` and return the verify response"""
    nonce = client.get("/api/auth/nonce").json()["nonce"]
    raw = build_sign_in_message(account.address, nonce, **message_overrides)
    return client.post("/api/auth/verify", json={"message": raw, "signature": sign_text(account, raw)})


def log_in(client: TestClient, account) -> str:
    """Sign ``account`` in on a fresh session and return the session id"""
    client.cookies.clear()
    response = sign_in(client, account)
    assert response.status_code == 200, response.text
    return response.cookies["sid"]


def use_session(client: TestClient, session_id: str) -> None:
    """Make the next requests carry only this session cookie"""
    client.cookies.clear()
    client.cookies.set("sid", session_id)


@pytest.fixture
def test_wallet():
    """Fresh wallet for signing"""
    return Account.create()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}",
        CHAIN_ID=TEST_CHAIN_ID,
        SESSION_COOKIE_SECURE=False,
        SETTLEMENT_MODE=SettlementMode.SIMULATED,
        SETTLEMENT_TIMEOUT_SECONDS=2.0,
        INITIAL_ENERGY_GRANT=Decimal("1000"),
    )


@pytest.fixture
def redis_client() -> InMemoryRedis:
    return InMemoryRedis()


@pytest.fixture
def settlement() -> FakeSettlementClient:
    return FakeSettlementClient()


@pytest.fixture
async def database(settings):
    """Connected ledger database with the schema created"""
    manager = DatabaseManager(settings=settings)
    await manager.create_schema()
    yield manager
    await manager.close()


@pytest.fixture
def lock_manager() -> EntityLockManager:
    return EntityLockManager()


@pytest.fixture
def ledger(database, settlement, lock_manager) -> LedgerCoordinator:
    return LedgerCoordinator(
        database.session_factory,
        settlement,
        lock_manager,
        settlement_timeout=2.0
    )


@pytest.fixture
def make_user(database):
    """Insert a user with the given balances and return its id"""

    async def _make_user(
        energy: str = "0",
        eth: str = "0",
        wallet_address: Optional[str] = None
    ) -> str:
        wallet = (wallet_address or Account.create().address).lower()
        async with database.session_factory() as session:
            user = UserModel(
                wallet_address=wallet,
                energy_balance=Decimal(energy),
                eth_balance=Decimal(eth),
                total_earnings=Decimal("0"),
                is_new_user=False
            )
            session.add(user)
            await session.commit()
            return user.id

    return _make_user


@pytest.fixture
def get_user_row(database):
    async def _get(user_id: str) -> UserModel:
        async with database.session_factory() as session:
            return await session.get(UserModel, user_id)

    return _get


@pytest.fixture
def app(settings, redis_client, settlement):
    return create_app(
        settings=settings,
        database=DatabaseManager(settings=settings),
        redis_client=redis_client,
        settlement_client=settlement
    )


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client

