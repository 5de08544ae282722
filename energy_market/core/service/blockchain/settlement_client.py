"""
Settlement clients for the energy escrow contracts.

The ledger talks to the chain only through ``SettlementClient``. One
implementation is chosen at process start from ``SETTLEMENT_MODE`` and handed
to the services that need it:

* ``Web3SettlementClient`` signs marketplace/token calls with the operator key
  and waits for receipts.
* ``SimulatedSettlementClient`` accepts every escrow call and has no balances
  to report; it exists for demos and local development.

Failures are raised as ``SettlementError``; no client ever invents a
transaction reference for a call that did not happen.
"""

import asyncio
import itertools
import secrets
import threading
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, Optional

from eth_account import Account
from pydantic import BaseModel
from web3 import Web3
from web3.logs import DISCARD

from energy_market.core.logger.logger import get_logger
from energy_market.infra.config.settings import Settings, SettlementMode

logger = get_logger(__name__)


class SettlementError(Exception):
    """An escrow/chain call failed or could not be attempted"""


class SettlementUnavailable(SettlementError):
    """The requested data has no source in this settlement mode"""


class SettlementReceipt(BaseModel):
    tx_ref: str
    external_listing_id: Optional[int] = None


class SettlementClient(ABC):
    """Boundary to the on-chain escrow; the contract logic itself is trusted"""

    mode: SettlementMode

    @abstractmethod
    async def create_listing(self, seller_address: str, amount_kwh: Decimal, rate_per_kwh: Decimal) -> SettlementReceipt:
        """Move the listed energy into escrow"""

    @abstractmethod
    async def buy_energy(
        self,
        buyer_address: str,
        seller_address: str,
        external_listing_id: Optional[int],
        amount_kwh: Decimal,
        total_cost: Decimal
    ) -> SettlementReceipt:
        """Pay for and release escrowed energy"""

    @abstractmethod
    async def cancel_listing(self, seller_address: str, external_listing_id: Optional[int]) -> SettlementReceipt:
        """Return the remaining escrowed energy to the seller"""

    @abstractmethod
    async def mint_initial_tokens(self, wallet_address: str, amount: Decimal) -> SettlementReceipt:
        """Grant starting energy tokens to a new wallet"""

    @abstractmethod
    async def get_eth_balance(self, wallet_address: str) -> Decimal:
        pass

    @abstractmethod
    async def get_energy_balance(self, wallet_address: str) -> Decimal:
        pass

    @abstractmethod
    async def check_health(self) -> Dict[str, Any]:
        pass


class SimulatedSettlementClient(SettlementClient):
    """Accepts every escrow call without a chain behind it"""

    mode = SettlementMode.SIMULATED

    def __init__(self):
        self._listing_ids = itertools.count(1)

    def _receipt(self, operation: str, external_listing_id: Optional[int] = None, **fields) -> SettlementReceipt:
        receipt = SettlementReceipt(tx_ref="0x" + secrets.token_hex(32), external_listing_id=external_listing_id)
        logger.info(
            f"Simulated settlement: {operation}",
            extra={"tx_ref": receipt.tx_ref, **{k: str(v) for k, v in fields.items()}}
        )
        return receipt

    async def create_listing(self, seller_address, amount_kwh, rate_per_kwh):
        return self._receipt("create_listing", next(self._listing_ids),
                             seller=seller_address, amount_kwh=amount_kwh, rate_per_kwh=rate_per_kwh)

    async def buy_energy(self, buyer_address, seller_address, external_listing_id, amount_kwh, total_cost):
        return self._receipt("buy_energy", external_listing_id, buyer=buyer_address,
                             seller=seller_address, amount_kwh=amount_kwh, total_cost=total_cost)

    async def cancel_listing(self, seller_address, external_listing_id):
        return self._receipt("cancel_listing", external_listing_id, seller=seller_address)

    async def mint_initial_tokens(self, wallet_address, amount):
        return self._receipt("mint_initial_tokens", wallet=wallet_address, amount=amount)

    async def get_eth_balance(self, wallet_address):
        raise SettlementUnavailable("No chain balances in simulated settlement mode")

    async def get_energy_balance(self, wallet_address):
        raise SettlementUnavailable("No chain balances in simulated settlement mode")

    async def check_health(self):
        return {"status": "healthy", "mode": self.mode.value}


ENERGY_TOKEN_ABI = [
    {
        "name": "balanceOf", "type": "function", "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "mint", "type": "function", "stateMutability": "nonpayable",
        "inputs": [{"name": "to", "type": "address"}, {"name": "amount", "type": "uint256"}],
        "outputs": [],
    },
]

MARKETPLACE_ABI = [
    {
        "name": "createListing", "type": "function", "stateMutability": "nonpayable",
        "inputs": [{"name": "amountKWh", "type": "uint256"}, {"name": "ratePerKWh", "type": "uint256"}],
        "outputs": [],
    },
    {
        "name": "buyEnergy", "type": "function", "stateMutability": "payable",
        "inputs": [{"name": "listingId", "type": "uint256"}, {"name": "amount", "type": "uint256"}],
        "outputs": [],
    },
    {
        "name": "cancelListing", "type": "function", "stateMutability": "nonpayable",
        "inputs": [{"name": "listingId", "type": "uint256"}],
        "outputs": [],
    },
    {
        "name": "ListingCreated", "type": "event", "anonymous": False,
        "inputs": [
            {"name": "listingId", "type": "uint256", "indexed": True},
            {"name": "seller", "type": "address", "indexed": True},
            {"name": "amountKWh", "type": "uint256", "indexed": False},
            {"name": "ratePerKWh", "type": "uint256", "indexed": False},
        ],
    },
]


class Web3SettlementClient(SettlementClient):
    """
    Drives the EnergyToken and Marketplace contracts with the operator key.

    web3's HTTP provider is blocking, so every call runs in a worker thread;
    transaction submission is serialized to keep operator nonces in order.
    """

    mode = SettlementMode.LIVE

    def __init__(
        self,
        rpc_url: str,
        admin_private_key: str,
        energy_token_address: str,
        marketplace_address: str,
        chain_id: int,
        token_decimals: int = 18,
        receipt_timeout: float = 120.0,
        w3: Optional[Web3] = None
    ):
        self.w3 = w3 or Web3(Web3.HTTPProvider(rpc_url))
        self.admin = Account.from_key(admin_private_key)
        self.chain_id = chain_id
        self.token_unit = Decimal(10) ** token_decimals
        self.receipt_timeout = receipt_timeout
        self.energy_token = self.w3.eth.contract(
            address=Web3.to_checksum_address(energy_token_address), abi=ENERGY_TOKEN_ABI
        )
        self.marketplace = self.w3.eth.contract(
            address=Web3.to_checksum_address(marketplace_address), abi=MARKETPLACE_ABI
        )
        self._send_lock = threading.Lock()

        logger.info(
            "Web3 settlement client initialized",
            extra={"operator": self.admin.address, "chain_id": chain_id}
        )

    def _to_token_units(self, amount: Decimal) -> int:
        return int(amount * self.token_unit)

    def _transact(self, operation: str, function, value_wei: int = 0):
        with self._send_lock:
            transaction = function.build_transaction({
                "from": self.admin.address,
                "nonce": self.w3.eth.get_transaction_count(self.admin.address, "pending"),
                "value": value_wei,
                "chainId": self.chain_id,
            })
            signed = self.admin.sign_transaction(transaction)
            raw = getattr(signed, "raw_transaction", None) or signed.rawTransaction
            tx_hash = self.w3.eth.send_raw_transaction(raw)

        logger.info(f"Settlement transaction sent: {operation}", extra={"tx_hash": Web3.to_hex(tx_hash)})
        receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        if receipt["status"] != 1:
            raise SettlementError(f"{operation} reverted in transaction {Web3.to_hex(tx_hash)}")
        return receipt

    async def _run(self, operation: str, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except SettlementError:
            raise
        except Exception as e:
            raise SettlementError(f"{operation} failed: {e}") from e

    def _create_listing_sync(self, amount_kwh: Decimal, rate_per_kwh: Decimal) -> SettlementReceipt:
        receipt = self._transact(
            "create_listing",
            self.marketplace.functions.createListing(
                self._to_token_units(amount_kwh), Web3.to_wei(rate_per_kwh, "ether")
            )
        )
        events = self.marketplace.events.ListingCreated().process_receipt(receipt, errors=DISCARD)
        listing_id = events[0]["args"]["listingId"] if events else None
        return SettlementReceipt(tx_ref=Web3.to_hex(receipt["transactionHash"]), external_listing_id=listing_id)

    async def create_listing(self, seller_address, amount_kwh, rate_per_kwh):
        return await self._run("create_listing", self._create_listing_sync, amount_kwh, rate_per_kwh)

    def _buy_energy_sync(self, external_listing_id: int, amount_kwh: Decimal, total_cost: Decimal) -> SettlementReceipt:
        receipt = self._transact(
            "buy_energy",
            self.marketplace.functions.buyEnergy(external_listing_id, self._to_token_units(amount_kwh)),
            value_wei=Web3.to_wei(total_cost, "ether")
        )
        return SettlementReceipt(tx_ref=Web3.to_hex(receipt["transactionHash"]), external_listing_id=external_listing_id)

    async def buy_energy(self, buyer_address, seller_address, external_listing_id, amount_kwh, total_cost):
        if external_listing_id is None:
            raise SettlementError("Listing has no on-chain listing id")
        return await self._run("buy_energy", self._buy_energy_sync, external_listing_id, amount_kwh, total_cost)

    def _cancel_listing_sync(self, external_listing_id: int) -> SettlementReceipt:
        receipt = self._transact("cancel_listing", self.marketplace.functions.cancelListing(external_listing_id))
        return SettlementReceipt(tx_ref=Web3.to_hex(receipt["transactionHash"]), external_listing_id=external_listing_id)

    async def cancel_listing(self, seller_address, external_listing_id):
        if external_listing_id is None:
            raise SettlementError("Listing has no on-chain listing id")
        return await self._run("cancel_listing", self._cancel_listing_sync, external_listing_id)

    def _mint_sync(self, wallet_address: str, amount: Decimal) -> SettlementReceipt:
        receipt = self._transact(
            "mint_initial_tokens",
            self.energy_token.functions.mint(Web3.to_checksum_address(wallet_address), self._to_token_units(amount))
        )
        return SettlementReceipt(tx_ref=Web3.to_hex(receipt["transactionHash"]))

    async def mint_initial_tokens(self, wallet_address, amount):
        return await self._run("mint_initial_tokens", self._mint_sync, wallet_address, amount)

    def _eth_balance_sync(self, wallet_address: str) -> Decimal:
        balance_wei = self.w3.eth.get_balance(Web3.to_checksum_address(wallet_address))
        return Decimal(Web3.from_wei(balance_wei, "ether"))

    async def get_eth_balance(self, wallet_address):
        return await self._run("get_eth_balance", self._eth_balance_sync, wallet_address)

    def _energy_balance_sync(self, wallet_address: str) -> Decimal:
        raw = self.energy_token.functions.balanceOf(Web3.to_checksum_address(wallet_address)).call()
        return Decimal(raw) / self.token_unit

    async def get_energy_balance(self, wallet_address):
        return await self._run("get_energy_balance", self._energy_balance_sync, wallet_address)

    async def check_health(self):
        try:
            connected = await asyncio.to_thread(self.w3.is_connected)
        except Exception as e:
            return {"status": "unhealthy", "mode": self.mode.value, "error": str(e)}
        return {
            "status": "healthy" if connected else "unhealthy",
            "mode": self.mode.value,
            "chain_id": self.chain_id,
            "operator": self.admin.address
        }


def create_settlement_client(settings: Settings) -> SettlementClient:
    """Pick the settlement capability once, at process start"""
    if settings.SETTLEMENT_MODE == SettlementMode.SIMULATED:
        logger.warning("Settlement running in simulated mode; no chain transactions will be sent")
        return SimulatedSettlementClient()

    missing = [
        name for name in ("ADMIN_PRIVATE_KEY", "ENERGY_TOKEN_ADDRESS", "MARKETPLACE_ADDRESS")
        if not getattr(settings, name)
    ]
    if missing:
        raise ValueError(f"Live settlement requires {', '.join(missing)}")

    return Web3SettlementClient(
        rpc_url=settings.RPC_URL,
        admin_private_key=settings.ADMIN_PRIVATE_KEY,
        energy_token_address=settings.ENERGY_TOKEN_ADDRESS,
        marketplace_address=settings.MARKETPLACE_ADDRESS,
        chain_id=settings.CHAIN_ID,
        token_decimals=settings.ENERGY_TOKEN_DECIMALS,
        receipt_timeout=settings.SETTLEMENT_TIMEOUT_SECONDS
    )
