import asyncio
from decimal import Decimal, localcontext
from typing import Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from energy_market.core.logger.logger import get_logger
from energy_market.core.service.auth.utils.address import normalize_address
from energy_market.core.service.blockchain.settlement_client import (
    SettlementClient,
    SettlementError,
    SettlementUnavailable,
)
from energy_market.core.service.ledger.entity_lock import EntityLockManager, user_key
from energy_market.core.service.ledger.models import BalanceSnapshot
from energy_market.infra.repository.listing_repository import ListingRepository
from energy_market.infra.repository.transaction_repository import TransactionRepository
from energy_market.infra.repository.user_repository import UserRepository

logger = get_logger(__name__)

ZERO = Decimal("0")


class BalanceReconciler:
    """
    Best-effort sync of the cached user balances with the chain.

    Escrow calls the server makes are signed by the operator key, so the
    user's wallet never sees them: tokens listed that way stay in the seller's
    wallet and purchases are paid by the operator. The stored balance is the
    chain balance adjusted by what the ledger holds or has moved on the
    wallet's behalf. Any failure leaves the stored balances as they were and
    returns None.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        settlement_client: SettlementClient,
        lock_manager: EntityLockManager,
        timeout_seconds: float = 10.0
    ):
        self.session_factory = session_factory
        self.settlement = settlement_client
        self.locks = lock_manager
        self.timeout_seconds = timeout_seconds

    async def _read_chain(self, wallet_address: str) -> Tuple[Decimal, Decimal]:
        eth_balance = await self.settlement.get_eth_balance(wallet_address)
        energy_balance = await self.settlement.get_energy_balance(wallet_address)
        return eth_balance, energy_balance

    async def _apply_ledger_holdings(
        self,
        session: AsyncSession,
        user_id: str,
        wallet: str,
        chain_eth: Decimal,
        chain_energy: Decimal
    ) -> Tuple[Decimal, Decimal]:
        escrowed = await ListingRepository(session).server_escrowed_energy(user_id)
        eth_moved, energy_moved = await TransactionRepository(session).server_settled_movements(user_id)

        with localcontext() as ctx:
            ctx.prec = 60
            eth_balance = chain_eth + eth_moved
            energy_balance = chain_energy + energy_moved - escrowed

        if eth_balance < 0 or energy_balance < 0:
            # Wallet spent funds the ledger still counts as held
            logger.warning(
                "Chain balances below ledger holdings, clamping to zero",
                extra={
                    "wallet_address": wallet,
                    "chain_eth": str(chain_eth),
                    "chain_energy": str(chain_energy),
                    "escrowed_kwh": str(escrowed)
                }
            )
        return max(eth_balance, ZERO), max(energy_balance, ZERO)

    async def refresh(self, wallet_address: str) -> Optional[BalanceSnapshot]:
        wallet = normalize_address(wallet_address)

        try:
            eth_balance, energy_balance = await asyncio.wait_for(
                self._read_chain(wallet), timeout=self.timeout_seconds
            )
        except SettlementUnavailable:
            logger.debug("Chain balances unavailable, keeping cached values", extra={"wallet_address": wallet})
            return None
        except (SettlementError, asyncio.TimeoutError) as e:
            logger.warning(
                "Balance refresh failed, keeping cached values",
                extra={"wallet_address": wallet, "error": str(e) or type(e).__name__}
            )
            return None

        try:
            async with self.session_factory() as session:
                user = await UserRepository(session).get_by_wallet(wallet)
            if user is None:
                return None

            async with self.locks.hold([user_key(user.id)]):
                async with self.session_factory() as session:
                    async with session.begin():
                        eth_balance, energy_balance = await self._apply_ledger_holdings(
                            session, user.id, wallet, eth_balance, energy_balance
                        )
                        await UserRepository(session).set_chain_balances(user.id, eth_balance, energy_balance)
        except SQLAlchemyError as e:
            logger.warning(
                "Failed to store refreshed balances",
                extra={"wallet_address": wallet, "error": str(e)}
            )
            return None

        logger.debug(
            "Balances reconciled",
            extra={"wallet_address": wallet, "eth_balance": str(eth_balance), "energy_balance": str(energy_balance)}
        )
        return BalanceSnapshot(wallet_address=wallet, eth_balance=eth_balance, energy_balance=energy_balance)
