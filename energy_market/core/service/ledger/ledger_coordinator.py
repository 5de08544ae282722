"""
Settlement engine for listings and purchases.

Seller energy is escrowed when a listing is created: the seller's balance is
debited at creation, purchases only move ETH to the seller, and cancellation
credits the unsold remainder back.

Every mutating operation runs in two phases around the external escrow call:

1. take the entity locks, validate inside a DB transaction, release;
2. call the settlement client with no locks held (bounded by a timeout);
3. re-take the locks, re-read and re-validate, then apply every mutation in
   one DB transaction.

Nothing is committed when the external call fails, and a failure is never
recorded as a completed transaction.
"""

import asyncio
from contextlib import asynccontextmanager
from decimal import Decimal, localcontext
from typing import AsyncIterator, Iterable, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from energy_market.core.exceptions.handler import (
    ExternalSettlementFailure,
    InsufficientBalance,
    InsufficientEnergy,
    InternalError,
    NotFoundError,
    ServiceError,
    UnauthorizedError,
    ValidationError,
)
from energy_market.core.logger.logger import get_logger
from energy_market.core.service.blockchain.settlement_client import SettlementClient, SettlementError
from energy_market.core.service.ledger.entity_lock import EntityLockManager, listing_key, user_key
from energy_market.core.service.ledger.models import (
    ENERGY_PLACES,
    VALUE_PLACES,
    EnrichedListing,
    EnrichedTransaction,
    Listing,
    Transaction,
    TransactionStatus,
    require_positive,
    require_storable,
    value_of,
)
from energy_market.core.service.websocket.manager import ConnectionManager
from energy_market.infra.models import EnergyListingModel, UserModel
from energy_market.infra.repository.listing_repository import ListingRepository
from energy_market.infra.repository.transaction_repository import TransactionRepository
from energy_market.infra.repository.user_repository import UserRepository

logger = get_logger(__name__)

ZERO = Decimal("0")


class LedgerCoordinator:
    """Validates and applies listing, purchase and cancellation operations"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        settlement_client: SettlementClient,
        lock_manager: EntityLockManager,
        events: Optional[ConnectionManager] = None,
        settlement_timeout: float = 60.0
    ):
        self.session_factory = session_factory
        self.settlement = settlement_client
        self.locks = lock_manager
        self.events = events
        self.settlement_timeout = settlement_timeout

    # ------------------------------------------------------------------
    # Phase helpers
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _locked_transaction(self, keys: Iterable[str]) -> AsyncIterator[AsyncSession]:
        """Entity locks plus one DB transaction; the session is closed before the locks are released"""
        async with self.locks.hold(keys):
            async with self.session_factory() as session:
                async with session.begin():
                    yield session

    @asynccontextmanager
    async def _commit_phase(
        self,
        keys: Iterable[str],
        operation: str,
        settled_ref: Optional[str]
    ) -> AsyncIterator[AsyncSession]:
        try:
            async with self._locked_transaction(keys) as session:
                yield session
        except IntegrityError as e:
            self._log_orphan(operation, settled_ref, "duplicate external reference")
            raise ValidationError("External transaction reference is already recorded") from e
        except SQLAlchemyError as e:
            self._log_orphan(operation, settled_ref, "storage error")
            logger.error("Ledger write failed", extra={"operation": operation, "error": str(e)})
            raise InternalError() from e
        except ServiceError as e:
            self._log_orphan(operation, settled_ref, e.code)
            raise

    @staticmethod
    def _log_orphan(operation: str, settled_ref: Optional[str], reason: str) -> None:
        if settled_ref is None:
            return
        logger.error(
            "External settlement succeeded but the ledger rejected the operation",
            extra={"operation": operation, "tx_ref": settled_ref, "reason": reason}
        )

    async def _settle(self, operation: str, call):
        try:
            return await asyncio.wait_for(call, timeout=self.settlement_timeout)
        except asyncio.TimeoutError:
            logger.error(
                "Settlement call timed out",
                extra={"operation": operation, "timeout_seconds": self.settlement_timeout}
            )
            raise ExternalSettlementFailure(context={"operation": operation, "reason": "timeout"})
        except SettlementError as e:
            logger.error(
                "Settlement call failed",
                extra={"operation": operation, "error": str(e)}
            )
            raise ExternalSettlementFailure(context={"operation": operation, "reason": str(e)}) from e

    async def _publish(self, notify: str, *args) -> None:
        if self.events is None:
            return
        try:
            await getattr(self.events, notify)(*args)
        except Exception as e:
            logger.warning("Failed to publish market event", extra={"error": str(e)})

    # ------------------------------------------------------------------
    # Preconditions
    # ------------------------------------------------------------------

    @staticmethod
    def _check_seller_energy(seller: Optional[UserModel], amount_kwh: Decimal) -> UserModel:
        if seller is None:
            raise NotFoundError("User not found")
        if seller.energy_balance < amount_kwh:
            raise InsufficientBalance(
                "Insufficient energy balance",
                context={"available": str(seller.energy_balance), "requested": str(amount_kwh)}
            )
        return seller

    @staticmethod
    def _check_listing_open(listing: Optional[EnergyListingModel]) -> EnergyListingModel:
        if listing is None:
            raise NotFoundError("Listing not found")
        if not listing.is_active:
            raise ValidationError("Listing is no longer active")
        return listing

    def _check_purchase(
        self,
        listing: Optional[EnergyListingModel],
        buyer: Optional[UserModel],
        amount_kwh: Decimal
    ) -> Decimal:
        """Return the purchase cost when every precondition holds"""
        listing = self._check_listing_open(listing)
        if buyer is None:
            raise NotFoundError("User not found")
        if buyer.id == listing.seller_id:
            raise ValidationError("Cannot buy energy from your own listing")
        if amount_kwh > listing.amount_kwh:
            raise InsufficientEnergy(
                "Requested amount exceeds available energy",
                context={"available": str(listing.amount_kwh), "requested": str(amount_kwh)}
            )

        total_cost = value_of(amount_kwh, listing.rate_per_kwh)
        if buyer.eth_balance < total_cost:
            raise InsufficientBalance(
                "Insufficient ETH balance",
                context={"available": str(buyer.eth_balance), "required": str(total_cost)}
            )
        return total_cost

    async def _load_listing(self, listing_id: str) -> Listing:
        async with self.session_factory() as session:
            listing = await ListingRepository(session).get_by_id(listing_id)
        if listing is None:
            raise NotFoundError("Listing not found")
        return listing

    # ------------------------------------------------------------------
    # CreateListing
    # ------------------------------------------------------------------

    async def create_listing(
        self,
        seller_id: str,
        amount_kwh: Decimal,
        rate_per_kwh: Decimal,
        external_tx_ref: Optional[str] = None,
        external_listing_id: Optional[int] = None
    ) -> Listing:
        """
        Escrow seller energy into a new active listing.

        When ``external_tx_ref`` is supplied the escrow transfer was already
        confirmed by the client: no settlement call is made, and a repeat of the
        same reference returns the listing recorded the first time.
        """
        require_positive(amount_kwh, "amountKWh", ENERGY_PLACES)
        require_positive(rate_per_kwh, "ratePerKWh", VALUE_PLACES)
        total_value = require_storable(value_of(amount_kwh, rate_per_kwh), "totalValue")
        keys = [user_key(seller_id)]

        async with self._locked_transaction(keys) as session:
            replay = await self._listing_replay(session, seller_id, external_tx_ref)
            if replay is not None:
                return replay
            seller = self._check_seller_energy(await UserRepository(session).get_for_update(seller_id), amount_kwh)
            seller_address = seller.wallet_address

        settled_ref = None
        if external_tx_ref is None:
            receipt = await self._settle(
                "create_listing",
                self.settlement.create_listing(seller_address, amount_kwh, rate_per_kwh)
            )
            external_tx_ref = settled_ref = receipt.tx_ref
            external_listing_id = receipt.external_listing_id

        async with self._commit_phase(keys, "create_listing", settled_ref) as session:
            replay = await self._listing_replay(session, seller_id, external_tx_ref)
            if replay is not None:
                return replay

            seller = self._check_seller_energy(await UserRepository(session).get_for_update(seller_id), amount_kwh)
            with localcontext() as ctx:
                ctx.prec = 60
                seller.energy_balance = seller.energy_balance - amount_kwh

            listing = await ListingRepository(session).create(
                seller_id=seller_id,
                amount_kwh=amount_kwh,
                rate_per_kwh=rate_per_kwh,
                total_value=total_value,
                external_tx_ref=external_tx_ref,
                external_listing_id=external_listing_id,
                server_settled=settled_ref is not None
            )

        logger.info(
            "Listing created",
            extra={
                "listing_id": listing.id,
                "seller_id": seller_id,
                "amount_kwh": str(amount_kwh),
                "rate_per_kwh": str(rate_per_kwh),
                "tx_ref": external_tx_ref
            }
        )
        await self._publish("notify_new_listing", listing)
        return listing

    @staticmethod
    async def _listing_replay(session: AsyncSession, seller_id: str, external_tx_ref: Optional[str]) -> Optional[Listing]:
        if not external_tx_ref:
            return None
        existing = await ListingRepository(session).get_by_tx_ref(external_tx_ref)
        if existing is None:
            return None
        if existing.seller_id != seller_id:
            raise ValidationError("External transaction reference belongs to another listing")
        logger.info("Replayed listing creation", extra={"listing_id": existing.id, "tx_ref": external_tx_ref})
        return existing

    # ------------------------------------------------------------------
    # BuyEnergy
    # ------------------------------------------------------------------

    async def buy_energy(
        self,
        buyer_id: str,
        listing_id: str,
        amount_kwh: Decimal,
        external_tx_ref: Optional[str] = None
    ) -> Transaction:
        """
        Buy part or all of a listing.

        Buyer pays ``amount x rate`` in ETH and receives the energy; the seller
        receives the ETH and earnings; the listing shrinks and closes at zero.
        """
        require_positive(amount_kwh, "amount", ENERGY_PLACES)

        listing = await self._load_listing(listing_id)
        if listing.seller_id == buyer_id:
            raise ValidationError("Cannot buy energy from your own listing")
        keys = [listing_key(listing_id), user_key(buyer_id), user_key(listing.seller_id)]

        async with self._locked_transaction(keys) as session:
            replay = await self._transaction_replay(session, buyer_id, listing_id, external_tx_ref)
            if replay is not None:
                return replay

            users = UserRepository(session)
            listing_row = await ListingRepository(session).get_for_update(listing_id)
            buyer = await users.get_for_update(buyer_id)
            total_cost = self._check_purchase(listing_row, buyer, amount_kwh)
            seller = await users.get_for_update(listing_row.seller_id)
            buyer_address, seller_address = buyer.wallet_address, seller.wallet_address
            external_listing_id = listing_row.external_listing_id

        settled_ref = None
        if external_tx_ref is None:
            receipt = await self._settle(
                "buy_energy",
                self.settlement.buy_energy(buyer_address, seller_address, external_listing_id, amount_kwh, total_cost)
            )
            external_tx_ref = settled_ref = receipt.tx_ref

        async with self._commit_phase(keys, "buy_energy", settled_ref) as session:
            replay = await self._transaction_replay(session, buyer_id, listing_id, external_tx_ref)
            if replay is not None:
                return replay

            users = UserRepository(session)
            listing_row = await ListingRepository(session).get_for_update(listing_id)
            buyer = await users.get_for_update(buyer_id)
            total_cost = self._check_purchase(listing_row, buyer, amount_kwh)
            seller = await users.get_for_update(listing_row.seller_id)

            with localcontext() as ctx:
                ctx.prec = 60
                buyer.eth_balance = buyer.eth_balance - total_cost
                buyer.energy_balance = buyer.energy_balance + amount_kwh
                seller.eth_balance = seller.eth_balance + total_cost
                seller.total_earnings = seller.total_earnings + total_cost

                remaining = listing_row.amount_kwh - amount_kwh
                listing_row.amount_kwh = remaining
                if remaining == ZERO:
                    listing_row.is_active = False
                    listing_row.total_value = ZERO
                else:
                    listing_row.total_value = value_of(remaining, listing_row.rate_per_kwh)

            transaction = await TransactionRepository(session).append(
                buyer_id=buyer_id,
                seller_id=listing_row.seller_id,
                listing_id=listing_id,
                amount_kwh=amount_kwh,
                rate_per_kwh=listing_row.rate_per_kwh,
                total_cost=total_cost,
                external_tx_ref=external_tx_ref,
                status=TransactionStatus.COMPLETED,
                server_settled=settled_ref is not None
            )
            updated_listing = ListingRepository.to_entity(listing_row)

        logger.info(
            "Energy purchased",
            extra={
                "transaction_id": transaction.id,
                "listing_id": listing_id,
                "buyer_id": buyer_id,
                "amount_kwh": str(amount_kwh),
                "total_cost": str(total_cost),
                "listing_active": updated_listing.is_active
            }
        )
        await self._publish("notify_listing_updated", updated_listing)
        await self._publish("notify_transaction", transaction, buyer_address, seller_address)
        return transaction

    @staticmethod
    async def _transaction_replay(
        session: AsyncSession,
        buyer_id: str,
        listing_id: str,
        external_tx_ref: Optional[str]
    ) -> Optional[Transaction]:
        if not external_tx_ref:
            return None
        existing = await TransactionRepository(session).get_by_tx_ref(external_tx_ref)
        if existing is None:
            return None
        if existing.buyer_id != buyer_id or existing.listing_id != listing_id:
            raise ValidationError("External transaction reference belongs to another purchase")
        logger.info("Replayed purchase", extra={"transaction_id": existing.id, "tx_ref": external_tx_ref})
        return existing

    # ------------------------------------------------------------------
    # CancelListing
    # ------------------------------------------------------------------

    async def cancel_listing(self, requester_id: str, listing_id: str) -> Listing:
        """Close an owned listing and return its unsold energy to the seller"""
        listing = await self._load_listing(listing_id)
        if listing.seller_id != requester_id:
            logger.warning(
                "Listing cancellation refused: not the owner",
                extra={"listing_id": listing_id, "requester_id": requester_id}
            )
            raise UnauthorizedError("Only the seller can cancel this listing")
        keys = [listing_key(listing_id), user_key(requester_id)]

        async with self._locked_transaction(keys) as session:
            listing_row = self._check_listing_open(await ListingRepository(session).get_for_update(listing_id))
            seller = await UserRepository(session).get_for_update(requester_id)
            seller_address = seller.wallet_address
            external_listing_id = listing_row.external_listing_id

        settled_ref = None
        if external_listing_id is not None:
            receipt = await self._settle(
                "cancel_listing",
                self.settlement.cancel_listing(seller_address, external_listing_id)
            )
            settled_ref = receipt.tx_ref

        async with self._commit_phase(keys, "cancel_listing", settled_ref) as session:
            listing_row = self._check_listing_open(await ListingRepository(session).get_for_update(listing_id))
            seller = await UserRepository(session).get_for_update(requester_id)

            refund = listing_row.amount_kwh
            with localcontext() as ctx:
                ctx.prec = 60
                seller.energy_balance = seller.energy_balance + refund
            listing_row.amount_kwh = ZERO
            listing_row.total_value = ZERO
            listing_row.is_active = False
            cancelled = ListingRepository.to_entity(listing_row)

        logger.info(
            "Listing cancelled",
            extra={"listing_id": listing_id, "seller_id": requester_id, "refunded_kwh": str(refund)}
        )
        await self._publish("notify_listing_updated", cancelled)
        return cancelled

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_active_listings(self) -> List[EnrichedListing]:
        async with self.session_factory() as session:
            return await ListingRepository(session).list_active()

    async def get_user_listings(self, user_id: str) -> List[EnrichedListing]:
        async with self.session_factory() as session:
            return await ListingRepository(session).list_by_seller(user_id)

    async def get_user_transactions(self, user_id: str) -> List[EnrichedTransaction]:
        async with self.session_factory() as session:
            return await TransactionRepository(session).list_for_user(user_id)
