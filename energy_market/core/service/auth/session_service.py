import asyncio
from decimal import Decimal
from typing import Optional, Set, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from energy_market.core.exceptions.handler import AuthError, ServiceErrorCode
from energy_market.core.logger.logger import get_logger
from energy_market.core.service.auth.cache.session_store import SessionStore
from energy_market.core.service.auth.models.session import WebSession
from energy_market.core.service.auth.utils.address import normalize_address
from energy_market.core.service.blockchain.settlement_client import SettlementClient, SettlementError
from energy_market.core.service.ledger.balance_reconciler import BalanceReconciler
from energy_market.core.service.ledger.models import User
from energy_market.infra.repository.user_repository import UserRepository

logger = get_logger(__name__)


class SessionBinder:
    """Binds a verified wallet to a fresh cookie session"""

    def __init__(
        self,
        session_store: SessionStore,
        session_factory: async_sessionmaker,
        settlement_client: SettlementClient,
        reconciler: BalanceReconciler,
        initial_energy_grant: Decimal,
        grant_timeout_seconds: float = 60.0
    ):
        self.session_store = session_store
        self.session_factory = session_factory
        self.settlement = settlement_client
        self.reconciler = reconciler
        self.initial_energy_grant = initial_energy_grant
        self.grant_timeout_seconds = grant_timeout_seconds
        self._background_tasks: Set[asyncio.Task] = set()

    async def ensure_session(self, session_id: Optional[str]) -> WebSession:
        """Return the caller's live session or start an anonymous one"""
        session = await self.session_store.get_session(session_id) if session_id else None
        return session or await self.session_store.create_session()

    async def bind(self, session: WebSession, wallet_address: str) -> Tuple[User, WebSession]:
        """
        Log the wallet in on a regenerated session.

        The pre-login session id is destroyed before the binding is written,
        so an id planted before authentication never carries the login.
        """
        wallet = normalize_address(wallet_address)
        user, created = await self._get_or_create_user(wallet)

        if created:
            self._schedule_initial_grant(wallet)
        elif await self.reconciler.refresh(wallet) is not None:
            user = await self._reload(user)

        bound = await self.session_store.regenerate_session(session.id)
        bound.user_id = user.id
        bound.wallet_address = wallet
        await self.session_store.update_session(bound)

        logger.info(
            "Wallet signed in",
            extra={"user_id": user.id, "wallet_address": wallet, "new_user": created, "session_id": bound.id[:8]}
        )
        return user, bound

    async def resolve(self, session_id: Optional[str]) -> WebSession:
        """Authenticated session for a protected request"""
        session = await self.session_store.get_session(session_id) if session_id else None
        if session is None or not session.is_authenticated:
            raise AuthError(ServiceErrorCode.AUTHENTICATION_REQUIRED, "Authentication required")
        return session

    async def current_user(self, session: WebSession) -> User:
        async with self.session_factory() as db:
            user = await UserRepository(db).get_by_id(session.user_id)
        if user is None:
            await self.session_store.destroy_session(session.id)
            raise AuthError(ServiceErrorCode.AUTHENTICATION_REQUIRED, "Authentication required")
        return user

    async def logout(self, session_id: Optional[str]) -> None:
        if session_id:
            await self.session_store.destroy_session(session_id)
            logger.info("Session logged out", extra={"session_id": session_id[:8]})

    async def _get_or_create_user(self, wallet: str) -> Tuple[User, bool]:
        async with self.session_factory() as db:
            repository = UserRepository(db)
            user = await repository.get_by_wallet(wallet)
            if user is not None:
                return user, False

            try:
                user = await repository.create(wallet, self.initial_energy_grant)
                await db.commit()
                return user, True
            except IntegrityError:
                # Concurrent first login for the same wallet won the insert
                await db.rollback()
                logger.warning("User already exists (race condition)", extra={"wallet_address": wallet})
                user = await repository.get_by_wallet(wallet)
                if user is None:
                    raise
                return user, False

    async def _reload(self, user: User) -> User:
        async with self.session_factory() as db:
            return await UserRepository(db).get_by_id(user.id) or user

    def _schedule_initial_grant(self, wallet: str) -> None:
        task = asyncio.create_task(self._grant_initial_tokens(wallet))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _grant_initial_tokens(self, wallet: str) -> None:
        try:
            receipt = await asyncio.wait_for(
                self.settlement.mint_initial_tokens(wallet, self.initial_energy_grant),
                timeout=self.grant_timeout_seconds
            )
            logger.info(
                "Initial energy tokens granted",
                extra={"wallet_address": wallet, "amount": str(self.initial_energy_grant), "tx_ref": receipt.tx_ref}
            )
        except (SettlementError, asyncio.TimeoutError) as e:
            logger.warning(
                "Initial token grant failed; ledger balance stands",
                extra={"wallet_address": wallet, "error": str(e) or type(e).__name__}
            )
        except Exception as e:
            logger.error(
                "Unexpected error in initial token grant",
                extra={"wallet_address": wallet, "error": str(e)},
                exc_info=True
            )

    async def wait_for_background_tasks(self) -> None:
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)
