"""
FastAPI dependency injection functions.
Services are built once at startup into a MarketContainer kept on app.state;
request dependencies only look them up.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Request
from redis.asyncio import Redis

from energy_market.core.logger.logger import get_logger
from energy_market.core.service.auth.cache.challenge_store import ChallengeStore
from energy_market.core.service.auth.cache.session_store import SessionStore
from energy_market.core.service.auth.challenge_service import ChallengeService
from energy_market.core.service.auth.models.session import WebSession
from energy_market.core.service.auth.session_service import SessionBinder
from energy_market.core.service.auth.signature_verification import SignatureVerifier
from energy_market.core.service.blockchain.settlement_client import SettlementClient
from energy_market.core.service.ledger.balance_reconciler import BalanceReconciler
from energy_market.core.service.ledger.entity_lock import EntityLockManager
from energy_market.core.service.ledger.ledger_coordinator import LedgerCoordinator
from energy_market.core.service.ledger.models import User
from energy_market.core.service.websocket.manager import ConnectionManager
from energy_market.infra.config.settings import Settings
from energy_market.infra.database import DatabaseManager

logger = get_logger(__name__)

# Chain balance reads sit on the login and balance-view paths
RECONCILE_TIMEOUT_SECONDS = 10.0


@dataclass
class MarketContainer:
    settings: Settings
    database: DatabaseManager
    redis: Redis
    settlement_client: SettlementClient
    lock_manager: EntityLockManager
    ws_manager: ConnectionManager
    challenge_store: ChallengeStore
    session_store: SessionStore
    verifier: SignatureVerifier
    reconciler: BalanceReconciler
    binder: SessionBinder
    challenge_service: ChallengeService
    ledger: LedgerCoordinator


def build_container(
    settings: Settings,
    database: DatabaseManager,
    redis_client: Redis,
    settlement_client: SettlementClient,
    ws_manager: Optional[ConnectionManager] = None
) -> MarketContainer:
    """Wire every service against one database, Redis client and settlement client"""
    session_factory = database.session_factory
    lock_manager = EntityLockManager()
    ws_manager = ws_manager or ConnectionManager()

    challenge_store = ChallengeStore(redis_client, settings.CHALLENGE_EXPIRY_SECONDS)
    session_store = SessionStore(redis_client, settings.SESSION_TTL_SECONDS)
    verifier = SignatureVerifier(challenge_store, settings.SIWE_MAX_MESSAGE_AGE_SECONDS)
    reconciler = BalanceReconciler(
        session_factory,
        settlement_client,
        lock_manager,
        timeout_seconds=min(RECONCILE_TIMEOUT_SECONDS, settings.SETTLEMENT_TIMEOUT_SECONDS)
    )
    binder = SessionBinder(
        session_store,
        session_factory,
        settlement_client,
        reconciler,
        settings.INITIAL_ENERGY_GRANT,
        grant_timeout_seconds=settings.SETTLEMENT_TIMEOUT_SECONDS
    )
    ledger = LedgerCoordinator(
        session_factory,
        settlement_client,
        lock_manager,
        events=ws_manager,
        settlement_timeout=settings.SETTLEMENT_TIMEOUT_SECONDS
    )

    logger.info(
        "Market services wired",
        extra={"settlement_mode": settlement_client.mode.value, "chain_id": settings.CHAIN_ID}
    )
    return MarketContainer(
        settings=settings,
        database=database,
        redis=redis_client,
        settlement_client=settlement_client,
        lock_manager=lock_manager,
        ws_manager=ws_manager,
        challenge_store=challenge_store,
        session_store=session_store,
        verifier=verifier,
        reconciler=reconciler,
        binder=binder,
        challenge_service=ChallengeService(challenge_store, verifier, binder, settings.CHAIN_ID),
        ledger=ledger
    )


def get_container(request: Request) -> MarketContainer:
    return request.app.state.container


def get_session_id(request: Request, container: MarketContainer = Depends(get_container)) -> Optional[str]:
    """Session id from the cookie, if the client sent one"""
    return request.cookies.get(container.settings.SESSION_COOKIE_NAME)


async def require_session(
    session_id: Optional[str] = Depends(get_session_id),
    container: MarketContainer = Depends(get_container)
) -> WebSession:
    """Authenticated session or a 401"""
    return await container.binder.resolve(session_id)


async def get_current_user(
    session: WebSession = Depends(require_session),
    container: MarketContainer = Depends(get_container)
) -> User:
    return await container.binder.current_user(session)
