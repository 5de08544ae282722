"""
User repository using SQLAlchemy ORM
"""

from decimal import Decimal
from typing import Dict, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from energy_market.core.logger.logger import get_logger
from energy_market.core.service.auth.utils.address import normalize_address
from energy_market.core.service.ledger.models import ParticipantSummary, User
from energy_market.infra.models import UserModel

logger = get_logger(__name__)


class UserRepository:
    """
    Repository for user rows.
    Writes only flush; the calling service owns the transaction.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    @staticmethod
    def to_entity(model: UserModel) -> User:
        """Convert SQLAlchemy model to Pydantic entity"""
        return User(
            id=model.id,
            wallet_address=model.wallet_address,
            energy_balance=model.energy_balance,
            eth_balance=model.eth_balance,
            total_earnings=model.total_earnings,
            is_new_user=model.is_new_user,
            created_at=model.created_at
        )

    async def get_by_id(self, user_id: str) -> Optional[User]:
        model = await self.session.get(UserModel, user_id)
        return self.to_entity(model) if model else None

    async def get_by_wallet(self, wallet_address: str) -> Optional[User]:
        stmt = select(UserModel).where(UserModel.wallet_address == normalize_address(wallet_address))
        result = await self.session.execute(stmt)
        model = result.scalar_one_or_none()
        return self.to_entity(model) if model else None

    async def get_for_update(self, user_id: str) -> Optional[UserModel]:
        """Load the row for mutation, row-locked where the backend supports it"""
        stmt = select(UserModel).where(UserModel.id == user_id).with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(self, wallet_address: str, initial_energy: Decimal) -> User:
        """Insert a new user; IntegrityError propagates when the wallet already exists"""
        model = UserModel(
            wallet_address=normalize_address(wallet_address),
            energy_balance=initial_energy,
            eth_balance=Decimal("0"),
            total_earnings=Decimal("0"),
            is_new_user=True
        )
        self.session.add(model)
        await self.session.flush()

        logger.info(
            "New user created in database",
            extra={"wallet_address": model.wallet_address, "user_id": model.id}
        )
        return self.to_entity(model)

    async def set_chain_balances(self, user_id: str, eth_balance: Decimal, energy_balance: Decimal) -> Optional[User]:
        model = await self.get_for_update(user_id)
        if model is None:
            return None
        model.eth_balance = eth_balance
        model.energy_balance = energy_balance
        await self.session.flush()
        return self.to_entity(model)

    async def get_summaries(self, user_ids: Iterable[str]) -> Dict[str, ParticipantSummary]:
        """Identity summaries for read-side enrichment"""
        ids = set(user_ids)
        if not ids:
            return {}
        stmt = select(UserModel.id, UserModel.wallet_address).where(UserModel.id.in_(ids))
        result = await self.session.execute(stmt)
        return {
            row.id: ParticipantSummary(id=row.id, wallet_address=row.wallet_address)
            for row in result
        }

