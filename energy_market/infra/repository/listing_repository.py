"""
Energy listing repository using SQLAlchemy ORM
"""

from decimal import Decimal, localcontext
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from energy_market.core.logger.logger import get_logger
from energy_market.core.service.ledger.models import EnrichedListing, Listing, ParticipantSummary
from energy_market.infra.models import EnergyListingModel, UserModel

logger = get_logger(__name__)


class ListingRepository:
    """Repository for energy listings; flushes only, the service commits"""

    def __init__(self, session: AsyncSession):
        self.session = session

    @staticmethod
    def to_entity(model: EnergyListingModel) -> Listing:
        return Listing(
            id=model.id,
            seller_id=model.seller_id,
            amount_kwh=model.amount_kwh,
            rate_per_kwh=model.rate_per_kwh,
            total_value=model.total_value,
            is_active=model.is_active,
            external_tx_ref=model.external_tx_ref,
            external_listing_id=model.external_listing_id,
            created_at=model.created_at
        )

    def _to_enriched(self, model: EnergyListingModel, wallet_address: str) -> EnrichedListing:
        return EnrichedListing(
            **self.to_entity(model).model_dump(),
            seller=ParticipantSummary(id=model.seller_id, wallet_address=wallet_address)
        )

    async def get_by_id(self, listing_id: str) -> Optional[Listing]:
        model = await self.session.get(EnergyListingModel, listing_id)
        return self.to_entity(model) if model else None

    async def get_for_update(self, listing_id: str) -> Optional[EnergyListingModel]:
        stmt = select(EnergyListingModel).where(EnergyListingModel.id == listing_id).with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_tx_ref(self, external_tx_ref: str) -> Optional[Listing]:
        stmt = select(EnergyListingModel).where(EnergyListingModel.external_tx_ref == external_tx_ref)
        result = await self.session.execute(stmt)
        model = result.scalar_one_or_none()
        return self.to_entity(model) if model else None

    async def create(
        self,
        seller_id: str,
        amount_kwh: Decimal,
        rate_per_kwh: Decimal,
        total_value: Decimal,
        external_tx_ref: Optional[str],
        external_listing_id: Optional[int],
        server_settled: bool = False
    ) -> Listing:
        model = EnergyListingModel(
            seller_id=seller_id,
            amount_kwh=amount_kwh,
            rate_per_kwh=rate_per_kwh,
            total_value=total_value,
            is_active=True,
            external_tx_ref=external_tx_ref,
            external_listing_id=external_listing_id,
            server_settled=server_settled
        )
        self.session.add(model)
        await self.session.flush()
        return self.to_entity(model)

    async def list_active(self) -> List[EnrichedListing]:
        """Active listings joined with their seller, newest first"""
        stmt = (
            select(EnergyListingModel, UserModel.wallet_address)
            .join(UserModel, UserModel.id == EnergyListingModel.seller_id)
            .where(EnergyListingModel.is_active.is_(True))
            .order_by(EnergyListingModel.created_at.desc())
        )
        result = await self.session.execute(stmt)
        return [self._to_enriched(model, wallet) for model, wallet in result.all()]

    async def list_by_seller(self, seller_id: str) -> List[EnrichedListing]:
        stmt = (
            select(EnergyListingModel, UserModel.wallet_address)
            .join(UserModel, UserModel.id == EnergyListingModel.seller_id)
            .where(EnergyListingModel.seller_id == seller_id)
            .order_by(EnergyListingModel.created_at.desc())
        )
        result = await self.session.execute(stmt)
        return [self._to_enriched(model, wallet) for model, wallet in result.all()]

    async def server_escrowed_energy(self, seller_id: str) -> Decimal:
        """Energy still escrowed in active listings that the operator key settled"""
        stmt = select(EnergyListingModel.amount_kwh).where(
            EnergyListingModel.seller_id == seller_id,
            EnergyListingModel.is_active.is_(True),
            EnergyListingModel.server_settled.is_(True)
        )
        result = await self.session.execute(stmt)
        with localcontext() as ctx:
            ctx.prec = 60
            return sum(result.scalars().all(), Decimal("0"))
