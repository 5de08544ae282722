"""
Transaction repository using SQLAlchemy ORM
"""

from decimal import Decimal, localcontext
from typing import List, Optional, Tuple

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from energy_market.core.service.ledger.models import (
    EnrichedTransaction,
    Transaction,
    TransactionKind,
    TransactionStatus,
)
from energy_market.infra.models import EnergyListingModel, TransactionModel
from energy_market.infra.repository.user_repository import UserRepository


class TransactionRepository:
    """Append-only store of settled purchases"""

    def __init__(self, session: AsyncSession):
        self.session = session

    @staticmethod
    def to_entity(model: TransactionModel) -> Transaction:
        return Transaction(
            id=model.id,
            buyer_id=model.buyer_id,
            seller_id=model.seller_id,
            listing_id=model.listing_id,
            amount_kwh=model.amount_kwh,
            rate_per_kwh=model.rate_per_kwh,
            total_cost=model.total_cost,
            kind=TransactionKind(model.kind),
            external_tx_ref=model.external_tx_ref,
            status=TransactionStatus(model.status),
            created_at=model.created_at
        )

    async def get_by_tx_ref(self, external_tx_ref: str) -> Optional[Transaction]:
        stmt = select(TransactionModel).where(TransactionModel.external_tx_ref == external_tx_ref)
        result = await self.session.execute(stmt)
        model = result.scalar_one_or_none()
        return self.to_entity(model) if model else None

    async def append(
        self,
        buyer_id: str,
        seller_id: str,
        listing_id: str,
        amount_kwh: Decimal,
        rate_per_kwh: Decimal,
        total_cost: Decimal,
        external_tx_ref: str,
        status: TransactionStatus,
        kind: TransactionKind = TransactionKind.BUY,
        server_settled: bool = False
    ) -> Transaction:
        model = TransactionModel(
            buyer_id=buyer_id,
            seller_id=seller_id,
            listing_id=listing_id,
            amount_kwh=amount_kwh,
            rate_per_kwh=rate_per_kwh,
            total_cost=total_cost,
            kind=TransactionKind(kind).value,
            external_tx_ref=external_tx_ref,
            status=TransactionStatus(status).value,
            server_settled=server_settled
        )
        self.session.add(model)
        await self.session.flush()
        return self.to_entity(model)

    async def list_for_user(self, user_id: str) -> List[EnrichedTransaction]:
        """Purchases where the user is buyer or seller, with both counterparties attached"""
        stmt = (
            select(TransactionModel)
            .where(or_(TransactionModel.buyer_id == user_id, TransactionModel.seller_id == user_id))
            .order_by(TransactionModel.created_at.desc())
        )
        result = await self.session.execute(stmt)
        models = result.scalars().all()

        summaries = await UserRepository(self.session).get_summaries(
            [m.buyer_id for m in models] + [m.seller_id for m in models]
        )
        return [
            EnrichedTransaction(
                **self.to_entity(model).model_dump(),
                buyer=summaries.get(model.buyer_id),
                seller=summaries.get(model.seller_id)
            )
            for model in models
        ]

    async def server_settled_movements(self, user_id: str) -> Tuple[Decimal, Decimal]:
        """
        Net (eth, energy) the ledger moved for the user through trades the
        operator key settled, which the user's wallet never sees on chain.

        A buyer side counts when the purchase itself was server settled; a
        seller side counts when the listing was, since the contract pays the
        listing's on-chain seller.
        """
        bought = await self.session.execute(
            select(TransactionModel.amount_kwh, TransactionModel.total_cost).where(
                TransactionModel.buyer_id == user_id,
                TransactionModel.server_settled.is_(True)
            )
        )
        sold = await self.session.execute(
            select(TransactionModel.amount_kwh, TransactionModel.total_cost)
            .join(EnergyListingModel, EnergyListingModel.id == TransactionModel.listing_id)
            .where(
                TransactionModel.seller_id == user_id,
                EnergyListingModel.server_settled.is_(True)
            )
        )

        eth, energy = Decimal("0"), Decimal("0")
        with localcontext() as ctx:
            ctx.prec = 60
            for amount_kwh, total_cost in bought.all():
                eth -= total_cost
                energy += amount_kwh
            for amount_kwh, total_cost in sold.all():
                eth += total_cost
                energy -= amount_kwh
        return eth, energy
