"""
Purchase endpoints.
"""

from fastapi import APIRouter, Depends, status

from energy_market.api.controller.ledger.dto.input_dto import BuyEnergyRequestDto
from energy_market.api.controller.ledger.dto.output_dto import TransactionResponseDto, TransactionsResponseDto
from energy_market.core.dependencies import MarketContainer, get_container, get_current_user
from energy_market.core.exceptions.handler import UnauthorizedError
from energy_market.core.service.ledger.models import User

router = APIRouter(prefix="/transactions", tags=["Transactions"])


@router.post("/buy", response_model=TransactionResponseDto, status_code=status.HTTP_201_CREATED)
async def buy_energy(
    body: BuyEnergyRequestDto,
    user: User = Depends(get_current_user),
    container: MarketContainer = Depends(get_container)
):
    """Buy energy from a listing as the signed-in user"""
    transaction = await container.ledger.buy_energy(
        buyer_id=user.id,
        listing_id=body.listing_id,
        amount_kwh=body.amount,
        external_tx_ref=body.blockchain_tx_hash
    )
    return TransactionResponseDto(transaction=transaction)


@router.get("/user/{user_id}", response_model=TransactionsResponseDto)
async def get_user_transactions(
    user_id: str,
    user: User = Depends(get_current_user),
    container: MarketContainer = Depends(get_container)
):
    """Purchases and sales of the signed-in user"""
    if user_id != user.id:
        raise UnauthorizedError("Transaction history is only visible to its owner")
    return TransactionsResponseDto(transactions=await container.ledger.get_user_transactions(user_id))
