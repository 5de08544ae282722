"""
Energy listing endpoints.
"""

from fastapi import APIRouter, Depends, status

from energy_market.api.controller.ledger.dto.input_dto import CreateListingRequestDto
from energy_market.api.controller.ledger.dto.output_dto import ListingResponseDto, ListingsResponseDto
from energy_market.core.dependencies import MarketContainer, get_container, get_current_user
from energy_market.core.service.ledger.models import User

router = APIRouter(prefix="/listings", tags=["Listings"])


@router.get("", response_model=ListingsResponseDto)
async def get_active_listings(container: MarketContainer = Depends(get_container)):
    """Active listings with their seller's identity"""
    return ListingsResponseDto(listings=await container.ledger.get_active_listings())


@router.get("/user/{user_id}", response_model=ListingsResponseDto)
async def get_user_listings(user_id: str, container: MarketContainer = Depends(get_container)):
    """Every listing a seller has created, active or closed"""
    return ListingsResponseDto(listings=await container.ledger.get_user_listings(user_id))


@router.post("", response_model=ListingResponseDto, status_code=status.HTTP_201_CREATED)
async def create_listing(
    body: CreateListingRequestDto,
    user: User = Depends(get_current_user),
    container: MarketContainer = Depends(get_container)
):
    """
    List energy for sale from the signed-in user's balance.

    The listed amount is escrowed immediately. When ``blockchainTxHash`` is
    given the escrow transfer is taken as already confirmed on-chain, and
    repeating the request returns the same listing.
    """
    listing = await container.ledger.create_listing(
        seller_id=user.id,
        amount_kwh=body.amount_kwh,
        rate_per_kwh=body.rate_per_kwh,
        external_tx_ref=body.blockchain_tx_hash,
        external_listing_id=body.blockchain_listing_id
    )
    return ListingResponseDto(listing=listing)


@router.delete("/{listing_id}", response_model=ListingResponseDto)
async def cancel_listing(
    listing_id: str,
    user: User = Depends(get_current_user),
    container: MarketContainer = Depends(get_container)
):
    """Cancel one of the signed-in user's listings and return its energy"""
    listing = await container.ledger.cancel_listing(requester_id=user.id, listing_id=listing_id)
    return ListingResponseDto(listing=listing)
