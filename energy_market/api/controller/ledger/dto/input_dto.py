"""
Input DTOs for listing and purchase endpoints.
Field names follow the web client's camelCase JSON.
"""

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _blank_to_none(v):
    if isinstance(v, str):
        v = v.strip()
        return v or None
    return v


class CreateListingRequestDto(BaseModel):
    """DTO for creating a listing. The seller is always the session user."""

    model_config = ConfigDict(populate_by_name=True)

    amount_kwh: Decimal = Field(..., alias="amountKWh", description="Energy to escrow, kWh")
    rate_per_kwh: Decimal = Field(..., alias="ratePerKWh", description="Price per kWh in ETH")
    blockchain_tx_hash: Optional[str] = Field(
        None, alias="blockchainTxHash", max_length=80,
        description="Reference of an escrow transfer the client already confirmed"
    )
    blockchain_listing_id: Optional[int] = Field(None, alias="blockchainListingId", ge=0)

    @field_validator("blockchain_tx_hash", mode="before")
    @classmethod
    def normalize_tx_hash(cls, v):
        return _blank_to_none(v)


class BuyEnergyRequestDto(BaseModel):
    """DTO for buying from a listing. The buyer is always the session user."""

    model_config = ConfigDict(populate_by_name=True)

    listing_id: str = Field(..., alias="listingId", min_length=1)
    amount: Decimal = Field(..., description="Energy to buy, kWh")
    blockchain_tx_hash: Optional[str] = Field(None, alias="blockchainTxHash", max_length=80)

    @field_validator("blockchain_tx_hash", mode="before")
    @classmethod
    def normalize_tx_hash(cls, v):
        return _blank_to_none(v)
