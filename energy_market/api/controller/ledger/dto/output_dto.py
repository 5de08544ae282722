from typing import List

from pydantic import BaseModel

from energy_market.core.service.ledger.models import EnrichedListing, EnrichedTransaction, Listing, Transaction


class ListingResponseDto(BaseModel):
    listing: Listing


class ListingsResponseDto(BaseModel):
    listings: List[EnrichedListing]


class TransactionResponseDto(BaseModel):
    transaction: Transaction


class TransactionsResponseDto(BaseModel):
    transactions: List[EnrichedTransaction]
