"""
Ledger entities, read-side views and fixed-point rules.

Energy amounts carry at most 8 decimal places, rates and ETH values at most 18.
Products of the two are quantized to 18 places so the buyer debit and the
seller credit of a trade are always the same number.
"""

from datetime import datetime
from decimal import Decimal, ROUND_HALF_EVEN, localcontext
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from energy_market.core.exceptions.handler import ValidationError

ENERGY_PLACES = 8
VALUE_PLACES = 18
VALUE_QUANTUM = Decimal(1).scaleb(-VALUE_PLACES)
# NUMERIC(38, 18) columns leave 20 integer digits
LEDGER_LIMIT = Decimal(10) ** 20


def value_of(amount_kwh: Decimal, rate_per_kwh: Decimal) -> Decimal:
    """amount x rate at the ledger's ETH precision"""
    with localcontext() as ctx:
        ctx.prec = 60
        return (amount_kwh * rate_per_kwh).quantize(VALUE_QUANTUM, rounding=ROUND_HALF_EVEN)


def require_positive(value: Decimal, field: str, places: int) -> Decimal:
    """Reject amounts that are not positive or that the ledger cannot store exactly"""
    if not isinstance(value, Decimal) or not value.is_finite():
        raise ValidationError(f"{field} must be a finite decimal number")
    if value <= 0:
        raise ValidationError(f"{field} must be greater than zero")
    if value.normalize().as_tuple().exponent < -places:
        raise ValidationError(f"{field} supports at most {places} decimal places")
    return require_storable(value, field)


def require_storable(value: Decimal, field: str) -> Decimal:
    if value >= LEDGER_LIMIT:
        raise ValidationError(f"{field} must be less than {LEDGER_LIMIT:.0e}")
    return value


class TransactionKind(str, Enum):
    BUY = "buy"
    SELL = "sell"
    DEMO = "demo"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class LedgerModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
    )


class User(LedgerModel):
    """Marketplace participant, one per wallet address"""
    id: str
    wallet_address: str
    energy_balance: Decimal = Decimal("0")
    eth_balance: Decimal = Decimal("0")
    total_earnings: Decimal = Decimal("0")
    is_new_user: bool = True
    created_at: Optional[datetime] = None


class Listing(LedgerModel):
    """Energy offered for sale; terminal once inactive"""
    id: str
    seller_id: str
    amount_kwh: Decimal = Field(alias="amountKWh")
    rate_per_kwh: Decimal = Field(alias="ratePerKWh")
    total_value: Decimal
    is_active: bool = True
    external_tx_ref: Optional[str] = Field(None, alias="blockchainTxHash")
    external_listing_id: Optional[int] = Field(None, alias="blockchainListingId")
    created_at: Optional[datetime] = None


class Transaction(LedgerModel):
    """Immutable record of one settled purchase"""
    id: str
    buyer_id: str
    seller_id: str
    listing_id: str
    amount_kwh: Decimal = Field(alias="amountKWh")
    rate_per_kwh: Decimal = Field(alias="ratePerKWh")
    total_cost: Decimal
    kind: TransactionKind = Field(TransactionKind.BUY, alias="transactionType")
    external_tx_ref: str = Field(alias="blockchainTxHash")
    status: TransactionStatus = TransactionStatus.PENDING
    created_at: Optional[datetime] = None


class ParticipantSummary(LedgerModel):
    id: str
    wallet_address: str


class EnrichedListing(Listing):
    """Listing joined with its seller's identity"""
    seller: Optional[ParticipantSummary] = None


class EnrichedTransaction(Transaction):
    """Transaction joined with both counterparties"""
    buyer: Optional[ParticipantSummary] = None
    seller: Optional[ParticipantSummary] = None


class BalanceSnapshot(LedgerModel):
    """Balances stored for one wallet after a chain refresh"""
    wallet_address: str
    eth_balance: Decimal
    energy_balance: Decimal
