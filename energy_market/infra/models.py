"""
SQLAlchemy ORM models for the ledger tables
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import Column, String, DateTime, Boolean, Integer, ForeignKey, Index, Numeric
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import TypeDecorator

Base = declarative_base()


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LedgerDecimal(TypeDecorator):
    """
    Exact decimal column.
    NUMERIC(38, 18) where the backend has it, canonical decimal strings on SQLite
    (which would otherwise round-trip through float).
    """

    impl = Numeric(38, 18)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(String(80))
        return dialect.type_descriptor(Numeric(38, 18, asdecimal=True))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        value = Decimal(value)
        return str(value) if dialect.name == "sqlite" else value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(str(value))


class UserModel(Base):
    """SQLAlchemy ORM model for users table"""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_new_id)
    wallet_address = Column(String(42), nullable=False)
    energy_balance = Column(LedgerDecimal(), nullable=False, default=Decimal("0"))
    eth_balance = Column(LedgerDecimal(), nullable=False, default=Decimal("0"))
    total_earnings = Column(LedgerDecimal(), nullable=False, default=Decimal("0"))
    is_new_user = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index('idx_users_wallet_address', 'wallet_address', unique=True),
    )

    def __repr__(self):
        return f"<User(wallet_address='{self.wallet_address}', energy={self.energy_balance}, eth={self.eth_balance})>"


class EnergyListingModel(Base):
    """SQLAlchemy ORM model for energy_listings table"""

    __tablename__ = "energy_listings"

    id = Column(String(36), primary_key=True, default=_new_id)
    seller_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    amount_kwh = Column(LedgerDecimal(), nullable=False)
    rate_per_kwh = Column(LedgerDecimal(), nullable=False)
    total_value = Column(LedgerDecimal(), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    external_tx_ref = Column(String(80), nullable=True)
    external_listing_id = Column(Integer, nullable=True)
    # Escrowed by the operator key, so the seller wallet still holds the tokens on chain
    server_settled = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index('idx_energy_listings_seller', 'seller_id'),
        Index('idx_energy_listings_active', 'is_active'),
        Index('idx_energy_listings_tx_ref', 'external_tx_ref', unique=True),
    )

    def __repr__(self):
        return f"<EnergyListing(id='{self.id}', amount={self.amount_kwh}, active={self.is_active})>"


class TransactionModel(Base):
    """SQLAlchemy ORM model for transactions table"""

    __tablename__ = "transactions"

    id = Column(String(36), primary_key=True, default=_new_id)
    buyer_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    seller_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    listing_id = Column(String(36), ForeignKey("energy_listings.id"), nullable=False)
    amount_kwh = Column(LedgerDecimal(), nullable=False)
    rate_per_kwh = Column(LedgerDecimal(), nullable=False)
    total_cost = Column(LedgerDecimal(), nullable=False)
    kind = Column(String(10), nullable=False)
    external_tx_ref = Column(String(80), nullable=False)
    server_settled = Column(Boolean, nullable=False, default=False)
    status = Column(String(10), nullable=False, default="pending")
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index('idx_transactions_buyer', 'buyer_id'),
        Index('idx_transactions_seller', 'seller_id'),
        Index('idx_transactions_listing', 'listing_id'),
        Index('idx_transactions_tx_ref', 'external_tx_ref', unique=True),
    )

    def __repr__(self):
        return f"<Transaction(id='{self.id}', amount={self.amount_kwh}, status='{self.status}')>"
