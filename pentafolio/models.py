from datetime import datetime
from enum import Enum
from typing import Optional, List
from decimal import Decimal
from pydantic import BaseModel


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class Account(BaseModel):
    """Cash account of a user, stored in Postgres"""
    user_id: int
    cash_balance: Decimal
    created_at: Optional[datetime] = None


class Position(BaseModel):
    """Aggregated holding of one symbol. Average cost is cost_basis_total / quantity."""
    id: Optional[int] = None
    user_id: int
    symbol: str
    display_name: Optional[str] = None
    quantity: int
    cost_basis_total: Decimal
    last_known_price: Optional[Decimal] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class TransactionRecord(BaseModel):
    """Model for executed trades stored in Postgres, write-once"""
    id: Optional[int] = None
    user_id: int
    symbol: str
    side: Side
    quantity: int
    price_per_share: Decimal
    total_amount: Decimal
    realized_gain: Optional[Decimal] = None  # SELL only
    timestamp: Optional[datetime] = None


class TransactionPage(BaseModel):
    records: List[TransactionRecord]
    total_count: int
    limit: int
    offset: int
    has_more: bool


class Quote(BaseModel):
    """Best-effort market price for a symbol"""
    symbol: str
    price: Decimal
    display_name: str
