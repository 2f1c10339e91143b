from decimal import Decimal
from typing import Optional, List

import asyncpg

from .postgres import AsyncPostgresClient
from .models import Account, Position, TransactionRecord, TransactionPage, Side

# Stores hold no business rules. Methods that take `tx` must be called inside
# AsyncPostgresClient.transaction(); the others read committed state.

ACCOUNT_COLUMNS = "user_id, cash_balance, created_at"
POSITION_COLUMNS = ("id, user_id, symbol, display_name, quantity, cost_basis_total, "
                    "last_known_price, created_at, updated_at")
RECORD_COLUMNS = ("id, user_id, symbol, side, quantity, price_per_share, total_amount, "
                  "realized_gain, timestamp")


class AccountStore:
    """Cash balances, one row per user"""

    def __init__(self, db: AsyncPostgresClient):
        self.db = db

    async def create(self, tx: asyncpg.Connection, user_id: int, cash_balance: Decimal) -> Optional[Account]:
        """Insert a new account. Returns None if the user already has one."""
        row = await tx.fetchrow(
            f"""
            INSERT INTO accounts (user_id, cash_balance)
            VALUES ($1, $2)
            ON CONFLICT (user_id) DO NOTHING
            RETURNING {ACCOUNT_COLUMNS}
            """,
            user_id, cash_balance
        )
        return Account(**dict(row)) if row else None

    async def get(self, user_id: int) -> Optional[Account]:
        query = f"SELECT {ACCOUNT_COLUMNS} FROM accounts WHERE user_id = $1"
        return await self.db.fetch_model(Account, query, user_id)

    async def get_for_update(self, tx: asyncpg.Connection, user_id: int) -> Optional[Account]:
        """Read the account and hold its row lock until the transaction ends"""
        row = await tx.fetchrow(
            f"SELECT {ACCOUNT_COLUMNS} FROM accounts WHERE user_id = $1 FOR UPDATE",
            user_id
        )
        return Account(**dict(row)) if row else None

    async def debit(self, tx: asyncpg.Connection, user_id: int, amount: Decimal) -> Decimal:
        # cash_balance >= 0 is enforced by a CHECK constraint
        return await tx.fetchval(
            "UPDATE accounts SET cash_balance = cash_balance - $2 WHERE user_id = $1 RETURNING cash_balance",
            user_id, amount
        )

    async def credit(self, tx: asyncpg.Connection, user_id: int, amount: Decimal) -> Decimal:
        return await tx.fetchval(
            "UPDATE accounts SET cash_balance = cash_balance + $2 WHERE user_id = $1 RETURNING cash_balance",
            user_id, amount
        )


class PositionStore:
    """Per-symbol holdings. A row exists only while quantity > 0."""

    def __init__(self, db: AsyncPostgresClient):
        self.db = db

    async def get(self, user_id: int, symbol: str) -> Optional[Position]:
        query = f"SELECT {POSITION_COLUMNS} FROM positions WHERE user_id = $1 AND symbol = $2"
        return await self.db.fetch_model(Position, query, user_id, symbol)

    async def get_by_id(self, user_id: int, position_id: int) -> Optional[Position]:
        """Positions are always scoped to their owner"""
        query = f"SELECT {POSITION_COLUMNS} FROM positions WHERE id = $1 AND user_id = $2"
        return await self.db.fetch_model(Position, query, position_id, user_id)

    async def list(self, user_id: int) -> List[Position]:
        query = f"""
            SELECT {POSITION_COLUMNS}
            FROM positions
            WHERE user_id = $1
            ORDER BY created_at DESC, id DESC
        """
        return await self.db.fetch_models(Position, query, user_id)

    async def get_for_update(self, tx: asyncpg.Connection, user_id: int, symbol: str) -> Optional[Position]:
        row = await tx.fetchrow(
            f"SELECT {POSITION_COLUMNS} FROM positions WHERE user_id = $1 AND symbol = $2 FOR UPDATE",
            user_id, symbol
        )
        return Position(**dict(row)) if row else None

    async def upsert(self, tx: asyncpg.Connection, position: Position) -> Position:
        row = await tx.fetchrow(
            f"""
            INSERT INTO positions (user_id, symbol, display_name, quantity, cost_basis_total, last_known_price)
            VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (user_id, symbol) DO UPDATE SET
                display_name = COALESCE(EXCLUDED.display_name, positions.display_name),
                quantity = EXCLUDED.quantity,
                cost_basis_total = EXCLUDED.cost_basis_total,
                last_known_price = EXCLUDED.last_known_price,
                updated_at = now()
            RETURNING {POSITION_COLUMNS}
            """,
            position.user_id, position.symbol, position.display_name, position.quantity,
            position.cost_basis_total, position.last_known_price
        )
        return Position(**dict(row))

    async def delete(self, tx: asyncpg.Connection, user_id: int, symbol: str):
        await tx.execute("DELETE FROM positions WHERE user_id = $1 AND symbol = $2", user_id, symbol)

    async def refresh_price(self, user_id: int, position_id: int, price: Decimal):
        """Update the advisory display price in its own short transaction"""
        async with self.db.transaction() as tx:
            await tx.execute(
                "UPDATE positions SET last_known_price = $3 WHERE id = $1 AND user_id = $2",
                position_id, user_id, price
            )


class TransactionLog:
    """Append-only record of executed trades"""

    def __init__(self, db: AsyncPostgresClient):
        self.db = db

    async def append(self, tx: asyncpg.Connection, record: TransactionRecord) -> TransactionRecord:
        """Insert the record; the database assigns id and timestamp"""
        row = await self.db.insert_model(tx, record, "ledger_transactions")
        return TransactionRecord(**row)

    async def query(self, user_id: int, side: Optional[Side] = None,
                    limit: int = 50, offset: int = 0) -> TransactionPage:
        """Newest first, with the total count for "has more" computation"""
        if side:
            where, args = "WHERE user_id = $1 AND side = $2", [user_id, side.value]
        else:
            where, args = "WHERE user_id = $1", [user_id]

        total_count = await self.db.fetchval(f"SELECT COUNT(*) FROM ledger_transactions {where}", *args)
        n = len(args)
        query = f"""
            SELECT {RECORD_COLUMNS}
            FROM ledger_transactions
            {where}
            ORDER BY timestamp DESC, id DESC
            LIMIT ${n + 1} OFFSET ${n + 2}
        """
        records = await self.db.fetch_models(TransactionRecord, query, *args, limit, offset)
        return TransactionPage(
            records=records,
            total_count=total_count,
            limit=limit,
            offset=offset,
            has_more=total_count > offset + limit
        )
