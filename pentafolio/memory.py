"""In-process ledger backend.

Mirrors the Postgres stores for local runs (STORAGE_BACKEND=memory) and tests.
Each transaction stages its writes and takes per-row asyncio locks; commit
applies the staged writes without suspending, so a concurrent reader sees
either none or all of a trade.
"""
import asyncio
import itertools
from collections import Counter
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import AsyncIterator, Dict, Hashable, List, Optional, Tuple

from .errors import StorageFailure
from .models import Account, Position, TransactionRecord, TransactionPage, Side


_DELETED = None


class MemoryTransaction:
    def __init__(self, db: "MemoryDatabase"):
        self.db = db
        self.accounts: Dict[int, Account] = {}
        self.positions: Dict[Tuple[int, str], Optional[Position]] = {}
        self.records: List[TransactionRecord] = []
        self._held: Dict[Hashable, asyncio.Lock] = {}

    async def lock(self, key: Hashable):
        """Take the row lock for `key`, waiting at most the configured lock timeout"""
        if key in self._held:
            return
        row_lock = self.db.checkout_row_lock(key)
        acquired = False
        try:
            await asyncio.wait_for(row_lock.acquire(), self.db.lock_timeout)
            acquired = True
        except asyncio.TimeoutError:
            raise StorageFailure("Timed out waiting for a row lock. Please try again.")
        finally:
            if not acquired:
                self.db.return_row_lock(key)
        self._held[key] = row_lock

    def read_account(self, user_id: int) -> Optional[Account]:
        if user_id in self.accounts:
            return self.accounts[user_id].model_copy()
        account = self.db.accounts.get(user_id)
        return account.model_copy() if account else None

    def read_position(self, user_id: int, symbol: str) -> Optional[Position]:
        key = (user_id, symbol)
        position = self.positions[key] if key in self.positions else self.db.positions.get(key)
        return position.model_copy() if position else None

    def commit(self):
        now = datetime.now(timezone.utc)
        self.db.accounts.update(self.accounts)
        for key, position in self.positions.items():
            if position is _DELETED:
                self.db.positions.pop(key, None)
            else:
                position.updated_at = now
                self.db.positions[key] = position
        self.db.records.extend(self.records)

    def release(self):
        for key, row_lock in self._held.items():
            row_lock.release()
            self.db.return_row_lock(key)
        self._held.clear()


class MemoryDatabase:
    """Store handle with the same lifecycle as AsyncPostgresClient"""

    def __init__(self, lock_timeout: float = 5.0):
        self.lock_timeout = lock_timeout
        self.accounts: Dict[int, Account] = {}
        self.positions: Dict[Tuple[int, str], Position] = {}
        self.records: List[TransactionRecord] = []
        # A row lock lives only while some transaction holds or waits for it
        self._row_locks: Dict[Hashable, asyncio.Lock] = {}
        self._row_lock_users: Counter = Counter()
        self._position_ids = itertools.count(1)
        self._record_ids = itertools.count(1)

    async def connect(self):
        pass

    async def close(self):
        pass

    async def init_schema(self):
        pass

    def checkout_row_lock(self, key: Hashable) -> asyncio.Lock:
        """Get the lock for a row and count the caller as holding or waiting"""
        if key not in self._row_locks:
            self._row_locks[key] = asyncio.Lock()
        self._row_lock_users[key] += 1
        return self._row_locks[key]

    def return_row_lock(self, key: Hashable):
        self._row_lock_users[key] -= 1
        if self._row_lock_users[key] <= 0:
            del self._row_lock_users[key]
            del self._row_locks[key]

    @property
    def row_lock_count(self) -> int:
        return len(self._row_locks)

    def next_position_id(self) -> int:
        return next(self._position_ids)

    def next_record_id(self) -> int:
        return next(self._record_ids)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[MemoryTransaction]:
        tx = MemoryTransaction(self)
        try:
            yield tx
            tx.commit()
        finally:
            tx.release()


class MemoryAccountStore:
    def __init__(self, db: MemoryDatabase):
        self.db = db

    async def create(self, tx: MemoryTransaction, user_id: int, cash_balance: Decimal) -> Optional[Account]:
        await tx.lock(("account", user_id))
        if tx.read_account(user_id):
            return None
        account = Account(user_id=user_id, cash_balance=cash_balance, created_at=datetime.now(timezone.utc))
        tx.accounts[user_id] = account
        return account.model_copy()

    async def get(self, user_id: int) -> Optional[Account]:
        account = self.db.accounts.get(user_id)
        return account.model_copy() if account else None

    async def get_for_update(self, tx: MemoryTransaction, user_id: int) -> Optional[Account]:
        await tx.lock(("account", user_id))
        return tx.read_account(user_id)

    async def debit(self, tx: MemoryTransaction, user_id: int, amount: Decimal) -> Decimal:
        return await self._apply(tx, user_id, -amount)

    async def credit(self, tx: MemoryTransaction, user_id: int, amount: Decimal) -> Decimal:
        return await self._apply(tx, user_id, amount)

    async def _apply(self, tx: MemoryTransaction, user_id: int, delta: Decimal) -> Decimal:
        await tx.lock(("account", user_id))
        account = tx.read_account(user_id)
        if account is None:
            raise StorageFailure(f"No account row for user {user_id}")
        account.cash_balance = account.cash_balance + delta
        if account.cash_balance < 0:
            raise StorageFailure("Cash balance cannot go negative")
        tx.accounts[user_id] = account
        return account.cash_balance


class MemoryPositionStore:
    def __init__(self, db: MemoryDatabase):
        self.db = db

    async def get(self, user_id: int, symbol: str) -> Optional[Position]:
        position = self.db.positions.get((user_id, symbol))
        return position.model_copy() if position else None

    async def get_by_id(self, user_id: int, position_id: int) -> Optional[Position]:
        for (owner, _), position in self.db.positions.items():
            if owner == user_id and position.id == position_id:
                return position.model_copy()
        return None

    async def list(self, user_id: int) -> List[Position]:
        positions = [p.model_copy() for (owner, _), p in self.db.positions.items() if owner == user_id]
        return sorted(positions, key=lambda p: p.id, reverse=True)

    async def get_for_update(self, tx: MemoryTransaction, user_id: int, symbol: str) -> Optional[Position]:
        await tx.lock(("position", user_id, symbol))
        return tx.read_position(user_id, symbol)

    async def upsert(self, tx: MemoryTransaction, position: Position) -> Position:
        await tx.lock(("position", position.user_id, position.symbol))
        current = tx.read_position(position.user_id, position.symbol)
        stored = position.model_copy()
        if current:
            stored.id = current.id
            stored.created_at = current.created_at
            stored.display_name = position.display_name or current.display_name
        else:
            stored.id = self.db.next_position_id()
            stored.created_at = datetime.now(timezone.utc)
        stored.updated_at = datetime.now(timezone.utc)
        tx.positions[(position.user_id, position.symbol)] = stored
        return stored.model_copy()

    async def delete(self, tx: MemoryTransaction, user_id: int, symbol: str):
        await tx.lock(("position", user_id, symbol))
        tx.positions[(user_id, symbol)] = _DELETED

    async def refresh_price(self, user_id: int, position_id: int, price: Decimal):
        current = await self.get_by_id(user_id, position_id)
        if current is None:
            return
        async with self.db.transaction() as tx:
            position = await self.get_for_update(tx, user_id, current.symbol)
            if position is not None and position.id == position_id:
                position.last_known_price = price
                tx.positions[(user_id, current.symbol)] = position


class MemoryTransactionLog:
    def __init__(self, db: MemoryDatabase):
        self.db = db

    async def append(self, tx: MemoryTransaction, record: TransactionRecord) -> TransactionRecord:
        stored = record.model_copy(update={
            "id": self.db.next_record_id(),
            "timestamp": datetime.now(timezone.utc),
        })
        tx.records.append(stored)
        return stored.model_copy()

    async def query(self, user_id: int, side: Optional[Side] = None,
                    limit: int = 50, offset: int = 0) -> TransactionPage:
        matching = [r for r in self.db.records if r.user_id == user_id and (side is None or r.side == side)]
        matching.sort(key=lambda r: (r.timestamp, r.id), reverse=True)
        return TransactionPage(
            records=[r.model_copy() for r in matching[offset:offset + limit]],
            total_count=len(matching),
            limit=limit,
            offset=offset,
            has_more=len(matching) > offset + limit
        )


def create_memory_stores(lock_timeout: float = 5.0) -> Tuple[MemoryDatabase, MemoryAccountStore,
                                                              MemoryPositionStore, MemoryTransactionLog]:
    db = MemoryDatabase(lock_timeout=lock_timeout)
    return db, MemoryAccountStore(db), MemoryPositionStore(db), MemoryTransactionLog(db)
