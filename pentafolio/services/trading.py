import logging
import math
import re
from decimal import Decimal, InvalidOperation
from typing import Optional, Dict, Any, Union

from ..config import config
from ..errors import (
    InvalidInput, PricingUnavailable, AccountNotFound, InsufficientFunds,
    PositionNotFound, InsufficientShares,
)
from ..models import Account, Position, TransactionRecord, TransactionPage, Side
from ..oracle import PriceOracle
from .calculations import to_money, calculate_total, calculate_new_position, calculate_sale

logger = logging.getLogger(__name__)

SYMBOL_PATTERN = re.compile(r"^[A-Z0-9][A-Z0-9.\-]{0,9}$")
MAX_PAGE_SIZE = 500
# Column ranges: quantity INTEGER, cash NUMERIC(14, 2)
MAX_QUANTITY = 2**31 - 1
MAX_AMOUNT = Decimal('999999999999.99')


def normalize_symbol(symbol: Any) -> str:
    if not isinstance(symbol, str) or not symbol.strip():
        raise InvalidInput("Symbol and valid quantity are required")
    symbol = symbol.strip().upper()
    if not SYMBOL_PATTERN.match(symbol):
        raise InvalidInput(f"Invalid symbol: {symbol}")
    return symbol


def parse_quantity(quantity: Any) -> int:
    """Whole, positive share count. Fractional shares are rejected, not truncated."""
    if isinstance(quantity, bool):
        raise InvalidInput("Valid numeric quantity is required")
    if isinstance(quantity, str):
        quantity = quantity.strip()
        if not quantity.lstrip("+-").isdigit():
            raise InvalidInput("Valid numeric quantity is required")
        value = int(quantity)
    elif isinstance(quantity, int):
        value = quantity
    elif isinstance(quantity, float):
        if not math.isfinite(quantity) or not quantity.is_integer():
            raise InvalidInput("Quantity must be a whole number of shares")
        value = int(quantity)
    elif isinstance(quantity, Decimal):
        if not quantity.is_finite() or quantity % 1 != 0:
            raise InvalidInput("Quantity must be a whole number of shares")
        value = int(quantity)
    else:
        raise InvalidInput("Valid numeric quantity is required")

    if value <= 0:
        raise InvalidInput("Quantity must be greater than zero")
    if value > MAX_QUANTITY:
        raise InvalidInput(f"Quantity cannot exceed {MAX_QUANTITY} shares")
    return value


def parse_amount(amount: Any) -> Decimal:
    if isinstance(amount, bool) or amount is None:
        raise InvalidInput("Valid amount is required")
    try:
        value = Decimal(str(amount).strip())
        if not value.is_finite() or value > MAX_AMOUNT:
            raise InvalidInput("Valid amount is required")
        value = to_money(value)
    except InvalidOperation:
        raise InvalidInput("Valid amount is required")
    if value <= 0:
        raise InvalidInput("Valid amount is required")
    return value


class TradingService:
    """Executes buys, sells and deposits against the ledger stores.

    Pricing happens before any lock is taken. Everything that mutates state for
    one operation runs inside a single store transaction, locking the account row
    first and the position row second, so the cash debit/credit, the position
    change and the log entry commit together or not at all.
    """

    def __init__(self, database, accounts, positions, transaction_log, oracle: PriceOracle,
                 starting_balance: Decimal = config.STARTING_CASH_BALANCE):
        self.database = database
        self.accounts = accounts
        self.positions = positions
        self.transaction_log = transaction_log
        self.oracle = oracle
        self.starting_balance = to_money(starting_balance)

    async def open_account(self, user_id: int) -> Account:
        """Create the user's cash account with the starting balance"""
        async with self.database.transaction() as tx:
            account = await self.accounts.create(tx, user_id, self.starting_balance)
        if account is None:
            raise InvalidInput(f"Account already exists for user {user_id}")
        logger.info("Opened account for user %s with %s", user_id, self.starting_balance)
        return account

    async def get_cash_balance(self, user_id: int) -> Decimal:
        account = await self.accounts.get(user_id)
        if account is None:
            raise AccountNotFound(user_id)
        return account.cash_balance

    async def deposit(self, user_id: int, amount: Union[str, int, float, Decimal]) -> Dict[str, Any]:
        """Add cash to the user's account"""
        amount = parse_amount(amount)

        async with self.database.transaction() as tx:
            account = await self.accounts.get_for_update(tx, user_id)
            if account is None:
                raise AccountNotFound(user_id)
            new_balance = await self.accounts.credit(tx, user_id, amount)

        logger.info("User %s deposited %s, balance %s", user_id, amount, new_balance)
        return {
            "message": f"${amount:.2f} successfully added to your account",
            "new_balance": new_balance,
            "added_amount": amount,
        }

    async def execute_buy(self, user_id: int, symbol: str, quantity: Any) -> Dict[str, Any]:
        """Buy `quantity` shares of `symbol` at the live oracle price"""
        symbol = normalize_symbol(symbol)
        quantity = parse_quantity(quantity)

        quote = await self.oracle.get_quote(symbol)
        if quote is None:
            logger.warning("Buy rejected for user %s: no price for %s", user_id, symbol)
            raise PricingUnavailable(symbol)
        price = to_money(quote.price)
        if price <= 0:
            raise PricingUnavailable(symbol)
        total_cost = calculate_total(price, quantity)

        async with self.database.transaction() as tx:
            account = await self.accounts.get_for_update(tx, user_id)
            if account is None:
                raise AccountNotFound(user_id)
            if account.cash_balance < total_cost:
                logger.info("Buy rejected for user %s: needs %s, has %s", user_id, total_cost, account.cash_balance)
                raise InsufficientFunds(account.cash_balance, total_cost)

            current = await self.positions.get_for_update(tx, user_id, symbol)
            new_quantity, new_cost_basis = calculate_new_position(current, quantity, total_cost)

            remaining_cash = await self.accounts.debit(tx, user_id, total_cost)
            position = await self.positions.upsert(tx, Position(
                user_id=user_id,
                symbol=symbol,
                display_name=quote.display_name,
                quantity=new_quantity,
                cost_basis_total=new_cost_basis,
                last_known_price=price
            ))
            record = await self.transaction_log.append(tx, TransactionRecord(
                user_id=user_id,
                symbol=symbol,
                side=Side.BUY,
                quantity=quantity,
                price_per_share=price,
                total_amount=total_cost
            ))

        logger.info("User %s bought %s %s at %s (total %s)", user_id, quantity, symbol, price, total_cost)
        return {
            "message": f"Successfully purchased {quantity} shares of {symbol} for ${total_cost:.2f}",
            "investment": position,
            "remaining_cash": remaining_cash,
            "transaction_details": {
                "transaction_id": record.id,
                "symbol": symbol,
                "quantity": quantity,
                "price_per_share": price,
                "total_cost": total_cost,
                "timestamp": record.timestamp,
            },
        }

    async def execute_sell(self, user_id: int, position_id: int, quantity: Any) -> Dict[str, Any]:
        """Sell `quantity` shares of one of the user's positions.

        Falls back to the position's last known price when the oracle is down,
        so a sale can always complete.
        """
        quantity = parse_quantity(quantity)

        snapshot = await self.positions.get_by_id(user_id, position_id)
        if snapshot is None:
            raise PositionNotFound(position_id)
        if quantity > snapshot.quantity:
            raise InsufficientShares(quantity, snapshot.quantity)

        quote = await self.oracle.get_quote(snapshot.symbol)
        if quote is not None:
            price = to_money(quote.price)
        else:
            price = snapshot.last_known_price
            logger.warning("Selling %s for user %s at last known price %s", snapshot.symbol, user_id, price)
        if price is None or price <= 0:
            raise PricingUnavailable(snapshot.symbol)

        async with self.database.transaction() as tx:
            account = await self.accounts.get_for_update(tx, user_id)
            if account is None:
                raise AccountNotFound(user_id)

            # Re-check under lock, the position may have changed while pricing
            position = await self.positions.get_for_update(tx, user_id, snapshot.symbol)
            if position is None or position.id != position_id:
                raise PositionNotFound(position_id)
            if quantity > position.quantity:
                raise InsufficientShares(quantity, position.quantity)

            sale = calculate_sale(position, quantity, price)
            new_cash_balance = await self.accounts.credit(tx, user_id, sale["sale_value"])

            remaining_shares = position.quantity - quantity
            if remaining_shares == 0:
                await self.positions.delete(tx, user_id, position.symbol)
            else:
                await self.positions.upsert(tx, position.model_copy(update={
                    "quantity": remaining_shares,
                    "cost_basis_total": position.cost_basis_total - sale["removed_basis"],
                    "last_known_price": price,
                }))

            record = await self.transaction_log.append(tx, TransactionRecord(
                user_id=user_id,
                symbol=position.symbol,
                side=Side.SELL,
                quantity=quantity,
                price_per_share=price,
                total_amount=sale["sale_value"],
                realized_gain=sale["realized_gain"]
            ))

        logger.info("User %s sold %s %s at %s (gain %s)", user_id, quantity, position.symbol,
                    price, sale["realized_gain"])
        return {
            "message": f"Successfully sold {quantity} shares of {position.symbol}",
            "sale_details": {
                "transaction_id": record.id,
                "symbol": position.symbol,
                "quantity_sold": quantity,
                "price_per_share": price,
                "total_received": sale["sale_value"],
                "profit_loss": sale["realized_gain"],
                "profit_loss_percent": sale["realized_gain_percent"],
            },
            "new_cash_balance": new_cash_balance,
            "remaining_shares": remaining_shares,
        }

    async def get_trade_history(self, user_id: int, side: Optional[str] = None,
                                limit: int = 50, offset: int = 0) -> TransactionPage:
        """Get trade history for a user, newest first"""
        side_filter = None
        if side:
            try:
                side_filter = Side(side.upper())
            except ValueError:
                raise InvalidInput("Transaction type must be BUY or SELL")
        if offset < 0:
            raise InvalidInput("Offset cannot be negative")
        limit = max(1, min(limit, MAX_PAGE_SIZE))

        return await self.transaction_log.query(user_id, side_filter, limit, offset)
