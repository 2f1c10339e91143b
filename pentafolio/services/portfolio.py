import asyncio
import logging
from decimal import Decimal
from typing import List, Dict, Any

from ..errors import AccountNotFound, PositionNotFound, StorageFailure
from ..models import Position
from ..oracle import PriceOracle
from .calculations import to_money, calculate_valuation, calculate_percent

logger = logging.getLogger(__name__)


class PortfolioService:
    """Read side of the ledger: valuations at current prices and the portfolio summary.

    Prices fetched here refresh each position's advisory last_known_price; they
    never feed into trade pricing.
    """

    def __init__(self, accounts, positions, oracle: PriceOracle):
        self.accounts = accounts
        self.positions = positions
        self.oracle = oracle

    async def _value_position(self, position: Position) -> Dict[str, Any]:
        quote = await self.oracle.get_quote(position.symbol)
        if quote is not None:
            price = to_money(quote.price)
            display_name = quote.display_name
            try:
                await self.positions.refresh_price(position.user_id, position.id, price)
            except StorageFailure:
                logger.warning("Could not refresh last known price for %s", position.symbol)
        else:
            price = position.last_known_price or to_money(position.cost_basis_total / position.quantity)
            display_name = position.display_name

        data = position.model_dump()
        data.update(calculate_valuation(position, price))
        data["display_name"] = display_name
        data["last_known_price"] = price
        return data

    async def list_investments(self, user_id: int) -> List[Dict[str, Any]]:
        """Get all positions for a user, valued at current prices"""
        positions = await self.positions.list(user_id)
        return list(await asyncio.gather(*(self._value_position(p) for p in positions)))

    async def get_investment(self, user_id: int, position_id: int) -> Dict[str, Any]:
        position = await self.positions.get_by_id(user_id, position_id)
        if position is None:
            raise PositionNotFound(position_id)
        return await self._value_position(position)

    async def get_portfolio_summary(self, user_id: int) -> Dict[str, Any]:
        """Get cash, invested total, current value and overall gain for a user"""
        account = await self.accounts.get(user_id)
        if account is None:
            raise AccountNotFound(user_id)

        investments = await self.list_investments(user_id)
        total_investment = sum((i["cost_basis_total"] for i in investments), Decimal('0.00'))
        total_current_value = sum((i["current_value"] for i in investments), Decimal('0.00'))
        total_gain_loss = total_current_value - total_investment

        return {
            "user_id": user_id,
            "cash_balance": account.cash_balance,
            "total_investment": total_investment,
            "total_current_value": total_current_value,
            "total_gain_loss": total_gain_loss,
            "total_gain_loss_percent": calculate_percent(total_gain_loss, total_investment),
            "portfolio_value": account.cash_balance + total_current_value,
            "investments": investments,
        }
