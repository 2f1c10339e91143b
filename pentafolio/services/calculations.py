from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Optional, Tuple
from ..models import Position

CENT = Decimal('0.01')


def to_money(value) -> Decimal:
    """Round to 2 decimal places, half up. Apply once where an amount is first derived."""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def calculate_total(price: Decimal, quantity: int) -> Decimal:
    """Cost of a buy or proceeds of a sell (pure function)"""
    return to_money(price * quantity)


def calculate_percent(part: Decimal, whole: Decimal) -> Decimal:
    if whole == 0:
        return Decimal('0.00')
    return to_money(part / whole * 100)


def calculate_new_position(current_position: Optional[Position], quantity: int,
                           total_cost: Decimal) -> Tuple[int, Decimal]:
    """Quantity and cost basis after a buy, weighted average cost (pure function)"""
    if current_position is None:
        return quantity, total_cost
    return current_position.quantity + quantity, current_position.cost_basis_total + total_cost


def calculate_sale(position: Position, quantity: int, price: Decimal) -> Dict[str, Decimal]:
    """Proceeds, removed cost basis and realised gain for selling `quantity` of `position` (pure function)"""
    sale_value = calculate_total(price, quantity)
    if quantity == position.quantity:
        removed_basis = position.cost_basis_total
    else:
        removed_basis = to_money(position.cost_basis_total * quantity / position.quantity)
    realized_gain = sale_value - removed_basis

    return {
        "sale_value": sale_value,
        "removed_basis": removed_basis,
        "realized_gain": realized_gain,
        "realized_gain_percent": calculate_percent(realized_gain, removed_basis),
    }


def calculate_valuation(position: Position, price: Decimal) -> Dict[str, Decimal]:
    """Current value and unrealised gain of a position at `price` (pure function)"""
    current_value = calculate_total(price, position.quantity)
    gain_loss = current_value - position.cost_basis_total
    return {
        "average_cost": to_money(position.cost_basis_total / position.quantity),
        "current_price": price,
        "current_value": current_value,
        "gain_loss": gain_loss,
        "gain_loss_percent": calculate_percent(gain_loss, position.cost_basis_total),
    }
