import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Union

from fastapi import Depends, Header, Query, Request
from fastapi.exceptions import HTTPException
from fastapi.routing import APIRouter
from pydantic import BaseModel

from .errors import LedgerError
from .models import Position, TransactionRecord
from .oracle import PriceOracle, MAX_PRICE
from .services.portfolio import PortfolioService
from .services.trading import TradingService, normalize_symbol

logger = logging.getLogger(__name__)

router = APIRouter()

ERROR_STATUS = {
    "InvalidInput": 400,
    "InsufficientFunds": 400,
    "InsufficientShares": 400,
    "AccountNotFound": 404,
    "PositionNotFound": 404,
    "PricingUnavailable": 503,
    "StorageFailure": 503,
}

# ----------------------------
# Dependencies
# ----------------------------
def get_trading_service(request: Request) -> TradingService:
    service = getattr(request.app.state, "trading_service", None)
    if service is None:
        raise HTTPException(status_code=500, detail="Trading service not initialised")
    return service

def get_portfolio_service(request: Request) -> PortfolioService:
    service = getattr(request.app.state, "portfolio_service", None)
    if service is None:
        raise HTTPException(status_code=500, detail="Portfolio service not initialised")
    return service

def get_oracle(request: Request) -> PriceOracle:
    oracle = getattr(request.app.state, "oracle", None)
    if oracle is None:
        raise HTTPException(status_code=500, detail="Price oracle not initialised")
    return oracle

def current_user_id(x_user_id: int = Header(..., gt=0)) -> int:
    """Authenticated principal, set by the gateway after validating the bearer credential"""
    return x_user_id

def ledger_http_error(e: LedgerError) -> HTTPException:
    return HTTPException(status_code=ERROR_STATUS.get(e.kind, 400), detail=e.to_dict())

# ----------------------------
# Request Models
# ----------------------------
class BuyRequest(BaseModel):
    symbol: str
    quantity: Union[int, float, str]

class SellRequest(BaseModel):
    quantity: Union[int, float, str]

class DepositRequest(BaseModel):
    amount: Union[float, str]

class QuoteRequest(BaseModel):
    symbol: str
    price: Decimal
    display_name: Optional[str] = None

# Response Models
class AccountResponse(BaseModel):
    user_id: int
    cash_balance: Decimal

class CashBalanceResponse(BaseModel):
    user_id: int
    cash_balance: Decimal

class DepositResponse(BaseModel):
    message: str
    new_balance: Decimal
    added_amount: Decimal

class TransactionDetails(BaseModel):
    transaction_id: int
    symbol: str
    quantity: int
    price_per_share: Decimal
    total_cost: Decimal
    timestamp: Optional[datetime] = None

class BuyResponse(BaseModel):
    message: str
    investment: Position
    remaining_cash: Decimal
    transaction_details: TransactionDetails

class SaleDetails(BaseModel):
    transaction_id: int
    symbol: str
    quantity_sold: int
    price_per_share: Decimal
    total_received: Decimal
    profit_loss: Decimal
    profit_loss_percent: Decimal

class SellResponse(BaseModel):
    message: str
    sale_details: SaleDetails
    new_cash_balance: Decimal
    remaining_shares: int

class Investment(Position):
    average_cost: Decimal
    current_price: Decimal
    current_value: Decimal
    gain_loss: Decimal
    gain_loss_percent: Decimal

class PortfolioSummaryResponse(BaseModel):
    user_id: int
    cash_balance: Decimal
    total_investment: Decimal
    total_current_value: Decimal
    total_gain_loss: Decimal
    total_gain_loss_percent: Decimal
    portfolio_value: Decimal
    investments: List[Investment]

class Pagination(BaseModel):
    limit: int
    offset: int
    has_more: bool

class TransactionHistoryResponse(BaseModel):
    transactions: List[TransactionRecord]
    total_count: int
    pagination: Pagination

class QuoteResponse(BaseModel):
    symbol: str
    price: Decimal
    display_name: str

# ----------------------------
# API Endpoints
# ----------------------------
@router.post("/accounts", response_model=AccountResponse, status_code=201)
async def open_account(user_id: int = Depends(current_user_id),
                       trading_service: TradingService = Depends(get_trading_service)):
    """Open the cash account of a newly registered user"""
    try:
        account = await trading_service.open_account(user_id)
    except LedgerError as e:
        raise ledger_http_error(e)
    return AccountResponse(user_id=account.user_id, cash_balance=account.cash_balance)

@router.get("/investments/cash/balance", response_model=CashBalanceResponse)
async def get_cash_balance(user_id: int = Depends(current_user_id),
                           trading_service: TradingService = Depends(get_trading_service)):
    try:
        balance = await trading_service.get_cash_balance(user_id)
    except LedgerError as e:
        raise ledger_http_error(e)
    return CashBalanceResponse(user_id=user_id, cash_balance=balance)

@router.post("/investments/cash/add", response_model=DepositResponse)
async def add_cash(req: DepositRequest, user_id: int = Depends(current_user_id),
                   trading_service: TradingService = Depends(get_trading_service)):
    try:
        result = await trading_service.deposit(user_id, req.amount)
    except LedgerError as e:
        raise ledger_http_error(e)
    return DepositResponse(**result)

@router.get("/investments/transactions/history", response_model=TransactionHistoryResponse)
async def get_transaction_history(side: Optional[str] = Query(None, alias="type"), limit: int = 50, offset: int = 0,
                                  user_id: int = Depends(current_user_id),
                                  trading_service: TradingService = Depends(get_trading_service)):
    """Get trade history for the user, newest first"""
    try:
        page = await trading_service.get_trade_history(user_id, side, limit, offset)
    except LedgerError as e:
        raise ledger_http_error(e)
    return TransactionHistoryResponse(
        transactions=page.records,
        total_count=page.total_count,
        pagination=Pagination(limit=page.limit, offset=page.offset, has_more=page.has_more)
    )

@router.post("/investments", response_model=BuyResponse, status_code=201)
async def buy_investment(req: BuyRequest, user_id: int = Depends(current_user_id),
                         trading_service: TradingService = Depends(get_trading_service)):
    """Buy shares at the current market price"""
    try:
        result = await trading_service.execute_buy(user_id, req.symbol, req.quantity)
    except LedgerError as e:
        raise ledger_http_error(e)
    return BuyResponse(**result)

@router.post("/investments/{position_id}/sell", response_model=SellResponse)
async def sell_investment(position_id: int, req: SellRequest, user_id: int = Depends(current_user_id),
                          trading_service: TradingService = Depends(get_trading_service)):
    """Sell shares of an owned position"""
    try:
        result = await trading_service.execute_sell(user_id, position_id, req.quantity)
    except LedgerError as e:
        raise ledger_http_error(e)
    return SellResponse(**result)

@router.get("/investments", response_model=List[Investment])
async def list_investments(user_id: int = Depends(current_user_id),
                           portfolio_service: PortfolioService = Depends(get_portfolio_service)):
    """Get all positions valued at current prices"""
    try:
        return await portfolio_service.list_investments(user_id)
    except LedgerError as e:
        raise ledger_http_error(e)

@router.get("/investments/{position_id}", response_model=Investment)
async def get_investment(position_id: int, user_id: int = Depends(current_user_id),
                         portfolio_service: PortfolioService = Depends(get_portfolio_service)):
    try:
        return await portfolio_service.get_investment(user_id, position_id)
    except LedgerError as e:
        raise ledger_http_error(e)

@router.get("/portfolio", response_model=PortfolioSummaryResponse)
async def get_portfolio(user_id: int = Depends(current_user_id),
                        portfolio_service: PortfolioService = Depends(get_portfolio_service)):
    """Get cash, invested total, current value and overall gain/loss"""
    try:
        return await portfolio_service.get_portfolio_summary(user_id)
    except LedgerError as e:
        raise ledger_http_error(e)

@router.get("/market/quotes/{symbol}", response_model=QuoteResponse)
async def get_quote(symbol: str, oracle: PriceOracle = Depends(get_oracle)):
    try:
        symbol = normalize_symbol(symbol)
    except LedgerError as e:
        raise ledger_http_error(e)
    quote = await oracle.get_quote(symbol)
    if quote is None:
        raise HTTPException(status_code=404, detail=f"No price available for {symbol}")
    return QuoteResponse(symbol=quote.symbol, price=quote.price, display_name=quote.display_name)

@router.post("/market/quotes")
async def publish_quote(req: QuoteRequest, oracle: PriceOracle = Depends(get_oracle)):
    """Publish a simulated quote for a symbol"""
    try:
        symbol = normalize_symbol(req.symbol)
    except LedgerError as e:
        raise ledger_http_error(e)
    if req.price <= 0 or req.price > MAX_PRICE:
        raise HTTPException(status_code=400, detail=f"Price must be greater than zero and at most {MAX_PRICE}")

    await oracle.publish(symbol, req.price, req.display_name)
    logger.info("Published quote %s = %s", symbol, req.price)
    return {"success": True, "message": f"Price for {symbol} updated to {req.price}"}
