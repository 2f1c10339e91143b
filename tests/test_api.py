import pytest
from fastapi.testclient import TestClient
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock
from fastapi import FastAPI
from pentafolio.api import router
from pentafolio.errors import InsufficientFunds, InsufficientShares, PositionNotFound, PricingUnavailable
from pentafolio.main import build_ledger
from pentafolio.models import Position, TransactionRecord, TransactionPage, Side
from pentafolio.oracle import InMemoryPriceOracle
from pentafolio.services.portfolio import PortfolioService
from pentafolio.services.trading import TradingService

USER = {"X-User-Id": "1"}


def make_app(trading_service=None, portfolio_service=None, oracle=None) -> FastAPI:
    """Create a clean test app with the given services on app.state"""
    test_app = FastAPI(title="Test Pentafolio", version="1.0.0")
    test_app.include_router(router)
    test_app.state.trading_service = trading_service
    test_app.state.portfolio_service = portfolio_service
    test_app.state.oracle = oracle
    return test_app

@pytest.fixture
def mock_trading_service():
    return AsyncMock(spec=TradingService)

@pytest.fixture
def mock_portfolio_service():
    return AsyncMock(spec=PortfolioService)

@pytest.fixture
def oracle():
    return InMemoryPriceOracle({"AAPL": Decimal('150.00')})

@pytest.fixture
def client(mock_trading_service, mock_portfolio_service, oracle):
    """Create test client with mocked services"""
    with TestClient(make_app(mock_trading_service, mock_portfolio_service, oracle)) as test_client:
        yield test_client

@pytest.fixture
def ledger_client():
    """Test client over real services and the in-process backend"""
    settings = SimpleNamespace(
        STORAGE_BACKEND="memory",
        LOCK_TIMEOUT_SECONDS=5.0,
        ORACLE_TIMEOUT_SECONDS=2.0,
        STARTING_CASH_BALANCE=Decimal('10000.00'),
    )
    ledger = build_ledger(settings)
    app = make_app(ledger.trading_service, ledger.portfolio_service, ledger.oracle)
    with TestClient(app) as test_client:
        yield test_client

class TestBuyAPI:
    """Test buy endpoint and error mapping"""

    def test_buy_success(self, client, mock_trading_service):
        mock_trading_service.execute_buy.return_value = {
            "message": "Successfully purchased 10 shares of AAPL for $1500.00",
            "investment": Position(id=1, user_id=1, symbol="AAPL", display_name="Apple Inc.", quantity=10,
                                   cost_basis_total=Decimal('1500.00'), last_known_price=Decimal('150.00')),
            "remaining_cash": Decimal('8500.00'),
            "transaction_details": {
                "transaction_id": 1, "symbol": "AAPL", "quantity": 10,
                "price_per_share": Decimal('150.00'), "total_cost": Decimal('1500.00'), "timestamp": None,
            },
        }

        response = client.post("/investments", json={"symbol": "aapl", "quantity": 10}, headers=USER)

        assert response.status_code == 201
        data = response.json()
        assert data["remaining_cash"] == "8500.00"
        assert data["investment"]["quantity"] == 10
        assert data["transaction_details"]["total_cost"] == "1500.00"
        mock_trading_service.execute_buy.assert_called_once_with(1, "aapl", 10)

    def test_buy_insufficient_funds(self, client, mock_trading_service):
        mock_trading_service.execute_buy.side_effect = InsufficientFunds(Decimal('1000.00'), Decimal('1500.00'))

        response = client.post("/investments", json={"symbol": "AAPL", "quantity": 10}, headers=USER)

        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["kind"] == "InsufficientFunds"
        assert detail["current_balance"] == "1000.00"
        assert detail["required_amount"] == "1500.00"

    def test_buy_pricing_unavailable(self, client, mock_trading_service):
        mock_trading_service.execute_buy.side_effect = PricingUnavailable("NOPE")

        response = client.post("/investments", json={"symbol": "NOPE", "quantity": 1}, headers=USER)

        assert response.status_code == 503
        assert response.json()["detail"]["kind"] == "PricingUnavailable"

    def test_buy_requires_user(self, client, mock_trading_service):
        response = client.post("/investments", json={"symbol": "AAPL", "quantity": 1})

        assert response.status_code == 422
        mock_trading_service.execute_buy.assert_not_called()

    def test_buy_invalid_body(self, client):
        response = client.post("/investments", json={"symbol": "AAPL"}, headers=USER)
        assert response.status_code == 422

class TestSellAPI:

    def test_sell_success(self, client, mock_trading_service):
        mock_trading_service.execute_sell.return_value = {
            "message": "Successfully sold 5 shares of AAPL",
            "sale_details": {
                "transaction_id": 2, "symbol": "AAPL", "quantity_sold": 5,
                "price_per_share": Decimal('150.00'), "total_received": Decimal('750.00'),
                "profit_loss": Decimal('50.00'), "profit_loss_percent": Decimal('7.14'),
            },
            "new_cash_balance": Decimal('4250.00'),
            "remaining_shares": 5,
        }

        response = client.post("/investments/7/sell", json={"quantity": 5}, headers=USER)

        assert response.status_code == 200
        data = response.json()
        assert data["sale_details"]["profit_loss"] == "50.00"
        assert data["remaining_shares"] == 5
        mock_trading_service.execute_sell.assert_called_once_with(1, 7, 5)

    def test_sell_too_many(self, client, mock_trading_service):
        mock_trading_service.execute_sell.side_effect = InsufficientShares(20, 10)

        response = client.post("/investments/7/sell", json={"quantity": 20}, headers=USER)

        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["requested"] == 20
        assert detail["available"] == 10

    def test_sell_not_owned(self, client, mock_trading_service):
        mock_trading_service.execute_sell.side_effect = PositionNotFound(7)

        response = client.post("/investments/7/sell", json={"quantity": 1}, headers=USER)

        assert response.status_code == 404
        assert response.json()["detail"]["message"] == "Investment not found"

class TestHistoryAPI:

    def test_history(self, client, mock_trading_service):
        mock_trading_service.get_trade_history.return_value = TransactionPage(
            records=[TransactionRecord(id=2, user_id=1, symbol="AAPL", side=Side.SELL, quantity=5,
                                       price_per_share=Decimal('150.00'), total_amount=Decimal('750.00'),
                                       realized_gain=Decimal('50.00'))],
            total_count=2, limit=1, offset=0, has_more=True
        )

        response = client.get("/investments/transactions/history?type=SELL&limit=1", headers=USER)

        assert response.status_code == 200
        data = response.json()
        assert data["transactions"][0]["side"] == "SELL"
        assert data["total_count"] == 2
        assert data["pagination"] == {"limit": 1, "offset": 0, "has_more": True}
        mock_trading_service.get_trade_history.assert_called_once_with(1, "SELL", 1, 0)

class TestMarketAPI:

    def test_publish_and_get_quote(self, client):
        response = client.post("/market/quotes", json={"symbol": "tsla", "price": 251.5})
        assert response.status_code == 200
        assert response.json()["success"] is True

        response = client.get("/market/quotes/TSLA")
        assert response.status_code == 200
        assert response.json()["price"] == "251.5"

    def test_unknown_quote(self, client):
        assert client.get("/market/quotes/NOPE").status_code == 404

    def test_publish_non_positive_price(self, client):
        response = client.post("/market/quotes", json={"symbol": "AAPL", "price": 0})
        assert response.status_code == 400

    def test_publish_price_too_large(self, client):
        response = client.post("/market/quotes", json={"symbol": "AAPL", "price": "1e11"})
        assert response.status_code == 400
        assert client.get("/market/quotes/AAPL").json()["price"] == "150.00"

class TestServiceWiring:

    def test_uninitialised_service(self):
        with TestClient(make_app()) as test_client:
            response = test_client.get("/investments/cash/balance", headers=USER)
        assert response.status_code == 500

class TestLedgerFlow:
    """End-to-end flows through the HTTP surface with the in-process backend"""

    def test_buy_sell_flow(self, ledger_client):
        assert ledger_client.post("/accounts", headers=USER).status_code == 201
        assert ledger_client.post("/accounts", headers=USER).status_code == 400

        response = ledger_client.post("/investments", json={"symbol": "AAPL", "quantity": "10"}, headers=USER)
        assert response.status_code == 201
        position_id = response.json()["investment"]["id"]
        assert response.json()["remaining_cash"] == "8500.00"

        response = ledger_client.post(f"/investments/{position_id}/sell", json={"quantity": 4}, headers=USER)
        assert response.status_code == 200
        assert response.json()["new_cash_balance"] == "9100.00"
        assert response.json()["remaining_shares"] == 6

        response = ledger_client.get("/portfolio", headers=USER)
        data = response.json()
        assert data["cash_balance"] == "9100.00"
        assert data["total_investment"] == "900.00"
        assert data["portfolio_value"] == "10000.00"
        assert len(data["investments"]) == 1

        history = ledger_client.get("/investments/transactions/history", headers=USER).json()
        assert [t["side"] for t in history["transactions"]] == ["SELL", "BUY"]

    def test_fractional_quantity_rejected(self, ledger_client):
        ledger_client.post("/accounts", headers=USER)

        response = ledger_client.post("/investments", json={"symbol": "AAPL", "quantity": 1.5}, headers=USER)

        assert response.status_code == 400
        assert response.json()["detail"]["kind"] == "InvalidInput"
        assert ledger_client.get("/investments/cash/balance", headers=USER).json()["cash_balance"] == "10000.00"

    def test_deposit(self, ledger_client):
        ledger_client.post("/accounts", headers=USER)

        response = ledger_client.post("/investments/cash/add", json={"amount": "250.50"}, headers=USER)

        assert response.status_code == 200
        assert response.json()["new_balance"] == "10250.50"

    def test_other_users_position_is_hidden(self, ledger_client):
        ledger_client.post("/accounts", headers=USER)
        ledger_client.post("/accounts", headers={"X-User-Id": "2"})
        position_id = ledger_client.post("/investments", json={"symbol": "AAPL", "quantity": 1},
                                         headers=USER).json()["investment"]["id"]

        assert ledger_client.get(f"/investments/{position_id}", headers={"X-User-Id": "2"}).status_code == 404
        response = ledger_client.post(f"/investments/{position_id}/sell", json={"quantity": 1},
                                      headers={"X-User-Id": "2"})
        assert response.status_code == 404

    def test_unknown_account(self, ledger_client):
        response = ledger_client.get("/portfolio", headers={"X-User-Id": "42"})
        assert response.status_code == 404
        assert response.json()["detail"]["kind"] == "AccountNotFound"
