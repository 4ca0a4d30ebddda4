from decimal import Decimal
from urllib.parse import parse_qsl, urlsplit

import pytest

from autotrader.errors import ExchangeRequestError
from autotrader.trading.binance_client import BinanceFuturesClient, RuleBook
from autotrader.trading.context import fetch_context, map_balances
from autotrader.trading.models import AccountCredential, OrderIntent
from autotrader.trading.signing import sign

from conftest import FakeResponse, FakeSession, fixed_clock, raw_account, raw_position

CREDENTIAL = AccountCredential(api_key="api-key", api_secret="api-secret")


def client(session, config):
    return BinanceFuturesClient(session, config, CREDENTIAL, clock=fixed_clock)


def split_query(url):
    query = urlsplit(url).query
    unsigned, signature = query.rsplit("&signature=", 1)
    return unsigned, signature, parse_qsl(unsigned)


@pytest.mark.asyncio
async def test_market_order_is_signed_in_insertion_order(config):
    session = FakeSession(FakeResponse(200, {"orderId": 42}))
    intent = OrderIntent(symbol="BTCUSDT", side="SELL", quantity="0.010", is_closing=True, client_order_id="AI_CLOSE_1_0")

    data = await client(session, config).place_market_order(intent)

    assert data == {"orderId": 42}
    request = session.requests[0]
    assert request["method"] == "POST"
    assert request["url"].startswith("https://testnet.binancefuture.com/fapi/v1/order?")
    assert request["headers"] == {"X-MBX-APIKEY": "api-key"}
    unsigned, signature, pairs = split_query(request["url"])
    assert [k for k, _ in pairs] == ["symbol", "side", "type", "quantity", "newClientOrderId", "timestamp", "recvWindow"]
    assert dict(pairs)["timestamp"] == "1709294400000"
    assert dict(pairs)["recvWindow"] == "5000"
    assert signature == sign("api-secret", unsigned)


@pytest.mark.asyncio
async def test_conditional_order_closes_position(config):
    session = FakeSession(FakeResponse(200, {"algoId": 7}))
    await client(session, config).place_conditional_order("ETHUSDT", "BUY", "STOP_MARKET", "2100.50", "AI_SL_1_0")
    _, _, pairs = split_query(session.requests[0]["url"])
    assert pairs[:7] == [
        ("symbol", "ETHUSDT"),
        ("side", "BUY"),
        ("algoType", "CONDITIONAL"),
        ("type", "STOP_MARKET"),
        ("triggerPrice", "2100.50"),
        ("closePosition", "true"),
        ("clientAlgoId", "AI_SL_1_0"),
    ]


@pytest.mark.asyncio
async def test_error_response_keeps_raw_body(config):
    body = '{"code":-2019,"msg":"Margin is insufficient."}'
    session = FakeSession(FakeResponse(400, body))
    with pytest.raises(ExchangeRequestError) as info:
        await client(session, config).change_leverage("BTCUSDT", 10)
    assert info.value.status == 400
    assert info.value.body == body
    assert info.value.code == -2019
    assert info.value.msg == "Margin is insufficient."


@pytest.mark.asyncio
async def test_price_endpoint_is_unsigned(config):
    session = FakeSession(FakeResponse(200, {"symbol": "BTCUSDT", "price": "50123.10"}))
    price = await BinanceFuturesClient(session, config).get_price("BTCUSDT")
    assert price == Decimal("50123.10")
    assert session.requests[0]["url"].endswith("/fapi/v1/ticker/price?symbol=BTCUSDT")
    assert "signature" not in session.requests[0]["url"]


@pytest.mark.asyncio
async def test_fetch_context_filters_empty_balances_and_flat_positions(config):
    account = raw_account([raw_position("BTCUSDT", "0.010"), raw_position("ETHUSDT", "0"), raw_position("XRPUSDT", "-20")])
    session = FakeSession(FakeResponse(200, account))

    context = await fetch_context(client(session, config))

    assert [b.asset for b in context.balances] == ["USDT"]
    assert context.balances[0].free == Decimal("1000")
    assert [p.symbol for p in context.positions] == ["BTCUSDT", "XRPUSDT"]
    assert context.position_for("XRPUSDT").position_amt == Decimal("-20")
    assert context.position_for("XRPUSDT").leverage == 5
    _, _, pairs = split_query(session.requests[0]["url"])
    assert [k for k, _ in pairs] == ["timestamp", "recvWindow"]


@pytest.mark.asyncio
async def test_fetch_context_raises_on_exchange_error(config):
    session = FakeSession(FakeResponse(401, '{"code":-2015,"msg":"Invalid API-key"}'))
    with pytest.raises(ExchangeRequestError):
        await fetch_context(client(session, config))


@pytest.mark.asyncio
async def test_rulebook_falls_back_to_defaults(config):
    session = FakeSession(
        FakeResponse(200, {"symbols": [{"symbol": "BTCUSDT", "filters": [{"filterType": "LOT_SIZE", "stepSize": "0.001"}]}]})
    )
    rules = RuleBook(BinanceFuturesClient(session, config))

    btc = await rules.rule_for("BTCUSDT")
    unknown = await rules.rule_for("NEWUSDT")

    assert btc.step_size == Decimal("0.001")
    assert btc.tick_size == Decimal("0.01")
    assert unknown.step_size == Decimal("0.001")
    assert len(session.requests) == 1


@pytest.mark.asyncio
async def test_rulebook_survives_metadata_failure(config):
    session = FakeSession(FakeResponse(503, "unavailable"))
    rule = await RuleBook(BinanceFuturesClient(session, config)).rule_for("BTCUSDT")
    assert (rule.step_size, rule.tick_size) == (Decimal("0.001"), Decimal("0.01"))


def test_free_balance_prefers_available_balance():
    balances = map_balances([
        {"asset": "USDT", "walletBalance": "1000", "marginBalance": "1010", "availableBalance": "640", "maintMargin": "3"},
        {"asset": "BUSD", "walletBalance": "50", "marginBalance": "50", "maintMargin": "0"},
    ])
    assert [(b.asset, b.free) for b in balances] == [("USDT", Decimal("640")), ("BUSD", Decimal("50"))]
