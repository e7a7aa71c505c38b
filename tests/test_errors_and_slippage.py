import pytest
from solders.transaction_status import InstructionErrorCustom, TransactionErrorInstructionError

from solana_sniper_bundle.sniper.errors import (
    SniperError,
    TradeErrorCode,
    classify_error,
    describe_tx_error,
    extract_error_message,
    is_slippage_error,
    remediation_hint,
)
from solana_sniper_bundle.sniper.slippage import (
    MAX_SLIPPAGE_BPS,
    calculate_dynamic_slippage,
    get_retry_delay,
)


@pytest.mark.parametrize("message,code", [
    ("Program failed: custom program error: 0x1771", TradeErrorCode.SLIPPAGE_EXCEEDED),
    ("SlippageToleranceExceeded", TradeErrorCode.SLIPPAGE_EXCEEDED),
    ("Jupiter quote failed: Could not find any route", TradeErrorCode.NO_ROUTE),
    ("User rejected the request.", TradeErrorCode.USER_REJECTED),
    ("insufficient lamports for fee", TradeErrorCode.INSUFFICIENT_FUNDS),
    ("JWT expired", TradeErrorCode.AUTH_EXPIRED),
    ("HTTP 429 Too Many Requests", TradeErrorCode.RATE_LIMITED),
    ("request timed out", TradeErrorCode.TIMEOUT),
    ("Cannot connect to host", TradeErrorCode.NETWORK_ERROR),
    ("", TradeErrorCode.UNKNOWN),
    ("something odd", TradeErrorCode.UNKNOWN),
])
def test_classify_error(message, code):
    assert classify_error(message) == code


def test_sniper_error_classifies_itself():
    assert SniperError("slippage tolerance exceeded").code == TradeErrorCode.SLIPPAGE_EXCEEDED
    assert SniperError("whatever", TradeErrorCode.SELL_LOCKED).code == TradeErrorCode.SELL_LOCKED
    assert remediation_hint(TradeErrorCode.SLIPPAGE_EXCEEDED)
    assert remediation_hint(TradeErrorCode.UNKNOWN) == ""


def test_extract_error_message_prefers_json_error():
    assert extract_error_message(400, '{"error": "No routes found"}') == "No routes found"
    assert extract_error_message(400, {"message": "bad input"}) == "bad input"
    assert extract_error_message(502, "upstream down") == "upstream down"
    assert extract_error_message(503, "") == "Request failed (HTTP 503)"


def test_slippage_rises_as_liquidity_falls():
    levels = [20000, 8000, 3000, 800, 100]
    bps = [calculate_dynamic_slippage(liquidity=l, is_sell=True)["slippage_bps"] for l in levels]
    assert bps == sorted(bps)
    assert calculate_dynamic_slippage(liquidity=100, is_sell=True)["slippage_bps"] >= \
        calculate_dynamic_slippage(liquidity=10000, is_sell=True)["slippage_bps"]


def test_slippage_rises_with_retries_and_is_capped():
    prev = 0
    for retry in range(0, 8):
        out = calculate_dynamic_slippage(liquidity=400, is_sell=True, is_retry=retry > 0, retry_count=retry)
        assert out["slippage_bps"] >= prev
        assert out["slippage_bps"] <= MAX_SLIPPAGE_BPS
        prev = out["slippage_bps"]
    assert prev == MAX_SLIPPAGE_BPS


def test_slippage_combines_floors_with_max():
    out = calculate_dynamic_slippage(liquidity=800, price_impact=6.0)
    # liquidity floor 1500 and impact floor 1500 are not summed
    assert out["slippage_bps"] == 1500
    assert "price impact" in out["reason"]
    assert calculate_dynamic_slippage()["slippage_bps"] == 100
    assert calculate_dynamic_slippage(is_sell=True)["slippage_bps"] == 150


def test_retry_delay_backoff():
    assert [get_retry_delay(a) for a in range(4)] == [0.5, 1.0, 2.0, 2.0]


def test_onchain_slippage_error_is_recognised():
    err = TransactionErrorInstructionError(2, InstructionErrorCustom(6001))
    assert describe_tx_error(err) == '{"InstructionError":[2,{"Custom":6001}]}'
    assert classify_error(f"Transaction failed: {describe_tx_error(err)}") == TradeErrorCode.SLIPPAGE_EXCEEDED
    assert is_slippage_error(f"Transaction failed: {err}")

    other = TransactionErrorInstructionError(0, InstructionErrorCustom(1))
    assert not is_slippage_error(describe_tx_error(other))


def test_describe_tx_error_passes_rpc_json_through():
    assert describe_tx_error({"InstructionError": [3, {"Custom": 6024}]}) == '{"InstructionError":[3,{"Custom":6024}]}'
    assert describe_tx_error("InstructionError(2, Custom(6024))") == "InstructionError(2, Custom(6024))"
    assert describe_tx_error(None) == ""
