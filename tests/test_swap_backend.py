import asyncio
from types import SimpleNamespace

import pytest
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction_status import InstructionErrorCustom, TransactionErrorInstructionError

from solana_sniper_bundle.common.constants import SOL_MINT
from solana_sniper_bundle.sniper import database, execution
from solana_sniper_bundle.sniper.errors import FunctionInvokeError, SwapBackendError, TradeErrorCode
from solana_sniper_bundle.sniper.execution import ExecutionEngine
from solana_sniper_bundle.sniper.lp_verifier import TOKEN_PROGRAM_ID
from solana_sniper_bundle.sniper.models import TradeParams
from solana_sniper_bundle.sniper.swap_backend import JupiterSwapBackend, RemoteSwapBackend, make_swap_backend

from conftest import MINT_A

SIG = str(Signature.default())

JUP_QUOTE = {
    "inAmount": "100000000",
    "outAmount": "5000000000",
    "priceImpactPct": "0.5",
    "slippageBps": 300,
    "routePlan": [{"swapInfo": {"label": "Raydium CLMM"}}, {"swapInfo": {"label": "Meteora DLMM"}}],
}


class _Resp:
    def __init__(self, status, data):
        self.status = status
        self._data = data

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def text(self):
        return self._data if isinstance(self._data, str) else str(self._data)

    async def json(self, content_type=None):
        return self._data


class _Http:
    def __init__(self, quote=(200, JUP_QUOTE), swap=(200, {"swapTransaction": "BASE64TX"})):
        self.quote = quote
        self.swap = swap
        self.posted = []
        self.quoted = []

    def get(self, url, params=None, headers=None, timeout=None):
        self.quoted.append(params)
        return _Resp(*self.quote)

    def post(self, url, json=None, headers=None, timeout=None):
        self.posted.append(json)
        return _Resp(*self.swap)


class _Rpc:
    def __init__(self, status, decimals=None):
        self.status = status
        self.decimals = decimals
        self.account_calls = 0

    async def get_account_info(self, pubkey, encoding="base64"):
        self.account_calls += 1
        if self.decimals is None:
            return SimpleNamespace(value=None)
        data = bytearray(82)
        data[44] = self.decimals
        data[45] = 1
        return SimpleNamespace(value=SimpleNamespace(data=bytes(data), owner=TOKEN_PROGRAM_ID))

    async def get_signature_statuses(self, sigs, search_transaction_history=False):
        return SimpleNamespace(value=[self.status])


def _params():
    return TradeParams(
        input_mint=SOL_MINT, output_mint=MINT_A, amount=100_000_000, slippage_bps=300,
        priority_level="high", token_symbol="AAA", profit_take_percent=40, stop_loss_percent=10,
    )


def test_jupiter_buy_records_pending_then_open(db_file):
    confirmed = SimpleNamespace(err=None, confirmation_status="TransactionConfirmationStatus.Confirmed", slot=9)
    http = _Http()
    backend = JupiterSwapBackend(http, _Rpc(confirmed), db_file, api_key="", poll_interval_s=0)

    async def go():
        resp = await backend.execute(_params(), "Wallet111", 300)
        pending = await database.get_position(db_file, resp.position_id)
        conf = await backend.confirm(SIG, resp.position_id, "buy", "Wallet111")
        opened = await database.get_position(db_file, resp.position_id)
        return resp, pending, conf, opened

    resp, pending, conf, opened = asyncio.run(go())
    assert resp.swap_transaction == "BASE64TX"
    assert resp.quote.route == "Raydium CLMM -> Meteora DLMM"
    assert resp.quote.output_amount_decimal == pytest.approx(5000.0)
    assert http.posted[0]["prioritizationFeeLamports"] == 200_000
    assert pending["status"] == "pending"
    assert pending["entry_price"] == pytest.approx(0.1 / 5000.0)
    assert pending["profit_take_percent"] == 40
    assert conf["confirmed"]
    assert opened["status"] == "open" and opened["tx_signature"] == SIG


def test_jupiter_on_chain_failure_marks_swap_failed(db_file):
    failed = SimpleNamespace(err="InstructionError(2, Custom(6024))", confirmation_status=None, slot=9)
    backend = JupiterSwapBackend(_Http(), _Rpc(failed), db_file, api_key="", poll_interval_s=0)

    async def go():
        resp = await backend.execute(_params(), "Wallet111", 300)
        conf = await backend.confirm(SIG, resp.position_id, "buy")
        return conf, await database.get_position(db_file, resp.position_id)

    conf, row = asyncio.run(go())
    assert not conf["confirmed"]
    assert "6024" in conf["error"]
    assert row["status"] == "swap_failed"


def test_jupiter_confirmation_timeout(db_file):
    backend = JupiterSwapBackend(_Http(), _Rpc(None), db_file, api_key="", max_status_polls=3, poll_interval_s=0)
    conf = asyncio.run(backend.confirm(SIG, None, "sell"))
    assert conf == {"confirmed": False, "error": "Confirmation timeout"}


def test_jupiter_quote_errors_are_coded(db_file):
    no_route = JupiterSwapBackend(_Http(quote=(200, dict(JUP_QUOTE, outAmount="0"))), None, db_file, api_key="")
    with pytest.raises(SwapBackendError) as e:
        asyncio.run(no_route.quote(SOL_MINT, MINT_A, 1, 100))
    assert e.value.code == TradeErrorCode.NO_ROUTE

    bad = JupiterSwapBackend(_Http(quote=(400, '{"error": "Could not find any route"}')), None, db_file, api_key="")
    with pytest.raises(SwapBackendError) as e:
        asyncio.run(bad.quote(SOL_MINT, MINT_A, 1, 100))
    assert e.value.code == TradeErrorCode.NO_ROUTE
    assert "Could not find any route" in str(e.value)


class FakeFunctions:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    async def invoke(self, name, body):
        self.calls.append((name, body))
        out = self.responses.pop(0)
        if isinstance(out, Exception):
            raise out
        return out


def test_remote_backend_contract():
    fns = FakeFunctions([
        {"quote": {"inputAmount": 100, "outAmount": 950, "priceImpactPct": 0.2, "slippageBps": 300},
         "swapTransaction": "TX", "positionId": "pos-9"},
        {"confirmed": True},
    ])
    backend = RemoteSwapBackend(fns)

    async def go():
        return await backend.execute(_params(), "Wallet111", 300), await backend.confirm("sig", "pos-9", "buy", "Wallet111")

    resp, conf = asyncio.run(go())
    assert resp.position_id == "pos-9" and resp.quote.output_amount == 950
    name, body = fns.calls[0]
    assert name == "trade-execution" and body["action"] == "execute"
    assert body["tokenSymbol"] == "AAA" and body["priorityLevel"] == "high"
    assert fns.calls[1][0] == "confirm-transaction"
    assert conf == {"confirmed": True, "error": None}


def test_remote_backend_maps_function_errors():
    backend = RemoteSwapBackend(FakeFunctions([FunctionInvokeError("JWT expired", 401), FunctionInvokeError("boom", 500)]))
    with pytest.raises(SwapBackendError) as e:
        asyncio.run(backend.quote(SOL_MINT, MINT_A, 1, 100))
    assert e.value.code == TradeErrorCode.AUTH_EXPIRED

    conf = asyncio.run(backend.confirm("sig", None, "sell"))
    assert conf == {"confirmed": False, "error": "boom"}


def test_backend_selection(make_session):
    assert isinstance(make_swap_backend(make_session()), JupiterSwapBackend)


def test_jupiter_reads_output_decimals_from_the_mint(db_file):
    mint = str(Pubkey.new_unique())
    confirmed = SimpleNamespace(err=None, confirmation_status="finalized", slot=9)
    rpc = _Rpc(confirmed, decimals=9)
    backend = JupiterSwapBackend(_Http(), rpc, db_file, api_key="", poll_interval_s=0)
    params = _params()
    params.output_mint = mint

    async def go():
        resp = await backend.execute(params, "Wallet111", 300)
        again = await backend.quote(SOL_MINT, mint, 100_000_000, 300)
        return resp, again, await database.get_position(db_file, resp.position_id)

    resp, again, row = asyncio.run(go())
    assert resp.quote.input_amount_decimal == pytest.approx(0.1)
    assert resp.quote.output_amount_decimal == pytest.approx(5.0)
    assert again.output_amount_decimal == pytest.approx(5.0)
    assert row["entry_price"] == pytest.approx(0.1 / 5.0)
    assert rpc.account_calls == 1


def test_onchain_slippage_failure_escalates_sell(make_session, monkeypatch):
    monkeypatch.setattr(execution, "decode_transaction", lambda tx: tx)
    monkeypatch.setattr(execution, "get_retry_delay", lambda attempt: 0)
    failed = SimpleNamespace(
        err=TransactionErrorInstructionError(2, InstructionErrorCustom(6001)), confirmation_status=None, slot=9,
    )
    http = _Http()

    async def send(tx):
        return {"success": True, "signature": SIG}

    session = make_session(sign_and_send=send)
    backend = JupiterSwapBackend(http, _Rpc(failed), session.db_path, api_key="", poll_interval_s=0)
    engine = ExecutionEngine(session, backend=backend)
    result = asyncio.run(engine.sell_position(MINT_A, 1_000_000, None, liquidity=400, max_retries=2))

    assert not result.success
    assert result.error_code == TradeErrorCode.SLIPPAGE_EXCEEDED.value
    assert '"Custom":6001' in result.error
    assert result.retry_count == 2
    slippages = [int(p["slippageBps"]) for p in http.quoted]
    assert len(slippages) == 3
    assert slippages == sorted(slippages) and slippages[0] < slippages[-1]
