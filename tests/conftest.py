# tests/conftest.py
import pytest

from solana_sniper_bundle.sniper import discovery, quotes, swap_backend
from solana_sniper_bundle.sniper.models import TradableToken
from solana_sniper_bundle.sniper.session import SessionContext
from solana_sniper_bundle.sniper.wallet import CallbackWallet


MINT_A = "AAAAaaaa1111111111111111111111111111111111"
MINT_B = "BBBBbbbb2222222222222222222222222222222222"
MINT_C = "CCCCcccc3333333333333333333333333333333333"
MINT_D = "DDDDdddd4444444444444444444444444444444444"


class Notes:
    """Collects session notifications."""

    def __init__(self):
        self.items = []

    def __call__(self, title, message, level="info", code=None):
        self.items.append((title, message, level, code))

    def titles(self):
        return [t for t, _, _, _ in self.items]


@pytest.fixture(autouse=True)
def _clear_caches(monkeypatch):
    monkeypatch.delenv("SNIPER_DEMO_MODE", raising=False)
    discovery.clear_discovery_cache()
    quotes.clear_quote_cache()
    swap_backend.clear_decimals_cache()
    yield
    discovery.clear_discovery_cache()
    quotes.clear_quote_cache()
    swap_backend.clear_decimals_cache()


@pytest.fixture
def db_file(tmp_path):
    return str(tmp_path / "sniper.sqlite3")


@pytest.fixture
def notes():
    return Notes()


@pytest.fixture
def make_session(db_file, notes):
    def _make(demo=False, cfg=None, balance=1.0, sign_and_send=None, wallet=True):
        async def _balance():
            return balance

        async def _send(tx):
            return {"success": True, "signature": "sig_ok"}

        w = None
        if wallet:
            w = CallbackWallet("WalletPubkey1111111111111111111111111111111", sign_and_send or _send, get_balance=_balance)
        return SessionContext(cfg or {}, db_path=db_file, demo=demo, wallet=w, notifier=notes)

    return _make


def make_token(address, symbol="TKN", **kw):
    base = dict(
        address=address,
        name=f"{symbol} Token",
        symbol=symbol,
        liquidity=10.0,
        liquidity_usd=1500.0,
        risk_score=20,
        is_tradeable=True,
        can_buy=True,
        can_sell=True,
        price_usd=0.001,
    )
    base.update(kw)
    return TradableToken(**base)
