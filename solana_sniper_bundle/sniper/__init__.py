# solana_sniper_bundle/sniper/__init__.py
from __future__ import annotations

import importlib as _importlib

__all__ = [
    "bot_loop",
    "database",
    "discovery",
    "errors",
    "execution",
    "functions_client",
    "lp_verifier",
    "models",
    "payments",
    "pipeline",
    "position_sizing",
    "quotes",
    "racing",
    "safety",
    "sell_lock",
    "session",
    "slippage",
    "sources",
    "swap_backend",
    "token_state",
    "tradability",
    "utils_exec",
    "wallet",
]

def __getattr__(name: str):
    if name in __all__:
        return _importlib.import_module(f"{__name__}.{name}")
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

def __dir__():
    return sorted(list(globals().keys()) + __all__)
