# solana_sniper_bundle/sniper/utils_exec.py
from __future__ import annotations

import asyncio
import logging
import os
import random
import time
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from solana_sniper_bundle.common.constants import (
    config_path,
    db_path,
    ensure_app_dirs,
    logs_dir,
)

logger = logging.getLogger("TradingBot")

try:
    ensure_app_dirs()
except Exception:
    pass

# -----------------------------------------------------------------------------
# Default configuration
# -----------------------------------------------------------------------------
DEFAULT_CONFIG: Dict[str, Any] = {
    "logging": {
        "file": None,  # resolved to <appdata>/logs/sniper.log
        "log_level": "INFO",
        "log_rotation_size_mb": 10,
        "log_max_files": 5,
    },
    "sources": {
        "dexscreener_enabled": True,
        "geckoterminal_enabled": True,
        "raydium_enabled": True,
    },
    "discovery": {
        "timeout_ms": 3000,
        "cache_ttl_s": 8,
        "sol_usd_estimate": 150.0,
    },
    "quotes": {
        "timeout_ms": 2000,
        "probe_amount_lamports": 10_000_000,
        "probe_slippage_bps": 1500,
        "cache_ttl_s": 30,
        "batch_concurrency": 10,
        "max_price_impact_pct": 50.0,
    },
    "tradability": {
        "require_lp_verification": False,
        "max_risk_score": 100,
    },
    "registry": {
        "pending_ttl_s": 300,
        "max_retries": 5,
    },
    "pipeline": {
        "min_liquidity": 5,
        "discovery_min_liquidity": 1,
        "max_discovered": 200,
        "refresh_interval_s": 30,
        "cleanup_interval_s": 60,
        "backend": "local",
    },
    "bot": {
        "mode": "demo",
        "trade_amount": 0.05,
        "max_risk_score": 70,
        "min_liquidity": 5,
        "max_concurrent_trades": 3,
        "target_buyer_positions": [1, 2, 3, 4, 5],
        "profit_take_percentage": 50,
        "stop_loss_percentage": 20,
        "token_blacklist": [],
        "require_sell_route": True,
        "slippage_tolerance": 15,
        "priority": "normal",
    },
    "execution": {
        "default_slippage_bps": 100,
        "confirm_timeout_s": 60,
        "max_sell_retries": 3,
    },
    "lp_verification": {
        "max_creator_lp_pct": 5.0,
        "min_secured_lp_pct": 90.0,
        "top_holders": 20,
    },
    "rugcheck": {
        "enabled": False,
        "base_url": "https://api.rugcheck.xyz",
    },
    "payments": {
        "memo_prefix": "AMS",
        "receiving_wallet": "",
        "required_confirmations": 1,
        "webhook_secret": "",
    },
    "solana": {
        "rpc_url": "https://api.mainnet-beta.solana.com",
    },
    "functions": {
        "base_url": "",
    },
    "database": {
        "path": None,  # resolved to <appdata>/sniper.sqlite3
    },
}


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in (override or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _merge(out[k], v)
        else:
            out[k] = v
    return out


def section(cfg: Optional[Dict[str, Any]], name: str) -> Dict[str, Any]:
    """Config section with defaults filled in for missing keys."""
    return _merge(DEFAULT_CONFIG.get(name, {}), (cfg or {}).get(name) or {})

# -----------------------------------------------------------------------------
# Config & logging helpers
# -----------------------------------------------------------------------------
_missing_cfg_last_log_ts: float = 0.0


def _resolve_config_path(path: Optional[str] = None) -> Path:
    if path:
        return Path(path)
    candidates: List[Path] = [config_path(), Path.cwd() / "config.yaml"]
    for c in candidates:
        try:
            if c.exists():
                return c
        except Exception:
            continue
    return config_path()


def _create_default_config(cfg_path: Path) -> None:
    try:
        if not cfg_path.exists() or cfg_path.stat().st_size == 0:
            cfg_path.parent.mkdir(parents=True, exist_ok=True)
            default_cfg = _merge(DEFAULT_CONFIG, {
                "logging": {"file": str(logs_dir() / "sniper.log")},
                "database": {"path": str(db_path())},
            })
            cfg_path.write_text("# Auto-generated default config\n" + yaml.safe_dump(default_cfg), encoding="utf-8")
    except Exception as e:
        logger.debug("Could not create default config at %s: %s", cfg_path, e)


def load_config(path: str | None = None) -> Dict:
    global _missing_cfg_last_log_ts
    cfg_path = _resolve_config_path(path)
    _create_default_config(cfg_path)
    try:
        with open(cfg_path, "r", encoding="utf-8") as f:
            config = yaml.safe_load(f) or {}
        logger.debug("Loaded configuration from %s", cfg_path)
        return config
    except Exception as e:
        now = time.time()
        if now - _missing_cfg_last_log_ts > 30:
            logger.error("Failed to load config from %s: %s", cfg_path, e)
            _missing_cfg_last_log_ts = now
        return {}


_LOG_SENTINEL_ATTR = "_sniper_logging_file"


def setup_logging(config: dict[str, Any] | None) -> logging.Logger:
    log_cfg = section(config, "logging")
    log_file = Path(log_cfg.get("file") or (logs_dir() / "sniper.log"))
    log_file.parent.mkdir(parents=True, exist_ok=True)

    level_name = str(log_cfg.get("log_level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    max_size_mb = int(log_cfg.get("log_rotation_size_mb", 10))
    max_files = int(log_cfg.get("log_max_files", 5))

    root = logging.getLogger()
    root.setLevel(level)

    if getattr(root, _LOG_SENTINEL_ATTR, None) == str(log_file):
        for h in root.handlers:
            h.setLevel(level)
        return logging.getLogger("TradingBot")

    fmt = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
    file_handler: Optional[RotatingFileHandler] = None
    for h in list(root.handlers):
        if isinstance(h, RotatingFileHandler) and getattr(h, "baseFilename", None) == str(log_file):
            file_handler = h
            break
    if file_handler is None:
        file_handler = RotatingFileHandler(
            str(log_file),
            maxBytes=max_size_mb * 1024 * 1024,
            backupCount=max_files,
            encoding="utf-8",
        )
        file_handler.setFormatter(fmt)
        root.addHandler(file_handler)
    file_handler.setLevel(level)

    has_console = any(isinstance(h, logging.StreamHandler) and not hasattr(h, "baseFilename") for h in root.handlers)
    if not has_console:
        sh = logging.StreamHandler()
        sh.setFormatter(fmt)
        sh.setLevel(level)
        root.addHandler(sh)

    lx = logging.getLogger("TradingBot")
    lx.handlers.clear()
    lx.propagate = True
    lx.setLevel(level)

    setattr(root, _LOG_SENTINEL_ATTR, str(log_file))
    lx.info("Logging configured: level=%s, file=%s", level_name, str(log_file))
    return lx


def log_error_with_stacktrace(message: str, error: Exception) -> None:
    logger.error("%s: %s", message, error, exc_info=True)

# -----------------------------------------------------------------------------
# Coercers
# -----------------------------------------------------------------------------
def _to_float(x: Any, default: float = 0.0) -> float:
    """
    Robust float coercer:
      - Accepts None, numeric strings with commas, dicts like {"usd": ...}
      - Returns `default` on parse error or NaN.
    """
    try:
        if x is None:
            return float(default)
        if isinstance(x, dict):
            x = x.get("usd")
            if x is None:
                return float(default)
        if isinstance(x, str):
            s = x.strip().replace(",", "").replace("$", "")
            if s == "":
                return float(default)
            x = s
        f = float(x)
        if f != f:
            return float(default)
        return f
    except (TypeError, ValueError):
        return float(default)


def _to_int(x: Any, default: int = 0) -> int:
    try:
        return int(_to_float(x, float(default)))
    except (TypeError, ValueError, OverflowError):
        return int(default)

# -----------------------------------------------------------------------------
# Backoff / Circuit-breaker helpers
# -----------------------------------------------------------------------------
async def backoff_sleep(attempt: int, base: float = 1.5, max_sleep: float = 120.0, jitter: bool = True) -> float:
    sleep = min(max_sleep, base * (2 ** max(0, attempt - 1)))
    if jitter:
        sleep = max(0.0, sleep * random.uniform(0.8, 1.25))
    sleep = max(0.0, float(sleep))
    await asyncio.sleep(sleep)
    return sleep


class CircuitBreaker429:
    def __init__(self, threshold: int = 5, cooldown_seconds: int = 60):
        self.threshold = int(threshold)
        self.cooldown_seconds = int(cooldown_seconds)
        self._count = 0
        self._last_trip_time: Optional[float] = None

    def record(self, is_429: bool) -> None:
        if is_429:
            self._count += 1
            if self._count >= self.threshold:
                self._last_trip_time = time.time()
        else:
            self._count = 0
            self._last_trip_time = None

    def is_open(self) -> bool:
        if self._last_trip_time is None:
            return False
        if (time.time() - self._last_trip_time) > self.cooldown_seconds:
            self._count = 0
            self._last_trip_time = None
            return False
        return True

    def remaining_cooldown(self) -> float:
        if self._last_trip_time is None:
            return 0.0
        return max(0.0, self.cooldown_seconds - (time.time() - self._last_trip_time))

    def reset(self) -> None:
        self._count = 0
        self._last_trip_time = None


def resolve_db_path(cfg: Optional[Dict[str, Any]]) -> str:
    raw = section(cfg, "database").get("path") or os.getenv("SNIPER_DB_PATH") or str(db_path())
    return os.path.abspath(os.path.expanduser(os.path.expandvars(str(raw))))
