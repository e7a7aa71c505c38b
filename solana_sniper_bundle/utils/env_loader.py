# solana_sniper_bundle/utils/env_loader.py
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from solana_sniper_bundle.common.constants import env_path

logger = logging.getLogger("TradingBot")

_LOADED: Optional[Path] = None


def _candidate_env_paths() -> List[Path]:
    return [
        env_path(),            # user appdata
        Path.cwd() / ".env",   # project CWD (dev)
    ]


def load_env_first_found(override: bool = False) -> Optional[Path]:
    """
    Priority:
      1) DOTENV_PATH env var (if set and exists)
      2) Per-user app data .env
      3) CWD .env
    Returns the Path loaded or None. Repeated calls are no-ops.
    """
    global _LOADED
    if _LOADED is not None:
        return _LOADED

    explicit = os.environ.get("DOTENV_PATH")
    if explicit:
        p = Path(explicit)
        if p.exists():
            load_dotenv(dotenv_path=str(p), override=override)
            logger.info("Loaded .env from DOTENV_PATH: %s", p)
            _LOADED = p
            return p
        logger.warning("DOTENV_PATH set but file not found: %s", p)

    for p in _candidate_env_paths():
        try:
            if p.exists():
                load_dotenv(dotenv_path=str(p), override=override)
                logger.info("Loaded .env from %s", p)
                _LOADED = p
                return p
        except Exception:
            logger.exception("Error loading .env from %s", p)

    logger.debug("No .env file found by loader.")
    return None


def get_active_private_key() -> Optional[str]:
    v = os.environ.get("SOLANA_PRIVATE_KEY") or os.environ.get("WALLET_PRIVATE_KEY")
    if not v:
        return None
    v = v.strip().strip('"').strip("'")
    return v or None


__all__ = ["load_env_first_found", "get_active_private_key"]
