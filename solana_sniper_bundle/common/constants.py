# solana_sniper_bundle/common/constants.py
from __future__ import annotations

import os
import platform
from pathlib import Path
from typing import Final, Optional

__all__ = [
    "APP_NAME",
    "SOL_MINT",
    "USDC_MINT",
    "LAMPORTS_PER_SOL",
    "BASE_MINTS",
    "local_appdata_dir",
    "appdata_dir",
    "logs_dir",
    "config_path",
    "env_path",
    "db_path",
    "ensure_app_dirs",
]

# -----------------------------------------------------------------------------
# App naming
# -----------------------------------------------------------------------------
APP_NAME: Final[str] = "SOLOSniper"

# -----------------------------------------------------------------------------
# Chain constants
# -----------------------------------------------------------------------------
SOL_MINT: Final[str] = "So11111111111111111111111111111111111111112"
USDC_MINT: Final[str] = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
BASE_MINTS: Final[frozenset] = frozenset({SOL_MINT, USDC_MINT})
LAMPORTS_PER_SOL: Final[int] = 1_000_000_000

# -----------------------------------------------------------------------------
# Platform-aware base dirs
# -----------------------------------------------------------------------------
def _windows_local_appdata() -> Optional[Path]:
    """Return Windows LocalAppData (LOCALAPPDATA, then APPDATA), or None."""
    val = os.getenv("LOCALAPPDATA") or os.getenv("APPDATA")
    if not val:
        return None
    try:
        p = Path(val).expanduser()
        if p.exists() or p.parent.exists():
            return p
    except Exception:
        pass
    return None


def local_appdata_dir() -> Path:
    r"""
    Cross-platform "local app data" root for this user.

    - Windows:  %LOCALAPPDATA%
    - macOS:    ~/Library/Application Support
    - Linux:    $XDG_DATA_HOME or ~/.local/share
    """
    override = os.getenv("SNIPER_APPDATA_DIR")
    if override:
        return Path(override).expanduser()
    system = platform.system().lower()
    if system.startswith("win"):
        return _windows_local_appdata() or Path.home()
    if system == "darwin":
        return Path.home() / "Library" / "Application Support"
    xdg = os.getenv("XDG_DATA_HOME")
    return Path(xdg).expanduser() if xdg else (Path.home() / ".local" / "share")


def appdata_dir() -> Path:
    return local_appdata_dir() / APP_NAME


def logs_dir() -> Path:
    """Directory where rotating logs are stored."""
    return appdata_dir() / "logs"


def config_path() -> Path:
    return appdata_dir() / "config.yaml"


def env_path() -> Path:
    return appdata_dir() / ".env"


def db_path() -> Path:
    """Default SQLite DB (token states, positions, payment ledger)."""
    return appdata_dir() / "sniper.sqlite3"


def ensure_app_dirs() -> None:
    """
    Create the app data hierarchy if missing. Safe to call multiple times.
    Never raises on filesystem errors.
    """
    try:
        appdata_dir().mkdir(parents=True, exist_ok=True)
        logs_dir().mkdir(parents=True, exist_ok=True)
    except Exception:
        pass
