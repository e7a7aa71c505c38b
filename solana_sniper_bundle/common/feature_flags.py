# solana_sniper_bundle/common/feature_flags.py
import os

_SOURCES = ("dexscreener", "geckoterminal", "raydium")


def _env_bool(name: str, default: bool = False) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    v = str(v).strip().lower()
    return v in ("1", "true", "yes", "y", "on")


def is_source_enabled(cfg: dict, name: str) -> bool:
    """Discovery adapter switch. Env kill-switch wins over config."""
    if _env_bool(f"FORCE_DISABLE_{name.upper()}", False):
        return False
    return bool((cfg or {}).get("sources", {}).get(f"{name}_enabled", True))


def enabled_sources(cfg: dict) -> list:
    return [s for s in _SOURCES if is_source_enabled(cfg, s)]


def is_enabled_rugcheck(cfg: dict) -> bool:
    if _env_bool("FORCE_DISABLE_RUGCHECK", False):
        return False
    return bool((cfg or {}).get("rugcheck", {}).get("enabled", False))


def is_demo_mode(cfg: dict) -> bool:
    # SNIPER_DEMO_MODE=1 forces demo even if config says live
    if _env_bool("SNIPER_DEMO_MODE", False):
        return True
    return str((cfg or {}).get("bot", {}).get("mode", "demo")).lower() != "live"


def resolved_run_flags(cfg: dict) -> dict:
    demo = is_demo_mode(cfg)
    dry_run = _env_bool("DRY_RUN", False)
    return {
        "demo": demo,
        "dry_run": dry_run,
        "send_tx": (not demo) and (not dry_run),
        "sources": enabled_sources(cfg),
        "rugcheck": is_enabled_rugcheck(cfg),
    }
