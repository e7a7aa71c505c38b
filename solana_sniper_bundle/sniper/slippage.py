# solana_sniper_bundle/sniper/slippage.py
from __future__ import annotations

import math
from typing import Dict, Optional

BUY_BASE_BPS = 100
SELL_BASE_BPS = 150
MAX_SLIPPAGE_BPS = 5000

# (upper bound in USD, floor bps, label), evaluated top-down
LIQUIDITY_TIERS = (
    (500.0, 2000, "Very low liquidity (<$500)"),
    (1000.0, 1500, "Low liquidity (<$1000)"),
    (5000.0, 1000, "Moderate liquidity (<$5000)"),
    (10000.0, 500, "Decent liquidity (<$10000)"),
)

HIGH_PRICE_IMPACT_PCT = 5.0
VERY_HIGH_PRICE_IMPACT_PCT = 10.0

SLIPPAGE_RETRY_CONFIG = {
    "max_retries": 3,
    "base_delay_ms": 500,
    "max_delay_ms": 2000,
}


def calculate_dynamic_slippage(
    liquidity: Optional[float] = None,
    price_impact: float = 0.0,
    is_sell: bool = False,
    is_retry: bool = False,
    retry_count: int = 0,
) -> Dict[str, object]:
    """
    Slippage in bps from pool liquidity (USD) and quoted price impact (%).

    Liquidity-driven and impact-driven floors are combined with max(), never
    summed. Retries scale by 1 + 0.5 * retry_count up to MAX_SLIPPAGE_BPS.
    """
    bps = SELL_BASE_BPS if is_sell else BUY_BASE_BPS
    reason = "Default slippage"

    if liquidity is not None:
        for bound, floor_bps, label in LIQUIDITY_TIERS:
            if liquidity < bound:
                bps = max(bps, floor_bps)
                reason = label
                break

    impact = float(price_impact or 0.0)
    if impact >= VERY_HIGH_PRICE_IMPACT_PCT:
        bps = max(bps, 2000)
        reason = f"Very high price impact ({impact:.1f}%)"
    elif impact >= HIGH_PRICE_IMPACT_PCT:
        bps = max(bps, 1500)
        reason = f"High price impact ({impact:.1f}%)"

    if is_retry and retry_count > 0:
        bps = min(math.floor(bps * (1 + retry_count * 0.5)), MAX_SLIPPAGE_BPS)
        reason = f"Retry {retry_count}: Increased slippage"

    return {"slippage_bps": int(bps), "reason": reason}


def get_retry_delay(attempt: int) -> float:
    """Backoff before retry ``attempt`` (0-based), in seconds."""
    delay_ms = SLIPPAGE_RETRY_CONFIG["base_delay_ms"] * (2 ** max(0, attempt))
    return min(delay_ms, SLIPPAGE_RETRY_CONFIG["max_delay_ms"]) / 1000.0
