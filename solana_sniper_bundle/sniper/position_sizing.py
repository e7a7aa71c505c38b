# solana_sniper_bundle/sniper/position_sizing.py
"""
Trade size from the pre-execution gate score.

The score here is a *gate* score: 0-100, higher is safer. Callers holding a
risk score (higher is riskier) pass ``100 - risk_score``.
"""
from __future__ import annotations

from typing import Optional

from solana_sniper_bundle.sniper.models import PositionSizeResult

STRONG_AUTO = "STRONG_AUTO"
AUTO = "AUTO"
REDUCED_SIZE = "REDUCED_SIZE"
MANUAL_ONLY = "MANUAL_ONLY"
BLOCKED = "BLOCKED"

DEFAULT_MIN_POSITION_SOL = 0.005


def position_size_multiplier(score: float) -> float:
    if score >= 90:
        return 1.0
    if score >= 80:
        return 0.75
    if score >= 70:
        return 0.5
    if score >= 60:
        return 0.3
    return 0.0


def classify_score(score: float) -> str:
    if score >= 90:
        return STRONG_AUTO
    if score >= 75:
        return AUTO
    if score >= 60:
        return REDUCED_SIZE
    if score >= 50:
        return MANUAL_ONLY
    return BLOCKED


def _reason(trade_class: str, multiplier: float, score: float) -> str:
    pct = round(multiplier * 100)
    if trade_class == STRONG_AUTO:
        return f"Full size, excellent signal (score: {score:g})"
    if trade_class == AUTO:
        return f"Full size, good signal (score: {score:g})"
    if trade_class == REDUCED_SIZE:
        return f"Reduced to {pct}%, moderate risk (score: {score:g})"
    if trade_class == MANUAL_ONLY:
        return f"Reduced to {pct}%, high risk, manual only (score: {score:g})"
    return f"Blocked, risk score too low (score: {score:g})"


def compute_position_size(
    configured_amount_sol: float,
    risk_score: float,
    trade_class: Optional[str] = None,
    max_position_sol: Optional[float] = None,
    min_position_sol: float = DEFAULT_MIN_POSITION_SOL,
) -> PositionSizeResult:
    trade_class = trade_class or classify_score(risk_score)
    multiplier = position_size_multiplier(risk_score)

    final = float(configured_amount_sol) * multiplier
    # floor only applies to trades that are allowed at all
    if multiplier > 0 and final < min_position_sol:
        final = float(min_position_sol)
    # an explicit cap, including 0, beats the floor
    if max_position_sol is not None and final > max_position_sol:
        final = max(0.0, float(max_position_sol))
    if multiplier == 0:
        final = 0.0

    reduced_by = round((1 - multiplier) * 100) if multiplier > 0 else 100

    return PositionSizeResult(
        final_amount_sol=round(final * 1e9) / 1e9,
        multiplier=multiplier,
        configured_amount_sol=float(configured_amount_sol),
        risk_score=float(risk_score),
        trade_class=trade_class,
        reduced_by=int(reduced_by),
        reason=_reason(trade_class, multiplier, float(risk_score)),
    )


def is_trade_allowed(score: float, execution_mode: str = "auto") -> bool:
    if execution_mode == "auto":
        return score >= 60
    return score >= 50
