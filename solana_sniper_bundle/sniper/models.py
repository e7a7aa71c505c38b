# solana_sniper_bundle/sniper/models.py
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class TokenState(str, Enum):
    NEW = "NEW"
    PENDING = "PENDING"
    TRADEABLE = "TRADEABLE"
    TRADED = "TRADED"
    REJECTED = "REJECTED"

    @property
    def is_terminal(self) -> bool:
        return self in (TokenState.TRADED, TokenState.REJECTED)


@dataclass
class DiscoveredPool:
    address: str
    token_mint: str
    token_name: str
    token_symbol: str
    liquidity: float          # SOL-equivalent
    liquidity_usd: float
    source: str               # dexscreener | geckoterminal | raydium
    dex_id: str               # raydium | orca | meteora
    created_at: str
    price_usd: float = 0.0
    volume_24h: float = 0.0
    lp_mint: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TokenStatus:
    stage: str = "discovery"          # discovery | tradability
    jupiter_indexed: Optional[bool] = None
    lp_verified: Optional[bool] = None


@dataclass
class TradableToken:
    address: str
    name: str
    symbol: str
    liquidity: float
    liquidity_usd: float = 0.0
    source: str = ""
    dex_id: str = ""
    pair_address: str = ""
    created_at: str = ""
    price_usd: float = 0.0
    volume_24h: float = 0.0
    chain: str = "solana"
    liquidity_locked: bool = False
    lock_percentage: Optional[float] = None
    price_change_24h: float = 0.0
    holders: int = 0
    early_buyers: int = 0
    buyer_position: Optional[int] = None
    risk_score: int = 50
    is_tradeable: bool = False
    can_buy: bool = False
    can_sell: bool = False
    freeze_authority: Optional[str] = None
    mint_authority: Optional[str] = None
    lp_mint: Optional[str] = None
    price_impact: Optional[float] = None
    safety_reasons: List[str] = field(default_factory=list)
    token_status: TokenStatus = field(default_factory=TokenStatus)

    @classmethod
    def from_pool(cls, pool: DiscoveredPool) -> "TradableToken":
        return cls(
            address=pool.token_mint,
            name=pool.token_name,
            symbol=pool.token_symbol,
            liquidity=pool.liquidity,
            liquidity_usd=pool.liquidity_usd,
            source=pool.source,
            dex_id=pool.dex_id,
            pair_address=pool.address,
            created_at=pool.created_at,
            price_usd=pool.price_usd,
            volume_24h=pool.volume_24h,
            lp_mint=pool.lp_mint,
        )

    @property
    def auto_tradeable(self) -> bool:
        # a missing sell route is a hard gate regardless of score
        return self.is_tradeable and self.can_buy and self.can_sell

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PendingToken:
    address: str
    symbol: str
    name: str
    reason: str
    liquidity: float = 0.0
    source: str = ""


@dataclass
class RejectedToken:
    address: str
    symbol: str
    reason: str


@dataclass
class QuoteProbe:
    success: bool
    has_route: bool
    latency_ms: int
    out_amount: Optional[str] = None
    price_impact: Optional[float] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @property
    def confirmed_no_route(self) -> bool:
        return self.success and not self.has_route


@dataclass
class TradeQuote:
    input_amount: int
    output_amount: int
    input_amount_decimal: float
    output_amount_decimal: float
    price_impact_pct: float
    slippage_bps: int
    route: Optional[str] = None

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "TradeQuote":
        return cls(
            input_amount=int(d.get("inputAmount") or d.get("input_amount") or 0),
            output_amount=int(d.get("outputAmount") or d.get("output_amount") or 0),
            input_amount_decimal=float(d.get("inputAmountDecimal") or d.get("input_amount_decimal") or 0.0),
            output_amount_decimal=float(d.get("outputAmountDecimal") or d.get("output_amount_decimal") or 0.0),
            price_impact_pct=float(d.get("priceImpactPct") or d.get("price_impact_pct") or 0.0),
            slippage_bps=int(d.get("slippageBps") or d.get("slippage_bps") or 0),
            route=d.get("route"),
        )


@dataclass
class TradeParams:
    input_mint: str
    output_mint: str
    amount: int                       # smallest unit (lamports for SOL)
    slippage_bps: Optional[int] = None
    priority_level: str = "medium"    # low | medium | high | veryHigh
    token_symbol: Optional[str] = None
    token_name: Optional[str] = None
    profit_take_percent: Optional[float] = None
    stop_loss_percent: Optional[float] = None


@dataclass
class TradeResult:
    success: bool
    signature: Optional[str] = None
    position_id: Optional[str] = None
    quote: Optional[TradeQuote] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    retry_count: int = 0
    explorer_url: Optional[str] = None


@dataclass
class SignResult:
    signature: str
    success: bool
    error: Optional[str] = None


@dataclass
class LpHolder:
    address: str
    owner: str
    balance: float
    percentage: float
    is_burned: bool
    is_locked: bool


@dataclass
class LpVerificationResult:
    is_safe: bool
    lp_locked: bool = False
    lp_burned_percent: float = 0.0
    lp_locked_percent: float = 0.0
    creator_lp_percent: float = 0.0
    total_supply: float = 0.0
    mint_authority: Optional[str] = None
    freeze_authority: Optional[str] = None
    lp_mint_authority_exists: bool = False
    lp_freeze_authority_exists: bool = False
    lp_supply_fully_secured: bool = False
    hard_block_reason: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    top_holders: List[LpHolder] = field(default_factory=list)


@dataclass
class PositionSizeResult:
    final_amount_sol: float
    multiplier: float
    configured_amount_sol: float
    risk_score: float
    trade_class: str
    reduced_by: int
    reason: str


@dataclass
class PipelineStats:
    discovered: int = 0
    total: int = 0
    tradeable: int = 0
    pending: int = 0
    rejected: int = 0
    filtered: int = 0

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]], discovered: int, tradeable: int) -> "PipelineStats":
        d = d or {}
        disc = int(d.get("discovered", discovered) or discovered)
        trad = int(d.get("tradeable", tradeable) or tradeable)
        return cls(
            discovered=disc,
            total=int(d.get("total", disc) or disc),
            tradeable=trad,
            pending=int(d.get("pending", 0) or 0),
            rejected=int(d.get("rejected", 0) or 0),
            filtered=int(d.get("filtered", max(0, disc - trad))),
        )
