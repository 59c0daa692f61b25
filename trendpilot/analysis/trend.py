"""Trend analysis — SMA crossover direction, strength, reversal and confidence.

Provides:
- ``calculate_sma()``: mean of the last *period* prices, shrinking the window
  when the history is shorter than the period.
- ``TrendAnalyzer.analyze()``: a pure function of a history snapshot.  The same
  snapshot always yields the same ``TrendAnalysis``.
"""

from dataclasses import asdict, dataclass
from typing import Literal, Optional, Sequence

from trendpilot.analysis.scoring import ScoreModel, WeightedScoreModel
from trendpilot.config import Config
from trendpilot.market.models import PricePoint

TrendDirection = Literal["BULLISH", "BEARISH", "SIDEWAYS"]
BULLISH: TrendDirection = "BULLISH"
BEARISH: TrendDirection = "BEARISH"
SIDEWAYS: TrendDirection = "SIDEWAYS"

SMA_FAST_PERIOD = 20
SMA_SLOW_PERIOD = 50
REVERSAL_LOOKBACK = 3


@dataclass(frozen=True)
class TrendAnalysis:
    """Snapshot of an instrument's trend.

    Percentages, strength and confidence are rounded to 2 decimals; the SMAs
    keep full precision.
    """

    direction: TrendDirection
    strength: float
    duration_ms: int
    price_change_pct: float
    volume_change_pct: float
    sma20: float
    sma50: float
    is_reversal: bool
    confidence: float
    point_count: int

    def to_dict(self) -> dict:
        return asdict(self)


def calculate_sma(history: Sequence[PricePoint], period: int) -> float:
    """Arithmetic mean of the last ``min(period, len(history))`` prices.

    Raises ``ValueError`` on an empty history or non-positive period.
    """
    if period <= 0:
        raise ValueError(f"period must be positive, got {period}")
    if not history:
        raise ValueError("Need at least 1 point for an SMA")
    window = history[-period:]
    return sum(p.price for p in window) / len(window)


def percent_change(start: float, end: float) -> float:
    """``(end - start) / start × 100``, or 0 when *start* is 0."""
    if start == 0:
        return 0.0
    return (end - start) / start * 100


class TrendAnalyzer:
    """Classifies the trend of a price/volume history.

    Args:
        trend_threshold_pct: Minimum whole-window move for a directional
                             trend (default 5).
        reversal_threshold_pct: Short-horizon counter-move that flags a
                                reversal (default 10).
        score_model: Strength/confidence model.  Defaults to
                     ``WeightedScoreModel`` scaled by the trend threshold.
    """

    def __init__(
        self,
        trend_threshold_pct: float = 5.0,
        reversal_threshold_pct: float = 10.0,
        score_model: Optional[ScoreModel] = None,
    ) -> None:
        self.trend_threshold_pct = trend_threshold_pct
        self.reversal_threshold_pct = reversal_threshold_pct
        self.score_model = score_model or WeightedScoreModel(
            strength_scale=trend_threshold_pct,
        )

    @classmethod
    def from_config(cls, config: Config) -> "TrendAnalyzer":
        return cls(
            trend_threshold_pct=config.trend_threshold_pct,
            reversal_threshold_pct=config.reversal_threshold_pct,
            score_model=WeightedScoreModel(
                price_weight=config.price_weight,
                volume_weight=config.volume_weight,
                strength_scale=config.trend_threshold_pct,
            ),
        )

    def analyze(self, history: Sequence[PricePoint]) -> Optional[TrendAnalysis]:
        """Analyze *history* (oldest first).  ``None`` with fewer than 2 points."""
        if len(history) < 2:
            return None

        first = history[0]
        last = history[-1]

        sma20 = calculate_sma(history, SMA_FAST_PERIOD)
        sma50 = calculate_sma(history, SMA_SLOW_PERIOD)
        price_change = percent_change(first.price, last.price)
        volume_change = percent_change(first.volume_24h, last.volume_24h)

        direction = self.classify(price_change, sma20, sma50)
        strength = self.score_model.strength(price_change, volume_change)
        is_reversal = self.detect_reversal(history, direction)
        confidence = self.score_model.confidence(
            price_change, volume_change, strength, len(history),
        )
        duration_ms = int((last.timestamp - first.timestamp).total_seconds() * 1000)

        return TrendAnalysis(
            direction=direction,
            strength=round(strength, 2),
            duration_ms=duration_ms,
            price_change_pct=round(price_change, 2),
            volume_change_pct=round(volume_change, 2),
            sma20=sma20,
            sma50=sma50,
            is_reversal=is_reversal,
            confidence=round(confidence, 2),
            point_count=len(history),
        )

    def classify(self, price_change_pct: float, sma20: float, sma50: float) -> TrendDirection:
        """BULLISH/BEARISH need both the whole-window move and the SMA order."""
        if price_change_pct > self.trend_threshold_pct and sma20 > sma50:
            return BULLISH
        if price_change_pct < -self.trend_threshold_pct and sma20 < sma50:
            return BEARISH
        return SIDEWAYS

    def detect_reversal(
        self,
        history: Sequence[PricePoint],
        direction: TrendDirection,
    ) -> bool:
        """Flag a short-horizon move against *direction*.

        Uses only the last three points; shorter histories never reverse.
        """
        if len(history) < REVERSAL_LOOKBACK:
            return False
        recent = history[-REVERSAL_LOOKBACK:]
        recent_change = percent_change(recent[0].price, recent[-1].price)
        if direction == BULLISH:
            return recent_change < -self.reversal_threshold_pct
        if direction == BEARISH:
            return recent_change > self.reversal_threshold_pct
        return False
