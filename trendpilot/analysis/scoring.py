"""Score models — turn percentage moves into trend strength and confidence.

Pure functions, no I/O.  The analyzer depends only on ``ScoreModel`` so a
different heuristic can be swapped in without touching the classification.
"""

from typing import Protocol, runtime_checkable


def clip(value: float, low: float = 0.0, high: float = 1.0) -> float:
    """Clamp *value* into ``[low, high]``."""
    return max(low, min(high, value))


@runtime_checkable
class ScoreModel(Protocol):
    """Interface for strength/confidence scoring."""

    def strength(self, price_change_pct: float, volume_change_pct: float) -> float:
        """Return trend strength in ``[0, 100]``."""
        ...

    def confidence(
        self,
        price_change_pct: float,
        volume_change_pct: float,
        strength: float,
        point_count: int,
    ) -> float:
        """Return confidence in ``[0, 100]``."""
        ...


class WeightedScoreModel:
    """Deterministic weighted-sum scoring.

    Strength::

        100 × (price_weight·clip(|pc| / scale) + volume_weight·clip(|vc| / scale))

    Confidence::

        0.4·clip(|pc| / 20)·100 + 0.2·clip(|vc| / 20)·100
        + 0.3·strength + 0.1·clip(n / 10)·100

    Args:
        price_weight: Weight of the price move in strength (default 0.7).
        volume_weight: Weight of the volume move in strength (default 0.3).
        strength_scale: Percent move that saturates a strength component
                        (the trend threshold, default 5).

    Raises:
        ValueError: If the weights do not sum to 1 or the scale is not positive.
    """

    CONFIDENCE_PRICE_WEIGHT = 0.4
    CONFIDENCE_VOLUME_WEIGHT = 0.2
    CONFIDENCE_STRENGTH_WEIGHT = 0.3
    CONFIDENCE_POINTS_WEIGHT = 0.1
    CONFIDENCE_MOVE_SCALE = 20.0
    CONFIDENCE_POINTS_SCALE = 10

    def __init__(
        self,
        price_weight: float = 0.7,
        volume_weight: float = 0.3,
        strength_scale: float = 5.0,
    ) -> None:
        if abs(price_weight + volume_weight - 1.0) > 1e-9:
            raise ValueError(
                f"weights must sum to 1, got {price_weight} + {volume_weight}"
            )
        if strength_scale <= 0:
            raise ValueError(f"strength_scale must be positive, got {strength_scale}")
        self.price_weight = price_weight
        self.volume_weight = volume_weight
        self.strength_scale = strength_scale

    def strength(self, price_change_pct: float, volume_change_pct: float) -> float:
        price_part = clip(abs(price_change_pct) / self.strength_scale)
        volume_part = clip(abs(volume_change_pct) / self.strength_scale)
        score = 100.0 * (self.price_weight * price_part + self.volume_weight * volume_part)
        return clip(score, 0.0, 100.0)

    def confidence(
        self,
        price_change_pct: float,
        volume_change_pct: float,
        strength: float,
        point_count: int,
    ) -> float:
        price_score = clip(abs(price_change_pct) / self.CONFIDENCE_MOVE_SCALE) * 100
        volume_score = clip(abs(volume_change_pct) / self.CONFIDENCE_MOVE_SCALE) * 100
        points_score = clip(point_count / self.CONFIDENCE_POINTS_SCALE) * 100
        score = (
            self.CONFIDENCE_PRICE_WEIGHT * price_score
            + self.CONFIDENCE_VOLUME_WEIGHT * volume_score
            + self.CONFIDENCE_STRENGTH_WEIGHT * clip(strength, 0.0, 100.0)
            + self.CONFIDENCE_POINTS_WEIGHT * points_score
        )
        return clip(score, 0.0, 100.0)
