"""
Quote option ranking.

A RankingStrategy scores options and returns them best first. Scores are
in [0, 1], higher is better. Ties go to the lower quoted amount and then
to the option id so the order is deterministic.
"""
from typing import Dict, List, Optional
import logging

from shipquote.schemas.quote import Confidence, OptionTag, QuoteOption

logger = logging.getLogger(__name__)

CONFIDENCE_SCORES: Dict[Confidence, float] = {
    Confidence.HIGH: 1.0,
    Confidence.MEDIUM: 0.6,
    Confidence.LOW: 0.3,
}

# Assumed for carriers without delivery performance history
DEFAULT_RELIABILITY = 0.7
# Stand-in ETA for services without a published transit time
UNKNOWN_ETA_DAYS = 999


class RankingStrategy:
    """Base strategy; subclasses implement score()."""

    name = "base"

    def score(self, option: QuoteOption, options: List[QuoteOption]) -> float:
        raise NotImplementedError

    def rank(self, options: List[QuoteOption]) -> List[QuoteOption]:
        """Score, order and tag options. Returns new QuoteOption instances."""
        if not options:
            return []

        scored = [
            option.model_copy(update={
                "rank_score": round(self.score(option, options), 4),
                "tags": [],
                "recommendation_reason": None,
            })
            for option in options
        ]
        scored.sort(key=lambda o: (-o.rank_score, o.quoted_amount, o.option_id))
        return apply_tags(scored)


class PriceMarginRankingStrategy(RankingStrategy):
    """
    Blend of normalized sell price (lower is better), estimated margin and
    pricing confidence.
    """

    name = "price_margin"

    def __init__(
        self,
        price_weight: float = 0.6,
        margin_weight: float = 0.25,
        confidence_weight: float = 0.15,
    ):
        self.price_weight = price_weight
        self.margin_weight = margin_weight
        self.confidence_weight = confidence_weight

    def score(self, option: QuoteOption, options: List[QuoteOption]) -> float:
        cheapest = min(o.quoted_amount for o in options)
        price_score = float(cheapest / option.quoted_amount) if option.quoted_amount > 0 else 1.0

        best_margin = max(o.estimated_margin_percent for o in options)
        if best_margin > 0 and option.estimated_margin_percent > 0:
            margin_score = float(option.estimated_margin_percent / best_margin)
        else:
            margin_score = 0.0

        return (
            price_score * self.price_weight
            + margin_score * self.margin_weight
            + CONFIDENCE_SCORES[option.confidence] * self.confidence_weight
        )


class BalancedRankingStrategy(RankingStrategy):
    """Price, delivery speed and carrier reliability (40/30/30)."""

    name = "balanced"

    def __init__(
        self,
        price_weight: float = 0.4,
        speed_weight: float = 0.3,
        reliability_weight: float = 0.3,
    ):
        self.price_weight = price_weight
        self.speed_weight = speed_weight
        self.reliability_weight = reliability_weight

    def score(self, option: QuoteOption, options: List[QuoteOption]) -> float:
        cheapest = min(o.quoted_amount for o in options)
        fastest = min(_eta(o) for o in options)

        price_score = float(cheapest / option.quoted_amount) if option.quoted_amount > 0 else 1.0
        speed_score = fastest / _eta(option) if _eta(option) > 0 else 1.0
        reliability = option.reliability if option.reliability is not None else DEFAULT_RELIABILITY

        return (
            price_score * self.price_weight
            + speed_score * self.speed_weight
            + reliability * self.reliability_weight
        )


def _eta(option: QuoteOption) -> int:
    return option.eta_days if option.eta_days is not None else UNKNOWN_ETA_DAYS


def apply_tags(ranked: List[QuoteOption]) -> List[QuoteOption]:
    """Tag RECOMMENDED (top of the ranking), CHEAPEST and FASTEST in place."""
    top = ranked[0]
    cheapest = min(ranked, key=lambda o: o.quoted_amount)
    with_eta = [o for o in ranked if o.eta_days is not None]
    fastest = min(with_eta, key=lambda o: o.eta_days) if with_eta else None

    for option in ranked:
        if option is top:
            option.tags.append(OptionTag.RECOMMENDED)
        if option is cheapest:
            option.tags.append(OptionTag.CHEAPEST)
        if option is fastest:
            option.tags.append(OptionTag.FASTEST)

    top.recommendation_reason = recommendation_reason(
        top, is_cheapest=top is cheapest, is_fastest=top is fastest
    )
    return ranked


def recommendation_reason(option: QuoteOption, is_cheapest: bool, is_fastest: bool) -> str:
    reliability = option.reliability if option.reliability is not None else DEFAULT_RELIABILITY
    if is_cheapest and reliability > 0.9:
        return "Best price with reliable delivery"
    if is_fastest:
        return "Fastest delivery option"
    if reliability > 0.95:
        return "Most reliable for this route"
    return "Best overall balance"


STRATEGIES = {
    PriceMarginRankingStrategy.name: PriceMarginRankingStrategy,
    BalancedRankingStrategy.name: BalancedRankingStrategy,
}


def get_ranking_strategy(name: Optional[str] = None) -> RankingStrategy:
    """Strategy by name; unknown names fall back to price_margin with a warning."""
    if name is None:
        return PriceMarginRankingStrategy()
    strategy_class = STRATEGIES.get(name.lower())
    if strategy_class is None:
        logger.warning(f"Unknown ranking strategy '{name}', using price_margin")
        return PriceMarginRankingStrategy()
    return strategy_class()
