"""
Opportunity scoring

Rule-based 0-100 score for observer-mode opportunities: competitor rank,
city population tier, service demand, competitive intensity and
impression volume.  Priority buckets are HIGH >= 80, MEDIUM >= 60,
LOW >= 40, IGNORE below.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Mapping, Tuple

from .models import Opportunity

logger = logging.getLogger(__name__)

PRIORITIES = ("HIGH", "MEDIUM", "LOW", "IGNORE")


@dataclass(frozen=True)
class ScoringWeights:
    position_top_3: int = 30
    position_top_5: int = 20
    position_top_10: int = 10
    population_tiers: Tuple[Tuple[int, int], ...] = (
        (1_000_000, 30),
        (500_000, 20),
        (100_000, 10),
        (50_000, 5),
    )
    high_demand_services: Tuple[str, ...] = ("plumbing", "electrical", "hvac")
    service_high_demand: int = 20
    competition_low: int = 15
    competition_medium: int = 10
    impression_tiers: Tuple[Tuple[int, int], ...] = ((500, 20), (200, 15), (100, 10))
    high_priority: int = 80
    medium_priority: int = 60
    low_priority: int = 40


DEFAULT_WEIGHTS = ScoringWeights()


def _population_weight(population: int, weights: ScoringWeights) -> int:
    for minimum, weight in weights.population_tiers:
        if population >= minimum:
            return weight
    return 0


def calculate_opportunity_score(
    opportunity: Opportunity,
    populations: Mapping[Tuple[str, str], int],
    weights: ScoringWeights = DEFAULT_WEIGHTS,
) -> int:
    score = 0

    position = opportunity.competitor_position
    if position:
        if position <= 3:
            score += weights.position_top_3
        elif position <= 5:
            score += weights.position_top_5
        elif position <= 10:
            score += weights.position_top_10

    population = populations.get((opportunity.city, opportunity.state))
    if population:
        score += _population_weight(population, weights)

    if opportunity.service in weights.high_demand_services:
        score += weights.service_high_demand

    if opportunity.competitor_count:
        if opportunity.competitor_count < 5:
            score += weights.competition_low
        elif opportunity.competitor_count < 10:
            score += weights.competition_medium

    if opportunity.impressions:
        for minimum, weight in weights.impression_tiers:
            if opportunity.impressions >= minimum:
                score += weight
                break

    return min(score, 100)


def priority_category(score: int, weights: ScoringWeights = DEFAULT_WEIGHTS) -> str:
    if score >= weights.high_priority:
        return "HIGH"
    if score >= weights.medium_priority:
        return "MEDIUM"
    if score >= weights.low_priority:
        return "LOW"
    return "IGNORE"


def score_opportunities(
    opportunities: Iterable[Opportunity],
    populations: Mapping[Tuple[str, str], int],
    weights: ScoringWeights = DEFAULT_WEIGHTS,
) -> List[Opportunity]:
    """Score, bucket and sort (highest first, ties by target key)."""
    scored = []
    for opp in opportunities:
        score = calculate_opportunity_score(opp, populations, weights)
        scored.append(replace(opp, score=score, priority=priority_category(score, weights)))
    scored.sort(key=lambda o: (-o.score, o.type, o.key))

    summary = summarize_priorities(scored)
    logger.info(
        "Scored %d opportunities: HIGH=%d MEDIUM=%d LOW=%d IGNORE=%d",
        len(scored),
        summary["HIGH"],
        summary["MEDIUM"],
        summary["LOW"],
        summary["IGNORE"],
    )
    return scored


def summarize_priorities(opportunities: Iterable[Opportunity]) -> Dict[str, int]:
    summary = {name: 0 for name in PRIORITIES}
    for opp in opportunities:
        summary[opp.priority] = summary.get(opp.priority, 0) + 1
    return summary


def filter_by_score(opportunities: Iterable[Opportunity], min_score: int) -> List[Opportunity]:
    return [opp for opp in opportunities if opp.score >= min_score]


def top_opportunities(opportunities: Iterable[Opportunity], limit: int = 10) -> List[Opportunity]:
    return [opp for opp in opportunities if opp.priority != "IGNORE"][: max(0, limit)]
