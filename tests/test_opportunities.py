from __future__ import annotations

from seo_autopilot.ingestion import city_populations
from seo_autopilot.models import Opportunity
from seo_autopilot.opportunities import (
    calculate_opportunity_score,
    filter_by_score,
    priority_category,
    score_opportunities,
    summarize_priorities,
    top_opportunities,
)

POPULATIONS = city_populations()


def _gap(service="plumbing", city="Houston", state="TX", **kw):
    return Opportunity(type=kw.pop("type", "CITY_GAP"), service=service, city=city, state=state, **kw)


def test_score_components():
    # 30 (rank 2) + 30 (2.3M people) + 20 (high demand) + 15 (3 competitors)
    assert calculate_opportunity_score(_gap(competitor_position=2, competitor_count=3), POPULATIONS) == 95
    # 10 (rank 7) + 20 (715k) + 20 + 10 (7 competitors)
    denver = _gap("electrical", "Denver", "CO", competitor_position=7, competitor_count=7)
    assert calculate_opportunity_score(denver, POPULATIONS) == 60
    assert calculate_opportunity_score(_gap("roofing", "Nowhere", "ZZ", competitor_position=15), POPULATIONS) == 0


def test_score_is_capped_at_100():
    opp = _gap(competitor_position=1, competitor_count=1, impressions=600)
    assert calculate_opportunity_score(opp, POPULATIONS) == 100


def test_priority_buckets():
    assert priority_category(80) == "HIGH"
    assert priority_category(79) == "MEDIUM"
    assert priority_category(60) == "MEDIUM"
    assert priority_category(40) == "LOW"
    assert priority_category(39) == "IGNORE"


def test_score_opportunities_sorts_and_buckets():
    opps = [
        _gap("roofing", "Nowhere", "ZZ", competitor_position=15),
        _gap("electrical", "Denver", "CO", competitor_position=7, competitor_count=7),
        _gap(competitor_position=2, competitor_count=3),
    ]

    scored = score_opportunities(opps, POPULATIONS)

    assert [(o.key, o.score, o.priority) for o in scored] == [
        ("plumbing:houston", 95, "HIGH"),
        ("electrical:denver", 60, "MEDIUM"),
        ("roofing:nowhere", 0, "IGNORE"),
    ]
    assert opps[0].score == 0  # inputs are not mutated
    assert summarize_priorities(scored) == {"HIGH": 1, "MEDIUM": 1, "LOW": 0, "IGNORE": 1}
    assert [o.key for o in filter_by_score(scored, 60)] == ["plumbing:houston", "electrical:denver"]
    assert [o.key for o in top_opportunities(scored, limit=1)] == ["plumbing:houston"]
    assert all(o.priority != "IGNORE" for o in top_opportunities(scored))
