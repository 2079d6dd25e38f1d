from __future__ import annotations

import json
from unittest.mock import MagicMock, patch

import pytest
import requests

from seo_autopilot.errors import IngestionError
from seo_autopilot.ingestion import (
    CITY_DATA,
    HttpSignalSource,
    JsonlSignalSource,
    MockCompetitorSource,
    StaticSignalSource,
    display_city,
    fetch_signals,
    find_market_gaps,
    find_position_opportunities,
    find_service_gaps,
    ingest_signals,
    parse_query_for_service_city,
    records_from_rows,
)
from seo_autopilot.models import ExistingState, SignalRecord
from seo_autopilot.rate_limiter import RateLimiter
from seo_autopilot.thresholds import RateLimit


@pytest.mark.parametrize(
    "query,expected",
    [
        ("emergency plumber in san diego ca", ("plumbing", "san-diego", "ca")),
        ("best electrician in austin", ("electrical", "austin", None)),
        ("air conditioning repair", ("hvac", None, None)),
        ("dog walker in denver", (None, "denver", None)),
    ],
)
def test_parse_query_for_service_city(query, expected):
    assert parse_query_for_service_city(query) == expected


def test_records_from_rows_fills_from_query_and_skips_bad_rows():
    rows = [
        {"query": "emergency plumber in san diego ca", "impressions": 150, "clicks": 3, "position": 12},
        {"service": "plumbing"},
        "not-a-row",
        {"service": "hvac", "city": "Denver", "impressions": "40", "clicks": 1, "position": 9.5},
    ]

    records = records_from_rows(rows, source="test")

    assert [r.key for r in records] == ["plumbing:san-diego", "hvac:denver"]
    assert records[0].state == "CA"
    assert records[1].impressions == 40


def test_jsonl_source_reads_rows(tmp_path):
    path = tmp_path / "signals.jsonl"
    path.write_text(
        json.dumps({"service": "plumbing", "location": "Austin", "impressions": 150, "clicks": 5, "position": 12})
        + "\n{broken\n"
    )

    records = JsonlSignalSource(path).fetch()

    assert [r.key for r in records] == ["plumbing:austin"]


def test_json_document_with_rows_key(tmp_path):
    path = tmp_path / "signals.json"
    path.write_text(json.dumps({"rows": [{"service": "hvac", "location": "Denver", "position": 4}]}))

    assert [r.key for r in JsonlSignalSource(path).fetch()] == ["hvac:denver"]


def test_failed_sources_degrade_to_empty(tmp_path):
    good = StaticSignalSource([SignalRecord("plumbing", "Austin", 150, 5, 12.0)])
    missing = JsonlSignalSource(tmp_path / "absent.jsonl")
    scalar = tmp_path / "scalar.yaml"
    scalar.write_text("just a string")

    records = fetch_signals([missing, JsonlSignalSource(scalar), good])

    assert [r.key for r in records] == ["plumbing:austin"]
    with pytest.raises(IngestionError):
        missing.fetch()


def test_http_source_parses_rows():
    resp = MagicMock()
    resp.raise_for_status.return_value = None
    resp.json.return_value = {"data": [{"service": "plumbing", "location": "Dallas", "impressions": 300}]}

    with patch("seo_autopilot.ingestion.requests.get", return_value=resp) as get:
        records = HttpSignalSource("https://gsc.example/rows", api_key="t").fetch()

    assert [r.key for r in records] == ["plumbing:dallas"]
    assert get.call_args.kwargs["headers"]["Authorization"] == "Bearer t"


def test_http_source_failure_is_ingestion_error():
    with patch(
        "seo_autopilot.ingestion.requests.get",
        side_effect=requests.exceptions.ConnectionError("refused"),
    ):
        source = HttpSignalSource("https://gsc.example/rows")
        with pytest.raises(IngestionError, match="Signal fetch failed"):
            source.fetch()
        assert fetch_signals([source]) == []


def test_mock_competitors_are_deterministic():
    first = MockCompetitorSource(["plumbing", "electrical"], clock_ts=0.0).fetch()
    second = MockCompetitorSource(["plumbing", "electrical"], clock_ts=0.0).fetch()

    assert first == second
    assert first
    for row in first:
        assert 1 <= row["position"] <= 20
        assert row["state"] == row["state"].upper()


def test_mock_competitors_stop_at_crawl_limit(clock):
    limiter = RateLimiter({"crawl": RateLimit(per_hour=2)}, clock=clock)
    source = MockCompetitorSource(["plumbing"], presence=1.0, rate_limiter=limiter, clock_ts=clock.now)

    rows = source.fetch()

    assert {row["city"] for row in rows} == {CITY_DATA[0].name, CITY_DATA[1].name}
    assert limiter.usage("crawl")["hourly"] == 2


def _ranking(competitor, service, city, state, position):
    return {"competitor": competitor, "service": service, "city": city, "state": state, "position": position}


def test_market_gaps_skip_existing_pages_and_keep_best_rank():
    rankings = [
        _ranking("yelp", "plumbing", "Dallas", "TX", 8),
        _ranking("angi", "plumbing", "Dallas", "TX", 2),
        _ranking("angi", "plumbing", "Austin", "TX", 1),
        _ranking("yelp", "hvac", "Denver", "CO", 25),
    ]
    existing = ExistingState.from_keys({"plumbing:Austin"})

    gaps = find_market_gaps(rankings, existing, site_name="Acme")

    assert len(gaps) == 1
    gap = gaps[0]
    assert (gap.type, gap.key, gap.state) == ("CITY_GAP", "plumbing:dallas", "TX")
    assert gap.competitor == "angi"
    assert gap.competitor_count == 2
    assert gap.reason == "angi ranks at position 2, Acme has no page"


def test_service_gaps_only_for_unoffered_services():
    rankings = [
        _ranking("yelp", "roofing", "Austin", "TX", 3),
        _ranking("angi", "plumbing", "Austin", "TX", 1),
    ]

    gaps = find_service_gaps(rankings, {"plumbing"}, site_name="Acme")

    assert [(g.type, g.key) for g in gaps] == [("SERVICE_GAP", "roofing:austin")]


def test_position_opportunities_resolve_state():
    signals = [
        SignalRecord("plumbing", "Austin", 150, 3, 12.0),
        SignalRecord("plumbing", "Dallas", 90, 3, 12.0),
        SignalRecord("plumbing", "Houston", 500, 30, 4.0),
    ]

    found = find_position_opportunities(signals)

    assert [(o.key, o.state, o.current_position) for o in found] == [("plumbing:austin", "TX", 12.0)]


def test_ingest_signals_names_failed_sources(tmp_path):
    good = StaticSignalSource([SignalRecord("plumbing", "Austin", 150, 5, 12.0)])
    missing = JsonlSignalSource(tmp_path / "absent.jsonl")

    result = ingest_signals([good, missing])

    assert [r.key for r in result.records] == ["plumbing:austin"]
    assert result.failed_sources == (missing.name,)
    assert result.degraded is True
    assert ingest_signals([good]).degraded is False


def test_query_cities_get_display_names():
    records = records_from_rows(
        [
            {"query": "plumber in las vegas nv", "impressions": 120},
            {"query": "electrician in boise", "impressions": 120},
        ]
    )

    assert [(r.location, r.state, r.key) for r in records] == [
        ("Las Vegas", "NV", "plumbing:las-vegas"),
        ("Boise", None, "electrical:boise"),
    ]
    assert display_city("san-diego") == "San Diego"


def test_market_gaps_match_existing_pages_in_any_spelling():
    rankings = [
        _ranking("angi", "plumbing", "San Antonio", "TX", 2),
        _ranking("angi", "plumbing", "Austin", "TX", 3),
    ]
    existing = ExistingState.from_keys({"plumbing:san-antonio", "plumbing:austin"})

    assert find_market_gaps(rankings, existing, site_name="Acme") == []
