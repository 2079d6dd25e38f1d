"""
Signal ingestion

Sources return ``SignalRecord`` lists; a failing source is logged and
treated as empty so the run continues with reduced scope.  Competitor
rankings come from a deterministic mock (default) or a live SERP
endpoint, both metered by the ``crawl`` / ``serp_api`` rate limits.
"""
from __future__ import annotations

import logging
import random
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple
from urllib.parse import urlparse

import requests
import yaml

from .errors import IngestionError
from .models import ExistingState, Opportunity, SignalRecord, slugify
from .rate_limiter import RateLimiter
from .storage import iso_utc, load_structured, read_jsonl
from .validator import validate_competitor_data

logger = logging.getLogger(__name__)

SERVICE_PATTERNS: Tuple[Tuple[str, "re.Pattern[str]"], ...] = (
    ("plumbing", re.compile(r"plumb(ing|er)")),
    ("electrical", re.compile(r"electric(al|ian)")),
    ("hvac", re.compile(r"hvac|heating|cooling|air conditioning")),
    ("carpentry", re.compile(r"carpentr(y|er)")),
    ("painting", re.compile(r"paint(ing|er)")),
    ("roofing", re.compile(r"roof(ing|er)")),
    ("house-cleaning", re.compile(r"house cleaning|maid|cleaning service")),
    ("junk-removal", re.compile(r"junk removal|trash removal|hauling")),
    ("landscaping", re.compile(r"landscap(ing|er)|lawn care|yard work")),
    ("handyman", re.compile(r"handyman|handyperson")),
)

_LOCATION_RE = re.compile(r"\bin\s+([a-z][a-z\s\-]*?)(?:\s+([a-z]{2}))?\s*$")


@dataclass(frozen=True)
class MarketCity:
    name: str
    state: str
    population: int


CITY_DATA: Tuple[MarketCity, ...] = (
    MarketCity("Austin", "TX", 961_855),
    MarketCity("Dallas", "TX", 1_343_573),
    MarketCity("Houston", "TX", 2_304_580),
    MarketCity("San Antonio", "TX", 1_547_253),
    MarketCity("Phoenix", "AZ", 1_680_992),
    MarketCity("San Diego", "CA", 1_419_516),
    MarketCity("Denver", "CO", 715_522),
    MarketCity("Seattle", "WA", 749_256),
    MarketCity("Portland", "OR", 652_503),
    MarketCity("Las Vegas", "NV", 641_903),
)

COMPETITORS: Tuple[str, ...] = ("homeadvisor", "angi", "thumbtack", "yelp")


def city_populations(cities: Iterable[MarketCity] = CITY_DATA) -> Dict[Tuple[str, str], int]:
    return {(c.name, c.state): c.population for c in cities}


def _state_for_city(city: str) -> str:
    for market in CITY_DATA:
        if slugify(market.name) == slugify(city):
            return market.state
    return ""


def display_city(city_slug: str) -> str:
    """``"san-diego"`` -> ``"San Diego"``, preferring the known market spelling."""
    for market in CITY_DATA:
        if slugify(market.name) == slugify(city_slug):
            return market.name
    return " ".join(word.capitalize() for word in city_slug.replace("-", " ").split())


def parse_query_for_service_city(query: str) -> Tuple[Optional[str], Optional[str], Optional[str]]:
    """Map a search query to ``(service, city_slug, state)``; parts may be None.

    ``"emergency plumber in san diego ca"`` -> ``("plumbing", "san-diego", "ca")``
    """
    text = " ".join(query.lower().split())
    service = next((svc for svc, pattern in SERVICE_PATTERNS if pattern.search(text)), None)

    city = state = None
    match = _LOCATION_RE.search(text)
    if match:
        city = re.sub(r"\s+", "-", match.group(1).strip())
        state = match.group(2)
    return service, city, state


def records_from_rows(rows: Iterable[Mapping[str, Any]], *, source: str = "") -> List[SignalRecord]:
    """Convert raw rows, filling service/location from ``query`` when missing."""
    records: List[SignalRecord] = []
    skipped = 0
    for row in rows:
        if not isinstance(row, Mapping):
            skipped += 1
            continue
        data = dict(row)
        if (not data.get("service") or not (data.get("location") or data.get("city"))) and data.get("query"):
            service, city, state = parse_query_for_service_city(str(data["query"]))
            if not data.get("service"):
                data["service"] = service
            if not (data.get("location") or data.get("city")):
                data["location"] = display_city(city) if city else city
            if state and not data.get("state"):
                data["state"] = state.upper()
        try:
            records.append(SignalRecord.from_row(data))
        except (TypeError, ValueError) as exc:
            skipped += 1
            logger.debug("Skipping signal row from %s: %s", source or "rows", exc)
    if skipped:
        logger.warning("Skipped %d malformed signal rows from %s", skipped, source or "rows")
    return records


class SignalSource(Protocol):
    name: str

    def fetch(self) -> List[SignalRecord]:
        ...


class StaticSignalSource:
    def __init__(self, records: Sequence[SignalRecord], name: str = "static") -> None:
        self.name = name
        self._records = list(records)

    def fetch(self) -> List[SignalRecord]:
        return list(self._records)


class JsonlSignalSource:
    """Search-performance export on disk (JSONL, or a JSON/YAML list)."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.name = f"file:{self.path.name}"

    def fetch(self) -> List[SignalRecord]:
        if not self.path.exists():
            raise IngestionError(f"Signal file not found: {self.path}")
        if self.path.suffix == ".jsonl":
            rows: Any = read_jsonl(self.path)
        else:
            try:
                rows = load_structured(self.path)
            except yaml.YAMLError as exc:
                raise IngestionError(f"Unreadable signal file {self.path}: {exc}") from exc
            if isinstance(rows, dict):
                rows = rows.get("rows") or rows.get("data") or []
        if not isinstance(rows, list):
            raise IngestionError(f"Unexpected signal payload in {self.path}: {type(rows).__name__}")
        return records_from_rows(rows, source=self.name)


class HttpSignalSource:
    """Search-performance rows from an HTTP endpoint."""

    def __init__(self, url: str, *, timeout_s: float = 10.0, api_key: str = "") -> None:
        self.url = url
        self.name = f"http:{urlparse(url).netloc or url}"
        self._timeout_s = timeout_s
        self._api_key = api_key

    def fetch(self) -> List[SignalRecord]:
        headers = {"User-Agent": "seo-autopilot/0.1", "Accept": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        try:
            resp = requests.get(self.url, headers=headers, timeout=self._timeout_s)
            resp.raise_for_status()
            payload = resp.json()
        except requests.RequestException as exc:
            raise IngestionError(f"Signal fetch failed: {exc}") from exc
        except ValueError as exc:
            raise IngestionError(f"Signal payload is not JSON: {exc}") from exc

        if isinstance(payload, dict):
            payload = payload.get("rows", payload.get("data"))
        if not isinstance(payload, list):
            raise IngestionError(f"Unexpected signal payload from {self.url}: {payload!r}")
        return records_from_rows(payload, source=self.name)


def build_signal_sources(settings: Any) -> List[SignalSource]:
    sources: List[SignalSource] = []
    if settings.signals_path:
        sources.append(JsonlSignalSource(Path(settings.signals_path)))
    if settings.signals_url:
        sources.append(HttpSignalSource(settings.signals_url, timeout_s=settings.ingestion_timeout_s))
    return sources


@dataclass(frozen=True)
class IngestionResult:
    records: List[SignalRecord]
    failed_sources: Tuple[str, ...] = ()

    @property
    def degraded(self) -> bool:
        """Some source failed, so totals undercount real traffic."""
        return bool(self.failed_sources)


def ingest_signals(sources: Iterable[SignalSource]) -> IngestionResult:
    """Concatenate every source, degrading a failed one to no rows."""
    records: List[SignalRecord] = []
    failed: List[str] = []
    for source in sources:
        try:
            fetched = source.fetch()
        except (IngestionError, OSError, ValueError) as exc:
            logger.warning("Ingestion source %s failed, continuing without it: %s", source.name, exc)
            failed.append(source.name)
            continue
        logger.info("Ingested %d signals from %s", len(fetched), source.name)
        records.extend(fetched)
    return IngestionResult(records, tuple(failed))


def fetch_signals(sources: Iterable[SignalSource]) -> List[SignalRecord]:
    return ingest_signals(sources).records


# ----------------------------------------------------------------------
# Competitor rankings
# ----------------------------------------------------------------------


class MockCompetitorSource:
    """Seeded competitor rankings; every (service, city) lookup costs one crawl."""

    name = "mock-competitors"

    def __init__(
        self,
        services: Sequence[str],
        cities: Sequence[MarketCity] = CITY_DATA[:5],
        *,
        competitors: Sequence[str] = COMPETITORS,
        seed: int = 42,
        presence: float = 0.6,
        rate_limiter: Optional[RateLimiter] = None,
        clock_ts: Optional[float] = None,
    ) -> None:
        self._services = list(services)
        self._cities = list(cities)
        self._competitors = list(competitors)
        self._seed = seed
        self._presence = presence
        self._rate_limiter = rate_limiter
        self._clock_ts = clock_ts

    def fetch(self) -> List[Dict[str, Any]]:
        rng = random.Random(self._seed)
        rankings: List[Dict[str, Any]] = []
        for service in self._services:
            for city in self._cities:
                if self._rate_limiter is not None and not self._rate_limiter.try_acquire("crawl").allowed:
                    logger.warning("Crawl limit reached; stopping competitor scan at %s/%s", service, city.name)
                    return rankings
                for competitor in self._competitors:
                    if rng.random() >= self._presence:
                        continue
                    row = {
                        "competitor": competitor,
                        "service": service,
                        "city": city.name,
                        "state": city.state,
                        "position": rng.randint(1, 20),
                        "source": "mock",
                        "timestamp": iso_utc(self._clock_ts),
                    }
                    result = validate_competitor_data(row)
                    if result.valid:
                        rankings.append(result.sanitized)
        logger.info("Collected %d mock competitor rankings", len(rankings))
        return rankings


class SerpCompetitorSource:
    """Live SERP lookups; each query consumes one ``serp_api`` call."""

    name = "serp-api"

    def __init__(
        self,
        api_url: str,
        api_key: str,
        services: Sequence[str],
        cities: Sequence[MarketCity] = CITY_DATA[:5],
        *,
        competitors: Sequence[str] = COMPETITORS,
        rate_limiter: Optional[RateLimiter] = None,
        timeout_s: float = 10.0,
    ) -> None:
        self._api_url = api_url
        self._api_key = api_key
        self._services = list(services)
        self._cities = list(cities)
        self._competitors = list(competitors)
        self._rate_limiter = rate_limiter
        self._timeout_s = timeout_s

    def _lookup(self, service: str, city: MarketCity) -> List[Dict[str, Any]]:
        resp = requests.get(
            self._api_url,
            params={"q": f"{service} in {city.name} {city.state}", "api_key": self._api_key},
            timeout=self._timeout_s,
        )
        resp.raise_for_status()
        payload = resp.json()
        results = payload.get("organic_results") if isinstance(payload, dict) else None
        rankings: List[Dict[str, Any]] = []
        for item in results or []:
            domain = urlparse(str(item.get("link", ""))).netloc.lower()
            competitor = next((c for c in self._competitors if c in domain), None)
            if competitor is None:
                continue
            rankings.append(
                {
                    "competitor": competitor,
                    "service": service,
                    "city": city.name,
                    "state": city.state,
                    "position": item.get("position"),
                    "source": "serp",
                }
            )
        return rankings

    def fetch(self) -> List[Dict[str, Any]]:
        rankings: List[Dict[str, Any]] = []
        for service in self._services:
            for city in self._cities:
                if self._rate_limiter is not None and not self._rate_limiter.try_acquire("serp_api").allowed:
                    logger.warning("SERP API limit reached; stopping at %s/%s", service, city.name)
                    return rankings
                try:
                    rows = self._lookup(service, city)
                except (requests.RequestException, ValueError) as exc:
                    logger.warning("SERP lookup failed for %s/%s: %s", service, city.name, exc)
                    continue
                for row in rows:
                    result = validate_competitor_data(row)
                    if result.valid:
                        rankings.append(result.sanitized)
        logger.info("Collected %d SERP competitor rankings", len(rankings))
        return rankings


def fetch_rankings(source: Any) -> List[Dict[str, Any]]:
    try:
        return list(source.fetch())
    except (IngestionError, OSError, ValueError, requests.RequestException) as exc:
        logger.warning("Competitor source %s failed, continuing without it: %s", source.name, exc)
        return []


# ----------------------------------------------------------------------
# Gap analysis
# ----------------------------------------------------------------------


def _competitor_counts(rankings: Iterable[Mapping[str, Any]]) -> Dict[Tuple[str, str, str], int]:
    seen: Dict[Tuple[str, str, str], set] = {}
    for row in rankings:
        key = (row["service"], row["city"], row["state"])
        seen.setdefault(key, set()).add(row["competitor"])
    return {key: len(names) for key, names in seen.items()}


def find_market_gaps(
    rankings: Sequence[Mapping[str, Any]],
    existing: ExistingState,
    *,
    site_name: str,
    max_position: int = 20,
) -> List[Opportunity]:
    """CITY_GAP: a competitor ranks for a (service, city) where we have no page."""
    counts = _competitor_counts(rankings)
    ordered = sorted(rankings, key=lambda r: (r["position"], r["service"], r["city"], r["competitor"]))
    gaps: List[Opportunity] = []
    seen: set = set()
    for row in ordered:
        key = (row["service"], row["city"], row["state"])
        if key in seen or row["position"] > max_position:
            continue
        seen.add(key)
        if existing.contains(row["service"], row["city"]):
            continue
        gaps.append(
            Opportunity(
                type="CITY_GAP",
                service=row["service"],
                city=row["city"],
                state=row["state"],
                reason=f"{row['competitor']} ranks at position {row['position']}, {site_name} has no page",
                competitor=row["competitor"],
                competitor_position=row["position"],
                competitor_count=counts.get(key),
            )
        )
    return gaps


def find_service_gaps(
    rankings: Sequence[Mapping[str, Any]],
    offered_services: Iterable[str],
    *,
    site_name: str,
) -> List[Opportunity]:
    """SERVICE_GAP: competitors rank for a service we do not offer at all."""
    offered = set(offered_services)
    counts = _competitor_counts(rankings)
    ordered = sorted(rankings, key=lambda r: (r["position"], r["service"], r["city"], r["competitor"]))
    gaps: List[Opportunity] = []
    seen: set = set()
    for row in ordered:
        key = (row["service"], row["city"], row["state"])
        if row["service"] in offered or key in seen:
            continue
        seen.add(key)
        gaps.append(
            Opportunity(
                type="SERVICE_GAP",
                service=row["service"],
                city=row["city"],
                state=row["state"],
                reason=f"Competitors offer {row['service']} in {row['city']}, {site_name} does not",
                competitor=row["competitor"],
                competitor_position=row["position"],
                competitor_count=counts.get(key),
            )
        )
    return gaps


def find_position_opportunities(
    signals: Iterable[SignalRecord],
    *,
    min_impressions: int = 100,
    min_position: float = 10.0,
) -> List[Opportunity]:
    """POSITION_OPPORTUNITY: visible queries ranking just off page one."""
    found: List[Opportunity] = []
    for record in signals:
        if record.impressions < min_impressions or record.position <= min_position:
            continue
        found.append(
            Opportunity(
                type="POSITION_OPPORTUNITY",
                service=record.service,
                city=record.location,
                state=(record.state or _state_for_city(record.location)).upper(),
                reason=(
                    f"Position {record.position:.1f} with {record.impressions} impressions, "
                    "page-one push candidate"
                ),
                impressions=record.impressions,
                current_position=record.position,
                ctr=record.ctr,
            )
        )
    return found
