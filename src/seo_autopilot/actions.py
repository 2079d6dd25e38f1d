"""
Action handlers, one per ``ActionType``.

Each handler turns a decision into a content call plus a single write to
the page store (or the proposals inbox) and reports an ``ActionResult``.
Expected failures are returned, not raised.
"""
from __future__ import annotations

import logging
import time
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

from .config_env import ActionType
from .content_client import ContentGeneratorClient
from .errors import ContentGenerationError
from .models import ActionResult, Decision, slugify
from .page_store import IndexingQueue, PageStore
from .storage import iso_utc, write_json
from .validator import validate_proposal

logger = logging.getLogger(__name__)

_HANDLED_ERRORS = (ContentGenerationError, KeyError, ValueError, OSError)


def page_slug(service: str, location: str) -> str:
    return f"/services/{slugify(service)}-in-{slugify(location)}"


def build_schema(service: str, location: str, state: Optional[str], *, site_name: str, site_url: str) -> Dict[str, Any]:
    area: Dict[str, Any] = {"@type": "City", "name": location}
    if state:
        area["containedIn"] = {"@type": "State", "name": state}
    return {
        "@context": "https://schema.org",
        "@type": "Service",
        "name": f"{service} in {location}",
        "serviceType": service,
        "areaServed": area,
        "provider": {"@type": "Organization", "name": site_name, "url": site_url},
    }


class CreatePageHandler:
    source = "create"

    def __init__(
        self,
        generator: ContentGeneratorClient,
        store: PageStore,
        indexing_queue: IndexingQueue,
        *,
        site_name: str,
        site_url: str,
    ) -> None:
        self._generator = generator
        self._store = store
        self._queue = indexing_queue
        self._site_name = site_name
        self._site_url = site_url.rstrip("/")

    def _metadata(self, decision: Decision) -> Dict[str, Any]:
        payload = decision.payload
        return {
            "created_by": "seo-autopilot",
            "source_query": payload.get("query"),
            "source_impressions": payload.get("impressions"),
            "source_position": payload.get("position"),
        }

    def apply(self, decision: Decision) -> ActionResult:
        service, location = decision.service, decision.location
        state = decision.payload.get("state")
        try:
            content = self._generator.generate_page(
                service,
                location,
                state=state,
                query=decision.payload.get("query"),
            )
            slug = page_slug(service, location)
            url = f"{self._site_url}{slug}"
            self._store.save_page(
                decision.target_key,
                {
                    "slug": slug,
                    "url": url,
                    "service": service,
                    "location": location,
                    "state": state,
                    "content": content,
                    "schema": build_schema(
                        service, location, state, site_name=self._site_name, site_url=self._site_url
                    ),
                    "metadata": self._metadata(decision),
                },
            )
            self._queue.submit(url, source=self.source)
        except _HANDLED_ERRORS as exc:
            return ActionResult(False, error=f"{type(exc).__name__}: {exc}")
        return ActionResult(True, {"slug": slug, "url": url, "indexing": "queued"})


class CloneHandler(CreatePageHandler):
    """Create a page in a new location replicating a winning pattern."""

    source = "clone"

    def _metadata(self, decision: Decision) -> Dict[str, Any]:
        meta = super()._metadata(decision)
        meta["source_pattern"] = decision.payload.get("pattern")
        meta["pattern_avg_ctr"] = decision.payload.get("avg_ctr")
        return meta


class RewriteMetaHandler:
    def __init__(self, generator: ContentGeneratorClient, store: PageStore) -> None:
        self._generator = generator
        self._store = store

    def apply(self, decision: Decision) -> ActionResult:
        payload = decision.payload
        if self._store.get(decision.target_key) is None:
            return ActionResult(False, error=f"No page for {decision.target_key}")
        try:
            meta = self._generator.generate_meta(
                decision.service,
                decision.location,
                position=float(payload.get("position", 0.0)),
                ctr=float(payload.get("ctr", 0.0)),
                expected_ctr=float(payload.get("benchmark_ctr", 0.0)),
                query=payload.get("query"),
            )
            self._store.update_meta(decision.target_key, meta)
        except _HANDLED_ERRORS as exc:
            return ActionResult(False, error=f"{type(exc).__name__}: {exc}")
        return ActionResult(True, {"new_meta": meta})


class ExpandContentHandler:
    def __init__(self, generator: ContentGeneratorClient, store: PageStore) -> None:
        self._generator = generator
        self._store = store

    def apply(self, decision: Decision) -> ActionResult:
        page = self._store.get(decision.target_key)
        if page is None:
            return ActionResult(False, error=f"No page for {decision.target_key}")
        headings = [
            str(s.get("heading"))
            for s in (page.get("content") or {}).get("sections") or []
            if isinstance(s, dict)
        ]
        try:
            expansion = self._generator.generate_expansion(
                decision.service,
                decision.location,
                existing_headings=headings,
            )
            self._store.append_sections(decision.target_key, expansion["sections"], expansion["faqs"])
        except _HANDLED_ERRORS as exc:
            return ActionResult(False, error=f"{type(exc).__name__}: {exc}")
        return ActionResult(
            True,
            {"added_sections": len(expansion["sections"]), "added_faqs": len(expansion["faqs"])},
        )


class FreezeHandler:
    """No-op protection marker."""

    def apply(self, decision: Decision) -> ActionResult:
        logger.info("Frozen: %s (%s)", decision.target_key, decision.reason)
        return ActionResult(True, {"frozen": True})


class ProposeHandler:
    """Write a pending proposal for human review; never touches the page store."""

    def __init__(
        self,
        proposals_dir: Path,
        *,
        clock: Callable[[], float] = time.time,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    ) -> None:
        self._pending_dir = Path(proposals_dir) / "pending"
        self._clock = clock
        self._id_factory = id_factory

    def apply(self, decision: Decision) -> ActionResult:
        payload = decision.payload
        proposal_id = self._id_factory()
        proposal = {
            "proposal_id": proposal_id,
            "action": payload.get("action", "CREATE_PAGE"),
            "service": decision.service,
            "city": decision.location,
            "state": payload.get("state"),
            "reason": decision.reason,
            "score": payload.get("score"),
            "opportunity_type": payload.get("type"),
            "created_at": iso_utc(self._clock()),
            "status": "pending",
        }
        validation = validate_proposal(proposal)
        if not validation.valid:
            return ActionResult(False, {"errors": list(validation.errors)}, error="; ".join(validation.errors))
        path = self._pending_dir / f"proposal-{proposal_id}.json"
        try:
            write_json(path, proposal)
        except OSError as exc:
            return ActionResult(False, error=f"{type(exc).__name__}: {exc}")
        logger.info("Proposal written: %s (%s)", path, decision.target_key)
        return ActionResult(True, {"proposal_id": proposal_id, "path": str(path)})


def build_handlers(
    *,
    generator: ContentGeneratorClient,
    store: PageStore,
    indexing_queue: IndexingQueue,
    proposals_dir: Path,
    site_name: str,
    site_url: str,
) -> Mapping[ActionType, Any]:
    """Exhaustive ``ActionType`` -> handler mapping."""
    handlers = {
        ActionType.CREATE: CreatePageHandler(
            generator, store, indexing_queue, site_name=site_name, site_url=site_url
        ),
        ActionType.CLONE: CloneHandler(
            generator, store, indexing_queue, site_name=site_name, site_url=site_url
        ),
        ActionType.REWRITE: RewriteMetaHandler(generator, store),
        ActionType.EXPAND: ExpandContentHandler(generator, store),
        ActionType.FREEZE: FreezeHandler(),
        ActionType.PROPOSE: ProposeHandler(proposals_dir),
    }
    missing = [a.value for a in ActionType if a not in handlers]
    if missing:
        raise ValueError(f"No handler for action types: {', '.join(missing)}")
    return handlers
