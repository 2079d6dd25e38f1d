"""
Page store

JSON registry of pages keyed by canonical ``service:location-slug``: the underlying store
that action handlers apply to and the source of each run's existing-state
snapshot.  Writes are read-modify-write under ``flock`` with atomic
replace; the indexing queue is append-only JSONL.
"""
from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .models import ExistingState, canonical_key
from .storage import append_jsonl, file_lock, iso_utc, read_json, read_jsonl, write_json

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = 1


class PageStore:
    def __init__(self, path: Path, *, clock: Callable[[], float] = time.time) -> None:
        self._path = Path(path)
        self._lock_path = self._path.with_name(self._path.name + ".lock")
        self._clock = clock

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> Dict[str, Dict[str, Any]]:
        payload = read_json(self._path, default={}) or {}
        pages = payload.get("pages", {})
        return pages if isinstance(pages, dict) else {}

    def _save(self, pages: Dict[str, Dict[str, Any]]) -> None:
        write_json(self._path, {"schema_version": _SCHEMA_VERSION, "pages": pages})

    def _mutate(self, key: str, fn: Callable[[Optional[Dict[str, Any]]], Dict[str, Any]]) -> Dict[str, Any]:
        key = canonical_key(key)
        with file_lock(self._lock_path):
            pages = self._load()
            page = fn(pages.get(key))
            pages[key] = page
            self._save(pages)
        return page

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        return self._load().get(canonical_key(key))

    def keys(self) -> List[str]:
        return sorted(self._load())

    def existing_state(self, now: Optional[float] = None) -> ExistingState:
        pages = self._load()
        optimized = {
            key: float(page["last_optimized_at"])
            for key, page in pages.items()
            if page.get("last_optimized_at") is not None
        }
        return ExistingState(
            keys=frozenset(pages),
            last_optimized_at=optimized,
            as_of=self._clock() if now is None else now,
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def save_page(self, key: str, page: Dict[str, Any]) -> Dict[str, Any]:
        now = self._clock()

        def _create(existing: Optional[Dict[str, Any]]) -> Dict[str, Any]:
            if existing is not None:
                raise ValueError(f"Page already exists for {key}")
            record = dict(page)
            record.setdefault("status", "ACTIVE")
            record["created_at"] = now
            record["created_at_iso"] = iso_utc(now)
            record.setdefault("last_optimized_at", None)
            record.setdefault("history", [])
            return record

        saved = self._mutate(key, _create)
        logger.info("Saved page %s (%s)", key, saved.get("slug"))
        return saved

    def update_meta(self, key: str, meta: Dict[str, Any]) -> Dict[str, Any]:
        now = self._clock()

        def _update(existing: Optional[Dict[str, Any]]) -> Dict[str, Any]:
            if existing is None:
                raise KeyError(f"No page for {key}")
            record = dict(existing)
            content = dict(record.get("content") or {})
            history = list(record.get("history") or [])
            history.append(
                {
                    "ts": now,
                    "action": "REWRITE",
                    "before": {
                        "title": content.get("title"),
                        "meta_description": content.get("meta_description"),
                    },
                }
            )
            content.update(meta)
            record["content"] = content
            record["history"] = history
            record["last_optimized_at"] = now
            return record

        return self._mutate(key, _update)

    def append_sections(
        self,
        key: str,
        sections: List[Dict[str, Any]],
        faqs: List[Dict[str, Any]],
    ) -> Dict[str, Any]:
        now = self._clock()

        def _update(existing: Optional[Dict[str, Any]]) -> Dict[str, Any]:
            if existing is None:
                raise KeyError(f"No page for {key}")
            record = dict(existing)
            content = dict(record.get("content") or {})
            content["sections"] = list(content.get("sections") or []) + list(sections)
            content["faqs"] = list(content.get("faqs") or []) + list(faqs)
            history = list(record.get("history") or [])
            history.append(
                {"ts": now, "action": "EXPAND", "added_sections": len(sections), "added_faqs": len(faqs)}
            )
            record["content"] = content
            record["history"] = history
            record["last_optimized_at"] = now
            return record

        return self._mutate(key, _update)


class IndexingQueue:
    """URLs waiting for a search-engine indexing submission."""

    def __init__(self, path: Path, *, clock: Callable[[], float] = time.time) -> None:
        self._path = Path(path)
        self._clock = clock

    def submit(self, url: str, *, source: str) -> Dict[str, Any]:
        now = self._clock()
        row = {"ts": now, "ts_iso": iso_utc(now), "url": url, "source": source, "status": "queued"}
        append_jsonl(self._path, row)
        logger.info("Queued for indexing: %s", url)
        return row

    def entries(self) -> List[Dict[str, Any]]:
        return read_jsonl(self._path)
