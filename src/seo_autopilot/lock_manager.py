"""
Lock Manager

One lock record per run mode under ``<data_dir>/locks``.  Creation is an
atomic ``os.link`` of a fully written temp file, so a reader never sees a
half-written record.  Stale-lock reclamation happens under a short
``flock`` guard so two reclaimers cannot both delete and recreate.
"""
from __future__ import annotations

import atexit
import json
import logging
import os
import signal
import tempfile
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Mapping, Optional, Union

from .config_env import RunMode
from .errors import LockCorruptedError
from .storage import file_lock, iso_utc

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT_S = 3600.0
_GUARD_NAME = ".seo-autopilot-locks.guard"

ModeLike = Union[RunMode, str]


def _mode_name(mode: ModeLike) -> str:
    return mode.value if isinstance(mode, RunMode) else str(mode)


@dataclass(frozen=True)
class LockRecord:
    mode: str
    holder_id: str
    pid: int
    acquired_at: float

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["acquired_at_iso"] = iso_utc(self.acquired_at)
        return payload

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "LockRecord":
        return cls(
            mode=str(raw["mode"]),
            holder_id=str(raw["holder_id"]),
            pid=int(raw["pid"]),
            acquired_at=float(raw["acquired_at"]),
        )


class LockManager:
    """Per-mode mutual exclusion with stale-lock recovery."""

    def __init__(
        self,
        lock_dir: Path,
        timeouts: Optional[Mapping[ModeLike, float]] = None,
        *,
        default_timeout_s: float = _DEFAULT_TIMEOUT_S,
        clock: Callable[[], float] = time.time,
        holder_id: Optional[str] = None,
    ) -> None:
        self._dir = Path(lock_dir)
        self._timeouts = {_mode_name(k): float(v) for k, v in (timeouts or {}).items()}
        self._default_timeout_s = float(default_timeout_s)
        self._clock = clock
        self._holder_id = holder_id or uuid.uuid4().hex
        self._held: Dict[str, LockRecord] = {}

    @property
    def holder_id(self) -> str:
        return self._holder_id

    def lock_path(self, mode: ModeLike) -> Path:
        return self._dir / f"seo-autopilot-{_mode_name(mode)}.lock"

    def timeout_for(self, mode: ModeLike) -> float:
        return self._timeouts.get(_mode_name(mode), self._default_timeout_s)

    def held(self, mode: ModeLike) -> bool:
        return _mode_name(mode) in self._held

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def read_lock(self, mode: ModeLike) -> Optional[LockRecord]:
        """Return the current record, ``None`` if absent.

        Raises ``ValueError`` when the file exists but cannot be parsed.
        """
        path = self.lock_path(mode)
        try:
            text = path.read_text()
        except FileNotFoundError:
            return None
        try:
            return LockRecord.from_dict(json.loads(text))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"Unreadable lock record {path}: {exc}") from exc

    def is_stale(self, record: LockRecord) -> bool:
        return self._clock() - record.acquired_at > self.timeout_for(record.mode)

    def _existing_is_stale(self, mode: str) -> bool:
        path = self.lock_path(mode)
        timeout = self.timeout_for(mode)
        try:
            record = self.read_lock(mode)
        except ValueError as exc:
            try:
                age = self._clock() - path.stat().st_mtime
            except FileNotFoundError:
                return True
            if age > timeout:
                logger.warning("Corrupt lock %s is %.0fs old; treating as stale", path, age)
                return True
            raise LockCorruptedError(
                f"Lock record for mode={mode} is corrupt and only {age:.0f}s old: {exc}"
            ) from exc
        if record is None:
            return True
        if self.is_stale(record):
            logger.warning(
                "Reclaiming stale %s lock: holder=%s pid=%s age=%.0fs timeout=%.0fs",
                mode,
                record.holder_id,
                record.pid,
                self._clock() - record.acquired_at,
                timeout,
            )
            return True
        logger.info(
            "Lock for mode=%s held by holder=%s pid=%s since %s",
            mode,
            record.holder_id,
            record.pid,
            iso_utc(record.acquired_at),
        )
        return False

    # ------------------------------------------------------------------
    # Acquire / release
    # ------------------------------------------------------------------

    def _create_exclusive(self, path: Path, record: LockRecord) -> bool:
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(self._dir))
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(json.dumps(record.to_dict(), sort_keys=True) + "\n")
                f.flush()
                os.fsync(f.fileno())
            try:
                os.link(tmp_path, path)
            except FileExistsError:
                return False
            return True
        finally:
            tmp_path.unlink(missing_ok=True)

    def acquire(self, mode: ModeLike) -> bool:
        """Take the lock for ``mode``; ``False`` when a live holder exists."""
        name = _mode_name(mode)
        if name in self._held:
            return True
        self._dir.mkdir(parents=True, exist_ok=True)
        path = self.lock_path(name)
        with file_lock(self._dir / _GUARD_NAME):
            if path.exists():
                if not self._existing_is_stale(name):
                    return False
                path.unlink(missing_ok=True)
            record = LockRecord(
                mode=name,
                holder_id=self._holder_id,
                pid=os.getpid(),
                acquired_at=self._clock(),
            )
            if not self._create_exclusive(path, record):
                return False
        self._held[name] = record
        logger.info("Lock acquired: mode=%s holder=%s", name, self._holder_id)
        return True

    def release(self, mode: ModeLike) -> None:
        """Idempotent; only removes a record this manager created."""
        name = _mode_name(mode)
        record = self._held.pop(name, None)
        if record is None:
            return
        path = self.lock_path(name)
        with file_lock(self._dir / _GUARD_NAME):
            try:
                current = self.read_lock(name)
            except ValueError:
                current = None
            if current is not None and current.holder_id != record.holder_id:
                logger.warning(
                    "Lock for mode=%s was reclaimed by holder=%s; leaving it in place",
                    name,
                    current.holder_id,
                )
                return
            path.unlink(missing_ok=True)
        logger.info("Lock released: mode=%s holder=%s", name, self._holder_id)

    def release_all(self) -> None:
        for name in list(self._held):
            self.release(name)

    # ------------------------------------------------------------------
    # Scoped lifetime
    # ------------------------------------------------------------------

    @contextmanager
    def hold(self, mode: ModeLike) -> Iterator[bool]:
        """Acquire for the block; release on return, error or termination signal.

        Yields ``False`` (without raising) when another holder is live.
        """
        if not self.acquire(mode):
            yield False
            return
        release = lambda: self.release(mode)  # noqa: E731
        atexit.register(release)
        previous = _install_termination_handlers()
        try:
            yield True
        finally:
            _restore_handlers(previous)
            atexit.unregister(release)
            self.release(mode)


_TERMINATION_SIGNALS = tuple(
    sig for sig in (getattr(signal, "SIGTERM", None), getattr(signal, "SIGHUP", None)) if sig is not None
)


def _raise_system_exit(signum, _frame) -> None:
    logger.warning("Received signal %s; unwinding run", signum)
    raise SystemExit(128 + int(signum))


def _install_termination_handlers() -> Dict[int, Any]:
    # SIGINT already surfaces as KeyboardInterrupt; SIGTERM/SIGHUP are
    # converted so ``finally`` blocks run.
    if threading.current_thread() is not threading.main_thread():
        return {}
    previous: Dict[int, Any] = {}
    for sig in _TERMINATION_SIGNALS:
        previous[sig] = signal.getsignal(sig)
        signal.signal(sig, _raise_system_exit)
    return previous


def _restore_handlers(previous: Dict[int, Any]) -> None:
    for sig, handler in previous.items():
        signal.signal(sig, handler if handler is not None else signal.SIG_DFL)
