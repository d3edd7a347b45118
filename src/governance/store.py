"""Procedure store: a cache of parsed procedures in front of a ProcedureSource.

The cache is replaced wholesale on every refresh and refreshes are
deduplicated: callers arriving while a refresh is in flight await that same
refresh instead of starting their own fetch.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from src.config import CacheConfig
from src.governance.catalogue import pattern_to_regex
from src.governance.models import Procedure, ProcedureContext, utcnow
from src.governance.parser import ProcedureParser
from src.governance.sources import ProcedureSource

logger = logging.getLogger(__name__)

DEFAULT_DATASET_NAME = "AI_Agent_Procedures"


@dataclass
class CacheEntry:
    """A cached procedure with TTL and LRU bookkeeping."""

    procedure: Procedure
    timestamp: float
    access_count: int = 0
    last_accessed: float = 0.0

    def touch(self, now: float) -> None:
        self.access_count += 1
        self.last_accessed = now


class ProcedureStore:
    """Caches procedures loaded from an external dataset.

    Two clocks govern freshness: the store-wide refresh interval decides
    when load() goes back to the source, and the per-entry TTL decides when
    get_procedure() considers a single entry stale.
    """

    def __init__(
        self,
        source: ProcedureSource,
        parser: ProcedureParser | None = None,
        settings: CacheConfig | None = None,
        dataset_name: str = DEFAULT_DATASET_NAME,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the store.

        Args:
            source: Where procedure rows come from.
            parser: Parser for raw rows. Defaults to a ProcedureParser.
            settings: Cache settings (TTL, max size, refresh interval).
            dataset_name: Dataset holding procedure definitions.
            clock: Monotonic clock in seconds, injectable for tests.
        """
        settings = settings or CacheConfig()
        self._source = source
        self._parser = parser or ProcedureParser()
        self._dataset_name = dataset_name
        self._ttl = settings.ttl_seconds
        self._max_size = settings.max_size
        self._refresh_interval = settings.refresh_interval_seconds
        self._clock = clock

        self._cache: dict[str, CacheEntry] = {}
        self._last_refresh: float | None = None
        self._refresh_task: asyncio.Task[list[Procedure]] | None = None
        self._refresh_count = 0
        self._failure_count = 0

    async def load(self, force: bool = False) -> list[Procedure]:
        """Return cached procedures, refreshing from the source when due.

        Args:
            force: Refresh even if the refresh interval has not elapsed.

        Returns:
            All cached procedures.
        """
        if not force and self._cache and self._last_refresh is not None:
            if self._clock() - self._last_refresh < self._refresh_interval:
                return [entry.procedure for entry in self._cache.values()]
        return await self.refresh()

    async def refresh(self) -> list[Procedure]:
        """Reload procedures from the source.

        Concurrent callers share one in-flight refresh.
        """
        # Check-and-set without an await in between, so it is atomic on the loop.
        if self._refresh_task is None:
            self._refresh_task = asyncio.ensure_future(self._run_refresh())
        return await asyncio.shield(self._refresh_task)

    async def _run_refresh(self) -> list[Procedure]:
        try:
            return await self._fetch_and_replace()
        finally:
            self._refresh_task = None

    async def _fetch_and_replace(self) -> list[Procedure]:
        self._refresh_count += 1
        try:
            rows = await self._source.fetch_rows(self._dataset_name)
        except Exception:
            self._failure_count += 1
            logger.error(
                "Procedure refresh failed, continuing with no procedures: dataset=%s",
                self._dataset_name,
                exc_info=True,
            )
            rows = None
        else:
            if rows is None:
                logger.info(
                    "Procedure dataset %s not found; no governance is defined",
                    self._dataset_name,
                )

        try:
            procedures = self._parser.parse_rows(rows or [])
        except Exception:
            self._failure_count += 1
            logger.error(
                "Procedure rows could not be parsed, continuing with no procedures: dataset=%s",
                self._dataset_name,
                exc_info=True,
            )
            procedures = []
        now = self._clock()
        previous = self._cache
        replacement: dict[str, CacheEntry] = {}
        for procedure in procedures:
            if procedure.id in replacement:
                logger.warning("Duplicate procedure id %s; keeping the first", procedure.id)
                continue
            old = previous.get(procedure.id)
            replacement[procedure.id] = CacheEntry(
                procedure=procedure,
                timestamp=now,
                access_count=old.access_count if old else 0,
                last_accessed=old.last_accessed if old else now,
            )

        self._cache = replacement
        self._last_refresh = now
        self._enforce_max_size()
        logger.debug("Loaded %d procedures from %s", len(self._cache), self._dataset_name)
        return [entry.procedure for entry in self._cache.values()]

    async def get_procedure(self, procedure_id: str) -> Procedure | None:
        """Look up one procedure by id.

        A fresh hit is served from cache. A miss or a stale entry triggers
        load() first.
        """
        entry = self._cache.get(procedure_id)
        if entry is not None:
            now = self._clock()
            entry.touch(now)
            if now - entry.timestamp < self._ttl:
                return entry.procedure

        await self.load()
        entry = self._cache.get(procedure_id)
        if entry is None:
            return None
        entry.touch(self._clock())
        return entry.procedure

    async def find_applicable(self, context: ProcedureContext) -> list[Procedure]:
        """Find active, in-window procedures whose triggers match the context.

        A procedure matches on its tool triggers (wildcards allowed), its
        operation triggers, its purpose, or a shared tag. Results are ordered
        critical, high, normal, low.
        """
        await self.load()
        now = utcnow()
        clock_now = self._clock()
        operation = context.operation.value if context.operation else None

        applicable: list[Procedure] = []
        for entry in self._cache.values():
            procedure = entry.procedure
            if not procedure.is_effective(now):
                continue
            triggers = procedure.triggers
            matches = (
                (context.tool_name is not None and any(
                    pattern_to_regex(pattern).match(context.tool_name)
                    for pattern in triggers.tools
                ))
                or (operation is not None and (
                    operation in triggers.operations or "ALL" in triggers.operations
                ))
                or (context.purpose is not None and procedure.purpose == context.purpose)
                or bool(set(context.tags) & set(procedure.metadata.tags))
            )
            if matches:
                entry.touch(clock_now)
                applicable.append(procedure)

        applicable.sort(key=lambda p: p.metadata.priority.rank)
        return applicable

    def cached_procedures(self) -> list[Procedure]:
        """Procedures currently cached, without touching the source."""
        return [entry.procedure for entry in self._cache.values()]

    def clear_cache(self) -> None:
        self._cache = {}
        self._last_refresh = None

    def get_cache_stats(self) -> dict[str, Any]:
        now = self._clock()
        return {
            "size": len(self._cache),
            "max_size": self._max_size,
            "last_refresh_age_seconds": (
                None if self._last_refresh is None else now - self._last_refresh
            ),
            "refresh_count": self._refresh_count,
            "failure_count": self._failure_count,
            "entries": [
                {
                    "id": procedure_id,
                    "access_count": entry.access_count,
                    "age_seconds": now - entry.timestamp,
                }
                for procedure_id, entry in self._cache.items()
            ],
        }

    def _enforce_max_size(self) -> None:
        overflow = len(self._cache) - self._max_size
        if overflow <= 0:
            return
        by_age = sorted(self._cache.items(), key=lambda item: item[1].last_accessed)
        for procedure_id, _ in by_age[:overflow]:
            del self._cache[procedure_id]
        logger.info("Evicted %d least recently used procedures", overflow)
