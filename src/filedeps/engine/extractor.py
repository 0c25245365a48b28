"""Derivation of file-level dependency edges from the occurrence index."""

import asyncio
import time
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Dict, Hashable, Optional

from ..exceptions import ExtractionInProgress, FileDepsError
from ..logging import get_logger
from ..metrics import EDGES_EXTRACTED, EXTRACTION_DURATION, EXTRACTIONS_TOTAL
from ..models.edge import merge_edges
from ..storage.base import GraphStore
from .params import require_identifier

logger = get_logger(__name__)


class KeyedLocks:
    """One asyncio lock per key, discarded once nobody holds or waits on it."""

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._users: Dict[Hashable, int] = defaultdict(int)

    def locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, key: Hashable, wait: bool = True):
        if not wait and self.locked(key):
            raise ExtractionInProgress(f"An extraction for {key} is already running")

        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                self._locks.pop(key, None)


class EdgeExtractor:
    """Rebuilds the edge set of a repository from its occurrence index.

    A file that references a symbol depends on each other file of the same
    repository that defines it. The join itself runs inside the store; the
    extractor collapses the streamed rows to one edge per file pair and
    swaps the result in with a single `replace_all`.

    Extractions of the same `(owner, repo)` key never overlap within a
    process: a second caller waits for the first, or is rejected with
    `ExtractionInProgress` when it asks not to wait.
    """

    def __init__(self, store: GraphStore, wait_for_lock: bool = True, locks: Optional[KeyedLocks] = None):
        self.store = store
        self.wait_for_lock = wait_for_lock
        self.locks = locks or KeyedLocks()

    async def extract_edges(self, owner_id: str, repo_url: str, wait: Optional[bool] = None) -> int:
        """Derive and persist the edges of one repository.

        Args:
            owner_id: Owner the repository belongs to.
            repo_url: Repository identifier.
            wait: Block behind a running extraction of the same key.
                Defaults to the extractor's `wait_for_lock`.

        Returns:
            Number of edges now stored for the repository.

        Raises:
            InvalidParameter: Blank owner or repository.
            ExtractionInProgress: `wait` is false and the key is busy.
            StorageUnavailable: The store cannot be reached.
            PartialRebuildPrevented: The swap aborted; previous edges kept.
        """
        require_identifier(owner_id, "owner_id")
        require_identifier(repo_url, "repo_url")
        if wait is None:
            wait = self.wait_for_lock

        start_time = time.time()
        try:
            async with self.locks.hold((owner_id, repo_url), wait=wait):
                logger.info("edge_extraction_started", owner_id=owner_id, repo_url=repo_url)
                staged = merge_edges([edge async for edge in self.store.derive_edges(owner_id, repo_url)])
                edge_count = await self.store.replace_all(owner_id, repo_url, staged)
        except FileDepsError as e:
            EXTRACTIONS_TOTAL.labels(status=type(e).__name__).inc()
            logger.error(
                "edge_extraction_failed",
                owner_id=owner_id,
                repo_url=repo_url,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

        duration = time.time() - start_time
        EXTRACTIONS_TOTAL.labels(status="ok").inc()
        EXTRACTION_DURATION.observe(duration)
        EDGES_EXTRACTED.observe(edge_count)
        logger.info(
            "edges_extracted",
            owner_id=owner_id,
            repo_url=repo_url,
            edge_count=edge_count,
            duration_ms=int(duration * 1000),
        )
        return edge_count
