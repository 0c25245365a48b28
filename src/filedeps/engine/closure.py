"""Bounded, cycle-aware transitive closure over the stored edge set."""

import asyncio
from collections import deque
from typing import Deque, Dict, FrozenSet, List, Set, Tuple

from ..logging import get_logger
from ..metrics import CLOSURE_EDGES_RETURNED, CLOSURE_REQUESTS_TOTAL
from ..models.graph import ClosurePath, ClosureResult, format_cycle
from ..storage.base import EdgeSnapshot, GraphStore
from .params import require_identifier, require_positive_depth

logger = get_logger(__name__)

DEFAULT_MAX_DEPTH_LIMIT = 20


class ClosureEngine:
    """Walks the dependencies of a root file breadth-first.

    Each queued entry carries its own path from the root. An edge whose
    target is already on that path is reported as a cycle and the branch
    ends there, which together with the depth cap guarantees termination.
    Paths that reach the same file along different routes are reported
    independently; only identical `(source, target, depth)` tuples within
    one level are collapsed.
    """

    def __init__(self, store: GraphStore, max_depth_limit: int = DEFAULT_MAX_DEPTH_LIMIT):
        self.store = store
        self.max_depth_limit = max_depth_limit

    async def compute_closure(
        self, owner_id: str, repo_url: str, root_file: str, max_depth: int
    ) -> ClosureResult:
        """Compute the transitive dependencies of `root_file`.

        Edges leaving the root are at depth 0. Edges found at `max_depth`
        are reported but their targets are not expanded.

        Raises:
            InvalidParameter: Blank identifiers or non-positive `max_depth`.
                Raised before the store is touched.
            StorageUnavailable: The store cannot be reached.
        """
        require_identifier(owner_id, "owner_id")
        require_identifier(repo_url, "repo_url")
        require_identifier(root_file, "root_file")
        require_positive_depth(max_depth)

        depth_cap = max_depth
        if depth_cap > self.max_depth_limit:
            logger.warning(
                "max_depth_clamped",
                requested=max_depth,
                limit=self.max_depth_limit,
            )
            depth_cap = self.max_depth_limit

        CLOSURE_REQUESTS_TOTAL.inc()
        async with self.store.snapshot(owner_id, repo_url) as view:
            recorded = await self._traverse(view, root_file, depth_cap)

        edges = [
            ClosurePath(source_file=source, target_file=target, depth=depth, is_cycle=is_cycle)
            for (depth, source, target), is_cycle in sorted(recorded.items())
        ]
        cycles = list(dict.fromkeys(
            format_cycle(edge.source_file, edge.target_file) for edge in edges if edge.is_cycle
        ))

        CLOSURE_EDGES_RETURNED.labels(has_cycles=str(bool(cycles)).lower()).observe(len(edges))
        logger.info(
            "closure_computed",
            owner_id=owner_id,
            repo_url=repo_url,
            root_file=root_file,
            max_depth=depth_cap,
            edges=len(edges),
            cycles=len(cycles),
        )
        return ClosureResult(root_file=root_file, max_depth=depth_cap, edges=edges, cycles=cycles)

    async def _traverse(
        self, view: EdgeSnapshot, root_file: str, max_depth: int
    ) -> Dict[Tuple[int, str, str], bool]:
        """Run the breadth-first walk.

        Returns:
            Mapping of `(depth, source, target)` to its cycle flag.
        """
        adjacency: Dict[str, List[str]] = {}
        recorded: Dict[Tuple[int, str, str], bool] = {}
        queue: Deque[Tuple[str, Tuple[str, ...], int]] = deque([(root_file, (root_file,), 0)])
        queued: Set[Tuple[str, FrozenSet[str]]] = set()
        level = -1

        while queue:
            current, path, depth = queue.popleft()

            if depth != level:
                # Frontier boundary: a cancelled request stops here
                await asyncio.sleep(0)
                level = depth
                queued.clear()
                frontier = {current} | {entry[0] for entry in queue}
                await self._load_adjacency(view, adjacency, frontier)

            for target in adjacency[current]:
                is_cycle = target in path
                key = (depth, current, target)
                recorded[key] = recorded.get(key, False) or is_cycle

                if is_cycle or depth == max_depth:
                    continue

                next_path = path + (target,)
                # Entries with the same file and the same set of visited files expand identically
                marker = (target, frozenset(next_path))
                if marker in queued:
                    continue
                queued.add(marker)
                queue.append((target, next_path, depth + 1))

        return recorded

    async def _load_adjacency(
        self, view: EdgeSnapshot, adjacency: Dict[str, List[str]], files: Set[str]
    ) -> None:
        missing = [name for name in files if name not in adjacency]
        if not missing:
            return
        fetched = await view.edges_from_many(missing)
        for name in missing:
            adjacency[name] = sorted(edge.target_file for edge in fetched.get(name, ()))
