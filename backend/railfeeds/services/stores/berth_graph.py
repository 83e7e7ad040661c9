"""SMART berth connectivity graph with breadth-first route finding."""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime

from railfeeds.services.rail_dto import BerthEdge, BerthNode, berth_key, utc_now

logger = logging.getLogger(__name__)

SEARCH_LIMIT = 50


@dataclass(frozen=True)
class _Graph:
    nodes: dict[str, BerthNode] = field(default_factory=dict)
    edge_count: int = 0
    by_stanox: dict[str, tuple[str, ...]] = field(default_factory=dict)
    areas: frozenset[str] = frozenset()
    loaded_at: datetime | None = None


def _describe(berth: str, stanox: str | None, name: str | None) -> str:
    if name:
        return f"Berth {berth} ({name})"
    if stanox:
        return f"Berth {berth} (STANOX: {stanox})"
    return f"Berth {berth}"


class BerthGraph:
    """Directed graph of train describer berths keyed by ``"<TD>:<berth>"``.

    The graph is built in one pass by ``load`` and swapped in atomically; it is
    never patched edge by edge.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self._clock = clock
        self._graph = _Graph()

    def load(self, edges: Iterable[BerthEdge]) -> int:
        """Rebuild the graph from the full edge set. Returns the node count."""
        forward: dict[str, list[str]] = {}
        details: dict[str, dict[str, str | None]] = {}
        unique_edges: set[tuple[str, str]] = set()

        def touch(key: str, area: str, berth: str) -> dict[str, str | None]:
            forward.setdefault(key, [])
            return details.setdefault(
                key,
                {"area": area, "berth": berth, "stanox": None, "line": None,
                 "platform": None, "name": None},
            )

        for edge in edges:
            source, target = edge.from_key, edge.to_key
            source_info = touch(source, edge.area, edge.from_berth)
            target_info = touch(target, edge.area, edge.to_berth)

            if edge.from_stanox and not source_info["stanox"]:
                source_info["stanox"] = edge.from_stanox
                source_info["line"] = edge.from_line
                source_info["name"] = edge.description
            if edge.to_stanox:
                target_info["stanox"] = edge.to_stanox
                target_info["line"] = edge.to_line or target_info["line"]
                target_info["name"] = edge.description or target_info["name"]
                if edge.platform:
                    target_info["platform"] = edge.platform

            if (source, target) not in unique_edges:
                unique_edges.add((source, target))
                forward[source].append(target)

        # Predecessors are the inverted adjacency.
        reverse: dict[str, list[str]] = {key: [] for key in forward}
        for source, targets in forward.items():
            for target in targets:
                reverse[target].append(source)

        nodes: dict[str, BerthNode] = {}
        by_stanox: dict[str, list[str]] = {}
        for key, info in details.items():
            stanox = info["stanox"]
            nodes[key] = BerthNode(
                berth=info["berth"] or key,
                area=info["area"] or "",
                stanox=stanox,
                line=info["line"],
                platform=info["platform"],
                description=_describe(info["berth"] or key, stanox, info["name"]),
                next_berths=tuple(forward[key]),
                previous_berths=tuple(reverse[key]),
            )
            if stanox:
                by_stanox.setdefault(stanox, []).append(key)

        self._graph = _Graph(
            nodes=nodes,
            edge_count=len(unique_edges),
            by_stanox={k: tuple(v) for k, v in by_stanox.items()},
            areas=frozenset(node.area for node in nodes.values()),
            loaded_at=self._clock(),
        )
        logger.info(
            "Built berth graph: %d berths, %d steps", len(nodes), len(unique_edges)
        )
        return len(nodes)

    @staticmethod
    def key(area: str | None, berth: str) -> str:
        return berth_key(area, berth)

    def node(self, berth_id: str) -> BerthNode | None:
        return self._graph.nodes.get(berth_id.strip().upper())

    def resolve(self, area: str | None, berth: str) -> BerthNode | None:
        return self._graph.nodes.get(berth_key(area, berth))

    def next_berths(self, berth_id: str) -> list[BerthNode]:
        node = self.node(berth_id)
        if node is None:
            return []
        return [self._graph.nodes[key] for key in node.next_berths]

    def previous_berths(self, berth_id: str) -> list[BerthNode]:
        node = self.node(berth_id)
        if node is None:
            return []
        return [self._graph.nodes[key] for key in node.previous_berths]

    def route(self, start_id: str, end_id: str) -> list[BerthNode]:
        """Shortest path (by step count) from start to end, both inclusive.

        Returns an empty list when either berth is unknown or no path exists.
        """
        nodes = self._graph.nodes
        start = start_id.strip().upper()
        end = end_id.strip().upper()
        if start not in nodes or end not in nodes:
            return []
        if start == end:
            return [nodes[start]]

        parents: dict[str, str | None] = {start: None}
        queue = deque([start])
        while queue:
            current = queue.popleft()
            for neighbour in nodes[current].next_berths:
                if neighbour in parents:
                    continue
                parents[neighbour] = current
                if neighbour == end:
                    path: list[str] = []
                    step: str | None = end
                    while step is not None:
                        path.append(step)
                        step = parents[step]
                    return [nodes[key] for key in reversed(path)]
                queue.append(neighbour)
        return []

    def berths_at(self, stanox: str) -> list[BerthNode]:
        return [self._graph.nodes[key] for key in self._graph.by_stanox.get(stanox, ())]

    def search(self, query: str, limit: int = SEARCH_LIMIT) -> list[BerthNode]:
        needle = query.strip().lower()
        if not needle:
            return []
        matches: list[BerthNode] = []
        for key, node in self._graph.nodes.items():
            if (
                needle in key.lower()
                or needle in node.description.lower()
                or (node.stanox and needle in node.stanox)
            ):
                matches.append(node)
                if len(matches) >= limit:
                    break
        return matches

    def stats(self) -> dict[str, object]:
        graph = self._graph
        return {
            "berths": len(graph.nodes),
            "steps": graph.edge_count,
            "areas": len(graph.areas),
            "locations": len(graph.by_stanox),
            "loaded_at": graph.loaded_at,
        }

    def __len__(self) -> int:
        return len(self._graph.nodes)
