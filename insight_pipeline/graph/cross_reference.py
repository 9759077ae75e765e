"""
Cross-Reference Graph
----------------------
Typed, directed edges between ledger insights:

    relates_to   loose association (synthesis clusters)
    depends_on   must stay acyclic - checked on every insert
    supersedes   retires the target insight without deleting it

The graph is orders of magnitude smaller than the corpus, so traversals are
computed on demand with BFS and never cached.
"""
from __future__ import annotations

from collections import deque
from typing import Iterator, Literal, Optional

from loguru import logger

from insight_pipeline.checkpoint import ProgressStore
from insight_pipeline.errors import CycleError, InvalidLinkError
from insight_pipeline.ledger.extraction_ledger import ExtractionLedger
from insight_pipeline.schemas import CrossReference, Relation

Direction = Literal["out", "in", "both"]


class Neighbors:
    """
    Re-iterable, lazily evaluated view over an insight's neighbours.

    Each iteration walks the current edge list afresh, so the view is finite
    and restartable rather than a one-shot stream.
    """

    def __init__(
        self,
        graph: "CrossReferenceGraph",
        insight_id: str,
        relation: Optional[Relation],
        direction: Direction,
    ) -> None:
        self._graph = graph
        self._id = insight_id
        self._relation = relation
        self._direction = direction

    def __iter__(self) -> Iterator[str]:
        seen: set[str] = set()
        for edge in self._graph.edges(self._relation):
            other = None
            if self._direction in ("out", "both") and edge.from_id == self._id:
                other = edge.to_id
            elif self._direction in ("in", "both") and edge.to_id == self._id:
                other = edge.from_id
            if other is not None and other not in seen:
                seen.add(other)
                yield other

    def __repr__(self) -> str:
        return f"Neighbors({self._id!r}, relation={self._relation}, direction={self._direction!r})"


class CrossReferenceGraph:
    def __init__(self, store: ProgressStore, ledger: ExtractionLedger) -> None:
        self.store = store
        self.ledger = ledger

    # --- Writes ------------------------------------------------------------------

    def link(
        self,
        from_id: str,
        to_id: str,
        relation: Relation | str = Relation.RELATES_TO,
        note: Optional[str] = None,
    ) -> CrossReference:
        """
        Insert an edge. Re-linking an existing (from, to, relation) triple is a
        no-op that returns the stored edge.
        """
        relation = Relation(relation)
        self.ledger.get(from_id)
        self.ledger.get(to_id)

        if from_id == to_id:
            if relation == Relation.DEPENDS_ON:
                raise CycleError(
                    f"{from_id} cannot depend on itself", from_id=from_id, to_id=to_id
                )
            raise InvalidLinkError(
                f"{from_id} cannot {relation.value} itself", from_id=from_id, to_id=to_id
            )

        with self.store.lock:
            for edge in self.store.cross_refs:
                if edge.key == (from_id, to_id, relation):
                    if relation == Relation.SUPERSEDES and self.ledger.get(to_id).retired_by != from_id:
                        self.ledger.retire(to_id, by_id=from_id)
                    return edge

            if relation == Relation.DEPENDS_ON and self._reachable(to_id, from_id, relation):
                raise CycleError(
                    f"depends_on {from_id} -> {to_id} would close a cycle "
                    f"({to_id} already depends on {from_id})",
                    from_id=from_id,
                    to_id=to_id,
                )

            # Retire before the edge is stored: a stored supersedes edge implies
            # a retired target.
            if relation == Relation.SUPERSEDES:
                self.ledger.retire(to_id, by_id=from_id)

            edge = CrossReference(from_id=from_id, to_id=to_id, relation=relation, note=note)
            self.store.cross_refs.append(edge)
            self.store.persist("cross_refs")

        logger.debug(f"[Graph] {from_id} -{relation.value}-> {to_id}")
        return edge

    # --- Reads -------------------------------------------------------------------

    def edges(self, relation: Optional[Relation | str] = None) -> Iterator[CrossReference]:
        wanted = Relation(relation) if relation is not None else None
        for edge in list(self.store.cross_refs):
            if wanted is None or edge.relation == wanted:
                yield edge

    def neighbors(
        self,
        insight_id: str,
        relation: Optional[Relation | str] = None,
        direction: Direction = "both",
    ) -> Neighbors:
        self.ledger.get(insight_id)
        return Neighbors(
            self, insight_id, Relation(relation) if relation is not None else None, direction
        )

    def connected_component(self, insight_id: str) -> list[str]:
        """Every insight transitively linked to `insight_id` (any relation, either direction)."""
        self.ledger.get(insight_id)
        adjacency: dict[str, list[str]] = {}
        for edge in self.edges():
            adjacency.setdefault(edge.from_id, []).append(edge.to_id)
            adjacency.setdefault(edge.to_id, []).append(edge.from_id)

        order = [insight_id]
        seen = {insight_id}
        queue = deque([insight_id])
        while queue:
            current = queue.popleft()
            for nxt in adjacency.get(current, []):
                if nxt not in seen:
                    seen.add(nxt)
                    order.append(nxt)
                    queue.append(nxt)
        return order

    def orphans(self) -> list[str]:
        """Active insights that take part in no edge at all."""
        linked = {e.from_id for e in self.store.cross_refs} | {e.to_id for e in self.store.cross_refs}
        return [i.id for i in self.ledger.list() if i.id not in linked]

    # --- Internals -------------------------------------------------------------------

    def _reachable(self, start: str, target: str, relation: Relation) -> bool:
        """True when `target` is reachable from `start` along `relation` edges."""
        adjacency: dict[str, list[str]] = {}
        for edge in self.edges(relation):
            adjacency.setdefault(edge.from_id, []).append(edge.to_id)

        seen = {start}
        queue = deque([start])
        while queue:
            current = queue.popleft()
            if current == target:
                return True
            for nxt in adjacency.get(current, []):
                if nxt not in seen:
                    seen.add(nxt)
                    queue.append(nxt)
        return False
