"""
Extraction Ledger
------------------
Typed, deduplicated, provenance-preserving store of insights.

The same real-world insight re-derived from an overlap region or a later
synthesis pass must collapse to ONE id. `submit` therefore runs
dedup-check-then-insert under the store lock (single writer): either the
key is found and the new source_ref is appended, or the next sequential id
for the type is allocated.

Records are append-only apart from source_ref growth and retirement via a
`supersedes` cross-reference.
"""
from __future__ import annotations

from typing import Mapping, NamedTuple, Optional

from loguru import logger

from insight_pipeline.checkpoint import ProgressStore
from insight_pipeline.errors import InvalidInsightError, UnknownInsightError
from insight_pipeline.ledger.dedup import compute_dedup_key, identity_fields_from_config
from insight_pipeline.schemas import Insight, InsightType, SourceRef
from insight_pipeline.utils.helpers import utcnow


class SubmitResult(NamedTuple):
    insight: Insight
    created: bool


class ExtractionLedger:
    def __init__(self, store: ProgressStore, config: Optional[dict] = None) -> None:
        self.store = store
        self.identity_fields = identity_fields_from_config(config)
        # (type, dedup_key) -> insight id
        self._index: dict[tuple[InsightType, str], str] = {
            (i.type, i.dedup_key): i.id for i in store.insights.values()
        }

    # --- Writes ------------------------------------------------------------------

    def submit(
        self,
        insight_type: InsightType | str,
        fields: Mapping[str, str],
        source_ref: SourceRef,
    ) -> SubmitResult:
        """Merge into an existing record or create a new one."""
        insight_type = parse_insight_type(insight_type)
        clean = {str(k): str(v) for k, v in fields.items()}
        key = compute_dedup_key(insight_type, clean, self.identity_fields[insight_type])

        with self.store.lock:
            existing_id = self._index.get((insight_type, key))
            if existing_id is not None:
                current = self.store.insights[existing_id]
                merged = current.model_copy(
                    update={
                        "source_refs": [*current.source_refs, source_ref],
                        "updated_at": utcnow(),
                    }
                )
                self.store.insights[existing_id] = merged
                self.store.persist("insights")
                logger.debug(
                    f"[Ledger] Merged into {existing_id} | refs={len(merged.source_refs)} "
                    f"| from {source_ref.source_id}:{source_ref.start_line}-{source_ref.end_line}"
                )
                return SubmitResult(merged, False)

            insight = Insight(
                id=self._next_id(insight_type),
                type=insight_type,
                dedup_key=key,
                fields=clean,
                source_refs=[source_ref],
            )
            self.store.insights[insight.id] = insight
            self._index[(insight_type, key)] = insight.id
            self.store.persist("insights")

        logger.info(f"[Ledger] New {insight.id} ({insight_type.value}) from {source_ref.source_id}")
        return SubmitResult(insight, True)

    def retire(self, insight_id: str, by_id: str) -> Insight:
        """Mark an insight as superseded; it stays in the ledger for traceability."""
        with self.store.lock:
            current = self.get(insight_id)
            self.get(by_id)
            retired = current.model_copy(update={"retired_by": by_id, "updated_at": utcnow()})
            self.store.insights[insight_id] = retired
            self.store.persist("insights")
        logger.info(f"[Ledger] {insight_id} retired (superseded by {by_id})")
        return retired

    # --- Reads -------------------------------------------------------------------

    def get(self, insight_id: str) -> Insight:
        try:
            return self.store.insights[insight_id]
        except KeyError:
            raise UnknownInsightError(
                f"Unknown insight: {insight_id}", insight_id=insight_id
            ) from None

    def exists(self, insight_id: str) -> bool:
        return insight_id in self.store.insights

    def find_by_dedup_key(self, insight_type: InsightType | str, key: str) -> Optional[Insight]:
        insight_id = self._index.get((parse_insight_type(insight_type), key))
        return self.store.insights[insight_id] if insight_id else None

    def dedup_key_for(self, insight_type: InsightType | str, fields: Mapping[str, str]) -> str:
        insight_type = parse_insight_type(insight_type)
        return compute_dedup_key(insight_type, fields, self.identity_fields[insight_type])

    def list(
        self,
        insight_type: Optional[InsightType | str] = None,
        filters: Optional[Mapping[str, str]] = None,
        include_retired: bool = False,
    ) -> list[Insight]:
        """Insights in id order, optionally filtered by type and exact field values."""
        wanted = parse_insight_type(insight_type) if insight_type is not None else None
        found = []
        for insight in self.store.insights.values():
            if wanted is not None and insight.type != wanted:
                continue
            if insight.retired and not include_retired:
                continue
            if filters and any(insight.fields.get(k) != v for k, v in filters.items()):
                continue
            found.append(insight)
        return sorted(found, key=lambda i: (i.type.prefix, i.sequence))

    def count(self, insight_type: InsightType | str) -> int:
        wanted = parse_insight_type(insight_type)
        return sum(1 for i in self.store.insights.values() if i.type == wanted)

    # --- Internals -------------------------------------------------------------------

    def _next_id(self, insight_type: InsightType) -> str:
        highest = max(
            (i.sequence for i in self.store.insights.values() if i.type == insight_type),
            default=0,
        )
        return f"{insight_type.prefix}-{highest + 1:03d}"


def parse_insight_type(value: str) -> InsightType:
    """Accept the enum value or its id prefix ("UserJourney", "UJ")."""
    try:
        return InsightType(value)
    except ValueError:
        raise InvalidInsightError(f"Unknown insight type: {value}", type=value) from None
