"""
Derived progress.

ProgressState is recomputed from the authoritative entity stores on every
call and never written back, so the reported progress cannot drift from the
chunks, insights and edges that actually exist.
"""
from __future__ import annotations

from collections import Counter

from insight_pipeline.checkpoint import ProgressStore
from insight_pipeline.coverage.verifier import covered_lines, percent
from insight_pipeline.schemas import ChunkStatus, DocumentProgress, InsightType, ProgressState


def document_progress(store: ProgressStore, doc_id: str) -> DocumentProgress:
    doc = store.documents[doc_id]
    chunks = [c for c in store.chunks.values() if c.source_id == doc_id]
    by_status = Counter(c.status for c in chunks)
    complete = [c for c in chunks if c.status == ChunkStatus.COMPLETE]
    lines = covered_lines(complete, doc.total_lines)
    return DocumentProgress(
        document_id=doc_id,
        total_lines=doc.total_lines,
        chunks_total=len(chunks),
        chunks_pending=by_status[ChunkStatus.PENDING],
        chunks_in_progress=by_status[ChunkStatus.IN_PROGRESS],
        chunks_complete=by_status[ChunkStatus.COMPLETE],
        chunks_failed=by_status[ChunkStatus.FAILED],
        lines_covered=lines,
        percent_complete=percent(lines, doc.total_lines),
    )


def derive_progress(store: ProgressStore) -> ProgressState:
    with store.lock:
        by_type = Counter(i.type for i in store.insights.values())
        return ProgressState(
            documents=[document_progress(store, doc_id) for doc_id in sorted(store.documents)],
            insights_total_by_type={t.value: by_type.get(t, 0) for t in InsightType},
            retired_total=sum(1 for i in store.insights.values() if i.retired),
            cross_refs_total=len(store.cross_refs),
            verification_total=len(store.verifications),
        )
