"""
Chunk Scheduler
----------------
Deterministic windowing plus the per-chunk state machine:

    Pending -> InProgress -> Complete
                          -> Failed -> InProgress (retry)

Rules enforced here:
  - `begin` only from Pending/Failed, and only while no other chunk of the
    same document is InProgress (one extraction window in flight per doc).
  - `complete` only from InProgress and only once the Verification Gate
    reports the chunk's quota as met. A chunk never leaves Complete.
  - `plan` is idempotent for identical parameters and refuses different ones.

Processing order is strictly sequential per document: later chunks rely on
the overlap context established by earlier ones. Documents are independent.
"""
from __future__ import annotations

from typing import Collection, Optional

from loguru import logger

from insight_pipeline.checkpoint import ProgressStore
from insight_pipeline.chunking.windowing import iter_windows, validate_window
from insight_pipeline.errors import (
    ConfigDriftError,
    DoubleDispatchError,
    InvalidTransitionError,
    QuotaNotMetError,
    UnknownChunkError,
    UnknownDocumentError,
)
from insight_pipeline.schemas import Chunk, ChunkStatus, SourceDocument
from insight_pipeline.utils.helpers import utcnow
from insight_pipeline.verification.gate import VerificationGate

INTERRUPTED_REASON = "processing interrupted"


class ChunkScheduler:
    """
    Usage:
        scheduler = ChunkScheduler(store, gate)
        scheduler.plan("doc-a")
        chunk = scheduler.next_pending("doc-a")
        scheduler.begin(chunk.id)
        ...                                # extractor + gate.record(...)
        scheduler.complete(chunk.id)
    """

    def __init__(self, store: ProgressStore, gate: VerificationGate) -> None:
        self.store = store
        self.gate = gate

    # --- Planning ----------------------------------------------------------------

    def plan(
        self,
        document: SourceDocument | str,
        chunk_size: Optional[int] = None,
        overlap: Optional[int] = None,
    ) -> list[Chunk]:
        """
        Create (or return the existing) ordered chunks for a document.

        Omitted parameters fall back to the document's own window when it is
        already planned, and to the store's window otherwise.
        """
        doc_id = document if isinstance(document, str) else document.id

        with self.store.lock:
            doc = self._document(doc_id)
            if chunk_size is None:
                chunk_size = doc.chunk_size if doc.planned else self.store.chunk_size
            if overlap is None:
                overlap = doc.overlap_size if doc.planned else self.store.overlap_size
            validate_window(chunk_size, overlap)

            existing = self.chunks(doc_id)
            if doc.planned or existing:
                if (doc.chunk_size, doc.overlap_size) != (chunk_size, overlap):
                    raise ConfigDriftError(
                        f"Document '{doc_id}' was planned with chunk_size={doc.chunk_size}, "
                        f"overlap={doc.overlap_size}; re-plan requested chunk_size={chunk_size}, "
                        f"overlap={overlap}",
                        document_id=doc_id,
                    )
                return existing

            chunks = [
                Chunk(
                    id=Chunk.make_id(doc_id, w.index),
                    source_id=doc_id,
                    index=w.index,
                    start_line=w.start_line,
                    end_line=w.end_line,
                    overlap_with_prev=w.overlap_with_prev,
                )
                for w in iter_windows(doc.total_lines, chunk_size, overlap)
            ]
            for chunk in chunks:
                self.store.chunks[chunk.id] = chunk
            self.store.documents[doc_id] = doc.model_copy(
                update={"chunk_size": chunk_size, "overlap_size": overlap}
            )
            self.store.persist("chunks", "documents")

        logger.info(
            f"[Scheduler] Planned '{doc_id}' | {doc.total_lines:,} lines | "
            f"chunk_size={chunk_size} overlap={overlap} -> {len(chunks)} chunk(s)"
        )
        return chunks

    # --- Queries -----------------------------------------------------------------

    def get(self, chunk_id: str) -> Chunk:
        try:
            return self.store.chunks[chunk_id]
        except KeyError:
            raise UnknownChunkError(f"Unknown chunk: {chunk_id}", chunk_id=chunk_id) from None

    def chunks(self, doc_id: str, status: Optional[ChunkStatus] = None) -> list[Chunk]:
        found = [
            c for c in self.store.chunks.values()
            if c.source_id == doc_id and (status is None or c.status == status)
        ]
        return sorted(found, key=lambda c: c.index)

    def next_pending(self, doc_id: str) -> Optional[Chunk]:
        """Lowest-index Pending chunk, or None when nothing is left to dispatch."""
        self._document(doc_id)
        for chunk in self.chunks(doc_id):
            if chunk.status == ChunkStatus.PENDING:
                return chunk
        return None

    def next_dispatchable(self, doc_id: str, skip: Collection[str] = ()) -> Optional[Chunk]:
        """
        Lowest-index chunk that may begin (Pending, or Failed for a retry).

        A Failed chunk is returned ahead of any later Pending one, so a driver
        loop never moves past a window whose extraction did not complete.
        """
        self._document(doc_id)
        for chunk in self.chunks(doc_id):
            if chunk.id in skip:
                continue
            if chunk.status in (ChunkStatus.PENDING, ChunkStatus.FAILED):
                return chunk
        return None

    # --- Transitions ---------------------------------------------------------------

    def begin(self, chunk_id: str) -> Chunk:
        with self.store.lock:
            chunk = self.get(chunk_id)
            if chunk.status not in (ChunkStatus.PENDING, ChunkStatus.FAILED):
                raise DoubleDispatchError(
                    f"Chunk {chunk_id} is {chunk.status.value}; only Pending or Failed chunks can begin",
                    chunk_id=chunk_id,
                    status=chunk.status.value,
                )
            active = self.chunks(chunk.source_id, ChunkStatus.IN_PROGRESS)
            if active:
                raise DoubleDispatchError(
                    f"Document '{chunk.source_id}' already has {active[0].id} in progress",
                    chunk_id=chunk_id,
                    active_chunk_id=active[0].id,
                )
            chunk = self._transition(
                chunk, ChunkStatus.IN_PROGRESS, failure_reason=None, attempts=chunk.attempts + 1
            )

        logger.info(
            f"[Scheduler] Begin {chunk_id} | lines {chunk.start_line}-{chunk.end_line} "
            f"| attempt {chunk.attempts}"
        )
        return chunk

    def complete(self, chunk_id: str) -> Chunk:
        with self.store.lock:
            chunk = self.get(chunk_id)
            if chunk.status == ChunkStatus.COMPLETE:
                return chunk
            if chunk.status != ChunkStatus.IN_PROGRESS:
                raise InvalidTransitionError(
                    f"Chunk {chunk_id} is {chunk.status.value}; only InProgress chunks can complete",
                    chunk_id=chunk_id,
                    status=chunk.status.value,
                )
            if not self.gate.quota_met(chunk_id):
                counted = self.gate.counted(chunk_id)
                raise QuotaNotMetError(
                    f"Chunk {chunk_id} has {counted} Confirmed/Refuted verification record(s); "
                    f"{self.gate.minimum_quota} required",
                    chunk_id=chunk_id,
                    counted=counted,
                    required=self.gate.minimum_quota,
                )
            chunk = self._transition(chunk, ChunkStatus.COMPLETE)

        logger.info(f"[Scheduler] Complete {chunk_id}")
        return chunk

    def fail(self, chunk_id: str, reason: str) -> Chunk:
        with self.store.lock:
            chunk = self.get(chunk_id)
            if chunk.status != ChunkStatus.IN_PROGRESS:
                raise InvalidTransitionError(
                    f"Chunk {chunk_id} is {chunk.status.value}; only InProgress chunks can fail",
                    chunk_id=chunk_id,
                    status=chunk.status.value,
                )
            chunk = self._transition(chunk, ChunkStatus.FAILED, failure_reason=reason)

        logger.warning(f"[Scheduler] Failed {chunk_id}: {reason}")
        return chunk

    def recover_interrupted(self) -> list[Chunk]:
        """Mark chunks left InProgress by a crashed run as Failed (retryable)."""
        with self.store.lock:
            stuck = [c for c in self.store.chunks.values() if c.status == ChunkStatus.IN_PROGRESS]
            recovered = [
                self._transition(c, ChunkStatus.FAILED, failure_reason=INTERRUPTED_REASON, persist=False)
                for c in stuck
            ]
            if recovered:
                self.store.persist("chunks")

        if recovered:
            logger.warning(f"[Scheduler] Recovered {len(recovered)} interrupted chunk(s)")
        return recovered

    # --- Internals -------------------------------------------------------------------

    def _document(self, doc_id: str) -> SourceDocument:
        try:
            return self.store.documents[doc_id]
        except KeyError:
            raise UnknownDocumentError(
                f"Unknown document: {doc_id}", document_id=doc_id
            ) from None

    def _transition(
        self, chunk: Chunk, status: ChunkStatus, persist: bool = True, **updates
    ) -> Chunk:
        updated = chunk.model_copy(update={"status": status, "updated_at": utcnow(), **updates})
        self.store.chunks[chunk.id] = updated
        if persist:
            self.store.persist("chunks")
        return updated
