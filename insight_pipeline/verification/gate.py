"""
Verification Gate
------------------
Every processed chunk must carry falsifiable, answered claims before it can
be trusted. The gate stores claim -> question -> answer -> verdict records
per chunk and answers one question for the scheduler: is the quota met?

Only Confirmed / Refuted verdicts count toward the quota. Inconclusive
records are kept (they flag the chunk for a revisit) but never help it pass.
"""
from __future__ import annotations

from collections import Counter
from typing import Optional

from loguru import logger

from insight_pipeline.checkpoint import ProgressStore
from insight_pipeline.errors import UnknownChunkError
from insight_pipeline.schemas import Verdict, VerificationRecord

DEFAULT_MINIMUM_QUOTA = 5


class VerificationGate:
    def __init__(self, store: ProgressStore, config: Optional[dict] = None) -> None:
        self.store = store
        config = config or {}
        self.minimum_quota: int = config.get("minimum_quota", DEFAULT_MINIMUM_QUOTA)

    def record(
        self,
        chunk_id: str,
        claim_ref: str,
        question: str,
        answer: str,
        verdict: Verdict | str,
        evidence_ref: Optional[str] = None,
    ) -> VerificationRecord:
        """Append an immutable record to the chunk's verification log."""
        if chunk_id not in self.store.chunks:
            raise UnknownChunkError(f"Unknown chunk: {chunk_id}", chunk_id=chunk_id)

        with self.store.lock:
            rec = VerificationRecord(
                id=f"VR-{len(self.store.verifications) + 1:05d}",
                chunk_id=chunk_id,
                claim_ref=claim_ref,
                question=question,
                answer=answer,
                verdict=Verdict(verdict),
                evidence_ref=evidence_ref,
            )
            self.store.verifications.append(rec)
            self.store.persist("verifications")

        logger.debug(f"[Gate] {rec.id} on {chunk_id}: {rec.verdict.value} | {question[:60]}")
        return rec

    def records(self, chunk_id: str) -> list[VerificationRecord]:
        return [r for r in self.store.verifications if r.chunk_id == chunk_id]

    def tally(self, chunk_id: str) -> dict[str, int]:
        counts = Counter(r.verdict.value for r in self.records(chunk_id))
        return {v.value: counts.get(v.value, 0) for v in Verdict}

    def counted(self, chunk_id: str) -> int:
        """Number of records that count toward the quota."""
        return sum(1 for r in self.records(chunk_id) if r.verdict.counts_toward_quota)

    def quota_met(self, chunk_id: str, minimum: Optional[int] = None) -> bool:
        minimum = self.minimum_quota if minimum is None else minimum
        return self.counted(chunk_id) >= minimum

    def needs_revisit(self, chunk_id: str) -> bool:
        return any(r.verdict is Verdict.INCONCLUSIVE for r in self.records(chunk_id))
