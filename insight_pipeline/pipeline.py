"""
Extraction Pipeline
--------------------
Wires the components around one Progress Store and drives the extraction
loop for a document:

    1. next_dispatchable()     - lowest-index Pending or Failed chunk
    2. begin()                 - Pending|Failed -> InProgress (single dispatch)
    3. extractor.extract()     - bounded by a timeout; timeout/error -> fail()
    4. ledger.submit()         - dedup + provenance for every candidate insight
       graph.link()            - candidate links, resolved to ledger ids
       gate.record()           - verification records
    5. complete()              - only once the verification quota is met;
                                 otherwise the extractor is asked again

Every step is persisted before the next one starts, so a crash at any point
resumes from the last durable state (run `recover` first).
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from loguru import logger
from rich.console import Console
from rich.progress import BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TextColumn

from insight_pipeline.checkpoint import ProgressStore
from insight_pipeline.chunking.scheduler import ChunkScheduler
from insight_pipeline.coverage.verifier import CoverageVerifier
from insight_pipeline.errors import (
    ExtractorError,
    InvalidLinkError,
    InvalidTransitionError,
    PipelineError,
    QuotaNotMetError,
)
from insight_pipeline.extraction.base_extractor import BaseExtractor
from insight_pipeline.graph.cross_reference import CrossReferenceGraph
from insight_pipeline.ledger.extraction_ledger import ExtractionLedger, SubmitResult
from insight_pipeline.registry.source_registry import SourceRegistry
from insight_pipeline.schemas import (
    CandidateLink,
    Chunk,
    ChunkStatus,
    CrossReference,
    ExtractionRequest,
    ExtractionResult,
    InsightType,
    SourceRef,
    Verdict,
    VerificationRecord,
)
from insight_pipeline.verification.gate import VerificationGate

console = Console(stderr=True)


@dataclass
class ChunkOutcome:
    chunk_id: str
    status: ChunkStatus
    attempts: int = 0
    insights_created: int = 0
    insights_merged: int = 0
    verification_records: int = 0
    reason: Optional[str] = None


@dataclass
class RunSummary:
    document_id: str
    outcomes: list[ChunkOutcome] = field(default_factory=list)
    elapsed_s: float = 0.0

    @property
    def completed(self) -> int:
        return sum(1 for o in self.outcomes if o.status == ChunkStatus.COMPLETE)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if o.status == ChunkStatus.FAILED)

    def to_dict(self) -> dict:
        return {
            "document_id": self.document_id,
            "completed": self.completed,
            "failed": self.failed,
            "elapsed_s": round(self.elapsed_s, 3),
            "outcomes": [
                {
                    "chunk_id": o.chunk_id,
                    "status": o.status.value,
                    "attempts": o.attempts,
                    "insights_created": o.insights_created,
                    "insights_merged": o.insights_merged,
                    "verification_records": o.verification_records,
                    "reason": o.reason,
                }
                for o in self.outcomes
            ],
        }


class ExtractionPipeline:
    """
    Usage:
        pipeline = ExtractionPipeline.from_config(cfg)
        pipeline.registry.register("docs/advisory-1.md")
        pipeline.scheduler.plan("advisory-1")
        summary = asyncio.run(pipeline.run_document("advisory-1", extractor))
    """

    def __init__(self, store: ProgressStore, config: Optional[dict] = None) -> None:
        self.config = config or {}
        self.store = store
        self.registry = SourceRegistry(store)
        self.gate = VerificationGate(store, self.config.get("verification", {}))
        self.scheduler = ChunkScheduler(store, self.gate)
        self.ledger = ExtractionLedger(store, self.config.get("dedup", {}))
        self.graph = CrossReferenceGraph(store, self.ledger)
        self.verifier = CoverageVerifier(store)

        ext_cfg = self.config.get("extractor", {})
        self.timeout_s: float = float(ext_cfg.get("timeout_seconds", 120.0))
        self.max_attempts: int = int(ext_cfg.get("max_attempts", 2))

    @classmethod
    def from_config(cls, config: dict, store_dir: Optional[str | Path] = None) -> "ExtractionPipeline":
        return cls(ProgressStore.from_config(config, store_dir), config)

    # --- Chunk-scoped operations -------------------------------------------------

    def active_chunk(self, chunk_id: str) -> Chunk:
        """The chunk, provided it is currently InProgress."""
        chunk = self.scheduler.get(chunk_id)
        if chunk.status != ChunkStatus.IN_PROGRESS:
            raise InvalidTransitionError(
                f"Chunk {chunk_id} is {chunk.status.value}; begin it before submitting results",
                chunk_id=chunk_id,
                status=chunk.status.value,
            )
        return chunk

    def submit_insight(
        self, chunk_id: str, insight_type: InsightType | str, fields: dict[str, str]
    ) -> SubmitResult:
        chunk = self.active_chunk(chunk_id)
        ref = SourceRef(
            source_id=chunk.source_id,
            start_line=chunk.start_line,
            end_line=chunk.end_line,
            chunk_id=chunk.id,
        )
        return self.ledger.submit(insight_type, fields, ref)

    def record_verification(
        self,
        chunk_id: str,
        question: str,
        answer: str,
        verdict: Verdict | str,
        claim_ref: str = "",
        evidence_ref: Optional[str] = None,
    ) -> VerificationRecord:
        self.active_chunk(chunk_id)
        return self.gate.record(chunk_id, claim_ref, question, answer, verdict, evidence_ref)

    def build_request(self, chunk: Chunk) -> ExtractionRequest:
        context_lines = chunk.overlap_with_prev.length if chunk.overlap_with_prev else 0
        body_start = chunk.start_line + context_lines
        body, context = "", ""
        doc = self.registry.get(chunk.source_id)
        if Path(doc.path).is_file():
            body, context = self.registry.read_window(
                chunk.source_id, body_start, chunk.end_line, context_lines
            )
        else:
            logger.warning(f"[Pipeline] {doc.path} missing - extractor gets line numbers only")
        return ExtractionRequest(
            document_id=chunk.source_id,
            chunk_id=chunk.id,
            start_line=chunk.start_line,
            end_line=chunk.end_line,
            overlap_context_lines=context_lines,
            text=body,
            context=context,
        )

    def apply_result(self, chunk_id: str, result: ExtractionResult) -> ChunkOutcome:
        """Submit an extractor result for an InProgress chunk (no completion)."""
        outcome = ChunkOutcome(chunk_id=chunk_id, status=ChunkStatus.IN_PROGRESS)
        resolved: list[str] = []
        for candidate in result.insights:
            submitted = self.submit_insight(chunk_id, candidate.type, candidate.fields)
            resolved.append(submitted.insight.id)
            if submitted.created:
                outcome.insights_created += 1
            else:
                outcome.insights_merged += 1

        for link in result.links:
            self._apply_link(link, resolved)

        for rec in result.verification_records:
            claim = self._resolve_ref(rec.claim_ref, resolved)
            self.record_verification(
                chunk_id, rec.question, rec.answer, rec.verdict, claim, rec.evidence_ref
            )
            outcome.verification_records += 1
        return outcome

    # --- Extraction loop -------------------------------------------------------------

    async def process_chunk(self, chunk: Chunk, extractor: BaseExtractor) -> ChunkOutcome:
        """
        Begin a chunk and drive it to Complete or Failed.

        The chunk never stays InProgress on return: an unexpected error
        outside the extractor call fails the chunk and is then re-raised.
        """
        chunk = self.scheduler.begin(chunk.id)
        total = ChunkOutcome(chunk_id=chunk.id, status=ChunkStatus.IN_PROGRESS)
        try:
            return await self._extract_until_verified(chunk, extractor, total)
        except Exception as exc:
            if self.scheduler.get(chunk.id).status == ChunkStatus.IN_PROGRESS:
                self._fail(chunk.id, total, f"{type(exc).__name__}: {exc}")
            raise

    async def _extract_until_verified(
        self, chunk: Chunk, extractor: BaseExtractor, total: ChunkOutcome
    ) -> ChunkOutcome:
        request = self.build_request(chunk)

        for attempt in range(1, self.max_attempts + 1):
            total.attempts = attempt
            try:
                result = await asyncio.wait_for(extractor.extract(request), timeout=self.timeout_s)
            except asyncio.TimeoutError:
                return self._fail(chunk.id, total, f"extractor timed out after {self.timeout_s:g}s")
            except ExtractorError as exc:
                return self._fail(chunk.id, total, exc.message)
            except Exception as exc:
                logger.error(f"[Pipeline] {extractor.name} raised on {chunk.id}: {exc!r}")
                return self._fail(chunk.id, total, f"{extractor.name} raised {type(exc).__name__}: {exc}")

            try:
                applied = self.apply_result(chunk.id, result)
            except PipelineError as exc:
                return self._fail(chunk.id, total, f"{exc.code}: {exc.message}")
            total.insights_created += applied.insights_created
            total.insights_merged += applied.insights_merged
            total.verification_records += applied.verification_records

            try:
                self.scheduler.complete(chunk.id)
            except QuotaNotMetError as exc:
                logger.info(f"[Pipeline] {chunk.id} attempt {attempt}: {exc.message}")
                continue
            total.status = ChunkStatus.COMPLETE
            return total

        return self._fail(
            chunk.id,
            total,
            f"verification quota not met after {self.max_attempts} extractor attempt(s)",
        )

    async def run_document(
        self,
        doc_id: str,
        extractor: BaseExtractor,
        continue_on_failure: bool = False,
        max_chunks: Optional[int] = None,
        show_progress: bool = False,
    ) -> RunSummary:
        """
        Process a document's open chunks in index order until done or a chunk fails.

        Failed chunks from earlier runs are retried in their place in the order;
        with `continue_on_failure` each chunk is still attempted once per run.
        """
        summary = RunSummary(document_id=doc_id)
        t0 = time.perf_counter()
        open_chunks = [
            c for c in self.scheduler.chunks(doc_id)
            if c.status in (ChunkStatus.PENDING, ChunkStatus.FAILED)
        ]
        limit = len(open_chunks) if max_chunks is None else min(max_chunks, len(open_chunks))
        attempted: set[str] = set()

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            console=console,
            disable=not show_progress,
        ) as progress:
            task = progress.add_task(f"Extracting {doc_id}", total=limit)
            while len(summary.outcomes) < limit:
                chunk = self.scheduler.next_dispatchable(doc_id, skip=attempted)
                if chunk is None:
                    break
                attempted.add(chunk.id)
                outcome = await self.process_chunk(chunk, extractor)
                summary.outcomes.append(outcome)
                progress.advance(task)
                if outcome.status == ChunkStatus.FAILED and not continue_on_failure:
                    logger.warning(f"[Pipeline] Stopping {doc_id} at {chunk.id}: {outcome.reason}")
                    break

        summary.elapsed_s = time.perf_counter() - t0
        logger.info(
            f"[Pipeline] {doc_id}: {summary.completed} complete / {summary.failed} failed "
            f"in {summary.elapsed_s:.1f}s"
        )
        return summary

    # --- Internals -------------------------------------------------------------------

    def _fail(self, chunk_id: str, outcome: ChunkOutcome, reason: str) -> ChunkOutcome:
        self.scheduler.fail(chunk_id, reason)
        outcome.status = ChunkStatus.FAILED
        outcome.reason = reason
        return outcome

    @staticmethod
    def _resolve_ref(ref: str, resolved: list[str]) -> str:
        if ref.startswith("#"):
            try:
                return resolved[int(ref[1:])]
            except (ValueError, IndexError):
                raise InvalidLinkError(
                    f"Reference {ref} does not point at an insight in this result", ref=ref
                ) from None
        return ref

    def _apply_link(self, link: CandidateLink, resolved: list[str]) -> CrossReference:
        return self.graph.link(
            self._resolve_ref(link.from_ref, resolved),
            self._resolve_ref(link.to_ref, resolved),
            link.relation,
            note=link.note,
        )
