"""
Coverage Verifier
------------------
Certifies that a document was processed without gaps, without overlap beyond
the planned window, and without silent truncation.

Algorithm: take the document's Complete chunks sorted by start_line and walk
them, tracking the furthest line covered so far. Every violation becomes an
itemised finding; nothing here ever raises - a document can legitimately be
Incomplete in the middle of a run.
"""
from __future__ import annotations

from loguru import logger

from insight_pipeline.checkpoint import ProgressStore
from insight_pipeline.errors import UnknownDocumentError
from insight_pipeline.schemas import (
    Certificate,
    CertificationStatus,
    Chunk,
    ChunkStatus,
    CorpusCertificate,
    CoverageGap,
    CoverageOutOfRange,
    CoverageOverlapExcess,
    SourceDocument,
)


def covered_lines(chunks: list[Chunk], total_lines: int) -> int:
    """Size of the union of the chunks' ranges, clipped to [1, total_lines]."""
    covered = 0
    frontier = 0
    for chunk in sorted(chunks, key=lambda c: (c.start_line, c.end_line)):
        start = max(chunk.start_line, frontier + 1, 1)
        end = min(chunk.end_line, total_lines)
        if end >= start:
            covered += end - start + 1
        frontier = max(frontier, min(chunk.end_line, total_lines))
    return covered


def percent(part: int, whole: int) -> float:
    if whole <= 0:
        return 100.0
    return round(part / whole * 100, 2)


class CoverageVerifier:
    def __init__(self, store: ProgressStore) -> None:
        self.store = store

    def certify(self, doc_id: str) -> Certificate:
        doc = self._document(doc_id)
        all_chunks = [c for c in self.store.chunks.values() if c.source_id == doc_id]
        complete = sorted(
            (c for c in all_chunks if c.status == ChunkStatus.COMPLETE),
            key=lambda c: (c.start_line, c.end_line),
        )
        max_overlap = doc.overlap_size if doc.overlap_size is not None else self.store.overlap_size

        findings = self._walk(doc, complete, max_overlap)
        status = CertificationStatus.INCOMPLETE if findings else CertificationStatus.CERTIFIED

        cert = Certificate(
            document_id=doc_id,
            status=status,
            findings=findings,
            percent_complete=percent(covered_lines(complete, doc.total_lines), doc.total_lines),
            chunks_complete=len(complete),
            chunks_total=len(all_chunks),
        )
        logger.debug(
            f"[Coverage] {doc_id}: {cert.status.value} | {cert.percent_complete:.2f}% "
            f"| {len(findings)} finding(s)"
        )
        return cert

    def certify_corpus(self) -> CorpusCertificate:
        certificates = [self.certify(doc_id) for doc_id in sorted(self.store.documents)]
        total = sum(self.store.documents[c.document_id].total_lines for c in certificates)
        covered = sum(
            c.percent_complete / 100 * self.store.documents[c.document_id].total_lines
            for c in certificates
        )
        all_certified = all(c.status == CertificationStatus.CERTIFIED for c in certificates)
        return CorpusCertificate(
            status=CertificationStatus.CERTIFIED if all_certified else CertificationStatus.INCOMPLETE,
            documents=certificates,
            percent_complete=round(covered / total * 100, 2) if total else 100.0,
        )

    # --- Internals -------------------------------------------------------------------

    def _walk(self, doc: SourceDocument, complete: list[Chunk], max_overlap: int) -> list:
        total = doc.total_lines
        findings: list = []

        if total == 0:
            return findings
        if not complete:
            return [CoverageGap(from_line=1, to_line=total)]

        # Furthest covered line and the chunk that reached it, plus the one
        # before it: a line may sit in at most two chunks.
        frontier = 0
        frontier_chunk: Chunk | None = None
        older_frontier = 0
        older_chunk: Chunk | None = None
        for chunk in complete:
            if chunk.end_line > total:
                findings.append(
                    CoverageOutOfRange(chunk_id=chunk.id, end_line=chunk.end_line, total_lines=total)
                )
            if chunk.start_line > frontier + 1:
                findings.append(CoverageGap(from_line=frontier + 1, to_line=chunk.start_line - 1))
            elif frontier_chunk is not None:
                overlap = min(frontier, chunk.end_line) - chunk.start_line + 1
                if overlap > max_overlap:
                    findings.append(
                        CoverageOverlapExcess(
                            first_chunk=frontier_chunk.id,
                            second_chunk=chunk.id,
                            overlap_lines=overlap,
                            allowed=max_overlap,
                        )
                    )
                elif older_chunk is not None and older_frontier >= chunk.start_line:
                    findings.append(
                        CoverageOverlapExcess(
                            first_chunk=older_chunk.id,
                            second_chunk=chunk.id,
                            overlap_lines=min(older_frontier, chunk.end_line) - chunk.start_line + 1,
                            allowed=0,
                        )
                    )
            if chunk.end_line > frontier:
                older_frontier, older_chunk = frontier, frontier_chunk
                frontier = chunk.end_line
                frontier_chunk = chunk

        if frontier < total:
            findings.append(CoverageGap(from_line=frontier + 1, to_line=total))
        return findings

    def _document(self, doc_id: str) -> SourceDocument:
        try:
            return self.store.documents[doc_id]
        except KeyError:
            raise UnknownDocumentError(
                f"Unknown document: {doc_id}", document_id=doc_id
            ) from None
