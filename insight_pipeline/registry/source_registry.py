"""
Source Registry
----------------
Catalogs input documents (path + total line count) and reads the text
windows the Extractor is shown.

A document's line count is frozen as soon as it has chunks: chunk boundaries
are derived from it, so a changed file must be re-registered under a new id.
"""
from __future__ import annotations

from itertools import islice
from pathlib import Path
from typing import Optional

from loguru import logger

from insight_pipeline.checkpoint import ProgressStore
from insight_pipeline.errors import SourceDriftError, UnknownDocumentError
from insight_pipeline.schemas import SourceDocument
from insight_pipeline.utils.helpers import count_lines, slugify


class SourceRegistry:
    def __init__(self, store: ProgressStore) -> None:
        self.store = store

    # --- Registration -------------------------------------------------------------

    def register(self, path: str | Path, doc_id: Optional[str] = None) -> SourceDocument:
        """Count the file's lines and register it (id defaults to the file stem)."""
        path = Path(path)
        if not path.is_file():
            raise FileNotFoundError(f"Source document not found: {path}")
        return self.register_lines(doc_id or slugify(path.stem), str(path), count_lines(path))

    def register_lines(self, doc_id: str, path: str, total_lines: int) -> SourceDocument:
        with self.store.lock:
            existing = self.store.documents.get(doc_id)
            if existing is not None:
                if existing.total_lines == total_lines and existing.path == path:
                    return existing
                if self._has_chunks(doc_id):
                    raise SourceDriftError(
                        f"Document '{doc_id}' already has chunks for {existing.total_lines} lines "
                        f"({existing.path}); refusing to change it to {total_lines} lines ({path})",
                        document_id=doc_id,
                    )
                doc = existing.model_copy(update={"path": path, "total_lines": total_lines})
                logger.info(f"[Registry] Updated '{doc_id}' -> {total_lines} lines")
            else:
                doc = SourceDocument(id=doc_id, path=path, total_lines=total_lines)
                logger.info(f"[Registry] Registered '{doc_id}' | {total_lines:,} lines | {path}")

            self.store.documents[doc_id] = doc
            self.store.persist("documents")
            return doc

    # --- Lookup -------------------------------------------------------------------

    def get(self, doc_id: str) -> SourceDocument:
        try:
            return self.store.documents[doc_id]
        except KeyError:
            raise UnknownDocumentError(
                f"Unknown document: {doc_id}", document_id=doc_id
            ) from None

    def list(self) -> list[SourceDocument]:
        return sorted(self.store.documents.values(), key=lambda d: d.id)

    def _has_chunks(self, doc_id: str) -> bool:
        return any(c.source_id == doc_id for c in self.store.chunks.values())

    # --- Text Windows ---------------------------------------------------------------

    def read_window(
        self, doc_id: str, start_line: int, end_line: int, context_lines: int = 0
    ) -> tuple[str, str]:
        """
        Return (body, context) for the 1-based inclusive range.

        `context` is the `context_lines` lines immediately before `start_line`,
        i.e. the overlap shared with the previous chunk.
        """
        doc = self.get(doc_id)
        ctx_start = max(start_line - context_lines, 1)
        with open(doc.path, "r", encoding="utf-8", errors="replace") as f:
            lines = list(islice(f, ctx_start - 1, end_line))
        split = start_line - ctx_start
        context = "".join(lines[:split])
        body = "".join(lines[split:])
        return body, context
