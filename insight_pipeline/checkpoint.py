"""
Progress Store
---------------
Durable, resumable state for every pipeline component.

Layout (one JSON record store per entity, keyed by id):

    <store>/manifest.json        schema_version, chunk_size, overlap_size, documents
    <store>/documents.json       SourceDocument
    <store>/chunks.json          Chunk
    <store>/insights.json        Insight
    <store>/cross_refs.json      CrossReference (list, insertion ordered)
    <store>/verifications.json   VerificationRecord (list, append only)

Components mutate the in-memory collections under `store.lock` and call
`store.persist(...)` before returning, so a state transition reported to the
caller is always already on disk.
"""
from __future__ import annotations

import threading
from pathlib import Path
from typing import Optional

from loguru import logger

from insight_pipeline.errors import ConfigDriftError
from insight_pipeline.schemas import (
    Chunk,
    CrossReference,
    Insight,
    SourceDocument,
    VerificationRecord,
)
from insight_pipeline.utils.helpers import ensure_dirs, load_json, save_json, utcnow

SCHEMA_VERSION = 1

COLLECTIONS = ("documents", "chunks", "insights", "cross_refs", "verifications")


class ProgressStore:
    """Write-through JSON store shared by all components of one pipeline."""

    def __init__(
        self,
        root: str | Path,
        chunk_size: int = 300,
        overlap_size: int = 20,
    ) -> None:
        self.root = Path(root)
        self.lock = threading.RLock()

        self.documents: dict[str, SourceDocument] = {}
        self.chunks: dict[str, Chunk] = {}
        self.insights: dict[str, Insight] = {}
        self.cross_refs: list[CrossReference] = []
        self.verifications: list[VerificationRecord] = []
        self.manifest: dict = {}

        ensure_dirs(self.root)
        self._load()
        self._reconcile_manifest(chunk_size, overlap_size)

    @classmethod
    def from_config(cls, config: dict, root: Optional[str | Path] = None) -> "ProgressStore":
        chunking = config.get("chunking", {})
        return cls(
            root or config.get("store", {}).get("dir", "data/store"),
            chunk_size=chunking.get("chunk_size", 300),
            overlap_size=chunking.get("overlap_size", 20),
        )

    # --- Properties -------------------------------------------------------------

    @property
    def chunk_size(self) -> int:
        return self.manifest["chunk_size"]

    @property
    def overlap_size(self) -> int:
        return self.manifest["overlap_size"]

    # --- Persistence -------------------------------------------------------------

    def persist(self, *collections: str) -> None:
        """Durably write the named collections (all of them when none given)."""
        names = collections or COLLECTIONS
        with self.lock:
            for name in names:
                save_json(self._dump(name), self.root / f"{name}.json")
            self.manifest["updated_at"] = utcnow().isoformat()
            self.manifest["source_documents"] = sorted(self.documents)
            save_json(self.manifest, self.root / "manifest.json")
        logger.debug(f"[Store] Persisted {', '.join(names)} -> {self.root}")

    def _dump(self, name: str):
        if name == "documents":
            return {k: v.model_dump(mode="json") for k, v in self.documents.items()}
        if name == "chunks":
            return {k: v.model_dump(mode="json") for k, v in self.chunks.items()}
        if name == "insights":
            return {k: v.model_dump(mode="json") for k, v in self.insights.items()}
        if name == "cross_refs":
            return [e.model_dump(mode="json") for e in self.cross_refs]
        if name == "verifications":
            return [r.model_dump(mode="json") for r in self.verifications]
        raise ValueError(f"Unknown collection: {name}")

    def _read(self, name: str, default):
        path = self.root / f"{name}.json"
        return load_json(path) if path.exists() else default

    def _load(self) -> None:
        self.manifest = self._read("manifest", {})
        self.documents = {
            k: SourceDocument.model_validate(v) for k, v in self._read("documents", {}).items()
        }
        self.chunks = {k: Chunk.model_validate(v) for k, v in self._read("chunks", {}).items()}
        self.insights = {
            k: Insight.model_validate(v) for k, v in self._read("insights", {}).items()
        }
        self.cross_refs = [CrossReference.model_validate(v) for v in self._read("cross_refs", [])]
        self.verifications = [
            VerificationRecord.model_validate(v) for v in self._read("verifications", [])
        ]
        if self.manifest:
            logger.debug(
                f"[Store] Loaded {self.root} | documents={len(self.documents)} "
                f"chunks={len(self.chunks)} insights={len(self.insights)}"
            )

    def _reconcile_manifest(self, chunk_size: int, overlap_size: int) -> None:
        """
        Windowing parameters are fixed once any chunk exists: chunk boundaries
        are derived from them and cannot change mid-corpus.
        """
        if not self.manifest:
            self.manifest = {
                "schema_version": SCHEMA_VERSION,
                "chunk_size": chunk_size,
                "overlap_size": overlap_size,
                "created_at": utcnow().isoformat(),
            }
            self.persist()
            logger.info(f"[Store] Initialised new store at {self.root}")
            return

        version = self.manifest.get("schema_version")
        if version != SCHEMA_VERSION:
            raise ConfigDriftError(
                f"Store schema_version {version} is not supported (expected {SCHEMA_VERSION})",
                store=str(self.root),
            )

        stored = (self.manifest.get("chunk_size"), self.manifest.get("overlap_size"))
        if stored == (chunk_size, overlap_size):
            return
        if self.chunks:
            raise ConfigDriftError(
                f"Store was planned with chunk_size={stored[0]}, overlap_size={stored[1]}; "
                f"refusing to reopen with chunk_size={chunk_size}, overlap_size={overlap_size}",
                stored_chunk_size=stored[0],
                stored_overlap_size=stored[1],
            )
        logger.info(
            f"[Store] No chunks yet - windowing updated to "
            f"chunk_size={chunk_size}, overlap_size={overlap_size}"
        )
        self.manifest["chunk_size"] = chunk_size
        self.manifest["overlap_size"] = overlap_size
        self.persist()
