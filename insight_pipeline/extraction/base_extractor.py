"""Abstract base class for all Extractor adapters."""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from loguru import logger
from pydantic import ValidationError

from insight_pipeline.errors import ExtractorError
from insight_pipeline.schemas import ExtractionRequest, ExtractionResult


class BaseExtractor(ABC):
    """
    All extractors inherit from this class.

    The pipeline does not care how a chunk becomes insights (human analyst,
    LLM call, rule engine); it only needs the ExtractionResult shape back.
    """

    name: str = "extractor"

    def __init__(self, config: dict | None = None) -> None:
        self.config = config or {}
        self.call_count: int = 0
        self.error_count: int = 0

    @abstractmethod
    async def extract(self, request: ExtractionRequest) -> ExtractionResult:
        """Return candidate insights and verification records for one chunk."""
        ...

    async def health_check(self) -> bool:
        """Return True if the extractor is reachable and responsive."""
        return True

    def parse_result(self, payload: Any) -> ExtractionResult:
        """Validate a raw JSON payload against the extractor contract."""
        try:
            return ExtractionResult.model_validate(payload)
        except ValidationError as exc:
            self.error_count += 1
            logger.error(f"[{self.__class__.__name__}] Invalid extractor payload: {exc}")
            raise ExtractorError(
                f"{self.name} returned a payload that does not match the extractor contract",
                errors=[f"{'.'.join(map(str, e['loc']))}: {e['msg']}" for e in exc.errors()],
            ) from exc
