from collections.abc import Callable, Iterator
from pathlib import Path

import pytest
from loguru import logger

from insight_pipeline.checkpoint import ProgressStore
from insight_pipeline.extraction.base_extractor import BaseExtractor
from insight_pipeline.pipeline import ExtractionPipeline
from insight_pipeline.schemas import ExtractionRequest, ExtractionResult


@pytest.fixture(autouse=True)
def quiet_logger() -> Iterator[None]:
    # CLI tests bind loguru to CliRunner's temporary stderr; drop it afterwards.
    yield
    logger.remove()


@pytest.fixture
def store_dir(tmp_path: Path) -> Path:
    return tmp_path / "store"


@pytest.fixture
def store(store_dir: Path) -> ProgressStore:
    return ProgressStore(store_dir)


@pytest.fixture
def pipeline(store: ProgressStore) -> ExtractionPipeline:
    return ExtractionPipeline(store, {"verification": {"minimum_quota": 2}})


@pytest.fixture
def make_doc(tmp_path: Path) -> Callable[[str, int], Path]:
    def _make(name: str, lines: int) -> Path:
        path = tmp_path / f"{name}.md"
        path.write_text("".join(f"line {n}\n" for n in range(1, lines + 1)), encoding="utf-8")
        return path

    return _make


def qa(n: int, verdict: str = "Confirmed") -> list[dict]:
    return [
        {"question": f"Q{i}?", "answer": f"A{i}", "verdict": verdict, "claim_ref": "#0"}
        for i in range(n)
    ]


class ScriptedExtractor(BaseExtractor):
    """Returns canned payloads in order; the last one repeats."""

    name = "scripted"

    def __init__(self, payloads: list[dict]) -> None:
        super().__init__()
        self.payloads = payloads
        self.requests: list[ExtractionRequest] = []

    async def extract(self, request: ExtractionRequest) -> ExtractionResult:
        self.requests.append(request)
        payload = self.payloads[min(self.call_count, len(self.payloads) - 1)]
        self.call_count += 1
        return self.parse_result(payload)
