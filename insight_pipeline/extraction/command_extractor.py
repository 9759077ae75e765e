"""
Command Extractor
------------------
Runs an external program per chunk: the ExtractionRequest is written to its
stdin as JSON and an ExtractionResult is read back from stdout.

    extractor:
      command: "python scripts/analyst_prompt.py --model local"

The timeout is enforced by the pipeline (asyncio.wait_for); when it fires
the child process is killed here before the cancellation propagates.
"""
from __future__ import annotations

import asyncio
import shlex
from typing import Sequence

import orjson
from loguru import logger

from insight_pipeline.errors import ExtractorError
from insight_pipeline.extraction.base_extractor import BaseExtractor
from insight_pipeline.schemas import ExtractionRequest, ExtractionResult


class CommandExtractor(BaseExtractor):
    name = "command"

    def __init__(self, command: str | Sequence[str], config: dict | None = None) -> None:
        super().__init__(config)
        self.argv: list[str] = shlex.split(command) if isinstance(command, str) else list(command)
        if not self.argv:
            raise ExtractorError("Extractor command is empty")

    async def extract(self, request: ExtractionRequest) -> ExtractionResult:
        self.call_count += 1
        logger.debug(f"[CommandExtractor] {request.chunk_id} -> {self.argv[0]}")

        try:
            proc = await asyncio.create_subprocess_exec(
                *self.argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            self.error_count += 1
            raise ExtractorError(
                f"Extractor command could not be started: {exc}", command=self.argv[0]
            ) from exc
        try:
            stdout, stderr = await proc.communicate(request.model_dump_json().encode("utf-8"))
        except asyncio.CancelledError:
            proc.kill()
            await proc.wait()
            raise

        if proc.returncode != 0:
            self.error_count += 1
            detail = stderr.decode("utf-8", errors="replace").strip()[-500:]
            raise ExtractorError(
                f"Extractor command exited with status {proc.returncode}: {detail}",
                returncode=proc.returncode,
            )

        try:
            payload = orjson.loads(stdout)
        except orjson.JSONDecodeError as exc:
            self.error_count += 1
            raise ExtractorError(f"Extractor command did not print JSON: {exc}") from exc
        return self.parse_result(payload)
