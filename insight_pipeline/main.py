"""
Insight Extraction Pipeline - CLI Entry Point
----------------------------------------------
Exposes Typer commands for each pipeline operation.

Usage:
    python -m insight_pipeline.main register docs/advisory-1.md
    python -m insight_pipeline.main plan advisory-1
    python -m insight_pipeline.main next advisory-1 --begin
    python -m insight_pipeline.main submit "advisory-1#0000" '{"type": "UserJourney", "fields": {...}}'
    python -m insight_pipeline.main verify "advisory-1#0000" @qa.json
    python -m insight_pipeline.main complete "advisory-1#0000"
    python -m insight_pipeline.main run advisory-1 --command "python my_extractor.py"
    python -m insight_pipeline.main certify --all
    python -m insight_pipeline.main status --all

Exit codes:
    0   success
    2   missing file / bad JSON argument
    10+ invariant violation (see insight_pipeline.errors), with a JSON error
        object on stderr
"""
from __future__ import annotations

import sys

# Windows cp1252 terminal fix: force UTF-8 so corpus text with
# non-ASCII characters does not crash the Rich console renderer.
if sys.platform == "win32":
    sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    sys.stderr.reconfigure(encoding="utf-8", errors="replace")

import asyncio
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

import orjson
import typer
from loguru import logger
from pydantic import ValidationError
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from insight_pipeline.config import load_config
from insight_pipeline.coverage.report import CertificateReportGenerator
from insight_pipeline.errors import ExtractorError, PipelineError
from insight_pipeline.extraction.base_extractor import BaseExtractor
from insight_pipeline.extraction.command_extractor import CommandExtractor
from insight_pipeline.extraction.http_extractor import HttpExtractor
from insight_pipeline.pipeline import ExtractionPipeline
from insight_pipeline.progress import derive_progress
from insight_pipeline.schemas import (
    CandidateInsight,
    CandidateVerification,
    CorpusCertificate,
    Relation,
)
from insight_pipeline.utils.helpers import save_json, truncate_text
from insight_pipeline.utils.logger import setup_logger_from_config

app = typer.Typer(
    name="insight-pipeline",
    help="Incremental knowledge-extraction pipeline over large text corpora",
    add_completion=False,
)
console = Console()


# --- Helpers ------------------------------------------------------------------

class _State:
    def __init__(self, config: dict, store_dir: Optional[str]) -> None:
        self.config = config
        self.store_dir = store_dir
        self._pipeline: Optional[ExtractionPipeline] = None

    @property
    def pipeline(self) -> ExtractionPipeline:
        if self._pipeline is None:
            self._pipeline = ExtractionPipeline.from_config(self.config, self.store_dir)
        return self._pipeline


def _state(ctx: typer.Context) -> _State:
    return ctx.obj


def _emit(data: Any) -> None:
    """Print machine-readable JSON on stdout."""
    typer.echo(orjson.dumps(data, option=orjson.OPT_INDENT_2 | orjson.OPT_NON_STR_KEYS).decode())


@contextmanager
def _guard() -> Iterator[None]:
    """Turn pipeline errors into a JSON error object + non-zero exit code."""
    try:
        yield
    except PipelineError as exc:
        logger.debug(f"[CLI] {exc.code}: {exc.message}")
        typer.echo(orjson.dumps(exc.to_dict()).decode(), err=True)
        raise typer.Exit(exc.exit_code) from None
    except FileNotFoundError as exc:
        typer.echo(orjson.dumps({"error": "not_found", "message": str(exc)}).decode(), err=True)
        raise typer.Exit(2) from None
    except ValidationError as exc:
        errors = [f"{'.'.join(map(str, e['loc']))}: {e['msg']}" for e in exc.errors()]
        typer.echo(
            orjson.dumps({"error": "invalid_payload", "message": "Payload rejected", "errors": errors}).decode(),
            err=True,
        )
        raise typer.Exit(2) from None


def _load_json_arg(value: str) -> Any:
    """A JSON argument may be inline, '@path/to/file.json' or '-' for stdin."""
    try:
        if value == "-":
            raw = sys.stdin.read()
        elif value.startswith("@"):
            raw = Path(value[1:]).read_text(encoding="utf-8")
        else:
            raw = value
        return orjson.loads(raw)
    except (orjson.JSONDecodeError, OSError) as exc:
        typer.echo(orjson.dumps({"error": "bad_json", "message": str(exc)}).decode(), err=True)
        raise typer.Exit(2) from None


def _as_list(payload: Any, key: str) -> list:
    if isinstance(payload, dict) and key in payload:
        payload = payload[key]
    return payload if isinstance(payload, list) else [payload]


# --- Global Options -----------------------------------------------------------

@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None, "--config", "-c", help="Path to pipeline config YAML (default config/config.yaml)"
    ),
    store: Optional[str] = typer.Option(
        None, "--store", "-s", help="Progress Store directory (overrides store.dir)"
    ),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override logging.level"),
    no_log_file: bool = typer.Option(False, "--no-log-file", help="Log to the console only"),
) -> None:
    """Incremental knowledge-extraction pipeline."""
    with _guard():
        cfg = load_config(config)
    setup_logger_from_config(cfg, level=log_level, file_enabled=not no_log_file)
    ctx.obj = _State(cfg, store)


# --- Sources & Planning ---------------------------------------------------------

@app.command()
def register(
    ctx: typer.Context,
    path: str = typer.Argument(..., help="Text document to register"),
    doc_id: Optional[str] = typer.Option(None, "--id", help="Document id (default: file stem slug)"),
) -> None:
    """Register a source document and record its line count."""
    with _guard():
        doc = _state(ctx).pipeline.registry.register(path, doc_id)
    _emit(doc.model_dump(mode="json"))


@app.command()
def plan(
    ctx: typer.Context,
    doc_id: str = typer.Argument(..., help="Registered document id"),
    chunk_size: Optional[int] = typer.Option(None, "--chunk-size", help="Lines per chunk"),
    overlap: Optional[int] = typer.Option(None, "--overlap", help="Lines shared with the previous chunk"),
) -> None:
    """Plan (or re-read) the chunk windows of a document."""
    with _guard():
        chunks = _state(ctx).pipeline.scheduler.plan(doc_id, chunk_size, overlap)
    _emit([c.model_dump(mode="json") for c in chunks])


@app.command("next")
def next_chunk(
    ctx: typer.Context,
    doc_id: str = typer.Argument(..., help="Registered document id"),
    begin: bool = typer.Option(False, "--begin", help="Also move the chunk to InProgress"),
) -> None:
    """Show the next Pending chunk of a document (null when none is left)."""
    with _guard():
        pipeline = _state(ctx).pipeline
        chunk = pipeline.scheduler.next_pending(doc_id)
        if chunk is not None and begin:
            chunk = pipeline.scheduler.begin(chunk.id)
    _emit(chunk.model_dump(mode="json") if chunk else None)


# --- Chunk Transitions ------------------------------------------------------------

@app.command("begin")
def begin_chunk(ctx: typer.Context, chunk_id: str = typer.Argument(...)) -> None:
    """Move a Pending (or Failed) chunk to InProgress."""
    with _guard():
        chunk = _state(ctx).pipeline.scheduler.begin(chunk_id)
    _emit(chunk.model_dump(mode="json"))


@app.command()
def submit(
    ctx: typer.Context,
    chunk_id: str = typer.Argument(...),
    insight_json: str = typer.Argument(..., help='{"type": ..., "fields": {...}} or a list; @file or -'),
) -> None:
    """Submit candidate insight(s) extracted from an InProgress chunk."""
    payload = _as_list(_load_json_arg(insight_json), "insights")
    with _guard():
        pipeline = _state(ctx).pipeline
        results = []
        for item in payload:
            candidate = CandidateInsight.model_validate(item)
            submitted = pipeline.submit_insight(chunk_id, candidate.type, candidate.fields)
            results.append(
                {
                    "id": submitted.insight.id,
                    "created": submitted.created,
                    "source_refs": len(submitted.insight.source_refs),
                }
            )
    _emit(results)


@app.command()
def verify(
    ctx: typer.Context,
    chunk_id: str = typer.Argument(...),
    qa_json: str = typer.Argument(..., help='{"question", "answer", "verdict", "claim_ref"} or a list'),
) -> None:
    """Record verification question(s) for an InProgress chunk."""
    payload = _as_list(_load_json_arg(qa_json), "verification_records")
    with _guard():
        pipeline = _state(ctx).pipeline
        records = []
        for item in payload:
            qa = CandidateVerification.model_validate(item)
            records.append(
                pipeline.record_verification(
                    chunk_id, qa.question, qa.answer, qa.verdict, qa.claim_ref, qa.evidence_ref
                )
            )
        gate = pipeline.gate
        out = {
            "recorded": [r.id for r in records],
            "tally": gate.tally(chunk_id),
            "quota_met": gate.quota_met(chunk_id),
            "minimum": gate.minimum_quota,
        }
    _emit(out)


@app.command()
def complete(ctx: typer.Context, chunk_id: str = typer.Argument(...)) -> None:
    """Mark an InProgress chunk Complete (requires the verification quota)."""
    with _guard():
        chunk = _state(ctx).pipeline.scheduler.complete(chunk_id)
    _emit(chunk.model_dump(mode="json"))


@app.command()
def fail(
    ctx: typer.Context,
    chunk_id: str = typer.Argument(...),
    reason: str = typer.Option(..., "--reason", "-r", help="Why the chunk failed"),
) -> None:
    """Mark an InProgress chunk Failed (it stays retryable with `begin`)."""
    with _guard():
        chunk = _state(ctx).pipeline.scheduler.fail(chunk_id, reason)
    _emit(chunk.model_dump(mode="json"))


@app.command()
def recover(ctx: typer.Context) -> None:
    """After a crash: mark chunks left InProgress as Failed so they can be retried."""
    with _guard():
        chunks = _state(ctx).pipeline.scheduler.recover_interrupted()
    _emit([c.id for c in chunks])


# --- Graph ------------------------------------------------------------------------

@app.command()
def link(
    ctx: typer.Context,
    from_id: str = typer.Argument(...),
    to_id: str = typer.Argument(...),
    relation: Relation = typer.Option(Relation.RELATES_TO, "--relation", "-r"),
    note: Optional[str] = typer.Option(None, "--note", help="Evidence for the link"),
) -> None:
    """Link two insights (depends_on edges must stay acyclic)."""
    with _guard():
        edge = _state(ctx).pipeline.graph.link(from_id, to_id, relation, note=note)
    _emit(edge.model_dump(mode="json"))


@app.command()
def show(
    ctx: typer.Context,
    insight_id: str = typer.Argument(...),
    json_out: bool = typer.Option(False, "--json", help="Print as JSON"),
) -> None:
    """Show an insight with its provenance and graph neighbourhood."""
    with _guard():
        pipeline = _state(ctx).pipeline
        insight = pipeline.ledger.get(insight_id)
        neighbors = {
            r.value: list(pipeline.graph.neighbors(insight_id, r)) for r in Relation
        }
        component = pipeline.graph.connected_component(insight_id)

    if json_out:
        _emit(
            {
                **insight.model_dump(mode="json"),
                "neighbors": neighbors,
                "connected_component": component,
            }
        )
        return

    body = "\n".join(f"[dim]{k}:[/dim] {truncate_text(v, 200)}" for k, v in insight.fields.items())
    if insight.retired:
        body += f"\n\n[yellow]Retired - superseded by {insight.retired_by}[/yellow]"
    console.print(Panel(body, title=f"[bold]{insight.id}[/bold] {insight.type.value}", box=box.ROUNDED))

    t = Table("Source", "Lines", "Chunk", box=box.SIMPLE, header_style="bold dim")
    for ref in insight.source_refs:
        t.add_row(ref.source_id, f"{ref.start_line}-{ref.end_line}", ref.chunk_id or "-")
    console.print(t)
    for rel, ids in neighbors.items():
        if ids:
            console.print(f"  [cyan]{rel}[/cyan]: {', '.join(ids)}")
    console.print(f"  [dim]cluster:[/dim] {', '.join(component)}")


# --- Extraction Loop ----------------------------------------------------------------

def _build_extractor(cfg: dict, command: Optional[str], url: Optional[str]) -> BaseExtractor:
    ext_cfg = cfg.get("extractor", {})
    command = command or ext_cfg.get("command")
    url = url or ext_cfg.get("url")
    if command:
        return CommandExtractor(command, ext_cfg)
    if url:
        return HttpExtractor(url, ext_cfg)
    raise ExtractorError("No extractor configured: pass --command or --url (or set extractor.* in config)")


@app.command()
def run(
    ctx: typer.Context,
    doc_id: str = typer.Argument(..., help="Registered document id"),
    command: Optional[str] = typer.Option(None, "--command", help="Extractor command (JSON stdin/stdout)"),
    url: Optional[str] = typer.Option(None, "--url", help="Extractor service URL"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Seconds per extractor call"),
    max_chunks: Optional[int] = typer.Option(None, "--max-chunks", help="Stop after N chunks"),
    continue_on_failure: bool = typer.Option(
        False, "--continue-on-failure", help="Keep going after a chunk fails"
    ),
) -> None:
    """
    Drive the external Extractor over a document's Pending chunks.

    \b
    Per chunk:
      1. begin (Pending -> InProgress)
      2. extractor call bounded by --timeout (timeout -> fail)
      3. submit insights, links and verification records
      4. complete once the verification quota is met
    """
    state = _state(ctx)
    with _guard():
        pipeline = state.pipeline
        if timeout is not None:
            pipeline.timeout_s = timeout
        extractor = _build_extractor(state.config, command, url)
        pipeline.scheduler.plan(doc_id)
        summary = asyncio.run(
            pipeline.run_document(
                doc_id,
                extractor,
                continue_on_failure=continue_on_failure,
                max_chunks=max_chunks,
                show_progress=sys.stderr.isatty(),
            )
        )
    _emit(summary.to_dict())
    if summary.failed:
        raise typer.Exit(1)


# --- Reporting ----------------------------------------------------------------------

@app.command()
def certify(
    ctx: typer.Context,
    doc_id: Optional[str] = typer.Argument(None, help="Document id (omit with --all)"),
    all_docs: bool = typer.Option(False, "--all", help="Certify the whole corpus"),
    report_dir: Optional[str] = typer.Option(None, "--report", help="Also save a JSON report here"),
    json_out: bool = typer.Option(False, "--json", help="Print as JSON"),
) -> None:
    """Certify coverage of one document or the whole corpus."""
    if not doc_id and not all_docs:
        typer.echo(orjson.dumps({"error": "usage", "message": "Pass a document id or --all"}).decode(), err=True)
        raise typer.Exit(2)

    with _guard():
        pipeline = _state(ctx).pipeline
        if all_docs:
            corpus = pipeline.verifier.certify_corpus()
        else:
            cert = pipeline.verifier.certify(doc_id)
            if json_out and not report_dir:
                _emit(cert.model_dump(mode="json"))
                return
            corpus = CorpusCertificate(
                status=cert.status, documents=[cert], percent_complete=cert.percent_complete
            )

    reporter = CertificateReportGenerator(report_dir or "data", console)
    if report_dir:
        reporter.generate(corpus, derive_progress(pipeline.store))
    if json_out:
        _emit(corpus.model_dump(mode="json"))
    else:
        reporter.print_certificate(corpus)


@app.command()
def status(
    ctx: typer.Context,
    doc_id: Optional[str] = typer.Argument(None, help="Document id (omit with --all)"),
    all_docs: bool = typer.Option(False, "--all", help="Show every document"),
    json_out: bool = typer.Option(False, "--json", help="Print as JSON"),
) -> None:
    """Show derived progress (recomputed from the stores, never cached)."""
    with _guard():
        progress = derive_progress(_state(ctx).pipeline.store)
    if doc_id and not all_docs:
        progress.documents = [d for d in progress.documents if d.document_id == doc_id]

    if json_out:
        _emit(progress.model_dump(mode="json"))
        return
    if not progress.documents:
        if doc_id and not all_docs:
            console.print(f"[yellow]No document registered as '{doc_id}'[/yellow]")
        else:
            console.print("[yellow]No documents registered. Run: insight-pipeline register <path>[/yellow]")
        return
    CertificateReportGenerator(console_=console).print_progress(progress)


@app.command()
def export(
    ctx: typer.Context,
    output: str = typer.Option("data/insights_export.json", "--output", "-o"),
    include_retired: bool = typer.Option(True, "--include-retired/--active-only"),
) -> None:
    """Export the ledger and cross-reference graph as one JSON bundle."""
    with _guard():
        pipeline = _state(ctx).pipeline
        insights = pipeline.ledger.list(include_retired=include_retired)
        bundle = {
            "insights": [i.model_dump(mode="json") for i in insights],
            "cross_references": [e.model_dump(mode="json") for e in pipeline.graph.edges()],
            "orphans": pipeline.graph.orphans(),
            "progress": derive_progress(pipeline.store).model_dump(mode="json"),
        }
        save_json(bundle, output)
    _emit({"output": output, "insights": len(insights), "cross_references": len(bundle["cross_references"])})


# --- Entry Point --------------------------------------------------------------------

if __name__ == "__main__":
    app()
