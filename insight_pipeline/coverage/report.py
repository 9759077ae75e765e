"""
Certificate Report Generator
-----------------------------
Produces a machine-readable JSON coverage certificate + a Rich-formatted
console summary of the corpus.
"""
from __future__ import annotations

from pathlib import Path
from typing import Optional

from loguru import logger
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from insight_pipeline.schemas import CertificationStatus, CorpusCertificate, ProgressState
from insight_pipeline.utils.helpers import format_datetime, save_json

console = Console()


class CertificateReportGenerator:
    """Builds, saves and prints coverage certificates."""

    def __init__(self, output_dir: str | Path = "data", console_: Optional[Console] = None) -> None:
        self.output_dir = Path(output_dir)
        self.console = console_ or console

    # --- Public API -----------------------------------------------------------

    def generate(self, certificate: CorpusCertificate, progress: ProgressState) -> dict:
        """Build the full report dict and save it to disk."""
        report = {
            "generated_at": certificate.generated_at.isoformat(),
            "status": certificate.status.value,
            "percent_complete": certificate.percent_complete,
            "documents": [c.model_dump(mode="json") for c in certificate.documents],
            "progress": progress.model_dump(mode="json"),
            "recommendations": self._recommendations(certificate, progress),
        }
        path = self.output_dir / "coverage_certificate.json"
        save_json(report, path)
        logger.info(f"Coverage certificate saved -> {path}")
        return report

    def print_certificate(self, certificate: CorpusCertificate) -> None:
        c = self.console
        colour = "green" if certificate.status == CertificationStatus.CERTIFIED else "yellow"

        c.print()
        c.print(
            Panel(
                f"[bold {colour}]{certificate.status.value}[/bold {colour}]  "
                f"[white]{certificate.percent_complete:.2f}% of corpus lines covered[/white]",
                title="[bold cyan]Coverage Certificate[/bold cyan]",
                subtitle=f"[dim]{format_datetime(certificate.generated_at)}[/dim]",
                box=box.DOUBLE_EDGE,
                expand=False,
            )
        )

        t = Table(title="Documents", box=box.ROUNDED, show_header=True)
        t.add_column("Document", style="cyan", no_wrap=True)
        t.add_column("Status")
        t.add_column("Chunks", justify="right")
        t.add_column("Covered", justify="right", style="bold white")
        t.add_column("Findings", justify="right")
        for cert in certificate.documents:
            ok = cert.status == CertificationStatus.CERTIFIED
            t.add_row(
                cert.document_id,
                f"[green]{cert.status.value}[/green]" if ok else f"[yellow]{cert.status.value}[/yellow]",
                f"{cert.chunks_complete}/{cert.chunks_total}",
                f"{cert.percent_complete:.2f}%",
                str(len(cert.findings)),
            )
        c.print(t)

        findings = [(cert.document_id, f) for cert in certificate.documents for f in cert.findings]
        if findings:
            c.print()
            t2 = Table(title="Findings", box=box.ROUNDED)
            t2.add_column("Document", style="cyan")
            t2.add_column("Kind", style="red")
            t2.add_column("Detail")
            for doc_id, finding in findings:
                t2.add_row(doc_id, finding.kind, finding.describe())
            c.print(t2)

    def print_progress(self, progress: ProgressState) -> None:
        c = self.console

        t = Table(title="Pipeline Progress", box=box.ROUNDED, show_header=True)
        t.add_column("Document", style="cyan", no_wrap=True)
        t.add_column("Lines", justify="right")
        t.add_column("Pending", justify="right")
        t.add_column("Active", justify="right", style="blue")
        t.add_column("Complete", justify="right", style="green")
        t.add_column("Failed", justify="right", style="red")
        t.add_column("Covered", justify="right", style="bold white")
        for d in progress.documents:
            t.add_row(
                d.document_id,
                f"{d.total_lines:,}",
                str(d.chunks_pending),
                str(d.chunks_in_progress),
                str(d.chunks_complete),
                str(d.chunks_failed),
                f"{d.percent_complete:.2f}%",
            )
        c.print(t)

        by_type = "  ".join(f"{k}: [bold]{v}[/bold]" for k, v in progress.insights_total_by_type.items())
        c.print(
            Panel(
                f"{by_type}\n"
                f"Retired: [yellow]{progress.retired_total}[/yellow]  "
                f"Cross-refs: [cyan]{progress.cross_refs_total}[/cyan]  "
                f"Verification records: [cyan]{progress.verification_total}[/cyan]",
                title="Ledger",
                box=box.ROUNDED,
                expand=False,
            )
        )

    # --- Helpers --------------------------------------------------------------

    @staticmethod
    def _recommendations(certificate: CorpusCertificate, progress: ProgressState) -> list[str]:
        recs: list[str] = []
        for doc in progress.documents:
            if doc.chunks_total == 0 and doc.total_lines > 0:
                recs.append(f"{doc.document_id}: not planned yet - run `plan {doc.document_id}`.")
            if doc.chunks_failed:
                recs.append(
                    f"{doc.document_id}: {doc.chunks_failed} failed chunk(s) - retry them with `begin`."
                )
            if doc.chunks_in_progress:
                recs.append(
                    f"{doc.document_id}: chunk in progress - run `recover` if the previous run crashed."
                )
        if certificate.status == CertificationStatus.CERTIFIED:
            recs.append("Corpus fully covered. Ready for synthesis.")
        return recs
