import json
import shlex
import sys
from pathlib import Path

import pytest
from typer.testing import CliRunner

from insight_pipeline.main import app

runner = CliRunner()

JOURNEY = {
    "type": "UJ",
    "fields": {"persona": "Dispatcher", "workflow_type": "On-call handoff", "solution": "Shift notes"},
}

EXTRACTOR_SCRIPT = """
import json, sys
req = json.load(sys.stdin)
print(json.dumps({
    "insights": [{"type": "TechnicalInsight",
                  "fields": {"title": "Pager fatigue", "component": "Alerting"}}],
    "verification_records": [
        {"question": f"Q{i} for {req['chunk_id']}?", "answer": "yes", "verdict": "Confirmed",
         "claim_ref": "#0"} for i in range(2)
    ],
}))
"""


@pytest.fixture
def cli(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("INSIGHT_PIPELINE_STORE", raising=False)
    config = tmp_path / "pipeline.yaml"
    config.write_text(
        "chunking:\n  chunk_size: 100\n  overlap_size: 10\nverification:\n  minimum_quota: 2\n",
        encoding="utf-8",
    )
    doc = tmp_path / "handoff-notes.md"
    doc.write_text("".join(f"note {n}\n" for n in range(1, 251)), encoding="utf-8")

    def invoke(*args: str):
        base = ["--config", str(config), "--store", str(tmp_path / "store"), "--log-level", "ERROR", "--no-log-file"]
        return runner.invoke(app, [*base, *args])

    invoke.doc = doc
    invoke.tmp_path = tmp_path
    return invoke


def _json(result):
    assert result.exit_code == 0, result.output
    return json.loads(result.stdout)


def _qa(n: int) -> str:
    return json.dumps(
        [{"question": f"Q{i}?", "answer": "A", "verdict": "Confirmed", "claim_ref": "UJ-001"} for i in range(n)]
    )


def test_manual_chunk_workflow(cli) -> None:
    doc = _json(cli("register", str(cli.doc)))
    assert (doc["id"], doc["total_lines"]) == ("handoff-notes", 250)

    chunks = _json(cli("plan", "handoff-notes"))
    assert [(c["start_line"], c["end_line"]) for c in chunks] == [(1, 100), (91, 190), (181, 250)]

    chunk = _json(cli("next", "handoff-notes", "--begin"))
    assert (chunk["id"], chunk["status"]) == ("handoff-notes#0000", "InProgress")

    submitted = _json(cli("submit", "handoff-notes#0000", json.dumps(JOURNEY)))
    assert submitted == [{"id": "UJ-001", "created": True, "source_refs": 1}]

    blocked = cli("complete", "handoff-notes#0000")
    assert blocked.exit_code == 13
    assert '"error":"quota_not_met"' in blocked.output

    verified = _json(cli("verify", "handoff-notes#0000", _qa(2)))
    assert verified["quota_met"] is True
    assert verified["tally"]["Confirmed"] == 2

    done = _json(cli("complete", "handoff-notes#0000"))
    assert done["status"] == "Complete"

    status = _json(cli("status", "handoff-notes", "--json"))
    assert status["documents"][0]["chunks_complete"] == 1

    cert = _json(cli("certify", "handoff-notes", "--json"))
    assert cert["status"] == "Incomplete"
    assert cert["findings"] == [{"kind": "gap", "from_line": 101, "to_line": 250}]


def test_double_dispatch_exit_code(cli) -> None:
    cli("register", str(cli.doc))
    cli("plan", "handoff-notes")
    cli("begin", "handoff-notes#0000")

    result = cli("begin", "handoff-notes#0001")

    assert result.exit_code == 11
    assert '"error":"double_dispatch"' in result.output


def test_submit_requires_begin(cli) -> None:
    cli("register", str(cli.doc))
    cli("plan", "handoff-notes")

    result = cli("submit", "handoff-notes#0000", json.dumps(JOURNEY))

    assert result.exit_code == 12


def test_submit_rejects_bad_json(cli) -> None:
    result = cli("submit", "handoff-notes#0000", "{not json")

    assert result.exit_code == 2
    assert '"error":"bad_json"' in result.output


def test_submit_rejects_missing_identity_field(cli) -> None:
    cli("register", str(cli.doc))
    cli("plan", "handoff-notes")
    cli("begin", "handoff-notes#0000")

    result = cli("submit", "handoff-notes#0000", json.dumps({"type": "UJ", "fields": {"persona": "x"}}))

    assert result.exit_code == 18


def test_submit_from_file(cli) -> None:
    cli("register", str(cli.doc))
    cli("plan", "handoff-notes")
    cli("begin", "handoff-notes#0000")
    payload = cli.tmp_path / "insights.json"
    payload.write_text(json.dumps({"insights": [JOURNEY, JOURNEY]}), encoding="utf-8")

    result = _json(cli("submit", "handoff-notes#0000", f"@{payload}"))

    assert [r["created"] for r in result] == [True, False]
    assert result[1]["source_refs"] == 2


def test_plan_unknown_document(cli) -> None:
    result = cli("plan", "ghost")

    assert result.exit_code == 17
    assert '"error":"unknown_document"' in result.output


def test_replan_with_other_window_is_config_drift(cli) -> None:
    cli("register", str(cli.doc))
    cli("plan", "handoff-notes")

    result = cli("plan", "handoff-notes", "--chunk-size", "50", "--overlap", "5")

    assert result.exit_code == 16


def test_register_missing_file(cli) -> None:
    result = cli("register", "nope.md")

    assert result.exit_code == 2


def test_link_and_show(cli) -> None:
    cli("register", str(cli.doc))
    cli("plan", "handoff-notes")
    cli("begin", "handoff-notes#0000")
    second = {"type": "TI", "fields": {"title": "Pager fatigue", "component": "Alerting"}}
    cli("submit", "handoff-notes#0000", json.dumps([JOURNEY, second]))

    edge = _json(cli("link", "UJ-001", "TI-001", "--relation", "depends_on", "--note", "needs paging"))
    assert edge["relation"] == "depends_on"

    cycle = cli("link", "TI-001", "UJ-001", "--relation", "depends_on")
    assert cycle.exit_code == 14

    shown = _json(cli("show", "TI-001", "--json"))
    assert shown["neighbors"]["depends_on"] == ["UJ-001"]
    assert shown["connected_component"] == ["TI-001", "UJ-001"]
    assert shown["source_refs"][0]["chunk_id"] == "handoff-notes#0000"

    human = cli("show", "UJ-001")
    assert human.exit_code == 0
    assert "Dispatcher" in human.stdout


def test_fail_and_recover(cli) -> None:
    cli("register", str(cli.doc))
    cli("plan", "handoff-notes")
    cli("begin", "handoff-notes#0000")

    failed = _json(cli("fail", "handoff-notes#0000", "--reason", "analyst unavailable"))
    assert failed["failure_reason"] == "analyst unavailable"

    cli("begin", "handoff-notes#0000")
    assert _json(cli("recover")) == ["handoff-notes#0000"]
    assert _json(cli("next", "handoff-notes"))["id"] == "handoff-notes#0001"


def test_run_with_command_extractor_then_certify(cli) -> None:
    script = cli.tmp_path / "extractor.py"
    script.write_text(EXTRACTOR_SCRIPT, encoding="utf-8")
    command = f"{shlex.quote(sys.executable)} {shlex.quote(str(script))}"
    cli("register", str(cli.doc))

    summary = _json(cli("run", "handoff-notes", "--command", command))
    assert (summary["completed"], summary["failed"]) == (3, 0)

    report_dir = cli.tmp_path / "reports"
    corpus = _json(cli("certify", "--all", "--report", str(report_dir), "--json"))
    assert corpus["status"] == "Certified"
    assert corpus["percent_complete"] == 100.0
    saved = json.loads((report_dir / "coverage_certificate.json").read_text(encoding="utf-8"))
    assert saved["status"] == "Certified"

    exported = _json(cli("export", "--output", str(cli.tmp_path / "export.json")))
    assert exported["insights"] == 1
    bundle = json.loads((cli.tmp_path / "export.json").read_text(encoding="utf-8"))
    assert len(bundle["insights"][0]["source_refs"]) == 3


def test_run_without_extractor(cli) -> None:
    cli("register", str(cli.doc))

    result = cli("run", "handoff-notes")

    assert result.exit_code == 19


def test_human_status_and_certify(cli) -> None:
    cli("register", str(cli.doc))
    cli("plan", "handoff-notes")

    status = cli("status")
    certify = cli("certify", "--all")

    assert status.exit_code == 0
    assert "Pipeline Progress" in status.stdout
    assert certify.exit_code == 0
    assert "Incomplete" in certify.stdout


def test_certify_needs_target(cli) -> None:
    assert cli("certify").exit_code == 2


def test_run_keeps_window_chosen_at_plan_time(cli) -> None:
    script = cli.tmp_path / "extractor.py"
    script.write_text(EXTRACTOR_SCRIPT, encoding="utf-8")
    command = f"{shlex.quote(sys.executable)} {shlex.quote(str(script))}"
    cli("register", str(cli.doc))
    chunks = _json(cli("plan", "handoff-notes", "--chunk-size", "150", "--overlap", "15"))
    assert [(c["start_line"], c["end_line"]) for c in chunks] == [(1, 150), (136, 250)]

    summary = _json(cli("run", "handoff-notes", "--command", command))

    assert (summary["completed"], summary["failed"]) == (2, 0)


def test_status_of_unknown_document_is_empty(cli) -> None:
    as_json = _json(cli("status", "ghost", "--json"))
    human = cli("status", "ghost")

    assert as_json["documents"] == []
    assert human.exit_code == 0


def test_submit_rejects_non_object_items(cli) -> None:
    cli("register", str(cli.doc))
    cli("plan", "handoff-notes")
    cli("begin", "handoff-notes#0000")

    result = cli("submit", "handoff-notes#0000", json.dumps(["x"]))

    assert result.exit_code == 2
    assert '"error":"invalid_payload"' in result.output


def test_submit_rejects_unknown_insight_type(cli) -> None:
    cli("register", str(cli.doc))
    cli("plan", "handoff-notes")
    cli("begin", "handoff-notes#0000")

    result = cli("submit", "handoff-notes#0000", json.dumps({"type": "Anecdote", "fields": {}}))

    assert result.exit_code == 2
    assert '"error":"invalid_payload"' in result.output
