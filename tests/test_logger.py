import json
from pathlib import Path

from loguru import logger

from insight_pipeline.utils.logger import setup_logger_from_config


def test_json_file_sink(tmp_path: Path) -> None:
    log_file = tmp_path / "logs" / "pipeline.log"
    config = {"logging": {"level": "info", "file": str(log_file), "json": True}}

    setup_logger_from_config(config)
    logger.info("[Scheduler] Begin advisory-1#0000")
    logger.debug("not at this level")
    logger.remove()

    lines = log_file.read_text(encoding="utf-8").splitlines()
    records = [json.loads(line)["record"] for line in lines]
    assert [r["message"] for r in records] == ["[Scheduler] Begin advisory-1#0000"]
    assert records[0]["level"]["name"] == "INFO"


def test_file_sink_can_be_disabled(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)

    setup_logger_from_config({"logging": {"file": "logs/pipeline.log"}}, level="DEBUG", file_enabled=False)
    logger.info("console only")
    logger.remove()

    assert not (tmp_path / "logs").exists()
