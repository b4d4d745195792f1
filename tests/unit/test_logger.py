"""Tests for PipelineLogger."""
import json
import logging

from cardflow.logger import ACTIVITY_LOG_NAME, PipelineLogger, setup_logging


class TestPipelineLogger:

    def test_writes_jsonl_entry(self, tmp_path):
        pipeline_logger = PipelineLogger("analysis", tmp_path)

        pipeline_logger.log("card_moved", {"card_id": "c1"})

        files = list(tmp_path.glob("analysis-*.jsonl"))
        assert len(files) == 1
        entry = json.loads(files[0].read_text().strip())
        assert entry["event_type"] == "card_moved"
        assert entry["level"] == "info"
        assert entry["pipeline"] == "analysis"
        assert entry["data"] == {"card_id": "c1"}
        assert entry["timestamp"].endswith("Z")

    def test_activity_log_line(self, tmp_path):
        pipeline_logger = PipelineLogger("dev", tmp_path)

        pipeline_logger.log("run_failed", {"error": "line one\nline two"}, level="error")

        lines = (tmp_path / ACTIVITY_LOG_NAME).read_text().splitlines()
        assert len(lines) == 1
        assert "[ERROR] [dev] run_failed error=line one line two" in lines[0]

    def test_secrets_redacted_before_write(self, tmp_path):
        pipeline_logger = PipelineLogger("dev", tmp_path)

        pipeline_logger.log("run_failed", {"error": "push failed: GITHUB_TOKEN=abcdef123456"}, level="error")

        entry = pipeline_logger.read_logs()[0]
        assert entry["data"]["error"] == "push failed: GITHUB_TOKEN=[REDACTED]"
        assert "abcdef123456" not in (tmp_path / ACTIVITY_LOG_NAME).read_text()

    def test_run_context_tags_and_restores(self, tmp_path):
        pipeline_logger = PipelineLogger("dev", tmp_path)

        with pipeline_logger.run_context("123-c1"):
            pipeline_logger.log("inside")
        pipeline_logger.log("outside")

        inside = pipeline_logger.read_logs(event_type="inside")
        outside = pipeline_logger.read_logs(event_type="outside")
        assert inside[0]["run_id"] == "123-c1"
        assert "run_id" not in outside[0]
        assert "run=123-c1" in (tmp_path / ACTIVITY_LOG_NAME).read_text()

    def test_read_logs_filters(self, tmp_path):
        pipeline_logger = PipelineLogger("analysis", tmp_path)
        pipeline_logger.log("a")
        pipeline_logger.log("b", level="warn")
        pipeline_logger.log("c", level="warn")

        assert [e["event_type"] for e in pipeline_logger.read_logs(level="warn")] == ["b", "c"]
        assert len(pipeline_logger.read_logs(limit=2)) == 2
        assert pipeline_logger.read_logs(date="1999-01-01") == []

    def test_long_values_truncated_in_activity_log(self, tmp_path):
        pipeline_logger = PipelineLogger("analysis", tmp_path)

        pipeline_logger.log("plan_produced", {"output": "z" * 500})

        line = (tmp_path / ACTIVITY_LOG_NAME).read_text()
        assert "z" * 200 + "..." in line
        assert "z" * 201 not in line

    def test_mirrors_to_stdlib_logging(self, tmp_path, caplog):
        pipeline_logger = PipelineLogger("dev", tmp_path)

        with caplog.at_level(logging.INFO, logger="cardflow.dev"):
            pipeline_logger.log("branch_pushed", {"branch": "b"})

        assert "branch_pushed branch=b" in caplog.text

    def test_unwritable_directory_does_not_raise(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")

        PipelineLogger("dev", blocker / "logs").log("still_fine")


class TestSetupLogging:

    def test_sets_cardflow_level(self):
        setup_logging("debug")

        assert logging.getLogger("cardflow").level == logging.DEBUG
        logging.getLogger("cardflow").setLevel(logging.NOTSET)
