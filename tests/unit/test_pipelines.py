"""Tests for the analysis and development pipelines."""
import asyncio
import tempfile
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from cardflow.config import PipelineConfig
from cardflow.errors import ApiError, CommandTimeoutError, ProcessError
from cardflow.ledger import CardLedger
from cardflow.logger import PipelineLogger
from cardflow.models import Attachment, OutcomeKind
from cardflow.pipelines import (
    COMMENT_CEILING,
    AnalysisPipeline,
    DevelopmentPipeline,
    format_dev_output,
    format_error_comment,
    format_no_changes,
    make_run_id,
)
from cardflow.process_runner import ProcessResult


PR_URL = "https://github.com/acme/app/pull/12"


@pytest.fixture(autouse=True)
def scratch_root(tmp_path, monkeypatch):
    """Keep per-run scratch directories inside tmp_path."""
    root = tmp_path / "tmp"
    root.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(root))
    return root


@pytest_asyncio.fixture
async def analysis_ledger(tmp_path):
    async with CardLedger.for_analysis(tmp_path / "data") as ledger:
        yield ledger


@pytest_asyncio.fixture
async def dev_ledger(tmp_path):
    async with CardLedger.for_development(tmp_path / "data") as ledger:
        yield ledger


def _agent(output="the plan"):
    agent = MagicMock()
    if isinstance(output, Exception):
        agent.run = AsyncMock(side_effect=output)
    else:
        agent.run = AsyncMock(return_value=output)
    return agent


def _dev_runner(staged="src/login.ts\n", fail_on=()):
    """Runner mock for git/gh/test commands. Commands matching ``fail_on`` exit 1."""
    calls = []

    async def fake_run(argv, cwd, timeout, **kwargs):
        calls.append(list(argv))
        label = kwargs.get("label") or argv[0]
        for prefix in fail_on:
            if list(argv[:len(prefix)]) == list(prefix):
                raise ProcessError(label, 1, "fatal")
        if argv[:2] == ["git", "diff"]:
            return ProcessResult(stdout=staged, stderr="")
        if argv[:3] == ["gh", "pr", "create"]:
            return ProcessResult(stdout=PR_URL + "\n", stderr="")
        return ProcessResult(stdout="", stderr="")

    runner = MagicMock()
    runner.run = AsyncMock(side_effect=fake_run)
    return runner, calls


class TestFormatting:

    def test_run_id_shape(self):
        run_id = make_run_id("card1")
        millis, card_id = run_id.split("-", 1)

        assert card_id == "card1"
        assert millis.isdigit() and len(millis) >= 13

    def test_error_comment_redacts_and_caps(self):
        message = "GITHUB_TOKEN=ghp_" + "a" * 36 + " " + "x" * 6000

        comment = format_error_comment("CardBot", "1-c", message)

        assert comment.startswith("**CardBot error (run 1-c):**\n\n")
        assert "ghp_" not in comment
        assert len(comment) < 5100

    def test_dev_output_truncated(self):
        comment = format_dev_output("CardBot", "y" * (COMMENT_CEILING + 10))

        assert comment.startswith("**CardBot Dev Output:**\n\n")
        assert comment.endswith("\n\n... (output truncated)")

    def test_dev_output_short_is_verbatim(self):
        assert format_dev_output("CardBot", "done") == "**CardBot Dev Output:**\n\ndone"

    def test_no_changes(self):
        assert format_no_changes("CardBot").startswith("**CardBot: no code changes detected**")


class TestAnalysisPipeline:

    @pytest.mark.asyncio
    async def test_success(self, config, board, card, analysis_ledger, scratch_root):
        agent = _agent("## Plan\n1. Do it")
        pipeline = AnalysisPipeline(config, board, analysis_ledger, agent)

        outcome = await pipeline.process(card)

        assert outcome.kind is OutcomeKind.SUCCESS
        assert board.moves == [("card1", "col-reviewing"), ("card1", "col-reviewed")]
        assert board.comments_for("card1") == ["## Plan\n1. Do it"]
        assert board.updates == []
        assert analysis_ledger.is_processed("card1")
        assert analysis_ledger.get_attempts("card1") == 0

        args = agent.run.call_args.args
        assert args[0] == config.agent.analysis_template_path
        assert "Card: Add login page" in args[1]
        assert args[2] == config.repo_dir
        assert args[3] == config.timeouts.analysis
        assert agent.run.call_args.kwargs["label"] == "Agent CLI"

        record = Path(outcome.artifacts[0])
        assert record.parent == config.logs_path
        assert record.name == "card1-Add_login_page.txt"
        assert "Users need to log in." in record.read_text()
        assert list(scratch_root.iterdir()) == []

    @pytest.mark.asyncio
    async def test_card_update_applied_and_stripped(self, config, board, card, analysis_ledger):
        output = (
            "Plan body\n"
            "```CARD_UPDATE\n"
            "TITLE: Add login page with OAuth\n"
            "DESCRIPTION:\n"
            "Sign in with GitHub.\n"
            "```"
        )
        pipeline = AnalysisPipeline(config, board, analysis_ledger, _agent(output))

        outcome = await pipeline.process(card)

        assert outcome.ok
        assert board.updates == [("card1", "Add login page with OAuth", "Sign in with GitHub.")]
        assert board.comments_for("card1") == ["Plan body"]

    @pytest.mark.asyncio
    async def test_malformed_update_posts_everything(self, config, board, card, analysis_ledger):
        output = "Plan\n```CARD_UPDATE\nTITLE: x"
        pipeline = AnalysisPipeline(config, board, analysis_ledger, _agent(output))

        outcome = await pipeline.process(card)

        assert outcome.ok
        assert board.updates == []
        assert board.comments_for("card1") == [output]

    @pytest.mark.asyncio
    async def test_long_output_truncated_and_saved(self, config, board, card, analysis_ledger):
        output = "p" * (COMMENT_CEILING + 500)
        pipeline = AnalysisPipeline(config, board, analysis_ledger, _agent(output))

        outcome = await pipeline.process(card)

        comment = board.comments_for("card1")[0]
        saved = Path(outcome.artifacts[1])
        assert comment.startswith("p" * COMMENT_CEILING + "\n\n... (truncated; full output saved to ")
        assert str(saved) in comment
        assert saved.read_text() == output

    @pytest.mark.asyncio
    async def test_attachments_downloaded_into_prompt(self, config, board, card, analysis_ledger):
        upload = Attachment(id="a1", name="mockup.pdf", url="https://trello.com/a1", is_upload=True)
        board.attachments["card1"] = [upload]
        board.downloads[upload.url] = b"%PDF"
        agent = _agent()
        pipeline = AnalysisPipeline(config, board, analysis_ledger, agent)

        await pipeline.process(card)

        content = agent.run.call_args.args[1]
        assert "mockup.pdf" in content
        assert "downloaded locally" in content

    @pytest.mark.asyncio
    async def test_agent_failure_requeues(self, config, board, card, analysis_ledger, scratch_root):
        pipeline = AnalysisPipeline(
            config, board, analysis_ledger, _agent(CommandTimeoutError("Agent CLI", 300))
        )

        outcome = await pipeline.process(card)

        assert outcome.kind is OutcomeKind.FAILURE
        assert outcome.attempts == 1
        assert "Agent CLI timed out after 300s" in outcome.error
        assert board.last_column("card1") == "col-revision"
        comments = board.comments_for("card1")
        assert len(comments) == 1
        assert comments[0].startswith(f"**CardBot error (run {outcome.run_id}):**")
        assert "timed out" in comments[0]
        assert not analysis_ledger.is_processed("card1")
        assert analysis_ledger.get_attempts("card1") == 1
        assert list(scratch_root.iterdir()) == []

    @pytest.mark.asyncio
    async def test_cancelled_run_returns_card_to_source(self, config, board, card, analysis_ledger, scratch_root):
        started = asyncio.Event()

        async def hang(*args, **kwargs):
            started.set()
            await asyncio.Event().wait()

        agent = MagicMock()
        agent.run = AsyncMock(side_effect=hang)
        pipeline = AnalysisPipeline(config, board, analysis_ledger, agent)

        task = asyncio.create_task(pipeline.process(card))
        await started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert board.moves == [("card1", "col-reviewing"), ("card1", "col-revision")]
        assert board.comments_for("card1") == []
        assert analysis_ledger.get_attempts("card1") == 0
        assert list(scratch_root.iterdir()) == []

    @pytest.mark.asyncio
    async def test_escalates_after_max_attempts(self, config_factory, board, card, analysis_ledger):
        config = config_factory(failed="col-failed", max_card_attempts=2)
        pipeline = AnalysisPipeline(config, board, analysis_ledger, _agent(ApiError("boom")))

        first = await pipeline.process(card)
        second = await pipeline.process(card)

        assert first.attempts == 1
        assert board.moves[1] == ("card1", "col-revision")
        assert second.attempts == 2
        assert board.last_column("card1") == "col-failed"

    @pytest.mark.asyncio
    async def test_without_failed_column_retries_forever(self, config_factory, board, card, analysis_ledger):
        config = config_factory(max_card_attempts=1)
        pipeline = AnalysisPipeline(config, board, analysis_ledger, _agent(ApiError("boom")))

        for _ in range(3):
            await pipeline.process(card)

        assert analysis_ledger.get_attempts("card1") == 3
        assert board.last_column("card1") == "col-revision"

    @pytest.mark.asyncio
    async def test_success_clears_previous_attempts(self, config, board, card, analysis_ledger):
        await analysis_ledger.increment_attempts("card1")
        pipeline = AnalysisPipeline(config, board, analysis_ledger, _agent())

        await pipeline.process(card)

        assert analysis_ledger.get_attempts("card1") == 0

    @pytest.mark.asyncio
    async def test_comment_failure_still_routes_card(self, config, board, card, analysis_ledger):
        board.comment_error = ApiError("Trello API error 500: down", 500)
        pipeline = AnalysisPipeline(config, board, analysis_ledger, _agent())

        outcome = await pipeline.process(card)

        assert outcome.kind is OutcomeKind.FAILURE
        assert analysis_ledger.get_attempts("card1") == 1
        assert board.last_column("card1") == "col-revision"

    @pytest.mark.asyncio
    async def test_failure_logged_with_run_id(self, config, board, card, analysis_ledger):
        pipeline_logger = PipelineLogger("analysis", config.logs_path)
        pipeline = AnalysisPipeline(
            config, board, analysis_ledger, _agent(ApiError("nope")), pipeline_logger
        )

        outcome = await pipeline.process(card)

        entries = pipeline_logger.read_logs(event_type="run_failed")
        assert entries[0]["run_id"] == outcome.run_id
        assert entries[0]["data"]["error_type"] == "ApiError"


class TestDevelopmentPipeline:

    def _pipeline(self, config, board, ledger, runner, agent=None):
        return DevelopmentPipeline(config, board, ledger, agent or _agent("implemented"), runner)

    @pytest.mark.asyncio
    async def test_success_opens_pull_request(self, config_factory, board, card, dev_ledger):
        config = config_factory(pipeline=PipelineConfig(test_commands=["npm run lint", "npm test"]))
        runner, calls = _dev_runner()
        agent = _agent("implemented")
        pipeline = self._pipeline(config, board, dev_ledger, runner, agent)

        outcome = await pipeline.process(card)

        worktree_path = str(config.worktree_path / "card1")
        assert outcome.kind is OutcomeKind.SUCCESS
        assert outcome.artifacts == [PR_URL]
        assert board.moves == [("card1", "col-developing"), ("card1", "col-developed")]
        assert board.comments_for("card1") == ["**CardBot Dev Output:**\n\nimplemented"]
        assert board.url_attachments == [("card1", PR_URL, "Pull Request")]
        assert dev_ledger.is_processed("card1")

        assert agent.run.call_args.args[2] == Path(worktree_path)
        assert agent.run.call_args.kwargs["label"] == "Agent dev CLI"

        tests = [c for c in calls if c[0] == "bash"]
        assert tests == [["bash", "-c", "npm run lint"], ["bash", "-c", "npm test"]]
        order = [c[:2] for c in calls]
        assert order.index(["bash", "-c"]) < order.index(["git", "commit"])
        assert order.index(["git", "push"]) < order.index(["gh", "pr"])
        assert ["git", "worktree", "remove", "--force", worktree_path] in calls
        assert calls[-1] == ["git", "branch", "-D", "cardbot-dev/add-login-page"]

    @pytest.mark.asyncio
    async def test_verification_failure(self, config_factory, board, card, dev_ledger):
        config = config_factory(pipeline=PipelineConfig(test_commands=["npm test", "npm run e2e"]))
        runner, calls = _dev_runner(fail_on=[["bash", "-c", "npm test"]])
        pipeline = self._pipeline(config, board, dev_ledger, runner)

        outcome = await pipeline.process(card)

        assert outcome.kind is OutcomeKind.FAILURE
        assert "Test command `npm test` exited with code 1" in outcome.error
        assert ["bash", "-c", "npm run e2e"] not in calls
        assert not any(c[:2] in (["git", "commit"], ["git", "push"]) for c in calls)
        assert not any(c[0] == "gh" for c in calls)
        assert ["git", "worktree", "remove", "--force", str(config.worktree_path / "card1")] in calls
        assert dev_ledger.get_attempts("card1") == 1
        assert not dev_ledger.is_processed("card1")
        assert board.last_column("card1") == "col-dev"
        assert "Test command `npm test`" in board.comments_for("card1")[-1]

    @pytest.mark.asyncio
    async def test_cancelled_run_returns_card_to_source(self, config, board, card, dev_ledger):
        started = asyncio.Event()

        async def hang(*args, **kwargs):
            started.set()
            await asyncio.Event().wait()

        agent = MagicMock()
        agent.run = AsyncMock(side_effect=hang)
        runner, _ = _dev_runner()
        pipeline = self._pipeline(config, board, dev_ledger, runner, agent)

        task = asyncio.create_task(pipeline.process(card))
        await started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert board.moves == [("card1", "col-developing"), ("card1", "col-dev")]
        assert not dev_ledger.is_processed("card1")

    @pytest.mark.asyncio
    async def test_no_changes(self, config, board, card, dev_ledger):
        await dev_ledger.increment_attempts("card1")
        runner, calls = _dev_runner(staged="")
        pipeline = self._pipeline(config, board, dev_ledger, runner)

        outcome = await pipeline.process(card)

        assert outcome.kind is OutcomeKind.NOOP
        assert not any(c[:2] in (["git", "commit"], ["git", "push"]) for c in calls)
        assert not any(c[0] == "gh" for c in calls)
        assert board.url_attachments == []
        assert board.last_column("card1") == "col-developed"
        assert board.comments_for("card1")[-1] == format_no_changes("CardBot")
        assert dev_ledger.is_processed("card1")
        assert dev_ledger.get_attempts("card1") == 0

    @pytest.mark.asyncio
    async def test_worktree_creation_failure(self, config, board, card, dev_ledger):
        runner, calls = _dev_runner(fail_on=[["git", "fetch"]])
        agent = _agent()
        pipeline = self._pipeline(config, board, dev_ledger, runner, agent)

        outcome = await pipeline.process(card)

        assert outcome.kind is OutcomeKind.FAILURE
        agent.run.assert_not_called()
        assert calls[-1][:3] == ["git", "branch", "-D"]
        assert board.last_column("card1") == "col-dev"

    @pytest.mark.asyncio
    async def test_push_failure_skips_pull_request(self, config, board, card, dev_ledger):
        runner, calls = _dev_runner(fail_on=[["git", "push"]])
        pipeline = self._pipeline(config, board, dev_ledger, runner)

        outcome = await pipeline.process(card)

        assert outcome.kind is OutcomeKind.FAILURE
        assert not any(c[0] == "gh" for c in calls)
        assert board.url_attachments == []

    @pytest.mark.asyncio
    async def test_dev_server_wraps_test_commands(self, config_factory, board, card, dev_ledger, monkeypatch):
        events = []

        class FakeDevServer:
            def __init__(self, runner, command, ready_pattern, cwd, ready_timeout, grace, logger=None):
                events.append(("init", command, ready_pattern, Path(cwd).name))

            async def __aenter__(self):
                events.append("start")
                return self

            async def __aexit__(self, *exc_info):
                events.append("stop")

        monkeypatch.setattr("cardflow.pipelines.DevServer", FakeDevServer)
        config = config_factory(pipeline=PipelineConfig(
            dev_command="npm run dev", dev_ready_pattern="ready in", test_commands=["npm test"],
        ))
        runner, calls = _dev_runner(fail_on=[["bash", "-c", "npm test"]])
        pipeline = self._pipeline(config, board, dev_ledger, runner)

        outcome = await pipeline.process(card)

        assert outcome.kind is OutcomeKind.FAILURE
        assert events == [("init", "npm run dev", "ready in", "card1"), "start", "stop"]

    @pytest.mark.asyncio
    async def test_no_test_commands_still_publishes(self, config, board, card, dev_ledger):
        runner, calls = _dev_runner()
        pipeline = self._pipeline(config, board, dev_ledger, runner)

        outcome = await pipeline.process(card)

        assert outcome.kind is OutcomeKind.SUCCESS
        assert not any(c[0] == "bash" for c in calls)
