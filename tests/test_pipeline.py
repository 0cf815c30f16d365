"""Tests for the serialized command pipeline."""

import logging
import subprocess
import threading
from pathlib import Path
from typing import Optional

import pytest

from jjdag.errors import CommandFailed
from jjdag.pipeline import CommandJob, CommandPipeline, TicketState


class ScriptedRunner:
    """Returns canned results and records call order."""

    def __init__(self, results: Optional[dict[str, tuple[int, str, str]]] = None):
        self.results = results or {}
        self.calls: list[list[str]] = []

    def __call__(self, args: list[str], cwd: Optional[Path]) -> subprocess.CompletedProcess:
        self.calls.append(args)
        code, out, err = self.results.get(args[-1], (0, f"{args[-1]} out\n", ""))
        return subprocess.CompletedProcess(args, code, stdout=out, stderr=err)


def job(name: str, **kwargs) -> CommandJob:
    return CommandJob(args=["jj", name], **kwargs)


class TestOrdering:
    def test_fifo(self):
        runner = ScriptedRunner()
        pipeline = CommandPipeline(runner=runner)
        for name in ("a", "b", "c"):
            pipeline.submit(job(name))

        finished = pipeline.drain()

        assert [t.job.args[-1] for t in finished] == ["a", "b", "c"]
        assert runner.calls == [["jj", "a"], ["jj", "b"], ["jj", "c"]]
        assert [t.seq for t in finished] == [1, 2, 3]

    def test_failure_does_not_stop_queue(self):
        runner = ScriptedRunner({"b": (1, "", "Error: b broke\n")})
        pipeline = CommandPipeline(runner=runner)
        tickets = [pipeline.submit(job(name)) for name in ("a", "b", "c")]

        pipeline.drain()

        assert [t.state for t in tickets] == [
            TicketState.DONE,
            TicketState.FAILED,
            TicketState.DONE,
        ]
        with pytest.raises(CommandFailed, match="b broke"):
            tickets[1].outcome()

    def test_run_waits_for_earlier_jobs(self):
        runner = ScriptedRunner()
        pipeline = CommandPipeline(runner=runner)
        pipeline.submit(job("first"))

        result = pipeline.run(job("second", capture=True))

        assert runner.calls == [["jj", "first"], ["jj", "second"]]
        assert result.stdout == "second out\n"
        assert result.ok

    def test_run_raises_command_failed(self):
        pipeline = CommandPipeline(runner=ScriptedRunner({"x": (2, "", "nope")}))
        with pytest.raises(CommandFailed) as exc_info:
            pipeline.run(job("x"))
        assert exc_info.value.returncode == 2
        assert exc_info.value.stderr == "nope"

    def test_one_invocation_at_a_time(self):
        """Concurrent callers never overlap inside the runner."""
        active = 0
        peak = 0
        calls = 0
        lock = threading.Lock()

        def runner(args, cwd):
            nonlocal active, peak, calls
            with lock:
                active += 1
                calls += 1
                peak = max(peak, active)
            threading.Event().wait(0.01)
            with lock:
                active -= 1
            return subprocess.CompletedProcess(args, 0, stdout="", stderr="")

        pipeline = CommandPipeline(runner=runner)
        threads = [
            threading.Thread(target=pipeline.run, args=(job(str(i)),)) for i in range(8)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert peak == 1
        assert calls == 8


class TestOutput:
    def test_capture_keeps_stdout(self):
        pipeline = CommandPipeline(runner=ScriptedRunner())
        uncaptured = pipeline.run(job("a"))
        captured = pipeline.run(job("b", capture=True))
        assert uncaptured.stdout == ""
        assert captured.stdout == "b out\n"

    def test_output_accumulates_with_headers(self):
        runner = ScriptedRunner({"b": (0, "", "Working copy now at: abc\n")})
        pipeline = CommandPipeline(runner=runner)
        pipeline.submit(job("a", capture=True))
        pipeline.submit(job("b"))
        pipeline.drain()

        assert pipeline.output_lines == [
            "$ jj a",
            "a out",
            "",
            "$ jj b",
            "Working copy now at: abc",
        ]

    def test_output_resets_when_idle(self):
        pipeline = CommandPipeline(runner=ScriptedRunner())
        pipeline.run(job("a", capture=True))
        pipeline.run(job("b", capture=True))
        assert pipeline.output_lines == ["$ jj b", "b out"]

    def test_status_lines_show_running_head(self):
        pipeline = CommandPipeline(runner=ScriptedRunner())
        pipeline.submit(job("a", capture=True))
        pipeline.submit(job("b"))
        pipeline.process_next()
        assert pipeline.status_lines() == ["$ jj a", "a out", "", "$ jj b", "Running..."]

    def test_status_lines_empty_when_idle_and_fresh(self):
        assert CommandPipeline(runner=ScriptedRunner()).status_lines() == []

    def test_failed_job_output_shows_stderr(self):
        pipeline = CommandPipeline(runner=ScriptedRunner({"a": (1, "", "Error: conflict\n")}))
        ticket = pipeline.submit(job("a"))
        pipeline.drain()
        assert ticket.state == TicketState.FAILED
        assert pipeline.output_lines == ["$ jj a", "Error: conflict"]


class TestLogging:
    def test_label_names_the_job(self, caplog):
        pipeline = CommandPipeline(runner=ScriptedRunner())
        with caplog.at_level(logging.INFO, logger="jjdag.pipeline"):
            pipeline.run(job("list", label="workspace list"))
            pipeline.run(job("root"))

        assert "Running #1: workspace list" in caplog.text
        assert "Running #2: $ jj root" in caplog.text


class TestQueueControl:
    def test_clear_cancels_pending(self):
        runner = ScriptedRunner()
        pipeline = CommandPipeline(runner=runner)
        tickets = [pipeline.submit(job(name)) for name in ("a", "b")]

        assert pipeline.clear() == 2
        assert pipeline.pending() == 0
        assert pipeline.is_idle()
        assert runner.calls == []
        assert all(t.state == TicketState.CANCELLED for t in tickets)
        with pytest.raises(RuntimeError, match="cancelled"):
            tickets[0].outcome()

    def test_outcome_before_run(self):
        pipeline = CommandPipeline(runner=ScriptedRunner())
        ticket = pipeline.submit(job("a"))
        with pytest.raises(RuntimeError, match="not run"):
            ticket.outcome()

    def test_process_next_on_empty_queue(self):
        assert CommandPipeline(runner=ScriptedRunner()).process_next() is None


class TestOnIdle:
    def test_fires_after_sync_job_drains(self):
        calls = []
        pipeline = CommandPipeline(runner=ScriptedRunner(), on_idle=lambda: calls.append(True))
        pipeline.submit(job("add", sync=True))
        pipeline.submit(job("log"))

        pipeline.process_next()
        assert calls == []
        pipeline.process_next()
        assert calls == [True]

    def test_not_fired_without_sync(self):
        calls = []
        pipeline = CommandPipeline(runner=ScriptedRunner(), on_idle=lambda: calls.append(True))
        pipeline.run(job("log"))
        assert calls == []

    def test_not_fired_for_failed_sync_job(self):
        calls = []
        pipeline = CommandPipeline(
            runner=ScriptedRunner({"add": (1, "", "boom")}),
            on_idle=lambda: calls.append(True),
        )
        pipeline.submit(job("add", sync=True))
        pipeline.drain()
        assert calls == []
