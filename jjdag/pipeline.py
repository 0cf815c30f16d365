"""Serialized execution queue for external jj invocations.

jj is not safe to run concurrently against one repository, so every
invocation goes through a single FIFO pipeline: a job runs to completion
(exit code, stdout, stderr) before the next one is dequeued. A failing job
is reported on its own ticket; later jobs still run.
"""

import logging
import subprocess
import threading
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from jjdag.errors import CommandFailed
from jjdag.probes.tools import run_command

logger = logging.getLogger(__name__)

Runner = Callable[[list[str], Optional[Path]], subprocess.CompletedProcess]


@dataclass
class CommandJob:
    """One queued external invocation."""

    args: list[str]
    cwd: Optional[Path] = None
    capture: bool = False  # keep stdout for the model, not just the exit status
    sync: bool = False  # refresh the graph once the queue drains
    label: str = ""  # short name for log lines

    def describe(self) -> str:
        return "$ " + " ".join(self.args)


@dataclass
class CommandResult:
    """Outcome of a finished job."""

    job: CommandJob
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class TicketState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class CommandTicket:
    """Handle returned to the submitter of a job."""

    job: CommandJob
    seq: int
    state: TicketState = TicketState.PENDING
    result: Optional[CommandResult] = None
    error: Optional[CommandFailed] = field(default=None, repr=False)

    @property
    def finished(self) -> bool:
        return self.state in (TicketState.DONE, TicketState.FAILED, TicketState.CANCELLED)

    def outcome(self) -> CommandResult:
        """
        Result of the job.

        Raises:
            CommandFailed: If the job exited non-zero
            RuntimeError: If the job has not run or was cancelled
        """
        if self.state == TicketState.FAILED and self.error is not None:
            raise self.error
        if self.state == TicketState.CANCELLED:
            raise RuntimeError(f"Job cancelled before running: {self.job.describe()}")
        if self.result is None:
            raise RuntimeError(f"Job has not run yet: {self.job.describe()}")
        return self.result


def default_runner(args: list[str], cwd: Optional[Path]) -> subprocess.CompletedProcess:
    return run_command(args, capture=True, check=False, cwd=cwd)


class CommandPipeline:
    """FIFO queue running one jj invocation at a time."""

    def __init__(
        self,
        runner: Optional[Runner] = None,
        on_idle: Optional[Callable[[], None]] = None,
    ):
        self._runner = runner or default_runner
        self._on_idle = on_idle
        self._queue: deque[CommandTicket] = deque()
        self._queue_lock = threading.Lock()
        self._exec_lock = threading.RLock()
        self._seq = 0
        self._running: Optional[CommandTicket] = None
        self._sync_requested = False
        self.output_lines: list[str] = []

    def submit(self, job: CommandJob) -> CommandTicket:
        """Queue a job behind everything already submitted."""
        with self._queue_lock:
            if not self._queue and self._running is None:
                self.output_lines = []
            self._seq += 1
            ticket = CommandTicket(job=job, seq=self._seq)
            self._queue.append(ticket)
        logger.debug(f"Queued #{ticket.seq}: {job.label or job.describe()}")
        return ticket

    def pending(self) -> int:
        with self._queue_lock:
            return len(self._queue)

    def is_idle(self) -> bool:
        with self._queue_lock:
            return not self._queue and self._running is None

    def clear(self) -> int:
        """
        Cancel every job that has not started.

        Returns:
            Number of cancelled jobs
        """
        with self._queue_lock:
            cancelled = list(self._queue)
            self._queue.clear()
        for ticket in cancelled:
            ticket.state = TicketState.CANCELLED
        if cancelled:
            logger.info(f"Cancelled {len(cancelled)} pending job(s)")
        return len(cancelled)

    def process_next(self) -> Optional[CommandTicket]:
        """
        Run the head of the queue to completion.

        Returns:
            The finished ticket, or None if the queue was empty
        """
        with self._exec_lock:
            with self._queue_lock:
                if not self._queue:
                    return None
                ticket = self._queue.popleft()
                ticket.state = TicketState.RUNNING
                self._running = ticket

            try:
                self._execute(ticket)
            finally:
                with self._queue_lock:
                    self._running = None
                    drained = not self._queue

            if drained and self._sync_requested:
                self._sync_requested = False
                if self._on_idle is not None:
                    self._on_idle()
            return ticket

    def drain(self) -> list[CommandTicket]:
        """Run queued jobs until the queue is empty."""
        finished = []
        while True:
            ticket = self.process_next()
            if ticket is None:
                return finished
            finished.append(ticket)

    def run(self, job: CommandJob) -> CommandResult:
        """
        Submit a job and block until it has run.

        Jobs submitted earlier run first.

        Raises:
            CommandFailed: If the job exited non-zero
        """
        ticket = self.submit(job)
        while not ticket.finished:
            self.process_next()
        return ticket.outcome()

    def status_lines(self) -> list[str]:
        """Accumulated output plus the job about to run."""
        lines = list(self.output_lines)
        with self._queue_lock:
            head = self._running or (self._queue[0] if self._queue else None)
        if head is not None:
            if lines:
                lines.append("")
            lines.append(head.job.describe())
            lines.append("Running...")
        return lines

    def _execute(self, ticket: CommandTicket) -> None:
        job = ticket.job
        logger.info(f"Running #{ticket.seq}: {job.label or job.describe()}")
        logger.debug(f"#{ticket.seq} args: {job.args} cwd: {job.cwd}")

        completed = self._runner(job.args, job.cwd)
        stdout = completed.stdout or ""
        stderr = completed.stderr or ""
        result = CommandResult(
            job=job,
            exit_code=completed.returncode,
            stdout=stdout if job.capture else "",
            stderr=stderr,
        )
        ticket.result = result

        if self.output_lines:
            self.output_lines.append("")
        self.output_lines.append(job.describe())

        if result.ok:
            ticket.state = TicketState.DONE
            shown = stdout if job.capture else stderr
            self.output_lines.extend(shown.splitlines())
            if job.sync:
                self._sync_requested = True
            logger.debug(f"#{ticket.seq} finished")
        else:
            ticket.state = TicketState.FAILED
            ticket.error = CommandFailed(job.args, result.exit_code, stderr)
            self.output_lines.extend(stderr.splitlines())
            logger.error(f"#{ticket.seq} failed with exit code {result.exit_code}")
