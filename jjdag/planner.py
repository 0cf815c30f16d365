"""Planning and executing workspace topology changes.

An intent (add / forget / rename) is turned into a ``TopologyPlan`` against
a freshly listed registry snapshot, after checking that jj's store, jj's
listing and the filesystem agree. Every validation that can fail happens
before the first step runs. Steps then run strictly in order; each applied
step leaves a compensation behind and a failure unwinds them in reverse.
"""

import logging
import os
import shutil
import tempfile
import threading
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from jjdag.config import Config
from jjdag.errors import (
    IoFailure,
    JjdagError,
    MoveVerificationFailed,
    PathCollision,
    PlanFailed,
    PlanRejected,
    RegistryUnavailable,
    TopologyDrift,
)
from jjdag.mover import DirectoryMover
from jjdag.pipeline import CommandJob, CommandPipeline
from jjdag.plan import (
    AddWorkspace,
    DiscardDirectory,
    ForgetWorkspace,
    Intent,
    InvokeVcs,
    MoveDirectory,
    PatchStoreRecord,
    PlanStep,
    RenameWorkspace,
    RetargetRepoPointer,
    TopologyPlan,
)
from jjdag.probes.repo import hosts_repo
from jjdag.registry import (
    Layout,
    RegistrySnapshot,
    WorkspaceRegistry,
    locate_store,
    repo_dir_of,
)
from jjdag.scm.jj import JJ
from jjdag.store import OperationStore, restore_repo_pointer, retarget_repo_pointer

logger = logging.getLogger(__name__)

DISCARD_PREFIX = ".jjdag-discard-"


@dataclass
class _Compensation:
    description: str
    action: Optional[Callable[[], None]] = None
    warning: Optional[str] = None


@dataclass
class PlanOutcome:
    """Result of a successfully executed plan."""

    plan: TopologyPlan
    snapshot: Optional[RegistrySnapshot]
    warnings: list[str] = field(default_factory=list)


class IntentState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class QueuedIntent:
    """Handle for an intent waiting its turn."""

    intent: Intent
    state: IntentState = IntentState.PENDING
    outcome: Optional[PlanOutcome] = None
    error: Optional[JjdagError] = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def cancel(self) -> bool:
        """Cancel if not started yet. A running plan is never cancelled."""
        with self._lock:
            if self.state != IntentState.PENDING:
                return False
            self.state = IntentState.CANCELLED
            return True

    def start(self) -> bool:
        """Move from pending to running; False if it was cancelled first."""
        with self._lock:
            if self.state != IntentState.PENDING:
                return False
            self.state = IntentState.RUNNING
            return True


def _relocated(path: Path, moved_from: Path, moved_to: Path) -> Path:
    """Where ``path`` ends up after ``moved_from`` is moved to ``moved_to``.

    Handles scoop (``moved_to`` inside ``moved_from``) and un-scoop by
    re-rooting the part of ``path`` below ``moved_from``.
    """
    path = Path(os.path.abspath(path))
    moved_from = Path(os.path.abspath(moved_from))
    moved_to = Path(os.path.abspath(moved_to))
    if moved_to.parent == moved_from and path.is_relative_to(moved_to):
        return path
    if not path.is_relative_to(moved_from):
        return path
    return moved_to / path.relative_to(moved_from)


def validate_name(name: str) -> None:
    if not name or not name.strip():
        raise PlanRejected("Workspace name must not be empty")
    if name != name.strip():
        raise PlanRejected(f"Workspace name has surrounding whitespace: {name!r}")
    if "/" in name or os.sep in name:
        raise PlanRejected(f"Workspace name cannot be used as a directory name: {name!r}")
    if name.startswith("."):
        raise PlanRejected(f"Workspace name must not start with a dot: {name!r}")


class TopologyPlanner:
    """Builds and runs topology plans, one at a time."""

    def __init__(
        self,
        registry: WorkspaceRegistry,
        pipeline: CommandPipeline,
        jj: JJ,
        config: Optional[Config] = None,
        mover: Optional[DirectoryMover] = None,
    ):
        self.registry = registry
        self.pipeline = pipeline
        self.jj = jj
        self.config = config or Config()
        self.mover = mover or DirectoryMover()
        self._plan_lock = threading.RLock()
        self._intents: deque[QueuedIntent] = deque()
        self._intents_lock = threading.Lock()

    # planning

    def build_plan(self, intent: Intent) -> TopologyPlan:
        """
        Plan an intent against a freshly listed registry.

        Raises:
            RegistryUnavailable: Listing failed
            TopologyDrift: Store, listing and disk disagree, or the layout is mixed
            PlanRejected: The intent does not fit the current workspaces
            PathCollision: A move destination is occupied
        """
        snapshot = self.registry.refresh(verify=False)
        store = self._check_drift(snapshot)

        if isinstance(intent, AddWorkspace):
            plan = self._plan_add(snapshot, store, intent)
        elif isinstance(intent, ForgetWorkspace):
            plan = self._plan_forget(snapshot, store, intent)
        elif isinstance(intent, RenameWorkspace):
            plan = self._plan_rename(snapshot, store, intent)
        else:
            raise TypeError(f"Unknown intent: {intent!r}")

        logger.info(f"Planned {intent.describe()}: {len(plan)} step(s)")
        for index, step in enumerate(plan.steps, start=1):
            logger.debug(f"  {index}. {step.describe()}")
        return plan

    def _check_drift(self, snapshot: RegistrySnapshot) -> OperationStore:
        if snapshot.layout == Layout.EMPTY:
            raise RegistryUnavailable("jj reported no workspaces")
        if snapshot.layout == Layout.MIXED:
            raise TopologyDrift(
                "Workspaces are neither scooped nor un-scooped: "
                + ", ".join(f"{ws.name}={ws.path}" for ws in snapshot.workspaces)
            )
        store = locate_store(snapshot, self.config)
        mismatches = self.registry.check_consistency(store)
        if mismatches:
            raise TopologyDrift(
                "Workspace state disagrees with the operation store or disk; "
                "resolve before changing workspaces: "
                + "; ".join(f"{m.workspace}: {m.detail}" for m in mismatches),
                mismatches=mismatches,
            )
        return store

    def _move_steps(
        self,
        snapshot: RegistrySnapshot,
        store: OperationStore,
        name: str,
        source: Path,
        dest: Path,
        vacating: tuple[Path, ...] = (),
    ) -> list[PlanStep]:
        """
        Steps that relocate one workspace: the move, its store record and,
        when the repository travels with it or it changes depth, the
        ``.jj/repo`` pointers that would otherwise dangle.
        """
        self.mover.classify(source, dest, vacating=vacating)
        steps: list[PlanStep] = [MoveDirectory(source=source, dest=dest)]
        steps.append(
            PatchStoreRecord(
                workspace_name=name,
                new_path=dest,
                store_file=_relocated(store.path, source, dest),
            )
        )

        if hosts_repo(source):
            repo_dir = dest / ".jj" / "repo"
            for other in snapshot.workspaces:
                if other.path != source and other.path not in vacating:
                    steps.append(RetargetRepoPointer(workspace_path=other.path, repo_dir=repo_dir))
        elif source.parent != dest.parent:
            steps.append(RetargetRepoPointer(workspace_path=dest, repo_dir=repo_dir_of(snapshot)))
        return steps

    def _plan_add(
        self, snapshot: RegistrySnapshot, store: OperationStore, intent: AddWorkspace
    ) -> TopologyPlan:
        validate_name(intent.name)
        if intent.name in snapshot:
            raise PlanRejected(f"Workspace '{intent.name}' already exists")

        root = snapshot.project_root
        assert root is not None
        target = root / intent.name
        steps: list[PlanStep] = []

        if snapshot.layout == Layout.UNSCOOPED:
            sole = snapshot.workspaces[0]
            scooped_path = root / sole.name
            steps.extend(self._move_steps(snapshot, store, sole.name, root, scooped_path))
            cwd = scooped_path
        else:
            if target.exists() and (not target.is_dir() or any(target.iterdir())):
                raise PathCollision(target)
            host = snapshot.repo_host()
            cwd = host.path if host is not None else snapshot.workspaces[0].path

        job = self.jj.workspace_add(cwd, intent.name, target)
        steps.append(InvokeVcs(args=tuple(job.args), cwd=cwd))
        return TopologyPlan(intent=intent, steps=tuple(steps), anchor_after=cwd)

    def _plan_forget(
        self, snapshot: RegistrySnapshot, store: OperationStore, intent: ForgetWorkspace
    ) -> TopologyPlan:
        ws = snapshot.get(intent.name)
        if ws is None:
            raise PlanRejected(f"No workspace named '{intent.name}'")
        remaining = [other for other in snapshot.workspaces if other.name != intent.name]
        if not remaining:
            raise PlanRejected(f"Cannot forget '{intent.name}': it is the only workspace")

        root = snapshot.project_root
        assert root is not None
        notes: list[str] = []

        host = snapshot.repo_host()
        anchor = host.path if host is not None and host.name != ws.name else remaining[0].path
        job = self.jj.workspace_forget(anchor, intent.name)
        steps: list[PlanStep] = [InvokeVcs(args=tuple(job.args), cwd=anchor)]

        delete = intent.delete_directory
        if delete is None:
            delete = self.config.delete_forgotten
        vacating: tuple[Path, ...] = ()
        if delete and ws.path.is_dir():
            if hosts_repo(ws.path):
                notes.append(f"{ws.path} holds the repository and is kept on disk")
            else:
                steps.append(DiscardDirectory(path=ws.path))
                vacating = (ws.path,)

        sole = remaining[0]
        if (
            snapshot.layout == Layout.SCOOPED
            and len(remaining) == 1
            and sole.name == self.config.default_workspace
        ):
            if hosts_repo(ws.path):
                raise PlanRejected(
                    f"Cannot forget '{ws.name}': it holds the repository and "
                    f"'{sole.name}' would be un-scooped into {root} beside it"
                )
            steps.extend(
                self._move_steps(snapshot, store, sole.name, sole.path, root, vacating=vacating)
            )
            anchor = root

        for note in notes:
            logger.warning(note)
        return TopologyPlan(
            intent=intent, steps=tuple(steps), anchor_after=anchor, notes=tuple(notes)
        )

    def _plan_rename(
        self, snapshot: RegistrySnapshot, store: OperationStore, intent: RenameWorkspace
    ) -> TopologyPlan:
        validate_name(intent.new_name)
        ws = snapshot.get(intent.old_name)
        if ws is None:
            raise PlanRejected(f"No workspace named '{intent.old_name}'")
        if intent.new_name == intent.old_name:
            raise PlanRejected(f"Workspace is already named '{intent.new_name}'")
        if intent.new_name in snapshot:
            raise PlanRejected(f"Workspace '{intent.new_name}' already exists")

        if (
            snapshot.layout == Layout.UNSCOOPED
            and intent.new_name != self.config.default_workspace
            and ws.path.name == intent.new_name
        ):
            raise PlanRejected(
                f"Renaming to '{intent.new_name}' inside {ws.path} would read as a scooped layout"
            )

        rename = self.jj.workspace_rename(ws.path, intent.new_name)
        undo = self.jj.workspace_rename(ws.path, intent.old_name)
        steps: list[PlanStep] = [
            InvokeVcs(args=tuple(rename.args), cwd=ws.path, undo_args=tuple(undo.args))
        ]
        anchor = ws.path

        if snapshot.layout == Layout.SCOOPED:
            root = snapshot.project_root
            assert root is not None
            new_path = root / intent.new_name
            steps.extend(self._move_steps(snapshot, store, intent.new_name, ws.path, new_path))
            anchor = new_path

        return TopologyPlan(intent=intent, steps=tuple(steps), anchor_after=anchor)

    # execution

    def execute(self, plan: TopologyPlan) -> PlanOutcome:
        """
        Run a plan's steps in order.

        Raises:
            PlanFailed: A step failed; applied steps were compensated in reverse
        """
        with self._plan_lock:
            applied: list[_Compensation] = []
            staged: list[Path] = []

            for index, step in enumerate(plan.steps):
                logger.info(f"Step {index + 1}/{len(plan)}: {step.describe()}")
                try:
                    applied.append(self._apply_step(step, staged))
                except Exception as e:
                    logger.error(f"Step {index + 1} failed: {e}")
                    partial = self._partial_compensation(step, e)
                    if partial is not None:
                        applied.append(partial)
                    errors, warnings = self._rollback(applied)
                    for stage in staged:
                        self._remove_stage_if_empty(stage)
                    raise PlanFailed(index, step, e, errors, warnings) from e

            warnings = self._purge(staged)
            try:
                snapshot: Optional[RegistrySnapshot] = self.registry.refresh(plan.anchor_after)
            except RegistryUnavailable as e:
                warnings.append(f"Plan applied but workspace list could not be refreshed: {e}")
                snapshot = None

            logger.info(f"Completed {plan.intent.describe()}")
            return PlanOutcome(plan=plan, snapshot=snapshot, warnings=warnings)

    def apply(self, intent: Intent) -> PlanOutcome:
        """Plan and execute one intent while holding the plan lock."""
        with self._plan_lock:
            return self.execute(self.build_plan(intent))

    def _apply_step(self, step: PlanStep, staged: list[Path]) -> _Compensation:
        if isinstance(step, InvokeVcs):
            self.pipeline.run(CommandJob(args=list(step.args), cwd=step.cwd, sync=True))
            if step.undo_args is not None:
                undo_args = list(step.undo_args)
                return _Compensation(
                    description="run " + " ".join(undo_args),
                    action=lambda: self._run_undo(undo_args, step.cwd),
                )
            return _Compensation(
                description=step.describe(),
                warning=f"'{' '.join(step.args)}' already ran and cannot be undone",
            )

        if isinstance(step, MoveDirectory):
            receipt = self.mover.move(step.source, step.dest)
            return _Compensation(
                description=f"move {step.dest} back to {step.source}",
                action=lambda: self.mover.revert(receipt),
            )

        if isinstance(step, PatchStoreRecord):
            store = OperationStore(step.store_file)
            previous = store.patch_path(step.workspace_name, str(step.new_path))
            return _Compensation(
                description=f"restore store record '{step.workspace_name}'",
                action=lambda: store.replace_record(step.workspace_name, previous),
            )

        if isinstance(step, DiscardDirectory):
            stage = Path(tempfile.mkdtemp(prefix=DISCARD_PREFIX, dir=step.path.parent))
            staged.append(stage)
            parked = stage / step.path.name
            os.rename(step.path, parked)
            return _Compensation(
                description=f"restore {step.path}",
                action=lambda: os.rename(parked, step.path),
            )

        if isinstance(step, RetargetRepoPointer):
            previous_pointer = retarget_repo_pointer(step.workspace_path, step.repo_dir)
            return _Compensation(
                description=f"restore {step.workspace_path}/.jj/repo",
                action=lambda: restore_repo_pointer(step.workspace_path, previous_pointer),
            )

        raise TypeError(f"Unknown plan step: {step!r}")

    def _run_undo(self, args: list[str], cwd: Path) -> None:
        self.pipeline.run(CommandJob(args=args, cwd=cwd, sync=True))

    def _partial_compensation(self, step: PlanStep, error: Exception) -> Optional[_Compensation]:
        """Undo the visible effect of a step that failed part-way."""
        if isinstance(step, MoveDirectory) and isinstance(
            error, (MoveVerificationFailed, IoFailure)
        ):
            receipt = error.receipt
            if receipt is not None:
                return _Compensation(
                    description=f"move {step.dest} back to {step.source}",
                    action=lambda: self.mover.revert(receipt),
                )
        return None

    def _rollback(self, applied: list[_Compensation]) -> tuple[list[str], list[str]]:
        errors: list[str] = []
        warnings: list[str] = []
        for compensation in reversed(applied):
            if compensation.action is None:
                warnings.append(compensation.warning or compensation.description)
                logger.warning(f"Cannot roll back: {compensation.warning}")
                continue
            logger.info(f"Rolling back: {compensation.description}")
            try:
                compensation.action()
            except (JjdagError, OSError) as e:
                message = f"{compensation.description} failed: {e}"
                logger.error(f"Rollback step {message}")
                errors.append(message)
        return errors, warnings

    def _purge(self, staged: list[Path]) -> list[str]:
        warnings = []
        for stage in staged:
            try:
                shutil.rmtree(stage)
                logger.debug(f"Purged {stage}")
            except OSError as e:
                warnings.append(f"Could not delete discarded directory {stage}: {e}")
                logger.warning(warnings[-1])
        return warnings

    @staticmethod
    def _remove_stage_if_empty(stage: Path) -> None:
        try:
            stage.rmdir()
        except OSError as e:
            logger.warning(f"Leaving staging directory {stage}: {e}")

    # intent queue

    def submit(self, intent: Intent) -> QueuedIntent:
        """Queue an intent behind those already submitted."""
        queued = QueuedIntent(intent=intent)
        with self._intents_lock:
            self._intents.append(queued)
        logger.debug(f"Queued intent: {intent.describe()}")
        return queued

    def pending_intents(self) -> list[QueuedIntent]:
        with self._intents_lock:
            return [q for q in self._intents if q.state == IntentState.PENDING]

    def drain(self) -> list[QueuedIntent]:
        """
        Run queued intents in submission order, one plan at a time.

        Failures are recorded on the handle; the queue moves on.
        """
        finished: list[QueuedIntent] = []
        while True:
            with self._intents_lock:
                if not self._intents:
                    return finished
                queued = self._intents.popleft()
            with self._plan_lock:
                if not queued.start():
                    continue
                try:
                    queued.outcome = self.apply(queued.intent)
                    queued.state = IntentState.DONE
                except JjdagError as e:
                    queued.error = e
                    queued.state = IntentState.FAILED
                    logger.error(f"{queued.intent.describe()} failed: {e}")
            finished.append(queued)
