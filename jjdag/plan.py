"""Intents and plan steps for workspace topology changes.

Both are closed sets of frozen dataclasses; code that consumes them
dispatches on the concrete type and treats anything else as a bug.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union


@dataclass(frozen=True)
class AddWorkspace:
    name: str

    def describe(self) -> str:
        return f"add workspace '{self.name}'"


@dataclass(frozen=True)
class ForgetWorkspace:
    name: str
    delete_directory: Optional[bool] = None  # None: use config.delete_forgotten

    def describe(self) -> str:
        return f"forget workspace '{self.name}'"


@dataclass(frozen=True)
class RenameWorkspace:
    old_name: str
    new_name: str

    def describe(self) -> str:
        return f"rename workspace '{self.old_name}' to '{self.new_name}'"


Intent = Union[AddWorkspace, ForgetWorkspace, RenameWorkspace]


@dataclass(frozen=True)
class InvokeVcs:
    """Run a jj command. Reversible only when ``undo_args`` is known."""

    args: tuple[str, ...]
    cwd: Path
    undo_args: Optional[tuple[str, ...]] = None

    def describe(self) -> str:
        return "run " + " ".join(self.args)


@dataclass(frozen=True)
class MoveDirectory:
    source: Path
    dest: Path

    def describe(self) -> str:
        return f"move {self.source} -> {self.dest}"


@dataclass(frozen=True)
class PatchStoreRecord:
    """Point a workspace's store record at its new path.

    ``store_file`` is where the store will be when the step runs, which
    differs from its current location if an earlier step moved the
    repository.
    """

    workspace_name: str
    new_path: Path
    store_file: Path

    def describe(self) -> str:
        return f"patch store record '{self.workspace_name}' -> {self.new_path}"


@dataclass(frozen=True)
class DiscardDirectory:
    """Set a forgotten workspace's directory aside; purged once the plan succeeds."""

    path: Path

    def describe(self) -> str:
        return f"discard {self.path}"


@dataclass(frozen=True)
class RetargetRepoPointer:
    """Rewrite a secondary workspace's ``.jj/repo`` file after the repository moved."""

    workspace_path: Path
    repo_dir: Path

    def describe(self) -> str:
        return f"point {self.workspace_path}/.jj/repo at {self.repo_dir}"


PlanStep = Union[InvokeVcs, MoveDirectory, PatchStoreRecord, DiscardDirectory, RetargetRepoPointer]


@dataclass(frozen=True)
class TopologyPlan:
    """Ordered steps for one intent, plus where to re-list workspaces afterwards."""

    intent: Intent
    steps: tuple[PlanStep, ...]
    anchor_after: Path
    notes: tuple[str, ...] = field(default_factory=tuple)

    def __len__(self) -> int:
        return len(self.steps)
