"""In-memory mirror of jj's workspace list."""

import logging
import os
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from jjdag.config import Config
from jjdag.errors import CommandFailed, JjdagError, RegistryUnavailable
from jjdag.pipeline import CommandPipeline
from jjdag.probes.repo import hosts_repo, repo_dir_for
from jjdag.scm.jj import JJ, ListedWorkspace, ListingParseError, parse_workspace_list
from jjdag.store import OperationStore

logger = logging.getLogger(__name__)


class Layout(str, Enum):
    """Physical arrangement of the workspaces under the project root."""

    EMPTY = "empty"
    UNSCOOPED = "unscooped"  # sole workspace content lives directly in the project root
    SCOOPED = "scooped"  # every workspace lives in project_root/<name>
    MIXED = "mixed"  # neither; never produced by a completed plan


@dataclass(frozen=True)
class Workspace:
    """One jj workspace as last reported by jj."""

    name: str
    path: Path
    is_default: bool
    is_scooped: bool


@dataclass(frozen=True)
class RegistrySnapshot:
    """Immutable view of the workspace list at one refresh."""

    workspaces: tuple[Workspace, ...]
    layout: Layout
    project_root: Optional[Path]

    def __len__(self) -> int:
        return len(self.workspaces)

    def __contains__(self, name: object) -> bool:
        return any(ws.name == name for ws in self.workspaces)

    def get(self, name: str) -> Optional[Workspace]:
        for ws in self.workspaces:
            if ws.name == name:
                return ws
        return None

    def names(self) -> list[str]:
        return [ws.name for ws in self.workspaces]

    def repo_host(self) -> Optional[Workspace]:
        """Workspace whose ``.jj/repo`` is the repository directory itself."""
        for ws in self.workspaces:
            if hosts_repo(ws.path):
                return ws
        return None


class MismatchKind(str, Enum):
    MISSING_ON_DISK = "missing-on-disk"
    STORE_PATH_DIFFERS = "store-path-differs"
    NO_STORE_RECORD = "no-store-record"
    NOT_LISTED = "not-listed"
    STORE_UNREADABLE = "store-unreadable"


@dataclass(frozen=True)
class Mismatch:
    """One disagreement between listing, store and filesystem."""

    kind: MismatchKind
    workspace: str
    detail: str


def classify_layout(
    listed: list[ListedWorkspace], default_name: str
) -> tuple[Layout, Optional[Path]]:
    """
    Derive the layout and project root from listed workspace paths.

    A single workspace is un-scooped with itself as the project root,
    except a non-default workspace sitting in a directory of its own name
    (the default was forgotten while scooped).
    """
    if not listed:
        return Layout.EMPTY, None

    if len(listed) == 1:
        sole = listed[0]
        if sole.name != default_name and sole.path.name == sole.name:
            return Layout.SCOOPED, sole.path.parent
        return Layout.UNSCOOPED, sole.path

    parents = {ws.path.parent for ws in listed}
    if len(parents) == 1 and all(ws.path.name == ws.name for ws in listed):
        return Layout.SCOOPED, parents.pop()
    return Layout.MIXED, None


def build_snapshot(listed: list[ListedWorkspace], default_name: str = "default") -> RegistrySnapshot:
    layout, root = classify_layout(listed, default_name)
    workspaces = tuple(
        Workspace(
            name=ws.name,
            path=ws.path,
            is_default=ws.name == default_name,
            is_scooped=layout == Layout.SCOOPED,
        )
        for ws in listed
    )
    return RegistrySnapshot(workspaces=workspaces, layout=layout, project_root=root)


def repo_dir_of(snapshot: RegistrySnapshot) -> Path:
    """
    Repository directory shared by the workspaces of a snapshot.

    Raises:
        RegistryUnavailable: If no listed workspace leads to a repository
    """
    host = snapshot.repo_host()
    if host is not None:
        return host.path / ".jj" / "repo"
    for ws in snapshot.workspaces:
        try:
            return repo_dir_for(ws.path)
        except (RuntimeError, OSError) as e:
            logger.debug(f"No repository behind {ws.path}: {e}")
    raise RegistryUnavailable("No listed workspace leads to the repository (.jj/repo)")


def locate_store(snapshot: RegistrySnapshot, config: Config) -> OperationStore:
    """
    Open the operation store of the repository behind a snapshot.

    Raises:
        RegistryUnavailable: If no listed workspace leads to the repository
    """
    return OperationStore(config.store_file(repo_dir_of(snapshot)))


def _same_path(a: str, b: Path) -> bool:
    return os.path.normpath(a) == os.path.normpath(str(b))


class WorkspaceRegistry:
    """
    Owns the workspace snapshot.

    Only ``refresh()`` replaces it; readers get the last snapshot without
    running jj.
    """

    def __init__(
        self,
        pipeline: CommandPipeline,
        jj: JJ,
        anchor: Path,
        default_name: str = "default",
        config: Optional[Config] = None,
    ):
        self.pipeline = pipeline
        self.jj = jj
        self.anchor = anchor
        self.default_name = default_name
        self.config = config or Config()
        self.mismatches: list[Mismatch] = []
        self._snapshot: Optional[RegistrySnapshot] = None
        self._lock = threading.Lock()

    def refresh(self, anchor: Optional[Path] = None, verify: bool = True) -> RegistrySnapshot:
        """
        Re-list workspaces and swap in a new snapshot.

        Unless ``verify`` is off, the new snapshot is compared against the
        operation store and the disk. Mismatches are logged as warnings and
        kept in ``mismatches``; nothing is repaired.

        Args:
            anchor: Workspace directory to run the listing from (defaults to the last one)
            verify: Compare against the store and the disk after listing

        Returns:
            The new snapshot

        Raises:
            RegistryUnavailable: Listing failed or was unparseable; prior snapshot kept
        """
        cwd = anchor or self.anchor
        try:
            result = self.pipeline.run(self.jj.workspace_list(cwd))
            listed = parse_workspace_list(result.stdout)
        except CommandFailed as e:
            logger.warning(f"Workspace listing failed: {e}")
            raise RegistryUnavailable(f"Workspace listing failed: {e}") from e
        except ListingParseError as e:
            logger.warning(f"Workspace listing unparseable: {e}")
            raise RegistryUnavailable(f"Workspace listing unparseable: {e}") from e

        snapshot = build_snapshot(listed, self.default_name)
        with self._lock:
            self._snapshot = snapshot
            self.anchor = cwd
        logger.debug(
            f"Registry refreshed: {snapshot.names()} ({snapshot.layout.value}, "
            f"root={snapshot.project_root})"
        )
        if verify:
            self._verify(snapshot)
        return snapshot

    def _verify(self, snapshot: RegistrySnapshot) -> None:
        if snapshot.layout == Layout.EMPTY:
            self.mismatches = []
            return
        try:
            store = locate_store(snapshot, self.config)
        except RegistryUnavailable as e:
            logger.warning(f"Cannot check workspaces against the operation store: {e}")
            self.mismatches = []
            return
        self.mismatches = self.check_consistency(store)

    def current(self) -> RegistrySnapshot:
        """
        Last snapshot, no subprocess call.

        Raises:
            RegistryUnavailable: If never refreshed successfully
        """
        with self._lock:
            snapshot = self._snapshot
        if snapshot is None:
            raise RegistryUnavailable("Workspace registry has not been loaded")
        return snapshot

    def check_consistency(self, store: OperationStore) -> list[Mismatch]:
        """
        Compare the current snapshot against the store and the filesystem.

        Mismatches are reported and logged, never repaired.
        """
        snapshot = self.current()
        mismatches: list[Mismatch] = []

        for ws in snapshot.workspaces:
            if not ws.path.is_dir():
                mismatches.append(
                    Mismatch(MismatchKind.MISSING_ON_DISK, ws.name, f"{ws.path} does not exist")
                )

        try:
            store_paths = store.paths()
        except JjdagError as e:
            mismatches.append(Mismatch(MismatchKind.STORE_UNREADABLE, "", str(e)))
        else:
            for ws in snapshot.workspaces:
                stored = store_paths.get(ws.name)
                if stored is None:
                    mismatches.append(
                        Mismatch(MismatchKind.NO_STORE_RECORD, ws.name, f"listed at {ws.path}")
                    )
                elif not _same_path(stored, ws.path):
                    mismatches.append(
                        Mismatch(
                            MismatchKind.STORE_PATH_DIFFERS,
                            ws.name,
                            f"store has {stored}, listing has {ws.path}",
                        )
                    )
            for name, stored in store_paths.items():
                if name not in snapshot:
                    mismatches.append(
                        Mismatch(MismatchKind.NOT_LISTED, name, f"store record points at {stored}")
                    )

        for mismatch in mismatches:
            logger.warning(
                f"Workspace mismatch ({mismatch.kind.value}) {mismatch.workspace}: {mismatch.detail}"
            )
        if snapshot.layout == Layout.MIXED:
            logger.warning("Workspaces are neither scooped nor un-scooped")
        return mismatches
