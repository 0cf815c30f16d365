"""Jujutsu (jj) invocation vocabulary for workspace topology commands."""

import logging
from dataclasses import dataclass
from pathlib import Path

from jjdag.pipeline import CommandJob

logger = logging.getLogger(__name__)

# One record per line: "<name>: <absolute path>"
LIST_SEPARATOR = ": "
WORKSPACE_LIST_TEMPLATE = 'name ++ ": " ++ root ++ "\\n"'


@dataclass(frozen=True)
class ListedWorkspace:
    """One line of ``jj workspace list`` output."""

    name: str
    path: Path


class ListingParseError(ValueError):
    """Listing line is not ``name: /absolute/path``."""


class JJ:
    """Builds jj command jobs for workspace topology operations."""

    kind = "jj"

    def __init__(self, jj_bin: str = "jj"):
        self.jj_bin = jj_bin

    def _args(self, *args: str) -> list[str]:
        return [self.jj_bin, *args]

    def workspace_list(self, cwd: Path) -> CommandJob:
        """Listing query for the registry, machine-parseable output."""
        return CommandJob(
            args=self._args(
                "workspace", "list", "--color=never", "-T", WORKSPACE_LIST_TEMPLATE
            ),
            cwd=cwd,
            capture=True,
            label="workspace list",
        )

    def workspace_add(self, cwd: Path, name: str, path: Path) -> CommandJob:
        """Create workspace ``name`` checked out at ``path``."""
        return CommandJob(
            args=self._args("workspace", "add", "--name", name, str(path)),
            cwd=cwd,
            sync=True,
            label=f"workspace add {name}",
        )

    def workspace_forget(self, cwd: Path, name: str) -> CommandJob:
        """Stop tracking workspace ``name``; its files stay on disk."""
        return CommandJob(
            args=self._args("workspace", "forget", name),
            cwd=cwd,
            sync=True,
            label=f"workspace forget {name}",
        )

    def workspace_rename(self, cwd: Path, new_name: str) -> CommandJob:
        """Rename the workspace whose directory is ``cwd``."""
        return CommandJob(
            args=self._args("workspace", "rename", new_name),
            cwd=cwd,
            sync=True,
            label=f"workspace rename {new_name}",
        )

    def workspace_update_stale(self, cwd: Path) -> CommandJob:
        return CommandJob(
            args=self._args("workspace", "update-stale"),
            cwd=cwd,
            sync=True,
            label="workspace update-stale",
        )

    def workspace_root(self, cwd: Path) -> CommandJob:
        return CommandJob(
            args=self._args("workspace", "root"),
            cwd=cwd,
            capture=True,
            label="workspace root",
        )


def parse_workspace_list(output: str) -> list[ListedWorkspace]:
    """
    Parse ``jj workspace list`` output.

    Args:
        output: Raw stdout, one ``name: /abs/path`` record per line

    Returns:
        Workspaces in listing order

    Raises:
        ListingParseError: On a malformed line, a relative path or a duplicate name
    """
    workspaces: list[ListedWorkspace] = []
    seen: set[str] = set()

    for line_no, raw in enumerate(output.splitlines(), start=1):
        line = raw.strip()
        if not line:
            continue

        name, sep, path_str = line.partition(LIST_SEPARATOR)
        name = name.strip()
        path_str = path_str.strip()
        if not sep or not name or not path_str:
            raise ListingParseError(f"line {line_no}: expected 'name: path', got {raw!r}")

        path = Path(path_str)
        if not path.is_absolute():
            raise ListingParseError(f"line {line_no}: path is not absolute: {path_str}")
        if name in seen:
            raise ListingParseError(f"line {line_no}: duplicate workspace name '{name}'")

        seen.add(name)
        workspaces.append(ListedWorkspace(name=name, path=path))

    logger.debug(f"Parsed {len(workspaces)} jj workspaces")
    return workspaces
