"""jj repository probes."""

import logging
from pathlib import Path
from typing import Optional

from jjdag.probes.tools import SubprocessError, run_command_output_cwd

logger = logging.getLogger(__name__)


def find_jj_root(start: Path, jj_bin: str = "jj") -> Path:
    """
    Find the root of the jj workspace containing ``start``.

    Returns:
        Path to the workspace root

    Raises:
        RuntimeError: If ``start`` is not inside a jj workspace
    """
    try:
        root_str = run_command_output_cwd([jj_bin, "root"], cwd=start)
        root = Path(root_str)
        logger.debug(f"jj root: {root}")
        return root
    except (SubprocessError, FileNotFoundError, NotADirectoryError) as e:
        logger.debug(f"Not in jj workspace: {e}")
        raise RuntimeError(f"Not a jj workspace: {start}") from e


def find_scooped_workspace(project_root: Path) -> Optional[Path]:
    """
    Find a workspace directory one level below a scooped project root.

    After the default workspace has been scooped, the project root itself
    has no ``.jj`` directory; its workspaces live in immediate
    subdirectories. The default workspace is preferred when present.

    Args:
        project_root: Directory the user started in

    Returns:
        First subdirectory containing ``.jj/``, or None
    """
    try:
        entries = sorted(p for p in project_root.iterdir() if p.is_dir())
    except OSError as e:
        logger.debug(f"Cannot scan {project_root}: {e}")
        return None

    candidates = [p for p in entries if (p / ".jj").is_dir()]
    if not candidates:
        return None

    for candidate in candidates:
        if candidate.name == "default":
            return candidate
    return candidates[0]


def find_repository(start: Path, jj_bin: str = "jj") -> Path:
    """
    Resolve the jj workspace to operate on, recovering a scooped layout.

    Args:
        start: Directory the user started in

    Returns:
        Workspace root path

    Raises:
        RuntimeError: If neither ``start`` nor any immediate subdirectory is a jj workspace
    """
    try:
        return find_jj_root(start, jj_bin)
    except RuntimeError:
        logger.info(f"Attempting power workspace recovery in: {start}")
        recovered = find_scooped_workspace(start)
        if recovered is None:
            raise
        logger.info(f"Power workspace recovered: {recovered}")
        return find_jj_root(recovered, jj_bin)


def repo_dir_for(workspace_path: Path) -> Path:
    """
    Resolve the shared repository directory for a workspace.

    The repo-hosting workspace has ``.jj/repo`` as a directory. Every other
    workspace has a ``.jj/repo`` file holding the path to it, absolute or
    relative to its own ``.jj`` directory.

    Raises:
        RuntimeError: If the workspace has no ``.jj/repo`` entry
    """
    repo = workspace_path / ".jj" / "repo"
    if repo.is_dir():
        return repo
    if repo.is_file():
        target = Path(repo.read_text(encoding="utf-8").strip())
        if not target.is_absolute():
            target = (repo.parent / target).resolve()
        return target
    raise RuntimeError(f"Not a jj workspace (no .jj/repo): {workspace_path}")


def hosts_repo(workspace_path: Path) -> bool:
    """True if the repository itself lives inside this workspace."""
    return (workspace_path / ".jj" / "repo").is_dir()
