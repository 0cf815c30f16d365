"""Test fixtures and utilities.

``FakeJJ`` stands in for the jj binary behind the command pipeline. It
keeps jj's workspace store on the real (temporary) filesystem, so plans
move real directories and patch real store bytes.
"""

import os
import subprocess
from pathlib import Path
from typing import Optional

import click.testing
import pytest

from jjdag.config import Config, DebugConfig
from jjdag.pipeline import CommandPipeline
from jjdag.planner import TopologyPlanner
from jjdag.probes.repo import repo_dir_for
from jjdag.registry import WorkspaceRegistry
from jjdag.scm.jj import JJ
from jjdag.store import encode_record, parse_records

STORE_RELPATH = Path("workspace_store") / "index"


def store_file_of(workspace: Path) -> Path:
    return repo_dir_for(workspace) / STORE_RELPATH


def write_tree(root: Path, files: dict[str, str]) -> None:
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)


WORKING_COPY = {
    "README.md": "# proj\n",
    "src/main.py": "print('hello')\n",
    "src/util/helpers.py": "def helper():\n    return 42\n",
}


def make_unscooped(root: Path, files: Optional[dict[str, str]] = None) -> Path:
    """A project whose only workspace, ``default``, is the project root."""
    root.mkdir(parents=True, exist_ok=True)
    write_tree(root, WORKING_COPY if files is None else files)
    repo = root / ".jj" / "repo"
    (repo / "workspace_store").mkdir(parents=True)
    (repo / "op_store").mkdir()
    (repo / "op_store" / "ops").write_bytes(b"\x00\x01\x02")
    (repo / STORE_RELPATH).write_bytes(encode_record("default", str(root)))
    return root


def make_scooped(root: Path, names: tuple[str, ...] = ("default", "feature")) -> Path:
    """A scooped project: ``root/default`` hosts the repo, the rest point at it."""
    host = root / "default"
    make_unscooped(host)
    store = host / ".jj" / "repo" / STORE_RELPATH
    data = store.read_bytes()
    for name in names:
        if name == "default":
            continue
        ws = root / name
        write_tree(ws, {"README.md": f"# {name}\n"})
        (ws / ".jj").mkdir()
        (ws / ".jj" / "repo").write_text(str(host / ".jj" / "repo"))
        data += encode_record(name, str(ws))
    store.write_bytes(data)
    return root


class FakeJJ:
    """
    Runner emulating the jj workspace commands.

    The listing is read from the workspace store, as jj does. Use
    ``fail`` to make a subcommand exit non-zero.
    """

    def __init__(self, relative_pointers: bool = False):
        self.calls: list[tuple[list[str], Optional[Path]]] = []
        self.failures: dict[str, tuple[int, str]] = {}
        self.relative_pointers = relative_pointers

    def fail(self, subcommand: str, exit_code: int = 1, stderr: str = "Error: injected") -> None:
        self.failures[subcommand] = (exit_code, stderr)

    def __call__(self, args: list[str], cwd: Optional[Path]) -> subprocess.CompletedProcess:
        self.calls.append((list(args), cwd))
        sub = args[1:]
        key = sub[1] if sub[:1] == ["workspace"] and len(sub) > 1 else sub[0]
        if key in self.failures:
            code, stderr = self.failures[key]
            return self._done(args, code, stderr=stderr)

        workspace = self._workspace_of(cwd)
        if workspace is None:
            return self._done(args, 1, stderr=f"Error: There is no jj repo in \"{cwd}\"\n")

        if sub == ["root"] or sub == ["workspace", "root"]:
            return self._done(args, 0, stdout=f"{workspace}\n")
        if sub[:2] == ["workspace", "list"]:
            lines = "".join(f"{r.name}: {r.path}\n" for r in self._records(workspace))
            return self._done(args, 0, stdout=lines)
        if sub[:2] == ["workspace", "add"]:
            return self._add(args, workspace, sub[3], Path(sub[4]))
        if sub[:2] == ["workspace", "forget"]:
            return self._forget(args, workspace, sub[2])
        if sub[:2] == ["workspace", "rename"]:
            return self._rename(args, workspace, sub[2])
        if sub[:2] == ["workspace", "update-stale"]:
            return self._done(args, 0, stderr="Working copy already up to date\n")
        return self._done(args, 2, stderr=f"error: unrecognized subcommand {sub!r}\n")

    @staticmethod
    def _done(args, code, stdout="", stderr=""):
        return subprocess.CompletedProcess(args, code, stdout=stdout, stderr=stderr)

    @staticmethod
    def _workspace_of(cwd: Optional[Path]) -> Optional[Path]:
        if cwd is None or not cwd.is_dir():
            return None
        for candidate in [cwd, *cwd.parents]:
            if (candidate / ".jj" / "repo").exists():
                return candidate
        return None

    @staticmethod
    def _records(workspace: Path):
        return parse_records(store_file_of(workspace).read_bytes())

    def _add(self, args, workspace: Path, name: str, path: Path):
        store = store_file_of(workspace)
        data = store.read_bytes()
        if any(r.name == name for r in parse_records(data)):
            return self._done(args, 1, stderr=f"Error: Workspace named '{name}' already exists\n")
        if path.exists() and any(path.iterdir()):
            return self._done(args, 1, stderr=f"Error: Destination path exists: {path}\n")

        repo_dir = repo_dir_for(workspace)
        path.mkdir(parents=True, exist_ok=True)
        write_tree(path, {"README.md": f"# {name}\n"})
        (path / ".jj").mkdir()
        if self.relative_pointers:
            target = os.path.relpath(repo_dir, path / ".jj")
        else:
            target = str(repo_dir)
        (path / ".jj" / "repo").write_text(target)
        store.write_bytes(data + encode_record(name, str(path)))
        return self._done(args, 0, stderr=f"Created workspace in \"{path}\"\n")

    def _forget(self, args, workspace: Path, name: str):
        store = store_file_of(workspace)
        data = store.read_bytes()
        for record in parse_records(data):
            if record.name == name:
                store.write_bytes(data[: record.start] + data[record.end :])
                return self._done(args, 0)
        return self._done(args, 1, stderr=f"Error: No such workspace: {name}\n")

    def _rename(self, args, workspace: Path, new_name: str):
        store = store_file_of(workspace)
        data = store.read_bytes()
        records = parse_records(data)
        if any(r.name == new_name for r in records):
            return self._done(args, 1, stderr=f"Error: Workspace {new_name} already exists\n")
        for record in records:
            if Path(record.path) == workspace:
                raw = encode_record(new_name, record.path)
                store.write_bytes(data[: record.start] + raw + data[record.end :])
                return self._done(args, 0)
        return self._done(args, 1, stderr="Error: The current workspace is not tracked\n")


def snapshot_tree(root: Path) -> dict[str, bytes]:
    """Relative path -> content for every file under ``root``."""
    tree = {}
    for path in sorted(root.rglob("*")):
        if path.is_file():
            tree[str(path.relative_to(root))] = path.read_bytes()
    return tree


@pytest.fixture
def fake_jj() -> FakeJJ:
    return FakeJJ()


@pytest.fixture
def config() -> Config:
    return Config(debug=DebugConfig(enabled=False))


@pytest.fixture
def proj(tmp_path: Path) -> Path:
    """Un-scooped project at tmp_path/proj."""
    return make_unscooped(tmp_path / "proj")


@pytest.fixture
def scooped_proj(tmp_path: Path) -> Path:
    """Scooped project with ``default`` and ``feature``."""
    return make_scooped(tmp_path / "proj")


def build_planner(anchor: Path, runner: FakeJJ, config: Config, mover=None) -> TopologyPlanner:
    pipeline = CommandPipeline(runner=runner)
    jj = JJ(config.jj_bin)
    registry = WorkspaceRegistry(
        pipeline, jj, anchor, default_name=config.default_workspace, config=config
    )
    return TopologyPlanner(registry, pipeline, jj, config=config, mover=mover)


@pytest.fixture
def runner() -> click.testing.CliRunner:
    """Click CliRunner for testing CLI commands."""
    return click.testing.CliRunner()
