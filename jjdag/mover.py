"""Relocating workspace directories on disk.

Three move shapes occur in a power-workspace project:

- rename: ``root/old`` -> ``root/new`` (sibling directories)
- scoop: ``root`` -> ``root/<name>`` (every child of root moves one level down)
- unscoop: ``root/<name>`` -> ``root`` (every child moves up, the emptied
  directory is removed)

Each entry is renamed in place when possible and copied then deleted when
source and destination sit on different filesystems. A move is only
reported as done after the moved entries add up to the same file count and
byte total as before the move.
"""

import errno
import logging
import os
import shutil
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Iterable

from jjdag.errors import IoFailure, MoveVerificationFailed, PathCollision

logger = logging.getLogger(__name__)


class MoveShape(str, Enum):
    RENAME = "rename"
    SCOOP = "scoop"
    UNSCOOP = "unscoop"


@dataclass(frozen=True)
class TreeSnapshot:
    """File count and total size of a set of directory entries."""

    files: int
    total_bytes: int


@dataclass(frozen=True)
class MoveReceipt:
    """What a move did, enough to reverse it."""

    source: Path
    dest: Path
    shape: MoveShape
    pairs: tuple[tuple[Path, Path], ...]
    snapshot: TreeSnapshot
    created_dest: bool = False
    copied: bool = False
    verified: bool = False


def snapshot_paths(paths: Iterable[Path]) -> TreeSnapshot:
    """
    Count files and bytes under the given paths without following symlinks.

    Symlinks count as files with their own (link) size.
    """
    files = 0
    total = 0
    for path in paths:
        if path.is_symlink() or not path.is_dir():
            if os.path.lexists(path):
                files += 1
                total += path.lstat().st_size
            continue
        for dirpath, dirnames, filenames in os.walk(path, followlinks=False):
            for name in filenames + [d for d in dirnames if os.path.islink(os.path.join(dirpath, d))]:
                files += 1
                total += os.lstat(os.path.join(dirpath, name)).st_size
    return TreeSnapshot(files=files, total_bytes=total)


def _is_empty_dir(path: Path) -> bool:
    return path.is_dir() and not path.is_symlink() and not any(path.iterdir())


def _copy_entry(src: Path, dst: Path) -> None:
    if src.is_symlink():
        os.symlink(os.readlink(src), dst)
    elif src.is_dir():
        shutil.copytree(src, dst, symlinks=True, copy_function=shutil.copy2)
    else:
        shutil.copy2(src, dst, follow_symlinks=False)


def _remove_entry(path: Path) -> None:
    if path.is_symlink() or not path.is_dir():
        path.unlink()
    else:
        shutil.rmtree(path)


class DirectoryMover:
    """Moves workspace directories and verifies the result."""

    def classify(
        self,
        source: Path,
        dest: Path,
        vacating: Iterable[Path] = (),
    ) -> tuple[MoveShape, tuple[tuple[Path, Path], ...]]:
        """
        Work out the move shape and the entries it relocates.

        Nothing on disk is changed. Paths in ``vacating`` are treated as
        already gone (an earlier plan step removes them).

        Raises:
            PathCollision: If any destination entry already exists
            FileNotFoundError: If ``source`` is not a directory
            ValueError: For nesting other than one level
        """
        source = Path(os.path.abspath(source))
        dest = Path(os.path.abspath(dest))
        gone = {Path(os.path.abspath(p)) for p in vacating}

        def occupied(path: Path) -> bool:
            return path not in gone and os.path.lexists(path)

        if not source.is_dir():
            raise FileNotFoundError(f"Move source is not a directory: {source}")
        if source == dest:
            raise ValueError(f"Move source and destination are the same: {source}")

        if dest.parent == source:
            if occupied(dest) and not _is_empty_dir(dest):
                raise PathCollision(dest)
            pairs = tuple(
                (child, dest / child.name)
                for child in sorted(source.iterdir())
                if child.name != dest.name
            )
            return MoveShape.SCOOP, pairs

        if source.parent == dest:
            pairs = []
            for child in sorted(source.iterdir()):
                target = dest / child.name
                if target == source or occupied(target):
                    raise PathCollision(target)
                pairs.append((child, target))
            return MoveShape.UNSCOOP, tuple(pairs)

        if dest.is_relative_to(source) or source.is_relative_to(dest):
            raise ValueError(f"Unsupported nested move: {source} -> {dest}")
        if occupied(dest) and not _is_empty_dir(dest):
            raise PathCollision(dest)
        return MoveShape.RENAME, ((source, dest),)

    def move(self, source: Path, dest: Path) -> MoveReceipt:
        """
        Move ``source`` to ``dest`` and verify the result.

        On verification failure the moved entries are left where they are
        and the receipt is attached to the exception so the caller can
        decide how to undo.

        Raises:
            PathCollision: Destination entry exists (nothing moved)
            MoveVerificationFailed: Destination does not match the pre-move snapshot
            IoFailure: Filesystem error. Entries moved so far are put back,
                except when removing the emptied source or copied originals
                fails after verification; then the receipt is attached.
        """
        shape, pairs = self.classify(source, dest)
        source = Path(os.path.abspath(source))
        dest = Path(os.path.abspath(dest))
        before = snapshot_paths(src for src, _ in pairs)
        logger.info(f"Moving ({shape.value}) {source} -> {dest}: {before.files} files")

        created_dest = False
        if shape == MoveShape.SCOOP and not dest.exists():
            dest.mkdir()
            created_dest = True
        elif shape == MoveShape.RENAME and _is_empty_dir(dest):
            dest.rmdir()

        try:
            copied = self._relocate(pairs)
        except IoFailure:
            if created_dest and _is_empty_dir(dest):
                dest.rmdir()
            raise
        receipt = MoveReceipt(
            source=source,
            dest=dest,
            shape=shape,
            pairs=pairs,
            snapshot=before,
            created_dest=created_dest,
            copied=bool(copied),
        )

        after = snapshot_paths(dst for _, dst in pairs)
        if after != before:
            error = MoveVerificationFailed(
                f"Move {source} -> {dest} did not verify: expected {before.files} files/"
                f"{before.total_bytes} bytes, found {after.files} files/{after.total_bytes} bytes",
                expected=before,
                actual=after,
                receipt=receipt,
            )
            raise error

        receipt = replace(receipt, verified=True)
        try:
            for src in copied:
                _remove_entry(src)
            if shape == MoveShape.UNSCOOP:
                source.rmdir()
        except OSError as e:
            logger.error(f"Cleanup after move {source} -> {dest} failed: {e}")
            raise IoFailure(e, receipt=receipt) from e

        logger.debug(f"Move verified: {after.files} files, {after.total_bytes} bytes")
        return receipt

    def revert(self, receipt: MoveReceipt) -> None:
        """
        Put the entries of a move back where they came from.

        Entries whose source still exists (an unfinished cross-device copy)
        only have their destination copy removed. For a verified move the
        destination is authoritative, so a leftover source is dropped and
        the destination moved back.

        Raises:
            MoveVerificationFailed: If the restored entries do not match the original snapshot
            IoFailure: On filesystem errors
        """
        logger.info(f"Reverting move {receipt.source} -> {receipt.dest}")
        try:
            if receipt.shape == MoveShape.UNSCOOP and not receipt.source.exists():
                receipt.source.mkdir()

            back = []
            for src, dst in receipt.pairs:
                if os.path.lexists(src) and os.path.lexists(dst) and receipt.verified:
                    _remove_entry(src)
                    back.append((dst, src))
                elif os.path.lexists(src):
                    if os.path.lexists(dst):
                        _remove_entry(dst)
                else:
                    back.append((dst, src))
            copied = self._relocate(tuple(back))

            restored = snapshot_paths(src for src, _ in receipt.pairs)
            if restored != receipt.snapshot:
                raise MoveVerificationFailed(
                    f"Reverted move to {receipt.source} did not verify",
                    expected=receipt.snapshot,
                    actual=restored,
                )

            for src in copied:
                _remove_entry(src)
            if receipt.created_dest and _is_empty_dir(receipt.dest):
                receipt.dest.rmdir()
        except OSError as e:
            raise IoFailure(e) from e

    def _relocate(self, pairs: tuple[tuple[Path, Path], ...]) -> list[Path]:
        """
        Rename each entry, copying across filesystems.

        Returns:
            Sources that were copied and still need deleting

        Raises:
            IoFailure: After putting back the entries renamed so far
        """
        renamed: list[tuple[Path, Path]] = []
        copied: list[Path] = []
        for src, dst in pairs:
            try:
                try:
                    os.rename(src, dst)
                    renamed.append((src, dst))
                except OSError as e:
                    if e.errno != errno.EXDEV:
                        raise
                    logger.debug(f"Cross-device move, copying {src} -> {dst}")
                    try:
                        _copy_entry(src, dst)
                    except OSError:
                        if os.path.lexists(dst):
                            _remove_entry(dst)
                        raise
                    copied.append(src)
            except OSError as e:
                logger.error(f"Failed to move {src} -> {dst}: {e}")
                self._undo_partial(renamed, copied, pairs)
                raise IoFailure(e) from e
        return copied

    @staticmethod
    def _undo_partial(
        renamed: list[tuple[Path, Path]],
        copied: list[Path],
        pairs: tuple[tuple[Path, Path], ...],
    ) -> None:
        for src, dst in reversed(renamed):
            try:
                os.rename(dst, src)
            except OSError as e:
                logger.error(f"Could not put back {dst} -> {src}: {e}")
        copies = {src: dst for src, dst in pairs if src in copied}
        for dst in copies.values():
            try:
                _remove_entry(dst)
            except OSError as e:
                logger.error(f"Could not remove partial copy {dst}: {e}")
