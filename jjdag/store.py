"""Patching jj's workspace store in place.

jj keeps the workspace name -> working-copy path mapping in a protobuf
encoded file inside the repository directory. The file belongs to jj, so
this module never re-encodes it from scratch: it locates the byte range of
one workspace entry, splices a replacement for just that entry, checks that
every other byte is untouched and then swaps the new file in with a rename.
Fields it does not know about are carried over verbatim.

Wire layout assumed (field numbers below)::

    file  := { entry = 1 (length-delimited) | unknown }*
    entry := { name = 1 (string) | path = 2 (string) | unknown }*
"""

import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from jjdag.errors import IoFailure, RecordNotFound, StoreCorrupt

logger = logging.getLogger(__name__)

ENTRY_FIELD = 1
NAME_FIELD = 1
PATH_FIELD = 2

WIRE_VARINT = 0
WIRE_I64 = 1
WIRE_LEN = 2
WIRE_I32 = 5

MAX_VARINT_BYTES = 10


@dataclass(frozen=True)
class _Field:
    number: int
    wire_type: int
    start: int  # first byte of the key
    key_end: int  # first byte after the key
    value_start: int  # first payload byte (after the length prefix for LEN fields)
    end: int


@dataclass(frozen=True)
class StoreRecord:
    """One workspace entry as it sits in the store file."""

    name: str
    path: str
    start: int
    end: int
    raw: bytes


def encode_varint(value: int) -> bytes:
    if value < 0:
        raise ValueError("varint must be non-negative")
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _read_varint(data: bytes, pos: int, end: int) -> tuple[int, int]:
    value = 0
    for i in range(MAX_VARINT_BYTES):
        if pos >= end:
            raise StoreCorrupt(f"Truncated varint at offset {pos}")
        byte = data[pos]
        pos += 1
        value |= (byte & 0x7F) << (7 * i)
        if not byte & 0x80:
            return value, pos
    raise StoreCorrupt(f"Varint longer than {MAX_VARINT_BYTES} bytes before offset {pos}")


def _iter_fields(data: bytes, start: int, end: int) -> Iterator[_Field]:
    pos = start
    while pos < end:
        field_start = pos
        key, pos = _read_varint(data, pos, end)
        number, wire_type = key >> 3, key & 0x07
        if number == 0:
            raise StoreCorrupt(f"Field number 0 at offset {field_start}")
        key_end = pos

        if wire_type == WIRE_VARINT:
            _, pos = _read_varint(data, pos, end)
            value_start = key_end
        elif wire_type == WIRE_I64:
            value_start = pos
            pos += 8
        elif wire_type == WIRE_I32:
            value_start = pos
            pos += 4
        elif wire_type == WIRE_LEN:
            length, value_start = _read_varint(data, pos, end)
            pos = value_start + length
        else:
            raise StoreCorrupt(f"Unsupported wire type {wire_type} at offset {field_start}")

        if pos > end:
            raise StoreCorrupt(f"Field at offset {field_start} overruns its container")
        yield _Field(number, wire_type, field_start, key_end, value_start, pos)


def _decode(data: bytes, field: _Field, what: str) -> str:
    if field.wire_type != WIRE_LEN:
        raise StoreCorrupt(f"Workspace {what} at offset {field.start} is not a string")
    try:
        return data[field.value_start : field.end].decode("utf-8")
    except UnicodeDecodeError as e:
        raise StoreCorrupt(f"Workspace {what} at offset {field.start} is not UTF-8: {e}") from e


def _find_path_field(data: bytes, entry: _Field) -> _Field:
    found = None
    for sub in _iter_fields(data, entry.value_start, entry.end):
        if sub.number == PATH_FIELD:
            found = sub
    if found is None:
        raise StoreCorrupt(f"Workspace entry at offset {entry.start} has no path")
    return found


def parse_records(data: bytes) -> list[StoreRecord]:
    """
    Parse every workspace entry of a store file.

    Raises:
        StoreCorrupt: If the bytes do not have the expected structure
    """
    records: list[StoreRecord] = []
    seen: set[str] = set()

    for entry in _iter_fields(data, 0, len(data)):
        if entry.number != ENTRY_FIELD:
            continue
        if entry.wire_type != WIRE_LEN:
            raise StoreCorrupt(f"Workspace entry at offset {entry.start} is not length-delimited")

        name = None
        path = None
        for sub in _iter_fields(data, entry.value_start, entry.end):
            # protobuf semantics: the last occurrence of a scalar wins
            if sub.number == NAME_FIELD:
                name = _decode(data, sub, "name")
            elif sub.number == PATH_FIELD:
                path = _decode(data, sub, "path")

        if not name:
            raise StoreCorrupt(f"Workspace entry at offset {entry.start} has no name")
        if path is None:
            raise StoreCorrupt(f"Workspace entry '{name}' has no path")
        if name in seen:
            raise StoreCorrupt(f"Duplicate workspace entry '{name}'")
        seen.add(name)

        records.append(
            StoreRecord(
                name=name,
                path=path,
                start=entry.start,
                end=entry.end,
                raw=data[entry.start : entry.end],
            )
        )

    return records


def encode_record(name: str, path: str) -> bytes:
    """Encode a minimal workspace entry (used when building fixtures and by tests)."""
    name_bytes = name.encode("utf-8")
    path_bytes = path.encode("utf-8")
    payload = (
        encode_varint((NAME_FIELD << 3) | WIRE_LEN)
        + encode_varint(len(name_bytes))
        + name_bytes
        + encode_varint((PATH_FIELD << 3) | WIRE_LEN)
        + encode_varint(len(path_bytes))
        + path_bytes
    )
    return encode_varint((ENTRY_FIELD << 3) | WIRE_LEN) + encode_varint(len(payload)) + payload


def _rewrite_path(data: bytes, record: StoreRecord, new_path: str) -> bytes:
    """Re-encode one entry with a new path; sibling fields keep their bytes."""
    entries = [f for f in _iter_fields(data, record.start, record.end)]
    if len(entries) != 1:
        raise StoreCorrupt(f"Workspace entry '{record.name}' has an unexpected shape")
    entry = entries[0]
    path_field = _find_path_field(data, entry)

    path_bytes = new_path.encode("utf-8")
    new_path_field = (
        data[path_field.start : path_field.key_end] + encode_varint(len(path_bytes)) + path_bytes
    )
    payload = (
        data[entry.value_start : path_field.start]
        + new_path_field
        + data[path_field.end : entry.end]
    )
    return data[entry.start : entry.key_end] + encode_varint(len(payload)) + payload


def write_atomic(path: Path, content: bytes) -> None:
    """
    Write a file by renaming a fully written sibling temp file over it.

    Raises:
        OSError: On any filesystem failure (the temp file is removed)
    """
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        if path.exists():
            shutil.copymode(path, tmp_path)
        if tmp_path.read_bytes() != content:
            raise OSError(f"Short write to temporary file {tmp_path}")
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


class OperationStore:
    """Reads and patches the workspace store of one repository."""

    def __init__(self, path: Path):
        self.path = path

    def read_bytes(self) -> bytes:
        try:
            return self.path.read_bytes()
        except OSError as e:
            raise IoFailure(e) from e

    def read_records(self) -> list[StoreRecord]:
        return parse_records(self.read_bytes())

    def read_record(self, name: str) -> StoreRecord:
        """
        Look up one workspace entry.

        Raises:
            RecordNotFound: If no entry has this name
        """
        for record in self.read_records():
            if record.name == name:
                return record
        raise RecordNotFound(name)

    def paths(self) -> dict[str, str]:
        return {record.name: record.path for record in self.read_records()}

    def patch_path(self, name: str, new_path: str) -> bytes:
        """
        Point workspace ``name`` at ``new_path``.

        Returns:
            The entry's previous bytes, for ``replace_record``

        Raises:
            RecordNotFound: If no entry has this name
            StoreCorrupt: If the file does not parse (nothing is written)
            IoFailure: On read/write errors
        """
        data = self.read_bytes()
        record = self._locate(data, name)
        if record.path == new_path:
            logger.debug(f"Store record '{name}' already points at {new_path}")
            return record.raw

        new_raw = _rewrite_path(data, record, new_path)
        self._commit(data, record, new_raw)
        logger.info(f"Store record '{name}': {record.path} -> {new_path}")
        return record.raw

    def replace_record(self, name: str, raw: bytes) -> bytes:
        """
        Put back previously captured entry bytes for workspace ``name``.

        Returns:
            The bytes that were replaced

        Raises:
            StoreCorrupt: If ``raw`` is not a single entry named ``name``
        """
        replacement = parse_records(raw)
        if len(replacement) != 1 or replacement[0].name != name or replacement[0].raw != raw:
            raise StoreCorrupt(f"Replacement bytes are not a single entry for '{name}'")

        data = self.read_bytes()
        record = self._locate(data, name)
        if record.raw == raw:
            return record.raw
        self._commit(data, record, raw)
        logger.info(f"Store record '{name}' restored to {replacement[0].path}")
        return record.raw

    def _locate(self, data: bytes, name: str) -> StoreRecord:
        for record in parse_records(data):
            if record.name == name:
                return record
        raise RecordNotFound(name)

    def _commit(self, data: bytes, record: StoreRecord, new_raw: bytes) -> None:
        new_data = data[: record.start] + new_raw + data[record.end :]
        self._verify(data, new_data, record, new_raw)
        try:
            write_atomic(self.path, new_data)
        except OSError as e:
            raise IoFailure(e) from e

    @staticmethod
    def _verify(old: bytes, new: bytes, record: StoreRecord, new_raw: bytes) -> None:
        new_end = record.start + len(new_raw)
        if new[: record.start] != old[: record.start] or new[new_end:] != old[record.end :]:
            raise StoreCorrupt("Patched store differs outside the target entry")

        before = [(r.name, r.raw) for r in parse_records(old) if r.name != record.name]
        after_records = parse_records(new)
        after = [(r.name, r.raw) for r in after_records if r.name != record.name]
        if before != after:
            raise StoreCorrupt("Patched store changed a record other than the target")
        targets = [r for r in after_records if r.name == record.name]
        if len(targets) != 1 or targets[0].raw != new_raw:
            raise StoreCorrupt(f"Patched entry for '{record.name}' did not round-trip")


def read_repo_pointer(workspace_path: Path) -> bytes:
    """Raw contents of a secondary workspace's ``.jj/repo`` file."""
    try:
        return (workspace_path / ".jj" / "repo").read_bytes()
    except OSError as e:
        raise IoFailure(e) from e


def retarget_repo_pointer(workspace_path: Path, repo_dir: Path) -> bytes:
    """
    Point a secondary workspace at a moved repository directory.

    Relative pointers stay relative, absolute ones stay absolute.

    Returns:
        Previous file contents, for ``restore_repo_pointer``
    """
    pointer = workspace_path / ".jj" / "repo"
    previous = read_repo_pointer(workspace_path)
    try:
        current = Path(previous.decode("utf-8").strip())
    except UnicodeDecodeError as e:
        raise StoreCorrupt(f"Repo pointer {pointer} is not UTF-8") from e

    if current.is_absolute():
        target = str(repo_dir)
    else:
        target = os.path.relpath(repo_dir, pointer.parent)

    try:
        write_atomic(pointer, target.encode("utf-8"))
    except OSError as e:
        raise IoFailure(e) from e
    logger.info(f"Repo pointer {pointer} -> {target}")
    return previous


def restore_repo_pointer(workspace_path: Path, content: bytes) -> None:
    pointer = workspace_path / ".jj" / "repo"
    try:
        write_atomic(pointer, content)
    except OSError as e:
        raise IoFailure(e) from e
