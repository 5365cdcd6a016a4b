"""Atomic file persistence and the document store port."""

import logging
import os
import tempfile
from pathlib import Path
from typing import Optional, Protocol

import yaml

from .config import FILE_MODE
from .errors import InvalidFormatError

logger = logging.getLogger("envseal.storage")

TEMP_PREFIX = ".envseal-"
TEMP_SUFFIX = ".tmp"


def _fsync_dir(directory: Path) -> None:
    # Not every platform lets a directory be opened for fsync
    try:
        fd = os.open(directory, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


def write_atomically(path: Path, data: bytes, mode: int = FILE_MODE) -> None:
    """
    Replace ``path`` with ``data`` so readers see either the old or new file.

    The data is staged in a temp file in the same directory, flushed and
    fsynced, then renamed into place. On any failure the temp file is removed
    and the previous file is left untouched.
    """
    path = Path(path)
    directory = path.parent if str(path.parent) else Path(".")
    directory.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(prefix=TEMP_PREFIX, suffix=TEMP_SUFFIX, dir=directory)
    try:
        with os.fdopen(fd, "wb") as f:
            os.chmod(tmp_name, mode)
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    finally:
        # Clean up temp file if it still exists
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)

    _fsync_dir(directory)
    logger.debug("Wrote %d bytes to %s", len(data), path)


def load_document(data: bytes) -> dict:
    """Parse a YAML document whose top level must be a mapping."""
    doc = yaml.safe_load(data) if data else None
    if doc is None:
        return {}
    if not isinstance(doc, dict):
        raise InvalidFormatError("invalid document: top level must be a mapping")
    return doc


class _BlockDumper(yaml.SafeDumper):
    """Safe dumper that writes multi-line strings (armored keys) as literal blocks."""


def _represent_str(dumper, value):
    style = "|" if "\n" in value else None
    return dumper.represent_scalar("tag:yaml.org,2002:str", value, style=style)


_BlockDumper.add_representer(str, _represent_str)


def dump_document(doc: dict) -> bytes:
    """Serialize a document in block style, keeping insertion order."""
    return yaml.dump(
        doc,
        Dumper=_BlockDumper,
        default_flow_style=False,
        sort_keys=False,
        allow_unicode=True,
    ).encode("utf-8")


class DocumentStore(Protocol):
    """Where a serialized vault or roster lives."""

    def load(self) -> Optional[bytes]:
        """Return the stored bytes, or None if nothing has been stored."""
        ...

    def save(self, data: bytes) -> None:
        """Replace the stored bytes."""
        ...


class FileStore:
    """Document store backed by a file on disk, written atomically."""

    def __init__(self, path: Path, mode: int = FILE_MODE):
        self.path = Path(path)
        self.mode = mode

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> Optional[bytes]:
        try:
            return self.path.read_bytes()
        except FileNotFoundError:
            return None

    def save(self, data: bytes) -> None:
        write_atomically(self.path, data, self.mode)

    def __repr__(self):
        return f"FileStore({str(self.path)!r})"


class MemoryStore:
    """In-memory document store for tests. Keeps every saved payload."""

    def __init__(self, data: Optional[bytes] = None):
        self.data = data
        self.history: list[bytes] = []

    def exists(self) -> bool:
        return self.data is not None

    def load(self) -> Optional[bytes]:
        return self.data

    def save(self, data: bytes) -> None:
        self.data = data
        self.history.append(data)
