"""
Shared filesystem utilities.

Staged (temp-file-then-rename) writes, throwaway working copies, file
collection for batch commands, and copies that log instead of raising.
"""

import logging
import os
import shutil
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO, Iterable, Iterator, Optional

from dicom_deid.config import TEMP_PREFIX

logger = logging.getLogger(__name__)

_WINDOWS_LONG_PATH_PREFIX = "\\\\?\\"


def normalize_windows_path(path: Path) -> str:
    """Return a Windows-safe path string, adding long-path prefixes if needed."""
    path_str = str(path)
    if os.name != "nt":
        return path_str
    if path_str.startswith(_WINDOWS_LONG_PATH_PREFIX):
        return path_str
    if not Path(path_str).is_absolute():
        return path_str
    if len(path_str) < 240:
        return path_str
    if path_str.startswith("\\\\"):
        share = path_str.lstrip("\\")
        return f"\\\\?\\UNC\\{share}"
    return f"{_WINDOWS_LONG_PATH_PREFIX}{path_str}"


def safe_copy2(src: Path, dst: Path) -> bool:
    """Copy a file with logging, returning True on success."""
    try:
        Path(dst).parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(normalize_windows_path(src), normalize_windows_path(dst))
    except OSError as exc:
        logger.error("Failed to copy %s -> %s: %s", src, dst, exc)
        return False
    return True


# ---------------------------------------------------------------------------
# Staged writes
# ---------------------------------------------------------------------------

class StagedFile:
    """An open temporary file that replaces *target* once committed.

    *target* may be changed before the staging context exits, e.g. when the
    output name depends on a value only known after parsing.  It must stay
    in the directory the temp file was created in.
    """

    def __init__(self, target: Path, file: BinaryIO, temp_path: Path) -> None:
        self.target = Path(target)
        self.file = file
        self.temp_path = temp_path
        self.committed = False

    def commit(self) -> None:
        self.committed = True


@contextmanager
def staged_output(target: Path) -> Iterator[StagedFile]:
    """Write to a temp file next to *target*; rename it over *target* on commit.

    The rename happens when the context exits, after any inner contexts
    (such as the open source file) have closed.  If the body raises, or
    exits without calling :meth:`StagedFile.commit`, the temp file is
    deleted and *target* is left untouched.
    """
    target = Path(target)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=TEMP_PREFIX, suffix=".tmp", dir=target.parent)
    temp_path = Path(temp_name)
    staged = StagedFile(target, os.fdopen(fd, "wb"), temp_path)
    try:
        yield staged
        staged.file.flush()
        os.fsync(staged.file.fileno())
        staged.file.close()
        if staged.committed:
            os.replace(normalize_windows_path(temp_path), normalize_windows_path(staged.target))
            logger.debug("Renamed %s -> %s", temp_path.name, staged.target)
    finally:
        if not staged.file.closed:
            staged.file.close()
        if temp_path.exists():
            temp_path.unlink()


def replace_from_copy(path: Path, head: bytes, src_offset: int) -> None:
    """Rewrite *path* as *head* followed by its own bytes from *src_offset* on.

    Goes through :func:`staged_output`, so *path* only changes if the whole
    copy succeeded.
    """
    with staged_output(path) as staged, open(normalize_windows_path(path), "rb") as src:
        staged.file.write(head)
        src.seek(src_offset)
        shutil.copyfileobj(src, staged.file)
        staged.commit()


@contextmanager
def working_copy(source: Path, directory: Path) -> Iterator[Path]:
    """A temporary copy of *source* in *directory*, deleted on exit.

    Lets a file be repaired before it is read without touching the source.
    """
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=TEMP_PREFIX, suffix=".tmp", dir=directory)
    os.close(fd)
    temp_path = Path(temp_name)
    try:
        shutil.copyfile(normalize_windows_path(source), normalize_windows_path(temp_path))
        yield temp_path
    finally:
        if temp_path.exists():
            temp_path.unlink()


# ---------------------------------------------------------------------------
# File collection
# ---------------------------------------------------------------------------

def collect_files(paths: Iterable[Path], pattern: str = "*") -> list[Path]:
    """Expand *paths* into a sorted, de-duplicated list of files.

    Directories are walked recursively; temp files left by an interrupted
    run are ignored.
    """
    files: list[Path] = []
    for path in paths:
        path = Path(path)
        if path.is_dir():
            files.extend(sorted((p for p in path.rglob(pattern) if p.is_file()), key=str))
        elif path.is_file():
            files.append(path)
        else:
            logger.warning("Path does not exist: %s", path)

    # Deduplicate (on case-insensitive filesystems patterns can overlap)
    seen: set[Path] = set()
    unique: list[Path] = []
    for f in files:
        if f.name.startswith(TEMP_PREFIX):
            continue
        resolved = f.resolve()
        if resolved not in seen:
            seen.add(resolved)
            unique.append(f)
    return unique


def relative_to_any(path: Path, bases: Iterable[Path]) -> Optional[Path]:
    """Return *path* relative to the first of *bases* that contains it."""
    for base in bases:
        try:
            return Path(path).resolve().relative_to(Path(base).resolve())
        except ValueError:
            continue
    return None
