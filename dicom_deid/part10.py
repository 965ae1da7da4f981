"""Part 10 header inspection and repair.

A Part 10 file starts with a 128-byte preamble, the magic ``DICM`` and the
File Meta Information group (0002), whose first element (0002,0000) holds
the byte length of the rest of the group.  Files in the wild break this in
a few recurring ways:

* the preamble and magic are there but no group 0002 follows;
* group 0002 is there but (0002,0000) is missing;
* (0002,0000) is there but its value does not match the group.

Every repair copies the file into a temporary file next to it and renames
that over the original, so an interrupted repair leaves the original intact.
"""

import logging
import struct
from enum import Enum
from pathlib import Path
from typing import BinaryIO, Optional

from pydicom.valuerep import EXPLICIT_VR_LENGTH_32

from dicom_deid.codec import MAGIC, PREAMBLE_LENGTH, UNDEFINED_LENGTH, VALID_VRS
from dicom_deid.exceptions import DicomParseError
from dicom_deid.results import Outcome
from dicom_deid.utils import normalize_windows_path, replace_from_copy

logger = logging.getLogger(__name__)

META_OFFSET = PREAMBLE_LENGTH + len(MAGIC)

# (0002,0000) UL, length 4; the 4-byte value follows.
GROUP_LENGTH_HEADER = b"\x02\x00\x00\x00UL\x04\x00"
_GROUP_LENGTH_VALUE_OFFSET = META_OFFSET + len(GROUP_LENGTH_HEADER)


class HeaderState(str, Enum):
    NOT_PART10 = "not a Part 10 file"
    CONFORMANT = "conformant"
    MISSING_META = "no file meta information"
    MISSING_GROUP_LENGTH = "missing (0002,0000)"
    WRONG_GROUP_LENGTH = "wrong (0002,0000)"


def group_length(fp: BinaryIO, offset: int) -> int:
    """Byte length of the consecutive group-0002 elements starting at *offset*.

    File meta elements are always Explicit VR Little Endian: long VRs use
    12 header bytes and a 4-byte length, the rest 8 header bytes and a
    2-byte length.
    """
    total = 0
    position = offset
    while True:
        fp.seek(position)
        head = fp.read(8)
        if not head:
            break
        if len(head) < 8:
            raise DicomParseError(f"truncated file meta element at offset {position}")
        group, elem = struct.unpack("<HH", head[:4])
        if group != 0x0002:
            break

        vr = head[4:6].decode("ascii", errors="replace")
        if vr not in VALID_VRS:
            raise DicomParseError(
                f"file meta element (0002,{elem:04X}) at offset {position} is not explicit VR"
            )
        if vr in EXPLICIT_VR_LENGTH_32:
            extra = fp.read(4)
            if len(extra) < 4:
                raise DicomParseError(f"truncated file meta element at offset {position}")
            (length,) = struct.unpack("<L", extra)
            size = 12 + length
        else:
            (length,) = struct.unpack("<H", head[6:])
            size = 8 + length
        if length == UNDEFINED_LENGTH:
            raise DicomParseError(f"file meta element (0002,{elem:04X}) has undefined length")

        total += size
        position += size
    return total


def _inspect(fp: BinaryIO) -> tuple[HeaderState, Optional[int], Optional[int]]:
    """Return the header state plus the stored and computed group lengths."""
    fp.seek(0)
    head = fp.read(_GROUP_LENGTH_VALUE_OFFSET + 4)
    if len(head) < META_OFFSET or head[PREAMBLE_LENGTH:META_OFFSET] != MAGIC:
        return HeaderState.NOT_PART10, None, None
    if len(head) < META_OFFSET + 2 or struct.unpack("<H", head[META_OFFSET:META_OFFSET + 2])[0] != 0x0002:
        return HeaderState.MISSING_META, None, None

    if head[META_OFFSET:META_OFFSET + 4] != GROUP_LENGTH_HEADER[:4]:
        return HeaderState.MISSING_GROUP_LENGTH, None, group_length(fp, META_OFFSET)

    if head[META_OFFSET:_GROUP_LENGTH_VALUE_OFFSET] != GROUP_LENGTH_HEADER or len(head) < _GROUP_LENGTH_VALUE_OFFSET + 4:
        raise DicomParseError("(0002,0000) is not an explicit VR UL element of length 4")
    (stored,) = struct.unpack("<L", head[_GROUP_LENGTH_VALUE_OFFSET:])
    actual = group_length(fp, _GROUP_LENGTH_VALUE_OFFSET + 4)
    state = HeaderState.CONFORMANT if stored == actual else HeaderState.WRONG_GROUP_LENGTH
    return state, stored, actual


def inspect(path: Path) -> HeaderState:
    """Classify the Part 10 header of *path* without changing it.

    Raises
    ------
    DicomParseError
        If the file meta group cannot be walked.
    """
    with open(normalize_windows_path(path), "rb") as fp:
        state, _, _ = _inspect(fp)
    return state


def repair(path: Path) -> Outcome:
    """Restore a conformant Part 10 header in *path*.

    - No group 0002 after the magic: the first 132 bytes are dropped and
      the file becomes a raw dataset.
    - (0002,0000) missing: a (0002,0000) UL element holding the computed
      group length is inserted right after the magic.
    - (0002,0000) wrong: its value is replaced with the computed length.

    Files that are conformant or not Part 10 at all are left alone.
    """
    path = Path(path)
    try:
        with open(normalize_windows_path(path), "rb") as fp:
            state, stored, actual = _inspect(fp)
            fp.seek(0)
            head = fp.read(_GROUP_LENGTH_VALUE_OFFSET)

        if state is HeaderState.MISSING_META:
            replace_from_copy(path, b"", META_OFFSET)
            reason = f"removed preamble without file meta ({META_OFFSET} bytes)"
        elif state is HeaderState.MISSING_GROUP_LENGTH:
            element = GROUP_LENGTH_HEADER + struct.pack("<L", actual)
            replace_from_copy(path, head[:META_OFFSET] + element, META_OFFSET)
            reason = f"inserted (0002,0000) = {actual}"
        elif state is HeaderState.WRONG_GROUP_LENGTH:
            replace_from_copy(path, head + struct.pack("<L", actual), _GROUP_LENGTH_VALUE_OFFSET + 4)
            reason = f"corrected (0002,0000) {stored} -> {actual}"
        else:
            logger.debug("No header repair needed for %s: %s", path, state.value)
            return Outcome.ok(path, reason=state.value)
    except (OSError, DicomParseError) as exc:
        logger.error("Header repair failed for %s: %s", path, exc)
        return Outcome.error(path, str(exc))

    logger.info("Repaired header of %s: %s", path, reason)
    return Outcome.ok(path, output=path, reason=reason)


def needs_repair(path: Path) -> bool:
    """True if *path* is a Part 10 file whose header :func:`repair` would change."""
    return inspect(path) in (
        HeaderState.MISSING_META,
        HeaderState.MISSING_GROUP_LENGTH,
        HeaderState.WRONG_GROUP_LENGTH,
    )


def clear_preamble(path: Path) -> Outcome:
    """Zero the 128-byte preamble of a Part 10 file.

    The preamble is free-form and may carry vendor data, including
    identifying text.
    """
    path = Path(path)
    try:
        with open(normalize_windows_path(path), "rb") as fp:
            head = fp.read(META_OFFSET)
        if len(head) < META_OFFSET or head[PREAMBLE_LENGTH:] != MAGIC:
            return Outcome.ok(path, reason=HeaderState.NOT_PART10.value)
        if not head[:PREAMBLE_LENGTH].strip(b"\x00"):
            return Outcome.ok(path, reason="preamble already clear")
        replace_from_copy(path, b"\x00" * PREAMBLE_LENGTH, PREAMBLE_LENGTH)
    except OSError as exc:
        logger.error("Could not clear preamble of %s: %s", path, exc)
        return Outcome.error(path, str(exc))

    logger.info("Cleared preamble of %s", path)
    return Outcome.ok(path, output=path, reason="preamble cleared")
