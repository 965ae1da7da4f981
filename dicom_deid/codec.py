"""Element stream codec.

Parses a DICOM stream up to its pixel data, leaves the pixel bytes where
they are, and writes the (possibly modified) elements back out around a
byte-for-byte copy of the original pixel data.

pydicom decodes and encodes the ordinary elements.  This module handles the
parts pydicom does not stream: locating the pixel data boundary, walking
encapsulated fragments, copying values without buffering them, and reading
the elements that follow the pixel data.

Wire layout of an element header
--------------------------------
Implicit VR::

    group(2) element(2) length(4)

Explicit VR, short length::

    group(2) element(2) VR(2) length(2)

Explicit VR, long length (OB, OW, SQ, UN, UT, ...)::

    group(2) element(2) VR(2) reserved(2) length(4)

Item and delimiter tags (FFFE,xxxx) always use the implicit layout.  A
length of 0xFFFFFFFF means the value is delimited rather than counted.
"""

import logging
import struct
from dataclasses import dataclass, field
from typing import BinaryIO, Iterator, Optional

import numpy as np
import pydicom
from pydicom.dataset import Dataset, FileDataset, FileMetaDataset
from pydicom.errors import InvalidDicomError
from pydicom.filebase import DicomBytesIO, DicomFileLike
from pydicom.filereader import read_dataset
from pydicom.filewriter import write_data_element, write_file_meta_info
from pydicom.filewriter import write_dataset as _write_dataset
from pydicom.tag import Tag
from pydicom.uid import (
    PYDICOM_IMPLEMENTATION_UID,
    UID,
    DeflatedExplicitVRLittleEndian,
    ExplicitVRBigEndian,
    ExplicitVRLittleEndian,
    ImplicitVRLittleEndian,
)
from pydicom.valuerep import EXPLICIT_VR_LENGTH_32

from dicom_deid.config import COPY_CHUNK_SIZE, IMPLEMENTATION_VERSION_NAME
from dicom_deid.exceptions import DicomEncodeError, DicomParseError

logger = logging.getLogger(__name__)

PREAMBLE_LENGTH = 128
MAGIC = b"DICM"

PIXEL_DATA_TAGS = frozenset({0x7FE00008, 0x7FE00009, 0x7FE00010})
ITEM = 0xFFFEE000
ITEM_DELIMITER = 0xFFFEE00D
SEQUENCE_DELIMITER = 0xFFFEE0DD
UNDEFINED_LENGTH = 0xFFFFFFFF

VALID_VRS = frozenset(
    "AE AS AT CS DA DS DT FD FL IS LO LT OB OD OF OL OV OW PN SH SL SQ SS "
    "ST SV TM UC UI UL UN UR US UT UV".split()
)

# Byte-swap width of each binary pixel VR when the byte order changes.
_WORD_SIZE = {"OW": 2, "OF": 4, "OL": 4, "OD": 8, "OV": 8}


# ---------------------------------------------------------------------------
# Transfer syntax
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TransferSyntax:
    """Wire encoding of a dataset: the UID plus the two flags derived from it."""

    uid: UID
    is_implicit_VR: bool
    is_little_endian: bool

    @classmethod
    def from_uid(cls, uid: str) -> "TransferSyntax":
        uid = UID(uid)
        try:
            return cls(uid, uid.is_implicit_VR, uid.is_little_endian)
        except ValueError:
            # unregistered syntaxes are encoded Explicit VR Little Endian
            return cls(uid, False, True)

    @classmethod
    def from_encoding(cls, is_implicit_VR: bool, is_little_endian: bool) -> "TransferSyntax":
        if is_implicit_VR and not is_little_endian:
            raise DicomParseError("implicit VR big endian is not a valid encoding")
        if is_implicit_VR:
            return IMPLICIT_VR_LE
        return EXPLICIT_VR_LE if is_little_endian else EXPLICIT_VR_BE

    @property
    def endian(self) -> str:
        return "<" if self.is_little_endian else ">"

    def __str__(self) -> str:
        return self.uid.name


IMPLICIT_VR_LE = TransferSyntax(UID(ImplicitVRLittleEndian), True, True)
EXPLICIT_VR_LE = TransferSyntax(UID(ExplicitVRLittleEndian), False, True)
EXPLICIT_VR_BE = TransferSyntax(UID(ExplicitVRBigEndian), False, False)


# ---------------------------------------------------------------------------
# Element headers
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ElementHeader:
    """Tag, VR and length of one element, with its position in the stream."""

    tag: int
    vr: Optional[str]
    length: int
    offset: int
    value_offset: int

    @property
    def is_undefined_length(self) -> bool:
        return self.length == UNDEFINED_LENGTH

    def __str__(self) -> str:
        length = "undefined" if self.is_undefined_length else self.length
        return f"{Tag(self.tag)} {self.vr or '--'} length={length} @ {self.offset}"


def read_header(fp: BinaryIO, syntax: TransferSyntax) -> Optional[ElementHeader]:
    """Read the element header at the current position.

    Returns ``None`` at a clean end of stream.  The stream is left at the
    first byte of the value.
    """
    offset = fp.tell()
    raw = fp.read(8)
    if not raw:
        return None
    if len(raw) < 8:
        raise DicomParseError(f"truncated element header at offset {offset}")

    group, elem = struct.unpack(f"{syntax.endian}HH", raw[:4])
    tag = (group << 16) | elem

    if syntax.is_implicit_VR or group == 0xFFFE:
        (length,) = struct.unpack(f"{syntax.endian}L", raw[4:])
        return ElementHeader(tag, None, length, offset, offset + 8)

    vr = raw[4:6].decode("ascii", errors="replace")
    if vr not in VALID_VRS:
        raise DicomParseError(f"invalid VR {vr!r} for {Tag(tag)} at offset {offset}")
    if vr in EXPLICIT_VR_LENGTH_32:
        extra = fp.read(4)
        if len(extra) < 4:
            raise DicomParseError(f"truncated element header at offset {offset}")
        (length,) = struct.unpack(f"{syntax.endian}L", extra)
        return ElementHeader(tag, vr, length, offset, offset + 12)

    (length,) = struct.unpack(f"{syntax.endian}H", raw[6:])
    return ElementHeader(tag, vr, length, offset, offset + 8)


def write_header(
    out: BinaryIO, syntax: TransferSyntax, tag: int, vr: Optional[str], length: int
) -> None:
    """Write an element header in *syntax*."""
    endian = syntax.endian
    out.write(struct.pack(f"{endian}HH", tag >> 16, tag & 0xFFFF))
    if syntax.is_implicit_VR or (tag >> 16) == 0xFFFE:
        out.write(struct.pack(f"{endian}L", length))
        return
    if vr is None:
        raise DicomEncodeError(f"explicit VR header for {Tag(tag)} needs a VR")
    if vr in EXPLICIT_VR_LENGTH_32:
        out.write(vr.encode("ascii") + b"\x00\x00" + struct.pack(f"{endian}L", length))
        return
    if length > 0xFFFF:
        raise DicomEncodeError(f"{Tag(tag)} {vr} value of {length} bytes needs a 4-byte length")
    out.write(vr.encode("ascii") + struct.pack(f"{endian}H", length))


def copy_value(src: BinaryIO, out: BinaryIO, length: int, word_size: int = 1) -> None:
    """Copy *length* bytes from *src* to *out*, swapping words if *word_size* > 1."""
    remaining = length
    while remaining > 0:
        chunk = src.read(min(COPY_CHUNK_SIZE, remaining))
        if not chunk:
            raise DicomParseError(f"stream ended {remaining} bytes before the end of a value")
        if word_size > 1:
            if len(chunk) % word_size:
                raise DicomParseError(
                    f"value length {length} is not a multiple of the word size {word_size}"
                )
            chunk = np.frombuffer(chunk, dtype=f"u{word_size}").byteswap().tobytes()
        out.write(chunk)
        remaining -= len(chunk)


def _fragments(fp: BinaryIO, syntax: TransferSyntax) -> Iterator[ElementHeader]:
    """Yield the item headers of encapsulated pixel data.

    The caller must consume (or seek past) each item's value before asking
    for the next one.  Ends after the sequence delimiter.
    """
    while True:
        item = read_header(fp, syntax)
        if item is None:
            raise DicomParseError("stream ended inside encapsulated pixel data")
        if item.tag == SEQUENCE_DELIMITER:
            if item.length != 0:
                raise DicomParseError(
                    f"sequence delimiter with non-zero length {item.length} at offset {item.offset}"
                )
            return
        if item.tag != ITEM or item.is_undefined_length:
            raise DicomParseError(f"unexpected {item} in encapsulated pixel data")
        yield item


def _stream_size(fp: BinaryIO) -> int:
    position = fp.tell()
    fp.seek(0, 2)
    size = fp.tell()
    fp.seek(position)
    return size


def skip_value(fp: BinaryIO, header: ElementHeader, syntax: TransferSyntax) -> None:
    """Move *fp* past the value of *header* without reading it."""
    fp.seek(header.value_offset)
    if not header.is_undefined_length:
        end = header.value_offset + header.length
        if end > _stream_size(fp):
            raise DicomParseError(f"value of {header} runs past the end of the stream")
        fp.seek(end)
        return
    for item in _fragments(fp, syntax):
        fp.seek(item.length, 1)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

@dataclass
class ParsedFile:
    """A dataset read up to its pixel data, plus the elements that follow it.

    *fp* stays owned by the caller and must remain open until the file has
    been written, because the pixel data is copied from it.
    """

    fp: BinaryIO
    dataset: FileDataset
    syntax: TransferSyntax
    pixel_header: Optional[ElementHeader] = None
    trailing: Dataset = field(default_factory=Dataset)

    @property
    def file_meta(self) -> FileMetaDataset:
        return self.dataset.file_meta

    @property
    def has_pixel_data(self) -> bool:
        return self.pixel_header is not None

    @property
    def is_encapsulated(self) -> bool:
        return self.pixel_header is not None and self.pixel_header.is_undefined_length

    def dataset_for(self, tag: int) -> Dataset:
        """The dataset an element with *tag* belongs to (main or trailing)."""
        if self.pixel_header is not None and int(tag) > self.pixel_header.tag:
            return self.trailing
        return self.dataset

    def datasets(self) -> tuple[Dataset, ...]:
        return (self.dataset, self.trailing)


def sniff(fp: BinaryIO) -> bool:
    """Return True if *fp* looks like a Part 10 file or a raw dataset.

    A raw dataset is accepted when its first tag is in group 0002 or 0008
    in either byte order.  The stream position is restored.
    """
    start = fp.tell()
    head = fp.read(PREAMBLE_LENGTH + len(MAGIC))
    fp.seek(start)
    if len(head) == PREAMBLE_LENGTH + len(MAGIC) and head[PREAMBLE_LENGTH:] == MAGIC:
        return True
    if len(head) < 8:
        return False
    return any(
        struct.unpack(f"{endian}H", head[:2])[0] in (0x0002, 0x0008)
        for endian in "<>"
    )


def parse(fp: BinaryIO) -> ParsedFile:
    """Parse *fp* up to the pixel data and read any elements after it.

    Raises
    ------
    DicomParseError
        If the stream is not a recognized DICOM stream, uses a deflated
        transfer syntax, or the pixel data boundary cannot be located.
    """
    if not sniff(fp):
        raise DicomParseError("not a recognized DICOM stream")
    try:
        dataset = pydicom.dcmread(fp, stop_before_pixels=True, force=True)
    except (InvalidDicomError, EOFError, struct.error, ValueError) as exc:
        raise DicomParseError(f"not a recognized DICOM stream: {exc}") from exc

    implicit, little = dataset.original_encoding
    ts_uid = dataset.file_meta.get("TransferSyntaxUID")
    if ts_uid == DeflatedExplicitVRLittleEndian:
        raise DicomParseError("deflated transfer syntaxes are not supported")
    if ts_uid:
        syntax = TransferSyntax(UID(ts_uid), implicit, little)
    else:
        syntax = TransferSyntax.from_encoding(implicit, little)

    parsed = ParsedFile(fp, dataset, syntax)
    header = read_header(fp, syntax)
    if header is None:
        logger.debug("No pixel data found (%s)", syntax)
        return parsed
    if header.tag not in PIXEL_DATA_TAGS:
        raise DicomParseError(f"expected pixel data, found {header}")

    parsed.pixel_header = header
    skip_value(fp, header, syntax)
    try:
        parsed.trailing = read_dataset(fp, syntax.is_implicit_VR, syntax.is_little_endian)
    except (EOFError, struct.error, ValueError) as exc:
        raise DicomParseError(f"unreadable elements after pixel data: {exc}") from exc

    logger.debug(
        "Parsed %d elements, pixel data %s, %d trailing (%s)",
        len(dataset), header, len(parsed.trailing), syntax,
    )
    return parsed


# ---------------------------------------------------------------------------
# Writing
# ---------------------------------------------------------------------------

def _wrap(out: BinaryIO, syntax: TransferSyntax) -> DicomFileLike:
    fp = DicomFileLike(out)
    fp.is_implicit_VR = syntax.is_implicit_VR
    fp.is_little_endian = syntax.is_little_endian
    return fp


def write_element(out: BinaryIO, element, syntax: TransferSyntax, encodings=None) -> None:
    """Encode one element (header and value) in *syntax* and write it to *out*.

    Raises
    ------
    DicomEncodeError
        If the value cannot be encoded under the element's VR.
    """
    # pydicom reports unpackable numbers as OSError
    try:
        write_data_element(_wrap(out, syntax), element, encodings or ["iso8859"])
    except (ValueError, TypeError, OverflowError, struct.error, OSError) as exc:
        raise DicomEncodeError(f"cannot encode {Tag(element.tag)} {element.VR}: {exc}") from exc


def encode_element(element, syntax: TransferSyntax, encodings=None) -> bytes:
    """Return the encoded bytes of *element* (header and value) in *syntax*."""
    buffer = DicomBytesIO()
    write_element(buffer, element, syntax, encodings)
    return buffer.getvalue()


def write_dataset(out: BinaryIO, dataset: Dataset, syntax: TransferSyntax) -> int:
    """Encode *dataset* in ascending tag order; returns the bytes written."""
    try:
        return _write_dataset(_wrap(out, syntax), dataset)
    except (ValueError, TypeError, OverflowError, struct.error) as exc:
        raise DicomEncodeError(f"cannot encode dataset as {syntax}: {exc}") from exc


def build_file_meta(
    dataset: Dataset, source_meta: FileMetaDataset, syntax: TransferSyntax
) -> FileMetaDataset:
    """Fresh File Meta Information for *dataset* written in *syntax*.

    SOP class and instance come from the dataset, falling back to the source
    meta.  Nothing else is carried over from the source.
    """
    meta = FileMetaDataset()
    meta.FileMetaInformationGroupLength = 0
    meta.FileMetaInformationVersion = b"\x00\x01"
    sop_class = dataset.get("SOPClassUID") or source_meta.get("MediaStorageSOPClassUID")
    sop_instance = dataset.get("SOPInstanceUID") or source_meta.get("MediaStorageSOPInstanceUID")
    if sop_class:
        meta.MediaStorageSOPClassUID = sop_class
    if sop_instance:
        meta.MediaStorageSOPInstanceUID = sop_instance
    meta.TransferSyntaxUID = syntax.uid
    meta.ImplementationClassUID = PYDICOM_IMPLEMENTATION_UID
    meta.ImplementationVersionName = IMPLEMENTATION_VERSION_NAME
    return meta


def write_file_meta(
    out: BinaryIO, dataset: Dataset, source_meta: FileMetaDataset, syntax: TransferSyntax
) -> None:
    """Write a zeroed preamble, the magic, and the File Meta Information group."""
    meta = build_file_meta(dataset, source_meta, syntax)
    complete = "MediaStorageSOPClassUID" in meta and "MediaStorageSOPInstanceUID" in meta
    if not complete:
        logger.warning("Dataset has no SOP class/instance UID; writing partial file meta")
    out.write(b"\x00" * PREAMBLE_LENGTH + MAGIC)
    try:
        write_file_meta_info(_wrap(out, EXPLICIT_VR_LE), meta, enforce_standard=complete)
    except ValueError as exc:
        raise DicomEncodeError(f"cannot write file meta information: {exc}") from exc


def pixel_vr(parsed: ParsedFile) -> str:
    """VR of the pixel data element, resolved from the dataset for implicit sources."""
    header = parsed.pixel_header
    if header.vr:
        return header.vr
    if header.tag == 0x7FE00008:
        return "OF"
    if header.tag == 0x7FE00009:
        return "OD"
    if header.is_undefined_length:
        return "OB"
    bits = parsed.dataset.get("BitsAllocated", 16)
    return "OB" if bits <= 8 else "OW"


def copy_pixel_data(parsed: ParsedFile, out: BinaryIO, syntax: TransferSyntax) -> None:
    """Copy the pixel data element from the source stream into *out*.

    Native data keeps its byte count; words are swapped when the byte order
    changes.  Encapsulated data is copied fragment by fragment and closed
    with a sequence delimiter.
    """
    header = parsed.pixel_header
    src = parsed.fp
    vr = pixel_vr(parsed)
    src.seek(header.value_offset)
    write_header(out, syntax, header.tag, vr, header.length)

    if header.is_undefined_length:
        count = 0
        for item in _fragments(src, parsed.syntax):
            write_header(out, syntax, ITEM, None, item.length)
            copy_value(src, out, item.length)
            count += 1
        write_header(out, syntax, SEQUENCE_DELIMITER, None, 0)
        logger.debug("Copied %d pixel data fragments", count)
        return

    word_size = 1
    if parsed.syntax.is_little_endian != syntax.is_little_endian:
        word_size = _WORD_SIZE.get(vr, 1)
    copy_value(src, out, header.length, word_size)


def output_syntax(parsed: ParsedFile, force_implicit: bool = False) -> TransferSyntax:
    """Syntax to write *parsed* in: Implicit VR LE when forced, else the source's.

    Encapsulated pixel data can only be written in its own syntax.
    """
    if not force_implicit:
        return parsed.syntax
    if parsed.is_encapsulated:
        logger.warning("Encapsulated pixel data keeps %s; implicit VR not forced", parsed.syntax)
        return parsed.syntax
    return IMPLICIT_VR_LE


def write_file(out: BinaryIO, parsed: ParsedFile, syntax: TransferSyntax) -> None:
    """Write *parsed* as a Part 10 file: meta, dataset, pixel data, trailing elements."""
    write_file_meta(out, parsed.dataset, parsed.file_meta, syntax)
    write_dataset(out, parsed.dataset, syntax)
    if parsed.pixel_header is not None:
        copy_pixel_data(parsed, out, syntax)
        write_dataset(out, parsed.trailing, syntax)
