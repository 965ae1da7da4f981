"""Value Representation correction.

Compares the VR each element was stored with against the data dictionary
and re-encodes the value under the dictionary's first VR when they differ.
An element whose value does not convert is left as it was and reported;
the rest of the file is still corrected and written.
"""

import logging
import struct
from contextlib import ExitStack
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from pydicom import config as pydicom_config
from pydicom.charset import convert_encodings, decode_bytes, encode_string
from pydicom.dataelem import DataElement, RawDataElement
from pydicom.dataset import Dataset
from pydicom.tag import BaseTag, Tag
from pydicom.valuerep import validate_value

from dicom_deid import part10
from dicom_deid.codec import (
    EXPLICIT_VR_LE,
    TransferSyntax,
    encode_element,
    output_syntax,
    parse,
    write_file,
)
from dicom_deid.dictionary import STANDARD_DICTIONARY, DataDictionary
from dicom_deid.exceptions import DicomEncodeError, DicomParseError
from dicom_deid.results import Outcome
from dicom_deid.utils import normalize_windows_path, staged_output, working_copy

logger = logging.getLogger(__name__)

TEXT_VRS = frozenset(
    "AE AS CS DA DS DT IS LO LT PN SH ST TM UC UI UR UT".split()
)
# VRs whose value may not contain a backslash, so "\\" separates values
_SINGLE_VALUED_TEXT = frozenset({"LT", "ST", "UT", "UR"})
BYTES_VRS = frozenset({"OB", "OD", "OF", "OL", "OV", "OW", "UN"})
NUMBER_FORMATS = {
    "US": "H", "SS": "h", "UL": "L", "SL": "l",
    "UV": "Q", "SV": "q", "FL": "f", "FD": "d",
}
_FLOAT_VRS = frozenset({"FL", "FD"})

_CONVERSION_ERRORS = (
    ValueError, TypeError, OverflowError, struct.error, UnicodeError, LookupError,
    DicomEncodeError,
)


@dataclass(frozen=True)
class Recoded:
    element: DataElement
    old_vr: str


@dataclass(frozen=True)
class RecodeFailure:
    tag: BaseTag
    old_vr: str
    new_vr: str
    reason: str


RecodeResult = Union[Recoded, RecodeFailure]


@dataclass
class CorrectionResult:
    """What :func:`correct` changed in a dataset."""

    dataset: Dataset
    corrected: list[tuple[BaseTag, str, str]] = field(default_factory=list)
    failed: list[BaseTag] = field(default_factory=list)

    def merge(self, other: "CorrectionResult") -> None:
        self.corrected.extend(other.corrected)
        self.failed.extend(other.failed)


# ---------------------------------------------------------------------------
# Value conversion
# ---------------------------------------------------------------------------

def _unpack(raw: bytes, endian: str, fmt: str, vr: str) -> list:
    # explicit byte order gives standard sizes, UL is 4 bytes everywhere
    size = struct.calcsize(f"<{fmt}")
    if len(raw) % size:
        raise ValueError(f"{len(raw)} byte {vr} value is not a multiple of {size}")
    return list(struct.unpack(f"{endian}{len(raw) // size * fmt}", raw))


def _stored_value(elem, encodings: list[str]) -> Union[str, bytes, list]:
    """The element's value decoded under its *stored* VR.

    Text comes back as ``str`` (multiple values still joined by ``\\``),
    binary numbers as a list, byte VRs as raw ``bytes``.
    """
    if not isinstance(elem, RawDataElement):
        value = elem.value
        if isinstance(value, (bytes, bytearray)):
            return bytes(value)
        if value is None:
            return ""
        if elem.VM > 1:
            return "\\".join(str(v) for v in value)
        return str(value)

    raw: bytes = elem.value or b""
    vr = elem.VR
    endian = "<" if elem.is_little_endian else ">"
    if vr in NUMBER_FORMATS:
        return _unpack(raw, endian, NUMBER_FORMATS[vr], vr)
    if vr == "AT":
        pairs = _unpack(raw, endian, "HH", vr)
        return [(pairs[i] << 16) | pairs[i + 1] for i in range(0, len(pairs), 2)]
    if vr in BYTES_VRS:
        return raw
    return decode_bytes(raw, encodings, set())


def _as_text(value, encodings: list[str]) -> str:
    if isinstance(value, bytes):
        return decode_bytes(value.rstrip(b"\x00"), encodings, set())
    if isinstance(value, list):
        return "\\".join(str(v) for v in value)
    return value


def _number(vr: str, text: str):
    text = text.strip()
    if vr in _FLOAT_VRS:
        return float(text)
    return int(text)


def convert_value(stored, target_vr: str, encodings: list[str]):
    """Convert a stored value into the Python value pydicom expects for *target_vr*."""
    if target_vr in BYTES_VRS:
        if isinstance(stored, bytes):
            return stored
        return encode_string(_as_text(stored, encodings), encodings)

    if isinstance(stored, list) and target_vr in NUMBER_FORMATS:
        values = [_number(target_vr, str(v)) for v in stored]
    else:
        text = _as_text(stored, encodings).rstrip(" \x00")
        if target_vr in TEXT_VRS:
            return text
        if target_vr == "AT":
            parts = [p.strip().strip("()").replace(",", "") for p in text.split("\\") if p.strip()]
            values = [int(p, 16) for p in parts]
        elif target_vr in NUMBER_FORMATS:
            values = [_number(target_vr, p) for p in text.split("\\") if p.strip()]
        else:
            raise ValueError(f"cannot convert a value to {target_vr}")

    if not values:
        return None
    return values[0] if len(values) == 1 else values


def _validate(target_vr: str, value) -> None:
    if value is None or isinstance(value, bytes):
        return
    if isinstance(value, str):
        parts = [value] if target_vr in _SINGLE_VALUED_TEXT else value.split("\\")
    elif isinstance(value, list):
        parts = value
    else:
        parts = [value]
    for part in parts:
        validate_value(target_vr, part, pydicom_config.RAISE)


def recode_element(
    elem,
    target_vr: str,
    encodings: Optional[list[str]] = None,
    syntax: TransferSyntax = EXPLICIT_VR_LE,
) -> RecodeResult:
    """Re-encode *elem* under *target_vr*.

    Returns :class:`Recoded` with the new element, or :class:`RecodeFailure`
    if the value does not convert or does not encode.
    """
    encodings = encodings or ["iso8859"]
    tag = Tag(elem.tag)
    old_vr = elem.VR
    try:
        value = convert_value(_stored_value(elem, encodings), target_vr, encodings)
        if target_vr == "PN" and not value:
            # a zero-length Person Name is not allowed
            value = " "
        _validate(target_vr, value)
        new = DataElement(tag, target_vr, value)
        encode_element(new, syntax, encodings)
    except _CONVERSION_ERRORS as exc:
        return RecodeFailure(tag, old_vr, target_vr, str(exc) or type(exc).__name__)
    return Recoded(new, old_vr)


# ---------------------------------------------------------------------------
# Dataset correction
# ---------------------------------------------------------------------------

def dataset_encodings(dataset: Dataset) -> list[str]:
    """Python codecs for the dataset's Specific Character Set."""
    return convert_encodings(dataset.get("SpecificCharacterSet"))


def correct(
    dataset: Dataset,
    dictionary: DataDictionary = STANDARD_DICTIONARY,
    encodings: Optional[list[str]] = None,
    syntax: TransferSyntax = EXPLICIT_VR_LE,
) -> CorrectionResult:
    """Correct the VR of every top-level element of *dataset* in place.

    Parameters
    ----------
    dataset : Dataset
        Dataset to correct.  Elements read with an implicit VR syntax have
        no stored VR and are never changed.
    dictionary : DataDictionary
        Reference VRs.
    encodings : list[str], optional
        Character set for text values, defaults to the dataset's own.
    syntax : TransferSyntax
        Syntax the corrected elements must be encodable in.

    Returns
    -------
    CorrectionResult
        The dataset, the ``(tag, old_vr, new_vr)`` corrections made, and
        the tags whose values could not be converted.
    """
    encodings = encodings or dataset_encodings(dataset)
    result = CorrectionResult(dataset)
    for tag in list(dataset.keys()):
        elem = dataset.get_item(tag)
        if elem.VR == "SQ":
            continue
        target = dictionary.preferred_vr(tag, elem.VR)
        if target is None or target == "SQ":
            continue

        recoded = recode_element(elem, target, encodings, syntax)
        if isinstance(recoded, RecodeFailure):
            logger.warning(
                "Could not convert %s from %s to %s: %s",
                recoded.tag, recoded.old_vr, recoded.new_vr, recoded.reason,
            )
            result.failed.append(recoded.tag)
            continue

        dataset[tag] = recoded.element
        result.corrected.append((Tag(tag), recoded.old_vr, target))
        logger.debug("Corrected %s %s -> %s", Tag(tag), recoded.old_vr, target)
    return result


def fix_vrs(
    source: Path,
    dest: Optional[Path] = None,
    force_implicit: bool = False,
    dictionary: DataDictionary = STANDARD_DICTIONARY,
    repair_header: bool = False,
) -> Outcome:
    """Correct the VRs of a DICOM file and write the result.

    Parameters
    ----------
    source : Path
        File to correct.
    dest : Path, optional
        Output file; defaults to *source*, which is then replaced.
    force_implicit : bool
        Write Implicit VR Little Endian instead of the source syntax.
    dictionary : DataDictionary
        Reference VRs.
    repair_header : bool
        Repair a malformed Part 10 header first.  The repair is made on a
        temporary copy; *source* only changes if it is also *dest*.

    Returns
    -------
    Outcome
        ``ok``, ``exceptions`` listing tags that could not be converted, or
        ``error`` if nothing was written.
    """
    source = Path(source)
    dest = Path(dest) if dest is not None else source
    try:
        with ExitStack() as stack:
            read_from = source
            if repair_header and part10.needs_repair(source):
                read_from = stack.enter_context(working_copy(source, dest.parent))
                repaired = part10.repair(read_from)
                if not repaired.succeeded:
                    return Outcome.error(source, repaired.reason)
            staged = stack.enter_context(staged_output(dest))
            fp = stack.enter_context(open(normalize_windows_path(read_from), "rb"))
            parsed = parse(fp)
            syntax = output_syntax(parsed, force_implicit)
            encodings = dataset_encodings(parsed.dataset)
            result = correct(parsed.dataset, dictionary, encodings, syntax)
            result.merge(correct(parsed.trailing, dictionary, encodings, syntax))
            write_file(staged.file, parsed, syntax)
            staged.commit()
    except (DicomParseError, DicomEncodeError, OSError) as exc:
        logger.error("VR correction failed for %s: %s", source, exc)
        return Outcome.error(source, str(exc))

    logger.info(
        "Corrected %d VR(s) in %s -> %s (%d failed)",
        len(result.corrected), source.name, dest, len(result.failed),
    )
    return Outcome.ok(source, dest, exceptions=[str(tag) for tag in result.failed])
