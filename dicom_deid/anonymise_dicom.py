"""DICOM anonymisation engine.

Each file goes through four steps:

1. PARSE: read up to the pixel data.  Encapsulated (compressed) pixel data
   is quarantined unless the rule set allows it.
2. APPLY_RULES: group-level removal, then the per-tag rules.  Remapped
   values come from the remapper, so the same source identifier always
   gets the same replacement.
3. VALIDATE: every identifying element present in the source must be gone
   or changed, and no original identifying value may survive in another
   text element.  Otherwise the file is quarantined.
4. SERIALIZE: write meta, elements, the original pixel bytes, and the
   trailing elements into a temp file that replaces the destination.
"""

import logging
import re
import struct
from contextlib import ExitStack
from pathlib import Path
from typing import Iterable, Optional

from pydicom.dataelem import DataElement
from pydicom.dataset import Dataset
from pydicom.tag import Tag

from dicom_deid import part10
from dicom_deid.codec import (
    EXPLICIT_VR_LE,
    ParsedFile,
    encode_element,
    output_syntax,
    parse,
    write_file,
)
from dicom_deid.config import NO_PHI_SUFFIX, RESIDUAL_MATCH_MIN_LENGTH, UID_ROOT
from dicom_deid.dictionary import STANDARD_DICTIONARY
from dicom_deid.exceptions import DicomEncodeError, DicomParseError, RemapperError
from dicom_deid.remapper import Remapper, hash_uid, increment_date, md5_decimal
from dicom_deid.results import BatchReport, Outcome, run_batch
from dicom_deid.rules import Action, Rule, RuleSet
from dicom_deid.utils import (
    collect_files,
    normalize_windows_path,
    relative_to_any,
    staged_output,
    working_copy,
)
from dicom_deid.verify_pii import find_residual_values
from dicom_deid.vr_corrector import TEXT_VRS, convert_value, dataset_encodings

logger = logging.getLogger(__name__)

# File names that are a bare UID, e.g. "1.2.840.113619.2.55.3"
_UID_NAME = re.compile(r"^[\d.]+$")

_VALUE_ERRORS = (ValueError, TypeError, OverflowError, struct.error, DicomEncodeError)

PATIENT_ID = 0x00100020


def is_deidentified_name(name: str, uid_root: Optional[str] = None) -> bool:
    """True if *name* already carries the de-identification suffix.

    With *uid_root*, a name made from a UID under that root (the
    ``{SOPInstanceUID}.dcm`` output naming) also counts.
    """
    stem = name.rsplit(".", 1)[0] if "." in name else name
    if name.endswith(NO_PHI_SUFFIX) or stem.endswith(NO_PHI_SUFFIX):
        return True
    return bool(uid_root) and name.startswith(uid_root.rstrip(".") + ".")


def deid_filename(name: str) -> Optional[str]:
    """``ct.dcm`` -> ``ct-no-phi.dcm``; ``None`` if *name* is already de-identified.

    Names made only of digits and dots are UIDs, not stems with an
    extension, so the suffix goes at the end: ``1.2.3`` -> ``1.2.3-no-phi``.
    """
    if is_deidentified_name(name):
        return None
    if _UID_NAME.match(name) or "." not in name:
        return f"{name}{NO_PHI_SUFFIX}"
    stem, ext = name.rsplit(".", 1)
    return f"{stem}{NO_PHI_SUFFIX}.{ext}"


def initials(name: str) -> str:
    """Initials of a person name, family name last: ``Doe^John`` -> ``JD``."""
    words = name.replace("^", " ").split()
    if not words:
        return "x"
    letters = [w[0] for w in words]
    if len(letters) > 1:
        letters = letters[1:] + letters[:1]
    return "".join(letters).upper()


def _text(elem: DataElement) -> str:
    value = elem.value
    if value is None:
        return ""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("latin-1").rstrip("\x00 ")
    if elem.VM > 1:
        return "\\".join(str(v) for v in value)
    return str(value)


class DicomAnonymiser:
    """Apply a rule set and a remapper to DICOM files.

    The remapper (and its table) is owned by the caller: open it before the
    batch, pass it here, close it afterwards.
    """

    def __init__(
        self,
        rules: RuleSet,
        remapper: Remapper,
        force_implicit_vr_le: bool = False,
        rename: bool = False,
        rename_to_sop_instance_uid: bool = False,
        repair_header: bool = False,
        uid_root: str = UID_ROOT,
    ) -> None:
        self.rules = rules
        self.remapper = remapper
        self.force_implicit_vr_le = force_implicit_vr_le
        # SOP Instance UID naming is a form of renaming
        self.rename = rename or rename_to_sop_instance_uid
        self.rename_to_sop_instance_uid = rename_to_sop_instance_uid
        self.repair_header = repair_header
        self.uid_root = uid_root

    # ------------------------------------------------------------------
    # Naming
    # ------------------------------------------------------------------

    def destination_for(self, source: Path, dest: Optional[Path] = None) -> Path:
        """Output path for *source* before any SOP Instance UID renaming.

        Without renaming the output replaces *dest* (default: the source
        itself); with renaming the suffix is added to that name.
        """
        target = Path(dest) if dest is not None else Path(source)
        if self.rename:
            target = target.with_name(deid_filename(target.name) or target.name)
        return target

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def _vr_for(self, dataset: Dataset, tag) -> str:
        if Tag(tag).is_private:
            return "UT"
        allowed = STANDARD_DICTIONARY.vrs(tag)
        current = dataset[tag].VR if tag in dataset else None
        if current in allowed:
            return current
        if allowed:
            return allowed[0]
        return current or "SH"

    def _put(self, dataset: Dataset, tag, text: str, encodings: list[str]) -> None:
        """Write *text* into *tag*, converted to the element's VR."""
        vr = self._vr_for(dataset, tag)
        value = convert_value(text, vr, encodings)
        if vr == "PN" and not value:
            # a zero-length Person Name is not allowed
            value = " "
        self._set(dataset, DataElement(Tag(tag), vr, value), encodings)

    def _put_blank(self, dataset: Dataset, tag, count: int, encodings: list[str]) -> None:
        """Write *count* spaces into *tag*; non-text VRs get an empty value."""
        vr = self._vr_for(dataset, tag)
        value = " " * count if vr in TEXT_VRS else None
        if vr == "PN" and not value:
            value = " "
        self._set(dataset, DataElement(Tag(tag), vr, value), encodings)

    @staticmethod
    def _set(dataset: Dataset, elem: DataElement, encodings: list[str]) -> None:
        encode_element(elem, EXPLICIT_VR_LE, encodings)
        dataset[elem.tag] = elem

    def _replacement(self, tag, rule: Rule, current: str, patient_id: str) -> str:
        """New text for an element whose current value is *current*."""
        action = rule.action
        if action is Action.REMAP:
            return self.remapper.resolve(current, rule.namespace)
        if action is Action.HASH_UID:
            return hash_uid(current, self.uid_root)
        if action is Action.HASH_PTID:
            site = rule.value or ""
            return f"{rule.prefix}{md5_decimal(f'[{site}]{current}')}{rule.suffix}"
        if action is Action.INITIALS:
            return initials(current)
        if action is Action.INCREMENT_DATE:
            return increment_date(current, int(rule.value))
        if action is Action.OFFSET_DATE:
            return self.remapper.offset_date(patient_id, str(Tag(tag)), current, rule.value)
        raise ValueError(f"no replacement for action {action.value}")

    def _apply_rule(
        self, dataset: Dataset, tag, rule: Rule, encodings: list[str], patient_id: str = ""
    ) -> None:
        present = tag in dataset
        if rule.action is Action.KEEP:
            return
        if rule.action is Action.REMOVE:
            if present:
                del dataset[tag]
            return
        if rule.action is Action.REPLACE:
            self._put(dataset, tag, rule.value or "", encodings)
            return
        if rule.action is Action.BLANK:
            self._put_blank(dataset, tag, int(rule.value or 0), encodings)
            return
        if rule.action is Action.REQUIRE:
            if not present:
                self._put(dataset, tag, rule.value or "", encodings)
            return
        if not present:
            return
        if rule.action is Action.EMPTY:
            self._put(dataset, tag, "", encodings)
            return

        current = _text(dataset[tag]).strip()
        if not current:
            return
        self._put(dataset, tag, self._replacement(tag, rule, current, patient_id), encodings)

    def apply_rules(self, parsed: ParsedFile) -> list[str]:
        """Apply the rule set to *parsed* in place; returns tags that failed.

        A tag whose replacement cannot be made or encoded (an unparseable
        date, an out-of-range number) is removed rather than left with its
        original value.
        """
        # date offsets are keyed by the source patient, before any remapping
        patient_id = ""
        if PATIENT_ID in parsed.dataset:
            patient_id = _text(parsed.dataset[PATIENT_ID]).strip()

        removed = 0
        for dataset in parsed.datasets():
            for tag in list(dataset.keys()):
                reason = self.rules.group_removal(tag)
                if reason:
                    del dataset[tag]
                    removed += 1
                    logger.debug("Removed %s (%s)", tag, reason)

        encodings = dataset_encodings(parsed.dataset)
        exceptions: list[str] = []
        for tag, rule in sorted(self.rules.rules.items()):
            dataset = parsed.dataset_for(tag)
            try:
                self._apply_rule(dataset, tag, rule, encodings, patient_id)
            except _VALUE_ERRORS as exc:
                logger.warning("Could not %s %s: %s; element removed", rule.action.value, tag, exc)
                if tag in dataset:
                    del dataset[tag]
                exceptions.append(str(tag))

        logger.debug("Group rules removed %d element(s)", removed)
        return exceptions

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def identifying_values(self, parsed: ParsedFile) -> dict[int, str]:
        """Non-empty values of the identifying tags, read before the rules run."""
        values = {}
        for tag in sorted(self.rules.identifying_tags):
            dataset = parsed.dataset_for(tag)
            if tag in dataset:
                text = _text(dataset[tag]).strip()
                if text:
                    values[tag] = text
        return values

    def validate(self, parsed: ParsedFile, originals: dict[int, str]) -> Optional[str]:
        """Return a quarantine reason, or ``None`` if no identifying value survived."""
        for tag, original in originals.items():
            dataset = parsed.dataset_for(tag)
            if tag in dataset and _text(dataset[tag]).strip() == original:
                keyword = dataset[tag].keyword or "element"
                return f"{keyword} {Tag(tag)} survived unmodified"

        searched = [v for v in originals.values() if len(v) >= RESIDUAL_MATCH_MIN_LENGTH]
        for dataset in parsed.datasets():
            findings = find_residual_values(dataset, searched)
            if findings:
                first = findings[0]
                return f"identifying value found in {first['keyword']} {first['tag']}"
        return None

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def anonymise_file(self, source: Path, dest: Optional[Path] = None) -> Outcome:
        """Anonymise one DICOM file.

        Parameters
        ----------
        source : Path
            File to anonymise.
        dest : Path, optional
            Output file; defaults to *source*.  With renaming enabled the
            ``-no-phi`` suffix is added to this name, or the name becomes
            ``{SOPInstanceUID}.dcm``.

        Returns
        -------
        Outcome
            ``ok``/``exceptions`` with the output path, ``quarantine`` with
            a reason and no output, or ``error`` with nothing written.
        """
        source = Path(source)
        if self.rename and is_deidentified_name(source.name, self.uid_root):
            logger.info("Skipping %s: already de-identified", source.name)
            return Outcome.ok(source, reason="already de-identified")

        target = self.destination_for(source, dest)
        try:
            with ExitStack() as stack:
                read_from = source
                if self.repair_header and part10.needs_repair(source):
                    # repair a copy so a quarantined source stays as it was
                    read_from = stack.enter_context(working_copy(source, target.parent))
                    repaired = part10.repair(read_from)
                    if not repaired.succeeded:
                        return Outcome.error(source, repaired.reason)
                staged = stack.enter_context(staged_output(target))
                fp = stack.enter_context(open(normalize_windows_path(read_from), "rb"))

                # PARSE
                parsed = parse(fp)
                if parsed.is_encapsulated and not self.rules.allow_encapsulated:
                    logger.warning("Quarantine %s: encapsulated pixel data", source.name)
                    return Outcome.quarantine(source, "encapsulated pixel data")

                # APPLY_RULES
                try:
                    originals = self.identifying_values(parsed)
                except (ValueError, TypeError) as exc:
                    return Outcome.quarantine(source, f"unreadable identifying element: {exc}")
                exceptions = self.apply_rules(parsed)

                # VALIDATE
                try:
                    reason = self.validate(parsed, originals)
                except (ValueError, TypeError) as exc:
                    reason = f"cannot verify identifying values: {exc}"
                if reason:
                    logger.warning("Quarantine %s: %s", source.name, reason)
                    return Outcome.quarantine(source, reason)

                # SERIALIZE
                if self.rename_to_sop_instance_uid:
                    sop_uid = parsed.dataset.get("SOPInstanceUID")
                    if not sop_uid:
                        return Outcome.error(source, "no SOPInstanceUID to name the output after")
                    staged.target = target.parent / f"{sop_uid}.dcm"
                write_file(staged.file, parsed, output_syntax(parsed, self.force_implicit_vr_le))
                staged.commit()
                output = staged.target
        except (DicomParseError, DicomEncodeError, RemapperError, OSError) as exc:
            logger.error("Anonymisation failed for %s: %s", source, exc)
            return Outcome.error(source, str(exc))

        logger.info("Anonymised %s -> %s", source.name, output)
        return Outcome.ok(source, output, exceptions)

    def anonymise_all(
        self,
        paths: Iterable[Path],
        output_dir: Optional[Path] = None,
        quarantine_dir: Optional[Path] = None,
    ) -> BatchReport:
        """Anonymise every file under *paths* (files or directories).

        With *output_dir* the directory structure below each input directory
        is mirrored there; otherwise files are written in place.  Quarantined
        sources are copied into *quarantine_dir*.
        """
        paths = [Path(p) for p in paths]
        roots = [p for p in paths if p.is_dir()]
        files = collect_files(paths)

        def operation(path: Path) -> Outcome:
            dest = None
            if output_dir is not None:
                relative = relative_to_any(path, roots) or Path(path.name)
                dest = Path(output_dir) / relative
            return self.anonymise_file(path, dest)

        report = run_batch(files, operation, quarantine_dir=quarantine_dir, roots=roots)
        logger.info("anonymise_all: %s", report.summary())
        return report
