"""Residual PII checks.

Finds identifying strings that survived de-identification, either in one
dataset (used by the anonymiser before it writes anything) or across a
whole output directory (DICOM tags, text files, and filenames).
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Iterable

import pydicom
from pydicom.dataset import Dataset
from pydicom.errors import InvalidDicomError

from dicom_deid.codec import sniff

logger = logging.getLogger(__name__)

# pydicom VR types that contain human-readable strings worth checking.
_STRING_VRS = {
    "LO", "SH", "PN", "LT", "ST", "UT", "DA", "DS", "IS", "CS",
    "AE", "AS", "DT", "TM", "UC", "UI",
}

# Free-text VRs searched for leaked values after the rules ran.  Dates,
# numbers and UIDs are left out: short identifiers turn up inside them by
# coincidence.
FREE_TEXT_VRS = {"LO", "SH", "PN", "LT", "ST", "UT", "UC", "AE"}


def find_residual_values(
    dataset: Dataset, values: Iterable[str], vrs: Iterable[str] = FREE_TEXT_VRS,
) -> list[dict]:
    """Search every element of *dataset* (sequences included) for *values*.

    Matching is case-insensitive substring matching on the element's text.

    Returns
    -------
    list[dict]
        Each finding is ``{"tag": BaseTag, "keyword": str, "matched": str}``.
    """
    originals = [v for v in values if v]
    lowered = [v.lower() for v in originals]
    vrs = set(vrs)
    findings: list[dict] = []
    if not originals:
        return findings

    for elem in dataset.iterall():
        if elem.VR not in vrs or elem.value is None:
            continue
        value_str = str(elem.value).lower()
        for pii, original in zip(lowered, originals):
            if pii in value_str:
                findings.append({
                    "tag": elem.tag,
                    "keyword": elem.keyword or str(elem.tag),
                    "matched": original,
                })
    return findings


def verify_no_pii(directory: Path, pii_strings: list[str]) -> list[dict]:
    """Scan *directory* for residual PII and return a list of findings.

    Parameters
    ----------
    directory : Path
        Root directory to scan recursively.
    pii_strings : list[str]
        Substrings to search for (case-insensitive).

    Returns
    -------
    list[dict]
        Each finding is ``{"file": Path, "location": str, "matched": str}``.
    """
    directory = Path(directory)
    if not directory.is_dir():
        logger.error("Directory does not exist: %s", directory)
        return []

    pii_lower = [s.lower() for s in pii_strings]
    findings: list[dict] = []
    files_scanned = 0

    for path in sorted(directory.rglob("*")):
        if not path.is_file():
            continue
        files_scanned += 1

        # --- Check filename ---
        name_lower = path.name.lower()
        for pii, original in zip(pii_lower, pii_strings):
            if pii in name_lower:
                findings.append({
                    "file": path,
                    "location": "filename",
                    "matched": original,
                })

        suffix = path.suffix.lower()

        # --- Text files ---
        if suffix in (".xml", ".txt", ".json", ".csv"):
            findings.extend(_check_text_file(path, pii_lower, pii_strings, "text content"))

        # --- DICOM files, with or without an extension ---
        elif _looks_like_dicom(path):
            findings.extend(_check_dicom(path, pii_strings))

    # --- Human-readable summary ---
    print(f"\nPII Verification: scanned {files_scanned} files in {directory}")
    if findings:
        print(f"FAIL: {len(findings)} PII finding(s):")
        for f in findings:
            print(f"  {f['file']}  [{f['location']}]  matched '{f['matched']}'")
    else:
        print("PASS: no residual PII detected")

    return findings


def _looks_like_dicom(path: Path) -> bool:
    try:
        with open(path, "rb") as fp:
            return sniff(fp)
    except OSError as exc:
        logger.warning("Could not read %s: %s", path, exc)
        return False


def _check_dicom(path: Path, pii_strings: list[str]) -> list[dict]:
    """Check all string-valued DICOM data elements for PII substrings."""
    try:
        ds = pydicom.dcmread(path, force=True)
    except (InvalidDicomError, OSError, EOFError, ValueError) as exc:
        logger.warning("Could not read DICOM file %s: %s", path, exc)
        return []

    return [
        {
            "file": path,
            "location": f"tag {f['keyword']} {f['tag']}",
            "matched": f["matched"],
        }
        for f in find_residual_values(ds, pii_strings, _STRING_VRS)
    ]


def _check_text_file(
    path: Path,
    pii_lower: list[str],
    pii_originals: list[str],
    location_label: str,
) -> list[dict]:
    """Read a text file and check for PII substrings."""
    findings: list[dict] = []
    try:
        text = path.read_text(encoding="utf-8", errors="replace").lower()
    except OSError as exc:
        logger.warning("Could not read file %s: %s", path, exc)
        return findings

    for pii, original in zip(pii_lower, pii_originals):
        if pii in text:
            findings.append({
                "file": path,
                "location": location_label,
                "matched": original,
            })
    return findings


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(
        description="Verify a de-identified directory contains no residual PII.",
    )
    parser.add_argument("directory", type=Path, help="Directory to scan")
    parser.add_argument("pii_strings", nargs="+", help="PII substrings to search for")
    args = parser.parse_args(argv)

    findings = verify_no_pii(args.directory, args.pii_strings)
    sys.exit(1 if findings else 0)


if __name__ == "__main__":
    main()
