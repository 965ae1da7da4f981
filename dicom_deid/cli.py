"""Command-line interface.

Usage::

    dicom-deid anonymise scans/ --output out/ --quarantine held/ --id-table ids.db
    dicom-deid fix-vrs ct.dcm --ivrle
    dicom-deid repair scans/
    dicom-deid clear-preamble scans/
    dicom-deid verify out/ "Doe^John" 12345678

Every file command prints one line per file and a summary, and exits with
status 1 if any file was quarantined or failed.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Callable

from dicom_deid import __version__, part10
from dicom_deid.anonymise_dicom import DicomAnonymiser
from dicom_deid.config import ANON_ID_PREFIX, UID_ROOT, setup_logging
from dicom_deid.exceptions import DicomDeidError
from dicom_deid.remapper import IdTable, LocalRemapper
from dicom_deid.results import BatchReport, Outcome, run_batch
from dicom_deid.rules import RuleSet, default_rule_set
from dicom_deid.utils import collect_files
from dicom_deid.verify_pii import verify_no_pii
from dicom_deid.vr_corrector import fix_vrs

logger = logging.getLogger(__name__)

DEFAULT_ID_TABLE = Path("dicom-deid-ids.db")


def load_rules(path) -> RuleSet:
    """Rule set from a JSON file, or the default rule set if *path* is None."""
    if path is None:
        return default_rule_set()
    with open(path, encoding="utf-8") as fh:
        return RuleSet.from_dict(json.load(fh))


def _print_report(report: BatchReport) -> int:
    for outcome in report.outcomes:
        print(outcome.describe())
    print(report.summary())
    return 1 if report.failed else 0


def _run_each(paths, operation: Callable[[Path], Outcome]) -> int:
    return _print_report(run_batch(collect_files(paths), operation))


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------

def cmd_anonymise(args) -> int:
    rules = load_rules(args.rules)
    with IdTable(args.id_table) as table:
        remapper = LocalRemapper(table, uid_root=args.uid_root, ptid_prefix=args.ptid_prefix)
        anonymiser = DicomAnonymiser(
            rules,
            remapper,
            force_implicit_vr_le=args.ivrle,
            rename=args.rename,
            rename_to_sop_instance_uid=args.sopiuid,
            repair_header=args.repair_header,
            uid_root=args.uid_root,
        )
        report = anonymiser.anonymise_all(args.paths, args.output, args.quarantine)
    return _print_report(report)


def cmd_fix_vrs(args) -> int:
    return _run_each(
        args.paths,
        lambda path: fix_vrs(path, force_implicit=args.ivrle, repair_header=args.repair_header),
    )


def cmd_repair(args) -> int:
    return _run_each(args.paths, part10.repair)


def cmd_clear_preamble(args) -> int:
    return _run_each(args.paths, part10.clear_preamble)


def cmd_verify(args) -> int:
    findings = verify_no_pii(args.directory, args.pii_strings)
    return 1 if findings else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dicom-deid",
        description="Repair, correct and de-identify DICOM files.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug messages")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("anonymise", help="De-identify files or directories")
    p.add_argument("paths", nargs="+", type=Path, help="Files or directories")
    p.add_argument("--rules", type=Path, help="JSON rule set (default: built-in rules)")
    p.add_argument(
        "--id-table", type=Path, default=DEFAULT_ID_TABLE,
        help=f"SQLite identifier table (default: {DEFAULT_ID_TABLE})",
    )
    p.add_argument("-o", "--output", type=Path, help="Mirror output here instead of in place")
    p.add_argument("-q", "--quarantine", type=Path, help="Copy quarantined sources here")
    p.add_argument("--ivrle", action="store_true", help="Write Implicit VR Little Endian")
    p.add_argument("--rename", action="store_true", help="Add the -no-phi suffix to output names")
    p.add_argument("--sopiuid", action="store_true", help="Name output files {SOPInstanceUID}.dcm")
    p.add_argument("--repair-header", action="store_true", help="Repair Part 10 headers first")
    p.add_argument("--uid-root", default=UID_ROOT, help=f"Root for new UIDs (default: {UID_ROOT})")
    p.add_argument("--ptid-prefix", default=ANON_ID_PREFIX, help="Prefix of new patient IDs")
    p.set_defaults(func=cmd_anonymise)

    p = sub.add_parser("fix-vrs", help="Correct element VRs against the data dictionary")
    p.add_argument("paths", nargs="+", type=Path, help="Files or directories")
    p.add_argument("--ivrle", action="store_true", help="Write Implicit VR Little Endian")
    p.add_argument("--repair-header", action="store_true", help="Repair Part 10 headers first")
    p.set_defaults(func=cmd_fix_vrs)

    p = sub.add_parser("repair", help="Repair malformed Part 10 headers in place")
    p.add_argument("paths", nargs="+", type=Path, help="Files or directories")
    p.set_defaults(func=cmd_repair)

    p = sub.add_parser("clear-preamble", help="Zero the 128-byte preamble in place")
    p.add_argument("paths", nargs="+", type=Path, help="Files or directories")
    p.set_defaults(func=cmd_clear_preamble)

    p = sub.add_parser("verify", help="Scan a directory for residual PII")
    p.add_argument("directory", type=Path, help="Directory to scan")
    p.add_argument("pii_strings", nargs="+", help="PII substrings to search for")
    p.set_defaults(func=cmd_verify)

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)

    try:
        return args.func(args)
    except (DicomDeidError, OSError, ValueError) as exc:
        # bad rule file, unopenable ID table
        logger.error("%s", exc)
        print(f"Error: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
