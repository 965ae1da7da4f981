"""
Centralised configuration for the dicom_deid package.

Naming rules, DICOM tag tables, identifier formats, and logging setup used
across all modules.
"""

import logging

# ---------------------------------------------------------------------------
# Output naming
# ---------------------------------------------------------------------------
# Appended to the file stem of de-identified output, e.g. "ct-no-phi.dcm".
NO_PHI_SUFFIX = "-no-phi"

# Prefix of the temporary files written next to each destination.
TEMP_PREFIX = "DCMtemp-"

# ---------------------------------------------------------------------------
# Anonymised ID format
# ---------------------------------------------------------------------------
ANON_ID_PREFIX = "PAT"
ANON_ID_WIDTH = 6


def make_anon_id(n: int, prefix: str = ANON_ID_PREFIX, width: int = ANON_ID_WIDTH) -> str:
    """Format a sequential anonymised patient ID, e.g. make_anon_id(1) -> 'PAT000001'."""
    return f"{prefix}{n:0{width}d}"


# Root for remapped and hashed UIDs.  Override per site with --uid-root.
UID_ROOT = "1.2.826.0.1.3680043.8.498.1"

# (0002,0013) written into every output file; at most 16 characters.
IMPLEMENTATION_VERSION_NAME = "DICOM_DEID_010"

# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------
# Bytes per read when copying pixel data; a multiple of every word size.
COPY_CHUNK_SIZE = 64 * 1024

# ---------------------------------------------------------------------------
# Group-level rules
# ---------------------------------------------------------------------------
# Groups exempt from private/unspecified removal unless the rule set says
# otherwise: acquisition (0018), relationship (0020), image pixel (0028).
DEFAULT_KEEP_GROUPS = frozenset({0x0018, 0x0020, 0x0028})

# Never removed by unspecified-element removal.
ALWAYS_KEEP_TAGS = {
    0x00080016: "SOPClassUID",
    0x00080018: "SOPInstanceUID",
    0x0020000D: "StudyInstanceUID",
}
ALWAYS_KEEP_GROUPS = frozenset({0x0002, 0x0028, 0x7FE0})

# ---------------------------------------------------------------------------
# DICOM tags for anonymisation (default rule set)
# ---------------------------------------------------------------------------
# Tags whose value is replaced with a remapped identifier, by namespace.
DICOM_TAGS_REMAP = {
    0x00100020: ("PatientID", "ptid"),
    0x00080050: ("AccessionNumber", "accession"),
    0x00200010: ("StudyID", "study"),
}

# UIDs replaced with a remapped UID so references between files survive.
DICOM_TAGS_REMAP_UID = {
    0x0020000D: "StudyInstanceUID",
    0x0020000E: "SeriesInstanceUID",
    0x00080018: "SOPInstanceUID",
    0x00200052: "FrameOfReferenceUID",
}

# Tags that are cleared (set to an empty value).
DICOM_TAGS_CLEAR = {
    0x00100010: "PatientName",
    0x00100030: "PatientBirthDate",
    0x00080090: "ReferringPhysicianName",
    0x00081048: "PhysiciansOfRecord",
    0x00081070: "OperatorsName",
}

# Tags that are removed outright.
DICOM_TAGS_REMOVE = {
    0x00101000: "OtherPatientIDs",
    0x00101001: "OtherPatientNames",
    0x00101040: "PatientAddress",
    0x00102154: "PatientTelephoneNumbers",
    0x00080080: "InstitutionName",
    0x00080081: "InstitutionAddress",
    0x00081040: "InstitutionalDepartmentName",
    0x00321032: "RequestingPhysician",
}

# Identifying tags checked after the rules ran: each must be gone or changed.
IDENTIFYING_TAGS = {
    0x00100010: "PatientName",
    0x00100020: "PatientID",
    0x00100030: "PatientBirthDate",
    0x00101000: "OtherPatientIDs",
    0x00101001: "OtherPatientNames",
    0x00101040: "PatientAddress",
}

# Original identifying values shorter than this are not searched for in
# other text elements.
RESIDUAL_MATCH_MIN_LENGTH = 4

# ---------------------------------------------------------------------------
# Logging helper
# ---------------------------------------------------------------------------
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: int = logging.INFO) -> None:
    """Configure root logging for dicom_deid commands."""
    logging.basicConfig(level=level, format=LOG_FORMAT)
