"""Exceptions raised inside dicom_deid.

Public per-file operations catch these and report them as ``error``
outcomes; they only escape from the lower-level codec and remapper APIs.
"""


class DicomDeidError(Exception):
    """Base class for dicom_deid errors."""


class DicomParseError(DicomDeidError):
    """The stream is not a recognized DICOM stream or a boundary is missing."""


class RemapperError(DicomDeidError):
    """An identifier could not be resolved."""


class DicomEncodeError(DicomDeidError):
    """A dataset could not be encoded under the requested transfer syntax."""
