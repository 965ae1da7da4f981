"""
dicom_deid — Structural repair and de-identification of DICOM files.

Reads a DICOM file up to its pixel data, fixes what can be fixed in the
element stream (Part 10 headers, value representations that disagree with
the data dictionary), strips or rewrites identifying elements according to
a rule set, and writes the result back through a temporary file.

Design notes
------------
1. Pixel data is never decoded or held in memory.  The parser stops at the
   pixel data element and the writer copies the original bytes through,
   fragment by fragment for encapsulated data.
2. pydicom does the element-level decoding and encoding.  This package only
   adds the streaming boundary around pixel data, the header repairs, and
   the rule engine.
3. Every per-file operation returns an :class:`~dicom_deid.results.Outcome`
   (ok, exceptions, quarantine, error) so a batch never stops on one bad
   file.
4. Replacement identifiers come from a persisted table so the same source
   patient or study maps to the same output identifier on every run.
"""

__version__ = "0.1.0"
