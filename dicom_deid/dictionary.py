"""Static tag -> Value Representation lookup.

Built once from pydicom's standard data dictionary into an immutable
mapping.  Entries such as ``"US or SS"`` become ``("US", "SS")``; the first
listed VR is the one a mismatching element is corrected to.
"""

import logging
from types import MappingProxyType
from typing import Mapping, Optional

from pydicom.datadict import DicomDictionary, RepeatersDictionary, mask_match

logger = logging.getLogger(__name__)


def _split_vr(vr: str) -> tuple[str, ...]:
    # "NONE" marks item and delimiter tags, which carry no VR
    if not vr or vr == "NONE":
        return ()
    return tuple(part.strip() for part in vr.split(" or "))


class DataDictionary:
    """Immutable mapping from tag to its acceptable VRs."""

    def __init__(
        self,
        entries: Mapping[int, tuple[str, ...]],
        repeaters: Optional[Mapping[str, tuple[str, ...]]] = None,
    ) -> None:
        self._entries = MappingProxyType(dict(entries))
        self._repeaters = MappingProxyType(dict(repeaters or {}))

    @classmethod
    def from_pydicom(cls) -> "DataDictionary":
        """Load the standard dictionary shipped with pydicom."""
        entries = {}
        for tag, entry in DicomDictionary.items():
            vrs = _split_vr(entry[0])
            if vrs:
                entries[tag] = vrs
        repeaters = {}
        for mask, entry in RepeatersDictionary.items():
            vrs = _split_vr(entry[0])
            if vrs:
                repeaters[mask] = vrs
        logger.debug(
            "Loaded %d dictionary entries and %d repeater masks",
            len(entries), len(repeaters),
        )
        return cls(entries, repeaters)

    def with_overrides(self, overrides: Mapping[int, tuple[str, ...]]) -> "DataDictionary":
        """Return a new dictionary with *overrides* replacing existing entries."""
        entries = dict(self._entries)
        for tag, vrs in overrides.items():
            entries[int(tag)] = tuple(vrs)
        return DataDictionary(entries, self._repeaters)

    def vrs(self, tag: int) -> tuple[str, ...]:
        """Acceptable VRs for *tag*, or ``()`` if the tag is not in the dictionary."""
        tag = int(tag)
        found = self._entries.get(tag)
        if found is not None:
            return found
        mask = mask_match(tag)
        if mask is not None:
            return self._repeaters.get(mask, ())
        return ()

    def is_known(self, tag: int) -> bool:
        return bool(self.vrs(tag))

    def preferred_vr(self, tag: int, stored_vr: Optional[str]) -> Optional[str]:
        """VR that *stored_vr* should be corrected to, or ``None`` if it is fine.

        Unknown tags and elements without a stored VR (implicit VR syntaxes)
        are never corrected.
        """
        if not stored_vr:
            return None
        allowed = self.vrs(tag)
        if not allowed or stored_vr in allowed:
            return None
        return allowed[0]

    def __contains__(self, tag: int) -> bool:
        return self.is_known(tag)

    def __len__(self) -> int:
        return len(self._entries)


STANDARD_DICTIONARY = DataDictionary.from_pydicom()
