"""Anonymisation rule sets.

A rule set maps tags to actions and carries the group-level flags.  It is
built from an already-resolved mapping (for example a parsed JSON file):

.. code-block:: python

    {
        "(0010,0010)": {"action": "remove"},
        "PatientID": {"action": "remap", "namespace": "ptid"},
        "(0012,0062)": {"action": "replace", "value": "YES"},
        "StudyDate": {"action": "offsetdate", "value": "20000101"},
        "keepGroups": ["0018", "0020", "0028"],
        "removePrivateGroups": true,
        "removeUnspecifiedElements": false,
        "removeOverlays": true
    }

A tag entry with an action of ``replace`` and a null or empty value means
remove, as does a bare ``null``.

What ``value`` means depends on the action:

============== =========================================================
replace        the literal to write
blank          how many spaces to write (default 0)
require        the value to insert when the element is missing
incrementdate  days to add to the date (negative for earlier dates)
offsetdate     base date (YYYYMMDD) the patient's first date maps to
hashptid       site ID mixed into the hash; ``prefix``/``suffix`` wrap it
============== =========================================================
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional

from pydicom.datadict import tag_for_keyword
from pydicom.tag import BaseTag, Tag

from dicom_deid.config import (
    ALWAYS_KEEP_GROUPS,
    ALWAYS_KEEP_TAGS,
    DEFAULT_KEEP_GROUPS,
    DICOM_TAGS_CLEAR,
    DICOM_TAGS_REMAP,
    DICOM_TAGS_REMAP_UID,
    DICOM_TAGS_REMOVE,
    IDENTIFYING_TAGS,
)

logger = logging.getLogger(__name__)

_TAG_PATTERN = re.compile(r"^\(?\s*([0-9A-Fa-f]{4})\s*,?\s*([0-9A-Fa-f]{4})\s*\)?$")
_BASE_DATE = re.compile(r"^\d{8}$")

_FLAG_KEYS = {
    "keepGroups",
    "removePrivateGroups",
    "removeUnspecifiedElements",
    "removeOverlays",
    "allowEncapsulated",
    "identifyingTags",
}


class Action(str, Enum):
    KEEP = "keep"
    REMOVE = "remove"
    EMPTY = "empty"
    REPLACE = "replace"
    REMAP = "remap"
    HASH_UID = "hashuid"
    BLANK = "blank"
    REQUIRE = "require"
    INCREMENT_DATE = "incrementdate"
    OFFSET_DATE = "offsetdate"
    HASH_PTID = "hashptid"
    INITIALS = "initials"


@dataclass(frozen=True)
class Rule:
    """What to do with one tag.

    ``value`` is the action's argument (see the module docstring);
    ``namespace`` keeps remapped identifiers of different kinds apart
    (``ptid``, ``uid``, ...).
    """

    action: Action
    value: Optional[str] = None
    namespace: str = "id"
    prefix: str = ""
    suffix: str = ""


def parse_tag(key) -> BaseTag:
    """Accept ``(gggg,eeee)``, ``gggg,eeee``, ``ggggeeee``, an int, or a keyword."""
    if isinstance(key, int):
        return Tag(key)
    match = _TAG_PATTERN.match(str(key).strip())
    if match:
        return Tag(int(match.group(1), 16), int(match.group(2), 16))
    found = tag_for_keyword(str(key).strip())
    if found is None:
        raise ValueError(f"Unknown tag or keyword: {key!r}")
    return Tag(found)


def _parse_group(value) -> int:
    if isinstance(value, int):
        return value
    return int(str(value).strip().lower().removeprefix("0x"), 16)


def _check_argument(rule: Rule) -> Rule:
    """Reject rules whose argument their action cannot use."""
    value = rule.value
    if rule.action is Action.BLANK and value is not None and int(value) < 0:
        raise ValueError(f"blank needs a non-negative count, got {value!r}")
    if rule.action is Action.INCREMENT_DATE:
        if value is None:
            raise ValueError("incrementdate needs a number of days")
        int(value)
    if rule.action is Action.OFFSET_DATE:
        if value is None or not _BASE_DATE.match(value):
            raise ValueError(f"offsetdate needs a YYYYMMDD base date, got {value!r}")
        datetime.strptime(value, "%Y%m%d")
    return rule


def _parse_rule(spec) -> Rule:
    if spec is None:
        return Rule(Action.REMOVE)
    if isinstance(spec, str):
        return _check_argument(Rule(Action(spec.lower())))
    action = Action(str(spec.get("action", "replace")).lower())
    value = spec.get("value")
    if action is Action.REPLACE and not value:
        return Rule(Action.REMOVE)
    return _check_argument(Rule(
        action,
        str(value) if value is not None else None,
        str(spec.get("namespace", "id")),
        str(spec.get("prefix", "")),
        str(spec.get("suffix", "")),
    ))


@dataclass
class RuleSet:
    """Per-tag rules plus group-level removal flags."""

    rules: dict[BaseTag, Rule] = field(default_factory=dict)
    keep_groups: frozenset = DEFAULT_KEEP_GROUPS
    remove_private_groups: bool = False
    remove_unspecified_elements: bool = False
    remove_overlays: bool = False
    allow_encapsulated: bool = False
    identifying_tags: frozenset = frozenset(IDENTIFYING_TAGS)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RuleSet":
        """Build a rule set from its resolved mapping form (see module docstring)."""
        rules = {}
        for key, spec in data.items():
            if key in _FLAG_KEYS:
                continue
            rules[parse_tag(key)] = _parse_rule(spec)

        keep_groups = data.get("keepGroups")
        identifying = data.get("identifyingTags")
        rule_set = cls(
            rules=rules,
            keep_groups=(
                frozenset(_parse_group(g) for g in keep_groups)
                if keep_groups is not None else DEFAULT_KEEP_GROUPS
            ),
            remove_private_groups=bool(data.get("removePrivateGroups", False)),
            remove_unspecified_elements=bool(data.get("removeUnspecifiedElements", False)),
            remove_overlays=bool(data.get("removeOverlays", False)),
            allow_encapsulated=bool(data.get("allowEncapsulated", False)),
            identifying_tags=(
                frozenset(int(parse_tag(t)) for t in identifying)
                if identifying is not None else frozenset(IDENTIFYING_TAGS)
            ),
        )
        logger.debug("Loaded rule set with %d tag rules", len(rules))
        return rule_set

    def rule_for(self, tag: int) -> Optional[Rule]:
        return self.rules.get(Tag(tag))

    def is_kept_group(self, group: int) -> bool:
        return group in self.keep_groups

    def group_removal(self, tag: int) -> Optional[str]:
        """Why a tag is removed by a group flag, or ``None``.

        Overlays (60xx) always go when overlay removal is on, even with a
        rule of their own or in a kept group; the per-tag rules run
        afterwards and may insert the element again.  Otherwise tags with a
        rule and tags in kept groups stay.  Private groups go when private
        removal is on; anything else not always-kept when unspecified-element
        removal is on.
        """
        tag = int(tag)
        group = tag >> 16
        is_overlay = (group & 0xFF00) == 0x6000
        if self.remove_overlays and is_overlay:
            return "overlay"
        if Tag(tag) in self.rules or self.is_kept_group(group):
            return None
        if self.remove_private_groups and group % 2 == 1:
            return "private group"
        if self.remove_unspecified_elements:
            if tag in ALWAYS_KEEP_TAGS or group in ALWAYS_KEEP_GROUPS:
                return None
            if is_overlay:
                return None
            return "unspecified"
        return None


def default_rule_set() -> RuleSet:
    """Rule set built from the tag tables in :mod:`dicom_deid.config`."""
    rules: dict[BaseTag, Rule] = {}
    for tag, (_, namespace) in DICOM_TAGS_REMAP.items():
        rules[Tag(tag)] = Rule(Action.REMAP, namespace=namespace)
    for tag in DICOM_TAGS_REMAP_UID:
        rules[Tag(tag)] = Rule(Action.REMAP, namespace="uid")
    for tag in DICOM_TAGS_CLEAR:
        rules[Tag(tag)] = Rule(Action.EMPTY)
    for tag in DICOM_TAGS_REMOVE:
        rules[Tag(tag)] = Rule(Action.REMOVE)
    rules[Tag(0x00120062)] = Rule(Action.REPLACE, "YES")  # PatientIdentityRemoved
    return RuleSet(rules=rules, remove_private_groups=True, remove_overlays=True)
