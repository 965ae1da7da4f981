"""Identifier remapping.

A remapper turns a source identifier (patient ID, UID, accession number)
into its de-identified replacement and always gives the same answer for
the same source identifier.

:class:`IdTable` is the persisted store: one SQLite file, opened once per
process, handed to every anonymisation call, and closed at the end of the
batch.  Rows are only ever inserted, never updated, and a lock plus an
immediate transaction make "look up or create" atomic, so two workers that
meet the same new identifier get the same replacement.
"""

import hashlib
import logging
import random
import re
import sqlite3
import threading
import time
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Callable, Optional, Protocol

from dicom_deid.config import ANON_ID_PREFIX, ANON_ID_WIDTH, UID_ROOT, make_anon_id
from dicom_deid.exceptions import RemapperError

logger = logging.getLogger(__name__)

MAX_UID_LENGTH = 64

_SCHEMA = (
    """CREATE TABLE IF NOT EXISTS mappings (
        namespace TEXT NOT NULL,
        original TEXT NOT NULL,
        replacement TEXT NOT NULL,
        PRIMARY KEY (namespace, original),
        UNIQUE (namespace, replacement)
    )""",
    """CREATE TABLE IF NOT EXISTS counters (
        namespace TEXT PRIMARY KEY,
        value INTEGER NOT NULL
    )""",
    # first value seen per key, e.g. a patient's first study date
    """CREATE TABLE IF NOT EXISTS anchors (
        namespace TEXT NOT NULL,
        key TEXT NOT NULL,
        value TEXT NOT NULL,
        PRIMARY KEY (namespace, key)
    )""",
)
OFFSET_DATE_NAMESPACE = "offsetdate"
_DATE_FORMAT = "%Y%m%d"


class Remapper(Protocol):
    def resolve(self, old_id: str, namespace: str = "id") -> str:
        """Return the replacement for *old_id* within *namespace*."""
        ...

    def offset_date(self, patient_id: str, element: str, value: str, base: str) -> str:
        """Shift *value* so the patient's first *element* date becomes *base*."""
        ...


# ---------------------------------------------------------------------------
# Dates
# ---------------------------------------------------------------------------

def parse_date(text: str) -> date:
    """Parse a DA value, tolerating separators and a "00" century.

    ``"2001.02.03"`` and ``"20010203"`` both give 3 Feb 2001;
    ``"00990101"`` is read as 1999.
    """
    digits = re.sub(r"\D", "", str(text))
    if len(digits) != 8:
        raise ValueError(f"not a date: {text!r}")
    if digits.startswith("00"):
        digits = "19" + digits[2:]
    return datetime.strptime(digits, _DATE_FORMAT).date()


def format_date(value: date) -> str:
    return f"{value.year:04d}{value.month:02d}{value.day:02d}"


def increment_date(text: str, days: int) -> str:
    """*text* moved by *days* days."""
    return format_date(parse_date(text) + timedelta(days=days))


def shift_date(text: str, first: str, base: str) -> str:
    """*text* moved by the distance from *first* to *base*."""
    return format_date(parse_date(base) + (parse_date(text) - parse_date(first)))


# ---------------------------------------------------------------------------
# Persisted table
# ---------------------------------------------------------------------------

class IdTable:
    """Append-only original -> replacement table stored in SQLite."""

    def __init__(self, path, timeout: float = 30.0) -> None:
        self.path = path if str(path) == ":memory:" else Path(path)
        self.timeout = timeout
        self._lock = threading.Lock()
        self._db: Optional[sqlite3.Connection] = None

    def open(self) -> "IdTable":
        if self._db is not None:
            return self
        if isinstance(self.path, Path):
            self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            # autocommit mode; transactions are opened explicitly
            self._db = sqlite3.connect(
                str(self.path), timeout=self.timeout,
                isolation_level=None, check_same_thread=False,
            )
            for statement in _SCHEMA:
                self._db.execute(statement)
        except sqlite3.Error as exc:
            raise RemapperError(f"Cannot open ID table {self.path}: {exc}") from exc
        logger.info("Opened ID table %s (%d entries)", self.path, len(self))
        return self

    def flush(self) -> None:
        """Commit anything pending.  Each new entry is already committed on creation."""
        db = self._require_open()
        with self._lock:
            if db.in_transaction:
                db.commit()

    def close(self) -> None:
        if self._db is None:
            return
        self.flush()
        self._db.close()
        self._db = None
        logger.info("Closed ID table %s", self.path)

    def __enter__(self) -> "IdTable":
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _require_open(self) -> sqlite3.Connection:
        if self._db is None:
            raise RemapperError(f"ID table {self.path} is not open")
        return self._db

    def __len__(self) -> int:
        db = self._require_open()
        with self._lock:
            return db.execute("SELECT COUNT(*) FROM mappings").fetchone()[0]

    def lookup(self, namespace: str, original: str) -> Optional[str]:
        db = self._require_open()
        with self._lock:
            row = db.execute(
                "SELECT replacement FROM mappings WHERE namespace = ? AND original = ?",
                (namespace, original),
            ).fetchone()
        return row[0] if row else None

    def get_or_create(
        self, namespace: str, original: str, make: Callable[[int], str], first: int = 1
    ) -> str:
        """Return the stored replacement, or create one from the next counter value.

        *make* turns the counter value into the replacement string.
        """
        db = self._require_open()
        with self._lock:
            try:
                db.execute("BEGIN IMMEDIATE")
                try:
                    row = db.execute(
                        "SELECT replacement FROM mappings WHERE namespace = ? AND original = ?",
                        (namespace, original),
                    ).fetchone()
                    if row:
                        db.execute("COMMIT")
                        return row[0]

                    row = db.execute(
                        "SELECT value FROM counters WHERE namespace = ?", (namespace,)
                    ).fetchone()
                    n = row[0] + 1 if row else first
                    replacement = make(n)
                    db.execute(
                        "INSERT INTO counters (namespace, value) VALUES (?, ?) "
                        "ON CONFLICT(namespace) DO UPDATE SET value = excluded.value",
                        (namespace, n),
                    )
                    db.execute(
                        "INSERT INTO mappings (namespace, original, replacement) VALUES (?, ?, ?)",
                        (namespace, original, replacement),
                    )
                    db.execute("COMMIT")
                except BaseException:
                    db.execute("ROLLBACK")
                    raise
            except sqlite3.Error as exc:
                raise RemapperError(f"ID table {self.path}: {exc}") from exc

        logger.debug("New %s identifier %s", namespace, replacement)
        return replacement

    def first_value(self, namespace: str, key: str, value: str) -> str:
        """Return the value stored for *key*, storing *value* if there is none yet."""
        db = self._require_open()
        with self._lock:
            try:
                db.execute("BEGIN IMMEDIATE")
                try:
                    db.execute(
                        "INSERT OR IGNORE INTO anchors (namespace, key, value) VALUES (?, ?, ?)",
                        (namespace, key, value),
                    )
                    row = db.execute(
                        "SELECT value FROM anchors WHERE namespace = ? AND key = ?",
                        (namespace, key),
                    ).fetchone()
                    db.execute("COMMIT")
                except BaseException:
                    db.execute("ROLLBACK")
                    raise
            except sqlite3.Error as exc:
                raise RemapperError(f"ID table {self.path}: {exc}") from exc
        return row[0]


# ---------------------------------------------------------------------------
# Remappers
# ---------------------------------------------------------------------------

class LocalRemapper:
    """Sequential replacements backed by an :class:`IdTable`.

    ``uid`` identifiers become ``<uid_root>.<n>``, ``ptid`` identifiers
    ``<prefix><zero-padded n>``, anything else the bare counter.  Counters
    are per namespace, so replacements never collide within one.
    """

    def __init__(
        self,
        table: IdTable,
        uid_root: str = UID_ROOT,
        ptid_prefix: str = ANON_ID_PREFIX,
        ptid_width: int = ANON_ID_WIDTH,
        first: int = 1,
    ) -> None:
        self.table = table
        self.uid_root = uid_root.rstrip(".")
        self.ptid_prefix = ptid_prefix
        self.ptid_width = ptid_width
        self.first = first

    def _format(self, namespace: str, n: int) -> str:
        if namespace == "uid":
            uid = f"{self.uid_root}.{n}"
            if len(uid) > MAX_UID_LENGTH:
                raise RemapperError(f"UID {uid} is longer than {MAX_UID_LENGTH} characters")
            return uid
        if namespace == "ptid":
            return make_anon_id(n, self.ptid_prefix, self.ptid_width)
        return str(n)

    def resolve(self, old_id: str, namespace: str = "id") -> str:
        key = str(old_id).strip()
        if not key:
            raise RemapperError("Cannot remap an empty identifier")
        return self.table.get_or_create(
            namespace, key, lambda n: self._format(namespace, n), self.first
        )

    def offset_date(self, patient_id: str, element: str, value: str, base: str) -> str:
        """Offset *value* from the first *element* date stored for the patient.

        The first date seen for a patient and element maps to *base*; later
        dates keep their distance from it, so intervals survive.
        """
        first = self.table.first_value(
            OFFSET_DATE_NAMESPACE,
            f"[{str(patient_id).strip()}]{element}",
            format_date(parse_date(value)),
        )
        return shift_date(value, first, base)


class RemoteRemapper:
    """Adapter around a remote identifier registry.

    *lookup* performs one request ``(old_id, namespace) -> new_id`` and
    raises ``OSError`` (including ``TimeoutError`` and ``ConnectionError``)
    on transport failure.  Failed requests are retried with exponential
    backoff plus jitter::

        delay = min(base_delay * 2**attempt + uniform(0, 1), max_delay)

    Answers are cached for the life of the object so a run stays consistent
    even if the service is briefly unreachable later.
    """

    def __init__(
        self,
        lookup: Callable[[str, str], str],
        max_attempts: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.lookup = lookup
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep
        self._cache: dict[tuple[str, str], str] = {}
        self._lock = threading.Lock()

    def resolve(self, old_id: str, namespace: str = "id") -> str:
        key = (namespace, str(old_id).strip())
        with self._lock:
            cached = self._cache.get(key)
        if cached is not None:
            return cached

        last_error: Optional[Exception] = None
        for attempt in range(self.max_attempts):
            try:
                value = self.lookup(key[1], namespace)
            except OSError as exc:
                last_error = exc
                if attempt + 1 == self.max_attempts:
                    break
                delay = min(self.base_delay * (2 ** attempt) + random.uniform(0, 1), self.max_delay)
                logger.warning(
                    "Remote remap of %s identifier failed (%s), retrying in %.1fs (attempt %d/%d)",
                    namespace, exc, delay, attempt + 1, self.max_attempts,
                )
                self._sleep(delay)
                continue
            if not value:
                raise RemapperError(f"Remote registry returned no {namespace} identifier")
            with self._lock:
                value = self._cache.setdefault(key, value)
            return value

        raise RemapperError(
            f"Remote registry unavailable after {self.max_attempts} attempts: {last_error}"
        )

    def offset_date(self, patient_id: str, element: str, value: str, base: str) -> str:
        """Ask the registry for the offset date.

        The request goes through *lookup* in the ``offsetdate`` namespace;
        its identifier is ``[patient]element`` followed by the date and the
        base, separated by backslashes.  The registry keeps the first dates.
        """
        request = f"[{str(patient_id).strip()}]{element}\\{value}\\{base}"
        return self.resolve(request, OFFSET_DATE_NAMESPACE)


def md5_decimal(text: str) -> str:
    """MD5 digest of *text* as an unsigned decimal number."""
    digest = hashlib.md5(text.encode("utf-8")).digest()
    return str(int.from_bytes(digest, "big"))


def hash_uid(value: str, root: str = UID_ROOT) -> str:
    """Deterministic UID for *value*: the root plus the MD5 digest in decimal.

    Needs no table; the same input gives the same UID on every system.
    """
    uid = f"{root.rstrip('.')}.{md5_decimal(str(value).strip())}"
    return uid[:MAX_UID_LENGTH].rstrip(".")
