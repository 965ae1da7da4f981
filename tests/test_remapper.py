"""Tests for dicom_deid.remapper — identifier tables and remappers."""

import hashlib
import threading
from datetime import date

import pytest

from dicom_deid.exceptions import RemapperError
from dicom_deid.remapper import (
    IdTable,
    LocalRemapper,
    RemoteRemapper,
    hash_uid,
    increment_date,
    md5_decimal,
    parse_date,
    shift_date,
)

ROOT = "1.2.3.4"


class TestIdTable:
    def test_same_original_same_replacement(self, tmp_path):
        with IdTable(tmp_path / "ids.db") as table:
            remapper = LocalRemapper(table, uid_root=ROOT)
            first = remapper.resolve("12345678", "ptid")
            again = remapper.resolve("12345678", "ptid")
            other = remapper.resolve("87654321", "ptid")
            assert first == again == "PAT000001"
            assert other == "PAT000002"
            assert len(table) == 2

    def test_persists_across_reopen(self, tmp_path):
        db = tmp_path / "ids.db"
        with IdTable(db) as table:
            uid = LocalRemapper(table, uid_root=ROOT).resolve("1.2.840.1", "uid")

        with IdTable(db) as table:
            remapper = LocalRemapper(table, uid_root=ROOT)
            assert remapper.resolve("1.2.840.1", "uid") == uid
            # the counter carries on from the stored value
            assert remapper.resolve("1.2.840.2", "uid") == f"{ROOT}.2"

    def test_namespaces_are_independent(self, tmp_path):
        with IdTable(tmp_path / "ids.db") as table:
            remapper = LocalRemapper(table, uid_root=ROOT)
            assert remapper.resolve("X1", "accession") == "1"
            assert remapper.resolve("X1", "study") == "1"
            assert remapper.resolve("X1", "uid") == f"{ROOT}.1"

    def test_lookup(self, tmp_path):
        with IdTable(tmp_path / "ids.db") as table:
            assert table.lookup("ptid", "12345678") is None
            LocalRemapper(table).resolve("12345678", "ptid")
            assert table.lookup("ptid", "12345678") == "PAT000001"

    def test_closed_table(self, tmp_path):
        table = IdTable(tmp_path / "ids.db")
        with pytest.raises(RemapperError):
            table.lookup("ptid", "x")

    def test_concurrent_resolution(self, tmp_path):
        results = []
        with IdTable(tmp_path / "ids.db") as table:
            remapper = LocalRemapper(table)

            def worker():
                for n in range(20):
                    results.append(remapper.resolve(f"id-{n}", "ptid"))

            threads = [threading.Thread(target=worker) for _ in range(4)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()
            assert len(table) == 20

        assert len(set(results)) == 20


class TestLocalRemapper:
    def test_empty_identifier(self, tmp_path):
        with IdTable(tmp_path / "ids.db") as table:
            with pytest.raises(RemapperError):
                LocalRemapper(table).resolve("  ", "ptid")

    def test_custom_prefix(self, tmp_path):
        with IdTable(tmp_path / "ids.db") as table:
            remapper = LocalRemapper(table, ptid_prefix="ANON", ptid_width=3)
            assert remapper.resolve("12345678", "ptid") == "ANON001"

    def test_uid_too_long(self, tmp_path):
        with IdTable(tmp_path / "ids.db") as table:
            remapper = LocalRemapper(table, uid_root="1." + "2" * 63)
            with pytest.raises(RemapperError):
                remapper.resolve("1.2.840.1", "uid")
            # the failed creation left nothing behind
            assert len(table) == 0


class TestRemoteRemapper:
    def test_retries_then_succeeds(self):
        calls = []
        delays = []

        def lookup(old_id, namespace):
            calls.append((old_id, namespace))
            if len(calls) < 3:
                raise ConnectionError("registry down")
            return "ANON-1"

        remapper = RemoteRemapper(lookup, base_delay=1.0, max_delay=30.0, sleep=delays.append)
        assert remapper.resolve("12345678", "ptid") == "ANON-1"
        assert len(calls) == 3
        assert len(delays) == 2
        assert 1.0 <= delays[0] <= 2.0
        assert 2.0 <= delays[1] <= 3.0

    def test_answers_are_cached(self):
        calls = []

        def lookup(old_id, namespace):
            calls.append(old_id)
            return f"new-{old_id}"

        remapper = RemoteRemapper(lookup, sleep=lambda s: None)
        assert remapper.resolve("a") == "new-a"
        assert remapper.resolve("a") == "new-a"
        assert calls == ["a"]

    def test_gives_up(self):
        def lookup(old_id, namespace):
            raise TimeoutError("no answer")

        delays = []
        remapper = RemoteRemapper(lookup, max_attempts=3, max_delay=1.5, sleep=delays.append)
        with pytest.raises(RemapperError):
            remapper.resolve("12345678")
        assert len(delays) == 2
        assert all(d <= 1.5 for d in delays)

    def test_empty_answer(self):
        remapper = RemoteRemapper(lambda old_id, namespace: "", sleep=lambda s: None)
        with pytest.raises(RemapperError):
            remapper.resolve("12345678")

    def test_offset_date_request(self):
        calls = []

        def lookup(old_id, namespace):
            calls.append((old_id, namespace))
            return "20000111"

        remapper = RemoteRemapper(lookup, sleep=lambda s: None)
        assert remapper.offset_date("111", "(0008,0020)", "20240325", "20000101") == "20000111"
        assert calls == [("[111](0008,0020)\\20240325\\20000101", "offsetdate")]


class TestHashUid:
    def test_deterministic(self):
        assert hash_uid("1.2.840.1", ROOT) == hash_uid("1.2.840.1", ROOT)
        assert hash_uid("1.2.840.1", ROOT) != hash_uid("1.2.840.2", ROOT)

    def test_format(self):
        uid = hash_uid("1.2.840.1", ROOT)
        assert uid.startswith(ROOT + ".")
        assert len(uid) <= 64
        assert all(part.isdigit() for part in uid.split("."))

    def test_md5_decimal(self):
        expected = str(int(hashlib.md5(b"[SITE1]12345678").hexdigest(), 16))
        assert md5_decimal("[SITE1]12345678") == expected


# ---------------------------------------------------------------------------
# Tests: dates
# ---------------------------------------------------------------------------

class TestDates:
    @pytest.mark.parametrize("text, expected", [
        ("20010203", date(2001, 2, 3)),
        ("2001.02.03", date(2001, 2, 3)),
        ("00990101", date(1999, 1, 1)),
    ])
    def test_parse_date(self, text, expected):
        assert parse_date(text) == expected

    @pytest.mark.parametrize("text", ["2001", "20011301", "CT Head", ""])
    def test_not_a_date(self, text):
        with pytest.raises(ValueError):
            parse_date(text)

    def test_increment_date(self):
        assert increment_date("20240315", -30) == "20240214"
        assert increment_date("20231231", 1) == "20240101"

    def test_shift_date(self):
        assert shift_date("20240325", "20240315", "20000101") == "20000111"
        assert shift_date("20240305", "20240315", "20000101") == "19991222"


class TestOffsetDate:
    def test_first_date_maps_to_base(self, tmp_path):
        with IdTable(tmp_path / "ids.db") as table:
            remapper = LocalRemapper(table)
            assert remapper.offset_date("111", "(0008,0020)", "20240315", "20000101") == "20000101"
            assert remapper.offset_date("111", "(0008,0020)", "20240325", "20000101") == "20000111"
            # another patient, and another element, start from the base again
            assert remapper.offset_date("222", "(0008,0020)", "20240401", "20000101") == "20000101"
            assert remapper.offset_date("111", "(0008,0021)", "20240325", "20000101") == "20000101"

    def test_first_dates_persist(self, tmp_path):
        db = tmp_path / "ids.db"
        with IdTable(db) as table:
            LocalRemapper(table).offset_date("111", "(0008,0020)", "20240315", "20000101")

        with IdTable(db) as table:
            assert table.first_value("offsetdate", "[111](0008,0020)", "19990101") == "20240315"
            assert LocalRemapper(table).offset_date(
                "111", "(0008,0020)", "20240316", "20000101"
            ) == "20000102"
            # first dates are not identifier mappings
            assert len(table) == 0

    def test_bad_date(self, tmp_path):
        with IdTable(tmp_path / "ids.db") as table:
            with pytest.raises(ValueError):
                LocalRemapper(table).offset_date("111", "(0008,0020)", "March", "20000101")
