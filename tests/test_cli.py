"""Tests for dicom_deid.cli — command-line entry point."""

import json
from pathlib import Path

import pydicom
from pydicom.dataset import FileDataset, FileMetaDataset
from pydicom.uid import ExplicitVRLittleEndian, generate_uid

from dicom_deid.cli import build_parser, main


def _make_test_dicom(filepath: Path, patient_name: str = "Doe^John") -> Path:
    filepath.parent.mkdir(parents=True, exist_ok=True)

    file_meta = FileMetaDataset()
    file_meta.MediaStorageSOPClassUID = "1.2.840.10008.5.1.4.1.1.2"  # CT
    file_meta.MediaStorageSOPInstanceUID = generate_uid()
    file_meta.TransferSyntaxUID = ExplicitVRLittleEndian

    ds = FileDataset(str(filepath), {}, file_meta=file_meta, preamble=b"\x00" * 128)
    ds.SOPClassUID = file_meta.MediaStorageSOPClassUID
    ds.SOPInstanceUID = file_meta.MediaStorageSOPInstanceUID
    ds.StudyInstanceUID = generate_uid()
    ds.PatientName = patient_name
    ds.PatientID = "12345678"
    ds.save_as(filepath, enforce_file_format=True)
    return filepath


class TestParser:
    def test_anonymise_defaults(self):
        args = build_parser().parse_args(["anonymise", "scans"])
        assert args.paths == [Path("scans")]
        assert not args.ivrle
        assert not args.rename
        assert args.rules is None

    def test_flags(self):
        args = build_parser().parse_args([
            "anonymise", "a", "b", "--ivrle", "--sopiuid", "-q", "held", "-o", "out",
        ])
        assert args.paths == [Path("a"), Path("b")]
        assert args.ivrle and args.sopiuid
        assert args.quarantine == Path("held")
        assert args.output == Path("out")


class TestAnonymiseCommand:
    def test_default_rules(self, tmp_path, capsys):
        _make_test_dicom(tmp_path / "in" / "ct.dcm")
        code = main([
            "anonymise", str(tmp_path / "in"),
            "--id-table", str(tmp_path / "ids.db"),
            "--output", str(tmp_path / "out"),
        ])

        assert code == 0
        assert pydicom.dcmread(tmp_path / "out" / "ct.dcm").PatientID == "PAT000001"
        assert "1 file(s): 1 ok" in capsys.readouterr().out

    def test_rules_file(self, tmp_path):
        _make_test_dicom(tmp_path / "in" / "ct.dcm")
        rules = tmp_path / "rules.json"
        rules.write_text(json.dumps({
            "PatientName": {"action": "replace", "value": "ANON"},
            "identifyingTags": ["PatientName"],
        }), encoding="utf-8")

        code = main([
            "anonymise", str(tmp_path / "in"),
            "--rules", str(rules), "--id-table", str(tmp_path / "ids.db"),
        ])

        assert code == 0
        ds = pydicom.dcmread(tmp_path / "in" / "ct.dcm")
        assert str(ds.PatientName) == "ANON"
        assert ds.PatientID == "12345678"

    def test_failure_exit_status(self, tmp_path, capsys):
        (tmp_path / "in").mkdir()
        (tmp_path / "in" / "notes.txt").write_text("hello", encoding="utf-8")
        code = main(["anonymise", str(tmp_path / "in"), "--id-table", str(tmp_path / "ids.db")])
        assert code == 1
        assert "ERROR:" in capsys.readouterr().out

    def test_bad_rules_file(self, tmp_path):
        rules = tmp_path / "rules.json"
        rules.write_text("{not json", encoding="utf-8")
        code = main(["anonymise", str(tmp_path), "--rules", str(rules)])
        assert code == 2


class TestFileCommands:
    def test_repair(self, tmp_path, capsys):
        path = _make_test_dicom(tmp_path / "ct.dcm")
        data = path.read_bytes()
        path.write_bytes(data[:132] + data[144:])

        assert main(["repair", str(path)]) == 0
        assert path.read_bytes() == data
        assert "inserted (0002,0000)" in capsys.readouterr().out

    def test_clear_preamble(self, tmp_path):
        path = _make_test_dicom(tmp_path / "ct.dcm")
        data = bytearray(path.read_bytes())
        data[:4] = b"ACME"
        path.write_bytes(bytes(data))

        assert main(["clear-preamble", str(path)]) == 0
        assert path.read_bytes()[:128] == b"\x00" * 128

    def test_fix_vrs(self, tmp_path):
        path = _make_test_dicom(tmp_path / "ct.dcm")
        assert main(["fix-vrs", str(path), "--ivrle"]) == 0
        assert pydicom.dcmread(path).file_meta.TransferSyntaxUID == "1.2.840.10008.1.2"

    def test_verify(self, tmp_path):
        _make_test_dicom(tmp_path / "ct.dcm", patient_name="SMITH^JOHN")
        assert main(["verify", str(tmp_path), "SMITH"]) == 1
        assert main(["verify", str(tmp_path), "JONES"]) == 0
