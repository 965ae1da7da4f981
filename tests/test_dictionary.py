"""Tests for dicom_deid.dictionary — tag to VR lookup."""

from dicom_deid.dictionary import STANDARD_DICTIONARY, DataDictionary


class TestLookup:
    def test_single_vr(self):
        assert STANDARD_DICTIONARY.vrs(0x00100010) == ("PN",)

    def test_alternative_vrs_keep_their_order(self):
        # SmallestImagePixelValue is "US or SS"
        assert STANDARD_DICTIONARY.vrs(0x00280106) == ("US", "SS")

    def test_unknown_tag(self):
        assert STANDARD_DICTIONARY.vrs(0x00091001) == ()
        assert 0x00091001 not in STANDARD_DICTIONARY

    def test_repeating_group(self):
        # Overlay Rows lives in every 60xx group
        assert STANDARD_DICTIONARY.vrs(0x60000010) == ("US",)
        assert STANDARD_DICTIONARY.vrs(0x60020010) == ("US",)

    def test_item_tags_have_no_vr(self):
        assert STANDARD_DICTIONARY.vrs(0xFFFEE000) == ()

    def test_loaded_from_pydicom(self):
        assert len(STANDARD_DICTIONARY) > 1000


class TestPreferredVr:
    def test_mismatch_returns_first_vr(self):
        assert STANDARD_DICTIONARY.preferred_vr(0x00100010, "LO") == "PN"

    def test_match_returns_none(self):
        assert STANDARD_DICTIONARY.preferred_vr(0x00100010, "PN") is None

    def test_any_listed_vr_is_accepted(self):
        assert STANDARD_DICTIONARY.preferred_vr(0x00280106, "SS") is None

    def test_implicit_elements_are_never_corrected(self):
        assert STANDARD_DICTIONARY.preferred_vr(0x00100010, None) is None

    def test_unknown_tags_are_never_corrected(self):
        assert STANDARD_DICTIONARY.preferred_vr(0x00091001, "LO") is None


class TestOverrides:
    def test_override_returns_new_dictionary(self):
        custom = STANDARD_DICTIONARY.with_overrides({0x00100030: ("DT",)})
        assert custom.vrs(0x00100030) == ("DT",)
        assert STANDARD_DICTIONARY.vrs(0x00100030) == ("DA",)

    def test_override_keeps_other_entries(self):
        custom = STANDARD_DICTIONARY.with_overrides({0x00100030: ("DT",)})
        assert custom.vrs(0x00100010) == ("PN",)
        assert custom.vrs(0x60000010) == ("US",)

    def test_custom_dictionary(self):
        dictionary = DataDictionary({0x00100010: ("LO",)})
        assert dictionary.preferred_vr(0x00100010, "PN") == "LO"
        assert dictionary.is_known(0x00100010)
        assert not dictionary.is_known(0x00100020)
