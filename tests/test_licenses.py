"""
License allow-list and canonical names.
"""
import pytest

from photo_crawler.licenses import PUBLIC_DOMAIN, is_allowed, license_from_parts, normalize


class TestAllowList:
    """Only public domain, CC-BY and CC-BY-SA may become photo records."""

    @pytest.mark.parametrize("license", [
        "CC0",
        "cc0-1.0",
        "CC-0",
        "Public Domain",
        "PDM",
        "CC-BY",
        "CC BY 4.0",
        "cc-by-sa-3.0",
        "CC BY-SA 3.0 DE",
        "Creative Commons Attribution-ShareAlike 4.0 International",
        "https://creativecommons.org/licenses/by-sa/4.0/",
        "https://creativecommons.org/publicdomain/zero/1.0/",
        "by",
    ])
    def test_allowed(self, license):
        assert is_allowed(license)

    @pytest.mark.parametrize("license", [
        "CC-BY-NC-4.0",
        "CC BY-NC-SA 2.0",
        "CC-BY-ND-4.0",
        "by-nc",
        "https://creativecommons.org/licenses/by-nc-nd/4.0/",
        "All rights reserved",
        "GFDL",
        "",
        None,
        42,
    ])
    def test_rejected(self, license):
        assert not is_allowed(license)

    def test_nc_family_rejected_despite_cc_by_prefix(self):
        assert "CC-BY" in "CC-BY-NC-4.0"
        assert not is_allowed("CC-BY-NC-4.0")

    def test_case_insensitive(self):
        assert is_allowed("cc by-sa 4.0") == is_allowed("CC BY-SA 4.0")


class TestNormalize:
    """Canonical license strings stored on photo records."""

    @pytest.mark.parametrize("raw,expected", [
        ("cc by-sa 4.0", "CC-BY-SA-4.0"),
        ("CC BY 2.0", "CC-BY-2.0"),
        ("CC BY-SA 3.0 DE", "CC-BY-SA-3.0"),
        ("cc0", PUBLIC_DOMAIN),
        ("Public domain", PUBLIC_DOMAIN),
        ("https://creativecommons.org/licenses/by/2.5/", "CC-BY-2.5"),
        ("by-nc", "CC-BY-NC"),
        ("CC-BY", "CC-BY"),
    ])
    def test_canonical_forms(self, raw, expected):
        assert normalize(raw) == expected

    def test_unrecognized_is_cleaned_not_rejected(self):
        assert normalize("all rights reserved") == "ALL-RIGHTS-RESERVED"

    @pytest.mark.parametrize("raw", [
        "cc by-sa 4.0", "CC0", "by-nc-nd", "whatever license", "", None, "CC BY 2.0 de",
    ])
    def test_idempotent(self, raw):
        once = normalize(raw)
        assert normalize(once) == once

    def test_allow_list_survives_normalization(self):
        for raw in ["cc by-sa 4.0", "CC-BY-NC-4.0", "cc0", "GFDL"]:
            assert is_allowed(normalize(raw)) == is_allowed(raw)


class TestLicenseFromParts:
    """Bulk index rows carry code and version in separate columns."""

    def test_joins_code_and_version(self):
        assert license_from_parts("by-sa", "4.0") == "BY-SA-4.0"
        assert normalize(license_from_parts("by-sa", "4.0")) == "CC-BY-SA-4.0"

    def test_missing_version(self):
        assert license_from_parts("cc0", "") == "CC0"
        assert license_from_parts("by", None) == "BY"
        assert license_from_parts("by", "nan") == "BY"

    def test_missing_code(self):
        assert license_from_parts("", "4.0") == ""
