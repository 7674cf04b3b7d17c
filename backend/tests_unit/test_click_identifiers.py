"""
Click Identifier Tests (Unit)
=============================

WHAT: Click cookie unwrapping, long-form detection, truncated matching and
refcode extraction from ad url_tags.
WHY: The mismatch detector and click recovery compare identifiers that
arrive in cookie form, raw form, or truncated by an upstream field limit.

REFERENCES:
- backend/donorlink/services/click_ids.py
- backend/donorlink/services/meta_ads_client.py:extract_refcode
"""

from donorlink.services.click_ids import (
    extract_fbclid,
    identifiers_match,
    is_long_form,
    metadata_identifiers,
    truncated_match,
)
from donorlink.services.meta_ads_client import extract_refcode

FULL_FBCLID = "IwAR" + "x" * 60
COOKIE = f"fb.1.1700000000000.{FULL_FBCLID}"


def test_long_form_threshold() -> None:
    assert is_long_form("a" * 51)
    assert not is_long_form("a" * 50)
    assert not is_long_form(None)
    assert not is_long_form("")


def test_extract_fbclid_unwraps_cookie() -> None:
    assert extract_fbclid(COOKIE) == FULL_FBCLID
    assert extract_fbclid(FULL_FBCLID) == FULL_FBCLID
    assert extract_fbclid(None) is None


def test_identifiers_match_across_forms() -> None:
    assert identifiers_match(COOKIE, FULL_FBCLID)
    assert identifiers_match(FULL_FBCLID, COOKIE)
    assert not identifiers_match(COOKIE, "IwAR" + "y" * 60)
    assert not identifiers_match(None, FULL_FBCLID)


def test_metadata_identifiers_ignores_blank_and_non_string_values() -> None:
    found = metadata_identifiers({"fbclid": FULL_FBCLID, "fbc": "", "click_id": 42, "other": "x"})

    assert found == {"fbclid": FULL_FBCLID}
    assert metadata_identifiers(None) == {}
    assert metadata_identifiers(["fbclid"]) == {}


def test_truncated_match_prefix_suffix_and_aem_marker() -> None:
    full = "IwAR" + "abc" * 10 + "_aem_" + "tail" * 6

    assert truncated_match(full[:40], full)
    assert truncated_match(full[-20:], full)
    assert not truncated_match("zzzz", full)

    marked = "IwAR" + "abc" * 10 + "_aem_" + "mid" + "z" * 20
    assert truncated_match("mid", marked)


def test_truncated_match_requires_short_candidate_and_long_full() -> None:
    assert not truncated_match(FULL_FBCLID, FULL_FBCLID)
    assert not truncated_match("IwAR", "IwAR" + "x" * 10)
    assert not truncated_match(None, FULL_FBCLID)


def test_extract_refcode_from_url_tags() -> None:
    assert extract_refcode("utm_source=fb&refcode=meta_climate_2024") == "meta_climate_2024"
    assert extract_refcode("?ref_code=sms_fall") == "sms_fall"
    assert extract_refcode("refcode={{ad.name}}") is None
    assert extract_refcode("utm_source=fb") is None
    assert extract_refcode(None) is None
