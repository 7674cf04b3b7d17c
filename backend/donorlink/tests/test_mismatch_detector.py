"""Tests for conversion event mismatch detection.

WHAT:
    valid / correctable / uncorrectable classification, dry run vs apply,
    truncated identifiers excluded from the scan.

REFERENCES:
    - donorlink/services/mismatch_detector.py (module under test)
"""

from datetime import datetime, timedelta

import pytest

from donorlink.models import ConversionEvent
from donorlink.services.mismatch_detector import MismatchDetector

DONATED_AT = datetime(2025, 3, 1, 12, 0)
FBC_A = "fb.1.1700000000000." + "A" * 60
FBC_C = "fb.1.1700000000001." + "C" * 60
FBC_UNKNOWN = "fb.1.1700000000002." + "Z" * 60


@pytest.fixture
def events(test_db_session, organization, add_transaction, add_touchpoint):
    # Donor A clicked ad A; donor B clicked ad C
    add_touchpoint(organization.id, DONATED_AT - timedelta(hours=2), metadata={"fbc": FBC_A},
                   donor_email="a@example.com")
    add_touchpoint(organization.id, DONATED_AT - timedelta(days=1), metadata={"fbc": FBC_C},
                   donor_email="b@example.com")

    add_transaction(organization.id, "TB", donor_email="B@example.com")
    add_transaction(organization.id, "TC", donor_email="c@example.com")
    add_transaction(organization.id, "TA", donor_email="a@example.com")
    add_transaction(organization.id, "TU", donor_email="u@example.com")

    rows = {
        "e-b": ConversionEvent(event_id="e-b", source_id="TB", fbc=FBC_A),
        "e-c": ConversionEvent(event_id="e-c", source_id="TC", fbc=FBC_A),
        "e-a": ConversionEvent(event_id="e-a", source_id="TA", fbc=FBC_A),
        "e-u": ConversionEvent(event_id="e-u", source_id="TU", fbc=FBC_UNKNOWN),
        "e-short": ConversionEvent(event_id="e-short", source_id="TB", fbc="fb.1.17.short"),
    }
    for offset, event in enumerate(rows.values()):
        event.organization_id = organization.id
        event.status = "sent"
        event.created_at = DONATED_AT + timedelta(minutes=offset)
        test_db_session.add(event)
    test_db_session.commit()
    return rows


def _by_event(report):
    return {r["event_id"]: r for r in report["results"]}


def test_classifies_events(test_db_session, organization, events):
    report = MismatchDetector(test_db_session).detect(organization.id, dry_run=True, include_valid=True)
    results = _by_event(report)

    assert report["summary"] == {
        "scanned": 4,
        "valid": 2,
        "mismatches": 2,
        "correctable": 1,
        "uncorrectable": 1,
        "corrections_applied": 0,
        "errors": 0,
    }
    assert "e-short" not in results

    correctable = results["e-b"]
    assert correctable["classification"] == "correctable"
    assert correctable["incorrect_fbc"] == FBC_A
    assert correctable["correct_fbc"] == FBC_C
    assert (correctable["attributed_donor"], correctable["transaction_donor"]) == (
        "a@example.com", "b@example.com",
    )

    assert results["e-c"]["classification"] == "uncorrectable"
    assert results["e-c"]["correct_fbc"] is None
    assert results["e-a"]["classification"] == "valid"
    assert results["e-u"]["classification"] == "valid"


def test_dry_run_leaves_events_untouched(test_db_session, organization, events):
    report = MismatchDetector(test_db_session).detect(organization.id, dry_run=True)

    assert {r["event_id"] for r in report["results"]} == {"e-b", "e-c"}
    test_db_session.expire_all()
    assert {e.status for e in test_db_session.query(ConversionEvent).all()} == {"sent"}


def test_apply_flags_mismatches_and_records_both_identifiers(test_db_session, organization, events):
    detector = MismatchDetector(test_db_session)
    report = detector.detect(organization.id, dry_run=False)

    assert report["summary"]["corrections_applied"] == 2
    test_db_session.expire_all()
    flagged = test_db_session.query(ConversionEvent).filter_by(event_id="e-b").one()
    assert flagged.status == "misattributed"
    assert flagged.fbc == FBC_A
    assert flagged.event_metadata["incorrect_fbc"] == FBC_A
    assert flagged.event_metadata["correct_fbc"] == FBC_C
    assert test_db_session.query(ConversionEvent).filter_by(event_id="e-a").one().status == "sent"

    # Flagged events are not rescanned
    again = detector.detect(organization.id, dry_run=True, include_valid=True)
    assert again["summary"]["scanned"] == 2
    assert again["summary"]["mismatches"] == 0


def test_limit_caps_scan(test_db_session, organization, events):
    report = MismatchDetector(test_db_session).detect(organization.id, limit=1, include_valid=True)

    assert report["summary"]["scanned"] == 1


def test_one_failing_event_does_not_abort_the_scan(test_db_session, organization, events, monkeypatch):
    detector = MismatchDetector(test_db_session)
    classify = detector.classify

    def flaky_classify(event):
        if event.event_id == "e-c":
            raise ValueError("corrupt event metadata")
        return classify(event)

    monkeypatch.setattr(detector, "classify", flaky_classify)

    report = detector.detect(organization.id, dry_run=False, include_valid=True)

    assert report["summary"]["scanned"] == 4
    assert report["summary"]["errors"] == 1
    assert report["summary"]["corrections_applied"] == 1
    assert report["errors"] == [{"event_id": "e-c", "error": "corrupt event metadata"}]
    assert {r["event_id"] for r in report["results"]} == {"e-b", "e-a", "e-u"}
    test_db_session.expire_all()
    assert test_db_session.query(ConversionEvent).filter_by(event_id="e-b").one().status == "misattributed"
    assert test_db_session.query(ConversionEvent).filter_by(event_id="e-c").one().status == "sent"
