"""
Processor Export Parsing Tests (Unit)
=====================================

WHAT: CSV parsing, amount parsing and row → transaction mapping for the
processor's paid-contribution exports.
WHY: Export rows carry quoted commas, currency formatting and several
spellings of the same column; a bad parse drops or mis-keys donations.

REFERENCES:
- backend/donorlink/services/processor_export_client.py
- backend/donorlink/services/transaction_ingestor.py:map_row
"""

import hashlib
from datetime import datetime
from decimal import Decimal

from donorlink.services.processor_export_client import (
    normalize_header,
    parse_amount,
    parse_csv,
    summarize_rows,
)
from donorlink.services.transaction_ingestor import classify_source, hash_phone, map_row, parse_timestamp


CSV_BODY = (
    "\ufeffReceipt ID,Lineitem ID,Paid At,Amount,Fee,Donor First Name,Donor Last Name,"
    "Donor Email,Reference Code,Reference Code 2,Donor Occupation\n"
    'AB1,L1,2025-03-01 10:15:00,"$1,250.00",37.50,Ada,Lovelace,ADA@Example.com,meta_fall_2025,fb_abc,"Writer, Editor"\n'
    "AB2,L2,2025-03-01 11:00:00,25.00,,Grace,Hopper,grace@example.com,,,\n"
    ",,,,,,,,,,\n"
)


def test_normalize_header() -> None:
    assert normalize_header(" Donor First Name ") == "donor_first_name"
    assert normalize_header('"Reference Code 2"') == "reference_code_2"


def test_parse_csv_handles_quoted_commas_bom_and_blank_rows() -> None:
    rows = parse_csv(CSV_BODY)

    assert len(rows) == 2
    assert rows[0]["receipt_id"] == "AB1"
    assert rows[0]["amount"] == "$1,250.00"
    assert rows[0]["donor_occupation"] == "Writer, Editor"
    assert rows[1]["reference_code"] == ""


def test_parse_csv_empty_body() -> None:
    assert parse_csv("") == []
    assert parse_csv("   \n") == []


def test_parse_amount() -> None:
    assert parse_amount("$1,250.00") == Decimal("1250.00")
    assert parse_amount("25") == Decimal("25")
    assert parse_amount("") == Decimal("0")
    assert parse_amount("n/a") == Decimal("0")


def test_summarize_rows_counts_gross_amount() -> None:
    count, total = summarize_rows(parse_csv(CSV_BODY))

    assert count == 2
    assert total == Decimal("1275.00")


def test_map_row_builds_transaction_values() -> None:
    values = map_row(parse_csv(CSV_BODY)[0])

    assert values["transaction_id"] == "L1"
    assert values["transaction_date"] == datetime(2025, 3, 1, 10, 15)
    assert values["amount"] == Decimal("1250.00")
    assert values["fee"] == Decimal("37.50")
    assert values["net_amount"] == Decimal("1212.50")
    assert values["donor_email"] == "ada@example.com"
    assert values["donor_name"] == "Ada Lovelace"
    assert values["refcode"] == "meta_fall_2025"
    assert values["refcode2"] == "fb_abc"
    assert values["source_campaign"] == "meta"
    assert values["transaction_type"] == "donation"
    assert values["is_recurring"] is False


def test_map_row_falls_back_to_receipt_id_and_no_fee() -> None:
    values = map_row({"receipt_id": "R9", "date": "03/02/2025", "amount": "10"})

    assert values["transaction_id"] == "R9"
    assert values["transaction_date"] == datetime(2025, 3, 2)
    assert values["fee"] is None
    assert values["net_amount"] == Decimal("10")
    assert values["refcode"] is None


def test_map_row_detects_refunds_and_recurring() -> None:
    values = map_row({
        "lineitem_id": "L5",
        "paid_at": "2025-03-01T10:00:00Z",
        "amount": "5",
        "refund_id": "RF1",
        "refund_date": "2025-03-05",
        "recurring_total_months": "12",
    })

    assert values["transaction_type"] == "refund"
    assert values["is_recurring"] is True
    assert values["recurring_duration"] == 12


def test_map_row_skips_rows_without_id_or_date() -> None:
    assert map_row({"amount": "5", "paid_at": "2025-03-01 10:00:00"}) is None
    assert map_row({"lineitem_id": "L1", "paid_at": "not a date"}) is None


def test_parse_timestamp_converts_offsets_to_naive_utc() -> None:
    assert parse_timestamp("2025-03-01T10:00:00-0500") == datetime(2025, 3, 1, 15, 0)
    assert parse_timestamp("2025-03-01T10:00:00Z") == datetime(2025, 3, 1, 10, 0)
    assert parse_timestamp(None) is None


def test_hash_phone_normalizes_us_numbers() -> None:
    expected = hashlib.sha256(b"15551234567").hexdigest()

    assert hash_phone("(555) 123-4567") == expected
    assert hash_phone("+1 555 123 4567") == expected
    assert hash_phone("") is None


def test_classify_source() -> None:
    assert classify_source("meta_fall") == "meta"
    assert classify_source("FB_gala") == "meta"
    assert classify_source("sms_blast") == "sms"
    assert classify_source("newsletter") is None
    assert classify_source(None) is None
