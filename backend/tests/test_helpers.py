import datetime as dt
from decimal import Decimal

from voucher_portal.utils.helpers import add_months, end_of_day, extract_address, money, parse_iso_datetime
from voucher_portal.utils.sanitization import normalize_phone, safe_filename, sanitize_string
from voucher_portal.utils.templates import render


def test_parse_iso_datetime_lowercase_z():
    value = "2023-05-06T12:00:00z"
    result = parse_iso_datetime(value)
    assert result == dt.datetime(2023, 5, 6, 12, 0, 0, tzinfo=dt.timezone.utc)


def test_parse_iso_datetime_invalid_returns_none():
    assert parse_iso_datetime("not-a-date") is None


def test_add_months_clamps_day():
    assert add_months(dt.datetime(2024, 1, 31, 9, 30), 1) == dt.datetime(2024, 2, 29, 9, 30)
    assert add_months(dt.datetime(2025, 8, 31), 6) == dt.datetime(2026, 2, 28)
    assert add_months(dt.datetime(2025, 3, 15), -6) == dt.datetime(2024, 9, 15)


def test_end_of_day():
    assert end_of_day(dt.datetime(2025, 5, 1, 8, 0)) == dt.datetime(2025, 5, 1, 23, 59, 59, 999999)


def test_money_rounds_to_cents():
    assert money("10.005") == Decimal("10.01")
    assert money(None) == Decimal("0.00")


def test_extract_address():
    assert extract_address("Jane Doe <Jane.Doe@Example.com>") == "jane.doe@example.com"
    assert extract_address("  someone@example.com ") == "someone@example.com"
    assert extract_address(None) is None


def test_sanitize_string_escapes_markup():
    assert sanitize_string("  <b>Dr.\x00 Who</b> ") == "&lt;b&gt;Dr. Who&lt;/b&gt;"


def test_normalize_phone():
    assert normalize_phone("(410) 555-0100") == "410-555-0100"
    assert normalize_phone("+1 410 555 0100") == "410-555-0100"
    assert normalize_phone("ext 12") == "ext 12"


def test_safe_filename():
    assert safe_filename("../../etc/passwd") == "etcpasswd"
    assert safe_filename("...") == "document"


def test_render_fills_unknown_placeholders_with_blanks():
    subject, body = render("application_submitted", {"application_id": 7, "organization_name": "ATV"})
    assert subject == "We received your application #7"
    assert body.startswith("Hello ,")
    assert body.endswith("ATV")


def test_render_unknown_action_uses_generic_template():
    subject, body = render("something_new", {"organization_name": "ATV", "first_name": "Ann"})
    assert subject == "ATV notification"
    assert "something new" in body
