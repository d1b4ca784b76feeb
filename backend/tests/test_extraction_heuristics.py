from datetime import date
from decimal import Decimal

import pytest

from claimflow.services.extraction.contracts import OcrBlock
from claimflow.services.extraction.heuristics import (
    extract_amounts,
    extract_invoice_data,
    format_abn,
    normalize_abn,
    parse_au_date,
    parse_to_cents,
    reconcile_amounts,
)

TODAY = date(2026, 10, 19)


def _lines(*texts, confidence=90.0):
    return [OcrBlock(block_type="LINE", text=text, confidence=confidence) for text in texts]


SAMPLE = _lines(
    "Sunrise Therapy Pty Ltd",
    "ABN: 51 824 753 556",
    "Tax Invoice #INV-2041",
    "Invoice Date: 03/10/2026",
    "Assistance with self-care 01_011_0107_1_1 2 hrs $65.47 $130.94",
    "Subtotal: $130.94",
    "GST: $0.00",
    "Total Due: $130.94",
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("$1,234.56", 123456),
        ("65.5", 6550),
        ("12.345", 1235),
        ("0.00", 0),
        ("abc", None),
        ("-5", None),
        ("", None),
    ],
)
def test_parse_to_cents(raw, expected):
    assert parse_to_cents(raw) == expected


@pytest.mark.parametrize(
    "text, expected",
    [
        ("03/10/2026", date(2026, 10, 3)),
        ("3-10-2026", date(2026, 10, 3)),
        ("Service on 3 March 2026", date(2026, 3, 3)),
        ("14 Sept 2026", date(2026, 9, 14)),
        ("2026-10-19", date(2026, 10, 19)),
        ("31/02/2026", None),
        ("05/13/2026", None),
        ("no date here", None),
    ],
)
def test_parse_au_date_is_day_first_and_strict(text, expected):
    assert parse_au_date(text) == expected


def test_invalid_day_first_date_falls_through_to_later_formats():
    assert parse_au_date("31/02/2026 or 2026-02-28") == date(2026, 2, 28)


def test_abn_helpers():
    assert normalize_abn("51 824 753 556") == "51824753556"
    assert format_abn("51824753556") == "51 824 753 556"
    assert format_abn("123") == "123"


def test_extract_amounts_skips_zero():
    assert extract_amounts("2 hrs $65.47 $0.00 $130.94") == [200, 6547, 13094]


def test_extracts_header_fields():
    data = extract_invoice_data(SAMPLE, today=TODAY)

    assert data.invoice_number == "INV-2041"
    assert data.invoice_date == date(2026, 10, 3)
    assert data.provider_abn == "51824753556"
    assert data.subtotal_cents == 13094
    assert data.gst_cents == 0
    assert data.total_cents == 13094
    assert data.confidence == 0.9


def test_extracts_ndis_line_items():
    data = extract_invoice_data(SAMPLE, today=TODAY)

    assert len(data.line_items) == 1
    item = data.line_items[0]
    assert item.support_item_code == "01_011_0107_1_1"
    assert item.category_code == "01"
    assert item.support_item_name == "Assistance with self-care"
    assert item.quantity == Decimal("2")
    assert item.unit_price_cents == 6547
    assert item.total_cents == 13094
    assert item.service_date == TODAY


def test_line_item_service_date_read_from_line():
    data = extract_invoice_data(
        _lines("Community access 04_104_0125_6_1 28/09/2026 1 hr $70.23 $70.23"),
        today=TODAY,
    )
    assert data.line_items[0].service_date == date(2026, 9, 28)


@pytest.mark.parametrize(
    "lines, expected",
    [
        (("GST: $10.00", "Total: $110.00"), (10000, 1000, 11000)),
        (("Tax Invoice #INV-77", "Total Due: $1250.00"), (125000, 0, 125000)),
        (("Subtotal: $100.00", "Total: $110.00"), (10000, 1000, 11000)),
        (("Subtotal ex GST: $100.00", "GST: $10.00", "Total inc GST: $110.00"), (10000, 1000, 11000)),
        (("Subtotal: $80.00",), (8000, 0, 8000)),
    ],
)
def test_amounts_always_add_up(lines, expected):
    data = extract_invoice_data(_lines(*lines), today=TODAY)

    assert (data.subtotal_cents, data.gst_cents, data.total_cents) == expected
    assert data.total_cents == data.subtotal_cents + data.gst_cents


@pytest.mark.parametrize(
    "found, expected",
    [
        ((None, None, None), (None, None, None)),
        ((None, None, 5000), (5000, 0, 5000)),
        ((None, 9000, 5000), (5000, 0, 5000)),
        ((4000, None, 5000), (4000, 1000, 5000)),
        ((4000, 300, 5000), (4700, 300, 5000)),
        ((4000, 300, None), (4000, 300, 4300)),
    ],
)
def test_reconcile_amounts(found, expected):
    assert reconcile_amounts(*found) == expected


def test_only_line_blocks_are_read():
    blocks = [
        OcrBlock(block_type="WORD", text="Invoice #WORD-1", confidence=99.0),
        OcrBlock(block_type="PAGE", text=None),
        *_lines("Invoice No: LINE-7", confidence=80.0),
    ]
    data = extract_invoice_data(blocks, today=TODAY)
    assert data.invoice_number == "LINE-7"
    assert data.confidence == 0.8


def test_missing_fields_are_none():
    data = extract_invoice_data(_lines("Thank you for your business"), today=TODAY)
    assert data.invoice_number is None
    assert data.total_cents is None
    assert data.line_items == []


def test_extraction_never_raises():
    data = extract_invoice_data(None, today=TODAY)
    assert data.invoice_number is None
    assert data.line_items == []
    assert data.confidence == 0.0


def test_block_aliases_match_ocr_wire_format():
    block = OcrBlock.model_validate({"blockType": "LINE", "text": "x", "confidence": 97.5, "geometry": {}})
    assert block.block_type == "LINE"
    assert block.confidence == 97.5
