"""
Field extraction from OCR text lines of Australian NDIS provider invoices.

Only LINE blocks are read. Amounts are parsed with Decimal into integer cents.
Fields that cannot be found are left as None for the reviewer to fill in.
Extraction never raises: a partial result beats a failed intake.
"""

import logging
import re
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, Optional

from claimflow.services.extraction.contracts import ExtractedInvoiceData, ExtractedLineItem, OcrBlock

logger = logging.getLogger(__name__)

NDIS_CODE_RE = re.compile(r"\b(\d{2}_\d{3}_\d{4}_\d_\d)\b")
ABN_RE = re.compile(r"\b(?:abn|australian\s+business\s+number)\s*:?\s*(\d{2}\s*\d{3}\s*\d{3}\s*\d{3})\b", re.I)
AMOUNT_RE = re.compile(r"\$?\s*([\d,]+(?:\.\d{1,2})?)")

INVOICE_NUMBER_RE = re.compile(
    r"(?:invoice\s*(?:#|no\.?|num(?:ber)?)\s*:?\s*|inv[-#]\s*)([A-Z0-9][-A-Z0-9/]{1,30})",
    re.I,
)
DATE_LABEL_RE = re.compile(
    r"(?:invoice\s+date|date\s+of\s+(?:invoice|tax\s+invoice)|tax\s+invoice\s+date|date)\s*:?\s*",
    re.I,
)
TOTAL_RE = re.compile(
    r"\b(?:total(?:\s+(?:due|payable|amount|inc\.?\s*gst|gst))?|amount\s+(?:due|payable))"
    r"\s*:?\s*\$?\s*([\d,]+(?:\.\d{1,2})?)",
    re.I,
)
GST_RE = re.compile(
    r"(?<!inc\s)(?<!inc\.\s)(?<!incl\s)(?<!ex\s)(?<!ex\.\s)(?<!before\s)"
    r"\bgst(?:\s+(?:amount|charged|component|inclusive|included))?\s*:?\s*\$?\s*([\d,]+(?:\.\d{1,2})?)",
    re.I,
)
SUBTOTAL_RE = re.compile(
    r"\bsub[\s-]?total(?:\s+(?:ex\.?\s*gst|before\s+gst|ex\s+tax))?\s*:?\s*\$?\s*([\d,]+(?:\.\d{1,2})?)",
    re.I,
)
QUANTITY_RE = re.compile(r"\b(\d+(?:\.\d+)?)\s*(?:hr|hrs|hours?|ea|each|unit|units|x\b)", re.I)
ITEM_NAME_RE = re.compile(r"^([A-Za-z][A-Za-z\s/\-&,.]{2,80})")

DMY_RE = re.compile(r"\b(\d{1,2})[/\-.](\d{1,2})[/\-.](\d{4})\b")
NAMED_MONTH_RE = re.compile(r"\b(\d{1,2})\s+(jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)[a-z]*\s+(\d{4})\b", re.I)
ISO_DATE_RE = re.compile(r"\b(\d{4})-(\d{2})-(\d{2})\b")

MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}

MAX_QUANTITY = Decimal("10000")


def parse_to_cents(value: str) -> Optional[int]:
    cleaned = re.sub(r"[$,\s]", "", value or "")
    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        return None
    if not amount.is_finite() or amount < 0:
        return None
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _safe_date(year: int, month: int, day: int) -> Optional[date]:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def parse_au_date(text: str) -> Optional[date]:
    """Day-first dates, then "3 March 2026", then ISO."""
    match = DMY_RE.search(text)
    if match:
        parsed = _safe_date(int(match.group(3)), int(match.group(2)), int(match.group(1)))
        if parsed:
            return parsed

    match = NAMED_MONTH_RE.search(text)
    if match:
        month = MONTHS.get(match.group(2).lower()[:3])
        parsed = _safe_date(int(match.group(3)), month, int(match.group(1))) if month else None
        if parsed:
            return parsed

    match = ISO_DATE_RE.search(text)
    if match:
        return _safe_date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
    return None


def normalize_abn(raw: str) -> str:
    return re.sub(r"\s", "", raw or "")


def format_abn(abn: str) -> str:
    """11 digits as printed on invoices: ``12 345 678 901``."""
    digits = normalize_abn(abn)
    if len(digits) != 11:
        return digits
    return f"{digits[:2]} {digits[2:5]} {digits[5:8]} {digits[8:]}"


def extract_amounts(text: str) -> list[int]:
    amounts = []
    for match in AMOUNT_RE.finditer(text):
        cents = parse_to_cents(match.group(1))
        if cents is not None and cents > 0:
            amounts.append(cents)
    return amounts


def _confidence(blocks: list[OcrBlock]) -> float:
    scores = [Decimal(str(block.confidence)) / 100 for block in blocks if block.confidence is not None]
    if not scores:
        return 0.0
    mean = sum(scores) / len(scores)
    return float(mean.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def _invoice_date(lines: list[str], full_text: str) -> Optional[date]:
    for line in lines:
        if DATE_LABEL_RE.search(line):
            found = parse_au_date(DATE_LABEL_RE.sub("", line)) or parse_au_date(line)
            if found:
                return found
    return parse_au_date(full_text)


def _line_item(line: str, today: date) -> Optional[ExtractedLineItem]:
    code_match = NDIS_CODE_RE.search(line)
    if not code_match:
        return None
    code = code_match.group(1)
    rest = NDIS_CODE_RE.sub("", line, count=1).strip()

    amounts = extract_amounts(rest)
    if not amounts:
        return None
    # Last amount is the line total; the one before it is the unit price.
    total = amounts[-1]
    unit_price = amounts[-2] if len(amounts) >= 2 else amounts[-1]

    quantity = Decimal("1")
    qty_match = QUANTITY_RE.search(rest)
    if qty_match:
        candidate = Decimal(qty_match.group(1))
        if 0 < candidate < MAX_QUANTITY:
            quantity = candidate

    before_code = line[: code_match.start()].strip()
    name_match = ITEM_NAME_RE.match(before_code or rest)
    name = name_match.group(1).strip() if name_match else code

    return ExtractedLineItem(
        support_item_code=code,
        support_item_name=name,
        category_code=code[:2],
        service_date=parse_au_date(line) or today,
        quantity=quantity,
        unit_price_cents=unit_price,
        total_cents=total,
        gst_cents=0,
    )


def reconcile_amounts(
    subtotal_cents: Optional[int], gst_cents: Optional[int], total_cents: Optional[int]
) -> tuple[Optional[int], Optional[int], Optional[int]]:
    """Fill in whichever of subtotal, GST and total is missing so that total = subtotal + gst.

    Most NDIS supports are GST-free, so a missing GST line reads as zero GST.
    The printed total wins over a subtotal or GST figure that does not add up.
    """
    if total_cents is None:
        if subtotal_cents is None:
            return None, None, None
        gst_cents = gst_cents or 0
        return subtotal_cents, gst_cents, subtotal_cents + gst_cents

    if gst_cents is not None and 0 <= gst_cents <= total_cents:
        return total_cents - gst_cents, gst_cents, total_cents
    if subtotal_cents is not None and 0 <= subtotal_cents <= total_cents:
        return subtotal_cents, total_cents - subtotal_cents, total_cents
    return total_cents, 0, total_cents


def extract_invoice_data(blocks: Iterable[OcrBlock], *, today: Optional[date] = None) -> ExtractedInvoiceData:
    today = today or date.today()
    try:
        line_blocks = [block for block in blocks if block.block_type == "LINE" and block.text]
        lines = [block.text for block in line_blocks]
        full_text = "\n".join(lines)

        invoice_number = None
        match = INVOICE_NUMBER_RE.search(full_text)
        if match:
            invoice_number = match.group(1).strip()

        total_cents = None
        totals = TOTAL_RE.findall(full_text)
        if totals:
            total_cents = parse_to_cents(totals[-1])

        gst_cents = None
        match = GST_RE.search(full_text)
        if match:
            gst_cents = parse_to_cents(match.group(1))

        subtotal_cents = None
        match = SUBTOTAL_RE.search(full_text)
        if match:
            subtotal_cents = parse_to_cents(match.group(1))
        subtotal_cents, gst_cents, total_cents = reconcile_amounts(subtotal_cents, gst_cents, total_cents)

        provider_abn = None
        match = ABN_RE.search(full_text)
        if match:
            provider_abn = normalize_abn(match.group(1))

        line_items = []
        for line in lines:
            item = _line_item(line, today)
            if item is not None:
                line_items.append(item)

        return ExtractedInvoiceData(
            invoice_number=invoice_number,
            invoice_date=_invoice_date(lines, full_text),
            subtotal_cents=subtotal_cents,
            gst_cents=gst_cents,
            total_cents=total_cents,
            provider_abn=provider_abn,
            line_items=line_items,
            confidence=_confidence(line_blocks),
        )
    except Exception:
        logger.exception("Invoice field extraction failed; returning empty result")
        return ExtractedInvoiceData()
