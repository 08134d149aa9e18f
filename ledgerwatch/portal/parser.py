"""Raw statement row → :class:`MutationRecord` conversion.

:class:`MutationParser` owns the field-level rules for the statement table:

* **Dates** are ``DD/MM/YY`` or ``DD/MM/YYYY``.  Two-digit years below 50
  land in the 2000s, the rest in the 1900s.
* **Amounts** may carry ``.`` or ``,`` grouping separators.  A final
  separator followed by one or two digits marks the decimal part, so
  ``"1,500,000.00"``, ``"1.500.000,00"`` and ``"1500000"`` all read as
  1 500 000.
* **Types** ``DB``/``DEBIT`` are debits and ``CR``/``CREDIT`` credits,
  case-insensitively.

Per-row failures raise :class:`~ledgerwatch.core.exceptions.RecordParseError`
from :meth:`MutationParser.parse`; :meth:`MutationParser.parse_all` absorbs
them, so one malformed row never fails a batch.

Typical usage::

    parser = MutationParser()
    records = parser.parse_all(raw_rows)
"""

from __future__ import annotations

import datetime as dt
import logging
import re
from collections.abc import Sequence
from decimal import Decimal, InvalidOperation
from typing import Final

from ledgerwatch.core import events
from ledgerwatch.core.exceptions import RecordParseError
from ledgerwatch.core.models import MutationRecord, RawMutation, TransactionType

__all__ = ["MutationParser", "parse_amount", "parse_date", "parse_type"]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Field rules
# ---------------------------------------------------------------------------

_REQUIRED_FIELDS: Final[tuple[str, ...]] = ("date", "description", "amount", "type", "balance")

# Optional sign, then digits with optional "." / "," separators.
_AMOUNT_RE: re.Pattern[str] = re.compile(r"([+-]?)(\d[\d.,]*)")

# Trailing separator with one or two digits after it = decimal part.
_DECIMAL_TAIL_RE: re.Pattern[str] = re.compile(r"[.,](\d{1,2})$")

_TWO_DIGIT_YEAR_PIVOT: Final[int] = 50

_TYPE_MAP: Final[dict[str, TransactionType]] = {
    "DB": TransactionType.DEBIT,
    "DEBIT": TransactionType.DEBIT,
    "CR": TransactionType.CREDIT,
    "CREDIT": TransactionType.CREDIT,
}


def parse_date(value: str) -> dt.date:
    """Parse ``DD/MM/YY`` or ``DD/MM/YYYY``.

    Raises:
        RecordParseError: ``"Invalid date format: ..."`` for the wrong shape,
            ``"Invalid date: ..."`` for an impossible calendar date.
    """
    parts = value.strip().split("/")
    if len(parts) != 3 or not all(p.strip().isdigit() for p in parts):
        raise RecordParseError(f"Invalid date format: {value}")

    day, month, year = (int(p) for p in parts)
    if year < 100:
        year += 2000 if year < _TWO_DIGIT_YEAR_PIVOT else 1900

    try:
        return dt.date(year, month, day)
    except ValueError as exc:
        raise RecordParseError(f"Invalid date: {value}") from exc


def parse_amount(value: str) -> Decimal:
    """Parse a possibly grouped amount into a :class:`Decimal`.

    Examples::

        parse_amount("1,500,000.00")  # → Decimal("1500000.00")
        parse_amount("1.500.000,5")   # → Decimal("1500000.5")
        parse_amount("250.000")       # → Decimal("250000")

    Raises:
        RecordParseError: ``"Invalid amount: ..."``.
    """
    compact = re.sub(r"\s+", "", value)
    match = _AMOUNT_RE.fullmatch(compact)
    if match is None:
        raise RecordParseError(f"Invalid amount: {value}")

    sign, body = match.groups()
    fraction = ""
    tail = _DECIMAL_TAIL_RE.search(body)
    if tail is not None:
        fraction = tail.group(1)
        body = body[: tail.start()]

    digits = body.replace(".", "").replace(",", "")
    if not digits.isdigit():
        raise RecordParseError(f"Invalid amount: {value}")

    try:
        return Decimal(f"{sign}{digits}.{fraction}" if fraction else f"{sign}{digits}")
    except InvalidOperation as exc:  # pragma: no cover
        raise RecordParseError(f"Invalid amount: {value}") from exc


def parse_type(value: str) -> TransactionType:
    """Map ``DB``/``DEBIT``/``CR``/``CREDIT`` to a :class:`TransactionType`.

    Raises:
        RecordParseError: ``"Invalid transaction type: ..."``.
    """
    try:
        return _TYPE_MAP[value.strip().upper()]
    except KeyError:
        raise RecordParseError(f"Invalid transaction type: {value}") from None


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


class MutationParser:
    """Convert scraped statement rows into :class:`MutationRecord` values."""

    def parse(self, raw: RawMutation) -> MutationRecord:
        """Convert one row.

        Raises:
            RecordParseError: A field is missing or malformed.  ``raw`` is
                attached to the exception.
        """
        try:
            if any(not getattr(raw, name).strip() for name in _REQUIRED_FIELDS):
                raise RecordParseError("Missing required fields in raw mutation data")

            return MutationRecord(
                date=parse_date(raw.date),
                description=raw.description.strip(),
                amount=parse_amount(raw.amount),
                type=parse_type(raw.type),
                balance=parse_amount(raw.balance),
            )
        except RecordParseError as exc:
            exc.raw = raw
            logger.debug("Failed to parse mutation row: %s", exc)
            raise

    def parse_all(self, raws: Sequence[RawMutation]) -> list[MutationRecord]:
        """Convert every parseable row; skip, count and log the rest."""
        parsed: list[MutationRecord] = []
        failed = 0
        for raw in raws:
            try:
                parsed.append(self.parse(raw))
            except RecordParseError as exc:
                failed += 1
                logger.warning("Skipping unparseable mutation row: %s", exc)

        logger.info(
            "Mutation parsing completed: total=%d success=%d failed=%d",
            len(raws),
            len(parsed),
            failed,
            extra={
                "event": events.RECORDS_PARSED,
                "total": len(raws),
                "success": len(parsed),
                "failed": failed,
            },
        )
        return parsed
