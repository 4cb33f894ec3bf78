# Overview: Query filter value objects shared by services and routes.

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Mapping, Optional

from .errors import ValidationFailed
from .models.invoices import INVOICE_TYPES, PAYMENT_PAID, PAYMENT_PARTIAL, PAYMENT_PENDING
from .models.invoices import STATUS_CANCELLED, STATUS_CONFIRMED, STATUS_DRAFT, STATUS_PAID
from .time_utils import end_of_day, parse_iso_datetime, utcnow

INVOICE_STATUSES = (STATUS_DRAFT, STATUS_CONFIRMED, STATUS_PAID, STATUS_CANCELLED)
PAYMENT_STATUSES = (PAYMENT_PENDING, PAYMENT_PARTIAL, PAYMENT_PAID)

MAX_PAGE_SIZE = 500


@dataclass(frozen=True)
class DateRange:
    """Inclusive on both ends; either bound may be open."""

    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def __post_init__(self):
        if self.start and self.end and self.start > self.end:
            raise ValidationFailed("Invalid date range", errors=["start must not be after end"])

    def apply(self, query, column):
        if self.start is not None:
            query = query.filter(column >= self.start)
        if self.end is not None:
            query = query.filter(column <= self.end)
        return query

    @classmethod
    def from_args(cls, args: Mapping, start_key: str = "from", end_key: str = "to") -> "DateRange":
        raw_end = args.get(end_key)
        try:
            end = parse_iso_datetime(raw_end)
            # A bare date as the upper bound covers that whole day
            if end is not None and len(raw_end.strip()) == 10:
                end = end_of_day(end)
            return cls(start=parse_iso_datetime(args.get(start_key)), end=end)
        except ValueError as exc:
            raise ValidationFailed("Invalid date range", errors=[str(exc)]) from exc


def _optional_int(args: Mapping, key: str, errors: list[str]) -> Optional[int]:
    raw = args.get(key)
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        errors.append(f"{key} must be an integer")
        return None


@dataclass(frozen=True)
class InvoiceFilter:
    invoice_type: Optional[str] = None
    status: Optional[str] = None
    payment_status: Optional[str] = None
    customer_id: Optional[int] = None
    supplier_id: Optional[int] = None
    original_invoice_id: Optional[int] = None
    invoice_number: Optional[str] = None
    date_range: DateRange = field(default_factory=DateRange)
    overdue: bool = False
    limit: int = 100
    offset: int = 0

    @classmethod
    def from_args(cls, args: Mapping) -> "InvoiceFilter":
        errors: list[str] = []
        invoice_type = args.get("invoice_type") or None
        if invoice_type and invoice_type not in INVOICE_TYPES:
            errors.append(f"invoice_type must be one of {', '.join(INVOICE_TYPES)}")
        status = args.get("status") or None
        if status and status not in INVOICE_STATUSES:
            errors.append(f"status must be one of {', '.join(INVOICE_STATUSES)}")
        payment_status = args.get("payment_status") or None
        if payment_status and payment_status not in PAYMENT_STATUSES:
            errors.append(f"payment_status must be one of {', '.join(PAYMENT_STATUSES)}")

        customer_id = _optional_int(args, "customer_id", errors)
        supplier_id = _optional_int(args, "supplier_id", errors)
        original_invoice_id = _optional_int(args, "original_invoice_id", errors)
        limit = _optional_int(args, "limit", errors)
        offset = _optional_int(args, "offset", errors)
        if errors:
            raise ValidationFailed("Invalid invoice filter", errors=errors)

        return cls(
            invoice_type=invoice_type,
            status=status,
            payment_status=payment_status,
            customer_id=customer_id,
            supplier_id=supplier_id,
            original_invoice_id=original_invoice_id,
            invoice_number=args.get("invoice_number") or None,
            date_range=DateRange.from_args(args),
            overdue=str(args.get("overdue", "")).lower() in ("1", "true", "yes"),
            limit=limit if limit is not None else 100,
            offset=offset if offset is not None else 0,
        )

    def apply(self, query, model):
        if self.invoice_type:
            query = query.filter(model.invoice_type == self.invoice_type)
        if self.status:
            query = query.filter(model.status == self.status)
        if self.payment_status:
            query = query.filter(model.payment_status == self.payment_status)
        if self.customer_id is not None:
            query = query.filter(model.customer_id == self.customer_id)
        if self.supplier_id is not None:
            query = query.filter(model.supplier_id == self.supplier_id)
        if self.original_invoice_id is not None:
            query = query.filter(model.original_invoice_id == self.original_invoice_id)
        if self.invoice_number:
            query = query.filter(model.invoice_number == self.invoice_number)
        if self.overdue:
            # Confirmed with money still owed past the due date
            query = query.filter(model.status == STATUS_CONFIRMED, model.due_date < utcnow())
        return self.date_range.apply(query, model.invoice_date)

    @property
    def page(self) -> tuple[int, int]:
        limit = min(max(self.limit, 1), MAX_PAGE_SIZE)
        return limit, max(self.offset, 0)
