# Overview: Double-entry accounting ledger; balanced postings, reversals, and reports.

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import case, func

from ..errors import InvalidState, NotFound, ValidationFailed
from ..extensions import db
from ..filters import DateRange
from ..models import ControlAccount, Customer, LedgerEntry, LedgerPosting, Supplier
from ..models.ledger import (
    ACCOUNT_CONTROL,
    ACCOUNT_CUSTOMER,
    ACCOUNT_SUPPLIER,
    ACCOUNT_TYPES,
    ENTRY_CREDIT,
    ENTRY_DEBIT,
)
from ..models.masters import NATURE_CREDIT, NATURE_DEBIT
from ..time_utils import normalize_datetime, to_utc_z, utcnow
from . import masters_service
"""
Accounting ledger invariants (authoritative)

- Every posting writes exactly one debit and one credit entry of the same
  positive amount, in the caller's transaction. Entries are append-only.
- Corrections are reversal postings (debit and credit swapped) that point at
  the posting they offset; a posting is reversed at most once.
- Party balances follow account nature: customers and debit-natured control
  accounts are debits minus credits, suppliers and credit-natured control
  accounts are credits minus debits.
- As-of filters are inclusive: occurred_at <= as_of.
"""


@dataclass(frozen=True)
class AccountRef:
    account_type: str
    account_id: int

    @classmethod
    def customer(cls, customer_id: int) -> "AccountRef":
        return cls(ACCOUNT_CUSTOMER, customer_id)

    @classmethod
    def supplier(cls, supplier_id: int) -> "AccountRef":
        return cls(ACCOUNT_SUPPLIER, supplier_id)

    @classmethod
    def control(cls, code: str) -> "AccountRef":
        return cls(ACCOUNT_CONTROL, masters_service.get_control_account(code).id)

    def to_dict(self) -> dict:
        return {"account_type": self.account_type, "account_id": self.account_id}


_ACCOUNT_MODELS = {
    ACCOUNT_CUSTOMER: Customer,
    ACCOUNT_SUPPLIER: Supplier,
    ACCOUNT_CONTROL: ControlAccount,
}


def _resolve_account(ref: AccountRef):
    if ref.account_type not in ACCOUNT_TYPES:
        raise ValidationFailed(
            "Invalid account",
            errors=[f"account_type must be one of {', '.join(ACCOUNT_TYPES)}"],
        )
    model = _ACCOUNT_MODELS[ref.account_type]
    record = db.session.get(model, ref.account_id)
    if record is None:
        raise NotFound(model.__name__, ref.account_id)
    return record


def account_nature(ref: AccountRef) -> str:
    if ref.account_type == ACCOUNT_CUSTOMER:
        return NATURE_DEBIT
    if ref.account_type == ACCOUNT_SUPPLIER:
        return NATURE_CREDIT
    return _resolve_account(ref).nature


def account_name(ref: AccountRef) -> str:
    record = _resolve_account(ref)
    return record.name


# =============================================================================
# POSTING
# =============================================================================

def post_double_entry(
    *,
    debit_account: AccountRef,
    credit_account: AccountRef,
    amount_cents: int,
    reference_type: str,
    reference_id: int,
    description: str | None = None,
    occurred_at: datetime | None = None,
    actor_id: int | None = None,
    is_reversal: bool | None = None,
    reverses_posting_id: int | None = None,
) -> LedgerPosting:
    """
    Write one balanced debit/credit pair under a posting header.

    is_reversal defaults to whether reverses_posting_id is set; return
    invoices pass True for their forward-written mirror postings.
    Runs in the caller's transaction; nothing is committed here.
    """
    errors = []
    if not isinstance(amount_cents, int) or isinstance(amount_cents, bool) or amount_cents <= 0:
        errors.append("amount_cents must be a positive integer")
    if debit_account == credit_account:
        errors.append("debit and credit accounts must differ")
    if not reference_type or reference_id is None:
        errors.append("reference_type and reference_id are required")
    if errors:
        raise ValidationFailed("Invalid ledger posting", errors=errors)

    _resolve_account(debit_account)
    _resolve_account(credit_account)

    if is_reversal is None:
        is_reversal = reverses_posting_id is not None
    occurred = normalize_datetime(occurred_at) or utcnow()
    description = description[:255] if description else None
    posting = LedgerPosting(
        reference_type=reference_type,
        reference_id=reference_id,
        amount_cents=amount_cents,
        description=description,
        is_reversal=is_reversal,
        reverses_posting_id=reverses_posting_id,
        created_by_user_id=actor_id,
        occurred_at=occurred,
    )
    db.session.add(posting)
    for ref, side in ((debit_account, ENTRY_DEBIT), (credit_account, ENTRY_CREDIT)):
        posting.entries.append(
            LedgerEntry(
                account_type=ref.account_type,
                account_id=ref.account_id,
                transaction_type=side,
                amount_cents=amount_cents,
                reference_type=reference_type,
                reference_id=reference_id,
                description=description,
                occurred_at=occurred,
            )
        )
    db.session.flush()
    return posting


def _entry_account(entry: LedgerEntry) -> AccountRef:
    return AccountRef(entry.account_type, entry.account_id)


def reverse_posting(
    posting: LedgerPosting,
    *,
    description: str | None = None,
    occurred_at: datetime | None = None,
    actor_id: int | None = None,
) -> LedgerPosting:
    """Offset a posting with the same amount and the debit/credit sides swapped."""
    if posting.reverses_posting_id is not None:
        raise InvalidState(f"Posting {posting.id} is itself a reversal")
    already = (
        db.session.query(LedgerPosting.id)
        .filter(LedgerPosting.reverses_posting_id == posting.id)
        .first()
    )
    if already is not None:
        raise InvalidState(f"Posting {posting.id} has already been reversed")

    debit = next(e for e in posting.entries if e.transaction_type == ENTRY_DEBIT)
    credit = next(e for e in posting.entries if e.transaction_type == ENTRY_CREDIT)
    return post_double_entry(
        debit_account=_entry_account(credit),
        credit_account=_entry_account(debit),
        amount_cents=posting.amount_cents,
        reference_type=posting.reference_type,
        reference_id=posting.reference_id,
        description=description or f"Reversal of posting {posting.id}",
        occurred_at=occurred_at,
        actor_id=actor_id,
        reverses_posting_id=posting.id,
    )


# =============================================================================
# READS
# =============================================================================

def postings_for_reference(reference_type: str, reference_id: int) -> list[LedgerPosting]:
    return (
        db.session.query(LedgerPosting)
        .filter(
            LedgerPosting.reference_type == reference_type,
            LedgerPosting.reference_id == reference_id,
        )
        .order_by(LedgerPosting.id.asc())
        .all()
    )


def open_postings_for_reference(reference_type: str, reference_id: int) -> list[LedgerPosting]:
    """Original postings for a reference that have not been reversed yet."""
    postings = postings_for_reference(reference_type, reference_id)
    reversed_ids = {p.reverses_posting_id for p in postings if p.reverses_posting_id}
    return [p for p in postings if p.reverses_posting_id is None and p.id not in reversed_ids]


def _signed_amount(nature: str):
    if nature == NATURE_DEBIT:
        return case(
            (LedgerEntry.transaction_type == ENTRY_DEBIT, LedgerEntry.amount_cents),
            else_=-LedgerEntry.amount_cents,
        )
    return case(
        (LedgerEntry.transaction_type == ENTRY_CREDIT, LedgerEntry.amount_cents),
        else_=-LedgerEntry.amount_cents,
    )


def _account_filter(query, ref: AccountRef):
    return query.filter(
        LedgerEntry.account_type == ref.account_type,
        LedgerEntry.account_id == ref.account_id,
    )


def balance_as_of(account: AccountRef, as_of: datetime | None = None) -> int:
    """Balance in the account's natural direction, inclusive of as_of."""
    nature = account_nature(account)
    q = _account_filter(
        db.session.query(func.coalesce(func.sum(_signed_amount(nature)), 0)), account
    )
    if as_of is not None:
        q = q.filter(LedgerEntry.occurred_at <= normalize_datetime(as_of))
    return int(q.scalar() or 0)


def entries_for_account(account: AccountRef, date_range: DateRange | None = None) -> list[LedgerEntry]:
    q = _account_filter(db.session.query(LedgerEntry), account)
    if date_range is not None:
        q = date_range.apply(q, LedgerEntry.occurred_at)
    return q.order_by(LedgerEntry.occurred_at.asc(), LedgerEntry.id.asc()).all()


def account_statement(account: AccountRef, date_range: DateRange) -> dict:
    """
    Opening balance, entries with running balance, and closing balance.

    The opening balance covers everything strictly before date_range.start.
    """
    nature = account_nature(account)
    opening = 0
    if date_range.start is not None:
        q = _account_filter(
            db.session.query(func.coalesce(func.sum(_signed_amount(nature)), 0)), account
        ).filter(LedgerEntry.occurred_at < date_range.start)
        opening = int(q.scalar() or 0)

    running = opening
    total_debit = total_credit = 0
    lines = []
    for entry in entries_for_account(account, date_range):
        is_debit = entry.transaction_type == ENTRY_DEBIT
        if is_debit:
            total_debit += entry.amount_cents
        else:
            total_credit += entry.amount_cents
        natural = is_debit == (nature == NATURE_DEBIT)
        running += entry.amount_cents if natural else -entry.amount_cents
        row = entry.to_dict()
        row["running_balance_cents"] = running
        lines.append(row)

    return {
        "account": account.to_dict(),
        "account_name": account_name(account),
        "nature": nature,
        "from": to_utc_z(date_range.start),
        "to": to_utc_z(date_range.end),
        "opening_balance_cents": opening,
        "total_debit_cents": total_debit,
        "total_credit_cents": total_credit,
        "closing_balance_cents": running,
        "entries": lines,
    }


def trial_balance(as_of: datetime | None = None) -> dict:
    """Per-account debit and credit totals; the two grand totals always agree."""
    debit_sum = func.sum(case((LedgerEntry.transaction_type == ENTRY_DEBIT, LedgerEntry.amount_cents), else_=0))
    credit_sum = func.sum(case((LedgerEntry.transaction_type == ENTRY_CREDIT, LedgerEntry.amount_cents), else_=0))
    q = db.session.query(LedgerEntry.account_type, LedgerEntry.account_id, debit_sum, credit_sum)
    if as_of is not None:
        q = q.filter(LedgerEntry.occurred_at <= normalize_datetime(as_of))
    rows = q.group_by(LedgerEntry.account_type, LedgerEntry.account_id).order_by(
        LedgerEntry.account_type.asc(), LedgerEntry.account_id.asc()
    ).all()

    accounts = []
    total_debit = total_credit = 0
    for account_type, account_id, debits, credits in rows:
        debits, credits = int(debits or 0), int(credits or 0)
        total_debit += debits
        total_credit += credits
        accounts.append(
            {
                "account_type": account_type,
                "account_id": account_id,
                "debit_cents": debits,
                "credit_cents": credits,
                "net_cents": debits - credits,
            }
        )
    return {
        "as_of": to_utc_z(normalize_datetime(as_of)),
        "accounts": accounts,
        "total_debit_cents": total_debit,
        "total_credit_cents": total_credit,
        "is_balanced": total_debit == total_credit,
    }


def unbalanced_references() -> list[dict]:
    """References whose debits and credits disagree. Always empty unless rows were tampered with."""
    debit_sum = func.sum(case((LedgerEntry.transaction_type == ENTRY_DEBIT, LedgerEntry.amount_cents), else_=0))
    credit_sum = func.sum(case((LedgerEntry.transaction_type == ENTRY_CREDIT, LedgerEntry.amount_cents), else_=0))
    rows = (
        db.session.query(LedgerEntry.reference_type, LedgerEntry.reference_id, debit_sum, credit_sum)
        .group_by(LedgerEntry.reference_type, LedgerEntry.reference_id)
        .having(debit_sum != credit_sum)
        .all()
    )
    return [
        {
            "reference_type": reference_type,
            "reference_id": reference_id,
            "debit_cents": int(debits or 0),
            "credit_cents": int(credits or 0),
        }
        for reference_type, reference_id, debits, credits in rows
    ]
