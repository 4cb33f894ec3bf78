from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


ACCOUNT_CUSTOMER = "customer"
ACCOUNT_SUPPLIER = "supplier"
ACCOUNT_CONTROL = "control"
ACCOUNT_TYPES = (ACCOUNT_CUSTOMER, ACCOUNT_SUPPLIER, ACCOUNT_CONTROL)

ENTRY_DEBIT = "debit"
ENTRY_CREDIT = "credit"

REFERENCE_INVOICE = "invoice"
REFERENCE_PAYMENT = "payment"


class LedgerPosting(db.Model):
    """
    Header grouping one balanced debit/credit entry pair.

    A reversal is a new posting whose `reverses_posting_id` names the posting it
    offsets; the unique constraint keeps a posting from being reversed twice.
    """
    __tablename__ = "ledger_postings"
    __table_args__ = (
        db.Index("ix_ledger_postings_reference", "reference_type", "reference_id"),
        db.UniqueConstraint("reverses_posting_id", name="uq_ledger_postings_reverses_posting_id"),
        db.CheckConstraint("amount_cents > 0", name="amount_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    reference_type = db.Column(db.String(32), nullable=False)
    reference_id = db.Column(db.Integer, nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)
    description = db.Column(db.String(255), nullable=True)

    is_reversal = db.Column(db.Boolean, nullable=False, default=False)
    reverses_posting_id = db.Column(db.Integer, db.ForeignKey("ledger_postings.id"), nullable=True)

    created_by_user_id = db.Column(db.Integer, nullable=True)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    entries = db.relationship("LedgerEntry", back_populates="posting", order_by="LedgerEntry.id")

    def __repr__(self) -> str:
        return f"<LedgerPosting id={self.id} ref={self.reference_type}:{self.reference_id} amount={self.amount_cents}>"

    def to_dict(self, include_entries: bool = False) -> dict:
        data = {
            "id": self.id,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "amount_cents": self.amount_cents,
            "description": self.description,
            "is_reversal": self.is_reversal,
            "reverses_posting_id": self.reverses_posting_id,
            "created_by_user_id": self.created_by_user_id,
            "occurred_at": to_utc_z(self.occurred_at),
            "created_at": to_utc_z(self.created_at),
        }
        if include_entries:
            data["entries"] = [entry.to_dict() for entry in self.entries]
        return data


class LedgerEntry(db.Model):
    """One side of a posting against a party or control account."""
    __tablename__ = "ledger_entries"
    __table_args__ = (
        db.Index("ix_ledger_entries_account_occurred", "account_type", "account_id", "occurred_at"),
        db.Index("ix_ledger_entries_reference", "reference_type", "reference_id"),
        db.CheckConstraint("amount_cents >= 0", name="amount_non_negative"),
        db.CheckConstraint("transaction_type IN ('debit', 'credit')", name="transaction_type_valid"),
        db.CheckConstraint(
            "account_type IN ('customer', 'supplier', 'control')", name="account_type_valid"
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    posting_id = db.Column(db.Integer, db.ForeignKey("ledger_postings.id"), nullable=False, index=True)

    account_type = db.Column(db.String(16), nullable=False)
    account_id = db.Column(db.Integer, nullable=False)
    transaction_type = db.Column(db.String(8), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)

    # Denormalized from the posting for statement and reference queries
    reference_type = db.Column(db.String(32), nullable=False)
    reference_id = db.Column(db.Integer, nullable=False)
    description = db.Column(db.String(255), nullable=True)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    posting = db.relationship("LedgerPosting", back_populates="entries")

    def __repr__(self) -> str:
        return (
            f"<LedgerEntry id={self.id} {self.account_type}:{self.account_id} "
            f"{self.transaction_type} {self.amount_cents}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "posting_id": self.posting_id,
            "account_type": self.account_type,
            "account_id": self.account_id,
            "transaction_type": self.transaction_type,
            "amount_cents": self.amount_cents,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "description": self.description,
            "occurred_at": to_utc_z(self.occurred_at),
            "created_at": to_utc_z(self.created_at),
        }
