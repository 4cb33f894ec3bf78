# Overview: Flask API routes for the accounting ledger; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify

from ..errors import ValidationFailed
from ..filters import DateRange
from ..models.ledger import ACCOUNT_CONTROL, ACCOUNT_TYPES
from ..services import accounting_service
from ..services.accounting_service import AccountRef
from ..time_utils import parse_iso_datetime, to_utc_z

"""
Accounts are addressed as /<account_type>/<account_id> where account_type is
customer, supplier, or control. Control accounts may also be addressed by
code (INVENTORY, SALES, CASH) in place of the id.

Time semantics:
- as_of filtering is inclusive: occurred_at <= as_of.
"""

ledger_bp = Blueprint("ledger", __name__, url_prefix="/api/ledger")


def _account(account_type: str, account_key: str) -> AccountRef:
    if account_type not in ACCOUNT_TYPES:
        raise ValidationFailed("Invalid account", errors=[f"account_type must be one of {', '.join(ACCOUNT_TYPES)}"])
    if account_key.isdigit():
        return AccountRef(account_type, int(account_key))
    if account_type == ACCOUNT_CONTROL:
        return AccountRef.control(account_key.upper())
    raise ValidationFailed("Invalid account", errors=["account id must be an integer"])


def _as_of_arg():
    try:
        return parse_iso_datetime(request.args.get("as_of"))
    except ValueError as exc:
        raise ValidationFailed("Invalid as_of", errors=["as_of must be an ISO-8601 datetime"]) from exc


@ledger_bp.get("/accounts/<account_type>/<account_key>/balance")
def account_balance_route(account_type: str, account_key: str):
    account = _account(account_type, account_key)
    as_of = _as_of_arg()
    return jsonify({
        "account": account.to_dict(),
        "nature": accounting_service.account_nature(account),
        "as_of": to_utc_z(as_of),
        "balance_cents": accounting_service.balance_as_of(account, as_of),
    }), 200


@ledger_bp.get("/accounts/<account_type>/<account_key>/statement")
def account_statement_route(account_type: str, account_key: str):
    """Query: from, to (inclusive ISO-8601 bounds, both optional)."""
    account = _account(account_type, account_key)
    return jsonify(accounting_service.account_statement(account, DateRange.from_args(request.args))), 200


@ledger_bp.get("/trial-balance")
def trial_balance_route():
    return jsonify(accounting_service.trial_balance(_as_of_arg())), 200


@ledger_bp.get("/verify")
def verify_ledger_route():
    """Per-reference debit/credit symmetry plus the global totals."""
    unbalanced = accounting_service.unbalanced_references()
    trial = accounting_service.trial_balance()
    return jsonify({
        "is_balanced": trial["is_balanced"] and not unbalanced,
        "total_debit_cents": trial["total_debit_cents"],
        "total_credit_cents": trial["total_credit_cents"],
        "unbalanced_references": unbalanced,
    }), 200
