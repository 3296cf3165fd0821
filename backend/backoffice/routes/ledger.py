# Overview: Flask API routes for ledger reads; cash accounts and ledger-derived stock.

"""
Read-side helpers over the ledgers. Nothing here writes; the cached
projections are reported next to their ledger-derived values so drift is
visible without running the CLI.
"""

from flask import Blueprint, current_app, jsonify, request

from ..errors import BackofficeError
from ..numbers import dec_str
from ..services import ledger_service
from ..validation import parse_id

ledger_bp = Blueprint("ledger", __name__, url_prefix="/api")


@ledger_bp.get("/cash-accounts/<int:account_id>")
def get_cash_account_route(account_id: int):
    try:
        account = ledger_service.get_cash_account(account_id)
        replayed = ledger_service.replayed_cash_balance(account_id)
        body = account.to_dict()
        body["replayed_balance"] = dec_str(replayed)
        body["consistent"] = (account.balance or 0) == replayed
        return jsonify({"cash_account": body}), 200

    except BackofficeError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get cash account")
        return jsonify({"error": "Internal server error", "kind": "InternalError"}), 500


@ledger_bp.get("/cash-accounts/<int:account_id>/transactions")
def list_cash_transactions_route(account_id: int):
    """Newest first. Query: limit (1-500, default 100)."""
    try:
        limit = request.args.get("limit", default=100, type=int)
        limit = max(1, min(limit, 500))
        entries = ledger_service.list_cash_entries(account_id, limit=limit)
        return jsonify({"transactions": [e.to_dict() for e in entries], "limit": limit}), 200

    except BackofficeError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list cash transactions")
        return jsonify({"error": "Internal server error", "kind": "InternalError"}), 500


@ledger_bp.get("/stock/<int:product_id>")
def get_stock_route(product_id: int):
    """
    Query: branch_id (required).

    derived_stock is the ledger figure for (product, branch); cached_stock is
    the branch-agnostic Product.stock projection.
    """
    try:
        branch_id = parse_id(request.args.get("branch_id"), "branch_id")
        product = ledger_service.get_product(product_id)
        derived = ledger_service.derived_stock(product_id, branch_id)
        entries = ledger_service.list_stock_entries(product_id, branch_id, limit=50)
        return jsonify({
            "product": product.to_dict(),
            "branch_id": branch_id,
            "derived_stock": dec_str(derived),
            "cached_stock": dec_str(product.stock),
            "entries": [e.to_dict() for e in entries],
        }), 200

    except BackofficeError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get stock")
        return jsonify({"error": "Internal server error", "kind": "InternalError"}), 500
