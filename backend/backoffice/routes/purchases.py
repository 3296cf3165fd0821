# Overview: Flask API routes for supplier purchases; billing, payoff and installments.

# backend/backoffice/routes/purchases.py
"""
Purchase API Routes

DESIGN:
- POST /bill receives the goods into stock and opens the payable; calling it
  again posts nothing new
- POST /payoff pays the whole remaining payable from one cash account
- Installments are delta-edited and deleted through the same ledger sagas
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import with_actor
from ..errors import BackofficeError
from ..extensions import db
from ..services import payment_service, purchase_service
from ..validation import parse_id, require_fields, require_json


purchases_bp = Blueprint("purchases", __name__, url_prefix="/api/purchases")


def _error(e: BackofficeError):
    return jsonify(e.to_dict()), e.status_code


def _unexpected(action: str):
    db.session.rollback()
    current_app.logger.exception("Failed to %s", action)
    return jsonify({"error": "Internal server error", "kind": "InternalError"}), 500


def _purchase_body(purchase_id: int) -> dict:
    purchase = purchase_service.get_purchase(purchase_id)
    payable = purchase_service.get_payable(purchase_id)
    return {
        "purchase": purchase.to_dict(include_lines=True),
        "payable": payable.to_dict() if payable else None,
        "payments": [p.to_dict() for p in payment_service.list_payments(purchase_id)],
    }


@purchases_bp.post("")
@with_actor
def create_purchase_route():
    """
    Request body:
    {
        "branch_id": 1,
        "supplier_id": 2,
        "date": "2026-01-18",
        "due_date": "2026-02-18",           (optional)
        "shipping_cost": "5000",            (optional)
        "down_payment": "100000",           (optional)
        "down_payment_account_id": 1,       (required with down_payment)
        "lines": [{"product_id": 3, "qty": "50", "unit_cost": "9000"}]
    }
    """
    try:
        data = require_json(request.get_json(silent=True))
        require_fields(data, "branch_id", "supplier_id")
        lines = data.get("lines")
        if lines is not None and not isinstance(lines, list):
            return jsonify({"error": "lines must be a list", "kind": "ValidationError"}), 400

        purchase = purchase_service.create_purchase(
            branch_id=parse_id(data.get("branch_id"), "branch_id"),
            supplier_id=parse_id(data.get("supplier_id"), "supplier_id"),
            lines=lines or [],
            purchase_date=data.get("date"),
            due_date=data.get("due_date"),
            shipping_cost=data.get("shipping_cost"),
            down_payment=data.get("down_payment"),
            down_payment_account_id=parse_id(
                data.get("down_payment_account_id"), "down_payment_account_id", required=False
            ),
            note=data.get("note"),
            actor_id=g.actor_id,
        )
        return jsonify({"purchase": purchase.to_dict(include_lines=True)}), 201

    except BackofficeError as e:
        return _error(e)
    except Exception:
        return _unexpected("create purchase")


@purchases_bp.get("/<int:purchase_id>")
def get_purchase_route(purchase_id: int):
    try:
        return jsonify(_purchase_body(purchase_id)), 200

    except BackofficeError as e:
        return _error(e)
    except Exception:
        return _unexpected("get purchase")


@purchases_bp.post("/<int:purchase_id>/bill")
@with_actor
def bill_purchase_route(purchase_id: int):
    """
    Body (optional): {"cash_account_id": 1, "date": "2026-01-18"}

    Returns:
        200: purchase, payable, stock_entries_posted, down_payment_posted
        400: InsufficientFunds for the down payment / InvalidState
    """
    try:
        data = require_json(request.get_json(silent=True))
        result = purchase_service.bill_purchase(
            purchase_id,
            cash_account_id=parse_id(data.get("cash_account_id"), "cash_account_id", required=False),
            entry_date=data.get("date"),
            actor_id=g.actor_id,
        )
        body = _purchase_body(purchase_id)
        body["stock_entries_posted"] = result["stock_entries_posted"]
        body["down_payment_posted"] = result["down_payment_posted"]
        return jsonify(body), 200

    except BackofficeError as e:
        return _error(e)
    except Exception:
        return _unexpected("bill purchase")


@purchases_bp.post("/<int:purchase_id>/payoff")
@with_actor
def pay_off_purchase_route(purchase_id: int):
    """
    Body: {"cash_account_id": 1, "date": "2026-02-18", "note": "..."}

    Returns:
        200: purchase, payable (remaining 0, status Paid), payment
        400: InsufficientFunds / InvalidState
        409: DuplicateOperation (already paid off)
    """
    try:
        data = require_json(request.get_json(silent=True))
        require_fields(data, "cash_account_id")
        result = purchase_service.pay_off_purchase(
            purchase_id,
            cash_account_id=parse_id(data.get("cash_account_id"), "cash_account_id"),
            payment_date=data.get("date"),
            note=data.get("note"),
            actor_id=g.actor_id,
        )
        body = _purchase_body(purchase_id)
        body["payment"] = result["payment"].to_dict()
        return jsonify(body), 200

    except BackofficeError as e:
        return _error(e)
    except Exception:
        return _unexpected("pay off purchase")


@purchases_bp.post("/<int:purchase_id>/installments")
@with_actor
def pay_installment_route(purchase_id: int):
    """Body: {"amount": "250000", "cash_account_id": 1, "date": "2026-01-30", "note": "..."}"""
    try:
        data = require_json(request.get_json(silent=True))
        require_fields(data, "amount", "cash_account_id")
        result = payment_service.pay_installment(
            purchase_id,
            amount=data.get("amount"),
            cash_account_id=parse_id(data.get("cash_account_id"), "cash_account_id"),
            payment_date=data.get("date"),
            note=data.get("note"),
            actor_id=g.actor_id,
        )
        return jsonify({"payment": result["payment"].to_dict(), "payable": result["payable"].to_dict()}), 201

    except BackofficeError as e:
        return _error(e)
    except Exception:
        return _unexpected("pay purchase installment")


@purchases_bp.put("/<int:purchase_id>/installments/<int:payment_id>")
@with_actor
def edit_installment_route(purchase_id: int, payment_id: int):
    """Body: any of amount, cash_account_id, date, note."""
    try:
        data = require_json(request.get_json(silent=True))
        result = payment_service.edit_installment(
            payment_id,
            amount=data.get("amount"),
            cash_account_id=parse_id(data.get("cash_account_id"), "cash_account_id", required=False),
            payment_date=data.get("date"),
            note=data.get("note"),
            purchase_id=purchase_id,
            actor_id=g.actor_id,
        )
        return jsonify({"payment": result["payment"].to_dict(), "payable": result["payable"].to_dict()}), 200

    except BackofficeError as e:
        return _error(e)
    except Exception:
        return _unexpected("edit purchase installment")


@purchases_bp.delete("/<int:purchase_id>/installments/<int:payment_id>")
@with_actor
def delete_installment_route(purchase_id: int, payment_id: int):
    try:
        result = payment_service.delete_installment(
            payment_id, purchase_id=purchase_id, actor_id=g.actor_id
        )
        return jsonify({"deleted": True, "payable": result["payable"].to_dict()}), 200

    except BackofficeError as e:
        return _error(e)
    except Exception:
        return _unexpected("delete purchase installment")
