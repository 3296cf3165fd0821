# Overview: Flask API routes for consignments; parses input and returns JSON responses.

# backend/backoffice/routes/consignments.py
"""
Consignment API Routes

DESIGN:
- Create / list / read consignments
- PUT {status} drives the Active -> Completed | Cancelled state machine
- DELETE is the hard-delete compensator (500 + failing step on partial failure)
- Sales and returns are nested under the consignment; the detail (or sale)
  must belong to the consignment in the path, otherwise 404

Errors are rendered as {"error", "kind", ...details} with the status code of
the raised BackofficeError.
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import with_actor
from ..errors import BackofficeError
from ..extensions import db
from ..services import (
    consignment_return_service,
    consignment_sale_service,
    consignment_service,
    lifecycle_service,
)
from ..validation import parse_id, parse_pagination, require_fields, require_json


consignments_bp = Blueprint("consignments", __name__, url_prefix="/api/consignments")


def _error(e: BackofficeError):
    return jsonify(e.to_dict()), e.status_code


def _unexpected(action: str):
    db.session.rollback()
    current_app.logger.exception("Failed to %s", action)
    return jsonify({"error": "Internal server error", "kind": "InternalError"}), 500


# =============================================================================
# CONSIGNMENTS
# =============================================================================

@consignments_bp.post("")
@with_actor
def create_consignment_route():
    """
    Create a consignment (status: Active).

    Request body:
    {
        "date": "2026-01-18",
        "store_id": 1,
        "branch_id": 1,
        "employee_id": 7,            (optional)
        "note": "...",               (optional)
        "details": [
            {"product_id": 3, "committed_qty": "100", "unit_cost_to_principal": "10000",
             "unit_price_at_store": "12000"}
        ]
    }

    Returns:
        201: {"consignment": {..., "details": [...]}}
        400: missing required fields / empty details
        404: unknown store, branch or product
    """
    try:
        data = require_json(request.get_json(silent=True))
        require_fields(data, "date", "store_id", "branch_id")
        details = data.get("details")
        if details is not None and not isinstance(details, list):
            return jsonify({"error": "details must be a list", "kind": "ValidationError"}), 400

        consignment = consignment_service.create_consignment(
            consignment_date=data.get("date"),
            store_id=parse_id(data.get("store_id"), "store_id"),
            branch_id=parse_id(data.get("branch_id"), "branch_id"),
            employee_id=parse_id(data.get("employee_id"), "employee_id", required=False),
            details=details or [],
            note=data.get("note"),
            actor_id=g.actor_id,
        )
        return jsonify({"consignment": consignment.to_dict(include_details=True)}), 201

    except BackofficeError as e:
        return _error(e)
    except Exception:
        return _unexpected("create consignment")


@consignments_bp.get("")
def list_consignments_route():
    """Query params: branch_id, status, search (code or store name), page, limit."""
    try:
        page, limit = parse_pagination(request.args)
        items, pagination = consignment_service.list_consignments(
            branch_id=parse_id(request.args.get("branch_id"), "branch_id", required=False),
            status=request.args.get("status") or None,
            search=request.args.get("search") or None,
            page=page,
            limit=limit,
        )
        return jsonify({"consignments": [c.to_dict() for c in items], "pagination": pagination}), 200

    except BackofficeError as e:
        return _error(e)
    except Exception:
        return _unexpected("list consignments")


@consignments_bp.get("/<int:consignment_id>")
def get_consignment_route(consignment_id: int):
    try:
        consignment = consignment_service.get_consignment(consignment_id)
        return jsonify({"consignment": consignment.to_dict(include_details=True)}), 200

    except BackofficeError as e:
        return _error(e)
    except Exception:
        return _unexpected("get consignment")


@consignments_bp.put("/<int:consignment_id>")
@with_actor
def change_status_route(consignment_id: int):
    """
    Change consignment status.

    Request body:
    {
        "status": "Completed" | "Cancelled",
        "reason": "...",                 (optional, Cancelled)
        "completed_date": "2026-02-01"   (optional, Completed)
    }

    Returns:
        200: {"consignment": {...}}
        400: InvalidTransition / InsufficientStock / InvalidState (sales exist)
    """
    try:
        data = require_json(request.get_json(silent=True))
        require_fields(data, "status")
        consignment = lifecycle_service.change_status(
            consignment_id,
            data.get("status"),
            reason=data.get("reason"),
            completed_date=data.get("completed_date"),
            actor_id=g.actor_id,
        )
        return jsonify({"consignment": consignment.to_dict(include_details=True)}), 200

    except BackofficeError as e:
        return _error(e)
    except Exception:
        return _unexpected("change consignment status")


@consignments_bp.delete("/<int:consignment_id>")
@with_actor
def delete_consignment_route(consignment_id: int):
    """
    Hard-delete a consignment in any status.

    Returns:
        200: {"deleted": true, "consignment": <pre-delete snapshot>}
        404: unknown consignment
        500: IncompleteDeletion naming the failing step
    """
    try:
        snapshot = consignment_service.delete_consignment(consignment_id, actor_id=g.actor_id)
        return jsonify({"deleted": True, "consignment": snapshot}), 200

    except BackofficeError as e:
        return _error(e)
    except Exception:
        return _unexpected("delete consignment")


# =============================================================================
# SALES
# =============================================================================

@consignments_bp.post("/<int:consignment_id>/sales")
@with_actor
def record_sale_route(consignment_id: int):
    """
    Record a store-reported sale.

    Request body:
    {
        "detail_id": 12,
        "qty": "30",
        "cash_account_id": 1,
        "date": "2026-01-20",
        "store_price": "50",          (optional, defaults to the detail's store price)
        "payment_date": "2026-01-21", (optional)
        "note": "..."                 (optional)
    }

    Returns:
        200: {"sale": {...}, "updated_detail": {...}}
        400: InvalidState / InsufficientRemaining / ValidationError
        404: unknown detail or cash account
    """
    try:
        data = require_json(request.get_json(silent=True))
        require_fields(data, "detail_id", "qty", "cash_account_id")
        sale, detail = consignment_sale_service.record_sale(
            detail_id=parse_id(data.get("detail_id"), "detail_id"),
            qty=data.get("qty"),
            cash_account_id=parse_id(data.get("cash_account_id"), "cash_account_id"),
            sale_date=data.get("date"),
            store_price=data.get("store_price"),
            payment_date=data.get("payment_date"),
            note=data.get("note"),
            consignment_id=consignment_id,
            actor_id=g.actor_id,
        )
        return jsonify({"sale": sale.to_dict(), "updated_detail": detail.to_dict()}), 200

    except BackofficeError as e:
        return _error(e)
    except Exception:
        return _unexpected("record consignment sale")


@consignments_bp.get("/<int:consignment_id>/sales")
def list_sales_route(consignment_id: int):
    try:
        consignment_service.get_consignment(consignment_id)
        page, limit = parse_pagination(request.args)
        items, pagination = consignment_sale_service.list_sales(
            consignment_id=consignment_id, page=page, limit=limit
        )
        return jsonify({"sales": [s.to_dict() for s in items], "pagination": pagination}), 200

    except BackofficeError as e:
        return _error(e)
    except Exception:
        return _unexpected("list consignment sales")


@consignments_bp.put("/<int:consignment_id>/sales/<int:sale_id>")
@with_actor
def edit_sale_route(consignment_id: int, sale_id: int):
    """Body: any of qty, store_price, cash_account_id, date, payment_date, note."""
    try:
        data = require_json(request.get_json(silent=True))
        sale, detail = consignment_sale_service.edit_sale(
            sale_id,
            qty=data.get("qty"),
            store_price=data.get("store_price"),
            cash_account_id=parse_id(data.get("cash_account_id"), "cash_account_id", required=False),
            sale_date=data.get("date"),
            payment_date=data.get("payment_date"),
            note=data.get("note"),
            consignment_id=consignment_id,
            actor_id=g.actor_id,
        )
        return jsonify({"sale": sale.to_dict(), "updated_detail": detail.to_dict()}), 200

    except BackofficeError as e:
        return _error(e)
    except Exception:
        return _unexpected("edit consignment sale")


@consignments_bp.delete("/<int:consignment_id>/sales/<int:sale_id>")
@with_actor
def delete_sale_route(consignment_id: int, sale_id: int):
    try:
        detail = consignment_sale_service.delete_sale(
            sale_id, consignment_id=consignment_id, actor_id=g.actor_id
        )
        return jsonify({"deleted": True, "updated_detail": detail.to_dict()}), 200

    except BackofficeError as e:
        return _error(e)
    except Exception:
        return _unexpected("delete consignment sale")


# =============================================================================
# RETURNS
# =============================================================================

@consignments_bp.post("/<int:consignment_id>/returns")
@with_actor
def record_return_route(consignment_id: int):
    """
    Record goods returned by the store.

    Request body:
    {
        "detail_id": 12,
        "qty": "20",
        "date": "2026-01-25",
        "condition": "Good",        (optional)
        "return_kind": "Normal",    (optional)
        "note": "..."               (optional)
    }

    Returns:
        200: {"return": {...}, "updated_detail": {...}}
        400: InvalidState / InsufficientRemaining
        404: unknown detail
        409: DuplicateOperation (same detail, date and qty)
    """
    try:
        data = require_json(request.get_json(silent=True))
        require_fields(data, "detail_id", "qty")
        row, detail = consignment_return_service.record_return(
            detail_id=parse_id(data.get("detail_id"), "detail_id"),
            qty=data.get("qty"),
            return_date=data.get("date"),
            condition=data.get("condition"),
            return_kind=data.get("return_kind"),
            note=data.get("note"),
            consignment_id=consignment_id,
            actor_id=g.actor_id,
        )
        return jsonify({"return": row.to_dict(), "updated_detail": detail.to_dict()}), 200

    except BackofficeError as e:
        return _error(e)
    except Exception:
        return _unexpected("record consignment return")


@consignments_bp.get("/<int:consignment_id>/returns")
def list_returns_route(consignment_id: int):
    try:
        consignment_service.get_consignment(consignment_id)
        rows = consignment_return_service.list_returns(consignment_id=consignment_id)
        return jsonify({"returns": [r.to_dict() for r in rows]}), 200

    except BackofficeError as e:
        return _error(e)
    except Exception:
        return _unexpected("list consignment returns")
