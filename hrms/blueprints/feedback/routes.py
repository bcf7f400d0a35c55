from flask import current_app, jsonify, request

from hrms.errors import InvalidRequest
from hrms.extensions import limiter
from hrms.models.feedback import ENTITY_NAME, FEEDBACK_SCHEMA, to_wire
from hrms.services.analytics import AnalyticsAggregator
from hrms.services.bulk import BulkOperationCoordinator
from hrms.services.feedback_store import FeedbackStore
from hrms.services.lifecycle import LifecycleCoordinator
from hrms.tenancy.context import current_actor, resolve_handle
from hrms.utils.validators import clean_str, parse_datetime, parse_positive_int
from . import bp


def _store() -> FeedbackStore:
    return FeedbackStore(resolve_handle(ENTITY_NAME, FEEDBACK_SCHEMA))


def _lifecycle() -> LifecycleCoordinator:
    return LifecycleCoordinator(
        _store(),
        transactional=bool(current_app.config.get("FEEDBACK_TRANSACTIONAL_LINKED_WRITES")),
    )


def _body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidRequest("Request body must be a JSON object")
    return data


def _wire_list(records):
    return [to_wire(r) for r in records]


def _wire_groups(groups):
    return {k: _wire_list(v) for k, v in groups.items()}


def _bulk_limit():
    return current_app.config.get("BULK_RATE_LIMIT", "30 per minute")


def _date_arg(name):
    raw = request.args.get(name)
    try:
        return parse_datetime(raw)
    except ValueError:
        raise InvalidRequest(f"Invalid {name}", errors={name: "Must be an ISO-8601 date."}) from None


# ---- collection ----

@bp.post("/")
def create_feedback():
    created = _lifecycle().create(_body(), actor=current_actor(None))
    if created.is_pair:
        return jsonify({
            "success": True,
            "message": "Feedback created and sent for review",
            "data": {
                "selfFeedback": to_wire(created.feedback),
                "reviewFeedback": to_wire(created.review),
            },
        }), 201
    return jsonify(to_wire(created.feedback)), 201


@bp.get("/")
def list_feedbacks():
    cfg = current_app.config
    page = parse_positive_int(request.args.get("page"), 1)
    limit = parse_positive_int(
        request.args.get("limit"), cfg.get("FEEDBACK_DEFAULT_PAGE_SIZE", 10), cfg.get("FEEDBACK_MAX_PAGE_SIZE", 100)
    )
    result = _lifecycle().list_feedbacks(
        search_term=clean_str(request.args.get("searchTerm")),
        status=clean_str(request.args.get("status")),
        employee=clean_str(request.args.get("employee")),
        manager=clean_str(request.args.get("manager")),
        start_date=_date_arg("startDate"),
        end_date=_date_arg("endDate"),
        priority=clean_str(request.args.get("priority")),
        period=clean_str(request.args.get("period")),
        sort_by=request.args.get("sortBy") or "createdAt",
        sort_direction=(request.args.get("sortDirection") or "desc").lower(),
        page=page,
        limit=limit,
    )
    resp = jsonify(_wire_groups(result["groups"]))
    resp.headers["X-Total-Count"] = str(result["total"])
    resp.headers["X-Page"] = str(result["page"])
    resp.headers["X-Limit"] = str(result["limit"])
    resp.headers["X-Total-Pages"] = str(result["totalPages"])
    return resp, 200


# ---- single record ----

@bp.get("/<int:feedback_id>")
def get_feedback(feedback_id):
    return jsonify(to_wire(_lifecycle().get(feedback_id))), 200


@bp.put("/<int:feedback_id>")
def update_feedback(feedback_id):
    record = _lifecycle().update(feedback_id, _body(), actor=current_actor(None))
    return jsonify(to_wire(record)), 200


@bp.delete("/<int:feedback_id>")
def delete_feedback(feedback_id):
    result = _lifecycle().delete(feedback_id)
    return jsonify({"message": "Feedback deleted successfully", **result}), 200


@bp.get("/<int:feedback_id>/history")
def feedback_history(feedback_id):
    return jsonify(_lifecycle().get_history(feedback_id)), 200


@bp.post("/<int:feedback_id>/comments")
def add_comment(feedback_id):
    data = _body()
    record = _lifecycle().add_comment(feedback_id, data.get("comment"), data.get("user") or current_actor(None))
    return jsonify(to_wire(record)), 200


@bp.post("/<int:feedback_id>/response")
def submit_response(feedback_id):
    data = _body()
    record = _lifecycle().submit_response(
        feedback_id, data.get("text"), data.get("rating"), data.get("submittedBy") or current_actor(None)
    )
    return jsonify(to_wire(record)), 200


@bp.put("/<int:feedback_id>/assign")
def assign_for_review(feedback_id):
    data = _body()
    record = _lifecycle().assign_for_review(
        feedback_id, data.get("reviewAssignedTo"), data.get("assignedBy") or current_actor(None)
    )
    return jsonify(to_wire(record)), 200


@bp.put("/<int:feedback_id>/review-status")
def update_review_status(feedback_id):
    data = _body()
    record = _lifecycle().update_review_status(
        feedback_id, data.get("reviewStatus"), data.get("reviewedBy") or current_actor(None), data.get("comments")
    )
    return jsonify(to_wire(record)), 200


@bp.put("/<int:feedback_id>/complete-review")
def complete_review(feedback_id):
    data = _body()
    record = _lifecycle().complete_review(
        feedback_id, data.get("reviewStatus"), data.get("reviewedBy") or current_actor(None), data.get("comments")
    )
    return jsonify(to_wire(record)), 200


@bp.get("/<int:feedback_id>/linked")
def linked_feedback(feedback_id):
    linked = _lifecycle().get_linked(feedback_id)
    if linked is None:
        return jsonify({"linkedFeedback": None, "message": "No linked feedback found"}), 200
    return jsonify(to_wire(linked)), 200


# ---- filtered views ----

@bp.get("/type/<feedback_type>")
def feedback_by_type(feedback_type):
    return jsonify(_wire_list(_lifecycle().list_by_type(feedback_type))), 200


@bp.get("/employee/<employee_id>")
def feedback_by_employee(employee_id):
    return jsonify(_wire_list(_lifecycle().list_by_employee(employee_id))), 200


@bp.get("/user/<user_id>")
def feedback_by_user(user_id):
    return jsonify(_wire_groups(_lifecycle().list_by_user(user_id))), 200


@bp.get("/review/<user_id>")
def feedback_to_review(user_id):
    return jsonify(_wire_list(_lifecycle().list_to_review(user_id))), 200


@bp.get("/overdue")
def overdue_feedback():
    return jsonify(_wire_list(_lifecycle().list_overdue())), 200


@bp.get("/due-this-week")
def due_this_week_feedback():
    return jsonify(_wire_list(_lifecycle().list_due_this_week())), 200


# ---- analytics ----

@bp.get("/analytics")
def feedback_analytics():
    return jsonify(AnalyticsAggregator(_store()).tenant_analytics()), 200


@bp.get("/stats/<user_id>")
def feedback_stats(user_id):
    return jsonify(AnalyticsAggregator(_store()).user_stats(user_id)), 200


# ---- bulk ----

@bp.post("/bulk-update")
@limiter.limit(_bulk_limit)
def bulk_update():
    data = _body()
    result = BulkOperationCoordinator(_store()).bulk_update(
        data.get("ids"), data.get("updateData"), actor=current_actor(None)
    )
    return jsonify({
        "message": f"{result['updatedCount']} feedbacks updated successfully",
        "updatedCount": result["updatedCount"],
        "feedbacks": _wire_list(result["feedbacks"]),
        "failedIds": result["failedIds"],
    }), 200


@bp.post("/bulk-delete")
@limiter.limit(_bulk_limit)
def bulk_delete():
    result = BulkOperationCoordinator(_store()).bulk_delete(_body().get("ids"))
    return jsonify({
        "message": f"{result['deletedCount']} feedbacks deleted successfully",
        **result,
    }), 200
