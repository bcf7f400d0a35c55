"""
Feedback entity: table definition for the tenant registry plus the mapping between
the JSON wire shape (camelCase) and storage columns (snake_case).
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Tuple

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

from hrms.tenancy import EntitySchema
from hrms.utils.validators import clean_actor, clean_str, iso_utc, parse_datetime, parse_id

ENTITY_NAME = "Feedback"

FEEDBACK_TYPES = ("selfFeedback", "requestedFeedback", "feedbackToReview", "anonymousFeedback")
STATUSES = ("Not Started", "In Progress", "Completed", "Pending", "Rejected")
REVIEW_STATUSES = ("Pending", "Approved", "Rejected")
PRIORITIES = ("Low", "Medium", "High", "Critical")

DEFAULT_STATUS = "Not Started"
DEFAULT_REVIEW_STATUS = "Pending"

# Actor field accepted on patches; never stored
ACTOR_FIELD = "updatedBy"

# Fields a bulk patch may not carry; history only grows through appended entries
IMMUTABLE_FIELDS = ("id", "history", "feedbackType", "originalFeedbackId", "createdAt", "updatedAt")

_JSON = sa.JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys
_ID = sa.BigInteger().with_variant(sa.Integer(), "sqlite")

# wire name -> column
_SIMPLE_FIELDS = {
    "title": "title",
    "description": "description",
    "feedbackType": "feedback_type",
    "status": "status",
    "reviewStatus": "review_status",
    "priority": "priority",
    "employeeId": "employee_id",
    "createdBy": "created_by",
    "reviewAssignedTo": "review_assigned_to",
    "originalFeedbackId": "original_feedback_id",
    "needsReview": "needs_review",
    "period": "period",
    "dueDate": "due_date",
    "startDate": "start_date",
    "response": "response",
}
_REF_FIELDS = ("employee", "manager")
_DATE_COLUMNS = ("due_date", "start_date")
_TEXT_LIMITS = {"title": 255, "description": 10000, "period": 64}
# Free-form actor ids; stored whole so lookups by the full id still match
_ACTOR_COLUMNS = ("employee_id", "created_by", "review_assigned_to")
_ENUMS = {
    "feedback_type": FEEDBACK_TYPES,
    "status": STATUSES,
    "review_status": REVIEW_STATUSES,
    "priority": PRIORITIES,
}

SORTABLE_FIELDS = {
    "createdAt": "created_at",
    "updatedAt": "updated_at",
    "dueDate": "due_date",
    "startDate": "start_date",
    "priority": "priority",
    "status": "status",
    "title": "title",
    "feedbackType": "feedback_type",
}


def define_feedback_table(metadata: sa.MetaData, name: str) -> sa.Table:
    return sa.Table(
        name,
        metadata,
        sa.Column("id", _ID, primary_key=True, autoincrement=True),
        sa.Column("title", sa.String(255), nullable=True),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("feedback_type", sa.String(32), nullable=False, index=True),
        sa.Column("status", sa.String(32), nullable=False, server_default=sa.text(f"'{DEFAULT_STATUS}'")),
        sa.Column("review_status", sa.String(16), nullable=True),
        sa.Column("priority", sa.String(16), nullable=True),
        # Actor references are free-form strings; no referential checks
        sa.Column("employee_id", sa.Text, nullable=True, index=True),
        sa.Column("employee_ref", sa.Text, nullable=True),
        sa.Column("employee_name", sa.String(255), nullable=True),
        sa.Column("created_by", sa.Text, nullable=True, index=True),
        sa.Column("manager_ref", sa.Text, nullable=True),
        sa.Column("manager_name", sa.String(255), nullable=True),
        sa.Column("review_assigned_to", sa.Text, nullable=True, index=True),
        # Weak back-reference to the original; intentionally not a foreign key
        sa.Column("original_feedback_id", _ID, nullable=True, index=True),
        sa.Column("needs_review", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("history", _JSON, nullable=False),
        sa.Column("response", _JSON, nullable=True),
        sa.Column("due_date", sa.DateTime, nullable=True, index=True),
        sa.Column("start_date", sa.DateTime, nullable=True),
        sa.Column("period", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
    )


FEEDBACK_SCHEMA = EntitySchema(name=ENTITY_NAME, define=define_feedback_table)


def split_ref(value: Any) -> Tuple[Optional[str], Optional[str]]:
    """Embedded {id, name} or a raw id -> (ref, name)."""
    if value is None or value == "":
        return None, None
    if isinstance(value, dict):
        return clean_actor(value.get("id")), clean_str(value.get("name"))
    return clean_actor(value), None


def join_ref(ref: Optional[str], name: Optional[str]) -> Any:
    if name is not None:
        return {"id": ref, "name": name}
    return ref


def history_entry(action: str, user: Optional[str], details: str, date: datetime) -> dict:
    return {"date": iso_utc(date), "action": action, "user": user, "details": details}


def to_columns(data: Dict[str, Any], *, ignore: Iterable[str] = ()) -> Tuple[Dict[str, Any], Dict[str, str]]:
    """
    Map wire fields to column values. Unknown keys are dropped (like a strict schema).
    Returns (values, errors); callers raise InvalidRequest when errors is non-empty.
    """
    values: Dict[str, Any] = {}
    errors: Dict[str, str] = {}
    skip = set(ignore)

    for wire, col in _SIMPLE_FIELDS.items():
        if wire not in data or wire in skip:
            continue
        raw = data[wire]

        if col in _DATE_COLUMNS:
            try:
                values[col] = parse_datetime(raw)
            except (TypeError, ValueError):
                errors[wire] = "Must be an ISO-8601 date."
        elif col in _ENUMS:
            if raw is None and col in ("priority", "review_status"):
                values[col] = None
            elif raw not in _ENUMS[col]:
                errors[wire] = f"Must be one of: {', '.join(_ENUMS[col])}."
            else:
                values[col] = raw
        elif col == "original_feedback_id":
            if raw is None:
                values[col] = None
            else:
                rid = parse_id(raw)
                if rid is None:
                    errors[wire] = "Must be a feedback id."
                else:
                    values[col] = rid
        elif col == "needs_review":
            values[col] = bool(raw)
        elif col == "response":
            if raw is not None and not isinstance(raw, dict):
                errors[wire] = "Must be an object."
            else:
                values[col] = raw
        elif col in _ACTOR_COLUMNS:
            values[col] = clean_actor(raw)
        else:
            values[col] = clean_str(raw, _TEXT_LIMITS.get(col, 64))

    for wire in _REF_FIELDS:
        if wire in data and wire not in skip:
            ref, name = split_ref(data[wire])
            values[f"{wire}_ref"] = ref
            values[f"{wire}_name"] = name

    return values, errors


def to_wire(record: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Storage record (column dict) -> JSON-ready dict."""
    if record is None:
        return None

    def _iso(dt):
        return iso_utc(dt)

    out = {
        "id": record["id"],
        "title": record.get("title"),
        "description": record.get("description"),
        "feedbackType": record.get("feedback_type"),
        "status": record.get("status"),
        "reviewStatus": record.get("review_status"),
        "priority": record.get("priority"),
        "employeeId": record.get("employee_id"),
        "employee": join_ref(record.get("employee_ref"), record.get("employee_name")),
        "createdBy": record.get("created_by"),
        "manager": join_ref(record.get("manager_ref"), record.get("manager_name")),
        "reviewAssignedTo": record.get("review_assigned_to"),
        "needsReview": bool(record.get("needs_review")),
        "history": list(record.get("history") or []),
        "response": record.get("response"),
        "dueDate": _iso(record.get("due_date")),
        "startDate": _iso(record.get("start_date")),
        "period": record.get("period"),
        "createdAt": _iso(record.get("created_at")),
        "updatedAt": _iso(record.get("updated_at")),
    }
    if record.get("original_feedback_id") is not None:
        out["originalFeedbackId"] = record["original_feedback_id"]
    return out
