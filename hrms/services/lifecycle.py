"""
Feedback lifecycle: creation (including the self-feedback -> review split),
status / review-status transitions with propagation to the linked record,
history and comment appends, assignment, review completion, cascade delete.

Linked writes are independent operations by default: each side commits on its
own and concurrent writers to both halves of a pair converge last-write-wins.
With transactional=True the writes touching both halves share one storage
transaction instead.
"""
from __future__ import annotations

import json
import logging
import math
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from hrms.errors import InvalidRequest, NotFound
from hrms.models.feedback import (
    ACTOR_FIELD,
    DEFAULT_REVIEW_STATUS,
    DEFAULT_STATUS,
    FEEDBACK_TYPES,
    REVIEW_STATUSES,
    SORTABLE_FIELDS,
    history_entry,
    to_columns,
)
from hrms.utils.validators import clean_actor, clean_str, iso_utc
from .analytics import due_this_week_criteria, overdue_criteria
from .feedback_store import FeedbackStore, Record
from .filters import FilterCriteria, FilterOperator, cond

log = logging.getLogger(__name__)

# Server-managed; silently dropped from patches
SERVER_MANAGED_FIELDS = ("id", "history", "createdAt", "updatedAt")
# Linkage fields; a patch may repeat the stored value but never change it
LINKAGE_FIELDS = {"feedbackType": "feedback_type", "originalFeedbackId": "original_feedback_id"}

COMPLETION_STATUSES = {"Approved": "Completed", "Rejected": "Rejected"}


@dataclass
class Created:
    feedback: Record
    review: Optional[Record] = None

    @property
    def is_pair(self) -> bool:
        return self.review is not None


def linkage_divergence(record: Record) -> bool:
    """True when feedbackType disagrees with the originalFeedbackId link (the link wins)."""
    is_review = record.get("original_feedback_id") is not None
    return is_review != (record.get("feedback_type") == "feedbackToReview")


def group_by_type(records: List[Record]) -> Dict[str, List[Record]]:
    groups: Dict[str, List[Record]] = {t: [] for t in FEEDBACK_TYPES}
    for r in records:
        if r.get("feedback_type") in groups:
            groups[r["feedback_type"]].append(r)
    return groups


def _log_event(event: str, level: int = logging.INFO, **fields):
    log.log(level, json.dumps({"event": event, **fields}, default=str))


def _actor(value: Any, default: str) -> str:
    return clean_actor(value) or default


def _with_comment(details: str, comments: Optional[str]) -> str:
    return f"{details}: {comments}" if comments else details


class LifecycleCoordinator:
    def __init__(
        self,
        store: FeedbackStore,
        *,
        transactional: bool = False,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.transactional = transactional
        self.clock = clock or store.clock

    @contextmanager
    def _linked_scope(self):
        if self.transactional:
            with self.store.transaction() as conn:
                yield conn
        else:
            yield None

    def _check_linkage(self, record: Record) -> None:
        if linkage_divergence(record):
            _log_event(
                "feedback_linkage_divergence",
                logging.WARNING,
                company=self.store.company_code,
                id=record["id"],
                feedback_type=record.get("feedback_type"),
                original_feedback_id=record.get("original_feedback_id"),
            )

    def _require(self, record_id: int, conn=None) -> Record:
        record = self.store.find_by_id(record_id, conn=conn)
        if record is None:
            raise NotFound()
        return record

    # ---- creation ----

    def create(self, data: Dict[str, Any], actor: Optional[str] = None) -> Created:
        if not isinstance(data, dict):
            raise InvalidRequest("Feedback payload must be a JSON object")

        values, errors = to_columns(data, ignore=SERVER_MANAGED_FIELDS)
        if "feedbackType" not in data and data.get("needsReview"):
            # a review request without a type is a self-feedback
            values["feedback_type"] = "selfFeedback"
        if not values.get("feedback_type"):
            errors.setdefault("feedbackType", f"Required; one of: {', '.join(FEEDBACK_TYPES)}.")
        if errors:
            raise InvalidRequest("Invalid feedback", errors=errors)

        values.setdefault("status", DEFAULT_STATUS)
        values.setdefault("review_status", DEFAULT_REVIEW_STATUS)
        actor = _actor(data.get("createdBy") or actor, "System")
        now = self.clock()

        if values["feedback_type"] == "selfFeedback" and data.get("needsReview"):
            return self._create_with_review(values, actor, now)

        values["history"] = [history_entry("Created", actor, "Feedback created", now)]
        record = self.store.insert(values)
        self._check_linkage(record)
        _log_event("feedback_created", company=self.store.company_code, id=record["id"],
                   feedback_type=record["feedback_type"])
        return Created(feedback=record)

    def _create_with_review(self, values: Dict[str, Any], actor: str, now: datetime) -> Created:
        self_values = dict(values, feedback_type="selfFeedback", status="In Progress", original_feedback_id=None)
        self_values["history"] = [
            history_entry("Created", actor, "Self feedback created and sent for review", now)
        ]
        with self._linked_scope() as conn:
            original = self.store.insert(self_values, conn=conn)
            # Second, independent insert; a failure here leaves the self-feedback without a review
            review_values = dict(
                values,
                feedback_type="feedbackToReview",
                original_feedback_id=original["id"],
                status="Pending",
            )
            review_values["history"] = [history_entry("Created", actor, "Feedback submitted for review", now)]
            review = self.store.insert(review_values, conn=conn)

        _log_event("feedback_pair_created", company=self.store.company_code,
                   id=original["id"], review_id=review["id"])
        return Created(feedback=original, review=review)

    # ---- reads ----

    def get(self, record_id: int) -> Record:
        return self._require(record_id)

    def get_history(self, record_id: int) -> List[dict]:
        return list(self._require(record_id).get("history") or [])

    def get_linked(self, record_id: int) -> Optional[Record]:
        """Counterpart of a linked pair, or None. Only a missing primary raises NotFound."""
        record = self._require(record_id)
        self._check_linkage(record)
        if record.get("original_feedback_id") is not None:
            return self.store.find_by_id(record["original_feedback_id"])
        return self.store.find_one(FilterCriteria().eq("original_feedback_id", record_id))

    def list_feedbacks(
        self,
        *,
        search_term: Optional[str] = None,
        status: Optional[str] = None,
        employee: Optional[str] = None,
        manager: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        priority: Optional[str] = None,
        period: Optional[str] = None,
        sort_by: str = "createdAt",
        sort_direction: str = "desc",
        page: int = 1,
        limit: int = 10,
    ) -> Dict[str, Any]:
        criteria = FilterCriteria()
        contains = FilterOperator.CONTAINS
        if search_term:
            criteria.either(
                cond("title", contains, search_term),
                cond("employee_name", contains, search_term),
                cond("employee_ref", contains, search_term),
                cond("manager_name", contains, search_term),
                cond("manager_ref", contains, search_term),
            )
        if employee:
            criteria.either(cond("employee_name", contains, employee), cond("employee_ref", contains, employee))
        if manager:
            criteria.either(cond("manager_name", contains, manager), cond("manager_ref", contains, manager))
        if status:
            criteria.eq("status", status)
        if start_date:
            criteria.add("start_date", FilterOperator.GTE, start_date)
        if end_date:
            criteria.add("due_date", FilterOperator.LTE, end_date)
        if priority:
            criteria.eq("priority", priority)
        if period:
            criteria.eq("period", period)

        column = SORTABLE_FIELDS.get(sort_by)
        if column is None:
            raise InvalidRequest("Invalid sort field", errors={"sortBy": f"One of: {', '.join(SORTABLE_FIELDS)}."})
        direction = "asc" if sort_direction == "asc" else "desc"

        total = self.store.count_matching(criteria)
        records = self.store.find_many(
            criteria, sort=[(column, direction)], skip=(page - 1) * limit, limit=limit
        )
        return {
            "groups": group_by_type(records),
            "total": total,
            "page": page,
            "limit": limit,
            "totalPages": math.ceil(total / limit) if limit else 0,
        }

    def list_by_type(self, feedback_type: str) -> List[Record]:
        if feedback_type not in FEEDBACK_TYPES:
            raise InvalidRequest("Invalid feedback type")
        return self.store.find_many(FilterCriteria().eq("feedback_type", feedback_type))

    def list_by_employee(self, employee_id: str) -> List[Record]:
        criteria = FilterCriteria().either(
            cond("employee_id", FilterOperator.EQ, employee_id),
            cond("created_by", FilterOperator.EQ, employee_id),
        )
        return self.store.find_many(criteria)

    def list_by_user(self, user_id: str) -> Dict[str, List[Record]]:
        """Records involving the user, grouped by type with per-type involvement rules."""
        criteria = FilterCriteria().either(
            cond("employee_id", FilterOperator.EQ, user_id),
            cond("created_by", FilterOperator.EQ, user_id),
            cond("manager_ref", FilterOperator.EQ, user_id),
            cond("review_assigned_to", FilterOperator.EQ, user_id),
        )
        records = self.store.find_many(criteria)

        def _of(t):
            return [r for r in records if r.get("feedback_type") == t]

        return {
            "selfFeedback": [r for r in _of("selfFeedback") if r.get("employee_id") == user_id],
            "requestedFeedback": [
                r for r in _of("requestedFeedback") if user_id in (r.get("created_by"), r.get("employee_id"))
            ],
            "feedbackToReview": [
                r for r in _of("feedbackToReview") if user_id in (r.get("review_assigned_to"), r.get("created_by"))
            ],
            "anonymousFeedback": [r for r in _of("anonymousFeedback") if r.get("employee_id") == user_id],
        }

    def list_overdue(self) -> List[Record]:
        return self.store.find_many(overdue_criteria(self.clock()))

    def list_due_this_week(self) -> List[Record]:
        return self.store.find_many(due_this_week_criteria(self.clock()))

    def list_to_review(self, user_id: str) -> List[Record]:
        criteria = (
            FilterCriteria()
            .eq("review_assigned_to", user_id)
            .eq("feedback_type", "feedbackToReview")
            .eq("review_status", "Pending")
        )
        return self.store.find_many(criteria)

    # ---- mutations ----

    def update(self, record_id: int, data: Dict[str, Any], actor: Optional[str] = None) -> Record:
        if not isinstance(data, dict):
            raise InvalidRequest("Update payload must be a JSON object")

        values, errors = to_columns(data, ignore=SERVER_MANAGED_FIELDS + tuple(LINKAGE_FIELDS))
        if errors:
            raise InvalidRequest("Invalid feedback update", errors=errors)
        linkage, linkage_errors = to_columns({k: data[k] for k in LINKAGE_FIELDS if k in data})
        if linkage_errors:
            raise InvalidRequest("Invalid feedback update", errors=linkage_errors)
        actor = _actor(data.get(ACTOR_FIELD) or actor, "System")
        now = self.clock()

        def _mutate(current: Record):
            changed = [col for col, v in linkage.items() if current.get(col) != v]
            if changed:
                raise InvalidRequest(
                    "Linkage fields are immutable",
                    errors={wire: "Cannot be changed." for wire, col in LINKAGE_FIELDS.items() if col in changed},
                )
            entries = []
            new_status = values.get("status")
            if new_status and new_status != current.get("status"):
                entries.append(history_entry(
                    "Updated", actor, f"Status changed from {current.get('status')} to {new_status}", now
                ))
            return values, entries

        with self._linked_scope() as conn:
            record = self.store.modify(record_id, _mutate, conn=conn)
            if record is None:
                raise NotFound()
            if "status" in values:
                self._propagate_status(record, values["status"], conn)

        self._check_linkage(record)
        return record

    def _propagate_status(self, record: Record, status: str, conn=None) -> None:
        """Status only, no history entry on the counterpart; a missing counterpart is ignored."""
        original_id = record.get("original_feedback_id")
        if original_id is not None:
            targets = [original_id]
        else:
            reviews = self.store.find_many(FilterCriteria().eq("original_feedback_id", record["id"]), conn=conn)
            targets = [r["id"] for r in reviews]

        for target_id in targets:
            updated = self.store.update_by_id(target_id, {"status": status}, conn=conn)
            _log_event(
                "feedback_status_propagated" if updated else "feedback_propagation_target_missing",
                company=self.store.company_code,
                source=record["id"],
                target=target_id,
                status=status,
            )

    def delete(self, record_id: int) -> Dict[str, Any]:
        with self._linked_scope() as conn:
            record = self._require(record_id, conn=conn)
            cascaded = 0
            if record.get("original_feedback_id") is None:
                cascaded = self.store.delete_many(FilterCriteria().eq("original_feedback_id", record_id), conn=conn)
            self.store.delete_by_id(record_id, conn=conn)

        _log_event("feedback_deleted", company=self.store.company_code, id=record_id, cascaded=cascaded)
        return {"id": record_id, "cascadedReviews": cascaded}

    def add_comment(self, record_id: int, comment: Any, user: Any = None) -> Record:
        text = clean_str(comment, 5000)
        if not text:
            raise InvalidRequest("Comment is required", errors={"comment": "Required."})
        entry = history_entry("Comment", _actor(user, "Anonymous"), text, self.clock())
        record = self.store.append_history(record_id, [entry])
        if record is None:
            raise NotFound()
        return record

    def submit_response(self, record_id: int, text: Any, rating: Any, submitted_by: Any = None) -> Record:
        if rating is not None and (isinstance(rating, bool) or not isinstance(rating, (int, float)) or not 1 <= rating <= 5):
            raise InvalidRequest("Invalid rating", errors={"rating": "Must be a number from 1 to 5."})
        now = self.clock()
        submitter = clean_actor(submitted_by)
        response = {
            "text": clean_str(text, 10000),
            "rating": rating,
            "submittedBy": submitter,
            "submittedAt": iso_utc(now),
        }
        entry = history_entry(
            "Response Submitted", submitter or "Anonymous", f"Response submitted with rating: {rating}/5", now
        )
        record = self.store.modify(
            record_id, lambda _cur: ({"response": response, "status": "Completed"}, [entry])
        )
        if record is None:
            raise NotFound()
        return record

    def assign_for_review(self, record_id: int, assignee: Any, assigned_by: Any = None) -> Record:
        assignee = clean_actor(assignee)
        if not assignee:
            raise InvalidRequest("Review assignee is required", errors={"reviewAssignedTo": "Required."})
        entry = history_entry(
            "Updated", _actor(assigned_by, "System"), f"Assigned for review to {assignee}", self.clock()
        )
        record = self.store.modify(record_id, lambda _cur: ({"review_assigned_to": assignee}, [entry]))
        if record is None:
            raise NotFound()
        return record

    def update_review_status(
        self, record_id: int, review_status: Any, reviewed_by: Any = None, comments: Any = None
    ) -> Record:
        if review_status not in REVIEW_STATUSES:
            raise InvalidRequest("Invalid review status", errors={"reviewStatus": f"One of: {', '.join(REVIEW_STATUSES)}."})
        comments = clean_str(comments, 5000)
        details = _with_comment(f"Review status changed to {review_status}", comments)
        return self._apply_review(record_id, {"review_status": review_status}, details, reviewed_by, comments)

    def complete_review(
        self, record_id: int, review_status: Any, reviewed_by: Any = None, comments: Any = None
    ) -> Record:
        if review_status not in COMPLETION_STATUSES:
            raise InvalidRequest(
                "Invalid review status. Must be Approved or Rejected",
                errors={"reviewStatus": "One of: Approved, Rejected."},
            )
        comments = clean_str(comments, 5000)
        patch = {"review_status": review_status, "status": COMPLETION_STATUSES[review_status]}
        details = _with_comment(f"Review completed: {review_status}", comments)
        return self._apply_review(record_id, patch, details, reviewed_by, comments)

    def _apply_review(
        self, record_id: int, patch: Dict[str, Any], details: str, reviewed_by: Any, comments: Optional[str]
    ) -> Record:
        """Apply to the record, then mirror the same patch + entries onto its original as a second write."""
        now = self.clock()
        entries = [history_entry("Updated", _actor(reviewed_by, "System"), details, now)]
        if comments:
            entries.append(history_entry("Comment", _actor(reviewed_by, "Reviewer"), comments, now))

        def _mutate(_current: Record):
            return patch, entries

        with self._linked_scope() as conn:
            record = self.store.modify(record_id, _mutate, conn=conn)
            if record is None:
                raise NotFound()
            original_id = record.get("original_feedback_id")
            if original_id is not None:
                mirrored = self.store.modify(original_id, _mutate, conn=conn)
                _log_event(
                    "feedback_review_mirrored" if mirrored else "feedback_propagation_target_missing",
                    company=self.store.company_code,
                    source=record_id,
                    target=original_id,
                    review_status=patch["review_status"],
                )
        return record
