"""
Feedback analytics: bucketed counts per tenant, or scoped to one user's involvement.

`total` is the sum of the four type buckets, not a separate count.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from .feedback_store import FeedbackStore, utcnow
from .filters import FilterCriteria, FilterOperator, cond

_TYPE_BUCKETS = (
    ("selfFeedback", "selfFeedback"),
    ("requestedFeedback", "requestedFeedback"),
    ("feedbackToReview", "feedbackToReview"),
    ("anonymousFeedback", "anonymousFeedback"),
)
_STATUS_BUCKETS = (
    ("notStarted", "Not Started"),
    ("inProgress", "In Progress"),
    ("completed", "Completed"),
    ("pending", "Pending"),
)
_PRIORITY_BUCKETS = (
    ("low", "Low"),
    ("medium", "Medium"),
    ("high", "High"),
    ("critical", "Critical"),
)


def end_of_week(now: datetime) -> datetime:
    """now + (7 - day) days, day counted from Sunday = 0 (so Sunday -> next Sunday)."""
    day = now.isoweekday() % 7
    return now + timedelta(days=7 - day)


def overdue_criteria(now: datetime) -> FilterCriteria:
    return (
        FilterCriteria()
        .add("due_date", FilterOperator.LT, now)
        .add("status", FilterOperator.NE, "Completed")
    )


def due_this_week_criteria(now: datetime) -> FilterCriteria:
    return (
        FilterCriteria()
        .add("due_date", FilterOperator.GTE, now)
        .add("due_date", FilterOperator.LTE, end_of_week(now))
        .add("status", FilterOperator.NE, "Completed")
    )


def _involving(criteria: FilterCriteria, user_id: str, *fields: str) -> FilterCriteria:
    return criteria.either(*[cond(f, FilterOperator.EQ, user_id) for f in fields])


class AnalyticsAggregator:
    def __init__(self, store: FeedbackStore, *, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.clock = clock or store.clock or utcnow

    def _count(self, criteria: FilterCriteria) -> int:
        return self.store.count_matching(criteria)

    def tenant_analytics(self) -> Dict:
        now = self.clock()
        by_type = {key: self._count(FilterCriteria().eq("feedback_type", value)) for key, value in _TYPE_BUCKETS}
        by_status = {key: self._count(FilterCriteria().eq("status", value)) for key, value in _STATUS_BUCKETS}
        by_priority = {key: self._count(FilterCriteria().eq("priority", value)) for key, value in _PRIORITY_BUCKETS}
        return {
            "total": sum(by_type.values()),
            "byType": by_type,
            "byStatus": by_status,
            "byPriority": by_priority,
            "overdue": self._count(overdue_criteria(now)),
            "dueThisWeek": self._count(due_this_week_criteria(now)),
        }

    def user_stats(self, user_id: str) -> Dict:
        now = self.clock()
        involved = ("employee_id", "created_by", "review_assigned_to")

        by_type = {
            "selfFeedback": self._count(
                FilterCriteria().eq("feedback_type", "selfFeedback").eq("employee_id", user_id)
            ),
            "requestedFeedback": self._count(
                _involving(FilterCriteria().eq("feedback_type", "requestedFeedback"), user_id, "employee_id", "created_by")
            ),
            "feedbackToReview": self._count(
                FilterCriteria()
                .eq("feedback_type", "feedbackToReview")
                .eq("review_assigned_to", user_id)
                .eq("review_status", "Pending")
            ),
            "anonymousFeedback": self._count(
                FilterCriteria().eq("feedback_type", "anonymousFeedback").eq("employee_id", user_id)
            ),
        }
        by_status = {
            key: self._count(_involving(FilterCriteria().eq("status", value), user_id, *involved))
            for key, value in _STATUS_BUCKETS
        }
        return {
            "total": sum(by_type.values()),
            "byType": by_type,
            "byStatus": by_status,
            "overdue": self._count(_involving(overdue_criteria(now), user_id, *involved)),
            "dueThisWeek": self._count(_involving(due_this_week_criteria(now), user_id, *involved)),
        }
