from datetime import datetime, timedelta

import pytest

from hrms.services.analytics import AnalyticsAggregator, end_of_week


def _make(lifecycle, **data):
    data.setdefault("feedbackType", "requestedFeedback")
    return lifecycle.create(data).feedback


@pytest.mark.parametrize("now,expected", [
    (datetime(2026, 3, 11, 10), datetime(2026, 3, 15, 10)),   # Wednesday -> Sunday
    (datetime(2026, 3, 14, 8), datetime(2026, 3, 15, 8)),     # Saturday -> Sunday
    (datetime(2026, 3, 15, 8), datetime(2026, 3, 22, 8)),     # Sunday -> next Sunday
])
def test_end_of_week_counts_from_sunday(now, expected):
    assert end_of_week(now) == expected


def test_overdue_classification(lifecycle, store, clock):
    yesterday = (clock.now - timedelta(days=1)).isoformat()
    rec = _make(lifecycle, dueDate=yesterday, status="In Progress")
    analytics = AnalyticsAggregator(store)

    assert analytics.tenant_analytics()["overdue"] == 1
    assert [r["id"] for r in lifecycle.list_overdue()] == [rec["id"]]

    lifecycle.update(rec["id"], {"status": "Completed"})
    assert analytics.tenant_analytics()["overdue"] == 0
    assert lifecycle.list_overdue() == []


def test_due_this_week_window(lifecycle, store, clock):
    inside = _make(lifecycle, dueDate=(clock.now + timedelta(days=2)).isoformat())
    _make(lifecycle, dueDate=(clock.now + timedelta(days=6)).isoformat())           # after Sunday
    _make(lifecycle, dueDate=(clock.now - timedelta(hours=1)).isoformat())          # already past
    _make(lifecycle, dueDate=(clock.now + timedelta(days=1)).isoformat(), status="Completed")

    assert [r["id"] for r in lifecycle.list_due_this_week()] == [inside["id"]]
    assert AnalyticsAggregator(store).tenant_analytics()["dueThisWeek"] == 1


def test_tenant_analytics_buckets(lifecycle, store):
    lifecycle.create({"feedbackType": "selfFeedback", "needsReview": True, "priority": "High"})
    _make(lifecycle, priority="Low", status="Completed")
    _make(lifecycle, feedbackType="anonymousFeedback")

    data = AnalyticsAggregator(store).tenant_analytics()

    assert data["byType"] == {
        "selfFeedback": 1, "requestedFeedback": 1, "feedbackToReview": 1, "anonymousFeedback": 1,
    }
    assert data["total"] == 4
    assert data["byStatus"] == {"notStarted": 1, "inProgress": 1, "completed": 1, "pending": 1}
    assert data["byPriority"] == {"low": 1, "medium": 0, "high": 2, "critical": 0}


def test_total_is_sum_of_type_buckets(store):
    # a row outside the four types is not counted
    store.insert({"feedback_type": "legacy", "status": "Not Started"})
    data = AnalyticsAggregator(store).tenant_analytics()
    assert data["total"] == 0
    assert data["byStatus"]["notStarted"] == 1


def test_user_stats_involvement_rules(lifecycle, store, clock):
    _make(lifecycle, feedbackType="selfFeedback", employeeId="U1")
    _make(lifecycle, feedbackType="selfFeedback", createdBy="U1", employeeId="X")
    _make(lifecycle, createdBy="U1", dueDate=(clock.now - timedelta(days=3)).isoformat())
    review = _make(lifecycle, feedbackType="feedbackToReview", reviewAssignedTo="U1")
    _make(lifecycle, feedbackType="feedbackToReview", reviewAssignedTo="U1", reviewStatus="Approved")
    _make(lifecycle, feedbackType="anonymousFeedback", employeeId="U2")

    stats = AnalyticsAggregator(store).user_stats("U1")

    assert stats["byType"] == {
        "selfFeedback": 1, "requestedFeedback": 1, "feedbackToReview": 1, "anonymousFeedback": 0,
    }
    assert stats["total"] == 3
    assert stats["byStatus"]["notStarted"] == 5
    assert stats["overdue"] == 1
    assert "byPriority" not in stats
    assert review["review_status"] == "Pending"
