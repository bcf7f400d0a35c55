import logging

import pytest

from hrms.errors import InvalidRequest, NotFound
from hrms.services.lifecycle import LifecycleCoordinator, group_by_type, linkage_divergence


def _pair(lifecycle, **extra):
    data = {"feedbackType": "selfFeedback", "employeeId": "E1", "needsReview": True, "createdBy": "E1"}
    data.update(extra)
    created = lifecycle.create(data)
    return created.feedback, created.review


# ---- creation ----

def test_plain_create_defaults_and_history(lifecycle, clock):
    rec = lifecycle.create({"feedbackType": "requestedFeedback", "title": "Sprint retro"}).feedback

    assert rec["status"] == "Not Started"
    assert rec["review_status"] == "Pending"
    assert rec["original_feedback_id"] is None
    assert rec["history"] == [{
        "date": clock.now.isoformat() + "Z",
        "action": "Created",
        "user": "System",
        "details": "Feedback created",
    }]


def test_create_requires_valid_type(lifecycle, store):
    with pytest.raises(InvalidRequest) as exc:
        lifecycle.create({"title": "no type"})
    assert "feedbackType" in exc.value.errors

    with pytest.raises(InvalidRequest):
        lifecycle.create({"feedbackType": "gossip"})
    assert store.count_matching() == 0


def test_self_feedback_needing_review_creates_linked_pair(lifecycle, store):
    original, review = _pair(lifecycle)

    assert store.count_matching() == 2
    assert original["feedback_type"] == "selfFeedback"
    assert original["status"] == "In Progress"
    assert review["feedback_type"] == "feedbackToReview"
    assert review["original_feedback_id"] == original["id"]
    assert review["status"] == "Pending"
    assert len(original["history"]) == 1 and len(review["history"]) == 1
    assert original["history"][0]["details"] == "Self feedback created and sent for review"
    assert review["history"][0]["details"] == "Feedback submitted for review"
    assert review["history"][0]["user"] == "E1"


def test_needs_review_without_type_is_self_feedback(lifecycle, store):
    created = lifecycle.create({"employeeId": "E1", "needsReview": True})
    assert created.is_pair
    assert store.count_matching() == 2


def test_self_feedback_without_review_is_single(lifecycle, store):
    created = lifecycle.create({"feedbackType": "selfFeedback", "needsReview": False})
    assert not created.is_pair
    assert store.count_matching() == 1


# ---- update & propagation ----

def test_status_change_propagates_both_directions(lifecycle):
    original, review = _pair(lifecycle)

    lifecycle.update(original["id"], {"status": "Completed", "updatedBy": "M1"})
    assert lifecycle.get(review["id"])["status"] == "Completed"

    lifecycle.update(review["id"], {"status": "In Progress"})
    assert lifecycle.get(original["id"])["status"] == "In Progress"


def test_propagation_adds_no_history_on_counterpart(lifecycle):
    original, review = _pair(lifecycle)

    updated = lifecycle.update(original["id"], {"status": "Completed", "updatedBy": "M1"})

    assert updated["history"][-1]["details"] == "Status changed from In Progress to Completed"
    assert updated["history"][-1]["user"] == "M1"
    assert len(lifecycle.get(review["id"])["history"]) == 1


def test_update_without_status_does_not_propagate(lifecycle):
    original, review = _pair(lifecycle)
    lifecycle.update(original["id"], {"title": "renamed"})
    assert lifecycle.get(review["id"])["status"] == "Pending"
    assert len(lifecycle.get(original["id"])["history"]) == 1


def test_update_with_missing_counterpart_still_succeeds(lifecycle, store):
    original, review = _pair(lifecycle)
    store.delete_by_id(original["id"])

    out = lifecycle.update(review["id"], {"status": "Completed"})
    assert out["status"] == "Completed"


def test_update_ignores_server_fields_and_keeps_history(lifecycle):
    rec = lifecycle.create({"feedbackType": "requestedFeedback"}).feedback
    out = lifecycle.update(rec["id"], {"history": [], "id": 42, "status": "Pending"})
    assert out["id"] == rec["id"]
    assert len(out["history"]) == 2


def test_update_rejects_linkage_change(lifecycle):
    original, review = _pair(lifecycle)
    with pytest.raises(InvalidRequest):
        lifecycle.update(review["id"], {"originalFeedbackId": original["id"] + 100})
    with pytest.raises(InvalidRequest):
        lifecycle.update(original["id"], {"feedbackType": "anonymousFeedback"})
    # repeating the stored value is fine
    lifecycle.update(review["id"], {"feedbackType": "feedbackToReview", "originalFeedbackId": original["id"]})


def test_update_unknown_record(lifecycle):
    with pytest.raises(NotFound):
        lifecycle.update(404, {"status": "Completed"})


def test_invalid_enum_rejected_before_mutation(lifecycle):
    rec = lifecycle.create({"feedbackType": "requestedFeedback"}).feedback
    with pytest.raises(InvalidRequest):
        lifecycle.update(rec["id"], {"status": "Done"})
    assert lifecycle.get(rec["id"])["status"] == "Not Started"


# ---- history, comments, responses ----

def test_history_is_append_only_across_operations(lifecycle):
    original, review = _pair(lifecycle)
    rid = review["id"]
    seen = [list(lifecycle.get_history(rid))]

    lifecycle.add_comment(rid, "looks good", "M1")
    seen.append(lifecycle.get_history(rid))
    lifecycle.assign_for_review(rid, "M1", "HR")
    seen.append(lifecycle.get_history(rid))
    lifecycle.update(rid, {"status": "In Progress"})
    seen.append(lifecycle.get_history(rid))
    lifecycle.update_review_status(rid, "Rejected", "M1", "needs detail")
    seen.append(lifecycle.get_history(rid))
    lifecycle.submit_response(rid, "thanks", 4, "E1")
    seen.append(lifecycle.get_history(rid))

    for before, after in zip(seen, seen[1:]):
        assert len(after) >= len(before)
        assert after[: len(before)] == before


def test_add_comment(lifecycle):
    rec = lifecycle.create({"feedbackType": "requestedFeedback"}).feedback
    out = lifecycle.add_comment(rec["id"], "  nice   work ", None)
    assert out["history"][-1]["action"] == "Comment"
    assert out["history"][-1]["details"] == "nice work"
    assert out["history"][-1]["user"] == "Anonymous"

    with pytest.raises(InvalidRequest):
        lifecycle.add_comment(rec["id"], "   ", "M1")
    with pytest.raises(NotFound):
        lifecycle.add_comment(999, "hi", "M1")


def test_submit_response_completes_without_propagation(lifecycle, clock):
    original, review = _pair(lifecycle)
    out = lifecycle.submit_response(review["id"], "Agreed", 5, "M1")

    assert out["status"] == "Completed"
    assert out["response"] == {
        "text": "Agreed", "rating": 5, "submittedBy": "M1", "submittedAt": clock.now.isoformat() + "Z",
    }
    assert out["history"][-1]["details"] == "Response submitted with rating: 5/5"
    assert lifecycle.get(original["id"])["status"] == "In Progress"


@pytest.mark.parametrize("rating", [0, 6, "5", True])
def test_submit_response_rejects_bad_rating(lifecycle, rating):
    rec = lifecycle.create({"feedbackType": "requestedFeedback"}).feedback
    with pytest.raises(InvalidRequest):
        lifecycle.submit_response(rec["id"], "x", rating)


def test_assign_for_review(lifecycle):
    rec = lifecycle.create({"feedbackType": "feedbackToReview"}).feedback
    out = lifecycle.assign_for_review(rec["id"], "M7", None)
    assert out["review_assigned_to"] == "M7"
    assert out["history"][-1] == {
        "date": out["history"][-1]["date"],
        "action": "Updated",
        "user": "System",
        "details": "Assigned for review to M7",
    }
    with pytest.raises(InvalidRequest):
        lifecycle.assign_for_review(rec["id"], "", "HR")


# ---- review status ----

def test_example_scenario_review_approval_mirrors(lifecycle, store):
    created = lifecycle.create({"employeeId": "E1", "needsReview": True})
    assert store.handle.company_code == "ACME"
    original, review = created.feedback, created.review

    linked = lifecycle.get_linked(review["id"])
    assert linked["id"] == original["id"]

    lifecycle.update_review_status(review["id"], "Approved")
    assert lifecycle.get(review["id"])["review_status"] == "Approved"
    assert lifecycle.get(original["id"])["review_status"] == "Approved"


def test_review_status_comment_mirrored_with_history(lifecycle):
    original, review = _pair(lifecycle)
    lifecycle.update_review_status(review["id"], "Rejected", "M1", "missing goals")

    for rec_id in (review["id"], original["id"]):
        tail = lifecycle.get_history(rec_id)[-2:]
        assert tail[0]["details"] == "Review status changed to Rejected: missing goals"
        assert tail[0]["user"] == "M1"
        assert tail[1] == {**tail[1], "action": "Comment", "details": "missing goals", "user": "M1"}


def test_review_status_on_original_does_not_touch_review(lifecycle):
    original, review = _pair(lifecycle)
    lifecycle.update_review_status(original["id"], "Approved")
    assert lifecycle.get(review["id"])["review_status"] == "Pending"


def test_review_status_validation(lifecycle):
    original, review = _pair(lifecycle)
    with pytest.raises(InvalidRequest):
        lifecycle.update_review_status(review["id"], "Maybe")
    with pytest.raises(InvalidRequest):
        lifecycle.complete_review(review["id"], "Pending")
    with pytest.raises(NotFound):
        lifecycle.update_review_status(999, "Approved")


@pytest.mark.parametrize("outcome,status", [("Approved", "Completed"), ("Rejected", "Rejected")])
def test_complete_review_derives_status_on_both(lifecycle, outcome, status):
    original, review = _pair(lifecycle)
    lifecycle.complete_review(review["id"], outcome, "M1")

    for rec_id in (review["id"], original["id"]):
        rec = lifecycle.get(rec_id)
        assert rec["review_status"] == outcome
        assert rec["status"] == status
        assert rec["history"][-1]["details"] == f"Review completed: {outcome}"


def test_review_with_missing_original_is_swallowed(lifecycle, store):
    original, review = _pair(lifecycle)
    store.delete_by_id(original["id"])
    out = lifecycle.complete_review(review["id"], "Approved")
    assert out["status"] == "Completed"


# ---- linked lookup & delete ----

def test_get_linked_both_directions_and_empty(lifecycle):
    original, review = _pair(lifecycle)
    lone = lifecycle.create({"feedbackType": "requestedFeedback"}).feedback

    assert lifecycle.get_linked(original["id"])["id"] == review["id"]
    assert lifecycle.get_linked(review["id"])["id"] == original["id"]
    assert lifecycle.get_linked(lone["id"]) is None
    with pytest.raises(NotFound):
        lifecycle.get_linked(999)


def test_delete_original_cascades_to_review(lifecycle, store):
    original, review = _pair(lifecycle)
    result = lifecycle.delete(original["id"])
    assert result == {"id": original["id"], "cascadedReviews": 1}
    assert store.count_matching() == 0


def test_delete_review_leaves_original(lifecycle, store):
    original, review = _pair(lifecycle)
    lifecycle.delete(review["id"])
    assert store.find_by_id(original["id"]) is not None
    with pytest.raises(NotFound):
        lifecycle.delete(review["id"])


# ---- transactional variant ----

def test_transactional_mode_keeps_pair_semantics(store):
    tx = LifecycleCoordinator(store, transactional=True)
    created = tx.create({"feedbackType": "selfFeedback", "needsReview": True})
    original, review = created.feedback, created.review

    tx.update(original["id"], {"status": "Completed"})
    assert tx.get(review["id"])["status"] == "Completed"

    tx.complete_review(review["id"], "Rejected")
    assert tx.get(original["id"])["review_status"] == "Rejected"

    assert tx.delete(original["id"])["cascadedReviews"] == 1
    assert store.count_matching() == 0


def test_transactional_pair_creation_rolls_back_on_failure(store, monkeypatch):
    tx = LifecycleCoordinator(store, transactional=True)
    real_insert = store.insert
    calls = []

    def flaky_insert(values, conn=None):
        calls.append(values["feedback_type"])
        if len(calls) == 2:
            raise RuntimeError("second insert failed")
        return real_insert(values, conn=conn)

    monkeypatch.setattr(store, "insert", flaky_insert)
    with pytest.raises(RuntimeError):
        tx.create({"feedbackType": "selfFeedback", "needsReview": True})
    monkeypatch.undo()
    assert store.count_matching() == 0


def test_default_mode_leaves_orphan_on_second_insert_failure(lifecycle, store, monkeypatch):
    real_insert = store.insert
    calls = []

    def flaky_insert(values, conn=None):
        calls.append(values["feedback_type"])
        if len(calls) == 2:
            raise RuntimeError("second insert failed")
        return real_insert(values, conn=conn)

    monkeypatch.setattr(store, "insert", flaky_insert)
    with pytest.raises(RuntimeError):
        lifecycle.create({"feedbackType": "selfFeedback", "needsReview": True})
    monkeypatch.undo()
    assert store.count_matching() == 1


# ---- linkage divergence ----

def test_linkage_divergence_flagged_not_fixed(lifecycle, caplog):
    with caplog.at_level(logging.WARNING, logger="hrms.services.lifecycle"):
        rec = lifecycle.create({"feedbackType": "feedbackToReview"}).feedback
    assert linkage_divergence(rec)
    assert "feedback_linkage_divergence" in caplog.text
    assert lifecycle.get(rec["id"])["feedback_type"] == "feedbackToReview"

    original, review = _pair(lifecycle)
    assert not linkage_divergence(original)
    assert not linkage_divergence(review)


# ---- listings ----

def test_list_feedbacks_groups_filters_and_paginates(lifecycle):
    for i in range(3):
        lifecycle.create({"feedbackType": "requestedFeedback", "title": f"Peer review {i}",
                          "employee": {"id": "E9", "name": "Jane Roe"}})
    lifecycle.create({"feedbackType": "anonymousFeedback", "title": "Culture"})

    page = lifecycle.list_feedbacks(search_term="jane", sort_by="title", sort_direction="asc", page=2, limit=2)
    assert page["total"] == 3
    assert page["totalPages"] == 2
    assert [r["title"] for r in page["groups"]["requestedFeedback"]] == ["Peer review 2"]
    assert page["groups"]["anonymousFeedback"] == []

    by_ref = lifecycle.list_feedbacks(employee="e9")
    assert by_ref["total"] == 3

    with pytest.raises(InvalidRequest):
        lifecycle.list_feedbacks(sort_by="salary")


def test_list_by_type_and_employee(lifecycle):
    lifecycle.create({"feedbackType": "requestedFeedback", "employeeId": "E1"})
    lifecycle.create({"feedbackType": "anonymousFeedback", "createdBy": "E1"})
    lifecycle.create({"feedbackType": "anonymousFeedback", "employeeId": "E2"})

    assert len(lifecycle.list_by_type("anonymousFeedback")) == 2
    assert len(lifecycle.list_by_employee("E1")) == 2
    with pytest.raises(InvalidRequest):
        lifecycle.list_by_type("bogus")


def test_list_by_user_applies_per_type_rules(lifecycle):
    lifecycle.create({"feedbackType": "selfFeedback", "employeeId": "U1"})
    lifecycle.create({"feedbackType": "selfFeedback", "createdBy": "U1", "employeeId": "X"})
    lifecycle.create({"feedbackType": "requestedFeedback", "createdBy": "U1"})
    lifecycle.create({"feedbackType": "feedbackToReview", "reviewAssignedTo": "U1"})
    lifecycle.create({"feedbackType": "anonymousFeedback", "manager": "U1"})

    grouped = lifecycle.list_by_user("U1")
    assert {k: len(v) for k, v in grouped.items()} == {
        "selfFeedback": 1,
        "requestedFeedback": 1,
        "feedbackToReview": 1,
        "anonymousFeedback": 0,
    }


def test_list_to_review_only_pending_assigned_reviews(lifecycle):
    original, review = _pair(lifecycle)
    lifecycle.assign_for_review(review["id"], "M1")
    other = lifecycle.create({"feedbackType": "feedbackToReview", "reviewAssignedTo": "M1"}).feedback
    lifecycle.update_review_status(other["id"], "Approved")

    assert [r["id"] for r in lifecycle.list_to_review("M1")] == [review["id"]]


def test_group_by_type_has_every_bucket():
    assert group_by_type([]) == {
        "selfFeedback": [], "requestedFeedback": [], "feedbackToReview": [], "anonymousFeedback": [],
    }


def test_search_and_employee_filters_must_both_match(lifecycle):
    both = lifecycle.create({"feedbackType": "requestedFeedback", "title": "Jane review",
                             "employee": {"id": "E2", "name": "Bob"}}).feedback
    lifecycle.create({"feedbackType": "requestedFeedback", "title": "Quarterly",
                      "employee": {"id": "E3", "name": "Jane"}})

    page = lifecycle.list_feedbacks(search_term="jane", employee="bob")
    assert page["total"] == 1
    assert [r["id"] for r in page["groups"]["requestedFeedback"]] == [both["id"]]
    assert lifecycle.list_feedbacks(search_term="jane")["total"] == 2


def test_long_actor_ids_are_stored_whole(lifecycle):
    long_id = "EMP-" + "x" * 76
    rec = lifecycle.create({"feedbackType": "selfFeedback", "employeeId": long_id,
                            "manager": {"id": long_id, "name": "Lead"}}).feedback

    assert rec["employee_id"] == long_id
    assert rec["manager_ref"] == long_id
    assert [r["id"] for r in lifecycle.list_by_employee(long_id)] == [rec["id"]]
    assert [r["id"] for r in lifecycle.list_by_user(long_id)["selfFeedback"]] == [rec["id"]]
    assert lifecycle.list_by_employee(long_id[:64]) == []


def test_oversized_id_is_not_found(lifecycle):
    with pytest.raises(NotFound):
        lifecycle.get(10 ** 30)
    with pytest.raises(NotFound):
        lifecycle.update(2 ** 63, {"title": "x"})
