from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from hrms.errors import InvalidRequest, StorageUnavailable
from hrms.models.feedback import ACTOR_FIELD, IMMUTABLE_FIELDS, history_entry, to_columns
from hrms.utils.validators import clean_actor, parse_id_list
from .feedback_store import FeedbackStore
from .filters import FilterCriteria, FilterOperator

log = logging.getLogger(__name__)


def _ids_or_400(ids: Any) -> List[int]:
    try:
        parsed = parse_id_list(ids)
    except ValueError as exc:
        raise InvalidRequest("Invalid feedback ids", errors={"ids": str(exc)}) from None
    if not parsed:
        raise InvalidRequest("Feedback ids are required", errors={"ids": "Provide at least one id."})
    return parsed


class BulkOperationCoordinator:
    """
    Homogeneous update/delete over caller-supplied ids.

    Updates run record by record; a storage failure on one id is reported in
    failedIds and leaves the records already written in place.
    """

    def __init__(self, store: FeedbackStore, *, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.clock = clock or store.clock

    def bulk_update(self, ids: Any, patch: Any, actor: Optional[str] = None) -> Dict[str, Any]:
        record_ids = _ids_or_400(ids)
        if not isinstance(patch, dict) or not patch:
            raise InvalidRequest("Update data is required", errors={"updateData": "Provide at least one field."})

        locked = [k for k in IMMUTABLE_FIELDS if k in patch]
        if locked:
            raise InvalidRequest(
                "Bulk update cannot change these fields",
                errors={k: "Cannot be changed." for k in locked},
            )
        values, errors = to_columns(patch)
        if errors:
            raise InvalidRequest("Invalid bulk update", errors=errors)

        # one entry, one timestamp, shared by every record in the batch
        entry = history_entry(
            "Updated",
            clean_actor(patch.get(ACTOR_FIELD) or actor) or "System",
            f"Bulk update: {', '.join(patch.keys())}",
            self.clock(),
        )

        updated, failed = [], []
        for record_id in record_ids:
            try:
                record = self.store.modify(record_id, lambda _cur: (values, [entry]))
            except StorageUnavailable:
                log.warning(json.dumps({
                    "event": "bulk_update_record_failed",
                    "company": self.store.company_code,
                    "id": record_id,
                }))
                failed.append(record_id)
                continue
            if record is not None:
                updated.append(record)

        log.info(json.dumps({
            "event": "bulk_update",
            "company": self.store.company_code,
            "requested": len(record_ids),
            "updated": len(updated),
            "failed": len(failed),
        }))
        return {"updatedCount": len(updated), "feedbacks": updated, "failedIds": failed}

    def bulk_delete(self, ids: Any) -> Dict[str, int]:
        record_ids = _ids_or_400(ids)
        deleted = self.store.delete_many(FilterCriteria().add("id", FilterOperator.IN, record_ids))
        log.info(json.dumps({
            "event": "bulk_delete",
            "company": self.store.company_code,
            "requested": len(record_ids),
            "deleted": deleted,
        }))
        return {"deletedCount": deleted}
