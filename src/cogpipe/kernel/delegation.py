"""
Task Delegation Tracker: the "boomerang" protocol as an explicit state machine.

A work order goes out (assigned), may be picked up (in_progress), comes back
with a result (returned), and is then verified or rejected. Abandonment is
modelled as a forced rejection from assigned or in_progress; no timeouts are
applied automatically.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, FrozenSet, List, Optional, Union

from . import ids
from .errors import InvalidTransitionError, ValidationError
from .schema import DelegationEvent, DelegationRecord, DelegationStatus
from .store import ArtifactStore, utc_now

logger = logging.getLogger(__name__)

S = DelegationStatus

TRANSITIONS: Dict[DelegationStatus, FrozenSet[DelegationStatus]] = {
    S.ASSIGNED: frozenset({S.IN_PROGRESS, S.RETURNED}),
    S.IN_PROGRESS: frozenset({S.RETURNED}),
    S.RETURNED: frozenset({S.VERIFIED, S.REJECTED}),
    S.VERIFIED: frozenset(),
    S.REJECTED: frozenset(),
}

# Edges only an explicit force may take (abandonment).
FORCED_TRANSITIONS: Dict[DelegationStatus, FrozenSet[DelegationStatus]] = {
    S.ASSIGNED: frozenset({S.REJECTED}),
    S.IN_PROGRESS: frozenset({S.REJECTED}),
}


def is_allowed(current: DelegationStatus, new: DelegationStatus, force: bool = False) -> bool:
    if new in TRANSITIONS[current]:
        return True
    return force and new in FORCED_TRANSITIONS.get(current, frozenset())


class DelegationTracker:
    """
    Transitions are applied with a conditional write in the store, so
    trackers on separate connections to one database cannot both move a task
    out of the same status.
    """

    def __init__(self, store: ArtifactStore) -> None:
        self._store = store

    def assign(self, record: Union[DelegationRecord, Dict[str, Any]]) -> DelegationRecord:
        if isinstance(record, dict):
            record = DelegationRecord.model_validate(record)
        if record.status != S.ASSIGNED:
            raise InvalidTransitionError(
                f"New delegations start as assigned, not {record.status.value}",
                details={"task_id": record.task_id},
            )

        now = utc_now()
        record = record.model_copy(
            update={
                "task_id": record.task_id or ids.generate(ids.TASK_KIND),
                "created_at": now,
                "updated_at": now,
            }
        )
        event = DelegationEvent(
            task_id=record.task_id,
            to_status=S.ASSIGNED,
            payload={"origin": record.origin, "destination": record.destination},
            at=now,
        )
        if not self._store.save_delegation(record, event):
            raise ValidationError(
                f"Delegation {record.task_id} already exists",
                details={"task_id": record.task_id},
            )
        logger.info("Assigned %s: %s -> %s", record.task_id, record.origin, record.destination)
        return record

    def transition(
        self,
        task_id: str,
        new_status: Union[DelegationStatus, str],
        payload: Optional[Dict[str, Any]] = None,
        force: bool = False,
    ) -> DelegationRecord:
        """
        Move a delegation along one edge of the transition table.

        payload may carry "result_ref" (required when returning) and any
        notes, which are kept in the transition history. If another writer
        moves the task first, the transition is judged again from the status
        it left behind.
        """
        try:
            new_status = DelegationStatus(new_status)
        except ValueError:
            raise ValidationError(f"Unknown delegation status: {new_status}") from None
        payload = dict(payload or {})

        while True:
            record = self._store.load_delegation(task_id)
            current = record.status
            if not is_allowed(current, new_status, force):
                raise InvalidTransitionError(
                    f"Cannot move {task_id} from {current.value} to {new_status.value}",
                    details={"task_id": task_id, "from": current.value, "to": new_status.value},
                )

            update: Dict[str, Any] = {"status": new_status, "updated_at": utc_now()}
            if new_status == S.RETURNED:
                result_ref = payload.get("result_ref")
                if not result_ref:
                    raise ValidationError(
                        f"Returning {task_id} requires a result_ref",
                        details={"task_id": task_id},
                    )
                update["result_ref"] = result_ref

            updated = record.model_copy(update=update)
            event = DelegationEvent(
                task_id=task_id,
                from_status=current,
                to_status=new_status,
                payload=payload,
                forced=force and new_status not in TRANSITIONS[current],
                at=update["updated_at"],
            )
            if self._store.save_delegation(updated, event, expected_status=current):
                break
            logger.debug("Delegation %s left %s concurrently; rechecking", task_id, current.value)

        logger.info("Delegation %s: %s -> %s", task_id, current.value, new_status.value)
        return updated

    def get(self, task_id: str) -> DelegationRecord:
        return self._store.load_delegation(task_id)

    def list_by_status(self, status: Union[DelegationStatus, str]) -> List[DelegationRecord]:
        return self._store.list_delegations(DelegationStatus(status))

    def history(self, task_id: str) -> List[DelegationEvent]:
        self._store.load_delegation(task_id)
        return self._store.delegation_events(task_id)
