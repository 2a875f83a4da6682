# Overview: Pairs every local mutation with a durable sync queue entry.

from __future__ import annotations

import logging
from typing import Callable

from sqlalchemy.orm import Session

from ..time_utils import utcnow
from ..validation import ValidationError
from .models import SyncQueueEntry
from .serializers import snapshot

logger = logging.getLogger(__name__)

SUPPORTED_ACTIONS = {
    "product": {"CREATE", "UPDATE", "DELETE"},
    "sale": {"CREATE", "UPDATE"},
    "cash_session": {"CREATE", "UPDATE"},
}


class MutationRecorder:
    """
    Stamps a mutated entity and queues a full snapshot of it.

    Must be called inside the caller's write transaction, after the entity
    change has been applied to the session, so that the change and its
    queue entry commit (or roll back) together.
    """

    def __init__(self, clock: Callable = utcnow):
        self.clock = clock

    def record(self, session: Session, entity_type: str, action: str, entity) -> SyncQueueEntry:
        allowed = SUPPORTED_ACTIONS.get(entity_type)
        if allowed is None:
            raise ValidationError(f"Unsupported entity type: {entity_type}")
        if action not in allowed:
            raise ValidationError(f"Unsupported action {action} for {entity_type}")

        entity.last_modified = self.clock()
        entity.synced = False
        entity.action = self._pending_action(entity, action)
        session.add(entity)
        session.flush()

        entry = SyncQueueEntry(
            entity_type=entity_type,
            entity_id=entity.id,
            action=action,
            payload=snapshot(session, entity_type, entity),
            created_at=entity.last_modified,
            status="PENDING",
        )
        session.add(entry)
        session.flush()
        logger.debug("Queued %s %s %s (entry %s)", action, entity_type, entity.id, entry.id)
        return entry

    @staticmethod
    def _pending_action(entity, action: str) -> str:
        # Until the server has the record, any later edit is still part of its creation
        if not entity.server_id and action == "UPDATE":
            return "CREATE"
        return action
