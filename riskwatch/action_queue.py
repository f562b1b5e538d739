"""
Action Queue Manager.

Creates, dedupes, resolves and expires durable work items for clinicians.
``upsert_pending_action`` is the idempotency boundary of the whole engine:
every producer creates work through it, never through a raw insert, so a
change event delivered N times yields one pending item per
``(patient_id, action_type, related_entity_id)``.

Expired items stay visible with status ``expired``.  Because the key only
constrains *pending* items, an expired item never blocks a fresh one for
the same key.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional

import structlog

from riskwatch.audit import AuditEventType, AuditTrail
from riskwatch.errors import ConflictError
from riskwatch.models import (
    ActionQueueItem,
    ActionStatus,
    ActionType,
    Priority,
    priority_rank,
    utcnow,
)
from riskwatch.store import ClinicalStore

logger = structlog.get_logger(__name__)


class ActionQueueManager:
    def __init__(
        self,
        store: ClinicalStore,
        audit: AuditTrail,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._audit = audit
        self._clock = clock

    def upsert_pending_action(
        self,
        patient_id: str,
        action_type: ActionType,
        related_entity_id: str,
        priority: Priority,
        due_at: datetime,
        title: str = "",
        description: str = "",
        correlation_id: Optional[str] = None,
    ) -> ActionQueueItem:
        """Return the pending item for this key, creating it if absent.

        An existing pending item is returned unchanged.
        """
        item, created = self._store.upsert_pending_action(ActionQueueItem(
            patient_id=patient_id,
            action_type=action_type,
            related_entity_id=related_entity_id,
            priority=priority,
            due_at=due_at,
            title=title,
            description=description,
            created_at=self._clock(),
        ))

        if created:
            logger.info(
                "action_created",
                action_id=item.action_id,
                patient_id=patient_id,
                action_type=action_type.value,
                priority=priority.value,
                due_at=due_at.isoformat(),
            )
            self._audit.record(
                AuditEventType.ACTION_CREATED,
                patient_id=patient_id,
                target_entity=item.action_id,
                correlation_id=correlation_id,
                action_type=action_type.value,
                related_entity_id=related_entity_id,
                priority=priority.value,
            )
        else:
            logger.debug(
                "action_deduplicated",
                action_id=item.action_id,
                patient_id=patient_id,
                action_type=action_type.value,
            )
        return item

    def get(self, action_id: str) -> ActionQueueItem:
        return self._store.get_action(action_id)

    def pending_for(
        self, patient_id: str, action_type: ActionType, related_entity_id: str
    ) -> Optional[ActionQueueItem]:
        items = self._store.list_actions(
            patient_id=patient_id,
            status=ActionStatus.PENDING,
            action_type=action_type,
            related_entity_id=related_entity_id,
        )
        return items[0] if items else None

    def list_pending(
        self,
        priority: Optional[Priority] = None,
        action_type: Optional[ActionType] = None,
    ) -> list[ActionQueueItem]:
        """Pending items, most urgent priority first, then oldest first."""
        items = self._store.list_actions(
            status=ActionStatus.PENDING,
            priority=priority,
            action_type=action_type,
        )
        items.sort(key=lambda i: (-priority_rank(i.priority), i.created_at))
        return items

    def resolve(
        self,
        action_id: str,
        status: ActionStatus,
        reviewer_id: str,
        note: str = "",
        outcome: Optional[bool] = None,
    ) -> ActionQueueItem:
        """Move a pending item to ``completed`` or ``declined``.

        Raises:
            ConflictError: the item is no longer pending.
        """
        if status not in (ActionStatus.COMPLETED, ActionStatus.DECLINED):
            raise ValueError(f"Reviewers cannot resolve an action to {status.value}")
        return self._store.transition_action(
            action_id,
            expected=ActionStatus.PENDING,
            status=status,
            resolved_at=self._clock(),
            resolved_by=reviewer_id,
            resolution_note=note,
            outcome=outcome,
        )

    def expire_overdue(self, now: Optional[datetime] = None) -> list[ActionQueueItem]:
        """Expiry sweep: pending items past ``due_at`` become ``expired``.

        An item resolved by a reviewer between the scan and the write keeps
        the reviewer's outcome.
        """
        now = now or self._clock()
        expired: list[ActionQueueItem] = []
        for item in self._store.list_overdue_actions(now):
            try:
                updated = self._store.transition_action(
                    item.action_id,
                    expected=ActionStatus.PENDING,
                    status=ActionStatus.EXPIRED,
                    resolved_at=now,
                    resolved_by="SYSTEM",
                )
            except ConflictError:
                logger.debug("expiry_skipped_resolved", action_id=item.action_id)
                continue
            expired.append(updated)
            self._audit.record(
                AuditEventType.ACTION_EXPIRED,
                patient_id=item.patient_id,
                target_entity=item.action_id,
                action_type=item.action_type.value,
                due_at=item.due_at.isoformat(),
            )

        if expired:
            logger.info("actions_expired", count=len(expired))
        return expired
