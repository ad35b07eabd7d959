"""Match platform events to automation rules and create their runs."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional

from ..dispatch import EventDispatcher
from ..persistence.repository import WorkflowRepository
from .engine import build_idempotency_key, find_matching_rules
from .models import RunStatus, TriggerContext, WorkflowRun

logger = logging.getLogger(__name__)


class TriggerRouter:
    """Creates one PENDING run per matching rule and event.

    The ``<rule_id>:<trigger_type>:<event_id>`` key makes redelivered events
    harmless: a second delivery finds the open run and creates nothing.
    """

    def __init__(self, repository: WorkflowRepository, dispatcher: EventDispatcher) -> None:
        self._repository = repository
        self._dispatcher = dispatcher

    async def dispatch_trigger(
        self,
        trigger_type: str,
        organization_id: str,
        event_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        triggered_by: Optional[str] = None,
    ) -> List[str]:
        """Return the ids of the runs created for this event."""
        metadata = dict(metadata or {})
        event_id = event_id or str(uuid.uuid4())
        rules = await self._repository.list_rules(organization_id, trigger_type)
        matching = find_matching_rules(rules, trigger_type, organization_id, metadata)
        if not matching:
            logger.debug(f"No rules match {trigger_type} for organization {organization_id}")
            return []

        created: List[str] = []
        for rule in matching:
            key = build_idempotency_key(rule.id, trigger_type, event_id)
            existing = await self._repository.find_run_by_idempotency_key(key)
            if existing is not None and existing.status != RunStatus.FAILED:
                logger.info(f"Run {existing.run_id} already exists for trigger {key}")
                continue

            context = TriggerContext(
                trigger_type=trigger_type,
                trigger_event_id=event_id,
                organization_id=organization_id,
                metadata={**metadata, "triggered_by": triggered_by} if triggered_by else metadata,
            )
            run = WorkflowRun(
                run_id=str(uuid.uuid4()),
                automation_rule_id=rule.id,
                organization_id=organization_id,
                status=RunStatus.PENDING,
                trigger_context=context,
                idempotency_key=key,
            )
            if not await self._repository.create_run(run):
                continue
            await self._dispatcher.emit_workflow_run(
                rule.id,
                run.run_id,
                organization_id,
                context.model_dump(mode="json"),
            )
            logger.info(f"Created run {run.run_id} for rule {rule.id} on {trigger_type}")
            created.append(run.run_id)
        return created
