"""Background execution of queued agent runs and triggered workflows."""

from __future__ import annotations

import logging
from typing import Any, Callable

from agentc2.agents.resolver import AgentResolver
from agentc2.events import Event, EventBus, EventType
from agentc2.models.records import (
    AgentRunRecord,
    RunStatus,
    SubscriptionStatus,
    utcnow,
)
from agentc2.queue import Job, JobPriority, JobQueue
from agentc2.storage.json_store import Database
from agentc2.workflows.service import WorkflowService

logger = logging.getLogger(__name__)

_AGENT_EVENTS = (EventType.TRIGGER_FIRE, EventType.AGENT_INVOKE)


class AgentInvoker:
    """Turns fire events into queue jobs and executes them.

    Usage:
        invoker = AgentInvoker(db, resolver, queue, workflow_service, bus)
        invoker.attach()
        # every TRIGGER_FIRE / AGENT_INVOKE / WORKFLOW_TRIGGER on the bus
        # now becomes a job on the queue
    """

    def __init__(
        self,
        db: Database,
        resolver: AgentResolver,
        queue: JobQueue,
        workflow_service: WorkflowService | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self.db = db
        self.resolver = resolver
        self.queue = queue
        self.workflow_service = workflow_service
        self.bus = bus
        self._unsubscribers: list[Callable[[], None]] = []

    def attach(self) -> None:
        if self.bus is None or self._unsubscribers:
            return
        for event_type in _AGENT_EVENTS:
            self._unsubscribers.append(self.bus.subscribe(event_type, self._on_agent_event))
        self._unsubscribers.append(
            self.bus.subscribe(EventType.WORKFLOW_TRIGGER, self._on_workflow_event)
        )

    def detach(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

    def priority_for(self, organization_id: str | None) -> JobPriority:
        """Paying tenants are served first, tenants in arrears last."""
        subscription = self.db.subscriptions.get(organization_id)
        if subscription is None:
            return JobPriority.NORMAL
        if subscription.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
            return JobPriority.HIGH
        if subscription.status == SubscriptionStatus.PAST_DUE:
            return JobPriority.LOW
        return JobPriority.NORMAL

    async def _on_agent_event(self, event: Event) -> None:
        run_id = event.data.get("run_id")
        if not run_id:
            logger.warning("Ignoring %s without run_id", event.name)
            return
        organization_id = event.data.get("organization_id")
        await self.queue.submit(
            organization_id=organization_id or "",
            label=f"agent:{event.data.get('agent_slug', '?')}",
            priority=self.priority_for(organization_id),
            fn=self.run_agent,
            run_id=run_id,
        )

    async def _on_workflow_event(self, event: Event) -> None:
        if self.workflow_service is None:
            logger.warning("Workflow trigger received but no workflow service configured")
            return
        data = event.data
        organization_id = data.get("organization_id")
        await self.queue.submit(
            organization_id=organization_id or "",
            label=f"workflow:{data.get('workflow_slug', '?')}",
            priority=self.priority_for(organization_id),
            fn=self.run_workflow,
            workflow_slug=data.get("workflow_slug") or data.get("workflow_id"),
            input=data.get("input"),
            context=data.get("context") or {},
            source=data.get("source", "trigger"),
            trigger_id=data.get("trigger_id"),
            run_id=data.get("run_id"),
        )

    async def run_agent(self, run_id: str) -> AgentRunRecord | None:
        """Execute a QUEUED run to completion.

        Raises:
            Exception: Whatever the agent raised, after the run is marked FAILED
        """
        run = self.db.agent_runs.get(run_id)
        if run is None:
            logger.warning("Agent run %s not found", run_id)
            return None
        if run.status != RunStatus.QUEUED:
            logger.info("Agent run %s already %s, skipping", run_id, run.status.value)
            return run

        run.status = RunStatus.RUNNING
        run.started_at = utcnow()
        self.db.agent_runs.save(run)

        agent = None
        try:
            agent = await self.resolver.resolve(run.agent_slug, run.context)
            response = await agent.generate(run.input, max_steps=run.max_steps)
        except Exception as e:
            self._finish(run, RunStatus.FAILED, error=str(e))
            logger.error("Agent run %s (%s) failed: %s", run.id, run.agent_slug, e)
            await self._publish(EventType.AGENT_RUN_FAILED, run)
            raise
        finally:
            if agent is not None:
                await agent.provider.close()

        run.output = response.text
        run.total_tokens = response.total_tokens
        self._finish(run, RunStatus.COMPLETED)
        logger.info("Agent run %s (%s) completed in %dms", run.id, run.agent_slug, run.duration_ms)
        await self._publish(EventType.AGENT_RUN_COMPLETE, run)
        return run

    async def invoke(
        self,
        agent_slug: str,
        input: str,
        context: dict[str, Any] | None = None,
        max_steps: int | None = None,
        source: str = "api",
        wait: bool = True,
    ) -> tuple[AgentRunRecord, Job]:
        """Queue a run of ``agent_slug`` and, by default, wait for it."""
        agent = self.resolver.get_record(agent_slug)
        run = self.db.agent_runs.save(
            AgentRunRecord(
                agent_id=agent.id,
                agent_slug=agent.slug,
                input=input,
                context=context or {},
                max_steps=max_steps,
                source=source,
            )
        )
        job = await self.queue.submit(
            organization_id=agent.organization_id or "",
            label=f"agent:{agent.slug}",
            priority=self.priority_for(agent.organization_id),
            fn=self.run_agent,
            run_id=run.id,
        )
        if wait:
            await self.queue.wait(job.id)
            run = self.db.agent_runs.get(run.id) or run
        return run, job

    async def run_workflow(
        self,
        workflow_slug: str,
        input: Any = None,
        context: dict[str, Any] | None = None,
        source: str = "trigger",
        trigger_id: str | None = None,
        run_id: str | None = None,
    ) -> str:
        """Run a triggered workflow, starting its QUEUED run record if given."""
        if run_id:
            queued = self.db.workflow_runs.get(run_id)
            if queued is not None and queued.status != RunStatus.QUEUED:
                logger.info("Workflow run %s already %s, skipping", run_id, queued.status.value)
                return run_id

        run, result = await self.workflow_service.execute(
            workflow_slug,
            input,
            request_context=context,
            source=source,
            trigger_id=trigger_id,
            run_id=run_id,
        )
        logger.info("Triggered workflow run %s finished: %s", run.id, result.status)
        return run.id

    def _finish(self, run: AgentRunRecord, status: RunStatus, error: str | None = None) -> None:
        run.status = status
        run.error = error
        run.completed_at = utcnow()
        run.duration_ms = int((run.completed_at - run.started_at).total_seconds() * 1000)
        self.db.agent_runs.save(run)

    async def _publish(self, event_type: EventType, run: AgentRunRecord) -> None:
        if self.bus is None:
            return
        await self.bus.emit(
            Event(
                type=event_type,
                source="invoker",
                data={
                    "run_id": run.id,
                    "agent_slug": run.agent_slug,
                    "status": run.status.value,
                    "error": run.error,
                    "trigger_id": run.trigger_id,
                },
                correlation_id=run.id,
            )
        )
