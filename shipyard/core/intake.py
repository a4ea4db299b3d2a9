"""Event Intake — push notifications in, rollout plans out.

At most one revision is active (building or rolling out) at a time, and at
most one more waits behind it: a newer push replaces the waiting one.
Duplicate pushes of a revision that is waiting or active are reported and
dropped.

When a newer revision arrives while an older one is active, the older
plan is either cancelled (``supersede=cancel``, it ends ``aborted`` with
the newer revision named in its reason) or allowed to finish
(``supersede=finish``).  Either way the newer plan starts only after the
older one is terminal.  Every intake decision is journaled under the
``intake`` ledger key.
"""

from __future__ import annotations

import asyncio
import logging

from shipyard.core.artifact_builder import ArtifactBuilder
from shipyard.core.errors import BuildError, UnknownTargetError
from shipyard.core.rollout_ledger import RolloutLedger
from shipyard.core.scheduler import RolloutScheduler
from shipyard.models.events import IntakeReceipt, IntakeStatus, PushEvent
from shipyard.models.ledger import LedgerEntry
from shipyard.models.revisions import BuildConfig, Revision
from shipyard.models.rollout import RolloutPlan, RolloutPolicy, SupersedeMode

logger = logging.getLogger(__name__)

INTAKE_LEDGER_KEY = "intake"


class EventIntake:
    """Deduplicating, superseding front door for push events.

    Parameters
    ----------
    builder:
        Turns revisions into artifacts.
    scheduler:
        Creates and runs plans.
    ledger:
        Journal for intake decisions.
    build_config:
        Build configuration applied to every revision.
    policy:
        Rollout policy for plans created by intake.
    supersede:
        What to do with an active plan when a newer revision arrives.
    target_names:
        Explicit targets; None means every non-draining registered target.
    """

    def __init__(
        self,
        builder: ArtifactBuilder,
        scheduler: RolloutScheduler,
        ledger: RolloutLedger,
        *,
        build_config: BuildConfig | None = None,
        policy: RolloutPolicy | None = None,
        supersede: SupersedeMode = SupersedeMode.CANCEL,
        target_names: list[str] | None = None,
    ) -> None:
        self._builder = builder
        self._scheduler = scheduler
        self._ledger = ledger
        self.build_config = build_config or BuildConfig()
        self.policy = policy or RolloutPolicy()
        self.supersede = supersede
        self.target_names = target_names

        self._waiting: PushEvent | None = None
        self._active_revision: str | None = None
        self._active_plan: str | None = None
        self._worker: asyncio.Task[None] | None = None
        self._plans: dict[str, list[str]] = {}

    # ------------------------------------------------------------------
    # Endpoint
    # ------------------------------------------------------------------

    async def submit(self, event: PushEvent) -> IntakeReceipt:
        """Accept a push event, returning acceptance or dedup status."""
        rid = event.revision_id
        waiting = self._waiting.revision_id if self._waiting else None

        if rid in (self._active_revision, waiting):
            logger.info("Duplicate push for revision %s ignored", rid)
            return IntakeReceipt(
                revision_id=rid,
                status=IntakeStatus.DUPLICATE,
                detail="revision already queued or rolling out",
            )

        superseded: str | None = None
        if waiting is not None:
            superseded = waiting
            self._journal(waiting, "queued->superseded", f"superseded by {rid}")

        if self._active_revision is not None and self.supersede == SupersedeMode.CANCEL:
            superseded = superseded or self._active_revision
            if self._active_plan is not None:
                self._scheduler.cancel(
                    self._active_plan, reason=f"superseded by revision {rid}"
                )

        self._waiting = event
        self._journal(rid, "->queued", f"source {event.source_ref}")
        self._ensure_worker()
        return IntakeReceipt(
            revision_id=rid,
            status=IntakeStatus.ACCEPTED,
            superseded=superseded,
        )

    async def wait_idle(self) -> None:
        """Wait until every accepted revision has been processed."""
        while self._worker is not None and not self._worker.done():
            await asyncio.shield(self._worker)

    def plans_for(self, revision_id: str) -> list[str]:
        return list(self._plans.get(revision_id, []))

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.ensure_future(self._drain())

    async def _drain(self) -> None:
        while self._waiting is not None:
            event, self._waiting = self._waiting, None
            self._active_revision = event.revision_id
            try:
                await self._process(event)
            finally:
                self._active_revision = None
                self._active_plan = None

    async def _process(self, event: PushEvent) -> RolloutPlan | None:
        rid = event.revision_id
        revision = Revision(
            revision_id=rid,
            source_ref=event.source_ref,
            author=event.author,
            message=event.message,
            pushed_at=event.received_at,
        )

        try:
            artifact = await self._builder.build(revision, self.build_config)
        except BuildError as exc:
            logger.error("Build failed for revision %s: %s", rid, exc)
            self._journal(rid, "queued->build_failed", str(exc))
            return None

        if self._waiting is not None and self.supersede == SupersedeMode.CANCEL:
            newer = self._waiting.revision_id
            logger.info("Revision %s superseded by %s before rollout", rid, newer)
            self._journal(rid, "built->superseded", f"superseded by {newer}")
            return None

        try:
            plan = self._scheduler.plan(
                rid, artifact, target_names=self.target_names, policy=self.policy
            )
        except (ValueError, UnknownTargetError) as exc:
            logger.error("Cannot plan revision %s: %s", rid, exc)
            self._journal(rid, "built->plan_rejected", str(exc))
            return None

        self._active_plan = plan.plan_id
        self._plans.setdefault(rid, []).append(plan.plan_id)
        self._journal(rid, "built->planned", plan.plan_id)
        return await self._scheduler.run(plan.plan_id)

    def _journal(self, revision_id: str, transition: str, reason: str = "") -> None:
        self._ledger.append(LedgerEntry(
            plan_id=INTAKE_LEDGER_KEY,
            subject=revision_id,
            transition=transition,
            reason=reason,
        ))
