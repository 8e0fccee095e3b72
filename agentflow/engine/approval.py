"""Human approval gate.

An approval step creates a ``pending`` record and the workflow suspends.
Someone outside the core (a reviewer in the UI) later moves it to
``approved`` or ``rejected``; that transition happens exactly once. The gate
only offers the record read (``watch``) and the single status write
(``respond``). Resuming the workflow is the caller's job.

Observation goes through ``ApprovalWatcher``. The shipped implementation polls
the store; a push-based watcher can replace it without touching callers.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable

from agentflow.engine.errors import ApprovalNotFoundError, ApprovalStateError
from agentflow.engine.types import ApprovalRecord, ApprovalStatus
from agentflow.store.base import ExecutionStore

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 2.0  # seconds


@dataclass(frozen=True)
class ApprovalWatch:
    """Result of a status read."""

    status: ApprovalStatus
    approval: ApprovalRecord | None = None

    @property
    def is_pending(self) -> bool:
        return self.status == ApprovalStatus.PENDING

    @property
    def is_approved(self) -> bool:
        return self.status == ApprovalStatus.APPROVED

    @property
    def is_rejected(self) -> bool:
        return self.status == ApprovalStatus.REJECTED

    @property
    def is_resolved(self) -> bool:
        return self.is_approved or self.is_rejected

    def to_dict(self) -> dict:
        data: dict = {"status": self.status.value}
        if self.approval is not None:
            data["approval"] = self.approval.to_dict()
        return data


class ApprovalGate:
    def __init__(self, store: ExecutionStore):
        self.store = store

    async def open(
        self,
        workflow_id: str,
        message: str = "",
        execution_id: str | None = None,
        node_id: str | None = None,
        user_id: str | None = None,
        created_by: str | None = None,
        approval_id: str | None = None,
    ) -> ApprovalRecord:
        """Create a pending approval."""
        record = ApprovalRecord(
            approval_id=approval_id or uuid.uuid4().hex,
            workflow_id=workflow_id,
            execution_id=execution_id,
            node_id=node_id,
            message=message,
            status=ApprovalStatus.PENDING,
            user_id=user_id,
            created_by=created_by,
        )
        created = await self.store.create_approval(record)
        logger.info(
            "Approval %s opened for workflow %s",
            created.approval_id,
            workflow_id,
            extra={"approval_id": created.approval_id, "execution_id": execution_id, "node_id": node_id},
        )
        return created

    async def watch(self, approval_id: str) -> ApprovalWatch:
        """Current status plus record; ``not_found`` for unknown ids."""
        record = await self.store.get_approval(approval_id)
        if record is None:
            return ApprovalWatch(status=ApprovalStatus.NOT_FOUND)
        return ApprovalWatch(status=record.status, approval=record)

    async def respond(
        self,
        approval_id: str,
        status: ApprovalStatus | str,
        responded_by: str | None = None,
    ) -> ApprovalRecord:
        """Record the reviewer's decision.

        Raises:
            ApprovalStateError: ``status`` is not terminal, or the approval was
                already decided.
            ApprovalNotFoundError: no such approval.
        """
        status = ApprovalStatus(status)
        if status not in (ApprovalStatus.APPROVED, ApprovalStatus.REJECTED):
            raise ApprovalStateError(f"Cannot respond to an approval with status {status.value!r}")

        updated = await self.store.update_approval_status(approval_id, status, responded_by=responded_by)
        if updated is not None:
            logger.info(
                "Approval %s %s by %s",
                approval_id,
                status.value,
                responded_by or "unknown",
                extra={"approval_id": approval_id},
            )
            return updated

        current = await self.store.get_approval(approval_id)
        if current is None:
            raise ApprovalNotFoundError(f"Approval {approval_id} not found")
        raise ApprovalStateError(f"Approval {approval_id} is already {current.status.value}")

    async def pending_for_workflow(self, workflow_id: str) -> list[ApprovalRecord]:
        return await self.store.list_approvals(workflow_id=workflow_id, status=ApprovalStatus.PENDING)

    async def for_execution(self, execution_id: str) -> list[ApprovalRecord]:
        return await self.store.list_approvals(execution_id=execution_id)


class ApprovalWatcher(ABC):
    """Observes one approval until it is decided."""

    @abstractmethod
    def updates(self, approval_id: str) -> AsyncIterator[ApprovalWatch]:
        """Yield the status each time it changes, ending once it is resolved or not found."""
        ...

    async def wait_for_decision(self, approval_id: str, timeout: float | None = None) -> ApprovalWatch:
        """Block until the approval is approved, rejected or found missing.

        Raises:
            asyncio.TimeoutError: no decision within ``timeout`` seconds.
        """

        async def _wait() -> ApprovalWatch:
            last: ApprovalWatch | None = None
            async for watch in self.updates(approval_id):
                last = watch
            return last if last is not None else ApprovalWatch(status=ApprovalStatus.NOT_FOUND)

        if timeout is None:
            return await _wait()
        return await asyncio.wait_for(_wait(), timeout=timeout)


class PollingApprovalWatcher(ApprovalWatcher):
    """Polls ``ApprovalGate.watch`` every ``interval`` seconds."""

    def __init__(
        self,
        gate: ApprovalGate,
        interval: float = DEFAULT_POLL_INTERVAL,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.gate = gate
        self.interval = interval
        self._sleep = sleep

    async def updates(self, approval_id: str) -> AsyncIterator[ApprovalWatch]:
        previous: ApprovalStatus | None = None
        started = time.monotonic()
        while True:
            watch = await self.gate.watch(approval_id)
            if watch.status != previous:
                previous = watch.status
                yield watch
            if watch.status != ApprovalStatus.PENDING:
                if watch.is_resolved:
                    logger.info(
                        "Approval %s %s after %.1fs",
                        approval_id,
                        watch.status.value,
                        time.monotonic() - started,
                        extra={"approval_id": approval_id},
                    )
                return
            await self._sleep(self.interval)
