# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Optional

from tierscale.autoscaler.defaults import LoopState, OperationKind, OperationStatus
from tierscale.autoscaler.executor_connector import ExecutorConnector, HealthChecker
from tierscale.autoscaler.scale_protocol import (
    ExecutorStatus,
    ExecutorSubmission,
    OperationRequest,
)
from tierscale.autoscaler.utils.exceptions import (
    EmptyTargetNodesError,
    ExecutorSubmissionError,
    OperationInProgress,
    OperationTimeout,
    SubmissionOutcomeUnknown,
)
from tierscale.common.logging import configure_tierscale_logging

configure_tierscale_logging()
logger = logging.getLogger(__name__)


@dataclass
class OperationRecord:
    operation_id: str
    kind: OperationKind
    tier: str
    target_node_ids: tuple[str, ...]
    submitted_at: float
    target_zones: tuple[str, ...] = ()
    status: OperationStatus = OperationStatus.PENDING
    # Assigned by the job runner; None while the submission outcome is unknown
    correlation_id: Optional[str] = None
    resolved_at: Optional[float] = None
    timed_out: bool = False
    message: str = ""

    @property
    def is_pending(self) -> bool:
        return self.status == OperationStatus.PENDING


@dataclass
class TierState:
    tier: str
    last_action_at: Optional[float] = None
    in_flight: Optional[OperationRecord] = None
    last_operation: Optional[OperationRecord] = None
    # Provisioned nodes not yet confirmed healthy, with the time they were added
    awaiting_health: dict[str, float] = field(default_factory=dict)
    # Most recent confirmed provision whose nodes have not all shown up in
    # metrics yet; its ids stay reserved until they do
    unseen_provision: Optional[OperationRecord] = None
    loop_state: LoopState = LoopState.IDLE


class JobDispatcher:
    """
    Submits provision/decommission jobs and tracks them to completion.

    Holds one TierState per tier, each guarded by its own asyncio.Lock, and
    guarantees at most one pending operation per tier.

    Submission outcomes:
    - accepted: record stays pending until poll() resolves it
    - definitively rejected or runner unreachable: record failed, tier released
    - timed out, cancelled mid-flight or answered without a usable result
      (e.g. HTTP 5xx): the request may have been delivered,
      so the record stays pending (without a correlation id) until the hard
      operation timeout releases the tier
    """

    def __init__(
        self,
        connector: Optional[ExecutorConnector],
        dry_run: bool = False,
        submit_timeout: float = 30.0,
        operation_timeout: float = 3600.0,
        health_checker: Optional[HealthChecker] = None,
        clock: Callable[[], float] = time.time,
    ):
        if connector is None and not dry_run:
            raise ValueError("An executor connector is required unless dry_run is set")
        self.connector = connector
        self.dry_run = dry_run
        self.submit_timeout = submit_timeout
        self.operation_timeout = operation_timeout
        self.health_checker = health_checker
        self.clock = clock

        self._states: dict[str, TierState] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def state(self, tier: str) -> TierState:
        if tier not in self._states:
            self._states[tier] = TierState(tier=tier)
        return self._states[tier]

    def states(self) -> list[TierState]:
        return list(self._states.values())

    def _lock(self, tier: str) -> asyncio.Lock:
        if tier not in self._locks:
            self._locks[tier] = asyncio.Lock()
        return self._locks[tier]

    def in_flight(self, tier: str) -> Optional[OperationRecord]:
        record = self.state(tier).in_flight
        if record is not None and record.is_pending:
            return record
        return None

    def awaiting_health(self, tier: str) -> frozenset[str]:
        return frozenset(self.state(tier).awaiting_health)

    def _resolve(
        self, state: TierState, record: OperationRecord, status: OperationStatus
    ) -> None:
        now = self.clock()
        record.status = status
        record.resolved_at = now
        if state.in_flight is record:
            state.in_flight = None
        state.last_operation = record
        if status != OperationStatus.CONFIRMED:
            return

        state.last_action_at = now
        if record.kind == OperationKind.PROVISION:
            state.unseen_provision = record
            # Dry-run nodes never come up, so there is nothing to wait for
            if self.health_checker is not None and not self.dry_run:
                for node_id in record.target_node_ids:
                    state.awaiting_health[node_id] = now
        elif record.kind == OperationKind.DECOMMISSION:
            for node_id in record.target_node_ids:
                state.awaiting_health.pop(node_id, None)

    async def submit(self, request: OperationRequest) -> OperationRecord:
        """Submit ``request`` unless its tier already has a pending operation.

        Raises:
            OperationInProgress: If the tier has a pending operation
            ExecutorSubmissionError: If the runner rejected the job or could
                not be reached
        """
        if not request.target_node_ids:
            raise EmptyTargetNodesError()

        tier = request.tier
        async with self._lock(tier):
            state = self.state(tier)
            if state.in_flight is not None and state.in_flight.is_pending:
                raise OperationInProgress(tier, state.in_flight.operation_id)

            record = OperationRecord(
                operation_id=uuid.uuid4().hex,
                kind=request.kind,
                tier=tier,
                target_node_ids=tuple(request.target_node_ids),
                target_zones=tuple(request.target_zones),
                submitted_at=self.clock(),
            )

            if self.dry_run:
                logger.info(
                    f"[dry-run] Would {request.kind.value} {list(record.target_node_ids)} "
                    f"on tier '{tier}' ({request.reason})"
                )
                record.message = "dry run"
                self._resolve(state, record, OperationStatus.CONFIRMED)
                return record

            # Claim the tier before the first suspension point
            state.in_flight = record
            submission = ExecutorSubmission.from_request(request, record.operation_id)
            try:
                response = await asyncio.wait_for(
                    self.connector.submit(submission), timeout=self.submit_timeout
                )
            except ExecutorSubmissionError as e:
                record.message = str(e)
                self._resolve(state, record, OperationStatus.FAILED)
                logger.error(
                    f"Submission of {request.kind.value} on tier '{tier}' failed: {e}"
                )
                raise
            except SubmissionOutcomeUnknown as e:
                record.message = f"submission outcome unknown: {e}"
                logger.warning(
                    f"Operation {record.operation_id} on tier '{tier}': "
                    f"{record.message}, keeping it pending"
                )
                return record
            except asyncio.TimeoutError:
                record.message = (
                    f"submission timed out after {self.submit_timeout}s; outcome unknown"
                )
                logger.warning(
                    f"Operation {record.operation_id} on tier '{tier}': "
                    f"{record.message}, keeping it pending"
                )
                return record
            except asyncio.CancelledError:
                record.message = "submission cancelled; outcome unknown"
                logger.warning(
                    f"Operation {record.operation_id} on tier '{tier}': "
                    f"{record.message}, keeping it pending"
                )
                raise
            except Exception as e:
                record.message = f"submission outcome unknown: {e}"
                logger.warning(
                    f"Operation {record.operation_id} on tier '{tier}': "
                    f"{record.message}, keeping it pending"
                )
                return record

            record.correlation_id = response.correlation_id
            record.message = response.message
            if response.status == ExecutorStatus.SUCCEEDED:
                self._resolve(state, record, OperationStatus.CONFIRMED)
            elif response.status == ExecutorStatus.FAILED:
                self._resolve(state, record, OperationStatus.FAILED)
            logger.info(
                f"Submitted {request.kind.value} of {list(record.target_node_ids)} "
                f"on tier '{tier}': operation {record.operation_id}, "
                f"correlation_id={record.correlation_id}, status={record.status.value}"
            )
            return record

    async def poll(self, record: OperationRecord) -> OperationStatus:
        """Resolve a pending record from runner feedback or the hard timeout.

        A record pending longer than ``operation_timeout`` is marked failed and
        its tier released; the runner's true state is then unknown, so this is
        logged as a warning.
        """
        if not record.is_pending:
            return record.status

        state = self.state(record.tier)
        elapsed = self.clock() - record.submitted_at
        if elapsed >= self.operation_timeout:
            async with self._lock(record.tier):
                if record.is_pending:
                    error = OperationTimeout(
                        record.tier, record.operation_id, elapsed
                    )
                    record.timed_out = True
                    record.message = str(error)
                    self._resolve(state, record, OperationStatus.FAILED)
                    logger.warning(f"{error}; releasing tier, operator attention required")
            return record.status

        if record.correlation_id is None or self.connector is None:
            # Submission outcome unknown; only the hard timeout can resolve it
            return record.status

        try:
            response = await asyncio.wait_for(
                self.connector.get_status(record.correlation_id),
                timeout=self.submit_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Status query for operation {record.operation_id} timed out"
            )
            return record.status
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(
                f"Status query for operation {record.operation_id} failed: {e}"
            )
            return record.status

        async with self._lock(record.tier):
            if not record.is_pending:
                return record.status
            record.message = response.message
            if response.status == ExecutorStatus.SUCCEEDED:
                self._resolve(state, record, OperationStatus.CONFIRMED)
                logger.info(
                    f"Operation {record.operation_id} ({record.kind.value} of "
                    f"{list(record.target_node_ids)}) on tier '{record.tier}' confirmed"
                )
            elif response.status in (ExecutorStatus.FAILED, ExecutorStatus.REJECTED):
                self._resolve(state, record, OperationStatus.FAILED)
                logger.error(
                    f"Operation {record.operation_id} on tier '{record.tier}' "
                    f"failed: {response.message}"
                )
        return record.status

    async def _check_health(self, tier: str, node_id: str) -> bool:
        try:
            return await asyncio.wait_for(
                self.health_checker.is_healthy(node_id),
                timeout=self.submit_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Health check for node {node_id} on tier '{tier}' timed out")
        except Exception as e:
            logger.warning(
                f"Health check for node {node_id} on tier '{tier}' failed: {e}"
            )
        return False

    async def refresh_health(self, tier: str) -> frozenset[str]:
        """Re-check nodes awaiting health confirmation; return those still waiting.

        Nodes are checked concurrently and a failing check counts as not yet
        healthy. A node still unhealthy after ``operation_timeout`` stops
        being tracked and counts toward decommission again.
        """
        state = self.state(tier)
        if self.health_checker is None or not state.awaiting_health:
            return frozenset(state.awaiting_health)

        now = self.clock()
        for node_id, added_at in list(state.awaiting_health.items()):
            if now - added_at >= self.operation_timeout:
                logger.warning(
                    f"Node {node_id} on tier '{tier}' not healthy after "
                    f"{now - added_at:.0f}s; no longer waiting for it"
                )
                del state.awaiting_health[node_id]

        node_ids = sorted(state.awaiting_health)
        results = await asyncio.gather(
            *(self._check_health(tier, node_id) for node_id in node_ids)
        )
        for node_id, healthy in zip(node_ids, results):
            if healthy:
                logger.info(f"Node {node_id} on tier '{tier}' confirmed healthy")
                state.awaiting_health.pop(node_id, None)
        return frozenset(state.awaiting_health)
