# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge

from tierscale import prometheus_names
from tierscale.autoscaler.defaults import (
    LoopState,
    OperationKind,
    OperationStatus,
    ScalingActionType,
)
from tierscale.autoscaler.scale_protocol import OperationRequest
from tierscale.autoscaler.utils.exceptions import (
    ExecutorSubmissionError,
    MetricsUnavailable,
    OperationInProgress,
    PartialSnapshot,
    PlacementInfeasible,
)
from tierscale.autoscaler.utils.job_dispatcher import (
    JobDispatcher,
    OperationRecord,
    TierState,
)
from tierscale.autoscaler.utils.metrics_source import MetricsSource, TierSnapshot
from tierscale.autoscaler.utils.placement import PlacementPlanner
from tierscale.autoscaler.utils.scaling_decider import (
    ScalingDecision,
    decide,
    nodes_below,
)
from tierscale.autoscaler.utils.tier_policy import AutoscalerConfig, TierPolicy
from tierscale.common.logging import configure_tierscale_logging

configure_tierscale_logging()
logger = logging.getLogger(__name__)


class AutoscalerPrometheusMetrics:
    """Container for all autoscaler Prometheus metrics."""

    def __init__(self, registry: CollectorRegistry = REGISTRY):
        prefix = prometheus_names.name_prefix.AUTOSCALER
        names = prometheus_names.autoscaler
        tier = prometheus_names.labels.TIER

        # Observed tier state
        self.nodes = Gauge(
            f"{prefix}_{names.NODES}",
            "Reachable nodes in the tier",
            [tier],
            registry=registry,
        )
        self.eligible_decommission_nodes = Gauge(
            f"{prefix}_{names.ELIGIBLE_DECOMMISSION_NODES}",
            "Nodes below the downscale threshold",
            [tier],
            registry=registry,
        )
        self.headroom_nodes = Gauge(
            f"{prefix}_{names.HEADROOM_NODES}",
            "Nodes below the upscale threshold",
            [tier],
            registry=registry,
        )
        self.unreachable_nodes = Gauge(
            f"{prefix}_{names.UNREACHABLE_NODES}",
            "Nodes whose metrics could not be read",
            [tier],
            registry=registry,
        )
        self.operation_in_flight = Gauge(
            f"{prefix}_{names.OPERATION_IN_FLIGHT}",
            "1 while the tier has a pending operation",
            [tier],
            registry=registry,
        )

        # Actions and anomalies
        self.actions = Counter(
            f"{prefix}_{names.ACTIONS_TOTAL}",
            "Operations submitted",
            [tier, prometheus_names.labels.KIND],
            registry=registry,
        )
        self.skipped_cycles = Counter(
            f"{prefix}_{names.SKIPPED_CYCLES_TOTAL}",
            "Tier cycles skipped before a decision could be made",
            [tier, prometheus_names.labels.REASON],
            registry=registry,
        )
        self.operation_timeouts = Counter(
            f"{prefix}_{names.OPERATION_TIMEOUTS_TOTAL}",
            "Operations failed by the hard timeout",
            [tier],
            registry=registry,
        )


@dataclass
class TierCycleResult:
    tier: str
    decision: Optional[ScalingDecision] = None
    record: Optional[OperationRecord] = None
    skipped_reason: Optional[str] = None


class ControlLoop:
    """
    Drives every tier through Idle -> Polling -> Deciding -> (Dispatching) ->
    Idle once per tick, ticking every ``poll_interval`` seconds until
    shutdown() is called.

    Tiers are evaluated concurrently; a failure in one tier is logged and
    never stops the others.
    """

    def __init__(
        self,
        config: AutoscalerConfig,
        metrics_source: MetricsSource,
        dispatcher: JobDispatcher,
        planner: Optional[PlacementPlanner] = None,
        prometheus_metrics: Optional[AutoscalerPrometheusMetrics] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.metrics_source = metrics_source
        self.dispatcher = dispatcher
        self.planner = planner or PlacementPlanner()
        self.prometheus_metrics = prometheus_metrics
        self.clock = clock

        self._pending_config: Optional[AutoscalerConfig] = None
        self._stop = asyncio.Event()
        self._tick_task: Optional[asyncio.Task] = None

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def request_reload(self, config: AutoscalerConfig) -> None:
        """Swap in ``config`` at the start of the next tick."""
        if config.dry_run != self.dispatcher.dry_run:
            logger.warning(
                "dry_run cannot change while running; keeping "
                f"dry_run={self.dispatcher.dry_run}"
            )
        self._pending_config = config

    def _apply_pending_reload(self) -> None:
        if self._pending_config is None:
            return
        self.config = self._pending_config
        self._pending_config = None
        logger.info(f"Reloaded configuration: tiers {self.config.tier_names}")

    def shutdown(self) -> None:
        """Stop after abandoning any in-flight metrics or executor call."""
        logger.info("Shutdown requested")
        self._stop.set()
        if self._tick_task is not None and not self._tick_task.done():
            self._tick_task.cancel()

    async def run(self) -> None:
        """Main loop for the autoscaler"""
        logger.info(
            f"Starting control loop for tiers {self.config.tier_names} "
            f"every {self.config.poll_interval}s"
        )
        while not self._stop.is_set():
            self._tick_task = asyncio.create_task(self.tick())
            try:
                await self._tick_task
            except asyncio.CancelledError:
                if not self._stop.is_set():
                    raise
                break
            finally:
                self._tick_task = None

            try:
                await asyncio.wait_for(
                    self._stop.wait(), timeout=self.config.poll_interval
                )
            except asyncio.TimeoutError:
                pass

        for state in self.dispatcher.states():
            state.loop_state = LoopState.STOPPED
        logger.info("Control loop stopped")

    async def tick(self) -> dict[str, TierCycleResult]:
        """Run one cycle for every configured tier."""
        self._apply_pending_reload()
        policies = list(self.config.tiers)
        logger.debug(f"New tick for tiers {self.config.tier_names}")

        results = await asyncio.gather(
            *(self.run_tier_cycle(policy) for policy in policies),
            return_exceptions=True,
        )

        outcome: dict[str, TierCycleResult] = {}
        for policy, result in zip(policies, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                logger.error(
                    f"Cycle for tier '{policy.tier}' failed: {result}",
                    exc_info=result,
                )
                self.dispatcher.state(policy.tier).loop_state = LoopState.IDLE
                outcome[policy.tier] = TierCycleResult(
                    tier=policy.tier, skipped_reason=f"error: {result}"
                )
            else:
                outcome[policy.tier] = result
        return outcome

    async def _resolve_in_flight(self, state: TierState) -> None:
        record = state.in_flight
        if record is None or not record.is_pending:
            return
        status = await self.dispatcher.poll(record)
        if status == OperationStatus.PENDING:
            return
        if record.timed_out and self.prometheus_metrics is not None:
            self.prometheus_metrics.operation_timeouts.labels(state.tier).inc()

    async def _collect_snapshot(self, tier: str) -> TierSnapshot:
        try:
            return await asyncio.wait_for(
                self.metrics_source.snapshot(tier),
                timeout=self.config.metrics_timeout,
            )
        except asyncio.TimeoutError as e:
            raise MetricsUnavailable(
                tier, f"timed out after {self.config.metrics_timeout}s"
            ) from e
        except PartialSnapshot as e:
            logger.info(f"{e}; continuing with reachable nodes")
            return e.snapshot

    def _skip(self, tier: str, reason: str) -> TierCycleResult:
        if self.prometheus_metrics is not None:
            self.prometheus_metrics.skipped_cycles.labels(tier, reason).inc()
        return TierCycleResult(tier=tier, skipped_reason=reason)

    def _report(self, policy: TierPolicy, snapshot: TierSnapshot, state: TierState):
        if self.prometheus_metrics is None:
            return
        tier = policy.tier
        self.prometheus_metrics.nodes.labels(tier).set(len(snapshot.nodes))
        self.prometheus_metrics.unreachable_nodes.labels(tier).set(
            len(snapshot.unreachable)
        )
        self.prometheus_metrics.eligible_decommission_nodes.labels(tier).set(
            len(nodes_below(snapshot.nodes, policy.down_threshold))
        )
        self.prometheus_metrics.headroom_nodes.labels(tier).set(
            len(nodes_below(snapshot.nodes, policy.up_threshold))
        )
        in_flight = state.in_flight is not None and state.in_flight.is_pending
        self.prometheus_metrics.operation_in_flight.labels(tier).set(int(in_flight))

    def _reserved_node_ids(self, state: TierState) -> set[str]:
        """Ids that may not be reused yet even if metrics do not show them."""
        reserved = set(state.awaiting_health)
        if state.unseen_provision is not None:
            reserved.update(state.unseen_provision.target_node_ids)
        return reserved

    def _track_provisioned_nodes(self, state: TierState, snapshot: TierSnapshot):
        """Release the id reservation once every provisioned node is in metrics."""
        provision = state.unseen_provision
        if provision is None:
            return
        seen = set(snapshot.node_ids)
        if all(node_id in seen for node_id in provision.target_node_ids):
            logger.debug(
                f"Tier '{state.tier}': provisioned nodes "
                f"{list(provision.target_node_ids)} visible in metrics"
            )
            state.unseen_provision = None

    def build_request(
        self,
        snapshot: TierSnapshot,
        policy: TierPolicy,
        decision: ScalingDecision,
        state: TierState,
    ) -> OperationRequest:
        """Resolve a decision into concrete targets.

        Raises:
            PlacementInfeasible: If no node can be removed within the zone floor
        """
        if decision.action == ScalingActionType.DECOMMISSION:
            plan = self.planner.plan_decommission(
                snapshot, decision.eligible_node_ids, decision.count, policy
            )
            return OperationRequest(
                kind=OperationKind.DECOMMISSION,
                tier=policy.tier,
                target_node_ids=list(plan.node_ids),
                reason=decision.reason,
            )

        plan = self.planner.plan_provision(
            snapshot,
            decision.count,
            policy,
            reserved_ids=self._reserved_node_ids(state),
        )
        return OperationRequest(
            kind=OperationKind.PROVISION,
            tier=policy.tier,
            target_node_ids=list(plan.node_ids),
            target_zones=list(plan.zones),
            reason=decision.reason,
        )

    async def run_tier_cycle(self, policy: TierPolicy) -> TierCycleResult:
        tier = policy.tier
        state = self.dispatcher.state(tier)
        try:
            await self._resolve_in_flight(state)
            awaiting_health = await self.dispatcher.refresh_health(tier)

            state.loop_state = LoopState.POLLING
            try:
                snapshot = await self._collect_snapshot(tier)
            except MetricsUnavailable as e:
                logger.warning(f"{e}; skipping tier this cycle")
                return self._skip(tier, "metrics_unavailable")

            state.loop_state = LoopState.DECIDING
            self._track_provisioned_nodes(state, snapshot)
            self._report(policy, snapshot, state)
            decision = decide(
                snapshot,
                policy,
                state=state,
                now=self.clock(),
                cooldown=self.config.cooldown_for(policy),
                max_unreachable_fraction=self.config.max_unreachable_fraction,
                exclude_from_downscale=awaiting_health,
            )
            if decision.is_noop:
                logger.debug(f"Tier '{tier}': no action ({decision.reason})")
                return TierCycleResult(tier=tier, decision=decision)

            logger.info(
                f"Tier '{tier}': {decision.action.value} {decision.count} node(s) "
                f"({decision.reason})"
            )
            state.loop_state = LoopState.DISPATCHING
            try:
                request = self.build_request(snapshot, policy, decision, state)
            except PlacementInfeasible as e:
                logger.info(f"{e}; no action taken")
                return self._skip(tier, "placement_infeasible")

            try:
                record = await self.dispatcher.submit(request)
            except OperationInProgress as e:
                logger.debug(str(e))
                return TierCycleResult(tier=tier, decision=decision)
            except ExecutorSubmissionError:
                return TierCycleResult(tier=tier, decision=decision)

            if self.prometheus_metrics is not None:
                self.prometheus_metrics.actions.labels(tier, request.kind.value).inc()
            return TierCycleResult(tier=tier, decision=decision, record=record)
        finally:
            if state.loop_state != LoopState.STOPPED:
                state.loop_state = LoopState.IDLE
