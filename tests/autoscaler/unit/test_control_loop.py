# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Unit tests for the control loop tying decisions to dispatch."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from prometheus_client import CollectorRegistry

from tierscale.autoscaler.defaults import (
    LoopState,
    OperationKind,
    OperationStatus,
    ScalingActionType,
)
from tierscale.autoscaler.executor_connector import ExecutorConnector, HealthChecker
from tierscale.autoscaler.scale_protocol import (
    ExecutorResponse,
    ExecutorStatus,
    ExecutorStatusResponse,
)
from tierscale.autoscaler.utils.control_loop import (
    AutoscalerPrometheusMetrics,
    ControlLoop,
)
from tierscale.autoscaler.utils.exceptions import ExecutorSubmissionError
from tierscale.autoscaler.utils.job_dispatcher import JobDispatcher
from tierscale.autoscaler.utils.metrics_source import (
    NodeSnapshot,
    StaticMetricsSource,
)
from tierscale.autoscaler.utils.tier_policy import build_autoscaler_config

pytestmark = [
    pytest.mark.pre_merge,
    pytest.mark.unit,
    pytest.mark.autoscaler,
]

ZONES = ["zone-a", "zone-b", "zone-c"]


class FakeClock:
    def __init__(self, now: float = 10_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _tier(name, **overrides):
    tier = {
        "tier": name,
        "down_threshold": 55,
        "below_count_threshold": 6,
        "decommission_count": 2,
        "up_threshold": 80,
        "below_up_check_threshold": 6,
        "provision_count": 3,
        "zones": ZONES,
    }
    tier.update(overrides)
    return tier


def _config(*tiers, **overrides):
    data = {
        "poll_interval": 0.01,
        "default_cooldown": 900,
        "tiers": list(tiers) or [_tier("hot")],
    }
    data.update(overrides)
    return build_autoscaler_config(data)


def _nodes(tier, usages):
    return [
        NodeSnapshot(
            node_id=f"{tier}-{i + 1}",
            tier=tier,
            zone=ZONES[i % len(ZONES)],
            disk_used_percent=usage,
        )
        for i, usage in enumerate(usages)
    ]


IDLE_TIER = [10, 20, 30, 40, 45, 50, 54, 60, 70, 75]
BALANCED_TIER = [60, 65, 70, 60, 65, 70, 60, 65, 70, 60]
FULL_TIER = [50, 60, 70, 79, 81, 85, 90, 92, 95, 99]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def connector():
    mock = MagicMock(spec=ExecutorConnector)
    mock.submit = AsyncMock(
        return_value=ExecutorResponse(
            status=ExecutorStatus.ACCEPTED, correlation_id="job-1"
        )
    )
    mock.get_status = AsyncMock(
        return_value=ExecutorStatusResponse(
            correlation_id="job-1", status=ExecutorStatus.RUNNING
        )
    )
    return mock


@pytest.fixture
def metrics():
    return AutoscalerPrometheusMetrics(registry=CollectorRegistry())


def _loop(config, source, connector, clock, metrics=None):
    dispatcher = JobDispatcher(
        connector,
        submit_timeout=config.submit_timeout,
        operation_timeout=config.operation_timeout,
        clock=clock,
    )
    return ControlLoop(
        config, source, dispatcher, prometheus_metrics=metrics, clock=clock
    )


@pytest.mark.asyncio
async def test_tick_decommissions_idle_tier(connector, clock, metrics):
    source = StaticMetricsSource({"hot": _nodes("hot", IDLE_TIER)})
    loop = _loop(_config(), source, connector, clock, metrics)

    results = await loop.tick()

    result = results["hot"]
    assert result.decision.action == ScalingActionType.DECOMMISSION
    assert result.record.kind == OperationKind.DECOMMISSION
    # zone-a holds four nodes, then every zone holds three
    assert result.record.target_node_ids == ("hot-7", "hot-6")
    assert loop.dispatcher.state("hot").loop_state == LoopState.IDLE

    assert metrics.nodes.labels("hot")._value.get() == 10
    assert metrics.eligible_decommission_nodes.labels("hot")._value.get() == 7
    assert (
        metrics.actions.labels("hot", OperationKind.DECOMMISSION.value)._value.get()
        == 1
    )


@pytest.mark.asyncio
async def test_tick_provisions_full_tier(connector, clock):
    source = StaticMetricsSource({"hot": _nodes("hot", FULL_TIER)})
    loop = _loop(_config(), source, connector, clock)

    result = (await loop.tick())["hot"]

    assert result.decision.action == ScalingActionType.PROVISION
    assert result.record.target_node_ids == ("hot-11", "hot-12", "hot-13")
    submission = connector.submit.call_args.args[0]
    assert submission.parameters["zones"] == "zone-b,zone-c,zone-a"


@pytest.mark.asyncio
async def test_pending_operation_blocks_next_tick(connector, clock):
    source = StaticMetricsSource({"hot": _nodes("hot", IDLE_TIER)})
    loop = _loop(_config(), source, connector, clock)

    await loop.tick()
    clock.now += 60
    result = (await loop.tick())["hot"]

    assert result.decision.is_noop
    assert "pending" in result.decision.reason
    assert connector.submit.await_count == 1


@pytest.mark.asyncio
async def test_confirmation_starts_cooldown(connector, clock):
    source = StaticMetricsSource({"hot": _nodes("hot", IDLE_TIER)})
    loop = _loop(_config(), source, connector, clock)

    await loop.tick()
    connector.get_status.return_value = ExecutorStatusResponse(
        correlation_id="job-1", status=ExecutorStatus.SUCCEEDED
    )
    clock.now += 60
    result = (await loop.tick())["hot"]

    state = loop.dispatcher.state("hot")
    assert state.last_operation.status == OperationStatus.CONFIRMED
    assert state.last_action_at == clock.now
    assert "cooldown" in result.decision.reason

    clock.now += 900
    result = (await loop.tick())["hot"]
    assert result.decision.action == ScalingActionType.DECOMMISSION
    assert connector.submit.await_count == 2


@pytest.mark.asyncio
async def test_balanced_tier_takes_no_action(connector, clock):
    source = StaticMetricsSource({"hot": _nodes("hot", BALANCED_TIER)})
    loop = _loop(_config(), source, connector, clock)

    result = (await loop.tick())["hot"]

    assert result.decision.is_noop
    connector.submit.assert_not_awaited()


@pytest.mark.asyncio
async def test_metrics_unavailable_skips_tier(connector, clock, metrics):
    source = StaticMetricsSource({"hot": _nodes("hot", IDLE_TIER)})
    source.unavailable.add("hot")
    loop = _loop(_config(), source, connector, clock, metrics)

    result = (await loop.tick())["hot"]

    assert result.skipped_reason == "metrics_unavailable"
    assert result.decision is None
    assert (
        metrics.skipped_cycles.labels("hot", "metrics_unavailable")._value.get()
        == 1
    )


@pytest.mark.asyncio
async def test_slow_metrics_time_out(connector, clock):
    source = StaticMetricsSource()

    async def hang(tier):
        await asyncio.sleep(10)

    source.snapshot = hang
    loop = _loop(_config(metrics_timeout=0.01), source, connector, clock)

    result = (await loop.tick())["hot"]
    assert result.skipped_reason == "metrics_unavailable"


@pytest.mark.asyncio
async def test_partial_snapshot_over_limit_takes_no_action(connector, clock):
    source = StaticMetricsSource(
        {"hot": _nodes("hot", IDLE_TIER[:7])},
        unreachable={"hot": ["hot-8", "hot-9", "hot-10"]},
    )
    loop = _loop(_config(), source, connector, clock)

    result = (await loop.tick())["hot"]

    assert result.decision.is_noop
    assert "unreachable" in result.decision.reason
    connector.submit.assert_not_awaited()


@pytest.mark.asyncio
async def test_placement_infeasible_skips(connector, clock, metrics):
    # One node per zone: every zone is already at its floor
    source = StaticMetricsSource({"hot": _nodes("hot", [10, 20, 30])})
    config = _config(_tier("hot", below_count_threshold=2, below_up_check_threshold=1))
    loop = _loop(config, source, connector, clock, metrics)

    result = (await loop.tick())["hot"]

    assert result.skipped_reason == "placement_infeasible"
    connector.submit.assert_not_awaited()


@pytest.mark.asyncio
async def test_submission_failure_does_not_block_tier(connector, clock):
    source = StaticMetricsSource({"hot": _nodes("hot", IDLE_TIER)})
    loop = _loop(_config(), source, connector, clock)
    connector.submit.side_effect = ExecutorSubmissionError("rejected")

    result = (await loop.tick())["hot"]
    assert result.record is None
    assert loop.dispatcher.in_flight("hot") is None

    connector.submit.side_effect = None
    result = (await loop.tick())["hot"]
    assert result.record is not None


@pytest.mark.asyncio
async def test_one_failing_tier_does_not_stop_others(connector, clock):
    source = StaticMetricsSource(
        {"hot": _nodes("hot", IDLE_TIER), "warm": _nodes("warm", IDLE_TIER)}
    )
    real_snapshot = source.snapshot

    async def flaky(tier):
        if tier == "hot":
            raise RuntimeError("boom")
        return await real_snapshot(tier)

    source.snapshot = flaky
    loop = _loop(_config(_tier("hot"), _tier("warm")), source, connector, clock)

    results = await loop.tick()

    assert results["hot"].skipped_reason.startswith("error")
    assert results["warm"].record is not None
    assert loop.dispatcher.state("hot").loop_state == LoopState.IDLE


@pytest.mark.asyncio
async def test_timed_out_operation_is_counted(connector, clock, metrics):
    source = StaticMetricsSource({"hot": _nodes("hot", IDLE_TIER)})
    loop = _loop(_config(operation_timeout=600), source, connector, clock, metrics)

    first = (await loop.tick())["hot"].record
    clock.now += 600
    second = (await loop.tick())["hot"]

    assert first.timed_out
    assert first.status == OperationStatus.FAILED
    assert metrics.operation_timeouts.labels("hot")._value.get() == 1
    # A timed-out operation does not start the cooldown
    assert second.record is not None


@pytest.mark.asyncio
async def test_reload_applies_on_next_tick(connector, clock):
    source = StaticMetricsSource(
        {"hot": _nodes("hot", BALANCED_TIER), "warm": _nodes("warm", IDLE_TIER)}
    )
    loop = _loop(_config(), source, connector, clock)

    assert set(await loop.tick()) == {"hot"}

    loop.request_reload(_config(_tier("hot"), _tier("warm")))
    assert loop.config.tier_names == ["hot"]

    results = await loop.tick()
    assert set(results) == {"hot", "warm"}
    assert results["warm"].record is not None


@pytest.mark.asyncio
async def test_dry_run_loop(clock):
    source = StaticMetricsSource({"hot": _nodes("hot", IDLE_TIER)})
    config = _config(dry_run=True)
    dispatcher = JobDispatcher(None, dry_run=True, clock=clock)
    loop = ControlLoop(config, source, dispatcher, clock=clock)

    result = (await loop.tick())["hot"]

    assert result.record.status == OperationStatus.CONFIRMED
    assert dispatcher.state("hot").last_action_at == clock.now


@pytest.mark.asyncio
async def test_run_until_shutdown(connector, clock):
    source = StaticMetricsSource({"hot": _nodes("hot", BALANCED_TIER)})
    loop = _loop(_config(), source, connector, clock)

    task = asyncio.create_task(loop.run())
    await asyncio.sleep(0.05)
    loop.shutdown()
    await asyncio.wait_for(task, timeout=1)

    assert loop.stopped
    assert loop.dispatcher.state("hot").loop_state == LoopState.STOPPED


@pytest.mark.asyncio
async def test_shutdown_abandons_inflight_call(clock):
    entered = asyncio.Event()
    connector = MagicMock(spec=ExecutorConnector)

    async def hang(submission):
        entered.set()
        await asyncio.sleep(10)

    connector.submit = AsyncMock(side_effect=hang)
    source = StaticMetricsSource({"hot": _nodes("hot", IDLE_TIER)})
    config = _config(submit_timeout=30)
    loop = _loop(config, source, connector, clock)

    task = asyncio.create_task(loop.run())
    await asyncio.wait_for(entered.wait(), timeout=1)
    loop.shutdown()
    await asyncio.wait_for(task, timeout=1)

    assert loop.stopped
    # The request may have been delivered, so the tier stays claimed
    assert loop.dispatcher.in_flight("hot") is not None


@pytest.mark.asyncio
async def test_failing_health_check_does_not_block_provision(clock):
    health_checker = MagicMock(spec=HealthChecker)
    health_checker.is_healthy = AsyncMock(side_effect=RuntimeError("boom"))
    source = StaticMetricsSource({"hot": _nodes("hot", FULL_TIER)})
    dispatcher = JobDispatcher(
        None, dry_run=True, health_checker=health_checker, clock=clock
    )
    dispatcher.state("hot").awaiting_health["hot-4"] = clock.now
    loop = ControlLoop(_config(dry_run=True), source, dispatcher, clock=clock)

    result = (await loop.tick())["hot"]

    assert result.decision.action == ScalingActionType.PROVISION
    assert result.record.status == OperationStatus.CONFIRMED
    health_checker.is_healthy.assert_awaited_once_with("hot-4")
    assert dispatcher.awaiting_health("hot") == {"hot-4"}


@pytest.mark.asyncio
async def test_dry_run_provisions_do_not_pile_up_health_checks(clock):
    health_checker = MagicMock(spec=HealthChecker)
    health_checker.is_healthy = AsyncMock(return_value=False)
    source = StaticMetricsSource({"hot": _nodes("hot", FULL_TIER)})
    dispatcher = JobDispatcher(
        None, dry_run=True, health_checker=health_checker, clock=clock
    )
    loop = ControlLoop(_config(dry_run=True), source, dispatcher, clock=clock)

    for _ in range(5):
        result = (await loop.tick())["hot"]
        assert result.decision.action == ScalingActionType.PROVISION
        assert dispatcher.awaiting_health("hot") == frozenset()
        clock.now += 901

    health_checker.is_healthy.assert_not_awaited()


@pytest.mark.asyncio
async def test_provisioned_ids_stay_reserved_until_seen(connector, clock):
    connector.submit.return_value = ExecutorResponse(
        status=ExecutorStatus.SUCCEEDED, correlation_id="job-1"
    )
    source = StaticMetricsSource({"hot": _nodes("hot", FULL_TIER)})
    loop = _loop(_config(), source, connector, clock)
    state = loop.dispatcher.state("hot")

    first = (await loop.tick())["hot"].record
    assert first.target_node_ids == ("hot-11", "hot-12", "hot-13")

    # A decommission confirms before the new nodes report metrics
    source.set_tier("hot", _nodes("hot", IDLE_TIER))
    clock.now += 901
    second = (await loop.tick())["hot"].record
    assert second.kind == OperationKind.DECOMMISSION
    assert state.last_operation is second

    source.set_tier("hot", _nodes("hot", FULL_TIER))
    clock.now += 901
    third = (await loop.tick())["hot"].record
    assert third.target_node_ids == ("hot-14", "hot-15", "hot-16")
    assert state.unseen_provision is third

    # Once every new node is visible the reservation is dropped
    source.set_tier("hot", _nodes("hot", FULL_TIER + [50] * 6))
    result = (await loop.tick())["hot"]
    assert "cooldown" in result.decision.reason
    assert state.unseen_provision is None
