# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Unit tests for threshold-based scaling decisions."""

import pytest

from tierscale.autoscaler.defaults import (
    OperationKind,
    OperationStatus,
    ScalingActionType,
)
from tierscale.autoscaler.utils.job_dispatcher import OperationRecord, TierState
from tierscale.autoscaler.utils.metrics_source import NodeSnapshot, TierSnapshot
from tierscale.autoscaler.utils.scaling_decider import decide, nodes_below
from tierscale.autoscaler.utils.tier_policy import TierPolicy

pytestmark = [
    pytest.mark.pre_merge,
    pytest.mark.unit,
    pytest.mark.autoscaler,
]

ZONES = ("zone-a", "zone-b", "zone-c")


def _policy(**overrides) -> TierPolicy:
    fields = dict(
        tier="hot",
        down_threshold=55,
        below_count_threshold=6,
        decommission_count=2,
        up_threshold=80,
        below_up_check_threshold=6,
        provision_count=3,
        zones=ZONES,
    )
    fields.update(overrides)
    return TierPolicy(**fields)


def _snapshot(usages, unreachable=(), tier="hot") -> TierSnapshot:
    nodes = tuple(
        NodeSnapshot(
            node_id=f"{tier}-{i + 1}",
            tier=tier,
            zone=ZONES[i % len(ZONES)],
            disk_used_percent=usage,
        )
        for i, usage in enumerate(usages)
    )
    return TierSnapshot(tier=tier, nodes=nodes, unreachable=tuple(unreachable))


def test_nodes_below_is_strict():
    snapshot = _snapshot([54.9, 55.0, 55.1])
    assert [n.node_id for n in nodes_below(snapshot.nodes, 55)] == ["hot-1"]


def test_decommission_when_enough_nodes_are_idle():
    # 7 of 10 below 55%, all below 80% so no provision pressure
    snapshot = _snapshot([10, 20, 30, 40, 45, 50, 54, 60, 70, 75])
    decision = decide(snapshot, _policy())

    assert decision.action == ScalingActionType.DECOMMISSION
    assert decision.count == 2
    assert decision.eligible_node_ids == tuple(f"hot-{i}" for i in range(1, 8))


def test_no_decommission_below_count_threshold():
    snapshot = _snapshot([10, 20, 30, 40, 50, 60, 60, 60, 70, 75])
    decision = decide(snapshot, _policy())
    assert decision.is_noop


def test_decommission_count_bounded_by_eligible():
    snapshot = _snapshot([10, 20, 30, 60, 60, 60])
    policy = _policy(below_count_threshold=2, decommission_count=5)
    decision = decide(snapshot, policy)

    assert decision.action == ScalingActionType.DECOMMISSION
    assert decision.count == 3


def test_provision_when_headroom_is_short():
    # Only 4 of 10 nodes below 80%
    snapshot = _snapshot([50, 60, 70, 79, 81, 85, 90, 92, 95, 99])
    decision = decide(snapshot, _policy())

    assert decision.action == ScalingActionType.PROVISION
    assert decision.count == 3
    assert decision.eligible_node_ids == ()


def test_provision_wins_over_decommission():
    # 3 nodes below 55% satisfies the down condition (threshold 3)
    # and only 3 below 80% satisfies the up condition (need 6)
    snapshot = _snapshot([10, 20, 30, 85, 90, 95])
    policy = _policy(below_count_threshold=3)
    decision = decide(snapshot, policy)

    assert decision.action == ScalingActionType.PROVISION


def test_zero_provision_count_disables_upscale():
    snapshot = _snapshot([90, 95, 99])
    decision = decide(snapshot, _policy(provision_count=0))
    assert decision.is_noop


def test_zero_decommission_count_disables_downscale():
    snapshot = _snapshot([10] * 10)
    decision = decide(snapshot, _policy(decommission_count=0))
    assert decision.is_noop


def test_unreachable_fraction_at_limit_skips_tier():
    snapshot = _snapshot(
        [10, 20, 30, 40, 45, 50, 54], unreachable=["hot-8", "hot-9", "hot-10"]
    )
    decision = decide(snapshot, _policy(), max_unreachable_fraction=0.3)

    assert decision.is_noop
    assert "unreachable" in decision.reason


def test_unreachable_below_limit_uses_reachable_nodes():
    snapshot = _snapshot(
        [10, 20, 30, 40, 45, 50, 54, 60, 70], unreachable=["hot-10"]
    )
    decision = decide(snapshot, _policy(), max_unreachable_fraction=0.3)
    assert decision.action == ScalingActionType.DECOMMISSION


def test_pending_operation_blocks_decision():
    snapshot = _snapshot([10] * 10)
    state = TierState(tier="hot")
    state.in_flight = OperationRecord(
        operation_id="op-1",
        kind=OperationKind.DECOMMISSION,
        tier="hot",
        target_node_ids=("hot-1",),
        submitted_at=0.0,
    )
    decision = decide(snapshot, _policy(), state=state, now=10.0)

    assert decision.is_noop
    assert "pending" in decision.reason


def test_resolved_in_flight_does_not_block():
    snapshot = _snapshot([10] * 10)
    state = TierState(tier="hot")
    state.in_flight = OperationRecord(
        operation_id="op-1",
        kind=OperationKind.DECOMMISSION,
        tier="hot",
        target_node_ids=("hot-1",),
        submitted_at=0.0,
        status=OperationStatus.FAILED,
    )
    decision = decide(snapshot, _policy(), state=state, now=10.0)
    assert decision.action == ScalingActionType.DECOMMISSION


@pytest.mark.parametrize(
    "now, expected",
    [
        (1000.0 + 899, ScalingActionType.NO_ACTION),
        (1000.0 + 900, ScalingActionType.DECOMMISSION),
    ],
)
def test_cooldown_window(now, expected):
    snapshot = _snapshot([10] * 10)
    state = TierState(tier="hot", last_action_at=1000.0)
    decision = decide(snapshot, _policy(), state=state, now=now, cooldown=900)
    assert decision.action == expected


def test_policy_cooldown_used_when_not_given():
    snapshot = _snapshot([10] * 10)
    state = TierState(tier="hot", last_action_at=1000.0)
    decision = decide(snapshot, _policy(cooldown=60), state=state, now=1030.0)
    assert decision.is_noop


def test_excluded_nodes_do_not_count_toward_decommission():
    snapshot = _snapshot([10, 20, 30, 40, 45, 50, 60, 60, 60, 60])
    decision = decide(
        snapshot, _policy(), exclude_from_downscale={"hot-1", "hot-2"}
    )
    assert decision.is_noop


def test_decide_is_deterministic():
    snapshot = _snapshot([10, 20, 30, 40, 45, 50, 54, 60, 70, 75])
    policy = _policy()
    assert decide(snapshot, policy, now=0.0) == decide(snapshot, policy, now=0.0)


def test_empty_tier_provisions():
    decision = decide(TierSnapshot(tier="hot"), _policy())
    assert decision.action == ScalingActionType.PROVISION
