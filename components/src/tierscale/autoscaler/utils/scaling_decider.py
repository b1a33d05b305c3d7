# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Threshold-based scaling decisions for a single tier.

Everything here is a pure function of the snapshot, the policy and the
tier's bookkeeping; the control loop owns all side effects.
"""

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, Optional

from tierscale.autoscaler.defaults import (
    AutoscalerDefaults,
    OperationStatus,
    ScalingActionType,
)
from tierscale.autoscaler.utils.metrics_source import NodeSnapshot, TierSnapshot
from tierscale.autoscaler.utils.tier_policy import TierPolicy
from tierscale.common.logging import configure_tierscale_logging

if TYPE_CHECKING:
    from tierscale.autoscaler.utils.job_dispatcher import TierState

configure_tierscale_logging()
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScalingDecision:
    tier: str
    action: ScalingActionType
    count: int = 0
    # Nodes that qualify for removal, in snapshot order
    eligible_node_ids: tuple[str, ...] = ()
    reason: str = ""

    @property
    def is_noop(self) -> bool:
        return self.action == ScalingActionType.NO_ACTION


def no_action(tier: str, reason: str) -> ScalingDecision:
    return ScalingDecision(tier=tier, action=ScalingActionType.NO_ACTION, reason=reason)


def nodes_below(
    nodes: Iterable[NodeSnapshot], threshold: float, exclude: Iterable[str] = ()
) -> list[NodeSnapshot]:
    """Nodes whose disk usage is strictly below ``threshold``."""
    excluded = set(exclude)
    return [
        node
        for node in nodes
        if node.disk_used_percent < threshold and node.node_id not in excluded
    ]


def blocked_by_hysteresis(
    state: Optional["TierState"], now: float, cooldown: float
) -> Optional[str]:
    """Return why the tier may not act right now, or None if it may."""
    if state is None:
        return None
    in_flight = state.in_flight
    if in_flight is not None and in_flight.status == OperationStatus.PENDING:
        return f"operation {in_flight.operation_id} still pending"
    if state.last_action_at is not None:
        elapsed = now - state.last_action_at
        if elapsed < cooldown:
            return f"in cooldown ({elapsed:.0f}s of {cooldown:.0f}s elapsed)"
    return None


def decide(
    snapshot: TierSnapshot,
    policy: TierPolicy,
    state: Optional["TierState"] = None,
    now: Optional[float] = None,
    cooldown: Optional[float] = None,
    max_unreachable_fraction: float = AutoscalerDefaults.max_unreachable_fraction,
    exclude_from_downscale: Iterable[str] = (),
) -> ScalingDecision:
    """Map a tier snapshot and its policy to NoAction, Decommission or Provision.

    Provision wins when both the downscale and the upscale conditions hold:
    losing capacity is worse than keeping some idle.

    Args:
        snapshot: Current reachable nodes plus ids of unreachable ones
        policy: The tier's thresholds and counts
        state: Tier bookkeeping for the in-flight and cooldown checks
        now: Current wall-clock time, defaults to time.time()
        cooldown: Cooldown in seconds, defaults to policy.cooldown or 0
        max_unreachable_fraction: Skip the tier when at least this share of
            its nodes is unreachable
        exclude_from_downscale: Node ids that may not count toward (or be
            picked for) decommission, e.g. nodes awaiting health confirmation
    """
    tier = policy.tier
    if now is None:
        now = time.time()
    if cooldown is None:
        cooldown = policy.cooldown or 0.0

    blocked = blocked_by_hysteresis(state, now, cooldown)
    if blocked is not None:
        return no_action(tier, blocked)

    if snapshot.unreachable and (
        snapshot.unreachable_fraction >= max_unreachable_fraction
    ):
        return no_action(
            tier,
            f"{len(snapshot.unreachable)}/{snapshot.total_nodes} nodes unreachable "
            f"(limit {max_unreachable_fraction:.0%}), skipping tier",
        )

    eligible = nodes_below(
        snapshot.nodes, policy.down_threshold, exclude=exclude_from_downscale
    )
    headroom = nodes_below(snapshot.nodes, policy.up_threshold)

    wants_decommission = (
        policy.decommission_count > 0
        and len(eligible) >= policy.below_count_threshold
    )
    wants_provision = (
        policy.provision_count > 0
        and len(headroom) < policy.below_up_check_threshold
    )

    if wants_provision:
        if wants_decommission:
            logger.info(
                f"Tier '{tier}': both downscale and upscale conditions hold, "
                "provision takes priority"
            )
        return ScalingDecision(
            tier=tier,
            action=ScalingActionType.PROVISION,
            count=policy.provision_count,
            reason=(
                f"only {len(headroom)} node(s) below {policy.up_threshold}% "
                f"(need {policy.below_up_check_threshold})"
            ),
        )

    if wants_decommission:
        return ScalingDecision(
            tier=tier,
            action=ScalingActionType.DECOMMISSION,
            count=min(policy.decommission_count, len(eligible)),
            eligible_node_ids=tuple(node.node_id for node in eligible),
            reason=(
                f"{len(eligible)} node(s) below {policy.down_threshold}% "
                f"(threshold {policy.below_count_threshold})"
            ),
        )

    return no_action(
        tier,
        f"{len(eligible)} node(s) below {policy.down_threshold}%, "
        f"{len(headroom)} below {policy.up_threshold}%",
    )
