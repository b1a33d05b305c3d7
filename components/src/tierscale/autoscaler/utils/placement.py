# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

import logging
import re
from collections import Counter
from dataclasses import dataclass
from typing import Iterable, Optional

from tierscale.autoscaler.utils.exceptions import PlacementInfeasible
from tierscale.autoscaler.utils.metrics_source import NodeSnapshot, TierSnapshot
from tierscale.autoscaler.utils.tier_policy import TierPolicy
from tierscale.common.logging import configure_tierscale_logging

configure_tierscale_logging()
logger = logging.getLogger(__name__)

_TRAILING_NUMBER = re.compile(r"(\d+)$")


def node_number(node_id: str) -> Optional[int]:
    """Trailing integer of a node id ("hot-12" -> 12), None if there is none."""
    match = _TRAILING_NUMBER.search(node_id)
    if match is None:
        return None
    return int(match.group(1))


def node_sort_key(node_id: str) -> tuple[int, str]:
    """Order node ids numerically, falling back to the raw id."""
    number = node_number(node_id)
    return (number if number is not None else -1, node_id)


@dataclass(frozen=True)
class DecommissionPlan:
    tier: str
    node_ids: tuple[str, ...]
    requested: int

    @property
    def shortfall(self) -> int:
        return self.requested - len(self.node_ids)


@dataclass(frozen=True)
class ProvisionTarget:
    node_id: str
    zone: str


@dataclass(frozen=True)
class ProvisionPlan:
    tier: str
    targets: tuple[ProvisionTarget, ...]

    @property
    def node_ids(self) -> tuple[str, ...]:
        return tuple(target.node_id for target in self.targets)

    @property
    def zones(self) -> tuple[str, ...]:
        return tuple(target.zone for target in self.targets)


class PlacementPlanner:
    """Turns a scaling decision into concrete node ids and zones."""

    def plan_decommission(
        self,
        snapshot: TierSnapshot,
        eligible_node_ids: Iterable[str],
        count: int,
        policy: TierPolicy,
    ) -> DecommissionPlan:
        """Pick up to ``count`` eligible nodes, keeping zones balanced.

        Each step removes from the zone that currently holds the most nodes;
        ties go to the numerically highest node id. No zone is taken below
        ``policy.min_per_zone``; if that leaves fewer nodes than requested
        the shortfall is simply not removed.

        Raises:
            PlacementInfeasible: If no eligible node can be removed at all
        """
        floor = policy.min_per_zone
        zone_counts = Counter(node.zone for node in snapshot.nodes)
        by_id = {node.node_id: node for node in snapshot.nodes}
        # Unreachable or unknown ids are never candidates
        candidates: list[NodeSnapshot] = [
            by_id[node_id] for node_id in eligible_node_ids if node_id in by_id
        ]

        selected: list[NodeSnapshot] = []
        for _ in range(count):
            options = [
                node
                for node in candidates
                if node not in selected and zone_counts[node.zone] > floor
            ]
            if not options:
                break
            pick = max(
                options,
                key=lambda n: (zone_counts[n.zone], node_sort_key(n.node_id)),
            )
            selected.append(pick)
            zone_counts[pick.zone] -= 1

        if count > 0 and not selected:
            raise PlacementInfeasible(
                policy.tier,
                f"every eligible node sits in a zone at its floor of {floor}",
            )

        plan = DecommissionPlan(
            tier=policy.tier,
            node_ids=tuple(node.node_id for node in selected),
            requested=count,
        )
        if plan.shortfall > 0:
            logger.warning(
                f"Tier '{policy.tier}': zone floor of {floor} limits decommission "
                f"to {len(plan.node_ids)} of {count} requested node(s)"
            )
        return plan

    def plan_provision(
        self,
        snapshot: TierSnapshot,
        count: int,
        policy: TierPolicy,
        reserved_ids: Iterable[str] = (),
    ) -> ProvisionPlan:
        """Allocate ``count`` new node ids and target zones.

        Ids are the tier prefix followed by the lowest integers (from 1) not
        used by any known node or ``reserved_ids``. Each new node goes to the
        policy zone holding the fewest nodes, ties in policy order, so a
        balanced tier is filled round-robin.
        """
        prefix = policy.prefix
        used: set[int] = set()
        for node_id in list(snapshot.node_ids) + list(reserved_ids):
            suffix = node_id[len(prefix) :]
            if node_id.startswith(prefix) and suffix.isdigit():
                used.add(int(suffix))

        zone_order = {zone: index for index, zone in enumerate(policy.zones)}
        zone_counts = Counter({zone: 0 for zone in policy.zones})
        for node in snapshot.nodes:
            if node.zone in zone_order:
                zone_counts[node.zone] += 1
            else:
                logger.warning(
                    f"Tier '{policy.tier}': node {node.node_id} is in zone "
                    f"'{node.zone}' which is not in the policy zone list"
                )

        targets: list[ProvisionTarget] = []
        candidate = 1
        for _ in range(count):
            while candidate in used:
                candidate += 1
            used.add(candidate)
            zone = min(policy.zones, key=lambda z: (zone_counts[z], zone_order[z]))
            zone_counts[zone] += 1
            targets.append(ProvisionTarget(node_id=f"{prefix}{candidate}", zone=zone))

        return ProvisionPlan(tier=policy.tier, targets=tuple(targets))
