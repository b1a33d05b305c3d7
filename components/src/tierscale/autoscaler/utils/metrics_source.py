# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

import asyncio
import logging
import math
import time
import typing
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

import aiohttp
import yaml
from prometheus_api_client import PrometheusConnect
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from tierscale import prometheus_names
from tierscale.autoscaler.utils.exceptions import MetricsUnavailable, PartialSnapshot
from tierscale.common.logging import configure_tierscale_logging

configure_tierscale_logging()
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NodeSnapshot:
    node_id: str
    tier: str
    zone: str
    disk_used_percent: float


@dataclass(frozen=True)
class TierSnapshot:
    """All readable nodes of one tier, captured in a single query window."""

    tier: str
    nodes: tuple[NodeSnapshot, ...] = ()
    # Ids of nodes known to exist but whose metrics could not be read
    unreachable: tuple[str, ...] = ()
    captured_at: float = field(default_factory=time.time)

    @property
    def total_nodes(self) -> int:
        return len(self.nodes) + len(self.unreachable)

    @property
    def unreachable_fraction(self) -> float:
        if self.total_nodes == 0:
            return 0.0
        return len(self.unreachable) / self.total_nodes

    @property
    def node_ids(self) -> list[str]:
        return [node.node_id for node in self.nodes] + list(self.unreachable)


def build_snapshot(
    tier: str, nodes: Iterable[NodeSnapshot], unreachable: Iterable[str] = ()
) -> TierSnapshot:
    """Build a snapshot, raising PartialSnapshot if any node was unreachable."""
    snapshot = TierSnapshot(
        tier=tier,
        nodes=tuple(sorted(nodes, key=lambda n: n.node_id)),
        unreachable=tuple(sorted(set(unreachable))),
    )
    if snapshot.unreachable:
        raise PartialSnapshot(snapshot)
    return snapshot


class MetricsSource(ABC):
    """Capability for reading per-node disk utilization of a tier."""

    @abstractmethod
    async def snapshot(self, tier: str) -> TierSnapshot:
        """Return the current snapshot of ``tier``.

        Raises:
            MetricsUnavailable: If the query cannot complete in time
            PartialSnapshot: If some nodes could not be read
        """


class NodeMetricLabels(BaseModel):
    node: typing.Optional[str] = None
    tier: typing.Optional[str] = None
    zone: typing.Optional[str] = None
    instance: typing.Optional[str] = None
    job: typing.Optional[str] = None


class NodeMetricContainer(BaseModel):
    metric: NodeMetricLabels
    value: typing.Tuple[float, float]  # [timestamp, value]


def parse_node_metric_containers(result: list[dict]) -> list[NodeMetricContainer]:
    containers: list[NodeMetricContainer] = []
    for res in result:
        try:
            containers.append(NodeMetricContainer.model_validate(res))
        except ValidationError as e:
            logger.error(f"Error parsing node metric container: {e}")
            continue
    return containers


class PrometheusMetricsSource(MetricsSource):
    """Reads disk usage of storage nodes from a Prometheus server.

    Nodes are expected to export ``storage_node_disk_used_percent`` and
    ``storage_node_up`` with ``node``, ``tier`` and ``zone`` labels. A node
    that is down, or up but missing a usable disk sample, is unreachable.
    """

    def __init__(self, url: str, timeout: float):
        self.prom = PrometheusConnect(url=url, disable_ssl=True)
        self.timeout = timeout
        prefix = prometheus_names.name_prefix.STORAGE_NODE
        self.disk_metric = f"{prefix}_{prometheus_names.storage_node.DISK_USED_PERCENT}"
        self.up_metric = f"{prefix}_{prometheus_names.storage_node.UP}"

    def _query(self, metric_name: str, tier: str) -> list[NodeMetricContainer]:
        query = f'{metric_name}{{{prometheus_names.labels.TIER}="{tier}"}}'
        return parse_node_metric_containers(self.prom.custom_query(query=query))

    def _query_tier(self, tier: str) -> tuple[list[NodeSnapshot], list[str]]:
        disk_samples = self._query(self.disk_metric, tier)
        up_samples = self._query(self.up_metric, tier)

        # A node may export several series; it is up if any of them says so
        up_by_node: dict[str, float] = {}
        for c in up_samples:
            if c.metric.node:
                up_by_node[c.metric.node] = max(
                    c.value[1], up_by_node.get(c.metric.node, 0.0)
                )
        down = {node for node, up in up_by_node.items() if up < 1}

        # One snapshot per node, keeping its highest usage across series
        nodes: dict[str, NodeSnapshot] = {}
        unusable: set[str] = set()
        for container in disk_samples:
            node_id = container.metric.node
            if not node_id or node_id in down:
                continue
            disk = container.value[1]
            if math.isnan(disk) or not container.metric.zone:
                unusable.add(node_id)
                continue
            current = nodes.get(node_id)
            if current is None or disk > current.disk_used_percent:
                nodes[node_id] = NodeSnapshot(
                    node_id=node_id,
                    tier=tier,
                    zone=container.metric.zone,
                    disk_used_percent=disk,
                )

        seen = set(nodes) | unusable
        unreachable = down | (unusable - set(nodes))
        # Up but never reported disk usage
        unreachable.update(
            node for node, up in up_by_node.items() if up >= 1 and node not in seen
        )
        return list(nodes.values()), sorted(unreachable)

    async def snapshot(self, tier: str) -> TierSnapshot:
        try:
            nodes, unreachable = await asyncio.wait_for(
                asyncio.to_thread(self._query_tier, tier), timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            raise MetricsUnavailable(
                tier, f"prometheus query timed out after {self.timeout}s"
            ) from e
        except Exception as e:
            raise MetricsUnavailable(tier, f"prometheus query failed: {e}") from e
        return build_snapshot(tier, nodes, unreachable)


class ClusterNodeEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    node_name: str = Field(alias="nodeName")
    disk_used_percent: typing.Optional[float] = Field(
        default=None, alias="diskUsedPercent"
    )
    zone: typing.Optional[str] = None


class ClusterApiMetricsSource(MetricsSource):
    """Reads disk usage from the storage cluster's own HTTP API.

    ``GET {base_url}/tiers/{tier}/nodes`` returns an ordered list of
    ``{nodeName, diskUsedPercent, zone}``; a null ``diskUsedPercent`` marks
    a node the cluster could not reach.
    """

    def __init__(self, base_url: str, timeout: float):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def _fetch(self, tier: str) -> list:
        url = f"{self.base_url}/tiers/{tier}/nodes"
        async with aiohttp.ClientSession() as session:
            async with session.get(
                url, timeout=aiohttp.ClientTimeout(total=self.timeout)
            ) as response:
                response.raise_for_status()
                return await response.json()

    def _parse(self, tier: str, payload: list) -> tuple[list[NodeSnapshot], list[str]]:
        nodes: list[NodeSnapshot] = []
        unreachable: list[str] = []
        for raw in payload:
            try:
                entry = ClusterNodeEntry.model_validate(raw)
            except ValidationError as e:
                logger.error(f"Error parsing node entry for tier '{tier}': {e}")
                continue
            if entry.disk_used_percent is None or not entry.zone:
                unreachable.append(entry.node_name)
                continue
            nodes.append(
                NodeSnapshot(
                    node_id=entry.node_name,
                    tier=tier,
                    zone=entry.zone,
                    disk_used_percent=entry.disk_used_percent,
                )
            )
        return nodes, unreachable

    async def snapshot(self, tier: str) -> TierSnapshot:
        try:
            payload = await asyncio.wait_for(self._fetch(tier), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise MetricsUnavailable(
                tier, f"cluster API timed out after {self.timeout}s"
            ) from e
        except (aiohttp.ClientError, ValueError) as e:
            raise MetricsUnavailable(tier, f"cluster API request failed: {e}") from e
        if not isinstance(payload, list):
            raise MetricsUnavailable(
                tier, f"expected a list of nodes, got {type(payload).__name__}"
            )
        nodes, unreachable = self._parse(tier, payload)
        return build_snapshot(tier, nodes, unreachable)


class StaticMetricsSource(MetricsSource):
    """In-memory metrics, used for offline dry runs and tests.

    ``nodes`` maps tier name to node snapshots; ``unreachable`` maps tier name
    to ids of nodes that should be reported as unreadable.
    """

    def __init__(
        self,
        nodes: Optional[dict[str, list[NodeSnapshot]]] = None,
        unreachable: Optional[dict[str, list[str]]] = None,
    ):
        self.nodes = dict(nodes or {})
        self.unreachable = dict(unreachable or {})
        self.unavailable: set[str] = set()

    @classmethod
    def from_file(cls, path: str) -> "StaticMetricsSource":
        """Load ``{tier: [{nodeName, diskUsedPercent, zone}, ...]}`` from YAML."""
        with open(Path(path), "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        nodes: dict[str, list[NodeSnapshot]] = {}
        unreachable: dict[str, list[str]] = {}
        for tier, entries in data.items():
            for raw in entries or []:
                entry = ClusterNodeEntry.model_validate(raw)
                if entry.disk_used_percent is None or not entry.zone:
                    unreachable.setdefault(tier, []).append(entry.node_name)
                    continue
                nodes.setdefault(tier, []).append(
                    NodeSnapshot(
                        node_id=entry.node_name,
                        tier=tier,
                        zone=entry.zone,
                        disk_used_percent=entry.disk_used_percent,
                    )
                )
        return cls(nodes=nodes, unreachable=unreachable)

    def set_tier(
        self, tier: str, nodes: list[NodeSnapshot], unreachable: Iterable[str] = ()
    ) -> None:
        self.nodes[tier] = list(nodes)
        self.unreachable[tier] = list(unreachable)

    async def snapshot(self, tier: str) -> TierSnapshot:
        if tier in self.unavailable:
            raise MetricsUnavailable(tier, "marked unavailable")
        return build_snapshot(
            tier, self.nodes.get(tier, []), self.unreachable.get(tier, [])
        )
