# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Tier-aware storage autoscaler.

Architecture:
- MetricsSource reads per-node disk usage for a tier
- decide() maps a snapshot and a TierPolicy to NoAction/Decommission/Provision
- PlacementPlanner picks concrete node ids and zones
- JobDispatcher submits to the external job runner, one pending job per tier
- ControlLoop ties them together on a fixed polling interval

Usage:
    python -m tierscale.autoscaler --config tiers.yaml \
        --metrics-endpoint http://prometheus:9090 \
        --executor-url http://job-runner:8080
"""

__all__ = [
    "AutoscalerConfig",
    "ControlLoop",
    "ExecutorConnector",
    "HealthChecker",
    "JobDispatcher",
    "MetricsSource",
    "NodeSnapshot",
    "OperationKind",
    "OperationStatus",
    "PlacementPlanner",
    "ScalingActionType",
    "TierPolicy",
    "TierSnapshot",
    "decide",
]

from tierscale.autoscaler.defaults import (
    OperationKind,
    OperationStatus,
    ScalingActionType,
)
from tierscale.autoscaler.executor_connector import ExecutorConnector, HealthChecker
from tierscale.autoscaler.utils.control_loop import ControlLoop
from tierscale.autoscaler.utils.job_dispatcher import JobDispatcher
from tierscale.autoscaler.utils.metrics_source import (
    MetricsSource,
    NodeSnapshot,
    TierSnapshot,
)
from tierscale.autoscaler.utils.placement import PlacementPlanner
from tierscale.autoscaler.utils.scaling_decider import decide
from tierscale.autoscaler.utils.tier_policy import AutoscalerConfig, TierPolicy
