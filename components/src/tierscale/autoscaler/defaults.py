# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

from enum import Enum


class AutoscalerDefaults:
    config = "tiers.yaml"
    poll_interval = 60  # seconds
    default_cooldown = 900  # seconds
    dry_run = False
    max_unreachable_fraction = 0.3
    min_per_zone = 1
    metrics_source = "prometheus"
    metrics_endpoint = "http://localhost:9090"
    metrics_timeout = 10.0  # seconds
    executor_url = "http://localhost:8080"
    submit_timeout = 30.0  # seconds
    operation_timeout = 3600.0  # seconds
    health_check_url = None
    metric_reporting_prometheus_port = 0
    log_level = None


class OperationKind(str, Enum):
    PROVISION = "provision"
    DECOMMISSION = "decommission"


class OperationStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class ScalingActionType(str, Enum):
    NO_ACTION = "no_action"
    DECOMMISSION = "decommission"
    PROVISION = "provision"


class LoopState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    DECIDING = "deciding"
    DISPATCHING = "dispatching"
    STOPPED = "stopped"
