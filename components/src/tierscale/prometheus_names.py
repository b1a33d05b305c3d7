# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Prometheus metric and label names used by tierscale.

``storage_node`` names are the ones scraped from the storage cluster's
exporters; ``autoscaler`` names are the ones this process exposes about
itself.
"""


class name_prefix:
    AUTOSCALER = "tierscale_autoscaler"
    STORAGE_NODE = "storage_node"


class labels:
    NODE = "node"
    TIER = "tier"
    ZONE = "zone"
    KIND = "kind"
    REASON = "reason"


class storage_node:
    DISK_USED_PERCENT = "disk_used_percent"
    UP = "up"


class autoscaler:
    NODES = "nodes"
    ELIGIBLE_DECOMMISSION_NODES = "eligible_decommission_nodes"
    HEADROOM_NODES = "headroom_nodes"
    UNREACHABLE_NODES = "unreachable_nodes"
    OPERATION_IN_FLIGHT = "operation_in_flight"
    ACTIONS_TOTAL = "actions_total"
    SKIPPED_CYCLES_TOTAL = "skipped_cycles_total"
    OPERATION_TIMEOUTS_TOTAL = "operation_timeouts_total"
