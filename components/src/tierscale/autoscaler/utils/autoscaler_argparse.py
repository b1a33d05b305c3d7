# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

import argparse
from typing import Any

from tierscale.autoscaler.defaults import AutoscalerDefaults


def create_autoscaler_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser for the tier autoscaler.

    Global settings left unset here fall back to the config file, then to
    AutoscalerDefaults.

    Returns:
        argparse.ArgumentParser: Configured argument parser
    """
    parser = argparse.ArgumentParser(description="Tier-aware storage autoscaler")
    parser.add_argument(
        "--config",
        default=AutoscalerDefaults.config,
        help="Path to the YAML file with the tier policies",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=None,
        help=f"Seconds between ticks (default: {AutoscalerDefaults.poll_interval})",
    )
    parser.add_argument(
        "--default-cooldown",
        type=float,
        default=None,
        help="Cooldown in seconds for tiers that do not set one "
        f"(default: {AutoscalerDefaults.default_cooldown})",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        default=AutoscalerDefaults.dry_run,
        help="Log scaling decisions without submitting any job",
    )
    parser.add_argument(
        "--max-unreachable-fraction",
        type=float,
        default=None,
        help="Skip a tier when at least this fraction of its nodes is unreachable "
        f"(default: {AutoscalerDefaults.max_unreachable_fraction})",
    )
    parser.add_argument(
        "--metrics-source",
        default=AutoscalerDefaults.metrics_source,
        choices=["prometheus", "cluster-api", "static"],
        help="Where node disk usage is read from: prometheus, the storage cluster "
        "API, or a static YAML file (offline dry runs)",
    )
    parser.add_argument(
        "--metrics-endpoint",
        type=str,
        default=AutoscalerDefaults.metrics_endpoint,
        help="Prometheus URL, cluster API base URL, or static node file path",
    )
    parser.add_argument(
        "--metrics-timeout",
        type=float,
        default=None,
        help="Per-query timeout in seconds for node metrics "
        f"(default: {AutoscalerDefaults.metrics_timeout})",
    )
    parser.add_argument(
        "--executor-url",
        type=str,
        default=AutoscalerDefaults.executor_url,
        help="Base URL of the job runner that provisions and decommissions nodes",
    )
    parser.add_argument(
        "--submit-timeout",
        type=float,
        default=None,
        help="Per-call timeout in seconds for job runner requests "
        f"(default: {AutoscalerDefaults.submit_timeout})",
    )
    parser.add_argument(
        "--operation-timeout",
        type=float,
        default=None,
        help="Seconds after which a pending operation is failed and its tier released "
        f"(default: {AutoscalerDefaults.operation_timeout})",
    )
    parser.add_argument(
        "--health-check-url",
        type=str,
        default=AutoscalerDefaults.health_check_url,
        help="Optional base URL for node health checks; new nodes are excluded from "
        "decommission counting until healthy",
    )
    parser.add_argument(
        "--metric-reporting-prometheus-port",
        type=int,
        default=AutoscalerDefaults.metric_reporting_prometheus_port,
        help="Port for exposing the autoscaler's own metrics to Prometheus (0 disables)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=AutoscalerDefaults.log_level,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: TIERSCALE_LOG_LEVEL or INFO)",
    )
    return parser


def validate_autoscaler_args(args: argparse.Namespace) -> None:
    """Validate autoscaler arguments before any component is built.

    Raises:
        ValueError: If argument constraints are violated
    """
    if args.metrics_source != "static" and not args.metrics_endpoint:
        raise ValueError(
            f"--metrics-endpoint is required for metrics source '{args.metrics_source}'"
        )
    if args.metrics_source == "static" and not args.metrics_endpoint:
        raise ValueError("--metrics-endpoint must point to the static node file")
    if not args.dry_run and not args.executor_url:
        raise ValueError("--executor-url is required unless --dry-run is set")

    for name in (
        "poll_interval",
        "metrics_timeout",
        "submit_timeout",
        "operation_timeout",
    ):
        value = getattr(args, name, None)
        if value is not None and value <= 0:
            raise ValueError(f"--{name.replace('_', '-')} must be positive, got {value}")
    if args.default_cooldown is not None and args.default_cooldown < 0:
        raise ValueError(
            f"--default-cooldown must not be negative, got {args.default_cooldown}"
        )
    fraction = args.max_unreachable_fraction
    if fraction is not None and not 0 < fraction <= 1:
        raise ValueError(
            f"--max-unreachable-fraction must be in (0, 1], got {fraction}"
        )
    if args.metric_reporting_prometheus_port < 0:
        raise ValueError("--metric-reporting-prometheus-port must not be negative")


def config_overrides(args: argparse.Namespace) -> dict[str, Any]:
    """Global config fields set on the command line, for load_autoscaler_config."""
    return {
        "poll_interval": args.poll_interval,
        "default_cooldown": args.default_cooldown,
        "dry_run": True if args.dry_run else None,
        "max_unreachable_fraction": args.max_unreachable_fraction,
        "metrics_timeout": args.metrics_timeout,
        "submit_timeout": args.submit_timeout,
        "operation_timeout": args.operation_timeout,
    }
