# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Entry point for the tier autoscaler.

Usage:
    python -m tierscale.autoscaler --config tiers.yaml

Offline dry run against a static node file:
    python -m tierscale.autoscaler --config tiers.yaml --dry-run \\
        --metrics-source static --metrics-endpoint nodes.yaml

SIGTERM/SIGINT stop the loop; SIGHUP reloads the config file.
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional

import uvloop
from prometheus_client import start_http_server

from tierscale.autoscaler.executor_connector import ExecutorConnector, HealthChecker
from tierscale.autoscaler.http_executor_connector import (
    HttpExecutorConnector,
    HttpHealthChecker,
)
from tierscale.autoscaler.utils.autoscaler_argparse import (
    config_overrides,
    create_autoscaler_parser,
    validate_autoscaler_args,
)
from tierscale.autoscaler.utils.control_loop import (
    AutoscalerPrometheusMetrics,
    ControlLoop,
)
from tierscale.autoscaler.utils.exceptions import ConfigValidationError
from tierscale.autoscaler.utils.job_dispatcher import JobDispatcher
from tierscale.autoscaler.utils.metrics_source import (
    ClusterApiMetricsSource,
    MetricsSource,
    PrometheusMetricsSource,
    StaticMetricsSource,
)
from tierscale.autoscaler.utils.tier_policy import (
    AutoscalerConfig,
    load_autoscaler_config,
)
from tierscale.common.logging import configure_tierscale_logging

configure_tierscale_logging()
logger = logging.getLogger(__name__)


def build_metrics_source(
    args: argparse.Namespace, config: AutoscalerConfig
) -> MetricsSource:
    if args.metrics_source == "prometheus":
        return PrometheusMetricsSource(args.metrics_endpoint, config.metrics_timeout)
    if args.metrics_source == "cluster-api":
        return ClusterApiMetricsSource(args.metrics_endpoint, config.metrics_timeout)
    if args.metrics_source == "static":
        return StaticMetricsSource.from_file(args.metrics_endpoint)
    raise ValueError(f"Invalid metrics source: {args.metrics_source}")


def build_dispatcher(
    args: argparse.Namespace, config: AutoscalerConfig
) -> JobDispatcher:
    connector: Optional[ExecutorConnector] = None
    if not config.dry_run:
        connector = HttpExecutorConnector(
            args.executor_url, request_timeout=config.submit_timeout
        )
    health_checker: Optional[HealthChecker] = None
    if args.health_check_url:
        health_checker = HttpHealthChecker(args.health_check_url)
    return JobDispatcher(
        connector,
        dry_run=config.dry_run,
        submit_timeout=config.submit_timeout,
        operation_timeout=config.operation_timeout,
        health_checker=health_checker,
    )


async def start_autoscaler(args: argparse.Namespace) -> None:
    configure_tierscale_logging(args.log_level)
    validate_autoscaler_args(args)
    config = load_autoscaler_config(args.config, config_overrides(args))

    logger.info("=" * 60)
    logger.info("Starting tier autoscaler")
    logger.info("=" * 60)
    logger.info(f"Tiers: {config.tier_names}")
    logger.info(f"Metrics source: {args.metrics_source} ({args.metrics_endpoint})")
    if config.dry_run:
        logger.info("Dry run: ENABLED (no jobs will be submitted)")
    else:
        logger.info(f"Job runner: {args.executor_url}")
    logger.info("=" * 60)

    metrics_source = build_metrics_source(args, config)
    dispatcher = build_dispatcher(args, config)

    prometheus_metrics = AutoscalerPrometheusMetrics()
    if args.metric_reporting_prometheus_port != 0:
        try:
            start_http_server(args.metric_reporting_prometheus_port)
            logger.info(
                f"Started Prometheus metrics server on port {args.metric_reporting_prometheus_port}"
            )
        except Exception as e:
            logger.error(f"Failed to start Prometheus metrics server: {e}")

    control_loop = ControlLoop(
        config,
        metrics_source,
        dispatcher,
        prometheus_metrics=prometheus_metrics,
    )

    def reload_config():
        try:
            new_config = load_autoscaler_config(args.config, config_overrides(args))
        except ConfigValidationError as e:
            logger.error(f"Config reload rejected, keeping current config: {e}")
            return
        control_loop.request_reload(new_config)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, control_loop.shutdown)
    loop.add_signal_handler(signal.SIGHUP, reload_config)

    if dispatcher.connector is not None:
        await dispatcher.connector._async_init()
    try:
        await control_loop.run()
    finally:
        if dispatcher.connector is not None:
            await dispatcher.connector.close()


def main() -> None:
    parser = create_autoscaler_parser()
    args = parser.parse_args()
    try:
        uvloop.run(start_autoscaler(args))
    except (ConfigValidationError, ValueError) as e:
        logger.error(f"Startup failed: {e}")
        sys.exit(2)


if __name__ == "__main__":
    main()
