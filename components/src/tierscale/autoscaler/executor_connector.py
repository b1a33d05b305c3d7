# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

from abc import ABC, abstractmethod

from tierscale.autoscaler.scale_protocol import (
    ExecutorResponse,
    ExecutorStatusResponse,
    ExecutorSubmission,
)


class ExecutorConnector(ABC):
    """Capability for handing provision/decommission jobs to an external runner."""

    async def _async_init(self):
        """Async initialization for connectors that need it"""

    async def close(self):
        """Release any resources held by the connector"""

    @abstractmethod
    async def submit(self, submission: ExecutorSubmission) -> ExecutorResponse:
        """Submit a job and return the runner's response with a correlation id.

        Raises:
            ExecutorSubmissionError: If the runner definitively did not accept
                the job (rejected it, or was never reached)
            SubmissionOutcomeUnknown: If the request may have reached the
                runner but its answer is missing or unusable
        """
        raise NotImplementedError

    @abstractmethod
    async def get_status(self, correlation_id: str) -> ExecutorStatusResponse:
        """Return the current status of a previously submitted job"""
        raise NotImplementedError


class HealthChecker(ABC):
    """Optional capability confirming that a newly provisioned node is serving."""

    @abstractmethod
    async def is_healthy(self, node_id: str) -> bool:
        raise NotImplementedError
