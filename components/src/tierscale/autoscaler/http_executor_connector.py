# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""HTTP clients for the external job runner and the node health endpoint."""

import asyncio
import logging
from typing import Any, Optional

import aiohttp
from pydantic import ValidationError

from tierscale.autoscaler.executor_connector import ExecutorConnector, HealthChecker
from tierscale.autoscaler.scale_protocol import (
    ExecutorResponse,
    ExecutorStatus,
    ExecutorStatusResponse,
    ExecutorSubmission,
)
from tierscale.autoscaler.utils.exceptions import (
    EmptyTargetNodesError,
    ExecutorSubmissionError,
    SubmissionOutcomeUnknown,
)
from tierscale.common.logging import configure_tierscale_logging

configure_tierscale_logging()
logger = logging.getLogger(__name__)


class HttpExecutorConnector(ExecutorConnector):
    """
    Submits jobs to the runner's REST API.

    ``POST {base_url}/operations`` takes an ExecutorSubmission and returns an
    ExecutorResponse; ``GET {base_url}/operations/{correlation_id}`` returns
    an ExecutorStatusResponse.

    Only connection establishment is retried: once a request may have reached
    the runner, errors propagate so the caller can treat the outcome as
    unknown rather than resubmitting. A 4xx answer or an explicit
    ``rejected`` status is a definite rejection; a 5xx answer or an unreadable
    body leaves the outcome unknown.
    """

    def __init__(
        self,
        base_url: str,
        request_timeout: float = 30.0,
        max_retries: int = 3,
    ):
        self.base_url = base_url.rstrip("/")
        self.request_timeout = request_timeout
        self.max_retries = max_retries
        self._session: Optional[aiohttp.ClientSession] = None

    async def _async_init(self):
        await self._ensure_session()

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.request_timeout)
            )
        return self._session

    async def close(self):
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def _request(
        self, method: str, path: str, payload: Optional[str] = None
    ) -> tuple[int, Any]:
        session = await self._ensure_session()
        url = f"{self.base_url}{path}"
        headers = {"Content-Type": "application/json"} if payload else None

        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries):
            try:
                async with session.request(
                    method, url, data=payload, headers=headers
                ) as response:
                    try:
                        body = await response.json(content_type=None)
                    except ValueError:
                        body = None
                    return response.status, body
            except aiohttp.ClientConnectorError as e:
                # Never connected, so the request was not delivered
                last_error = e
                logger.warning(
                    f"Connection attempt {attempt + 1}/{self.max_retries} to "
                    f"{url} failed: {e}"
                )

            # Exponential backoff before retry (except on last attempt)
            if attempt < self.max_retries - 1:
                backoff = 2**attempt  # 1s, 2s, 4s, ...
                logger.info(f"Retrying in {backoff}s...")
                await asyncio.sleep(backoff)

        raise ExecutorSubmissionError(
            f"Failed to reach job runner at {url} after {self.max_retries} "
            f"attempts. Last error: {last_error}"
        )

    async def submit(self, submission: ExecutorSubmission) -> ExecutorResponse:
        if not submission.target_node_ids:
            raise EmptyTargetNodesError()

        logger.info(
            f"Submitting {submission.operation_kind.value} of "
            f"{submission.target_node_ids} on tier '{submission.tier}'"
        )
        status, body = await self._request(
            "POST", "/operations", submission.model_dump_json(by_alias=True)
        )
        message = body.get("message", "") if isinstance(body, dict) else ""
        if status >= 500:
            # A server or gateway answered; the job may exist
            raise SubmissionOutcomeUnknown(
                f"Job runner answered HTTP {status}: {message}"
            )
        if status >= 400:
            raise ExecutorSubmissionError(
                f"Job runner rejected submission with HTTP {status}: {message}"
            )
        if body is None:
            raise SubmissionOutcomeUnknown(
                f"No response body from job runner (HTTP {status})"
            )

        try:
            response = ExecutorResponse.model_validate(body)
        except ValidationError as e:
            raise SubmissionOutcomeUnknown(
                f"Unreadable response from job runner: {e}"
            ) from e
        if response.status == ExecutorStatus.REJECTED:
            raise ExecutorSubmissionError(
                f"Job runner rejected submission: {response.message}"
            )
        logger.info(
            f"Job runner accepted submission: correlation_id={response.correlation_id}"
        )
        return response

    async def get_status(self, correlation_id: str) -> ExecutorStatusResponse:
        status, body = await self._request("GET", f"/operations/{correlation_id}")
        if status >= 400 or body is None:
            raise RuntimeError(
                f"Could not read status of job {correlation_id}: HTTP {status}"
            )
        return ExecutorStatusResponse.model_validate(body)


class HttpHealthChecker(HealthChecker):
    """A node is healthy when ``GET {base_url}/nodes/{node_id}/health`` returns 200."""

    def __init__(self, base_url: str, timeout: float = 5.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def is_healthy(self, node_id: str) -> bool:
        url = f"{self.base_url}/nodes/{node_id}/health"
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(
                    url, timeout=aiohttp.ClientTimeout(total=self.timeout)
                ) as response:
                    return response.status == 200
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Health check for node {node_id} failed: {e}")
            return False
