# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Custom exceptions for the tier autoscaler.

Nothing here is fatal to the control loop except ConfigValidationError,
which is only raised while loading configuration at startup.
"""

from typing import TYPE_CHECKING, Iterable, Optional

if TYPE_CHECKING:
    from tierscale.autoscaler.utils.metrics_source import TierSnapshot


class TierScaleError(Exception):
    """Base class for all autoscaler errors."""


class ConfigValidationError(TierScaleError):
    """Raised when the tier configuration is malformed."""

    def __init__(self, errors: Iterable[str]):
        self.errors = list(errors)
        super().__init__(
            "Invalid autoscaler configuration: " + "; ".join(self.errors)
        )


class MetricsUnavailable(TierScaleError):
    """The metrics query for a tier could not complete in time."""

    def __init__(self, tier: str, reason: str):
        self.tier = tier
        self.reason = reason
        super().__init__(f"Metrics unavailable for tier '{tier}': {reason}")


class PartialSnapshot(TierScaleError):
    """Some nodes of a tier could not be read.

    Carries the partial snapshot so callers can degrade instead of failing.
    """

    def __init__(self, snapshot: "TierSnapshot"):
        self.snapshot = snapshot
        super().__init__(
            f"Partial snapshot for tier '{snapshot.tier}': "
            f"{len(snapshot.unreachable)} unreachable node(s) "
            f"{list(snapshot.unreachable)}"
        )

    @property
    def unreachable(self) -> tuple:
        return self.snapshot.unreachable


class OperationInProgress(TierScaleError):
    """A tier already has a pending operation."""

    def __init__(self, tier: str, operation_id: Optional[str] = None):
        self.tier = tier
        self.operation_id = operation_id
        super().__init__(
            f"Tier '{tier}' already has operation {operation_id} in progress"
        )


class OperationTimeout(TierScaleError):
    """A pending operation exceeded the hard timeout and was marked failed."""

    def __init__(self, tier: str, operation_id: str, elapsed: float):
        self.tier = tier
        self.operation_id = operation_id
        self.elapsed = elapsed
        super().__init__(
            f"Operation {operation_id} on tier '{tier}' timed out after "
            f"{elapsed:.0f}s; external state is unknown"
        )


class PlacementInfeasible(TierScaleError):
    """No valid selection of nodes satisfies the placement constraints."""

    def __init__(self, tier: str, reason: str):
        self.tier = tier
        self.reason = reason
        super().__init__(f"Placement infeasible for tier '{tier}': {reason}")


class ExecutorSubmissionError(TierScaleError):
    """The executor definitively rejected or never received a request."""


class SubmissionOutcomeUnknown(TierScaleError):
    """The request reached the executor side but no usable answer came back.

    The job may have been created, so the operation must stay pending.
    """


class EmptyTargetNodesError(TierScaleError):
    """An operation request was built without any target nodes."""

    def __init__(self):
        super().__init__("Operation request must target at least one node")
