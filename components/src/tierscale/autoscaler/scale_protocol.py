# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Data structures exchanged between the autoscaler and the external job runner."""

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from tierscale.autoscaler.defaults import OperationKind


class ExecutorStatus(str, Enum):
    """Status values reported by the job runner"""

    ACCEPTED = "accepted"
    REJECTED = "rejected"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class OperationRequest(BaseModel):
    """A provision or decommission request for one tier"""

    kind: OperationKind
    tier: str
    target_node_ids: List[str]
    # Zone of each target node, aligned with target_node_ids (provision only)
    target_zones: List[str] = Field(default_factory=list)
    parameters: Dict[str, str] = Field(default_factory=dict)

    # Optional context (for debugging/logging)
    reason: Optional[str] = None


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ExecutorSubmission(_WireModel):
    """Body of a job submission, serialized with camelCase keys"""

    operation_kind: OperationKind
    tier: str
    target_node_ids: List[str]
    parameters: Dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_request(
        cls, request: OperationRequest, operation_id: str
    ) -> "ExecutorSubmission":
        parameters = dict(request.parameters)
        parameters["operationId"] = operation_id
        if request.target_zones:
            parameters["zones"] = ",".join(request.target_zones)
        return cls(
            operation_kind=request.kind,
            tier=request.tier,
            target_node_ids=list(request.target_node_ids),
            parameters=parameters,
        )


class ExecutorResponse(_WireModel):
    """Response to a job submission"""

    status: ExecutorStatus
    correlation_id: Optional[str] = None
    message: str = ""


class ExecutorStatusResponse(_WireModel):
    """Response to a job status query"""

    correlation_id: str
    status: ExecutorStatus
    message: str = ""
