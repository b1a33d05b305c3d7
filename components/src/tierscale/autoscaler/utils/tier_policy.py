# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Per-tier scaling policy and the global autoscaler configuration.

The configuration is a YAML document validated with pydantic:

    poll_interval: 60
    default_cooldown: 900
    zones: [zone-a, zone-b, zone-c]
    tiers:
      - tier: hot
        down_threshold: 55
        below_count_threshold: 6
        decommission_count: 2
        up_threshold: 80
        below_up_check_threshold: 6
        provision_count: 3
        zones: [zone-a, zone-b, zone-c]
"""

import logging
from pathlib import Path
from typing import Any, Optional, Tuple

import yaml
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    model_validator,
)

from tierscale.autoscaler.defaults import AutoscalerDefaults
from tierscale.autoscaler.utils.exceptions import ConfigValidationError
from tierscale.common.logging import configure_tierscale_logging

configure_tierscale_logging()
logger = logging.getLogger(__name__)


class TierPolicy(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    tier: str = Field(min_length=1)
    # New node ids are node_prefix + integer; defaults to "<tier>-"
    node_prefix: Optional[str] = None

    # Downscale: at least below_count_threshold nodes under down_threshold
    down_threshold: float = Field(ge=0, le=100)
    below_count_threshold: int = Field(ge=1)
    decommission_count: int = Field(ge=0)

    # Upscale: fewer than below_up_check_threshold nodes under up_threshold
    up_threshold: float = Field(ge=0, le=100)
    below_up_check_threshold: int = Field(
        ge=0,
        validation_alias=AliasChoices(
            "below_up_check_threshold", "above_count_threshold"
        ),
    )
    provision_count: int = Field(ge=0)

    cooldown: Optional[float] = Field(default=None, ge=0)
    zones: Tuple[str, ...] = Field(min_length=1)
    min_per_zone: int = Field(default=AutoscalerDefaults.min_per_zone, ge=0)

    @model_validator(mode="after")
    def _check_zones(self) -> "TierPolicy":
        if len(set(self.zones)) != len(self.zones):
            raise ValueError(f"tier '{self.tier}' lists duplicate zones {self.zones}")
        if any(not zone for zone in self.zones):
            raise ValueError(f"tier '{self.tier}' has an empty zone name")
        return self

    @property
    def prefix(self) -> str:
        if self.node_prefix is not None:
            return self.node_prefix
        return f"{self.tier}-"


class AutoscalerConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    tiers: Tuple[TierPolicy, ...] = Field(min_length=1)
    # Known zones; when set, every tier may only reference these
    zones: Tuple[str, ...] = ()

    poll_interval: float = Field(default=AutoscalerDefaults.poll_interval, gt=0)
    default_cooldown: float = Field(default=AutoscalerDefaults.default_cooldown, ge=0)
    dry_run: bool = AutoscalerDefaults.dry_run
    max_unreachable_fraction: float = Field(
        default=AutoscalerDefaults.max_unreachable_fraction, gt=0, le=1
    )
    metrics_timeout: float = Field(default=AutoscalerDefaults.metrics_timeout, gt=0)
    submit_timeout: float = Field(default=AutoscalerDefaults.submit_timeout, gt=0)
    operation_timeout: float = Field(
        default=AutoscalerDefaults.operation_timeout, gt=0
    )

    @model_validator(mode="after")
    def _check_tiers(self) -> "AutoscalerConfig":
        names = [policy.tier for policy in self.tiers]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"duplicate tier names {duplicates}")
        if self.zones:
            known = set(self.zones)
            for policy in self.tiers:
                unknown = [zone for zone in policy.zones if zone not in known]
                if unknown:
                    raise ValueError(
                        f"tier '{policy.tier}' references unknown zones {unknown}"
                    )
        return self

    @property
    def tier_names(self) -> list[str]:
        return [policy.tier for policy in self.tiers]

    def policy(self, tier: str) -> TierPolicy:
        for policy in self.tiers:
            if policy.tier == tier:
                return policy
        raise KeyError(tier)

    def cooldown_for(self, policy: TierPolicy) -> float:
        if policy.cooldown is not None:
            return policy.cooldown
        return self.default_cooldown


def _format_validation_error(error: ValidationError) -> list[str]:
    messages = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"]) or "<root>"
        messages.append(f"{location}: {item['msg']}")
    return messages


def build_autoscaler_config(
    data: dict[str, Any], overrides: Optional[dict[str, Any]] = None
) -> AutoscalerConfig:
    """Validate a raw configuration mapping, applying non-None overrides."""
    merged = dict(data)
    for key, value in (overrides or {}).items():
        if value is not None:
            merged[key] = value
    try:
        return AutoscalerConfig.model_validate(merged)
    except ValidationError as e:
        raise ConfigValidationError(_format_validation_error(e)) from e


def load_autoscaler_config(
    config_path: str, overrides: Optional[dict[str, Any]] = None
) -> AutoscalerConfig:
    """Load and validate the autoscaler configuration from a YAML file.

    Raises:
        ConfigValidationError: If the file is missing, unparsable or invalid
    """
    logger.info(f"Loading autoscaler configuration from {config_path}")

    path = Path(config_path)
    if not path.exists():
        raise ConfigValidationError([f"config file not found: {config_path}"])

    try:
        with open(path, "r", encoding="utf-8") as f:
            config_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigValidationError([f"cannot parse {config_path}: {e}"]) from e

    if not isinstance(config_data, dict):
        raise ConfigValidationError(
            [
                f"config file must contain a mapping, got {type(config_data).__name__}"
            ]
        )

    config = build_autoscaler_config(config_data, overrides)
    logger.info(
        f"Loaded {len(config.tiers)} tier(s): {config.tier_names} "
        f"(poll_interval={config.poll_interval}s, dry_run={config.dry_run})"
    )
    return config
