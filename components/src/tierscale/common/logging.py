# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Process-wide logging setup shared by every tierscale module."""

import logging
import os
from typing import Optional

LOG_LEVEL_ENV = "TIERSCALE_LOG_LEVEL"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_configured = False


def _resolve_level(level: Optional[str]) -> int:
    level_name = (level or os.environ.get(LOG_LEVEL_ENV) or "INFO").upper()
    numeric_level = logging.getLevelName(level_name)
    if not isinstance(numeric_level, int):
        return logging.INFO
    return numeric_level


def configure_tierscale_logging(level: Optional[str] = None) -> None:
    """Install the root handler once; later calls with an explicit level only
    adjust the level.

    The level is taken from ``level`` if given, otherwise from the
    TIERSCALE_LOG_LEVEL environment variable, defaulting to INFO.
    """
    global _configured

    root = logging.getLogger()
    if not _configured:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
        root.setLevel(_resolve_level(level))
        _configured = True
    elif level is not None:
        root.setLevel(_resolve_level(level))
