# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""saga-db: async database abstraction layer for the saga manager."""

from .config import DbConfig, config_from_env
from .sql import SqlDb

__version__ = "0.1.0"

__all__ = ["DbConfig", "SqlDb", "config_from_env"]
