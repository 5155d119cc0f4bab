# FlexTasker Core - Task Marketplace Data Layer
# Copyright (C) 2025 Luiz Frias <luizf35@gmail.com>
# Form F[x] Labs
#
# This software is dual-licensed under AGPL-3.0 and Commercial License.
# For commercial licensing, contact: luizf35@gmail.com
# See LICENSE file for full terms.

"""Core infrastructure components for the FlexTasker data layer."""

from .cache import CacheStore
from .config import get_settings
from .database import ConnectionRouter
from .performance_monitor import PerformanceMonitor
from .pool_monitor import ConnectionPoolMonitor

__all__ = [
    "get_settings",
    "CacheStore",
    "ConnectionRouter",
    "ConnectionPoolMonitor",
    "PerformanceMonitor",
]
