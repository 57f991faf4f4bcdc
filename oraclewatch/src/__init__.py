"""
Oracle Watch - Price Sync and Feed Health Module

This module provides the polling-and-health scheduling engine:
- MonitoredInstance: One configured (protocol, chain) polling target
- PriceFeedRecord: Durable price readings and the sync context
- ProtocolRegistry: Protocol -> sync function / adapter wiring
- PersistenceGateway: Narrow store interface and in-memory implementation
- SyncScheduler: Per-instance sync loops with bounded retry and backoff
- HealthMonitor: Batched feed health checks with a verdict cache
- AdapterSyncFunction: Generic adapter-backed sync function
- adapters: Protocol adapter implementations
"""

from .AdapterSync import AdapterSyncFunction
from .errors import (
    AdapterError,
    NotFoundError,
    OperationTimeoutError,
    OracleWatchError,
    PersistenceError,
    UnregisteredProtocolError,
)
from .HealthMonitor import (
    HealthCheckResult,
    HealthCheckStatus,
    HealthMonitor,
    HealthMonitorConfig,
    ProtocolHealthSummary,
)
from .MonitoredInstance import MonitoredInstance
from .PersistenceGateway import GatewayPriceWriter, InMemoryGateway, PersistenceGateway
from .PriceFeedRecord import PriceFeedRecord, SyncContext, create_price_feed_record
from .ProtocolRegistry import OracleProtocol, ProtocolRegistry
from .retry import compute_backoff, wait_for_stop, with_retry, with_timeout
from .SyncScheduler import SyncConfig, SyncScheduler, SyncState

__all__ = [
    "AdapterError",
    "AdapterSyncFunction",
    "GatewayPriceWriter",
    "HealthCheckResult",
    "HealthCheckStatus",
    "HealthMonitor",
    "HealthMonitorConfig",
    "InMemoryGateway",
    "MonitoredInstance",
    "NotFoundError",
    "OperationTimeoutError",
    "OracleProtocol",
    "OracleWatchError",
    "PersistenceError",
    "PersistenceGateway",
    "PriceFeedRecord",
    "ProtocolHealthSummary",
    "ProtocolRegistry",
    "SyncConfig",
    "SyncContext",
    "SyncScheduler",
    "SyncState",
    "UnregisteredProtocolError",
    "compute_backoff",
    "create_price_feed_record",
    "wait_for_stop",
    "with_retry",
    "with_timeout",
]
