"""Shared store: the mutable context of one workflow run.

Created once per execution and handed to every node's prepare / execute /
finalize phases. Holds the key/value data nodes communicate through, the
append-only run log, per-node results, the first recorded failure, and the
optional mocks, debug hooks and memory caps for the run.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import structlog

from operations.base import FunctionResult

logger = structlog.get_logger(__name__)

DEFAULT_MAX_LOGS = 1000
DEFAULT_MAX_NODE_RESULTS = 1000
DEFAULT_MAX_DATA_SIZE = 10 * 1024 * 1024


@dataclass
class MockValue:
    """Canned result substituted for a node's real execution."""
    enabled: bool = True
    output: Any = None
    success: bool = True
    action: Optional[str] = None
    delay: float = 0  # ms

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MockValue":
        return cls(
            enabled=data.get("enabled", True),
            output=data.get("output"),
            success=data.get("success", True),
            action=data.get("action"),
            delay=data.get("delay", 0) or 0,
        )

    def to_result(self) -> FunctionResult:
        return FunctionResult(
            output=self.output,
            success=self.success,
            action=self.action,
            error=None if self.success else "Mocked failure",
        )


@dataclass
class NodeProfile:
    """Per-node measurements taken when profiling is enabled."""
    node_id: str
    duration_ms: float
    cpu_ms: float
    memory_delta_bytes: int
    timestamp: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodeId": self.node_id,
            "durationMs": round(self.duration_ms, 3),
            "cpuMs": round(self.cpu_ms, 3),
            "memoryDeltaBytes": self.memory_delta_bytes,
            "timestamp": self.timestamp,
        }


BeforeNodeHook = Callable[[str], Union[None, Awaitable[None]]]


@dataclass
class DebugCallbacks:
    """Optional hooks invoked around each node.

    ``on_before_node`` may return an awaitable; the node does not start
    until it resolves. The remaining hooks are plain notifications.
    """
    on_before_node: Optional[BeforeNodeHook] = None
    on_node_start: Optional[Callable[[str, Dict[str, Any]], None]] = None
    on_node_complete: Optional[Callable[[str, bool, Any], None]] = None
    on_node_profile: Optional[Callable[[str, NodeProfile], None]] = None


@dataclass
class MemoryLimits:
    max_logs: int = DEFAULT_MAX_LOGS
    max_node_results: int = DEFAULT_MAX_NODE_RESULTS
    max_data_size: int = DEFAULT_MAX_DATA_SIZE

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "MemoryLimits":
        data = data or {}
        return cls(
            max_logs=data.get("max_logs", data.get("maxLogs", DEFAULT_MAX_LOGS)),
            max_node_results=data.get("max_node_results", data.get("maxNodeResults", DEFAULT_MAX_NODE_RESULTS)),
            max_data_size=data.get("max_data_size", data.get("maxDataSize", DEFAULT_MAX_DATA_SIZE)),
        )


@dataclass
class FailureRecord:
    node_id: str
    error: str

    def to_dict(self) -> Dict[str, str]:
        return {"nodeId": self.node_id, "message": self.error}


@dataclass
class SharedStore:
    data: Dict[str, Any] = field(default_factory=dict)
    logs: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    node_results: Dict[str, FunctionResult] = field(default_factory=dict)
    last_error: Optional[FailureRecord] = None
    mock_values: Dict[str, MockValue] = field(default_factory=dict)
    debug_callbacks: DebugCallbacks = field(default_factory=DebugCallbacks)
    memory_limits: MemoryLimits = field(default_factory=MemoryLimits)
    log_listener: Optional[Callable[[str], None]] = None
    cancelled: bool = False
    size_warning_emitted: bool = False

    def append_log(self, line: str) -> None:
        """Append one line to the run log and notify the listener."""
        self.logs.append(line)
        logger.debug("run log", line=line)
        if self.log_listener:
            try:
                self.log_listener(line)
            except Exception as e:
                logger.warning("Log listener failed", error=str(e))

    def log(self, node_id: str, message: str) -> None:
        self.append_log(f"[{node_id}] {message}")

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self.data[key] = value

    def record_failure(self, node_id: str, error: Optional[str]) -> bool:
        """Record the run's first failure; later failures are ignored.

        Returns True when this call set the slot.
        """
        if self.last_error is not None:
            return False
        self.last_error = FailureRecord(node_id=node_id, error=error or "Unknown error")
        return True

    def get_mock(self, node_id: str) -> Optional[MockValue]:
        mock = self.mock_values.get(node_id)
        return mock if mock and mock.enabled else None


def create_shared_store(
    initial_data: Optional[Dict[str, Any]] = None,
    env: Optional[Dict[str, str]] = None,
    mock_values: Optional[Dict[str, Any]] = None,
    debug_callbacks: Optional[DebugCallbacks] = None,
    memory_limits: Optional[Union[MemoryLimits, Dict[str, Any]]] = None,
    log_listener: Optional[Callable[[str], None]] = None,
) -> SharedStore:
    """Create a fresh store for one execution."""
    mocks = {
        node_id: mock if isinstance(mock, MockValue) else MockValue.from_dict(mock)
        for node_id, mock in (mock_values or {}).items()
    }
    if not isinstance(memory_limits, MemoryLimits):
        memory_limits = MemoryLimits.from_dict(memory_limits)

    return SharedStore(
        data=dict(initial_data or {}),
        env=dict(env or {}),
        mock_values=mocks,
        debug_callbacks=debug_callbacks or DebugCallbacks(),
        memory_limits=memory_limits,
        log_listener=log_listener,
    )


def estimate_data_size(data: Dict[str, Any]) -> int:
    """Approximate serialized size of the key/value mapping in bytes."""
    return len(json.dumps(data).encode("utf-8"))


def enforce_memory_limits(store: SharedStore) -> None:
    """Apply soft caps after a node finishes.

    Trims the run log (keeping a marker line), evicts the oldest node
    results, and warns once when the data mapping grows past the size
    threshold. Never raises.
    """
    limits = store.memory_limits
    max_logs = max(1, limits.max_logs)

    if len(store.logs) > max_logs:
        excess = len(store.logs) - max_logs + 1
        del store.logs[:excess]
        store.logs.insert(0, f"[SYSTEM] Log truncated: removed {excess} old entries")

    if len(store.node_results) > limits.max_node_results:
        excess = len(store.node_results) - limits.max_node_results
        for node_id in list(store.node_results)[:excess]:
            del store.node_results[node_id]

    if store.size_warning_emitted:
        return

    try:
        size = estimate_data_size(store.data)
    except (TypeError, ValueError, RecursionError) as e:
        store.size_warning_emitted = True
        store.append_log(f"[SYSTEM] Warning: could not measure data store size ({e})")
        logger.warning("Data store size check failed", error=str(e))
        return

    if size > limits.max_data_size:
        store.size_warning_emitted = True
        store.append_log(
            f"[SYSTEM] Warning: Data store size ({size} bytes) exceeds limit ({limits.max_data_size} bytes)"
        )
        logger.warning("Data store size exceeds limit", size=size, limit=limits.max_data_size)
