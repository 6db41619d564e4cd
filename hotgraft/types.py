"""
hotgraft Core Types

Plugin records, reload states and reload results shared by the
loader, the migration machinery and the orchestrator.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, TYPE_CHECKING

if TYPE_CHECKING:
    from hotgraft.cleanup import DeferredCleanup
    from hotgraft.loader import ModuleContext


class ReloadError(Exception):
    """Base class for every failure a reload can end in."""


class ReloadState(str, Enum):
    """States of a single reload operation."""

    IDLE = "idle"
    UNREGISTERING = "unregistering"
    LOADING = "loading"
    COLD_START = "cold_start"
    MIGRATING = "migrating"
    REGISTERING = "registering"
    NOTIFYING = "notifying"
    FINALIZING = "finalizing"
    ABORTED = "aborted"


# Valid state transitions
RELOAD_TRANSITIONS: Dict[ReloadState, Set[ReloadState]] = {
    ReloadState.IDLE: {ReloadState.UNREGISTERING, ReloadState.LOADING},
    ReloadState.UNREGISTERING: {ReloadState.LOADING},
    ReloadState.LOADING: {ReloadState.COLD_START, ReloadState.MIGRATING, ReloadState.ABORTED},
    ReloadState.COLD_START: {ReloadState.REGISTERING, ReloadState.ABORTED},
    ReloadState.MIGRATING: {ReloadState.REGISTERING, ReloadState.ABORTED},
    ReloadState.REGISTERING: {ReloadState.NOTIFYING, ReloadState.FINALIZING},
    ReloadState.NOTIFYING: {ReloadState.FINALIZING},
    ReloadState.FINALIZING: {ReloadState.IDLE},
    ReloadState.ABORTED: {ReloadState.UNREGISTERING, ReloadState.LOADING},
}


class InvalidTransitionError(ReloadError):
    """Raised when the reload state machine is driven out of order."""

    def __init__(self, plugin: str, from_state: ReloadState, to_state: ReloadState):
        self.plugin = plugin
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Plugin '{plugin}' cannot transition from "
            f"{from_state.value} to {to_state.value}"
        )


@dataclass
class PluginInfo:
    """Descriptive information about a plugin."""

    name: str
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "description": self.description}


@dataclass(frozen=True)
class LiveInstance:
    """The live root object of a plugin together with its class."""

    instance: Any
    instance_type: type


@dataclass
class PluginRecord:
    """
    Long-lived bookkeeping for one plugin.

    Only the reload orchestrator mutates a record. The live instance and
    its type are stored as a single immutable pair so that a reader
    always sees either the old pair or the new one.
    """

    info: PluginInfo
    loader: Optional["ModuleContext"] = None
    module_path: Optional[Path] = None
    state: ReloadState = ReloadState.IDLE
    reload_count: int = 0
    last_result: Optional["ReloadResult"] = None
    _live: Optional[LiveInstance] = field(default=None, repr=False)

    @property
    def name(self) -> str:
        return self.info.name

    @property
    def instance(self) -> Any:
        live = self._live
        return live.instance if live else None

    @property
    def instance_type(self) -> Optional[type]:
        live = self._live
        return live.instance_type if live else None

    @property
    def live(self) -> Optional[LiveInstance]:
        """Current instance/type pair, read in one step."""
        return self._live

    def swap_instance(self, instance: Any, instance_type: type) -> None:
        self._live = LiveInstance(instance, instance_type)

    def clear_instance(self) -> None:
        self._live = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "info": self.info.to_dict(),
            "module_path": str(self.module_path) if self.module_path else None,
            "state": self.state.value,
            "reload_count": self.reload_count,
            "instance_type": self.instance_type.__name__ if self.instance_type else None,
            "loaded": self.loader is not None and self.loader.is_loaded(),
        }


@dataclass
class ReloadResult:
    """Outcome of one reload operation."""

    plugin: str
    module_path: Path
    state: ReloadState = ReloadState.IDLE
    hot_reload: bool = False
    entry_type: Optional[str] = None
    unregistered: List[str] = field(default_factory=list)
    registered: List[str] = field(default_factory=list)
    notified: int = 0
    hook_errors: List[str] = field(default_factory=list)
    error: Optional[ReloadError] = None
    gc_passes: int = 0
    cleanup: Optional["DeferredCleanup"] = None
    started_at: float = field(default_factory=time.monotonic)
    duration_ms: float = 0.0
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.state == ReloadState.IDLE

    def finish(self, state: ReloadState) -> "ReloadResult":
        self.state = state
        self.duration_ms = (time.monotonic() - self.started_at) * 1000
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plugin": self.plugin,
            "module_path": str(self.module_path),
            "state": self.state.value,
            "succeeded": self.succeeded,
            "hot_reload": self.hot_reload,
            "entry_type": self.entry_type,
            "unregistered": list(self.unregistered),
            "registered": list(self.registered),
            "notified": self.notified,
            "hook_errors": list(self.hook_errors),
            "error": str(self.error) if self.error else None,
            "gc_passes": self.gc_passes,
            "duration_ms": self.duration_ms,
            "timestamp": self.timestamp.isoformat(),
        }
