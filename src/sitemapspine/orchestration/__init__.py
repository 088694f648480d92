"""Run coordination: control cursor and the per-run state machine."""

from sitemapspine.orchestration.control import ControlCursor, ControlStore
from sitemapspine.orchestration.coordinator import (
    VALID_TRANSITIONS,
    RunCoordinator,
    RunResult,
    RunState,
)

__all__ = [
    "VALID_TRANSITIONS",
    "ControlCursor",
    "ControlStore",
    "RunCoordinator",
    "RunResult",
    "RunState",
]
