"""Decide why a packet trace ended."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Mapping, Optional

from tracecollector.session import SessionFlags

LOW_STORAGE_THRESHOLD_KB = 2048

# Extra seconds to wait for external storage to remount before measuring it.
DEVICE_SETTLE_DELAYS: Dict[str, float] = {
    "MB865": 14.0,
}


class StopKind(str, Enum):
    USER_STOPPED = "user_stopped"
    BEARER_CHANGED = "bearer_changed"
    STORAGE_UNMOUNTED = "storage_unmounted"
    STORAGE_LOW = "storage_low"
    NORMAL = "normal"


class Screen(str, Enum):
    MAIN = "main"
    TRACE_COMPLETED = "trace_completed"


@dataclass(frozen=True)
class StopReason:
    kind: StopKind
    wifi_lost: bool = False

    @property
    def screen(self) -> Screen:
        if self.kind is StopKind.USER_STOPPED:
            return Screen.TRACE_COMPLETED
        return Screen.MAIN

    @property
    def is_storage_issue(self) -> bool:
        return self.kind in (StopKind.STORAGE_UNMOUNTED, StopKind.STORAGE_LOW)

    def describe(self) -> str:
        if self.kind is StopKind.BEARER_CHANGED:
            return "wifi lost" if self.wifi_lost else "network bearer changed"
        return self.kind.value.replace("_", " ")


def needs_storage_reading(flags: SessionFlags) -> bool:
    return not flags.bearer_changed and not flags.in_progress and not flags.stop_requested


def classify_stop(
    flags: SessionFlags,
    free_storage_kb: Optional[float] = None,
    *,
    low_storage_threshold_kb: float = LOW_STORAGE_THRESHOLD_KB,
) -> Optional[StopReason]:
    """Return the single reason the trace stopped, or ``None`` if it continues.

    A bearer change wins over everything else. ``free_storage_kb`` must be a
    reading taken at classification time whenever
    :func:`needs_storage_reading` is true for ``flags``.
    """

    if flags.bearer_changed:
        return StopReason(StopKind.BEARER_CHANGED, wifi_lost=flags.wifi_lost)
    if flags.in_progress:
        return None
    if flags.stop_requested:
        return StopReason(StopKind.USER_STOPPED)
    if free_storage_kb is None:
        raise ValueError("A free storage reading is required to classify this stop")
    if free_storage_kb == 0:
        return StopReason(StopKind.STORAGE_UNMOUNTED)
    if free_storage_kb < low_storage_threshold_kb:
        return StopReason(StopKind.STORAGE_LOW)
    return StopReason(StopKind.NORMAL)


def settle_delay(
    device_model: Optional[str], quirks: Mapping[str, float] = DEVICE_SETTLE_DELAYS
) -> float:
    if not device_model:
        return 0.0
    wanted = device_model.strip().lower()
    for model, delay in quirks.items():
        if model.lower() == wanted:
            return delay
    return 0.0
