from dataclasses import replace

import pytest

from tracecollector.session import SessionFlags
from tracecollector.stop_classifier import (
    Screen,
    StopKind,
    StopReason,
    classify_stop,
    needs_storage_reading,
    settle_delay,
)

IDLE_FLAGS = SessionFlags(
    in_progress=False,
    tcpdump_running=False,
    video_running=False,
    stop_requested=False,
    bearer_changed=False,
    wifi_lost=False,
    video_capture_failed=False,
)


def test_bearer_change_preempts_every_other_cause() -> None:
    for in_progress in (True, False):
        for stop_requested in (True, False):
            flags = replace(
                IDLE_FLAGS,
                bearer_changed=True,
                wifi_lost=True,
                in_progress=in_progress,
                stop_requested=stop_requested,
            )
            reason = classify_stop(flags, 0.0)
            assert reason == StopReason(StopKind.BEARER_CHANGED, wifi_lost=True)
            assert reason.screen is Screen.MAIN


def test_generic_bearer_change_without_wifi_loss() -> None:
    reason = classify_stop(replace(IDLE_FLAGS, bearer_changed=True))
    assert reason == StopReason(StopKind.BEARER_CHANGED, wifi_lost=False)
    assert reason.describe() == "network bearer changed"


@pytest.mark.parametrize(
    "free_kb, expected",
    [
        (0.0, StopKind.STORAGE_UNMOUNTED),
        (1024.0, StopKind.STORAGE_LOW),
        (2047.9, StopKind.STORAGE_LOW),
        (2048.0, StopKind.NORMAL),
        (4096.0, StopKind.NORMAL),
    ],
)
def test_storage_reading_decides_unexplained_stops(free_kb: float, expected: StopKind) -> None:
    reason = classify_stop(IDLE_FLAGS, free_kb)
    assert reason is not None
    assert reason.kind is expected
    assert reason.screen is Screen.MAIN


@pytest.mark.parametrize("free_kb", [None, 0.0, 1024.0, 10000.0])
def test_explicit_stop_completes_regardless_of_storage(free_kb) -> None:
    reason = classify_stop(replace(IDLE_FLAGS, stop_requested=True), free_kb)
    assert reason == StopReason(StopKind.USER_STOPPED)
    assert reason.screen is Screen.TRACE_COMPLETED


def test_trace_still_in_progress_has_no_reason() -> None:
    assert classify_stop(replace(IDLE_FLAGS, in_progress=True), 0.0) is None


def test_storage_reading_required_for_unexplained_stop() -> None:
    assert needs_storage_reading(IDLE_FLAGS)
    assert not needs_storage_reading(replace(IDLE_FLAGS, stop_requested=True))
    with pytest.raises(ValueError):
        classify_stop(IDLE_FLAGS)


def test_custom_low_storage_threshold() -> None:
    reason = classify_stop(IDLE_FLAGS, 4096.0, low_storage_threshold_kb=8192)
    assert reason == StopReason(StopKind.STORAGE_LOW)


def test_settle_delay_matches_model_case_insensitively() -> None:
    assert settle_delay("MB865") == 14.0
    assert settle_delay("mb865 ") == 14.0
    assert settle_delay("Pixel 7") == 0.0
    assert settle_delay(None) == 0.0
    assert settle_delay("Pixel 7", {"pixel 7": 2.5}) == 2.5
