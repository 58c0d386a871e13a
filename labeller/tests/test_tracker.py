from __future__ import annotations

import threading

import pytest

from labeller.src.tracker import CompletionTracker


def test_single_kind_is_globally_complete_once_reported() -> None:
    tracker = CompletionTracker(["configmaps"])

    assert tracker.arbiter("configmaps").all_complete() is True
    assert tracker.is_complete("configmaps")


def test_global_completion_waits_for_every_kind() -> None:
    tracker = CompletionTracker(["configmaps", "secrets", "customresourcedefinitions"])

    assert tracker.arbiter("configmaps").all_complete() is False
    assert tracker.arbiter("secrets").all_complete() is False
    assert not tracker.is_complete("customresourcedefinitions")
    assert tracker.arbiter("customresourcedefinitions").all_complete() is True


def test_repeated_reports_from_one_kind_do_not_complete_others() -> None:
    tracker = CompletionTracker(["configmaps", "secrets"])
    arbiter = tracker.arbiter("configmaps")

    assert arbiter.all_complete() is False
    assert arbiter.all_complete() is False
    assert not tracker.is_complete("secrets")


def test_completion_is_sticky() -> None:
    tracker = CompletionTracker(["configmaps", "secrets"])
    tracker.report_complete("configmaps")
    tracker.report_complete("secrets")

    assert tracker.report_complete("configmaps") is True


def test_unknown_kind_is_rejected() -> None:
    tracker = CompletionTracker(["configmaps"])

    with pytest.raises(KeyError):
        tracker.arbiter("deployments")
    with pytest.raises(KeyError):
        tracker.report_complete("deployments")


def test_tracker_requires_at_least_one_kind() -> None:
    with pytest.raises(ValueError):
        CompletionTracker([])


def test_concurrent_reports_yield_exactly_one_final_completion_view() -> None:
    kinds = [f"kind-{index}" for index in range(16)]
    tracker = CompletionTracker(kinds)
    results: dict[str, bool] = {}
    barrier = threading.Barrier(len(kinds))

    def report(kind: str) -> None:
        barrier.wait()
        results[kind] = tracker.arbiter(kind).all_complete()

    threads = [threading.Thread(target=report, args=(kind,)) for kind in kinds]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    assert sum(results.values()) == 1
    assert tracker.kinds == frozenset(kinds)
