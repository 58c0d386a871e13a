from __future__ import annotations

import logging
import math
import random
import threading
import time
from collections.abc import Callable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from labeller.src.kube import ResourceKind
from labeller.src.labelling import (
    EVERYTHING,
    CompletionArbiter,
    ObjectLabeller,
    ObjectTypeError,
    ReconcileResult,
    object_identity,
)
from labeller.src.metrics import METRICS

ObjectKey = tuple[str, str]


class ObjectStore:
    """Thread-safe local cache of the objects of one kind, keyed by ``(namespace, name)``.

    The store is filled from the watcher's list and watch responses and is what
    the labeller lists when checking for completion, so completion checks never
    call the API server.
    """

    def __init__(self) -> None:
        self._items: dict[ObjectKey, Any] = {}
        self._lock = threading.Lock()

    def replace(self, items: list[Any]) -> None:
        fresh = {object_identity(obj): obj for obj in items}
        with self._lock:
            self._items = fresh

    def upsert(self, obj: Any) -> None:
        with self._lock:
            self._items[object_identity(obj)] = obj

    def delete(self, obj: Any) -> None:
        with self._lock:
            self._items.pop(object_identity(obj), None)

    def get(self, key: ObjectKey) -> Any | None:
        with self._lock:
            return self._items.get(key)

    def list(self, label_selector: str = EVERYTHING) -> list[Any]:
        """Return every cached object. Only the match-everything selector is supported."""
        if label_selector != EVERYTHING:
            raise ValueError(f"unsupported label selector: {label_selector!r}")
        with self._lock:
            return list(self._items.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class KindWatcher:
    """Lists and watches one resource kind and feeds every object to its labeller.

    Failed label submissions are retried with bounded exponential backoff,
    keyed by ``(namespace, name)``.  A retry always reconciles the latest
    cached version of the object, so a stale ``resourceVersion`` precondition
    does not keep failing forever.

    When the labeller reports that every tracked kind is fully labelled, the
    ``terminate`` callback is invoked; the process wiring decides how to exit.
    """

    def __init__(
        self,
        kind: str,
        list_fn: Callable[..., Any],
        labeller: ObjectLabeller,
        store: ObjectStore,
        terminate: Callable[[], None],
        watch_timeout_seconds: int = 30,
        retry_max_backoff_seconds: int = 30,
        logger: logging.Logger | None = None,
    ) -> None:
        self.kind = kind
        self.list_fn = list_fn
        self.labeller = labeller
        self.store = store
        self.terminate = terminate
        self.watch_timeout_seconds = watch_timeout_seconds
        self.retry_max_backoff_seconds = retry_max_backoff_seconds
        self.logger = logger or logging.getLogger(__name__)

        self._pending_retries: dict[ObjectKey, float] = {}
        self._retry_attempts: dict[ObjectKey, int] = {}

        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _schedule_retry(self, key: ObjectKey, now_monotonic: float) -> None:
        attempt = self._retry_attempts.get(key, 0) + 1
        self._retry_attempts[key] = attempt

        delay_seconds = min(float(self.retry_max_backoff_seconds), float(2 ** (attempt - 1)))
        self._pending_retries[key] = now_monotonic + delay_seconds
        METRICS.retry_total.labels(kind=self.kind).inc()

        namespace, name = key
        self.logger.warning(
            "Labelling %s %s/%s failed; scheduling retry attempt %d in %.1fs",
            self.kind,
            namespace,
            name,
            attempt,
            delay_seconds,
        )

    def _clear_retry(self, key: ObjectKey) -> None:
        self._pending_retries.pop(key, None)
        self._retry_attempts.pop(key, None)

    def reconcile_object(self, obj: Any, now_monotonic: float) -> ReconcileResult | None:
        """Reconcile one object, scheduling a retry when the label submission fails.

        Returns ``None`` when the reconcile failed.
        """
        key = object_identity(obj)
        try:
            result = self.labeller.reconcile(obj)
        except ObjectTypeError:
            # Wiring error, already logged by the labeller; retrying cannot help.
            return None
        except Exception:
            METRICS.label_errors_total.labels(kind=self.kind).inc()
            self.logger.exception(
                "Failed to label %s %s/%s", self.kind, key[0], key[1]
            )
            self._schedule_retry(key, now_monotonic)
            return None

        self._clear_retry(key)
        if result.termination_requested:
            self.logger.info(
                "Detected that every object is labelled while processing %s %s/%s",
                self.kind,
                result.namespace,
                result.name,
            )
            self.terminate()
        return result

    def handle_event(self, event_type: str, obj: Any) -> ReconcileResult | None:
        """Process a single watch event.

        ``ADDED`` and ``MODIFIED`` refresh the cache and reconcile the object;
        ``DELETED`` evicts it and forgets any pending retry.  Other event types
        are ignored.
        """
        if event_type == "DELETED":
            self.store.delete(obj)
            self._clear_retry(object_identity(obj))
            return None
        if event_type not in {"ADDED", "MODIFIED"}:
            return None

        self.store.upsert(obj)
        return self.reconcile_object(obj, now_monotonic=time.monotonic())

    def _drain_pending_retries(self, now_monotonic: float) -> None:
        due = [key for key, due_at in self._pending_retries.items() if due_at <= now_monotonic]
        for key in due:
            obj = self.store.get(key)
            if obj is None:
                self._clear_retry(key)
                continue
            self.logger.info("Retrying ownership label for %s %s/%s", self.kind, key[0], key[1])
            self.reconcile_object(obj, now_monotonic=now_monotonic)

    def _next_watch_timeout_seconds(self, now_monotonic: float) -> int:
        """Return the next watch timeout, shortened so pending retries fire on time."""
        if not self._pending_retries:
            return self.watch_timeout_seconds

        nearest_due = min(self._pending_retries.values())
        remaining = max(1.0, nearest_due - now_monotonic)
        return min(self.watch_timeout_seconds, max(1, math.ceil(remaining)))

    def _list_and_reconcile(self) -> str | None:
        """List every object, replace the cache, then reconcile each listed object.

        The cache is replaced before the first reconcile so completion checks
        always see the whole listing.
        """
        response = self.list_fn()
        resource_version = getattr(getattr(response, "metadata", None), "resource_version", None)
        items = list(getattr(response, "items", None) or [])
        self.store.replace(items)

        live_keys = {object_identity(obj) for obj in items}
        for key in [key for key in self._pending_retries if key not in live_keys]:
            self._clear_retry(key)

        self.logger.info("Listed %d %s", len(items), self.kind)
        for obj in items:
            self.reconcile_object(obj, now_monotonic=time.monotonic())
        return resource_version

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """List-then-watch this kind until shutdown.

        1. Retries the initial list with jittered exponential backoff.
        2. Seeds the cache and reconciles every listed object.
        3. Watches from the list's ``resourceVersion``, reconciling each
           ``ADDED``/``MODIFIED`` event.
        4. On ``410 Gone`` re-lists and reconciles everything again.
        5. On other errors backs off with jitter, capped at 30 s.
        6. Drains due label retries between events.

        ``401`` / ``403`` responses stop the watcher immediately.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                resource_version = self._list_and_reconcile()
                self.ready.set()
                self.logger.info(
                    "Starting %s watch from resourceVersion %s", self.kind, resource_version
                )
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied during initial %s list (status=%s). "
                        "Check labeller RBAC and service account permissions.",
                        self.kind,
                        exc.status,
                    )
                    self.ready.clear()
                    return
                self.logger.exception("Initial %s list failed", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial %s list", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        if self._should_stop(stop):
            self.ready.clear()
            return

        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            self._drain_pending_retries(now_monotonic=time.monotonic())
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                timeout_seconds = self._next_watch_timeout_seconds(now_monotonic=time.monotonic())
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(kind=self.kind).inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self.list_fn,
                    resource_version=resource_version,
                    timeout_seconds=timeout_seconds,
                )

                for event in stream:
                    if self._should_stop(stop):
                        break

                    obj = event.get("object")
                    if obj is None:
                        continue

                    metadata = getattr(obj, "metadata", None)
                    if metadata and metadata.resource_version:
                        resource_version = metadata.resource_version

                    self.handle_event(event_type=str(event.get("type", "")), obj=obj)
                    self._drain_pending_retries(now_monotonic=time.monotonic())

                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone: our resourceVersion was compacted away.
                if exc.status == 410:
                    self.logger.warning("%s watch resource version expired, re-listing", self.kind)
                    try:
                        resource_version = self._list_and_reconcile()
                    except ApiException as relist_exc:
                        if relist_exc.status in {401, 403}:
                            self.logger.error(
                                "Kubernetes API access denied during %s re-list (status=%s). "
                                "Check labeller RBAC and service account permissions.",
                                self.kind,
                                relist_exc.status,
                            )
                            self.ready.clear()
                            return
                        self.logger.exception("Failed to re-list %s after 410", self.kind)
                        METRICS.watch_errors_total.labels(kind=self.kind).inc()
                        resource_version = None
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch of %s denied (status=%s). "
                        "Check labeller RBAC and service account permissions.",
                        self.kind,
                        exc.status,
                    )
                    METRICS.watch_errors_total.labels(kind=self.kind).inc()
                    self.ready.clear()
                    return

                self.logger.exception("Kubernetes API watch error for %s", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error for %s", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.ready.clear()


def build_watcher(
    resource_kind: ResourceKind,
    arbiter: CompletionArbiter,
    terminate: Callable[[], None],
    *,
    watch_timeout_seconds: int = 30,
    retry_max_backoff_seconds: int = 30,
) -> KindWatcher:
    """Wire a cache, a labeller and a watcher together for one resource kind."""
    logger = logging.getLogger(f"{__name__}.{resource_kind.name}")
    store = ObjectStore()
    labeller = ObjectLabeller(
        kind=resource_kind.name,
        expected_type=resource_kind.model,
        eligible=resource_kind.eligible,
        list_all=store.list,
        writer=resource_kind.writer,
        arbiter=arbiter,
        logger=logger,
    )
    return KindWatcher(
        kind=resource_kind.name,
        list_fn=resource_kind.list_fn,
        labeller=labeller,
        store=store,
        terminate=terminate,
        watch_timeout_seconds=watch_timeout_seconds,
        retry_max_backoff_seconds=retry_max_backoff_seconds,
        logger=logger,
    )
