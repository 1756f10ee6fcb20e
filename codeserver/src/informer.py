from __future__ import annotations

import logging
import random
import threading
import time
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from codeserver.src.kube import CodeServerClient
from codeserver.src.metrics import METRICS
from codeserver.src.models import Reason, ReconcileRequest, object_key
from codeserver.src.workqueue import WorkQueue

LOGGER = logging.getLogger(__name__)

INITIAL_BACKOFF_CAP_SECONDS = 30


class AccessDenied(Exception):
    """The API server rejected our credentials or RBAC (401/403)."""


class CodeServerInformer:
    """Feed CodeServer change notifications into the work queue.

    Status-only writes do not bump ``metadata.generation``, so comparing the
    generation with the last one seen keeps the reconciler's own status
    updates from re-triggering it.
    """

    def __init__(
        self,
        codeservers: CodeServerClient,
        work_queue: WorkQueue,
        namespace: str | None = None,
        resync_seconds: float = 300,
        logger: logging.Logger | None = None,
    ) -> None:
        self.codeservers = codeservers
        self.work_queue = work_queue
        self.namespace = namespace
        self.resync_seconds = resync_seconds
        self.logger = logger or LOGGER
        self.ready = threading.Event()
        self._generations: dict[str, Any] = {}
        self._external_stop = threading.Event()
        self._watcher_lock = threading.Lock()
        self._active_watcher: watch.Watch | None = None

    def request_stop(self) -> None:
        """Request a cooperative stop and interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _enqueue(self, key: str, reason: Reason) -> None:
        self.work_queue.add(ReconcileRequest(key=key, reason=reason))

    def sync_from_list(self, listing: dict[str, Any]) -> str | None:
        """Enqueue every listed object and return the list's resourceVersion.

        Keys remembered from an earlier list that have since disappeared are
        enqueued as deleted, so objects removed while no watch was open still
        get their sub-resources cleaned up.
        """
        seen: set[str] = set()
        for item in listing.get("items") or []:
            key = object_key(item)
            seen.add(key)
            metadata = item.get("metadata") or {}
            self._generations[key] = metadata.get("generation")
            if metadata.get("deletionTimestamp"):
                self._enqueue(key, Reason.RESOURCE_DELETED)
            else:
                self._enqueue(key, Reason.SPEC_CHANGED)

        for key in list(self._generations):
            if key not in seen:
                del self._generations[key]
                self._enqueue(key, Reason.RESOURCE_DELETED)

        return (listing.get("metadata") or {}).get("resourceVersion")

    def handle_event(self, event_type: str, obj: dict[str, Any]) -> ReconcileRequest | None:
        """Translate one watch event into at most one queued request."""
        if event_type not in {"ADDED", "MODIFIED", "DELETED"}:
            return None
        key = object_key(obj)
        metadata = obj.get("metadata") or {}

        if event_type == "DELETED":
            self._generations.pop(key, None)
            request = ReconcileRequest(key=key, reason=Reason.RESOURCE_DELETED)
        elif metadata.get("deletionTimestamp"):
            self._generations[key] = metadata.get("generation")
            request = ReconcileRequest(key=key, reason=Reason.RESOURCE_DELETED)
        else:
            generation = metadata.get("generation")
            if key in self._generations and self._generations[key] == generation:
                return None
            self._generations[key] = generation
            request = ReconcileRequest(key=key, reason=Reason.SPEC_CHANGED)

        self.logger.debug("%s event for %s queued as %s", event_type, key, request.reason.value)
        self.work_queue.add(request)
        return request

    def _list(self) -> str | None:
        try:
            listing = self.codeservers.list(self.namespace)
        except ApiException as exc:
            if exc.status in {401, 403}:
                raise AccessDenied(exc.status) from exc
            raise
        return self.sync_from_list(listing)

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """List-then-watch CodeServers until shutdown.

        The initial list is retried with jittered exponential backoff (capped
        at 30 s). ``410 Gone`` re-lists and resumes, a resync re-lists every
        ``resync_seconds``, and ``401`` / ``403`` end the loop with readiness
        cleared since retrying cannot fix RBAC.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                resource_version = self._list()
                self.ready.set()
                self.logger.info("Starting CodeServer watch from resourceVersion %s", resource_version)
                break
            except AccessDenied as exc:
                self.logger.error(
                    "Kubernetes API access denied during initial list (status=%s). "
                    "Check operator RBAC and service account permissions.",
                    exc,
                )
                self.ready.clear()
                return
            except Exception:
                self.logger.exception("Initial CodeServer list failed")
                METRICS.informer_errors_total.inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, INITIAL_BACKOFF_CAP_SECONDS)

        if self._should_stop(stop):
            self.ready.clear()
            return

        list_function, list_kwargs = self.codeservers.list_function(self.namespace)
        next_resync = time.monotonic() + self.resync_seconds
        backoff_seconds = 1

        while not self._should_stop(stop):
            now = time.monotonic()
            if now >= next_resync:
                try:
                    resource_version = self._list()
                    self.logger.info("Resynced CodeServers at resourceVersion %s", resource_version)
                except AccessDenied as exc:
                    self.logger.error("Kubernetes API access denied during resync (status=%s)", exc)
                    self.ready.clear()
                    return
                except Exception:
                    self.logger.exception("CodeServer resync failed")
                    METRICS.informer_errors_total.inc()
                next_resync = time.monotonic() + self.resync_seconds
                continue

            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                stream = watcher.stream(
                    list_function,
                    **list_kwargs,
                    resource_version=resource_version,
                    timeout_seconds=max(1, int(next_resync - now)),
                )
                for event in stream:
                    if self._should_stop(stop):
                        break
                    obj = event.get("object")
                    if not isinstance(obj, dict):
                        continue
                    version = (obj.get("metadata") or {}).get("resourceVersion")
                    if version:
                        resource_version = version
                    self.handle_event(str(event.get("type", "")), obj)
                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning("CodeServer watch resource version expired, re-listing")
                    try:
                        resource_version = self._list()
                    except AccessDenied as denied:
                        self.logger.error(
                            "Kubernetes API access denied during 410 re-list (status=%s)", denied
                        )
                        self.ready.clear()
                        return
                    except Exception:
                        self.logger.exception("Failed to re-list after 410")
                        METRICS.informer_errors_total.inc()
                        resource_version = None
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch denied (status=%s). "
                        "Check operator RBAC and service account permissions.",
                        exc.status,
                    )
                    METRICS.informer_errors_total.inc()
                    self.ready.clear()
                    return

                self.logger.exception("CodeServer watch error")
                METRICS.informer_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, INITIAL_BACKOFF_CAP_SECONDS)
            except Exception:
                self.logger.exception("Unexpected CodeServer watch error")
                METRICS.informer_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, INITIAL_BACKOFF_CAP_SECONDS)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.ready.clear()
