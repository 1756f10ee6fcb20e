from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from kubernetes.client import ApiException

from codeserver.src.errors import ValidationError, is_not_found, is_transient
from codeserver.src.kube import CodeServerClient, KubeClients
from codeserver.src.lxd import LXDClient, load_credentials
from codeserver.src.metrics import METRICS
from codeserver.src.models import (
    FINALIZER,
    RUNTIME_LXD,
    CodeServerSpec,
    Phase,
    Reason,
    ReconcileRequest,
    compute_phase,
    current_phase,
    format_time,
    probe_failure_count,
    set_condition,
    split_key,
    utc_now,
)
from codeserver.src.options import Options
from codeserver.src.resources import lxd_instance_name
from codeserver.src.subresources import ABSENT, UNCHANGED, ReconcileContext, cleanup, ensure_all
from codeserver.src.workqueue import WorkQueue

CONDITION_VALID = "Valid"
CONDITION_READY = "Ready"
CONDITION_INACTIVE = "Inactive"
CONDITION_SYNCED = "Synced"


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of one reconciliation.

    ``requeue_after`` asks for another pass after a delay even though nothing
    failed, e.g. to observe a workload becoming available.
    """

    key: str
    phase: Phase | None = None
    requeue_after: float | None = None
    deleted: tuple[str, ...] = ()


class CodeServerReconciler:
    """Converge CodeServer resources toward their declared state.

    A fixed pool of worker threads drains the shared :class:`WorkQueue`. The
    queue hands each key to one worker at a time, so no lock is taken here:
    reconciliations of unrelated resources run fully in parallel while
    updates to a single resource are serialized.

    Failures are retried through the queue's per-key exponential backoff.
    After ``failure_threshold`` consecutive failures the error is also
    recorded as a ``Synced=False`` condition, but the key keeps retrying.
    Validation errors are terminal for the current generation.
    """

    def __init__(
        self,
        clients: KubeClients,
        options: Options,
        work_queue: WorkQueue,
        codeservers: CodeServerClient | None = None,
        lxd_factory: Callable[[], LXDClient] | None = None,
        logger: logging.Logger | None = None,
        now_fn: Callable[[], datetime] = utc_now,
        failure_threshold: int = 5,
        requeue_after_seconds: float = 5.0,
    ) -> None:
        self.clients = clients
        self.options = options
        self.work_queue = work_queue
        self.codeservers = codeservers or CodeServerClient(clients.custom)
        self.logger = logger or logging.getLogger(__name__)
        self.now_fn = now_fn
        self.failure_threshold = failure_threshold
        self.requeue_after_seconds = requeue_after_seconds
        self._lxd_factory = lxd_factory
        self._lxd_client: LXDClient | None = None
        self._lxd_lock = threading.Lock()

    def _lxd(self) -> LXDClient:
        """Return the shared LXD client, loading credentials on first use."""
        with self._lxd_lock:
            if self._lxd_client is None:
                if self._lxd_factory is not None:
                    self._lxd_client = self._lxd_factory()
                else:
                    credentials = load_credentials(
                        self.clients.core,
                        self.options.operator_namespace,
                        self.options.lxd_client_secret_name,
                    )
                    self._lxd_client = LXDClient(credentials, logger=self.logger)
            return self._lxd_client

    def _lxd_configured(self) -> bool:
        """Whether an LXD backend exists that instances could live on."""
        if self._lxd_factory is not None or self._lxd_client is not None:
            return True
        try:
            self.clients.core.read_namespaced_secret(
                name=self.options.lxd_client_secret_name,
                namespace=self.options.operator_namespace,
            )
        except ApiException as exc:
            if is_not_found(exc):
                return False
            raise
        return True

    def _lxd_instances(self, namespace: str, name: str, obj: dict[str, Any] | None) -> list[str]:
        """Instance names that may belong to ``namespace/name``.

        A pass can create the instance and fail before recording it in
        status, so the derived name is included whenever the resource could
        have run on LXD.
        """
        if obj is None:
            could_be_lxd = True
            recorded = None
        else:
            raw_spec = obj.get("spec")
            could_be_lxd = isinstance(raw_spec, dict) and raw_spec.get("runtime") == RUNTIME_LXD
            recorded = (obj.get("status") or {}).get("lxdInstance")
        instances = [recorded] if recorded else []
        if could_be_lxd and self._lxd_configured():
            instances.append(lxd_instance_name(namespace, name))
        return instances

    def reconcile(self, request: ReconcileRequest) -> ReconcileResult:
        """Converge one resource. Safe to call repeatedly for the same key."""
        key = request.key
        obj = self.codeservers.get(key)
        if obj is None:
            namespace, name = split_key(key)
            deleted = cleanup(
                self.clients,
                namespace,
                name,
                lxd_instances=self._lxd_instances(namespace, name, None),
                lxd=self._lxd,
                logger=self.logger,
            )
            if deleted:
                self.logger.info("Cleaned up orphaned sub-resources of %s: %s", key, ", ".join(deleted))
            return ReconcileResult(key=key, deleted=tuple(deleted))

        if obj["metadata"].get("deletionTimestamp"):
            return self._finalize(key, obj)

        updated = self.codeservers.set_finalizer(obj, FINALIZER, present=True)
        if updated is None:
            return ReconcileResult(key=key)
        obj = updated

        try:
            spec = CodeServerSpec.parse(obj.get("spec"))
        except ValidationError as exc:
            return self._record_invalid(key, obj, exc)

        return self._converge(key, obj, spec, request)

    def _finalize(self, key: str, obj: dict[str, Any]) -> ReconcileResult:
        """Run finalizer cleanup, then release the resource for removal."""
        finalizers = obj["metadata"].get("finalizers") or []
        if FINALIZER not in finalizers:
            return ReconcileResult(key=key, phase=Phase.TERMINATING)

        def mark_terminating(status: dict[str, Any]) -> dict[str, Any]:
            status["phase"] = Phase.TERMINATING.value
            return status

        written = self.codeservers.update_status(obj, mark_terminating)
        if written is None:
            return ReconcileResult(key=key, phase=Phase.TERMINATING)
        obj = written

        namespace, name = split_key(key)
        deleted = cleanup(
            self.clients,
            namespace,
            name,
            lxd_instances=self._lxd_instances(namespace, name, obj),
            lxd=self._lxd,
            logger=self.logger,
        )
        self.codeservers.set_finalizer(obj, FINALIZER, present=False)
        self.logger.info("Finalized %s (deleted: %s)", key, ", ".join(deleted) or "nothing")
        return ReconcileResult(key=key, phase=Phase.TERMINATING, deleted=tuple(deleted))

    def _record_invalid(self, key: str, obj: dict[str, Any], exc: ValidationError) -> ReconcileResult:
        generation = obj["metadata"].get("generation")
        now = format_time(self.now_fn())

        def mark_failed(status: dict[str, Any]) -> dict[str, Any]:
            conditions = status.get("conditions") or []
            conditions = set_condition(conditions, CONDITION_VALID, False, "InvalidSpec", str(exc), now)
            conditions = set_condition(
                conditions, CONDITION_READY, False, "InvalidSpec", "spec must be fixed", now
            )
            status["conditions"] = conditions
            status["phase"] = Phase.FAILED.value
            status["observedGeneration"] = generation
            return status

        self.codeservers.update_status(obj, mark_failed)
        self.logger.warning("CodeServer %s generation %s is invalid: %s", key, generation, exc)
        return ReconcileResult(key=key, phase=Phase.FAILED)

    def _converge(
        self,
        key: str,
        obj: dict[str, Any],
        spec: CodeServerSpec,
        request: ReconcileRequest,
    ) -> ReconcileResult:
        namespace, name = split_key(key)
        ctx = ReconcileContext(
            name=name,
            namespace=namespace,
            owner=obj,
            spec=spec,
            options=self.options,
            clients=self.clients,
            status=dict(obj.get("status") or {}),
            lxd=self._lxd,
            logger=self.logger,
        )
        outcomes = ensure_all(ctx)
        changed = {kind: outcome for kind, outcome in outcomes.items() if outcome not in {UNCHANGED, ABSENT}}
        if changed:
            self.logger.info(
                "Reconciled sub-resources of %s: %s",
                key,
                ", ".join(f"{kind}={outcome}" for kind, outcome in sorted(changed.items())),
            )

        max_probe_retry = spec.max_probe_retry or self.options.max_probe_retry
        generation = obj["metadata"].get("generation")
        now = format_time(self.now_fn())
        phase_holder: list[Phase] = []

        def write(status: dict[str, Any]) -> dict[str, Any]:
            if request.probe_failure_count is not None:
                count = request.probe_failure_count
                status["probeFailureCount"] = count
                status["lastProbeTime"] = now
            else:
                count = probe_failure_count(status)
                status["probeFailureCount"] = count

            phase = compute_phase(
                failure_count=count,
                max_probe_retry=max_probe_retry,
                workload_available=ctx.workload_available,
                previous=current_phase(status),
            )
            phase_holder.append(phase)
            status["phase"] = phase.value
            status["observedGeneration"] = generation

            if ctx.probe_url:
                status["probeURL"] = ctx.probe_url
            else:
                status.pop("probeURL", None)
            if ctx.lxd_instance:
                status["lxdInstance"] = ctx.lxd_instance
            else:
                status.pop("lxdInstance", None)

            conditions = status.get("conditions") or []
            conditions = set_condition(conditions, CONDITION_VALID, True, "SpecValid", "", now)
            conditions = set_condition(
                conditions,
                CONDITION_READY,
                ctx.workload_available,
                "WorkloadAvailable" if ctx.workload_available else "WorkloadUnavailable",
                "",
                now,
            )
            inactive = phase is Phase.INACTIVE
            conditions = set_condition(
                conditions,
                CONDITION_INACTIVE,
                inactive,
                Reason.PROBE_FAILURE_THRESHOLD_REACHED.value if inactive else "ProbesSucceeding",
                f"{count} consecutive probe failures (threshold {max_probe_retry})",
                now,
            )
            conditions = set_condition(conditions, CONDITION_SYNCED, True, "Reconciled", "", now)
            status["conditions"] = conditions
            return status

        previous_phase = current_phase(obj.get("status"))
        self.codeservers.update_status(obj, write)
        phase = phase_holder[-1] if phase_holder else previous_phase
        if phase is not previous_phase:
            self.logger.info(
                "CodeServer %s phase %s -> %s (reason=%s)",
                key,
                previous_phase.value,
                phase.value,
                request.reason.value,
            )

        requeue_after = None
        if phase in {Phase.PROVISIONING, Phase.DEGRADED}:
            requeue_after = self.requeue_after_seconds
        return ReconcileResult(key=key, phase=phase, requeue_after=requeue_after)

    def _record_failure(self, key: str, exc: BaseException) -> None:
        """Surface repeated failures on the resource's status; best effort."""
        now = format_time(self.now_fn())
        message = str(exc)[:512]

        def mark_unsynced(status: dict[str, Any]) -> dict[str, Any]:
            status["conditions"] = set_condition(
                status.get("conditions") or [],
                CONDITION_SYNCED,
                False,
                "ReconcileError",
                message,
                now,
            )
            return status

        try:
            obj = self.codeservers.get(key)
            if obj is not None:
                self.codeservers.update_status(obj, mark_unsynced)
        except Exception:
            self.logger.warning("Failed to record reconcile error on %s", key, exc_info=True)

    def process_next(self, timeout: float | None = None) -> bool:
        """Pull one request from the queue and reconcile it.

        Returns ``False`` when no request was available within *timeout* or
        the queue is shutting down.
        """
        request = self.work_queue.get(timeout=timeout)
        if request is None:
            return False

        key = request.key
        started = time.monotonic()
        try:
            result = self.reconcile(request)
        except Exception as exc:
            attempt = self.work_queue.num_requeues(key) + 1
            delay = self.work_queue.add_rate_limited(request)
            METRICS.reconcile_total.labels(reason=request.reason.value, result="error").inc()
            if is_transient(exc):
                self.logger.warning(
                    "Reconcile of %s (reason=%s) failed, retry %d in %.1fs: %s",
                    key,
                    request.reason.value,
                    attempt,
                    delay,
                    exc,
                )
            else:
                self.logger.exception(
                    "Reconcile of %s (reason=%s) failed, retry %d in %.1fs",
                    key,
                    request.reason.value,
                    attempt,
                    delay,
                )
            if attempt >= self.failure_threshold:
                self._record_failure(key, exc)
        else:
            self.work_queue.forget(key)
            METRICS.reconcile_total.labels(reason=request.reason.value, result="success").inc()
            if result.requeue_after is not None:
                self.work_queue.add_after(
                    ReconcileRequest(key=key, reason=Reason.SPEC_CHANGED),
                    result.requeue_after,
                )
        finally:
            METRICS.reconcile_duration_seconds.observe(time.monotonic() - started)
            self.work_queue.done(key)
        return True

    def _worker_loop(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set() and not self.work_queue.shutting_down:
            self.process_next(timeout=0.5)

    def run(self, stop_event: threading.Event, join_timeout_seconds: float = 30) -> None:
        """Run ``max_concurrency`` workers until *stop_event* is set.

        On stop the queue is shut down: in-flight reconciles finish, no new
        work is handed out.
        """
        workers = [
            threading.Thread(
                target=self._worker_loop,
                args=(stop_event,),
                name=f"reconcile-worker-{index}",
                daemon=True,
            )
            for index in range(self.options.max_concurrency)
        ]
        for worker in workers:
            worker.start()
        self.logger.info("Started %d reconcile workers", len(workers))

        stop_event.wait()
        self.work_queue.shut_down()
        deadline = time.monotonic() + join_timeout_seconds
        for worker in workers:
            worker.join(timeout=max(0.0, deadline - time.monotonic()))
        still_running = [worker.name for worker in workers if worker.is_alive()]
        if still_running:
            self.logger.error(
                "Reconcile workers did not stop within %ss: %s",
                join_timeout_seconds,
                ", ".join(still_running),
            )
        self.logger.info("Reconcile workers stopped")
