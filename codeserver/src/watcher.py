from __future__ import annotations

import http.client
import logging
import threading
import time
import urllib.error
import urllib.request
from collections import Counter
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any

from kubernetes.client import ApiException

from codeserver.src.channel import RequestChannel
from codeserver.src.kube import CodeServerClient
from codeserver.src.metrics import METRICS
from codeserver.src.models import (
    PROBED_PHASES,
    Phase,
    Reason,
    ReconcileRequest,
    current_phase,
    object_key,
    probe_failure_count,
)
from codeserver.src.options import Options

LOGGER = logging.getLogger(__name__)


class Ticker:
    """Fixed-rate tick source for the watcher loop.

    The caller creates it and calls :meth:`stop` when done. Ticks missed
    because a pass overran are skipped rather than fired back to back.
    """

    def __init__(self, interval_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._next_tick: float | None = None
        self._stopped = threading.Event()

    def wait(self, stop_event: threading.Event) -> bool:
        """Block until the next tick; return False once stopped."""
        now = self._clock()
        if self._next_tick is None:
            self._next_tick = now + self.interval_seconds
        remaining = self._next_tick - now
        if remaining > 0 and stop_event.wait(timeout=remaining):
            return False
        if self._stopped.is_set() or stop_event.is_set():
            return False
        self._next_tick += self.interval_seconds
        now = self._clock()
        if self._next_tick <= now:
            self._next_tick = now + self.interval_seconds
        return True

    def stop(self) -> None:
        self._stopped.set()


class HttpProber:
    """Issue one liveness check against an exporter sidecar.

    Success is a 2xx response within the timeout; every other outcome,
    including connection errors and timeouts, is a failure.

    The socket timeout only bounds each read, so a server trickling bytes
    could hold a request much longer. ``timeout_seconds`` is therefore also
    a deadline for the whole check: the request runs on its own thread and
    is abandoned, counted as a failure, once the deadline passes.
    """

    def __init__(
        self,
        timeout_seconds: float,
        opener: Callable[..., Any] = urllib.request.urlopen,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.opener = opener

    def probe(self, url: str) -> bool:
        outcome: list[bool] = []
        finished = threading.Event()

        def request() -> None:
            try:
                outcome.append(self._request(url))
            finally:
                finished.set()

        threading.Thread(target=request, name="probe-request", daemon=True).start()
        if not finished.wait(timeout=self.timeout_seconds):
            LOGGER.debug("Probe of %s abandoned after %ss", url, self.timeout_seconds)
            return False
        return bool(outcome) and outcome[0]

    def _request(self, url: str) -> bool:
        try:
            with self.opener(url, timeout=self.timeout_seconds) as resp:  # noqa: S310
                return 200 <= resp.status < 300
        except (urllib.error.URLError, http.client.HTTPException, TimeoutError, OSError, ValueError):
            return False


@dataclass(frozen=True)
class ProbeTarget:
    key: str
    url: str
    phase: Phase
    status_failure_count: int
    max_probe_retry: int


class CodeServerWatcher:
    """Probe running CodeServer instances and signal state changes.

    ``_counters`` maps resource key to consecutive probe failures and is owned
    by this instance alone. A key's counter is seeded from the resource's
    ``status.probeFailureCount`` the first time the key is seen, so a restart
    resumes from the last persisted value instead of zero.

    Signals are re-derived from the counters and the observed phase on every
    tick. A request dropped because the channel was full is therefore
    re-emitted on a later tick for as long as the condition persists.
    """

    def __init__(
        self,
        codeservers: CodeServerClient,
        options: Options,
        channel: RequestChannel,
        prober: HttpProber | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.codeservers = codeservers
        self.options = options
        self.channel = channel
        self.prober = prober or HttpProber(timeout_seconds=options.probe_timeout_seconds)
        self.logger = logger or LOGGER
        self._counters: dict[str, int] = {}

    @property
    def counters(self) -> dict[str, int]:
        return dict(self._counters)

    def _max_probe_retry(self, spec: Any) -> int:
        override = spec.get("maxProbeRetry") if isinstance(spec, dict) else None
        if isinstance(override, int) and not isinstance(override, bool) and override >= 1:
            return override
        return self.options.max_probe_retry

    def list_targets(self) -> list[ProbeTarget]:
        """List the instances to probe this tick."""
        listing = self.codeservers.list(self.options.watch_namespace)
        phases: Counter[str] = Counter()
        targets: list[ProbeTarget] = []
        for item in listing.get("items") or []:
            status = item.get("status") or {}
            phase = current_phase(status)
            phases[phase.value] += 1
            url = status.get("probeURL")
            if phase not in PROBED_PHASES or not url:
                continue
            if (item.get("metadata") or {}).get("deletionTimestamp"):
                continue
            targets.append(
                ProbeTarget(
                    key=object_key(item),
                    url=url,
                    phase=phase,
                    status_failure_count=probe_failure_count(status),
                    max_probe_retry=self._max_probe_retry(item.get("spec")),
                )
            )
        for phase in Phase:
            METRICS.instances_by_phase.labels(phase=phase.value).set(phases.get(phase.value, 0))
        return targets

    def observe(self, target: ProbeTarget, success: bool) -> ReconcileRequest | None:
        """Apply one probe result to the failure counter and derive the signal."""
        key = target.key
        if key not in self._counters:
            self._counters[key] = target.status_failure_count
        previous = self._counters[key]

        if success:
            self._counters[key] = 0
            if previous > 0 or target.phase is Phase.INACTIVE:
                return ReconcileRequest(key=key, reason=Reason.PROBE_RECOVERED, probe_failure_count=0)
            return None

        count = previous + 1
        self._counters[key] = count
        if count == target.max_probe_retry or (
            count > target.max_probe_retry and target.phase is not Phase.INACTIVE
        ):
            return ReconcileRequest(
                key=key,
                reason=Reason.PROBE_FAILURE_THRESHOLD_REACHED,
                probe_failure_count=count,
            )
        return None

    def _emit(self, request: ReconcileRequest) -> None:
        if self.channel.try_send(request):
            self.logger.info(
                "Emitted %s for %s (failures=%s)",
                request.reason.value,
                request.key,
                request.probe_failure_count,
            )
            return
        self.logger.warning(
            "Request channel full; dropped %s for %s, will re-derive next tick",
            request.reason.value,
            request.key,
        )

    def _probe_all(
        self,
        targets: list[ProbeTarget],
        stop_event: threading.Event,
        executor: ThreadPoolExecutor,
    ) -> dict[str, bool]:
        futures: dict[Future[bool], ProbeTarget] = {
            executor.submit(self.prober.probe, target.url): target for target in targets
        }
        results: dict[str, bool] = {}
        try:
            for future in as_completed(futures):
                if stop_event.is_set():
                    break
                target = futures[future]
                try:
                    results[target.key] = future.result()
                except Exception:
                    self.logger.exception("Probe of %s raised", target.key)
                    results[target.key] = False
        finally:
            for future in futures:
                future.cancel()
        if len(results) < len(targets):
            self.logger.info("Abandoned %d probe(s) on stop", len(targets) - len(results))
        return results

    def run_once(
        self,
        stop_event: threading.Event | None = None,
        executor: ThreadPoolExecutor | None = None,
    ) -> list[ReconcileRequest]:
        """Run one probe pass and return the requests it derived."""
        stop = stop_event or threading.Event()
        try:
            targets = self.list_targets()
        except ApiException as exc:
            self.logger.error("Failed to list CodeServers for probing: %s", exc.reason)
            return []

        listed = {target.key for target in targets}
        for key in list(self._counters):
            if key not in listed:
                del self._counters[key]

        if executor is None:
            with ThreadPoolExecutor(
                max_workers=self.options.probe_concurrency, thread_name_prefix="probe"
            ) as own_executor:
                results = self._probe_all(targets, stop, own_executor)
        else:
            results = self._probe_all(targets, stop, executor)

        requests: list[ReconcileRequest] = []
        for target in targets:
            if target.key not in results:
                continue
            success = results[target.key]
            METRICS.probes_total.labels(result="success" if success else "failure").inc()
            if not success:
                self.logger.debug(
                    "Probe of %s failed (%d consecutive)",
                    target.key,
                    self._counters.get(target.key, target.status_failure_count) + 1,
                )
            request = self.observe(target, success)
            if request is not None:
                requests.append(request)
                self._emit(request)
        return requests

    def run(self, stop_event: threading.Event, ticker: Ticker) -> None:
        """Probe on every tick until *stop_event* is set. Never raises."""
        self.logger.info(
            "Watcher started (interval=%ss, max failures=%d)",
            self.options.probe_interval_seconds,
            self.options.max_probe_retry,
        )
        with ThreadPoolExecutor(
            max_workers=self.options.probe_concurrency, thread_name_prefix="probe"
        ) as executor:
            while ticker.wait(stop_event):
                started = time.monotonic()
                try:
                    self.run_once(stop_event, executor)
                except Exception:
                    self.logger.exception("Unexpected error in watcher pass")
                elapsed = time.monotonic() - started
                METRICS.watcher_pass_duration_seconds.observe(elapsed)
                if elapsed > self.options.probe_interval_seconds:
                    self.logger.warning(
                        "Watcher pass took %.1fs, longer than the %ss probe interval",
                        elapsed,
                        self.options.probe_interval_seconds,
                    )
        self.logger.info("Watcher stopped")
