from __future__ import annotations

import threading
import time
import urllib.error
from collections.abc import Iterable
from typing import Any

import pytest
from kubernetes.client import ApiException

from codeserver.src.channel import RequestChannel
from codeserver.src.models import Phase, Reason, ReconcileRequest
from codeserver.src.options import Options
from codeserver.src.watcher import CodeServerWatcher, HttpProber, ProbeTarget, Ticker


def _item(
    name: str = "alice",
    phase: str = "Active",
    count: int = 0,
    url: str | None = "http://alice.dev.svc:8080/active",
    spec: dict[str, Any] | None = None,
    deleting: bool = False,
) -> dict[str, Any]:
    status: dict[str, Any] = {"phase": phase, "probeFailureCount": count}
    if url:
        status["probeURL"] = url
    metadata: dict[str, Any] = {"name": name, "namespace": "dev"}
    if deleting:
        metadata["deletionTimestamp"] = "2026-01-01T00:00:00Z"
    return {"metadata": metadata, "spec": spec or {"image": "x"}, "status": status}


class FakeCodeServers:
    def __init__(self, items: list[dict[str, Any]]) -> None:
        self.items = items
        self.error: Exception | None = None
        self.namespaces: list[str | None] = []

    def list(self, namespace: str | None = None) -> dict[str, Any]:
        self.namespaces.append(namespace)
        if self.error is not None:
            raise self.error
        return {"items": self.items}

    def set_phase(self, name: str, phase: str, count: int | None = None) -> None:
        for item in self.items:
            if item["metadata"]["name"] == name:
                item["status"]["phase"] = phase
                if count is not None:
                    item["status"]["probeFailureCount"] = count


class FakeProber:
    """Answers per URL from a queue of results, repeating the last one."""

    def __init__(self, results: dict[str, Iterable[bool]] | None = None, default: bool = True) -> None:
        self.results = {url: list(values) for url, values in (results or {}).items()}
        self.default = default
        self.calls: list[str] = []
        self.lock = threading.Lock()

    def probe(self, url: str) -> bool:
        with self.lock:
            self.calls.append(url)
            values = self.results.get(url)
            if not values:
                return self.default
            if len(values) > 1:
                return values.pop(0)
            return values[0]


class CountingTicker:
    """Ticks *ticks* times without sleeping, then reports stop."""

    def __init__(self, ticks: int) -> None:
        self.remaining = ticks

    def wait(self, stop_event: threading.Event) -> bool:
        if stop_event.is_set() or self.remaining <= 0:
            return False
        self.remaining -= 1
        return True


def _watcher(
    codeservers: FakeCodeServers,
    prober: FakeProber,
    channel: RequestChannel | None = None,
    max_probe_retry: int = 3,
) -> CodeServerWatcher:
    return CodeServerWatcher(
        codeservers=codeservers,  # type: ignore[arg-type]
        options=Options(max_probe_retry=max_probe_retry, probe_concurrency=4),
        channel=channel if channel is not None else RequestChannel(),
        prober=prober,  # type: ignore[arg-type]
    )


def _drain(channel: RequestChannel) -> list[ReconcileRequest]:
    drained = []
    while (request := channel.receive(timeout=0)) is not None:
        drained.append(request)
    return drained


def _target(phase: Phase = Phase.ACTIVE, count: int = 0, max_probe_retry: int = 3) -> ProbeTarget:
    return ProbeTarget(
        key="dev/alice",
        url="http://alice.dev.svc:8080/active",
        phase=phase,
        status_failure_count=count,
        max_probe_retry=max_probe_retry,
    )


def test_failures_increment_and_threshold_is_signalled_once_per_crossing() -> None:
    watcher = _watcher(FakeCodeServers([]), FakeProber())

    assert watcher.observe(_target(), False) is None
    assert watcher.observe(_target(), False) is None
    request = watcher.observe(_target(), False)

    assert request == ReconcileRequest("dev/alice", Reason.PROBE_FAILURE_THRESHOLD_REACHED, 3)
    assert watcher.counters == {"dev/alice": 3}

    # Once the reconciler has recorded Inactive, further failures stay quiet.
    assert watcher.observe(_target(Phase.INACTIVE), False) is None
    assert watcher.counters == {"dev/alice": 4}


def test_threshold_is_re_derived_until_inactive_is_observed() -> None:
    watcher = _watcher(FakeCodeServers([]), FakeProber())
    for _ in range(3):
        watcher.observe(_target(), False)

    again = watcher.observe(_target(Phase.ACTIVE), False)

    assert again is not None
    assert again.reason is Reason.PROBE_FAILURE_THRESHOLD_REACHED
    assert again.probe_failure_count == 4


def test_success_resets_counter_and_signals_recovery() -> None:
    watcher = _watcher(FakeCodeServers([]), FakeProber())
    watcher.observe(_target(), False)

    request = watcher.observe(_target(), True)

    assert request == ReconcileRequest("dev/alice", Reason.PROBE_RECOVERED, 0)
    assert watcher.counters == {"dev/alice": 0}


def test_steady_state_success_emits_nothing() -> None:
    watcher = _watcher(FakeCodeServers([]), FakeProber())

    assert watcher.observe(_target(), True) is None
    assert watcher.observe(_target(), True) is None


def test_success_while_inactive_signals_recovery_even_with_zero_counter() -> None:
    watcher = _watcher(FakeCodeServers([]), FakeProber())
    watcher.observe(_target(Phase.INACTIVE, count=0), True)

    request = watcher.observe(_target(Phase.INACTIVE, count=0), True)

    assert request is not None
    assert request.reason is Reason.PROBE_RECOVERED


def test_counter_is_seeded_from_status_on_first_sight() -> None:
    watcher = _watcher(FakeCodeServers([]), FakeProber())

    request = watcher.observe(_target(Phase.ACTIVE, count=2), False)

    assert request is not None
    assert request.probe_failure_count == 3


def test_run_once_probes_only_running_phases() -> None:
    codeservers = FakeCodeServers(
        [
            _item("alice", "Active", url="http://alice/active"),
            _item("bob", "Degraded", url="http://bob/active"),
            _item("carol", "Inactive", count=3, url="http://carol/active"),
            _item("dave", "Provisioning", url="http://dave/active"),
            _item("erin", "Failed", url="http://erin/active"),
            _item("frank", "Active", url=None),
            _item("grace", "Active", url="http://grace/active", deleting=True),
        ]
    )
    prober = FakeProber(default=False)
    watcher = _watcher(codeservers, prober)

    watcher.run_once()

    assert sorted(prober.calls) == ["http://alice/active", "http://bob/active", "http://carol/active"]
    assert watcher.counters == {"dev/alice": 1, "dev/bob": 1, "dev/carol": 4}


def test_run_once_emits_into_channel() -> None:
    codeservers = FakeCodeServers([_item("alice", url="http://alice/active")])
    channel = RequestChannel()
    watcher = _watcher(codeservers, FakeProber(default=False), channel=channel, max_probe_retry=2)

    assert watcher.run_once() == []
    emitted = watcher.run_once()

    assert emitted == [ReconcileRequest("dev/alice", Reason.PROBE_FAILURE_THRESHOLD_REACHED, 2)]
    assert _drain(channel) == emitted


def test_spec_max_probe_retry_overrides_default() -> None:
    codeservers = FakeCodeServers([_item("alice", url="http://alice/active", spec={"image": "x", "maxProbeRetry": 1})])
    watcher = _watcher(codeservers, FakeProber(default=False), max_probe_retry=10)

    emitted = watcher.run_once()

    assert [request.probe_failure_count for request in emitted] == [1]


def test_counters_are_pruned_when_resource_disappears() -> None:
    codeservers = FakeCodeServers([_item("alice", url="http://alice/active")])
    watcher = _watcher(codeservers, FakeProber(default=False))
    watcher.run_once()
    assert "dev/alice" in watcher.counters

    codeservers.items = []
    watcher.run_once()

    assert watcher.counters == {}


def test_list_failure_skips_the_pass() -> None:
    codeservers = FakeCodeServers([_item()])
    codeservers.error = ApiException(status=500, reason="boom")
    prober = FakeProber()
    watcher = _watcher(codeservers, prober)

    assert watcher.run_once() == []
    assert prober.calls == []


def test_full_channel_does_not_block_and_signal_is_re_derived() -> None:
    codeservers = FakeCodeServers([_item("alice", url="http://alice/active")])
    channel = RequestChannel(capacity=1)
    channel.try_send(ReconcileRequest("dev/other", Reason.SPEC_CHANGED))
    watcher = _watcher(codeservers, FakeProber(default=False), channel=channel, max_probe_retry=1)

    started = time.monotonic()
    emitted = watcher.run_once()

    assert time.monotonic() - started < 1
    assert len(emitted) == 1
    assert _drain(channel) == [ReconcileRequest("dev/other", Reason.SPEC_CHANGED)]

    # Phase is still Active, so the next tick emits again and this time it fits.
    watcher.run_once()
    delivered = _drain(channel)
    assert [request.reason for request in delivered] == [Reason.PROBE_FAILURE_THRESHOLD_REACHED]


def test_run_reaches_threshold_after_exactly_max_ticks() -> None:
    codeservers = FakeCodeServers([_item("alice", url="http://alice/active")])
    channel = RequestChannel()
    watcher = _watcher(codeservers, FakeProber(default=False), channel=channel, max_probe_retry=10)

    watcher.run(threading.Event(), CountingTicker(9))
    assert _drain(channel) == []

    watcher.run(threading.Event(), CountingTicker(1))
    assert _drain(channel) == [ReconcileRequest("dev/alice", Reason.PROBE_FAILURE_THRESHOLD_REACHED, 10)]


def test_run_survives_unexpected_errors() -> None:
    codeservers = FakeCodeServers([_item()])
    codeservers.error = RuntimeError("boom")
    watcher = _watcher(codeservers, FakeProber())

    watcher.run(threading.Event(), CountingTicker(3))

    assert len(codeservers.namespaces) == 3


def test_recovery_flow_across_ticks() -> None:
    url = "http://alice/active"
    codeservers = FakeCodeServers([_item("alice", url=url)])
    prober = FakeProber({url: [False, False, True]})
    channel = RequestChannel()
    watcher = _watcher(codeservers, prober, channel=channel, max_probe_retry=2)

    watcher.run(threading.Event(), CountingTicker(2))
    codeservers.set_phase("alice", "Inactive", count=2)
    watcher.run(threading.Event(), CountingTicker(1))

    assert [request.reason for request in _drain(channel)] == [
        Reason.PROBE_FAILURE_THRESHOLD_REACHED,
        Reason.PROBE_RECOVERED,
    ]
    assert watcher.counters == {"dev/alice": 0}


def test_ticker_stops_on_stop_event() -> None:
    ticker = Ticker(0.01)
    stop = threading.Event()

    assert ticker.wait(stop) is True
    stop.set()
    assert ticker.wait(stop) is False


def test_ticker_stop_ends_the_loop() -> None:
    ticker = Ticker(0.01)
    ticker.stop()

    assert ticker.wait(threading.Event()) is False


def test_ticker_keeps_a_fixed_rate() -> None:
    ticker = Ticker(0.05)
    stop = threading.Event()

    started = time.monotonic()
    for _ in range(4):
        assert ticker.wait(stop)
    elapsed = time.monotonic() - started

    assert 0.18 <= elapsed < 1.0


def test_ticker_rejects_non_positive_interval() -> None:
    with pytest.raises(ValueError):
        Ticker(0)


class FakeResponse:
    def __init__(self, status: int) -> None:
        self.status = status

    def __enter__(self) -> FakeResponse:
        return self

    def __exit__(self, *args: object) -> None:
        return None


@pytest.mark.parametrize(
    ("outcome", "expected"),
    [
        (FakeResponse(200), True),
        (FakeResponse(204), True),
        (FakeResponse(302), False),
        (urllib.error.HTTPError("http://x", 503, "down", {}, None), False),  # type: ignore[arg-type]
        (urllib.error.URLError("refused"), False),
        (TimeoutError("slow"), False),
        (ConnectionResetError("reset"), False),
    ],
)
def test_http_prober(outcome: Any, expected: bool) -> None:
    seen: list[tuple[str, float]] = []

    def opener(url: str, timeout: float) -> FakeResponse:
        seen.append((url, timeout))
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    prober = HttpProber(timeout_seconds=5, opener=opener)

    assert prober.probe("http://alice/active") is expected
    assert seen == [("http://alice/active", 5)]


def test_http_prober_gives_up_at_total_deadline() -> None:
    release = threading.Event()

    def trickling_opener(url: str, timeout: float) -> FakeResponse:
        # Each read would finish inside the socket timeout, but the whole
        # response takes far longer.
        release.wait(timeout=5)
        return FakeResponse(200)

    prober = HttpProber(timeout_seconds=0.2, opener=trickling_opener)
    try:
        started = time.monotonic()
        result = prober.probe("http://alice/active")
        elapsed = time.monotonic() - started
    finally:
        release.set()

    assert result is False
    assert elapsed < 1.0
