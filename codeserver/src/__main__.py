from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading
from collections.abc import Callable

from codeserver.src.channel import Dispatcher, RequestChannel
from codeserver.src.health import start_health_server
from codeserver.src.informer import CodeServerInformer
from codeserver.src.kube import CodeServerClient, build_clients, load_kube_configuration
from codeserver.src.metrics import METRICS
from codeserver.src.options import build_options_from_env, env_int
from codeserver.src.reconciler import CodeServerReconciler
from codeserver.src.watcher import CodeServerWatcher, Ticker
from codeserver.src.workqueue import WorkQueue

RUNTIME_VERSION = "0.1.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"-----BEGIN [A-Z ]*PRIVATE KEY-----.*?-----END [A-Z ]*PRIVATE KEY-----", re.S),
        "[REDACTED PRIVATE KEY]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging() -> None:
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def _supervised(
    name: str, target: Callable[[], None], shutdown_event: threading.Event
) -> threading.Thread:
    """Start *target* in a thread that stops the whole process if it exits early."""

    def _run() -> None:
        unexpected_exit = False
        try:
            target()
            unexpected_exit = not shutdown_event.is_set()
            if unexpected_exit:
                logging.getLogger(__name__).error(
                    "%s exited without a stop signal; terminating process", name
                )
        except Exception:
            unexpected_exit = True
            logging.getLogger(__name__).exception("%s crashed", name)
        finally:
            if unexpected_exit:
                shutdown_event.set()

    thread = threading.Thread(target=_run, name=name, daemon=True)
    thread.start()
    return thread


def main() -> None:
    """Operator entrypoint: wire the informer, workers, watcher and dispatcher, then wait."""
    configure_logging()
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    options = build_options_from_env()
    health_port = env_int("HEALTH_PORT", 8081, minimum=1, maximum=65535)

    load_kube_configuration()
    clients = build_clients()
    codeservers = CodeServerClient(clients.custom)

    work_queue = WorkQueue(max_backoff_seconds=options.max_backoff_seconds)
    channel = RequestChannel()
    reconciler = CodeServerReconciler(
        clients=clients,
        options=options,
        work_queue=work_queue,
        codeservers=codeservers,
    )
    informer = CodeServerInformer(
        codeservers=codeservers,
        work_queue=work_queue,
        namespace=options.watch_namespace,
        resync_seconds=options.resync_seconds,
    )
    watcher = CodeServerWatcher(codeservers=codeservers, options=options, channel=channel)
    dispatcher = Dispatcher(channel=channel, work_queue=work_queue)
    ticker = Ticker(options.probe_interval_seconds)

    alive = threading.Event()
    alive.set()
    health_server = start_health_server(ready=informer.ready, port=health_port, alive=alive)

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logging.getLogger(__name__).info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    threads = [
        _supervised("reconciler", lambda: reconciler.run(shutdown_event), shutdown_event),
        _supervised("dispatcher", lambda: dispatcher.run(shutdown_event), shutdown_event),
        _supervised("watcher", lambda: watcher.run(shutdown_event, ticker), shutdown_event),
        _supervised("informer", lambda: informer.run_forever(shutdown_event), shutdown_event),
    ]
    logging.getLogger(__name__).info(
        "Operator started (namespace=%s, workers=%d, probe interval=%ss)",
        options.watch_namespace or "*",
        options.max_concurrency,
        options.probe_interval_seconds,
    )

    shutdown_event.wait()
    alive.clear()
    informer.request_stop()
    ticker.stop()
    for thread in threads:
        thread.join(timeout=45)
        if thread.is_alive():
            logging.getLogger(__name__).error("%s did not stop in time", thread.name)

    health_server.shutdown()
    logging.getLogger(__name__).info("Operator stopped")


if __name__ == "__main__":
    main()
