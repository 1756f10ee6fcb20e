from __future__ import annotations

import base64
import json
import logging
import os
import ssl
import tempfile
import urllib.error
import urllib.parse
import urllib.request
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes.client import CoreV1Api

from codeserver.src.errors import LXDError, ValidationError
from codeserver.src.models import LXD_CPU_QUANTITY, LXD_MEMORY_QUANTITY, CodeServerSpec

LOGGER = logging.getLogger(__name__)

LXD_SPEC_HASH_KEY = "user.spec-hash"
LXD_IMAGE_KEY = "user.code-server.image"
OPERATION_WAIT_SECONDS = 60


@dataclass(frozen=True)
class LXDCredentials:
    """Client certificate material for an LXD host, read from a Kubernetes secret.

    Secret keys: ``endpoint`` (``https://host:8443``), ``client.crt``,
    ``client.key`` and optionally ``server.crt`` to pin the host certificate.
    """

    endpoint: str
    client_cert: str
    client_key: str
    server_cert: str | None = None

    @classmethod
    def from_secret_data(cls, data: dict[str, str]) -> LXDCredentials:
        decoded = {key: base64.b64decode(value).decode("utf-8") for key, value in data.items()}
        missing = [key for key in ("endpoint", "client.crt", "client.key") if not decoded.get(key)]
        if missing:
            raise LXDError(f"LXD client secret is missing keys: {', '.join(missing)}")
        return cls(
            endpoint=decoded["endpoint"].strip().rstrip("/"),
            client_cert=decoded["client.crt"],
            client_key=decoded["client.key"],
            server_cert=decoded.get("server.crt") or None,
        )


def load_credentials(core_api: CoreV1Api, namespace: str, secret_name: str) -> LXDCredentials:
    secret = core_api.read_namespaced_secret(name=secret_name, namespace=namespace)
    return LXDCredentials.from_secret_data(dict(getattr(secret, "data", None) or {}))


def build_ssl_context(credentials: LXDCredentials) -> ssl.SSLContext:
    """Build a TLS context presenting the client certificate.

    ``ssl`` only loads key material from files, so the PEM blocks are written
    to private temporary files that are removed straight after loading.
    """
    if credentials.server_cert:
        context = ssl.create_default_context(cadata=credentials.server_cert)
        # LXD certificates are self-signed for the host address, not a DNS name.
        context.check_hostname = False
    else:
        context = ssl.create_default_context()
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE

    paths: list[str] = []
    try:
        for pem in (credentials.client_cert, credentials.client_key):
            handle, path = tempfile.mkstemp(suffix=".pem")
            paths.append(path)
            with os.fdopen(handle, "w") as stream:
                stream.write(pem)
        context.load_cert_chain(certfile=paths[0], keyfile=paths[1])
    finally:
        for path in paths:
            os.unlink(path)
    return context


def instance_config(spec: CodeServerSpec, spec_hash: str) -> dict[str, str]:
    """Translate a CodeServer spec into LXD instance config keys.

    CPU limits become a core count when they are whole cores and a hard
    time slice otherwise. Expects a spec that passed
    :meth:`CodeServerSpec.parse` for the lxd runtime.
    """
    config = {LXD_SPEC_HASH_KEY: spec_hash}
    limits = spec.resources.get("limits", {})
    cpu = limits.get("cpu")
    if cpu:
        match = LXD_CPU_QUANTITY.match(cpu)
        if match is None:
            raise ValidationError(f"cpu limit {cpu!r} cannot be applied to an LXD instance")
        millicores = int(match["value"]) * (1 if match["milli"] else 1000)
        if millicores % 1000 == 0:
            config["limits.cpu"] = str(millicores // 1000)
        else:
            config["limits.cpu.allowance"] = f"{millicores}ms/1000ms"
    memory = limits.get("memory")
    if memory:
        match = LXD_MEMORY_QUANTITY.match(memory)
        if match is None:
            raise ValidationError(f"memory limit {memory!r} cannot be applied to an LXD instance")
        unit = match["unit"]
        config["limits.memory"] = f"{match['value']}{unit}B" if unit else match["value"]
    for name, value in spec.envs:
        config[f"environment.{name}"] = value
    if spec.args:
        config["user.code-server.args"] = " ".join(spec.args)
    return config


class LXDClient:
    """Minimal LXD REST client covering the instance lifecycle the operator needs."""

    def __init__(
        self,
        credentials: LXDCredentials,
        timeout_seconds: float = 30,
        ssl_context: ssl.SSLContext | None = None,
        opener: Callable[..., Any] = urllib.request.urlopen,
        logger: logging.Logger | None = None,
    ) -> None:
        self.endpoint = credentials.endpoint
        self.timeout_seconds = timeout_seconds
        self.ssl_context = ssl_context or build_ssl_context(credentials)
        self.opener = opener
        self.logger = logger or LOGGER

    def _request(self, method: str, path: str, body: dict[str, Any] | None = None) -> dict[str, Any]:
        data = json.dumps(body).encode("utf-8") if body is not None else None
        request = urllib.request.Request(  # noqa: S310
            url=f"{self.endpoint}{path}",
            data=data,
            method=method,
            headers={"Content-Type": "application/json"},
        )
        try:
            with self.opener(request, timeout=self.timeout_seconds, context=self.ssl_context) as resp:
                payload = resp.read()
        except urllib.error.HTTPError as exc:
            message = exc.reason
            try:
                message = json.loads(exc.read() or b"{}").get("error") or message
            except ValueError:
                pass
            raise LXDError(f"LXD {method} {path} failed: {message}", status=exc.code) from exc
        except (urllib.error.URLError, TimeoutError, OSError) as exc:
            raise LXDError(f"LXD {method} {path} failed: {exc}") from exc

        document = json.loads(payload or b"{}")
        if document.get("type") == "error":
            raise LXDError(
                f"LXD {method} {path} failed: {document.get('error')}",
                status=document.get("error_code"),
            )
        return document

    def _wait(self, document: dict[str, Any]) -> None:
        """Block until the async operation referenced by *document* finishes."""
        if document.get("type") != "async":
            return
        operation = document.get("operation")
        if not operation:
            return
        result = self._request("GET", f"{operation}/wait?timeout={OPERATION_WAIT_SECONDS}")
        metadata = result.get("metadata") or {}
        if metadata.get("status") == "Failure" or metadata.get("err"):
            raise LXDError(f"LXD operation {operation} failed: {metadata.get('err')}")

    def get_instance(self, name: str) -> dict[str, Any] | None:
        try:
            return self._request("GET", f"/1.0/instances/{urllib.parse.quote(name)}").get("metadata")
        except LXDError as exc:
            if exc.status == 404:
                return None
            raise

    def create_instance(self, name: str, image: str, config: dict[str, str]) -> None:
        body = {
            "name": name,
            "type": "container",
            "source": {"type": "image", "alias": image},
            "config": config,
        }
        self._wait(self._request("POST", "/1.0/instances", body))
        self.logger.info("Created LXD instance %s from image %s", name, image)

    def update_config(self, name: str, config: dict[str, str]) -> None:
        self._wait(
            self._request("PATCH", f"/1.0/instances/{urllib.parse.quote(name)}", {"config": config})
        )

    def set_state(self, name: str, action: str, force: bool = False) -> None:
        body = {"action": action, "timeout": 30, "force": force}
        self._wait(
            self._request("PUT", f"/1.0/instances/{urllib.parse.quote(name)}/state", body)
        )

    def delete_instance(self, name: str) -> bool:
        """Stop and delete *name*; returns False when it was already gone."""
        instance = self.get_instance(name)
        if instance is None:
            return False
        if instance.get("status") == "Running":
            self.set_state(name, "stop", force=True)
        try:
            self._wait(self._request("DELETE", f"/1.0/instances/{urllib.parse.quote(name)}"))
        except LXDError as exc:
            if exc.status == 404:
                return False
            raise
        self.logger.info("Deleted LXD instance %s", name)
        return True

    def instance_address(self, name: str) -> str | None:
        """Return the first global IPv4 address of a running instance."""
        state = self._request("GET", f"/1.0/instances/{urllib.parse.quote(name)}/state")
        networks = (state.get("metadata") or {}).get("network") or {}
        for interface, details in sorted(networks.items()):
            if interface == "lo":
                continue
            for address in details.get("addresses") or []:
                if address.get("family") == "inet" and address.get("scope") == "global":
                    return address.get("address")
        return None
