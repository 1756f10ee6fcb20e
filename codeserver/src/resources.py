from __future__ import annotations

import json
import re
from hashlib import sha256
from typing import Any

from codeserver.src.models import CRD_GROUP, CRD_KIND, CRD_VERSION, CodeServerSpec, quantity_value
from codeserver.src.options import Options

SPEC_HASH_ANNOTATION = f"{CRD_GROUP}/spec-hash"
MANAGED_BY = "code-server-operator"

CODE_SERVER_PORT = 8443
EXPORTER_PORT = 8080
PROBE_PATH = "/active"
TLS_MOUNT_PATH = "/etc/code-server/tls"
TLS_VOLUME = "tls"


def labels_for(name: str) -> dict[str, str]:
    return {
        "app.kubernetes.io/name": "code-server",
        "app.kubernetes.io/instance": name,
        "app.kubernetes.io/managed-by": MANAGED_BY,
    }


def selector_for(name: str) -> dict[str, str]:
    return {
        "app.kubernetes.io/name": "code-server",
        "app.kubernetes.io/instance": name,
    }


def hash_body(body: Any) -> str:
    """Return a SHA-256 hex digest of a desired object body.

    The digest is stored as an annotation on the live object, so a change to
    the desired body is seen even in fields the server rewrites.
    """
    stable_payload = json.dumps(body, sort_keys=True, separators=(",", ":"))
    return sha256(stable_payload.encode("utf-8")).hexdigest()


def owner_reference(owner: dict[str, Any]) -> dict[str, Any]:
    metadata = owner["metadata"]
    return {
        "apiVersion": f"{CRD_GROUP}/{CRD_VERSION}",
        "kind": CRD_KIND,
        "name": metadata["name"],
        "uid": metadata["uid"],
        "controller": True,
        "blockOwnerDeletion": True,
    }


def _object(
    api_version: str,
    kind: str,
    name: str,
    namespace: str,
    owner: dict[str, Any],
    spec_key: str,
    spec: dict[str, Any],
) -> dict[str, Any]:
    return {
        "apiVersion": api_version,
        "kind": kind,
        "metadata": {
            "name": name,
            "namespace": namespace,
            "labels": labels_for(name),
            "annotations": {SPEC_HASH_ANNOTATION: hash_body(spec)},
            "ownerReferences": [owner_reference(owner)],
        },
        spec_key: spec,
    }


def build_deployment(
    name: str,
    namespace: str,
    spec: CodeServerSpec,
    options: Options,
    owner: dict[str, Any],
) -> dict[str, Any]:
    """Build the Deployment running code-server plus the liveness exporter sidecar."""
    code_server: dict[str, Any] = {
        "name": "code-server",
        "image": spec.image,
        "args": [
            "--bind-addr",
            f"0.0.0.0:{CODE_SERVER_PORT}",
            "--cert",
            f"{TLS_MOUNT_PATH}/tls.crt",
            "--cert-key",
            f"{TLS_MOUNT_PATH}/tls.key",
            *spec.args,
        ],
        "ports": [{"name": "https", "containerPort": CODE_SERVER_PORT}],
        "volumeMounts": [{"name": TLS_VOLUME, "mountPath": TLS_MOUNT_PATH, "readOnly": True}],
    }
    if spec.envs:
        code_server["env"] = [{"name": env_name, "value": value} for env_name, value in spec.envs]
    if spec.resources:
        code_server["resources"] = spec.resources

    exporter = {
        "name": "exporter",
        "image": spec.exporter_image or options.exporter_image,
        "env": [
            {"name": "LISTEN_PORT", "value": str(EXPORTER_PORT)},
            {"name": "TARGET_PORT", "value": str(CODE_SERVER_PORT)},
        ],
        "ports": [{"name": "exporter", "containerPort": EXPORTER_PORT}],
        "readinessProbe": {
            "httpGet": {"path": PROBE_PATH, "port": EXPORTER_PORT},
            "periodSeconds": 10,
        },
    }

    deployment_spec = {
        "replicas": 1,
        "selector": {"matchLabels": selector_for(name)},
        "template": {
            "metadata": {"labels": labels_for(name)},
            "spec": {
                "containers": [code_server, exporter],
                "volumes": [
                    {
                        "name": TLS_VOLUME,
                        "secret": {"secretName": options.https_secret_name},
                    }
                ],
            },
        },
    }
    return _object("apps/v1", "Deployment", name, namespace, owner, "spec", deployment_spec)


def build_service(
    name: str,
    namespace: str,
    owner: dict[str, Any],
    *,
    with_selector: bool = True,
) -> dict[str, Any]:
    """Build the Service fronting the instance.

    LXD-backed instances get a selector-less Service whose Endpoints the
    operator manages itself.
    """
    service_spec: dict[str, Any] = {
        "ports": [
            {"name": "https", "port": CODE_SERVER_PORT, "targetPort": CODE_SERVER_PORT},
            {"name": "exporter", "port": EXPORTER_PORT, "targetPort": EXPORTER_PORT},
        ],
    }
    if with_selector:
        service_spec["selector"] = selector_for(name)
    return _object("v1", "Service", name, namespace, owner, "spec", service_spec)


def build_endpoints(
    name: str,
    namespace: str,
    owner: dict[str, Any],
    address: str,
) -> dict[str, Any]:
    subsets = [
        {
            "addresses": [{"ip": address}],
            "ports": [
                {"name": "https", "port": CODE_SERVER_PORT},
                {"name": "exporter", "port": EXPORTER_PORT},
            ],
        }
    ]
    return _object("v1", "Endpoints", name, namespace, owner, "subsets", subsets)


def ingress_host(name: str, spec: CodeServerSpec, options: Options) -> str:
    return f"{spec.subdomain or name}.{options.domain_name}"


def build_ingress(
    name: str,
    namespace: str,
    spec: CodeServerSpec,
    options: Options,
    owner: dict[str, Any],
) -> dict[str, Any]:
    host = ingress_host(name, spec, options)
    ingress_spec: dict[str, Any] = {
        "tls": [{"hosts": [host], "secretName": options.https_secret_name}],
        "rules": [
            {
                "host": host,
                "http": {
                    "paths": [
                        {
                            "path": "/",
                            "pathType": "Prefix",
                            "backend": {
                                "service": {"name": name, "port": {"number": CODE_SERVER_PORT}}
                            },
                        }
                    ]
                },
            }
        ],
    }
    if options.ingress_class_name:
        ingress_spec["ingressClassName"] = options.ingress_class_name
    body = _object("networking.k8s.io/v1", "Ingress", name, namespace, owner, "spec", ingress_spec)
    body["metadata"]["annotations"]["nginx.ingress.kubernetes.io/backend-protocol"] = "HTTPS"
    return body


def service_probe_url(name: str, namespace: str) -> str:
    return f"http://{name}.{namespace}.svc:{EXPORTER_PORT}{PROBE_PATH}"


def address_probe_url(address: str) -> str:
    return f"http://{address}:{EXPORTER_PORT}{PROBE_PATH}"


def lxd_instance_name(namespace: str, name: str) -> str:
    """Return a valid LXD instance name (<= 63 chars, alphanumerics and hyphens).

    Hyphens are legal in both namespaces and names, so the readable prefix
    alone is ambiguous. The suffix is a digest of ``namespace/name``, which
    keeps distinct resources apart; long prefixes are trimmed to fit.
    """
    suffix = sha256(f"{namespace}/{name}".encode()).hexdigest()[:10]
    prefix = re.sub(r"[^A-Za-z0-9-]+", "-", f"cs-{namespace}-{name}").strip("-")
    prefix = prefix[: 63 - len(suffix) - 1].rstrip("-")
    return f"{prefix}-{suffix}"


def live_annotations(obj: Any) -> dict[str, str]:
    """Extract metadata annotations from an API object or a plain dict safely."""
    if isinstance(obj, dict):
        annotations = (obj.get("metadata") or {}).get("annotations")
    else:
        annotations = getattr(getattr(obj, "metadata", None), "annotations", None)
    if not isinstance(annotations, dict):
        return {}
    return {k: ("" if v is None else str(v)) for k, v in annotations.items() if isinstance(k, str)}


def live_matches(live: Any, desired: Any, *, quantities: bool = False) -> bool:
    """Return whether the live object still carries every desired value.

    Keys the API server added (defaults, allocated IPs) are ignored, list
    entries may come back in any order, and empty desired values match
    fields the server omitted. Under ``resources`` quantities compare by
    value, since the server rewrites ``1000m`` as ``1``.
    """
    if live is None and desired is not None and not desired:
        return True
    if isinstance(desired, dict):
        if not isinstance(live, dict):
            return False
        return all(
            live_matches(live.get(key), value, quantities=quantities or key == "resources")
            for key, value in desired.items()
        )
    if isinstance(desired, list):
        if not isinstance(live, list) or len(live) != len(desired):
            return False
        unmatched = list(live)
        for item in desired:
            for index, candidate in enumerate(unmatched):
                if live_matches(candidate, item, quantities=quantities):
                    del unmatched[index]
                    break
            else:
                return False
        return True
    if live == desired:
        return True
    if quantities and isinstance(live, str) and isinstance(desired, str):
        value = quantity_value(desired)
        return value is not None and value == quantity_value(live)
    return False
