from __future__ import annotations

import copy
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes import client, config
from kubernetes.client import AppsV1Api, CoreV1Api, CustomObjectsApi, NetworkingV1Api
from kubernetes.config.config_exception import ConfigException

from codeserver.src.errors import is_conflict, is_not_found
from codeserver.src.models import CRD_GROUP, CRD_PLURAL, CRD_VERSION, split_key

LOGGER = logging.getLogger(__name__)

STATUS_CONFLICT_RETRIES = 5


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


@dataclass(frozen=True)
class KubeClients:
    core: CoreV1Api
    apps: AppsV1Api
    networking: NetworkingV1Api
    custom: CustomObjectsApi


def build_clients() -> KubeClients:
    """Return the API clients the operator needs, using the active kube configuration."""
    return KubeClients(
        core=client.CoreV1Api(),
        apps=client.AppsV1Api(),
        networking=client.NetworkingV1Api(),
        custom=client.CustomObjectsApi(),
    )


class CodeServerClient:
    """Versioned read-modify-write access to CodeServer custom objects.

    Every write sends the ``resourceVersion`` that was read, so the API server
    rejects it with ``409 Conflict`` when someone else wrote in between.
    """

    def __init__(self, custom_api: CustomObjectsApi, logger: logging.Logger | None = None) -> None:
        self.custom_api = custom_api
        self.logger = logger or LOGGER

    def get(self, key: str) -> dict[str, Any] | None:
        """Fetch a CodeServer by key, or ``None`` when it does not exist."""
        namespace, name = split_key(key)
        try:
            return self.custom_api.get_namespaced_custom_object(
                group=CRD_GROUP,
                version=CRD_VERSION,
                namespace=namespace,
                plural=CRD_PLURAL,
                name=name,
            )
        except client.ApiException as exc:
            if is_not_found(exc):
                return None
            raise

    def list(self, namespace: str | None = None, **kwargs: Any) -> dict[str, Any]:
        if namespace:
            return self.custom_api.list_namespaced_custom_object(
                group=CRD_GROUP,
                version=CRD_VERSION,
                namespace=namespace,
                plural=CRD_PLURAL,
                **kwargs,
            )
        return self.custom_api.list_cluster_custom_object(
            group=CRD_GROUP,
            version=CRD_VERSION,
            plural=CRD_PLURAL,
            **kwargs,
        )

    def list_function(self, namespace: str | None = None) -> tuple[Callable[..., Any], dict[str, Any]]:
        """Return the list callable and fixed kwargs for ``kubernetes.watch.Watch.stream``."""
        if namespace:
            return self.custom_api.list_namespaced_custom_object, {
                "group": CRD_GROUP,
                "version": CRD_VERSION,
                "namespace": namespace,
                "plural": CRD_PLURAL,
            }
        return self.custom_api.list_cluster_custom_object, {
            "group": CRD_GROUP,
            "version": CRD_VERSION,
            "plural": CRD_PLURAL,
        }

    def replace(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Replace the whole object; used for metadata changes such as finalizers."""
        metadata = obj["metadata"]
        return self.custom_api.replace_namespaced_custom_object(
            group=CRD_GROUP,
            version=CRD_VERSION,
            namespace=metadata["namespace"],
            plural=CRD_PLURAL,
            name=metadata["name"],
            body=obj,
        )

    def replace_status(self, obj: dict[str, Any]) -> dict[str, Any]:
        metadata = obj["metadata"]
        return self.custom_api.replace_namespaced_custom_object_status(
            group=CRD_GROUP,
            version=CRD_VERSION,
            namespace=metadata["namespace"],
            plural=CRD_PLURAL,
            name=metadata["name"],
            body=obj,
        )

    def update_status(
        self,
        obj: dict[str, Any],
        mutate: Callable[[dict[str, Any]], dict[str, Any]],
    ) -> dict[str, Any] | None:
        """Write ``mutate(status)`` with optimistic concurrency, retrying on conflict.

        *obj* is the copy the caller already read. On ``409`` the object is
        re-read and *mutate* is applied to the fresh status. Returns the
        written object, the unchanged object when there was nothing to write,
        or ``None`` when the object disappeared.
        """
        current: dict[str, Any] | None = obj
        key = f"{obj['metadata']['namespace']}/{obj['metadata']['name']}"
        for attempt in range(1, STATUS_CONFLICT_RETRIES + 1):
            if current is None:
                return None
            status = copy.deepcopy(current.get("status") or {})
            desired = mutate(status)
            if desired == (current.get("status") or {}):
                return current
            body = copy.deepcopy(current)
            body["status"] = desired
            try:
                return self.replace_status(body)
            except client.ApiException as exc:
                if is_not_found(exc):
                    return None
                if not is_conflict(exc) or attempt == STATUS_CONFLICT_RETRIES:
                    raise
                self.logger.debug(
                    "Status update conflict for %s (attempt %d); re-reading", key, attempt
                )
                current = self.get(key)
        return current

    def set_finalizer(self, obj: dict[str, Any], finalizer: str, present: bool) -> dict[str, Any] | None:
        """Add or remove *finalizer* on *obj*; a no-op when already in the desired state.

        Returns the object as stored afterwards, or ``None`` once it is gone.
        """
        finalizers = list(obj.get("metadata", {}).get("finalizers") or [])
        if (finalizer in finalizers) == present:
            return obj
        body = copy.deepcopy(obj)
        if present:
            finalizers.append(finalizer)
        else:
            finalizers = [item for item in finalizers if item != finalizer]
        body["metadata"]["finalizers"] = finalizers
        try:
            return self.replace(body)
        except client.ApiException as exc:
            if is_not_found(exc):
                return None
            raise
