from __future__ import annotations

import logging
from typing import Any

import pytest

from codeserver.src.errors import TransientError
from codeserver.src.kube import KubeClients
from codeserver.src.lxd import LXD_IMAGE_KEY, LXD_SPEC_HASH_KEY
from codeserver.src.models import CodeServerSpec
from codeserver.src.options import Options
from codeserver.src.resources import SPEC_HASH_ANNOTATION, lxd_instance_name
from codeserver.src.subresources import (
    ABSENT,
    CREATED,
    DELETED,
    PATCHED,
    UNCHANGED,
    ReconcileContext,
    cleanup,
    ensure_all,
)
from codeserver.tests.fake_cluster import (
    OPERATOR_NAMESPACE,
    TLS_SECRET,
    FakeLXDClient,
    all_mutations,
    lxd_factory,
    make_clients,
    unmanaged,
)

INSTANCE = lxd_instance_name("dev", "alice")
OWNER = {"metadata": {"name": "alice", "namespace": "dev", "uid": "uid-alice"}}


def _ctx(
    clients: KubeClients,
    spec: dict[str, Any] | None = None,
    options: Options | None = None,
    lxd: FakeLXDClient | None = None,
    status: dict[str, Any] | None = None,
) -> ReconcileContext:
    return ReconcileContext(
        name="alice",
        namespace="dev",
        owner=OWNER,
        spec=CodeServerSpec.parse(spec or {"image": "codercom/code-server:4"}),
        options=options or Options(),
        clients=clients,
        status=status or {},
        lxd=lxd_factory(lxd) if lxd is not None else None,
        logger=logging.getLogger("test"),
    )


def test_ensure_all_creates_kubernetes_runtime_objects() -> None:
    clients = make_clients()

    outcomes = ensure_all(_ctx(clients))

    assert outcomes == {
        "Secret": CREATED,
        "LXDInstance": ABSENT,
        "Deployment": CREATED,
        "Service": CREATED,
        "Endpoints": ABSENT,
        "Ingress": ABSENT,
    }
    assert clients.apps.get("deployment", "dev", "alice") is not None  # type: ignore[attr-defined]
    assert clients.core.get("service", "dev", "alice")["spec"]["selector"]  # type: ignore[attr-defined]
    copied = clients.core.get("secret", "dev", TLS_SECRET)  # type: ignore[attr-defined]
    assert copied["data"] == {"tls.crt": "Y2VydA==", "tls.key": "a2V5"}
    assert "ownerReferences" not in copied["metadata"]


def test_second_pass_is_a_no_op() -> None:
    clients = make_clients()
    ensure_all(_ctx(clients))
    before = len(all_mutations(clients))

    outcomes = ensure_all(_ctx(clients))

    assert set(outcomes.values()) <= {UNCHANGED, ABSENT}
    assert len(all_mutations(clients)) == before


def test_workload_availability_is_observed_from_deployment_status() -> None:
    clients = make_clients()
    ensure_all(_ctx(clients))
    clients.apps.objects["deployment"][("dev", "alice")]["status"] = {"availableReplicas": 1}  # type: ignore[attr-defined]

    ctx = _ctx(clients)
    ensure_all(ctx)

    assert ctx.workload_available is True
    assert ctx.probe_url == "http://alice.dev.svc:8080/active"


def test_drifted_object_is_replaced() -> None:
    clients = make_clients()
    ensure_all(_ctx(clients))
    live = clients.apps.objects["deployment"][("dev", "alice")]  # type: ignore[attr-defined]
    live["metadata"]["annotations"][SPEC_HASH_ANNOTATION] = "stale"

    outcomes = ensure_all(_ctx(clients))

    assert outcomes["Deployment"] == PATCHED
    assert ("replace", "deployment", "dev", "alice") in clients.apps.mutations()  # type: ignore[attr-defined]


def test_out_of_band_edit_to_live_spec_is_reverted() -> None:
    clients = make_clients()
    ensure_all(_ctx(clients))
    live = clients.apps.objects["deployment"][("dev", "alice")]  # type: ignore[attr-defined]
    live["spec"]["template"]["spec"]["containers"][0]["image"] = "someone/else:latest"

    outcomes = ensure_all(_ctx(clients))

    assert outcomes["Deployment"] == PATCHED
    containers = clients.apps.get("deployment", "dev", "alice")["spec"]["template"]["spec"]["containers"]  # type: ignore[attr-defined]
    assert containers[0]["image"] == "codercom/code-server:4"


def test_server_defaults_are_not_drift() -> None:
    clients = make_clients()
    spec = {"image": "codercom/code-server:4", "resources": {"limits": {"cpu": "2000m"}}}
    ensure_all(_ctx(clients, spec=spec))
    deployment = clients.apps.objects["deployment"][("dev", "alice")]  # type: ignore[attr-defined]
    deployment["spec"]["strategy"] = {"type": "RollingUpdate"}
    container = deployment["spec"]["template"]["spec"]["containers"][0]
    container["resources"] = {"limits": {"cpu": "2"}, "requests": {"cpu": "2"}}
    container["imagePullPolicy"] = "IfNotPresent"
    service = clients.core.objects["service"][("dev", "alice")]  # type: ignore[attr-defined]
    service["spec"]["clusterIP"] = "10.96.0.12"
    service["spec"]["type"] = "ClusterIP"
    for port in service["spec"]["ports"]:
        port["protocol"] = "TCP"
    service["spec"]["ports"].reverse()
    before = len(all_mutations(clients))

    outcomes = ensure_all(_ctx(clients, spec=spec))

    assert outcomes["Deployment"] == UNCHANGED
    assert outcomes["Service"] == UNCHANGED
    assert len(all_mutations(clients)) == before


def test_spec_change_patches_deployment() -> None:
    clients = make_clients()
    ensure_all(_ctx(clients))

    outcomes = ensure_all(_ctx(clients, spec={"image": "codercom/code-server:5"}))

    assert outcomes["Deployment"] == PATCHED
    containers = clients.apps.get("deployment", "dev", "alice")["spec"]["template"]["spec"]["containers"]  # type: ignore[attr-defined]
    assert containers[0]["image"] == "codercom/code-server:5"


def test_removed_env_and_limit_leave_the_live_deployment() -> None:
    clients = make_clients()
    before = {
        "image": "codercom/code-server:4",
        "envs": [{"name": "A", "value": "1"}, {"name": "B", "value": "2"}],
        "resources": {"limits": {"cpu": "2", "memory": "4Gi"}},
    }
    ensure_all(_ctx(clients, spec=before))
    after = {**before, "envs": [{"name": "A", "value": "1"}], "resources": {"limits": {"cpu": "2"}}}

    outcomes = ensure_all(_ctx(clients, spec=after))

    assert outcomes["Deployment"] == PATCHED
    code_server = clients.apps.get("deployment", "dev", "alice")["spec"]["template"]["spec"]["containers"][0]  # type: ignore[attr-defined]
    assert code_server["env"] == [{"name": "A", "value": "1"}]
    assert code_server["resources"] == {"limits": {"cpu": "2"}}


def test_replace_keeps_cluster_ip_and_foreign_metadata() -> None:
    clients = make_clients()
    ensure_all(_ctx(clients))
    live = clients.core.objects["service"][("dev", "alice")]  # type: ignore[attr-defined]
    live["spec"]["clusterIP"] = "10.96.0.12"
    live["metadata"]["annotations"]["example.com/owner-note"] = "keep"
    live["metadata"]["finalizers"] = ["example.com/protect"]

    outcomes = ensure_all(_ctx(clients, spec={"image": "ubuntu-code-server", "runtime": "lxd"}, lxd=FakeLXDClient()))

    assert outcomes["Service"] == PATCHED
    service = clients.core.get("service", "dev", "alice")  # type: ignore[attr-defined]
    assert "selector" not in service["spec"]
    assert service["spec"]["clusterIP"] == "10.96.0.12"
    assert service["metadata"]["annotations"]["example.com/owner-note"] == "keep"
    assert service["metadata"]["finalizers"] == ["example.com/protect"]


def test_unmanaged_object_with_same_name_is_not_taken_over() -> None:
    clients = make_clients()
    clients.core.put(  # type: ignore[attr-defined]
        "service", unmanaged({"metadata": {"name": "alice", "namespace": "dev"}, "spec": {}})
    )

    with pytest.raises(TransientError, match="not managed"):
        ensure_all(_ctx(clients))


def test_ingress_follows_global_flag_and_spec() -> None:
    clients = make_clients()
    options = Options(enable_user_ingress=True)

    assert ensure_all(_ctx(clients, options=options))["Ingress"] == CREATED
    disabled = {"image": "codercom/code-server:4", "ingress": False}
    assert ensure_all(_ctx(clients, spec=disabled, options=options))["Ingress"] == DELETED
    assert clients.networking.get("ingress", "dev", "alice") is None  # type: ignore[attr-defined]


def test_missing_tls_source_secret_is_transient() -> None:
    clients = make_clients(with_tls_secret=False)

    with pytest.raises(TransientError, match=TLS_SECRET):
        ensure_all(_ctx(clients))


def test_user_provided_tls_secret_is_left_alone() -> None:
    clients = make_clients()
    clients.core.put(  # type: ignore[attr-defined]
        "secret",
        unmanaged({"metadata": {"name": TLS_SECRET, "namespace": "dev"}, "data": {"tls.crt": "b3du"}}),
    )

    assert ensure_all(_ctx(clients))["Secret"] == UNCHANGED
    assert clients.core.get("secret", "dev", TLS_SECRET)["data"] == {"tls.crt": "b3du"}  # type: ignore[attr-defined]


def test_rotated_tls_source_is_copied_again() -> None:
    clients = make_clients()
    ensure_all(_ctx(clients))
    clients.core.objects["secret"][(OPERATOR_NAMESPACE, TLS_SECRET)]["data"] = {"tls.crt": "bmV3"}  # type: ignore[attr-defined]

    assert ensure_all(_ctx(clients))["Secret"] == PATCHED
    assert clients.core.get("secret", "dev", TLS_SECRET)["data"] == {"tls.crt": "bmV3"}  # type: ignore[attr-defined]


def test_edited_tls_copy_is_restored() -> None:
    clients = make_clients()
    ensure_all(_ctx(clients))
    clients.core.objects["secret"][("dev", TLS_SECRET)]["data"] = {"tls.crt": "ZWRpdGVk"}  # type: ignore[attr-defined]

    assert ensure_all(_ctx(clients))["Secret"] == PATCHED
    assert clients.core.get("secret", "dev", TLS_SECRET)["data"] == {"tls.crt": "Y2VydA==", "tls.key": "a2V5"}  # type: ignore[attr-defined]


def test_lxd_runtime_creates_instance_and_endpoints() -> None:
    clients = make_clients()
    lxd = FakeLXDClient(address="10.20.0.5")
    ctx = _ctx(clients, spec={"image": "ubuntu-code-server", "runtime": "lxd"}, lxd=lxd)

    outcomes = ensure_all(ctx)

    assert outcomes["LXDInstance"] == CREATED
    assert outcomes["Deployment"] == ABSENT
    assert outcomes["Endpoints"] == CREATED
    assert lxd.calls == [("create", INSTANCE), ("start", INSTANCE)]
    assert lxd.instances[INSTANCE]["config"][LXD_IMAGE_KEY] == "ubuntu-code-server"
    assert ctx.workload_available is True
    assert ctx.lxd_instance == INSTANCE
    assert ctx.probe_url == "http://10.20.0.5:8080/active"
    assert "selector" not in clients.core.get("service", "dev", "alice")["spec"]  # type: ignore[attr-defined]
    endpoints = clients.core.get("endpoints", "dev", "alice")  # type: ignore[attr-defined]
    assert endpoints["subsets"][0]["addresses"] == [{"ip": "10.20.0.5"}]


def test_lxd_instance_without_address_leaves_endpoints_pending() -> None:
    clients = make_clients()
    lxd = FakeLXDClient(address=None)
    ctx = _ctx(clients, spec={"image": "ubuntu-code-server", "runtime": "lxd"}, lxd=lxd)

    outcomes = ensure_all(ctx)

    assert outcomes["Endpoints"] == "pending"
    assert ctx.workload_available is False
    assert ctx.probe_url is None


def test_lxd_config_change_is_patched_in_place() -> None:
    clients = make_clients()
    lxd = FakeLXDClient()
    spec = {"image": "ubuntu-code-server", "runtime": "lxd"}
    ensure_all(_ctx(clients, spec=spec, lxd=lxd))
    lxd.calls.clear()

    changed = {**spec, "envs": [{"name": "TZ", "value": "UTC"}]}
    outcomes = ensure_all(_ctx(clients, spec=changed, lxd=lxd))

    assert outcomes["LXDInstance"] == PATCHED
    assert lxd.calls == [("update", INSTANCE)]
    assert lxd.instances[INSTANCE]["config"]["environment.TZ"] == "UTC"


def test_lxd_image_change_rebuilds_instance() -> None:
    clients = make_clients()
    lxd = FakeLXDClient()
    ensure_all(_ctx(clients, spec={"image": "image-a", "runtime": "lxd"}, lxd=lxd))
    first_hash = lxd.instances[INSTANCE]["config"][LXD_SPEC_HASH_KEY]
    lxd.calls.clear()

    outcomes = ensure_all(_ctx(clients, spec={"image": "image-b", "runtime": "lxd"}, lxd=lxd))

    assert outcomes["LXDInstance"] == CREATED
    assert lxd.calls == [
        ("delete", INSTANCE),
        ("create", INSTANCE),
        ("start", INSTANCE),
    ]
    assert lxd.instances[INSTANCE]["config"][LXD_SPEC_HASH_KEY] != first_hash


def test_switching_to_kubernetes_runtime_removes_leftover_instance() -> None:
    clients = make_clients()
    lxd = FakeLXDClient()
    ensure_all(_ctx(clients, spec={"image": "image-a", "runtime": "lxd"}, lxd=lxd))

    outcomes = ensure_all(
        _ctx(clients, spec={"image": "image-a"}, lxd=lxd, status={"lxdInstance": INSTANCE})
    )

    assert outcomes["LXDInstance"] == DELETED
    assert outcomes["Deployment"] == CREATED
    assert lxd.instances == {}


def test_lxd_runtime_without_backend_is_transient() -> None:
    clients = make_clients()

    with pytest.raises(TransientError, match="LXD backend"):
        ensure_all(_ctx(clients, spec={"image": "image-a", "runtime": "lxd"}))


def test_cleanup_deletes_managed_objects_and_is_idempotent() -> None:
    clients = make_clients()
    ensure_all(_ctx(clients, options=Options(enable_user_ingress=True)))

    deleted = cleanup(clients, "dev", "alice")

    assert deleted == ["Ingress/alice", "Service/alice", "Deployment/alice"]
    assert clients.apps.get("deployment", "dev", "alice") is None  # type: ignore[attr-defined]
    assert clients.core.get("secret", "dev", TLS_SECRET) is not None  # type: ignore[attr-defined]

    before = len(all_mutations(clients))
    assert cleanup(clients, "dev", "alice") == []
    assert len(all_mutations(clients)) == before


def test_cleanup_removes_lxd_instance() -> None:
    clients = make_clients()
    lxd = FakeLXDClient()
    ensure_all(_ctx(clients, spec={"image": "image-a", "runtime": "lxd"}, lxd=lxd))

    deleted = cleanup(clients, "dev", "alice", lxd_instances=[INSTANCE], lxd=lxd_factory(lxd))

    assert "Endpoints/alice" in deleted
    assert f"LXDInstance/{INSTANCE}" in deleted
    assert lxd.instances == {}


def test_cleanup_leaves_unmanaged_objects() -> None:
    clients = make_clients()
    clients.core.put(  # type: ignore[attr-defined]
        "service", unmanaged({"metadata": {"name": "alice", "namespace": "dev"}, "spec": {}})
    )

    assert cleanup(clients, "dev", "alice") == []
    assert clients.core.get("service", "dev", "alice") is not None  # type: ignore[attr-defined]
