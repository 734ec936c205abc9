"""Unit tests for per-kind projections: allowlisted fields only."""

import json

from kubernetes import client

import factories as f
from cluster_metadata_collect import (
    project_cronjob,
    project_daemonset,
    project_deployment,
    project_event,
    project_horizontal_pod_autoscaler,
    project_ingress,
    project_job,
    project_limit_range,
    project_network_policy,
    project_node,
    project_persistent_volume,
    project_persistent_volume_claim,
    project_pod,
    project_pod_disruption_budget,
    project_priority_class,
    project_service,
    project_storage_class,
)


def test_node_projection_filters_labels_and_keeps_capacity():
    n = f.node("node-1", cpu="2", memory="1000Ki",
               labels={"kubernetes.io/hostname": "foo", "my-app/custom": "bar"})
    record = project_node(n)

    assert record["name"] == "node-1"
    assert record["labels"] == {"kubernetes.io/hostname": "foo"}
    assert record["capacity"] == {"cpu": "2", "memory": "1000Ki", "pods": "110"}
    assert record["creation_timestamp"] == "2024-05-01T12:00:00Z"
    assert record["conditions"] == [{"type": "Ready", "status": "True", "reason": "KubeletReady"}]
    assert record["addresses"] == [{"type": "InternalIP", "address": "10.0.0.1"}]
    assert record["taints"][0]["effect"] == "NoSchedule"
    assert record["unschedulable"] is False


def test_pod_projection_never_carries_env_or_mounts():
    secret_env = client.V1EnvVar(name="DB_PASSWORD", value="hunter2")
    mount = client.V1VolumeMount(name="creds", mount_path="/var/run/secrets/db")
    p = f.pod("web-1", containers=[f.container(env=[secret_env], mounts=[mount], limits={"cpu": "1"})])

    record = project_pod(p)
    dumped = json.dumps(record)

    assert "hunter2" not in dumped
    assert "DB_PASSWORD" not in dumped
    assert "/var/run/secrets/db" not in dumped
    assert set(record["containers"][0]) == {
        "name", "image", "resources", "ports", "has_liveness_probe", "has_readiness_probe",
    }
    assert record["containers"][0]["resources"] == {"limits": {"cpu": "1"}}
    assert record["containers"][0]["ports"] == [{"containerPort": 8080, "protocol": "TCP"}]


def test_pod_projection_core_fields():
    record = project_pod(f.pod("web-1", phase="Pending", node_name=None,
                               labels={"app.kubernetes.io/name": "web", "secret-ish": "x"}))
    assert record["namespace"] == "default"
    assert record["phase"] == "Pending"
    assert record["node_name"] is None
    assert record["restart_policy"] == "Always"
    assert record["labels"] == {"app.kubernetes.io/name": "web"}
    assert record["conditions"] == [{"type": "Ready", "status": "False"}]


def test_deployment_projection_summarises_pod_template():
    affinity = client.V1Affinity(pod_anti_affinity=client.V1PodAntiAffinity(
        preferred_during_scheduling_ignored_during_execution=[],
        required_during_scheduling_ignored_during_execution=[
            client.V1PodAffinityTerm(topology_key="kubernetes.io/hostname"),
        ],
    ))
    spread = [client.V1TopologySpreadConstraint(
        max_skew=1, topology_key="topology.kubernetes.io/zone", when_unsatisfiable="DoNotSchedule",
    )]
    template = f.pod_template(containers=[f.container(liveness=True)], affinity=affinity, spread=spread)

    record = project_deployment(f.deployment("web", template=template))

    tpl = record["pod_template"]
    assert record["replicas"] == 2
    assert record["ready_replicas"] == 2
    assert record["strategy"] == {"type": "RollingUpdate"}
    assert tpl["affinity_types"] == ["podAntiAffinity"]
    assert tpl["topology_spread_constraints"] == [
        {"max_skew": 1, "topology_key": "topology.kubernetes.io/zone", "when_unsatisfiable": "DoNotSchedule"},
    ]
    assert tpl["containers"][0]["has_liveness_probe"] is True
    assert tpl["containers"][0]["has_readiness_probe"] is False


def test_daemonset_projection_status_counts():
    record = project_daemonset(f.daemonset("kube-proxy"))
    assert record["desired_number_scheduled"] == 3
    assert record["number_ready"] == 3
    assert record["pod_template"]["affinity_types"] == []


def test_service_projection():
    svc = client.V1Service(
        metadata=f.meta("web", "default"),
        spec=client.V1ServiceSpec(
            type="ClusterIP", cluster_ip="10.96.0.10", selector={"app": "web"},
            ports=[client.V1ServicePort(port=80, protocol="TCP")],
        ),
    )
    assert project_service(svc) == {
        "name": "web",
        "namespace": "default",
        "type": "ClusterIP",
        "cluster_ip": "10.96.0.10",
        "ports": [{"port": 80, "protocol": "TCP"}],
        "selector": {"app": "web"},
    }


def test_hpa_projection_keeps_target_reference():
    record = project_horizontal_pod_autoscaler(f.hpa("web", "Deployment", "web"))
    assert record["scale_target_ref"] == {"kind": "Deployment", "name": "web"}
    assert record["min_replicas"] == 1
    assert record["max_replicas"] == 5
    assert record["metric_types"] == []


def test_event_projection_truncates_message():
    record = project_event(f.event("BackOff", message="x" * 500, count=4))
    assert len(record["message"]) == 200
    assert record["count"] == 4
    assert record["involved_object"] == {"kind": "Pod", "name": "web-1"}
    assert record["last_timestamp"] == "2024-05-01T12:00:00Z"


# ── Batch ─────────────────────────────────────────────────────────────

def test_job_projection():
    assert project_job(f.job("nightly-export")) == {
        "name": "nightly-export",
        "namespace": "batch",
        "creation_timestamp": "2024-05-01T12:00:00Z",
        "labels": {"app.kubernetes.io/name": "nightly-export"},
        "completions": 1,
        "parallelism": 1,
        "backoff_limit": 6,
        "active": None,
        "succeeded": 1,
        "failed": None,
        "start_time": "2024-05-01T12:00:00Z",
        "completion_time": "2024-05-01T12:02:00Z",
    }


def test_job_projection_without_spec_or_status():
    record = project_job(client.V1Job(metadata=f.meta("bare", "batch")))
    assert record == {
        "name": "bare",
        "namespace": "batch",
        "creation_timestamp": "2024-05-01T12:00:00Z",
        "labels": {},
        "completions": None,
        "parallelism": None,
        "backoff_limit": None,
        "active": None,
        "succeeded": None,
        "failed": None,
        "start_time": None,
        "completion_time": None,
    }


def test_cronjob_projection():
    assert project_cronjob(f.cronjob("reports")) == {
        "name": "reports",
        "namespace": "batch",
        "creation_timestamp": "2024-05-01T12:00:00Z",
        "labels": {"helm.sh/chart": "reports-1.2.0"},
        "schedule": "*/5 * * * *",
        "suspend": False,
        "concurrency_policy": "Forbid",
        "successful_jobs_history_limit": 3,
        "failed_jobs_history_limit": 1,
        "last_schedule_time": "2024-05-01T12:00:00Z",
    }


def test_cronjob_projection_never_scheduled():
    cj = f.cronjob("reports")
    cj.status = None
    assert project_cronjob(cj)["last_schedule_time"] is None


# ── Networking ────────────────────────────────────────────────────────

def test_ingress_projection():
    assert project_ingress(f.ingress("web")) == {
        "name": "web",
        "namespace": "default",
        "creation_timestamp": "2024-05-01T12:00:00Z",
        "ingress_class_name": "nginx",
        "rules": [{
            "host": "web.example.com",
            "http": {"paths": [{
                "backend": {"service": {"name": "web", "port": {"number": 80}}},
                "path": "/",
                "pathType": "Prefix",
            }]},
        }],
    }


def test_ingress_projection_without_spec():
    record = project_ingress(client.V1Ingress(metadata=f.meta("empty", "default")))
    assert record["ingress_class_name"] is None
    assert record["rules"] is None
    assert "labels" not in record


def test_network_policy_projection_counts_rules():
    assert project_network_policy(f.network_policy("allow-web")) == {
        "name": "allow-web",
        "namespace": "default",
        "creation_timestamp": "2024-05-01T12:00:00Z",
        "pod_selector": {"matchLabels": {"app": "web"}},
        "policy_types": ["Ingress", "Egress"],
        "ingress_rule_count": 2,
        "egress_rule_count": 1,
    }


def test_network_policy_projection_without_spec():
    record = project_network_policy(client.V1NetworkPolicy(metadata=f.meta("deny", "default")))
    assert record["pod_selector"] is None
    assert record["policy_types"] == []
    assert record["ingress_rule_count"] == 0
    assert record["egress_rule_count"] == 0


# ── Storage ───────────────────────────────────────────────────────────

def test_persistent_volume_projection():
    assert project_persistent_volume(f.persistent_volume("pv-1")) == {
        "name": "pv-1",
        "capacity": {"storage": "10Gi"},
        "access_modes": ["ReadWriteOnce"],
        "reclaim_policy": "Delete",
        "status": "Bound",
        "storage_class": "standard",
    }


def test_persistent_volume_projection_without_spec_or_status():
    assert project_persistent_volume(client.V1PersistentVolume(metadata=f.meta("pv-bare"))) == {
        "name": "pv-bare",
        "capacity": {},
        "access_modes": [],
        "reclaim_policy": None,
        "status": None,
        "storage_class": None,
    }


def test_persistent_volume_claim_projection():
    assert project_persistent_volume_claim(f.persistent_volume_claim("data-db-0")) == {
        "name": "data-db-0",
        "namespace": "default",
        "status": "Bound",
        "capacity": {"storage": "10Gi"},
        "access_modes": ["ReadWriteOnce"],
        "storage_class": "standard",
        "volume_name": "pv-1",
    }


def test_persistent_volume_claim_projection_pending():
    pvc = client.V1PersistentVolumeClaim(metadata=f.meta("data-db-1", "default"))
    assert project_persistent_volume_claim(pvc) == {
        "name": "data-db-1",
        "namespace": "default",
        "status": None,
        "capacity": {},
        "access_modes": [],
        "storage_class": None,
        "volume_name": None,
    }


def test_storage_class_projection():
    assert project_storage_class(f.storage_class("gp3")) == {
        "name": "gp3",
        "provisioner": "ebs.csi.aws.com",
        "reclaim_policy": "Delete",
        "volume_binding_mode": "WaitForFirstConsumer",
        "allow_volume_expansion": True,
    }


def test_storage_class_projection_defaults():
    sc = client.V1StorageClass(metadata=f.meta("local"), provisioner="kubernetes.io/no-provisioner")
    assert project_storage_class(sc) == {
        "name": "local",
        "provisioner": "kubernetes.io/no-provisioner",
        "reclaim_policy": None,
        "volume_binding_mode": None,
        "allow_volume_expansion": None,
    }


# ── Policy and scheduling ─────────────────────────────────────────────

def test_pod_disruption_budget_projection():
    assert project_pod_disruption_budget(f.pod_disruption_budget("web")) == {
        "name": "web",
        "namespace": "default",
        "creation_timestamp": "2024-05-01T12:00:00Z",
        "min_available": 2,
        "max_unavailable": None,
        "selector": {"matchLabels": {"app": "web"}},
        "current_healthy": 3,
        "desired_healthy": 2,
        "disruptions_allowed": 1,
    }


def test_pod_disruption_budget_projection_without_spec_or_status():
    record = project_pod_disruption_budget(client.V1PodDisruptionBudget(metadata=f.meta("pdb", "default")))
    assert record == {
        "name": "pdb",
        "namespace": "default",
        "creation_timestamp": "2024-05-01T12:00:00Z",
        "min_available": None,
        "max_unavailable": None,
        "selector": None,
        "current_healthy": None,
        "desired_healthy": None,
        "disruptions_allowed": None,
    }


def test_priority_class_projection_defaults_global_flag():
    assert project_priority_class(f.priority_class("platform-critical")) == {
        "name": "platform-critical",
        "value": 1000000,
        "global_default": False,
        "preemption_policy": "PreemptLowerPriority",
        "description": "Critical platform pods",
    }


def test_limit_range_projection():
    assert project_limit_range(f.limit_range("defaults", "prod")) == {
        "name": "defaults",
        "namespace": "prod",
        "limits": [{
            "type": "Container",
            "default": {"cpu": "500m"},
            "default_request": {"cpu": "100m"},
            "max": {"memory": "2Gi"},
            "min": {},
        }],
    }


def test_limit_range_projection_without_spec():
    record = project_limit_range(client.V1LimitRange(metadata=f.meta("empty", "prod")))
    assert record == {"name": "empty", "namespace": "prod", "limits": []}
