#!/usr/bin/python
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT

"""Self-contained Kubernetes cluster metadata collector for Ansible.

Lists ~20 resource kinds from a Kubernetes cluster via kubeconfig, keeps only
an allowlist of non-sensitive fields per kind, and writes one timestamped JSON
report with inventory, workload configuration and derived utilization and
coverage statistics. The same file runs standalone as a command-line tool.

All API calls are read-only (list/get). Zero writes to the cluster. No secret
values, environment variables or volume mounts are ever collected.
"""

from __future__ import annotations

DOCUMENTATION = r"""
---
module: cluster_metadata_collect
short_description: Collect non-sensitive Kubernetes cluster metadata into a JSON file
version_added: "1.0.0"
description:
  - Connects to a Kubernetes cluster via kubeconfig and lists nodes, workloads,
    autoscaling and scheduling configuration, networking, storage and events.
  - Every object is reduced to a fixed allowlist of fields. Labels are kept
    only for well-known Kubernetes prefixes.
  - Derives capacity totals, pod utilization and configuration coverage
    percentages, and classifies recent events.
  - Writes C(cluster-metadata-YYYYMMDD-HHMMSS.json) into O(dest).
  - Completely read-only towards the cluster.
options:
  kubeconfig:
    description: Path to the kubeconfig file. Defaults to C(KUBECONFIG) or ~/.kube/config.
    type: path
  context:
    description: Kubeconfig context to use. Defaults to current context.
    type: str
  dest:
    description: Directory the report file is written to.
    type: path
    default: .
requirements:
  - kubernetes (Python package, same requirement as kubernetes.core collection)
author:
  - cluster-metadata contributors
"""

EXAMPLES = r"""
- name: Collect metadata from the current context
  cluster_metadata_collect:
  register: metadata

- name: Collect metadata from a specific cluster into /tmp
  cluster_metadata_collect:
    kubeconfig: /etc/kubernetes/admin.conf
    context: prod-cluster
    dest: /tmp
  register: metadata

- name: Fetch the report back to the control node
  ansible.builtin.fetch:
    src: "{{ metadata.path }}"
    dest: reports/
    flat: true
"""

RETURN = r"""
path:
  description: Path of the written JSON report.
  type: str
  returned: always
  sample: ./cluster-metadata-20240101-120000.json
cluster_summary:
  description: The cluster_summary section of the report.
  type: dict
  returned: always
  sample:
    node_count: 3
    total_pods: 42
    running_pods: 40
    hpa_coverage_percent: 25
report_text:
  description: Human-readable digest of the report.
  type: str
  returned: always
"""

import functools
import json
import logging
import math
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger("cluster_metadata_collect")

FIELD_MAP_VERSION = 1
OUTPUT_NAME_FORMAT = "cluster-metadata-%Y%m%d-%H%M%S.json"

REPORT_KEYS = (
    "collection_timestamp",
    "cluster_info",
    "nodes",
    "workloads",
    "performance_configs",
    "cluster_events",
    "networking",
    "storage",
    "metrics",
    "resource_usage",
    "cluster_summary",
)


# =====================================================================
# Models
# =====================================================================

class PreflightError(RuntimeError):
    """The cluster cannot be reached or the client cannot be configured."""


@dataclass
class CollectionResult:
    kind: str
    items: list[Any] = field(default_factory=list)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class ReportDocument:
    """Report sections keyed by the fixed top-level key set.

    Each key is written once per run; unwritten keys serialise empty.
    """

    sections: dict[str, Any] = field(default_factory=dict)

    def set_section(self, key: str, value: Any) -> None:
        if key not in REPORT_KEYS:
            raise ValueError(f"unknown report section: {key}")
        if key in self.sections:
            raise ValueError(f"report section already written: {key}")
        self.sections[key] = value

    def __getitem__(self, key: str) -> Any:
        return self.sections[key]

    def to_dict(self) -> dict[str, Any]:
        return {
            key: self.sections.get(key, "" if key == "collection_timestamp" else {})
            for key in REPORT_KEYS
        }


# =====================================================================
# Helpers
# =====================================================================

def _parse_cpu(val: str | int | float) -> float:
    s = str(val)
    if s.endswith("m"):
        return float(s[:-1]) / 1000
    if s.endswith("u"):
        return float(s[:-1]) / 1_000_000
    if s.endswith("n"):
        return float(s[:-1]) / 1_000_000_000
    return float(s)


def _parse_memory(val: str | int | float) -> float:
    s = str(val)
    suffixes = {
        "Ki": 1024, "Mi": 1024**2, "Gi": 1024**3, "Ti": 1024**4, "Pi": 1024**5, "Ei": 1024**6,
        "K": 1000, "M": 1000**2, "G": 1000**3, "T": 1000**4, "P": 1000**5, "E": 1000**6,
        "k": 1000, "m": 0.001,
    }
    for suffix, multiplier in sorted(suffixes.items(), key=lambda x: -len(x[0])):
        if s.endswith(suffix):
            return float(s[: -len(suffix)]) * multiplier
    return float(s)


def _fmt_memory(bytes_val: float) -> str:
    if bytes_val >= 1024**3:
        return f"{bytes_val / 1024**3:.1f}Gi"
    if bytes_val >= 1024**2:
        return f"{bytes_val / 1024**2:.0f}Mi"
    return f"{bytes_val / 1024:.0f}Ki"


def parse_cpu_cores(val: Any) -> float:
    """CPU quantity in whole cores; unparseable or empty values count as 0."""
    if val in (None, ""):
        return 0.0
    try:
        return _parse_cpu(val)
    except ValueError:
        return 0.0


def parse_memory_ki(val: Any) -> float:
    """Memory quantity in Ki; ``"1000Ki"`` stays 1000, bare numbers are bytes."""
    if val in (None, ""):
        return 0.0
    s = str(val)
    try:
        if s.endswith("Ki"):
            return float(s[:-2])
        return _parse_memory(s) / 1024
    except ValueError:
        return 0.0


def _parse_count(val: Any) -> int:
    if val in (None, ""):
        return 0
    try:
        return int(float(str(val)))
    except ValueError:
        return 0


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def percent(numerator: float, denominator: float) -> int:
    """Rounded percentage; a zero denominator yields 0 rather than an error."""
    if not denominator:
        return 0
    return round_half_up(numerator / denominator * 100)


def _number(value: float) -> int | float:
    value = round(value, 3)
    return int(value) if float(value).is_integer() else value


def _ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@functools.lru_cache(maxsize=None)
def _serializer():
    from kubernetes.client import ApiClient
    return ApiClient()


def _plain(obj: Any) -> Any:
    """Kubernetes model objects to JSON-ready dicts with API (camelCase) keys."""
    if obj is None:
        return None
    return _serializer().sanitize_for_serialization(obj)


# =====================================================================
# Label Filtering
# =====================================================================

NODE_LABEL_PREFIXES = frozenset({
    "kubernetes.io",
    "node.kubernetes.io",
    "beta.kubernetes.io",
    "topology.kubernetes.io",
    "node-role.kubernetes.io",
    "failure-domain.beta.kubernetes.io",
})
WORKLOAD_LABEL_PREFIXES = NODE_LABEL_PREFIXES | {"app.kubernetes.io", "helm.sh"}


def filter_labels(labels: dict[str, str] | None, prefixes: frozenset[str] = NODE_LABEL_PREFIXES) -> dict[str, str]:
    """Keep only labels whose key prefix (before ``/``) is a known-safe namespace."""
    kept = {}
    for key, value in (labels or {}).items():
        prefix, sep, _ = key.partition("/")
        if sep and prefix in prefixes:
            kept[key] = value
    return kept


# =====================================================================
# Projections (field map version 1)
# =====================================================================

def _meta(obj, namespaced: bool = True, labels: frozenset[str] | None = WORKLOAD_LABEL_PREFIXES) -> dict[str, Any]:
    meta = obj.metadata
    record: dict[str, Any] = {"name": meta.name if meta else None}
    if namespaced:
        record["namespace"] = meta.namespace if meta else None
    record["creation_timestamp"] = _ts(meta.creation_timestamp) if meta else None
    if labels is not None:
        record["labels"] = filter_labels(meta.labels if meta else None, labels)
    return record


def _project_containers(containers) -> list[dict[str, Any]]:
    return [
        {
            "name": c.name,
            "image": c.image,
            "resources": _plain(c.resources) or {},
            "ports": _plain(c.ports) or [],
            "has_liveness_probe": c.liveness_probe is not None,
            "has_readiness_probe": c.readiness_probe is not None,
        }
        for c in containers or []
    ]


def _affinity_types(affinity) -> list[str]:
    if affinity is None:
        return []
    kinds = (
        ("node_affinity", "nodeAffinity"),
        ("pod_affinity", "podAffinity"),
        ("pod_anti_affinity", "podAntiAffinity"),
    )
    return [name for attr, name in kinds if getattr(affinity, attr, None)]


def _project_pod_template(template) -> dict[str, Any]:
    spec = template.spec if template else None
    if spec is None:
        return {"containers": [], "affinity_types": [], "topology_spread_constraints": [], "priority_class_name": None}
    return {
        "containers": _project_containers(spec.containers),
        "affinity_types": _affinity_types(spec.affinity),
        "topology_spread_constraints": [
            {"max_skew": t.max_skew, "topology_key": t.topology_key, "when_unsatisfiable": t.when_unsatisfiable}
            for t in spec.topology_spread_constraints or []
        ],
        "priority_class_name": spec.priority_class_name,
    }


def project_node(node) -> dict[str, Any]:
    record = _meta(node, namespaced=False, labels=NODE_LABEL_PREFIXES)
    status = node.status
    spec = node.spec
    record.update({
        "capacity": dict(status.capacity or {}) if status else {},
        "allocatable": dict(status.allocatable or {}) if status else {},
        "node_info": _plain(status.node_info) if status else None,
        "conditions": [
            {"type": c.type, "status": c.status, "reason": c.reason}
            for c in (status.conditions or [] if status else [])
        ],
        "addresses": [
            {"type": a.type, "address": a.address}
            for a in (status.addresses or [] if status else [])
        ],
        "taints": [
            {"key": t.key, "value": t.value, "effect": t.effect}
            for t in (spec.taints or [] if spec else [])
        ],
        "unschedulable": bool(spec.unschedulable) if spec else False,
    })
    return record


def project_pod(pod) -> dict[str, Any]:
    record = _meta(pod)
    spec, status = pod.spec, pod.status
    record.update({
        "node_name": spec.node_name if spec else None,
        "phase": status.phase if status else None,
        "restart_policy": spec.restart_policy if spec else None,
        "qos_class": status.qos_class if status else None,
        "priority_class_name": spec.priority_class_name if spec else None,
        "containers": _project_containers(spec.containers if spec else None),
        "conditions": [
            {"type": c.type, "status": c.status}
            for c in (status.conditions or [] if status else [])
        ],
    })
    return record


def project_deployment(dep) -> dict[str, Any]:
    record = _meta(dep)
    spec, status = dep.spec, dep.status
    record.update({
        "replicas": spec.replicas if spec else None,
        "ready_replicas": status.ready_replicas if status else None,
        "available_replicas": status.available_replicas if status else None,
        "strategy": _plain(spec.strategy) if spec else None,
        "pod_template": _project_pod_template(spec.template if spec else None),
    })
    return record


def project_statefulset(sts) -> dict[str, Any]:
    record = _meta(sts)
    spec, status = sts.spec, sts.status
    record.update({
        "replicas": spec.replicas if spec else None,
        "ready_replicas": status.ready_replicas if status else None,
        "service_name": spec.service_name if spec else None,
        "pod_template": _project_pod_template(spec.template if spec else None),
    })
    return record


def project_daemonset(ds) -> dict[str, Any]:
    record = _meta(ds)
    spec, status = ds.spec, ds.status
    record.update({
        "desired_number_scheduled": status.desired_number_scheduled if status else None,
        "current_number_scheduled": status.current_number_scheduled if status else None,
        "number_ready": status.number_ready if status else None,
        "pod_template": _project_pod_template(spec.template if spec else None),
    })
    return record


def project_job(job) -> dict[str, Any]:
    record = _meta(job)
    spec, status = job.spec, job.status
    record.update({
        "completions": spec.completions if spec else None,
        "parallelism": spec.parallelism if spec else None,
        "backoff_limit": spec.backoff_limit if spec else None,
        "active": status.active if status else None,
        "succeeded": status.succeeded if status else None,
        "failed": status.failed if status else None,
        "start_time": _ts(status.start_time) if status else None,
        "completion_time": _ts(status.completion_time) if status else None,
    })
    return record


def project_cronjob(cj) -> dict[str, Any]:
    record = _meta(cj)
    spec, status = cj.spec, cj.status
    record.update({
        "schedule": spec.schedule if spec else None,
        "suspend": spec.suspend if spec else None,
        "concurrency_policy": spec.concurrency_policy if spec else None,
        "successful_jobs_history_limit": spec.successful_jobs_history_limit if spec else None,
        "failed_jobs_history_limit": spec.failed_jobs_history_limit if spec else None,
        "last_schedule_time": _ts(status.last_schedule_time) if status else None,
    })
    return record


def project_service(svc) -> dict[str, Any]:
    record = _meta(svc, labels=None)
    del record["creation_timestamp"]
    spec = svc.spec
    record.update({
        "type": spec.type if spec else None,
        "cluster_ip": spec.cluster_ip if spec else None,
        "ports": _plain(spec.ports) if spec else None,
        "selector": dict(spec.selector) if spec and spec.selector else None,
    })
    return record


def project_ingress(ing) -> dict[str, Any]:
    record = _meta(ing, labels=None)
    spec = ing.spec
    record.update({
        "ingress_class_name": spec.ingress_class_name if spec else None,
        "rules": _plain(spec.rules) if spec else None,
    })
    return record


def project_network_policy(np_) -> dict[str, Any]:
    record = _meta(np_, labels=None)
    spec = np_.spec
    record.update({
        "pod_selector": _plain(spec.pod_selector) if spec else None,
        "policy_types": list(spec.policy_types or []) if spec else [],
        "ingress_rule_count": len(spec.ingress or []) if spec else 0,
        "egress_rule_count": len(spec.egress or []) if spec else 0,
    })
    return record


def project_persistent_volume(pv) -> dict[str, Any]:
    spec, status = pv.spec, pv.status
    return {
        "name": pv.metadata.name if pv.metadata else None,
        "capacity": dict(spec.capacity or {}) if spec else {},
        "access_modes": list(spec.access_modes or []) if spec else [],
        "reclaim_policy": spec.persistent_volume_reclaim_policy if spec else None,
        "status": status.phase if status else None,
        "storage_class": spec.storage_class_name if spec else None,
    }


def project_persistent_volume_claim(pvc) -> dict[str, Any]:
    spec, status = pvc.spec, pvc.status
    return {
        "name": pvc.metadata.name if pvc.metadata else None,
        "namespace": pvc.metadata.namespace if pvc.metadata else None,
        "status": status.phase if status else None,
        "capacity": dict(status.capacity or {}) if status else {},
        "access_modes": list(spec.access_modes or []) if spec else [],
        "storage_class": spec.storage_class_name if spec else None,
        "volume_name": spec.volume_name if spec else None,
    }


def project_storage_class(sc) -> dict[str, Any]:
    return {
        "name": sc.metadata.name if sc.metadata else None,
        "provisioner": sc.provisioner,
        "reclaim_policy": sc.reclaim_policy,
        "volume_binding_mode": sc.volume_binding_mode,
        "allow_volume_expansion": sc.allow_volume_expansion,
    }


def project_horizontal_pod_autoscaler(hpa) -> dict[str, Any]:
    record = _meta(hpa, labels=None)
    spec, status = hpa.spec, hpa.status
    ref = spec.scale_target_ref if spec else None
    record.update({
        "scale_target_ref": {"kind": ref.kind, "name": ref.name} if ref else None,
        "min_replicas": spec.min_replicas if spec else None,
        "max_replicas": spec.max_replicas if spec else None,
        "current_replicas": status.current_replicas if status else None,
        "desired_replicas": status.desired_replicas if status else None,
        "metric_types": [m.type for m in (spec.metrics or [] if spec else [])],
    })
    return record


def project_pod_disruption_budget(pdb) -> dict[str, Any]:
    record = _meta(pdb, labels=None)
    spec, status = pdb.spec, pdb.status
    record.update({
        "min_available": spec.min_available if spec else None,
        "max_unavailable": spec.max_unavailable if spec else None,
        "selector": _plain(spec.selector) if spec else None,
        "current_healthy": status.current_healthy if status else None,
        "desired_healthy": status.desired_healthy if status else None,
        "disruptions_allowed": status.disruptions_allowed if status else None,
    })
    return record


def project_priority_class(pc) -> dict[str, Any]:
    return {
        "name": pc.metadata.name if pc.metadata else None,
        "value": pc.value,
        "global_default": bool(pc.global_default),
        "preemption_policy": pc.preemption_policy,
        "description": pc.description,
    }


def project_resource_quota(quota) -> dict[str, Any]:
    record = _meta(quota, labels=None)
    del record["creation_timestamp"]
    status = quota.status
    hard = (status.hard if status else None) or (quota.spec.hard if quota.spec else None)
    record.update({
        "hard": dict(hard or {}),
        "used": dict(status.used or {}) if status else {},
    })
    return record


def project_limit_range(lr) -> dict[str, Any]:
    record = _meta(lr, labels=None)
    del record["creation_timestamp"]
    record["limits"] = [
        {
            "type": limit.type,
            "default": dict(limit.default or {}),
            "default_request": dict(limit.default_request or {}),
            "max": dict(limit.max or {}),
            "min": dict(limit.min or {}),
        }
        for limit in (lr.spec.limits or [] if lr.spec else [])
    ]
    return record


def project_event(event) -> dict[str, Any]:
    obj = event.involved_object
    meta = event.metadata
    last = event.last_timestamp or event.event_time or (meta.creation_timestamp if meta else None)
    return {
        "namespace": (meta.namespace if meta else None) or (obj.namespace if obj else None),
        "involved_object": {"kind": obj.kind, "name": obj.name} if obj else None,
        "type": event.type,
        "reason": event.reason,
        "count": event.count or 1,
        "first_timestamp": _ts(event.first_timestamp),
        "last_timestamp": _ts(last),
        "message": (event.message or "")[:200],
    }


PROJECTIONS = {
    "nodes": project_node,
    "pods": project_pod,
    "deployments": project_deployment,
    "statefulsets": project_statefulset,
    "daemonsets": project_daemonset,
    "jobs": project_job,
    "cronjobs": project_cronjob,
    "services": project_service,
    "ingresses": project_ingress,
    "network_policies": project_network_policy,
    "persistent_volumes": project_persistent_volume,
    "persistent_volume_claims": project_persistent_volume_claim,
    "storage_classes": project_storage_class,
    "horizontal_pod_autoscalers": project_horizontal_pod_autoscaler,
    "pod_disruption_budgets": project_pod_disruption_budget,
    "priority_classes": project_priority_class,
    "resource_quotas": project_resource_quota,
    "limit_ranges": project_limit_range,
    "events": project_event,
}


# =====================================================================
# Connectivity Check
# =====================================================================

def load_api_client(kubeconfig: str | None = None, context: str | None = None):
    """Load kubeconfig (or in-cluster config) and return an ApiClient."""
    try:
        from kubernetes import client, config
        from kubernetes.config.config_exception import ConfigException
    except ImportError as exc:
        raise PreflightError(
            "The 'kubernetes' Python package is required. Install with: pip install kubernetes"
        ) from exc

    try:
        try:
            config.load_kube_config(config_file=kubeconfig, context=context)
        except ConfigException:
            config.load_incluster_config()
    except Exception as exc:
        raise PreflightError(f"Failed to load Kubernetes configuration: {exc}") from exc
    return client.ApiClient()


def check_connectivity(api_client):
    """Return the server VersionInfo, or raise PreflightError if unreachable."""
    from kubernetes.client import VersionApi

    try:
        return VersionApi(api_client).get_code()
    except Exception as exc:
        raise PreflightError(f"Cannot connect to Kubernetes cluster: {exc}") from exc


def describe_cluster(api_client, version_info, kubeconfig: str | None = None, context: str | None = None) -> dict[str, Any]:
    from kubernetes import config

    try:
        contexts, active_ctx = config.list_kube_config_contexts(config_file=kubeconfig)
        if context:
            active_ctx = next((c for c in contexts if c.get("name") == context), active_ctx)
        cluster_name = active_ctx.get("context", {}).get("cluster", "unknown")
        context_name = active_ctx.get("name", "unknown")
    except Exception:
        cluster_name = "in-cluster"
        context_name = context or "in-cluster"

    return {
        "context": context_name,
        "cluster": cluster_name,
        "kubernetes_version": getattr(version_info, "git_version", None) or "unknown",
        "platform": getattr(version_info, "platform", None) or "unknown",
        "cluster_endpoints": api_client.configuration.host,
        "field_map_version": FIELD_MAP_VERSION,
    }


# =====================================================================
# Resource Collector
# =====================================================================

def _safe_list(kind: str, func: Any, **kwargs: Any) -> CollectionResult:
    try:
        result = func(**kwargs)
    except Exception as exc:
        logger.debug("Listing %s failed: %s", kind, exc)
        return CollectionResult(kind=kind, error=str(exc))
    items = result.items if hasattr(result, "items") else []
    return CollectionResult(kind=kind, items=list(items or []))


def fetch_collections(api_client) -> dict[str, CollectionResult]:
    """List every collected resource kind, one blocking call at a time."""
    from kubernetes.client import (
        AppsV1Api, BatchV1Api, CoreV1Api, NetworkingV1Api,
        SchedulingV1Api, StorageV1Api,
    )

    core = CoreV1Api(api_client)
    apps = AppsV1Api(api_client)
    batch = BatchV1Api(api_client)
    net = NetworkingV1Api(api_client)
    storage = StorageV1Api(api_client)
    scheduling = SchedulingV1Api(api_client)

    tasks: list[tuple[str, Any]] = [
        ("namespaces", core.list_namespace),
        ("nodes", core.list_node),
        ("pods", core.list_pod_for_all_namespaces),
        ("deployments", apps.list_deployment_for_all_namespaces),
        ("statefulsets", apps.list_stateful_set_for_all_namespaces),
        ("daemonsets", apps.list_daemon_set_for_all_namespaces),
        ("jobs", batch.list_job_for_all_namespaces),
        ("cronjobs", batch.list_cron_job_for_all_namespaces),
        ("services", core.list_service_for_all_namespaces),
        ("ingresses", net.list_ingress_for_all_namespaces),
        ("network_policies", net.list_network_policy_for_all_namespaces),
        ("persistent_volumes", core.list_persistent_volume),
        ("persistent_volume_claims", core.list_persistent_volume_claim_for_all_namespaces),
        ("storage_classes", storage.list_storage_class),
    ]

    # Optional APIs
    try:
        from kubernetes.client import AutoscalingV2Api, PolicyV1Api
        autoscaling = AutoscalingV2Api(api_client)
        policy = PolicyV1Api(api_client)
        tasks.extend([
            ("horizontal_pod_autoscalers", autoscaling.list_horizontal_pod_autoscaler_for_all_namespaces),
            ("pod_disruption_budgets", policy.list_pod_disruption_budget_for_all_namespaces),
        ])
    except ImportError:
        logger.debug("autoscaling/v2 or policy/v1 not available in this kubernetes client")

    tasks.extend([
        ("priority_classes", scheduling.list_priority_class),
        ("resource_quotas", core.list_resource_quota_for_all_namespaces),
        ("limit_ranges", core.list_limit_range_for_all_namespaces),
        ("events", core.list_event_for_all_namespaces),
    ])

    collections: dict[str, CollectionResult] = {}
    for kind, api_fn in tasks:
        logger.info("Collecting %s", kind.replace("_", " "))
        collections[kind] = _safe_list(kind, api_fn)

    failed = [c.kind for c in collections.values() if not c.ok]
    if failed:
        logger.info("%d resource kinds unavailable, reported as empty: %s", len(failed), ", ".join(failed))
    return collections


def fetch_resource_metrics(api_client) -> dict[str, list[dict[str, Any]]] | None:
    """Best-effort metrics.k8s.io read; None when metrics-server is absent."""
    from kubernetes.client import CustomObjectsApi

    custom = CustomObjectsApi(api_client)
    try:
        nm = custom.list_cluster_custom_object("metrics.k8s.io", "v1beta1", "nodes")
    except Exception as exc:
        logger.debug("Node metrics unavailable: %s", exc)
        return None

    try:
        pm = custom.list_cluster_custom_object("metrics.k8s.io", "v1beta1", "pods")
        pod_items = pm.get("items", [])
    except Exception as exc:
        logger.debug("Pod metrics unavailable: %s", exc)
        pod_items = []

    return {"nodes": nm.get("items", []), "pods": pod_items}


# =====================================================================
# Derived Metrics
# =====================================================================

POD_METRICS_LIMIT = 50
RECENT_EVENTS_LIMIT = 100

OOM_REASONS = {"OOMKilling", "OOMKilled", "SystemOOM"}
SCHEDULING_REASONS = {"FailedScheduling"}
IMAGE_PULL_REASONS = {"ErrImagePull", "ImagePullBackOff", "ErrImageNeverPull", "InspectFailed"}
GENERIC_FAILURE_REASONS = {"Failed", "BackOff"}

EVENT_CATEGORIES = ("oom_kills", "scheduling_failures", "image_pull_failures", "node_events")


def _event_categories(event: dict[str, Any]) -> list[str]:
    reason = event.get("reason") or ""
    message = (event.get("message") or "").lower()
    obj = event.get("involved_object") or {}
    matched = []
    if reason in OOM_REASONS or "oomkill" in message or "out of memory" in message:
        matched.append("oom_kills")
    if reason in SCHEDULING_REASONS:
        matched.append("scheduling_failures")
    if reason in IMAGE_PULL_REASONS or (
        reason in GENERIC_FAILURE_REASONS and "image" in message and "pull" in message
    ):
        matched.append("image_pull_failures")
    if obj.get("kind") == "Node":
        matched.append("node_events")
    return matched


def classify_events(events: list[dict[str, Any]]) -> dict[str, int]:
    """Sum event occurrences per fixed category; one event may hit several."""
    counts = dict.fromkeys(EVENT_CATEGORIES, 0)
    for event in events:
        for category in _event_categories(event):
            counts[category] += event.get("count") or 1
    return counts


def _sum_quantities(records: list[dict[str, Any]], group: str, resource: str, parser) -> int | float:
    return _number(sum(parser((r.get(group) or {}).get(resource)) for r in records))


def compute_resource_usage(document: ReportDocument) -> dict[str, Any]:
    nodes = document["nodes"]["details"]
    pods = document["workloads"]["pods"]["details"]

    def _totals(group: str) -> dict[str, Any]:
        return {
            "cpu_cores": _sum_quantities(nodes, group, "cpu", parse_cpu_cores),
            "memory_ki": _sum_quantities(nodes, group, "memory", parse_memory_ki),
            "max_pods": sum(_parse_count((n.get(group) or {}).get("pods")) for n in nodes),
        }

    capacity = _totals("capacity")
    allocatable = _totals("allocatable")
    running = sum(1 for p in pods if p.get("phase") == "Running")
    pending = sum(1 for p in pods if p.get("phase") == "Pending")
    return {
        "cluster_capacity": capacity,
        "allocatable_resources": allocatable,
        "current_usage": {
            "running_pods": running,
            "pending_pods": pending,
            # Relative to allocatable pod slots, not to scheduled pods.
            "pod_utilization_percent": percent(running, allocatable["max_pods"]),
        },
    }


def _has_limits(containers: list[dict[str, Any]]) -> bool:
    return bool(containers) and all((c.get("resources") or {}).get("limits") for c in containers)


def _has_health_checks(containers: list[dict[str, Any]]) -> bool:
    return bool(containers) and all(
        c.get("has_liveness_probe") or c.get("has_readiness_probe") for c in containers
    )


def compute_coverage(document: ReportDocument) -> dict[str, int]:
    workloads = document["workloads"]
    pods = workloads["pods"]["details"]
    deployments = workloads["deployments"]["details"]
    statefulsets = workloads["statefulsets"]["details"]
    daemonsets = workloads["daemonsets"]["details"]
    hpas = document["performance_configs"]["horizontal_pod_autoscalers"]["details"]
    quotas = document["performance_configs"]["resource_quotas"]["details"]
    namespaces = document["cluster_info"].get("namespaces", [])

    scalable = [("Deployment", d) for d in deployments] + [("StatefulSet", s) for s in statefulsets]
    targets = {
        (h.get("namespace"), h["scale_target_ref"].get("kind"), h["scale_target_ref"].get("name"))
        for h in hpas if h.get("scale_target_ref")
    }
    autoscaled = sum(1 for kind, w in scalable if (w.get("namespace"), kind, w.get("name")) in targets)

    templates = [w.get("pod_template") or {} for w in deployments + statefulsets + daemonsets]
    quota_namespaces = {q.get("namespace") for q in quotas}

    return {
        "pods_with_limits_percent": percent(
            sum(1 for p in pods if _has_limits(p.get("containers") or [])), len(pods)),
        "hpa_coverage_percent": percent(autoscaled, len(scalable)),
        "health_check_coverage_percent": percent(
            sum(1 for t in templates if _has_health_checks(t.get("containers") or [])), len(templates)),
        "topology_spread_coverage_percent": percent(
            sum(1 for t in templates if t.get("topology_spread_constraints")), len(templates)),
        "affinity_coverage_percent": percent(
            sum(1 for t in templates if t.get("affinity_types")), len(templates)),
        "quota_coverage_percent": percent(
            sum(1 for ns in namespaces if ns in quota_namespaces), len(namespaces)),
    }


def build_metrics_section(document: ReportDocument, resource_metrics: dict[str, list] | None) -> dict[str, Any]:
    if resource_metrics is None:
        return {"metrics_server_available": False, "message": "Metrics server not found"}

    allocatable = {n["name"]: n.get("allocatable") or {} for n in document["nodes"]["details"]}
    node_metrics = []
    for nm in resource_metrics.get("nodes", []):
        name = nm.get("metadata", {}).get("name", "")
        usage = nm.get("usage", {})
        cpu = parse_cpu_cores(usage.get("cpu"))
        mem_bytes = parse_memory_ki(usage.get("memory")) * 1024
        alloc = allocatable.get(name, {})
        node_metrics.append({
            "node": name,
            "cpu": f"{round_half_up(cpu * 1000)}m",
            "cpu_percent": percent(cpu, parse_cpu_cores(alloc.get("cpu"))),
            "memory": _fmt_memory(mem_bytes),
            "memory_percent": percent(mem_bytes, parse_memory_ki(alloc.get("memory")) * 1024),
        })

    pod_usage = []
    for pm in resource_metrics.get("pods", []):
        meta = pm.get("metadata", {})
        containers = pm.get("containers", [])
        cpu = sum(parse_cpu_cores(c.get("usage", {}).get("cpu")) for c in containers)
        mem_bytes = sum(parse_memory_ki(c.get("usage", {}).get("memory")) for c in containers) * 1024
        pod_usage.append((cpu, mem_bytes, meta.get("namespace", ""), meta.get("name", "")))
    pod_usage.sort(key=lambda p: p[0], reverse=True)

    return {
        "metrics_server_available": True,
        "node_metrics": node_metrics,
        "pod_metrics": [
            {"namespace": ns, "pod": name, "cpu": f"{round_half_up(cpu * 1000)}m", "memory": _fmt_memory(mem)}
            for cpu, mem, ns, name in pod_usage[:POD_METRICS_LIMIT]
        ],
    }


def build_cluster_summary(document: ReportDocument) -> dict[str, Any]:
    workloads = document["workloads"]
    perf = document["performance_configs"]
    networking = document["networking"]
    storage = document["storage"]
    usage = document["resource_usage"]
    events = document["cluster_events"]

    summary: dict[str, Any] = {
        "namespace_count": document["cluster_info"].get("namespace_count", 0),
        "node_count": document["nodes"]["count"],
        "total_pods": workloads["pods"]["count"],
        "running_pods": usage["current_usage"]["running_pods"],
        "pending_pods": usage["current_usage"]["pending_pods"],
        "deployment_count": workloads["deployments"]["count"],
        "statefulset_count": workloads["statefulsets"]["count"],
        "daemonset_count": workloads["daemonsets"]["count"],
        "job_count": workloads["jobs"]["count"],
        "cronjob_count": workloads["cronjobs"]["count"],
        "service_count": networking["services"]["count"],
        "ingress_count": networking["ingresses"]["count"],
        "network_policy_count": networking["network_policies"]["count"],
        "pv_count": storage["persistent_volumes"]["count"],
        "pvc_count": storage["persistent_volume_claims"]["count"],
        "hpa_count": perf["horizontal_pod_autoscalers"]["count"],
        "pdb_count": perf["pod_disruption_budgets"]["count"],
    }
    summary.update(compute_coverage(document))
    summary["warning_event_count"] = events["warning_events"]
    summary["event_categories"] = dict(events["categories"])
    summary["resource_utilization"] = {
        "pod_capacity_used_percent": usage["current_usage"]["pod_utilization_percent"],
        "total_cpu_cores": usage["cluster_capacity"]["cpu_cores"],
        "total_memory_gi": round_half_up(usage["cluster_capacity"]["memory_ki"] / 1024 / 1024),
    }
    return summary


# =====================================================================
# Report Accumulator
# =====================================================================

SECTION_GROUPS = {
    "workloads": ("pods", "deployments", "statefulsets", "daemonsets", "jobs", "cronjobs"),
    "performance_configs": (
        "horizontal_pod_autoscalers", "pod_disruption_budgets", "priority_classes",
        "resource_quotas", "limit_ranges",
    ),
    "networking": ("services", "ingresses", "network_policies"),
    "storage": ("persistent_volumes", "persistent_volume_claims", "storage_classes"),
}


def _project(collections: dict[str, CollectionResult], kind: str) -> list[dict[str, Any]]:
    result = collections.get(kind)
    if result is None:
        return []
    return [PROJECTIONS[kind](item) for item in result.items]


def _section(records: list[dict[str, Any]]) -> dict[str, Any]:
    return {"count": len(records), "details": records}


def _events_section(records: list[dict[str, Any]]) -> dict[str, Any]:
    warnings = [e for e in records if e.get("type") == "Warning"]
    recent = sorted(warnings, key=lambda e: e.get("last_timestamp") or "", reverse=True)[:RECENT_EVENTS_LIMIT]
    section = _section(recent)
    section.update({
        "total_events": len(records),
        "warning_events": len(warnings),
        "categories": classify_events(records),
    })
    return section


def build_report(
    collections: dict[str, CollectionResult],
    cluster_info: dict[str, Any],
    resource_metrics: dict[str, list] | None = None,
    timestamp: datetime | None = None,
) -> ReportDocument:
    """Project every collection and merge it into a fresh ReportDocument."""
    timestamp = timestamp or datetime.now(timezone.utc)
    doc = ReportDocument()

    namespaces = collections.get("namespaces")
    namespace_names = sorted(
        ns.metadata.name for ns in (namespaces.items if namespaces else []) if ns.metadata
    )

    doc.set_section("collection_timestamp", _ts(timestamp))
    doc.set_section("cluster_info", {
        **cluster_info,
        "namespace_count": len(namespace_names),
        "namespaces": namespace_names,
    })
    doc.set_section("nodes", _section(_project(collections, "nodes")))
    doc.set_section("workloads", {k: _section(_project(collections, k)) for k in SECTION_GROUPS["workloads"]})
    doc.set_section("performance_configs", {
        k: _section(_project(collections, k)) for k in SECTION_GROUPS["performance_configs"]
    })
    doc.set_section("cluster_events", _events_section(_project(collections, "events")))
    doc.set_section("networking", {k: _section(_project(collections, k)) for k in SECTION_GROUPS["networking"]})
    doc.set_section("storage", {k: _section(_project(collections, k)) for k in SECTION_GROUPS["storage"]})

    doc.set_section("metrics", build_metrics_section(doc, resource_metrics))
    doc.set_section("resource_usage", compute_resource_usage(doc))
    doc.set_section("cluster_summary", build_cluster_summary(doc))

    logger.info(
        "Report assembled: %d nodes, %d pods, %d namespaces",
        doc["nodes"]["count"], doc["workloads"]["pods"]["count"], len(namespace_names),
    )
    return doc


def collect_cluster_metadata(
    api_client, cluster_info: dict[str, Any], timestamp: datetime | None = None,
) -> ReportDocument:
    collections = fetch_collections(api_client)
    logger.info("Collecting metrics data")
    resource_metrics = fetch_resource_metrics(api_client)
    return build_report(collections, cluster_info, resource_metrics, timestamp)


def report_path(directory: str = ".", timestamp: datetime | None = None) -> str:
    timestamp = timestamp or datetime.now(timezone.utc)
    return os.path.join(directory, timestamp.astimezone(timezone.utc).strftime(OUTPUT_NAME_FORMAT))


def write_report(document: ReportDocument, path: str) -> str:
    tmp_path = f"{path}.tmp"
    try:
        with open(tmp_path, "w", encoding="utf-8") as fh:
            json.dump(document.to_dict(), fh, indent=2, default=str)
            fh.write("\n")
        os.replace(tmp_path, path)
    except Exception:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise
    return path


# =====================================================================
# Summary Renderer
# =====================================================================

def render_summary(document: ReportDocument | dict[str, Any]) -> str:
    doc = document.to_dict() if isinstance(document, ReportDocument) else document
    info = doc.get("cluster_info") or {}
    summary = doc.get("cluster_summary") or {}
    util = summary.get("resource_utilization") or {}
    metrics = doc.get("metrics") or {}

    lines = [
        "=== CLUSTER SUMMARY ===",
        f"Collection Date: {doc.get('collection_timestamp', '')}",
        f"Kubernetes Version: {info.get('kubernetes_version', 'unknown')}",
        f"Context: {info.get('context', 'unknown')}",
        f"Nodes: {summary.get('node_count', 0)}",
        f"Namespaces: {summary.get('namespace_count', 0)}",
        f"Total Pods: {summary.get('total_pods', 0)}",
        f"Running Pods: {summary.get('running_pods', 0)}",
        f"Deployments: {summary.get('deployment_count', 0)}",
        f"Services: {summary.get('service_count', 0)}",
        f"Total CPU Cores: {util.get('total_cpu_cores', 0)}",
        f"Total Memory (Gi): {util.get('total_memory_gi', 0)}",
        f"Pod Capacity Used: {util.get('pod_capacity_used_percent', 0)}%",
        f"Metrics Server: {'available' if metrics.get('metrics_server_available') else 'not found'}",
        "",
        "=== CONFIGURATION COVERAGE ===",
        f"Pods with resource limits: {summary.get('pods_with_limits_percent', 0)}%",
        f"Workloads with autoscalers: {summary.get('hpa_coverage_percent', 0)}%",
        f"Workloads with health checks: {summary.get('health_check_coverage_percent', 0)}%",
        f"Workloads with topology spread: {summary.get('topology_spread_coverage_percent', 0)}%",
        f"Workloads with affinity rules: {summary.get('affinity_coverage_percent', 0)}%",
        f"Namespaces with quotas: {summary.get('quota_coverage_percent', 0)}%",
    ]

    categories = summary.get("event_categories") or {}
    lines.append("")
    lines.append(f"=== EVENTS ({summary.get('warning_event_count', 0)} warnings) ===")
    for category in EVENT_CATEGORIES:
        lines.append(f"{category.replace('_', ' ').capitalize()}: {categories.get(category, 0)}")

    return "\n".join(lines)


# =====================================================================
# Command-line Entry Point
# =====================================================================

def cli() -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    try:
        api_client = load_api_client()
        version_info = check_connectivity(api_client)
    except PreflightError as e:
        logger.error("%s", e)
        return 1
    logger.info("Client configuration and cluster connectivity verified")

    timestamp = datetime.now(timezone.utc)
    cluster_info = describe_cluster(api_client, version_info)
    document = collect_cluster_metadata(api_client, cluster_info, timestamp)
    path = write_report(document, report_path(timestamp=timestamp))

    logger.info("Cluster metadata written to %s (%d bytes)", path, os.path.getsize(path))
    print(render_summary(document))
    return 0


# =====================================================================
# Ansible Module Entry Point
# =====================================================================

def run_module():
    from ansible.module_utils.basic import AnsibleModule

    module = AnsibleModule(
        argument_spec=dict(
            kubeconfig=dict(type="path", default=None),
            context=dict(type="str", default=None),
            dest=dict(type="path", default="."),
        ),
        supports_check_mode=True,
    )

    kubeconfig = module.params["kubeconfig"]
    context = module.params["context"]
    dest = module.params["dest"]

    if not os.path.isdir(dest):
        module.fail_json(msg=f"Destination directory does not exist: {dest}")
        return

    try:
        api_client = load_api_client(kubeconfig, context)
        version_info = check_connectivity(api_client)
    except PreflightError as e:
        module.fail_json(msg=str(e))
        return

    timestamp = datetime.now(timezone.utc)
    cluster_info = describe_cluster(api_client, version_info, kubeconfig, context)
    document = collect_cluster_metadata(api_client, cluster_info, timestamp)
    path = report_path(dest, timestamp)

    if not module.check_mode:
        try:
            write_report(document, path)
        except OSError as e:
            module.fail_json(msg=f"Failed to write report to {path}: {e}")
            return

    module.exit_json(
        changed=True,
        path=path,
        cluster_summary=document["cluster_summary"],
        report_text=render_summary(document),
    )


def main():
    run_module()


if __name__ == "__main__":
    main()
