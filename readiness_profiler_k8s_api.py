#!/usr/bin/env python3
"""
Kubernetes API side of the readiness profiler:
  1. ownership resolution   (ReplicaSet -> Deployment)
  2. readiness latency      (PodScheduled -> Ready)
  3. scale trigger          (spec.replicas += 1, conflict-aware)
  4. pod metrics            (metrics.k8s.io usage, optional)
"""

import logging
import os
from datetime import datetime, timedelta
from typing import Dict, NamedTuple, Optional, Tuple

import urllib3
from kubernetes import client, config as k8s_config
from kubernetes.client.rest import ApiException
from kubernetes.config import ConfigException

log = logging.getLogger("readiness-profiler.k8s")

# ─── Constants ────────────────────────────────────────────────
DEFAULT_KUBECONFIG = os.path.join(os.path.expanduser("~"), ".kube", "config")

SCHEDULED = "PodScheduled"
READY = "Ready"
MILESTONES = {SCHEDULED: "scheduled", READY: "ready"}

WORKLOAD_KIND = "Deployment"
CONTROLLER_KIND = "ReplicaSet"

# kind -> (AppsV1Api reader, kind of the owner to look for)
OWNER_HOPS = {
    CONTROLLER_KIND: ("read_namespaced_replica_set", WORKLOAD_KIND),
}
MAX_OWNER_DEPTH = 2

HTTP_CONFLICT = 409

# ─── Errors ───────────────────────────────────────────────────
class ProfilerError(Exception):
    """Base class for everything the profiler reports as a failure."""


class FetchError(ProfilerError):
    """Connectivity, auth or not-found against the API server."""

    def __init__(self, what: str, cause: Exception):
        self.what = what
        self.status = getattr(cause, "status", None)
        reason = getattr(cause, "reason", None) or str(cause)
        detail = f"HTTP {self.status} {reason}" if self.status else reason
        super().__init__(f"{what}: {detail}")


class SchemaError(ProfilerError):
    """An expected field is absent or has an unexpected shape."""


class AttributionUnknown(ProfilerError):
    """No owner reference of the expected kind; the owner is reported as unknown."""


class MissingMilestone(ProfilerError):
    def __init__(self, milestone: str, pod: str = ""):
        self.milestone = milestone
        where = f" on pod {pod}" if pod else ""
        super().__init__(f"missing {milestone} condition{where}")


class ScaleError(ProfilerError):
    """Scale-up could not be written (conflict retries exhausted)."""


TRANSPORT_ERRORS = (ApiException, urllib3.exceptions.HTTPError)

# ─── Clients ──────────────────────────────────────────────────
class Clients(NamedTuple):
    core: client.CoreV1Api
    apps: client.AppsV1Api
    custom: client.CustomObjectsApi


def setup_k8s(kubeconfig: Optional[str] = DEFAULT_KUBECONFIG) -> Clients:
    try:
        k8s_config.load_kube_config(config_file=kubeconfig or None)
        log.info("Loaded kubeconfig %s", kubeconfig)
    except (ConfigException, OSError) as exc:
        log.info("kubeconfig unavailable (%s); trying in-cluster config", exc)
        k8s_config.load_incluster_config()
        log.info("Loaded in-cluster config")
    return Clients(client.CoreV1Api(), client.AppsV1Api(), client.CustomObjectsApi())

# ─── Ownership ────────────────────────────────────────────────
def owner_of_kind(obj, kind: str):
    """First owner reference of exactly ``kind`` on ``obj``, or None."""
    meta = getattr(obj, "metadata", None)
    for ref in (getattr(meta, "owner_references", None) or []):
        if ref.kind == kind:
            return ref
    return None


def resolve_workload(apps: client.AppsV1Api, namespace: str, controller: str,
                     kind: str = CONTROLLER_KIND,
                     workload_kind: str = WORKLOAD_KIND,
                     max_depth: int = MAX_OWNER_DEPTH) -> str:
    """
    Walk owner references up from ``kind``/``controller`` until a
    ``workload_kind`` object is named, and return its name.

    Every hop is a fresh read. Raises FetchError when a read fails and
    AttributionUnknown when the chain ends without reaching the workload.
    """
    depth = 1
    while kind != workload_kind:
        if depth >= max_depth or kind not in OWNER_HOPS:
            raise AttributionUnknown(
                f"no {workload_kind} reachable from {kind} {namespace}/{controller}")
        reader, parent_kind = OWNER_HOPS[kind]
        try:
            obj = getattr(apps, reader)(controller, namespace)
        except TRANSPORT_ERRORS as exc:
            raise FetchError(f"reading {kind} {namespace}/{controller}", exc) from exc
        ref = owner_of_kind(obj, parent_kind)
        if ref is None:
            raise AttributionUnknown(
                f"{kind} {namespace}/{controller} has no {parent_kind} owner reference")
        kind, controller = parent_kind, ref.name
        depth += 1
    return controller

# ─── Readiness ────────────────────────────────────────────────
def milestone_times(conditions) -> Dict[str, datetime]:
    """
    Scan conditions once; for each milestone type the last entry seen wins.
    Entries without a transition time are skipped.
    """
    found = {}
    for c in conditions:
        ts = getattr(c, "last_transition_time", None)
        if c.type in MILESTONES and ts is not None:
            found[c.type] = ts
    return found


def readiness_window(pod) -> Tuple[datetime, datetime]:
    """(scheduled, ready) transition times from a pod snapshot."""
    name = pod.metadata.name
    conditions = pod.status.conditions if pod.status else None
    if conditions is None:
        raise SchemaError(f"pod {name} has no status.conditions")
    found = milestone_times(conditions)
    for ctype, label in MILESTONES.items():
        if ctype not in found:
            raise MissingMilestone(label, name)
    return found[SCHEDULED], found[READY]


def fetch_readiness_window(core: client.CoreV1Api, namespace: str, pod_name: str) -> Tuple[datetime, datetime]:
    try:
        pod = core.read_namespaced_pod(pod_name, namespace)
    except TRANSPORT_ERRORS as exc:
        raise FetchError(f"reading pod {namespace}/{pod_name}", exc) from exc
    return readiness_window(pod)


def compute_readiness_latency(core: client.CoreV1Api, namespace: str, pod_name: str) -> timedelta:
    # second resolution, may be negative
    scheduled, ready = fetch_readiness_window(core, namespace, pod_name)
    return ready - scheduled

# ─── Scale ────────────────────────────────────────────────────
def _replicas(deployment, namespace: str, name: str) -> int:
    spec = getattr(deployment, "spec", None)
    replicas = getattr(spec, "replicas", None)
    if isinstance(replicas, bool) or not isinstance(replicas, int):
        raise SchemaError(
            f"deployment {namespace}/{name} has no integral spec.replicas (got {replicas!r})")
    return replicas


def scale_up(apps: client.AppsV1Api, namespace: str, name: str, max_attempts: int = 3) -> int:
    """
    Read the deployment, add one replica and replace it. The read carries
    metadata.resource_version, so a concurrent writer makes the replace
    fail with 409; that refetches and retries up to ``max_attempts`` times.
    Returns the replica count that was written.
    """
    attempts = max(1, max_attempts)
    for attempt in range(1, attempts + 1):
        try:
            deployment = apps.read_namespaced_deployment(name, namespace)
        except TRANSPORT_ERRORS as exc:
            raise FetchError(f"reading deployment {namespace}/{name}", exc) from exc

        replicas = _replicas(deployment, namespace, name) + 1
        deployment.spec.replicas = replicas
        try:
            apps.replace_namespaced_deployment(name, namespace, deployment)
        except ApiException as exc:
            if exc.status != HTTP_CONFLICT:
                raise FetchError(f"updating deployment {namespace}/{name}", exc) from exc
            log.warning("conflict scaling %s/%s (attempt %d/%d); refetching",
                        namespace, name, attempt, attempts)
            continue
        except urllib3.exceptions.HTTPError as exc:
            raise FetchError(f"updating deployment {namespace}/{name}", exc) from exc
        return replicas

    raise ScaleError(
        f"deployment {namespace}/{name}: replica update conflicted on all {attempts} attempt(s)")

# ─── Metrics ──────────────────────────────────────────────────
def list_pod_metrics(custom: client.CustomObjectsApi, namespace: str) -> Dict[str, Dict[str, dict]]:
    """pod name -> container name -> {"cpu": ..., "memory": ...} from metrics-server."""
    try:
        resp = custom.list_namespaced_custom_object(
            group="metrics.k8s.io", version="v1beta1",
            namespace=namespace, plural="pods")
    except TRANSPORT_ERRORS as exc:
        raise FetchError(f"listing pod metrics in {namespace}", exc) from exc

    usage = {}
    for item in resp.get("items") or []:
        pod = (item.get("metadata") or {}).get("name")
        if not pod:
            continue
        usage[pod] = {
            cs.get("name", "?"): dict(cs.get("usage") or {})
            for cs in item.get("containers") or []
        }
    return usage
