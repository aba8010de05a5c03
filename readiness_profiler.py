#!/usr/bin/env python3
"""
Deployment scale-up readiness profiler
--------------------------------------
• Adds one replica to a Deployment (conflict-aware read/modify/replace).
• Then, depending on --mode:
    scan   list every pod in the namespace, attribute it to its Deployment
           (Pod → ReplicaSet → Deployment) and report PodScheduled→Ready latency.
    watch  follow pod events for the Deployment's label and report each phase
           change; stops on the first pod that reaches a terminal phase
           (default Succeeded) or when --timeout expires.
• Latency has second resolution: it comes from condition lastTransitionTime.

Output is one line per observation, as text or JSON (--output json).
Readiness windows are exported as OTLP spans when an endpoint is configured.

Usage:
  python readiness_profiler.py --namespace default \
    --deployment efficientdetnet-deployment --mode watch --timeout 600
"""

import argparse
import functools
import json
import logging
import os
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import closing
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, Iterator, List, Optional

from kubernetes import watch
from kubernetes.config import ConfigException

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from readiness_profiler_k8s_api import (
    CONTROLLER_KIND, DEFAULT_KUBECONFIG, AttributionUnknown, Clients, FetchError,
    MissingMilestone, ProfilerError, SchemaError, TRANSPORT_ERRORS, fetch_readiness_window,
    list_pod_metrics, owner_of_kind, readiness_window, resolve_workload,
    scale_up, setup_k8s,
)

log = logging.getLogger("readiness-profiler")

DEFAULT_LABEL_KEY = "app"
TERMINAL_PHASES = ("Succeeded",)
UNKNOWN = "unknown"

def _utc(dt: datetime) -> datetime:
    return dt.astimezone(timezone.utc) if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
def _iso(dt: Optional[datetime]) -> Optional[str]:
    return _utc(dt).isoformat() if dt else None
def _secs(td: timedelta) -> str:
    return f"{td.total_seconds():g}s"

# ────────────  Observation record  ────────────
@dataclass
class Observation:
    pod: str
    namespace: str
    phase: Optional[str]
    workload: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    ready_at: Optional[datetime] = None
    observed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    usage: Dict[str, dict] = field(default_factory=dict)
    notes: List[str] = field(default_factory=list)

    @property
    def latency(self) -> Optional[timedelta]:
        if self.scheduled_at is None or self.ready_at is None:
            return None
        return self.ready_at - self.scheduled_at

    def as_dict(self) -> dict:
        latency = self.latency
        return {
            "pod": self.pod,
            "namespace": self.namespace,
            "workload": self.workload or UNKNOWN,
            "phase": self.phase,
            "observed_at": _iso(self.observed_at),
            "scheduled_at": _iso(self.scheduled_at),
            "ready_at": _iso(self.ready_at),
            "latency_seconds": latency.total_seconds() if latency is not None else None,
            "usage": self.usage,
            "notes": self.notes,
        }

    def render(self) -> str:
        latency = self.latency
        line = (f"{_iso(self.observed_at)} pod={self.namespace}/{self.pod} "
                f"workload={self.workload or UNKNOWN} phase={self.phase or '-'} "
                f"latency={_secs(latency) if latency is not None else 'n/a'}")
        if self.usage:
            line += " usage=" + ",".join(
                f"{c}:{u.get('cpu', '?')}/{u.get('memory', '?')}" for c, u in sorted(self.usage.items()))
        if self.notes:
            line += " (" + "; ".join(self.notes) + ")"
        return line

# ────────────  Tracing  ────────────
def setup_tracing(endpoint: Optional[str]):
    """(tracer, provider); provider is None and spans are no-ops without an endpoint."""
    if not endpoint:
        return trace.NoOpTracer(), None
    provider = TracerProvider(resource=Resource({"service.name": "readiness-profiler"}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, insecure=True)))
    log.info("Exporting readiness spans to %s", endpoint)
    return provider.get_tracer(__name__), provider

def emit_span(tracer, obs: Observation):
    latency = obs.latency
    if latency is None:
        return
    if latency < timedelta(0):
        log.warning("pod %s/%s: Ready recorded %s before PodScheduled; no span",
                    obs.namespace, obs.pod, _secs(-latency))
        return
    span = tracer.start_span("pod-readiness", start_time=int(_utc(obs.scheduled_at).timestamp()*1e9))
    span.set_attribute("k8s.namespace.name", obs.namespace)
    span.set_attribute("k8s.pod.name",       obs.pod)
    span.set_attribute("k8s.deployment.name", obs.workload or UNKNOWN)
    span.end(end_time=int(_utc(obs.ready_at).timestamp()*1e9))

# ────────────  Batch attribution scan  ────────────
def observe_pod(clients: Clients, pod, usage: Optional[Dict[str, dict]] = None) -> Observation:
    """Attribute one listed pod and time its readiness; failures become notes."""
    name, ns = pod.metadata.name, pod.metadata.namespace
    obs = Observation(pod=name, namespace=ns,
                      phase=pod.status.phase if pod.status else None,
                      usage=(usage or {}).get(name, {}))

    ref = owner_of_kind(pod, CONTROLLER_KIND)
    if ref is None:
        obs.notes.append(f"no {CONTROLLER_KIND} owner reference")
    else:
        try:
            obs.workload = resolve_workload(clients.apps, ns, ref.name)
        except (AttributionUnknown, FetchError) as exc:
            log.warning("pod %s/%s: owner unknown: %s", ns, name, exc)
            obs.notes.append(str(exc))
        except Exception as exc:
            log.exception("pod %s/%s: ownership lookup failed", ns, name)
            obs.notes.append(f"ownership lookup failed: {exc}")

    try:
        obs.scheduled_at, obs.ready_at = fetch_readiness_window(clients.core, ns, name)
    except (MissingMilestone, SchemaError, FetchError) as exc:
        log.warning("pod %s/%s: no readiness latency: %s", ns, name, exc)
        obs.notes.append(str(exc))
    except Exception as exc:
        log.exception("pod %s/%s: readiness lookup failed", ns, name)
        obs.notes.append(f"readiness lookup failed: {exc}")
    return obs

def scan_all(clients: Clients, namespace: str, workers: int = 1,
             metrics: bool = False) -> Iterator[Observation]:
    """
    One observation per pod currently listed in ``namespace``. Each call
    lists afresh. A listing failure raises FetchError; anything that goes
    wrong for a single pod is recorded on that pod's observation.
    """
    try:
        pods = clients.core.list_namespaced_pod(namespace).items
    except TRANSPORT_ERRORS as exc:
        raise FetchError(f"listing pods in {namespace}", exc) from exc
    log.info("Listed %d pod(s) in %s", len(pods), namespace)

    usage = {}
    if metrics:
        try:
            usage = list_pod_metrics(clients.custom, namespace)
        except FetchError as exc:
            log.warning("pod metrics unavailable: %s", exc)

    if workers > 1:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            yield from pool.map(lambda p: observe_pod(clients, p, usage), pods)
    else:
        for p in pods:
            yield observe_pod(clients, p, usage)

# ────────────  Event watch loop  ────────────
def observe_event(ev: dict, namespace: str, workload: str,
                  label_key: str = DEFAULT_LABEL_KEY) -> Optional[Observation]:
    """Observation for an ADDED/MODIFIED event of a pod labelled for ``workload``, else None."""
    if ev.get("type") not in ("ADDED", "MODIFIED"):
        return None
    pod = ev.get("object")
    meta = getattr(pod, "metadata", None)
    if meta is None:
        log.debug("skipping %s event without pod metadata", ev.get("type"))
        return None
    if (meta.labels or {}).get(label_key) != workload:
        return None
    phase = getattr(pod.status, "phase", None)
    if not phase:
        return None

    obs = Observation(pod=meta.name, namespace=meta.namespace or namespace,
                      phase=phase, workload=workload)
    try:
        obs.scheduled_at, obs.ready_at = readiness_window(pod)
    except (MissingMilestone, SchemaError) as exc:
        obs.notes.append(str(exc))
    return obs

def watch_units(clients: Clients, namespace: str, workload: str,
                label_key: str = DEFAULT_LABEL_KEY,
                terminal_phases: Iterable[str] = TERMINAL_PHASES,
                timeout_seconds: Optional[int] = None,
                stop: Optional[threading.Event] = None) -> Iterator[Observation]:
    """
    Yield observations for the workload's pods as events arrive, until the
    first pod reaches a terminal phase, the server ends the stream
    (``timeout_seconds``), or ``stop`` is set. ``stop`` is checked between
    events. The watch is released on every exit, including close() by the
    consumer.
    """
    terminal = frozenset(terminal_phases)
    kwargs = {"namespace": namespace}
    if timeout_seconds:
        kwargs["timeout_seconds"] = int(timeout_seconds)

    # set once the API server has answered the watch request with a 2xx;
    # errors before that are setup failures, errors after it end the loop
    opened = False

    @functools.wraps(clients.core.list_namespaced_pod)
    def list_pods(*args, **kw):
        nonlocal opened
        resp = clients.core.list_namespaced_pod(*args, **kw)
        status = getattr(resp, "status", None)
        opened = not isinstance(status, int) or 200 <= status <= 299
        return resp

    w = watch.Watch()
    stream = None
    try:
        stream = w.stream(list_pods, **kwargs)
        while True:
            try:
                ev = next(stream)
            except StopIteration:
                log.info("pod watch in %s ended before a terminal phase", namespace)
                return
            except TRANSPORT_ERRORS + (ValueError,) as exc:
                if not opened:
                    raise FetchError(f"watching pods in {namespace}", exc) from exc
                log.warning("pod watch closed (%s); stopping", exc)
                return
            if stop is not None and stop.is_set():
                log.info("pod watch cancelled")
                return

            try:
                obs = observe_event(ev, namespace, workload, label_key)
            except (AttributeError, TypeError) as exc:
                log.warning("skipping malformed %s event: %s", ev.get("type"), exc)
                continue
            if obs is None:
                continue
            yield obs
            if obs.phase in terminal:
                log.info("pod %s reached %s; stopping watch", obs.pod, obs.phase)
                return
    finally:
        w.stop()
        if stream is not None:
            stream.close()

# ────────────  Output  ────────────
def emit(obs: Observation, output: str, tracer=None):
    if tracer is not None:
        emit_span(tracer, obs)
    if output == "json":
        print(json.dumps(obs.as_dict(), ensure_ascii=False), flush=True)
    else:
        print(obs.render(), flush=True)

def emit_scale(namespace: str, deployment: str, replicas: int, output: str):
    now = datetime.now(timezone.utc)
    if output == "json":
        print(json.dumps({"event": "scale", "namespace": namespace, "deployment": deployment,
                          "replicas": replicas, "timestamp": now.isoformat()}), flush=True)
    else:
        print(f"Increased replicas of {namespace}/{deployment} to {replicas} at {now.isoformat()}",
              flush=True)

def print_table(observations: List[Observation]):
    if not observations:
        return
    print("\n┏" + "━"*78 + "┓")
    print(f"┃ {'Pod':^34} │ {'Deployment':^22} │ {'Latency':^14} ┃")
    print("┣" + "━"*36 + "╋" + "━"*24 + "╋" + "━"*16 + "┫")
    for obs in observations:
        latency = obs.latency
        shown = _secs(latency) if latency is not None else "n/a"
        print(f"┃ {obs.pod[:34]:34} │ {(obs.workload or UNKNOWN)[:22]:22} │ {shown:>14} ┃")
    print("┗" + "━"*78 + "┛\n")

# ────────────  main  ────────────
def parse_args(argv=None):
    ap = argparse.ArgumentParser("Scale a Deployment up and profile pod readiness")
    ap.add_argument("--kubeconfig", default=DEFAULT_KUBECONFIG,
                    help="kubeconfig file (default: ~/.kube/config; in-cluster config if unusable)")
    ap.add_argument("--namespace", default=os.getenv("NAMESPACE", "default"),
                    help="Namespace of the Deployment and its pods")
    ap.add_argument("--deployment", default=os.getenv("DEPLOYMENT_NAME"),
                    required=os.getenv("DEPLOYMENT_NAME") is None,
                    help="Deployment to scale and observe")
    ap.add_argument("--mode", choices=("scan", "watch"), default="scan")
    ap.add_argument("--label-key", default=DEFAULT_LABEL_KEY,
                    help="Pod label whose value must equal the Deployment name (watch mode)")
    ap.add_argument("--terminal-phase", action="append", dest="terminal_phases",
                    help="Phase that ends the watch; repeatable (default: Succeeded)")
    ap.add_argument("--timeout", type=int, default=int(os.getenv("PROFILER_TIMEOUT", "0")) or None,
                    help="Give up watching after this many seconds")
    ap.add_argument("--no-scale", action="store_true", help="Observe only; do not add a replica")
    ap.add_argument("--max-attempts", type=int, default=3,
                    help="Replica update attempts on write conflicts")
    ap.add_argument("--workers", type=int, default=1, help="Parallel per-pod lookups in scan mode")
    ap.add_argument("--metrics", action="store_true",
                    help="Attach metrics.k8s.io usage to scan results")
    ap.add_argument("--output", choices=("text", "json"), default="text")
    ap.add_argument("--otlp-endpoint", default=os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT"),
                    help="OTLP gRPC collector for readiness spans (disabled if unset)")
    return ap.parse_args(argv)

def run(args, clients: Clients, tracer=None) -> int:
    ns, name = args.namespace, args.deployment

    if not args.no_scale:
        try:
            replicas = scale_up(clients.apps, ns, name, max_attempts=args.max_attempts)
        except ProfilerError as exc:
            log.error("scale attempt failed, continuing without it: %s", exc)
        else:
            emit_scale(ns, name, replicas, args.output)

    try:
        if args.mode == "watch":
            with closing(watch_units(clients, ns, name,
                                     label_key=args.label_key,
                                     terminal_phases=args.terminal_phases or TERMINAL_PHASES,
                                     timeout_seconds=args.timeout)) as observations:
                for obs in observations:
                    emit(obs, args.output, tracer)
        else:
            seen = []
            for obs in scan_all(clients, ns, workers=args.workers, metrics=args.metrics):
                emit(obs, args.output, tracer)
                seen.append(obs)
            if args.output == "text":
                print_table(seen)
    except FetchError as exc:
        log.error("%s failed: %s", args.mode, exc)
        return 1
    return 0

def main(argv=None) -> int:
    args = parse_args(argv)
    level = os.getenv("LOGLEVEL", "INFO").upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO),
                        format="%(asctime)s %(levelname)s %(message)s")

    try:
        clients = setup_k8s(args.kubeconfig)
    except ConfigException as exc:
        log.error("no usable cluster configuration: %s", exc)
        return 1

    tracer, provider = setup_tracing(args.otlp_endpoint)
    try:
        return run(args, clients, tracer)
    except KeyboardInterrupt:
        log.info("interrupted")
        return 130
    finally:
        if provider is not None:
            provider.shutdown()

if __name__ == "__main__":
    sys.exit(main())
