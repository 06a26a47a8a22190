"""
Kubernetes service layer — wraps all K8s API interactions the platform needs.

Design principles:
  - Thin: no retry or idempotency decisions here, those belong to the
    provisioning adapter's policy table
  - Clean error handling: every ApiException is translated into a
    ClusterError carrying the HTTP status, so callers can decide what a
    404 or 409 means for them
  - Pods are flattened into WorkloadUnitStatus values for the readiness
    evaluator
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List

from kubernetes import client, config
from kubernetes.client import ApiException

from ..config import Settings
from ..errors import ClusterError
from ..models import JobState, ServiceEndpoint, WorkloadUnitStatus

logger = logging.getLogger("kubernetes_service")


def _cluster_error(action: str, e: ApiException) -> ClusterError:
    return ClusterError(
        f"Kubernetes API error while {action}: {e.status} {e.reason}",
        status=e.status,
        detail=str(e.body or "")[:1000],
    )


def pod_to_unit(pod: Any) -> WorkloadUnitStatus:
    """Convert a V1Pod into the evaluator's view of it."""
    statuses = pod.status.container_statuses or []
    waiting_reason = None
    for cs in statuses:
        if cs.state and cs.state.waiting and cs.state.waiting.reason:
            waiting_reason = cs.state.waiting.reason
            break
    return WorkloadUnitStatus(
        name=pod.metadata.name,
        phase=pod.status.phase or "Unknown",
        ready=bool(statuses) and all(cs.ready for cs in statuses),
        restart_count=sum(cs.restart_count or 0 for cs in statuses),
        waiting_reason=waiting_reason,
    )


class KubernetesClusterClient:
    """ClusterClient backed by the official kubernetes client."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self._loaded = False

    def _ensure_k8s(self):
        """Load Kubernetes config exactly once."""
        if self._loaded:
            return
        if self.settings.IN_CLUSTER:
            config.load_incluster_config()
        else:
            config.load_kube_config(config_file=self.settings.KUBECONFIG or None)
        self._loaded = True

    def core_api(self) -> client.CoreV1Api:
        self._ensure_k8s()
        return client.CoreV1Api()

    def batch_api(self) -> client.BatchV1Api:
        self._ensure_k8s()
        return client.BatchV1Api()

    # --- Namespaces ---

    def namespace_exists(self, name: str) -> bool:
        try:
            self.core_api().read_namespace(name=name)
            return True
        except ApiException as e:
            if e.status == 404:
                return False
            raise _cluster_error(f"reading namespace {name}", e)

    def create_namespace(self, name: str, labels: Dict[str, str]) -> None:
        try:
            self.core_api().create_namespace(
                client.V1Namespace(metadata=client.V1ObjectMeta(name=name, labels=labels))
            )
            logger.info(f"Namespace {name} created")
        except ApiException as e:
            raise _cluster_error(f"creating namespace {name}", e)

    def delete_namespace(self, name: str) -> None:
        try:
            self.core_api().delete_namespace(name=name)
            logger.info(f"Namespace {name} deletion initiated")
        except ApiException as e:
            raise _cluster_error(f"deleting namespace {name}", e)

    # --- Pods ---

    def list_pods(self, namespace: str) -> List[WorkloadUnitStatus]:
        try:
            pods = self.core_api().list_namespaced_pod(namespace=namespace)
        except ApiException as e:
            raise _cluster_error(f"listing pods in {namespace}", e)
        return [pod_to_unit(pod) for pod in pods.items]

    def read_pod_log(self, namespace: str, pod_name: str, tail_lines: int = 200) -> str:
        try:
            return self.core_api().read_namespaced_pod_log(
                name=pod_name, namespace=namespace, tail_lines=tail_lines
            )
        except ApiException as e:
            raise _cluster_error(f"reading logs of {namespace}/{pod_name}", e)

    def read_job_log(self, namespace: str, job_name: str, tail_lines: int = 200) -> str:
        """Logs of the newest pod the job started (pods carry a job-name label)."""
        try:
            pods = self.core_api().list_namespaced_pod(
                namespace=namespace, label_selector=f"job-name={job_name}"
            )
        except ApiException as e:
            raise _cluster_error(f"listing pods of job {namespace}/{job_name}", e)
        if not pods.items:
            raise ClusterError(f"No pods found for job {namespace}/{job_name}", status=404)
        newest = max(
            pods.items,
            key=lambda p: p.metadata.creation_timestamp or datetime.min.replace(tzinfo=timezone.utc),
        )
        return self.read_pod_log(namespace, newest.metadata.name, tail_lines)

    # --- Services ---

    def read_service(self, namespace: str, name: str) -> ServiceEndpoint:
        try:
            svc = self.core_api().read_namespaced_service(name=name, namespace=namespace)
        except ApiException as e:
            raise _cluster_error(f"reading service {namespace}/{name}", e)
        node_ports = tuple(p.node_port for p in (svc.spec.ports or []) if p.node_port)
        return ServiceEndpoint(
            name=svc.metadata.name,
            type=svc.spec.type or "ClusterIP",
            node_ports=node_ports,
            cluster_ip=svc.spec.cluster_ip,
        )

    # --- Jobs ---

    def create_job(self, namespace: str, manifest: Dict[str, Any]) -> None:
        name = manifest.get("metadata", {}).get("name", "?")
        try:
            self.batch_api().create_namespaced_job(namespace=namespace, body=manifest)
            logger.info(f"Job {namespace}/{name} created")
        except ApiException as e:
            raise _cluster_error(f"creating job {namespace}/{name}", e)

    def read_job_state(self, namespace: str, name: str) -> JobState:
        try:
            job = self.batch_api().read_namespaced_job_status(name=name, namespace=namespace)
        except ApiException as e:
            raise _cluster_error(f"reading job {namespace}/{name}", e)
        status = job.status
        return JobState(
            active=status.active or 0,
            succeeded=status.succeeded or 0,
            failed=status.failed or 0,
        )

    def delete_job(self, namespace: str, name: str) -> None:
        try:
            self.batch_api().delete_namespaced_job(
                name=name, namespace=namespace, propagation_policy="Background"
            )
        except ApiException as e:
            raise _cluster_error(f"deleting job {namespace}/{name}", e)
