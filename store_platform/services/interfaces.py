"""
Narrow interfaces to the collaborators the provisioning core depends on.

Real implementations live next to this module (SQL repositories, the
Kubernetes client, the Helm installer); tests provide in-memory fakes.
Cluster and installer methods are synchronous and are called from the
event loop through asyncio.to_thread.
"""
from typing import Any, Dict, List, Optional, Protocol

from ..models import (
    AuditEvent,
    JobState,
    ServiceEndpoint,
    StoreRecord,
    StoreStatus,
    WorkloadUnitStatus,
)


class StoreRepository(Protocol):
    async def create(self, record: StoreRecord) -> StoreRecord: ...

    async def get(self, store_id: str) -> Optional[StoreRecord]: ...

    async def find_by_host(self, host: str) -> Optional[StoreRecord]: ...

    async def list(
        self,
        owner_id: Optional[str] = None,
        status: Optional[StoreStatus] = None,
    ) -> List[StoreRecord]: ...

    async def count(
        self,
        owner_id: Optional[str] = None,
        status: Optional[StoreStatus] = None,
        exclude_status: Optional[StoreStatus] = None,
    ) -> int: ...

    async def update(
        self,
        store_id: str,
        expected_status: Optional[StoreStatus] = None,
        **fields: Any,
    ) -> Optional[StoreRecord]: ...

    async def delete(self, store_id: str) -> bool: ...


class AuditRepository(Protocol):
    async def append(self, event: AuditEvent) -> AuditEvent: ...

    async def list_for_entity(self, entity_id: str, limit: int = 50) -> List[AuditEvent]: ...

    async def list_recent(self, limit: int = 100) -> List[AuditEvent]: ...


class ClusterClient(Protocol):
    def namespace_exists(self, name: str) -> bool: ...

    def create_namespace(self, name: str, labels: Dict[str, str]) -> None: ...

    def delete_namespace(self, name: str) -> None: ...

    def list_pods(self, namespace: str) -> List[WorkloadUnitStatus]: ...

    def read_pod_log(self, namespace: str, pod_name: str, tail_lines: int = 200) -> str: ...

    def read_job_log(self, namespace: str, job_name: str, tail_lines: int = 200) -> str: ...

    def read_service(self, namespace: str, name: str) -> ServiceEndpoint: ...

    def create_job(self, namespace: str, manifest: Dict[str, Any]) -> None: ...

    def read_job_state(self, namespace: str, name: str) -> JobState: ...

    def delete_job(self, namespace: str, name: str) -> None: ...


class PackageInstaller(Protocol):
    def release_status(self, release: str, namespace: str) -> Optional[str]: ...

    def install(self, release: str, chart: str, namespace: str, values: Dict[str, str]) -> None: ...

    def uninstall(self, release: str, namespace: str) -> None: ...
