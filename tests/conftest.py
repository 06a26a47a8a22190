import os

# Must be set before the router module builds its limiter.
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

import pytest
import pytest_asyncio

from store_platform.config import Settings
from store_platform.db import Database
from store_platform.services.audit_service import AuditService
from store_platform.services.provisioning_adapter import ProvisioningAdapter
from store_platform.services.repository import SqlAuditRepository, SqlStoreRepository
from store_platform.services.store_service import StoreService
from store_platform.services.task_runner import ProvisioningTaskRunner

from .fakes import FakeClusterClient, FakeInstaller


@pytest.fixture
def settings():
    return Settings(
        DOMAIN_SUFFIX="stores.test",
        URL_SCHEME="http",
        PUBLIC_IP="10.0.0.1",
        MAX_STORES_PER_OWNER=3,
        PROVISION_POLL_INTERVAL=0,
        PROVISION_MAX_ATTEMPTS=5,
        PROVISION_TIMEOUT=60,
        MAX_PROVISION_DURATION=1200,
        NAMESPACE_DELETE_POLL_INTERVAL=0,
        NAMESPACE_DELETE_MAX_ATTEMPTS=5,
        NAMESPACE_DELETE_TIMEOUT=60,
        JOB_POLL_INTERVAL=0,
        JOB_MAX_ATTEMPTS=3,
        ERROR_MESSAGE_MAX_LENGTH=500,
    )


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'stores.db'}")
    await database.init()
    yield database
    await database.dispose()


@pytest.fixture
def store_repo(db):
    return SqlStoreRepository(db)


@pytest.fixture
def audit_repo(db):
    return SqlAuditRepository(db)


@pytest.fixture
def audit(audit_repo):
    return AuditService(audit_repo)


@pytest.fixture
def cluster():
    return FakeClusterClient()


@pytest.fixture
def installer(cluster):
    fake = FakeInstaller()
    fake.on_install = lambda release, namespace, values: cluster.deploy_healthy(release, namespace)
    return fake


@pytest.fixture
def adapter(settings, cluster, installer):
    return ProvisioningAdapter(settings, cluster, installer)


@pytest_asyncio.fixture
async def runner():
    task_runner = ProvisioningTaskRunner(max_parallel=3)
    yield task_runner
    await task_runner.shutdown()


@pytest.fixture
def service(settings, store_repo, audit, adapter, runner):
    return StoreService(settings, store_repo, audit, adapter, runner)
