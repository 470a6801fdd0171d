import tempfile
from pathlib import Path
from typing import Dict, List, Optional

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from internet_id.api.main import create_app
from internet_id.models import QueueConfig, RetryPolicy
from internet_id.queue import JobStore, SQLiteQueue, VerificationInput, VerificationQueueService
from internet_id.verification import ManifestFetcher, RegistryClient, RegistryEntry, Verifier

CONTENT_HASH = "0x" + "ab" * 32
OTHER_HASH = "0x" + "cd" * 32
MANIFEST_URI = "ipfs://bafybeigdyrzt5sfp7udm7hu76uh7y26nf3efuylqabf3oclgtqy55fbzdi"
REGISTRY = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
CREATOR = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
SIGNATURE = "0x" + "11" * 65


class FakeFetcher(ManifestFetcher):
    """Serves manifests from a dict; can fail a number of times per URI."""

    def __init__(self, manifests: Optional[Dict[str, dict]] = None, failures: int = 0, on_fetch=None):
        self.manifests = manifests if manifests is not None else {MANIFEST_URI: make_manifest()}
        self.failures = failures
        self.on_fetch = on_fetch
        self.calls: List[str] = []

    def fetch(self, uri: str) -> dict:
        self.calls.append(uri)
        if self.on_fetch:
            self.on_fetch(uri)
        if self.failures != 0:
            self.failures -= 1
            raise httpx.ReadTimeout("gateway timed out")
        if uri not in self.manifests:
            raise httpx.ConnectError(f"no route to {uri}")
        return self.manifests[uri]


class FakeRegistry(RegistryClient):
    """In-memory registry contract."""

    def __init__(self, entries: Optional[Dict[str, RegistryEntry]] = None, signer: str = CREATOR,
                 tx_hash: Optional[str] = "0x" + "ee" * 32, tx_error: Optional[Exception] = None):
        self.entries = entries if entries is not None else {
            CONTENT_HASH: RegistryEntry(creator=CREATOR, manifest_uri=MANIFEST_URI, timestamp=1700000000)
        }
        self.signer = signer
        self.tx_hash = tx_hash
        self.tx_error = tx_error

    def get_entry(self, registry_address: str, content_hash: str) -> Optional[RegistryEntry]:
        return self.entries.get(content_hash)

    def recover_signer(self, content_hash: str, signature: str) -> str:
        return self.signer

    def chain_id(self) -> int:
        return 84532

    def find_registration_tx(self, registry_address: str, content_hash: str) -> Optional[str]:
        if self.tx_error:
            raise self.tx_error
        return self.tx_hash


def make_manifest(content_hash: str = CONTENT_HASH) -> dict:
    return {
        "version": "1.0",
        "content_hash": content_hash,
        "signature": SIGNATURE,
        "creator_did": f"did:pkh:eip155:84532:{CREATOR}",
    }


def make_input(content_hash: str = CONTENT_HASH, manifest_uri: str = MANIFEST_URI, **kwargs) -> VerificationInput:
    return VerificationInput(
        content_hash=content_hash, manifest_uri=manifest_uri, registry_address=REGISTRY, **kwargs
    )


def make_config(max_attempts: int = 3, **kwargs) -> QueueConfig:
    """Queue config with immediate retries so tests never wait on backoff."""
    return QueueConfig(
        retry=RetryPolicy(max_attempts=max_attempts, base_delay_s=0.0, max_delay_s=0.0),
        poll_timeout_s=0.05,
        **kwargs,
    )


@pytest.fixture
def temp_dir():
    """Create temporary directory for database files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def store(temp_dir):
    """JobStore on a temporary SQLite file."""
    job_store = JobStore(f"sqlite:///{temp_dir / 'jobs.db'}")
    yield job_store
    job_store.close()


@pytest.fixture
def sqlite_queue(temp_dir):
    """SQLiteQueue on a temporary file."""
    queue = SQLiteQueue(str(temp_dir / "queue.db"), poll_interval_s=0.01)
    yield queue
    queue.close()


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def registry():
    return FakeRegistry()


@pytest.fixture
def verifier(fetcher, registry):
    return Verifier(fetcher, registry)


@pytest.fixture
def service(store, verifier, sqlite_queue):
    """Async-mode service; tests drive workers with process_next()."""
    svc = VerificationQueueService(store, verifier, backend=sqlite_queue, config=make_config())
    yield svc
    svc.stop()


@pytest.fixture
def sync_service(store, verifier):
    """Service with no queue backend: every enqueue runs inline."""
    return VerificationQueueService(store, verifier, backend=None, config=make_config())


@pytest_asyncio.fixture(scope="function")
async def client(service):
    app = create_app(service)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture(scope="function")
async def sync_client(sync_service):
    app = create_app(sync_service)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
