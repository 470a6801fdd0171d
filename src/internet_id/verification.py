"""Verification and proof generation: the unit of work run by the job queue.

Both operations take a VerificationInput and a progress callback, talk to two
injected collaborators (a manifest fetcher and an on-chain registry client)
and either return a JSON-serialisable result or raise. A mismatch between
the content, the manifest and the chain is a *result* (status WARN/FAIL),
not an exception. Exceptions mean the check could not be carried out.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import httpx
from pydantic import BaseModel

from .errors import UnsupportedManifestUriError
from .queue.models import JobKind, VerificationInput

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]

PROOF_VERSION = "1.0"


def _no_progress(_value: int) -> None:
    return None


class RegistryEntry(BaseModel):
    """On-chain registration record for a content hash."""

    creator: str
    manifest_uri: str
    timestamp: int = 0


class ManifestFetcher(ABC):
    """Loads a signed manifest document."""

    @abstractmethod
    def fetch(self, uri: str) -> Dict[str, Any]:
        """Return the manifest JSON (content_hash, signature, creator_did, ...)."""


class RegistryClient(ABC):
    """Read access to the content registry contract and signature recovery."""

    @abstractmethod
    def get_entry(self, registry_address: str, content_hash: str) -> Optional[RegistryEntry]:
        """Registration for content_hash, or None if never registered."""

    @abstractmethod
    def recover_signer(self, content_hash: str, signature: str) -> str:
        """Address that signed content_hash."""

    @abstractmethod
    def chain_id(self) -> int:
        pass

    @abstractmethod
    def find_registration_tx(self, registry_address: str, content_hash: str) -> Optional[str]:
        """Hash of the transaction that registered content_hash, if it can be found."""


class HttpManifestFetcher(ManifestFetcher):
    """Fetch manifests over HTTP(S), resolving ipfs:// through a gateway."""

    def __init__(
        self,
        gateway: str = "https://ipfs.io",
        timeout_s: float = 15.0,
        client: Optional[httpx.Client] = None,
    ):
        self.gateway = gateway.rstrip("/")
        self.client = client or httpx.Client(timeout=timeout_s, follow_redirects=True)

    def resolve(self, uri: str) -> str:
        if uri.startswith("ipfs://"):
            return f"{self.gateway}/ipfs/{uri[len('ipfs://'):]}"
        if uri.startswith(("http://", "https://")):
            return uri
        raise UnsupportedManifestUriError(f"Unsupported manifest URI: {uri}")

    def fetch(self, uri: str) -> Dict[str, Any]:
        url = self.resolve(uri)
        response = self.client.get(url)
        response.raise_for_status()
        return response.json()

    def close(self) -> None:
        self.client.close()


def verification_status(manifest_hash_ok: bool, creator_ok: bool, manifest_ok: bool) -> str:
    """OK when every check passes, WARN when only the manifest URI differs, else FAIL."""
    if manifest_hash_ok and creator_ok and manifest_ok:
        return "OK"
    if manifest_hash_ok and creator_ok:
        return "WARN"
    return "FAIL"


class Verifier:
    """Runs verify and proof units of work against injected collaborators."""

    def __init__(
        self,
        fetcher: ManifestFetcher,
        registry: RegistryClient,
        default_registry_address: Optional[str] = None,
    ):
        self.fetcher = fetcher
        self.registry = registry
        self.default_registry_address = default_registry_address

    def run(
        self,
        kind: JobKind,
        data: VerificationInput,
        progress: ProgressCallback = _no_progress,
    ) -> Dict[str, Any]:
        """Dispatch on job kind."""
        if JobKind(kind) == JobKind.PROOF:
            return self.build_proof(data, progress)
        return self.verify(data, progress)

    def _registry_for(self, data: VerificationInput) -> str:
        address = data.registry_address or self.default_registry_address
        if not address:
            raise ValueError("registry_address is required (no default registry configured)")
        return address

    def _check(self, data: VerificationInput, progress: ProgressCallback) -> Dict[str, Any]:
        """Steps shared by verify and proof: manifest, signature, on-chain entry."""
        registry_address = self._registry_for(data)
        file_hash = data.content_hash
        progress(10)

        manifest = self.fetcher.fetch(data.manifest_uri)
        progress(30)

        manifest_hash = manifest.get("content_hash")
        signature = manifest.get("signature")
        if not manifest_hash or not signature:
            raise ValueError("Manifest is missing content_hash or signature")

        manifest_hash_ok = manifest_hash.lower() == file_hash.lower()
        recovered = self.registry.recover_signer(manifest_hash, signature)
        progress(50)

        entry = self.registry.get_entry(registry_address, file_hash)
        progress(70)

        creator_ok = entry is not None and entry.creator.lower() == recovered.lower()
        manifest_ok = entry is not None and entry.manifest_uri == data.manifest_uri

        return {
            "registry_address": registry_address,
            "file_hash": file_hash,
            "manifest": manifest,
            "recovered": recovered,
            "entry": entry,
            "manifest_hash_ok": manifest_hash_ok,
            "creator_ok": creator_ok,
            "manifest_ok": manifest_ok,
            "status": verification_status(manifest_hash_ok, creator_ok, manifest_ok),
        }

    def verify(
        self, data: VerificationInput, progress: ProgressCallback = _no_progress
    ) -> Dict[str, Any]:
        """Compare content hash, manifest signature and on-chain registration."""
        checked = self._check(data, progress)
        entry: Optional[RegistryEntry] = checked["entry"]

        result = {
            "status": checked["status"],
            "fileHash": checked["file_hash"],
            "recovered": checked["recovered"],
            "onchain": (
                {
                    "creator": entry.creator,
                    "manifestURI": entry.manifest_uri,
                    "timestamp": entry.timestamp,
                }
                if entry
                else None
            ),
            "checks": {
                "manifestHashOk": checked["manifest_hash_ok"],
                "creatorOk": checked["creator_ok"],
                "manifestOk": checked["manifest_ok"],
            },
        }
        progress(100)
        return result

    def build_proof(
        self, data: VerificationInput, progress: ProgressCallback = _no_progress
    ) -> Dict[str, Any]:
        """Assemble a portable proof bundle for the content."""
        checked = self._check(data, progress)
        entry: Optional[RegistryEntry] = checked["entry"]
        manifest = checked["manifest"]
        registry_address = checked["registry_address"]

        chain_id = self.registry.chain_id()
        progress(85)

        tx_hash = None
        try:
            tx_hash = self.registry.find_registration_tx(registry_address, checked["file_hash"])
        except Exception as e:
            # The bundle is still valid without the transaction reference
            logger.warning("Registration tx lookup failed for %s: %s", checked["file_hash"], e)

        proof = {
            "version": PROOF_VERSION,
            "generated_at": datetime.now(timezone.utc).isoformat(),
            "network": {"chainId": chain_id},
            "registry": registry_address,
            "content": {"file": data.original_filename or "unknown", "hash": checked["file_hash"]},
            "manifest": {
                "uri": data.manifest_uri,
                "creator_did": manifest.get("creator_did"),
                "signature": manifest.get("signature"),
            },
            "onchain": (
                {
                    "creator": entry.creator,
                    "manifestURI": entry.manifest_uri,
                    "timestamp": entry.timestamp,
                }
                if entry
                else None
            ),
            "signature": {"recovered": checked["recovered"], "valid": checked["creator_ok"]},
            "verification": {
                "fileHashMatchesManifest": checked["manifest_hash_ok"],
                "creatorMatchesOnchain": checked["creator_ok"],
                "manifestURIMatchesOnchain": checked["manifest_ok"],
                "status": checked["status"],
            },
        }
        if tx_hash:
            proof["tx"] = {"txHash": tx_hash}

        progress(100)
        return proof
