"""Content-addressed storage for evidence records.

Providers implement ``ContentStore`` and are tried in order by
``ArchiveUploader``; the first success wins.
"""

import base64
import hashlib
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import requests

from .config import PhishBlockConfig
from .evidence import EVIDENCE_FILENAME, serialize_evidence
from .models.evidence import EvidenceRecord

logger = logging.getLogger(__name__)


class StorageUploadError(Exception):
    """Exception raised when one provider fails to store content."""
    pass


class ArchiveError(Exception):
    """Every configured provider failed.

    ``failures`` maps provider name to its error message, in the order tried.
    """

    def __init__(self, failures: dict[str, str]):
        self.failures = failures
        if failures:
            message = " | ".join(f"{name}: {error}" for name, error in failures.items())
        else:
            message = "No content store configured"
        super().__init__(message)


class ContentStore(ABC):
    """A content-addressed storage provider."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name used in logs and error messages."""
        pass

    @abstractmethod
    def put(self, data: bytes, filename: str) -> str:
        """Store ``data`` and return its content address (CID).

        Raises:
            StorageUploadError: If the provider rejects or fails the upload
        """
        pass


class Web3StorageStore(ContentStore):
    """Web3.Storage HTTP upload API (primary provider)."""

    UPLOAD_URL = "https://api.web3.storage/upload"

    def __init__(self, token: str, timeout: float = 60.0):
        if not token:
            raise ValueError("NFT_TOKEN not set")
        self.token = token
        self.timeout = timeout

    @property
    def name(self) -> str:
        return "Web3.Storage"

    def put(self, data: bytes, filename: str) -> str:
        headers = {
            "Authorization": f"Bearer {self.token}",
            "X-Name": filename,
            "Content-Type": "application/json",
        }
        try:
            response = requests.post(self.UPLOAD_URL, data=data, headers=headers, timeout=self.timeout)
            response.raise_for_status()
            body = response.json()
        except requests.RequestException as e:
            raise StorageUploadError(str(e)) from e
        except ValueError as e:
            raise StorageUploadError(f"Invalid JSON response: {e}") from e

        cid = body.get("cid") if isinstance(body, dict) else None
        if not cid:
            raise StorageUploadError(f"No CID in response: {body}")
        return str(cid)


class PinataStore(ContentStore):
    """Pinata pinning REST API (fallback provider).

    The payload is written to a temporary file and streamed as a multipart
    upload; the file is removed afterwards whatever the outcome.
    """

    PIN_FILE_URL = "https://api.pinata.cloud/pinning/pinFileToIPFS"

    def __init__(self, jwt: str, tmp_dir: Optional[Path] = None, timeout: float = 60.0):
        if not jwt:
            raise ValueError("PINATA_JWT not set")
        self.jwt = jwt
        self.tmp_dir = tmp_dir
        self.timeout = timeout

    @property
    def name(self) -> str:
        return "Pinata"

    def put(self, data: bytes, filename: str) -> str:
        if self.tmp_dir is not None:
            self.tmp_dir.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(
            suffix=f"-{filename}", dir=str(self.tmp_dir) if self.tmp_dir else None
        )
        temp_path = Path(temp_name)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            with open(temp_path, "rb") as f:
                response = requests.post(
                    self.PIN_FILE_URL,
                    headers={"Authorization": f"Bearer {self.jwt}"},
                    files={"file": (filename, f, "application/json")},
                    timeout=self.timeout,
                )
            try:
                body = response.json()
            except ValueError:
                body = {"raw": response.text}
        except requests.RequestException as e:
            raise StorageUploadError(str(e)) from e
        except OSError as e:
            raise StorageUploadError(f"Temp file operation failed: {e}") from e
        finally:
            temp_path.unlink(missing_ok=True)

        cid = body.get("IpfsHash") if isinstance(body, dict) else None
        if not response.ok or not cid:
            raise StorageUploadError(f"Pinata upload failed: {body}")
        return str(cid)


class InMemoryContentStore(ContentStore):
    """Deterministic in-process store for testing and dry runs.

    The address is derived from the content, so identical bytes always get
    the same CID.
    """

    def __init__(self, name: str = "memory"):
        self._name = name
        self._lock = threading.Lock()
        self.objects: dict[str, bytes] = {}
        self.calls: list[tuple[bytes, str]] = []
        self.fail_with: Optional[Exception] = None

    @property
    def name(self) -> str:
        return self._name

    def put(self, data: bytes, filename: str) -> str:
        with self._lock:
            self.calls.append((data, filename))
        if self.fail_with is not None:
            raise self.fail_with
        digest = hashlib.sha256(data).digest()
        cid = "bafk" + base64.b32encode(digest).decode("ascii").lower().rstrip("=")
        with self._lock:
            self.objects[cid] = data
        return cid

    def get(self, cid: str) -> bytes:
        return self.objects[cid]


@dataclass(frozen=True)
class UploadResult:
    cid: str
    provider: str
    failures: dict[str, str]


class ArchiveUploader:
    """Uploads an evidence record to the first provider that accepts it."""

    def __init__(self, stores: list[ContentStore], filename: str = EVIDENCE_FILENAME):
        self.stores = list(stores)
        self.filename = filename

    def upload(self, record: EvidenceRecord) -> UploadResult:
        """Upload ``record``; every provider receives the same bytes.

        Raises:
            ArchiveError: If all providers fail (or none are configured)
        """
        data = serialize_evidence(record)
        failures: dict[str, str] = {}

        for store in self.stores:
            try:
                logger.info(f"Uploading {self.filename} for {record.post_id} to {store.name}")
                cid = store.put(data, self.filename)
            except Exception as e:
                logger.warning(f"{store.name} upload failed for {record.post_id}: {e}")
                failures[store.name] = str(e) or type(e).__name__
                continue
            logger.info(f"{store.name} CID for {record.post_id}: {cid}")
            return UploadResult(cid=cid, provider=store.name, failures=failures)

        raise ArchiveError(failures)


def gateway_urls(cid: str, primary_gateway: str, backup_gateway: str) -> tuple[str, str]:
    """Primary and backup retrieval URLs for ``cid``."""
    return (
        f"{primary_gateway.rstrip('/')}/{cid}",
        f"{backup_gateway.rstrip('/')}/{cid}",
    )


def get_content_stores(
    config: PhishBlockConfig,
    engine: str = "auto",
    tmp_dir: Optional[Path] = None,
) -> list[ContentStore]:
    """Build the ordered provider list for ``engine``.

    Args:
        config: Loaded configuration
        engine: 'fake' (in-memory) or 'auto' (every provider with credentials,
                primary first)
        tmp_dir: Directory for fallback upload temp files
    """
    if engine == "fake":
        return [InMemoryContentStore()]

    if engine != "auto":
        raise ValueError(f"Unknown storage engine: {engine}")

    stores: list[ContentStore] = []
    timeout = config.storage.upload_timeout_seconds
    if config.storage.web3_storage_token:
        stores.append(Web3StorageStore(config.storage.web3_storage_token, timeout=timeout))
    if config.storage.pinata_jwt:
        stores.append(PinataStore(config.storage.pinata_jwt, tmp_dir=tmp_dir, timeout=timeout))
    else:
        logger.warning("PINATA_JWT not set; Pinata fallback unavailable")
    if not stores:
        raise ValueError("No storage credentials set (NFT_TOKEN / PINATA_JWT); use --engine fake for a dry run")
    return stores
