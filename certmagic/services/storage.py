"""Persistent storage for the ACME account, pending orders, challenges and certificates."""

import hashlib
import json
import logging
import os
import re
import tempfile
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .errors import InvalidToken, StorageError
from .models import CertificateRecord, PendingOrderRecord

log = logging.getLogger(__name__)

_SAFE_KEY = re.compile(r"^[A-Za-z0-9_-][A-Za-z0-9._-]*$")
_TOKEN = re.compile(r"^[A-Za-z0-9_-]+$")


class KeyValueBackend(ABC):
    """
    Durable key/value storage split into namespaces.

    Values are JSON-serialisable dictionaries. Implementations must make
    single-record writes atomic; no multi-record transactions are assumed.
    """

    @abstractmethod
    def read(self, namespace: str, key: str) -> Optional[Dict]:
        """Return the stored value or None if the key does not exist."""

    @abstractmethod
    def write(self, namespace: str, key: str, value: Dict) -> None:
        """Create or overwrite a value."""

    @abstractmethod
    def create(self, namespace: str, key: str, value: Dict) -> bool:
        """Store a value only if the key is absent. Returns False if it already existed."""

    @abstractmethod
    def delete(self, namespace: str, key: str) -> bool:
        """Remove a value. Returns True if something was deleted."""

    @abstractmethod
    def keys(self, namespace: str) -> List[str]:
        """List the keys stored in a namespace."""


class FileBackend(KeyValueBackend):
    """Stores each record as a JSON file: <storage_dir>/<namespace>/<key>.json."""

    def __init__(self, storage_dir: Path):
        """
        Initialize the backend.

        Args:
            storage_dir: Root directory, created if missing
        """
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _path(self, namespace: str, key: str) -> Path:
        if not _SAFE_KEY.match(namespace) or not _SAFE_KEY.match(key):
            raise StorageError(f"Unsafe storage key: {namespace}/{key}")
        directory = self.storage_dir / namespace
        directory.mkdir(parents=True, exist_ok=True)
        return directory / f"{key}.json"

    def read(self, namespace: str, key: str) -> Optional[Dict]:
        path = self._path(namespace, key)
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            raise StorageError(f"Could not read {namespace}/{key}: {e}") from e

    def write(self, namespace: str, key: str, value: Dict) -> None:
        path = self._path(namespace, key)
        with self._lock:
            self._write_atomic(path, value)

    def create(self, namespace: str, key: str, value: Dict) -> bool:
        path = self._path(namespace, key)
        with self._lock:
            try:
                fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            except FileExistsError:
                return False
            except OSError as e:
                raise StorageError(f"Could not create {namespace}/{key}: {e}") from e
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(value, f, indent=2)
            return True

    def delete(self, namespace: str, key: str) -> bool:
        path = self._path(namespace, key)
        with self._lock:
            try:
                path.unlink()
                return True
            except FileNotFoundError:
                return False
            except OSError as e:
                raise StorageError(f"Could not delete {namespace}/{key}: {e}") from e

    def keys(self, namespace: str) -> List[str]:
        directory = self.storage_dir / namespace
        if not directory.exists():
            return []
        # Skips .tmp-* files left behind by an interrupted atomic write
        return sorted(p.stem for p in directory.glob("*.json") if _SAFE_KEY.match(p.stem))

    def _write_atomic(self, path: Path, value: Dict) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(value, f, indent=2)
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, path)
        except OSError as e:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise StorageError(f"Could not write {path.name}: {e}") from e


# ==================== Account Management ====================

class CredentialStore:
    """Holds the single ACME account: its key and, once registered, its URL."""

    NAMESPACE = "account"
    KEY = "account"

    def __init__(self, backend: KeyValueBackend):
        self.backend = backend

    def get_account(self) -> Optional[Dict]:
        return self.backend.read(self.NAMESPACE, self.KEY)

    def load_or_create_key(self, generate: Callable[[], str]) -> str:
        """
        Return the account key PEM, generating and storing one on first use.

        Creation is exclusive: if another worker stored a key first, that key
        wins and is returned instead of the one generated here.
        """
        account = self.get_account()
        if account and account.get("private_key_pem"):
            return account["private_key_pem"]

        key_pem = generate()
        created = self.backend.create(self.NAMESPACE, self.KEY, {
            "private_key_pem": key_pem,
            "created_at": datetime.now(timezone.utc).isoformat()
        })
        if created:
            log.info("Generated and saved new ACME account key")
            return key_pem

        account = self.get_account()
        if not account or not account.get("private_key_pem"):
            raise StorageError("Account record exists but holds no key")
        log.info("Another worker created the ACME account key first, using it")
        return account["private_key_pem"]

    def save_account_url(self, account_url: str) -> None:
        account = self.get_account()
        if not account:
            raise StorageError("Cannot save account URL before the account key")
        account["account_url"] = account_url
        account["updated_at"] = datetime.now(timezone.utc).isoformat()
        self.backend.write(self.NAMESPACE, self.KEY, account)


# ==================== Challenge Management ====================

def validate_token(token: str) -> str:
    if not token or not _TOKEN.match(token):
        raise InvalidToken("Invalid token format")
    return token


class ChallengeResponseStore:
    """Maps an http-01 token to the key authorization that must be served for it."""

    NAMESPACE = "challenges"

    def __init__(self, backend: KeyValueBackend):
        self.backend = backend

    def put(self, token: str, key_authorization: str) -> None:
        self.backend.write(self.NAMESPACE, validate_token(token), {
            "key_authorization": key_authorization
        })

    def get(self, token: str) -> Optional[str]:
        record = self.backend.read(self.NAMESPACE, validate_token(token))
        if record is None:
            return None
        return record.get("key_authorization")

    def delete(self, token: str) -> bool:
        return self.backend.delete(self.NAMESPACE, validate_token(token))


# ==================== Order Management ====================

def order_key(order_url: str) -> str:
    """Stable storage key for an ACME order URL."""
    return hashlib.sha256(order_url.encode()).hexdigest()


class PendingOrderStore:
    """
    In-flight http-01 orders, keyed by a hash of the order URL.

    Each pending order is paired with a challenge response. The pair is
    written and removed together so no servable challenge outlives its order.
    """

    NAMESPACE = "pending_orders"

    def __init__(self, backend: KeyValueBackend, challenges: ChallengeResponseStore):
        self.backend = backend
        self.challenges = challenges

    def save(self, record: PendingOrderRecord) -> None:
        """
        Persist a pending order and its challenge response.

        If the pending order cannot be written, the challenge response
        written just before it is removed and the error re-raised.
        """
        self.challenges.put(record.token, record.key_authorization)
        try:
            self.backend.write(self.NAMESPACE, order_key(record.order_url), record.to_dict())
        except Exception:
            try:
                self.challenges.delete(record.token)
            except Exception:
                log.warning("Could not roll back challenge response for token %s", record.token, exc_info=True)
            raise

    def get(self, order_url: str) -> Optional[PendingOrderRecord]:
        data = self.backend.read(self.NAMESPACE, order_key(order_url))
        if data is None:
            return None
        return PendingOrderRecord.from_dict(data)

    def delete(self, order_url: str) -> bool:
        """Delete a pending order and its challenge response."""
        key = order_key(order_url)
        data = self.backend.read(self.NAMESPACE, key)
        if data is None:
            return False
        token = data.get("token")
        if token:
            self.challenges.delete(token)
        return self.backend.delete(self.NAMESPACE, key)

    def list_orders(self) -> List[PendingOrderRecord]:
        records = []
        for key in self.backend.keys(self.NAMESPACE):
            data = self.backend.read(self.NAMESPACE, key)
            if data is not None:
                records.append(PendingOrderRecord.from_dict(data))
        records.sort(key=lambda r: r.created_at)
        return records

    def purge_older_than(self, max_age_seconds: int) -> int:
        """
        Delete pending orders created more than max_age_seconds ago.

        Returns number of deleted orders.
        """
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=max_age_seconds)
        deleted = 0

        for record in self.list_orders():
            if record.created_at < cutoff:
                if self.delete(record.order_url):
                    log.info("Purged abandoned pending order %s for %s", record.order_url, record.domain)
                    deleted += 1

        return deleted


# ==================== Certificate Storage ====================

class CertificateStore:
    """Latest certificate per domain, with the configuration used to obtain it."""

    NAMESPACE = "certificates"

    def __init__(self, backend: KeyValueBackend):
        self.backend = backend

    def save(self, record: CertificateRecord) -> None:
        self.backend.write(self.NAMESPACE, record.domain, record.to_dict())
        log.info("Stored certificate for %s (expires %s)", record.domain, record.expires_at.isoformat())

    def get(self, domain: str) -> Optional[CertificateRecord]:
        data = self.backend.read(self.NAMESPACE, domain)
        if data is None:
            return None
        return CertificateRecord.from_dict(data)

    def list_certificates(self) -> List[CertificateRecord]:
        records = []
        for domain in self.backend.keys(self.NAMESPACE):
            record = self.get(domain)
            if record is not None:
                records.append(record)
        return records
