"""
Durable store for signed-but-unbroadcast meta-transactions.

Layout (one namespace per storage key):

    {custodianAddress: {operationId: {signedData, timestamp, metadata}}}

Features:
- Pluggable backends (JSON file per key, or in-memory)
- Structural validation on every load; a corrupt namespace is reset, never repaired
- Total serialized size budget enforced on write
- Writes serialized under an asyncio.Lock, last write wins per key
- Change notifications to sync or async observers
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import (
    Annotated,
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    Tuple,
    Union,
)

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, TypeAdapter, ValidationError
from web3 import Web3

from .config import DEFAULT_MAX_STORAGE_BYTES, DEFAULT_STORAGE_KEY, WorkflowSettings
from .exceptions import InvalidDataError, SerializationError, StorageFullError
from .logging_utils import get_workflow_logger
from .meta_tx import MetaTransaction

logger = logging.getLogger(__name__)

ADDRESS_PATTERN = r"^0x[a-fA-F0-9]{40}$"
OPERATION_ID_PATTERN = r"^(\d+|temp_[A-Za-z0-9_]+)$"

_OPERATION_ID_RE = re.compile(OPERATION_ID_PATTERN)


# =============================================================================
# Backends
# =============================================================================

class StorageBackend(Protocol):
    """Raw string storage addressed by key."""

    def read(self, key: str) -> Optional[str]:
        ...

    def write(self, key: str, value: str) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


class MemoryStorageBackend:
    """In-process backend; shares nothing across processes."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def read(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def write(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class FileStorageBackend:
    """One JSON file per key under a directory, replaced atomically on write."""

    def __init__(self, directory: Union[str, Path]):
        self._directory = Path(directory)

    def _path(self, key: str) -> Path:
        return self._directory / f"{key}.json"

    def read(self, key: str) -> Optional[str]:
        """
        Raises:
            UnicodeDecodeError: if the file is not UTF-8; the store treats this as corruption
            SerializationError: if the file cannot be read
        """
        path = self._path(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise SerializationError(f"Cannot read {path}: {e}") from e

    def write(self, key: str, value: str) -> None:
        path = self._path(key)
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self._directory, prefix=f".{key}.", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(value)
            os.replace(tmp, path)
        except OSError as e:
            raise SerializationError(f"Cannot write {path}: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise SerializationError(f"Cannot delete {self._path(key)}: {e}") from e


# =============================================================================
# Models
# =============================================================================

class StoredEntry(BaseModel):
    """Persisted form of one signed transaction."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    signed_data: str = Field(alias="signedData", min_length=1)
    timestamp: int
    metadata: Dict[str, Any] = Field(default_factory=dict)


AddressKey = Annotated[str, StringConstraints(pattern=ADDRESS_PATTERN)]
OperationIdKey = Annotated[str, StringConstraints(pattern=OPERATION_ID_PATTERN)]

_LAYOUT = TypeAdapter(Dict[AddressKey, Dict[OperationIdKey, StoredEntry]])


@dataclass
class StoredSignedTransaction:
    """A signed meta-transaction waiting to be broadcast."""
    custodian_address: str
    operation_id: str
    signed_data: str
    timestamp: int
    metadata: Dict[str, Any] = field(default_factory=dict)

    def meta_transaction(self) -> MetaTransaction:
        return MetaTransaction.from_json(self.signed_data)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "custodian_address": self.custodian_address,
            "operation_id": self.operation_id,
            "signed_data": self.signed_data,
            "timestamp": self.timestamp,
            "metadata": self.metadata,
        }


@dataclass
class StoreChangeEvent:
    """Emitted after every store mutation."""
    custodian_address: Optional[str]
    operation_id: Optional[str]
    action: str
    timestamp: float = field(default_factory=time.time)


StoreObserver = Callable[[StoreChangeEvent], Union[None, Awaitable[None]]]


def normalize_operation_id(operation_id: Union[int, str]) -> str:
    op_id = str(operation_id).strip()
    if not _OPERATION_ID_RE.match(op_id):
        raise InvalidDataError(
            f"Invalid operation id {operation_id!r}: expected a ledger txId or temp_<token>",
            details={"operation_id": str(operation_id)},
        )
    return op_id


def normalize_custodian(address: str) -> str:
    if not isinstance(address, str) or not Web3.is_address(address):
        raise InvalidDataError(f"Invalid contract address: {address!r}")
    return Web3.to_checksum_address(address)


# =============================================================================
# Store
# =============================================================================

class SignedTransactionStore:
    """
    Validated, size-bounded store of signed meta-transactions keyed by
    (custodian address, operation id).

    Usage:
        store = SignedTransactionStore(FileStorageBackend("./data"))
        await store.store(custodian, "42", meta_tx.to_json(), {"action": "approve"})
        entry = await store.get(custodian, "42")
    """

    def __init__(
        self,
        backend: Optional[StorageBackend] = None,
        storage_key: str = DEFAULT_STORAGE_KEY,
        max_size_bytes: int = DEFAULT_MAX_STORAGE_BYTES,
        clock: Callable[[], float] = time.time,
    ):
        self._backend = backend or MemoryStorageBackend()
        self._storage_key = storage_key
        self._max_size_bytes = max_size_bytes
        self._clock = clock
        self._lock = asyncio.Lock()
        self._observers: List[StoreObserver] = []
        self._wf_logger = get_workflow_logger()

    @classmethod
    def from_settings(cls, settings: WorkflowSettings) -> "SignedTransactionStore":
        return cls(
            backend=FileStorageBackend(settings.storage_path),
            storage_key=settings.storage_key,
            max_size_bytes=settings.max_storage_bytes,
        )

    @property
    def storage_key(self) -> str:
        return self._storage_key

    @property
    def max_size_bytes(self) -> int:
        return self._max_size_bytes

    # -------------------------------------------------------------------------
    # Observers
    # -------------------------------------------------------------------------

    def subscribe(self, observer: StoreObserver) -> Callable[[], None]:
        """Register an observer; returns a function that unsubscribes it."""
        if observer not in self._observers:
            self._observers.append(observer)

        def unsubscribe() -> None:
            try:
                self._observers.remove(observer)
            except ValueError:
                pass

        return unsubscribe

    async def _notify(self, event: StoreChangeEvent) -> None:
        self._wf_logger.log_store_change(
            event.custodian_address or "*", event.operation_id, event.action
        )
        for observer in list(self._observers):
            try:
                result = observer(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(
                    f"Store observer {getattr(observer, '__name__', observer)!r} failed "
                    f"for {event.action}: {e}",
                    exc_info=True,
                )

    # -------------------------------------------------------------------------
    # Raw access
    # -------------------------------------------------------------------------

    def _load(self) -> Tuple[Dict[str, Dict[str, Dict[str, Any]]], bool]:
        """
        Read and validate the namespace.

        Returns the data and whether the namespace had to be reset.
        """
        try:
            raw = self._backend.read(self._storage_key)
        except UnicodeDecodeError as e:
            logger.warning(
                f"Discarding undecodable signed transaction store {self._storage_key!r}: {e}"
            )
            self._backend.delete(self._storage_key)
            return {}, True
        if raw is None or raw == "":
            return {}, False
        try:
            parsed = _LAYOUT.validate_json(raw)
        except ValidationError as e:
            logger.warning(
                f"Discarding corrupt signed transaction store {self._storage_key!r}: "
                f"{e.error_count()} validation error(s)"
            )
            self._backend.delete(self._storage_key)
            return {}, True

        data = {
            custodian: {
                op_id: entry.model_dump(by_alias=True)
                for op_id, entry in entries.items()
            }
            for custodian, entries in parsed.items()
        }
        return data, False

    def _save(self, data: Dict[str, Dict[str, Dict[str, Any]]]) -> None:
        if not data:
            self._backend.delete(self._storage_key)
            return
        try:
            serialized = json.dumps(data, separators=(",", ":"))
        except (TypeError, ValueError) as e:
            raise SerializationError(f"Cannot serialize signed transactions: {e}") from e

        size = len(serialized.encode("utf-8"))
        if size > self._max_size_bytes:
            raise StorageFullError(required_bytes=size, max_bytes=self._max_size_bytes)
        self._backend.write(self._storage_key, serialized)

    async def _read(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        async with self._lock:
            data, was_reset = self._load()
        if was_reset:
            await self._notify(StoreChangeEvent(None, None, "reset"))
        return data

    @staticmethod
    def _entry(custodian: str, op_id: str, raw: Dict[str, Any]) -> StoredSignedTransaction:
        return StoredSignedTransaction(
            custodian_address=custodian,
            operation_id=op_id,
            signed_data=raw["signedData"],
            timestamp=raw["timestamp"],
            metadata=dict(raw.get("metadata") or {}),
        )

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def store(
        self,
        custodian_address: str,
        operation_id: Union[int, str],
        signed_data: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> StoredSignedTransaction:
        """
        Store a signed transaction, replacing any entry under the same key.

        Raises:
            InvalidDataError: if the address, operation id or payload is invalid
            StorageFullError: if the write would exceed the size budget
        """
        custodian = normalize_custodian(custodian_address)
        op_id = normalize_operation_id(operation_id)
        if not signed_data:
            raise InvalidDataError("Signed data is required")

        entry = {
            "signedData": signed_data,
            "timestamp": int(self._clock()),
            "metadata": dict(metadata or {}),
        }

        async with self._lock:
            data, was_reset = self._load()
            data.setdefault(custodian, {})[op_id] = entry
            self._save(data)

        if was_reset:
            await self._notify(StoreChangeEvent(None, None, "reset"))
        await self._notify(StoreChangeEvent(custodian, op_id, "stored"))
        return self._entry(custodian, op_id, entry)

    async def get(
        self, custodian_address: str, operation_id: Union[int, str]
    ) -> Optional[StoredSignedTransaction]:
        custodian = normalize_custodian(custodian_address)
        op_id = str(operation_id)
        raw = (await self._read()).get(custodian, {}).get(op_id)
        if raw is None:
            return None
        return self._entry(custodian, op_id, raw)

    async def get_by_contract(self, custodian_address: str) -> Dict[str, StoredSignedTransaction]:
        custodian = normalize_custodian(custodian_address)
        entries = (await self._read()).get(custodian, {})
        return {op_id: self._entry(custodian, op_id, raw) for op_id, raw in entries.items()}

    async def remove(self, custodian_address: str, operation_id: Union[int, str]) -> bool:
        """Remove one entry; drops the custodian key when it becomes empty."""
        custodian = normalize_custodian(custodian_address)
        op_id = str(operation_id)

        async with self._lock:
            data, was_reset = self._load()
            entries = data.get(custodian)
            removed = entries is not None and op_id in entries
            if removed:
                del entries[op_id]
                if not entries:
                    del data[custodian]
                self._save(data)

        if was_reset:
            await self._notify(StoreChangeEvent(None, None, "reset"))
        if removed:
            await self._notify(StoreChangeEvent(custodian, op_id, "removed"))
        return removed

    async def clear_contract(self, custodian_address: str) -> int:
        """Remove every entry for a custodian; returns how many were removed."""
        custodian = normalize_custodian(custodian_address)

        async with self._lock:
            data, was_reset = self._load()
            removed = len(data.pop(custodian, {}))
            if removed:
                self._save(data)

        if was_reset:
            await self._notify(StoreChangeEvent(None, None, "reset"))
        if removed:
            await self._notify(StoreChangeEvent(custodian, None, "cleared"))
        return removed

    async def clear_all(self) -> None:
        async with self._lock:
            self._backend.delete(self._storage_key)
        await self._notify(StoreChangeEvent(None, None, "cleared"))

    async def contract_addresses(self) -> List[str]:
        return list((await self._read()).keys())

    async def storage_size(self) -> int:
        """Serialized size of the namespace in bytes."""
        async with self._lock:
            _, was_reset = self._load()
            raw = self._backend.read(self._storage_key)
        if was_reset:
            await self._notify(StoreChangeEvent(None, None, "reset"))
        return len(raw.encode("utf-8")) if raw else 0

    async def purge_stale(
        self,
        now: Optional[int] = None,
        max_age_seconds: Optional[int] = None,
    ) -> List[Tuple[str, str]]:
        """
        Remove entries that can never be broadcast.

        An entry is stale when its recorded deadline has passed, or when it is
        older than `max_age_seconds`. Nothing is purged unless this is called.

        Returns:
            The (custodian, operation id) pairs removed
        """
        now = int(self._clock()) if now is None else int(now)
        purged: List[Tuple[str, str]] = []

        async with self._lock:
            data, was_reset = self._load()
            for custodian in list(data):
                entries = data[custodian]
                for op_id in list(entries):
                    raw = entries[op_id]
                    deadline = raw.get("metadata", {}).get("deadline")
                    expired = deadline is not None and int(deadline) < now
                    too_old = (
                        max_age_seconds is not None
                        and now - int(raw["timestamp"]) > max_age_seconds
                    )
                    if expired or too_old:
                        del entries[op_id]
                        purged.append((custodian, op_id))
                if not entries:
                    del data[custodian]
            if purged:
                self._save(data)

        if was_reset:
            await self._notify(StoreChangeEvent(None, None, "reset"))
        for custodian, op_id in purged:
            await self._notify(StoreChangeEvent(custodian, op_id, "purged"))
        if purged:
            logger.info(f"Purged {len(purged)} stale signed transaction(s)")
        return purged


__all__ = [
    "StorageBackend",
    "MemoryStorageBackend",
    "FileStorageBackend",
    "StoredEntry",
    "StoredSignedTransaction",
    "StoreChangeEvent",
    "SignedTransactionStore",
    "normalize_operation_id",
    "normalize_custodian",
]
