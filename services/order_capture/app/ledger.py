"""
File-backed order ledger for the Order Capture service.

The ledger is the system of record read by the operator dashboard: a single
JSON array with one object per order, each carrying its own timeline.

Writes are read-modify-write cycles serialized by an in-process lock plus an
flock on a sidecar lock file, so threads and processes sharing the file
never interleave. The new content is written to a temp file in the same
directory, fsynced, and swapped in with os.replace, so a crash mid-write
leaves the previous version intact. Reads take no lock.
"""
import fcntl
import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Set, Tuple

from . import schemas
from .errors import LedgerWriteError

logger = logging.getLogger(__name__)


def merge_orders(existing: schemas.Order, incoming: schemas.Order) -> schemas.Order:
    """
    Apply a repeated write of the same order id.

    Mirrors the relational conflict clause: only status, totals and
    updated_at are refreshed, every other field keeps its first-written
    value, and timelines are concatenated. A fallback order never replaces
    the fields of an authoritative one; only its timeline entries are kept.
    """
    timeline = existing.timeline + incoming.timeline
    if (
        existing.metadata.created_via != schemas.CreatedVia.FALLBACK
        and incoming.metadata.created_via == schemas.CreatedVia.FALLBACK
    ):
        logger.warning(f"Ignoring fallback fields for authoritative order {existing.id}")
        return existing.model_copy(update={"timeline": timeline})

    return existing.model_copy(update={
        "status": incoming.status,
        "totals": incoming.totals,
        "updated_at": incoming.updated_at,
        "timeline": timeline,
    })


class LedgerWriter:
    """
    Append-mostly JSON ledger of orders.

    Attributes:
        path (Path): Location of the ledger file
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self.lock_path = self.path.with_name(f"{self.path.name}.lock")
        self._lock = threading.Lock()

    @contextmanager
    def _locked(self) -> Iterator[None]:
        with self._lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                lock_file = open(self.lock_path, "a")
            except OSError as e:
                raise LedgerWriteError(f"Cannot lock ledger {self.path}: {e}") from e
            with lock_file:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def _read(self) -> List[dict]:
        if not self.path.exists():
            return []
        try:
            with open(self.path, encoding="utf-8") as f:
                records = json.load(f)
        except (OSError, ValueError) as e:
            raise LedgerWriteError(f"Ledger {self.path} is unreadable: {e}") from e
        if not isinstance(records, list):
            raise LedgerWriteError(f"Ledger {self.path} does not contain a JSON array")
        return records

    def _write(self, records: List[dict]) -> None:
        fd, tmp_path = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(records, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except OSError as e:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise LedgerWriteError(f"Failed to write ledger {self.path}: {e}") from e

    def upsert(self, order: schemas.Order) -> Tuple[schemas.Order, bool]:
        """
        Record an order, updating it in place if its id is already present.

        Args:
            order: Normalized order, including the timeline entries to add

        Returns:
            Tuple of (order as stored, created) where created is False for an update

        Raises:
            LedgerWriteError: If the ledger cannot be read or written
        """
        with self._locked():
            records = self._read()
            for index, record in enumerate(records):
                if record.get("id") == order.id:
                    merged = merge_orders(schemas.Order.model_validate(record), order)
                    records[index] = merged.model_dump(mode="json")
                    self._write(records)
                    logger.info(f"Ledger updated order {order.id}")
                    return merged, False

            records.append(order.model_dump(mode="json"))
            self._write(records)
            logger.info(f"Ledger stored order {order.id}")
            return order, True

    def append_timeline(self, order_id: str, *entries: schemas.TimelineEntry) -> schemas.Order:
        """
        Append timeline entries to a recorded order.

        Raises:
            LedgerWriteError: If the order is not in the ledger or the write fails
        """
        with self._locked():
            records = self._read()
            for index, record in enumerate(records):
                if record.get("id") == order_id:
                    order = schemas.Order.model_validate(record)
                    order = order.model_copy(update={"timeline": order.timeline + list(entries)})
                    records[index] = order.model_dump(mode="json")
                    self._write(records)
                    return order
        raise LedgerWriteError(f"Order {order_id} is not in the ledger")

    def update_status(
        self, order_id: str, status: schemas.OrderStatus, entry: schemas.TimelineEntry
    ) -> Optional[schemas.Order]:
        """
        Set an order's status and append the matching timeline entry.

        Returns:
            The updated order, or None if the order is not in the ledger

        Raises:
            LedgerWriteError: If the ledger cannot be read or written
        """
        with self._locked():
            records = self._read()
            for index, record in enumerate(records):
                if record.get("id") == order_id:
                    order = schemas.Order.model_validate(record)
                    order = order.model_copy(update={
                        "status": status,
                        "updated_at": entry.timestamp,
                        "timeline": order.timeline + [entry],
                    })
                    records[index] = order.model_dump(mode="json")
                    self._write(records)
                    logger.info(f"Ledger set order {order_id} to {status.value}")
                    return order
        return None

    def list_orders(self) -> List[schemas.Order]:
        return [schemas.Order.model_validate(record) for record in self._read()]

    def list_ids(self) -> Set[str]:
        return {record["id"] for record in self._read() if "id" in record}

    def get(self, order_id: str) -> Optional[schemas.Order]:
        for record in self._read():
            if record.get("id") == order_id:
                return schemas.Order.model_validate(record)
        return None

    def find_by_idempotency_key(self, key: str) -> Optional[schemas.Order]:
        """Return the order a checkout idempotency key was recorded with, if any."""
        for record in self._read():
            metadata = record.get("metadata") or {}
            if metadata.get("idempotency_key") == key:
                return schemas.Order.model_validate(record)
        return None
