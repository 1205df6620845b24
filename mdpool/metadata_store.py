"""Durable pool metadata kept in a single JSON document."""

import json
import logging
import os
import tempfile
import threading
from dataclasses import replace
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from .models import PoolMetadataRecord


logger = logging.getLogger(__name__)


class MetadataReadError(Exception):
    """The metadata file exists but cannot be parsed."""


class PoolMetadataStore:
    """
    Persists pool identity records.

    Every mutation re-reads the whole collection, changes it in memory and
    rewrites the whole file through a temp file and os.replace, all under
    one lock, so concurrent writers cannot lose each other's updates and
    the file on disk is always a complete document.
    """

    def __init__(self, metadata_path: str = '/var/lib/mdpool/pool-metadata.json'):
        self.metadata_path = metadata_path
        self._lock = threading.Lock()

    # reads

    def list_all(self) -> List[PoolMetadataRecord]:
        with self._lock:
            return self._load_records()

    def get(self, pool_group_guid: str) -> Optional[PoolMetadataRecord]:
        guid = str(pool_group_guid)
        return next((record for record in self.list_all() if record.pool_group_guid == guid), None)

    def find_by_mount_path(self, mount_path: str) -> Optional[PoolMetadataRecord]:
        normalized = os.path.normpath(mount_path)
        for record in self.list_all():
            if record.last_mount_path and os.path.normpath(record.last_mount_path) == normalized:
                return record
        return None

    def find_by_serial(self, serial: str) -> Optional[PoolMetadataRecord]:
        return next((record for record in self.list_all() if serial in record.drive_serials), None)

    # writes

    def save(self, record: PoolMetadataRecord) -> Tuple[bool, str]:
        """Add a new record; fails if the GUID is already present."""
        def mutate(records: List[PoolMetadataRecord]) -> Tuple[bool, str]:
            if any(existing.pool_group_guid == record.pool_group_guid for existing in records):
                return False, f"Pool {record.pool_group_guid} already exists"
            records.append(record)
            return True, f"Pool {record.pool_group_guid} saved"

        return self._mutate(mutate)

    def update(self, record: PoolMetadataRecord) -> Tuple[bool, str]:
        """Replace an existing record, keeping its original created_at."""
        def mutate(records: List[PoolMetadataRecord]) -> Tuple[bool, str]:
            for index, existing in enumerate(records):
                if existing.pool_group_guid == record.pool_group_guid:
                    records[index] = replace(record, created_at=existing.created_at)
                    return True, f"Pool {record.pool_group_guid} updated"
            return False, f"Pool {record.pool_group_guid} not found"

        return self._mutate(mutate)

    def remove(self, pool_group_guid: str) -> Tuple[bool, str]:
        guid = str(pool_group_guid)

        def mutate(records: List[PoolMetadataRecord]) -> Tuple[bool, str]:
            remaining = [existing for existing in records if existing.pool_group_guid != guid]
            if len(remaining) == len(records):
                return False, f"Pool {guid} not found"
            records[:] = remaining
            return True, f"Pool {guid} removed"

        return self._mutate(mutate)

    def remove_all(self) -> Tuple[bool, str]:
        def mutate(records: List[PoolMetadataRecord]) -> Tuple[bool, str]:
            count = len(records)
            records.clear()
            return True, f"Removed {count} pool records"

        return self._mutate(mutate)

    # internals

    def _mutate(self, mutation: Callable[[List[PoolMetadataRecord]], Tuple[bool, str]]) -> Tuple[bool, str]:
        with self._lock:
            try:
                records = self._read_records()
            except MetadataReadError as e:
                # Rewriting would discard whatever the unreadable file holds
                logger.error(f"Refusing to modify pool metadata: {e}")
                return False, str(e)

            success, message = mutation(records)
            if not success:
                logger.warning(message)
                return False, message

            try:
                self._write_records(records)
            except OSError as e:
                error_msg = f"Failed to write pool metadata to {self.metadata_path}: {e}"
                logger.error(error_msg)
                return False, error_msg

        logger.info(message)
        return True, message

    def _load_records(self) -> List[PoolMetadataRecord]:
        try:
            return self._read_records()
        except MetadataReadError as e:
            logger.error(str(e))
            return []

    def _read_records(self) -> List[PoolMetadataRecord]:
        if not os.path.exists(self.metadata_path):
            return []

        try:
            with open(self.metadata_path, 'r') as f:
                data = json.load(f)
            return [PoolMetadataRecord.from_dict(item) for item in data.get('pools', [])]
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            raise MetadataReadError(f"Cannot read pool metadata {self.metadata_path}: {e}")

    def _write_records(self, records: List[PoolMetadataRecord]) -> None:
        directory = os.path.dirname(self.metadata_path) or '.'
        os.makedirs(directory, exist_ok=True)

        document = {
            'pools': [record.to_dict() for record in records],
            'last_updated': datetime.now().isoformat(),
        }

        fd, temp_path = tempfile.mkstemp(dir=directory, suffix='.json')
        try:
            with os.fdopen(fd, 'w') as f:
                json.dump(document, f, indent=2)
            os.replace(temp_path, self.metadata_path)
        except Exception:
            # Clean up temp file on error
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise
