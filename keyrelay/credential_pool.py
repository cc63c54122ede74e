"""Credential pool: round-robin selection with health tracking."""

import asyncio
import logging
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from keyrelay.errors import FailureInfo, NoCredentialError
from keyrelay.models import CredentialRecord, PoolState
from keyrelay.store import KeyValueStore

logger = logging.getLogger(__name__)

RECORDS_KEY = "credential_records"
SECRETS_KEY = "credential_secrets"
CURSOR_KEY = "credential_cursor"


def pick_round_robin(
    eligible: Sequence[bool], cursor: int
) -> Tuple[Optional[int], int]:
    """Scan once from ``cursor`` for the first eligible position.

    Returns the position found (or ``None``) and the cursor to use next.
    """
    count = len(eligible)
    for offset in range(count):
        index = (cursor + offset) % count
        if eligible[index]:
            return index, (index + 1) % count
    return None, cursor


class CredentialPool:
    """Owns the ordered credential records and their health transitions.

    Every mutation runs under one lock and is written to the store before the
    call returns, so concurrent reporters never lose an update.
    """

    def __init__(self, store: KeyValueStore, unhealthy_threshold: int = 3):
        self.pool: PoolState = PoolState()
        self.unhealthy_threshold = unhealthy_threshold
        self._store = store
        self._lock: asyncio.Lock = asyncio.Lock()

    async def load(self) -> None:
        """Restore records and cursor from the store."""
        data = await self._store.get([RECORDS_KEY, SECRETS_KEY, CURSOR_KEY])
        secrets: List[str] = data.get(SECRETS_KEY) or []
        states = {int(item["index"]): item for item in data.get(RECORDS_KEY) or []}

        async with self._lock:
            records = []
            for index, secret in enumerate(secrets):
                state = states.get(index)
                if state is None:
                    records.append(CredentialRecord(index=index, secret=secret))
                else:
                    records.append(CredentialRecord.from_state(secret, state))
            self.pool.records = records
            cursor = int(data.get(CURSOR_KEY) or 0)
            self.pool.cursor = cursor if 0 <= cursor < len(records) else 0

    async def ensure_configured(self, secrets: Sequence[str]) -> None:
        """Load stored state, replacing it when the configured secrets changed."""
        await self.load()
        if [record.secret for record in self.pool.records] != list(secrets):
            await self.reconfigure(secrets)

    async def select(self) -> Tuple[str, int]:
        async with self._lock:
            records = self.pool.records
            if not records:
                raise NoCredentialError("No API keys configured")

            index, cursor = pick_round_robin(
                [record.eligible for record in records], self.pool.cursor
            )
            if index is None:
                logger.warning(
                    "No healthy credential among %d, falling back to key %s",
                    len(records),
                    records[0].key_prefix(),
                )
                return records[0].secret, records[0].index

            self.pool.cursor = cursor
            return records[index].secret, records[index].index

    async def acquire(self, index: int) -> Tuple[str, int]:
        """Return the secret of a specific credential, for session affinity."""
        async with self._lock:
            record = self._record(index)
            if record is None:
                raise NoCredentialError(f"Credential {index} is not configured")
            return record.secret, record.index

    async def report_success(self, index: int) -> None:
        async with self._lock:
            record = self._record(index)
            if record is None:
                logger.warning("Success reported for unknown credential %s", index)
                return

            record.last_used = datetime.now()
            if record.error_count > 0:
                record.error_count -= 1
            if record.error_count == 0 and not record.healthy:
                record.healthy = True
                logger.info("Credential %s recovered", record.key_prefix())

            await self._save()

    async def report_failure(self, index: int, failure: FailureInfo) -> None:
        async with self._lock:
            record = self._record(index)
            if record is None:
                logger.warning("Failure reported for unknown credential %s", index)
                return

            record.error_count += 1
            record.last_error = datetime.now()
            record.last_error_message = failure.message[:200] or None

            if failure.is_quota and not record.quota_exhausted:
                record.quota_exhausted = True
                logger.warning("Credential %s quota exhausted", record.key_prefix())

            if record.error_count >= self.unhealthy_threshold and record.healthy:
                record.healthy = False
                logger.warning(
                    "Credential %s marked unhealthy after %d errors",
                    record.key_prefix(),
                    record.error_count,
                )

            await self._save()

    async def reconfigure(self, secrets: Sequence[str]) -> None:
        async with self._lock:
            self.pool.records = [
                CredentialRecord(index=index, secret=secret)
                for index, secret in enumerate(secrets)
            ]
            self.pool.cursor = 0
            await self._save()
            logger.info("Credential pool configured with %d keys", len(secrets))

    async def reset(self) -> None:
        """Clear quota exhaustion and error counters on every credential."""
        async with self._lock:
            for record in self.pool.records:
                record.healthy = True
                record.quota_exhausted = False
                record.error_count = 0
            await self._save()

    def get_status(self) -> Dict[str, object]:
        records = self.pool.records
        return {
            "total_keys": len(records),
            "available_keys": sum(1 for record in records if record.eligible),
            "exhausted_keys": sum(1 for record in records if record.quota_exhausted),
            "unhealthy_keys": sum(1 for record in records if not record.healthy),
            "cursor": self.pool.cursor,
            "keys": [self._format_record_status(record) for record in records],
        }

    def get_record_status(self, index: int) -> Optional[Dict[str, object]]:
        record = self._record(index)
        if record is None:
            return None
        return self._format_record_status(record)

    def snapshot(self) -> Dict[str, object]:
        """Full state including secrets, for trusted pool clients."""
        return {
            "cursor": self.pool.cursor,
            "records": [
                {**record.to_state(), "secret": record.secret}
                for record in self.pool.records
            ],
        }

    def _format_record_status(self, record: CredentialRecord) -> Dict[str, object]:
        return {
            "index": record.index,
            "key_prefix": record.key_prefix(),
            "healthy": record.healthy,
            "quota_exhausted": record.quota_exhausted,
            "error_count": record.error_count,
            "last_used": record.last_used,
            "last_error": record.last_error,
            "last_error_message": record.last_error_message,
        }

    def _record(self, index: int) -> Optional[CredentialRecord]:
        if 0 <= index < len(self.pool.records):
            return self.pool.records[index]
        return None

    async def _save(self) -> None:
        await self._store.set(
            {
                RECORDS_KEY: [record.to_state() for record in self.pool.records],
                SECRETS_KEY: [record.secret for record in self.pool.records],
                CURSOR_KEY: self.pool.cursor,
            }
        )
