"""Access to the coordinator from a request-handling context."""

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

import httpx

from keyrelay.coordinator import (
    AcquireCredential,
    Coordinator,
    GetSession,
    ListSessions,
    Operation,
    PoolSnapshot,
    Reconfigure,
    RemoveSessions,
    ReportFailure,
    ReportSuccess,
    SaveSession,
    SelectCredential,
    operation_to_message,
)
from keyrelay.credential_pool import pick_round_robin
from keyrelay.errors import FailureInfo, NoCredentialError, RelayError

logger = logging.getLogger(__name__)

DISPATCH_PATH = "/coordinator/dispatch"


class PoolClient(Protocol):
    async def select(self) -> Tuple[str, int]: ...

    async def acquire(self, index: int) -> Tuple[str, int]: ...

    async def report_success(self, index: int) -> None: ...

    async def report_failure(self, index: int, failure: FailureInfo) -> None: ...

    async def reconfigure(self, secrets: Sequence[str]) -> None: ...

    async def get_session(self, session_id: str) -> Optional[Dict[str, Any]]: ...

    async def save_session(self, session_id: str, data: Dict[str, Any]) -> None: ...

    async def list_sessions(self) -> Dict[str, Dict[str, Any]]: ...

    async def remove_sessions(self, session_ids: List[str]) -> None: ...


class _OperationClient(ABC):
    """Typed pool/session calls on top of a single ``_call`` primitive."""

    @abstractmethod
    async def _call(self, operation: Operation) -> Dict[str, Any]:
        """Run one coordinator operation and return its result document."""

    async def select(self) -> Tuple[str, int]:
        result = await self._call(SelectCredential())
        return result["secret"], int(result["index"])

    async def acquire(self, index: int) -> Tuple[str, int]:
        result = await self._call(AcquireCredential(index=index))
        return result["secret"], int(result["index"])

    async def report_success(self, index: int) -> None:
        await self._call(ReportSuccess(index=index))

    async def report_failure(self, index: int, failure: FailureInfo) -> None:
        await self._call(ReportFailure(index=index, failure=failure))

    async def reconfigure(self, secrets: Sequence[str]) -> None:
        await self._call(Reconfigure(secrets=list(secrets)))

    async def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        result = await self._call(GetSession(session_id=session_id))
        return result.get("session")

    async def save_session(self, session_id: str, data: Dict[str, Any]) -> None:
        await self._call(SaveSession(session_id=session_id, data=data))

    async def list_sessions(self) -> Dict[str, Dict[str, Any]]:
        result = await self._call(ListSessions())
        return result.get("sessions") or {}

    async def remove_sessions(self, session_ids: List[str]) -> None:
        if session_ids:
            await self._call(RemoveSessions(session_ids=list(session_ids)))


class LocalPoolClient(_OperationClient):
    """Runs operations against a coordinator in the same process."""

    def __init__(self, coordinator: Coordinator):
        self._coordinator = coordinator

    async def _call(self, operation: Operation) -> Dict[str, Any]:
        return await self._coordinator.dispatch(operation)


class RemotePoolClient(_OperationClient):
    """Talks to the coordinator over HTTP and caches the last pool snapshot.

    ``select()`` is served from the cached snapshot while it is younger than
    ``cache_ttl_seconds``; every mutation goes to the coordinator and replaces
    the cache with the state it acknowledges.
    """

    def __init__(self, http_client: httpx.AsyncClient, cache_ttl_seconds: float = 5.0):
        self._http_client = http_client
        self.cache_ttl_seconds = cache_ttl_seconds
        self._snapshot: Optional[Dict[str, Any]] = None
        self._fetched_at = 0.0
        self._cursor = 0

    @property
    def cached_snapshot(self) -> Optional[Dict[str, Any]]:
        return self._snapshot

    def _cache_fresh(self) -> bool:
        return (
            self._snapshot is not None
            and bool(self._snapshot.get("records"))
            and time.monotonic() - self._fetched_at < self.cache_ttl_seconds
        )

    def _remember(self, result: Dict[str, Any]) -> None:
        snapshot = result.get("snapshot")
        if snapshot is not None:
            self._snapshot = snapshot
            self._fetched_at = time.monotonic()
            self._cursor = int(snapshot.get("cursor", 0))

    def invalidate(self) -> None:
        self._snapshot = None

    async def _call(self, operation: Operation) -> Dict[str, Any]:
        response = await self._http_client.post(
            DISPATCH_PATH, json=operation_to_message(operation)
        )
        if response.status_code == 503:
            raise NoCredentialError(_detail(response))
        if response.status_code >= 400:
            raise RelayError(
                f"Coordinator rejected {operation.kind.value}: "
                f"{response.status_code} {_detail(response)}"
            )
        result = response.json()
        self._remember(result)
        return result

    async def select(self) -> Tuple[str, int]:
        if self._cache_fresh():
            records = self._snapshot["records"]
            index, cursor = pick_round_robin(
                [
                    record["healthy"] and not record["quota_exhausted"]
                    for record in records
                ],
                self._cursor,
            )
            if index is not None:
                self._cursor = cursor
                return records[index]["secret"], int(records[index]["index"])
        return await super().select()

    async def refresh(self) -> None:
        await self._call(PoolSnapshot())


def _detail(response: httpx.Response) -> str:
    try:
        return str(response.json().get("detail", ""))
    except ValueError:
        return response.text
