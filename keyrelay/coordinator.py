"""Single authoritative owner of pool and session state.

Every context talks to the coordinator through a closed set of typed
operations. Unknown operations are rejected, never silently defaulted.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, List, Mapping, Union

from keyrelay.credential_pool import CredentialPool
from keyrelay.errors import FailureInfo, UnknownOperationError
from keyrelay.store import KeyValueStore

logger = logging.getLogger(__name__)

SESSION_PREFIX = "session_"


def session_key(session_id: str) -> str:
    return f"{SESSION_PREFIX}{session_id}"


class OperationKind(str, Enum):
    SELECT_CREDENTIAL = "select_credential"
    ACQUIRE_CREDENTIAL = "acquire_credential"
    REPORT_SUCCESS = "report_success"
    REPORT_FAILURE = "report_failure"
    RECONFIGURE = "reconfigure"
    RESET_POOL = "reset_pool"
    POOL_SNAPSHOT = "pool_snapshot"
    GET_SESSION = "get_session"
    SAVE_SESSION = "save_session"
    LIST_SESSIONS = "list_sessions"
    REMOVE_SESSIONS = "remove_sessions"


@dataclass(frozen=True)
class SelectCredential:
    kind: ClassVar[OperationKind] = OperationKind.SELECT_CREDENTIAL


@dataclass(frozen=True)
class AcquireCredential:
    index: int
    kind: ClassVar[OperationKind] = OperationKind.ACQUIRE_CREDENTIAL


@dataclass(frozen=True)
class ReportSuccess:
    index: int
    kind: ClassVar[OperationKind] = OperationKind.REPORT_SUCCESS


@dataclass(frozen=True)
class ReportFailure:
    index: int
    failure: FailureInfo
    kind: ClassVar[OperationKind] = OperationKind.REPORT_FAILURE


@dataclass(frozen=True)
class Reconfigure:
    secrets: List[str]
    kind: ClassVar[OperationKind] = OperationKind.RECONFIGURE


@dataclass(frozen=True)
class ResetPool:
    kind: ClassVar[OperationKind] = OperationKind.RESET_POOL


@dataclass(frozen=True)
class PoolSnapshot:
    kind: ClassVar[OperationKind] = OperationKind.POOL_SNAPSHOT


@dataclass(frozen=True)
class GetSession:
    session_id: str
    kind: ClassVar[OperationKind] = OperationKind.GET_SESSION


@dataclass(frozen=True)
class SaveSession:
    session_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    kind: ClassVar[OperationKind] = OperationKind.SAVE_SESSION


@dataclass(frozen=True)
class ListSessions:
    kind: ClassVar[OperationKind] = OperationKind.LIST_SESSIONS


@dataclass(frozen=True)
class RemoveSessions:
    session_ids: List[str]
    kind: ClassVar[OperationKind] = OperationKind.REMOVE_SESSIONS


Operation = Union[
    SelectCredential,
    AcquireCredential,
    ReportSuccess,
    ReportFailure,
    Reconfigure,
    ResetPool,
    PoolSnapshot,
    GetSession,
    SaveSession,
    ListSessions,
    RemoveSessions,
]


def parse_operation(message: Mapping[str, Any]) -> Operation:
    """Build a typed operation from a ``{"op": kind, ...}`` message.

    Raises:
        UnknownOperationError: If ``op`` names no known operation.
        ValueError: If a required field is missing or malformed.
    """
    raw_kind = message.get("op")
    try:
        kind = OperationKind(raw_kind)
    except ValueError:
        raise UnknownOperationError(f"Unknown operation: {raw_kind!r}") from None

    try:
        if kind == OperationKind.SELECT_CREDENTIAL:
            return SelectCredential()
        if kind == OperationKind.ACQUIRE_CREDENTIAL:
            return AcquireCredential(index=int(message["index"]))
        if kind == OperationKind.REPORT_SUCCESS:
            return ReportSuccess(index=int(message["index"]))
        if kind == OperationKind.REPORT_FAILURE:
            return ReportFailure(
                index=int(message["index"]),
                failure=FailureInfo.from_dict(message.get("failure") or {}),
            )
        if kind == OperationKind.RECONFIGURE:
            secrets = message["secrets"]
            if not isinstance(secrets, list) or not all(
                isinstance(item, str) and item for item in secrets
            ):
                raise ValueError("secrets must be a list of non-empty strings")
            return Reconfigure(secrets=list(secrets))
        if kind == OperationKind.RESET_POOL:
            return ResetPool()
        if kind == OperationKind.POOL_SNAPSHOT:
            return PoolSnapshot()
        if kind == OperationKind.GET_SESSION:
            return GetSession(session_id=str(message["session_id"]))
        if kind == OperationKind.SAVE_SESSION:
            data = message["data"]
            if not isinstance(data, dict):
                raise ValueError("data must be an object")
            return SaveSession(session_id=str(message["session_id"]), data=data)
        if kind == OperationKind.LIST_SESSIONS:
            return ListSessions()
        if kind == OperationKind.REMOVE_SESSIONS:
            return RemoveSessions(session_ids=[str(i) for i in message["session_ids"]])
    except (KeyError, TypeError) as exc:
        raise ValueError(f"Malformed {kind.value} operation: {exc}") from exc

    raise UnknownOperationError(f"Unhandled operation: {kind.value}")


def operation_to_message(operation: Operation) -> Dict[str, Any]:
    message: Dict[str, Any] = {"op": operation.kind.value}
    if isinstance(operation, (AcquireCredential, ReportSuccess)):
        message["index"] = operation.index
    elif isinstance(operation, ReportFailure):
        message["index"] = operation.index
        message["failure"] = operation.failure.to_dict()
    elif isinstance(operation, Reconfigure):
        message["secrets"] = list(operation.secrets)
    elif isinstance(operation, GetSession):
        message["session_id"] = operation.session_id
    elif isinstance(operation, SaveSession):
        message["session_id"] = operation.session_id
        message["data"] = operation.data
    elif isinstance(operation, RemoveSessions):
        message["session_ids"] = list(operation.session_ids)
    return message


class Coordinator:
    """Applies operations to the credential pool and the session store."""

    def __init__(self, pool: CredentialPool, store: KeyValueStore):
        self.pool = pool
        self._store = store

    async def dispatch(self, operation: Operation) -> Dict[str, Any]:
        if isinstance(operation, SelectCredential):
            secret, index = await self.pool.select()
            return {"secret": secret, "index": index, "snapshot": self.pool.snapshot()}
        if isinstance(operation, AcquireCredential):
            secret, index = await self.pool.acquire(operation.index)
            return {"secret": secret, "index": index, "snapshot": self.pool.snapshot()}
        if isinstance(operation, ReportSuccess):
            await self.pool.report_success(operation.index)
            return {"snapshot": self.pool.snapshot()}
        if isinstance(operation, ReportFailure):
            await self.pool.report_failure(operation.index, operation.failure)
            return {"snapshot": self.pool.snapshot()}
        if isinstance(operation, Reconfigure):
            await self.pool.reconfigure(operation.secrets)
            return {"snapshot": self.pool.snapshot()}
        if isinstance(operation, ResetPool):
            await self.pool.reset()
            return {"snapshot": self.pool.snapshot()}
        if isinstance(operation, PoolSnapshot):
            return {"snapshot": self.pool.snapshot()}
        if isinstance(operation, GetSession):
            key = session_key(operation.session_id)
            result = await self._store.get(key)
            return {"session": result.get(key)}
        if isinstance(operation, SaveSession):
            await self._store.set({session_key(operation.session_id): operation.data})
            return {}
        if isinstance(operation, ListSessions):
            keys = [key for key in await self._store.keys() if key.startswith(SESSION_PREFIX)]
            stored = await self._store.get(keys)
            return {
                "sessions": {
                    key[len(SESSION_PREFIX):]: value for key, value in stored.items()
                }
            }
        if isinstance(operation, RemoveSessions):
            await self._store.remove([session_key(i) for i in operation.session_ids])
            return {"removed": len(operation.session_ids)}
        raise UnknownOperationError(f"Unhandled operation: {operation!r}")

    async def dispatch_message(self, message: Mapping[str, Any]) -> Dict[str, Any]:
        operation = parse_operation(message)
        logger.debug("Dispatching %s", operation.kind.value)
        return await self.dispatch(operation)
