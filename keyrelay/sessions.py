"""Conversation sessions: per-conversation history bound to one credential."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional

from keyrelay.models import ROLE_ASSISTANT, ROLE_USER, ChatMessage, ConversationSession
from keyrelay.pool_client import PoolClient

logger = logging.getLogger(__name__)


class SessionStore:
    """Keeps active sessions in memory and persists them through the pool client.

    Responsibilities:
    - Create sessions and bind each to one credential at creation
    - Append turns and persist completed ones
    - Evict idle sessions on a coarse background timer
    """

    def __init__(
        self,
        pool_client: PoolClient,
        session_timeout_minutes: int = 30,
        max_sessions: int = 50,
    ):
        self._pool_client = pool_client
        self._sessions: Dict[str, ConversationSession] = {}
        self._session_timeout = timedelta(minutes=session_timeout_minutes)
        self.max_sessions = max_sessions
        self._cleanup_task: Optional[asyncio.Task] = None
        self._creation_lock = asyncio.Lock()

    @property
    def active_session_count(self) -> int:
        return len(self._sessions)

    def get_cached(self, session_id: str) -> Optional[ConversationSession]:
        return self._sessions.get(session_id)

    async def get(self, session_id: str) -> Optional[ConversationSession]:
        session = self._sessions.get(session_id)
        if session is not None:
            return session
        stored = await self._pool_client.get_session(session_id)
        if stored is None:
            return None
        session = ConversationSession.from_dict(stored)
        self._sessions[session_id] = session
        return session

    async def get_or_create(
        self, external_key: str, metadata: Optional[Mapping[str, Any]] = None
    ) -> ConversationSession:
        """Return the session for ``external_key``, creating and binding it if absent.

        Args:
            external_key: Stable identifier of the conversation, e.g. a thread id.
            metadata: Context attached only when the session is created.

        Returns:
            The existing or newly created session.
        """
        async with self._creation_lock:
            session = await self.get(external_key)
            if session is not None:
                return session

            _, index = await self._pool_client.select()
            session = ConversationSession(
                id=external_key,
                bound_credential_index=index,
                metadata=dict(metadata or {}),
            )
            self._sessions[external_key] = session
            await self.save(session)
            logger.info(
                "Created session %s bound to credential %s (total sessions: %d)",
                external_key,
                index,
                len(self._sessions),
            )
            return session

    def append_user_turn(self, session: ConversationSession, text: str) -> None:
        session.messages.append(ChatMessage(role=ROLE_USER, text=text))

    async def complete_turn(self, session: ConversationSession, reply_text: str) -> None:
        session.messages.append(ChatMessage(role=ROLE_ASSISTANT, text=reply_text))
        await self.save(session)

    async def rebind(self, session: ConversationSession) -> int:
        """Bind the session to a freshly selected credential for its next turn."""
        previous = session.bound_credential_index
        _, index = await self._pool_client.select()
        session.bound_credential_index = index
        await self.save(session)
        logger.info(
            "Session %s rebound from credential %s to %s", session.id, previous, index
        )
        return index

    async def save(self, session: ConversationSession) -> None:
        session.last_updated = datetime.now()
        await self._pool_client.save_session(session.id, session.to_dict())

    async def cleanup_idle(self, max_age: Optional[timedelta] = None) -> int:
        """Evict sessions idle longer than ``max_age`` and trim to ``max_sessions``.

        Returns:
            Number of sessions evicted.
        """
        max_age = max_age or self._session_timeout
        now = datetime.now()

        stored = await self._pool_client.list_sessions()
        sessions: Dict[str, ConversationSession] = {
            session_id: ConversationSession.from_dict(data)
            for session_id, data in stored.items()
        }
        sessions.update(self._sessions)

        expired: List[str] = [
            session_id
            for session_id, session in sessions.items()
            if now - session.last_activity > max_age
        ]

        remaining = sorted(
            (s for sid, s in sessions.items() if sid not in expired),
            key=lambda s: s.last_updated,
            reverse=True,
        )
        expired.extend(s.id for s in remaining[self.max_sessions:])

        for session_id in expired:
            self._sessions.pop(session_id, None)
        await self._pool_client.remove_sessions(expired)

        if expired:
            logger.info("Cleaned up %d idle session(s)", len(expired))
        return len(expired)

    async def start_cleanup_task(self, interval_seconds: float) -> None:
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._cleanup_loop(interval_seconds))
            logger.info("Started session cleanup task (every %ss)", interval_seconds)

    async def stop_cleanup_task(self) -> None:
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
            logger.info("Stopped session cleanup task")

    async def _cleanup_loop(self, interval_seconds: float) -> None:
        while True:
            try:
                await asyncio.sleep(interval_seconds)
                await self.cleanup_idle()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Error in session cleanup task")
