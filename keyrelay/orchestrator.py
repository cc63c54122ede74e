"""Caller-facing surface: conversation turns routed through the credential pool."""

import logging
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence, Tuple

from keyrelay.errors import FailureInfo, QuotaExceeded, TransientProviderError
from keyrelay.files import FileResolver, resolve_all
from keyrelay.models import (
    Chunk,
    ConversationSession,
    FileReference,
    GenerationOptions,
    GenerationResult,
)
from keyrelay.pool_client import PoolClient
from keyrelay.reporting import OutcomeReporter
from keyrelay.request_builder import build_request
from keyrelay.response_client import ResponseClient
from keyrelay.sessions import SessionStore

logger = logging.getLogger(__name__)


class SessionOrchestrator:
    """Runs conversation turns with session affinity.

    A turn is sent with the session's bound credential. When it fails with a
    quota or transient error the session is rebound for the next turn; the
    failed turn itself is surfaced to the caller and never retried here.
    """

    def __init__(
        self,
        sessions: SessionStore,
        client: ResponseClient,
        pool_client: PoolClient,
        reporter: OutcomeReporter,
        max_history_messages: int = 10,
        file_resolver: Optional[FileResolver] = None,
    ):
        self.sessions = sessions
        self._client = client
        self._pool_client = pool_client
        self._reporter = reporter
        self.max_history_messages = max_history_messages
        self._file_resolver = file_resolver

    async def select_credential(self) -> Tuple[str, int]:
        return await self._pool_client.select()

    def report_outcome(self, index: int, failure: Optional[FailureInfo] = None) -> None:
        """Report a request outcome; ``failure=None`` means success."""
        if failure is None:
            self._reporter.report_success(index)
        else:
            self._reporter.report_failure(index, failure)

    async def get_or_create_session(
        self, external_key: str, metadata: Optional[Mapping[str, Any]] = None
    ) -> ConversationSession:
        return await self.sessions.get_or_create(external_key, metadata)

    async def _build(
        self,
        session: ConversationSession,
        options: GenerationOptions,
        system_instruction: Optional[str],
        files: Optional[Sequence[FileReference]],
    ) -> Dict[str, Any]:
        references: List[FileReference] = list(files or [])
        if references and self._file_resolver is not None:
            references = await resolve_all(
                self._file_resolver, references, session.bound_credential_index
            )

        history = session.messages[-self.max_history_messages:]
        return build_request(
            history,
            options=options,
            system_instruction=system_instruction,
            files=references,
            context=session.metadata,
        )

    async def _rebind_after(self, session: ConversationSession, exc: Exception) -> None:
        logger.warning(
            "Turn failed for session %s on credential %s: %s",
            session.id,
            session.bound_credential_index,
            exc,
        )
        # Let the failure reach the pool before choosing the next credential.
        await self._reporter.flush()
        await self.sessions.rebind(session)

    async def send_turn(
        self,
        session: ConversationSession,
        text: str,
        options: Optional[GenerationOptions] = None,
        system_instruction: Optional[str] = None,
        files: Optional[Sequence[FileReference]] = None,
    ) -> GenerationResult:
        """Append a user turn, generate the reply and record it.

        Raises:
            QuotaExceeded, TransientProviderError: The turn failed; the
                session has been rebound to another credential.
            ContentBlocked: The provider refused to answer.
            NoCredentialError: The pool is empty.
        """
        options = options or GenerationOptions()
        self.sessions.append_user_turn(session, text)
        payload = await self._build(session, options, system_instruction, files)

        try:
            result = await self._client.send(
                payload,
                session.id,
                credential_index=session.bound_credential_index,
                model=options.model,
            )
        except (QuotaExceeded, TransientProviderError) as exc:
            await self._rebind_after(session, exc)
            raise

        if result.credential_index != session.bound_credential_index:
            session.bound_credential_index = result.credential_index
        await self.sessions.complete_turn(session, result.text)
        return result

    async def stream_turn(
        self,
        session: ConversationSession,
        text: str,
        options: Optional[GenerationOptions] = None,
        system_instruction: Optional[str] = None,
        files: Optional[Sequence[FileReference]] = None,
    ) -> AsyncIterator[Chunk]:
        """Like :meth:`send_turn`, yielding the reply as it is generated.

        The assistant message is recorded only when the stream completes.
        Closing the iterator early leaves no assistant message behind.
        """
        options = options or GenerationOptions()
        self.sessions.append_user_turn(session, text)
        payload = await self._build(session, options, system_instruction, files)

        _, index = await self._client.resolve_credential(session.bound_credential_index)
        if index != session.bound_credential_index:
            session.bound_credential_index = index
            await self.sessions.save(session)

        parts: List[str] = []
        stream = self._client.stream(
            payload,
            session.id,
            credential_index=index,
            model=options.model,
        )
        try:
            async for chunk in stream:
                parts.append(chunk.text)
                yield chunk
        except (QuotaExceeded, TransientProviderError) as exc:
            await self._rebind_after(session, exc)
            raise
        finally:
            await stream.aclose()

        await self.sessions.complete_turn(session, "".join(parts))
