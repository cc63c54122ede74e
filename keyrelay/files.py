"""Resolution of logical file references into provider file handles."""

import logging
from dataclasses import replace
from typing import Dict, List, Protocol, Sequence, cast

import httpx

from keyrelay.config import Config
from keyrelay.errors import FileResolutionError
from keyrelay.models import FileReference
from keyrelay.pool_client import PoolClient

logger = logging.getLogger(__name__)

STATE_ACTIVE = "ACTIVE"


class FileResolver(Protocol):
    async def resolve(
        self, reference: FileReference, credential_index: int
    ) -> FileReference: ...


async def resolve_all(
    resolver: FileResolver,
    references: Sequence[FileReference],
    credential_index: int,
) -> List[FileReference]:
    """Resolve what can be resolved; failed references come back unresolved."""
    resolved = []
    for reference in references:
        try:
            resolved.append(await resolver.resolve(reference, credential_index))
        except FileResolutionError as exc:
            logger.warning("Could not resolve file %s: %s", reference.name, exc)
            resolved.append(replace(reference, uri=None))
    return resolved


class GeminiFileResolver:
    """Looks up files previously uploaded to the provider's Files API."""

    def __init__(
        self, http_client: httpx.AsyncClient, pool_client: PoolClient, config: Config
    ):
        self._http_client = http_client
        self._pool_client = pool_client
        self._config = config

    async def resolve(
        self, reference: FileReference, credential_index: int
    ) -> FileReference:
        if reference.uri:
            return reference

        name = reference.name
        if not name.startswith("files/"):
            name = f"files/{name}"

        secret, _ = await self._pool_client.acquire(credential_index)
        try:
            response = await self._http_client.get(
                f"/v1beta/{name}", headers={"x-goog-api-key": secret}
            )
        except httpx.RequestError as exc:
            raise FileResolutionError(f"Request error: {exc}") from exc

        if response.status_code != 200:
            raise FileResolutionError(
                f"File lookup failed with status {response.status_code}"
            )

        try:
            data = cast(Dict[str, object], response.json())
        except ValueError as exc:
            raise FileResolutionError("File lookup returned malformed JSON") from exc

        state = data.get("state")
        uri = data.get("uri")
        if state != STATE_ACTIVE or not uri:
            raise FileResolutionError(f"File {name} is not active (state={state})")

        mime_type = str(data.get("mimeType") or reference.mime_type)
        return replace(reference, uri=str(uri), mime_type=mime_type)
