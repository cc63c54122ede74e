"""Error taxonomy and failure classification."""

from dataclasses import dataclass
from typing import Any, Dict, Optional, cast

KIND_QUOTA = "quota"
KIND_TRANSIENT = "transient"

QUOTA_MARKERS = ("quota", "limit", "resource_exhausted", "resource exhausted")

SAFETY_FINISH_REASONS = frozenset(
    {"SAFETY", "BLOCKLIST", "PROHIBITED_CONTENT", "SPII", "IMAGE_SAFETY"}
)


class RelayError(Exception):
    """Base class for every error raised by keyrelay."""


class NoCredentialError(RelayError):
    """The credential pool is empty or the requested credential is gone."""


class ProviderError(RelayError):
    """A failed exchange with the generative text provider."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        credential_index: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.credential_index = credential_index


class QuotaExceeded(ProviderError):
    pass


class TransientProviderError(ProviderError):
    pass


class StreamDecodeError(TransientProviderError):
    """A streaming body yielded no decodable record at all."""


class ContentBlocked(RelayError):
    """The provider refused to answer for safety reasons."""

    def __init__(self, reason: str):
        super().__init__(f"Content blocked by provider: {reason}")
        self.reason = reason


class StreamedAPIError(RelayError):
    """An error object delivered inside a streaming body."""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.code = code


class StreamDecodeWarning(UserWarning):
    """A malformed line inside a streaming body. Logged, never raised."""


class FileResolutionError(RelayError):
    pass


class UnknownOperationError(RelayError):
    pass


@dataclass(frozen=True)
class FailureInfo:
    """A classified provider failure, as reported to the credential pool."""

    kind: str
    message: str = ""
    status_code: Optional[int] = None

    @property
    def is_quota(self) -> bool:
        return self.kind == KIND_QUOTA

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "status_code": self.status_code,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FailureInfo":
        kind = data.get("kind")
        message = str(data.get("message") or "")
        status_code = data.get("status_code")
        if kind not in (KIND_QUOTA, KIND_TRANSIENT):
            return classify_failure(status_code, message)
        return cls(kind=cast(str, kind), message=message, status_code=status_code)


def classify_failure(status_code: Optional[int], message: str) -> FailureInfo:
    """Classify a transport failure as quota exhaustion or a transient error."""
    lowered = (message or "").lower()
    if status_code == 429 or any(marker in lowered for marker in QUOTA_MARKERS):
        return FailureInfo(KIND_QUOTA, message, status_code)
    return FailureInfo(KIND_TRANSIENT, message, status_code)


def error_for_failure(
    failure: FailureInfo, credential_index: Optional[int] = None
) -> ProviderError:
    if failure.is_quota:
        return QuotaExceeded(failure.message, failure.status_code, credential_index)
    return TransientProviderError(
        failure.message, failure.status_code, credential_index
    )


def user_message(error: BaseException) -> str:
    """Text the UI layer shows for a failed turn."""
    if isinstance(error, ContentBlocked):
        return "Content blocked by safety filters - Try rephrasing your text"
    if isinstance(error, QuotaExceeded):
        return "API rate limit reached - Please try again in a few minutes"
    return "Something went wrong - Please try again"
