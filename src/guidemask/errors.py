"""Exceptions raised by guidemask."""

from typing import Optional


class GuidemaskError(Exception):
    """Base class for all guidemask errors."""


class VocabularyError(GuidemaskError):
    """A tokenizer could not be normalized into a canonical vocabulary."""


class MissingVocabulary(VocabularyError):
    """No vocabulary source was found on a live tokenizer object."""


class InvalidTokenizerFile(VocabularyError):
    """A serialized tokenizer description has no vocabulary field."""


class GrammarCompilationError(GuidemaskError):
    """The grammar description is malformed and cannot be compiled."""


class IncompatibleVocabulary(GuidemaskError):
    """The grammar engine cannot be bound to the supplied vocabulary."""


class FetchFailure(GuidemaskError):
    """Remote tokenizer retrieval failed.

    Attributes:
        status_code: HTTP status of the response, or None for transport errors.
        url: The URL that was requested.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, url: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.url = url


class InadmissibleTokenError(GuidemaskError):
    """A token was reported that the grammar does not admit at the current state.

    Attributes:
        token_id: The rejected token id.
    """

    def __init__(self, token_id: int, message: Optional[str] = None):
        super().__init__(message or f"Token {token_id} is not admissible at the current grammar state")
        self.token_id = token_id


class SessionPoisonedError(GuidemaskError):
    """The session rejected a token earlier and must be reset before reuse."""


class SessionOwnershipError(GuidemaskError):
    """A session was bound to a second processor."""


class ConcurrentUseError(GuidemaskError):
    """Overlapping calls were made into a single-stream session."""
