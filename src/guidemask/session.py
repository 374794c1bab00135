"""Grammar session: one compiled grammar bound to one vocabulary.

A session wraps a single :class:`GrammarOracle`, the external engine that
compiles grammars and decides token admissibility. The grammar state itself
is an opaque cursor owned by the oracle; the session only threads it through
the oracle's operations and caches the mask for the current cursor.

Sessions model one generation stream. They are not copyable and must not be
shared between concurrent callers; independent streams use independent
sessions, which may share the same read-only vocabulary.
"""

import asyncio
import logging
import threading
from typing import Any, Callable, Optional, Protocol

import torch

from guidemask.config import validate_advance_default
from guidemask.errors import (
    ConcurrentUseError,
    InadmissibleTokenError,
    SessionOwnershipError,
    SessionPoisonedError,
)
from guidemask.grammar import GrammarDescription, describe
from guidemask.vocabulary import CanonicalVocabulary

logger = logging.getLogger(__name__)


class GrammarOracle(Protocol):
    """Token admissibility engine bound to one vocabulary.

    Cursors are opaque to callers. ``transition`` and ``reinitialize`` may
    update a cursor in place; callers always use the returned value.
    """

    @property
    def vocab_size(self) -> int:
        ...

    def compile(self, description: GrammarDescription) -> Any:
        """Compile a grammar and return a cursor at its start state."""
        ...

    def probe(self, cursor: Any, token_id: int) -> bool:
        ...

    def materialize_mask(self, cursor: Any) -> torch.Tensor:
        """Boolean tensor of shape ``(vocab_size,)``."""
        ...

    def transition(self, cursor: Any, token_id: int) -> Any:
        """Consume a token. Raises InadmissibleTokenError if the engine rejects it."""
        ...

    def is_accepting(self, cursor: Any) -> bool:
        ...

    def stop_reason(self, cursor: Any) -> str:
        """Engine-specific description of why generation may stop, for diagnostics."""
        ...

    def reinitialize(self, cursor: Any, description: GrammarDescription) -> Any:
        ...


OracleFactory = Callable[[CanonicalVocabulary], GrammarOracle]


def _default_oracle_factory(vocabulary: CanonicalVocabulary) -> GrammarOracle:
    from guidemask.utils.llguidance_oracle import LlguidanceOracle
    return LlguidanceOracle(vocabulary)


class GrammarSession:
    """Stateful handle on a compiled grammar for one generation stream.

    Use :meth:`create` to build one. Inadmissible tokens passed to
    :meth:`advance` are rejected and reported: the session raises
    :class:`InadmissibleTokenError` and refuses further use until
    :meth:`reset`.

    Attributes:
        validate_advance: Probe each token before advancing, so a rejected
            token leaves the cursor untouched.
    """

    def __init__(
        self,
        oracle: GrammarOracle,
        cursor: Any,
        description: GrammarDescription,
        vocabulary: CanonicalVocabulary,
        validate_advance: bool = False,
    ):
        self._oracle = oracle
        self._cursor = cursor
        self._description = description
        self._vocabulary = vocabulary
        self._vocab_size = vocabulary.vocab_size
        self.validate_advance = validate_advance

        self._mask: Optional[torch.Tensor] = None
        self._poisoned: Optional[str] = None
        self._owner: Optional[object] = None
        self._steps = 0
        self._lock = threading.Lock()

    @classmethod
    async def create(
        cls,
        description: GrammarDescription,
        vocabulary: CanonicalVocabulary,
        *,
        oracle_factory: Optional[OracleFactory] = None,
        validate_advance: Optional[bool] = None,
    ) -> 'GrammarSession':
        """Compile a grammar against a vocabulary.

        Compilation runs in a worker thread. If the caller cancels the await,
        the result is discarded.

        Args:
            description: Grammar to enforce.
            vocabulary: Canonical vocabulary of the model.
            oracle_factory: Builds the oracle for ``vocabulary``; llguidance
                by default.
            validate_advance: Defaults to ``GUIDEMASK_VALIDATE_ADVANCE``.

        Returns:
            A session at the grammar's start state.

        Raises:
            GrammarCompilationError: If the description is malformed.
            IncompatibleVocabulary: If the grammar cannot use this vocabulary.
        """
        factory = oracle_factory or _default_oracle_factory
        if validate_advance is None:
            validate_advance = validate_advance_default()

        def build():
            oracle = factory(vocabulary)
            return oracle, oracle.compile(description)

        oracle, cursor = await asyncio.to_thread(build)
        logger.info("Compiled %s grammar over %d tokens", describe(description), vocabulary.vocab_size)
        return cls(oracle, cursor, description, vocabulary, validate_advance=validate_advance)

    @classmethod
    async def create_for_model(
        cls,
        description: GrammarDescription,
        model_id: str,
        *,
        oracle_factory: Optional[OracleFactory] = None,
        validate_advance: Optional[bool] = None,
        **fetch_kwargs,
    ) -> 'GrammarSession':
        """Fetch a model's tokenizer from the hub, then :meth:`create`.

        Args:
            description: Grammar to enforce.
            model_id: Hugging Face model identifier.
            **fetch_kwargs: Passed to :func:`~guidemask.utils.tokenizer_bridge.load_vocabulary`.

        Raises:
            FetchFailure: If the tokenizer could not be downloaded.
        """
        from guidemask.utils.tokenizer_bridge import load_vocabulary

        vocabulary = await load_vocabulary(model_id, **fetch_kwargs)
        return await cls.create(
            description,
            vocabulary,
            oracle_factory=oracle_factory,
            validate_advance=validate_advance,
        )

    @property
    def vocab_size(self) -> int:
        return self._vocab_size

    @property
    def vocabulary(self) -> CanonicalVocabulary:
        return self._vocabulary

    @property
    def description(self) -> GrammarDescription:
        return self._description

    @property
    def steps(self) -> int:
        """Tokens consumed since creation or the last reset."""
        return self._steps

    def _check_usable(self) -> None:
        if self._poisoned is not None:
            raise SessionPoisonedError(f"Session must be reset before reuse: {self._poisoned}")

    def is_token_allowed(self, token_id: int) -> bool:
        """Whether ``token_id`` is admissible at the current state.

        Ids outside ``[0, vocab_size)`` are never admissible.
        """
        self._check_usable()
        if not 0 <= token_id < self._vocab_size:
            return False
        if self._mask is not None:
            return bool(self._mask[token_id])
        return bool(self._oracle.probe(self._cursor, token_id))

    def get_token_mask(self) -> torch.Tensor:
        """Full admissibility mask for the current state.

        Returns:
            Boolean tensor of shape ``(vocab_size,)``.
        """
        self._check_usable()
        if self._mask is None:
            mask = self._oracle.materialize_mask(self._cursor)
            if mask.shape != (self._vocab_size,):
                raise ValueError(
                    f"Oracle returned a mask of shape {tuple(mask.shape)}, expected ({self._vocab_size},)"
                )
            self._mask = mask.to(torch.bool)
        return self._mask.clone()

    def advance(self, token_id: int) -> None:
        """Consume a sampled token.

        Raises:
            InadmissibleTokenError: If the grammar rejects the token.
            ConcurrentUseError: If another advance is in progress.
        """
        self._check_usable()
        if not self._lock.acquire(blocking=False):
            raise ConcurrentUseError("GrammarSession.advance called concurrently; use one session per stream")
        try:
            if self.validate_advance and not self.is_token_allowed(token_id):
                raise InadmissibleTokenError(token_id)
            try:
                self._cursor = self._oracle.transition(self._cursor, token_id)
            except Exception as exc:
                self._poisoned = str(exc)
                logger.warning("Session poisoned after step %d: %s", self._steps, exc)
                raise
            finally:
                self._mask = None
            self._steps += 1
        finally:
            self._lock.release()

    def is_complete(self) -> bool:
        """Whether generation may legally stop here. Further tokens may still be admissible."""
        self._check_usable()
        return bool(self._oracle.is_accepting(self._cursor))

    def stop_reason(self) -> str:
        """Why the grammar state stopped, e.g. 'NotStopped' or 'NoExtension'."""
        self._check_usable()
        return self._oracle.stop_reason(self._cursor)

    def reset(self, description: Optional[GrammarDescription] = None) -> None:
        """Return to the start state, optionally switching grammar.

        The vocabulary and the oracle's vocabulary-dependent structures are kept.

        Raises:
            GrammarCompilationError: If the new description is malformed; the
                session is then poisoned.
        """
        new_description = description if description is not None else self._description
        self._mask = None
        try:
            self._cursor = self._oracle.reinitialize(self._cursor, new_description)
        except Exception as exc:
            self._poisoned = f"reset failed: {exc}"
            raise
        self._description = new_description
        self._poisoned = None
        self._steps = 0

    def claim(self, owner: object) -> None:
        """Bind the session to a single processor.

        Raises:
            SessionOwnershipError: If another owner already holds the session.
        """
        if self._owner is not None and self._owner is not owner:
            raise SessionOwnershipError(
                "GrammarSession is already bound to another processor; create one session per stream"
            )
        self._owner = owner

    def release(self, owner: object) -> None:
        if self._owner is owner:
            self._owner = None

    def __copy__(self):
        raise TypeError("GrammarSession cannot be copied; create one session per stream")

    def __deepcopy__(self, memo):
        raise TypeError("GrammarSession cannot be copied; create one session per stream")

    def __reduce_ex__(self, protocol):
        raise TypeError("GrammarSession cannot be pickled")

    def __repr__(self) -> str:
        return (
            f"GrammarSession({describe(self._description)}, vocab_size={self._vocab_size}, "
            f"steps={self._steps})"
        )
