"""Shared fixtures: scripted grammar oracles with call counters."""

import asyncio
from collections import Counter

import pytest
import torch

from guidemask.errors import GrammarCompilationError, IncompatibleVocabulary, InadmissibleTokenError
from guidemask.grammar import RegexGrammar
from guidemask.session import GrammarSession
from guidemask.vocabulary import CanonicalVocabulary


class LiteralOracle:
    """Accepts exactly the literal text of a regex pattern, one character per token.

    Cursors are integer positions into the expected token sequence.
    """

    def __init__(self, vocabulary):
        self.vocabulary = vocabulary
        self.calls = Counter()
        self.probed = []
        self._sequence = []

    @property
    def vocab_size(self):
        return self.vocabulary.vocab_size

    def compile(self, description):
        self.calls["compile"] += 1
        if not isinstance(description, RegexGrammar):
            raise GrammarCompilationError("literal oracle only understands regex literals")
        if description.pattern.count("(") != description.pattern.count(")"):
            raise GrammarCompilationError(f"unbalanced parenthesis in /{description.pattern}/")
        sequence = []
        for char in description.pattern:
            token_id = self.vocabulary.lookup(char)
            if token_id is None:
                raise IncompatibleVocabulary(f"no token for {char!r}")
            sequence.append(token_id)
        self._sequence = sequence
        return 0

    def probe(self, cursor, token_id):
        self.calls["probe"] += 1
        self.probed.append(token_id)
        return cursor < len(self._sequence) and self._sequence[cursor] == token_id

    def materialize_mask(self, cursor):
        self.calls["materialize_mask"] += 1
        mask = torch.zeros(self.vocab_size, dtype=torch.bool)
        if cursor < len(self._sequence):
            mask[self._sequence[cursor]] = True
        return mask

    def transition(self, cursor, token_id):
        self.calls["transition"] += 1
        if cursor >= len(self._sequence) or self._sequence[cursor] != token_id:
            raise InadmissibleTokenError(token_id)
        return cursor + 1

    def is_accepting(self, cursor):
        self.calls["is_accepting"] += 1
        return cursor == len(self._sequence)

    def stop_reason(self, cursor):
        return "NoExtension" if cursor == len(self._sequence) else "NotStopped"

    def reinitialize(self, cursor, description):
        self.calls["reinitialize"] += 1
        return self.compile(description)


class SetOracle:
    """Admits a fixed set of tokens at every step; accepting after ``accept_after`` tokens."""

    def __init__(self, vocab_size, allowed, accept_after=None):
        self._vocab_size = vocab_size
        self.allowed = set(allowed)
        self.accept_after = accept_after
        self.calls = Counter()
        self.probed = []

    @property
    def vocab_size(self):
        return self._vocab_size

    def compile(self, description):
        self.calls["compile"] += 1
        return 0

    def probe(self, cursor, token_id):
        self.calls["probe"] += 1
        self.probed.append(token_id)
        return token_id in self.allowed

    def materialize_mask(self, cursor):
        self.calls["materialize_mask"] += 1
        mask = torch.zeros(self._vocab_size, dtype=torch.bool)
        for token_id in self.allowed:
            mask[token_id] = True
        return mask

    def transition(self, cursor, token_id):
        self.calls["transition"] += 1
        if token_id not in self.allowed:
            raise InadmissibleTokenError(token_id)
        return cursor + 1

    def is_accepting(self, cursor):
        return self.accept_after is not None and cursor >= self.accept_after

    def stop_reason(self, cursor):
        return "NotStopped"

    def reinitialize(self, cursor, description):
        self.calls["reinitialize"] += 1
        return 0


def make_vocabulary(tokens, **kwargs):
    return CanonicalVocabulary(token_to_id={token: i for i, token in enumerate(tokens)}, **kwargs)


def open_session(description, vocabulary, oracle, **kwargs):
    """Create a session synchronously around a prebuilt oracle."""
    return asyncio.run(
        GrammarSession.create(description, vocabulary, oracle_factory=lambda _: oracle, **kwargs)
    )


@pytest.fixture
def hi_vocabulary():
    return make_vocabulary(["h", "i"])


@pytest.fixture
def hi_oracle(hi_vocabulary):
    return LiteralOracle(hi_vocabulary)


@pytest.fixture
def hi_session(hi_vocabulary, hi_oracle):
    return open_session(RegexGrammar("hi"), hi_vocabulary, hi_oracle)

