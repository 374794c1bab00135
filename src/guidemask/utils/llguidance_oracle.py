import logging
from typing import Any, Dict, List, Optional, Tuple, Union

import llguidance
import llguidance.torch
import torch
from transformers.convert_slow_tokenizer import bytes_to_unicode

from guidemask.config import llguidance_log_level
from guidemask.errors import GrammarCompilationError, IncompatibleVocabulary, InadmissibleTokenError
from guidemask.grammar import GrammarDescription, JsonSchemaGrammar, LarkGrammar, RegexGrammar
from guidemask.vocabulary import CanonicalVocabulary

logger = logging.getLogger(__name__)

_BYTE_DECODER = {char: byte for byte, char in bytes_to_unicode().items()}
_BYTE_LEVEL_MARKERS = ("Ġ", "Ċ")  # 'Ġ' space, 'Ċ' newline
_SENTENCEPIECE_SPACE = "▁"


def _is_byte_level(vocabulary: CanonicalVocabulary) -> bool:
    return any(marker in token for token in vocabulary.token_to_id for marker in _BYTE_LEVEL_MARKERS)


def token_bytes(token: str, byte_level: bool) -> bytes:
    """Raw bytes a vocabulary entry stands for.

    Args:
        token: Token string as stored in the vocabulary.
        byte_level: Whether the vocabulary uses the GPT-2 byte alphabet.
    """
    if len(token) == 6 and token.startswith("<0x") and token.endswith(">"):
        try:
            return bytes([int(token[3:5], 16)])
        except ValueError:
            pass
    if byte_level and all(char in _BYTE_DECODER for char in token):
        return bytes(_BYTE_DECODER[char] for char in token)
    return token.replace(_SENTENCEPIECE_SPACE, " ").encode("utf-8")


class _VocabularyTokenizer:
    """Byte-level view of a canonical vocabulary for llguidance.

    Tokenization is greedy longest-match; llguidance only uses it to split
    literal text into tokens.
    """

    def __init__(self, vocabulary: CanonicalVocabulary, eos_token_id: int, n_tokens: int):
        byte_level = _is_byte_level(vocabulary)
        special = set(vocabulary.special_token_ids)
        tokens: List[bytes] = [b""] * n_tokens
        for content, token_id in vocabulary.token_to_id.items():
            tokens[token_id] = token_bytes(content, byte_level)
        for added in vocabulary.added_tokens:
            tokens[added.id] = added.content.encode("utf-8") if added.special else token_bytes(added.content, byte_level)
        if eos_token_id >= vocabulary.vocab_size:
            tokens[eos_token_id] = b"<|eos|>"
            special.add(eos_token_id)

        self.tokens = tokens
        self.eos_token_id = eos_token_id
        self.bos_token_id = vocabulary.bos_token_id
        self.special_token_ids = sorted(special)

        self._by_bytes: Dict[bytes, int] = {}
        for token_id, data in enumerate(tokens):
            if data and token_id not in special:
                self._by_bytes.setdefault(data, token_id)
        self._max_len = max((len(data) for data in self._by_bytes), default=0)

    def __call__(self, text: Union[str, bytes]) -> List[int]:
        if isinstance(text, str):
            text = text.encode("utf-8")
        ids = []
        pos = 0
        while pos < len(text):
            for length in range(min(self._max_len, len(text) - pos), 0, -1):
                token_id = self._by_bytes.get(text[pos:pos + length])
                if token_id is not None:
                    ids.append(token_id)
                    pos += length
                    break
            else:
                # no token covers this byte
                pos += 1
        return ids


class LlguidanceOracle:
    """Grammar oracle backed by llguidance.

    Cursors are ``llguidance.LLMatcher`` instances. The llguidance tokenizer is
    built once per vocabulary and reused by every grammar compiled here.

    Attributes:
        ll_tokenizer: llguidance tokenizer for the vocabulary.
        vocabulary: The bound vocabulary.
    """

    def __init__(self, vocabulary: CanonicalVocabulary):
        """Initialize oracle.

        Args:
            vocabulary: Canonical vocabulary of the model.

        Raises:
            IncompatibleVocabulary: If llguidance cannot use the vocabulary.
        """
        if not vocabulary.token_to_id and not vocabulary.added_tokens:
            raise IncompatibleVocabulary("Tokenizer vocabulary is empty")

        self.vocabulary = vocabulary
        self._vocab_size = vocabulary.vocab_size

        # Without an eos token, a synthetic one is appended past the vocabulary
        # and never appears in masks.
        eos = vocabulary.eos_token_id
        ll_vocab_size = self._vocab_size
        if eos is None:
            eos = ll_vocab_size
            ll_vocab_size += 1
            logger.warning("Vocabulary has no eos token; using synthetic id %d", eos)

        try:
            wrapper = llguidance.TokenizerWrapper(_VocabularyTokenizer(vocabulary, eos, ll_vocab_size))
            self.ll_tokenizer = llguidance.LLTokenizer(wrapper, n_vocab=ll_vocab_size, eos_token=eos)
        except (ValueError, TypeError, RuntimeError) as exc:
            raise IncompatibleVocabulary(f"llguidance rejected the vocabulary: {exc}") from exc

        self._bitmask = llguidance.torch.allocate_token_bitmask(1, ll_vocab_size)
        self._bit_shifts = torch.arange(32, dtype=torch.int32)
        self._description: Optional[GrammarDescription] = None
        self._cached_mask: Optional[Tuple[Any, torch.Tensor]] = None

    @property
    def vocab_size(self) -> int:
        return self._vocab_size

    def serialize_grammar(self, description: GrammarDescription) -> str:
        """Convert a grammar description into llguidance's grammar format.

        Raises:
            GrammarCompilationError: If the source cannot be converted.
            TypeError: If ``description`` is not a grammar variant.
        """
        try:
            if isinstance(description, JsonSchemaGrammar):
                return llguidance.LLMatcher.grammar_from_json_schema(description.schema_text())
            elif isinstance(description, RegexGrammar):
                return llguidance.grammar_from("regex", description.pattern)
            elif isinstance(description, LarkGrammar):
                return llguidance.grammar_from("lark", description.resolved_source())
        except ValueError as exc:
            raise GrammarCompilationError(f"Grammar error: {exc}") from exc
        raise TypeError(f"Unsupported grammar description: {type(description)}")

    def compile(self, description: GrammarDescription) -> "llguidance.LLMatcher":
        ll_grammar = self.serialize_grammar(description)

        # Validate grammar
        err = llguidance.LLMatcher.validate_grammar(ll_grammar, self.ll_tokenizer)
        if err:
            raise GrammarCompilationError(f"Grammar error: {err}")

        matcher = llguidance.LLMatcher(
            self.ll_tokenizer,
            ll_grammar,
            log_level=llguidance_log_level(),
        )
        if matcher.is_error():
            raise GrammarCompilationError(f"Grammar error: {matcher.get_error()}")
        self._cached_mask = None
        self._description = description
        return matcher

    def probe(self, cursor: "llguidance.LLMatcher", token_id: int) -> bool:
        """Answered from the same bitmask as :meth:`materialize_mask`.

        ``LLMatcher.validate_tokens`` also accepts non-canonical tokenizations
        (``a`` where the grammar forces ``ab``), which the mask excludes.
        """
        return bool(self._current_mask(cursor)[token_id])

    def materialize_mask(self, cursor: "llguidance.LLMatcher") -> torch.Tensor:
        return self._current_mask(cursor).clone()

    def _current_mask(self, cursor: "llguidance.LLMatcher") -> torch.Tensor:
        """Mask for ``cursor``, computed once per grammar state."""
        if self._cached_mask is not None and self._cached_mask[0] is cursor:
            return self._cached_mask[1]
        llguidance.torch.fill_next_token_bitmask(cursor, self._bitmask, 0)
        words = self._bitmask[0]
        bits = (words.unsqueeze(1) >> self._bit_shifts) & 1
        mask = bits.flatten()[:self._vocab_size].to(torch.bool)
        self._cached_mask = (cursor, mask)
        return mask

    def transition(self, cursor: "llguidance.LLMatcher", token_id: int) -> "llguidance.LLMatcher":
        self._cached_mask = None
        if cursor.consume_token(token_id):
            return cursor
        # EOS in an accepting state ends generation
        if token_id == self.ll_tokenizer.eos_token and cursor.is_accepting():
            return cursor
        raise InadmissibleTokenError(token_id, f"llguidance rejected token {token_id}: {cursor.get_error()}")

    def is_accepting(self, cursor: "llguidance.LLMatcher") -> bool:
        return cursor.is_accepting()

    def stop_reason(self, cursor: "llguidance.LLMatcher") -> str:
        return cursor.stop_reason()

    def reinitialize(
        self,
        cursor: "llguidance.LLMatcher",
        description: GrammarDescription,
    ) -> "llguidance.LLMatcher":
        """Reset the matcher, or compile a replacement when the grammar changes."""
        self._cached_mask = None
        if cursor is not None and description == self._description and not cursor.is_error():
            cursor.reset()
            return cursor
        return self.compile(description)
