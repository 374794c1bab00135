"""Canonical vocabulary shared by grammar sessions."""

import json
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

SPECIAL_ROLES = ("eos", "bos", "pad", "unk")


@dataclass(frozen=True)
class AddedToken:
    """A token added on top of the base vocabulary (usually a special token)."""
    id: int
    content: str
    single_word: bool = False
    lstrip: bool = False
    rstrip: bool = False
    normalized: bool = True
    special: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'AddedToken':
        """Build from a dict, applying defaults for unspecified flags."""
        return cls(
            id=int(data["id"]),
            content=str(data["content"]),
            single_word=_flag(data.get("single_word"), False),
            lstrip=_flag(data.get("lstrip"), False),
            rstrip=_flag(data.get("rstrip"), False),
            normalized=_flag(data.get("normalized"), True),
            special=_flag(data.get("special"), False),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "single_word": self.single_word,
            "lstrip": self.lstrip,
            "rstrip": self.rstrip,
            "normalized": self.normalized,
            "special": self.special,
        }


def _flag(value: Optional[bool], default: bool) -> bool:
    return default if value is None else bool(value)


def normalize_merges(merges: Optional[Iterable[Union[str, Sequence[str]]]]) -> Tuple[str, ...]:
    """Normalize merge rules to ``"left right"`` strings.

    Accepts both the legacy string form and the newer ``["left", "right"]`` pairs.

    Raises:
        ValueError: If a merge is neither a string nor a sequence of strings.
    """
    if not merges:
        return ()
    result = []
    for merge in merges:
        if isinstance(merge, str):
            result.append(merge)
        elif isinstance(merge, (list, tuple)):
            result.append(" ".join(part for part in merge if isinstance(part, str)))
        else:
            raise ValueError(f"merge must be a string or a list of strings, got {merge!r}")
    return tuple(result)


@dataclass(frozen=True)
class CanonicalVocabulary:
    """Normalized token-string/id mapping used to bind a grammar to a model.

    Instances are immutable and may be shared read-only by any number of
    grammar sessions.

    Attributes:
        token_to_id: Mapping from token string to id. Ids need not be dense.
        merges: Ordered BPE merge rules (empty for non-merge tokenizers).
        added_tokens: Added/special tokens, possibly outside ``token_to_id``.
        model_type: Advisory tokenizer family, e.g. ``"bpe"``.
        eos_token_id: End-of-sequence id, if resolved.
        bos_token_id: Beginning-of-sequence id, if resolved.
        pad_token_id: Padding id, if resolved.
        unk_token_id: Unknown-token id, if resolved.
        explicit_vocab_size: Model-declared size, when larger than the ids imply.
    """
    token_to_id: Mapping[str, int]
    merges: Tuple[str, ...] = ()
    added_tokens: Tuple[AddedToken, ...] = ()
    model_type: str = "unknown"
    eos_token_id: Optional[int] = None
    bos_token_id: Optional[int] = None
    pad_token_id: Optional[int] = None
    unk_token_id: Optional[int] = None
    explicit_vocab_size: Optional[int] = field(default=None, compare=False)

    def __post_init__(self):
        vocab = dict(self.token_to_id)
        for token, token_id in vocab.items():
            if isinstance(token_id, bool) or not isinstance(token_id, int) or token_id < 0:
                raise ValueError(f"Token {token!r} has invalid id {token_id!r}")
        object.__setattr__(self, "token_to_id", MappingProxyType(vocab))
        object.__setattr__(self, "merges", normalize_merges(self.merges))
        object.__setattr__(self, "added_tokens", tuple(self.added_tokens))

        known_ids = set(vocab.values())
        known_ids.update(token.id for token in self.added_tokens)
        for role, token_id in self.special_tokens.items():
            if token_id not in known_ids:
                raise ValueError(f"{role} token id {token_id} is neither in the vocabulary nor an added token")

    @property
    def vocab_size(self) -> int:
        max_id = -1
        if self.token_to_id:
            max_id = max(self.token_to_id.values())
        if self.added_tokens:
            max_id = max(max_id, max(token.id for token in self.added_tokens))
        return max(max_id + 1, self.explicit_vocab_size or 0)

    @property
    def special_tokens(self) -> Dict[str, int]:
        """Resolved special-token ids by role; unresolved roles are omitted."""
        roles = {}
        for role in SPECIAL_ROLES:
            token_id = getattr(self, f"{role}_token_id")
            if token_id is not None:
                roles[role] = token_id
        return roles

    @property
    def special_token_ids(self) -> List[int]:
        """Ids of added tokens flagged as special."""
        return sorted({token.id for token in self.added_tokens if token.special})

    def lookup(self, content: str) -> Optional[int]:
        """Resolve a token string through the base vocabulary, then added tokens."""
        if content in self.token_to_id:
            return self.token_to_id[content]
        for token in self.added_tokens:
            if token.content == content:
                return token.id
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the interchange form."""
        data = {
            "vocab": dict(self.token_to_id),
            "merges": list(self.merges),
            "added_tokens": [token.to_dict() for token in self.added_tokens],
            "model_type": self.model_type,
            "eos_token_id": self.eos_token_id,
            "bos_token_id": self.bos_token_id,
            "pad_token_id": self.pad_token_id,
            "unk_token_id": self.unk_token_id,
        }
        if self.explicit_vocab_size is not None:
            data["vocab_size"] = self.explicit_vocab_size
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'CanonicalVocabulary':
        """Parse the interchange form produced by :meth:`to_dict`.

        Raises:
            KeyError: If the ``vocab`` field is missing.
        """
        return cls(
            token_to_id={str(k): int(v) for k, v in data["vocab"].items()},
            merges=normalize_merges(data.get("merges")),
            added_tokens=tuple(AddedToken.from_dict(t) for t in data.get("added_tokens") or ()),
            model_type=data.get("model_type") or "unknown",
            eos_token_id=data.get("eos_token_id"),
            bos_token_id=data.get("bos_token_id"),
            pad_token_id=data.get("pad_token_id"),
            unk_token_id=data.get("unk_token_id"),
            explicit_vocab_size=data.get("vocab_size"),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)

    @classmethod
    def from_json(cls, text: Union[str, bytes]) -> 'CanonicalVocabulary':
        return cls.from_dict(json.loads(text))
