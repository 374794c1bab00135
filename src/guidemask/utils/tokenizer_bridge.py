"""Conversion of tokenizers into canonical vocabularies.

Two entry points produce a :class:`~guidemask.vocabulary.CanonicalVocabulary`:

- :func:`extract_vocabulary` reads a live tokenizer object, such as a
  transformers ``PreTrainedTokenizer`` or a plain mapping with the same fields.
- :func:`parse_tokenizer_json` reads a serialized ``tokenizer.json``;
  :func:`load_vocabulary` fetches one from the Hugging Face hub first.

Special-token ids are resolved per role by an ordered list of strategies,
first match wins. A role that no strategy resolves is left unset.
"""

import json
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import httpx

from guidemask.config import hf_endpoint, resolve_hf_token
from guidemask.errors import FetchFailure, InvalidTokenizerFile, MissingVocabulary
from guidemask.vocabulary import SPECIAL_ROLES, AddedToken, CanonicalVocabulary, normalize_merges

logger = logging.getLogger(__name__)

CONVENTIONAL_SPELLINGS: Dict[str, Tuple[str, ...]] = {
    "eos": ("</s>", "<|endoftext|>", "<eos>", "<|eos|>", "[SEP]"),
    "bos": ("<s>", "<|startoftext|>", "<bos>", "<|bos|>", "[CLS]"),
    "pad": ("<pad>", "<|pad|>", "[PAD]"),
    "unk": ("<unk>", "<|unk|>", "[UNK]"),
}

# (source, role, lookup) -> id or None
ResolutionStrategy = Callable[[Any, str, Callable[[str], Optional[int]]], Optional[int]]


def _get(source: Any, name: str, default: Any = None) -> Any:
    """Read ``name`` as a mapping key or an attribute."""
    if source is None:
        return default
    if isinstance(source, Mapping):
        return source.get(name, default)
    return getattr(source, name, default)


def _to_vocab(raw: Any) -> Dict[str, int]:
    # Mapping or Map-like object exposing items()
    return {str(token): int(token_id) for token, token_id in raw.items()}


def _direct_id(source: Any, role: str, lookup: Callable[[str], Optional[int]]) -> Optional[int]:
    value = _get(source, f"{role}_token_id")
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return None


def _named_token(source: Any, role: str, lookup: Callable[[str], Optional[int]]) -> Optional[int]:
    value = _get(source, f"{role}_token")
    if value is not None and not isinstance(value, str):
        # transformers may hold an AddedToken here
        value = _get(value, "content")
    if isinstance(value, str) and value:
        return lookup(value)
    return None


def _conventional_spelling(source: Any, role: str, lookup: Callable[[str], Optional[int]]) -> Optional[int]:
    for name in CONVENTIONAL_SPELLINGS.get(role, ()):
        token_id = lookup(name)
        if token_id is not None:
            return token_id
    return None


SPECIAL_TOKEN_STRATEGIES: Tuple[ResolutionStrategy, ...] = (
    _direct_id,
    _named_token,
    _conventional_spelling,
)


def resolve_special_token(
    source: Any,
    role: str,
    lookup: Callable[[str], Optional[int]],
    strategies: Sequence[ResolutionStrategy] = SPECIAL_TOKEN_STRATEGIES,
) -> Optional[int]:
    """Resolve the id of a special-token role.

    Args:
        source: Tokenizer object or parsed tokenizer description.
        role: One of ``eos``, ``bos``, ``pad`` or ``unk``.
        lookup: Maps a token string to its id, or None.
        strategies: Strategies tried in order; the first non-None result wins.

    Returns:
        The token id, or None if no strategy resolved it.
    """
    for strategy in strategies:
        token_id = strategy(source, role, lookup)
        if token_id is not None:
            return token_id
    return None


def _normalize_added_tokens(source: Any) -> Tuple[AddedToken, ...]:
    entries = _get(source, "added_tokens")
    if entries is None:
        # transformers exposes added tokens as {id: AddedToken}
        decoder = _get(source, "added_tokens_decoder")
        if isinstance(decoder, Mapping):
            entries = [
                {
                    "id": token_id,
                    "content": _get(token, "content", str(token)),
                    "single_word": _get(token, "single_word"),
                    "lstrip": _get(token, "lstrip"),
                    "rstrip": _get(token, "rstrip"),
                    "normalized": _get(token, "normalized"),
                    "special": _get(token, "special"),
                }
                for token_id, token in sorted(decoder.items())
            ]
    if not entries:
        return ()

    added = []
    for entry in entries:
        if not isinstance(entry, Mapping):
            entry = {
                name: _get(entry, name)
                for name in ("id", "content", "single_word", "lstrip", "rstrip", "normalized", "special")
            }
        added.append(AddedToken.from_dict(entry))
    return tuple(added)


def _backend_merges(tokenizer: Any) -> Optional[List[Any]]:
    """Merges serialized in a transformers fast tokenizer's backend."""
    backend = getattr(tokenizer, "backend_tokenizer", None)
    if backend is None or not hasattr(backend, "to_str"):
        return None
    model = json.loads(backend.to_str()).get("model") or {}
    return model.get("merges")


def _build(
    source: Any,
    vocab: Dict[str, int],
    merges: Tuple[str, ...],
    added_tokens: Tuple[AddedToken, ...],
    model_type: str,
    vocab_size: Optional[int] = None,
) -> CanonicalVocabulary:
    by_content = {token.content: token.id for token in added_tokens}

    def lookup(content: str) -> Optional[int]:
        if content in vocab:
            return vocab[content]
        return by_content.get(content)

    special = {role: resolve_special_token(source, role, lookup) for role in SPECIAL_ROLES}
    for role, token_id in special.items():
        if token_id is not None and token_id not in vocab.values() and token_id not in by_content.values():
            # Declared ids that no token carries (e.g. a model-level eos id
            # beyond the tokenizer vocabulary) become bare added tokens.
            logger.warning("%s token id %d is not in the vocabulary; recording it as an added token", role, token_id)
            added_tokens = added_tokens + (AddedToken(id=token_id, content=f"<|{role}_{token_id}|>", special=True),)
            by_content[added_tokens[-1].content] = token_id

    if isinstance(vocab_size, bool) or not isinstance(vocab_size, int):
        vocab_size = None

    return CanonicalVocabulary(
        token_to_id=vocab,
        merges=merges,
        added_tokens=added_tokens,
        model_type=model_type,
        eos_token_id=special["eos"],
        bos_token_id=special["bos"],
        pad_token_id=special["pad"],
        unk_token_id=special["unk"],
        explicit_vocab_size=vocab_size,
    )


def extract_vocabulary(tokenizer: Any) -> CanonicalVocabulary:
    """Normalize a live tokenizer into a canonical vocabulary.

    The vocabulary is read from the first source present: a ``get_vocab()``
    method, ``model.tokens_to_ids``, ``model.vocab``, then ``vocab``.

    Args:
        tokenizer: A transformers tokenizer, or any object or mapping
            exposing the same fields.

    Returns:
        Canonical vocabulary.

    Raises:
        MissingVocabulary: If the tokenizer exposes no vocabulary.
    """
    model = _get(tokenizer, "model")
    get_vocab = getattr(tokenizer, "get_vocab", None)
    if get_vocab is None and isinstance(tokenizer, Mapping):
        get_vocab = tokenizer.get("get_vocab")

    if callable(get_vocab):
        raw_vocab = get_vocab()
    elif _get(model, "tokens_to_ids") is not None:
        raw_vocab = _get(model, "tokens_to_ids")
    elif _get(model, "vocab") is not None:
        raw_vocab = _get(model, "vocab")
    elif _get(tokenizer, "vocab") is not None and not callable(_get(tokenizer, "vocab")):
        raw_vocab = _get(tokenizer, "vocab")
    else:
        raise MissingVocabulary(
            "Unable to extract vocabulary from tokenizer. "
            "Expected get_vocab(), model.tokens_to_ids, model.vocab or vocab."
        )
    vocab = _to_vocab(raw_vocab)

    raw_merges = _get(model, "merges")
    if raw_merges is None:
        raw_merges = _backend_merges(tokenizer)
    merges = normalize_merges(raw_merges)
    model_type = "bpe" if merges else "unknown"

    vocabulary = _build(
        tokenizer,
        vocab,
        merges,
        _normalize_added_tokens(tokenizer),
        model_type,
    )
    logger.debug(
        "Extracted %s vocabulary: %d tokens, %d merges, special=%s",
        model_type, len(vocab), len(merges), vocabulary.special_tokens,
    )
    return vocabulary


def parse_tokenizer_json(data: Union[Mapping[str, Any], str, bytes]) -> CanonicalVocabulary:
    """Parse a serialized ``tokenizer.json`` into a canonical vocabulary.

    Args:
        data: Parsed JSON object, or its text.

    Returns:
        Canonical vocabulary.

    Raises:
        InvalidTokenizerFile: If the document has no ``model.vocab`` field.
    """
    if isinstance(data, (str, bytes)):
        try:
            data = json.loads(data)
        except ValueError as exc:
            raise InvalidTokenizerFile(f"Invalid tokenizer.json: {exc}") from exc
    if not isinstance(data, Mapping):
        raise InvalidTokenizerFile("Invalid tokenizer.json: expected a JSON object")

    model = data.get("model")
    if not isinstance(model, Mapping) or not isinstance(model.get("vocab"), Mapping):
        raise InvalidTokenizerFile("Invalid tokenizer.json: missing model.vocab")

    merges = normalize_merges(model.get("merges"))
    model_type = model.get("type")
    model_type = model_type.lower() if isinstance(model_type, str) else "unknown"

    return _build(
        data,
        _to_vocab(model["vocab"]),
        merges,
        _normalize_added_tokens(data),
        model_type,
        vocab_size=data.get("vocab_size"),
    )


def tokenizer_url(model_id: str, base_url: Optional[str] = None) -> str:
    return f"{hf_endpoint(base_url)}/{model_id}/resolve/main/tokenizer.json"


async def load_vocabulary(
    model_id: str,
    token: Optional[str] = None,
    base_url: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
    timeout: float = 60.0,
) -> CanonicalVocabulary:
    """Fetch a model's ``tokenizer.json`` and parse it.

    Args:
        model_id: Hugging Face model identifier, e.g. ``gpt2``.
        token: Hugging Face API token for gated models; falls back to
            ``HF_TOKEN`` or ``secrets.json``.
        base_url: Hub endpoint; falls back to ``HF_ENDPOINT``.
        client: Client to use instead of a temporary one.
        timeout: Request timeout in seconds for the temporary client.

    Returns:
        Canonical vocabulary.

    Raises:
        FetchFailure: On transport errors or a non-success status.
        InvalidTokenizerFile: If the downloaded file has no vocabulary.
    """
    url = tokenizer_url(model_id, base_url)
    headers = {}
    token = resolve_hf_token(token)
    if token:
        headers["Authorization"] = f"Bearer {token}"

    logger.info("Fetching tokenizer from %s", url)
    owns_client = client is None
    if owns_client:
        client = httpx.AsyncClient(timeout=timeout, follow_redirects=True)
    try:
        response = await client.get(url, headers=headers)
    except httpx.HTTPError as exc:
        raise FetchFailure(f"Failed to fetch tokenizer from {url}: {exc}", url=url) from exc
    finally:
        if owns_client:
            await client.aclose()

    if not response.is_success:
        raise FetchFailure(
            f"Failed to fetch tokenizer from {url}: {response.status_code} {response.reason_phrase}",
            status_code=response.status_code,
            url=url,
        )
    return parse_tokenizer_json(response.content)
