"""Tests for the canonical vocabulary and its interchange form."""

import pytest

from guidemask.vocabulary import AddedToken, CanonicalVocabulary, normalize_merges


class TestCanonicalVocabulary:
    """Construction and derived properties."""

    def test_vocab_size_covers_sparse_ids(self):
        """vocab_size is max id + 1 even when ids are not dense."""
        vocab = CanonicalVocabulary(token_to_id={"a": 0, "b": 7})
        assert vocab.vocab_size == 8

    def test_vocab_size_includes_added_tokens(self):
        vocab = CanonicalVocabulary(
            token_to_id={"a": 0, "b": 1},
            added_tokens=(AddedToken(id=100, content="<|endoftext|>", special=True),),
        )
        assert vocab.vocab_size == 101

    def test_explicit_vocab_size_only_enlarges(self):
        assert CanonicalVocabulary(token_to_id={"a": 0}, explicit_vocab_size=32).vocab_size == 32
        assert CanonicalVocabulary(token_to_id={"a": 0, "b": 40}, explicit_vocab_size=32).vocab_size == 41

    def test_rejects_negative_ids(self):
        with pytest.raises(ValueError):
            CanonicalVocabulary(token_to_id={"a": -1})

    def test_special_ids_must_be_known(self):
        """Special-token ids must name a vocabulary entry or an added token."""
        with pytest.raises(ValueError):
            CanonicalVocabulary(token_to_id={"a": 0}, eos_token_id=5)
        vocab = CanonicalVocabulary(
            token_to_id={"a": 0},
            added_tokens=(AddedToken(id=5, content="</s>", special=True),),
            eos_token_id=5,
        )
        assert vocab.special_tokens == {"eos": 5}

    def test_mapping_is_read_only(self):
        vocab = CanonicalVocabulary(token_to_id={"a": 0})
        with pytest.raises(TypeError):
            vocab.token_to_id["b"] = 1

    def test_source_mapping_is_copied(self):
        source = {"a": 0}
        vocab = CanonicalVocabulary(token_to_id=source)
        source["b"] = 1
        assert "b" not in vocab.token_to_id

    def test_lookup_checks_added_tokens(self):
        vocab = CanonicalVocabulary(
            token_to_id={"a": 0},
            added_tokens=(AddedToken(id=3, content="<pad>"),),
        )
        assert vocab.lookup("a") == 0
        assert vocab.lookup("<pad>") == 3
        assert vocab.lookup("missing") is None

    def test_special_token_ids(self):
        vocab = CanonicalVocabulary(
            token_to_id={"a": 0},
            added_tokens=(
                AddedToken(id=2, content="<s>", special=True),
                AddedToken(id=1, content="b"),
            ),
        )
        assert vocab.special_token_ids == [2]


class TestInterchangeForm:
    """Serialization round-trips."""

    def test_json_round_trip(self):
        vocab = CanonicalVocabulary(
            token_to_id={"<s>": 0, "</s>": 1, "<unk>": 2, "hello": 3, "world": 4},
            merges=("h e", "l l", "o _"),
            added_tokens=(
                AddedToken(id=0, content="<s>", special=True),
                AddedToken(id=1, content="</s>", special=True, normalized=False),
            ),
            model_type="bpe",
            eos_token_id=1,
            bos_token_id=0,
            unk_token_id=2,
        )
        parsed = CanonicalVocabulary.from_json(vocab.to_json())
        assert parsed == vocab
        assert parsed.special_tokens == {"eos": 1, "bos": 0, "unk": 2}
        assert parsed.merges == ("h e", "l l", "o _")

    def test_to_dict_keys(self):
        data = CanonicalVocabulary(token_to_id={"a": 0}).to_dict()
        assert set(data) == {
            "vocab", "merges", "added_tokens", "model_type",
            "eos_token_id", "bos_token_id", "pad_token_id", "unk_token_id",
        }

    def test_from_dict_accepts_merge_pairs(self):
        vocab = CanonicalVocabulary.from_dict({"vocab": {"a": 0}, "merges": [["Ġ", "t"], "a b"]})
        assert vocab.merges == ("Ġ t", "a b")

    def test_from_dict_applies_added_token_defaults(self):
        vocab = CanonicalVocabulary.from_dict({
            "vocab": {"a": 0},
            "added_tokens": [{"id": 1, "content": "<|endoftext|>"}],
        })
        token = vocab.added_tokens[0]
        assert token.single_word is False
        assert token.lstrip is False
        assert token.rstrip is False
        assert token.special is False
        assert token.normalized is True


def test_normalize_merges_rejects_other_types():
    with pytest.raises(ValueError):
        normalize_merges([42])
    assert normalize_merges(None) == ()
