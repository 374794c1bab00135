import json

import pytest

from guidemask.config import (
    DEFAULT_HF_ENDPOINT,
    hf_endpoint,
    llguidance_log_level,
    resolve_hf_token,
    validate_advance_default,
)


class TestHuggingFaceLookups:

    def test_explicit_token_wins(self, monkeypatch):
        monkeypatch.setenv("HF_TOKEN", "from_env")
        assert resolve_hf_token("explicit") == "explicit"

    def test_environment_token(self, monkeypatch):
        monkeypatch.setenv("HF_TOKEN", "from_env")
        assert resolve_hf_token() == "from_env"

    def test_secrets_file(self, monkeypatch, tmp_path):
        monkeypatch.delenv("HF_TOKEN", raising=False)
        secrets = tmp_path / "secrets.json"
        secrets.write_text(json.dumps({"HF_TOKEN": "from_file"}))
        assert resolve_hf_token(secrets_path=str(secrets)) == "from_file"

    def test_placeholder_secret_is_ignored(self, monkeypatch, tmp_path):
        monkeypatch.delenv("HF_TOKEN", raising=False)
        secrets = tmp_path / "secrets.json"
        secrets.write_text(json.dumps({"HF_TOKEN": "your_token"}))
        assert resolve_hf_token(secrets_path=str(secrets)) is None

    def test_endpoint(self, monkeypatch):
        monkeypatch.delenv("HF_ENDPOINT", raising=False)
        assert hf_endpoint() == DEFAULT_HF_ENDPOINT
        monkeypatch.setenv("HF_ENDPOINT", "https://mirror.test/")
        assert hf_endpoint() == "https://mirror.test"
        assert hf_endpoint("https://other.test") == "https://other.test"


@pytest.mark.parametrize("value, expected", [("1", True), ("true", True), ("0", False), ("", False)])
def test_validate_advance_default(monkeypatch, value, expected):
    monkeypatch.setenv("GUIDEMASK_VALIDATE_ADVANCE", value)
    assert validate_advance_default() is expected


def test_llguidance_log_level(monkeypatch):
    monkeypatch.delenv("LLGUIDANCE_LOG_LEVEL", raising=False)
    assert llguidance_log_level() == 1
    monkeypatch.setenv("LLGUIDANCE_LOG_LEVEL", "2")
    assert llguidance_log_level() == 2
