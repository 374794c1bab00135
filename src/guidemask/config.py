"""Runtime configuration: processor options and environment lookups."""

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

DEFAULT_SPECULATION_DEPTH = 5
DEFAULT_HF_ENDPOINT = "https://huggingface.co"

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass
class ProcessorOptions:
    """Options for the speculative mask applier.

    Attributes:
        speculation_depth: Number of top-scoring tokens probed before
            falling back to the full mask.
        debug: Log the cost path taken on every step.
    """
    speculation_depth: int = DEFAULT_SPECULATION_DEPTH
    debug: bool = False

    def __post_init__(self):
        if isinstance(self.speculation_depth, bool) or not isinstance(self.speculation_depth, int):
            raise TypeError(f"speculation_depth must be an int, got {type(self.speculation_depth)}")
        if self.speculation_depth < 1:
            raise ValueError(f"speculation_depth must be >= 1, got {self.speculation_depth}")


def resolve_hf_token(token: Optional[str] = None, secrets_path: str = "secrets.json") -> Optional[str]:
    """Find a Hugging Face token.

    Checks the explicit argument, then the ``HF_TOKEN`` environment variable,
    then a ``secrets.json`` file in the working directory.
    """
    if token:
        return token
    if os.environ.get("HF_TOKEN"):
        return os.environ["HF_TOKEN"]

    path = Path(secrets_path)
    if path.exists():
        with open(path) as f:
            secrets = json.load(f)
        value = secrets.get("HF_TOKEN")
        if value and value != "your_token":
            return value
    return None


def hf_endpoint(base_url: Optional[str] = None) -> str:
    """Base URL of the Hugging Face hub, without a trailing slash."""
    url = base_url or os.environ.get("HF_ENDPOINT") or DEFAULT_HF_ENDPOINT
    return url.rstrip("/")


def llguidance_log_level() -> int:
    return int(os.environ.get("LLGUIDANCE_LOG_LEVEL", "1"))


def validate_advance_default() -> bool:
    """Whether sessions probe tokens before advancing, from ``GUIDEMASK_VALIDATE_ADVANCE``."""
    return os.environ.get("GUIDEMASK_VALIDATE_ADVANCE", "").strip().lower() in _TRUTHY
