from guidemask.utils.scoring import top_candidates
from guidemask.utils.speculative_processor import (
    GuidanceLogitsProcessor,
    MaskStats,
    SpeculativeMaskApplier,
)
from guidemask.utils.tokenizer_bridge import (
    extract_vocabulary,
    load_vocabulary,
    parse_tokenizer_json,
    resolve_special_token,
)

__all__ = [
    "top_candidates",
    "GuidanceLogitsProcessor",
    "MaskStats",
    "SpeculativeMaskApplier",
    "extract_vocabulary",
    "load_vocabulary",
    "parse_tokenizer_json",
    "resolve_special_token",
]
