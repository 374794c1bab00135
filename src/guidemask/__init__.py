from guidemask.config import ProcessorOptions
from guidemask.errors import (
    ConcurrentUseError,
    FetchFailure,
    GrammarCompilationError,
    GuidemaskError,
    InadmissibleTokenError,
    IncompatibleVocabulary,
    InvalidTokenizerFile,
    MissingVocabulary,
    SessionOwnershipError,
    SessionPoisonedError,
)
from guidemask.grammar import Grammar, GrammarDescription, JsonSchemaGrammar, LarkGrammar, RegexGrammar
from guidemask.session import GrammarOracle, GrammarSession
from guidemask.utils.speculative_processor import GuidanceLogitsProcessor, SpeculativeMaskApplier
from guidemask.utils.tokenizer_bridge import extract_vocabulary, load_vocabulary, parse_tokenizer_json
from guidemask.vocabulary import AddedToken, CanonicalVocabulary

__version__ = "0.1.0"

__all__ = [
    "ProcessorOptions",
    "Grammar",
    "GrammarDescription",
    "JsonSchemaGrammar",
    "LarkGrammar",
    "RegexGrammar",
    "GrammarOracle",
    "GrammarSession",
    "GuidanceLogitsProcessor",
    "SpeculativeMaskApplier",
    "extract_vocabulary",
    "load_vocabulary",
    "parse_tokenizer_json",
    "AddedToken",
    "CanonicalVocabulary",
    "GuidemaskError",
    "MissingVocabulary",
    "InvalidTokenizerFile",
    "GrammarCompilationError",
    "IncompatibleVocabulary",
    "FetchFailure",
    "InadmissibleTokenError",
    "SessionPoisonedError",
    "SessionOwnershipError",
    "ConcurrentUseError",
]
