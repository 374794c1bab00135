import json
import re
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Union


@dataclass(frozen=True)
class JsonSchemaGrammar:
    """Output must be JSON conforming to a JSON schema.

    Attributes:
        schema: The JSON schema document.
    """
    schema: Mapping[str, Any]

    def __post_init__(self):
        if not isinstance(self.schema, Mapping):
            raise TypeError(f"schema must be a mapping, got {type(self.schema)}")
        object.__setattr__(self, "schema", MappingProxyType(dict(self.schema)))

    def __hash__(self):
        return hash(("json_schema", self.schema_text()))

    def schema_text(self) -> str:
        """Canonical JSON text of the schema."""
        return json.dumps(_thaw(self.schema), sort_keys=True)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "json_schema", "schema": _thaw(self.schema)}


@dataclass(frozen=True)
class RegexGrammar:
    """Output must match a regular expression.

    Attributes:
        pattern: Regular expression source.
    """
    pattern: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "regex", "pattern": self.pattern}


@dataclass(frozen=True)
class LarkGrammar:
    """Output must derive from a Lark context-free grammar.

    Attributes:
        source: Grammar specification in Lark syntax.
        start_rule: Rule to start from; ``start`` when omitted.
    """
    source: str
    start_rule: Optional[str] = None

    def resolved_source(self) -> str:
        """Grammar source with a ``start`` rule pointing at ``start_rule``."""
        if not self.start_rule or self.start_rule == "start":
            return self.source
        if re.search(r"^\s*start\s*:", self.source, re.MULTILINE):
            raise ValueError(
                f"Grammar already defines 'start'; cannot use start rule '{self.start_rule}'"
            )
        return f"start: {self.start_rule}\n{self.source}"

    def to_dict(self) -> Dict[str, Any]:
        data = {"type": "lark", "grammar": self.source}
        if self.start_rule is not None:
            data["startSymbol"] = self.start_rule
        return data


GrammarDescription = Union[JsonSchemaGrammar, RegexGrammar, LarkGrammar]

GRAMMAR_KINDS = ("json_schema", "regex", "lark")


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _thaw(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_thaw(v) for v in value]
    return value


def describe(description: GrammarDescription) -> str:
    """Short label for a grammar description, used in log messages.

    Raises:
        TypeError: If ``description`` is not one of the grammar variants.
    """
    if isinstance(description, JsonSchemaGrammar):
        return "json_schema"
    elif isinstance(description, RegexGrammar):
        return f"regex /{description.pattern}/"
    elif isinstance(description, LarkGrammar):
        return f"lark (start={description.start_rule or 'start'})"
    raise TypeError(f"Unsupported grammar description: {type(description)}")


class Grammar:
    """Constructors for grammar descriptions."""

    @staticmethod
    def json_schema(schema: Mapping[str, Any]) -> JsonSchemaGrammar:
        return JsonSchemaGrammar(schema)

    @staticmethod
    def regex(pattern: str) -> RegexGrammar:
        return RegexGrammar(pattern)

    @staticmethod
    def lark(source: str, start_rule: Optional[str] = None) -> LarkGrammar:
        return LarkGrammar(source, start_rule)

    @classmethod
    def from_string(cls, grammar_str: str, kind: str = "lark") -> GrammarDescription:
        """Create a grammar description from a string.

        Args:
            grammar_str: Grammar source; JSON text for ``json_schema``.
            kind: One of ``json_schema``, ``regex`` or ``lark``.

        Returns:
            Grammar description.
        """
        if kind == "json_schema":
            return JsonSchemaGrammar(json.loads(grammar_str))
        elif kind == "regex":
            return RegexGrammar(grammar_str)
        elif kind == "lark":
            return LarkGrammar(grammar_str)
        raise ValueError(f"Invalid grammar kind '{kind}'. Must be one of {', '.join(GRAMMAR_KINDS)}.")

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> GrammarDescription:
        """Load a grammar description from file.

        The kind is chosen by suffix: ``.json`` for JSON schemas, ``.lark`` or
        ``.ebnf`` for Lark grammars, ``.regex`` or ``.rx`` for patterns.

        Args:
            path: Path to the grammar file.

        Returns:
            Grammar description.
        """
        path = Path(path)
        kinds = {
            ".json": "json_schema",
            ".lark": "lark",
            ".ebnf": "lark",
            ".regex": "regex",
            ".rx": "regex",
        }
        kind = kinds.get(path.suffix.lower())
        if kind is None:
            raise ValueError(f"Cannot infer grammar kind from file suffix '{path.suffix}'")
        with open(path, 'r') as f:
            grammar_str = f.read()
        if kind == "regex":
            grammar_str = grammar_str.strip()
        return cls.from_string(grammar_str, kind)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> GrammarDescription:
        """Parse the tagged wire form, e.g. ``{"type": "regex", "pattern": "[a-z]+"}``."""
        kind = data.get("type")
        if kind == "json_schema":
            return JsonSchemaGrammar(data["schema"])
        elif kind == "regex":
            return RegexGrammar(data["pattern"])
        elif kind == "lark":
            return LarkGrammar(data["grammar"], data.get("startSymbol"))
        raise ValueError(f"Invalid grammar type {kind!r}. Must be one of {', '.join(GRAMMAR_KINDS)}.")
