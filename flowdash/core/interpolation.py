"""Template interpolation for node configs.

Resolves `{{path}}` placeholders against the scope of a running execution:

- `{{fetch.result.items[0].name}}` - output of node `fetch`
- `{{loop.item}}` / `{{loop.index}}` - current loop binding
- `{{input.user_id}}` - the flow's runtime input
- `{{vars.counter}}` - values written by set_variable nodes

A string that is exactly one placeholder resolves to the raw value (type
preserved); placeholders embedded in text are rendered as strings.
Unresolvable placeholders are left in place and recorded on the resolver.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any

TOKEN_PATTERN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")
_INDEX_PATTERN = re.compile(r"\[(\d+)\]")

# Scope roots that are not node ids
RESERVED_ROOTS = frozenset({"loop", "input", "vars"})


class _Missing:
    def __repr__(self) -> str:
        return "<missing>"


MISSING = _Missing()


@dataclass
class ExecutionScope:
    """Values visible to templates and expressions while a node runs.

    `outputs` and `variables` are shared with the scheduler and updated as
    nodes complete. A loop iteration gets a child scope with its own
    `outputs` copy and `loop` binding.
    """

    outputs: dict[str, Any] = field(default_factory=dict)
    input: Any = None
    variables: dict[str, Any] = field(default_factory=dict)
    loop: dict[str, Any] | None = None

    def child(self, item: Any, index: int) -> "ExecutionScope":
        """Scope for one loop iteration."""
        return ExecutionScope(
            outputs=dict(self.outputs),
            input=self.input,
            variables=self.variables,
            loop={"item": item, "index": index},
        )

    def root(self, name: str) -> Any:
        if name == "loop":
            return self.loop if self.loop is not None else MISSING
        if name == "input":
            return self.input
        if name == "vars":
            return self.variables
        return self.outputs.get(name, MISSING)

    def names(self) -> dict[str, Any]:
        """Names exposed to transform and condition expressions."""
        names: dict[str, Any] = {
            node_id: output
            for node_id, output in self.outputs.items()
            if node_id.isidentifier()
        }
        names.update(
            {
                "input": self.input,
                "vars": self.variables,
                "loop": self.loop or {},
                "nodes": self.outputs,
            }
        )
        return names


def split_path(path: str) -> list[str]:
    """Split `a.b[0].c` into ['a', 'b', '0', 'c']."""
    normalized = _INDEX_PATTERN.sub(r".\1", path.strip())
    return [segment for segment in normalized.split(".") if segment != ""]


def lookup(scope: ExecutionScope, path: str) -> Any:
    """Resolve a dotted path against the scope, or return MISSING."""
    segments = split_path(path)
    if not segments:
        return MISSING

    current = scope.root(segments[0])
    for segment in segments[1:]:
        if current is MISSING:
            return MISSING
        if isinstance(current, dict):
            current = current.get(segment, MISSING)
        elif isinstance(current, (list, tuple)) and segment.isdigit():
            index = int(segment)
            current = current[index] if index < len(current) else MISSING
        else:
            return MISSING
    return current


def _render(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class TemplateResolver:
    """Resolves placeholders in a config value.

    Example:
        resolver = TemplateResolver(scope)
        config = resolver.resolve(node.config)
        for token in resolver.missing:
            ...  # warn about unresolved references
    """

    def __init__(self, scope: ExecutionScope) -> None:
        self.scope = scope
        self.missing: list[str] = []

    def resolve(self, value: Any) -> Any:
        """Resolve placeholders recursively in strings, dicts and lists."""
        if isinstance(value, str):
            return self._resolve_string(value)
        if isinstance(value, dict):
            return {key: self.resolve(item) for key, item in value.items()}
        if isinstance(value, list):
            return [self.resolve(item) for item in value]
        return value

    def _resolve_string(self, text: str) -> Any:
        match = TOKEN_PATTERN.fullmatch(text)
        if match:
            resolved = lookup(self.scope, match.group(1))
            if resolved is MISSING:
                self.missing.append(match.group(0))
                return text
            return resolved

        def replace(token: re.Match[str]) -> str:
            resolved = lookup(self.scope, token.group(1))
            if resolved is MISSING:
                self.missing.append(token.group(0))
                return token.group(0)
            return _render(resolved)

        return TOKEN_PATTERN.sub(replace, text)


def resolve(template: Any, scope: ExecutionScope) -> tuple[Any, list[str]]:
    """Resolve a template, returning the value and the unresolved tokens."""
    resolver = TemplateResolver(scope)
    return resolver.resolve(template), resolver.missing
