"""
Template evaluator for ``(( expression ))`` placeholders.

The evaluator takes a YAML or JSON template, resolves every string value that
consists of a single ``(( ... ))`` expression and returns the resolved document
as JSON. Expressions support:

    (( name ))                 reference to a top level key
    (( a.b[0].c ))             reference into nested data
    (( "text" ))  (( 42 ))     literals
    (( "v" version ))          concatenation of juxtaposed operands
    (( name || "fallback" ))   fallback when the left side cannot be resolved
    (( ~ ))  (( ~~ ))          nil

References may point at other expressions; these are resolved first. Anything
beyond this subset (functions, merges, arithmetic) is rejected.
"""

import json
import logging
import re
from typing import Any, Protocol

import yaml

from .errors import UnresolvedReferenceError, ValidationError
from .localize import parse_path

logger = logging.getLogger(__name__)

_EXPRESSION_RE = re.compile(r"^\(\((.*)\)\)$", re.DOTALL)
_TOKEN_RE = re.compile(
    r"""\s*(?:
        (?P<string>"(?:[^"\\]|\\.)*")
      | (?P<number>-?\d+(?:\.\d+)?)
      | (?P<or>\|\|)
      | (?P<nil>~~?)
      | (?P<lparen>\()
      | (?P<rparen>\))
      | (?P<ref>[A-Za-z_][\w\-]*(?:\.[A-Za-z_][\w\-]*|\[\d+\])*)
    )""",
    re.VERBOSE,
)


class Evaluator(Protocol):
    """Anything that can turn a template into its resolved form."""

    def evaluate(self, template: bytes) -> bytes: ...


class TemplateEvaluator:
    """Evaluates ``(( ... ))`` expressions in a template document."""

    def evaluate(self, template: bytes) -> bytes:
        """
        Resolve all expressions in ``template``.

        Raises:
            ValidationError: if the template cannot be parsed, an expression is
                malformed, or expressions reference each other in a loop
            UnresolvedReferenceError: if a reference names nothing; the error
                carries the reference and the path of the node holding it
        """
        try:
            document = yaml.safe_load(template)
        except yaml.YAMLError as e:
            raise ValidationError(f"failed to parse template: {e}") from e

        run = _Run(document)
        result = run.resolve_node(document, [])
        logger.debug(f"Evaluated template with {run.evaluated} expressions")
        return json.dumps(result, sort_keys=False).encode("utf-8")


def _format_path(path: list) -> str:
    out = ""
    for token in path:
        if isinstance(token, int):
            out += f"[{token}]"
        else:
            out += f".{token}" if out else str(token)
    return out


class _Run:
    def __init__(self, document: Any):
        self.document = document
        self.resolved: dict[str, Any] = {}
        self.in_progress: set[str] = set()
        self.evaluated = 0

    def resolve_node(self, node: Any, path: list) -> Any:
        if isinstance(node, dict):
            return {k: self.resolve_node(v, path + [k]) for k, v in node.items()}
        if isinstance(node, list):
            return [self.resolve_node(v, path + [i]) for i, v in enumerate(node)]
        if isinstance(node, str) and _EXPRESSION_RE.match(node.strip()):
            return self.expression_at(node, path)
        return node

    def expression_at(self, text: str, path: list) -> Any:
        key = _format_path(path)
        if key in self.resolved:
            return self.resolved[key]
        if key in self.in_progress:
            raise ValidationError(f"expressions at '{key}' reference each other in a loop")
        self.in_progress.add(key)
        try:
            expression = _EXPRESSION_RE.match(text.strip()).group(1)
            tokens = _tokenize(expression, key)
            value, position = self.parse_or(tokens, 0, key)
            if position != len(tokens):
                raise ValidationError(f"unexpected token in expression '{expression.strip()}' at '{key}'")
        finally:
            self.in_progress.discard(key)
        if isinstance(value, _Missing):
            raise UnresolvedReferenceError(value.reference, key)
        self.resolved[key] = value
        self.evaluated += 1
        return value

    def parse_or(self, tokens: list, position: int, key: str) -> tuple[Any, int]:
        value, position = self.parse_concat(tokens, position, key)
        while position < len(tokens) and tokens[position][0] == "or":
            right, position = self.parse_concat(tokens, position + 1, key)
            if isinstance(value, _Missing) or value is None:
                value = right
        return value, position

    def parse_concat(self, tokens: list, position: int, key: str) -> tuple[Any, int]:
        operands = []
        while position < len(tokens) and tokens[position][0] not in ("or", "rparen"):
            operand, position = self.parse_operand(tokens, position, key)
            operands.append(operand)
        if not operands:
            raise ValidationError(f"empty expression at '{key}'")
        for operand in operands:
            if isinstance(operand, _Missing):
                return operand, position
        if len(operands) == 1:
            return operands[0], position
        if all(isinstance(o, list) for o in operands):
            return [item for o in operands for item in o], position
        if any(isinstance(o, (dict, list)) for o in operands):
            raise ValidationError(f"cannot concatenate structured values at '{key}'")
        return "".join(_scalar_text(o) for o in operands), position

    def parse_operand(self, tokens: list, position: int, key: str) -> tuple[Any, int]:
        kind, text = tokens[position]
        if kind == "string":
            return json.loads(text), position + 1
        if kind == "number":
            return (float(text) if "." in text else int(text)), position + 1
        if kind == "nil":
            return None, position + 1
        if kind == "lparen":
            value, position = self.parse_or(tokens, position + 1, key)
            if position >= len(tokens) or tokens[position][0] != "rparen":
                raise ValidationError(f"missing ')' in expression at '{key}'")
            return value, position + 1
        if kind == "ref":
            return self.lookup(text), position + 1
        raise ValidationError(f"unexpected '{text}' in expression at '{key}'")

    def lookup(self, reference: str) -> Any:
        node = self.document
        walked: list = []
        for token in parse_path(reference):
            if isinstance(token, int):
                if not isinstance(node, list) or token >= len(node):
                    return _Missing(reference)
            elif not isinstance(node, dict) or token not in node:
                return _Missing(reference)
            node = node[token]
            walked.append(token)
            if isinstance(node, str) and _EXPRESSION_RE.match(node.strip()):
                node = self.expression_at(node, walked)
        return self.resolve_node(node, walked)


class _Missing:
    def __init__(self, reference: str):
        self.reference = reference


def _scalar_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _tokenize(expression: str, key: str) -> list[tuple[str, str]]:
    tokens = []
    position = 0
    while position < len(expression):
        if expression[position:].strip() == "":
            break
        match = _TOKEN_RE.match(expression, position)
        if not match or match.end() == position:
            raise ValidationError(f"invalid expression '{expression.strip()}' at '{key}'")
        kind = match.lastgroup
        tokens.append((kind, match.group(kind)))
        position = match.end()
    return tokens
