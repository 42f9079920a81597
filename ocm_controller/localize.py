"""
Structural substitutions in YAML and JSON files.

A substitution names a file relative to the extracted tree, a path such as
``spec.template.spec.containers[0].image`` and a value. Files are parsed, the
value is set at the path and the document is written back; nothing is replaced
textually.
"""

import json
import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Iterable

import yaml

from .context import Context
from .errors import ValidationError

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"""([^.\[\]]+)|\[(\d+)\]|\[(['"])(.*?)\3\]""")


@dataclass
class Substitution:
    """One value to set at ``path`` inside ``file``. ``name`` only labels it."""

    name: str
    file: str
    path: str
    value: Any

    def to_dict(self) -> dict:
        return {"name": self.name, "file": self.file, "path": self.path, "value": self.value}

    @classmethod
    def from_dict(cls, data: dict) -> "Substitution":
        if not isinstance(data, dict) or not data.get("file") or not data.get("path"):
            raise ValidationError(f"substitution requires file and path: {data!r}")
        return cls(name=data.get("name", ""), file=data["file"], path=data["path"], value=data.get("value"))


def parse_path(path: str) -> list[str | int]:
    """
    Split a path into keys and list indices.

    Examples:
        >>> parse_path("spec.containers[0].image")
        ['spec', 'containers', 0, 'image']
        >>> parse_path("metadata.annotations['example.com/key']")
        ['metadata', 'annotations', 'example.com/key']
    """
    if not path:
        raise ValidationError("substitution path must not be empty")
    tokens: list[str | int] = []
    position = 0
    while position < len(path):
        if path[position] == ".":
            position += 1
            continue
        match = _TOKEN_RE.match(path, position)
        if not match:
            raise ValidationError(f"invalid substitution path {path!r}")
        if match.group(1) is not None:
            tokens.append(match.group(1))
        elif match.group(2) is not None:
            tokens.append(int(match.group(2)))
        else:
            tokens.append(match.group(4))
        position = match.end()
    if not tokens:
        raise ValidationError(f"invalid substitution path {path!r}")
    return tokens


def set_value(document: Any, path: str, value: Any) -> Any:
    """
    Set ``value`` at ``path`` in ``document`` and return the document.

    Missing mapping keys on the way are created. List indices must exist.
    """
    tokens = parse_path(path)
    if document is None:
        document = {}
    node = document
    for i, token in enumerate(tokens):
        last = i == len(tokens) - 1
        if isinstance(token, int):
            if not isinstance(node, list) or token >= len(node):
                raise ValidationError(f"path {path!r}: index {token} out of range")
            if last:
                node[token] = value
            else:
                if node[token] is None:
                    node[token] = [] if isinstance(tokens[i + 1], int) else {}
                node = node[token]
            continue
        if not isinstance(node, dict):
            raise ValidationError(f"path {path!r}: {token!r} is not addressable in a {type(node).__name__}")
        if last:
            node[token] = value
        else:
            if node.get(token) is None:
                node[token] = [] if isinstance(tokens[i + 1], int) else {}
            node = node[token]
    return document


def has_parent(document: Any, path: str) -> bool:
    """Whether everything but the last segment of ``path`` already exists."""
    node = document
    for token in parse_path(path)[:-1]:
        if isinstance(token, int):
            if not isinstance(node, list) or token >= len(node):
                return False
        elif not isinstance(node, dict) or token not in node:
            return False
        node = node[token]
    return True


def secure_join(root: str, relative: str) -> str:
    """
    Resolve ``relative`` under ``root`` without leaving it.

    Raises:
        ValidationError: if the path escapes ``root``
    """
    root_real = os.path.realpath(root)
    target = os.path.realpath(os.path.join(root_real, relative.lstrip("/")))
    if target != root_real and not target.startswith(root_real + os.sep):
        raise ValidationError(f"path {relative!r} escapes the working directory")
    return target


def apply_substitutions(root: str, substitutions: Iterable[Substitution], ctx: Context | None = None) -> list[str]:
    """
    Apply substitutions to files under ``root``.

    YAML files may hold several documents; a path is applied to every document
    in which its parent exists, or to the first document if none has it.

    Returns:
        Relative paths of the files that were modified

    Raises:
        ValidationError: if a file does not exist or cannot be parsed
    """
    ctx = ctx or Context.background()
    by_file: dict[str, list[Substitution]] = {}
    for substitution in substitutions:
        by_file.setdefault(substitution.file, []).append(substitution)

    modified = []
    for relative, items in by_file.items():
        ctx.check()
        path = secure_join(root, relative)
        if not os.path.isfile(path):
            raise ValidationError(f"file {relative!r} not found")

        with open(path, "rb") as f:
            content = f.read()

        if relative.endswith(".json"):
            try:
                document = json.loads(content)
            except ValueError as e:
                raise ValidationError(f"failed to parse {relative}: {e}") from e
            for item in items:
                document = set_value(document, item.path, item.value)
            output = (json.dumps(document, indent=2) + "\n").encode("utf-8")
        else:
            try:
                documents = list(yaml.safe_load_all(content))
            except yaml.YAMLError as e:
                raise ValidationError(f"failed to parse {relative}: {e}") from e
            documents = [d for d in documents if d is not None] or [{}]
            for item in items:
                targets = [i for i, d in enumerate(documents) if has_parent(d, item.path)] or [0]
                for i in targets:
                    documents[i] = set_value(documents[i], item.path, item.value)
            output = yaml.safe_dump_all(documents, sort_keys=False, default_flow_style=False).encode("utf-8")

        with open(path, "wb") as f:
            f.write(output)
        modified.append(relative)
        logger.debug(f"Applied {len(items)} substitutions to {relative}")

    return modified
