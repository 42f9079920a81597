"""
Semantic version constraints.

Implements the constraint syntax used by OCM and Helm (Masterminds style) on
top of :class:`semver.Version`:

    1.2.3, =1.2.3, !=1.2.3, >1.2, >=1.2, <2, <=2.1
    1.x, 1.2.*, *                 x-ranges, missing parts act as wildcards
    ~1.2.3, ~>1.2                 patch level changes
    ^1.2.3, ^0.2                  changes that do not modify the left-most non-zero part
    1.0 - 2.0                     inclusive hyphen range
    ">=1.0.0 <2.0.0", ">=1, <2"   AND (space or comma separated)
    "^1.0 || ^2.0"                OR

Versions may carry a leading ``v`` and may omit minor or patch parts. A
pre-release version only satisfies a group that itself names a pre-release.
"""

import logging
import re
from dataclasses import dataclass
from typing import Callable, Iterable

import semver

from .errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

_VERSION_RE = re.compile(
    r"^v?(?P<major>0|[1-9]\d*)"
    r"(?:\.(?P<minor>0|[1-9]\d*))?"
    r"(?:\.(?P<patch>0|[1-9]\d*))?"
    r"(?:-(?P<prerelease>[0-9A-Za-z.-]+))?"
    r"(?:\+(?P<build>[0-9A-Za-z.-]+))?$"
)

_TERM_RE = re.compile(
    r"\s*(?P<op>\^|~>|~|>=|=>|<=|=<|!=|>|<|=)?\s*"
    r"(?P<version>v?[0-9xX*]+(?:\.[0-9xX*]+){0,2}(?:-[0-9A-Za-z.-]+)?(?:\+[0-9A-Za-z.-]+)?)"
)

_HYPHEN_RE = re.compile(r"^\s*(\S+)\s+-\s+(\S+)\s*$")

_WILDCARDS = ("x", "X", "*")


def parse_version(text: str) -> semver.Version:
    """
    Parse a version leniently (``v`` prefix, missing minor/patch).

    Raises:
        ValidationError: if ``text`` is not a semantic version
    """
    match = _VERSION_RE.match(text.strip()) if isinstance(text, str) else None
    if not match:
        raise ValidationError(f"invalid semantic version: {text!r}")
    return semver.Version(
        major=int(match["major"]),
        minor=int(match["minor"] or 0),
        patch=int(match["patch"] or 0),
        prerelease=match["prerelease"],
        build=match["build"],
    )


def _core(version: semver.Version) -> semver.Version:
    return version.replace(build=None)


@dataclass
class _Partial:
    """A constraint version where trailing parts may be wildcards (None)."""

    major: int | None
    minor: int | None
    patch: int | None
    prerelease: str | None

    @classmethod
    def parse(cls, text: str) -> "_Partial":
        text = text[1:] if text[:1] in ("v", "V") else text
        text, _, _ = text.partition("+")
        core, _, prerelease = text.partition("-")
        parts = core.split(".")
        values: list[int | None] = []
        for part in parts:
            if part in _WILDCARDS:
                values.append(None)
            elif part.isdigit():
                values.append(int(part))
            else:
                raise ValidationError(f"invalid version in constraint: {text!r}")
        while len(values) < 3:
            values.append(None)
        # once a part is a wildcard every following part is too
        for i in range(1, 3):
            if values[i - 1] is None:
                values[i] = None
        return cls(values[0], values[1], values[2], prerelease or None)

    def floor(self) -> semver.Version:
        return semver.Version(self.major or 0, self.minor or 0, self.patch or 0, prerelease=self.prerelease)

    def next_step(self) -> semver.Version | None:
        """Smallest version above the wildcard range, None for ``*``."""
        if self.major is None:
            return None
        if self.minor is None:
            return semver.Version(self.major + 1, 0, 0)
        if self.patch is None:
            return semver.Version(self.major, self.minor + 1, 0)
        return None

    @property
    def is_wild(self) -> bool:
        return self.patch is None


Predicate = Callable[[semver.Version], bool]


def _range(lower: semver.Version | None, upper: semver.Version | None) -> Predicate:
    def check(v: semver.Version) -> bool:
        if lower is not None and v < lower:
            return False
        if upper is not None and v >= upper:
            return False
        return True

    return check


def _term(op: str, partial: _Partial) -> Predicate:
    floor = partial.floor()

    if op in ("", "="):
        if partial.is_wild:
            return _range(floor, partial.next_step())
        return lambda v: v == floor

    if op == "!=":
        if partial.is_wild:
            inside = _range(floor, partial.next_step())
            return lambda v: not inside(v)
        return lambda v: v != floor

    if op == ">":
        if partial.is_wild:
            step = partial.next_step()
            return (lambda v: False) if step is None else (lambda v: v >= step)
        return lambda v: v > floor

    if op in (">=", "=>"):
        return lambda v: v >= floor

    if op == "<":
        return lambda v: v < floor

    if op in ("<=", "=<"):
        if partial.is_wild:
            step = partial.next_step()
            return (lambda v: True) if step is None else (lambda v: v < step)
        return lambda v: v <= floor

    if op in ("~", "~>"):
        if partial.major is None:
            return lambda v: True
        if partial.minor is None:
            return _range(floor, semver.Version(partial.major + 1, 0, 0))
        return _range(floor, semver.Version(partial.major, partial.minor + 1, 0))

    if op == "^":
        if partial.major is None:
            return lambda v: True
        if partial.major > 0 or partial.minor is None:
            return _range(floor, semver.Version(partial.major + 1, 0, 0))
        if partial.minor > 0 or partial.patch is None:
            return _range(floor, semver.Version(0, partial.minor + 1, 0))
        return _range(floor, semver.Version(0, 0, partial.patch + 1))

    raise ValidationError(f"unknown constraint operator {op!r}")


class _Group:
    """Terms that must all hold."""

    def __init__(self, text: str):
        self.text = text.strip()
        self.predicates: list[Predicate] = []
        self.allows_prerelease = False

        hyphen = _HYPHEN_RE.match(self.text)
        if hyphen:
            low, high = _Partial.parse(hyphen[1]), _Partial.parse(hyphen[2])
            self.predicates = [_term(">=", low), _term("<=", high)]
            self.allows_prerelease = bool(low.prerelease or high.prerelease)
            return

        remaining = self.text.replace(",", " ")
        position = 0
        while remaining[position:].strip():
            match = _TERM_RE.match(remaining, position)
            if not match:
                raise ValidationError(f"invalid constraint: {text!r}")
            partial = _Partial.parse(match["version"])
            self.predicates.append(_term(match["op"] or "", partial))
            self.allows_prerelease = self.allows_prerelease or bool(partial.prerelease)
            position = match.end()
        if not self.predicates:
            raise ValidationError(f"empty constraint: {text!r}")

    def check(self, version: semver.Version) -> bool:
        if version.prerelease and not self.allows_prerelease:
            return False
        return all(predicate(version) for predicate in self.predicates)


class Constraint:
    """
    A parsed version constraint.

    Example:
        >>> Constraint(">=1.0.0 <2.0.0").check("1.4.2")
        True
        >>> Constraint("^1.2 || ~3.0").check("3.1.0")
        False
    """

    def __init__(self, text: str):
        if not text or not text.strip():
            raise ValidationError("constraint must not be empty")
        self.text = text
        self.groups = [_Group(part) for part in text.split("||")]

    def check(self, version: "str | semver.Version") -> bool:
        if isinstance(version, str):
            version = parse_version(version)
        version = _core(version)
        return any(group.check(version) for group in self.groups)

    def __str__(self) -> str:
        return self.text

    def __repr__(self) -> str:
        return f"Constraint({self.text!r})"


def latest_matching(versions: Iterable[str], constraint: str) -> str:
    """
    Return the highest version from ``versions`` that satisfies ``constraint``.

    Every version must parse; one bad entry fails the whole selection.

    Raises:
        ValidationError: if the constraint or any version is invalid
        NotFoundError: if no version satisfies the constraint
    """
    parsed_constraint = Constraint(constraint)
    candidates = []
    for text in versions:
        version = parse_version(text)
        if parsed_constraint.check(version):
            candidates.append((_core(version), text))
    if not candidates:
        raise NotFoundError(f"no matching versions found for constraint {constraint!r}")
    best = max(candidates, key=lambda item: item[0])
    logger.debug(f"Selected version {best[1]} for constraint {constraint!r} out of {len(candidates)} candidates")
    return best[1]
