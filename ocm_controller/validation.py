"""
Input validation module for the OCM controller core.

Provides validation functions for repository names, tags, digests, and image
reference parsing.
"""

import hashlib
import logging
import re
from dataclasses import dataclass

from .config import config
from .errors import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_REGISTRY = "index.docker.io"

_REPOSITORY_COMPONENT = r"[a-z0-9]+(?:(?:\.|_|__|-+)[a-z0-9]+)*"
_REPOSITORY_RE = re.compile(rf"^{_REPOSITORY_COMPONENT}(?:/{_REPOSITORY_COMPONENT})*$")
_TAG_RE = re.compile(r"^[a-zA-Z0-9_][a-zA-Z0-9._-]*$")
_DIGEST_RE = re.compile(r"^sha256:[a-f0-9]{64}$")


def compute_sha256(data: bytes) -> str:
    """
    Compute SHA256 digest in OCI format.

    Args:
        data: Bytes to hash

    Returns:
        String in format "sha256:<64 hex chars>"

    Example:
        >>> compute_sha256(b"hello")
        'sha256:2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824'
    """
    h = hashlib.sha256()
    h.update(data)
    return "sha256:" + h.hexdigest()


def validate_repository_name(name: str) -> None:
    """
    Validate an OCI repository name (the path part, without registry host).

    Args:
        name: Repository name to validate (e.g., "sha-1234" or "acme/component-descriptors/app")

    Raises:
        ValidationError: if the name is empty, too long or not a valid OCI name

    Validation Rules:
        - Must be 1-{MAX_NAME_LENGTH} characters (configurable)
        - Lowercase path components separated by slashes
        - Components may contain dots, underscores and dashes between alphanumerics
    """
    if not name or len(name) > config.MAX_NAME_LENGTH:
        logger.warning(f"Invalid repository name length: {len(name or '')}")
        raise ValidationError(f"invalid repository name: must be 1-{config.MAX_NAME_LENGTH} characters")

    if not _REPOSITORY_RE.match(name):
        logger.warning(f"Invalid repository name format: {name}")
        raise ValidationError(f"invalid repository name: {name!r}")

    logger.debug(f"Repository name validated: {name}")


def validate_tag(tag: str) -> None:
    """
    Validate an OCI tag.

    Args:
        tag: Tag name to validate

    Raises:
        ValidationError: if the tag is invalid

    Validation Rules:
        - Must be 1-{MAX_TAG_LENGTH} characters (configurable)
        - Only alphanumeric characters, dots (.), hyphens (-), and underscores (_)
        - Must not start with a dot or hyphen
    """
    if not tag or len(tag) > config.MAX_TAG_LENGTH:
        logger.warning(f"Invalid tag length: {len(tag or '')}")
        raise ValidationError(f"invalid tag: must be 1-{config.MAX_TAG_LENGTH} characters")

    if not _TAG_RE.match(tag):
        logger.warning(f"Invalid tag format: {tag}")
        raise ValidationError(f"invalid tag: {tag!r}")

    logger.debug(f"Tag validated: {tag}")


def validate_digest(digest: str) -> None:
    """
    Validate SHA256 digest format per OCI specification.

    Args:
        digest: Digest string to validate

    Raises:
        ValidationError: if the digest is invalid

    Format:
        Must match: sha256:<64 lowercase hex characters>
    """
    if not digest or not _DIGEST_RE.match(digest):
        logger.warning(f"Invalid digest format: {digest}")
        raise ValidationError(f"invalid digest {digest!r}: must be sha256:<64 hex characters>")

    logger.debug(f"Digest validated: {digest}")


@dataclass(frozen=True)
class ImageReference:
    """
    A parsed image reference such as ``ghcr.io/acme/web:1.0@sha256:...``.

    ``registry`` is empty when the reference does not name one explicitly; the
    ``registry_host`` property then falls back to Docker Hub.
    """

    registry: str
    repository: str
    tag: str = ""
    digest: str = ""

    @property
    def registry_host(self) -> str:
        return self.registry or DEFAULT_REGISTRY

    @property
    def identifier(self) -> str:
        """Digest if present, otherwise tag, otherwise "latest"."""
        return self.digest or self.tag or "latest"

    @property
    def context(self) -> str:
        """Registry plus repository, without tag or digest."""
        if self.registry:
            return f"{self.registry}/{self.repository}"
        return self.repository

    def __str__(self) -> str:
        ref = self.context
        if self.tag:
            ref += f":{self.tag}"
        if self.digest:
            ref += f"@{self.digest}"
        return ref


def parse_reference(reference: str) -> ImageReference:
    """
    Parse an image reference into registry, repository, tag and digest.

    The first path component is treated as a registry host when it contains a
    dot or a port, or is ``localhost``, following the Docker convention.

    Raises:
        ValidationError: if the reference is empty or malformed

    Examples:
        >>> parse_reference("nginx:1.23-3-alpine")
        ImageReference(registry='', repository='nginx', tag='1.23-3-alpine', digest='')
        >>> str(parse_reference("localhost:5000/app@sha256:" + "0" * 64))
        'localhost:5000/app@sha256:0000000000000000000000000000000000000000000000000000000000000000'
    """
    if not reference or reference.strip() != reference:
        raise ValidationError(f"invalid image reference: {reference!r}")

    remainder, digest = reference, ""
    if "@" in remainder:
        remainder, digest = remainder.split("@", 1)
        validate_digest(digest)

    registry = ""
    first, sep, rest = remainder.partition("/")
    if sep and ("." in first or ":" in first or first == "localhost"):
        registry, remainder = first, rest

    tag = ""
    last_slash = remainder.rfind("/")
    colon = remainder.rfind(":")
    if colon > last_slash:
        remainder, tag = remainder[:colon], remainder[colon + 1:]
        validate_tag(tag)

    if not remainder or not _REPOSITORY_RE.match(remainder):
        raise ValidationError(f"invalid image reference: {reference!r}")

    return ImageReference(registry=registry, repository=remainder, tag=tag, digest=digest)
