"""
Identity handling and deterministic naming of cached blobs.

An identity is a flat string to string mapping. Its canonical name is a hash of
the sorted key/value pairs, so the same identity always lands in the same cache
repository no matter how it was built or serialized.
"""

import hashlib
import json
import logging
from typing import Mapping

from .errors import ValidationError

logger = logging.getLogger(__name__)

COMPONENT_NAME_KEY = "component-name"
COMPONENT_VERSION_KEY = "component-version"
RESOURCE_NAME_KEY = "resource-name"
RESOURCE_VERSION_KEY = "resource-version"
HELM_CHART_NAME_KEY = "helm-chart-name"
HELM_CHART_VERSION_KEY = "helm-chart-version"
SOURCE_NAME_KEY = "source-name"
SOURCE_NAMESPACE_KEY = "source-namespace"
SOURCE_ARTIFACT_CHECKSUM_KEY = "source-artifact-checksum"

NAME_PREFIX = "sha-"
LATEST = "latest"

Identity = dict[str, str]


def canonical(identity: Mapping[str, str]) -> bytes:
    """Order independent byte encoding of an identity."""
    for key, value in identity.items():
        if not isinstance(key, str) or not isinstance(value, str):
            raise ValidationError(f"identity entries must be strings, got {key!r}: {value!r}")
    return json.dumps(sorted(identity.items()), separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def hash_identity(identity: Mapping[str, str]) -> str:
    """Return ``sha-<hex>`` for the identity."""
    if not identity:
        raise ValidationError("cannot hash an empty identity")
    return NAME_PREFIX + hashlib.sha256(canonical(identity)).hexdigest()


def name_for(identity: Mapping[str, str]) -> str:
    """
    Cache repository name for an identity.

    Helm charts get their chart name appended as an extra path segment because
    Helm clients resolve ``<repository>/<chart>`` rather than the repository root.

    Example:
        >>> name_for({"resource-name": "chart", "helm-chart-name": "podinfo"})[:4]
        'sha-'
    """
    name = hash_identity(identity)
    chart = identity.get(HELM_CHART_NAME_KEY)
    if chart:
        name = f"{name}/{chart}"
    logger.debug(f"Identity {dict(identity)} maps to {name}")
    return name


def select_tag(identity: Mapping[str, str], fallback: str | None = None) -> str:
    """
    Tag under which a snapshot for this identity is stored.

    Preference: Helm chart version, then resource version, then ``fallback``.

    Raises:
        ValidationError: if none of them is available
    """
    for key in (HELM_CHART_VERSION_KEY, RESOURCE_VERSION_KEY):
        value = identity.get(key)
        if value:
            return value
    if fallback:
        return fallback
    raise ValidationError(f"no tag can be derived for identity {dict(identity)}")


def resource_identity(
    component_name: str,
    component_version: str,
    resource_name: str,
    resource_version: str | None = None,
    extra_identity: Mapping[str, str] | None = None,
) -> Identity:
    """Identity of a resource inside a component version."""
    identity = {
        COMPONENT_NAME_KEY: component_name,
        COMPONENT_VERSION_KEY: component_version,
        RESOURCE_NAME_KEY: resource_name,
        RESOURCE_VERSION_KEY: resource_version or LATEST,
    }
    for key, value in (extra_identity or {}).items():
        identity[key] = value
    return identity


def unique_descriptor_name(name: str, version: str, extra_identity: Mapping[str, str] | None = None) -> str:
    """Stable record name for a mirrored component descriptor."""
    digest = hashlib.sha256(
        canonical({"name": name, "version": version, **{f"x-{k}": v for k, v in (extra_identity or {}).items()}})
    ).hexdigest()[:12]
    return f"{name.replace('/', '-')}-{version}-{digest}"
