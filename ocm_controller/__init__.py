"""
OCM controller core.

Resolves, verifies, caches and transforms Open Component Model (OCM) component
versions stored in OCI registries.

Subsystems:
    - Resolver: fetches component versions, expands their reference graph,
      verifies signatures, selects versions under semver constraints and
      resolves resource access specifications
    - Snapshot cache: registry-backed blob store keyed by a deterministic hash
      of an identity mapping
    - Mutation engine: localizes image references and applies configuration
      values inside a packaged file tree and caches the result

Example:
    >>> from ocm_controller import Context, Service
    >>> service = Service.from_config()
    >>> component = service.resolver.get_component_version(
    ...     Context(timeout=30), "ghcr.io/acme", "acme.org/app", "1.0.0")
"""

__version__ = "0.1.0"
__author__ = "Ivan Mincik"

# Import key components for convenience
from .config import Config
from .context import Context
from .errors import (
    OCMError,
    NotFoundError,
    AccessError,
    ValidationError,
    CacheError,
    CancelledError,
    UnresolvedReferenceError,
    StageError,
)
from .identity import hash_identity, name_for, select_tag
from .cache import OCICache
from .snapshot import Snapshot, SnapshotWriter
from .oci import Credentials, CredentialStore, RegistryClient
from .ocm import ComponentVersion, ReferenceNode, Resolver, ResourceRef
from .evaluator import TemplateEvaluator
from .mutation import ComponentResource, MutationEngine, MutationRequest, MutationResult, Stage
from .service import Service

__all__ = [
    "Config",
    "Context",
    "OCMError",
    "NotFoundError",
    "AccessError",
    "ValidationError",
    "CacheError",
    "CancelledError",
    "UnresolvedReferenceError",
    "StageError",
    "hash_identity",
    "name_for",
    "select_tag",
    "OCICache",
    "Snapshot",
    "SnapshotWriter",
    "Credentials",
    "CredentialStore",
    "RegistryClient",
    "ComponentVersion",
    "ReferenceNode",
    "Resolver",
    "ResourceRef",
    "TemplateEvaluator",
    "ComponentResource",
    "MutationEngine",
    "MutationRequest",
    "MutationResult",
    "Stage",
    "Service",
]
