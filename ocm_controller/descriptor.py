"""
Component descriptor model.

Parses OCM component descriptors in the ``v2`` schema (``meta.schemaVersion``)
and the ``ocm.software/v3alpha1`` schema (``apiVersion``/``kind``) into the same
dataclasses. Access specifications become one of a closed set of access types;
anything else is kept as :class:`UnsupportedAccess` and fails loudly when used.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Union

import yaml

from .errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

SCHEMA_V2 = "v2"
SCHEMA_V3ALPHA1 = "ocm.software/v3alpha1"

LOCAL_BLOB = "localBlob"
OCI_BLOB = "ociBlob"
OCI_ARTIFACT = "ociArtifact"

# Versioned and legacy type names mapped to the canonical access type.
_ACCESS_ALIASES = {
    "localBlob": LOCAL_BLOB,
    "localBlob/v1": LOCAL_BLOB,
    "LocalBlob": LOCAL_BLOB,
    "localFilesystemBlob": LOCAL_BLOB,
    "localFilesystemBlob/v1": LOCAL_BLOB,
    "ociBlob": OCI_BLOB,
    "ociBlob/v1": OCI_BLOB,
    "ociArtifact": OCI_ARTIFACT,
    "ociArtifact/v1": OCI_ARTIFACT,
    "OCIImage": OCI_ARTIFACT,
    "OCIImage/v1": OCI_ARTIFACT,
    "ociRegistry": OCI_ARTIFACT,
    "ociRegistry/v1": OCI_ARTIFACT,
}


@dataclass
class LocalBlobAccess:
    local_reference: str
    media_type: str = ""
    reference_name: str = ""
    global_access: "AccessSpec | None" = None
    type: str = LOCAL_BLOB


@dataclass
class OCIBlobAccess:
    ref: str
    digest: str
    media_type: str = ""
    size: int = -1
    type: str = OCI_BLOB


@dataclass
class OCIArtifactAccess:
    image_reference: str
    type: str = OCI_ARTIFACT


@dataclass
class UnsupportedAccess:
    type: str
    raw: dict = field(default_factory=dict)


AccessSpec = Union[LocalBlobAccess, OCIBlobAccess, OCIArtifactAccess, UnsupportedAccess]


def parse_access(data: dict | None) -> AccessSpec:
    """
    Turn an access specification mapping into its typed form.

    Raises:
        ValidationError: if a known access type misses a required field
    """
    if not isinstance(data, dict) or not data.get("type"):
        raise ValidationError(f"access specification without type: {data!r}")

    raw_type = str(data["type"])
    kind = _ACCESS_ALIASES.get(raw_type)

    if kind == LOCAL_BLOB:
        reference = data.get("localReference") or data.get("filename")
        if not reference:
            raise ValidationError(f"{raw_type} access requires localReference")
        global_access = data.get("globalAccess")
        return LocalBlobAccess(
            local_reference=reference,
            media_type=data.get("mediaType", ""),
            reference_name=data.get("referenceName", ""),
            global_access=parse_access(global_access) if global_access else None,
        )

    if kind == OCI_BLOB:
        if not data.get("ref") or not data.get("digest"):
            raise ValidationError(f"{raw_type} access requires ref and digest")
        return OCIBlobAccess(
            ref=data["ref"],
            digest=data["digest"],
            media_type=data.get("mediaType", ""),
            size=int(data.get("size", -1)),
        )

    if kind == OCI_ARTIFACT:
        reference = data.get("imageReference")
        if not reference:
            raise ValidationError(f"{raw_type} access requires imageReference")
        return OCIArtifactAccess(image_reference=reference)

    logger.debug(f"Keeping unsupported access type {raw_type}")
    return UnsupportedAccess(type=raw_type, raw=dict(data))


@dataclass
class Resource:
    name: str
    version: str = ""
    type: str = ""
    relation: str = ""
    extra_identity: dict[str, str] = field(default_factory=dict)
    labels: list[dict] = field(default_factory=list)
    access: AccessSpec | None = None
    digest: dict | None = None

    def identity(self) -> dict[str, str]:
        return {"name": self.name, **self.extra_identity}

    def label(self, name: str, default: Any = None) -> Any:
        for label in self.labels:
            if label.get("name") == name:
                return label.get("value")
        return default


@dataclass
class Reference:
    name: str
    component_name: str
    version: str
    extra_identity: dict[str, str] = field(default_factory=dict)
    labels: list[dict] = field(default_factory=list)
    digest: dict | None = None


@dataclass
class Signature:
    name: str
    digest: dict = field(default_factory=dict)
    signature: dict = field(default_factory=dict)

    @property
    def digest_value(self) -> str:
        return self.digest.get("value", "")

    @property
    def normalisation_algorithm(self) -> str:
        return self.digest.get("normalisationAlgorithm", "")


@dataclass
class RepositoryContext:
    type: str
    base_url: str
    sub_path: str = ""

    @property
    def url(self) -> str:
        if self.sub_path:
            return f"{self.base_url.rstrip('/')}/{self.sub_path.strip('/')}"
        return self.base_url.rstrip("/")


@dataclass
class ComponentDescriptor:
    name: str
    version: str
    provider: str = ""
    schema_version: str = SCHEMA_V2
    labels: list[dict] = field(default_factory=list)
    repository_contexts: list[RepositoryContext] = field(default_factory=list)
    resources: list[Resource] = field(default_factory=list)
    references: list[Reference] = field(default_factory=list)
    signatures: list[Signature] = field(default_factory=list)
    raw: dict = field(default_factory=dict, repr=False)

    def find_resources(self, name: str, extra_identity: dict[str, str] | None = None) -> list[Resource]:
        """All resources called ``name`` whose extra identity contains ``extra_identity``."""
        wanted = extra_identity or {}
        return [
            r
            for r in self.resources
            if r.name == name and all(r.extra_identity.get(k) == v for k, v in wanted.items())
        ]

    def get_resource(self, name: str, extra_identity: dict[str, str] | None = None) -> Resource:
        """
        Return the single resource matching ``name`` and ``extra_identity``.

        Raises:
            NotFoundError: if no resource matches
            ValidationError: if more than one resource matches
        """
        matches = self.find_resources(name, extra_identity)
        if not matches:
            raise NotFoundError(f"resource {name!r} not found in component {self.name}:{self.version}")
        if len(matches) > 1:
            raise ValidationError(
                f"resource {name!r} is ambiguous in component {self.name}:{self.version}; "
                f"{len(matches)} resources match, set extraIdentity to select one"
            )
        return matches[0]

    def get_signature(self, name: str) -> Signature | None:
        for signature in self.signatures:
            if signature.name == name:
                return signature
        return None

    @property
    def current_repository_context(self) -> RepositoryContext | None:
        return self.repository_contexts[-1] if self.repository_contexts else None

    def to_dict(self) -> dict:
        return self.raw


def load_descriptor(data: bytes | str | dict) -> ComponentDescriptor:
    """
    Parse a component descriptor document.

    Raises:
        ValidationError: if the document is not valid YAML/JSON or not a descriptor
    """
    if isinstance(data, (bytes, str)):
        try:
            data = yaml.safe_load(data)
        except yaml.YAMLError as e:
            raise ValidationError(f"failed to decode component descriptor: {e}") from e
    if not isinstance(data, dict):
        raise ValidationError("component descriptor must be a mapping")

    if data.get("apiVersion") == SCHEMA_V3ALPHA1:
        return _load_v3alpha1(data)
    schema = (data.get("meta") or {}).get("schemaVersion")
    if schema == SCHEMA_V2:
        return _load_v2(data)
    raise ValidationError(f"unsupported component descriptor schema: {schema or data.get('apiVersion')!r}")


def _load_v2(data: dict) -> ComponentDescriptor:
    component = data.get("component") or {}
    provider = component.get("provider", "")
    if isinstance(provider, dict):
        provider = provider.get("name", "")
    return ComponentDescriptor(
        name=_required(component, "name"),
        version=_required(component, "version"),
        provider=provider,
        schema_version=SCHEMA_V2,
        labels=list(component.get("labels") or []),
        repository_contexts=_repository_contexts(component.get("repositoryContexts")),
        resources=[_resource(r) for r in component.get("resources") or []],
        references=[_reference(r) for r in component.get("componentReferences") or []],
        signatures=_signatures(data.get("signatures")),
        raw=data,
    )


def _load_v3alpha1(data: dict) -> ComponentDescriptor:
    metadata = data.get("metadata") or {}
    spec = data.get("spec") or {}
    provider = metadata.get("provider", "")
    if isinstance(provider, dict):
        provider = provider.get("name", "")
    return ComponentDescriptor(
        name=_required(metadata, "name"),
        version=_required(metadata, "version"),
        provider=provider,
        schema_version=SCHEMA_V3ALPHA1,
        labels=list(metadata.get("labels") or []),
        repository_contexts=_repository_contexts(data.get("repositoryContexts")),
        resources=[_resource(r) for r in spec.get("resources") or []],
        references=[_reference(r) for r in spec.get("references") or []],
        signatures=_signatures(data.get("signatures")),
        raw=data,
    )


def _required(data: dict, key: str) -> str:
    value = data.get(key)
    if not value:
        raise ValidationError(f"component descriptor is missing {key!r}")
    return str(value)


def _string_map(value) -> dict[str, str]:
    return {str(k): str(v) for k, v in (value or {}).items()}


def _resource(data: dict) -> Resource:
    return Resource(
        name=_required(data, "name"),
        version=str(data.get("version", "")),
        type=data.get("type", ""),
        relation=data.get("relation", ""),
        extra_identity=_string_map(data.get("extraIdentity")),
        labels=list(data.get("labels") or []),
        access=parse_access(data["access"]) if data.get("access") else None,
        digest=data.get("digest"),
    )


def _reference(data: dict) -> Reference:
    return Reference(
        name=_required(data, "name"),
        component_name=_required(data, "componentName"),
        version=_required(data, "version"),
        extra_identity=_string_map(data.get("extraIdentity")),
        labels=list(data.get("labels") or []),
        digest=data.get("digest"),
    )


def _repository_contexts(items) -> list[RepositoryContext]:
    contexts = []
    for item in items or []:
        base_url = item.get("baseUrl") or item.get("baseURL") or ""
        contexts.append(RepositoryContext(type=item.get("type", ""), base_url=base_url, sub_path=item.get("subPath", "")))
    return contexts


def _signatures(items) -> list[Signature]:
    return [
        Signature(name=_required(s, "name"), digest=dict(s.get("digest") or {}), signature=dict(s.get("signature") or {}))
        for s in items or []
    ]
