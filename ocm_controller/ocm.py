"""
Component resolver.

Fetches OCM component versions from OCI registries, mirrors their reference
graph into a descriptor store, verifies signatures, selects versions under
semver constraints, transfers components between repositories and resolves
resource access specifications into pull references.

Repository layout (OCM OCI mapping):
    <base>/component-descriptors/<component-name>:<version>

    The manifest config is ``application/vnd.ocm.software.component.config.v1+json``
    and points at the descriptor layer, a tar holding ``component-descriptor.yaml``.
    Local blobs are stored as further layers of the same manifest.
"""

import io
import json
import logging
import tempfile
import threading
from dataclasses import dataclass, field
from functools import lru_cache
from typing import BinaryIO, Iterable, Union

import yaml

from .archive import auto_decompress, copy_stream, read_tar_member, tar_single_file
from .cache import OCICache
from .config import config
from .constraints import latest_matching
from .context import Context
from .descriptor import (
    ComponentDescriptor,
    LocalBlobAccess,
    OCIArtifactAccess,
    OCIBlobAccess,
    Resource,
    UnsupportedAccess,
    AccessSpec,
    load_descriptor,
)
from .errors import AccessError, NotFoundError, ValidationError
from .identity import Identity, name_for, resource_identity, select_tag, unique_descriptor_name
from .oci import HELM_CHART_LAYER, OCI_INDEX, OCI_MANIFEST, RegistryClient
from .signing import PublicKeySpec, verify
from .validation import compute_sha256, parse_reference

logger = logging.getLogger(__name__)

COMPONENT_DESCRIPTORS = "component-descriptors"
COMPONENT_CONFIG = "application/vnd.ocm.software.component.config.v1+json"
DESCRIPTOR_LAYER = "application/vnd.ocm.software.component-descriptor.v2+yaml+tar"
DESCRIPTOR_FILE = "component-descriptor.yaml"
HELM_CHART_TYPE = "helmChart"


def version_to_tag(version: str) -> str:
    """OCI tags cannot hold ``+``; OCM stores build metadata as ``.build-``."""
    return version.replace("+", ".build-")


def tag_to_version(tag: str) -> str:
    return tag.replace(".build-", "+")


@dataclass
class ComponentVersion:
    """A fetched component version and where it came from."""

    repository_url: str
    descriptor: ComponentDescriptor
    digest: str = ""

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def version(self) -> str:
        return self.descriptor.version

    @property
    def repository(self) -> str:
        return f"{self.repository_url}/{COMPONENT_DESCRIPTORS}/{self.name}"


@dataclass
class ReferenceNode:
    """One node of a resolved reference tree."""

    name: str
    component_name: str
    version: str
    descriptor_name: str
    extra_identity: dict[str, str] = field(default_factory=dict)
    references: list["ReferenceNode"] = field(default_factory=list)

    def depth(self) -> int:
        deepest = 0
        stack = [(self, 0)]
        while stack:
            node, depth = stack.pop()
            deepest = max(deepest, depth)
            stack.extend((child, depth + 1) for child in node.references)
        return deepest

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "componentName": self.component_name,
            "version": self.version,
            "extraIdentity": dict(self.extra_identity),
            "componentDescriptorRef": self.descriptor_name,
            "references": [child.to_dict() for child in self.references],
        }


PathSegment = Union[str, dict]


@dataclass
class ResourceRef:
    """Names a resource, optionally inside a referenced component."""

    name: str
    version: str = ""
    extra_identity: dict[str, str] = field(default_factory=dict)
    reference_path: list[PathSegment] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "ResourceRef":
        if not isinstance(data, dict) or not data.get("name"):
            raise ValidationError(f"resource reference requires a name: {data!r}")
        return cls(
            name=data["name"],
            version=str(data.get("version", "")),
            extra_identity={str(k): str(v) for k, v in (data.get("extraIdentity") or {}).items()},
            reference_path=list(data.get("referencePath") or []),
        )


class DescriptorStore:
    """Mirrored component versions keyed by their unique descriptor name."""

    def __init__(self):
        self._records: dict[str, ComponentVersion] = {}
        self._lock = threading.Lock()

    def put(self, record: ComponentVersion, extra_identity: dict[str, str] | None = None) -> str:
        name = unique_descriptor_name(record.name, record.version, extra_identity)
        with self._lock:
            self._records[name] = record
        return name

    def get(self, name: str) -> ComponentVersion | None:
        with self._lock:
            return self._records.get(name)

    def __len__(self):
        with self._lock:
            return len(self._records)


class ComponentRepository:
    """Reads and writes component versions in one OCM repository."""

    def __init__(self, client: RegistryClient, repository_url: str):
        self.client = client
        self.repository_url = repository_url.rstrip("/")

    def repository(self, name: str) -> str:
        return f"{self.repository_url}/{COMPONENT_DESCRIPTORS}/{name}"

    def get(self, ctx: Context, name: str, version: str) -> ComponentVersion:
        """
        Fetch a component version.

        Raises:
            NotFoundError: if the component version does not exist
            AccessError: if the registry cannot be reached or refuses access
            ValidationError: if the stored descriptor is malformed
        """
        repository = self.repository(name)
        manifest = self.client.get_manifest(ctx, repository, version_to_tag(version))
        layer = self._descriptor_layer(ctx, repository, manifest)
        data = self.client.get_blob_bytes(ctx, repository, layer["digest"])

        media_type = layer.get("mediaType", "")
        if media_type.endswith("tar") or media_type.endswith("+tar"):
            content = read_tar_member(data, DESCRIPTOR_FILE)
            if content is None:
                raise ValidationError(f"{DESCRIPTOR_FILE} missing in descriptor layer of {name}:{version}")
            data = content

        descriptor = load_descriptor(data)
        if descriptor.name != name or descriptor.version != version:
            raise ValidationError(
                f"descriptor at {repository}:{version} describes {descriptor.name}:{descriptor.version}"
            )
        logger.debug(f"Fetched component {name}:{version} from {self.repository_url}")
        return ComponentVersion(repository_url=self.repository_url, descriptor=descriptor, digest=manifest.digest)

    def _descriptor_layer(self, ctx: Context, repository: str, manifest) -> dict:
        if manifest.media_type == OCI_INDEX:
            raise ValidationError(f"{repository} holds an image index, not a component version")
        config_digest = manifest.config.get("digest")
        if config_digest and manifest.config.get("mediaType") == COMPONENT_CONFIG:
            try:
                component_config = json.loads(self.client.get_blob_bytes(ctx, repository, config_digest))
            except ValueError as e:
                raise ValidationError(f"invalid component config in {repository}: {e}") from e
            layer = component_config.get("componentDescriptorLayer")
            if layer and layer.get("digest"):
                return layer
        for layer in manifest.layers:
            if "component-descriptor" in layer.get("mediaType", ""):
                return layer
        raise ValidationError(f"no component descriptor layer found in {repository}")

    def list_versions(self, ctx: Context, name: str) -> list[str]:
        return [tag_to_version(tag) for tag in self.client.list_tags(ctx, self.repository(name))]

    def push(self, ctx: Context, descriptor: dict | bytes, blobs: Iterable[tuple[bytes, str]] = ()) -> str:
        """
        Store a component version with optional local blobs.

        Local blobs are addressed by their digest, which is what a ``localBlob``
        access ``localReference`` must name.

        Returns:
            Manifest digest
        """
        if isinstance(descriptor, (bytes, str)):
            document = descriptor.encode("utf-8") if isinstance(descriptor, str) else descriptor
        else:
            document = yaml.safe_dump(descriptor, sort_keys=False).encode("utf-8")
        parsed = load_descriptor(document)
        repository = self.repository(parsed.name)

        layer_data = tar_single_file(DESCRIPTOR_FILE, document)
        descriptor_layer = {"mediaType": DESCRIPTOR_LAYER, "digest": compute_sha256(layer_data), "size": len(layer_data)}
        component_config = json.dumps({"componentDescriptorLayer": descriptor_layer}, sort_keys=True).encode("utf-8")
        config_desc = {"mediaType": COMPONENT_CONFIG, "digest": compute_sha256(component_config), "size": len(component_config)}

        self.client.push_blob(ctx, repository, component_config, config_desc["digest"], config_desc["size"])
        self.client.push_blob(ctx, repository, layer_data, descriptor_layer["digest"], descriptor_layer["size"])
        layers = [descriptor_layer]
        for data, media_type in blobs:
            digest = compute_sha256(data)
            self.client.push_blob(ctx, repository, data, digest, len(data))
            layers.append({"mediaType": media_type, "digest": digest, "size": len(data)})

        manifest = {"schemaVersion": 2, "mediaType": OCI_MANIFEST, "config": config_desc, "layers": layers}
        raw = json.dumps(manifest, sort_keys=True, separators=(",", ":")).encode("utf-8")
        digest = self.client.put_manifest(ctx, repository, version_to_tag(parsed.version), raw, OCI_MANIFEST)
        logger.info(f"Pushed component {parsed.name}:{parsed.version} to {self.repository_url}")
        return digest


class Resolver:
    """
    Resolves component versions and their reference graphs.

    Args:
        client: Registry client for component repositories
        cache: Snapshot cache used by :meth:`get_resource`
        store: Descriptor store for mirrored records
        max_depth: Deepest reference chain accepted by :meth:`resolve_references`
    """

    def __init__(
        self,
        client: RegistryClient,
        cache: OCICache | None = None,
        store: DescriptorStore | None = None,
        max_depth: int | None = None,
        descriptor_cache_size: int | None = None,
    ):
        self.client = client
        self.cache = cache
        self.store = store or DescriptorStore()
        self.max_depth = max_depth if max_depth is not None else config.MAX_REFERENCE_DEPTH
        cache_size = descriptor_cache_size if descriptor_cache_size is not None else config.DESCRIPTOR_CACHE_SIZE
        self._local = threading.local()
        self._cached_version = lru_cache(maxsize=cache_size)(self._fetch_component_version)

    def repository(self, repository_url: str) -> ComponentRepository:
        return ComponentRepository(self.client, repository_url)

    # -------------------------------
    # Component versions
    # -------------------------------

    def get_component_version(self, ctx: Context, repository_url: str, name: str, version: str) -> ComponentVersion:
        """
        Fetch a component version, serving repeated lookups from memory.

        Raises:
            NotFoundError: if the version or repository does not exist (yet)
            AccessError: if the registry is unreachable or refuses access
        """
        self._local.ctx = ctx
        try:
            return self._cached_version(repository_url.rstrip("/"), name, version)
        finally:
            self._local.ctx = None

    def _fetch_component_version(self, repository_url: str, name: str, version: str) -> ComponentVersion:
        # The context is not part of the cache key; it only drives this fetch.
        return self.repository(repository_url).get(self._local.ctx, name, version)

    def list_component_versions(self, ctx: Context, repository_url: str, name: str) -> list[str]:
        return self.repository(repository_url).list_versions(ctx, name)

    def get_latest_valid_component_version(self, ctx: Context, repository_url: str, name: str, constraint: str) -> str:
        """
        Highest available version of ``name`` that satisfies ``constraint``.

        Raises:
            NotFoundError: if there are no versions or none matches
            ValidationError: if the constraint or any listed version is not semver
        """
        versions = self.list_component_versions(ctx, repository_url, name)
        if not versions:
            raise NotFoundError(f"no versions found for component '{name}'")
        version = latest_matching(versions, constraint)
        logger.info(f"Latest version of {name} matching {constraint!r} is {version}")
        return version

    def verify_component(self, ctx: Context, component: ComponentVersion, keys: Iterable[PublicKeySpec]) -> bool:
        """
        Check every named signature of the component.

        Returns:
            False as soon as one signature does not match, True otherwise
        """
        for spec in keys:
            ctx.check()
            if not verify(component.descriptor, spec):
                return False
        return True

    def transfer_component(
        self,
        ctx: Context,
        source_url: str,
        destination_url: str,
        name: str,
        version: str,
    ) -> list[str]:
        """
        Copy a component version and everything it references.

        Manifests are copied byte for byte, so a component that already exists at
        the destination with the same digest is skipped.

        Returns:
            ``name:version`` of every component that was copied
        """
        source = self.repository(source_url)
        destination = self.repository(destination_url)
        copied: list[str] = []
        visited: set[tuple[str, str]] = set()
        pending = [(name, version)]

        while pending:
            ctx.check()
            component_name, component_version = pending.pop()
            if (component_name, component_version) in visited:
                continue
            visited.add((component_name, component_version))

            src_repo = source.repository(component_name)
            dst_repo = destination.repository(component_name)
            tag = version_to_tag(component_version)
            manifest = self.client.get_manifest(ctx, src_repo, tag)

            if self.client.head_manifest(ctx, dst_repo, tag) == manifest.digest:
                logger.debug(f"{component_name}:{component_version} already present at {destination_url}")
            else:
                sizes = {manifest.config.get("digest"): manifest.config.get("size", -1)}
                sizes.update({layer["digest"]: layer.get("size", -1) for layer in manifest.layers})
                for digest in manifest.blob_digests():
                    self._copy_blob(ctx, src_repo, dst_repo, digest, sizes.get(digest, -1))
                self.client.put_manifest(ctx, dst_repo, tag, manifest.raw, manifest.media_type)
                copied.append(f"{component_name}:{component_version}")
                logger.info(f"Transferred {component_name}:{component_version} to {destination_url}")

            component = self.get_component_version(ctx, source_url, component_name, component_version)
            pending.extend((ref.component_name, ref.version) for ref in component.descriptor.references)

        return copied

    def _copy_blob(self, ctx: Context, src_repo: str, dst_repo: str, digest: str, size: int) -> None:
        if self.client.blob_exists(ctx, dst_repo, digest):
            return
        stream = self.client.get_blob(ctx, src_repo, digest)
        try:
            with tempfile.SpooledTemporaryFile(max_size=config.CHUNK_SIZE * 8, dir=config.WORK_DIR) as spool:
                copied = copy_stream(stream, spool, config.CHUNK_SIZE, ctx)
                spool.seek(0)
                self.client.push_blob(ctx, dst_repo, spool, digest, copied if size < 0 else size)
        finally:
            stream.close()

    # -------------------------------
    # Reference tree
    # -------------------------------

    def resolve_references(self, ctx: Context, component: ComponentVersion) -> ReferenceNode:
        """
        Expand the component's references into a mirrored reference tree.

        Every referenced component version is fetched from the repository of its
        parent and stored in the descriptor store. A component reached through two
        different parents is fetched once and its subtree is shared.

        Raises:
            ValidationError: on a reference cycle or when the chain is deeper
                than ``max_depth``
        """
        root = ReferenceNode(
            name=component.name,
            component_name=component.name,
            version=component.version,
            descriptor_name=self.store.put(component),
        )
        root_key = (component.name, component.version, ())
        # A key is on the current path while its subtree is being expanded and
        # moves to ``expanded`` once every reference below it is resolved.
        expanded: dict[tuple, ReferenceNode] = {}
        stack = [(root, component, (root_key,), iter(component.descriptor.references))]

        while stack:
            node, record, path, pending = stack[-1]
            ref = next(pending, None)
            if ref is None:
                stack.pop()
                expanded[path[-1]] = node
                continue

            ctx.check()
            key = (ref.component_name, ref.version, tuple(sorted(ref.extra_identity.items())))
            if key in path:
                chain = " -> ".join(f"{k[0]}:{k[1]}" for k in path + (key,))
                raise ValidationError(f"reference cycle detected: {chain}")

            known = expanded.get(key)
            if known is not None:
                node.references.append(
                    ReferenceNode(
                        name=ref.name,
                        component_name=ref.component_name,
                        version=ref.version,
                        descriptor_name=known.descriptor_name,
                        extra_identity=dict(ref.extra_identity),
                        references=known.references,
                    )
                )
                continue

            if len(path) > self.max_depth:
                raise ValidationError(
                    f"reference chain below {component.name}:{component.version} exceeds depth {self.max_depth}"
                )
            child_record = self.get_component_version(ctx, record.repository_url, ref.component_name, ref.version)
            child = ReferenceNode(
                name=ref.name,
                component_name=ref.component_name,
                version=ref.version,
                descriptor_name=self.store.put(child_record, ref.extra_identity),
                extra_identity=dict(ref.extra_identity),
            )
            node.references.append(child)
            stack.append((child, child_record, path + (key,), iter(child_record.descriptor.references)))

        logger.info(f"Resolved reference tree of {component.name}:{component.version} with depth {root.depth()}")
        return root

    def get_component_descriptor(self, path, tree: ReferenceNode) -> ComponentDescriptor | None:
        """
        Find the descriptor at ``path`` in ``tree``.

        ``path`` may be empty (the root), a reference or component name, a dotted
        string of names, or a list of names or identity mappings. The last
        segment selects the node; earlier segments must name its ancestors in
        order.

        Returns:
            The mirrored descriptor, or None if no node matches

        Raises:
            RuntimeError: if a matching node has no mirrored record
        """
        record = self.get_component_version_at(path, tree)
        return record.descriptor if record else None

    def get_component_version_at(self, path, tree: ReferenceNode) -> ComponentVersion | None:
        for segments in _path_candidates(path):
            node = _find_node(tree, segments)
            if node is None:
                continue
            record = self.store.get(node.descriptor_name)
            if record is None:
                raise RuntimeError(f"reference {node.name} points at missing descriptor record {node.descriptor_name}")
            return record
        return None

    # -------------------------------
    # Access and resources
    # -------------------------------

    def resolve_access(self, resource: Resource, component: ComponentVersion | None = None) -> str:
        """
        Turn a resource's access specification into a pull reference.

        Raises:
            AccessError: for unsupported access types, or a local blob without
                global access whose component is unknown
        """
        return _resolve_access_spec(resource.access, resource.name, component)

    def open_resource(self, ctx: Context, resource: Resource, component: ComponentVersion) -> BinaryIO:
        """Open a raw stream over the resource content at its access location."""
        return self._open_access(ctx, resource.access, resource, component)

    def _open_access(self, ctx: Context, access: AccessSpec | None, resource: Resource, component) -> BinaryIO:
        if isinstance(access, OCIArtifactAccess):
            ref = parse_reference(access.image_reference)
            repository = f"{ref.registry_host}/{_pull_repository(ref)}"
            manifest = self.client.get_manifest(ctx, repository, ref.identifier)
            if manifest.media_type == OCI_INDEX or not manifest.layers:
                raise ValidationError(f"{access.image_reference} is not a single artifact manifest")
            layers = [l for l in manifest.layers if l.get("mediaType") == HELM_CHART_LAYER] or manifest.layers
            if len(layers) > 1:
                raise ValidationError(f"{access.image_reference} has {len(layers)} layers, expected one")
            return self.client.get_blob(ctx, repository, layers[0]["digest"])

        if isinstance(access, OCIBlobAccess):
            ref = parse_reference(access.ref)
            repository = f"{ref.registry_host}/{_pull_repository(ref)}"
            return self.client.get_blob(ctx, repository, access.digest)

        if isinstance(access, LocalBlobAccess):
            if access.global_access is not None:
                return self._open_access(ctx, access.global_access, resource, component)
            return self.client.get_blob(ctx, component.repository, access.local_reference)

        if isinstance(access, UnsupportedAccess):
            raise AccessError(f"unsupported access type {access.type!r} for resource {resource.name}")
        raise AccessError(f"resource {resource.name} has no access specification")

    def get_resource(
        self,
        ctx: Context,
        component: ComponentVersion,
        resource_ref: ResourceRef,
        tree: ReferenceNode | None = None,
    ) -> tuple[BinaryIO, str, int]:
        """
        Stream a resource through the snapshot cache.

        The cache is consulted first under the resource identity. On a miss the
        content is fetched from its access location, gunzipped if needed, pushed
        to the cache and read back from there.

        Returns:
            Tuple of (reader, cached layer digest, cached layer size)

        Raises:
            NotFoundError: if the component at the reference path or the resource
                does not exist
        """
        if self.cache is None:
            raise RuntimeError("resolver has no cache configured")

        record = component
        if resource_ref.reference_path:
            if tree is None:
                tree = self.resolve_references(ctx, component)
            record = self.get_component_version_at(resource_ref.reference_path, tree)
            if record is None:
                raise NotFoundError(f"component descriptor not found for reference path {resource_ref.reference_path}")

        identity = resource_identity(
            record.name, record.version, resource_ref.name, resource_ref.version, resource_ref.extra_identity
        )
        name = name_for(identity)
        tag = select_tag(identity)

        if self.cache.is_cached(ctx, name, tag):
            return self.cache.fetch_data_by_identity(ctx, name, tag)

        logger.debug(f"Resource {resource_ref.name} of {record.name}:{record.version} not cached, fetching")
        resource = record.descriptor.get_resource(resource_ref.name, resource_ref.extra_identity or None)
        media_type = HELM_CHART_LAYER if resource.type == HELM_CHART_TYPE else None

        stream = self.open_resource(ctx, resource, record)
        try:
            reader, decompressed = auto_decompress(stream)
            if decompressed:
                logger.debug(f"Resource {resource.name} was automatically decompressed")
            digest, size = self.cache.push_data(ctx, reader, name, tag, media_type)
        finally:
            stream.close()

        return self.cache.fetch_data_by_digest(ctx, name, digest), digest, size

    def get_resource_bytes(self, ctx: Context, component: ComponentVersion, resource_ref: ResourceRef, tree=None) -> bytes:
        reader, _, _ = self.get_resource(ctx, component, resource_ref, tree)
        try:
            buf = io.BytesIO()
            copy_stream(reader, buf, config.CHUNK_SIZE, ctx)
            return buf.getvalue()
        finally:
            reader.close()

    def resource_identity_for(self, component: ComponentVersion, resource_ref: ResourceRef) -> Identity:
        return resource_identity(
            component.name, component.version, resource_ref.name, resource_ref.version, resource_ref.extra_identity
        )


def _resolve_access_spec(access: AccessSpec | None, resource_name: str, component: ComponentVersion | None) -> str:
    if isinstance(access, OCIArtifactAccess):
        return access.image_reference
    if isinstance(access, OCIBlobAccess):
        return f"{access.ref}@{access.digest}"
    if isinstance(access, LocalBlobAccess):
        if access.global_access is not None:
            return _resolve_access_spec(access.global_access, resource_name, component)
        if component is None:
            raise AccessError(f"local blob {resource_name} has no global access and no component context")
        return f"{component.repository}@{access.local_reference}"
    if isinstance(access, UnsupportedAccess):
        raise AccessError(f"unsupported access type {access.type!r} for resource {resource_name}")
    raise AccessError(f"resource {resource_name} has no access specification")


def _pull_repository(ref) -> str:
    if not ref.registry and "/" not in ref.repository:
        return f"library/{ref.repository}"
    return ref.repository


def _path_candidates(path) -> list[list[PathSegment]]:
    if path is None or path == "" or path == []:
        return [[]]
    if isinstance(path, str):
        candidates = [[path]]
        if "." in path:
            candidates.append([part for part in path.split(".") if part])
        return candidates
    if isinstance(path, dict):
        return [[path]]
    return [list(path)]


def _matches(segment: PathSegment, node: ReferenceNode) -> bool:
    if isinstance(segment, str):
        return segment in (node.name, node.component_name)
    name = segment.get("name") or segment.get("componentName")
    if name not in (node.name, node.component_name):
        return False
    extra = {k: v for k, v in segment.items() if k not in ("name", "componentName")}
    return all(node.extra_identity.get(k) == v for k, v in extra.items())


def _is_subsequence(segments: list[PathSegment], ancestors: list[ReferenceNode]) -> bool:
    position = 0
    for ancestor in ancestors:
        if position < len(segments) and _matches(segments[position], ancestor):
            position += 1
    return position == len(segments)


def _find_node(tree: ReferenceNode, segments: list[PathSegment]) -> ReferenceNode | None:
    if not segments:
        return tree
    target, prefix = segments[-1], segments[:-1]
    stack: list[tuple[ReferenceNode, list[ReferenceNode]]] = [(tree, [])]
    while stack:
        node, ancestors = stack.pop()
        if _matches(target, node) and _is_subsequence(prefix, ancestors):
            return node
        for child in reversed(node.references):
            stack.append((child, ancestors + [node]))
    return None
