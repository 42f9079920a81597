"""
Registry-backed snapshot cache.

Every cached artifact is a single-layer OCI image under
``<cache registry>/<name>:<tag>`` where ``name`` is the identity hash from
:func:`ocm_controller.identity.name_for`. Layers are gzip-compressed with a
zeroed timestamp so identical input always yields the same layer digest.
"""

import gzip
import hashlib
import io
import json
import logging
import tempfile
from typing import BinaryIO

from .archive import auto_decompress, copy_stream
from .config import config
from .context import Context
from .errors import AccessError, CacheError, NotFoundError
from .oci import (
    HELM_CHART_LAYER,
    HELM_CONFIG,
    OCI_CONFIG,
    OCI_LAYER,
    OCI_MANIFEST,
    RegistryClient,
)
from .validation import validate_repository_name, validate_tag

logger = logging.getLogger(__name__)

EMPTY_CONFIG = b"{}"


class OCICache:
    """
    Snapshot cache on top of an OCI registry.

    Args:
        client: Registry client used for all calls
        registry_url: Cache registry host (and optional path prefix), no scheme
        chunk_size: Streaming chunk size in bytes
    """

    def __init__(self, client: RegistryClient, registry_url: str | None = None, chunk_size: int | None = None):
        self.client = client
        self.registry_url = (registry_url or config.CACHE_REGISTRY_URL).rstrip("/")
        self.chunk_size = chunk_size or config.CHUNK_SIZE

    def repository(self, name: str) -> str:
        validate_repository_name(name)
        return f"{self.registry_url}/{name}"

    def is_cached(self, ctx: Context, name: str, tag: str) -> bool:
        """Check whether ``name:tag`` exists in the cache."""
        validate_tag(tag)
        try:
            digest = self.client.head_manifest(ctx, self.repository(name), tag)
        except AccessError as e:
            raise CacheError(f"failed to check cache for {name}:{tag}: {e}") from e
        cached = digest is not None
        logger.debug(f"Cache {'hit' if cached else 'miss'} for {name}:{tag}")
        return cached

    def push_data(
        self,
        ctx: Context,
        data: BinaryIO,
        name: str,
        tag: str,
        media_type: str | None = None,
    ) -> tuple[str, int]:
        """
        Stream ``data`` into the cache under ``name:tag``.

        The data is gzip-compressed into a spooled temporary file while the
        digest is computed, then uploaded as the only layer of a new manifest.
        An existing tag is overwritten.

        Returns:
            Tuple of (layer digest, layer size)

        Raises:
            CacheError: if the registry rejects the upload
            CancelledError: if ``ctx`` is cancelled while streaming
        """
        validate_tag(tag)
        repository = self.repository(name)
        layer_type, config_type = _media_types(name, media_type)

        with tempfile.SpooledTemporaryFile(max_size=self.chunk_size * 8, dir=config.WORK_DIR) as spool:
            with gzip.GzipFile(filename="", mode="wb", fileobj=spool, mtime=0) as gz:
                copy_stream(data, gz, self.chunk_size, ctx)
            size = spool.tell()
            spool.seek(0)
            digest = _sha256_stream(spool, self.chunk_size)
            spool.seek(0)

            manifest = {
                "schemaVersion": 2,
                "mediaType": OCI_MANIFEST,
                "config": {
                    "mediaType": config_type,
                    "digest": "sha256:" + hashlib.sha256(EMPTY_CONFIG).hexdigest(),
                    "size": len(EMPTY_CONFIG),
                },
                "layers": [{"mediaType": layer_type, "digest": digest, "size": size}],
            }
            raw = json.dumps(manifest, separators=(",", ":"), sort_keys=True).encode("utf-8")

            try:
                self.client.push_blob(ctx, repository, EMPTY_CONFIG, manifest["config"]["digest"], len(EMPTY_CONFIG))
                self.client.push_blob(ctx, repository, spool, digest, size)
                self.client.put_manifest(ctx, repository, tag, raw, OCI_MANIFEST)
            except (AccessError, NotFoundError) as e:
                raise CacheError(f"failed to push {name}:{tag}: {e}") from e

        logger.info(f"Cached {name}:{tag} digest={digest} size={size}")
        return digest, size

    def fetch_data_by_identity(self, ctx: Context, name: str, tag: str) -> tuple[BinaryIO, str, int]:
        """
        Open the cached artifact stored under ``name:tag``.

        Returns:
            Tuple of (decompressed reader, layer digest, layer size)

        Raises:
            NotFoundError: if nothing is cached under ``name:tag``
            CacheError: on any other registry failure
        """
        validate_tag(tag)
        repository = self.repository(name)
        try:
            manifest = self.client.get_manifest(ctx, repository, tag)
        except AccessError as e:
            raise CacheError(f"failed to fetch manifest for {name}:{tag}: {e}") from e
        if not manifest.layers:
            raise CacheError(f"layers for repository {name}:{tag} are empty")

        layer = manifest.layers[0]
        logger.debug(f"Cache hit for {name}:{tag} layer={layer['digest']}")
        reader = self.fetch_data_by_digest(ctx, name, layer["digest"])
        return reader, layer["digest"], int(layer.get("size", -1))

    def fetch_data_by_digest(self, ctx: Context, name: str, digest: str) -> BinaryIO:
        """
        Open a decompressing stream over the blob ``digest`` in ``name``.

        Raises:
            NotFoundError: if the blob does not exist
            CacheError: on any other registry failure
        """
        try:
            stream = self.client.get_blob(ctx, self.repository(name), digest)
        except AccessError as e:
            raise CacheError(f"failed to fetch blob {name}@{digest}: {e}") from e
        reader, _ = auto_decompress(stream)
        return reader

    def delete_data(self, ctx: Context, name: str, tag: str) -> None:
        """
        Delete ``name:tag`` from the cache.

        Registries cannot delete a tag on its own, so the manifest the tag points
        to is removed. An entry that is already gone counts as deleted.

        Raises:
            CacheError: if the registry fails the head or delete call
        """
        validate_tag(tag)
        repository = self.repository(name)
        try:
            digest = self.client.head_manifest(ctx, repository, tag)
            if digest is None:
                logger.debug(f"Nothing cached under {name}:{tag}, skipping delete")
                return
            if not digest:
                digest = self.client.get_manifest(ctx, repository, tag).digest
            deleted = self.client.delete_manifest(ctx, repository, digest)
        except NotFoundError:
            logger.debug(f"{name}:{tag} disappeared during delete")
            return
        except AccessError as e:
            raise CacheError(f"failed to delete {name}:{tag}: {e}") from e
        if deleted:
            logger.info(f"Deleted {name}:{tag} ({digest})")


def _media_types(name: str, media_type: str | None) -> tuple[str, str]:
    if media_type == HELM_CHART_LAYER or (media_type is None and "/" in name):
        return HELM_CHART_LAYER, HELM_CONFIG
    return media_type or OCI_LAYER, OCI_CONFIG


def _sha256_stream(stream: BinaryIO, chunk_size: int) -> str:
    h = hashlib.sha256()
    for chunk in iter(lambda: stream.read(chunk_size), b""):
        h.update(chunk)
    return "sha256:" + h.hexdigest()


def read_cached(ctx: Context, cache: OCICache, name: str, tag: str) -> bytes:
    """Fetch ``name:tag`` fully into memory."""
    reader, _, _ = cache.fetch_data_by_identity(ctx, name, tag)
    try:
        buf = io.BytesIO()
        copy_stream(reader, buf, cache.chunk_size, ctx)
        return buf.getvalue()
    finally:
        reader.close()
