"""
Strategic merge of Kubernetes style YAML documents.

A patch source (a downloaded archive or a local checkout) provides the base
manifests; the file inside the extracted resource tree is the patch. Documents
are matched by kind and metadata name, mappings merge recursively, lists of
mappings merge by their ``name`` key and ``$patch: delete`` / ``$patch: replace``
directives are honoured. The merged result replaces the target file.
"""

import hashlib
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from typing import Any

import requests
import yaml

from .archive import extract_tar
from .config import config
from .context import Context
from .errors import AccessError, NotFoundError, ValidationError
from .identity import SOURCE_ARTIFACT_CHECKSUM_KEY, SOURCE_NAME_KEY, SOURCE_NAMESPACE_KEY, Identity
from .localize import secure_join

logger = logging.getLogger(__name__)

PATCH_DIRECTIVE = "$patch"
MERGE_KEY = "name"

_DELETE = object()


class ArchivePatchSource:
    """
    Patch source served as a (gzipped) tarball over HTTP, e.g. a source
    controller artifact.

    Args:
        name: Name of the source, used in the snapshot identity
        namespace: Namespace of the source, used in the snapshot identity
        url: Download URL of the archive
        digest: Expected ``sha256:<hex>`` digest of the archive
        session: requests Session to use
    """

    def __init__(self, name: str, namespace: str, url: str, digest: str, session: requests.Session | None = None):
        self.name = name
        self.namespace = namespace
        self.url = url
        self.digest = digest
        self.session = session or requests.Session()

    @property
    def checksum(self) -> str:
        return self.digest

    def fetch(self, ctx: Context, dest_dir: str) -> None:
        """
        Download the archive, verify its digest and extract it into ``dest_dir``.

        Raises:
            NotFoundError: if the archive does not exist (yet)
            AccessError: if the download fails
            ValidationError: if the digest does not match
        """
        ctx.check()
        try:
            resp = self.session.get(self.url, stream=True, timeout=ctx.remaining(config.REGISTRY_TIMEOUT))
        except requests.RequestException as e:
            raise AccessError(f"failed to download {self.url}: {e}") from e

        with resp:
            if resp.status_code == 404:
                raise NotFoundError(f"artifact {self.url} not found")
            if resp.status_code != 200:
                raise AccessError(f"failed to download {self.url}: status {resp.status_code}")
            h = hashlib.sha256()
            chunks = []
            for chunk in resp.iter_content(chunk_size=config.CHUNK_SIZE):
                ctx.check()
                h.update(chunk)
                chunks.append(chunk)

        algorithm, _, expected = self.digest.partition(":")
        if algorithm != "sha256" or h.hexdigest() != expected:
            raise ValidationError(f"digest mismatch for {self.url}: expected {self.digest}, got sha256:{h.hexdigest()}")
        extract_tar(b"".join(chunks), dest_dir, ctx)


class DirectoryPatchSource:
    """Patch source that is already checked out on disk."""

    def __init__(self, name: str, namespace: str, path: str, checksum: str):
        self.name = name
        self.namespace = namespace
        self.path = path
        self.checksum = checksum

    def fetch(self, ctx: Context, dest_dir: str) -> None:
        ctx.check()
        if not os.path.isdir(self.path):
            raise NotFoundError(f"patch source directory {self.path} not found")
        shutil.copytree(self.path, dest_dir, dirs_exist_ok=True, symlinks=False)


@dataclass
class StrategicMergePatch:
    """Merge ``target_path`` of the resource tree onto ``source_path`` of the patch source."""

    source: "ArchivePatchSource | DirectoryPatchSource"
    source_path: str
    target_path: str

    def identity(self) -> Identity:
        return {
            SOURCE_NAME_KEY: self.source.name,
            SOURCE_NAMESPACE_KEY: self.source.namespace,
            SOURCE_ARTIFACT_CHECKSUM_KEY: self.source.checksum,
        }

    def apply(self, ctx: Context, work_dir: str) -> None:
        """
        Fetch the patch source and rewrite the target file in ``work_dir``.

        Raises:
            ValidationError: if a file is missing or no base document matches a patch
        """
        target = secure_join(work_dir, self.target_path)
        if not os.path.isfile(target):
            raise ValidationError(f"file {self.target_path!r} not found")

        with tempfile.TemporaryDirectory(prefix="patch-source-", dir=config.WORK_DIR) as source_dir:
            self.source.fetch(ctx, source_dir)
            base_file = secure_join(source_dir, self.source_path)
            if not os.path.isfile(base_file):
                raise ValidationError(f"file {self.source_path!r} not found in patch source {self.source.name}")
            base_docs = _load_documents(base_file, self.source_path)

        patch_docs = _load_documents(target, self.target_path)
        merged = merge_documents(base_docs, patch_docs)

        with open(target, "w", encoding="utf-8") as f:
            yaml.safe_dump_all(merged, f, sort_keys=False, default_flow_style=False)
        logger.info(f"Applied strategic merge of {self.target_path} onto {self.source_path} from {self.source.name}")


def _load_documents(path: str, label: str) -> list:
    try:
        with open(path, "rb") as f:
            return [d for d in yaml.safe_load_all(f) if d is not None]
    except yaml.YAMLError as e:
        raise ValidationError(f"failed to parse {label}: {e}") from e


def _document_key(document: Any) -> tuple | None:
    if not isinstance(document, dict):
        return None
    metadata = document.get("metadata") or {}
    if not document.get("kind") or not metadata.get("name"):
        return None
    return document["kind"], metadata["name"], metadata.get("namespace", "")


def merge_documents(base: list, patches: list) -> list:
    """
    Apply every patch document to the base document it identifies.

    Raises:
        ValidationError: if a patch matches no base document
    """
    result = list(base)
    for patch in patches:
        key = _document_key(patch)
        index = None
        if key is not None:
            for i, document in enumerate(result):
                if _document_key(document) == key:
                    index = i
                    break
        elif len(result) == 1:
            index = 0
        if index is None:
            raise ValidationError(f"no base document matches patch {key or '(unnamed)'}")
        merged = merge(result[index], patch)
        if merged is _DELETE:
            del result[index]
        else:
            result[index] = merged
    return result


def merge(base: Any, patch: Any) -> Any:
    """Strategic merge of ``patch`` onto ``base``."""
    if isinstance(patch, dict):
        directive = patch.get(PATCH_DIRECTIVE)
        if directive == "delete":
            return _DELETE
        if directive == "replace":
            return {k: v for k, v in patch.items() if k != PATCH_DIRECTIVE}
        if directive is not None and directive != "merge":
            raise ValidationError(f"unknown patch directive {directive!r}")
        if not isinstance(base, dict):
            return {k: v for k, v in patch.items() if k != PATCH_DIRECTIVE}

        result = dict(base)
        for key, value in patch.items():
            if key == PATCH_DIRECTIVE:
                continue
            if value is None:
                result.pop(key, None)
            elif key in result:
                merged = merge(result[key], value)
                if merged is _DELETE:
                    result.pop(key)
                else:
                    result[key] = merged
            else:
                stripped = merge(None, value)
                if stripped is not _DELETE:
                    result[key] = stripped
        return result

    if isinstance(patch, list) and isinstance(base, list) and _keyed(base) and _keyed(patch):
        return _merge_keyed_list(base, patch)
    return patch


def _keyed(items: list) -> bool:
    return all(isinstance(item, dict) and MERGE_KEY in item for item in items)


def _merge_keyed_list(base: list, patch: list) -> list:
    result = list(base)
    for item in patch:
        index = next((i for i, existing in enumerate(result) if existing[MERGE_KEY] == item[MERGE_KEY]), None)
        if index is None:
            merged = merge(None, item)
            if merged is not _DELETE:
                result.append(merged)
            continue
        merged = merge(result[index], item)
        if merged is _DELETE:
            del result[index]
        else:
            result[index] = merged
    return result
