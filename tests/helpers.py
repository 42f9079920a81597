"""Builders shared by the test modules."""

import io
import tarfile

from ocm_controller.context import Context
from ocm_controller.ocm import ComponentRepository

REGISTRY = "registry.test"
CACHE = "cache.test"


def tar_files(files: dict[str, bytes | str]) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        for name, content in sorted(files.items()):
            data = content.encode("utf-8") if isinstance(content, str) else content
            info = tarfile.TarInfo(name=name)
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def descriptor(name: str, version: str, resources=(), references=(), signatures=()) -> dict:
    doc = {
        "meta": {"schemaVersion": "v2"},
        "component": {
            "name": name,
            "version": version,
            "provider": "acme",
            "repositoryContexts": [],
            "resources": list(resources),
            "componentReferences": list(references),
            "sources": [],
        },
    }
    if signatures:
        doc["signatures"] = list(signatures)
    return doc


def oci_resource(name: str, image: str, version: str = "1.0.0", **extra) -> dict:
    resource = {
        "name": name,
        "version": version,
        "type": "ociImage",
        "relation": "external",
        "access": {"type": "ociArtifact", "imageReference": image},
    }
    resource.update(extra)
    return resource


def local_resource(name: str, digest: str, version: str = "1.0.0", type_: str = "file", **extra) -> dict:
    resource = {
        "name": name,
        "version": version,
        "type": type_,
        "relation": "local",
        "access": {"type": "localBlob", "localReference": digest, "mediaType": "application/x-tar"},
    }
    resource.update(extra)
    return resource


def reference(name: str, component_name: str, version: str, **extra) -> dict:
    ref = {"name": name, "componentName": component_name, "version": version}
    ref.update(extra)
    return ref


def push_component(client, repository_url: str, doc: dict, blobs=()) -> str:
    return ComponentRepository(client, repository_url).push(Context(), doc, blobs)
