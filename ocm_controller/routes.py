"""
Flask application exposing the resolver, the cache and the mutation engine.

Endpoints:
    - POST   /v1/components/resolve              - fetch, verify and expand a component version
    - POST   /v1/resources                       - cache a resource and describe the snapshot
    - POST   /v1/mutations                       - localize or configure a resource
    - DELETE /v1/snapshots/<name>/tags/<tag>     - drop a cached snapshot
    - GET    /healthz                            - liveness check

Errors are returned as ``{"error", "kind", "retryable", "stage"}`` with a status
code derived from the error kind.
"""

import logging

from flask import Blueprint, Flask, current_app, jsonify, request

from .context import Context
from .errors import OCMError, ValidationError
from .identity import name_for, select_tag
from .mutation import ComponentResource, MutationRequest
from .ocm import ResourceRef
from .service import Service
from .signing import PublicKeySpec
from .snapshot import Snapshot
from .strategic_merge import ArchivePatchSource, StrategicMergePatch

logger = logging.getLogger(__name__)

EXTENSION = "ocm_controller"

STATUS_BY_KIND = {
    "not-found": 404,
    "access": 502,
    "validation": 422,
    "cache": 503,
    "cancelled": 504,
}

api = Blueprint("ocm_controller", __name__)


def create_app(service: Service | None = None) -> Flask:
    """
    Create the Flask application.

    Args:
        service: Wired subsystems, built from the environment when omitted
    """
    app = Flask(__name__)
    app.extensions[EXTENSION] = service or Service.from_config()
    app.register_blueprint(api)
    app.register_error_handler(OCMError, handle_error)
    return app


def _service() -> Service:
    return current_app.extensions[EXTENSION]


def handle_error(error: OCMError):
    status = STATUS_BY_KIND.get(error.kind, 500)
    body = {
        "error": str(error),
        "kind": error.kind,
        "retryable": error.retryable,
        "stage": getattr(error, "stage", None),
    }
    if status >= 500:
        logger.error(f"Request failed with {status}: {error}")
    else:
        logger.warning(f"Request rejected with {status}: {error}")
    return jsonify(body), status


# -------------------------------
# Request parsing
# -------------------------------


def _body() -> dict:
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise ValidationError("request body must be a JSON object")
    return body


def _required(data: dict, key: str, where: str = "request") -> str:
    value = data.get(key)
    if not value or not isinstance(value, str):
        raise ValidationError(f"{where} requires a string '{key}'")
    return value


def _context(body: dict) -> Context:
    timeout = body.get("timeout")
    if timeout is not None and (not isinstance(timeout, (int, float)) or timeout <= 0):
        raise ValidationError("timeout must be a positive number of seconds")
    return Context(timeout=timeout)


def _component(ctx: Context, data, where: str):
    """Resolve ``{repositoryURL, name, version | semver, destination?}`` to a component version.

    With a ``destination`` the component and everything it references is first
    transferred there, and the copy at the destination is returned.
    """
    if not isinstance(data, dict):
        raise ValidationError(f"{where} must be an object")
    resolver = _service().resolver
    url = _required(data, "repositoryURL", where)
    name = _required(data, "name", where)
    version = data.get("version")
    if not version:
        constraint = data.get("semver")
        if not constraint:
            raise ValidationError(f"{where} requires 'version' or 'semver'")
        version = resolver.get_latest_valid_component_version(ctx, url, name, constraint)

    destination = data.get("destination")
    if destination is not None:
        if not destination or not isinstance(destination, str):
            raise ValidationError(f"{where} destination must be a repository URL")
        copied = resolver.transfer_component(ctx, url, destination, name, str(version))
        logger.info(f"Transferred {len(copied)} component versions below {name}:{version} to {destination}")
        url = destination
    return resolver.get_component_version(ctx, url, name, str(version))


def _component_resource(ctx: Context, data, where: str) -> ComponentResource:
    if not isinstance(data, dict):
        raise ValidationError(f"{where} must be an object")
    component = _component(ctx, data.get("component"), f"{where}.component")
    resource = ResourceRef.from_dict(data.get("resource"))
    tree = _service().resolver.resolve_references(ctx, component) if resource.reference_path else None
    return ComponentResource(component=component, resource=resource, tree=tree)


def _patch(data) -> StrategicMergePatch | None:
    if data is None:
        return None
    if not isinstance(data, dict) or not isinstance(data.get("source"), dict):
        raise ValidationError("patch requires a source object")
    source = data["source"]
    return StrategicMergePatch(
        source=ArchivePatchSource(
            name=_required(source, "name", "patch.source"),
            namespace=source.get("namespace", ""),
            url=_required(source, "url", "patch.source"),
            digest=_required(source, "digest", "patch.source"),
        ),
        source_path=_required(data, "path", "patch"),
        target_path=_required(data, "targetPath", "patch"),
    )


# -------------------------------
# Endpoints
# -------------------------------


@api.route("/healthz")
def healthz():
    return jsonify({"status": "ok"})


@api.route("/v1/components/resolve", methods=["POST"])
def resolve_component():
    """
    Fetch a component version, optionally verify it, and expand its references.

    Request Body:
        {
            "repositoryURL": "ghcr.io/acme",
            "name": "acme.org/app",
            "version": "1.0.0" | "semver": ">=1.0.0 <2.0.0",
            "destination": "registry.example.com/mirror",
            "verify": [{"name": "acme", "publicKey": "-----BEGIN PUBLIC KEY-----..."}]
        }

    Returns:
        JSON with the component, verification result and reference tree
    """
    body = _body()
    ctx = _context(body)
    resolver = _service().resolver
    component = _component(ctx, body, "request")

    verified = None
    if body.get("verify"):
        keys = []
        for item in body["verify"]:
            if not isinstance(item, dict):
                raise ValidationError("verify entries must be objects")
            keys.append(
                PublicKeySpec(
                    name=_required(item, "name", "verify"),
                    public_key=_required(item, "publicKey", "verify").encode("utf-8"),
                )
            )
        verified = resolver.verify_component(ctx, component, keys)
        if not verified:
            raise ValidationError(f"signature verification failed for {component.name}:{component.version}")

    tree = resolver.resolve_references(ctx, component)
    logger.info(f"Resolved component {component.name}:{component.version}")
    return jsonify(
        {
            "component": {
                "name": component.name,
                "version": component.version,
                "digest": component.digest,
                "repositoryURL": component.repository_url,
            },
            "verified": verified,
            "references": tree.to_dict(),
        }
    )


@api.route("/v1/resources", methods=["POST"])
def cache_resource():
    """
    Make sure a resource is cached and describe where.

    Request Body:
        {"component": {...}, "resource": {"name": "...", "referencePath": [...]}}
    """
    body = _body()
    ctx = _context(body)
    resolver = _service().resolver
    ref = _component_resource(ctx, body, "request")

    record = ref.component
    if ref.resource.reference_path:
        record = resolver.get_component_version_at(ref.resource.reference_path, ref.tree)
        if record is None:
            raise ValidationError(f"no component at reference path {ref.resource.reference_path}")

    reader, digest, size = resolver.get_resource(ctx, ref.component, ref.resource, ref.tree)
    reader.close()

    identity = resolver.resource_identity_for(record, ref.resource)
    snapshot = Snapshot(
        identity=identity,
        digest=digest,
        tag=select_tag(identity),
        repository_url=_service().cache.registry_url,
        size=size,
    )
    logger.info(f"Resource {ref.resource.name} cached as {name_for(identity)}")
    return jsonify({"snapshot": snapshot.to_dict()})


@api.route("/v1/mutations", methods=["POST"])
def mutate():
    """
    Localize or configure a resource and cache the result.

    Request Body:
        {
            "source": {"snapshot": {...}} | {"resource": {"component": {...}, "resource": {...}}},
            "config": {"component": {...}, "resource": {...}},
            "values": {...},
            "valuesDocument": "...", "valuesSubPath": "deploy.values",
            "patch": {"source": {"name", "namespace", "url", "digest"}, "path": "...", "targetPath": "..."},
            "tag": "v1"
        }
    """
    body = _body()
    ctx = _context(body)

    source = body.get("source")
    if not isinstance(source, dict):
        raise ValidationError("request requires a source object")
    source_snapshot = Snapshot.from_dict(source["snapshot"]) if source.get("snapshot") else None
    source_resource = _component_resource(ctx, source["resource"], "source.resource") if source.get("resource") else None

    values = body.get("values")
    if values is not None and not isinstance(values, dict):
        raise ValidationError("values must be an object")
    values_document = body.get("valuesDocument")
    if values_document is not None and not isinstance(values_document, str):
        raise ValidationError("valuesDocument must be a string")
    values_sub_path = body.get("valuesSubPath", "")
    if not isinstance(values_sub_path, str):
        raise ValidationError("valuesSubPath must be a string")

    mutation = MutationRequest(
        source_snapshot=source_snapshot,
        source_resource=source_resource,
        config_ref=_component_resource(ctx, body["config"], "config") if body.get("config") else None,
        values=values,
        values_document=values_document,
        values_sub_path=values_sub_path,
        patch=_patch(body.get("patch")),
        tag=body.get("tag"),
    )
    result = _service().engine.mutate(ctx, mutation)
    return jsonify(
        {
            "snapshot": result.snapshot.to_dict(),
            "substitutions": [s.to_dict() for s in result.substitutions],
            "stages": [str(s) for s in result.stages],
        }
    )


@api.route("/v1/snapshots/<path:name>/tags/<tag>", methods=["DELETE"])
def delete_snapshot(name, tag):
    """Delete a cached snapshot. Deleting a missing snapshot succeeds."""
    _service().cache.delete_data(Context(), name, tag)
    return "", 204
