"""
Shared fixtures: an in-memory OCI registry served by Flask and mounted into
requests through a transport adapter, so the real client code talks HTTP to it.
"""

import hashlib
import io
import json
import uuid
from urllib.parse import urlsplit

import pytest
import requests
from flask import Flask, Response, jsonify, request
from requests.adapters import BaseAdapter
from requests.structures import CaseInsensitiveDict

from ocm_controller.cache import OCICache
from ocm_controller.context import Context
from ocm_controller.oci import RegistryClient
from ocm_controller.ocm import Resolver
from ocm_controller.snapshot import SnapshotWriter

from helpers import CACHE

TOKEN = "secret-token"


def _digest(data: bytes) -> str:
    return "sha256:" + hashlib.sha256(data).hexdigest()


def _error(status: int, code: str, message: str):
    return jsonify({"errors": [{"code": code, "message": message}]}), status


class FakeRegistry:
    """
    Minimal OCI distribution registry keyed by (host, repository).

    ``require_token`` makes every /v2 call answer 401 with a bearer challenge
    until the token from ``/token`` is presented.
    """

    def __init__(self):
        self.manifests: dict[tuple[str, str], dict[str, tuple[bytes, str]]] = {}
        self.tags: dict[tuple[str, str], dict[str, str]] = {}
        self.blobs: dict[tuple[str, str], dict[str, bytes]] = {}
        self.uploads: dict[str, tuple[str, str]] = {}
        self.requests: list[tuple[str, str]] = []
        self.files: dict[str, bytes] = {}
        self.require_token = False
        self.token_requests: list[dict] = []
        self.page_size: int | None = None
        self.app = self._build_app()

    # Helpers for tests

    def put_blob(self, host: str, repository: str, data: bytes) -> str:
        digest = _digest(data)
        self.blobs.setdefault((host, repository), {})[digest] = data
        return digest

    def put_manifest(self, host: str, repository: str, tag: str, manifest: dict) -> str:
        raw = json_bytes(manifest)
        digest = _digest(raw)
        self.manifests.setdefault((host, repository), {})[digest] = (raw, manifest.get("mediaType", ""))
        self.tags.setdefault((host, repository), {})[tag] = digest
        return digest

    def has_tag(self, host: str, repository: str, tag: str) -> bool:
        return tag in self.tags.get((host, repository), {})

    def count(self, method: str, fragment: str = "") -> int:
        return sum(1 for m, path in self.requests if m == method and fragment in path)

    # Flask app

    def _build_app(self) -> Flask:
        app = Flask("fake-registry")
        registry = self

        @app.before_request
        def record_and_authorize():
            registry.requests.append((request.method, request.path))
            if request.path.startswith("/v2/") and registry.require_token:
                if request.headers.get("Authorization") != f"Bearer {TOKEN}":
                    resp = Response(status=401)
                    resp.headers["WWW-Authenticate"] = (
                        f'Bearer realm="http://auth.test/token",service="{request.host}"'
                    )
                    return resp
            return None

        @app.route("/token")
        def token():
            registry.token_requests.append(
                {"scope": request.args.get("scope"), "authorization": request.headers.get("Authorization")}
            )
            return jsonify({"token": TOKEN})

        @app.route("/files/<path:name>")
        def files(name):
            if name not in registry.files:
                return Response(status=404)
            return Response(registry.files[name], mimetype="application/gzip")

        @app.route("/v2/")
        def root():
            return Response(status=200)

        @app.route("/v2/<path:name>/manifests/<reference>", methods=["GET", "HEAD"])
        def get_manifest(name, reference):
            key = (request.host, name)
            digest = reference if reference.startswith("sha256:") else registry.tags.get(key, {}).get(reference)
            entry = registry.manifests.get(key, {}).get(digest) if digest else None
            if entry is None:
                return _error(404, "MANIFEST_UNKNOWN", "manifest unknown")
            raw, media_type = entry
            resp = Response(raw if request.method == "GET" else b"", status=200)
            resp.headers["Content-Type"] = media_type or "application/vnd.oci.image.manifest.v1+json"
            resp.headers["Docker-Content-Digest"] = digest
            return resp

        @app.route("/v2/<path:name>/manifests/<reference>", methods=["PUT"])
        def put_manifest(name, reference):
            key = (request.host, name)
            raw = request.get_data()
            digest = _digest(raw)
            registry.manifests.setdefault(key, {})[digest] = (raw, request.content_type or "")
            if not reference.startswith("sha256:"):
                registry.tags.setdefault(key, {})[reference] = digest
            resp = Response(status=201)
            resp.headers["Docker-Content-Digest"] = digest
            return resp

        @app.route("/v2/<path:name>/manifests/<reference>", methods=["DELETE"])
        def delete_manifest(name, reference):
            key = (request.host, name)
            if reference not in registry.manifests.get(key, {}):
                return _error(404, "MANIFEST_UNKNOWN", "manifest unknown")
            del registry.manifests[key][reference]
            tags = registry.tags.get(key, {})
            for tag in [t for t, d in tags.items() if d == reference]:
                del tags[tag]
            return Response(status=202)

        @app.route("/v2/<path:name>/blobs/<digest>", methods=["GET", "HEAD"])
        def get_blob(name, digest):
            data = registry.blobs.get((request.host, name), {}).get(digest)
            if data is None:
                return _error(404, "BLOB_UNKNOWN", "blob unknown")
            resp = Response(data if request.method == "GET" else b"", status=200)
            resp.headers["Docker-Content-Digest"] = digest
            resp.headers["Content-Type"] = "application/octet-stream"
            return resp

        @app.route("/v2/<path:name>/blobs/uploads/", methods=["POST"])
        def start_upload(name):
            upload_id = uuid.uuid4().hex
            registry.uploads[upload_id] = (request.host, name)
            resp = Response(status=202)
            resp.headers["Location"] = f"/v2/{name}/blobs/uploads/{upload_id}"
            return resp

        @app.route("/v2/<path:name>/blobs/uploads/<upload_id>", methods=["PUT"])
        def finish_upload(name, upload_id):
            if upload_id not in registry.uploads:
                return _error(404, "BLOB_UPLOAD_UNKNOWN", "upload unknown")
            host, repository = registry.uploads.pop(upload_id)
            data = request.get_data()
            digest = request.args.get("digest", "")
            if _digest(data) != digest:
                return _error(400, "DIGEST_INVALID", "digest does not match content")
            registry.blobs.setdefault((host, repository), {})[digest] = data
            resp = Response(status=201)
            resp.headers["Docker-Content-Digest"] = digest
            return resp

        @app.route("/v2/<path:name>/tags/list")
        def list_tags(name):
            key = (request.host, name)
            if key not in registry.tags:
                return _error(404, "NAME_UNKNOWN", "repository name not known")
            tags = sorted(registry.tags[key])
            last = request.args.get("last")
            if last:
                tags = [t for t in tags if t > last]
            resp = jsonify({"name": name, "tags": tags[: registry.page_size] if registry.page_size else tags})
            if registry.page_size and len(tags) > registry.page_size:
                resp.headers["Link"] = (
                    f'</v2/{name}/tags/list?n={registry.page_size}&last={tags[registry.page_size - 1]}>; rel="next"'
                )
            return resp

        return app


def json_bytes(document: dict) -> bytes:
    return json.dumps(document, sort_keys=True, separators=(",", ":")).encode("utf-8")


class _RawBody(io.BytesIO):
    decode_content = True


class FlaskAdapter(BaseAdapter):
    """Transport adapter that hands requests to a Flask test client."""

    def __init__(self, app: Flask):
        super().__init__()
        self.client = app.test_client()

    def send(self, request, stream=False, timeout=None, verify=True, cert=None, proxies=None):
        parsed = urlsplit(request.url)
        body = request.body
        if hasattr(body, "read"):
            body = body.read()
        elif isinstance(body, str):
            body = body.encode("utf-8")

        headers = {k: v for k, v in request.headers.items() if k.lower() not in ("content-length", "transfer-encoding")}
        result = self.client.open(
            parsed.path,
            base_url=f"{parsed.scheme}://{parsed.netloc}",
            query_string=parsed.query,
            method=request.method,
            headers=headers,
            data=body or b"",
        )

        response = requests.Response()
        response.status_code = result.status_code
        response.headers = CaseInsensitiveDict(result.headers)
        response.raw = _RawBody(result.get_data())
        response.url = request.url
        response.request = request
        response.reason = result.status
        response.encoding = "utf-8"
        return response

    def close(self):
        pass


@pytest.fixture
def fake_registry():
    return FakeRegistry()


@pytest.fixture
def session(fake_registry):
    s = requests.Session()
    s.mount("http://", FlaskAdapter(fake_registry.app))
    return s


@pytest.fixture
def client(session):
    return RegistryClient(insecure=True, session=session, timeout=5)


@pytest.fixture
def cache(client):
    return OCICache(client, registry_url=CACHE, chunk_size=1024)


@pytest.fixture
def resolver(client, cache):
    return Resolver(client, cache=cache, max_depth=8)


@pytest.fixture
def writer(cache):
    return SnapshotWriter(cache)


@pytest.fixture
def ctx():
    return Context(timeout=30)
