"""
OCI distribution client.

Talks the OCI Distribution Specification v1.0 HTTP API (manifests, blobs, blob
uploads, tag listing) with token and basic authentication. Registries are
addressed without a scheme; ``insecure`` selects plain HTTP.

Endpoints used:
    - GET/HEAD/PUT/DELETE /v2/<name>/manifests/<reference>
    - GET/HEAD /v2/<name>/blobs/<digest>
    - POST /v2/<name>/blobs/uploads/ then PUT <location>?digest=<digest>
    - GET /v2/<name>/tags/list
"""

import base64
import json
import logging
import os
from dataclasses import dataclass, field
from typing import BinaryIO
from urllib.parse import urljoin, urlencode

import requests

from .config import config
from .context import Context
from .errors import AccessError, NotFoundError, ValidationError
from .validation import compute_sha256

logger = logging.getLogger(__name__)

OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
OCI_INDEX = "application/vnd.oci.image.index.v1+json"
OCI_CONFIG = "application/vnd.oci.image.config.v1+json"
OCI_LAYER = "application/vnd.oci.image.layer.v1.tar+gzip"
DOCKER_MANIFEST = "application/vnd.docker.distribution.manifest.v2+json"
HELM_CHART_LAYER = "application/vnd.cncf.helm.chart.content.v1.tar+gzip"
HELM_CONFIG = "application/vnd.cncf.helm.config.v1+json"

MANIFEST_ACCEPT = ", ".join([OCI_MANIFEST, DOCKER_MANIFEST, OCI_INDEX])


@dataclass(frozen=True)
class Credentials:
    """Credentials for one registry host."""

    username: str = ""
    password: str = ""
    token: str = ""

    def __repr__(self):
        return f"Credentials(username={self.username!r}, password=***, token={'***' if self.token else ''})"


class CredentialStore:
    """
    Host keyed credential lookup.

    Credentials are resolved externally (secrets, docker config) and injected
    here; the client only asks for the entry matching the registry host.
    """

    def __init__(self, entries: dict[str, Credentials] | None = None):
        self._entries = dict(entries or {})

    def set(self, host: str, credentials: Credentials) -> None:
        self._entries[_normalize_host(host)] = credentials

    def for_host(self, host: str) -> Credentials | None:
        return self._entries.get(_normalize_host(host))

    @classmethod
    def from_docker_config(cls, document: bytes | str | dict) -> "CredentialStore":
        """
        Build a store from a docker ``config.json`` document.

        Supports ``auths.<host>.auth`` (base64 ``user:password``) as well as
        explicit ``username``/``password`` and ``identitytoken``/``registrytoken``.

        Raises:
            ValidationError: if the document cannot be decoded
        """
        if isinstance(document, (bytes, str)):
            try:
                document = json.loads(document)
            except ValueError as e:
                raise ValidationError(f"invalid docker config: {e}") from e
        store = cls()
        for host, entry in (document.get("auths") or {}).items():
            username = entry.get("username", "")
            password = entry.get("password", "")
            if entry.get("auth"):
                try:
                    decoded = base64.b64decode(entry["auth"]).decode("utf-8")
                except (ValueError, UnicodeDecodeError) as e:
                    raise ValidationError(f"invalid auth entry for {host}: {e}") from e
                username, _, password = decoded.partition(":")
            token = entry.get("registrytoken") or entry.get("identitytoken") or ""
            store.set(host, Credentials(username=username, password=password, token=token))
        logger.debug(f"Loaded credentials for {len(store._entries)} registries")
        return store

    @classmethod
    def from_file(cls, path: str) -> "CredentialStore":
        if not path or not os.path.exists(path):
            return cls()
        with open(path, "rb") as f:
            return cls.from_docker_config(f.read())


def _normalize_host(host: str) -> str:
    for prefix in ("https://", "http://", "oci://"):
        if host.startswith(prefix):
            host = host[len(prefix):]
    host = host.split("/", 1)[0]
    if host in ("docker.io", "registry-1.docker.io"):
        return "index.docker.io"
    return host


def split_repository(repository: str) -> tuple[str, str]:
    """
    Split ``host/path`` into host and repository path.

    Raises:
        ValidationError: if there is no path after the host
    """
    host, sep, path = repository.partition("/")
    if not sep or not host or not path:
        raise ValidationError(f"repository must be <host>/<path>, got {repository!r}")
    return host, path


@dataclass
class Manifest:
    """A fetched manifest together with its digest and raw bytes."""

    media_type: str
    digest: str
    raw: bytes
    data: dict = field(default_factory=dict)

    @property
    def layers(self) -> list[dict]:
        return self.data.get("layers") or []

    @property
    def config(self) -> dict:
        return self.data.get("config") or {}

    def blob_digests(self) -> list[str]:
        digests = []
        if self.config.get("digest"):
            digests.append(self.config["digest"])
        digests.extend(layer["digest"] for layer in self.layers)
        return digests


class RegistryClient:
    """
    Minimal OCI registry client.

    Args:
        credentials: Host keyed credentials, or None for anonymous access
        insecure: Use plain HTTP instead of HTTPS
        timeout: Per-request timeout in seconds
        session: requests Session to use (tests mount transport adapters on it)
        chunk_size: Streaming chunk size in bytes
    """

    def __init__(
        self,
        credentials: CredentialStore | None = None,
        insecure: bool = False,
        timeout: float | None = None,
        session: requests.Session | None = None,
        chunk_size: int | None = None,
    ):
        self.credentials = credentials or CredentialStore()
        self.insecure = insecure
        self.timeout = timeout if timeout is not None else config.REGISTRY_TIMEOUT
        self.session = session or requests.Session()
        self.chunk_size = chunk_size or config.CHUNK_SIZE
        self._tokens: dict[tuple[str, str], str] = {}

    # -------------------------------
    # Manifests
    # -------------------------------

    def get_manifest(self, ctx: Context, repository: str, reference: str) -> Manifest:
        """
        Fetch a manifest by tag or digest.

        Raises:
            NotFoundError: if the manifest does not exist
            AccessError: on authentication or transport failures
        """
        resp = self._request(ctx, "GET", repository, f"manifests/{reference}", headers={"Accept": MANIFEST_ACCEPT})
        raw = resp.content
        digest = resp.headers.get("Docker-Content-Digest") or compute_sha256(raw)
        try:
            data = json.loads(raw)
        except ValueError as e:
            raise AccessError(f"registry returned an invalid manifest for {repository}:{reference}: {e}") from e
        media_type = data.get("mediaType") or resp.headers.get("Content-Type", OCI_MANIFEST)
        logger.debug(f"Fetched manifest {repository}:{reference} digest={digest}")
        return Manifest(media_type=media_type, digest=digest, raw=raw, data=data)

    def head_manifest(self, ctx: Context, repository: str, reference: str) -> str | None:
        """Return the manifest digest, or None if it does not exist."""
        try:
            resp = self._request(ctx, "HEAD", repository, f"manifests/{reference}", headers={"Accept": MANIFEST_ACCEPT})
        except NotFoundError:
            return None
        return resp.headers.get("Docker-Content-Digest", "")

    def put_manifest(self, ctx: Context, repository: str, reference: str, raw: bytes, media_type: str) -> str:
        """Upload a manifest under a tag or digest and return its digest."""
        self._request(
            ctx,
            "PUT",
            repository,
            f"manifests/{reference}",
            headers={"Content-Type": media_type},
            data=raw,
            expected=(200, 201),
        )
        digest = compute_sha256(raw)
        logger.debug(f"Pushed manifest {repository}:{reference} digest={digest}")
        return digest

    def delete_manifest(self, ctx: Context, repository: str, digest: str) -> bool:
        """
        Delete a manifest by digest.

        Returns:
            False if the manifest was already absent, True otherwise
        """
        try:
            self._request(ctx, "DELETE", repository, f"manifests/{digest}", expected=(200, 202))
        except NotFoundError:
            logger.debug(f"Manifest {repository}@{digest} already absent")
            return False
        return True

    def list_tags(self, ctx: Context, repository: str) -> list[str]:
        """
        List all tags of a repository, following pagination links.

        Raises:
            NotFoundError: if the repository does not exist
        """
        tags: list[str] = []
        path = "tags/list"
        while path:
            resp = self._request(ctx, "GET", repository, path)
            tags.extend(resp.json().get("tags") or [])
            path = _next_link(resp)
        return tags

    # -------------------------------
    # Blobs
    # -------------------------------

    def blob_exists(self, ctx: Context, repository: str, digest: str) -> bool:
        try:
            self._request(ctx, "HEAD", repository, f"blobs/{digest}")
        except NotFoundError:
            return False
        return True

    def get_blob(self, ctx: Context, repository: str, digest: str) -> BinaryIO:
        """
        Open a streaming reader for a blob.

        The caller owns the returned stream and must close it.
        """
        resp = self._request(ctx, "GET", repository, f"blobs/{digest}", stream=True)
        resp.raw.decode_content = False
        return resp.raw

    def get_blob_bytes(self, ctx: Context, repository: str, digest: str) -> bytes:
        resp = self._request(ctx, "GET", repository, f"blobs/{digest}")
        return resp.content

    def push_blob(self, ctx: Context, repository: str, data: BinaryIO | bytes, digest: str, size: int) -> None:
        """
        Upload a blob with a two step (POST, PUT) monolithic upload.

        Skips the upload when the registry already has the blob.
        """
        if self.blob_exists(ctx, repository, digest):
            logger.debug(f"Blob {digest} already present in {repository}")
            return

        resp = self._request(ctx, "POST", repository, "blobs/uploads/", expected=(202,))
        location = resp.headers.get("Location")
        if not location:
            raise AccessError(f"registry did not return an upload location for {repository}")
        host, _ = split_repository(repository)
        upload_url = urljoin(self._base(host) + "/", location)
        separator = "&" if "?" in upload_url else "?"
        upload_url += separator + urlencode({"digest": digest})

        self._send(
            ctx,
            "PUT",
            host,
            upload_url,
            scope=self._scope(repository, "PUT"),
            headers={"Content-Type": "application/octet-stream", "Content-Length": str(size)},
            data=data,
            expected=(201, 204),
        )
        logger.debug(f"Pushed blob {digest} ({size} bytes) to {repository}")

    # -------------------------------
    # HTTP plumbing
    # -------------------------------

    def _base(self, host: str) -> str:
        scheme = "http" if self.insecure else "https"
        return f"{scheme}://{host}"

    @staticmethod
    def _scope(repository: str, method: str) -> str:
        _, path = split_repository(repository)
        actions = "pull" if method in ("GET", "HEAD") else ("delete" if method == "DELETE" else "pull,push")
        return f"repository:{path}:{actions}"

    def _request(self, ctx, method, repository, path, headers=None, data=None, stream=False, expected=(200,)):
        host, repo_path = split_repository(repository)
        url = f"{self._base(host)}/v2/{repo_path}/{path}"
        return self._send(
            ctx,
            method,
            host,
            url,
            scope=self._scope(repository, method),
            headers=headers,
            data=data,
            stream=stream,
            expected=expected,
        )

    def _send(self, ctx, method, host, url, scope, headers=None, data=None, stream=False, expected=(200,)):
        ctx.check()
        headers = dict(headers or {})
        token = self._tokens.get((host, scope))
        if token:
            headers["Authorization"] = f"Bearer {token}"

        resp = self._do(ctx, method, url, headers, data, stream)
        if resp.status_code == 401:
            auth_header = self._authorize(ctx, host, scope, resp.headers.get("WWW-Authenticate", ""))
            if auth_header:
                headers["Authorization"] = auth_header
                if hasattr(data, "seekable") and data.seekable():
                    data.seek(0)
                resp = self._do(ctx, method, url, headers, data, stream)

        if resp.status_code in expected:
            return resp

        detail = _error_detail(resp)
        resp.close()
        if resp.status_code == 404:
            raise NotFoundError(f"{method} {url}: not found{detail}")
        if resp.status_code in (401, 403):
            raise AccessError(f"{method} {url}: access denied ({resp.status_code}){detail}")
        raise AccessError(f"{method} {url}: unexpected status {resp.status_code}{detail}")

    def _do(self, ctx, method, url, headers, data, stream):
        logger.debug(f"{method} {url}")
        try:
            return self.session.request(
                method,
                url,
                headers=headers,
                data=data,
                stream=stream,
                timeout=ctx.remaining(self.timeout),
            )
        except requests.RequestException as e:
            raise AccessError(f"{method} {url}: {e}") from e

    def _authorize(self, ctx: Context, host: str, scope: str, challenge: str) -> str | None:
        """Answer a WWW-Authenticate challenge; returns the Authorization header value."""
        creds = self.credentials.for_host(host)
        scheme, params = _parse_challenge(challenge)

        if scheme == "basic":
            if not creds or not creds.username:
                return None
            raw = f"{creds.username}:{creds.password}".encode("utf-8")
            return "Basic " + base64.b64encode(raw).decode("ascii")

        if scheme != "bearer" or "realm" not in params:
            return None

        query = {"scope": scope}
        if params.get("service"):
            query["service"] = params["service"]
        auth = (creds.username, creds.password) if creds and creds.username else None
        if creds and creds.token and not creds.username:
            return f"Bearer {creds.token}"

        try:
            resp = self.session.get(params["realm"], params=query, auth=auth, timeout=ctx.remaining(self.timeout))
        except requests.RequestException as e:
            raise AccessError(f"token request to {params['realm']} failed: {e}") from e
        if resp.status_code != 200:
            raise AccessError(f"token request to {params['realm']} failed with status {resp.status_code}")

        body = resp.json()
        token = body.get("token") or body.get("access_token")
        if not token:
            raise AccessError(f"token endpoint {params['realm']} returned no token")
        self._tokens[(host, scope)] = token
        logger.debug(f"Obtained bearer token for {host} scope={scope}")
        return f"Bearer {token}"


def _parse_challenge(header: str) -> tuple[str, dict[str, str]]:
    scheme, _, rest = header.strip().partition(" ")
    params: dict[str, str] = {}
    for part in _split_params(rest):
        key, _, value = part.partition("=")
        params[key.strip().lower()] = value.strip().strip('"')
    return scheme.lower(), params


def _split_params(value: str) -> list[str]:
    parts, current, quoted = [], "", False
    for char in value:
        if char == '"':
            quoted = not quoted
        if char == "," and not quoted:
            parts.append(current)
            current = ""
            continue
        current += char
    if current.strip():
        parts.append(current)
    return parts


def _next_link(resp: requests.Response) -> str | None:
    link = resp.links.get("next", {}).get("url")
    if not link:
        return None
    marker = "/tags/list"
    index = link.find(marker)
    return link[index + 1:] if index >= 0 else None


def _error_detail(resp: requests.Response) -> str:
    try:
        errors = resp.json().get("errors") or []
    except ValueError:
        return ""
    messages = [e.get("message") or e.get("code", "") for e in errors if isinstance(e, dict)]
    return f": {'; '.join(messages)}" if messages else ""
