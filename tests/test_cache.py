import io
import json

import pytest

from helpers import CACHE
from ocm_controller.cache import read_cached
from ocm_controller.errors import CacheError, NotFoundError, ValidationError
from ocm_controller.identity import name_for
from ocm_controller.oci import HELM_CHART_LAYER, HELM_CONFIG, OCI_LAYER


def _manifest(fake_registry, name, tag):
    key = (CACHE, name)
    digest = fake_registry.tags[key][tag]
    raw, _ = fake_registry.manifests[key][digest]
    return json.loads(raw)


def test_push_and_fetch(ctx, cache, fake_registry):
    name = name_for({"resource-name": "web", "resource-version": "1.0.0"})
    digest, size = cache.push_data(ctx, io.BytesIO(b"hello world"), name, "1.0.0")

    assert digest.startswith("sha256:")
    assert size > 0
    assert cache.is_cached(ctx, name, "1.0.0")
    assert not cache.is_cached(ctx, name, "2.0.0")

    reader, fetched_digest, fetched_size = cache.fetch_data_by_identity(ctx, name, "1.0.0")
    assert reader.read() == b"hello world"
    assert (fetched_digest, fetched_size) == (digest, size)

    assert cache.fetch_data_by_digest(ctx, name, digest).read() == b"hello world"
    assert read_cached(ctx, cache, name, "1.0.0") == b"hello world"
    assert _manifest(fake_registry, name, "1.0.0")["layers"][0]["mediaType"] == OCI_LAYER


def test_push_is_deterministic(ctx, cache):
    name = name_for({"resource-name": "web"})
    first, _ = cache.push_data(ctx, io.BytesIO(b"same bytes"), name, "v1")
    second, _ = cache.push_data(ctx, io.BytesIO(b"same bytes"), name, "v2")
    assert first == second


def test_push_overwrites_tag(ctx, cache):
    name = name_for({"resource-name": "web"})
    cache.push_data(ctx, io.BytesIO(b"first"), name, "v1")
    cache.push_data(ctx, io.BytesIO(b"second"), name, "v1")
    assert read_cached(ctx, cache, name, "v1") == b"second"


def test_helm_chart_media_types(ctx, cache, fake_registry):
    name = name_for({"resource-name": "chart", "helm-chart-name": "podinfo"})
    cache.push_data(ctx, io.BytesIO(b"chart"), name, "6.0.0")
    manifest = _manifest(fake_registry, name, "6.0.0")
    assert manifest["layers"][0]["mediaType"] == HELM_CHART_LAYER
    assert manifest["config"]["mediaType"] == HELM_CONFIG


def test_fetch_missing_is_not_found(ctx, cache):
    with pytest.raises(NotFoundError):
        cache.fetch_data_by_identity(ctx, name_for({"resource-name": "missing"}), "v1")


def test_delete_is_idempotent(ctx, cache):
    name = name_for({"resource-name": "web"})
    cache.push_data(ctx, io.BytesIO(b"data"), name, "v1")

    cache.delete_data(ctx, name, "v1")
    assert not cache.is_cached(ctx, name, "v1")
    cache.delete_data(ctx, name, "v1")


def test_invalid_name_and_tag_are_rejected(ctx, cache):
    with pytest.raises(ValidationError):
        cache.push_data(ctx, io.BytesIO(b"x"), "Not/Valid", "v1")
    with pytest.raises(ValidationError):
        cache.push_data(ctx, io.BytesIO(b"x"), "sha-abc", "-bad")


def test_registry_failure_is_cache_error(ctx, cache, fake_registry):
    fake_registry.app.before_request_funcs.setdefault(None, []).insert(0, lambda: ("unavailable", 500))
    with pytest.raises(CacheError) as info:
        cache.is_cached(ctx, "sha-abc", "v1")
    assert info.value.retryable
