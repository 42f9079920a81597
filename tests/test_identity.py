import pytest

from ocm_controller.errors import ValidationError
from ocm_controller.identity import (
    hash_identity,
    name_for,
    resource_identity,
    select_tag,
    unique_descriptor_name,
)


def test_hash_is_order_independent():
    a = {"component-name": "acme.org/app", "component-version": "1.0.0", "resource-name": "web"}
    b = {"resource-name": "web", "component-version": "1.0.0", "component-name": "acme.org/app"}
    assert hash_identity(a) == hash_identity(b)
    assert hash_identity(a).startswith("sha-")
    assert len(hash_identity(a)) == len("sha-") + 64


def test_hash_differs_for_different_values():
    assert hash_identity({"resource-name": "a"}) != hash_identity({"resource-name": "b"})


def test_hash_rejects_empty_and_non_string_identities():
    with pytest.raises(ValidationError):
        hash_identity({})
    with pytest.raises(ValidationError):
        hash_identity({"resource-version": 1})


def test_name_for_appends_helm_chart_name():
    identity = {"resource-name": "chart", "helm-chart-name": "podinfo"}
    assert name_for(identity) == f"{hash_identity(identity)}/podinfo"
    assert "/" not in name_for({"resource-name": "chart"})


def test_select_tag_preference():
    assert select_tag({"helm-chart-version": "6.0.0", "resource-version": "1.0.0"}) == "6.0.0"
    assert select_tag({"resource-version": "1.0.0"}, fallback="x") == "1.0.0"
    assert select_tag({"resource-name": "web"}, fallback="v1") == "v1"
    with pytest.raises(ValidationError):
        select_tag({"resource-name": "web"})


def test_resource_identity_defaults_version_to_latest():
    identity = resource_identity("acme.org/app", "1.0.0", "web")
    assert identity == {
        "component-name": "acme.org/app",
        "component-version": "1.0.0",
        "resource-name": "web",
        "resource-version": "latest",
    }
    with_extra = resource_identity("acme.org/app", "1.0.0", "web", "2.0.0", {"arch": "arm64"})
    assert with_extra["resource-version"] == "2.0.0"
    assert with_extra["arch"] == "arm64"


def test_unique_descriptor_name_depends_on_extra_identity():
    plain = unique_descriptor_name("acme.org/app", "1.0.0")
    extra = unique_descriptor_name("acme.org/app", "1.0.0", {"site": "eu"})
    assert plain.startswith("acme.org-app-1.0.0-")
    assert plain != extra
    assert plain == unique_descriptor_name("acme.org/app", "1.0.0")
