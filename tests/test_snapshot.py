import pytest

from ocm_controller.errors import ValidationError
from ocm_controller.identity import resource_identity
from ocm_controller.snapshot import Snapshot


def _tree(tmp_path):
    (tmp_path / "a.yaml").write_text("a: 1\n")
    (tmp_path / "sub").mkdir()
    (tmp_path / "sub" / "b.yaml").write_text("b: 2\n")
    return str(tmp_path)


def test_tag_follows_identity(ctx, writer, tmp_path):
    identity = resource_identity("acme.org/app", "1.0.0", "manifests", "1.2.3")
    tree = _tree(tmp_path)
    snapshot = writer.write_directory(ctx, tree, identity, tag="ignored")
    assert snapshot.tag == "1.2.3"
    assert snapshot.url == f"cache.test/{snapshot.name}:1.2.3"

    exact = writer.write_directory(ctx, tree, identity, tag="v7", exact_tag=True)
    assert exact.tag == "v7"
    assert exact.digest == snapshot.digest


def test_tag_fallback(ctx, writer, tmp_path):
    identity = {"source-name": "repo", "source-namespace": "default", "source-artifact-checksum": "sha256:abc"}
    tree = _tree(tmp_path)
    assert writer.write_directory(ctx, tree, identity, tag="latest").tag == "latest"
    with pytest.raises(ValidationError):
        writer.write_directory(ctx, tree, identity)


def test_delete_twice(ctx, writer, fake_registry, tmp_path):
    identity = resource_identity("acme.org/app", "1.0.0", "manifests", "1.0.0")
    snapshot = writer.write_directory(ctx, _tree(tmp_path), identity)
    assert fake_registry.has_tag("cache.test", snapshot.name, "1.0.0")

    writer.delete(ctx, snapshot)
    writer.delete(ctx, snapshot)
    assert not fake_registry.has_tag("cache.test", snapshot.name, "1.0.0")


def test_dict_round_trip():
    snapshot = Snapshot(
        identity={"component-name": "acme.org/app"}, digest="sha256:" + "a" * 64, tag="v1", repository_url="cache.test"
    )
    restored = Snapshot.from_dict(snapshot.to_dict())
    assert restored.name == snapshot.name
    assert restored.digest == snapshot.digest
    assert restored.tag == "v1"
