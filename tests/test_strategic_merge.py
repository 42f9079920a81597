import gzip
import hashlib

import pytest
import yaml

from helpers import tar_files
from ocm_controller.errors import NotFoundError, ValidationError
from ocm_controller.strategic_merge import (
    ArchivePatchSource,
    DirectoryPatchSource,
    StrategicMergePatch,
    merge,
    merge_documents,
)

BASE = """
apiVersion: apps/v1
kind: Deployment
metadata:
  name: web
spec:
  replicas: 1
  template:
    spec:
      containers:
      - name: web
        image: nginx:1.0
        env:
        - name: MODE
          value: base
      - name: sidecar
        image: busybox
"""

PATCH = """
apiVersion: apps/v1
kind: Deployment
metadata:
  name: web
spec:
  replicas: 3
  template:
    spec:
      containers:
      - name: web
        image: nginx:2.0
      - name: sidecar
        $patch: delete
"""


def test_merge_maps_and_keyed_lists():
    merged = merge(yaml.safe_load(BASE), yaml.safe_load(PATCH))
    assert merged["spec"]["replicas"] == 3
    containers = merged["spec"]["template"]["spec"]["containers"]
    assert [c["name"] for c in containers] == ["web"]
    assert containers[0]["image"] == "nginx:2.0"
    assert containers[0]["env"] == [{"name": "MODE", "value": "base"}]


def test_merge_directives():
    base = {"a": {"x": 1, "y": 2}, "b": 1, "c": [1, 2]}
    assert merge(base, {"a": {"$patch": "replace", "z": 3}}) == {"a": {"z": 3}, "b": 1, "c": [1, 2]}
    assert merge(base, {"b": None}) == {"a": {"x": 1, "y": 2}, "c": [1, 2]}
    assert merge(base, {"c": [3]})["c"] == [3]
    with pytest.raises(ValidationError):
        merge(base, {"a": {"$patch": "explode"}})


def test_merge_documents_matches_by_kind_and_name():
    base = [
        {"kind": "ConfigMap", "metadata": {"name": "cfg"}, "data": {"a": "1"}},
        {"kind": "Deployment", "metadata": {"name": "web"}, "spec": {"replicas": 1}},
    ]
    merged = merge_documents(base, [{"kind": "Deployment", "metadata": {"name": "web"}, "spec": {"replicas": 2}}])
    assert merged[0] == base[0]
    assert merged[1]["spec"]["replicas"] == 2

    with pytest.raises(ValidationError, match="no base document"):
        merge_documents(base, [{"kind": "Service", "metadata": {"name": "web"}}])


def test_directory_source_patch(ctx, tmp_path):
    source = tmp_path / "source"
    (source / "deploy").mkdir(parents=True)
    (source / "deploy" / "deployment.yaml").write_text(BASE)
    work = tmp_path / "work"
    work.mkdir()
    (work / "deploy.yaml").write_text(PATCH)

    patch = StrategicMergePatch(
        source=DirectoryPatchSource("repo", "default", str(source), "sha256:abc"),
        source_path="deploy/deployment.yaml",
        target_path="deploy.yaml",
    )
    patch.apply(ctx, str(work))

    merged = yaml.safe_load((work / "deploy.yaml").read_text())
    assert merged["spec"]["replicas"] == 3
    assert patch.identity() == {
        "source-name": "repo",
        "source-namespace": "default",
        "source-artifact-checksum": "sha256:abc",
    }


def test_archive_source_verifies_digest(ctx, tmp_path, session, fake_registry):
    archive = gzip.compress(tar_files({"deploy/deployment.yaml": BASE}))
    fake_registry.files["repo.tar.gz"] = archive
    digest = "sha256:" + hashlib.sha256(archive).hexdigest()

    good = ArchivePatchSource("repo", "default", "http://source.test/files/repo.tar.gz", digest, session=session)
    dest = tmp_path / "good"
    dest.mkdir()
    good.fetch(ctx, str(dest))
    assert (dest / "deploy" / "deployment.yaml").read_text() == BASE

    bad = ArchivePatchSource("repo", "default", "http://source.test/files/repo.tar.gz", "sha256:" + "0" * 64, session=session)
    with pytest.raises(ValidationError, match="digest mismatch"):
        bad.fetch(ctx, str(tmp_path))

    missing = ArchivePatchSource("repo", "default", "http://source.test/files/none.tar.gz", digest, session=session)
    with pytest.raises(NotFoundError):
        missing.fetch(ctx, str(tmp_path))


def test_missing_target_file(ctx, tmp_path):
    patch = StrategicMergePatch(
        source=DirectoryPatchSource("repo", "default", str(tmp_path), "sha256:abc"),
        source_path="deployment.yaml",
        target_path="missing.yaml",
    )
    with pytest.raises(ValidationError, match="not found"):
        patch.apply(ctx, str(tmp_path))
