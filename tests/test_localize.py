import json

import pytest
import yaml

from ocm_controller.errors import ValidationError
from ocm_controller.localize import Substitution, apply_substitutions, parse_path, secure_join, set_value


def test_parse_path():
    assert parse_path("spec.template.spec.containers[0].image") == ["spec", "template", "spec", "containers", 0, "image"]
    assert parse_path("metadata.annotations['example.com/key']") == ["metadata", "annotations", "example.com/key"]
    with pytest.raises(ValidationError):
        parse_path("")


def test_set_value_creates_missing_mappings():
    doc = set_value({"spec": {}}, "spec.template.image", "nginx")
    assert doc == {"spec": {"template": {"image": "nginx"}}}
    with pytest.raises(ValidationError):
        set_value({"items": []}, "items[2].name", "x")


def test_secure_join_rejects_escape(tmp_path):
    assert secure_join(str(tmp_path), "a/b.yaml").startswith(str(tmp_path))
    with pytest.raises(ValidationError):
        secure_join(str(tmp_path), "../outside.yaml")


def test_apply_yaml_and_json(tmp_path):
    (tmp_path / "deploy.yaml").write_text(
        "apiVersion: apps/v1\nkind: Deployment\nspec:\n  template:\n    image: placeholder\n"
    )
    (tmp_path / "values.json").write_text('{"replicas": 1}')

    modified = apply_substitutions(
        str(tmp_path),
        [
            Substitution("image", "deploy.yaml", "spec.template.image", "nginx:1.23-3-alpine"),
            Substitution("replicas", "values.json", "replicas", 3),
        ],
    )

    assert sorted(modified) == ["deploy.yaml", "values.json"]
    deploy = yaml.safe_load((tmp_path / "deploy.yaml").read_text())
    assert deploy["spec"]["template"]["image"] == "nginx:1.23-3-alpine"
    assert deploy["kind"] == "Deployment"
    assert json.loads((tmp_path / "values.json").read_text()) == {"replicas": 3}


def test_apply_multi_document_yaml(tmp_path):
    (tmp_path / "all.yaml").write_text(
        "kind: ConfigMap\ndata:\n  MSG: old\n---\nkind: Deployment\nspec:\n  replicas: 1\n"
    )
    apply_substitutions(str(tmp_path), [Substitution("n", "all.yaml", "spec.replicas", 2)])
    docs = list(yaml.safe_load_all((tmp_path / "all.yaml").read_text()))
    assert docs[0]["data"]["MSG"] == "old"
    assert docs[1]["spec"]["replicas"] == 2


def test_missing_file_is_validation_error(tmp_path):
    with pytest.raises(ValidationError, match="not found"):
        apply_substitutions(str(tmp_path), [Substitution("x", "missing.yaml", "a", 1)])
