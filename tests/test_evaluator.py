import json

import pytest

from ocm_controller.errors import UnresolvedReferenceError, ValidationError
from ocm_controller.evaluator import TemplateEvaluator


def _evaluate(document: dict):
    return json.loads(TemplateEvaluator().evaluate(json.dumps(document).encode()))


def test_references_and_literals():
    result = _evaluate(
        {
            "message": "hello",
            "nested": {"items": [{"name": "first"}]},
            "adjustments": [
                {"value": "(( message ))"},
                {"value": "(( nested.items[0].name ))"},
                {"value": '(( "v" 42 ))'},
                {"value": "(( ~ ))"},
                {"value": "plain"},
            ],
        }
    )
    values = [a["value"] for a in result["adjustments"]]
    assert values == ["hello", "first", "v42", None, "plain"]


def test_chained_expressions_and_fallback():
    result = _evaluate(
        {
            "base": "nginx",
            "image": '(( base ":" tag ))',
            "tag": "(( missing || \"latest\" ))",
            "structured": "(( nested ))",
            "nested": {"a": 1},
        }
    )
    assert result["image"] == "nginx:latest"
    assert result["structured"] == {"a": 1}


def test_unresolved_reference_names_reference_and_path():
    with pytest.raises(UnresolvedReferenceError) as info:
        _evaluate({"adjustments": [{"value": "ok"}, {"value": "(( nope ))"}]})
    assert info.value.reference == "nope"
    assert info.value.node_path == "adjustments[1].value"


def test_loops_and_malformed_expressions():
    with pytest.raises(ValidationError, match="loop"):
        _evaluate({"a": "(( b ))", "b": "(( a ))"})
    with pytest.raises(ValidationError):
        _evaluate({"a": "(( sum(1, 2) ))"})
