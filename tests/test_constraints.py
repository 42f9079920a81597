import pytest

from ocm_controller.constraints import Constraint, latest_matching, parse_version
from ocm_controller.errors import NotFoundError, ValidationError


@pytest.mark.parametrize(
    "constraint, version, expected",
    [
        (">=1.0.0 <2.0.0", "1.4.2", True),
        (">=1.0.0 <2.0.0", "2.0.0", False),
        (">=1.0.0, <2.0.0", "1.0.0", True),
        ("^1.2", "1.9.9", True),
        ("^1.2", "1.1.0", False),
        ("^0.2.3", "0.3.0", False),
        ("~1.2.3", "1.2.9", True),
        ("~1.2.3", "1.3.0", False),
        ("1.x", "1.5.0", True),
        ("1.x", "2.0.0", False),
        ("1.0 - 2.0", "2.0.0", True),
        ("1.0 - 2.0", "2.1.0", False),
        ("^1.0 || ^2.0", "2.3.0", True),
        ("^1.0 || ^2.0", "3.0.0", False),
        ("!=1.2.3", "1.2.4", True),
        ("1.2.3", "v1.2.3", True),
    ],
)
def test_constraint_check(constraint, version, expected):
    assert Constraint(constraint).check(version) is expected


def test_prerelease_needs_prerelease_in_constraint():
    assert not Constraint(">=1.0.0").check("1.5.0-rc.1")
    assert Constraint(">=1.5.0-rc.0").check("1.5.0-rc.1")


def test_parse_version_is_lenient():
    assert str(parse_version("v1.2")) == "1.2.0"
    with pytest.raises(ValidationError):
        parse_version("latest")


def test_latest_matching_returns_original_text():
    versions = ["1.0.0", "v1.2.0", "2.0.0", "1.1.0"]
    assert latest_matching(versions, "<2.0.0") == "v1.2.0"
    assert latest_matching(versions, "*") == "2.0.0"


def test_latest_matching_failures():
    with pytest.raises(NotFoundError, match="no matching versions found"):
        latest_matching(["1.0.0"], ">=2.0.0")
    with pytest.raises(ValidationError):
        latest_matching(["1.0.0", "not-a-version"], ">=1.0.0")
    with pytest.raises(ValidationError):
        Constraint("   ")
