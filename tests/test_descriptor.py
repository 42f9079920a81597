import pytest
import yaml

from helpers import descriptor, local_resource, oci_resource, reference
from ocm_controller.descriptor import (
    LocalBlobAccess,
    OCIArtifactAccess,
    OCIBlobAccess,
    UnsupportedAccess,
    load_descriptor,
    parse_access,
)
from ocm_controller.errors import NotFoundError, ValidationError

V3 = """
apiVersion: ocm.software/v3alpha1
kind: ComponentVersion
metadata:
  name: acme.org/app
  version: 2.0.0
  provider:
    name: acme
spec:
  resources:
  - name: web
    version: 2.0.0
    type: ociImage
    relation: external
    access:
      type: ociArtifact/v1
      imageReference: ghcr.io/acme/web:2.0.0
  references:
  - name: db
    componentName: acme.org/db
    version: 1.0.0
"""


def test_load_v2():
    doc = descriptor(
        "acme.org/app",
        "1.0.0",
        resources=[oci_resource("web", "nginx:1.23-3-alpine"), local_resource("config", "sha256:" + "a" * 64)],
        references=[reference("db", "acme.org/db", "1.0.0")],
    )
    cd = load_descriptor(yaml.safe_dump(doc))
    assert (cd.name, cd.version, cd.provider) == ("acme.org/app", "1.0.0", "acme")
    assert isinstance(cd.get_resource("web").access, OCIArtifactAccess)
    assert isinstance(cd.get_resource("config").access, LocalBlobAccess)
    assert cd.references[0].component_name == "acme.org/db"


def test_load_v3alpha1():
    cd = load_descriptor(V3)
    assert (cd.name, cd.version, cd.provider) == ("acme.org/app", "2.0.0", "acme")
    assert cd.get_resource("web").access.image_reference == "ghcr.io/acme/web:2.0.0"
    assert cd.references[0].name == "db"


def test_unsupported_schema():
    with pytest.raises(ValidationError):
        load_descriptor({"meta": {"schemaVersion": "v1"}})
    with pytest.raises(ValidationError):
        load_descriptor("- not a mapping")


def test_resource_lookup_with_extra_identity():
    doc = descriptor(
        "acme.org/app",
        "1.0.0",
        resources=[
            oci_resource("web", "ghcr.io/acme/web:1.0-amd64", extraIdentity={"arch": "amd64"}),
            oci_resource("web", "ghcr.io/acme/web:1.0-arm64", extraIdentity={"arch": "arm64"}),
        ],
    )
    cd = load_descriptor(doc)
    assert cd.get_resource("web", {"arch": "arm64"}).access.image_reference.endswith("arm64")
    with pytest.raises(ValidationError, match="ambiguous"):
        cd.get_resource("web")
    with pytest.raises(NotFoundError):
        cd.get_resource("missing")


def test_parse_access_variants():
    assert isinstance(parse_access({"type": "OCIImage", "imageReference": "nginx"}), OCIArtifactAccess)
    blob = parse_access({"type": "ociBlob/v1", "ref": "ghcr.io/acme/blob", "digest": "sha256:" + "b" * 64})
    assert isinstance(blob, OCIBlobAccess)
    local = parse_access(
        {
            "type": "localBlob",
            "localReference": "sha256:" + "c" * 64,
            "globalAccess": {"type": "ociArtifact", "imageReference": "ghcr.io/acme/global:1"},
        }
    )
    assert isinstance(local.global_access, OCIArtifactAccess)
    unsupported = parse_access({"type": "s3", "bucket": "b"})
    assert isinstance(unsupported, UnsupportedAccess)
    assert unsupported.type == "s3"
    with pytest.raises(ValidationError):
        parse_access({"type": "ociArtifact"})


def test_repository_contexts():
    doc = descriptor("acme.org/app", "1.0.0")
    doc["component"]["repositoryContexts"] = [
        {"type": "OCIRegistry", "baseUrl": "ghcr.io/", "subPath": "/acme"},
        {"type": "OCIRegistry", "baseUrl": "mirror.test"},
    ]
    cd = load_descriptor(doc)
    assert [c.url for c in cd.repository_contexts] == ["ghcr.io/acme", "mirror.test"]
    assert cd.current_repository_context.url == "mirror.test"
