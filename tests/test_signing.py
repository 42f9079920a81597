import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from helpers import descriptor, oci_resource
from ocm_controller.descriptor import load_descriptor
from ocm_controller.errors import ValidationError
from ocm_controller.signing import PublicKeySpec, descriptor_digest, sign, verify


def _public_pem(private_key) -> bytes:
    return private_key.public_key().public_bytes(
        serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
    )


@pytest.fixture(scope="module")
def private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def _signed(private_key, image="ghcr.io/acme/web:1.0.0"):
    doc = descriptor("acme.org/app", "1.0.0", resources=[oci_resource("web", image)])
    signature = sign(load_descriptor(doc), "acme", private_key)
    doc["signatures"] = [{"name": signature.name, "digest": signature.digest, "signature": signature.signature}]
    return doc


def test_sign_and_verify(private_key):
    cd = load_descriptor(_signed(private_key))
    assert verify(cd, PublicKeySpec("acme", _public_pem(private_key)))


def test_access_changes_do_not_affect_digest(private_key):
    doc = _signed(private_key)
    doc["component"]["resources"][0]["access"]["imageReference"] = "mirror.example.com/acme/web:1.0.0"
    assert verify(load_descriptor(doc), PublicKeySpec("acme", _public_pem(private_key)))


def test_tampered_descriptor_fails(private_key):
    doc = _signed(private_key)
    doc["component"]["resources"][0]["version"] = "6.6.6"
    assert not verify(load_descriptor(doc), PublicKeySpec("acme", _public_pem(private_key)))


def test_wrong_key_fails(private_key):
    other = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    cd = load_descriptor(_signed(private_key))
    assert not verify(cd, PublicKeySpec("acme", _public_pem(other)))


def test_missing_signature_and_bad_keys(private_key):
    cd = load_descriptor(_signed(private_key))
    with pytest.raises(ValidationError, match="not found"):
        verify(cd, PublicKeySpec("other", _public_pem(private_key)))
    with pytest.raises(ValidationError):
        verify(cd, PublicKeySpec("acme", b"not a key"))
    ec_key = ec.generate_private_key(ec.SECP256R1())
    with pytest.raises(ValidationError, match="RSA"):
        verify(cd, PublicKeySpec("acme", _public_pem(ec_key)))


def test_only_signing_labels_affect_digest():
    doc = descriptor("acme.org/app", "1.0.0", resources=[oci_resource("web", "nginx")])
    base = descriptor_digest(load_descriptor(doc))

    doc["component"]["labels"] = [{"name": "note", "value": "informational"}]
    assert descriptor_digest(load_descriptor(doc)) == base

    doc["component"]["labels"] = [{"name": "policy", "value": "strict", "signing": True}]
    assert descriptor_digest(load_descriptor(doc)) != base
