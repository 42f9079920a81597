"""
Component descriptor digests and RSA signatures.

The descriptor digest is a SHA-256 over a normalised JSON rendering of the
descriptor. Normalisation drops everything that may legitimately change when a
component is transferred between repositories: repository contexts, resource
access specifications, signatures and labels that are not marked for signing.
"""

import copy
import hashlib
import json
import logging
from dataclasses import dataclass

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed

from .descriptor import SCHEMA_V3ALPHA1, ComponentDescriptor, Signature
from .errors import ValidationError

logger = logging.getLogger(__name__)

NORMALISATION = "jsonNormalisation/v2"
HASH_ALGORITHM = "SHA-256"
SIGNATURE_ALGORITHM = "RSASSA-PKCS1-V1_5"
SIGNATURE_MEDIA_TYPE = "application/vnd.ocm.signature.rsa"


@dataclass
class PublicKeySpec:
    """A signature name together with the PEM encoded key that verifies it."""

    name: str
    public_key: bytes


def _signing_labels(labels) -> list:
    return [label for label in labels or [] if label.get("signing") is True]


def _strip_elements(elements, drop=("access",)) -> list:
    stripped = []
    for element in elements or []:
        element = dict(element)
        for key in drop:
            element.pop(key, None)
        if "labels" in element:
            element["labels"] = _signing_labels(element["labels"])
        stripped.append(element)
    return stripped


def normalise(descriptor: ComponentDescriptor) -> bytes:
    """Canonical bytes that the descriptor digest is computed over."""
    raw = copy.deepcopy(descriptor.raw)
    raw.pop("signatures", None)
    raw.pop("nestedDigests", None)

    if descriptor.schema_version == SCHEMA_V3ALPHA1:
        metadata = raw.get("metadata") or {}
        metadata["labels"] = _signing_labels(metadata.get("labels"))
        raw.pop("repositoryContexts", None)
        spec = raw.get("spec") or {}
        spec["resources"] = _strip_elements(spec.get("resources"), drop=("access", "srcRefs"))
        spec["sources"] = _strip_elements(spec.get("sources"))
        spec["references"] = _strip_elements(spec.get("references"), drop=())
    else:
        component = raw.get("component") or {}
        component.pop("repositoryContexts", None)
        component["labels"] = _signing_labels(component.get("labels"))
        component["resources"] = _strip_elements(component.get("resources"), drop=("access", "srcRefs"))
        component["sources"] = _strip_elements(component.get("sources"))
        component["componentReferences"] = _strip_elements(component.get("componentReferences"), drop=())

    return json.dumps(raw, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def descriptor_digest(descriptor: ComponentDescriptor) -> str:
    """Hex SHA-256 of the normalised descriptor."""
    return hashlib.sha256(normalise(descriptor)).hexdigest()


def load_public_key(data: bytes | str) -> rsa.RSAPublicKey:
    """
    Load an RSA public key from a PEM public key or certificate.

    Raises:
        ValidationError: if the key cannot be decoded or is not RSA
    """
    if isinstance(data, str):
        data = data.encode("utf-8")
    try:
        if b"BEGIN CERTIFICATE" in data:
            key = x509.load_pem_x509_certificate(data).public_key()
        else:
            key = serialization.load_pem_public_key(data)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise ValidationError(f"failed to decode public key: {e}") from e
    if not isinstance(key, rsa.RSAPublicKey):
        raise ValidationError(f"unsupported public key type {type(key).__name__}, expected RSA")
    return key


def sign(descriptor: ComponentDescriptor, name: str, private_key: rsa.RSAPrivateKey) -> Signature:
    """Sign the descriptor digest and return the signature entry."""
    digest_hex = descriptor_digest(descriptor)
    value = private_key.sign(bytes.fromhex(digest_hex), padding.PKCS1v15(), Prehashed(hashes.SHA256()))
    return Signature(
        name=name,
        digest={"hashAlgorithm": HASH_ALGORITHM, "normalisationAlgorithm": NORMALISATION, "value": digest_hex},
        signature={"algorithm": SIGNATURE_ALGORITHM, "mediaType": SIGNATURE_MEDIA_TYPE, "value": value.hex()},
    )


def verify(descriptor: ComponentDescriptor, spec: PublicKeySpec) -> bool:
    """
    Verify one named signature of a descriptor.

    Returns:
        False if the recorded digest does not match the descriptor or the
        signature value does not match the key, True otherwise

    Raises:
        ValidationError: if the key cannot be decoded, the signature is missing
            or it uses an algorithm that is not supported
    """
    key = load_public_key(spec.public_key)

    signature = descriptor.get_signature(spec.name)
    if signature is None:
        raise ValidationError(f"signature with name '{spec.name}' not found in the list of provided ocm signatures")
    if signature.normalisation_algorithm != NORMALISATION:
        raise ValidationError(f"unsupported normalisation algorithm {signature.normalisation_algorithm!r}")
    if signature.signature.get("algorithm") != SIGNATURE_ALGORITHM:
        raise ValidationError(f"unsupported signature algorithm {signature.signature.get('algorithm')!r}")

    digest_hex = descriptor_digest(descriptor)
    if digest_hex != signature.digest_value:
        logger.warning(f"Digest mismatch for signature {spec.name} on {descriptor.name}:{descriptor.version}")
        return False

    try:
        value = bytes.fromhex(signature.signature.get("value", ""))
    except ValueError as e:
        raise ValidationError(f"signature {spec.name} is not hex encoded: {e}") from e

    try:
        key.verify(value, bytes.fromhex(digest_hex), padding.PKCS1v15(), Prehashed(hashes.SHA256()))
    except InvalidSignature:
        logger.warning(f"Signature {spec.name} did not match key value for {descriptor.name}:{descriptor.version}")
        return False

    logger.info(f"Component {descriptor.name}:{descriptor.version} verified with signature {spec.name}")
    return True
