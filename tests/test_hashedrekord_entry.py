import base64
import datetime
import hashlib
import json

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from tlogkit.entries import ArtifactProperties, ValidationError
from tlogkit.hashedrekord_entry import HashedRekordV001Entry

DATA = b"sign me!"


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode()


def _pem(key) -> bytes:
    return key.public_key().public_bytes(
        serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
    )


def _certificate(key) -> bytes:
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "tlog test")])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(1)
        .not_valid_before(now - datetime.timedelta(minutes=1))
        .not_valid_after(now + datetime.timedelta(days=1))
        .add_extension(
            x509.SubjectAlternativeName([x509.RFC822Name("signer@example.com")]),
            critical=False,
        )
        .sign(key, hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.PEM)


@pytest.fixture(scope="module")
def key():
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture(scope="module")
def key_pem(key):
    return _pem(key)


@pytest.fixture(scope="module")
def signature(key):
    return key.sign(DATA, ec.ECDSA(hashes.SHA256()))


def _proposed(spec):
    return {"kind": "hashedrekord", "apiVersion": "0.0.1", "spec": spec}


def _valid_spec(signature, key_content, value=None):
    return {
        "signature": {"content": _b64(signature), "publicKey": {"content": _b64(key_content)}},
        "data": {
            "hash": {"algorithm": "sha256", "value": value or hashlib.sha256(DATA).hexdigest()}
        },
    }


INCOMPLETE = [
    ("empty obj", lambda sig, pub: {}),
    ("signature without content", lambda sig, pub: {"signature": {}}),
    ("signature without public key", lambda sig, pub: {"signature": {"content": _b64(sig)}}),
    (
        "signature with empty public key",
        lambda sig, pub: {"signature": {"content": _b64(sig), "publicKey": {}}},
    ),
    (
        "signature without data",
        lambda sig, pub: {"signature": {"content": _b64(sig), "publicKey": {"content": _b64(pub)}}},
    ),
    (
        "signature with empty data",
        lambda sig, pub: {
            "signature": {"content": _b64(sig), "publicKey": {"content": _b64(pub)}},
            "data": {},
        },
    ),
]


@pytest.mark.parametrize("build", [case[1] for case in INCOMPLETE], ids=[c[0] for c in INCOMPLETE])
def test_incomplete_entries_are_rejected(build, signature, key_pem):
    spec = build(signature, key_pem)
    with pytest.raises(ValidationError):
        HashedRekordV001Entry(spec).validate()
    entry = HashedRekordV001Entry()
    with pytest.raises(ValidationError):
        entry.unmarshal(_proposed(spec))
    with pytest.raises(ValidationError):
        entry.canonicalize()


def test_signature_with_hash_round_trips(signature, key_pem):
    entry = HashedRekordV001Entry()
    entry.unmarshal(_proposed(_valid_spec(signature, key_pem)))
    document = json.loads(entry.canonicalize())
    assert document["kind"] == "hashedrekord"
    assert document["apiVersion"] == "0.0.1"
    spec = document["spec"]
    assert base64.b64decode(spec["signature"]["content"]) == signature
    assert base64.b64decode(spec["signature"]["publicKey"]["content"]) == key_pem
    assert spec["data"] == {
        "hash": {"algorithm": "sha256", "value": hashlib.sha256(DATA).hexdigest()}
    }
    again = HashedRekordV001Entry()
    again.unmarshal(document)
    assert f"sha256:{hashlib.sha256(DATA).hexdigest()}" in again.index_keys()


def test_invalid_sha_length_is_rejected(signature, key_pem):
    short = hashlib.sha224(DATA).hexdigest()
    entry = HashedRekordV001Entry()
    with pytest.raises(ValidationError, match="invalid value for hash"):
        entry.unmarshal(_proposed(_valid_spec(signature, key_pem, value=short)))
    with pytest.raises(ValidationError):
        entry.canonicalize()


def test_signature_over_other_data_is_rejected(signature, key_pem):
    bad = hashlib.sha256(key_pem).hexdigest()
    entry = HashedRekordV001Entry()
    with pytest.raises(ValidationError, match="verifying signature"):
        entry.unmarshal(_proposed(_valid_spec(signature, key_pem, value=bad)))
    with pytest.raises(ValidationError):
        entry.canonicalize()


def test_unsupported_algorithm_fails_field_validation(signature, key_pem):
    spec = _valid_spec(signature, key_pem)
    spec["data"]["hash"]["algorithm"] = "sha1"
    with pytest.raises(ValidationError, match="algorithm"):
        HashedRekordV001Entry().unmarshal(_proposed(spec))


def test_wrong_kind_is_rejected(signature, key_pem):
    proposed = _proposed(_valid_spec(signature, key_pem))
    proposed["kind"] = "alpine"
    with pytest.raises(ValueError, match="cannot unmarshal"):
        HashedRekordV001Entry().unmarshal(proposed)


def test_certificate_public_key_canonicalizes_to_certificate(key, signature):
    cert = _certificate(key)
    entry = HashedRekordV001Entry(_valid_spec(signature, cert))
    spec = json.loads(entry.canonicalize())["spec"]
    loaded = x509.load_pem_x509_certificate(
        base64.b64decode(spec["signature"]["publicKey"]["content"])
    )
    assert loaded.serial_number == 1


def test_index_keys_with_public_key(key_pem, signature):
    keys = set(HashedRekordV001Entry(_valid_spec(signature, key_pem)).index_keys())
    assert f"sha256:{hashlib.sha256(DATA).hexdigest()}" in keys
    assert hashlib.sha256(key_pem).hexdigest() in keys


def test_index_keys_with_certificate(key, signature):
    cert = _certificate(key)
    keys = set(HashedRekordV001Entry(_valid_spec(signature, cert)).index_keys())
    assert f"sha256:{hashlib.sha256(DATA).hexdigest()}" in keys
    assert hashlib.sha256(cert).hexdigest() in keys
    assert "signer@example.com" in keys


def test_api_version_and_attestation():
    entry = HashedRekordV001Entry()
    assert entry.api_version() == "0.0.1"
    assert entry.attestation() is None


def test_create_from_artifact_properties_bytes(signature, key_pem):
    props = ArtifactProperties(
        artifact_hash=hashlib.sha256(DATA).hexdigest(),
        signature_bytes=signature,
        public_key_bytes=key_pem,
        pki_format="x509",
    )
    proposed = HashedRekordV001Entry().create_from_artifact_properties(props)
    assert proposed["kind"] == "hashedrekord"
    assert proposed["spec"]["data"]["hash"]["value"] == hashlib.sha256(DATA).hexdigest()
    entry = HashedRekordV001Entry()
    entry.unmarshal(proposed)
    assert json.loads(entry.canonicalize())["spec"]["data"]["hash"]["algorithm"] == "sha256"


def test_create_from_artifact_properties_paths(tmp_path, signature, key_pem):
    sig_path = tmp_path / "artifact.sig"
    key_path = tmp_path / "key.pem"
    sig_path.write_bytes(signature)
    key_path.write_bytes(key_pem)
    props = ArtifactProperties(
        artifact_hash=hashlib.sha256(DATA).hexdigest(),
        signature_path=str(sig_path),
        public_key_path=str(key_path),
        pki_format="x509",
    )
    proposed = HashedRekordV001Entry().create_from_artifact_properties(props)
    assert base64.b64decode(proposed["spec"]["signature"]["content"]) == signature


def test_create_requires_x509(signature, key_pem):
    props = ArtifactProperties(signature_bytes=signature, public_key_bytes=key_pem, pki_format="pgp")
    with pytest.raises(ValueError, match="x509"):
        HashedRekordV001Entry().create_from_artifact_properties(props)


def test_create_requires_signature(key_pem):
    props = ArtifactProperties(public_key_bytes=key_pem, pki_format="x509")
    with pytest.raises(ValueError, match="detached signature"):
        HashedRekordV001Entry().create_from_artifact_properties(props)


def test_create_requires_public_key(signature):
    props = ArtifactProperties(signature_bytes=signature, pki_format="x509")
    with pytest.raises(ValueError, match="public key must be provided"):
        HashedRekordV001Entry().create_from_artifact_properties(props)


def test_create_rejects_wrong_hash(signature, key_pem):
    props = ArtifactProperties(
        artifact_hash=hashlib.sha256(b"other").hexdigest(),
        signature_bytes=signature,
        public_key_bytes=key_pem,
        pki_format="x509",
    )
    with pytest.raises(ValidationError):
        HashedRekordV001Entry().create_from_artifact_properties(props)