import base64
import gzip
import hashlib
import io
import json
import tarfile

import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed

from tlogkit.alpine_entry import AlpineV001Entry
from tlogkit.entries import ArtifactProperties, ValidationError


def _tar(entries):
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as archive:
        for name, body in entries:
            info = tarfile.TarInfo(name)
            info.size = len(body)
            archive.addfile(info, io.BytesIO(body))
    return buffer.getvalue()


def _build_apk(signing_key):
    data_gz = gzip.compress(_tar([("usr/share/hello.txt", b"hello alpine\n")]))
    pkginfo = (
        b"pkgname = hello\npkgver = 1.0-r0\ndatahash = "
        + hashlib.sha256(data_gz).hexdigest().encode()
        + b"\n"
    )
    control_gz = gzip.compress(_tar([(".PKGINFO", pkginfo)]))
    digest = hashlib.sha1(control_gz).digest()
    signature = signing_key.sign(digest, padding.PKCS1v15(), Prehashed(hashes.SHA1()))
    signature_gz = gzip.compress(_tar([(".SIGN.RSA.builder.rsa.pub", signature)]))
    return signature_gz + control_gz + data_gz


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode()


def _proposed(spec):
    return {"kind": "alpine", "apiVersion": "0.0.1", "spec": spec}


@pytest.fixture(scope="module")
def signing_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="module")
def key_pem(signing_key):
    return signing_key.public_key().public_bytes(
        serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
    )


@pytest.fixture(scope="module")
def apk_bytes(signing_key):
    return _build_apk(signing_key)


INCOMPLETE = [
    ("empty obj", lambda key, apk: {}),
    ("public key without content", lambda key, apk: {"publicKey": {}}),
    ("public key without package", lambda key, apk: {"publicKey": {"content": _b64(key)}}),
    (
        "public key with empty package",
        lambda key, apk: {"publicKey": {"content": _b64(key)}, "package": {}},
    ),
]


@pytest.mark.parametrize("build", [c[1] for c in INCOMPLETE], ids=[c[0] for c in INCOMPLETE])
def test_incomplete_entries_are_rejected(build, key_pem, apk_bytes):
    spec = build(key_pem, apk_bytes)
    with pytest.raises(ValidationError):
        AlpineV001Entry(spec).validate()
    entry = AlpineV001Entry()
    with pytest.raises(ValidationError):
        entry.unmarshal(_proposed(spec))
    with pytest.raises(ValidationError):
        entry.canonicalize()


def test_invalid_key_content_fails_canonicalize(apk_bytes):
    spec = {"publicKey": {"content": _b64(apk_bytes)}, "package": {"content": _b64(apk_bytes)}}
    entry = AlpineV001Entry()
    entry.unmarshal(_proposed(spec))
    with pytest.raises(ValidationError):
        entry.canonicalize()


def test_valid_entry_round_trips(key_pem, apk_bytes):
    spec = {"publicKey": {"content": _b64(key_pem)}, "package": {"content": _b64(apk_bytes)}}
    entry = AlpineV001Entry()
    entry.unmarshal(_proposed(spec))
    document = json.loads(entry.canonicalize())
    assert document["kind"] == "alpine"
    assert document["apiVersion"] == "0.0.1"
    package = document["spec"]["package"]
    assert package["hash"] == {
        "algorithm": "sha256",
        "value": hashlib.sha256(apk_bytes).hexdigest(),
    }
    assert package["pkginfo"]["pkgname"] == "hello"
    assert package["pkginfo"]["pkgver"] == "1.0-r0"
    assert "content" not in package
    assert base64.b64decode(document["spec"]["publicKey"]["content"]) == key_pem

    again = AlpineV001Entry()
    again.unmarshal(document)
    assert again.index_keys() == [
        hashlib.sha256(key_pem).hexdigest(),
        f"sha256:{hashlib.sha256(apk_bytes).hexdigest()}",
    ]


def test_hash_mismatch_is_rejected(key_pem, apk_bytes):
    spec = {
        "publicKey": {"content": _b64(key_pem)},
        "package": {
            "content": _b64(apk_bytes),
            "hash": {"algorithm": "sha256", "value": hashlib.sha256(b"other").hexdigest()},
        },
    }
    with pytest.raises(ValidationError, match="SHA mismatch"):
        AlpineV001Entry(spec).canonicalize()


def test_package_signed_by_other_key_is_rejected(key_pem):
    other = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    spec = {"publicKey": {"content": _b64(key_pem)}, "package": {"content": _b64(_build_apk(other))}}
    with pytest.raises(ValidationError, match="invalid signature"):
        AlpineV001Entry(spec).canonicalize()


def test_tampered_data_is_rejected(key_pem, apk_bytes):
    tampered = apk_bytes[:-1] + bytes([apk_bytes[-1] ^ 1])
    spec = {"publicKey": {"content": _b64(key_pem)}, "package": {"content": _b64(tampered)}}
    with pytest.raises(ValidationError, match="checksum"):
        AlpineV001Entry(spec).canonicalize()


def test_invalid_hash_value_is_rejected(key_pem):
    spec = {
        "publicKey": {"content": _b64(key_pem)},
        "package": {"hash": {"algorithm": "sha256", "value": "abc"}},
    }
    with pytest.raises(ValidationError, match="invalid value for hash"):
        AlpineV001Entry(spec).validate()


def test_wrong_kind_is_rejected(key_pem, apk_bytes):
    spec = {"publicKey": {"content": _b64(key_pem)}, "package": {"content": _b64(apk_bytes)}}
    with pytest.raises(ValueError, match="cannot unmarshal"):
        AlpineV001Entry().unmarshal({"kind": "jar", "apiVersion": "0.0.1", "spec": spec})


def test_api_version_and_attestation():
    entry = AlpineV001Entry()
    assert entry.api_version() == "0.0.1"
    assert entry.attestation() is None


def test_create_from_artifact_properties_bytes(key_pem, apk_bytes):
    props = ArtifactProperties(artifact_bytes=apk_bytes, public_key_bytes=key_pem)
    proposed = AlpineV001Entry().create_from_artifact_properties(props)
    assert proposed["kind"] == "alpine"
    assert proposed["spec"]["package"]["hash"]["value"] == hashlib.sha256(apk_bytes).hexdigest()
    assert base64.b64decode(proposed["spec"]["package"]["content"]) == apk_bytes
    entry = AlpineV001Entry()
    entry.unmarshal(proposed)
    assert json.loads(entry.canonicalize())["spec"]["package"]["pkginfo"]["pkgname"] == "hello"


def test_create_from_artifact_properties_paths(tmp_path, key_pem, apk_bytes):
    apk_path = tmp_path / "hello.apk"
    key_path = tmp_path / "key.pub"
    apk_path.write_bytes(apk_bytes)
    key_path.write_bytes(key_pem)
    props = ArtifactProperties(artifact_path=str(apk_path), public_key_path=str(key_path))
    proposed = AlpineV001Entry().create_from_artifact_properties(props)
    assert base64.b64decode(proposed["spec"]["publicKey"]["content"]) == key_pem


def test_create_requires_public_key(apk_bytes):
    props = ArtifactProperties(artifact_bytes=apk_bytes)
    with pytest.raises(ValueError, match="public key must be provided"):
        AlpineV001Entry().create_from_artifact_properties(props)


def test_create_reports_unreadable_artifact(tmp_path, key_pem):
    props = ArtifactProperties(
        artifact_path=str(tmp_path / "missing.apk"), public_key_bytes=key_pem
    )
    with pytest.raises(ValueError, match="error reading artifact file"):
        AlpineV001Entry().create_from_artifact_properties(props)


def test_create_rejects_bad_package(key_pem):
    props = ArtifactProperties(artifact_bytes=b"not a package", public_key_bytes=key_pem)
    with pytest.raises(ValidationError, match="error retrieving external entities"):
        AlpineV001Entry().create_from_artifact_properties(props)