import base64
import gzip
import hashlib
import io
import tarfile

import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from tlogkit.apk import ApkError, Package, parse_package, parse_pkginfo

DATA_FILES = {"usr/bin/hello": b"#!/bin/sh\necho hello\n"}


@pytest.fixture(scope="module")
def signing_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="module")
def other_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def _tar(files, footer):
    out = bytearray()
    for name, body in files.items():
        info = tarfile.TarInfo(name)
        info.size = len(body)
        info.mode = 0o644
        out += info.tobuf(format=tarfile.USTAR_FORMAT)
        out += body + b"\0" * (-len(body) % 512)
    if footer:
        out += b"\0" * 1024
    return bytes(out)


def build_apk(key, *, datahash=None, pem=False, control_name=".PKGINFO", sign=True):
    data_gz = gzip.compress(_tar(DATA_FILES, footer=True))
    if datahash is None:
        datahash = hashlib.sha256(data_gz).hexdigest()
    pkginfo = (
        "# Generated by abuild\n"
        "pkgname = hello\n"
        "pkgver = 1.0-r0\n"
        "depend = musl\n"
        f"datahash = {datahash}\n"
    ).encode()
    control_gz = gzip.compress(_tar({control_name: pkginfo}, footer=False))
    signature = key.sign(control_gz, padding.PKCS1v15(), hashes.SHA1())
    sig_body = signature
    if pem:
        encoded = base64.encodebytes(signature)
        sig_body = b"-----BEGIN SIGNATURE-----\n" + encoded + b"-----END SIGNATURE-----\n"
    sig_files = {".SIGN.RSA.builder.rsa.pub": sig_body} if sign else {"README": b"none"}
    sig_gz = gzip.compress(_tar(sig_files, footer=False))
    return sig_gz + control_gz + data_gz, signature


def test_parse_and_verify(signing_key):
    apk, signature = build_apk(signing_key)
    package = parse_package(io.BytesIO(apk))
    assert package.pkginfo["pkgname"] == "hello"
    assert package.pkginfo["pkgver"] == "1.0-r0"
    assert package.signature == signature
    assert package.datahash.hex() == package.pkginfo["datahash"]
    package.verify_signature(signing_key.public_key())


def test_parse_from_bytes_and_pem_public_key(signing_key):
    apk, _ = build_apk(signing_key)
    package = parse_package(apk)
    pem = signing_key.public_key().public_bytes(
        serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
    )
    package.verify_signature(pem)
    assert package.pkginfo["depend"] == "musl"


def test_pem_encoded_signature_is_decoded(signing_key):
    apk, signature = build_apk(signing_key, pem=True)
    package = parse_package(apk)
    assert package.signature == signature
    package.verify_signature(signing_key.public_key())


def test_wrong_key_fails(signing_key, other_key):
    apk, _ = build_apk(signing_key)
    package = parse_package(apk)
    with pytest.raises(ApkError):
        package.verify_signature(other_key.public_key())


def test_datahash_mismatch(signing_key):
    apk, _ = build_apk(signing_key, datahash="00" * 32)
    with pytest.raises(ApkError, match="does not match value from .PKGINFO"):
        parse_package(apk)


def test_missing_signature(signing_key):
    apk, _ = build_apk(signing_key, sign=False)
    with pytest.raises(ApkError, match="no signature detected"):
        parse_package(apk)


def test_missing_pkginfo(signing_key):
    apk, _ = build_apk(signing_key, control_name="OTHER")
    with pytest.raises(ApkError, match=r"\.PKGINFO file was not located"):
        parse_package(apk)


def test_not_gzip():
    with pytest.raises(ApkError):
        parse_package(b"this is not a gzip stream")


def test_verify_without_signature():
    package = Package(pkginfo={}, signature=None, datahash=b"", control_sha1_digest=b"x")
    with pytest.raises(ApkError, match="no signature"):
        package.verify_signature(b"")


def test_verify_without_digest():
    package = Package(pkginfo={}, signature=b"sig", datahash=b"")
    with pytest.raises(ApkError, match="no digest value"):
        package.verify_signature(b"")


def test_parse_pkginfo_values():
    content = b"# comment\npkgname = hello\n\npkgdesc = greets # trailing\ndepend = a\ndepend = b\n"
    assert parse_pkginfo(content) == {"pkgname": "hello", "pkgdesc": "greets", "depend": "b"}


def test_parse_pkginfo_quoted_value():
    assert parse_pkginfo('url = "x;y"\n') == {"url": "x;y"}


def test_parse_pkginfo_missing_delimiter():
    with pytest.raises(ApkError, match="delimiter not found"):
        parse_pkginfo(b"pkgname hello\n")