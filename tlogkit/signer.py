"""Log signers and timestamping certificate chains."""

from __future__ import annotations

import ipaddress
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

__all__ = [
    "MEMORY_SCHEME",
    "SignerError",
    "MemorySigner",
    "new_signer",
    "new_timestamping_cert_with_chain",
]

MEMORY_SCHEME = "memory"

ROOT_CA_ORGANIZATION = "tlogkit in-memory root CA"
TIMESTAMPING_ORGANIZATION = "tlogkit Timestamping Cert"
ROOT_CA_SERIAL = 2019
TIMESTAMPING_SERIAL = 1658
VALIDITY_YEARS = 10


class SignerError(Exception):
    """Raised when a signer cannot be created or a signature does not verify."""


class MemorySigner:
    """An ECDSA P-256 / SHA-256 signer holding its key in memory."""

    def __init__(self, private_key: Optional[ec.EllipticCurvePrivateKey] = None) -> None:
        self.private_key = private_key or ec.generate_private_key(ec.SECP256R1())

    @property
    def public_key(self) -> ec.EllipticCurvePublicKey:
        return self.private_key.public_key()

    def sign_message(self, message: bytes) -> bytes:
        """Sign a message, returning a DER-encoded ECDSA signature."""
        return self.private_key.sign(bytes(message), ec.ECDSA(hashes.SHA256()))

    def verify_signature(self, signature: bytes, message: bytes) -> None:
        """Raise SignerError unless the signature is valid for the message."""
        try:
            self.public_key.verify(bytes(signature), bytes(message), ec.ECDSA(hashes.SHA256()))
        except InvalidSignature as exc:
            raise SignerError("invalid signature") from exc


def new_signer(spec: str) -> MemorySigner:
    """Create the signer named by ``spec``."""
    if spec == MEMORY_SCHEME:
        return MemorySigner()
    raise SignerError(f"please provide a valid signer, {spec} is not valid")


def _add_years(moment: datetime, years: int) -> datetime:
    try:
        return moment.replace(year=moment.year + years)
    except ValueError:
        return moment.replace(year=moment.year + years, day=28)


def _organization(name: str) -> x509.Name:
    return x509.Name([x509.NameAttribute(NameOID.ORGANIZATION_NAME, name)])


def _key_usage(*, content_commitment: bool, key_cert_sign: bool) -> x509.KeyUsage:
    return x509.KeyUsage(
        digital_signature=True,
        content_commitment=content_commitment,
        key_encipherment=False,
        data_encipherment=False,
        key_agreement=False,
        key_cert_sign=key_cert_sign,
        crl_sign=False,
        encipher_only=False,
        decipher_only=False,
    )


def _self_signed_root(signer: MemorySigner) -> x509.Certificate:
    now = datetime.now(timezone.utc)
    name = _organization(ROOT_CA_ORGANIZATION)
    public = signer.public_key
    return (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(public)
        .serial_number(ROOT_CA_SERIAL)
        .not_valid_before(now)
        .not_valid_after(_add_years(now, VALIDITY_YEARS))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(_key_usage(content_commitment=True, key_cert_sign=True), critical=True)
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(public), critical=False)
        .sign(signer.private_key, hashes.SHA256())
    )


def _validity(cert: x509.Certificate) -> tuple[datetime, datetime]:
    try:
        return cert.not_valid_before_utc, cert.not_valid_after_utc
    except AttributeError:
        return (
            cert.not_valid_before.replace(tzinfo=timezone.utc),
            cert.not_valid_after.replace(tzinfo=timezone.utc),
        )


def _authority_key_id(issuer: x509.Certificate) -> x509.AuthorityKeyIdentifier:
    try:
        ski = issuer.extensions.get_extension_for_class(x509.SubjectKeyIdentifier).value
        return x509.AuthorityKeyIdentifier.from_issuer_subject_key_identifier(ski)
    except x509.ExtensionNotFound:
        return x509.AuthorityKeyIdentifier.from_issuer_public_key(issuer.public_key())


def _is_ca(cert: x509.Certificate) -> bool:
    try:
        return cert.extensions.get_extension_for_class(x509.BasicConstraints).value.ca
    except x509.ExtensionNotFound:
        return False


def _verify_chain(leaf: x509.Certificate, chain: Sequence[x509.Certificate]) -> None:
    now = datetime.now(timezone.utc)
    path = [leaf, *chain]
    for cert in path:
        not_before, not_after = _validity(cert)
        if not not_before <= now <= not_after:
            raise SignerError(f"certificate {cert.subject.rfc4514_string()} is not valid now")
    for child, parent in zip(path, path[1:]):
        if not _is_ca(parent):
            raise SignerError(f"certificate {parent.subject.rfc4514_string()} is not a CA")
        try:
            child.verify_directly_issued_by(parent)
        except (ValueError, TypeError, InvalidSignature) as exc:
            raise SignerError(f"certificate chain does not verify: {exc}") from exc
    try:
        usages = leaf.extensions.get_extension_for_class(x509.ExtendedKeyUsage).value
    except x509.ExtensionNotFound as exc:
        raise SignerError("certificate has no extended key usage") from exc
    if ExtendedKeyUsageOID.TIME_STAMPING not in usages:
        raise SignerError("certificate is not valid for timestamping")


def _signing_key(signer: Any) -> Any:
    try:
        key = signer.private_key
    except AttributeError as exc:
        raise SignerError("signer does not expose a private key") from exc
    if key is None:
        raise SignerError("signer does not expose a private key")
    return key


def new_timestamping_cert_with_chain(
    public_key: Any,
    signer: MemorySigner,
    chain: Optional[Sequence[x509.Certificate]] = None,
) -> list[x509.Certificate]:
    """Issue a timestamping certificate for ``public_key`` signed by ``signer``.

    ``chain`` must lead from the signer's certificate to a root; without one
    a self-signed root CA for the signer is generated. Returns the new
    certificate followed by the chain.
    """
    signing_key = _signing_key(signer)
    chain = list(chain) if chain else [_self_signed_root(signer)]
    issuer = chain[0]
    now = datetime.now(timezone.utc)
    try:
        cert = (
            x509.CertificateBuilder()
            .subject_name(_organization(TIMESTAMPING_ORGANIZATION))
            .issuer_name(issuer.subject)
            .public_key(public_key)
            .serial_number(TIMESTAMPING_SERIAL)
            .not_valid_before(now)
            .not_valid_after(_add_years(now, VALIDITY_YEARS))
            .add_extension(
                x509.SubjectAlternativeName(
                    [
                        x509.IPAddress(ipaddress.ip_address("127.0.0.1")),
                        x509.IPAddress(ipaddress.ip_address("::1")),
                    ]
                ),
                critical=False,
            )
            .add_extension(x509.SubjectKeyIdentifier(bytes([1, 2, 3, 4, 6])), critical=False)
            .add_extension(_authority_key_id(issuer), critical=False)
            .add_extension(
                x509.ExtendedKeyUsage([ExtendedKeyUsageOID.TIME_STAMPING]), critical=True
            )
            .add_extension(_key_usage(content_commitment=False, key_cert_sign=False), critical=True)
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .sign(signing_key, hashes.SHA256())
        )
    except (TypeError, ValueError) as exc:
        raise SignerError(f"creating tsa certificate: {exc}") from exc
    _verify_chain(cert, chain)
    return [cert, *chain]