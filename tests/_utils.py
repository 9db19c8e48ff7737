"""Certificates and stores for the tests, generated when the tests run."""

from __future__ import annotations

import datetime
import functools
import pathlib
import shutil
import subprocess
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

import jks
import pytest
from asn1crypto import pkcs12 as asn1_pkcs12
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from tlscredentials.pkcs12 import PfxCertificate, PfxKey, encode_pfx
from tlscredentials.x509 import Certificate

STORE_PASSWORD = "changeit"
KEY_PASSWORD = "key-secret"

NOW = datetime.datetime.now(datetime.timezone.utc)


def utc(*args: int) -> datetime.datetime:
    return datetime.datetime(*args, tzinfo=datetime.timezone.utc)


@dataclass(frozen=True)
class Issued:
    key: ec.EllipticCurvePrivateKey
    certificate: x509.Certificate

    @property
    def wrapped(self) -> Certificate:
        return Certificate.from_cryptography(self.certificate)

    def sealed_key(self, password: str | None = KEY_PASSWORD) -> bytes:
        return self.key.private_bytes(
            serialization.Encoding.DER,
            serialization.PrivateFormat.PKCS8,
            (
                serialization.BestAvailableEncryption(password.encode())
                if password is not None
                else serialization.NoEncryption()
            ),
        )


def issue(
    common_name: str,
    *,
    issuer: Issued | None = None,
    ca: bool = False,
    dns_names: Iterable[str] = (),
    server: bool = False,
    client: bool = False,
    not_before: datetime.datetime | None = None,
    not_after: datetime.datetime | None = None,
) -> Issued:
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name(
        [
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "tlscredentials tests"),
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
        ]
    )

    builder = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(issuer.certificate.subject if issuer else name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before or NOW - datetime.timedelta(days=1))
        .not_valid_after(not_after or NOW + datetime.timedelta(days=30))
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=ca,
                crl_sign=ca,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
    )

    usages = []
    if server:
        usages.append(ExtendedKeyUsageOID.SERVER_AUTH)
    if client:
        usages.append(ExtendedKeyUsageOID.CLIENT_AUTH)
    if usages:
        builder = builder.add_extension(x509.ExtendedKeyUsage(usages), critical=False)

    dns_names = list(dns_names)
    if dns_names:
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.DNSName(n) for n in dns_names]),
            critical=False,
        )

    return Issued(key, builder.sign(issuer.key if issuer else key, hashes.SHA256()))


@dataclass(frozen=True)
class Pki:
    ca: Issued
    server: Issued
    client: Issued


@functools.lru_cache(maxsize=None)
def pki() -> Pki:
    """A root CA with a server and a client certificate, shared by all tests."""
    ca = issue("Test Root CA", ca=True)
    return Pki(
        ca=ca,
        server=issue(
            "server.example.com",
            issuer=ca,
            dns_names=["server.example.com", "*.wild.example.com"],
            server=True,
        ),
        client=issue("client", issuer=ca, client=True),
    )


def write_pkcs12(
    path: pathlib.Path,
    name: str | None = None,
    identity: Issued | None = None,
    cas: Iterable[tuple[str | None, Issued]] = (),
    password: str = STORE_PASSWORD,
    encryption: serialization.KeySerializationEncryption | None = None,
) -> pathlib.Path:
    """Writes a PKCS#12 file the way OpenSSL does, with at most one private key. The
    key is protected by the store password.
    """

    path.write_bytes(
        pkcs12.serialize_key_and_certificates(
            name=name.encode() if name is not None else None,
            key=identity.key if identity is not None else None,
            cert=identity.certificate if identity is not None else None,
            cas=[
                pkcs12.PKCS12Certificate(
                    issued.certificate,
                    friendly_name.encode() if friendly_name is not None else None,
                )
                for friendly_name, issued in cas
            ]
            or None,
            encryption_algorithm=(
                encryption or serialization.BestAvailableEncryption(password.encode())
            ),
        )
    )
    return path


def write_key_store(
    path: pathlib.Path,
    identities: Mapping[str, Issued],
    chain: Iterable[Issued] = (),
    password: str = STORE_PASSWORD,
    key_password: str = KEY_PASSWORD,
) -> pathlib.Path:
    """Writes a PKCS#12 key store with one private key entry per alias, like
    ``keytool`` does. Keys are protected by the key password.
    """

    pfx_keys = []
    certificates = []
    for index, (alias, identity) in enumerate(identities.items(), start=1):
        local_key_id = bytes([index])
        pfx_keys.append(
            PfxKey(
                der=identity.sealed_key(key_password),
                encrypted=True,
                friendly_name=alias,
                local_key_id=local_key_id,
            )
        )
        certificates.append(
            PfxCertificate(
                identity.wrapped, friendly_name=alias, local_key_id=local_key_id
            )
        )
    certificates.extend(PfxCertificate(issued.wrapped) for issued in chain)

    path.write_bytes(encode_pfx(pfx_keys, certificates, password.encode()))
    return path


def write_trust_store(
    path: pathlib.Path,
    trusted: Mapping[str, Issued],
    password: str = STORE_PASSWORD,
) -> pathlib.Path:
    return write_pkcs12(path, cas=trusted.items(), password=password)


def write_java_keystore(
    path: pathlib.Path,
    identities: Mapping[str, Issued] | None = None,
    trusted: Mapping[str, Issued] | None = None,
    chain: Iterable[Issued] = (),
    password: str = STORE_PASSWORD,
    key_password: str = KEY_PASSWORD,
) -> pathlib.Path:
    """Writes a JKS store the way ``keytool`` does: private key entries with their
    full chain, protected by the key password, followed by trusted certificates.
    """

    chain_der = [issued.wrapped.to_der for issued in chain]
    entries = []
    for alias, identity in (identities or {}).items():
        entry = jks.PrivateKeyEntry.new(
            alias,
            [identity.wrapped.to_der, *chain_der],
            identity.key.private_bytes(
                serialization.Encoding.DER,
                serialization.PrivateFormat.PKCS8,
                serialization.NoEncryption(),
            ),
        )
        entry.encrypt(key_password)
        entries.append(entry)
    for alias, issued in (trusted or {}).items():
        entries.append(jks.TrustedCertEntry.new(alias, issued.wrapped.to_der))

    path.write_bytes(jks.KeyStore.new("jks", entries).saves(password))
    return path


def _encrypted_content_ciphers(data: bytes) -> set[str]:
    pfx = asn1_pkcs12.Pfx.load(data)
    authenticated_safe = asn1_pkcs12.AuthenticatedSafe.load(
        pfx["auth_safe"]["content"].native
    )
    return {
        info["content"]["encrypted_content_info"][
            "content_encryption_algorithm"
        ].encryption_cipher
        for info in authenticated_safe
        if info["content_type"].native == "encrypted_data"
    }


def write_openssl_rc2_pkcs12(
    path: pathlib.Path,
    name: str,
    identity: Issued,
    chain: Iterable[Issued] = (),
    password: str = STORE_PASSWORD,
) -> pathlib.Path:
    """Writes a PKCS#12 file with the ``openssl`` command line tool, with its
    certificates encrypted with pbeWithSHAAnd40BitRC2-CBC. Skips the test when no
    OpenSSL is available that still writes such files.
    """

    openssl = shutil.which("openssl")
    if openssl is None:
        pytest.skip("openssl is not available")

    certificate_pem = path.with_suffix(".crt")
    certificate_pem.write_bytes(
        identity.certificate.public_bytes(serialization.Encoding.PEM)
    )
    key_pem = path.with_suffix(".key")
    key_pem.write_bytes(
        identity.key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    )
    chain_pem = path.with_suffix(".chain")
    chain_pem.write_bytes(
        b"".join(
            issued.certificate.public_bytes(serialization.Encoding.PEM)
            for issued in chain
        )
    )

    command = [
        openssl,
        "pkcs12",
        "-export",
        "-in",
        str(certificate_pem),
        "-inkey",
        str(key_pem),
        "-name",
        name,
        "-passout",
        f"pass:{password}",
        "-out",
        str(path),
    ]
    if chain_pem.read_bytes():
        command += ["-certfile", str(chain_pem)]

    # OpenSSL 3 only uses RC2 with -legacy, OpenSSL 1.1 has no such option and
    # uses it by default
    if subprocess.run([*command, "-legacy"], capture_output=True).returncode != 0:
        if subprocess.run(command, capture_output=True).returncode != 0:
            pytest.skip("openssl cannot write legacy PKCS#12 files")

    if "rc2" not in _encrypted_content_ciphers(path.read_bytes()):
        pytest.skip("openssl did not encrypt the certificates with RC2")
    return path
