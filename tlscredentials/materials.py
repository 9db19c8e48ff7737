"""Builders that turn (filtered) credential stores into the trust and identity
material consumed by TLS session setup.
"""

from __future__ import annotations

import datetime
import logging
import os
import secrets
import ssl
import tempfile
from collections.abc import Sequence
from dataclasses import dataclass, field

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.types import PrivateKeyTypes

from tlscredentials._typing import Password
from tlscredentials.exceptions import (
    AmbiguousIdentityError,
    KeyRecoveryError,
    NoIdentityError,
    NoTrustAnchorsError,
)
from tlscredentials.stores import CredentialStore
from tlscredentials.x509 import (
    Certificate,
    CertificateName,
    CertificateStore,
    VerificationContext,
    certificates_to_pem,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TrustMaterial:
    """The set of certificates that decides which peers are accepted."""

    certificates: tuple[Certificate, ...]

    @property
    def accepted_issuers(self) -> list[CertificateName]:
        """The subjects of all trust anchors, i.e. the issuers a peer chain may end
        at.
        """
        return [certificate.subject for certificate in self.certificates]

    def to_pem(self) -> str:
        return certificates_to_pem(self.certificates)

    def apply_to(self, context: ssl.SSLContext) -> None:
        """Makes the SSL context trust exactly these certificates."""
        context.load_verify_locations(cadata=self.to_pem())

    def verify_chain(
        self,
        chain: Sequence[Certificate],
        hostname: str | None = None,
        moment: datetime.datetime | None = None,
    ) -> list[Certificate]:
        """Verifies a chain presented by a peer against this trust material.

        :param chain: The presented chain, starting with the peer certificate
        :param hostname: If provided, the peer certificate must be valid for a TLS
            server with this name
        :param moment: The time to verify at, defaults to now
        :return: The validated path, starting at the trust anchor
        :raises CertificateVerificationError: when the chain is not accepted
        """

        context = VerificationContext(
            CertificateStore(self.certificates, trusted=True),
            CertificateStore(chain[1:]),
            timestamp=moment,
        )
        return context.verify(chain[0], hostname=hostname)


@dataclass(frozen=True)
class IdentityMaterial:
    """The certificate chain and unlocked private key of one identity."""

    alias: str
    certificate_chain: tuple[Certificate, ...]
    private_key: PrivateKeyTypes = field(repr=False)

    @property
    def certificate(self) -> Certificate:
        return self.certificate_chain[0]

    def apply_to(self, context: ssl.SSLContext) -> None:
        """Loads the chain and the key into the SSL context.

        The :mod:`ssl` module only reads key material from files. The key is
        written into a private temporary directory, encrypted under a one-time
        passphrase, and removed as soon as it has been loaded.
        """

        passphrase = secrets.token_hex(32).encode()
        with tempfile.TemporaryDirectory(prefix="tlscredentials-") as directory:
            chain_path = os.path.join(directory, "chain.pem")
            key_path = os.path.join(directory, "key.pem")
            with open(chain_path, "w", encoding="ascii") as f:
                f.write(certificates_to_pem(self.certificate_chain))
            with open(
                os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600), "wb"
            ) as f:
                f.write(
                    self.private_key.private_bytes(
                        serialization.Encoding.PEM,
                        serialization.PrivateFormat.PKCS8,
                        serialization.BestAvailableEncryption(passphrase),
                    )
                )
            context.load_cert_chain(chain_path, key_path, password=passphrase)
        logger.debug("Loaded identity %s into SSL context", self.alias)


def build_trust_material(store: CredentialStore) -> TrustMaterial:
    """Collects the trust anchors of a (filtered) store. Every trust entry
    contributes its certificate, and every identity entry its leaf certificate,
    in store order.

    :raises NoTrustAnchorsError: when the store contains no certificates
    """

    anchors: list[Certificate] = []
    for entry in store.values():
        if entry.certificate not in anchors:
            anchors.append(entry.certificate)

    if not anchors:
        raise NoTrustAnchorsError(
            "The trust store contains no certificates",
            path=store.path,
            alias=store.selected_alias,
        )

    logger.debug("Built trust material with %d anchor(s)", len(anchors))
    return TrustMaterial(tuple(anchors))


def _public_key_der(key: PrivateKeyTypes | Certificate) -> bytes:
    public_key = (
        key.to_cryptography().public_key()
        if isinstance(key, Certificate)
        else key.public_key()
    )
    return public_key.public_bytes(
        serialization.Encoding.DER,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def build_identity_material(
    store: CredentialStore, key_password: Password | None
) -> IdentityMaterial:
    """Unlocks the single identity entry of a (filtered) store.

    :param key_password: The password of the private key. This may differ from the
        password of the store itself.
    :raises NoIdentityError: when the store has no identity entry
    :raises AmbiguousIdentityError: when the store has more than one identity entry
    :raises KeyRecoveryError: when the key cannot be unlocked, or does not belong to
        its certificate
    """

    identities = store.identity_entries
    if not identities:
        raise NoIdentityError(
            "The key store contains no private key entry",
            path=store.path,
            alias=store.selected_alias,
        )
    if len(identities) > 1:
        raise AmbiguousIdentityError(
            "The key store contains multiple private key entries"
            f" ({', '.join(e.alias for e in identities)}), select one by alias",
            path=store.path,
        )

    entry = identities[0]
    try:
        private_key = entry.key.unlock(key_password)
    except KeyRecoveryError as e:
        e.path, e.alias = store.path, entry.alias
        raise

    if _public_key_der(private_key) != _public_key_der(entry.certificate):
        raise KeyRecoveryError(
            "The private key does not match its certificate",
            path=store.path,
            alias=entry.alias,
        )

    logger.debug("Built identity material for alias %s", entry.alias)
    return IdentityMaterial(
        alias=entry.alias,
        certificate_chain=entry.certificate_chain,
        private_key=private_key,
    )
