"""Read-only diagnostics of credential stores and certificate chains.

Nothing in this module modifies a store or unlocks a private key. Expired and
not-yet-valid certificates are reported as a :class:`ValidityStatus`; they never
cause an exception.
"""

from __future__ import annotations

import datetime
import enum
import logging
import pathlib
import re
import textwrap
from collections.abc import Iterable
from dataclasses import dataclass

from tlscredentials.stores import (
    CredentialStore,
    IdentityEntry,
    SealedKey,
    StoreLocator,
    load_store,
)
from tlscredentials.x509 import Certificate

logger = logging.getLogger(__name__)


def indent_text(*items: str, indent: int = 4) -> str:
    return "\n".join(textwrap.indent(item, " " * indent) for item in items)


def list_item(*items: str, indent: int = 4) -> str:
    return re.sub(r"^( *) {2}", r"\1- ", indent_text(*items, indent=indent))


class ValidityStatus(enum.Enum):
    VALID = enum.auto()
    """The moment of inspection lies within the validity window."""
    EXPIRED = enum.auto()
    """The certificate is no longer valid."""
    NOT_YET_VALID = enum.auto()
    """The validity window of the certificate has not started yet."""


@dataclass(frozen=True)
class CertificateValidity:
    """The validity status of a certificate. ``moment`` is the end of the validity
    window for :attr:`ValidityStatus.VALID` and :attr:`ValidityStatus.EXPIRED`, and
    its start for :attr:`ValidityStatus.NOT_YET_VALID`.
    """

    status: ValidityStatus
    moment: datetime.datetime

    @property
    def is_valid(self) -> bool:
        return self.status is ValidityStatus.VALID

    def __str__(self) -> str:
        if self.status is ValidityStatus.EXPIRED:
            return f"Certificate has expired on {self.moment}"
        if self.status is ValidityStatus.NOT_YET_VALID:
            return f"Certificate is not yet valid before {self.moment}"
        return f"Certificate is valid until {self.moment}"


def _utc(moment: datetime.datetime | None) -> datetime.datetime:
    if moment is None:
        return datetime.datetime.now(datetime.timezone.utc)
    if moment.tzinfo is None:
        return moment.replace(tzinfo=datetime.timezone.utc)
    return moment


def check_validity(
    certificate: Certificate, now: datetime.datetime | None = None
) -> CertificateValidity:
    """Determines the validity status of the certificate.

    :param now: The moment to check at. Defaults to the current time; a naive
        datetime is interpreted as UTC.
    """

    now = _utc(now)
    if now < certificate.valid_from:
        return CertificateValidity(ValidityStatus.NOT_YET_VALID, certificate.valid_from)
    if now > certificate.valid_to:
        return CertificateValidity(ValidityStatus.EXPIRED, certificate.valid_to)
    return CertificateValidity(ValidityStatus.VALID, certificate.valid_to)


@dataclass(frozen=True)
class CertificateReport:
    subject: str
    issuer: str
    serial_number: int
    valid_from: datetime.datetime
    valid_to: datetime.datetime
    signature_algorithm: str
    version: str
    public_key_algorithm: str
    sha256_fingerprint: str
    validity: CertificateValidity

    @classmethod
    def from_certificate(
        cls, certificate: Certificate, now: datetime.datetime | None = None
    ) -> CertificateReport:
        return cls(
            subject=certificate.subject.dn,
            issuer=certificate.issuer.dn,
            serial_number=certificate.serial_number,
            valid_from=certificate.valid_from,
            valid_to=certificate.valid_to,
            signature_algorithm=certificate.signature_algorithm,
            version=certificate.version,
            public_key_algorithm=certificate.public_key_algorithm,
            sha256_fingerprint=certificate.sha256_fingerprint,
            validity=check_validity(certificate, now),
        )

    def describe(self) -> list[str]:
        return [
            f"Subject: {self.subject}",
            f"Issuer: {self.issuer}",
            f"Valid from: {self.valid_from}",
            f"Valid to: {self.valid_to}",
            f"Serial number: {self.serial_number}",
            f"Signature algorithm: {self.signature_algorithm}",
            f"Public key algorithm: {self.public_key_algorithm.upper()}",
            f"Version: {self.version}",
            f"SHA-256 fingerprint: {self.sha256_fingerprint}",
            str(self.validity),
        ]


@dataclass(frozen=True)
class KeyReport:
    """Describes a private key without unlocking it. The algorithm is taken from
    the certificate the key belongs to.
    """

    algorithm: str
    format: str
    encrypted: bool

    @classmethod
    def from_sealed_key(cls, key: SealedKey, certificate: Certificate) -> KeyReport:
        return cls(
            algorithm=certificate.public_key_algorithm.upper(),
            format="PKCS#8",
            encrypted=key.encrypted,
        )

    def describe(self) -> list[str]:
        return [
            f"Key algorithm: {self.algorithm}",
            f"Key format: {self.format}{' (encrypted)' if self.encrypted else ''}",
        ]


@dataclass(frozen=True)
class EntryReport:
    alias: str
    chain: tuple[CertificateReport, ...]
    key: KeyReport | None = None

    @property
    def certificate(self) -> CertificateReport:
        return self.chain[0]

    @property
    def is_identity(self) -> bool:
        return self.key is not None

    def describe(self) -> list[str]:
        result = [
            f"Type: {'private key entry' if self.is_identity else 'trusted entry'}",
            f"Certificate chain has {len(self.chain)} entries:",
            *[list_item(*certificate.describe()) for certificate in self.chain],
        ]
        if self.key is not None:
            result += ["Key:", indent_text(*self.key.describe())]
        return result


@dataclass(frozen=True)
class StoreReport:
    path: pathlib.Path | None
    store_type: str
    inspected_at: datetime.datetime
    entries: tuple[EntryReport, ...]

    def describe(self) -> list[str]:
        """Renders the report into human-readable lines."""
        name = self.path.name if self.path is not None else "(memory)"
        result = [
            f"{self.store_type} store {name} contains {len(self.entries)} aliases."
        ]
        for index, entry in enumerate(self.entries, start=1):
            result += [
                "",
                f"Alias {index}: {entry.alias}",
                indent_text(*entry.describe()),
            ]
        return result

    def invalid_certificates(self) -> list[tuple[str, CertificateReport]]:
        """Returns all certificates, per alias, that are expired or not yet valid
        at the moment of inspection.
        """
        return [
            (entry.alias, certificate)
            for entry in self.entries
            for certificate in entry.chain
            if not certificate.validity.is_valid
        ]


def inspect_chain(
    chain: Iterable[Certificate], now: datetime.datetime | None = None
) -> list[CertificateReport]:
    now = _utc(now)
    return [CertificateReport.from_certificate(c, now) for c in chain]


def inspect_store(
    store: CredentialStore, now: datetime.datetime | None = None
) -> StoreReport:
    """Reports every entry of the store, in store order."""

    now = _utc(now)
    entries = []
    for alias, entry in store.items():
        key = None
        if isinstance(entry, IdentityEntry):
            key = KeyReport.from_sealed_key(entry.key, entry.certificate)
        entries.append(
            EntryReport(
                alias=alias,
                chain=tuple(inspect_chain(entry.certificate_chain, now)),
                key=key,
            )
        )
    report = StoreReport(
        path=store.path,
        store_type=store.store_type,
        inspected_at=now,
        entries=tuple(entries),
    )
    for alias, certificate in report.invalid_certificates():
        logger.info(
            "Certificate '%s' in %s: %s", alias, store.path, certificate.validity
        )
    return report


def inspect_locator(
    locator: StoreLocator, now: datetime.datetime | None = None
) -> StoreReport:
    """Loads the store and reports its contents.

    :raises StoreIOError: when the store cannot be read
    :raises StoreDecodeError: when the store cannot be decoded
    """

    return inspect_store(load_store(locator), now)
