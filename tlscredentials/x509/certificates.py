from __future__ import annotations

import datetime
import logging
import re
from collections.abc import Iterable, Iterator
from functools import cached_property
from typing import TYPE_CHECKING, ClassVar, cast, overload

import asn1crypto.pem
import asn1crypto.x509
from cryptography import x509 as crypto_x509
from cryptography.hazmat.primitives.serialization import Encoding

if TYPE_CHECKING:
    from tlscredentials.x509.context import VerificationContext

logger = logging.getLogger(__name__)


class Certificate:
    """Representation of a certificate. It is built from an ASN.1 structure."""

    asn1: asn1crypto.x509.Certificate

    def __init__(self, asn1: asn1crypto.x509.Certificate):
        """
        :param asn1: The ASN.1 structure
        """

        self.asn1 = asn1

    @property
    def signature_algorithm(self) -> str:
        """The signature algorithm, e.g. ``sha256_rsa``."""
        return cast(str, self.asn1["signature_algorithm"]["algorithm"].native)

    @property
    def version(self) -> str:
        """This is the version of the certificate"""
        return cast(str, self.asn1["tbs_certificate"]["version"].native)

    @property
    def serial_number(self) -> int:
        """The full integer serial number of the certificate"""
        return cast(int, self.asn1.serial_number)

    @property
    def issuer(self) -> CertificateName:
        """The :class:`CertificateName` for the issuer."""
        return CertificateName(self.asn1.issuer)

    @property
    def subject(self) -> CertificateName:
        """The :class:`CertificateName` for the subject."""
        return CertificateName(self.asn1.subject)

    @property
    def valid_from(self) -> datetime.datetime:
        """The datetime objects between which the certificate is valid."""
        return cast(datetime.datetime, self.asn1.not_valid_before)

    @property
    def valid_to(self) -> datetime.datetime:
        """The datetime objects between which the certificate is valid."""
        return cast(datetime.datetime, self.asn1.not_valid_after)

    @property
    def public_key_algorithm(self) -> str:
        """The algorithm of the subject public key, e.g. ``rsa`` or ``ec``."""
        return cast(str, self.asn1.public_key.algorithm)

    @property
    def subject_public_key(self) -> bytes:
        """The encoded SubjectPublicKeyInfo of the certificate."""
        return cast(
            bytes, self.asn1["tbs_certificate"]["subject_public_key_info"].dump()
        )

    @property
    def is_self_issued(self) -> bool:
        return self.issuer == self.subject

    @property
    def valid_domains(self) -> list[str]:
        """The DNS names this certificate is valid for (SAN, or CN as fallback)."""
        return cast("list[str]", self.asn1.valid_domains)

    @property
    def valid_ips(self) -> list[str]:
        return cast("list[str]", self.asn1.valid_ips)

    def __str__(self) -> str:
        return (
            f"{self.subject.dn}"
            f" (serial:{self.serial_number}, sha1:{self.sha1_fingerprint})"
        )

    def __repr__(self) -> str:
        return f"<Certificate {self}>"

    def __hash__(self) -> int:
        return hash((self.issuer, self.serial_number, self.subject_public_key))

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Certificate) and self.to_der == other.to_der

    @classmethod
    def from_der(cls, content: bytes) -> Certificate:
        """Load the Certificate object from DER-encoded data"""
        return cls(asn1crypto.x509.Certificate.load(content))

    @classmethod
    def from_pem(cls, content: bytes) -> Certificate:
        """Reads a Certificate from a PEM formatted file."""
        return next(cls.from_pems(content))

    @classmethod
    def from_pems(cls, content: bytes) -> Iterator[Certificate]:
        """Reads all Certificates from a PEM formatted file."""
        for _type_name, _headers, der_bytes in asn1crypto.pem.unarmor(
            content, multiple=True
        ):
            yield cls.from_der(der_bytes)

    @classmethod
    def from_cryptography(cls, certificate: crypto_x509.Certificate) -> Certificate:
        return cls.from_der(certificate.public_bytes(Encoding.DER))

    @cached_property
    def to_der(self) -> bytes:
        """Returns the DER-encoded data from this certificate."""
        return cast(bytes, self.asn1.dump())

    def to_pem(self) -> str:
        return cast(bytes, asn1crypto.pem.armor("CERTIFICATE", self.to_der)).decode(
            "ascii"
        )

    def to_cryptography(self) -> crypto_x509.Certificate:
        return crypto_x509.load_der_x509_certificate(self.to_der)

    @cached_property
    def sha256_fingerprint(self) -> str:
        return cast(str, self.asn1.sha256_fingerprint).replace(" ", "").lower()

    @cached_property
    def sha1_fingerprint(self) -> str:
        return cast(str, self.asn1.sha1_fingerprint).replace(" ", "").lower()

    def is_valid_for_hostname(self, hostname: str) -> bool:
        """Matches the hostname (or IP address) against the subject alternative names
        of this certificate, falling back to the common name when no DNS names are
        present. Wildcards are matched in the left-most label only.

        Hostnames that cannot be encoded, or addresses that cannot be parsed, never
        match.
        """

        try:
            return bool(self.asn1.is_valid_domain_ip(hostname))
        except (UnicodeError, ValueError, OSError) as e:
            logger.debug(
                "Hostname %r cannot be matched against %s: %s", hostname, self, e
            )
            return False

    def verify(
        self, context: VerificationContext, hostname: str | None = None
    ) -> list[Certificate]:
        """Alias for :meth:`VerificationContext.verify`"""

        return context.verify(self, hostname=hostname)


class CertificateName:
    OID_TO_RDN: ClassVar[dict[str, str]] = {
        # The following list is based on RFC4514
        "2.5.4.3": "CN",  # commonName
        "2.5.4.6": "C",  # countryName
        "2.5.4.7": "L",  # localityName
        "2.5.4.8": "ST",  # stateOrProvinceName
        "2.5.4.9": "STREET",  # street
        "2.5.4.10": "O",  # organizationName
        "2.5.4.11": "OU",  # organizationalUnitName
        "0.9.2342.19200300.100.1.25": "DC",  # domainComponent
        "0.9.2342.19200300.100.1.1": "UID",  # userId
        # Commonly found in client certificates, names as printed by OpenSSL
        "1.2.840.113549.1.9.1": "emailAddress",
        "2.5.4.4": "SN",
        "2.5.4.5": "serialNumber",
        "2.5.4.12": "title",
        "2.5.4.42": "GN",
        "2.5.4.97": "organizationIdentifier",
    }

    def __init__(self, asn1: asn1crypto.x509.Name):
        self.asn1 = asn1

    def __eq__(self, other: object) -> bool:
        return isinstance(other, CertificateName) and self.rdns == other.rdns

    def __hash__(self) -> int:
        return hash(self.rdns)

    def __str__(self) -> str:
        return self.dn

    def __repr__(self) -> str:
        return f"<CertificateName {self.dn}>"

    @property
    def dn(self) -> str:
        """Returns an (almost) rfc2253 compatible string given a RDNSequence"""

        result = []
        for type, value in self.get_components():
            # Escaping according to RFC2253
            value = re.sub('([,+"<>;\\\\])', r"\\\1", str(value))
            if value.startswith("#"):
                value = "\\" + value
            if value.endswith(" "):
                value = value[:-1] + "\\ "
            result.append(f"{type}={value}")
        return ", ".join(result)

    @property
    def rdns(self) -> tuple[tuple[str, str], ...]:
        """A list of all components of the object."""
        return tuple(self.get_components())

    @property
    def common_name(self) -> str | None:
        return next(self.get_components("CN"), None)

    @overload
    def get_components(
        self, component_type: None = None
    ) -> Iterator[tuple[str, str]]: ...

    @overload
    def get_components(self, component_type: str) -> Iterator[str]: ...

    def get_components(
        self, component_type: str | None = None
    ) -> Iterator[tuple[str, str]] | Iterator[str]:
        """Get individual components of this CertificateName

        :param component_type: if provided, yields only values of this type,
            if not provided, yields tuples of ``(type, value)``
        """

        for n in list(self.asn1.chosen)[::-1]:
            type_value = n[0]  # get the AttributeTypeAndValue object

            type = self.OID_TO_RDN.get(
                type_value["type"].dotted, type_value["type"].dotted
            )
            value = type_value["value"].native

            if component_type is not None:
                if component_type in (
                    type_value["type"].dotted,
                    type_value["type"].native,
                    type,
                ):
                    yield value
            else:
                yield type, value


def certificates_to_pem(certificates: Iterable[Certificate]) -> str:
    return "".join(certificate.to_pem() for certificate in certificates)
