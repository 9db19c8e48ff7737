from __future__ import annotations

import datetime
import logging
from collections.abc import Iterable, Iterator
from typing import Any

import asn1crypto.x509

from tlscredentials.exceptions import CertificateVerificationError
from tlscredentials.x509.certificates import Certificate, CertificateName

logger = logging.getLogger(__name__)


class CertificateStore:
    """A list of :class:`Certificate` objects."""

    def __init__(self, *args: Iterable[Certificate], trusted: bool = False):
        """
        :param trusted: If true, the certificates in this store are trust anchors
            during verification.
        """
        self.trusted = trusted
        self.data: list[Certificate] = list(*args)

    def __contains__(self, item: Certificate) -> bool:
        return item in self.data

    def __len__(self) -> int:
        return len(self.data)

    def __iter__(self) -> Iterator[Certificate]:
        yield from self.data

    def find_certificate(self, **kwargs: Any) -> Certificate:
        """Finds the certificate as specified by the keyword arguments. See
        :meth:`find_certificates` for all possible arguments. If there is not exactly
        1 certificate matching the parameters, i.e. there are zero or there are
        multiple, an error is raised.

        :raises KeyError:
        """

        certificates = list(self.find_certificates(**kwargs))

        if len(certificates) == 0:
            raise KeyError("the specified certificate does not exist")
        elif len(certificates) > 1:
            raise KeyError("there are multiple certificates matching the query")

        return certificates[0]

    def find_certificates(
        self,
        *,
        subject: CertificateName | None = None,
        serial_number: int | None = None,
        issuer: CertificateName | None = None,
        sha256_fingerprint: str | None = None,
    ) -> Iterable[Certificate]:
        """Finds all certificates given by the specified properties. A property can be
        omitted by specifying :const:`None`. Calling this function without arguments is
        the same as iterating over this store

        :param subject: Certificate subject to look for, as :class:`CertificateName`
        :param int serial_number: Serial number to look for.
        :param issuer: Certificate issuer to look for, as :class:`CertificateName`
        :param str sha256_fingerprint: The SHA-256 fingerprint to look for
        """

        for certificate in self:
            if subject is not None and certificate.subject != subject:
                continue
            if serial_number is not None and certificate.serial_number != serial_number:
                continue
            if issuer is not None and certificate.issuer != issuer:
                continue
            if sha256_fingerprint is not None and (
                certificate.sha256_fingerprint
                != sha256_fingerprint.replace(" ", "").replace(":", "").lower()
            ):
                continue
            yield certificate

    def build_chain(
        self, certificate: Certificate, depth: int = 10
    ) -> list[Certificate]:
        """Builds the chain from the provided certificate upwards, solely based on
        issuer/subject matching against the certificates in this store. The chain ends
        at a self-issued certificate, or when no issuer is available.

        **THIS METHOD DOES NOT VERIFY WHETHER A CHAIN IS ACTUALLY VALID**.
        Use :meth:`VerificationContext.verify` for that.

        :param certificate: The certificate to build a chain for
        :param depth: The maximum amount of issuers to add
        :return: The chain, starting with ``certificate``
        """

        chain = [certificate]
        while len(chain) <= depth and not chain[-1].is_self_issued:
            candidates = [
                candidate
                for candidate in self.find_certificates(subject=chain[-1].issuer)
                # prevent loops in cross-signed sets
                if candidate not in chain
            ]
            if not candidates:
                break
            chain.append(candidates[0])
        return chain


class VerificationContext:
    def __init__(
        self,
        *stores: CertificateStore,
        timestamp: datetime.datetime | None = None,
    ):
        """A context holding properties about the verification of a certificate chain.

        :param stores: A list of :class:`CertificateStore` objects that contain
            certificates. Certificates in trusted stores are used as trust anchors,
            the others as intermediates.
        :param timestamp: The timestamp to verify with. If :const:`None`, the
            current time is used. Must be a timezone-aware timestamp.
        """

        self.stores = list(stores)
        self.timestamp = timestamp

    def verify(
        self, certificate: Certificate, hostname: str | None = None
    ) -> list[Certificate]:
        """Verifies the certificate, and its chain.

        :param certificate: The certificate to verify
        :param hostname: If provided, the certificate must also be usable for a TLS
            server with this hostname.
        :return: A valid certificate chain for this certificate, starting at the
            trust anchor.
        :raises CertificateVerificationError: When the certificate could not be
            verified.
        """

        # certvalidator loads the platform crypto library on import
        from certvalidator import CertificateValidator, ValidationContext

        # we keep track of our asn1 objects to make sure we return Certificate objects
        # when we're done
        to_check_asn1cert = certificate.asn1
        all_certs = {to_check_asn1cert.dump(): certificate}

        # we need to get lists of our intermediates and trusted certificates
        intermediates: list[asn1crypto.x509.Certificate] = []
        trust_roots: list[asn1crypto.x509.Certificate] = []
        for store in self.stores:
            for cert in store:
                (trust_roots if store.trusted else intermediates).append(cert.asn1)
                all_certs[cert.to_der] = cert

        context = ValidationContext(
            trust_roots=trust_roots,
            moment=self.timestamp,
            allow_fetching=False,
        )
        validator = CertificateValidator(
            end_entity_cert=to_check_asn1cert,
            intermediate_certs=intermediates,
            validation_context=context,
        )

        try:
            if hostname is not None:
                chain = validator.validate_tls(hostname)
            else:
                chain = validator.validate_usage(set())
        except Exception as e:
            raise CertificateVerificationError(
                f"Chain verification from {certificate} failed: {e}"
            ) from e

        return [all_certs.get(x.dump()) or Certificate(x) for x in chain]
