from __future__ import annotations

import enum
import logging
import ssl
from typing import Any, Protocol, Union

import asn1crypto.x509

from tlscredentials.exceptions import ConfigurationError
from tlscredentials.x509 import Certificate

logger = logging.getLogger(__name__)


class PeerSession(Protocol):
    """Anything that reports the peer certificate like :class:`ssl.SSLSocket`."""

    def getpeercert(self, binary_form: bool = ...) -> Any: ...


PeerCertificate = Union[Certificate, asn1crypto.x509.Certificate, bytes, PeerSession]


class HostnameVerificationPolicy(enum.Enum):
    """How the hostname of the peer is checked against its certificate."""

    STANDARD = "standard"
    #: Accept every hostname. This makes the session vulnerable to
    #: man-in-the-middle attacks and must only be selected explicitly.
    BYPASS_ALL = "bypass_all"

    @classmethod
    def from_flag(cls, verify_hostname: bool) -> HostnameVerificationPolicy:
        return cls.STANDARD if verify_hostname else cls.BYPASS_ALL


def _peer_certificate(session: PeerCertificate | None) -> Certificate:
    if isinstance(session, Certificate):
        return session
    if isinstance(session, asn1crypto.x509.Certificate):
        return Certificate(session)
    if isinstance(session, (bytes, bytearray)):
        return Certificate.from_der(bytes(session))
    if hasattr(session, "getpeercert"):
        der = session.getpeercert(binary_form=True)
        if der is None:
            raise ValueError("The session has no peer certificate")
        return Certificate.from_der(der)
    raise TypeError(f"Cannot obtain a peer certificate from {type(session).__name__}")


class HostnameVerifier:
    """The decision point for hostname verification during session setup.

    The policy is fixed at construction. Selecting
    :attr:`HostnameVerificationPolicy.BYPASS_ALL` logs a warning once, at that
    moment; individual bypassed checks are only logged at debug level.
    """

    def __init__(self, policy: HostnameVerificationPolicy):
        if not isinstance(policy, HostnameVerificationPolicy):
            raise TypeError(
                "The hostname verification policy must be a HostnameVerificationPolicy,"
                f" not {type(policy).__name__}"
            )
        self.policy = policy
        if policy is HostnameVerificationPolicy.BYPASS_ALL:
            logger.warning(
                "Hostname verification is DISABLED: sessions using this"
                " configuration do not verify the identity of the server"
            )

    def __repr__(self) -> str:
        return f"<HostnameVerifier {self.policy.name}>"

    def verify(self, hostname: str, session: PeerCertificate | None) -> bool:
        """Decides whether the presented certificate is acceptable for the hostname.

        :param hostname: The hostname (or IP address) that was connected to
        :param session: The peer certificate, as :class:`Certificate`, asn1crypto
            certificate or DER bytes, or an object providing ``getpeercert``, such as
            an :class:`ssl.SSLSocket`. It is never modified.
        """

        if self.policy is HostnameVerificationPolicy.BYPASS_ALL:
            logger.debug("Accepting hostname %r without verification", hostname)
            return True

        certificate = _peer_certificate(session)
        result = certificate.is_valid_for_hostname(hostname)
        if not result:
            logger.info(
                "Hostname %r does not match certificate %s (valid for %s)",
                hostname,
                certificate.subject.dn,
                ", ".join(certificate.valid_domains + certificate.valid_ips) or "-",
            )
        return result

    def apply_to(self, context: ssl.SSLContext) -> None:
        """Configures hostname checking of the SSL context according to the policy."""
        context.check_hostname = self.policy is HostnameVerificationPolicy.STANDARD


_BOOLEAN_LITERALS = {
    "true": True,
    "yes": True,
    "on": True,
    "1": True,
    "false": False,
    "no": False,
    "off": False,
    "0": False,
}


def parse_verify_hostname(value: str | None) -> HostnameVerificationPolicy:
    """Interprets an explicit ``VERIFY_HOSTNAME`` style flag.

    :raises ConfigurationError: when the value is absent or not a boolean literal
    """

    if value is None:
        raise ConfigurationError(
            "Hostname verification must be configured explicitly"
        )
    try:
        flag = _BOOLEAN_LITERALS[value.strip().lower()]
    except KeyError:
        raise ConfigurationError(
            f"Invalid hostname verification flag {value!r}, expected true or false"
        ) from None
    return HostnameVerificationPolicy.from_flag(flag)
