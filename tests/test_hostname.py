import logging
import ssl

import pytest

from tests._utils import pki
from tlscredentials.exceptions import ConfigurationError
from tlscredentials.hostname import (
    HostnameVerificationPolicy,
    HostnameVerifier,
    parse_verify_hostname,
)


class FakeSession:
    def __init__(self, der):
        self.der = der
        self.calls = 0

    def getpeercert(self, binary_form=False):
        self.calls += 1
        return self.der if binary_form else {}


@pytest.mark.parametrize(
    "hostname",
    ["server.example.com", "evil.example.org", "", "not a hostname!", "::1", "*"],
)
def test_bypass_accepts_everything(hostname):
    verifier = HostnameVerifier(HostnameVerificationPolicy.BYPASS_ALL)
    assert verifier.verify(hostname, pki().client.wrapped) is True
    assert verifier.verify(hostname, None) is True


def test_bypass_does_not_touch_session():
    session = FakeSession(pki().server.wrapped.to_der)
    HostnameVerifier(HostnameVerificationPolicy.BYPASS_ALL).verify("x", session)
    assert session.calls == 0


def test_bypass_warns_once(caplog):
    caplog.set_level(logging.DEBUG, logger="tlscredentials.hostname")

    verifier = HostnameVerifier(HostnameVerificationPolicy.BYPASS_ALL)
    for _ in range(3):
        verifier.verify("server.example.com", pki().server.wrapped)

    warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
    assert len(warnings) == 1
    assert "DISABLED" in warnings[0].getMessage()


def test_standard_does_not_warn(caplog):
    caplog.set_level(logging.WARNING, logger="tlscredentials.hostname")
    HostnameVerifier(HostnameVerificationPolicy.STANDARD)
    assert caplog.records == []


@pytest.mark.parametrize(
    "hostname,expected",
    [
        ("server.example.com", True),
        ("Server.Example.COM", True),
        ("api.wild.example.com", True),
        ("wild.example.com", False),
        ("client", False),
        ("other.example.com", False),
        ("not a hostname!", False),
        ("", False),
        ("127.0.0.1", False),
    ],
)
def test_standard(hostname, expected):
    verifier = HostnameVerifier(HostnameVerificationPolicy.STANDARD)
    assert verifier.verify(hostname, pki().server.wrapped) is expected


def test_standard_session_types():
    verifier = HostnameVerifier(HostnameVerificationPolicy.STANDARD)
    certificate = pki().server.wrapped

    assert verifier.verify("server.example.com", certificate.asn1)
    assert verifier.verify("server.example.com", certificate.to_der)
    assert verifier.verify("server.example.com", FakeSession(certificate.to_der))
    assert not verifier.verify("client", FakeSession(certificate.to_der))


def test_standard_without_peer_certificate():
    verifier = HostnameVerifier(HostnameVerificationPolicy.STANDARD)
    with pytest.raises(ValueError):
        verifier.verify("server.example.com", FakeSession(None))
    with pytest.raises(TypeError):
        verifier.verify("server.example.com", object())


def test_policy_must_be_explicit():
    with pytest.raises(TypeError):
        HostnameVerifier("bypass_all")
    with pytest.raises(TypeError):
        HostnameVerifier(False)


def test_from_flag():
    assert (
        HostnameVerificationPolicy.from_flag(True)
        is HostnameVerificationPolicy.STANDARD
    )
    assert (
        HostnameVerificationPolicy.from_flag(False)
        is HostnameVerificationPolicy.BYPASS_ALL
    )


@pytest.mark.parametrize(
    "value,policy",
    [
        ("true", HostnameVerificationPolicy.STANDARD),
        (" TRUE ", HostnameVerificationPolicy.STANDARD),
        ("1", HostnameVerificationPolicy.STANDARD),
        ("yes", HostnameVerificationPolicy.STANDARD),
        ("false", HostnameVerificationPolicy.BYPASS_ALL),
        ("Off", HostnameVerificationPolicy.BYPASS_ALL),
        ("0", HostnameVerificationPolicy.BYPASS_ALL),
    ],
)
def test_parse_verify_hostname(value, policy):
    assert parse_verify_hostname(value) is policy


@pytest.mark.parametrize("value", [None, "", "maybe", "disabled"])
def test_parse_verify_hostname_invalid(value):
    with pytest.raises(ConfigurationError):
        parse_verify_hostname(value)


def test_apply_to():
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)

    HostnameVerifier(HostnameVerificationPolicy.BYPASS_ALL).apply_to(context)
    assert context.check_hostname is False

    HostnameVerifier(HostnameVerificationPolicy.STANDARD).apply_to(context)
    assert context.check_hostname is True
