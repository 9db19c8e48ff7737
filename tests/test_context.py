import datetime

import pytest

try:
    import certvalidator  # noqa: F401
except Exception as e:  # oscrypto may fail to load the platform libcrypto
    pytest.skip(f"certvalidator is not usable: {e}", allow_module_level=True)

from tests._utils import NOW, issue, pki
from tlscredentials.exceptions import CertificateVerificationError, VerificationError
from tlscredentials.materials import TrustMaterial
from tlscredentials.x509 import CertificateStore, VerificationContext


def test_verify_chain():
    context = VerificationContext(CertificateStore([pki().ca.wrapped], trusted=True))
    chain = pki().client.wrapped.verify(context)
    assert chain == [pki().ca.wrapped, pki().client.wrapped]


def test_verify_with_intermediate():
    intermediate = issue("Intermediate CA", issuer=pki().ca, ca=True)
    leaf = issue("leaf", issuer=intermediate)
    context = VerificationContext(
        CertificateStore([pki().ca.wrapped], trusted=True),
        CertificateStore([intermediate.wrapped]),
    )

    assert context.verify(leaf.wrapped) == [
        pki().ca.wrapped,
        intermediate.wrapped,
        leaf.wrapped,
    ]


def test_verify_untrusted():
    context = VerificationContext(CertificateStore([pki().ca.wrapped]))
    with pytest.raises(VerificationError):
        pki().client.wrapped.verify(context)


def test_verify_hostname():
    context = VerificationContext(CertificateStore([pki().ca.wrapped], trusted=True))

    context.verify(pki().server.wrapped, hostname="server.example.com")
    with pytest.raises(CertificateVerificationError):
        context.verify(pki().server.wrapped, hostname="other.example.com")


def test_trust_material_verify_chain():
    material = TrustMaterial((pki().ca.wrapped,))

    path = material.verify_chain([pki().server.wrapped], hostname="server.example.com")
    assert path[0] == pki().ca.wrapped
    assert path[-1] == pki().server.wrapped


def test_trust_material_rejects_unknown_issuer():
    material = TrustMaterial((issue("Unrelated CA", ca=True).wrapped,))
    with pytest.raises(CertificateVerificationError):
        material.verify_chain([pki().server.wrapped])


def test_trust_material_verify_chain_at_moment():
    material = TrustMaterial((pki().ca.wrapped,))
    with pytest.raises(CertificateVerificationError):
        material.verify_chain(
            [pki().server.wrapped], moment=NOW + datetime.timedelta(days=365)
        )
