from .certificates import Certificate, CertificateName, certificates_to_pem
from .context import CertificateStore, VerificationContext

__all__ = [
    "Certificate",
    "CertificateName",
    "CertificateStore",
    "VerificationContext",
    "certificates_to_pem",
]
