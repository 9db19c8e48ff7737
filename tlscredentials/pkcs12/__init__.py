from .pfx import (
    PfxCertificate,
    PfxContents,
    PfxKey,
    decode_pfx,
    encode_pfx,
)

__all__ = [
    "PfxCertificate",
    "PfxContents",
    "PfxKey",
    "decode_pfx",
    "encode_pfx",
]
