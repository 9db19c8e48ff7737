from __future__ import annotations

import logging
import os
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from asn1crypto import algos, cms, core, keys, pkcs12
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
)
from cryptography.hazmat.primitives.serialization.pkcs12 import (
    PKCS12Certificate,
    load_pkcs12,
)

from tlscredentials.exceptions import (
    BadPasswordError,
    CorruptStoreError,
    UnsupportedFormatError,
)
from tlscredentials.pkcs12.kdf import (
    LEGACY_CIPHERS,
    compute_mac,
    content_cipher,
    decrypt_encrypted_data,
    verify_mac,
)
from tlscredentials.x509 import Certificate

logger = logging.getLogger(__name__)

DEFAULT_MAC_ALGORITHM = "sha256"
DEFAULT_MAC_ITERATIONS = 2048


@dataclass(frozen=True)
class PfxCertificate:
    """A certificate bag, with the attributes relevant for assigning aliases."""

    certificate: Certificate
    friendly_name: str | None = None
    local_key_id: bytes | None = None
    trusted: bool = False


@dataclass(frozen=True)
class PfxKey:
    """A private key bag. The key is kept exactly as stored; when ``encrypted`` is
    set, ``der`` is an EncryptedPrivateKeyInfo, otherwise a PrivateKeyInfo.
    """

    der: bytes = field(repr=False)
    encrypted: bool
    friendly_name: str | None = None
    local_key_id: bytes | None = None

    @property
    def encryption_algorithm(self) -> str | None:
        if not self.encrypted:
            return None
        return str(
            keys.EncryptedPrivateKeyInfo.load(self.der)["encryption_algorithm"][
                "algorithm"
            ].native
        )


@dataclass
class PfxContents:
    certificates: list[PfxCertificate] = field(default_factory=list)
    keys: list[PfxKey] = field(default_factory=list)


def _bag_attributes(safe_bag: pkcs12.SafeBag) -> dict[str, Any]:
    attributes = safe_bag["bag_attributes"]
    if isinstance(attributes, core.Void):
        return {}

    result: dict[str, Any] = {}
    for attribute in attributes:
        name = attribute["type"].native
        values = attribute["values"]
        if name == "trusted_key_usage":
            result[name] = True
        elif name in ("friendly_name", "local_key_id") and len(values):
            result[name] = values[0].native
    return result


def _parse_safe_contents(
    safe_contents: pkcs12.SafeContents, result: PfxContents
) -> None:
    for safe_bag in safe_contents:
        bag_id = safe_bag["bag_id"].native
        attributes = _bag_attributes(safe_bag)
        friendly_name = attributes.get("friendly_name")
        local_key_id = attributes.get("local_key_id")

        if bag_id == "cert_bag":
            cert_bag = safe_bag["bag_value"]
            if cert_bag["cert_id"].native != "x509":
                logger.debug("Skipping %s certificate bag", cert_bag["cert_id"].native)
                continue
            certificate = Certificate(cert_bag["cert_value"].parsed)
            # asn1crypto parses lazily, a malformed certificate must fail here
            certificate.asn1.native
            result.certificates.append(
                PfxCertificate(
                    certificate=certificate,
                    friendly_name=friendly_name,
                    local_key_id=local_key_id,
                    trusted="trusted_key_usage" in attributes,
                )
            )

        elif bag_id in ("key_bag", "pkcs8_shrouded_key_bag"):
            result.keys.append(
                PfxKey(
                    der=safe_bag["bag_value"].untag().dump(),
                    encrypted=bag_id == "pkcs8_shrouded_key_bag",
                    friendly_name=friendly_name,
                    local_key_id=local_key_id,
                )
            )

        elif bag_id == "safe_contents":
            _parse_safe_contents(safe_bag["bag_value"], result)

        else:
            # CRL bags and secret bags carry nothing we need
            logger.debug("Skipping %s bag", bag_id)


def decode_pfx(data: bytes, password: bytes) -> PfxContents:
    """Decodes a PKCS#12 file. Certificates are returned as-is, private keys are
    left sealed.

    :param data: The DER-encoded PFX
    :param password: The UTF-8 encoded store password
    :raises CorruptStoreError: when the data is not a valid PFX
    :raises BadPasswordError: when the password does not match the integrity MAC, or
        does not decrypt the encrypted contents
    :raises UnsupportedFormatError: when the PFX uses public-key protection, or
        unsupported algorithms
    """

    try:
        pfx = pkcs12.Pfx.load(data)
        auth_safe = pfx["auth_safe"]
        content_type = auth_safe["content_type"].native
    except (ValueError, TypeError) as e:
        raise CorruptStoreError(f"Not a PKCS#12 file: {e}") from e

    if content_type != "data":
        raise UnsupportedFormatError(
            f"PKCS#12 files with {content_type} integrity protection are not supported"
        )

    try:
        auth_safe_bytes = auth_safe["content"].native
        authenticated_safe = pkcs12.AuthenticatedSafe.load(auth_safe_bytes)
        mac_data = pfx["mac_data"]
        if mac_data.native is None:
            logger.debug("PKCS#12 file carries no integrity MAC")
        else:
            mac_algorithm = mac_data["mac"]["digest_algorithm"]["algorithm"].native
            mac_ok = verify_mac(
                mac_algorithm,
                password,
                mac_data["mac_salt"].native,
                mac_data["iterations"].native,
                auth_safe_bytes,
                mac_data["mac"]["digest"].native,
            )
            if not mac_ok:
                raise BadPasswordError(
                    "Integrity check failed, the store password is incorrect"
                )

        result = PfxContents()
        legacy_ciphers: set[str] = set()
        for content_info in authenticated_safe:
            info_type = content_info["content_type"].native
            if info_type == "data":
                safe_contents = pkcs12.SafeContents.load(content_info["content"].native)
            elif info_type == "encrypted_data":
                encrypted = content_info["content"]["encrypted_content_info"]
                cipher = content_cipher(encrypted["content_encryption_algorithm"])
                if cipher in LEGACY_CIPHERS:
                    legacy_ciphers.add(cipher)
                    continue
                try:
                    decrypted = decrypt_encrypted_data(
                        encrypted["content_encryption_algorithm"],
                        encrypted["encrypted_content"].native,
                        password,
                    )
                except ValueError as e:
                    raise BadPasswordError(
                        "Could not decrypt the store contents, the store password is"
                        " incorrect"
                    ) from e
                safe_contents = pkcs12.SafeContents.load(decrypted)
            else:
                raise UnsupportedFormatError(
                    f"PKCS#12 contents of type {info_type} are not supported"
                )
            _parse_safe_contents(safe_contents, result)

        if legacy_ciphers:
            logger.debug(
                "Decrypting %s encrypted contents through OpenSSL",
                ", ".join(sorted(legacy_ciphers)),
            )
            _add_legacy_contents(
                data, password, result, mac_verified=mac_data.native is not None
            )

    except (ValueError, TypeError, KeyError) as e:
        raise CorruptStoreError(f"Could not decode the PKCS#12 file: {e}") from e

    logger.debug(
        "Decoded PKCS#12 file with %d certificate(s) and %d key(s)",
        len(result.certificates),
        len(result.keys),
    )
    return result


def _add_legacy_contents(
    data: bytes, password: bytes, result: PfxContents, mac_verified: bool
) -> None:
    """Adds the contents of safes encrypted with a legacy cipher, decrypted by
    OpenSSL through :func:`load_pkcs12`.

    OpenSSL only reports the friendly name of each certificate. The certificate it
    pairs with the first private key gets that key's localKeyId back, so that the
    alias rules still find the leaf certificate.
    """

    try:
        loaded = load_pkcs12(data, password or None)
    except ValueError as e:
        if mac_verified:
            raise UnsupportedFormatError(
                "OpenSSL could not decrypt the legacy encrypted contents of the store,"
                " note that the private keys must use the store password as well"
            ) from e
        raise BadPasswordError(
            "Could not decrypt the store contents, the store password is incorrect"
        ) from e

    if loaded.key is not None and not result.keys:
        # the key itself was inside a legacy safe, so OpenSSL has unsealed it
        result.keys.append(
            PfxKey(
                der=loaded.key.private_bytes(
                    Encoding.DER, PrivateFormat.PKCS8, NoEncryption()
                ),
                encrypted=False,
                friendly_name=_friendly_name(loaded.cert),
            )
        )

    known = {c.certificate for c in result.certificates}
    for pfx_certificate in [loaded.cert, *loaded.additional_certs]:
        if pfx_certificate is None:
            continue
        certificate = Certificate.from_cryptography(pfx_certificate.certificate)
        if certificate in known:
            continue
        is_leaf = pfx_certificate is loaded.cert and bool(result.keys)
        result.certificates.append(
            PfxCertificate(
                certificate=certificate,
                friendly_name=_friendly_name(pfx_certificate),
                local_key_id=result.keys[0].local_key_id if is_leaf else None,
            )
        )
        known.add(certificate)


def _friendly_name(pfx_certificate: PKCS12Certificate | None) -> str | None:
    if pfx_certificate is None or pfx_certificate.friendly_name is None:
        return None
    return pfx_certificate.friendly_name.decode("utf-8")


def _safe_bag(bag_id: str, value: Any, **attributes: Any) -> pkcs12.SafeBag:
    bag: dict[str, Any] = {"bag_id": bag_id, "bag_value": value}
    bag_attributes = [
        pkcs12.Attribute({"type": name, "values": [attribute]})
        for name, attribute in attributes.items()
        if attribute is not None
    ]
    if bag_attributes:
        bag["bag_attributes"] = pkcs12.Attributes(bag_attributes)
    return pkcs12.SafeBag(bag)


def encode_pfx(
    pfx_keys: Iterable[PfxKey],
    certificates: Iterable[PfxCertificate],
    password: bytes,
    mac_algorithm: str = DEFAULT_MAC_ALGORITHM,
    mac_iterations: int = DEFAULT_MAC_ITERATIONS,
) -> bytes:
    """Encodes keys and certificates into a MAC-protected PKCS#12 file.

    Key bags are written exactly as provided, so keys keep the protection they had.
    Certificates are written unencrypted, as public data.
    """

    bags = []
    for key in pfx_keys:
        if key.encrypted:
            bag_id, value = "pkcs8_shrouded_key_bag", keys.EncryptedPrivateKeyInfo.load(
                key.der
            )
        else:
            bag_id, value = "key_bag", keys.PrivateKeyInfo.load(key.der)
        bags.append(
            _safe_bag(
                bag_id,
                value,
                friendly_name=key.friendly_name,
                local_key_id=key.local_key_id,
            )
        )

    for certificate in certificates:
        cert_bag = pkcs12.CertBag(
            {"cert_id": "x509", "cert_value": certificate.certificate.asn1}
        )
        bags.append(
            _safe_bag(
                "cert_bag",
                cert_bag,
                friendly_name=certificate.friendly_name,
                local_key_id=certificate.local_key_id,
                trusted_key_usage=(
                    "any_extended_key_usage" if certificate.trusted else None
                ),
            )
        )

    safe_contents = pkcs12.SafeContents(bags)
    authenticated_safe = pkcs12.AuthenticatedSafe(
        [cms.ContentInfo({"content_type": "data", "content": safe_contents.dump()})]
    )
    auth_safe_bytes = authenticated_safe.dump()

    salt = os.urandom(16)
    mac = compute_mac(mac_algorithm, password, salt, mac_iterations, auth_safe_bytes)

    pfx = pkcs12.Pfx(
        {
            "version": "v3",
            "auth_safe": cms.ContentInfo(
                {"content_type": "data", "content": auth_safe_bytes}
            ),
            "mac_data": pkcs12.MacData(
                {
                    "mac": algos.DigestInfo(
                        {
                            "digest_algorithm": algos.DigestAlgorithm(
                                {"algorithm": mac_algorithm}
                            ),
                            "digest": mac,
                        }
                    ),
                    "mac_salt": salt,
                    "iterations": mac_iterations,
                }
            ),
        }
    )
    return pfx.dump()
