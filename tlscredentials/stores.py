"""Loading of credential stores, and narrowing them down to a single alias."""

from __future__ import annotations

import logging
import pathlib
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from typing import Callable, Union

import jks
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.types import PrivateKeyTypes

from tlscredentials._typing import Password, password_bytes, password_str
from tlscredentials.exceptions import (
    AliasNotFoundError,
    BadPasswordError,
    CorruptStoreError,
    KeyRecoveryError,
    StoreIOError,
    StoreNotFoundError,
    TlsCredentialsError,
    UnsupportedFormatError,
)
from tlscredentials.pkcs12 import (
    PfxCertificate,
    PfxContents,
    PfxKey,
    decode_pfx,
    encode_pfx,
)
from tlscredentials.x509 import Certificate, CertificateStore

logger = logging.getLogger(__name__)

PKCS12 = "PKCS12"
JKS = "JKS"
JCEKS = "JCEKS"
STORE_TYPE_ALIASES = {
    "PKCS12": PKCS12,
    "P12": PKCS12,
    "PFX": PKCS12,
    "JKS": JKS,
    "JCEKS": JCEKS,
}


def normalize_store_type(store_type: str) -> str:
    """Returns the canonical name of a store type.

    :raises UnsupportedFormatError: when the type is not supported
    """

    try:
        return STORE_TYPE_ALIASES[store_type.strip().upper()]
    except KeyError:
        raise UnsupportedFormatError(
            f"Store type {store_type!r} is not supported, use one of"
            f" {', '.join(sorted(STORE_TYPE_ALIASES))}"
        ) from None


@dataclass(frozen=True)
class StoreLocator:
    """Identifies one physical credential store.

    :param path: The location of the store file
    :param password: The password that opens the store
    :param store_type: The declared store type, e.g. ``PKCS12``
    """

    path: pathlib.Path
    password: Password = field(repr=False)
    store_type: str = PKCS12

    def __post_init__(self) -> None:
        object.__setattr__(self, "path", pathlib.Path(self.path))


@dataclass(frozen=True)
class SealedKey:
    """A private key as it is stored: an (encrypted) PKCS#8 structure. It is only
    unlocked by :meth:`unlock`, with the key password.

    Keys from JKS and JCEKS stores are protected with Sun's proprietary algorithms;
    ``store_type`` tells which store the key was read from.
    """

    der: bytes = field(repr=False)
    encrypted: bool = True
    store_type: str = PKCS12

    def _unprotect_java_key(self, password: Password | None) -> bytes:
        entry = jks.PrivateKeyEntry(
            encrypted=self.der, store_type=self.store_type.lower()
        )
        entry.decrypt(password_str(password) or "")
        return bytes(entry.pkey_pkcs8)

    def unlock(self, password: Password | None) -> PrivateKeyTypes:
        """Decrypts the private key.

        :raises KeyRecoveryError: when the key cannot be recovered with the password
        """

        try:
            if self.store_type in (JKS, JCEKS):
                return serialization.load_der_private_key(
                    self._unprotect_java_key(password), password=None
                )
            return serialization.load_der_private_key(
                self.der, password=password_bytes(password) if self.encrypted else None
            )
        except (
            ValueError,
            TypeError,
            UnsupportedAlgorithm,
            jks.KeystoreException,
        ) as e:
            raise KeyRecoveryError(
                "Not able to recover the private key, please check the private key"
                " password"
            ) from e


@dataclass(frozen=True)
class TrustEntry:
    """A trusted certificate entry."""

    alias: str
    certificate_chain: tuple[Certificate, ...]

    @property
    def certificate(self) -> Certificate:
        return self.certificate_chain[0]


@dataclass(frozen=True)
class IdentityEntry:
    """A private key entry: the certificate chain, starting with the leaf certificate
    of the key, and the sealed private key.
    """

    alias: str
    certificate_chain: tuple[Certificate, ...]
    key: SealedKey

    @property
    def certificate(self) -> Certificate:
        return self.certificate_chain[0]


Entry = Union[TrustEntry, IdentityEntry]


class CredentialStore(Mapping[str, Entry]):
    """An opened, decoded credential store: a read-only mapping of alias to
    :class:`TrustEntry` or :class:`IdentityEntry`, in the order of the store file.
    """

    def __init__(
        self,
        entries: Mapping[str, Entry],
        *,
        path: pathlib.Path | None = None,
        store_type: str = PKCS12,
        selected_alias: str | None = None,
    ):
        """
        :param path: The file the store was loaded from, if any
        :param selected_alias: Set when this store was narrowed down to one alias
        """
        self._entries = dict(entries)
        self.path = path
        self.store_type = store_type
        self.selected_alias = selected_alias

    def __getitem__(self, alias: str) -> Entry:
        return self._entries[alias]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return (
            f"<CredentialStore {self.store_type} {self.path}:"
            f" {', '.join(self._entries)}>"
        )

    @property
    def aliases(self) -> list[str]:
        return list(self._entries)

    @property
    def identity_entries(self) -> list[IdentityEntry]:
        return [e for e in self._entries.values() if isinstance(e, IdentityEntry)]

    @property
    def trust_entries(self) -> list[TrustEntry]:
        return [e for e in self._entries.values() if isinstance(e, TrustEntry)]

    def dump(self, password: Password) -> bytes:
        """Encodes this store as a PKCS#12 file protected by ``password``. Private
        keys are written exactly as they were loaded, so they remain protected by
        their own key password.

        :raises UnsupportedFormatError: when the store holds private keys from a
            JKS or JCEKS store, which PKCS#12 cannot carry in their protected form
        """

        pfx_keys = []
        pfx_certificates = []
        for index, entry in enumerate(self._entries.values(), start=1):
            if isinstance(entry, IdentityEntry):
                if entry.key.store_type != PKCS12:
                    raise UnsupportedFormatError(
                        f"Private keys from a {entry.key.store_type} store cannot be"
                        " written to a PKCS#12 file",
                        path=self.path,
                        alias=entry.alias,
                    )
                local_key_id = index.to_bytes(4, "big")
                pfx_keys.append(
                    PfxKey(
                        der=entry.key.der,
                        encrypted=entry.key.encrypted,
                        friendly_name=entry.alias,
                        local_key_id=local_key_id,
                    )
                )
                pfx_certificates.append(
                    PfxCertificate(
                        entry.certificate,
                        friendly_name=entry.alias,
                        local_key_id=local_key_id,
                    )
                )
                for certificate in entry.certificate_chain[1:]:
                    if PfxCertificate(certificate) not in pfx_certificates:
                        pfx_certificates.append(PfxCertificate(certificate))
            else:
                pfx_certificates.append(
                    PfxCertificate(
                        entry.certificate, friendly_name=entry.alias, trusted=True
                    )
                )
        return encode_pfx(pfx_keys, pfx_certificates, password_bytes(password) or b"")


def _find_leaf(key: PfxKey, contents: PfxContents) -> PfxCertificate | None:
    if key.local_key_id is not None:
        for candidate in contents.certificates:
            if candidate.local_key_id == key.local_key_id:
                return candidate
    if key.friendly_name is not None:
        for candidate in contents.certificates:
            if candidate.friendly_name == key.friendly_name:
                return candidate
    if len(contents.keys) == 1 and len(contents.certificates) == 1:
        return contents.certificates[0]
    return None


def _entries_from_pfx(contents: PfxContents) -> dict[str, Entry]:
    pool = CertificateStore(c.certificate for c in contents.certificates)
    entries: dict[str, Entry] = {}

    def add(entry: Entry) -> None:
        if entry.alias in entries:
            raise CorruptStoreError(
                "The store contains the alias more than once", alias=entry.alias
            )
        entries[entry.alias] = entry

    leaves = []
    for index, key in enumerate(contents.keys, start=1):
        if key.friendly_name is not None:
            alias = key.friendly_name
        elif key.local_key_id is not None:
            alias = key.local_key_id.hex()
        else:
            alias = str(index)

        leaf = _find_leaf(key, contents)
        if leaf is None:
            raise CorruptStoreError(
                "No certificate found for the private key entry", alias=alias
            )
        leaves.append(leaf)
        add(
            IdentityEntry(
                alias=alias,
                certificate_chain=tuple(pool.build_chain(leaf.certificate)),
                key=SealedKey(der=key.der, encrypted=key.encrypted),
            )
        )

    for pfx_certificate in contents.certificates:
        if pfx_certificate in leaves:
            continue
        # certificates without a name are only links in a chain
        if pfx_certificate.friendly_name is None and not pfx_certificate.trusted:
            continue
        add(
            TrustEntry(
                alias=(
                    pfx_certificate.friendly_name
                    or pfx_certificate.certificate.sha1_fingerprint
                ),
                certificate_chain=(pfx_certificate.certificate,),
            )
        )

    return entries


def _decode_pkcs12(data: bytes, locator: StoreLocator) -> CredentialStore:
    contents = decode_pfx(data, password_bytes(locator.password) or b"")
    return CredentialStore(
        _entries_from_pfx(contents), path=locator.path, store_type=PKCS12
    )


def _java_certificate(cert_type: str, der: bytes, alias: str) -> Certificate:
    if cert_type != "X.509":
        raise UnsupportedFormatError(
            f"Certificates of type {cert_type} are not supported", alias=alias
        )
    try:
        certificate = Certificate.from_der(der)
        certificate.asn1.native
    except (ValueError, TypeError) as e:
        raise CorruptStoreError(
            f"Could not decode the certificate: {e}", alias=alias
        ) from e
    return certificate


def _decode_java_keystore(data: bytes, locator: StoreLocator) -> CredentialStore:
    declared_type = normalize_store_type(locator.store_type)
    try:
        keystore = jks.KeyStore.loads(
            data, password_str(locator.password) or "", try_decrypt_keys=False
        )
    except jks.KeystoreSignatureException as e:
        raise BadPasswordError(
            "Integrity check failed, the store password is incorrect"
        ) from e
    except (jks.KeystoreException, ValueError) as e:
        raise CorruptStoreError(f"Not a {declared_type} file: {e}") from e

    # the JCEKS format extends JKS, so only a JKS store refuses the other
    store_type = keystore.store_type.upper()
    if declared_type == JKS and store_type != JKS:
        raise CorruptStoreError(f"Not a JKS file, but a {store_type} file")

    entries: dict[str, Entry] = {}
    for alias, entry in keystore.entries.items():
        if isinstance(entry, jks.PrivateKeyEntry):
            chain = tuple(
                _java_certificate(cert_type, der, alias)
                for cert_type, der in entry.cert_chain
            )
            if not chain:
                raise CorruptStoreError(
                    "No certificate found for the private key entry", alias=alias
                )
            entries[alias] = IdentityEntry(
                alias=alias,
                certificate_chain=chain,
                # pyjks keeps the protected key in _encrypted until decrypt()
                key=SealedKey(der=entry._encrypted, store_type=store_type),
            )
        elif isinstance(entry, jks.TrustedCertEntry):
            entries[alias] = TrustEntry(
                alias=alias,
                certificate_chain=(_java_certificate(entry.type, entry.cert, alias),),
            )
        else:
            logger.debug("Skipping secret key entry %s", alias)

    return CredentialStore(entries, path=locator.path, store_type=store_type)


DECODERS: dict[str, Callable[[bytes, StoreLocator], CredentialStore]] = {
    PKCS12: _decode_pkcs12,
    JKS: _decode_java_keystore,
    JCEKS: _decode_java_keystore,
}


def load_store(locator: StoreLocator) -> CredentialStore:
    """Opens and decodes the store identified by the locator.

    :raises StoreNotFoundError: when the file does not exist
    :raises StoreIOError: when the file cannot be read
    :raises UnsupportedFormatError: when the declared type is not supported
    :raises BadPasswordError: when the store password is incorrect
    :raises CorruptStoreError: when the store cannot be decoded
    """

    logger.debug("Loading %s store %s", locator.store_type, locator.path)
    try:
        with locator.path.open("rb") as f:
            data = f.read()
    except FileNotFoundError as e:
        raise StoreNotFoundError("Store file does not exist", path=locator.path) from e
    except OSError as e:
        raise StoreIOError(
            f"Not able to open or read store: {e.strerror or e}", path=locator.path
        ) from e

    try:
        decoder = DECODERS[normalize_store_type(locator.store_type)]
        store = decoder(data, locator)
    except TlsCredentialsError as e:
        if e.path is None:
            e.path = locator.path
        raise

    logger.info(
        "Loaded %s store %s with %d alias(es)",
        store.store_type,
        locator.path,
        len(store),
    )
    return store


def extract_alias(store: CredentialStore, alias: str | None) -> CredentialStore:
    """Narrows the store down to a single alias.

    Without an alias, the store is returned unchanged. Otherwise, a new store is
    returned that contains only the entry of the alias, with the same certificate
    chain and the same sealed private key. The original store is not modified.

    :raises AliasNotFoundError: when the alias is not present
    """

    if alias is None:
        logger.debug("Using all %d alias(es) of %s", len(store), store.path)
        return store

    if alias not in store:
        raise AliasNotFoundError(alias, path=store.path)

    logger.debug("Using only alias %s of %s", alias, store.path)
    return CredentialStore(
        {alias: store[alias]},
        path=store.path,
        store_type=store.store_type,
        selected_alias=alias,
    )
