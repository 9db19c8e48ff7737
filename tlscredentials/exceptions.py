from __future__ import annotations

import os


class TlsCredentialsError(Exception):
    """Base class for all errors raised while provisioning TLS credentials. When
    known, the store path and alias involved are available as :attr:`path` and
    :attr:`alias`, and are included in the message.
    """

    def __init__(
        self,
        message: str,
        *,
        path: str | os.PathLike[str] | None = None,
        alias: str | None = None,
    ):
        self.message = message
        self.path = path
        self.alias = alias
        super().__init__(message)

    def __str__(self) -> str:
        context = []
        if self.path is not None:
            context.append(f"store '{os.fspath(self.path)}'")
        if self.alias is not None:
            context.append(f"alias '{self.alias}'")
        if context:
            return f"{self.message} ({', '.join(context)})"
        return self.message


class StoreIOError(TlsCredentialsError):
    """The store file could not be opened or read."""


class StoreNotFoundError(StoreIOError):
    """The store file does not exist."""


class UnsupportedFormatError(TlsCredentialsError):
    """The declared store type, or a structure inside the store, is not supported."""


class StoreDecodeError(TlsCredentialsError):
    pass


class CorruptStoreError(StoreDecodeError):
    """The store could not be decoded."""


class BadPasswordError(StoreDecodeError):
    """The store password does not open the store."""


class AliasNotFoundError(TlsCredentialsError):
    """An alias was selected, but the store does not contain it."""

    def __init__(self, alias: str, *, path: str | os.PathLike[str] | None = None):
        super().__init__("Alias not found in the store", path=path, alias=alias)


class KeyRecoveryError(TlsCredentialsError):
    """The private key could not be unlocked with the key password."""


class NoTrustAnchorsError(TlsCredentialsError):
    """Trust material was requested from a store without certificates."""


class NoIdentityError(TlsCredentialsError):
    """Identity material was requested from a store without a private key entry."""


class AmbiguousIdentityError(TlsCredentialsError):
    """Identity material was requested from a store with more than one private key
    entry. Select one of them by alias.
    """


class ConfigurationError(TlsCredentialsError):
    """A configuration value is missing or cannot be interpreted."""


class VerificationError(TlsCredentialsError):
    pass


class CertificateVerificationError(VerificationError):
    """A certificate chain was not accepted by the trust material."""
