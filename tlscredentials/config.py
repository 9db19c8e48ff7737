from __future__ import annotations

import logging
import pathlib
import ssl
from collections.abc import Mapping
from dataclasses import dataclass, field

from tlscredentials._typing import Password
from tlscredentials.exceptions import ConfigurationError
from tlscredentials.hostname import (
    HostnameVerificationPolicy,
    HostnameVerifier,
    parse_verify_hostname,
)
from tlscredentials.materials import (
    IdentityMaterial,
    TrustMaterial,
    build_identity_material,
    build_trust_material,
)
from tlscredentials.stores import (
    CredentialStore,
    StoreLocator,
    extract_alias,
    load_store,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TlsClientConfig:
    """Everything needed to provision the credentials of one TLS client session.

    :param key_store: The store holding the client identity
    :param key_store_alias: The alias of the identity to use, or :const:`None` to
        use the whole key store
    :param private_key_password: The password of the private key, which may differ
        from the key store password
    :param trust_store: The store holding the trusted certificates
    :param trust_store_alias: The alias of the trusted certificate to use, or
        :const:`None` to trust every certificate in the trust store
    :param hostname_policy: How the server hostname is verified
    """

    key_store: StoreLocator
    private_key_password: Password = field(repr=False)
    trust_store: StoreLocator
    hostname_policy: HostnameVerificationPolicy
    key_store_alias: str | None = None
    trust_store_alias: str | None = None

    @classmethod
    def from_environ(cls, environ: Mapping[str, str]) -> TlsClientConfig:
        """Reads the configuration from an environment-style mapping, such as
        :data:`os.environ`. Aliases that are absent or empty select the whole store;
        every other value, the store types and ``VERIFY_HOSTNAME`` included, is
        required.

        :raises ConfigurationError: when a required value is missing or invalid
        """

        def required(name: str) -> str:
            value = environ.get(name)
            if value is None or value == "":
                raise ConfigurationError(f"{name} must be set")
            return value

        def optional(name: str) -> str | None:
            return environ.get(name) or None

        try:
            hostname_policy = parse_verify_hostname(environ.get("VERIFY_HOSTNAME"))
        except ConfigurationError as e:
            raise ConfigurationError(f"VERIFY_HOSTNAME: {e.message}") from e

        return cls(
            key_store=StoreLocator(
                path=pathlib.Path(required("KEYSTORE_PATH")),
                password=required("KEYSTORE_PASS"),
                store_type=required("KEYSTORE_TYPE"),
            ),
            key_store_alias=optional("KEYSTORE_ALIAS"),
            private_key_password=required("PRIVATE_KEY_PASS"),
            trust_store=StoreLocator(
                path=pathlib.Path(required("TRUSTSTORE_PATH")),
                password=required("TRUSTSTORE_PASS"),
                store_type=required("TRUSTSTORE_TYPE"),
            ),
            trust_store_alias=optional("TRUSTSTORE_ALIAS"),
            hostname_policy=hostname_policy,
        )


@dataclass(frozen=True)
class TlsCredentialBundle:
    """The material handed to TLS session setup."""

    trust: TrustMaterial
    identity: IdentityMaterial
    hostname_verifier: HostnameVerifier

    def create_ssl_context(self) -> ssl.SSLContext:
        """Creates a client context that requires a valid server certificate,
        authenticates with the identity, and checks hostnames according to the
        policy.
        """

        context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        self.hostname_verifier.apply_to(context)
        context.verify_mode = ssl.CERT_REQUIRED
        self.trust.apply_to(context)
        self.identity.apply_to(context)
        return context


def _select(store: CredentialStore, alias: str | None, kind: str) -> CredentialStore:
    if alias is not None:
        logger.info("Loading only alias %s of %s", alias, kind)
    else:
        logger.info("Loading whole %s", kind)
    return extract_alias(store, alias)


def provision(config: TlsClientConfig) -> TlsCredentialBundle:
    """Loads both stores, narrows them down to the configured aliases, and builds the
    trust and identity material.

    :raises TlsCredentialsError: when any of the steps fails
    """

    key_store = _select(
        load_store(config.key_store), config.key_store_alias, "key store"
    )
    identity = build_identity_material(key_store, config.private_key_password)

    trust_store = _select(
        load_store(config.trust_store), config.trust_store_alias, "trust store"
    )
    trust = build_trust_material(trust_store)

    return TlsCredentialBundle(
        trust=trust,
        identity=identity,
        hostname_verifier=HostnameVerifier(config.hostname_policy),
    )
