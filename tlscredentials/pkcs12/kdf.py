"""Key derivation and content decryption for PKCS#12 files.

PKCS#12 uses two password-based schemes: the PKCS#12-specific key derivation of
RFC 7292, appendix B (used for the integrity MAC and for the legacy
``pbeWithSHAAnd...`` ciphers), and PBES2 of PKCS#5 (PBKDF2 combined with a block
cipher), which OpenSSL 3 and recent Java versions use by default.
"""

from __future__ import annotations

import hashlib
import hmac

from asn1crypto import algos
from cryptography.hazmat.decrepit.ciphers.algorithms import TripleDES
from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from tlscredentials.exceptions import UnsupportedFormatError

KEY_ID = 1
IV_ID = 2
MAC_ID = 3

# output size (u) and block size (v) in bytes, as used by RFC 7292 B.2
_HASH_SIZES = {
    "md5": (16, 64),
    "sha1": (20, 64),
    "sha224": (28, 64),
    "sha256": (32, 64),
    "sha384": (48, 128),
    "sha512": (64, 128),
}

_CRYPTOGRAPHY_HASHES = {
    "sha1": hashes.SHA1,
    "sha224": hashes.SHA224,
    "sha256": hashes.SHA256,
    "sha384": hashes.SHA384,
    "sha512": hashes.SHA512,
}

_CIPHERS = {
    "aes": algorithms.AES,
    "tripledes": TripleDES,
}

# pbeWithSHAAnd40BitRC2-CBC and friends, still the certificate encryption of older
# OpenSSL and keytool releases. They are only available through OpenSSL itself.
LEGACY_CIPHERS = frozenset({"rc2", "rc4"})


def _fill(data: bytes, block_size: int) -> bytes:
    if not data:
        return b""
    length = block_size * -(-len(data) // block_size)
    return (data * -(-length // len(data)))[:length]


def pkcs12_kdf(
    hash_algorithm: str,
    password: bytes,
    salt: bytes,
    iterations: int,
    key_length: int,
    id_: int,
) -> bytes:
    """Derives key material as specified by RFC 7292, appendix B.2.

    :param hash_algorithm: The name of the hash, e.g. ``sha1``
    :param password: The UTF-8 encoded password. It is converted into a
        null-terminated BMPString, as the RFC requires.
    :param id_: :data:`KEY_ID`, :data:`IV_ID` or :data:`MAC_ID`
    """

    if hash_algorithm not in _HASH_SIZES:
        raise UnsupportedFormatError(
            f"Hash algorithm {hash_algorithm} is not supported for PKCS#12 key"
            " derivation"
        )
    u, v = _HASH_SIZES[hash_algorithm]

    bmp_password = password.decode("utf-8").encode("utf-16-be") + b"\x00\x00"

    d = bytes([id_]) * v
    i = bytearray(_fill(salt, v) + _fill(bmp_password, v))

    result = b""
    while len(result) < key_length:
        a = hashlib.new(hash_algorithm, d + bytes(i)).digest()
        for _ in range(1, iterations):
            a = hashlib.new(hash_algorithm, a).digest()
        result += a

        # adjust every v-byte block of I by adding B + 1, modulo 2^(8v)
        b = int.from_bytes(_fill(a, v), "big") + 1
        for start in range(0, len(i), v):
            block = (int.from_bytes(i[start : start + v], "big") + b) % (1 << (8 * v))
            i[start : start + v] = block.to_bytes(v, "big")

    return result[:key_length]


def compute_mac(
    hash_algorithm: str, password: bytes, salt: bytes, iterations: int, data: bytes
) -> bytes:
    """Computes the HMAC used for the integrity of a PFX (RFC 7292, section 5)."""

    if hash_algorithm not in _HASH_SIZES:
        raise UnsupportedFormatError(
            f"MAC algorithm {hash_algorithm} is not supported"
        )
    key = pkcs12_kdf(
        hash_algorithm,
        password,
        salt,
        iterations,
        _HASH_SIZES[hash_algorithm][0],
        MAC_ID,
    )
    return hmac.new(key, data, hash_algorithm).digest()


def verify_mac(
    hash_algorithm: str,
    password: bytes,
    salt: bytes,
    iterations: int,
    data: bytes,
    expected: bytes,
) -> bool:
    computed = compute_mac(hash_algorithm, password, salt, iterations, data)
    return hmac.compare_digest(computed, expected)


def content_cipher(encryption_algorithm: algos.EncryptionAlgorithm) -> str | None:
    """Returns the cipher name asn1crypto uses for the algorithm, or :const:`None`
    when it does not know the algorithm.
    """
    try:
        return str(encryption_algorithm.encryption_cipher)
    except ValueError:
        return None


def decrypt_encrypted_data(
    encryption_algorithm: algos.EncryptionAlgorithm, data: bytes, password: bytes
) -> bytes:
    """Decrypts the content of an EncryptedData or EncryptedPrivateKeyInfo
    structure.

    :raises UnsupportedFormatError: when the scheme or cipher is not supported.
    :raises ValueError: when the content does not decrypt properly, usually because
        the password is incorrect.
    """

    try:
        kdf = encryption_algorithm.kdf
        cipher_name = encryption_algorithm.encryption_cipher
    except ValueError as e:
        raise UnsupportedFormatError(
            "Encryption algorithm"
            f" {encryption_algorithm['algorithm'].native} is not supported"
        ) from e

    if cipher_name not in _CIPHERS:
        raise UnsupportedFormatError(f"Cipher {cipher_name} is not supported")
    block_size = encryption_algorithm.encryption_block_size

    if kdf == "pbkdf2":
        hash_algorithm = encryption_algorithm.kdf_hmac
        if hash_algorithm not in _CRYPTOGRAPHY_HASHES:
            raise UnsupportedFormatError(
                f"PBKDF2 with {hash_algorithm} is not supported"
            )
        key = PBKDF2HMAC(
            algorithm=_CRYPTOGRAPHY_HASHES[hash_algorithm](),
            length=encryption_algorithm.key_length,
            salt=encryption_algorithm.kdf_salt,
            iterations=encryption_algorithm.kdf_iterations,
        ).derive(password)
        iv = encryption_algorithm.encryption_iv

    elif kdf == "pkcs12_kdf":
        arguments = (
            encryption_algorithm.kdf_hmac,
            password,
            encryption_algorithm.kdf_salt,
            encryption_algorithm.kdf_iterations,
        )
        key = pkcs12_kdf(*arguments, encryption_algorithm.key_length, KEY_ID)
        iv = pkcs12_kdf(*arguments, block_size, IV_ID)

    else:
        raise UnsupportedFormatError(f"Key derivation {kdf} is not supported")

    decryptor = Cipher(_CIPHERS[cipher_name](key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(data) + decryptor.finalize()

    unpadder = padding.PKCS7(block_size * 8).unpadder()
    return unpadder.update(padded) + unpadder.finalize()
