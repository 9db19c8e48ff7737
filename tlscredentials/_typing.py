from __future__ import annotations

from typing import Union

from typing_extensions import TypeAlias

Password: TypeAlias = Union[str, bytes]


def password_bytes(password: Password | None) -> bytes | None:
    """Passwords are handed to the PKCS#5/PKCS#12 routines as UTF-8 bytes."""
    if password is None:
        return None
    if isinstance(password, str):
        return password.encode("utf-8")
    return password


def password_str(password: Password | None) -> str | None:
    """Java keystores hash and decrypt with the UTF-16 form of the password, which
    pyjks derives from a :class:`str`.
    """
    if password is None:
        return None
    if isinstance(password, bytes):
        return password.decode("utf-8")
    return password
