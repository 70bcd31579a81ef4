"""
Password handling: guarded secrets and LDAP password hashing.
"""

import hashlib
import random
import secrets
import string
import time
import zlib
from base64 import b64encode as encode
from collections.abc import Callable
from functools import lru_cache
from typing import TypeVar

from cryptography.fernet import Fernet

from .exceptions import ConfigurationError
from .options import HASH_ALGORITHMS

T = TypeVar("T")

#: Length of the salt for the salted algorithms.
SALT_LENGTH = 8


@lru_cache(maxsize=1)
def _cipher() -> Fernet:
    # One throwaway key per process; guarded secrets never outlive it.
    return Fernet(Fernet.generate_key())


class GuardedSecret:
    """
    A credential whose plaintext is only available inside a callback.

    The value is kept encrypted.  :py:meth:`access` decrypts it, hands the
    plaintext to the callback and returns whatever the callback returns; the
    plaintext is not stored anywhere on the instance.

    Args:
        value: The secret.

    """

    def __init__(self, value: str | bytes) -> None:
        if isinstance(value, str):
            value = value.encode("utf-8")
        self._token = _cipher().encrypt(value)

    def access(self, accessor: Callable[[bytes], T]) -> T:
        """
        Call ``accessor`` with the plaintext and return its result.
        """
        return accessor(_cipher().decrypt(self._token))

    def __repr__(self) -> str:
        return "<GuardedSecret: ********>"


def seed_for(identity: str | None) -> int:
    """
    Derive a salt seed from an entry identity, so that two passwords hashed
    in the same millisecond for different entries get different salts.
    """
    if not identity:
        return 0
    return zlib.crc32(identity.encode("utf-8"))


def generate_random_password(length: int = 30) -> str:
    """
    Return a random password nobody knows.  Setting one effectively locks the
    account without disabling it.
    """
    alphabet = string.ascii_letters + string.digits + string.punctuation
    return "".join(secrets.choice(alphabet) for _ in range(length))


class PasswordHasher:
    """
    Hash cleartext passwords in the RFC 2307 ``{SCHEME}base64`` format.

    Supported algorithms:

    * ``NONE``: no hashing, the value is stored as given
    * ``SHA``, ``SSHA``: SHA-1, unsalted and salted
    * ``MD5``, ``SMD5``: MD5, unsalted and salted

    Args:
        algorithm: One of the above, case-insensitive.  ``None`` or ``""``
            mean ``NONE``.

    Raises:
        ConfigurationError: ``algorithm`` is not supported.

    """

    def __init__(self, algorithm: str | None) -> None:
        self.algorithm = (algorithm or "NONE").upper()
        if self.algorithm not in HASH_ALGORITHMS:
            msg = f"Unsupported hash algorithm: {algorithm}"
            raise ConfigurationError(msg)

    @property
    def salted(self) -> bool:
        return self.algorithm in ("SSHA", "SMD5")

    def is_hashed(self, value: bytes) -> bool:
        """
        Return ``True`` if ``value`` is already ``{ALGORITHM}``-prefixed for our
        algorithm.  This happens when a stored hash is being synchronized from
        another directory.
        """
        if not value.startswith(b"{"):
            return False
        end = value.find(b"}")
        if end == -1:
            return False
        return value[1:end].decode("ascii", "replace").upper() == self.algorithm

    def salt(self, seed: int = 0) -> bytes:
        if not self.salted:
            return b""
        rand = random.Random(int(time.time() * 1000) ^ seed)  # noqa: S311
        return rand.randbytes(SALT_LENGTH)

    def hash(self, cleartext: bytes, seed: int = 0) -> bytes:
        """
        Hash ``cleartext``.

        Args:
            cleartext: The password.

        Keyword Args:
            seed: Mixed into the salt generator seed; see :py:func:`seed_for`.

        Returns:
            The value to store in the password attribute.

        """
        if self.algorithm == "NONE" or self.is_hashed(cleartext):
            return cleartext
        if self.algorithm in ("SHA", "SSHA"):
            h = hashlib.sha1(cleartext)  # noqa: S324
        else:
            h = hashlib.md5(cleartext)  # noqa: S324
        salt = self.salt(seed)
        h.update(salt)
        return b"{" + self.algorithm.encode("ascii") + b"}" + encode(h.digest() + salt)
