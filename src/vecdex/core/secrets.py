"""Secret material holder that wipes its buffer and compares in constant time."""

from __future__ import annotations

import hmac
import os
from typing import Any

__all__ = ["SecureCredential"]

_MASK = "***"


class SecureCredential:
    """Hold an API key or password in a wipeable ``bytearray``.

    The buffer is overwritten with zeros when :meth:`wipe` is called, when the
    credential is used as a context manager, and when the object is garbage
    collected. ``repr`` and ``str`` never expose the secret; callers must ask
    for it explicitly with :meth:`reveal`.

    Python cannot scrub the ``str`` a credential was created from, so prefer
    :meth:`from_bytes` or :meth:`from_env` when the source can be discarded.

    Example:
        >>> key = SecureCredential("sk-test")
        >>> key
        SecureCredential('***')
        >>> key == SecureCredential("sk-test")
        True
        >>> key.wipe()
        >>> len(key)
        0
    """

    __slots__ = ("_buffer", "_length", "_capacity")

    def __init__(self, secret: str | bytes | bytearray = "") -> None:
        if isinstance(secret, str):
            data: bytes | bytearray = secret.encode("utf-8")
        elif isinstance(secret, (bytes, bytearray)):
            data = secret
        else:
            raise TypeError(
                f"secret must be str or bytes; got {type(secret)!r}",
            )
        self._buffer = bytearray(data)
        self._length = len(self._buffer)
        self._capacity = len(self._buffer)

    @classmethod
    def from_bytes(cls, data: bytearray) -> "SecureCredential":
        """Take ownership of ``data``, zeroing the caller's buffer."""

        credential = cls()
        credential._buffer = bytearray(data)
        credential._length = len(data)
        credential._capacity = len(data)
        for index in range(len(data)):
            data[index] = 0
        return credential

    @classmethod
    def from_env(cls, name: str) -> "SecureCredential | None":
        """Return the credential stored in environment variable ``name``."""

        value = os.environ.get(name)
        if not value:
            return None
        return cls(value)

    def reveal(self) -> str:
        """Return the secret as text for handing to a client library."""

        return bytes(self._buffer[: self._length]).decode("utf-8")

    def validate(self) -> None:
        """Reject secrets containing NUL bytes.

        Raises:
            ValueError: If the buffer contains a NUL byte.
        """

        if 0 in self._buffer[: self._length]:
            raise ValueError("credential contains NUL bytes")

    def wipe(self) -> None:
        """Overwrite the backing buffer with zeros and mark it empty."""

        for index in range(self._capacity):
            self._buffer[index] = 0
        self._length = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    def is_empty(self) -> bool:
        return self._length == 0

    def __len__(self) -> int:
        return self._length

    def __bool__(self) -> bool:
        return self._length > 0

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SecureCredential):
            return NotImplemented
        # compare_digest runs in time independent of the first differing byte.
        return hmac.compare_digest(
            bytes(self._buffer[: self._length]),
            bytes(other._buffer[: other._length]),
        )

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"SecureCredential({_MASK!r})"

    def __str__(self) -> str:
        return _MASK

    def __reduce__(self) -> Any:
        raise TypeError("SecureCredential cannot be pickled")

    def __enter__(self) -> "SecureCredential":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.wipe()

    def __del__(self) -> None:
        try:
            self.wipe()
        except AttributeError:  # pragma: no cover - partially constructed
            pass
