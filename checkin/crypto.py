"""Fernet encryption for stored face descriptors."""

from __future__ import annotations

from typing import Union

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

import numpy as np
from cryptography.fernet import Fernet, InvalidToken

BytesLike = Union[bytes, bytearray, memoryview]


class DescriptorEncryption:
    """Encrypt and decrypt face descriptors with the configured Fernet key."""

    def __init__(self, key: BytesLike | str | None = None) -> None:
        self._key_override = key
        self._cipher: Fernet | None = None

    def _resolve_key(self) -> bytes:
        key = self._key_override
        if key is None:
            key = getattr(settings, "FACE_DATA_ENCRYPTION_KEY", None)
        if key is None:
            raise ImproperlyConfigured("FACE_DATA_ENCRYPTION_KEY is not configured.")
        key_bytes = key.encode() if isinstance(key, str) else bytes(key)
        try:
            Fernet(key_bytes)
        except (TypeError, ValueError) as exc:  # pragma: no cover
            raise ImproperlyConfigured("FACE_DATA_ENCRYPTION_KEY is invalid.") from exc
        return key_bytes

    def _get_cipher(self) -> Fernet:
        if self._cipher is None:
            self._cipher = Fernet(self._resolve_key())
        return self._cipher

    def encrypt_descriptor(self, descriptor: np.ndarray) -> bytes:
        """Encrypt a descriptor as raw float64 bytes."""

        if not isinstance(descriptor, np.ndarray):
            raise TypeError("encrypt_descriptor expects a numpy.ndarray")
        return self._get_cipher().encrypt(descriptor.astype(np.float64).reshape(-1).tobytes())

    def decrypt_descriptor(self, token: BytesLike) -> np.ndarray:
        """Decrypt a token produced by :meth:`encrypt_descriptor`.

        Raises:
            InvalidToken: If the token was not produced with the configured key.
        """

        if not isinstance(token, (bytes, bytearray, memoryview)):
            raise TypeError("decrypt_descriptor expects a bytes-like object")
        return np.frombuffer(self._get_cipher().decrypt(bytes(token)), dtype=np.float64)


__all__ = ["DescriptorEncryption", "InvalidToken"]
