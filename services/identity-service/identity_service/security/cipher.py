"""Reversible AES-256-CBC encryption for stored password surrogates."""

from __future__ import annotations

import base64
import binascii

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from ..domain.errors import DecryptionFailed

KEY_SIZE = 32
IV_SIZE = 16


class AesCbcCipher:
    """AES-CBC with PKCS7 padding keyed by a fixed key/IV pair.

    The same IV is used for every message, so equal plaintexts produce equal
    ciphertexts. Passwords stored this way are recoverable by anyone holding
    the key; the surrogate is kept reversible for compatibility with existing
    account data.
    """

    def __init__(self, key: str, iv: str) -> None:
        key_bytes = key.encode("utf-8")
        iv_bytes = iv.encode("utf-8")
        if len(key_bytes) != KEY_SIZE:
            raise ValueError(f"Encryption key must be {KEY_SIZE} bytes (256 bits)")
        if len(iv_bytes) != IV_SIZE:
            raise ValueError(f"Encryption IV must be {IV_SIZE} bytes (128 bits)")
        self._key = key_bytes
        self._iv = iv_bytes

    def _cipher(self) -> Cipher:
        return Cipher(algorithms.AES(self._key), modes.CBC(self._iv))

    def encrypt(self, plaintext: str | None) -> str | None:
        """Return the base64 ciphertext for ``plaintext``; empty input passes through."""
        if not plaintext:
            return plaintext
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
        encryptor = self._cipher().encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        return base64.b64encode(ciphertext).decode("ascii")

    def decrypt(self, ciphertext: str | None) -> str | None:
        """Recover the plaintext for a value produced by :meth:`encrypt`.

        Raises
        ------
        DecryptionFailed
            When the input is not valid base64, has a bad length or padding,
            or does not decode to UTF-8 text.
        """
        if not ciphertext:
            return ciphertext
        try:
            raw = base64.b64decode(ciphertext, validate=True)
            decryptor = self._cipher().decryptor()
            padded = decryptor.update(raw) + decryptor.finalize()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            plaintext = unpadder.update(padded) + unpadder.finalize()
            return plaintext.decode("utf-8")
        except (binascii.Error, ValueError) as exc:
            raise DecryptionFailed() from exc
