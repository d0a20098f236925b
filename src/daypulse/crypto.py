"""Encryption contract consumed by the alerts engine.

Every collection is stored encrypted. Key derivation and the cipher itself
belong to the vault layer; this module only defines the shape the engine
relies on and how a concrete implementation is located from configuration.
"""

from __future__ import annotations

import importlib
import logging
from collections.abc import Mapping
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


class DecryptionError(Exception):
    """Raised when an encrypted blob cannot be decrypted with the session key."""


class CipherLoadError(Exception):
    """Raised when the configured cipher factory cannot be imported or called."""


@runtime_checkable
class Cipher(Protocol):
    """Symmetric, per-user cipher.

    ``encrypt`` turns a JSON-serialisable mapping into an opaque JSON object
    (for example ``{"iv": ..., "data": ...}``); ``decrypt`` reverses it and
    raises :class:`DecryptionError` on failure.
    """

    async def encrypt(self, data: Mapping[str, Any]) -> dict[str, Any]: ...

    async def decrypt(self, blob: Mapping[str, Any]) -> dict[str, Any]: ...


async def decrypt_or_none(
    cipher: Cipher,
    blob: Mapping[str, Any] | None,
    *,
    context: str = "",
) -> dict[str, Any] | None:
    """Decrypt *blob*, returning ``None`` (and logging) instead of raising.

    Used where a single undecryptable document must not abort a batch.
    """
    if blob is None:
        return None
    try:
        decrypted = await cipher.decrypt(blob)
    except Exception as exc:
        logger.warning("Decryption failed%s: %s", f" ({context})" if context else "", exc)
        return None
    if not isinstance(decrypted, Mapping):
        logger.warning("Decrypted payload is not an object%s", f" ({context})" if context else "")
        return None
    return dict(decrypted)


def load_cipher(import_path: str, **kwargs: Any) -> Cipher:
    """Import and call a cipher factory given as ``"package.module:factory"``.

    Extra keyword arguments are passed to the factory.
    """
    module_name, sep, attr = import_path.partition(":")
    if not sep or not module_name or not attr:
        raise CipherLoadError(
            f"Cipher import path must look like 'package.module:factory', got {import_path!r}"
        )
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise CipherLoadError(f"Cannot import cipher module {module_name!r}: {exc}") from exc

    factory = getattr(module, attr, None)
    if factory is None or not callable(factory):
        raise CipherLoadError(f"{import_path!r} does not name a callable")

    cipher = factory(**kwargs)
    if not isinstance(cipher, Cipher):
        raise CipherLoadError(f"{import_path!r} did not return an object with encrypt/decrypt")
    return cipher
