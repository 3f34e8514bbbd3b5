"""Symmetric encryption of environment variable values.

Values are encrypted with Fernet keyed by a named secret held in the base
secret file, and stored as ``ENC:<token>`` so encrypted entries can be told
apart from plaintext ones without touching the token itself.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable, List, Optional

import structlog
from cryptography.fernet import Fernet, InvalidToken

from envkeeper.env_files import EnvironmentFileParser, EnvironmentSecretFileManager
from envkeeper.errors import DecryptionError, EncryptionError, InvalidKeyMaterialError, KeyNotFoundError

logger = structlog.get_logger(__name__)

ENCRYPTED_PREFIX = "ENC:"


def generate_secret_key() -> str:
    """Return fresh key material suitable for :class:`CryptoService`."""

    return Fernet.generate_key().decode("utf-8")


def is_encrypted_value(value: Optional[str]) -> bool:
    return bool(value) and value.startswith(ENCRYPTED_PREFIX)


class CryptoService:
    """Encrypt and decrypt strings under a key looked up by name."""

    def __init__(self, secret_files: EnvironmentSecretFileManager, default_key_file: os.PathLike[str] | str) -> None:
        self.secret_files = secret_files
        self.default_key_file = Path(default_key_file)

    @staticmethod
    def validate_key_material(key_name: str, key_value: str) -> Fernet:
        """Return a cipher for ``key_value`` or raise :class:`InvalidKeyMaterialError`."""

        try:
            return Fernet(key_value.encode("utf-8"))
        except (AttributeError, TypeError, ValueError) as exc:
            raise InvalidKeyMaterialError(
                f"Key '{key_name}' is not valid Fernet key material"
            ) from exc

    async def _cipher(self, key_name: str, key_file: Optional[os.PathLike[str] | str]) -> Fernet:
        source = key_file or self.default_key_file
        key_value = await self.secret_files.get_key_value(source, key_name)
        if not key_value:
            raise KeyNotFoundError(f"Key '{key_name}' not found in {source}")
        return self.validate_key_material(key_name, key_value)

    async def encrypt(
        self, plaintext: str, key_name: str, key_file: Optional[os.PathLike[str] | str] = None
    ) -> str:
        cipher = await self._cipher(key_name, key_file)
        try:
            token = cipher.encrypt(plaintext.encode("utf-8"))
        except (TypeError, ValueError) as exc:
            raise EncryptionError(f"Unable to encrypt value with key '{key_name}'") from exc
        return ENCRYPTED_PREFIX + token.decode("ascii")

    async def decrypt(
        self, ciphertext: str, key_name: str, key_file: Optional[os.PathLike[str] | str] = None
    ) -> str:
        if not is_encrypted_value(ciphertext):
            raise DecryptionError("Value is not in the encrypted format")
        try:
            cipher = await self._cipher(key_name, key_file)
        except EncryptionError as exc:
            raise DecryptionError(str(exc)) from exc
        token = ciphertext[len(ENCRYPTED_PREFIX) :]
        try:
            return cipher.decrypt(token.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError) as exc:
            raise DecryptionError(f"Value could not be decrypted with key '{key_name}'") from exc


class EncryptionManager:
    """Encrypt plaintext variables of an environment file in place."""

    def __init__(self, parser: EnvironmentFileParser, crypto: CryptoService) -> None:
        self.parser = parser
        self.crypto = crypto

    async def encrypt_and_update_environment_variables(
        self,
        environment_file: os.PathLike[str] | str,
        key_name: str,
        variables: Optional[Iterable[str]] = None,
        key_file: Optional[os.PathLike[str] | str] = None,
    ) -> List[str]:
        """Encrypt ``variables`` (default: every plaintext value) and return their names.

        Values already carrying the encrypted prefix and the key variable itself
        are left untouched.
        """

        lines = await self.parser.read_lines(environment_file)
        current = self.parser.extract_variables(lines)
        wanted = list(variables) if variables is not None else list(current)

        missing = [name for name in wanted if name not in current]
        if missing:
            logger.warning("encrypt_variables_missing", variables=missing, file=str(environment_file))

        encrypted: List[str] = []
        for name in wanted:
            value = current.get(name)
            if not value or name == key_name or is_encrypted_value(value):
                continue
            lines = self.parser.update_lines(
                lines, name, await self.crypto.encrypt(value, key_name, key_file)
            )
            encrypted.append(name)

        if encrypted:
            await self.parser.write_lines(environment_file, lines)
        logger.info(
            "environment_variables_encrypted",
            file=str(environment_file),
            key=key_name,
            count=len(encrypted),
        )
        return encrypted


__all__ = [
    "ENCRYPTED_PREFIX",
    "CryptoService",
    "EncryptionManager",
    "generate_secret_key",
    "is_encrypted_value",
]
