"""Exception hierarchy for key lifecycle management."""


class KeyLifecycleError(Exception):
    """Base error for key lifecycle and rotation failures."""


class KeyNotFoundError(KeyLifecycleError):
    """Raised when a key, its metadata or its secret file entry is missing."""


class RotationConfigError(KeyLifecycleError):
    """Raised when a rotation configuration violates its invariants."""


class MetadataWriteError(KeyLifecycleError):
    """Raised when the metadata file cannot be committed."""


class MetadataValidationError(MetadataWriteError):
    """Raised when metadata fails schema validation on the write path."""


class EnvironmentFileError(KeyLifecycleError):
    """Raised when an environment or secret file cannot be read or written."""


class DecryptionError(KeyLifecycleError):
    """Raised when a ciphertext cannot be decrypted (tampered or wrong key)."""


class EncryptionError(KeyLifecycleError):
    """Raised when a plaintext cannot be encrypted."""


class InvalidKeyMaterialError(EncryptionError):
    """Raised when a key value is not usable by the cipher."""


class KeyRotationError(KeyLifecycleError):
    """Raised when a rotation step fails verification."""


__all__ = [
    "DecryptionError",
    "EncryptionError",
    "EnvironmentFileError",
    "InvalidKeyMaterialError",
    "KeyLifecycleError",
    "KeyNotFoundError",
    "KeyRotationError",
    "MetadataValidationError",
    "MetadataWriteError",
    "RotationConfigError",
]
