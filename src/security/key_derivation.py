"""Per-Object Key Derivation - Argon2id bound to object identity

Self-Explanatory: Turns the process secret plus (bucket, object name) into a 256-bit key.
Why: Every object gets its own key without storing any key material.
How: Argon2id with fixed cost parameters; salt is "<bucket>/<object name>".

The cost parameters below are part of the storage format. Changing any of them
makes every stored object undecryptable. Renaming an object changes its key,
so old ciphertext cannot be read under a new name.
"""

from cryptography.hazmat.primitives.kdf.argon2 import Argon2id

# Fixed Argon2id parameters (must match on encrypt and decrypt)
ARGON2_TIME_COST = 1
ARGON2_MEMORY_COST_KIB = 64 * 1024
ARGON2_PARALLELISM = 4
KEY_LENGTH = 32

# Argon2 rejects salts shorter than 8 bytes
MIN_SALT_LENGTH = 8


def object_salt(bucket: str, object_name: str) -> bytes:
    """Build the KDF salt for an object identity

    The name is an opaque key: no path normalisation is applied, so
    "a/../b" and "b" are different objects with different keys.
    """
    salt = f"{bucket}/{object_name}".encode("utf-8")
    return salt.ljust(MIN_SALT_LENGTH, b"\x00")


def derive_key(secret: bytes, bucket: str, object_name: str) -> bytes:
    """Derive the encryption key for one object

    Args:
        secret: Process-wide secret (non-empty)
        bucket: Bucket name
        object_name: Object name inside the bucket

    Returns:
        32-byte key
    """
    if not secret:
        raise ValueError("encryption secret must not be empty")
    if not bucket or not object_name:
        raise ValueError("bucket and object name must not be empty")

    kdf = Argon2id(
        salt=object_salt(bucket, object_name),
        length=KEY_LENGTH,
        iterations=ARGON2_TIME_COST,
        lanes=ARGON2_PARALLELISM,
        memory_cost=ARGON2_MEMORY_COST_KIB,
    )
    return kdf.derive(secret)
