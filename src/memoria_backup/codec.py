"""
Cipher codec: stateless AEAD primitives shared by backup and restore.

AES-256-GCM with a fresh 96-bit IV per call. The 128-bit tag is kept
apart from the ciphertext so each EncryptedBlob carries the exact
(iv, auth_tag, key_id) triple needed to open it. The key id and
algorithm id are bound as associated data, so relabelling a blob
fails authentication just like flipping a ciphertext bit.

Backup chunks also bind a context string naming the backup, the
chunk's index and the chunk count. Spliced, reordered, or dropped
chunks then fail authentication.
Chunks travel as a compact frame, ``iv || tag || ciphertext``; the key
id and algorithm come from the manifest.

Key derivation is PBKDF2-HMAC-SHA256 at a fixed policy iteration count.
"""

from __future__ import annotations

import hashlib
import hmac
import os
from datetime import datetime
from typing import Iterable, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import BackupError, ErrorCode
from .models import ALGORITHM_ID, EncryptedBlob, KeyMaterial

PBKDF2_ITERATIONS = 120_000
KEY_LENGTH = 32
SALT_LENGTH = 32
IV_LENGTH = 12
TAG_LENGTH = 16
FRAME_OVERHEAD = IV_LENGTH + TAG_LENGTH


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------


def derive_key(secret: bytes, salt: bytes) -> bytes:
    """Derive a 256-bit key with PBKDF2-HMAC-SHA256.

    Args:
        secret: Password bytes or a parent key.
        salt: Random salt, at least 16 bytes.

    Returns:
        32 bytes of key material.
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    return kdf.derive(secret)


# ---------------------------------------------------------------------------
# Raw-key sealing
# ---------------------------------------------------------------------------


def _associated_data(key_id: str, algorithm_id: str, context: str = "") -> bytes:
    aad = f"memoria:{algorithm_id}:{key_id}"
    if context:
        aad = f"{aad}:{context}"
    return aad.encode("utf-8")


def chunk_context(backup_id: str, index: int, count: int) -> str:
    """Associated-data context pinning a chunk to its backup and position."""
    return f"{backup_id}:{index}/{count}"


def seal(raw_key: bytes, plaintext: bytes, key_id: str, context: str = "") -> EncryptedBlob:
    """Encrypt ``plaintext`` under a raw 32-byte key.

    Args:
        raw_key: 32-byte AES key.
        plaintext: Data to encrypt.
        key_id: Key identifier, bound as associated data.
        context: Extra associated data that must be presented again
            to open the blob.

    Raises:
        BackupError: ENCRYPTION_FAILED if the key is unusable.
    """
    try:
        iv = os.urandom(IV_LENGTH)
        sealed = AESGCM(raw_key).encrypt(
            iv, plaintext, _associated_data(key_id, ALGORITHM_ID, context),
        )
    except (ValueError, TypeError) as exc:
        raise BackupError(ErrorCode.ENCRYPTION_FAILED, f"Encryption failed: {exc}") from exc

    return EncryptedBlob(
        ciphertext=sealed[:-TAG_LENGTH],
        iv=iv,
        auth_tag=sealed[-TAG_LENGTH:],
        key_id=key_id,
    )


def open_blob(raw_key: bytes, blob: EncryptedBlob, context: str = "") -> bytes:
    """Authenticate and decrypt a blob under a raw 32-byte key.

    ``context`` must equal the one the blob was sealed with.

    Raises:
        BackupError: DECRYPTION_FAILED on tampering, wrong key, or a
            malformed blob. Never returns altered plaintext.
    """
    if blob.algorithm_id != ALGORITHM_ID:
        raise BackupError(
            ErrorCode.DECRYPTION_FAILED, f"Unsupported algorithm '{blob.algorithm_id}'",
        )
    if len(blob.iv) != IV_LENGTH or len(blob.auth_tag) != TAG_LENGTH:
        raise BackupError(ErrorCode.DECRYPTION_FAILED, "Malformed IV or authentication tag")
    try:
        return AESGCM(raw_key).decrypt(
            blob.iv,
            blob.ciphertext + blob.auth_tag,
            _associated_data(blob.key_id, blob.algorithm_id, context),
        )
    except (InvalidTag, ValueError, TypeError) as exc:
        raise BackupError(ErrorCode.DECRYPTION_FAILED, "Authentication failed") from exc


# ---------------------------------------------------------------------------
# KeyMaterial API
# ---------------------------------------------------------------------------


def encrypt(key: KeyMaterial, plaintext: bytes, context: str = "") -> EncryptedBlob:
    """Encrypt with a KeyMaterial's backup key."""
    return seal(key.backup_key, plaintext, key.key_id, context)


def decrypt(key: KeyMaterial, blob: EncryptedBlob, context: str = "") -> bytes:
    """Decrypt a blob produced by :func:`encrypt` with the same ``context``.

    Raises:
        BackupError: DECRYPTION_FAILED, including when the blob names a
            different key.
    """
    if blob.key_id != key.key_id:
        raise BackupError(
            ErrorCode.DECRYPTION_FAILED,
            f"Blob encrypted with key '{blob.key_id}', not '{key.key_id}'",
        )
    return open_blob(key.backup_key, blob, context)


# ---------------------------------------------------------------------------
# Chunk framing
# ---------------------------------------------------------------------------


def pack_chunk(blob: EncryptedBlob) -> bytes:
    """Frame a blob for upload as ``iv || tag || ciphertext``.

    The frame is exactly FRAME_OVERHEAD bytes longer than the plaintext.
    """
    return blob.iv + blob.auth_tag + blob.ciphertext


def unpack_chunk(
    data: bytes,
    key_id: str,
    created_at: Optional[datetime] = None,
) -> EncryptedBlob:
    """Rebuild the EncryptedBlob for a framed chunk.

    Args:
        data: Bytes produced by :func:`pack_chunk`.
        key_id: Key named by the backup's manifest.
        created_at: Backup creation time, informational only.

    Raises:
        BackupError: INVALID_FORMAT if ``data`` is too short to be a frame.
    """
    if len(data) < FRAME_OVERHEAD:
        raise BackupError(ErrorCode.INVALID_FORMAT, f"Chunk of {len(data)} bytes is not a frame")
    fields = {}
    if created_at is not None:
        fields["created_at"] = created_at
    return EncryptedBlob(
        iv=data[:IV_LENGTH],
        auth_tag=data[IV_LENGTH:FRAME_OVERHEAD],
        ciphertext=data[FRAME_OVERHEAD:],
        key_id=key_id,
        **fields,
    )


def checksum(data: bytes) -> str:
    """SHA-256 hex digest."""
    return hashlib.sha256(data).hexdigest()


def verify_checksum(data: bytes, digest: str) -> bool:
    """Constant-time comparison of ``data``'s checksum with ``digest``."""
    return hmac.compare_digest(checksum(data), digest)


def stream_checksum(chunks: Iterable[bytes]) -> str:
    """SHA-256 hex digest over ``chunks`` concatenated in order."""
    h = hashlib.sha256()
    for chunk in chunks:
        h.update(chunk)
    return h.hexdigest()


def verify_stream_checksum(chunks: Iterable[bytes], digest: str) -> bool:
    """Constant-time check of ``chunks``' combined checksum."""
    return hmac.compare_digest(stream_checksum(chunks), digest)
