"""
KeyVault: password-derived key management with backward-compatible rotation.

The only component that ever sees the user's password. Derives a
master key with PBKDF2-SHA256 (120,000 iterations) from the password
and a random salt, then a backup key from the master with a second,
independent salt. Backups are encrypted with the backup key.

Key hierarchy:
    Password
    └── Master key   (PBKDF2, master_salt)
        └── Backup key   (PBKDF2, backup_salt)  -> encrypts chunks

Secret store layout:
    memoria_key_metadata      # KeyMetadata for the current key (no secrets)
    memoria_historical_keys   # KeyBundle.historical: every retired key

The current key's secrets are never persisted; they are re-derived from
the password on every initialize(). Retired keys are kept in full,
forever, so backups made before a rotation stay decryptable. Only
clear_keys() removes them.

Usage:
    vault = KeyVault(FileSecretStore(home / "secrets"))
    await vault.initialize("CorrectHorse1")
    await vault.rotate_keys("CorrectHorse1")
    old = await vault.resolve_key(manifest.key_id)
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import secrets
import string
from datetime import datetime, timedelta
from typing import Optional

from pydantic import ValidationError

from . import codec
from .audit import AuditAction, AuditLog
from .errors import BackupError, ErrorCode
from .models import EncryptedBlob, KeyBundle, KeyMaterial, KeyMetadata, utcnow
from .secret_store import SecretStore

logger = logging.getLogger("memoria_backup.keyvault")

METADATA_KEY = "memoria_key_metadata"
HISTORY_KEY = "memoria_historical_keys"
EXPORT_KEY_ID = "export"
VERIFIER_MARKER = b"memoria:verification_test"
EXTRA_ENTROPY_LENGTH = 16
KEY_STRENGTH_BITS = 256

CLEAR_KEYS_WARNING = (
    "Clearing your keys permanently deletes them from this device. Every "
    "existing backup will become impossible to open, by you or anyone else, "
    "unless you have exported your keys first."
)

_CONSONANTS = "bcdfghjklmnpqrstvwxz"
_VOWELS = "aeiou"
# 0 and 1 are left out so they cannot be mistaken for O and l.
_DIGITS = "23456789"
_RANDOM_ALPHABET = string.ascii_letters + string.digits + "!@#$%^&*"


# ---------------------------------------------------------------------------
# Derivation helpers
# ---------------------------------------------------------------------------


def _new_key_id() -> str:
    return secrets.token_hex(16)


def _mix_salt(salt: bytes, entropy: bytes) -> bytes:
    """Fold extra entropy into a salt without changing its length."""
    return hashlib.sha256(salt + entropy).digest()[: len(salt)]


def _derive_material(
    password: str,
    master_salt: bytes,
    backup_salt: bytes,
    key_id: str,
    derived_at: datetime,
) -> KeyMaterial:
    """Run both PBKDF2 passes. CPU-bound; call via asyncio.to_thread."""
    master_key = codec.derive_key(password.encode("utf-8"), master_salt)
    backup_key = codec.derive_key(master_key, backup_salt)
    return KeyMaterial(
        key_id=key_id,
        master_key=master_key,
        backup_key=backup_key,
        derived_at=derived_at,
        strength_bits=KEY_STRENGTH_BITS,
        master_salt=master_salt,
        backup_salt=backup_salt,
    )


def _generate_material(password: str) -> KeyMaterial:
    """Derive a brand-new key generation with fresh random salts."""
    master_salt = _mix_salt(
        secrets.token_bytes(codec.SALT_LENGTH),
        secrets.token_bytes(EXTRA_ENTROPY_LENGTH),
    )
    backup_salt = secrets.token_bytes(codec.SALT_LENGTH)
    return _derive_material(password, master_salt, backup_salt, _new_key_id(), utcnow())


def generate_recovery_password(
    pronounceable: bool = True,
    length: int = 32,
    segments: int = 4,
) -> str:
    """Generate a recovery password.

    Args:
        pronounceable: Emit ``cvcd`` segments (consonant, vowel,
            consonant, digit) joined by ``-``, e.g. ``bak4-tiv7-mup2-sel9``.
            Easier to read aloud and copy by hand.
        length: Length of the non-pronounceable form.
        segments: Number of segments in the pronounceable form.

    Returns:
        The generated password.
    """
    if pronounceable:
        parts = [
            secrets.choice(_CONSONANTS)
            + secrets.choice(_VOWELS)
            + secrets.choice(_CONSONANTS)
            + secrets.choice(_DIGITS)
            for _ in range(segments)
        ]
        return "-".join(parts)
    return "".join(secrets.choice(_RANDOM_ALPHABET) for _ in range(length))


# ---------------------------------------------------------------------------
# KeyVault
# ---------------------------------------------------------------------------


class KeyVault:
    """Current key, historical keys, and the password that unlocks them.

    All reads and writes of vault state go through a single asyncio lock,
    so concurrent rotations are applied one after another and never drop
    a historical key.

    Args:
        secret_store: Where key metadata and historical keys persist.
        audit: Optional audit log for key lifecycle events.
    """

    def __init__(self, secret_store: SecretStore, audit: Optional[AuditLog] = None) -> None:
        self._secrets = secret_store
        self._audit = audit
        self._lock = asyncio.Lock()
        self._current: Optional[KeyMaterial] = None
        self._historical: dict[str, KeyMaterial] = {}

    # -------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------

    @property
    def is_initialized(self) -> bool:
        """Whether a current key is loaded."""
        return self._current is not None

    @property
    def current_key(self) -> KeyMaterial:
        """The key new backups are encrypted with.

        Raises:
            BackupError: NOT_INITIALIZED before initialize().
        """
        if self._current is None:
            raise BackupError(ErrorCode.NOT_INITIALIZED, "Key vault is not initialized")
        return self._current

    def historical_key_ids(self) -> list[str]:
        """Ids of every retired key still held."""
        return sorted(self._historical)

    def rotation_due(self, rotation_days: int, now: Optional[datetime] = None) -> bool:
        """Whether the current key is older than ``rotation_days``."""
        if self._current is None:
            return False
        now = now or utcnow()
        return now - self._current.derived_at > timedelta(days=rotation_days)

    def has_persisted_keys(self) -> bool:
        """Whether key metadata exists in the secret store."""
        return self._secrets.get(METADATA_KEY) is not None

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------

    async def initialize(self, password: str) -> KeyMaterial:
        """Unlock existing keys, or create the first key generation.

        With persisted metadata, the keys are re-derived from ``password``
        and the stored salts, then proven by decrypting the stored
        verification marker. Without metadata, new salts are generated and
        the new key's metadata is persisted.

        Raises:
            BackupError: INVALID_PASSWORD if the password does not unlock
                the stored keys; INIT_FAILED if the secret store is
                unreadable or unwritable.
        """
        if not password:
            raise BackupError(ErrorCode.INVALID_PASSWORD, "Password must not be empty")

        async with self._lock:
            try:
                metadata = self._load_metadata()
                historical = self._load_historical()

                if metadata is not None:
                    material = await asyncio.to_thread(
                        _derive_material,
                        password,
                        metadata.master_salt,
                        metadata.backup_salt,
                        metadata.key_id,
                        metadata.derived_at,
                    )
                    self._verify(material, metadata)
                    created = False
                else:
                    material = await asyncio.to_thread(_generate_material, password)
                    self._persist_current(material)
                    created = True
            except BackupError:
                raise
            except (OSError, ValueError) as exc:
                logger.error("Key vault initialization failed: %s", exc)
                raise BackupError(ErrorCode.INIT_FAILED, f"Initialization failed: {exc}") from exc

            self._current = material
            self._historical = historical

        if created:
            logger.info("Generated new key generation %s", material.key_id)
            self._record(AuditAction.KEYS_INITIALIZED, f"New key {material.key_id} created")
        else:
            logger.info(
                "Unlocked key %s (%d historical)", material.key_id, len(historical),
            )
        return material

    async def rotate_keys(self, password: str) -> KeyMaterial:
        """Retire the current key and derive a fresh one.

        Existing backups are not re-encrypted; their key ids resolve
        through the historical store. The password used here becomes the
        vault password from now on.

        Raises:
            BackupError: NOT_INITIALIZED, INVALID_PASSWORD (empty), or
                INIT_FAILED if persistence fails.
        """
        if not password:
            raise BackupError(ErrorCode.INVALID_PASSWORD, "Password must not be empty")

        async with self._lock:
            old = self.current_key
            new = await asyncio.to_thread(_generate_material, password)

            historical = dict(self._historical)
            historical[old.key_id] = old
            try:
                # History first: a crash between the two writes must not
                # lose the retired key.
                self._save_historical(historical)
                self._persist_current(new)
            except OSError as exc:
                raise BackupError(ErrorCode.INIT_FAILED, f"Could not persist rotation: {exc}") from exc

            self._historical = historical
            self._current = new

        logger.info("Rotated key %s -> %s", old.key_id, new.key_id)
        self._record(
            AuditAction.KEY_ROTATED,
            f"Key rotated {old.key_id} -> {new.key_id}",
            metadata={"old_key_id": old.key_id, "new_key_id": new.key_id},
        )
        return new

    async def resolve_key(self, key_id: str) -> KeyMaterial:
        """Find the key that encrypted a backup.

        Raises:
            BackupError: NOT_INITIALIZED, or KEY_NOT_FOUND if neither the
                current nor any historical key matches.
        """
        async with self._lock:
            current = self.current_key
            if current.key_id == key_id:
                return current
            historical = self._historical.get(key_id)
            if historical is None:
                raise BackupError(ErrorCode.KEY_NOT_FOUND, f"No key with id '{key_id}'")
            return historical

    async def export_keys(self, export_password: str) -> EncryptedBlob:
        """Wrap the current and historical keys for escrow off-device.

        The bundle is encrypted under a key derived from
        ``export_password`` with its own salt, independent of the vault
        password.

        Raises:
            BackupError: NOT_INITIALIZED, INVALID_PASSWORD (empty).
        """
        if not export_password:
            raise BackupError(ErrorCode.INVALID_PASSWORD, "Export password must not be empty")

        async with self._lock:
            bundle = KeyBundle(current=self.current_key, historical=dict(self._historical))

        salt = secrets.token_bytes(codec.SALT_LENGTH)
        wrap_key = await asyncio.to_thread(codec.derive_key, export_password.encode("utf-8"), salt)
        blob = codec.seal(wrap_key, bundle.model_dump_json().encode("utf-8"), EXPORT_KEY_ID)

        self._record(
            AuditAction.KEYS_EXPORTED,
            f"Exported key {bundle.current.key_id} with {len(bundle.historical)} historical",
        )
        return blob.model_copy(update={"salt": salt})

    async def import_keys(self, blob: EncryptedBlob, import_password: str) -> KeyMaterial:
        """Replace the current key with one from an export.

        The blob is authenticated before any state changes. The key that
        was current before the import is retired into the historical
        store, alongside every historical key the export carried.

        Raises:
            BackupError: DECRYPTION_FAILED on a wrong password or tampered
                blob; INVALID_FORMAT if the blob is not a key export;
                NOT_INITIALIZED if keys exist here but are still locked.
        """
        if blob.salt is None or blob.key_id != EXPORT_KEY_ID:
            raise BackupError(ErrorCode.INVALID_FORMAT, "Not a key export")

        wrap_key = await asyncio.to_thread(codec.derive_key, import_password.encode("utf-8"), blob.salt)
        plaintext = codec.open_blob(wrap_key, blob)
        try:
            bundle = KeyBundle.model_validate_json(plaintext)
        except ValidationError as exc:
            raise BackupError(ErrorCode.INVALID_FORMAT, "Key export is malformed") from exc
        if bundle.current is None:
            raise BackupError(ErrorCode.INVALID_FORMAT, "Key export has no current key")

        imported = bundle.current
        async with self._lock:
            if self._current is None and self.has_persisted_keys():
                # The locked key's secrets are unknown here and would be lost.
                raise BackupError(
                    ErrorCode.NOT_INITIALIZED, "Unlock the existing keys before importing",
                )
            historical = dict(self._historical)
            historical.update(bundle.historical)
            if self._current is not None and self._current.key_id != imported.key_id:
                historical[self._current.key_id] = self._current
            historical.pop(imported.key_id, None)
            try:
                self._save_historical(historical)
                self._persist_current(imported)
            except OSError as exc:
                raise BackupError(ErrorCode.INIT_FAILED, f"Could not persist import: {exc}") from exc

            self._historical = historical
            self._current = imported

        logger.info("Imported key %s (%d historical)", imported.key_id, len(historical))
        self._record(AuditAction.KEYS_IMPORTED, f"Imported key {imported.key_id}")
        return imported

    async def clear_keys(self) -> None:
        """Irreversibly delete the current and every historical key.

        Callers must obtain explicit confirmation first: afterwards every
        existing backup is permanently undecryptable (see
        CLEAR_KEYS_WARNING).
        """
        async with self._lock:
            removed = len(self._historical) + (1 if self._current else 0)
            self._secrets.delete(METADATA_KEY)
            self._secrets.delete(HISTORY_KEY)
            self._current = None
            self._historical = {}

        logger.warning("Cleared %d key(s); existing backups are now unrecoverable", removed)
        self._record(AuditAction.KEYS_CLEARED, f"Cleared {removed} key(s)")

    generate_recovery_password = staticmethod(generate_recovery_password)

    # -------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------

    @staticmethod
    def _verify(material: KeyMaterial, metadata: KeyMetadata) -> None:
        """Round-trip self-test against the stored verification marker."""
        try:
            marker = codec.decrypt(material, metadata.verifier)
        except BackupError as exc:
            raise BackupError(ErrorCode.INVALID_PASSWORD, "Invalid master password") from exc
        if marker != VERIFIER_MARKER:
            raise BackupError(ErrorCode.INVALID_PASSWORD, "Invalid master password")

    def _persist_current(self, material: KeyMaterial) -> None:
        metadata = KeyMetadata(
            key_id=material.key_id,
            master_salt=material.master_salt,
            backup_salt=material.backup_salt,
            derived_at=material.derived_at,
            strength_bits=material.strength_bits,
            iterations=codec.PBKDF2_ITERATIONS,
            verifier=codec.encrypt(material, VERIFIER_MARKER),
        )
        self._secrets.set(METADATA_KEY, metadata.model_dump_json())

    def _load_metadata(self) -> Optional[KeyMetadata]:
        raw = self._secrets.get(METADATA_KEY)
        if raw is None:
            return None
        try:
            return KeyMetadata.model_validate_json(raw)
        except ValidationError as exc:
            raise BackupError(ErrorCode.INIT_FAILED, "Stored key metadata is corrupt") from exc

    def _load_historical(self) -> dict[str, KeyMaterial]:
        raw = self._secrets.get(HISTORY_KEY)
        if raw is None:
            return {}
        try:
            return KeyBundle.model_validate_json(raw).historical
        except ValidationError as exc:
            raise BackupError(ErrorCode.INIT_FAILED, "Stored historical keys are corrupt") from exc

    def _save_historical(self, historical: dict[str, KeyMaterial]) -> None:
        self._secrets.set(HISTORY_KEY, KeyBundle(historical=historical).model_dump_json())

    def _record(self, action: AuditAction, detail: str, metadata: Optional[dict] = None) -> None:
        if self._audit is not None:
            self._audit.record(action, detail, metadata=metadata)
