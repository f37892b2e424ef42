"""
Pydantic models for keys, encrypted blobs, manifests, and run reports.

Byte fields serialize as base64 in JSON. Persist these models with
model_dump_json() / model_validate_json() so secrets and ciphertext
round-trip exactly.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

SCHEMA_VERSION = "1.0.0"
ALGORITHM_ID = "AES-256-GCM"


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


_BYTES_AS_BASE64 = ConfigDict(ser_json_bytes="base64", val_json_bytes="base64")


# ---------------------------------------------------------------------------
# Keys and ciphertext
# ---------------------------------------------------------------------------


class EncryptedBlob(BaseModel):
    """One AES-256-GCM ciphertext with everything needed to open it.

    Immutable once produced. The (iv, auth_tag, key_id) triple must be
    presented unchanged for decryption to succeed.
    """

    model_config = ConfigDict(frozen=True, **_BYTES_AS_BASE64)

    ciphertext: bytes
    iv: bytes
    auth_tag: bytes
    key_id: str
    algorithm_id: str = ALGORITHM_ID
    created_at: datetime = Field(default_factory=utcnow)
    salt: Optional[bytes] = Field(
        default=None, description="KDF salt, only set on password-wrapped exports",
    )


class KeyMaterial(BaseModel):
    """One generation of derived master/backup keys."""

    model_config = _BYTES_AS_BASE64

    key_id: str
    master_key: bytes = Field(repr=False)
    backup_key: bytes = Field(repr=False)
    derived_at: datetime = Field(default_factory=utcnow)
    strength_bits: int = 256
    master_salt: bytes = Field(repr=False)
    backup_salt: bytes = Field(repr=False)


class KeyMetadata(BaseModel):
    """Persisted description of the current key. Holds no secrets."""

    model_config = _BYTES_AS_BASE64

    key_id: str
    master_salt: bytes
    backup_salt: bytes
    derived_at: datetime
    strength_bits: int = 256
    iterations: int
    verifier: EncryptedBlob


class KeyBundle(BaseModel):
    """Current key plus every historical key, as persisted or exported."""

    model_config = _BYTES_AS_BASE64

    current: Optional[KeyMaterial] = None
    historical: dict[str, KeyMaterial] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Records and manifests
# ---------------------------------------------------------------------------


class MemoryRecord(BaseModel):
    """A memoir recording as owned by the local store.

    Only ``id`` and ``updated_at`` matter to the backup subsystem; every
    other field, including unknown extras, is carried through untouched.
    """

    model_config = ConfigDict(extra="allow")

    id: str
    title: str = ""
    payload_ref: str = ""
    updated_at: datetime
    tags: list[str] = Field(default_factory=list)
    archived: bool = False

    @field_validator("updated_at")
    @classmethod
    def updated_at_is_aware(cls, v: datetime) -> datetime:
        """Read a naive timestamp as UTC so local and backed-up copies compare."""
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class RecordFilter(BaseModel):
    """Which local records are eligible for backup."""

    exclude_archived: bool = True
    include_tags: list[str] = Field(default_factory=list)

    def matches(self, record: MemoryRecord) -> bool:
        """Check a record against this filter."""
        if self.exclude_archived and record.archived:
            return False
        if self.include_tags and not set(record.tags) & set(self.include_tags):
            return False
        return True


class BackupPayload(BaseModel):
    """The plaintext document that gets chunked and encrypted."""

    schema_version: str = SCHEMA_VERSION
    exported_at: datetime = Field(default_factory=utcnow)
    item_count: int = 0
    memories: list[MemoryRecord] = Field(default_factory=list)


class BackupManifest(BaseModel):
    """Metadata for one backup run.

    Attributes:
        backup_id: Unique backup identifier.
        schema_version: Payload schema version.
        created_at: When the run started.
        item_count: Number of MemoryRecords in the payload.
        plaintext_bytes: Size of the serialized payload.
        ciphertext_bytes: Total size of the uploaded chunks.
        checksum: SHA-256 over all chunk bytes in index order.
        key_id: KeyMaterial that encrypted every chunk.
        region: Compliance region the backup lives in.
        chunk_count: Number of uploaded chunks.
        is_automatic: False when the user started the run.
    """

    model_config = ConfigDict(frozen=True)

    backup_id: str
    schema_version: str = SCHEMA_VERSION
    created_at: datetime = Field(default_factory=utcnow)
    item_count: int
    plaintext_bytes: int
    ciphertext_bytes: int = 0
    checksum: str = ""
    key_id: str
    region: str
    chunk_count: int = 0
    is_automatic: bool = True


# ---------------------------------------------------------------------------
# Run progress and results
# ---------------------------------------------------------------------------


class RunStatus(str, Enum):
    """Every stage a backup or restore run can be in."""

    PREPARING = "preparing"
    ENCRYPTING = "encrypting"
    UPLOADING = "uploading"
    VERIFYING = "verifying"
    DOWNLOADING = "downloading"
    DECRYPTING = "decrypting"
    MERGING = "merging"
    COMPLETED = "completed"
    FAILED = "failed"


class BackupProgress(BaseModel):
    """Snapshot delivered to backup progress callbacks."""

    backup_id: str
    status: RunStatus = RunStatus.PREPARING
    progress: int = 0
    current_step: str = ""
    total_steps: int = 5
    bytes_processed: int = 0
    total_bytes: int = 0
    time_elapsed: float = 0.0
    error: Optional[str] = None


class RestoreProgress(BaseModel):
    """Snapshot delivered to restore progress callbacks."""

    restore_id: str
    backup_id: str
    status: RunStatus = RunStatus.DOWNLOADING
    progress: int = 0
    current_step: str = ""
    memories_restored: int = 0
    total_memories: int = 0
    error: Optional[str] = None


class RestoreSummary(BaseModel):
    """Outcome of a completed restore."""

    backup_id: str
    restored_count: int = 0
    skipped_count: int = 0
    failed_count: int = 0
    total_count: int = 0
    errors: list[str] = Field(default_factory=list)


class BackupValidation(BaseModel):
    """Dry-run check of a stored backup."""

    backup_id: str
    is_valid: bool = False
    checksum_match: bool = False
    decryption_successful: bool = False
    metadata_valid: bool = False
    memory_count_match: bool = False
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class HealthReport(BaseModel):
    """Backup health score with paired issues and recommendations."""

    score: int = 100
    issues: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


class RunKind(str, Enum):
    """Which pipeline produced a run record."""

    BACKUP = "backup"
    RESTORE = "restore"


class RunRecord(BaseModel):
    """Terminal status line for one finished run."""

    run_id: str
    kind: RunKind
    status: RunStatus
    finished_at: datetime = Field(default_factory=utcnow)
    detail: str = ""


class BackupStatus(BaseModel):
    """Persisted backup history counters."""

    last_backup_time: Optional[datetime] = None
    total_backups: int = 0
    storage_used: int = 0
    storage_limit: int = 1024 * 1024 * 1024
    last_error: Optional[str] = None
    runs: list[RunRecord] = Field(default_factory=list)

    @property
    def utilization(self) -> float:
        """Fraction of the storage limit in use."""
        if self.storage_limit <= 0:
            return 0.0
        return self.storage_used / self.storage_limit
