"""
Memoria Backup: zero-knowledge backup and restore for memoir recordings.

Password-derived keys, rotation that never strands an old backup,
chunked AES-256-GCM encryption, verified uploads, and restores that
respect whatever the user changed on the device since.

The storage provider never sees plaintext or the keys to produce it.
"""

import os

__version__ = "0.1.0"

BACKUP_HOME = os.environ.get("MEMORIA_BACKUP_HOME", "~/.memoria-backup")
