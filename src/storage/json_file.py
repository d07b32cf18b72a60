"""
JSON file storage backend.

This is the default storage backend. It keeps the working set in memory and
persists distributions, claims and audit records to a local JSON file after
every mutation. Bank account numbers in claim payment details are encrypted
when a field cipher is configured.
"""

import json
import logging
import os
from contextlib import contextmanager
from typing import Any

from encryption import (
    EncryptionError,
    FieldCipher,
    decrypt_claim_document,
    encrypt_claim_document,
)
from profit_models import ProfitClaim, ProfitDistribution
from storage.base import StorageReadError, StorageWriteError
from storage.memory import MemoryStorage

logger = logging.getLogger(__name__)

FILE_FORMAT_VERSION = 1


class JSONFileStorage(MemoryStorage):
    """
    JSON file storage backend.

    Thread-safe: every mutation and the following file write happen under
    the same lock, and the file is replaced atomically. Not safe to share
    between processes.
    """

    def __init__(self, file_path: str = "profit_data.json", cipher: FieldCipher | None = None):
        """
        Initialize JSON file storage.

        Args:
            file_path: Path to the JSON file
            cipher: Field cipher for bank account numbers (None disables)
        """
        super().__init__()
        self.file_path = file_path
        self.cipher = cipher
        self._load()

    @property
    def encryption_enabled(self) -> bool:
        return self.cipher is not None

    def _load(self) -> None:
        """
        Load existing data from the JSON file.

        Raises:
            StorageReadError: If reading fails
        """
        try:
            if not os.path.exists(self.file_path):
                return
            with open(self.file_path, encoding="utf-8") as f:
                raw_data = f.read()
            if not raw_data.strip():
                return
            data = json.loads(raw_data)

            for doc in data.get("distributions", []):
                distribution = ProfitDistribution.from_dict(doc)
                self._distributions[distribution.distribution_id] = distribution
                self._periods[distribution.period_key] = distribution.distribution_id
            for doc in data.get("claims", []):
                claim = ProfitClaim.from_dict(decrypt_claim_document(doc, self.cipher))
                self._claims[claim.claim_id] = claim
            self._audit.extend(data.get("audit", []))

        except PermissionError as e:
            raise StorageReadError(f"Permission denied: {self.file_path}") from e
        except json.JSONDecodeError as e:
            raise StorageReadError(f"Invalid JSON format: {e}") from e
        except EncryptionError as e:
            raise StorageReadError(f"Cannot decrypt claim data: {e}") from e
        except (KeyError, ValueError) as e:
            raise StorageReadError(f"Corrupt profit data: {e}") from e

        logger.info(
            f"Loaded {len(self._distributions)} distributions and "
            f"{len(self._claims)} claims from {self.file_path}"
        )

    def _save(self) -> None:
        """
        Write the full state to the JSON file. Caller holds the lock.

        Raises:
            StorageWriteError: If writing fails
        """
        try:
            data = json.dumps(
                {
                    "version": FILE_FORMAT_VERSION,
                    "distributions": [d.to_dict() for d in self._distributions.values()],
                    "claims": [
                        encrypt_claim_document(c.to_dict(), self.cipher)
                        for c in self._claims.values()
                    ],
                    "audit": self._audit,
                },
                indent=2,
                ensure_ascii=False,
            )

            # Write to file atomically (write to temp, then rename)
            temp_path = f"{self.file_path}.tmp"
            with open(temp_path, "w", encoding="utf-8") as f:
                f.write(data)
            os.replace(temp_path, self.file_path)

        except PermissionError as e:
            raise StorageWriteError(f"Permission denied: {self.file_path}") from e
        except OSError as e:
            raise StorageWriteError(f"OS error: {e}") from e

    # Mutations persist on success; a failed write restores the previous
    # in-memory state

    @contextmanager
    def _mutation(self):
        saved = (dict(self._distributions), dict(self._periods), dict(self._claims))
        audit_length = len(self._audit)
        try:
            yield
        except StorageWriteError:
            self._distributions, self._periods, self._claims = saved
            del self._audit[audit_length:]
            raise

    def insert_distribution_if_absent(
        self, distribution: ProfitDistribution
    ) -> ProfitDistribution | None:
        with self._lock, self._mutation():
            existing = super().insert_distribution_if_absent(distribution)
            if existing is None:
                self._save()
            return existing

    def update_distribution_if(
        self, expected: ProfitDistribution, updated: ProfitDistribution
    ) -> bool:
        with self._lock, self._mutation():
            applied = super().update_distribution_if(expected, updated)
            if applied:
                self._save()
            return applied

    def upsert_claim(self, claim: ProfitClaim) -> ProfitClaim:
        with self._lock, self._mutation():
            stored = super().upsert_claim(claim)
            if stored is claim:
                self._save()
            return stored

    def compare_and_swap_claim(self, expected: ProfitClaim, updated: ProfitClaim) -> bool:
        with self._lock, self._mutation():
            applied = super().compare_and_swap_claim(expected, updated)
            if applied:
                self._save()
            return applied

    def append_audit(self, record: dict[str, Any]) -> None:
        with self._lock, self._mutation():
            super().append_audit(record)
            self._save()

    # Backend

    def is_available(self) -> bool:
        """
        Check if file storage is available.

        Returns:
            True if the file path is writable
        """
        directory = os.path.dirname(self.file_path) or "."
        if not os.path.exists(directory):
            return False
        return os.access(directory, os.W_OK)

    def get_info(self) -> dict[str, Any]:
        """Get storage backend information."""
        info = super().get_info()
        info.update({
            "file_path": self.file_path,
            "file_exists": os.path.exists(self.file_path),
            "encryption_enabled": self.encryption_enabled,
        })

        if os.path.exists(self.file_path):
            try:
                stat = os.stat(self.file_path)
                info["file_size_bytes"] = stat.st_size
                info["last_modified"] = stat.st_mtime
            except OSError:
                pass

        return info
