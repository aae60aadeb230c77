"""
Local storage of device backups.

Layout:
{base_path}/{device_id:06d}/{device_name}_{YYYY-MM-DD_HH-MM-SS}.{ext}

Backup rows store the absolute path of the file. Relative values (written by
older releases) are resolved against the device directory.
"""

import os
import hashlib
from pathlib import Path


DEVICE_DIR_WIDTH = 6
HASH_CHUNK_SIZE = 1024 * 1024  # 1MB


class StorageError(Exception):
    """Raised when a filesystem operation on backups fails."""
    pass


def device_directory_name(device_id: int) -> str:
    """Fixed-width, zero-padded directory name of a device."""
    return f"{device_id:0{DEVICE_DIR_WIDTH}d}"


class BackupStorage:
    """
    Handler for the backup root directory.
    """

    def __init__(self, base_path: str):
        """
        Initialize backup storage handler.

        Args:
            base_path: Backup root directory
        """
        self.base_path = Path(base_path)

    def device_directory(self, device_id: int) -> str:
        """
        Create (if needed) and return the directory holding a device's backups.

        Args:
            device_id: Device identifier

        Returns:
            Absolute path of the device directory

        Raises:
            StorageError: If the directory cannot be created
        """
        path = self.base_path / device_directory_name(device_id)

        try:
            path.mkdir(parents=True, exist_ok=True)
        except PermissionError as e:
            raise StorageError(f"Permission denied creating {path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to create backup directory {path}: {e}")

        return str(path.resolve())

    def resolve(self, device_id: int, stored_path: str) -> str:
        """
        Get the full filesystem path of a stored backup.

        Args:
            device_id: Device the backup belongs to
            stored_path: Value of Backup.sFile

        Returns:
            Full filesystem path
        """
        if os.path.isabs(stored_path):
            return stored_path

        return str(self.base_path / device_directory_name(device_id) / stored_path)

    def hash_file(self, path: str) -> str:
        """
        Compute the SHA-256 fingerprint of a file's full content.

        Args:
            path: File to read

        Returns:
            Hex digest (64 characters)

        Raises:
            StorageError: If the file cannot be read
        """
        digest = hashlib.sha256()

        try:
            with open(path, 'rb') as f:
                for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b''):
                    digest.update(chunk)
        except OSError as e:
            raise StorageError(f"Failed to read {path}: {e}")

        return digest.hexdigest()

    def exists(self, path: str) -> bool:
        return os.path.isfile(path)

    def delete(self, path: str):
        """
        Delete a backup file.

        Args:
            path: Full path of the file

        Raises:
            StorageError: If deletion fails
        """
        try:
            os.remove(path)
        except PermissionError as e:
            raise StorageError(f"Permission denied deleting {path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to delete {path}: {e}")
