"""
Backup module for autobk.

This module handles the core backup functionality including:
- Device capabilities and the external script fallback
- Backup storage layout and fingerprinting
- Execution of due schedule rows (dedup and versioning)
- Retention sweep of expired backups
"""

from .executor import BackupExecutor, run_autobackups
from .devices import DeviceCapability, FakeDevice, CapabilityError, resolve_capability
from .scripts import ScriptCapability
from .storage import BackupStorage, StorageError
from .retention import RetentionSweeper, run_maintenance

__all__ = [
    'BackupExecutor',
    'run_autobackups',
    'DeviceCapability',
    'FakeDevice',
    'CapabilityError',
    'resolve_capability',
    'ScriptCapability',
    'BackupStorage',
    'StorageError',
    'RetentionSweeper',
    'run_maintenance'
]
