"""
Device capability registry.

A capability knows how to pull a backup from one kind of device. The registry
maps the device-type tag stored in Device.sType to a capability class. Types
without an entry are handled by the external script runner (see scripts.py).
"""

import os
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Type


logger = logging.getLogger(__name__)


class CapabilityError(Exception):
    """Raised when a device backup cannot be produced."""
    pass


def backup_filename(device_name: str, extension: str, timestamp: Optional[datetime] = None) -> str:
    """
    Generate a backup filename.

    Format: {device_name}_{YYYY-MM-DD_HH-MM-SS}.{extension}, lower-cased with
    spaces replaced by underscores.

    Args:
        device_name: Display name of the device
        extension: File extension (without leading dot)
        timestamp: Time of the backup (default: now, UTC)

    Returns:
        Normalized filename
    """
    if timestamp is None:
        timestamp = datetime.now(timezone.utc)

    filename = f"{device_name}_{timestamp:%Y-%m-%d_%H-%M-%S}.{extension}"
    return filename.lower().replace(' ', '_')


def backup_path(destination_directory: str, device_name: str, extension: str,
                timestamp: Optional[datetime] = None) -> str:
    """
    Path for a new backup file that does not exist yet.

    Captures of one device within the same second get a numeric suffix
    (d1_2024-01-15_12-00-00_1.bak, ..._2.bak) so a stored backup is never
    overwritten.
    """
    path = os.path.join(destination_directory, backup_filename(device_name, extension, timestamp))
    stem, suffix = os.path.splitext(path)

    counter = 1
    while os.path.exists(path):
        path = f"{stem}_{counter}{suffix}"
        counter += 1

    return path


def discard_partial(path: str):
    """Remove a file left behind by a failed capture."""
    try:
        if os.path.isfile(path):
            os.remove(path)
            logger.info(f"Removed partial backup file {path}")
    except OSError as e:
        logger.error(f"Failed to remove partial backup file {path}: {e}")


class DeviceCapability:
    """
    Base class for per-device-type backup capabilities.
    """

    def backup(self, device_name: str, device_address: str,
               destination_directory: str, file_extension: str) -> str:
        """
        Produce a backup file for a device.

        Args:
            device_name: Display name of the device
            device_address: Network address of the device
            destination_directory: Directory the file must be written to
            file_extension: Extension configured for the device type

        Returns:
            Path of the file that was written

        Raises:
            CapabilityError: If the backup cannot be produced
        """
        raise NotImplementedError


class FakeDevice(DeviceCapability):
    """
    Placeholder capability that writes a static text payload.

    Useful to exercise the pipeline end to end without real hardware.
    """

    def backup(self, device_name, device_address, destination_directory, file_extension):
        logger.info(f"Running backup for device: {device_name}")

        backup_file = backup_path(destination_directory, device_name, file_extension)

        try:
            with open(backup_file, 'w', encoding='utf-8') as f:
                f.write(f"Static backup of {device_name} ({device_address})\n")
        except OSError as e:
            discard_partial(backup_file)
            raise CapabilityError(f"Failed to write backup file {backup_file}: {e}")

        logger.info(f"Backup file created: {backup_file}")
        return backup_file


# Device type tag -> capability
DEVICE_TYPES: Dict[str, Type[DeviceCapability]] = {
    'FakeDevice': FakeDevice,
}


def resolve_capability(device_type: str,
                       registry: Optional[Dict[str, Type[DeviceCapability]]] = None) -> Optional[DeviceCapability]:
    """
    Look up the capability for a device type.

    Args:
        device_type: Value of Device.sType (matched exactly)
        registry: Mapping to search (default: DEVICE_TYPES)

    Returns:
        Capability instance, or None when the type is not registered
    """
    if registry is None:
        registry = DEVICE_TYPES

    capability_class = registry.get(device_type)
    if capability_class is None:
        return None

    return capability_class()
