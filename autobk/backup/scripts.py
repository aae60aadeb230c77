"""
External script runner, the fallback capability for unregistered device types.

Scripts follow the naming convention op_autobk_backup_{device_type}.py and are
called as:

    {interpreter} {scripts_dir}/op_autobk_backup_{device_type}.py DEVICE_ADDRESS DESTINATION_FILE
"""

import os
import logging
import subprocess
from pathlib import Path
from typing import Optional

from .devices import DeviceCapability, CapabilityError, backup_path, discard_partial


logger = logging.getLogger(__name__)

SCRIPT_PREFIX = 'op_autobk_backup_'


def script_name(device_type: str) -> str:
    return f"{SCRIPT_PREFIX}{device_type}.py"


class ScriptCapability(DeviceCapability):
    """
    Runs an external backup script in a child process.
    """

    def __init__(self, device_type: str, scripts_dir: str, interpreter: str,
                 timeout: Optional[int] = None):
        """
        Initialize script capability.

        Args:
            device_type: Device type tag, used to locate the script
            scripts_dir: Directory holding the backup scripts
            interpreter: Python interpreter used to run the script
            timeout: Seconds before the script is killed (None = no limit)
        """
        self.device_type = device_type
        self.script_path = Path(scripts_dir) / script_name(device_type)
        self.interpreter = interpreter
        self.timeout = timeout

    def backup(self, device_name, device_address, destination_directory, file_extension):
        if not self.script_path.is_file():
            raise CapabilityError(
                f"No backup script for device type {self.device_type}: {self.script_path}"
            )

        destination = backup_path(destination_directory, device_name, file_extension)
        command = [self.interpreter, str(self.script_path), device_address, destination]

        logger.info(f"Running external backup script for {device_name}: {self.script_path.name}")

        try:
            result = subprocess.run(command, capture_output=True, timeout=self.timeout)
        except subprocess.TimeoutExpired:
            discard_partial(destination)
            raise CapabilityError(f"Script {self.script_path.name} timed out after {self.timeout}s")
        except OSError as e:
            raise CapabilityError(f"Failed to launch {self.script_path.name}: {e}")

        stdout = result.stdout.decode('utf-8', errors='replace').strip()
        stderr = result.stderr.decode('utf-8', errors='replace').strip()

        if stdout:
            logger.info(f"{self.script_path.name} stdout: {stdout}")
        if stderr:
            logger.info(f"{self.script_path.name} stderr: {stderr}")

        if result.returncode != 0:
            # Whatever the script wrote is not a usable backup
            discard_partial(destination)
            raise CapabilityError(
                f"Script {self.script_path.name} exited with status {result.returncode}"
                + (f": {stderr}" if stderr else "")
            )

        if not os.path.isfile(destination):
            raise CapabilityError(f"Script {self.script_path.name} did not produce {destination}")

        return destination
