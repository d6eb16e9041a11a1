"""
Device inventory and task membership.

Devices and the tasks grouping them are external configuration; this module
only models them and reads the YAML file the worker is pointed at.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import yaml

logger = logging.getLogger(__name__)

DEFAULT_PORTS = {"ssh": 22, "telnet": 23}


class InventoryError(ValueError):
    """Raised when inventory data is malformed."""


@dataclass
class DeviceRecord:
    """Connection parameters and script binding for one device."""
    device_id: str
    host: str
    script: str
    protocol: str = "ssh"
    port: Optional[int] = None
    username: str = ""
    password: str = ""
    enable_password: Optional[str] = None
    key_file: Optional[str] = None
    variables: Dict[str, Any] = field(default_factory=dict)
    job_timeout: Optional[float] = None
    conn_timeout: int = 10
    enabled: bool = True

    def __post_init__(self):
        self.device_id = str(self.device_id)
        self.protocol = self.protocol.lower()
        if self.protocol not in DEFAULT_PORTS:
            raise InventoryError(f"Device {self.device_id}: unsupported protocol '{self.protocol}'")
        if self.port is None:
            self.port = DEFAULT_PORTS[self.protocol]

    def template_variables(self) -> Dict[str, Any]:
        """Variables visible to device script templates."""
        variables = {
            "device_id": self.device_id,
            "host": self.host,
            "port": self.port,
            "protocol": self.protocol,
            "username": self.username,
            "password": self.password,
            "enable_password": self.enable_password,
        }
        variables.update(self.variables)
        return variables


@dataclass
class TaskDefinition:
    """A named group of devices, optionally run on a cron schedule."""
    name: str
    devices: List[str] = field(default_factory=list)
    schedule: Optional[str] = None
    enabled: bool = True
    description: str = ""

    def __post_init__(self):
        self.devices = [str(d) for d in self.devices]


class Inventory:
    """In-memory device and task lookup."""

    def __init__(self, devices: Iterable[DeviceRecord] = (),
                 tasks: Iterable[TaskDefinition] = ()):
        self._devices: Dict[str, DeviceRecord] = {}
        self._tasks: Dict[str, TaskDefinition] = {}
        for device in devices:
            self.add_device(device)
        for task in tasks:
            self.add_task(task)

    def add_device(self, device: DeviceRecord):
        if device.device_id in self._devices:
            raise InventoryError(f"Duplicate device id '{device.device_id}'")
        self._devices[device.device_id] = device

    def add_task(self, task: TaskDefinition):
        if task.name in self._tasks:
            raise InventoryError(f"Duplicate task '{task.name}'")
        self._tasks[task.name] = task

    def get_device(self, device_id: str) -> Optional[DeviceRecord]:
        return self._devices.get(str(device_id))

    def get_task(self, task_name: str) -> Optional[TaskDefinition]:
        return self._tasks.get(task_name)

    def task_devices(self, task_name: str) -> Optional[List[str]]:
        """Member device ids of a task, or None if the task is unknown."""
        task = self._tasks.get(task_name)
        if task is None:
            return None
        return list(task.devices)

    def scheduled_tasks(self) -> List[TaskDefinition]:
        return [t for t in self._tasks.values() if t.enabled and t.schedule]

    @property
    def devices(self) -> List[DeviceRecord]:
        return list(self._devices.values())

    @property
    def tasks(self) -> List[TaskDefinition]:
        return list(self._tasks.values())


def inventory_from_dict(data: Dict[str, Any]) -> Inventory:
    """Build an inventory from parsed YAML/JSON data."""
    devices = []
    for entry in data.get("devices") or []:
        try:
            devices.append(DeviceRecord(**entry))
        except TypeError as e:
            raise InventoryError(f"Invalid device entry {entry.get('device_id', '?')}: {e}") from e

    tasks = []
    for entry in data.get("tasks") or []:
        try:
            tasks.append(TaskDefinition(**entry))
        except TypeError as e:
            raise InventoryError(f"Invalid task entry {entry.get('name', '?')}: {e}") from e

    inventory = Inventory(devices, tasks)

    for task in inventory.tasks:
        missing = [d for d in task.devices if inventory.get_device(d) is None]
        if missing:
            logger.warning(f"Task {task.name} references unknown devices: {missing}")

    return inventory


def load_inventory(path: Union[str, Path]) -> Inventory:
    """Load devices and tasks from a YAML file."""
    path = Path(path)
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise InventoryError(f"Inventory file {path} must contain a mapping")

    inventory = inventory_from_dict(data)
    logger.info(f"Loaded inventory from {path}: {len(inventory.devices)} devices, "
                f"{len(inventory.tasks)} tasks")
    return inventory
