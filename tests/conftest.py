"""
Shared fixtures: an in-memory transport that plays a device side.
"""

import threading
import time
from typing import Dict, List, Optional, Tuple, Union

import pytest

from netbackup.device_script import DeviceScript, ScriptLibrary
from netbackup.error_handling import TransportEOF, TransportWriteError
from netbackup.inventory import DeviceRecord, Inventory, TaskDefinition
from netbackup.result_reporter import JobOutcome, ReportResponse, ResultReporter
from netbackup.transport import Transport

Reply = Union[str, Tuple[float, str]]

_EOF = object()


class ScriptedTransport(Transport):
    """
    Device simulator.

    Text is emitted on a timeline (``feed``), in answer to written commands
    (``responses``: stripped command -> reply, or list of successive replies,
    each optionally ``(delay, text)``), optionally echoing what was written,
    fragmented into ``chunk_size`` pieces, and can end with EOF.
    """

    def __init__(self, responses: Optional[Dict[str, Union[Reply, List[Reply]]]] = None,
                 chunk_size: Optional[int] = None, echo: bool = False, name: str = "scripted"):
        super().__init__(name)
        self.responses = {k: (list(v) if isinstance(v, list) else v) for k, v in (responses or {}).items()}
        self.chunk_size = chunk_size
        self.echo = echo
        self.writes: List[str] = []
        self._queue: List[list] = []
        self._seq = 0
        self._cond = threading.Condition()

    def feed(self, text: str, delay: float = 0.0):
        self._push(text, delay)
        return self

    def eof(self, delay: float = 0.0):
        self._push(_EOF, delay)
        return self

    def _push(self, item, delay: float):
        with self._cond:
            self._seq += 1
            self._queue.append([time.monotonic() + delay, self._seq, item])
            self._queue.sort(key=lambda entry: (entry[0], entry[1]))
            self._cond.notify_all()

    def write(self, data: str) -> None:
        if not self.is_open:
            raise TransportWriteError(f"{self.name}: closed")
        self.writes.append(data)
        if self.echo:
            self._push(data, 0.0)

        reply = self.responses.get(data.strip())
        if isinstance(reply, list):
            reply = reply.pop(0) if reply else None
        if reply is None:
            return
        if isinstance(reply, tuple):
            delay, text = reply
        else:
            delay, text = 0.0, reply
        if text:
            self._push(text, delay)

    def read(self, timeout: float) -> str:
        end_time = time.monotonic() + timeout
        with self._cond:
            while True:
                if not self.is_open:
                    raise TransportEOF(f"{self.name}: closed")
                now = time.monotonic()
                if self._queue and self._queue[0][0] <= now:
                    entry = self._queue[0]
                    item = entry[2]
                    if item is _EOF:
                        raise TransportEOF(f"{self.name}: remote closed")
                    if self.chunk_size and len(item) > self.chunk_size:
                        entry[2] = item[self.chunk_size:]
                        return item[:self.chunk_size]
                    self._queue.pop(0)
                    return item

                if now >= end_time:
                    return ""
                wait = end_time - now
                if self._queue:
                    wait = min(wait, self._queue[0][0] - now)
                self._cond.wait(max(wait, 0.001))

    def _close(self) -> None:
        with self._cond:
            self._cond.notify_all()


class RecordingReporter(ResultReporter):
    """Collects every reported outcome."""

    def __init__(self):
        self.calls: List[Tuple[str, JobOutcome]] = []
        self._lock = threading.Lock()

    def report_result(self, device_id: str, outcome: JobOutcome) -> ReportResponse:
        with self._lock:
            self.calls.append((device_id, outcome))
        return ReportResponse(success=True, status_code=200, message="ok")

    def outcomes_for(self, device_id: str) -> List[JobOutcome]:
        with self._lock:
            return [o for d, o in self.calls if d == device_id]

    def __len__(self):
        with self._lock:
            return len(self.calls)


def wait_until(predicate, timeout: float = 10.0, interval: float = 0.01) -> bool:
    end_time = time.monotonic() + timeout
    while time.monotonic() < end_time:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


SIMPLE_SCRIPT = {
    "name": "simple",
    "steps": [
        {"name": "prompt", "expect": r"(?m)^[\w-]+> $", "timeout": 2},
        {"name": "show", "send": "show config", "expect": r"(?m)^[\w-]+> $", "timeout": 2, "capture": True},
        {"name": "logout", "send": "exit", "wait": False},
    ],
}


@pytest.fixture
def simple_script() -> DeviceScript:
    return DeviceScript.from_dict(SIMPLE_SCRIPT)


@pytest.fixture
def script_library(simple_script) -> ScriptLibrary:
    library = ScriptLibrary(include_bundled=False)
    library.register(simple_script)
    return library


@pytest.fixture
def reporter() -> RecordingReporter:
    return RecordingReporter()


def make_inventory(count: int, task_name: str = "core-switches", script: str = "simple") -> Inventory:
    devices = [
        DeviceRecord(device_id=f"sw{i:02d}", host=f"10.0.0.{i + 1}", script=script, protocol="telnet")
        for i in range(count)
    ]
    task = TaskDefinition(name=task_name, devices=[d.device_id for d in devices])
    return Inventory(devices, [task])


class DeviceFarm:
    """Transport factory for simple-script devices, tracking session concurrency."""

    def __init__(self, reply_delay: float = 0.0, prompt_delay: float = 0.0):
        self.reply_delay = reply_delay
        self.prompt_delay = prompt_delay
        self.active = 0
        self.max_active = 0
        self.opened: List[str] = []
        self._lock = threading.Lock()

    def __call__(self, device: DeviceRecord) -> Transport:
        farm = self

        class _FarmTransport(ScriptedTransport):
            def _close(self):
                super()._close()
                with farm._lock:
                    farm.active -= 1

        transport = _FarmTransport(
            responses={"show config": (self.reply_delay, f"hostname {device.device_id}\n{device.device_id}> ")},
            name=device.device_id,
        )
        transport.feed(f"{device.device_id}> ", delay=self.prompt_delay)
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            self.opened.append(device.device_id)
        return transport
