"""
Device Scripts
==============

A device script is the ordered expect/send dialogue that logs into one kind of
device and prints its configuration. Vendor differences are data: scripts are
plain dictionaries, usually loaded from YAML files, turned into immutable
ExpectStep tuples validated once at load time.

Features:
- Immutable steps with compiled patterns and per-step timeout policies
- Send text as Jinja2 templates or Python callables
- Optional steps guarded by ``when`` conditions
- Failure patterns mapped to failure kinds, per step or script-wide
- Credential, secret and raw-send step flags
- Script library with bundled vendor scripts and user overrides
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Pattern, Tuple, Union

import yaml

from netbackup.error_handling import FailureKind
from netbackup.script_templates import TemplateProcessor

logger = logging.getLogger(__name__)

BUNDLED_SCRIPTS_DIR = Path(__file__).parent / "device_scripts"

SendText = Union[str, Callable[[Dict[str, Any]], str], None]


class DeviceScriptError(ValueError):
    """Raised when a script definition is invalid."""


class TimeoutAction(Enum):
    FAIL = "fail"
    RETRY = "retry"
    SKIP = "skip"


@dataclass(frozen=True)
class TimeoutPolicy:
    """What a step does when its pattern does not arrive in time."""
    action: TimeoutAction = TimeoutAction.FAIL
    retries: int = 0

    @classmethod
    def parse(cls, value: Union[str, "TimeoutPolicy", None]) -> "TimeoutPolicy":
        """Parse ``fail``, ``skip``, ``retry`` or ``retry-N``."""
        if value is None:
            return cls()
        if isinstance(value, TimeoutPolicy):
            return value

        text = str(value).strip().lower()
        if text == "fail":
            return cls(TimeoutAction.FAIL)
        if text == "skip":
            return cls(TimeoutAction.SKIP)
        m = re.fullmatch(r"retry(?:-(\d+))?", text)
        if m:
            retries = int(m.group(1)) if m.group(1) else 1
            if retries < 1:
                raise DeviceScriptError(f"Invalid timeout policy '{value}'")
            return cls(TimeoutAction.RETRY, retries)
        raise DeviceScriptError(f"Invalid timeout policy '{value}'")

    def __str__(self):
        if self.action == TimeoutAction.RETRY:
            return f"retry-{self.retries}"
        return self.action.value


@dataclass(frozen=True)
class FailPattern:
    """Output that ends the session with the given failure kind."""
    pattern: Pattern
    kind: FailureKind = FailureKind.SCRIPT_ERROR
    message: str = ""

    def describe(self) -> str:
        return self.message or f"device output matched '{self.pattern.pattern}'"


@dataclass(frozen=True)
class ExpectStep:
    """One send/expect exchange of a device script."""
    name: str
    pattern: Optional[Pattern] = None
    send: SendText = None
    when: Optional[str] = None
    timeout: Optional[float] = None
    on_timeout: TimeoutPolicy = field(default_factory=TimeoutPolicy)
    capture: bool = False
    credential: bool = False
    secret: bool = False
    raw: bool = False
    wait: bool = True
    fail_on: Tuple[FailPattern, ...] = ()

    def describe_send(self) -> str:
        """Send text safe for logs."""
        if self.send is None:
            return "<nothing>"
        if self.secret:
            return "<secret>"
        if callable(self.send):
            return f"<{getattr(self.send, '__name__', 'callable')}>"
        return repr(self.send)


@dataclass(frozen=True)
class DeviceScript:
    """Ordered dialogue plan for one device type."""
    name: str
    steps: Tuple[ExpectStep, ...]
    description: str = ""
    line_ending: str = "\n"
    strip_echo: bool = True
    default_timeout: Optional[float] = None
    fail_on: Tuple[FailPattern, ...] = ()

    @property
    def capture_steps(self) -> List[ExpectStep]:
        return [s for s in self.steps if s.capture]

    @classmethod
    def from_dict(cls, data: Dict[str, Any],
                  processor: Optional[TemplateProcessor] = None) -> "DeviceScript":
        """
        Build a script from plain data.

        Example:
            name: cisco_ios
            steps:
              - name: username
                expect: "[Uu]sername:\\s*$"
              - name: login
                send: "{{ username }}"
                expect: "[Pp]assword:\\s*$"
                credential: true
        """
        if not isinstance(data, dict):
            raise DeviceScriptError("Script definition must be a mapping")

        name = data.get("name")
        if not name:
            raise DeviceScriptError("Script definition has no name")

        processor = processor or TemplateProcessor()
        raw_steps = data.get("steps") or []
        if not raw_steps:
            raise DeviceScriptError(f"Script {name}: no steps defined")

        steps = []
        seen = set()
        for index, raw_step in enumerate(raw_steps):
            step = _parse_step(name, index, raw_step, processor)
            if step.name in seen:
                raise DeviceScriptError(f"Script {name}: duplicate step name '{step.name}'")
            seen.add(step.name)
            steps.append(step)

        default_timeout = data.get("default_timeout")
        return cls(
            name=str(name),
            steps=tuple(steps),
            description=data.get("description", ""),
            line_ending=data.get("line_ending", "\n"),
            strip_echo=bool(data.get("strip_echo", True)),
            default_timeout=float(default_timeout) if default_timeout is not None else None,
            fail_on=_parse_fail_patterns(name, data.get("fail_on")),
        )

    @classmethod
    def load(cls, path: Union[str, Path],
             processor: Optional[TemplateProcessor] = None) -> "DeviceScript":
        """Load a script from a YAML file."""
        path = Path(path)
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
        try:
            return cls.from_dict(data, processor)
        except DeviceScriptError as e:
            raise DeviceScriptError(f"{path}: {e}") from e


def _compile(script_name: str, pattern: Any) -> Optional[Pattern]:
    if pattern is None or pattern == "":
        return None
    if hasattr(pattern, "search"):
        return pattern
    try:
        return re.compile(str(pattern))
    except re.error as e:
        raise DeviceScriptError(f"Script {script_name}: invalid pattern '{pattern}': {e}") from e


def _parse_fail_patterns(script_name: str, entries: Any) -> Tuple[FailPattern, ...]:
    patterns = []
    for entry in entries or []:
        if isinstance(entry, FailPattern):
            patterns.append(entry)
            continue
        if isinstance(entry, str):
            entry = {"pattern": entry}
        kind_value = entry.get("kind", FailureKind.SCRIPT_ERROR.value)
        try:
            kind = kind_value if isinstance(kind_value, FailureKind) else FailureKind(kind_value)
        except ValueError as e:
            raise DeviceScriptError(f"Script {script_name}: unknown failure kind '{kind_value}'") from e
        compiled = _compile(script_name, entry.get("pattern"))
        if compiled is None:
            raise DeviceScriptError(f"Script {script_name}: fail_on entry without pattern")
        patterns.append(FailPattern(compiled, kind, entry.get("message", "")))
    return tuple(patterns)


def _parse_step(script_name: str, index: int, raw_step: Any,
                processor: TemplateProcessor) -> ExpectStep:
    if isinstance(raw_step, ExpectStep):
        return raw_step
    if not isinstance(raw_step, dict):
        raise DeviceScriptError(f"Script {script_name}: step {index} must be a mapping")

    step_name = str(raw_step.get("name") or f"step{index}")
    send = raw_step.get("send")
    if send is not None and not callable(send):
        send = str(send)
        is_valid, errors = processor.validate_template_syntax(send)
        if not is_valid:
            raise DeviceScriptError(f"Script {script_name}, step {step_name}: {'; '.join(errors)}")

    when = raw_step.get("when")
    if when is not None:
        when = str(when)
        is_valid, errors = processor.validate_expression_syntax(when)
        if not is_valid:
            raise DeviceScriptError(f"Script {script_name}, step {step_name}: {'; '.join(errors)}")

    timeout = raw_step.get("timeout")
    if timeout is not None:
        timeout = float(timeout)
        if timeout <= 0:
            raise DeviceScriptError(f"Script {script_name}, step {step_name}: timeout must be positive")

    try:
        on_timeout = TimeoutPolicy.parse(raw_step.get("on_timeout"))
    except DeviceScriptError as e:
        raise DeviceScriptError(f"Script {script_name}, step {step_name}: {e}") from e

    return ExpectStep(
        name=step_name,
        pattern=_compile(script_name, raw_step.get("expect")),
        send=send,
        when=when,
        timeout=timeout,
        on_timeout=on_timeout,
        capture=bool(raw_step.get("capture", False)),
        credential=bool(raw_step.get("credential", False)),
        secret=bool(raw_step.get("secret", False)),
        raw=bool(raw_step.get("raw", False)),
        wait=bool(raw_step.get("wait", True)),
        fail_on=_parse_fail_patterns(script_name, raw_step.get("fail_on")),
    )


class ScriptLibrary:
    """Device scripts by name: bundled vendor scripts plus user overrides."""

    def __init__(self, user_dir: Optional[Union[str, Path]] = None, include_bundled: bool = True):
        self.processor = TemplateProcessor()
        self._scripts: Dict[str, DeviceScript] = {}

        if include_bundled:
            self.load_directory(BUNDLED_SCRIPTS_DIR)
        if user_dir:
            self.load_directory(user_dir)

    def load_directory(self, directory: Union[str, Path]) -> int:
        """Load every ``*.yaml`` / ``*.yml`` script in a directory."""
        directory = Path(directory)
        if not directory.is_dir():
            logger.warning(f"Script directory {directory} does not exist")
            return 0

        count = 0
        for path in sorted(list(directory.glob("*.yaml")) + list(directory.glob("*.yml"))):
            script = DeviceScript.load(path, self.processor)
            if script.name in self._scripts:
                logger.info(f"Script {script.name} overridden by {path}")
            self._scripts[script.name] = script
            count += 1

        logger.debug(f"Loaded {count} device scripts from {directory}")
        return count

    def register(self, script: DeviceScript):
        self._scripts[script.name] = script

    def get(self, name: str) -> Optional[DeviceScript]:
        return self._scripts.get(name)

    def names(self) -> List[str]:
        return sorted(self._scripts)

    def __contains__(self, name: str) -> bool:
        return name in self._scripts

    def __len__(self) -> int:
        return len(self._scripts)
