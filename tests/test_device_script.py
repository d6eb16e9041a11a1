"""
Tests for device script definitions and the script library.
"""

import dataclasses

import pytest

from netbackup.device_script import (
    DeviceScript, DeviceScriptError, ScriptLibrary, TimeoutAction, TimeoutPolicy,
)
from netbackup.error_handling import FailureKind


class TestTimeoutPolicy:
    """Test timeout policy parsing."""

    @pytest.mark.parametrize("value,action,retries", [
        (None, TimeoutAction.FAIL, 0),
        ("fail", TimeoutAction.FAIL, 0),
        ("skip", TimeoutAction.SKIP, 0),
        ("retry", TimeoutAction.RETRY, 1),
        ("retry-3", TimeoutAction.RETRY, 3),
        ("RETRY-2", TimeoutAction.RETRY, 2),
    ])
    def test_parse(self, value, action, retries):
        policy = TimeoutPolicy.parse(value)
        assert policy.action == action
        assert policy.retries == retries

    @pytest.mark.parametrize("value", ["retry-0", "retry-x", "ignore", "retry3"])
    def test_invalid(self, value):
        with pytest.raises(DeviceScriptError):
            TimeoutPolicy.parse(value)

    def test_str(self):
        assert str(TimeoutPolicy.parse("retry-2")) == "retry-2"
        assert str(TimeoutPolicy.parse("skip")) == "skip"


class TestFromDict:
    """Test building scripts from plain data."""

    def test_steps_compiled(self):
        script = DeviceScript.from_dict({
            "name": "demo",
            "line_ending": "\r\n",
            "fail_on": ["% Invalid", {"pattern": "denied", "kind": "authentication_failed"}],
            "steps": [
                {"name": "prompt", "expect": "#", "timeout": 5, "on_timeout": "retry-2"},
                {"name": "show", "send": "show run", "expect": "#", "capture": True},
                {"expect": ">"},
            ],
        })

        assert script.line_ending == "\r\n"
        assert [s.name for s in script.steps] == ["prompt", "show", "step2"]
        assert script.steps[0].pattern.pattern == "#"
        assert script.steps[0].on_timeout == TimeoutPolicy(TimeoutAction.RETRY, 2)
        assert script.capture_steps == [script.steps[1]]
        assert script.fail_on[0].kind == FailureKind.SCRIPT_ERROR
        assert script.fail_on[1].kind == FailureKind.AUTHENTICATION_FAILED

    def test_steps_immutable(self):
        script = DeviceScript.from_dict({"name": "demo", "steps": [{"name": "a", "expect": "#"}]})

        with pytest.raises(dataclasses.FrozenInstanceError):
            script.steps[0].send = "reload"

    def test_describe_send_hides_secrets(self):
        script = DeviceScript.from_dict({"name": "demo", "steps": [
            {"name": "login", "send": "{{ password }}", "secret": True, "expect": "#"},
            {"name": "show", "send": "show run", "expect": "#"},
            {"name": "wait", "expect": "#"},
        ]})

        assert script.steps[0].describe_send() == "<secret>"
        assert script.steps[1].describe_send() == "'show run'"
        assert script.steps[2].describe_send() == "<nothing>"

    @pytest.mark.parametrize("data,message", [
        ({"steps": [{"expect": "#"}]}, "no name"),
        ({"name": "demo", "steps": []}, "no steps"),
        ({"name": "demo", "steps": [{"name": "a"}, {"name": "a"}]}, "duplicate step name"),
        ({"name": "demo", "steps": [{"name": "a", "expect": "[unclosed"}]}, "invalid pattern"),
        ({"name": "demo", "steps": [{"name": "a", "send": "{{ user"}]}, "syntax error"),
        ({"name": "demo", "steps": [{"name": "a", "when": "protocol =="}]}, "expression error"),
        ({"name": "demo", "steps": [{"name": "a", "timeout": 0}]}, "timeout must be positive"),
        ({"name": "demo", "steps": [{"name": "a", "on_timeout": "sometimes"}]}, "Invalid timeout policy"),
        ({"name": "demo", "fail_on": [{"pattern": "x", "kind": "bogus"}], "steps": [{"name": "a"}]},
         "unknown failure kind"),
        ({"name": "demo", "steps": ["show run"]}, "must be a mapping"),
    ])
    def test_invalid_definitions(self, data, message):
        with pytest.raises(DeviceScriptError, match=message):
            DeviceScript.from_dict(data)

    def test_load_yaml(self, tmp_path):
        path = tmp_path / "edge.yaml"
        path.write_text(
            "name: edge\n"
            "steps:\n"
            "  - name: show\n"
            "    send: show config\n"
            "    expect: '#\\s*$'\n"
            "    capture: true\n"
        )

        script = DeviceScript.load(path)

        assert script.name == "edge"
        assert script.steps[0].capture

    def test_load_reports_file(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("name: broken\nsteps: []\n")

        with pytest.raises(DeviceScriptError, match="broken.yaml"):
            DeviceScript.load(path)


class TestScriptLibrary:
    """Test bundled and user scripts."""

    def test_bundled_scripts(self):
        library = ScriptLibrary()

        assert {"cisco_ios", "juniper_junos", "mikrotik_routeros"} <= set(library.names())
        for name in ("cisco_ios", "juniper_junos", "mikrotik_routeros"):
            assert library.get(name).capture_steps, name

    def test_mikrotik_line_ending(self):
        assert ScriptLibrary().get("mikrotik_routeros").line_ending == "\r\n"

    def test_user_directory_overrides(self, tmp_path):
        (tmp_path / "cisco_ios.yml").write_text(
            "name: cisco_ios\n"
            "description: site override\n"
            "steps:\n"
            "  - name: show\n"
            "    send: show startup-config\n"
            "    expect: '#'\n"
            "    capture: true\n"
        )

        library = ScriptLibrary(user_dir=tmp_path)

        assert library.get("cisco_ios").description == "site override"
        assert "juniper_junos" in library

    def test_without_bundled(self, simple_script):
        library = ScriptLibrary(include_bundled=False)
        assert len(library) == 0

        library.register(simple_script)

        assert library.names() == ["simple"]
        assert library.get("missing") is None

    def test_missing_directory(self, tmp_path):
        library = ScriptLibrary(include_bundled=False)
        assert library.load_directory(tmp_path / "nope") == 0
