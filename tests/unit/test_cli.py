"""Tests for the command line entry point."""
import json

import pytest

from netharness import cli


@pytest.fixture(autouse=True)
def no_logging_setup(monkeypatch):
    monkeypatch.setattr(cli, "setup_logging", lambda config=None: None)


def test_run_script_file(tmp_path, capsys):
    script = tmp_path / "nap.py"
    script.write_text(
        "from netharness import end\n"
        "from netharness.cmds.control import Sleep\n"
        "SCRIPT = [Sleep('nap', 0.01), end()]\n"
    )
    assert cli.main(["run", str(script), "--timeout", "5"]) == 0
    assert "PASS" in capsys.readouterr().out


def test_run_build_script_failure(tmp_path, capsys):
    script = tmp_path / "stop.py"
    script.write_text(
        "from netharness import end\n"
        "from netharness.cmds.peers import StopPeer\n"
        "def build_script():\n"
        "    return [StopPeer('stop-peer', 'start-peer'), end()]\n"
    )
    assert cli.main(["run", str(script), "--timeout", "5"]) == 1
    out = capsys.readouterr().out
    assert "FAIL" in out
    assert "UnknownLabel" in out


def test_script_without_steps(tmp_path):
    script = tmp_path / "empty.py"
    script.write_text("x = 1\n")
    with pytest.raises(AttributeError):
        cli.load_script(str(script))


def test_topology_command(tmp_path, capsys):
    path = tmp_path / "topo.json"
    path.write_text(json.dumps({"plugin": "p:build", "namespaces_n": 1, "nodes_m": 2, "nodes_x": 1}))
    assert cli.main(["topology", str(path)]) == 0
    out = capsys.readouterr().out
    assert "node   3" in out
    assert "subnet 1" in out


def test_invalid_topology(tmp_path, capsys):
    path = tmp_path / "topo.json"
    path.write_text(json.dumps({"namespaces_n": 1}))
    assert cli.main(["topology", str(path)]) == 1
    assert "Invalid topology" in capsys.readouterr().err


def test_no_command(capsys):
    assert cli.main([]) == 2
