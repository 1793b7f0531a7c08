"""Pytest configuration for netharness."""
import os
import stat
import sys
from pathlib import Path

import pytest

from netharness.base.config import HarnessConfig, ProcessConfig, ScriptConfig, set_config


def pytest_configure():
    # Test scripts live in tmp_path and are neither root-owned nor setuid.
    os.environ.setdefault("NETHARNESS_REQUIRE_PRIVILEGE", "false")
    set_config(None)


@pytest.fixture
def make_script(tmp_path):
    """Write an executable /bin/sh script and return its path."""

    def _make(name: str, body: str, executable: bool = True) -> str:
        path = tmp_path / name
        path.write_text("#!/bin/sh\n" + body + "\n")
        mode = stat.S_IRUSR | stat.S_IWUSR
        if executable:
            mode |= stat.S_IXUSR
        path.chmod(mode)
        return str(path)

    return _make


@pytest.fixture
def harness_config(tmp_path) -> HarnessConfig:
    return HarnessConfig(
        process=ProcessConfig(kill_grace_seconds=0.2, reap_timeout_seconds=5.0, require_privilege=False),
        default_timeout_seconds=10.0,
        data_dir=tmp_path,
    )


@pytest.fixture
def testbed_config(tmp_path, make_script) -> HarnessConfig:
    """Config whose exec script starts the real helper module in-place."""
    exec_script = make_script("netjail_exec.sh", 'exec "$3" "$4" "$5" "$6" "$1" "$2"')
    helper = make_script("helper.sh", f'exec "{sys.executable}" -m netharness.helper "$@"')
    return HarnessConfig(
        scripts=ScriptConfig(
            netjail_start=make_script("netjail_start.sh", "exit 0"),
            netjail_stop=make_script("netjail_stop.sh", "exit 0"),
            netjail_exec=exec_script,
            helper_binary=helper,
        ),
        process=ProcessConfig(kill_grace_seconds=0.5, reap_timeout_seconds=5.0, require_privilege=False),
        default_timeout_seconds=30.0,
        data_dir=Path(tmp_path),
    )
