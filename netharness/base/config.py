# ============================================================================
# netharness/base/config.py
# Harness Configuration Management
# ============================================================================
#
# PURPOSE:
# All tunables for a test run live here: where the namespace scripts and the
# per-node helper are installed, how long to wait for children to die, and
# how logging is set up.
#
# KEY CONCEPTS:
# 1. Frozen dataclasses for each section
# 2. Environment variables (NETHARNESS_*) override the defaults
# 3. A process-wide default via get_config(); the Interpreter also accepts an
#    explicit config so several runs can coexist in one process
#
# ============================================================================

from __future__ import annotations

import os
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


# ============================================================================
# Script Locations
# ============================================================================
# The namespace scripts need root (or a setuid wrapper); the exec script
# starts one helper inside a node's namespace.

@dataclass(frozen=True)
class ScriptConfig:
    # Creates the namespaces: <script> <local_m> <global_n>
    netjail_start: str = "./../testing/netjail_start.sh"

    # Tears the namespaces down again, same arguments
    netjail_stop: str = "./../testing/netjail_stop.sh"

    # Runs a helper inside one node:
    # <script> <m> <n> <helper_binary> <global_n> <local_m> <node_id>
    netjail_exec: str = "./../testing/netjail_exec.sh"

    # The per-node helper binary speaking the framed protocol on stdin/stdout
    helper_binary: str = "netharness-helper"


# ============================================================================
# Child Process Handling
# ============================================================================

@dataclass(frozen=True)
class ProcessConfig:
    # Seconds between SIGTERM and SIGKILL when terminating a child
    kill_grace_seconds: float = 0.2

    # Upper bound for waiting on a killed child to be reaped
    reap_timeout_seconds: float = 5.0

    # Namespace scripts must be privileged (root, or root-owned setuid).
    # Turn off to run the scripts unprivileged in a container or in tests.
    require_privilege: bool = True


# ============================================================================
# Logging Configuration
# ============================================================================

@dataclass(frozen=True)
class LogConfig:
    level: str = "INFO"
    format: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

    # Off by default: test runs usually log to the console of the CI job
    file_enabled: bool = False
    file_name: str = "netharness.log"
    max_file_size_mb: int = 10
    backup_count: int = 5


# ============================================================================
# Master Configuration Container
# ============================================================================

@dataclass(frozen=True)
class HarnessConfig:
    scripts: ScriptConfig = field(default_factory=ScriptConfig)
    process: ProcessConfig = field(default_factory=ProcessConfig)
    log: LogConfig = field(default_factory=LogConfig)

    # Overall deadline for a script when the caller does not pass one
    default_timeout_seconds: float = 300.0

    debug: bool = False

    # Where the optional log file goes
    data_dir: Path = field(default_factory=lambda: Path.home() / ".netharness")

    @classmethod
    def from_env(cls) -> "HarnessConfig":
        defaults = ScriptConfig()
        scripts = ScriptConfig(
            netjail_start=os.getenv("NETHARNESS_NETJAIL_START", defaults.netjail_start),
            netjail_stop=os.getenv("NETHARNESS_NETJAIL_STOP", defaults.netjail_stop),
            netjail_exec=os.getenv("NETHARNESS_NETJAIL_EXEC", defaults.netjail_exec),
            helper_binary=os.getenv("NETHARNESS_HELPER_BINARY", defaults.helper_binary),
        )

        process = ProcessConfig(
            kill_grace_seconds=float(os.getenv("NETHARNESS_KILL_GRACE", "0.2")),
            reap_timeout_seconds=float(os.getenv("NETHARNESS_REAP_TIMEOUT", "5")),
            require_privilege=_env_bool("NETHARNESS_REQUIRE_PRIVILEGE", "true"),
        )

        log = LogConfig(
            level=os.getenv("NETHARNESS_LOG_LEVEL", "INFO"),
            file_enabled=_env_bool("NETHARNESS_LOG_FILE", "false"),
        )

        return cls(
            scripts=scripts,
            process=process,
            log=log,
            default_timeout_seconds=float(os.getenv("NETHARNESS_TIMEOUT", "300")),
            debug=_env_bool("NETHARNESS_DEBUG", "false"),
            data_dir=Path(os.getenv("NETHARNESS_DATA_DIR", str(Path.home() / ".netharness"))),
        )


# ============================================================================
# Global Configuration Singleton
# ============================================================================

_config: Optional[HarnessConfig] = None


def get_config() -> HarnessConfig:
    """
    Get the process-wide default configuration, loading it from the
    environment on first use.
    """
    global _config
    if _config is None:
        _config = HarnessConfig.from_env()
    return _config


def set_config(config: Optional[HarnessConfig]) -> None:
    """Replace the default configuration (None forces a reload from env)."""
    global _config
    _config = config


def setup_logging(config: Optional[HarnessConfig] = None) -> None:
    """
    Configure Python's logging from the LogConfig section.
    Call once at program start; the CLI does this for you.
    """
    cfg = config or get_config()

    handlers: List[logging.Handler] = [logging.StreamHandler()]

    if cfg.log.file_enabled:
        from logging.handlers import RotatingFileHandler
        cfg.data_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            cfg.data_dir / cfg.log.file_name,
            maxBytes=cfg.log.max_file_size_mb * 1024 * 1024,
            backupCount=cfg.log.backup_count,
        )
        handlers.append(file_handler)

    level = "DEBUG" if cfg.debug else cfg.log.level
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format=cfg.log.format,
        handlers=handlers,
        force=True,
    )
