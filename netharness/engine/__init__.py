# ============================================================================
# netharness/engine/__init__.py
# Execution engine
# ============================================================================
#
# MODULES IN THIS PACKAGE:
# - **interpreter.py**: Walks the script, owns failure and the watchdog
# - **step.py**: Step / AsyncStep / ProcessStep base classes
# - **async_context.py**: One-shot completion signal
# - **supervisor.py**: Child process spawning and reaping
# - **channels.py**: Peer connections owned by a running step
#
# WORKFLOW:
# Interpreter.run_all() -> step.run() -> wait for finish() -> next step
# On failure: cleanup() in reverse start order -> supervisor.terminate_all()
#
# ============================================================================

from netharness.engine.async_context import AsyncContext
from netharness.engine.channels import Channel, ChannelManager
from netharness.engine.interpreter import END, Interpreter, RunResult, end, run, run_async
from netharness.engine.step import AsyncStep, ExitPolicy, ProcessStep, Step
from netharness.engine.supervisor import ExitStatus, ProcessHandle, ProcessSupervisor

__all__ = [
    "AsyncContext",
    "AsyncStep",
    "Channel",
    "ChannelManager",
    "END",
    "ExitPolicy",
    "ExitStatus",
    "Interpreter",
    "ProcessHandle",
    "ProcessStep",
    "ProcessSupervisor",
    "RunResult",
    "Step",
    "end",
    "run",
    "run_async",
]
