"""
netharness/plugins/barrier.py
Minimal node script: pass both testbed barriers and report success.

Useful to check a netjail setup end to end, and as a template for real
plugins, which put their test steps between the barriers.
"""

from __future__ import annotations

from typing import Any, List

from netharness.cmds.control import BlockUntilExternalTrigger
from netharness.cmds.local import (
    ALL_LOCAL_TESTS_PREPARED_LABEL,
    ALL_PEERS_STARTED_LABEL,
    LocalTestFinished,
    LocalTestPrepared,
    SendPeerReady,
)
from netharness.engine.interpreter import end


def build(ctx) -> List[Any]:
    return [
        SendPeerReady("send-peer-ready", ctx.write),
        BlockUntilExternalTrigger(ALL_PEERS_STARTED_LABEL),
        LocalTestPrepared("local-test-prepared", ctx.write),
        BlockUntilExternalTrigger(ALL_LOCAL_TESTS_PREPARED_LABEL),
        LocalTestFinished("local-test-finished", ctx.write),
        end(),
    ]


def build_failing(ctx) -> List[Any]:
    """Same barriers, but the node reports a failed test."""
    return [
        SendPeerReady("send-peer-ready", ctx.write),
        BlockUntilExternalTrigger(ALL_PEERS_STARTED_LABEL),
        LocalTestPrepared("local-test-prepared", ctx.write),
        BlockUntilExternalTrigger(ALL_LOCAL_TESTS_PREPARED_LABEL),
        LocalTestFinished("local-test-finished", ctx.write, result=1),
        end(),
    ]
