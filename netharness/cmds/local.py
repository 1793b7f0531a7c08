"""
netharness/cmds/local.py
Steps that run inside a node helper and report to the master harness.

Each step writes one protocol message through the helper's write callback
and completes right away. Together with BlockUntilExternalTrigger steps
labelled ALL_PEERS_STARTED_LABEL / ALL_LOCAL_TESTS_PREPARED_LABEL they form
the barriers of a distributed test:

    SendPeerReady -> wait all-peers-started
    LocalTestPrepared -> wait all-local-tests-prepared
    ... test ...
    LocalTestFinished
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable

from netharness.engine.step import Step
from netharness.net import messages
from netharness.net.messages import Message, MessageType

if TYPE_CHECKING:
    from netharness.engine.interpreter import Interpreter

logger = logging.getLogger(__name__)

ALL_PEERS_STARTED_LABEL = "all-peers-started"
ALL_LOCAL_TESTS_PREPARED_LABEL = "all-local-tests-prepared"

WriteCallback = Callable[[Message], None]


class _Report(Step):
    def __init__(self, label: str, write: WriteCallback):
        super().__init__(label)
        self.write = write
        self.sent = False

    def message(self) -> Message:
        raise NotImplementedError

    def run(self, interpreter: "Interpreter") -> None:
        message = self.message()
        self.write(message)
        self.sent = True
        logger.debug(f"[{self.label}] reported {message!r}")


class SendPeerReady(_Report):
    def message(self) -> Message:
        return messages.signal(MessageType.PEER_STARTED)


class LocalTestPrepared(_Report):
    def message(self) -> Message:
        return messages.signal(MessageType.LOCAL_TEST_PREPARED)


class LocalTestFinished(_Report):
    """Report the local test result; 0 means success."""

    def __init__(self, label: str, write: WriteCallback, result: int = 0):
        super().__init__(label, write)
        self.result = result

    def message(self) -> Message:
        return messages.local_finished(self.result)
