# ============================================================================
# netharness/cmds/__init__.py
# Bundled steps
# ============================================================================
#
# MODULES IN THIS PACKAGE:
# - **control.py**: Batch, Finish, make_unblocking, triggers, Sleep
# - **netjail.py**: Namespace setup and teardown scripts
# - **testbed.py**: Per-node helpers and the testbed barriers
# - **peers.py**: Start/stop a peer binary
# - **connect.py**: TCP channels and TEST traffic
# - **local.py**: Reports sent from inside a node helper
#
# ============================================================================

from netharness.cmds.connect import ConnectPeer, ConnectState, RecvMessages, SendMessages
from netharness.cmds.control import Batch, BlockUntilExternalTrigger, Finish, Sleep, make_unblocking
from netharness.cmds.local import LocalTestFinished, LocalTestPrepared, SendPeerReady
from netharness.cmds.netjail import NetjailStart, NetjailStop
from netharness.cmds.peers import PeerState, StartPeer, StopPeer
from netharness.cmds.testbed import StartTestbed, StopTestbed

__all__ = [
    "Batch",
    "BlockUntilExternalTrigger",
    "ConnectPeer",
    "ConnectState",
    "Finish",
    "LocalTestFinished",
    "LocalTestPrepared",
    "NetjailStart",
    "NetjailStop",
    "PeerState",
    "RecvMessages",
    "SendMessages",
    "SendPeerReady",
    "Sleep",
    "StartPeer",
    "StartTestbed",
    "StopPeer",
    "StopTestbed",
    "make_unblocking",
]
