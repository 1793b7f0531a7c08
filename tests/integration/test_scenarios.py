"""
End-to-end scripts against real child processes.

Namespace scripts are stand-in shell scripts; the testbed runs the real
helper module through a pass-through exec script.
"""
import asyncio
import os

import pytest

from netharness.base.config import ProcessConfig
from netharness.base.exceptions import ErrorKind, SpawnFailure
from netharness.cmds.control import Sleep
from netharness.cmds.netjail import NetjailStart, NetjailStop
from netharness.cmds.peers import StartPeer, StopPeer
from netharness.cmds.testbed import StartTestbed, StopTestbed, make_node_id, script_number
from netharness.engine.interpreter import END, Interpreter
from netharness.net.topology import NetjailTopology

BARRIER = "netharness.plugins.barrier:build"


class TestTestbed:
    @pytest.mark.asyncio
    async def test_scenario_a_full_testbed(self, testbed_config):
        topology = NetjailTopology.simple(BARRIER, local_m=2, global_n=1)
        start = StartTestbed("start-testbed", topology)
        steps = [
            NetjailStart("netjail-start", "2", "1"),
            start,
            StopTestbed("stop-testbed", "start-testbed"),
            NetjailStop("netjail-stop", "2", "1"),
            END,
        ]
        interpreter = Interpreter(steps, config=testbed_config)
        result = await interpreter.run_all()

        assert result.ok, result.error
        assert result.exit_code == 0
        assert start.finished_nodes == {1, 2}
        assert all(not handle.running for handle in start.handles.values())
        assert interpreter.supervisor.live_handles() == []

    @pytest.mark.asyncio
    async def test_failed_node_fails_the_run(self, testbed_config):
        topology = NetjailTopology.simple("netharness.plugins.barrier:build_failing", local_m=1, global_n=1)
        steps = [StartTestbed("start-testbed", topology), END]
        interpreter = Interpreter(steps, config=testbed_config)
        result = await interpreter.run_all()

        assert result.error.kind is ErrorKind.STEP_FAILED
        assert result.failed_label == "start-testbed"
        assert interpreter.supervisor.live_handles() == []

    def test_node_ids(self):
        assert script_number(m=3, n=0, local_m=2, known=3) == 2
        assert script_number(m=2, n=2, local_m=2, known=1) == 1 + 2 + 2 + 1
        assert make_node_id(1, 1, 2, 0, pid=0x1234) == "001234-00000001"


class TestPrivilege:
    @pytest.mark.asyncio
    async def test_scenario_b_unexecutable_netjail_script(self, harness_config, make_script):
        script = make_script("netjail_start.sh", "exit 0", executable=False)
        if os.access(script, os.X_OK):
            pytest.skip("running as a user that can execute any file")
        later = make_script("later.sh", "exit 0")
        stop = NetjailStop("netjail-stop", "2", "1", script=later)
        steps = [NetjailStart("netjail-start", "2", "1", script=script), stop, END]
        interpreter = Interpreter(steps, config=harness_config)
        result = await interpreter.run_all()

        assert result.error.kind is ErrorKind.SPAWN_FAILED
        assert result.error.reason is SpawnFailure.INSUFFICIENT_PRIVILEGE
        assert result.failed_label == "netjail-start"
        assert not stop.started
        assert interpreter.supervisor.live_handles() == []

    @pytest.mark.asyncio
    async def test_scenario_b_unprivileged_netjail_script(self, harness_config, make_script):
        if os.geteuid() == 0:
            pytest.skip("root satisfies the privilege check")
        config = type(harness_config)(
            process=ProcessConfig(require_privilege=True),
            default_timeout_seconds=5,
            data_dir=harness_config.data_dir,
        )
        stop = NetjailStop("netjail-stop", "2", "1", script=make_script("stop.sh", "exit 0"))
        steps = [NetjailStart("netjail-start", "2", "1", script=make_script("start.sh", "exit 0")), stop, END]
        result = await Interpreter(steps, config=config).run_all()

        assert result.error.kind is ErrorKind.SPAWN_FAILED
        assert not stop.started

    @pytest.mark.asyncio
    async def test_missing_netjail_script(self, harness_config, tmp_path):
        steps = [NetjailStart("netjail-start", "2", "1", script=str(tmp_path / "missing.sh")), END]
        result = await Interpreter(steps, config=harness_config).run_all()
        assert result.error.reason is SpawnFailure.NOT_FOUND


class TestNetjailExit:
    @pytest.mark.asyncio
    async def test_failing_script_escalates(self, harness_config, make_script):
        cleaned = []

        class Marker(Sleep):
            def cleanup(self):
                super().cleanup()
                cleaned.append(self.label)

        steps = [
            Marker("before", 0),
            NetjailStart("netjail-start", "2", "1", script=make_script("start.sh", "exit 2")),
            Marker("never", 0),
            END,
        ]
        result = await Interpreter(steps, config=harness_config).run_all()

        assert result.error.kind is ErrorKind.PROCESS_EXIT_FAILURE
        assert result.error.returncode == 2
        assert result.failed_label == "netjail-start"
        assert cleaned == ["before"]


class TestPeers:
    @pytest.mark.asyncio
    async def test_scenario_c_stop_peer_borrows_start_peer_state(self, harness_config, make_script):
        start = StartPeer("start-peer", make_script("peer.sh", "exec sleep 30"))
        stop = StopPeer("stop-peer", "start-peer")
        interpreter = Interpreter([start, stop, END], config=harness_config)
        result = await interpreter.run_all()

        assert result.ok, result.error
        assert stop.state is start.state
        assert stop.state.handle is start.state.handle
        assert start.traits("start-peer-state") is start.state
        assert stop.stopped
        assert stop.returncode is not None and stop.returncode < 0
        assert not start.state.running
        # the borrowed state keeps only what StartPeer put there
        assert set(vars(start.state)) == {"binary", "args", "handle"}

    @pytest.mark.asyncio
    async def test_scenario_c_without_start_peer(self, harness_config):
        steps = [StopPeer("stop-peer", "start-peer"), END]
        result = await Interpreter(steps, config=harness_config).run_all()

        assert result.error.kind is ErrorKind.UNKNOWN_LABEL
        assert result.failed_label == "stop-peer"

    @pytest.mark.asyncio
    async def test_timeout_reaps_running_peer(self, harness_config, make_script):
        start = StartPeer("start-peer", make_script("peer.sh", "exec sleep 30"))
        steps = [start, Sleep("wait-forever", 60), END]
        interpreter = Interpreter(steps, timeout=0.3, config=harness_config)
        result = await interpreter.run_all()

        assert result.error.kind is ErrorKind.TIMEOUT
        assert result.failed_label == "wait-forever"
        assert not start.state.handle.running
        assert interpreter.supervisor.live_handles() == []

    @pytest.mark.asyncio
    async def test_crashing_peer_fails_later_step(self, harness_config, make_script):
        start = StartPeer("start-peer", make_script("peer.sh", "sleep 0.1; exit 4"))
        steps = [start, Sleep("wait", 5), END]
        result = await Interpreter(steps, config=harness_config).run_all()

        assert result.error.kind is ErrorKind.PROCESS_EXIT_FAILURE
        assert result.failed_label == "start-peer"

    @pytest.mark.asyncio
    async def test_broken_exit_handler_fails_at_its_step(self, harness_config, make_script):
        class BrokenPeer(StartPeer):
            def on_process_exit(self, handle, status, returncode):
                raise KeyError("exit bookkeeping")

        start = BrokenPeer("start-peer", make_script("peer.sh", "exit 0"))
        interpreter = Interpreter([start, Sleep("wait", 30), END], timeout=10, config=harness_config)
        began = asyncio.get_running_loop().time()
        result = await interpreter.run_all()

        assert result.error.kind is ErrorKind.STEP_FAILED
        assert result.failed_label == "start-peer"
        assert isinstance(result.error.__cause__, KeyError)
        assert asyncio.get_running_loop().time() - began < 5
