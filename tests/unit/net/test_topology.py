"""Unit tests for the netjail topology model."""
import json

import pytest
from pydantic import ValidationError

from netharness.net.topology import NetjailTopology, NodeConnection, get_address


@pytest.fixture
def topology():
    return NetjailTopology.model_validate(
        {
            "plugin": "netharness.plugins.barrier:build",
            "namespaces_n": 2,
            "nodes_m": 3,
            "nodes_x": 2,
            "additional_connects": 1,
            "nodes": [
                {
                    "namespace_n": 0,
                    "node_n": 1,
                    "plugin": "custom.plugin:build",
                    "connections": [{"namespace_n": 1, "node_n": 1}],
                },
                {
                    "namespace_n": 2,
                    "node_n": 2,
                    "additional_connects": 4,
                    "connections": [
                        {"namespace_n": 2, "node_n": 3, "address_prefixes": ["tcp", "udp"]},
                        {"namespace_n": 0, "node_n": 2},
                        {"namespace_n": 1, "node_n": 1},
                        {"namespace_n": 1, "node_n": 2},
                    ],
                },
            ],
        }
    )


class TestNumbering:
    def test_known_nodes_keep_their_number(self, topology):
        assert topology.node_number(0, 1) == 1
        assert topology.node_number(0, 2) == 2

    def test_subnet_nodes(self, topology):
        # (n - 1) * nodes_m + m + nodes_x
        assert topology.node_number(1, 1) == 3
        assert topology.node_number(2, 2) == 7
        assert topology.total == 8

    def test_position_inverts_numbering(self, topology):
        positions = list(topology.iter_positions())
        assert positions[:3] == [(0, 1), (0, 2), (1, 1)]
        for number, (n, m) in enumerate(positions, start=1):
            assert topology.node_number(n, m) == number
            assert topology.position(number) == (n, m)

    def test_position_out_of_range(self, topology):
        with pytest.raises(ValueError):
            topology.position(9)


class TestLookups:
    def test_plugin_override(self, topology):
        assert topology.plugin_for(1) == "custom.plugin:build"
        assert topology.plugin_for(2) == "netharness.plugins.barrier:build"

    def test_unlisted_node_has_no_connections(self, topology):
        node = topology.get_node(4)
        assert (node.namespace_n, node.node_n) == (1, 2)
        assert topology.get_connections(4) == []

    def test_additional_connects(self, topology):
        assert topology.get_additional_connects(7) == 4
        assert topology.get_additional_connects(3) == 1

    def test_connection_number(self, topology):
        first = topology.get_connections(1)[0]
        assert topology.connection_number(first) == 3


class TestAddresses:
    def test_templates(self, topology):
        same, known, router, hidden = topology.get_connections(7)
        assert get_address(same, "tcp") == "tcp-192.168.15.3"
        assert get_address(known, "udp") == "udp-92.68.151.2"
        assert get_address(router, "tcp") == "tcp-92.68.150.1"
        assert get_address(hidden, "tcp") is None

    def test_known_node_to_subnet_router(self, topology):
        (connection,) = topology.get_connections(1)
        assert get_address(connection, "tcp") == "tcp-92.68.150.1"

    def test_standalone_connection_defaults_to_known_source(self):
        connection = NodeConnection(namespace_n=0, node_n=4)
        assert get_address(connection, "tcp") == "tcp-192.168.15.4"


class TestValidation:
    def test_node_outside_topology(self):
        with pytest.raises(ValidationError):
            NetjailTopology.model_validate(
                {"plugin": "p:b", "namespaces_n": 1, "nodes_m": 1, "nodes": [{"namespace_n": 2, "node_n": 1}]}
            )

    def test_duplicate_node(self):
        node = {"namespace_n": 1, "node_n": 1}
        with pytest.raises(ValidationError):
            NetjailTopology.model_validate({"plugin": "p:b", "namespaces_n": 1, "nodes_m": 1, "nodes": [node, node]})

    def test_from_file(self, tmp_path):
        path = tmp_path / "topo.json"
        path.write_text(json.dumps({"plugin": "p:b", "namespaces_n": 1, "nodes_m": 2}))
        topology = NetjailTopology.from_file(path)
        assert topology.total == 2

    def test_simple(self):
        topology = NetjailTopology.simple("p:b", local_m=2, global_n=1)
        assert list(topology.iter_positions()) == [(1, 1), (1, 2)]
