"""
netharness/net/topology.py
Netjail topology: which nodes exist and whom they connect to.

A topology has `nodes_x` globally known nodes (namespace 0) and
`namespaces_n` subnets with `nodes_m` nodes each. Nodes get a global number:

    known node m         -> m
    subnet node (n, m)   -> (n - 1) * nodes_m + m + nodes_x

Only nodes that deviate from the defaults (own plugin, connections,
additional connects) need to be listed in the file.

Example file:

    {
      "plugin": "netharness.plugins.example:build",
      "namespaces_n": 2,
      "nodes_m": 1,
      "nodes_x": 1,
      "nodes": [
        {"namespace_n": 1, "node_n": 1,
         "connections": [{"namespace_n": 0, "node_n": 1, "address_prefixes": ["tcp"]}]}
      ]
    }
"""

from __future__ import annotations

import json
import logging
import math
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple, Union

from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

CONNECT_ADDRESS_TEMPLATE = "{prefix}-192.168.15.{n}"
KNOWN_CONNECT_ADDRESS_TEMPLATE = "{prefix}-92.68.151.{n}"
ROUTER_CONNECT_ADDRESS_TEMPLATE = "{prefix}-92.68.150.{n}"


class NodeConnection(BaseModel):
    """A connection one node is asked to establish to another node."""
    namespace_n: int = Field(ge=0, description="Subnet of the target node; 0 for a known node")
    node_n: int = Field(ge=1)
    address_prefixes: List[str] = Field(default_factory=lambda: ["tcp"])

    # Namespace of the node that owns this connection; filled in by the topology
    source_namespace_n: int = Field(default=0, ge=0)

    @field_validator("address_prefixes")
    @classmethod
    def validate_prefixes(cls, v: List[str]) -> List[str]:
        prefixes = [p.strip() for p in v if p.strip()]
        if not prefixes:
            raise ValueError("a connection needs at least one address prefix")
        return prefixes


class NetjailNode(BaseModel):
    namespace_n: int = Field(ge=0, description="0 for a globally known node")
    node_n: int = Field(ge=1)
    plugin: Optional[str] = None
    additional_connects: Optional[int] = Field(default=None, ge=0)
    connections: List[NodeConnection] = Field(default_factory=list)

    @property
    def is_global(self) -> bool:
        return self.namespace_n == 0

    @property
    def key(self) -> Tuple[int, int]:
        return (self.namespace_n, self.node_n)


class NetjailTopology(BaseModel):
    plugin: str = Field(..., min_length=1, description="Default plugin, `module:function`")
    namespaces_n: int = Field(ge=0)
    nodes_m: int = Field(ge=0)
    nodes_x: int = Field(default=0, ge=0)
    additional_connects: int = Field(default=0, ge=0)
    nodes: List[NetjailNode] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_nodes(self) -> "NetjailTopology":
        seen = set()
        for node in self.nodes:
            if node.key in seen:
                raise ValueError(f"node {node.key} listed twice")
            seen.add(node.key)
            self._check_position(node.namespace_n, node.node_n, f"node {node.key}")
            for connection in node.connections:
                self._check_position(
                    connection.namespace_n, connection.node_n, f"connection of node {node.key}"
                )
                connection.source_namespace_n = node.namespace_n
        return self

    def _check_position(self, namespace_n: int, node_n: int, what: str) -> None:
        if namespace_n == 0:
            if node_n > self.nodes_x:
                raise ValueError(f"{what}: only {self.nodes_x} known nodes")
        elif namespace_n > self.namespaces_n or node_n > self.nodes_m:
            raise ValueError(f"{what}: outside {self.namespaces_n} subnets of {self.nodes_m} nodes")

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------
    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "NetjailTopology":
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        topology = cls.model_validate(data)
        logger.debug(f"[Topology] Loaded {path}: {topology.total} nodes")
        return topology

    @classmethod
    def simple(cls, plugin: str, local_m: int, global_n: int, known: int = 0) -> "NetjailTopology":
        """A topology with no per-node overrides."""
        return cls(plugin=plugin, namespaces_n=global_n, nodes_m=local_m, nodes_x=known)

    # ------------------------------------------------------------------
    # Numbering
    # ------------------------------------------------------------------
    @property
    def total(self) -> int:
        return self.nodes_x + self.namespaces_n * self.nodes_m

    def node_number(self, namespace_n: int, node_n: int) -> int:
        if namespace_n == 0:
            return node_n
        return (namespace_n - 1) * self.nodes_m + node_n + self.nodes_x

    def position(self, num: int) -> Tuple[int, int]:
        """Inverse of node_number(): (namespace_n, node_n) for a global number."""
        if num < 1 or num > self.total:
            raise ValueError(f"node number {num} outside 1..{self.total}")
        if num <= self.nodes_x:
            return (0, num)
        namespace_n = math.ceil((num - self.nodes_x) / self.nodes_m)
        return (namespace_n, num - self.nodes_x - (namespace_n - 1) * self.nodes_m)

    def iter_positions(self) -> Iterator[Tuple[int, int]]:
        """Every (namespace_n, node_n), known nodes first, in numbering order."""
        for m in range(1, self.nodes_x + 1):
            yield (0, m)
        for n in range(1, self.namespaces_n + 1):
            for m in range(1, self.nodes_m + 1):
                yield (n, m)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def _index(self) -> Dict[Tuple[int, int], NetjailNode]:
        return {node.key: node for node in self.nodes}

    def get_node(self, num: int) -> NetjailNode:
        key = self.position(num)
        node = self._index().get(key)
        if node is None:
            node = NetjailNode(namespace_n=key[0], node_n=key[1])
        return node

    def plugin_for(self, num: int) -> str:
        return self.get_node(num).plugin or self.plugin

    def get_connections(self, num: int) -> List[NodeConnection]:
        return list(self.get_node(num).connections)

    def get_additional_connects(self, num: int) -> int:
        node = self.get_node(num)
        if node.additional_connects is not None:
            return node.additional_connects
        return self.additional_connects

    def connection_number(self, connection: NodeConnection) -> int:
        return self.node_number(connection.namespace_n, connection.node_n)


def get_address(connection: NodeConnection, prefix: str) -> Optional[str]:
    """
    Address under which the target of `connection` is reachable from the
    connecting node, or None when the target sits behind another subnet's
    NAT and is not that subnet's router.
    """
    if connection.namespace_n == connection.source_namespace_n:
        return CONNECT_ADDRESS_TEMPLATE.format(prefix=prefix, n=connection.node_n)
    if connection.namespace_n == 0:
        return KNOWN_CONNECT_ADDRESS_TEMPLATE.format(prefix=prefix, n=connection.node_n)
    if connection.node_n == 1:
        return ROUTER_CONNECT_ADDRESS_TEMPLATE.format(prefix=prefix, n=connection.namespace_n)
    return None
