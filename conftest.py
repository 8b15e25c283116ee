import random

import pytest
import simpy

from aodv import AodvRoutingProtocol
from config import AODV_PORT
from network_sim import NetworkSimulation
from routing import TrustAodvRoutingProtocol


def build_line(env, length, trust_managers=None, drop_probabilities=None):
    """
    Line topology 0 - 1 - ... - (length-1), every node running trust-aware AODV
    with zero drop probabilities unless overridden per node ID.
    """
    net_sim = NetworkSimulation(env, link_delay=0.001)
    for _ in range(length):
        net_sim.add_node()
    for i in range(length - 1):
        net_sim.add_edge(i, i + 1)

    rng = random.Random(7)
    protocols = []
    for node in net_sim.nodes:
        trust_manager = (trust_managers or {}).get(node.node_id)
        node.trust_manager = trust_manager
        base = AodvRoutingProtocol(node, rng=rng)
        params = {"rreq_drop_probability": 0.0, "rrep_drop_probability": 0.0,
                  "data_drop_probability": 0.0}
        params.update((drop_probabilities or {}).get(node.node_id, {}))
        protocol = TrustAodvRoutingProtocol(base, rng=rng, trust_manager=trust_manager, **params)
        protocol.start()
        protocols.append(protocol)
    return net_sim, protocols


class SendRecorder:
    """Replaces a socket's send_to and keeps what would have been transmitted."""

    def __init__(self, socket):
        self.sent = []
        socket.send_to = self

    def __call__(self, packet, destination, port):
        self.sent.append((packet, destination, port))


class FakeTrustManager:
    def __init__(self, trust_table):
        self.trust_table = trust_table


@pytest.fixture
def env():
    return simpy.Environment()


@pytest.fixture
def line4(env):
    return build_line(env, 4)


def unicast_socket(node):
    return node.find_socket(node.address, AODV_PORT)
