import random
from collections import deque

import networkx as nx

from aodv_packets import DataPacket
from config import CONFIG
from utils import setup_logger

logger = setup_logger()

LOOPBACK = "127.0.0.1"
SUBNET = "10.1.1"
BROADCAST = f"{SUBNET}.255"


def address_of(node_id):
    return f"{SUBNET}.{node_id + 1}"


class Timer:
    """One-shot simpy timer that can be cancelled before it fires."""

    def __init__(self, env, delay, callback, *args):
        self.env = env
        self.delay = delay
        self.callback = callback
        self.args = args
        self._running = True
        env.process(self._run())

    def _run(self):
        yield self.env.timeout(self.delay)
        if self._running:
            self._running = False
            self.callback(*self.args)

    def remove(self):
        self._running = False

    def is_running(self):
        return self._running


class Interface:
    def __init__(self, local, broadcast, device):
        self.local = local
        self.broadcast = broadcast
        self.device = device
        self.forwarding = True

    def __repr__(self):
        return f"Interface({self.device}, {self.local})"


class Ipv4:
    """
    Minimal network layer of a node: interfaces, per-interface forwarding flags,
    and hand-off of data packets to the node's routing protocol.
    """
    def __init__(self, node):
        self.node = node
        self.interfaces = []
        self.routing_protocol = None

    def add_interface(self, local, broadcast, device):
        self.interfaces.append(Interface(local, broadcast, device))
        return len(self.interfaces) - 1

    def get_interface_for_device(self, device):
        for i, iface in enumerate(self.interfaces):
            if iface.device == device:
                return i
        return -1

    def get_interface_for_address(self, address):
        for i, iface in enumerate(self.interfaces):
            if iface.local == address:
                return i
        return -1

    def get_address(self, iface):
        return self.interfaces[iface]

    def get_net_device(self, iface):
        return self.interfaces[iface].device

    def is_forwarding(self, iface):
        return self.interfaces[iface].forwarding

    def set_forwarding(self, iface, forwarding):
        self.interfaces[iface].forwarding = forwarding

    # Data plane

    def send(self, packet):
        """Originates a data packet from this node."""
        self.node.sim.record_sent(packet)
        self.routing_protocol.route_output(packet, self._unicast_forward, self._error)

    def receive(self, packet, device, prev_hop):
        self.routing_protocol.route_input(packet, device, self._unicast_forward,
                                          self._local_deliver, self._error)

    def _unicast_forward(self, route, packet):
        if packet.source != self.node.address:
            packet.ttl -= 1
            if packet.ttl <= 0:
                self._error(packet, "ttl expired")
                return
        trust_manager = self.node.trust_manager
        if trust_manager is not None and route.next_hop != packet.destination:
            trust_manager.watch(packet.uid, route.next_hop)
        self.node.sim.transmit_data(self.node, packet, route.next_hop)

    def _local_deliver(self, packet, iface):
        self.node.received.append(packet)
        self.node.sim.record_delivery(packet)

    def _error(self, packet, reason):
        self.node.sim.record_drop(packet, self.node, reason)


class Socket:
    def __init__(self, node, local, port):
        self.node = node
        self.local = local
        self.port = port
        self._rx = deque()
        self._recv_callback = None

    def set_recv_callback(self, callback):
        self._recv_callback = callback

    def recv_from(self):
        """Returns (packet, sender address) of the oldest queued packet."""
        return self._rx.popleft()

    def send_to(self, packet, destination, port):
        self.node.sim.transmit_control(self, packet, destination, port)

    def deliver(self, packet, sender):
        self._rx.append((packet, sender))
        if self._recv_callback is not None:
            self._recv_callback(self)

    def __repr__(self):
        return f"Socket({self.local}:{self.port})"


class Node:
    def __init__(self, sim, node_id):
        self.sim = sim
        self.env = sim.env
        self.node_id = node_id
        self.address = address_of(node_id)
        self.device = f"wlan{node_id}"
        self.ipv4 = Ipv4(self)
        self.ipv4.add_interface(LOOPBACK, LOOPBACK, "lo")
        self.ipv4.add_interface(self.address, BROADCAST, self.device)
        self.sockets = []
        self.aodv = None
        self.trust_manager = None
        self.received = []

    def create_socket(self, local, port):
        sock = Socket(self, local, port)
        self.sockets.append(sock)
        return sock

    def find_socket(self, local, port):
        for sock in self.sockets:
            if sock.local == local and sock.port == port:
                return sock
        return None

    def send_data(self, destination, size=512):
        packet = DataPacket(self.address, destination, size=size, created_at=self.env.now)
        self.ipv4.send(packet)
        return packet

    def __repr__(self):
        return f"Node({self.node_id}, {self.address})"


class NetworkSimulation:
    def __init__(self, env, link_delay=CONFIG['simulation']['link_delay']):
        self.env = env
        self.link_delay = link_delay
        self.graph = nx.Graph()
        self.nodes = []
        self._by_address = {}
        self.stats = {"sent": 0, "delivered": 0, "dropped": {}, "latency": [],
                      "control_tx": 0, "lost_in_air": 0}

    def create_topology(self, num_nodes=10, radius=0.35, seed=None):
        """Randomly generates a wireless topology (unit-square random geometric graph)"""
        graph = nx.random_geometric_graph(num_nodes, radius, seed=seed)
        self.graph = nx.Graph()
        self.nodes = []
        self._by_address = {}
        for n in graph.nodes():
            self.add_node(pos=graph.nodes[n]['pos'])
        for (u, v) in graph.edges():
            self.graph.add_edge(u, v)
        logger.info(f"Topology created with {num_nodes} nodes and {len(self.graph.edges())} edges")

    def add_node(self, pos=None):
        """Adds a new node to the graph with a unique ID"""
        new_id = len(self.nodes)
        node = Node(self, new_id)
        self.graph.add_node(new_id, pos=pos if pos is not None else (random.random(), random.random()))
        self.nodes.append(node)
        self._by_address[node.address] = node
        logger.debug(f"Added new node: {new_id} ({node.address})")
        return node

    def add_edge(self, u, v):
        """Adds a bidirectional radio link between two nodes"""
        if u >= len(self.nodes) or v >= len(self.nodes):
            return False
        self.graph.add_edge(u, v)
        logger.debug(f"Added link {u}<->{v}")
        return True

    def remove_edge(self, u, v):
        if self.graph.has_edge(u, v):
            self.graph.remove_edge(u, v)
            logger.debug(f"Removed link {u}<->{v}")
            return True
        return False

    def node_by_address(self, address):
        return self._by_address.get(address)

    def neighbors(self, node):
        return [self.nodes[n] for n in self.graph.neighbors(node.node_id)]

    def link_churn(self, interval=5.0, p_break=0.1):
        """
        Periodically breaks or restores a random link to simulate mobility.
        Run this as a SimPy process.
        """
        broken = []
        while True:
            yield self.env.timeout(interval)
            if broken and random.random() < 0.5:
                u, v = broken.pop(0)
                self.add_edge(u, v)
            elif self.graph.edges and random.random() < p_break:
                u, v = random.choice(list(self.graph.edges()))
                self.remove_edge(u, v)
                broken.append((u, v))

    # Channel

    def _after(self, delay, callback, *args):
        yield self.env.timeout(delay)
        callback(*args)

    def transmit_control(self, socket, packet, destination, port):
        sender = socket.node
        self.stats["control_tx"] += 1
        if destination == BROADCAST:
            for neighbor in self.neighbors(sender):
                target = neighbor.find_socket(BROADCAST, port)
                if target is not None:
                    self.env.process(self._after(self.link_delay, target.deliver,
                                                 packet.copy(), socket.local))
            return
        receiver = self.node_by_address(destination)
        if receiver is None or not self.graph.has_edge(sender.node_id, receiver.node_id):
            self.stats["lost_in_air"] += 1
            logger.debug(f"[{self.env.now:.3f}] Control packet {packet.uid} from {socket.local} "
                         f"to {destination} lost (no link)")
            self._link_failure(sender, destination)
            return
        target = receiver.find_socket(destination, port)
        if target is not None:
            self.env.process(self._after(self.link_delay, target.deliver, packet.copy(), socket.local))

    def transmit_data(self, sender, packet, next_hop):
        for neighbor in self.neighbors(sender):
            if neighbor.trust_manager is not None:
                self.env.process(self._after(self.link_delay, neighbor.trust_manager.overheard,
                                             packet.uid, sender.address))
        receiver = self.node_by_address(next_hop)
        if receiver is None or not self.graph.has_edge(sender.node_id, receiver.node_id):
            self.stats["lost_in_air"] += 1
            self.record_drop(packet, sender, "link broken")
            self._link_failure(sender, next_hop)
            return
        self.env.process(self._after(self.link_delay, receiver.ipv4.receive, packet.copy(),
                                     receiver.device, sender.address))

    def _link_failure(self, sender, next_hop):
        if sender.aodv is not None:
            sender.aodv.send_rerr_when_breaks_link_to_next_hop(next_hop)

    # Statistics

    def record_sent(self, packet):
        self.stats["sent"] += 1

    def record_delivery(self, packet):
        self.stats["delivered"] += 1
        self.stats["latency"].append(self.env.now - packet.created_at)

    def record_drop(self, packet, node, reason):
        self.stats["dropped"][reason] = self.stats["dropped"].get(reason, 0) + 1
        logger.debug(f"[{self.env.now:.3f}] Data packet {packet.uid} dropped at {node.address}: {reason}")

    def packet_delivery_ratio(self):
        if self.stats["sent"] == 0:
            return 0.0
        return self.stats["delivered"] / self.stats["sent"]
