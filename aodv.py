import random

from aodv_packets import (
    MessageType, RreqHeader, RrepHeader, RerrHeader, RrepAckHeader, make_control_packet,
)
from config import (
    AODV_PORT, ACTIVE_ROUTE_TIMEOUT, MY_ROUTE_TIMEOUT, NET_DIAMETER, NODE_TRAVERSAL_TIME,
    NET_TRAVERSAL_TIME, RREQ_RETRIES, HELLO_INTERVAL, ALLOWED_HELLO_LOSS, PATH_DISCOVERY_TIME,
)
from network_sim import Timer, LOOPBACK
from routing_table import RoutingTableEntry, RouteFlag, RoutingTable
from utils import setup_logger

logger = setup_logger("Aodv")


class UnknownSocketError(RuntimeError):
    """The protocol was handed a socket (or interface) it never registered."""


class AodvRoutingProtocol:
    """
    Baseline AODV for a single node: route discovery, route maintenance and
    data forwarding. Packet reception is dispatched by whoever calls start()
    with a receive callback; this class supplies the per-message handlers.
    """
    def __init__(self, node, rng=None, active_route_timeout=ACTIVE_ROUTE_TIMEOUT,
                 my_route_timeout=MY_ROUTE_TIMEOUT, net_diameter=NET_DIAMETER,
                 node_traversal_time=NODE_TRAVERSAL_TIME, net_traversal_time=NET_TRAVERSAL_TIME,
                 rreq_retries=RREQ_RETRIES, hello_interval=HELLO_INTERVAL,
                 allowed_hello_loss=ALLOWED_HELLO_LOSS, path_discovery_time=PATH_DISCOVERY_TIME,
                 enable_hello=False, rrep_ack_required=False):
        self.node = node
        self.env = node.env
        self.ipv4 = node.ipv4
        self.rng = rng if rng is not None else random.Random()
        node.aodv = self

        self.active_route_timeout = active_route_timeout
        self.my_route_timeout = my_route_timeout
        self.net_diameter = net_diameter
        self.node_traversal_time = node_traversal_time
        self.net_traversal_time = net_traversal_time
        self.rreq_retries = rreq_retries
        self.hello_interval = hello_interval
        self.allowed_hello_loss = allowed_hello_loss
        self.path_discovery_time = path_discovery_time
        self.enable_hello = enable_hello
        self.rrep_ack_required = rrep_ack_required

        self.routing_table = RoutingTable(self.env)
        self.socket_addresses = {}                  # unicast socket -> Interface
        self.socket_subnet_broadcast_addresses = {}  # broadcast socket -> Interface
        self.address_req_timer = {}                 # destination -> Timer
        self.queue = {}                             # destination -> [(packet, ucb, ecb)]
        self.seq_no = 0
        self.request_id = 0
        self._rreq_seen = {}                        # (origin, request_id) -> expiry
        self.pending_acks = set()                   # neighbours owing us an RREP-ACK
        self.stats = {"rreq_sent": 0, "rreq_forwarded": 0, "rrep_sent": 0, "rerr_sent": 0,
                      "rreq_duplicates": 0, "queue_drops": 0}

    def start(self, recv_callback):
        for iface in self.ipv4.interfaces:
            if iface.local == LOOPBACK:
                continue
            sock = self.node.create_socket(iface.local, AODV_PORT)
            sock.set_recv_callback(recv_callback)
            self.socket_addresses[sock] = iface

            bsock = self.node.create_socket(iface.broadcast, AODV_PORT)
            bsock.set_recv_callback(recv_callback)
            self.socket_subnet_broadcast_addresses[bsock] = iface
        if self.enable_hello:
            self.env.process(self._hello_loop())

    # Helpers

    def is_my_own_address(self, address):
        return any(iface.local == address for iface in self.socket_addresses.values())

    def find_socket_with_interface_address(self, address):
        for sock, iface in self.socket_addresses.items():
            if iface.local == address:
                return sock
        return None

    def _socket_for(self, interface_address):
        sock = self.find_socket_with_interface_address(interface_address)
        if sock is None:
            raise UnknownSocketError(f"No AODV socket bound to {interface_address}")
        return sock

    def _now(self):
        return self.env.now

    def _is_duplicate(self, origin, request_id):
        now = self._now()
        for key in [k for k, expiry in self._rreq_seen.items() if expiry < now]:
            del self._rreq_seen[key]
        key = (origin, request_id)
        if key in self._rreq_seen:
            return True
        self._rreq_seen[key] = now + self.path_discovery_time
        return False

    # Neighbours

    def update_route_to_neighbor(self, sender, receiver):
        """Keeps a fresh one-hop route to the neighbour a packet was received from."""
        iface_idx = self.ipv4.get_interface_for_address(receiver)
        iface = self.ipv4.get_address(iface_idx)
        dev = self.ipv4.get_net_device(iface_idx)
        now = self._now()
        to_neighbor = self.routing_table.lookup_route(sender)
        if to_neighbor is None:
            self.routing_table.add_route(RoutingTableEntry(
                sender, sender, interface=iface.local, device=dev, hop_count=1,
                seq_no=0, valid_seq_no=False, expires_at=now + self.active_route_timeout))
            return
        expires_at = max(now + self.active_route_timeout, to_neighbor.expires_at)
        if to_neighbor.valid_seq_no and to_neighbor.hop_count == 1 and to_neighbor.device == dev:
            to_neighbor.expires_at = expires_at
            self.routing_table.update(to_neighbor)
        else:
            self.routing_table.update(RoutingTableEntry(
                sender, sender, interface=iface.local, device=dev, hop_count=1,
                seq_no=0, valid_seq_no=False, expires_at=expires_at))

    def process_hello(self, rrep, receiver):
        """A hello is an RREP whose destination is its own origin."""
        iface_idx = self.ipv4.get_interface_for_address(receiver)
        now = self._now()
        lifetime = self.allowed_hello_loss * self.hello_interval
        to_neighbor = self.routing_table.lookup_route(rrep.dst)
        if to_neighbor is None:
            self.routing_table.add_route(RoutingTableEntry(
                rrep.dst, rrep.dst, interface=self.ipv4.get_address(iface_idx).local,
                device=self.ipv4.get_net_device(iface_idx), hop_count=1, seq_no=rrep.dst_seqno,
                valid_seq_no=True, expires_at=now + lifetime))
            return
        to_neighbor.expires_at = max(now + lifetime, to_neighbor.expires_at)
        to_neighbor.seq_no = rrep.dst_seqno
        to_neighbor.valid_seq_no = True
        to_neighbor.flag = RouteFlag.VALID
        to_neighbor.next_hop = rrep.dst
        to_neighbor.hop_count = 1
        to_neighbor.interface = self.ipv4.get_address(iface_idx).local
        to_neighbor.device = self.ipv4.get_net_device(iface_idx)
        self.routing_table.update(to_neighbor)

    def _hello_loop(self):
        while True:
            yield self.env.timeout(self.hello_interval)
            for sock, iface in self.socket_addresses.items():
                rrep = RrepHeader(dst=iface.local, dst_seqno=self.seq_no, origin=iface.local,
                                  lifetime=self.allowed_hello_loss * self.hello_interval)
                sock.send_to(make_control_packet(MessageType.RREP, rrep, ttl=1),
                             iface.broadcast, AODV_PORT)

    # Route requests

    def send_request(self, dst):
        """Broadcasts an RREQ for dst and arms the retry timer."""
        now = self._now()
        to_dst = self.routing_table.lookup_route(dst)
        rreq = RreqHeader(request_id=0, dst=dst, dst_seqno=0, origin="", origin_seqno=0)
        if to_dst is not None:
            if to_dst.valid_seq_no:
                rreq.dst_seqno = to_dst.seq_no
            else:
                rreq.unknown_seqno = True
            to_dst.flag = RouteFlag.IN_SEARCH
            to_dst.rreq_count += 1
            self.routing_table.update(to_dst)
        else:
            rreq.unknown_seqno = True
            entry = RoutingTableEntry(dst, None, interface=LOOPBACK, device="lo",
                                      hop_count=self.net_diameter, expires_at=now,
                                      flag=RouteFlag.IN_SEARCH)
            entry.rreq_count = 1
            self.routing_table.add_route(entry)

        self.seq_no += 1
        self.request_id += 1
        rreq.origin_seqno = self.seq_no
        rreq.request_id = self.request_id

        for sock, iface in self.socket_addresses.items():
            rreq.origin = iface.local
            self._is_duplicate(iface.local, rreq.request_id)
            packet = make_control_packet(MessageType.RREQ, RreqHeader(**vars(rreq)),
                                         ttl=self.net_diameter)
            sock.send_to(packet, iface.broadcast, AODV_PORT)
        self.stats["rreq_sent"] += 1
        logger.debug(f"[{now:.3f}] {self.node.address} sent RREQ {self.request_id} for {dst}")
        self._schedule_rreq_retry(dst)

    def _schedule_rreq_retry(self, dst):
        to_dst = self.routing_table.lookup_route(dst)
        retries = to_dst.rreq_count if to_dst is not None else 1
        timer = self.address_req_timer.get(dst)
        if timer is not None:
            timer.remove()
        # binary exponential backoff
        delay = self.net_traversal_time * (2 ** (retries - 1))
        self.address_req_timer[dst] = Timer(self.env, delay, self.route_request_timer_expire, dst)

    def route_request_timer_expire(self, dst):
        to_dst = self.routing_table.lookup_valid_route(dst)
        if to_dst is not None:
            self.address_req_timer.pop(dst, None)
            self.send_packet_from_queue(dst, to_dst)
            return
        to_dst = self.routing_table.lookup_route(dst)
        if to_dst is not None and to_dst.rreq_count >= self.rreq_retries + 1:
            logger.debug(f"[{self._now():.3f}] {self.node.address} gave up route discovery for {dst}")
            self.address_req_timer.pop(dst, None)
            self.routing_table.delete_route(dst)
            self._drop_queue(dst, "no route")
            return
        self.send_request(dst)

    def recv_request(self, packet, receiver, src):
        rreq = packet.remove_header()
        origin = rreq.origin
        if self._is_duplicate(origin, rreq.request_id):
            self.stats["rreq_duplicates"] += 1
            return
        hop = rreq.hop_count + 1
        rreq.hop_count = hop

        # Reverse route to the originator
        iface_idx = self.ipv4.get_interface_for_address(receiver)
        iface = self.ipv4.get_address(iface_idx)
        dev = self.ipv4.get_net_device(iface_idx)
        now = self._now()
        lifetime = 2 * self.net_traversal_time - 2 * hop * self.node_traversal_time
        to_origin = self.routing_table.lookup_route(origin)
        if to_origin is None:
            to_origin = RoutingTableEntry(origin, src, interface=iface.local, device=dev,
                                          hop_count=hop, seq_no=rreq.origin_seqno,
                                          valid_seq_no=True, expires_at=now + lifetime)
            self.routing_table.add_route(to_origin)
        else:
            if not to_origin.valid_seq_no or rreq.origin_seqno - to_origin.seq_no > 0:
                to_origin.seq_no = rreq.origin_seqno
            to_origin.valid_seq_no = True
            to_origin.next_hop = src
            to_origin.interface = iface.local
            to_origin.device = dev
            to_origin.hop_count = hop
            to_origin.flag = RouteFlag.VALID
            to_origin.expires_at = max(now + lifetime, to_origin.expires_at)
            self.routing_table.update(to_origin)

        if self.is_my_own_address(rreq.dst):
            self.send_reply(rreq, to_origin)
            return

        if packet.ttl is None or packet.ttl < 2:
            logger.debug(f"[{now:.3f}] TTL exceeded. Drop RREQ origin {origin} destination {rreq.dst}")
            return

        to_dst = self.routing_table.lookup_route(rreq.dst)
        if to_dst is not None and to_dst.valid_seq_no and to_dst.seq_no - rreq.dst_seqno > 0:
            rreq.dst_seqno = to_dst.seq_no
            rreq.unknown_seqno = False

        for sock, iface in self.socket_addresses.items():
            fwd = make_control_packet(MessageType.RREQ, RreqHeader(**vars(rreq)), ttl=packet.ttl - 1)
            sock.send_to(fwd, iface.broadcast, AODV_PORT)
        self.stats["rreq_forwarded"] += 1

    def send_reply(self, rreq, to_origin):
        """Answers an RREQ addressed to this node."""
        if not rreq.unknown_seqno and rreq.dst_seqno == self.seq_no + 1:
            self.seq_no += 1
        rrep = RrepHeader(dst=rreq.dst, dst_seqno=self.seq_no, origin=to_origin.destination,
                          lifetime=self.my_route_timeout, ack_required=self.rrep_ack_required)
        if rrep.ack_required:
            self.pending_acks.add(to_origin.next_hop)
        packet = make_control_packet(MessageType.RREP, rrep, ttl=to_origin.hop_count)
        self._socket_for(to_origin.interface).send_to(packet, to_origin.next_hop, AODV_PORT)
        self.stats["rrep_sent"] += 1
        logger.debug(f"[{self._now():.3f}] {self.node.address} sent RREP to {rreq.origin} "
                     f"via {to_origin.next_hop}")

    def send_reply_ack(self, neighbor):
        to_neighbor = self.routing_table.lookup_route(neighbor)
        if to_neighbor is None:
            logger.debug(f"[{self._now():.3f}] No route to {neighbor} for RREP-ACK")
            return
        packet = make_control_packet(MessageType.RREP_ACK, RrepAckHeader(), ttl=1)
        self._socket_for(to_neighbor.interface).send_to(packet, neighbor, AODV_PORT)

    def recv_reply_ack(self, neighbor):
        if neighbor not in self.pending_acks:
            logger.debug(f"[{self._now():.3f}] Unexpected RREP-ACK from {neighbor}")
            return
        self.pending_acks.discard(neighbor)
        logger.debug(f"[{self._now():.3f}] {self.node.address} got RREP-ACK from {neighbor}")

    # Route errors

    def recv_error(self, packet, src):
        rerr = packet.remove_header()
        via_src = self.routing_table.destinations_via(src)
        unreachable = {dst: seqno for dst, seqno in rerr.unreachable.items() if dst in via_src}
        if not unreachable:
            return
        precursors = []
        for dst in unreachable:
            route = self.routing_table.lookup_route(dst)
            for p in route.precursors:
                if p not in precursors:
                    precursors.append(p)
        self.routing_table.invalidate_routes_with_dst(unreachable)
        if precursors:
            self.send_rerr_message(RerrHeader(dict(unreachable)), precursors)

    def send_rerr_when_breaks_link_to_next_hop(self, next_hop):
        unreachable = self.routing_table.destinations_via(next_hop)
        precursors = []
        for dst in unreachable:
            route = self.routing_table.lookup_route(dst)
            for p in route.precursors:
                if p not in precursors:
                    precursors.append(p)
        if not unreachable:
            return
        self.routing_table.invalidate_routes_with_dst(unreachable)
        if precursors:
            self.send_rerr_message(RerrHeader(dict(unreachable)), precursors)

    def send_rerr_when_no_route_to_forward(self, dst, dst_seqno, origin):
        rerr = RerrHeader()
        rerr.add_unreachable(dst, dst_seqno)
        to_origin = self.routing_table.lookup_valid_route(origin)
        if to_origin is not None:
            packet = make_control_packet(MessageType.RERR, rerr, ttl=1)
            self._socket_for(to_origin.interface).send_to(packet, to_origin.next_hop, AODV_PORT)
        else:
            self._broadcast(MessageType.RERR, rerr, ttl=1)
        self.stats["rerr_sent"] += 1

    def send_rerr_message(self, rerr, precursors):
        if len(precursors) == 1:
            to_precursor = self.routing_table.lookup_valid_route(precursors[0])
            if to_precursor is not None:
                packet = make_control_packet(MessageType.RERR, rerr, ttl=1)
                self._socket_for(to_precursor.interface).send_to(packet, precursors[0], AODV_PORT)
                self.stats["rerr_sent"] += 1
            return
        self._broadcast(MessageType.RERR, rerr, ttl=1)
        self.stats["rerr_sent"] += 1

    def _broadcast(self, msg_type, header, ttl):
        for sock, iface in self.socket_addresses.items():
            sock.send_to(make_control_packet(msg_type, header, ttl), iface.broadcast, AODV_PORT)

    # Data plane

    def send_packet_from_queue(self, dst, route):
        for packet, ucb, ecb in self.queue.pop(dst, []):
            ucb(route, packet)

    def _drop_queue(self, dst, reason):
        for packet, ucb, ecb in self.queue.pop(dst, []):
            self.stats["queue_drops"] += 1
            ecb(packet, reason)

    def route_output(self, packet, ucb, ecb):
        """Sends a locally originated packet, starting route discovery if needed."""
        dst = packet.destination
        route = self.routing_table.lookup_valid_route(dst)
        if route is not None:
            route.expires_at = max(self._now() + self.active_route_timeout, route.expires_at)
            self.routing_table.update(route)
            ucb(route, packet)
            return True
        self.queue.setdefault(dst, []).append((packet, ucb, ecb))
        existing = self.routing_table.lookup_route(dst)
        if existing is None or existing.flag != RouteFlag.IN_SEARCH:
            self.send_request(dst)
        return False

    def route_input(self, packet, idev, ucb, lcb, ecb):
        iif = self.ipv4.get_interface_for_device(idev)
        if iif < 0:
            raise UnknownSocketError(f"Packet received on unknown device {idev}")
        dst = packet.destination
        if self.is_my_own_address(dst):
            lcb(packet, iif)
            return True
        if not self.ipv4.is_forwarding(iif):
            ecb(packet, "forwarding disabled")
            return False
        route = self.routing_table.lookup_valid_route(dst)
        if route is None:
            self.send_rerr_when_no_route_to_forward(dst, 0, packet.source)
            ecb(packet, "no route")
            return False
        now = self._now()
        route.expires_at = max(now + self.active_route_timeout, route.expires_at)
        self.routing_table.update(route)
        to_origin = self.routing_table.lookup_valid_route(packet.source)
        if to_origin is not None:
            to_origin.expires_at = max(now + self.active_route_timeout, to_origin.expires_at)
            self.routing_table.update(to_origin)
        ucb(route, packet)
        return True
