from aodv import UnknownSocketError
from aodv_packets import (
    MessageType, MalformedPacketError, TypeHeader, RreqHeader, RrepHeader, RerrHeader,
    make_control_packet,
)
from config import (
    AODV_PORT, RREQ_DROP_PROBABILITY, RREP_DROP_PROBABILITY, DATA_DROP_PROBABILITY,
    TRUST_THRESHOLD, check_probability, check_unit_interval,
)
from routing_table import RoutingTableEntry, RouteFlag
from utils import setup_logger

logger = setup_logger("TrustAodv")

# Header expected directly after the TypeHeader
BODY_TYPES = {
    MessageType.RREQ: RreqHeader,
    MessageType.RREP: RrepHeader,
    MessageType.RERR: RerrHeader,
}


def should_update_route(existing, candidate):
    """
    AODV route acceptance rule for a received RREP. The existing entry is
    replaced only when:
      (i)   its sequence number is marked invalid,
      (ii)  the RREP carries a strictly newer destination sequence number,
      (iii) the sequence numbers are equal but the route is not active,
      (iv)  the sequence numbers are equal and the new hop count is smaller.
    """
    if not existing.valid_seq_no:
        return True
    if candidate.seq_no - existing.seq_no > 0:
        return True
    if candidate.seq_no == existing.seq_no:
        if existing.flag != RouteFlag.VALID:
            return True
        if candidate.hop_count < existing.hop_count:
            return True
    return False


class TrustAodvRoutingProtocol:
    def __init__(self, base, rng=None, trust_manager=None,
                 rreq_drop_probability=RREQ_DROP_PROBABILITY,
                 rrep_drop_probability=RREP_DROP_PROBABILITY,
                 data_drop_probability=DATA_DROP_PROBABILITY,
                 trust_threshold=TRUST_THRESHOLD):
        """
        Trust-aware AODV with selfish node simulation.

        Args:
            base: AodvRoutingProtocol supplying the routing table, sockets and
                  the standard message handlers
            rng: random.Random used for every selfish drop decision
                 (defaults to the base protocol's generator)
            trust_manager: Optional object exposing a `trust_table`; when None
                           the trust veto is skipped
            rreq_drop_probability: % of foreign RREQs silently dropped
            rrep_drop_probability: % of RREPs dropped instead of forwarded
            data_drop_probability: % of data packets refused for forwarding
            trust_threshold: Neighbours scoring below this are not trusted (0-1 scale)
        """
        self.base = base
        self.rng = rng if rng is not None else base.rng
        self.trust_manager = trust_manager
        self.rreq_drop_probability = rreq_drop_probability
        self.rrep_drop_probability = rrep_drop_probability
        self.data_drop_probability = data_drop_probability
        self.trust_threshold = trust_threshold
        self.stats = {
            "rreq_selfish_drops": 0,
            "rrep_selfish_drops": 0,
            "data_selfish_drops": 0,
            "trust_vetoes": 0,
            "malformed_drops": 0,
            "missing_return_route": 0,
            "ttl_drops": 0,
            "replies_forwarded": 0,
        }
        base.ipv4.routing_protocol = self

    @property
    def rreq_drop_probability(self):
        return self._rreq_drop_probability

    @rreq_drop_probability.setter
    def rreq_drop_probability(self, value):
        self._rreq_drop_probability = check_probability("rreq_drop_probability", value)

    @property
    def rrep_drop_probability(self):
        return self._rrep_drop_probability

    @rrep_drop_probability.setter
    def rrep_drop_probability(self, value):
        self._rrep_drop_probability = check_probability("rrep_drop_probability", value)

    @property
    def data_drop_probability(self):
        return self._data_drop_probability

    @data_drop_probability.setter
    def data_drop_probability(self, value):
        self._data_drop_probability = check_probability("data_drop_probability", value)

    @property
    def trust_threshold(self):
        return self._trust_threshold

    @trust_threshold.setter
    def trust_threshold(self, value):
        self._trust_threshold = check_unit_interval("trust_threshold", value)

    @property
    def routing_table(self):
        return self.base.routing_table

    @property
    def ipv4(self):
        return self.base.ipv4

    def _now(self):
        return self.base.env.now

    def start(self):
        self.base.start(self.recv_aodv)

    def recv_aodv(self, socket):
        """Entry point for every AODV control packet arriving on a registered socket."""
        packet, sender = socket.recv_from()
        if socket in self.base.socket_addresses:
            receiver = self.base.socket_addresses[socket].local
        elif socket in self.base.socket_subnet_broadcast_addresses:
            receiver = self.base.socket_subnet_broadcast_addresses[socket].local
        else:
            raise UnknownSocketError("Received a packet from an unknown socket")
        logger.debug(f"[{self._now():.3f}] AODV node {receiver} received a packet from {sender}")

        self.base.update_route_to_neighbor(sender, receiver)
        try:
            t_header = packet.remove_header()
        except MalformedPacketError as e:
            logger.debug(f"{e}. Drop")
            self.stats["malformed_drops"] += 1
            return
        if not isinstance(t_header, TypeHeader) or not t_header.is_valid():
            logger.debug(f"AODV message {packet.uid} with unknown type received: {t_header}. Drop")
            self.stats["malformed_drops"] += 1
            return

        msg_type = MessageType(t_header.msg_type)
        body_type = BODY_TYPES.get(msg_type)
        if body_type is not None:
            try:
                body = packet.peek_header()
            except MalformedPacketError as e:
                logger.debug(f"{e}. Drop")
                self.stats["malformed_drops"] += 1
                return
            if not isinstance(body, body_type):
                logger.debug(f"AODV {msg_type.name} {packet.uid} carries {type(body).__name__}. Drop")
                self.stats["malformed_drops"] += 1
                return

        if msg_type == MessageType.RREQ:
            rreq = body
            if self.base.is_my_own_address(rreq.dst):
                self.base.recv_request(packet, receiver, sender)
            elif self.rng.uniform(0, 100) > self.rreq_drop_probability:
                self.base.recv_request(packet, receiver, sender)
            else:
                logger.debug(f"[{self._now():.3f}] Selfish behaviour, dropping a RREQ for {rreq.dst}")
                self.stats["rreq_selfish_drops"] += 1
        elif msg_type == MessageType.RREP:
            self.trust_recv_reply(packet, receiver, sender)
        elif msg_type == MessageType.RERR:
            self.base.recv_error(packet, sender)
        elif msg_type == MessageType.RREP_ACK:
            self.base.recv_reply_ack(sender)

    def _trust_veto(self, next_hop, sender):
        """True if the sender or the current next hop scores below the trust threshold."""
        if self.trust_manager is None:
            return False
        table = self.trust_manager.trust_table
        for role, address in (("sender", sender), ("next hop", next_hop)):
            found, entry = table.lookup_trust_entry(address)
            if not found:
                continue
            if entry.trust_value < self.trust_threshold:
                logger.info(f"[{self._now():.3f}] Trust veto: drop RREP because {role} ({address}) "
                            f"is not trustworthy (trust {entry.trust_value:.2f})")
                return True
        return False

    def trust_recv_reply(self, packet, receiver, sender):
        rrep = packet.remove_header()
        dst = rrep.dst
        now = self._now()
        logger.debug(f"[{now:.3f}] RREP destination {dst} RREP origin {rrep.origin}")

        hop = rrep.hop_count + 1
        rrep.hop_count = hop

        if dst == rrep.origin:
            self.base.process_hello(rrep, receiver)
            return

        iface_idx = self.ipv4.get_interface_for_address(receiver)
        new_entry = RoutingTableEntry(
            destination=dst, next_hop=sender,
            interface=self.ipv4.get_address(iface_idx).local,
            device=self.ipv4.get_net_device(iface_idx),
            hop_count=hop, seq_no=rrep.dst_seqno, valid_seq_no=True,
            expires_at=now + rrep.lifetime)

        to_dst = self.routing_table.lookup_route(dst)
        if to_dst is not None:
            if self._trust_veto(to_dst.next_hop, sender):
                self.stats["trust_vetoes"] += 1
                return
            if should_update_route(to_dst, new_entry):
                self.routing_table.update(new_entry)
        else:
            logger.debug(f"[{now:.3f}] add new route to {dst} via {sender}")
            self.routing_table.add_route(new_entry)

        # Acknowledge receipt of the RREP before passing it on
        if rrep.ack_required:
            self.base.send_reply_ack(sender)
            rrep.ack_required = False

        if self.base.is_my_own_address(rrep.origin):
            if to_dst is not None and to_dst.flag == RouteFlag.IN_SEARCH:
                self.routing_table.update(new_entry)
                timer = self.base.address_req_timer.pop(dst, None)
                if timer is not None:
                    timer.remove()
            to_dst = self.routing_table.lookup_route(dst)
            self.base.send_packet_from_queue(dst, to_dst)
            return

        if self.rng.uniform(0, 100) < self.rrep_drop_probability:
            logger.debug(f"[{now:.3f}] Selfish behaviour, dropping a RREP for {dst}")
            self.stats["rrep_selfish_drops"] += 1
            return

        to_origin = self.routing_table.lookup_route(rrep.origin)
        if to_origin is None or to_origin.flag == RouteFlag.IN_SEARCH:
            logger.warning(f"[{now:.3f}] No return route to {rrep.origin}, dropping RREP for {dst}")
            self.stats["missing_return_route"] += 1
            return
        to_origin.expires_at = max(now + self.base.active_route_timeout, to_origin.expires_at)
        self.routing_table.update(to_origin)

        # Precursors in both directions, so a later RERR reaches every dependent node
        to_dst = self.routing_table.lookup_valid_route(dst)
        if to_dst is not None:
            to_dst.insert_precursor(to_origin.next_hop)
            self.routing_table.update(to_dst)

            to_next_hop_to_dst = self.routing_table.lookup_route(to_dst.next_hop)
            if to_next_hop_to_dst is not None:
                to_next_hop_to_dst.insert_precursor(to_origin.next_hop)
                self.routing_table.update(to_next_hop_to_dst)

            to_origin.insert_precursor(to_dst.next_hop)
            self.routing_table.update(to_origin)

            to_next_hop_to_origin = self.routing_table.lookup_route(to_origin.next_hop)
            if to_next_hop_to_origin is not None:
                to_next_hop_to_origin.insert_precursor(to_dst.next_hop)
                self.routing_table.update(to_next_hop_to_origin)

        if packet.ttl is None or packet.ttl < 2:
            logger.debug(f"[{now:.3f}] TTL exceeded. Drop RREP destination {dst} origin {rrep.origin}")
            self.stats["ttl_drops"] += 1
            return

        forward = make_control_packet(MessageType.RREP, rrep, ttl=packet.ttl - 1)
        socket = self.base.find_socket_with_interface_address(to_origin.interface)
        if socket is None:
            raise UnknownSocketError(f"No AODV socket bound to {to_origin.interface}")
        socket.send_to(forward, to_origin.next_hop, AODV_PORT)
        self.stats["replies_forwarded"] += 1

    def route_input(self, packet, idev, ucb, lcb, ecb):
        """
        Forwarding decision for an inbound data packet. A selfish draw switches
        forwarding off on the receiving interface for this single decision.
        """
        iif = self.ipv4.get_interface_for_device(idev)
        if iif < 0:
            raise UnknownSocketError(f"Packet received on unknown device {idev}")
        forwarding = self.ipv4.is_forwarding(iif)

        if self.rng.uniform(0, 100) < self.data_drop_probability:
            if not self.base.is_my_own_address(packet.destination):
                logger.debug(f"[{self._now():.3f}] Selfish behaviour, dropping a DATA packet")
                self.stats["data_selfish_drops"] += 1
            self.ipv4.set_forwarding(iif, False)
        try:
            return self.base.route_input(packet, idev, ucb, lcb, ecb)
        finally:
            self.ipv4.set_forwarding(iif, forwarding)

    def route_output(self, packet, ucb, ecb):
        return self.base.route_output(packet, ucb, ecb)
