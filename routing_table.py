import copy
from enum import Enum

from config import DELETE_PERIOD
from utils import setup_logger

logger = setup_logger("Aodv")


class RouteFlag(Enum):
    VALID = "valid"
    INVALID = "invalid"
    IN_SEARCH = "in_search"


class RoutingTableEntry:
    def __init__(self, destination, next_hop, interface=None, device=None, hop_count=1,
                 seq_no=0, valid_seq_no=False, expires_at=0.0, flag=RouteFlag.VALID):
        """
        Route towards a single destination.

        Args:
            destination: Destination address
            next_hop: Neighbour to forward through
            interface: Local address of the outgoing interface
            device: Name of the outgoing device
            hop_count: Hops to the destination
            seq_no: Destination sequence number
            valid_seq_no: Whether seq_no is known to be valid
            expires_at: Absolute simulation time at which the route expires
            flag: RouteFlag
        """
        self.destination = destination
        self.next_hop = next_hop
        self.interface = interface
        self.device = device
        self.hop_count = hop_count
        self.seq_no = seq_no
        self.valid_seq_no = valid_seq_no
        self.expires_at = expires_at
        self.flag = flag
        self.precursors = []
        self.rreq_count = 0

    def insert_precursor(self, address):
        if address in self.precursors:
            return False
        self.precursors.append(address)
        return True

    def lookup_precursor(self, address):
        return address in self.precursors

    def delete_all_precursors(self):
        self.precursors = []

    def remaining_lifetime(self, now):
        return self.expires_at - now

    def invalidate(self, now, bad_link_lifetime=DELETE_PERIOD):
        if self.flag == RouteFlag.INVALID:
            return
        self.flag = RouteFlag.INVALID
        self.expires_at = now + bad_link_lifetime

    def copy(self):
        return copy.deepcopy(self)

    def __repr__(self):
        return (f"Route({self.destination} via {self.next_hop}, hops={self.hop_count}, "
                f"seq={self.seq_no}{'' if self.valid_seq_no else '?'}, {self.flag.value})")


class RoutingTable:
    """
    Routes keyed by destination address.
    Lookups hand out copies; callers write changes back with update().
    """
    def __init__(self, env):
        self.env = env
        self._routes = {}

    def __len__(self):
        return len(self._routes)

    def __contains__(self, destination):
        return destination in self._routes

    def lookup_route(self, destination):
        """Returns a copy of the route to destination, or None."""
        self.purge()
        entry = self._routes.get(destination)
        return entry.copy() if entry is not None else None

    def lookup_valid_route(self, destination):
        entry = self.lookup_route(destination)
        if entry is None or entry.flag != RouteFlag.VALID:
            return None
        return entry

    def add_route(self, entry):
        self.purge()
        if entry.destination in self._routes:
            return False
        self._routes[entry.destination] = entry.copy()
        return True

    def update(self, entry):
        if entry.destination not in self._routes:
            return False
        self._routes[entry.destination] = entry.copy()
        return True

    def delete_route(self, destination):
        return self._routes.pop(destination, None) is not None

    def set_entry_state(self, destination, flag):
        entry = self._routes.get(destination)
        if entry is None:
            return False
        entry.flag = flag
        entry.rreq_count = 0
        return True

    def destinations_via(self, next_hop):
        """Returns {destination: seq_no} of valid routes that use next_hop."""
        self.purge()
        return {dst: e.seq_no for dst, e in self._routes.items()
                if e.next_hop == next_hop and e.flag == RouteFlag.VALID}

    def invalidate_routes_with_dst(self, unreachable):
        now = self.env.now
        for dst, entry in self._routes.items():
            if dst in unreachable and entry.flag == RouteFlag.VALID:
                entry.invalidate(now)
                entry.seq_no = unreachable[dst]
                logger.debug(f"[{now:.3f}] Invalidated route to {dst}")

    def purge(self):
        """Invalidates expired valid routes and deletes expired invalid ones."""
        now = self.env.now
        for dst in list(self._routes):
            entry = self._routes[dst]
            if entry.remaining_lifetime(now) >= 0:
                continue
            if entry.flag == RouteFlag.INVALID:
                del self._routes[dst]
            elif entry.flag == RouteFlag.VALID:
                entry.invalidate(now)

    def routes(self):
        return [e.copy() for e in self._routes.values()]
