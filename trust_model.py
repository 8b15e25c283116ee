import copy
from abc import ABC, abstractmethod

from config import (
    INITIAL_TRUST, DECAY_FACTOR, BONUS_FACTOR, TRUST_THRESHOLD,
    BLACKHOLE_FAILURES, WATCHDOG_TIMEOUT,
)
from utils import setup_logger

logger = setup_logger("Trust")


class TrustEntry:
    """
    Trust score of a single neighbour.

    Trust values are normalised to [0, 1]: 0.0 = untrusted, 1.0 = fully trusted.
    Attributes are set directly and never validated.
    """
    def __init__(self, neighbour_address=None, trust_value=0.0, timestamp=0.0):
        self.neighbour_address = neighbour_address
        self.trust_value = trust_value
        self.timestamp = timestamp

    def copy(self):
        return copy.copy(self)

    def __eq__(self, other):
        if not isinstance(other, TrustEntry):
            return NotImplemented
        return (self.neighbour_address == other.neighbour_address
                and self.trust_value == other.trust_value
                and self.timestamp == other.timestamp)

    def __repr__(self):
        return (f"TrustEntry({self.neighbour_address!r}, trust={self.trust_value:.3f}, "
                f"t={self.timestamp})")


class TrustTable:
    """Ordered collection of TrustEntry records keyed by neighbour address."""

    def __init__(self):
        self._records = []

    def _index_of(self, address):
        for i, record in enumerate(self._records):
            if record.neighbour_address == address:
                return i
        return None

    def add_record(self, entry):
        if self._index_of(entry.neighbour_address) is not None:
            raise ValueError(f"Trust entry for {entry.neighbour_address} already exists")
        self._records.append(entry.copy())

    def remove_record(self, entry):
        """Removes the record for entry's neighbour. Returns False if there was none."""
        idx = self._index_of(entry.neighbour_address)
        if idx is None:
            return False
        del self._records[idx]
        return True

    def update_record(self, entry):
        """Replaces trust value and timestamp of the matching record, inserting it if absent."""
        idx = self._index_of(entry.neighbour_address)
        if idx is None:
            self._records.append(entry.copy())
            return
        record = self._records[idx]
        record.trust_value = entry.trust_value
        record.timestamp = entry.timestamp

    def lookup_trust_entry(self, address):
        """
        Returns (found, entry). On a miss the entry is an empty TrustEntry
        whose fields must not be used.
        """
        idx = self._index_of(address)
        if idx is None:
            return False, TrustEntry()
        return True, self._records[idx].copy()

    def __len__(self):
        return len(self._records)

    def __iter__(self):
        return iter([record.copy() for record in self._records])

    def __contains__(self, address):
        return self._index_of(address) is not None


class TrustMediator(ABC):
    """
    Communication point between a trust computation strategy and the routing layer.

    The routing engine only reads `trust_table`; how the scores in it are
    produced is up to the implementation.
    """

    @property
    @abstractmethod
    def trust_table(self):
        """The TrustTable this strategy populates."""

    @abstractmethod
    def record_observation(self, neighbour, success, now):
        """Feeds one observation of a neighbour's forwarding behaviour."""


class SimpleAodvTrustManager(TrustMediator):
    def __init__(self, env, initial_trust=INITIAL_TRUST, decay_factor=DECAY_FACTOR,
                 bonus_factor=BONUS_FACTOR, trust_threshold=TRUST_THRESHOLD,
                 watchdog_timeout=WATCHDOG_TIMEOUT):
        """
        Watchdog based trust manager.

        Args:
            env: simpy environment used for timestamps and watchdog timers
            initial_trust: Trust assigned on first observation (1.0 = fully trusted)
            decay_factor: Multiplier for trust on failure (0.3 = very aggressive decay)
            bonus_factor: Additive bonus for trust on success (0.02 = slow recovery)
            trust_threshold: Minimum trust for a neighbour to be considered trustworthy
            watchdog_timeout: Seconds to wait for a next hop to retransmit a packet
        """
        self.env = env
        self.initial_trust = initial_trust
        self.decay_factor = decay_factor
        self.bonus_factor = bonus_factor
        self.trust_threshold = trust_threshold
        self.watchdog_timeout = watchdog_timeout
        self._trust_table = TrustTable()

        # {neighbour: {"forward_success": 0, "forward_fail": 0, "history": [],
        #              "consecutive_failures": 0, "is_blackhole": False}}
        self.stats = {}
        # {(uid, next_hop): watchdog token}
        self._watching = {}

    @property
    def trust_table(self):
        return self._trust_table

    def _init_stats(self, neighbour):
        if neighbour not in self.stats:
            self.stats[neighbour] = {
                "forward_success": 0,
                "forward_fail": 0,
                "history": [],
                "consecutive_failures": 0,
                "is_blackhole": False,
            }
        return self.stats[neighbour]

    def record_observation(self, neighbour, success, now=None):
        """
        Updates the neighbour's trust after it forwarded (or failed to forward) a packet.
        Aggressive decay on failure, slow recovery on success; a neighbour that
        fails BLACKHOLE_FAILURES times in a row is pinned to zero trust.
        """
        now = self.env.now if now is None else now
        s = self._init_stats(neighbour)
        found, entry = self._trust_table.lookup_trust_entry(neighbour)
        current = entry.trust_value if found else self.initial_trust

        if success:
            s["forward_success"] += 1
            s["consecutive_failures"] = 0
        else:
            s["forward_fail"] += 1
            s["consecutive_failures"] += 1
            if s["consecutive_failures"] >= BLACKHOLE_FAILURES and not s["is_blackhole"]:
                s["is_blackhole"] = True
                logger.info(f"[{now:.3f}] Neighbour {neighbour} flagged as blackhole")

        s["history"].append(1 if success else 0)
        if len(s["history"]) > 20:
            s["history"].pop(0)

        if s["is_blackhole"]:
            new_value = 0.0
        elif success:
            new_value = min(1.0, current + self.bonus_factor)
        else:
            new_value = max(0.0, current * self.decay_factor)

        self._trust_table.update_record(TrustEntry(neighbour, new_value, now))
        logger.debug(f"[{now:.3f}] Trust of {neighbour}: {current:.3f} -> {new_value:.3f}")
        return new_value

    def get_trust(self, neighbour):
        found, entry = self._trust_table.lookup_trust_entry(neighbour)
        return entry.trust_value if found else self.initial_trust

    def is_trusted(self, neighbour):
        return self.get_trust(neighbour) >= self.trust_threshold

    def watch(self, uid, next_hop):
        """Expects next_hop to retransmit packet uid within the watchdog timeout."""
        key = (uid, next_hop)
        if key in self._watching:
            return
        token = object()
        self._watching[key] = token
        self.env.process(self._watchdog(key, token))

    def overheard(self, uid, transmitter):
        """Called when a transmission of packet uid by transmitter is overheard."""
        if self._watching.pop((uid, transmitter), None) is None:
            return
        self.record_observation(transmitter, True)

    def _watchdog(self, key, token):
        yield self.env.timeout(self.watchdog_timeout)
        if self._watching.get(key) is token:
            del self._watching[key]
            self.record_observation(key[1], False)
