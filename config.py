# config.py
# Central defaults for the protocol, the selfish-node simulation and the trust layer.

CONFIG = {
    'aodv': {
        'port': 654,
        'active_route_timeout': 3.0,     # seconds
        'my_route_timeout': 6.0,         # 2 * active_route_timeout
        'net_diameter': 35,              # hops, also the initial RREQ TTL
        'node_traversal_time': 0.04,     # seconds
        'rreq_retries': 2,
        'hello_interval': 1.0,
        'allowed_hello_loss': 2,
        'delete_period': 15.0,           # 5 * max(active_route_timeout, hello_interval)
    },
    'selfish': {
        # Percentages in [0, 100]
        'rreq_drop_probability': 10.0,
        'rrep_drop_probability': 10.0,
        'data_drop_probability': 10.0,
    },
    'trust': {
        'threshold': 0.4,       # trust values are normalised to [0, 1]
        'initial_trust': 1.0,
        'decay_factor': 0.3,    # multiplier on failure
        'bonus_factor': 0.02,   # additive on success
        'blackhole_failures': 3,
        'watchdog_timeout': 0.5,
    },
    'simulation': {
        'num_nodes': 20,
        'radius': 0.35,         # random geometric graph connection radius
        'link_delay': 0.002,    # seconds per hop
        'packets': 200,
        'packet_interval': 0.25,
        'seed': 42,
    },
}

AODV_PORT = CONFIG['aodv']['port']
ACTIVE_ROUTE_TIMEOUT = CONFIG['aodv']['active_route_timeout']
MY_ROUTE_TIMEOUT = CONFIG['aodv']['my_route_timeout']
NET_DIAMETER = CONFIG['aodv']['net_diameter']
NODE_TRAVERSAL_TIME = CONFIG['aodv']['node_traversal_time']
NET_TRAVERSAL_TIME = 2 * NODE_TRAVERSAL_TIME * NET_DIAMETER
RREQ_RETRIES = CONFIG['aodv']['rreq_retries']
HELLO_INTERVAL = CONFIG['aodv']['hello_interval']
ALLOWED_HELLO_LOSS = CONFIG['aodv']['allowed_hello_loss']
DELETE_PERIOD = CONFIG['aodv']['delete_period']
PATH_DISCOVERY_TIME = 2 * NET_TRAVERSAL_TIME

RREQ_DROP_PROBABILITY = CONFIG['selfish']['rreq_drop_probability']
RREP_DROP_PROBABILITY = CONFIG['selfish']['rrep_drop_probability']
DATA_DROP_PROBABILITY = CONFIG['selfish']['data_drop_probability']

TRUST_THRESHOLD = CONFIG['trust']['threshold']
INITIAL_TRUST = CONFIG['trust']['initial_trust']
DECAY_FACTOR = CONFIG['trust']['decay_factor']
BONUS_FACTOR = CONFIG['trust']['bonus_factor']
BLACKHOLE_FAILURES = CONFIG['trust']['blackhole_failures']
WATCHDOG_TIMEOUT = CONFIG['trust']['watchdog_timeout']


def check_probability(name, value):
    """Validates a drop probability expressed as a percentage."""
    value = float(value)
    if not 0.0 <= value <= 100.0:
        raise ValueError(f"{name} must be within [0, 100], got {value}")
    return value


def check_unit_interval(name, value):
    """Validates a value on the normalised [0, 1] trust scale."""
    value = float(value)
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"{name} must be within [0, 1], got {value}")
    return value
