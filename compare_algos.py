import simpy
import random
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import networkx as nx
import logging
from utils import setup_logger
from config import CONFIG
from network_sim import NetworkSimulation
from aodv import AodvRoutingProtocol
from routing import TrustAodvRoutingProtocol
from trust_model import SimpleAodvTrustManager
from visualization import visualize_network, route_path

logger = setup_logger("Main")

# Disable inner logs for cleaner output
for name in ("NetworkSim", "Aodv", "TrustAodv", "Trust"):
    logging.getLogger(name).setLevel(logging.WARNING)

SIM = CONFIG['simulation']


def build_network(env, num_nodes=SIM['num_nodes'], radius=SIM['radius'], seed=SIM['seed'],
                  selfish_nodes=(), selfish_probability=50.0, use_trust=False, rng=None):
    """
    Builds a topology where every node runs trust-aware AODV.

    Args:
        selfish_nodes: Node IDs that drop RREQs, RREPs and data with selfish_probability (%)
        use_trust: Attach a SimpleAodvTrustManager to every node
        rng: Shared random source for all selfish decisions (seeded once per run)

    Returns:
        (NetworkSimulation, {node_id: TrustAodvRoutingProtocol})
    """
    net_sim = NetworkSimulation(env, link_delay=SIM['link_delay'])
    net_sim.create_topology(num_nodes=num_nodes, radius=radius, seed=seed)
    rng = rng if rng is not None else random.Random(seed)

    protocols = {}
    for node in net_sim.nodes:
        base = AodvRoutingProtocol(node, rng=rng)
        trust_manager = SimpleAodvTrustManager(env) if use_trust else None
        node.trust_manager = trust_manager
        p = selfish_probability if node.node_id in selfish_nodes else 0.0
        protocol = TrustAodvRoutingProtocol(
            base, rng=rng, trust_manager=trust_manager,
            rreq_drop_probability=p, rrep_drop_probability=p, data_drop_probability=p)
        protocol.start()
        protocols[node.node_id] = protocol
    return net_sim, protocols


def pick_selfish_nodes(graph, count=3):
    """Picks high-centrality nodes so selfishness meaningfully impacts routing."""
    centrality = nx.betweenness_centrality(graph, normalized=True)
    return [n for n, _ in sorted(centrality.items(), key=lambda kv: kv[1], reverse=True)[:count]]


def run_scenario(name, use_trust=False, selfish_count=0, selfish_probability=50.0,
                 packets=SIM['packets'], interval=SIM['packet_interval'], seed=SIM['seed'],
                 churn=False, draw=None):
    """
    Runs a single scenario and returns stats.
    """
    env = simpy.Environment()

    # Turn the most central nodes selfish (same seed, same geometric graph as build_network)
    graph = nx.random_geometric_graph(SIM['num_nodes'], SIM['radius'], seed=seed)
    selfish_nodes = pick_selfish_nodes(graph, selfish_count) if selfish_count else []

    net_sim, protocols = build_network(env, seed=seed, selfish_nodes=selfish_nodes,
                                       selfish_probability=selfish_probability, use_trust=use_trust)
    if churn:
        env.process(net_sim.link_churn())

    # Traffic Generation
    traffic_rng = random.Random(101)
    flows = []
    node_ids = list(net_sim.graph.nodes())
    for _ in range(200):
        if len(flows) >= 10:
            break
        src, dst = traffic_rng.sample(node_ids, 2)
        if nx.has_path(net_sim.graph, src, dst) and src not in selfish_nodes:
            flows.append((src, dst))
    if not flows:
        logger.warning(f"{name}: no connected flows in topology")
        return {"Scenario": name, "PDR": 0.0, "Latency": 0.0}

    def traffic_gen():
        for _ in range(packets):
            src, dst = traffic_rng.choice(flows)
            net_sim.nodes[src].send_data(net_sim.nodes[dst].address)
            yield env.timeout(interval)

    proc = env.process(traffic_gen())
    env.run(until=proc)
    env.run(until=env.now + 10)  # let queued discoveries finish

    totals = {}
    for protocol in protocols.values():
        for key, value in protocol.stats.items():
            totals[key] = totals.get(key, 0) + value

    latencies = net_sim.stats["latency"]
    result = {
        "Scenario": name,
        "PDR": net_sim.packet_delivery_ratio() * 100,
        "Latency": float(np.mean(latencies)) * 1000 if latencies else 0.0,
        "Selfish Nodes": len(selfish_nodes),
        "Control Tx": net_sim.stats["control_tx"],
    }
    result.update(totals)
    logger.info(f"{name}: PDR {result['PDR']:.1f}% latency {result['Latency']:.2f} ms")

    if draw:
        src, dst = flows[0]
        visualize_network(net_sim, selfish_nodes, observer=net_sim.nodes[src], filename=draw,
                          paths={f"{src}->{dst}": route_path(net_sim, src, dst)})
    return result


def main():
    print("Running Comparative Analysis...")

    results = [
        run_scenario("AODV"),
        run_scenario("Selfish AODV", selfish_count=3),
        run_scenario("Trust AODV", use_trust=True, selfish_count=3, draw="network_topology.png"),
    ]
    df = pd.DataFrame(results).set_index("Scenario")
    print(df[["PDR", "Latency", "rreq_selfish_drops", "rrep_selfish_drops",
              "data_selfish_drops", "trust_vetoes"]].to_string())

    # Plotting
    labels = list(df.index)
    pdrs = df["PDR"].values
    lats = df["Latency"].values

    x = np.arange(len(labels))
    width = 0.35

    fig, ax1 = plt.subplots(figsize=(10, 6))

    color = 'tab:blue'
    ax1.set_xlabel('Routing Protocol')
    ax1.set_ylabel('Packet Delivery Ratio (%)', color=color)
    bars1 = ax1.bar(x - width/2, pdrs, width, color=color, label='PDR')
    ax1.tick_params(axis='y', labelcolor=color)
    ax1.set_ylim(0, 100)

    ax2 = ax1.twinx()
    color = 'tab:orange'
    ax2.set_ylabel('Avg Latency (ms)', color=color)
    bars2 = ax2.bar(x + width/2, lats, width, color=color, label='Latency')
    ax2.tick_params(axis='y', labelcolor=color)

    ax1.set_xticks(x)
    ax1.set_xticklabels(labels)
    plt.title('AODV under Selfish Nodes, with and without Trust')

    for bar in bars1:
        ax1.text(bar.get_x() + bar.get_width()/2, bar.get_height(), f'{bar.get_height():.1f}%', ha='center', va='bottom')
    for bar in bars2:
        ax2.text(bar.get_x() + bar.get_width()/2, bar.get_height(), f'{bar.get_height():.1f}', ha='center', va='bottom')

    plt.tight_layout()
    plt.savefig('comparison_chart.png')
    plt.close(fig)
    print("Chart saved to comparison_chart.png")


if __name__ == "__main__":
    main()
