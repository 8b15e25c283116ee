import matplotlib
matplotlib.use("Agg")

import networkx as nx
import pytest

import compare_algos
from compare_algos import run_scenario, build_network, pick_selfish_nodes
from conftest import build_line
from trust_model import SimpleAodvTrustManager
from visualization import visualize_network, route_path


def test_discovery_delivers_data_along_line(env):
    net_sim, protocols = build_line(env, 4)
    source, dest = net_sim.nodes[0], net_sim.nodes[3]

    source.send_data(dest.address)
    env.run(until=5)

    assert net_sim.stats["delivered"] == 1
    assert len(dest.received) == 1
    route = protocols[0].routing_table.lookup_valid_route(dest.address)
    assert route.hop_count == 3
    assert route.next_hop == net_sim.nodes[1].address
    assert route_path(net_sim, 0, 3) == [0, 1, 2, 3]
    assert protocols[3].base.stats["rrep_sent"] == 1


def test_selfish_forwarder_loses_trust(env):
    manager = SimpleAodvTrustManager(env, watchdog_timeout=0.5)
    net_sim, protocols = build_line(env, 4, trust_managers={0: manager},
                                    drop_probabilities={1: {"data_drop_probability": 100.0}})
    source, selfish, dest = net_sim.nodes[0], net_sim.nodes[1], net_sim.nodes[3]

    source.send_data(dest.address)
    env.run(until=5)

    assert net_sim.stats["delivered"] == 0
    assert net_sim.stats["dropped"]["forwarding disabled"] == 1
    assert protocols[1].stats["data_selfish_drops"] == 1
    assert manager.get_trust(selfish.address) == pytest.approx(0.3)
    assert not manager.is_trusted(selfish.address)


def test_cooperative_forwarder_keeps_trust(env):
    manager = SimpleAodvTrustManager(env, watchdog_timeout=0.5)
    net_sim, _ = build_line(env, 4, trust_managers={0: manager})

    net_sim.nodes[0].send_data(net_sim.nodes[3].address)
    env.run(until=5)

    assert net_sim.stats["delivered"] == 1
    assert manager.stats[net_sim.nodes[1].address]["forward_success"] == 1
    assert manager.is_trusted(net_sim.nodes[1].address)


def test_unreachable_destination_gives_up(env):
    net_sim, protocols = build_line(env, 3)
    island = net_sim.add_node()

    net_sim.nodes[0].send_data(island.address)
    env.run(until=30)

    assert net_sim.stats["dropped"]["no route"] == 1
    assert protocols[0].routing_table.lookup_route(island.address) is None
    assert protocols[0].base.stats["rreq_sent"] == protocols[0].base.rreq_retries + 1


def test_broken_link_invalidates_route(env):
    net_sim, protocols = build_line(env, 3)
    net_sim.nodes[0].send_data(net_sim.nodes[2].address)
    env.run(until=2)

    net_sim.remove_edge(0, 1)
    net_sim.nodes[0].send_data(net_sim.nodes[2].address)
    env.run(until=2.5)

    assert net_sim.stats["dropped"]["link broken"] == 1
    assert protocols[0].routing_table.lookup_valid_route(net_sim.nodes[2].address) is None


def test_visualize_network_returns_figure(env):
    manager = SimpleAodvTrustManager(env)
    net_sim, _ = build_line(env, 3, trust_managers={0: manager})
    manager.record_observation(net_sim.nodes[1].address, False)

    fig = visualize_network(net_sim, selfish_nodes=[1], observer=net_sim.nodes[0],
                            return_fig=True, paths={"0->2": [0, 1, 2]})
    assert fig is not None


def test_selfish_nodes_are_most_central(env):
    net_sim, _ = build_line(env, 5)
    assert pick_selfish_nodes(net_sim.graph, 1) == [2]


def test_build_network_applies_selfish_probability(env):
    net_sim, protocols = build_network(env, num_nodes=8, radius=0.5, seed=1,
                                       selfish_nodes=(2,), selfish_probability=80.0, use_trust=True)
    assert len(protocols) == 8
    assert protocols[2].data_drop_probability == 80.0
    assert protocols[0].data_drop_probability == 0.0
    assert net_sim.nodes[0].trust_manager is protocols[0].trust_manager


def test_run_scenario_smoke():
    result = run_scenario("Trust AODV", use_trust=True, selfish_count=2, packets=10, interval=0.1)
    assert 0.0 <= result["PDR"] <= 100.0
    assert result["Selfish Nodes"] == 2


def test_scenario_selfish_nodes_are_configured_at_build(monkeypatch):
    built = {}
    real_build = compare_algos.build_network

    def recording_build(env, **kwargs):
        net_sim, protocols = real_build(env, **kwargs)
        built.update(kwargs, protocols=protocols, graph=net_sim.graph)
        return net_sim, protocols

    monkeypatch.setattr(compare_algos, "build_network", recording_build)
    run_scenario("Selfish AODV", selfish_count=2, selfish_probability=70.0, packets=2, interval=0.1)

    selfish = built["selfish_nodes"]
    assert len(selfish) == 2
    # selection was made on the very topology the network was built from
    sim = compare_algos.SIM
    reference = nx.random_geometric_graph(sim["num_nodes"], sim["radius"], seed=sim["seed"])
    assert set(map(frozenset, built["graph"].edges())) == set(map(frozenset, reference.edges()))
    for node_id, protocol in built["protocols"].items():
        expected = 70.0 if node_id in selfish else 0.0
        assert protocol.rreq_drop_probability == expected
        assert protocol.data_drop_probability == expected
