import networkx as nx
import matplotlib.pyplot as plt
import matplotlib.patches as mpatches


def route_path(net_sim, src_id, dst_id, max_hops=64):
    """
    Follows the valid routing table entries hop by hop from src towards dst.
    Returns the list of node IDs visited, or None if the chain breaks.
    """
    dst_address = net_sim.nodes[dst_id].address
    path = [src_id]
    current = net_sim.nodes[src_id]
    while current.node_id != dst_id and len(path) < max_hops:
        route = current.aodv.routing_table.lookup_valid_route(dst_address)
        if route is None:
            return None
        nxt = net_sim.node_by_address(route.next_hop)
        if nxt is None or nxt.node_id in path:
            return None
        path.append(nxt.node_id)
        current = nxt
    return path if current.node_id == dst_id else None


def visualize_network(net_sim, selfish_nodes=None, observer=None, filename="network_topology.png",
                      return_fig=False, paths=None, trust_threshold=0.4):
    """
    Visualizes the network topology.
    - Selfish nodes -> Red
    - Nodes the observer's trust manager scores below the threshold -> Orange
    - Everything else -> Green

    Args:
        net_sim: NetworkSimulation to draw
        selfish_nodes: Node IDs configured with non-zero drop probabilities
        observer: Node whose trust table colours its neighbours
        paths: Dict of {'Label': [node_list]} to highlight specific routes.
    """
    graph = net_sim.graph
    selfish_nodes = set(selfish_nodes or [])
    fig = plt.figure(figsize=(12, 10))

    pos = nx.get_node_attributes(graph, 'pos') or nx.spring_layout(graph, seed=42)

    low_trust = set()
    if observer is not None and observer.trust_manager is not None:
        for entry in observer.trust_manager.trust_table:
            if entry.trust_value < trust_threshold:
                node = net_sim.node_by_address(entry.neighbour_address)
                if node is not None:
                    low_trust.add(node.node_id)

    node_colors = []
    node_sizes = []
    for node in graph.nodes():
        if node in selfish_nodes:
            node_colors.append('#FF4444')  # Red
            node_sizes.append(700)
        elif node in low_trust:
            node_colors.append('#FFAA33')  # Orange
            node_sizes.append(600)
        else:
            node_colors.append('#44FF44')  # Green
            node_sizes.append(500)

    nx.draw_networkx_nodes(graph, pos, node_color=node_colors, node_size=node_sizes, edgecolors='black')
    nx.draw_networkx_edges(graph, pos, alpha=0.2, edge_color='gray', style='dashed')

    legend_patches = [
        mpatches.Patch(color='#44FF44', label='Cooperative Node'),
        mpatches.Patch(color='#FF4444', label='Selfish Node'),
    ]
    if observer is not None:
        legend_patches.append(mpatches.Patch(color='#FFAA33', label=f'Low Trust (seen by {observer.node_id})'))

    path_colors = ['blue', 'purple', 'green', 'orange']
    for i, (label, path) in enumerate((paths or {}).items()):
        if not path or len(path) < 2:
            continue
        color = path_colors[i % len(path_colors)]
        nx.draw_networkx_edges(graph, pos, edgelist=list(zip(path, path[1:])),
                               edge_color=color, width=3, alpha=0.8)
        legend_patches.append(mpatches.Patch(color=color, label=f"{label} Route"))

    nx.draw_networkx_labels(graph, pos, font_weight='bold')

    plt.legend(handles=legend_patches, loc='upper left', bbox_to_anchor=(1, 1))
    plt.title("Ad-hoc Topology & AODV Routes")
    plt.axis('off')
    plt.tight_layout()

    if return_fig:
        plt.close(fig)
        return fig

    try:
        plt.savefig(filename)
        print(f"Network visualization saved to {filename}")
    except OSError as e:
        print(f"Error saving visualization: {e}")
    finally:
        plt.close()
