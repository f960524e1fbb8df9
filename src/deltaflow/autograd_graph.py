import rustworkx as rx


class AutogradGraph:
    """
    Topology of a DAGNetwork. Every node id is a vertex and every input reference an
    edge from the upstream node to the consuming node, so a node feeding the same
    consumer twice has two parallel edges.
    """
    __slots__ = ('graph', '_index', '__weakref__')

    def __init__(self):
        self.graph = rx.PyDiGraph()
        self._index = {}

    def add_node(self, node_id):
        if node_id in self._index:
            raise ValueError(f"Node {node_id} already exists in graph.")
        self._index[node_id] = self.graph.add_node(node_id)

    def has_node(self, node_id):
        return node_id in self._index

    def add_edge(self, from_id, to_id):
        if from_id not in self._index or to_id not in self._index:
            raise ValueError("Nodes must exist before adding edge.")
        self.graph.add_edge(self._index[from_id], self._index[to_id], None)

    def set_inputs(self, node_id, input_ids):
        index = self._index[node_id]
        for source, _, _ in list(self.graph.in_edges(index)):
            self.graph.remove_edge(source, index)
        for input_id in input_ids:
            self.add_edge(input_id, node_id)

    def check_cycle(self):
        return not rx.is_directed_acyclic_graph(self.graph)

    def toposort_from(self, node_id):
        """Node ids the given node depends on, itself included, upstream first."""
        index = self._index[node_id]
        relevant = list(rx.ancestors(self.graph, index))
        relevant.append(index)
        sub_graph = self.graph.subgraph(relevant)
        return [sub_graph[i] for i in rx.topological_sort(sub_graph)]

    def reference_count(self, node_id, within):
        """Number of input references to `node_id` held by nodes in `within`."""
        index = self._index[node_id]
        return sum(1 for _, target, _ in self.graph.out_edges(index) if self.graph[target] in within)

    def delete_node(self, node_id):
        index = self._index.pop(node_id, None)
        if index is not None:
            self.graph.remove_node(index)

    def clear(self):
        self.graph.clear()
        self._index.clear()

    def __repr__(self):
        return f"AutogradGraph(nodes={self.graph.num_nodes()}, edges={self.graph.num_edges()})"
