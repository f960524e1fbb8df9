import uuid
import weakref
import logging
import threading
from .autograd_graph import AutogradGraph
from .errors import StructuralError
from .layer import Layer, Result

logger = logging.getLogger(__name__)


class DAGNode:
    """A vertex of a DAGNetwork: one layer (by id) applied to an ordered tuple of upstream nodes."""
    __slots__ = ('id', 'layer_id', 'inputs', '_network', '__weakref__')

    def __init__(self, network, layer, inputs=(), node_id=None):
        self.id = node_id if node_id is not None else uuid.uuid4()
        self.layer_id = layer.id if layer is not None else None
        self.inputs = tuple(inputs)
        self._network = weakref.proxy(network)

    @property
    def layer(self):
        return self._network._layers[self.layer_id]

    @property
    def network(self):
        return self._network

    def __repr__(self):
        return f"DAGNode(id={self.id}, layer={self.layer_id}, inputs={len(self.inputs)})"


class InputNode(DAGNode):
    """Marker for the network's `index`-th input."""
    __slots__ = ('index',)

    def __init__(self, network, index, node_id=None):
        super().__init__(network, None, (), node_id)
        self.index = index

    @property
    def layer(self):
        return None

    def __repr__(self):
        return f"InputNode(index={self.index}, id={self.id})"


class _CountingResult(Result):
    """
    Wraps one node's result for the lifetime of a network evaluation. Deltas from all
    consumers are summed and pushed through the wrapped result once, after the last
    expected consumer reported, so every node runs its backward pass a single time.
    """
    __slots__ = ('_inner', '_expected', '_received', '_pending', '_pending_lock')

    def __init__(self, inner, expected):
        self._inner = inner
        self._expected = expected
        self._received = 0
        self._pending = None
        self._pending_lock = threading.Lock()
        super().__init__(inner.data.add_ref(), self._accumulate if inner.is_alive else None, retained=(inner,))

    def _accumulate(self, buffer, delta):
        with self._pending_lock:
            if self._pending is None:
                self._pending = delta.copy()
            else:
                self._pending.add_in_place(delta)
            self._received += 1
            ready = self._received >= self._expected
        if ready:
            self.flush(buffer)

    def flush(self, buffer):
        with self._pending_lock:
            pending, self._pending = self._pending, None
            self._received = 0
        if pending is not None:
            try:
                self._inner.accumulate(buffer, pending)
            finally:
                pending.free()


class DAGNetwork(Layer):
    """
    A mutable DAG of layers that is itself a Layer. eval() runs the ancestors of the head
    node in topological order, each exactly once, and returns a Result owning every
    intermediate result of that call.
    """
    __slots__ = ('_input_nodes', '_nodes', '_layers', '_topology', '_head', '_head_id', '_head_lock')

    def __init__(self, input_count=1, *, name=None):
        super().__init__(name=name)
        self._topology = AutogradGraph()
        self._nodes = {}
        self._layers = {}
        self._input_nodes = []
        self._head = None
        self._head_id = None
        self._head_lock = threading.RLock()
        for i in range(input_count):
            self._register(InputNode(self, i))

    @property
    def arity(self):
        return len(self._input_nodes)

    def _register(self, node):
        self._nodes[node.id] = node
        self._topology.add_node(node.id)
        if isinstance(node, InputNode):
            self._input_nodes.append(node)
        for inp in node.inputs:
            self._topology.add_edge(inp.id, node.id)

    def get_input(self, index=0):
        return self._input_nodes[index]

    def _check_owned(self, nodes):
        for node in nodes:
            if not isinstance(node, DAGNode) or self._nodes.get(node.id) is not node:
                raise StructuralError(f"{node!r} does not belong to {self.name}")

    def add(self, layer, *inputs):
        self._check_owned(inputs)
        layer.check_arity(len(inputs))
        existing = self._layers.get(layer.id)
        if existing is not None and existing is not layer:
            raise StructuralError(f"Another layer with id {layer.id} is already part of {self.name}")
        self._layers[layer.id] = layer
        node = DAGNode(self, layer, inputs)
        self._register(node)
        self._head = None
        return node

    def wire(self, node, *inputs):
        """Replaces the inputs of an existing node. Cycles are reported by the next eval()."""
        self._check_owned((node, *inputs))
        if isinstance(node, InputNode):
            raise StructuralError("Input nodes take no inputs")
        node.inputs = tuple(inputs)
        self._topology.set_inputs(node.id, [i.id for i in inputs])
        self._head = None
        return node

    def get_head(self):
        # evaluations from worker threads may race to build a lazy head
        with self._head_lock:
            if self._head is None:
                self._head = self._build_head()
            return self._head

    def _build_head(self):
        if self._head_id is not None:
            return self._nodes.get(self._head_id)
        nodes = self.nodes
        return nodes[-1] if nodes else None

    def get_head_id(self):
        head = self.get_head()
        return head.id if head is not None else None

    def set_head(self, node):
        self._check_owned((node,))
        with self._head_lock:
            self._head_id = node.id
            self._head = node
        return self

    def reset(self):
        """Drops every non-input node and the cached head so the graph can be rebuilt."""
        for node in self.nodes:
            del self._nodes[node.id]
            self._topology.delete_node(node.id)
        self._layers.clear()
        self._head = None
        self._head_id = None

    @property
    def nodes(self):
        return [n for n in self._nodes.values() if not isinstance(n, InputNode)]

    def get_node_by_id(self, node_id):
        return self._nodes[node_id]

    def get_layers(self):
        return list(self._layers.values())

    def layers_by_id(self):
        found = {self.id: self}
        for layer in self._layers.values():
            found.update(layer.layers_by_id())
        return found

    def state(self):
        tensors = []
        for layer in self._layers.values():
            tensors.extend(layer.state())
        return tensors

    def set_frozen(self, frozen):
        self.frozen = frozen
        for layer in self._layers.values():
            layer.set_frozen(frozen)
        return self

    def assert_consistent(self):
        head = self.get_head()
        if head is None:
            raise StructuralError(f"{self.name} has no head node")
        if self._topology.check_cycle():
            raise StructuralError(f"{self.name} contains a cycle")
        for node in self.nodes:
            self._check_owned(node.inputs)
            node.layer.check_arity(len(node.inputs))

    def eval(self, *inputs):
        self.check_arity(len(inputs))
        self.assert_consistent()
        head_id = self.get_head().id
        order = self._topology.toposort_from(head_id)
        within = set(order)
        results = {}
        try:
            for node_id in order:
                node = self._nodes[node_id]
                expected = self._topology.reference_count(node_id, within) + (1 if node_id == head_id else 0)
                if isinstance(node, InputNode):
                    inner = inputs[node.index].add_ref()
                else:
                    inner = node.layer.eval(*[results[i.id] for i in node.inputs])
                results[node_id] = _CountingResult(inner, expected)
        except BaseException:
            for r in results.values():
                r.free()
            raise
        return self._create_result(results[head_id], order, results)

    @staticmethod
    def _create_result(head_result, order, results):
        def _backward(buffer, delta):
            head_result.accumulate(buffer, delta)
            # consumers that do not propagate to every input (e.g. a loss into its label) leave partial sums
            for node_id in reversed(order):
                results[node_id].flush(buffer)

        return Result(head_result.data.add_ref(), _backward if head_result.is_alive else None,
                      retained=tuple(results.values()))

    def _json_fields(self):
        head = self.get_head()
        return {
            "inputs": [str(n.id) for n in self._input_nodes],
            "nodes": {str(n.id): [str(i.id) for i in n.inputs] for n in self.nodes},
            "node_layers": {str(n.id): str(n.layer_id) for n in self.nodes},
            "layers": {str(layer_id): layer.to_json() for layer_id, layer in self._layers.items()},
            "head": str(head.id) if head is not None else None,
        }

    @classmethod
    def _from_json(cls, json):
        network = cls(input_count=len(json["inputs"]))
        network._load_graph(json)
        return network

    def _load_graph(self, json):
        self.reset()
        self._topology.clear()
        self._nodes.clear()
        inputs = [InputNode(self, i, uuid.UUID(node_id)) for i, node_id in enumerate(json["inputs"])]
        self._input_nodes = []
        for node in inputs:
            self._register(node)
        self._layers = {uuid.UUID(k): Layer.from_json(v) for k, v in json["layers"].items()}
        created = {}
        for node_id, layer_id in json["node_layers"].items():
            layer = self._layers.get(uuid.UUID(layer_id))
            if layer is None:
                raise StructuralError(f"Node {node_id} refers to unknown layer {layer_id}")
            created[node_id] = DAGNode(self, layer, (), uuid.UUID(node_id))
            self._register(created[node_id])
        # inputs are linked in a second pass, references may point forward
        for node_id, input_ids in json["nodes"].items():
            try:
                node_inputs = [self._nodes[uuid.UUID(i)] for i in input_ids]
            except KeyError as e:
                raise StructuralError(f"Node {node_id} refers to unknown node {e}") from None
            created[node_id].inputs = tuple(node_inputs)
            self._topology.set_inputs(created[node_id].id, [i.id for i in node_inputs])
        if json.get("head") is not None:
            self.set_head(self._nodes[uuid.UUID(json["head"])])


class PipelineNetwork(DAGNetwork):
    """A linear chain: every added layer consumes the previous head."""
    __slots__ = ()

    def __init__(self, *layers, input_count=1, name=None):
        super().__init__(input_count, name=name)
        for layer in layers:
            self.add(layer)

    def add(self, layer, *inputs):
        if not inputs:
            head = self.get_head()
            inputs = (head if head is not None else self.get_input(0),)
        node = super().add(layer, *inputs)
        if self._head_id is not None:
            self.set_head(node)
        return node


class SimpleLossNetwork(DAGNetwork):
    """loss(network(input 0), input 1): a supervised network producing one loss value per sample."""
    __slots__ = ('network', 'loss_layer', 'network_node', 'loss_node')

    def __init__(self, network, loss_layer, *, name=None):
        super().__init__(2, name=name)
        self.network = network
        self.loss_layer = loss_layer
        self.network_node = self.add(network, self.get_input(0))
        self.loss_node = self.add(loss_layer, self.network_node, self.get_input(1))

    def _json_fields(self):
        json = super()._json_fields()
        json["networkNode"] = str(self.network_node.id)
        json["lossNode"] = str(self.loss_node.id)
        return json

    @classmethod
    def _from_json(cls, json):
        network = cls.__new__(cls)
        DAGNetwork.__init__(network, 2)
        network._load_graph(json)
        network.network_node = network.get_node_by_id(uuid.UUID(json["networkNode"]))
        network.loss_node = network.get_node_by_id(uuid.UUID(json["lossNode"]))
        network.network = network.network_node.layer
        network.loss_layer = network.loss_node.layer
        return network
