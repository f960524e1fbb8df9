import enum
import math
import uuid
import logging
import torch
from .config import device, dtype
from .errors import StructuralError
from .layer import ConstantResult
from .layers import (BiasLayer, DropoutNoiseLayer, FullyConnectedLayer, GaussianNoiseLayer, LinearActivationLayer,
                     NthPowerActivationLayer, ProductInputsLayer, ReLuActivationLayer, SigmoidActivationLayer,
                     SumInputsLayer, _dims)
from .line_search import ArmijoWolfeSearch
from .losses import MeanSqLossLayer
from .network import DAGNetwork, PipelineNetwork, SimpleLossNetwork
from .optimizers import LBFGS
from .tensor import TensorList
from .trainable import ArrayTrainable, L12Normalizer, SampledArrayTrainable
from .trainer import IterativeTrainer

logger = logging.getLogger(__name__)


def _layer_ref(layer):
    return str(layer.id) if layer is not None else None


class EvolvingNetwork(DAGNetwork):
    """
    A network whose topology is rebuilt from its own fields. The head is built lazily
    by _build_head() and dropped by invalidate(); next_phase() moves the network to
    its next, larger structure.
    """
    __slots__ = ()

    def invalidate(self):
        with self._head_lock:
            self._head = None
            self._head_id = None

    def next_phase(self):
        raise NotImplementedError("Subclasses of EvolvingNetwork must implement next_phase.")

    def _build_head(self):
        raise NotImplementedError("Subclasses of EvolvingNetwork must implement _build_head.")

    def state(self):
        self.get_head()
        return super().state()

    def layers_by_id(self):
        self.get_head()
        return super().layers_by_id()

    def get_layers(self):
        self.get_head()
        return super().get_layers()

    def set_frozen(self, frozen):
        self.get_head()
        return super().set_frozen(frozen)

    def _lookup(self, json, key):
        if json.get(key) is None:
            return None
        layer = self._layers.get(uuid.UUID(json[key]))
        if layer is None:
            raise StructuralError(f"{key} refers to unknown layer {json[key]}")
        return layer


class Correction:
    """One polynomial term: (bias(factor(x))) ** power."""
    __slots__ = ('power', 'bias', 'factor')

    def __init__(self, power, bias, factor):
        self.power = power
        self.bias = bias
        self.factor = factor

    def add(self, network, input_node):
        return network.add(NthPowerActivationLayer(self.power),
                           network.add(self.bias, network.add(self.factor, input_node)))

    def to_json(self):
        return {"bias": _layer_ref(self.bias), "factor": _layer_ref(self.factor), "power": self.power}


class PolynomialNetwork(EvolvingNetwork):
    """
    alpha(alphaBias(x)) multiplied by every correction term. A new term starts out as
    bias 1 over a zero factor, so adding one leaves the output unchanged.
    """
    __slots__ = ('input_dims', 'output_dims', 'alpha', 'alpha_bias', 'corrections', '_generator')

    def __init__(self, input_dims, output_dims, *, seed=None, name=None):
        super().__init__(1, name=name)
        self.input_dims = tuple(input_dims)
        self.output_dims = tuple(output_dims)
        self.alpha = None
        self.alpha_bias = None
        self.corrections = []
        self._generator = torch.Generator(device=device)
        if seed is None:
            self._generator.seed()
        else:
            self._generator.manual_seed(seed)

    def new_synapse(self, weight):
        layer = FullyConnectedLayer(self.input_dims, self.output_dims)
        noise = torch.rand(layer.weights.shape, generator=self._generator, dtype=dtype, device=device)
        return layer.set_weights(weight * (noise - 1))

    def new_bias(self, dims, weight):
        return BiasLayer(dims).set_weights(lambda i: weight)

    def add_term(self, power):
        self.corrections.append(Correction(power, self.new_bias(self.output_dims, 1.0), self.new_synapse(0.0)))
        self.invalidate()
        return self

    def next_phase(self):
        return self.add_term(len(self.corrections) + 1.0)

    def _build_head(self):
        if self.alpha is None:
            self.alpha = self.new_synapse(1e-8)
            self.alpha_bias = self.new_bias(self.input_dims, 0.0)
        self.reset()
        input_node = self.get_input(0)
        terms = [self.add(self.alpha, self.add(self.alpha_bias, input_node))]
        for c in self.corrections:
            terms.append(c.add(self, input_node))
        if len(terms) == 1:
            return terms[0]
        return self.add(ProductInputsLayer(), *terms)

    def _json_fields(self):
        json = super()._json_fields()
        json.update({
            "inputDims": list(self.input_dims),
            "outputDims": list(self.output_dims),
            "alpha": _layer_ref(self.alpha),
            "alphaBias": _layer_ref(self.alpha_bias),
            "corrections": [c.to_json() for c in self.corrections],
        })
        return json

    @classmethod
    def _from_json(cls, json):
        network = cls(json["inputDims"], json["outputDims"])
        network._load_graph(json)
        network.alpha = network._lookup(json, "alpha")
        network.alpha_bias = network._lookup(json, "alphaBias")
        network.corrections = [Correction(c["power"], network._lookup(c, "bias"), network._lookup(c, "factor"))
                               for c in json.get("corrections", [])]
        return network


class NodeMode(enum.Enum):
    LINEAR = "Linear"
    FUZZY = "Fuzzy"
    BILINEAR = "Bilinear"
    FINAL = "Final"


class SigmoidTreeNetwork(EvolvingNetwork):
    """
    A linear model that grows into a tree of sigmoid gated experts:

    LINEAR:   alpha(alphaBias(x))
    FUZZY:    alpha(alphaBias(x)) * 2 sigmoid(g)
    BILINEAR: alpha(alphaBias(x)) * sigmoid(g) + beta(betaBias(x)) * sigmoid(-g)
    FINAL:    as BILINEAR with alpha and beta replaced by child SigmoidTreeNetworks

    with g = gate(gateBias(x)). Every transition keeps the current output: the gate
    starts at zero and beta starts as a copy of alpha.
    """
    __slots__ = ('mode', 'alpha', 'alpha_bias', 'beta', 'beta_bias', 'gate', 'gate_bias',
                 'skip_fuzzy', 'skip_child_stage', 'multigate')

    def __init__(self, alpha, alpha_bias, *, skip_fuzzy=False, skip_child_stage=True, name=None):
        super().__init__(1, name=name)
        self.mode = NodeMode.LINEAR
        self.alpha = alpha
        self.alpha_bias = alpha_bias
        self.beta = None
        self.beta_bias = None
        self.gate = None
        self.gate_bias = None
        self.skip_fuzzy = skip_fuzzy
        self.skip_child_stage = skip_child_stage
        self.multigate = False

    def _gate_node(self, input_node):
        self.gate.set_frozen(False)
        if self.gate_bias is None:
            return self.add(self.gate, input_node)
        self.gate_bias.set_frozen(False)
        return self.add(self.gate, self.add(self.gate_bias, input_node))

    def _expert(self, layer, bias, input_node):
        layer.set_frozen(False)
        if bias is None:
            return self.add(layer, input_node)
        bias.set_frozen(False)
        return self.add(layer, self.add(bias, input_node))

    @staticmethod
    def _fixed(scale):
        return LinearActivationLayer(scale, 0.0).freeze()

    def _build_head(self):
        self.reset()
        input_node = self.get_input(0)
        if self.mode is NodeMode.LINEAR:
            return self._expert(self.alpha, self.alpha_bias, input_node)
        gate_node = self._gate_node(input_node)
        if self.mode is NodeMode.FUZZY:
            return self.add(ProductInputsLayer(),
                            self._expert(self.alpha, self.alpha_bias, input_node),
                            self.add(self._fixed(2.0), self.add(SigmoidActivationLayer(balanced=False), gate_node)))
        if self.mode is NodeMode.BILINEAR:
            alpha_node = self._expert(self.alpha, self.alpha_bias, input_node)
            beta_node = self._expert(self.beta, self.beta_bias, input_node)
        else:
            # children carry their own bias layers
            alpha_node = self.add(self.alpha, input_node)
            beta_node = self.add(self.beta, input_node)
        return self.add(SumInputsLayer(),
                        self.add(ProductInputsLayer(), alpha_node,
                                 self.add(SigmoidActivationLayer(balanced=False), gate_node)),
                        self.add(ProductInputsLayer(), beta_node,
                                 self.add(SigmoidActivationLayer(balanced=False),
                                          self.add(self._fixed(-1.0), gate_node))))

    def next_phase(self):
        mode = self.mode
        if mode is NodeMode.LINEAR:
            gate_dims = self.alpha.output_dims if self.multigate else (1,)
            self.gate = FullyConnectedLayer(self.alpha.input_dims, gate_dims)
            self.gate_bias = BiasLayer(self.alpha.input_dims)
            self.mode = NodeMode.FUZZY
            if self.skip_fuzzy:
                self.next_phase()
        elif mode is NodeMode.FUZZY:
            self.beta = FullyConnectedLayer(self.alpha.input_dims, self.alpha.output_dims)
            self.beta_bias = BiasLayer(self.alpha_bias.bias.shape)
            self._copy_state(self.alpha, self.beta)
            self._copy_state(self.alpha_bias, self.beta_bias)
            self.mode = NodeMode.BILINEAR
        elif mode is NodeMode.BILINEAR:
            self.alpha = self._child(self.alpha, self.alpha_bias)
            self.beta = self._child(self.beta, self.beta_bias)
            self.alpha_bias = None
            self.beta_bias = None
            self.mode = NodeMode.FINAL
        else:
            self.alpha.next_phase()
            self.beta.next_phase()
        self.invalidate()
        logger.info("%s: %s -> %s", self.name, mode.value, self.mode.value)
        return self

    def _child(self, layer, bias):
        child = SigmoidTreeNetwork(layer, bias, skip_fuzzy=self.skip_fuzzy, skip_child_stage=self.skip_child_stage)
        if self.skip_child_stage:
            child.next_phase()
        return child

    @staticmethod
    def _copy_state(source, target):
        for src, dst in zip(source.state(), target.state()):
            dst.copy_(src)

    def _json_fields(self):
        json = super()._json_fields()
        json.update({
            "mode": self.mode.value,
            "alpha": _layer_ref(self.alpha),
            "alphaBias": _layer_ref(self.alpha_bias),
            "beta": _layer_ref(self.beta),
            "betaBias": _layer_ref(self.beta_bias),
            "gate": _layer_ref(self.gate),
            "gateBias": _layer_ref(self.gate_bias),
            "skipFuzzy": self.skip_fuzzy,
            "skipChildStage": self.skip_child_stage,
        })
        return json

    @classmethod
    def _from_json(cls, json):
        network = cls(None, None, skip_fuzzy=json.get("skipFuzzy", False),
                      skip_child_stage=json.get("skipChildStage", True))
        network._load_graph(json)
        network.mode = NodeMode(json["mode"])
        for attr, key in (('alpha', "alpha"), ('alpha_bias', "alphaBias"), ('beta', "beta"),
                          ('beta_bias', "betaBias"), ('gate', "gate"), ('gate_bias', "gateBias")):
            setattr(network, attr, network._lookup(json, key))
        return network



def train_reconstruction(student, data, monitor=None, *, sample_size=None, l1=0.0, l2=0.0, max_iterations=100,
                         timeout=600, end_fitness=-math.inf, orientation=None, line_search=None, seed=None):
    """
    Trains `student` to reproduce its input: mean squared error between student(x) and x
    over the rows of `data`, optionally on a random subset of `sample_size` rows and with
    l1 / l2 weight penalties.
    """
    rows = [(x, x) for x in data]
    network = SimpleLossNetwork(student, MeanSqLossLayer())
    if sample_size is not None and sample_size < len(rows):
        trainable = SampledArrayTrainable(rows, network, sample_size, seed=seed)
    else:
        trainable = ArrayTrainable(rows, network)
    if l1 or l2:
        trainable = L12Normalizer(trainable, l1, l2)
    if orientation is None:
        orientation = LBFGS(min_history=5, max_history=35)
    if line_search is None:
        line_search = ArmijoWolfeSearch(alpha=1e-4, c2=0.9)
    trainer = IterativeTrainer(trainable, orientation, lambda _: line_search, monitor, max_iterations=max_iterations,
                               timeout=timeout, terminate_threshold=end_fitness, seed=seed)
    return trainer.run()


class AutoencoderNetwork:
    """
    One autoencoder stage between `outer_dims` and `inner_dims`:

    encoder: noise(x) -> W -> bias -> relu -> dropout
    decoder: W' -> bias -> relu

    W' starts as a copy of W^T. Gaussian input noise and dropout on the code only act
    in training mode.
    """
    __slots__ = ('outer_dims', 'inner_dims', 'noise', 'dropout', 'input_noise', 'encoder_synapse', 'encoder_bias',
                 'encoded_noise', 'decoder_synapse', 'decoder_bias', 'encoder', 'decoder')

    def __new__(cls, outer_dims, inner_dims, *, noise=0.0, dropout=0.0, seed=None):
        assert noise >= 0
        assert 0.0 <= dropout <= 1.0
        return super().__new__(cls)

    def __init__(self, outer_dims, inner_dims, *, noise=0.0, dropout=0.0, seed=None):
        self.outer_dims = _dims(outer_dims)
        self.inner_dims = _dims(inner_dims)
        self.noise = noise
        self.dropout = dropout
        generator = torch.Generator(device=device)
        if seed is None:
            generator.seed()
        else:
            generator.manual_seed(seed)
        self.input_noise = GaussianNoiseLayer(noise, seed=seed)
        self.encoder_synapse = FullyConnectedLayer(self.outer_dims, self.inner_dims).randomize(generator)
        self.encoder_bias = BiasLayer(self.inner_dims)
        self.encoded_noise = DropoutNoiseLayer(dropout, seed=None if seed is None else seed + 1)
        self.decoder_synapse = self.encoder_synapse.transpose()
        self.decoder_bias = BiasLayer(self.outer_dims)
        self.encoder = PipelineNetwork(self.input_noise, self.encoder_synapse, self.encoder_bias,
                                       ReLuActivationLayer(), self.encoded_noise, name="encoder")
        self.decoder = PipelineNetwork(self.decoder_synapse, self.decoder_bias, ReLuActivationLayer(),
                                       name="decoder")

    def retie(self):
        """Resets the decoder weights to the transpose of the current encoder weights."""
        self.decoder_synapse.weights.copy_(self.encoder_synapse.weights.transpose(0, 1))
        return self

    def training_mode(self):
        self.input_noise.value = self.noise
        self.encoded_noise.value = self.dropout

    def run_mode(self):
        self.input_noise.value = 0.0
        self.encoded_noise.value = 0.0

    def echo(self):
        return PipelineNetwork(self.encoder, self.decoder, name="echo")

    def encode(self, data):
        """The code of every row of `data`, a batch of shape (n, *outer_dims), as a new tensor."""
        inp = ConstantResult(TensorList.from_values(data))
        try:
            out = self.encoder.eval(inp)
            try:
                return out.data.data.clone()
            finally:
                out.free()
        finally:
            inp.free()

    def train(self, data, monitor=None, **options):
        return train_reconstruction(self.echo(), data, monitor, **options)


class StackedAutoencoder:
    """
    Builds a deep autoencoder one stage at a time. Each new stage learns to reconstruct
    the code of the stage below it; tune() then trains the whole stack end to end on
    the original data. Keyword `training` options go to every train_reconstruction() call.
    """

    def __init__(self, data, *, noise=0.0, dropout=0.0, seed=None, **training):
        data = torch.as_tensor(data, dtype=dtype, device=device)
        self.dimensions = [tuple(data.shape[1:])]
        self.layers = []
        self.representations = [data]
        self.noise = noise
        self.dropout = dropout
        self.seed = seed
        self.training = training

    def get_encoder(self):
        return PipelineNetwork(*[layer.encoder for layer in self.layers], name="encoder")

    def get_decoder(self):
        return PipelineNetwork(*[layer.decoder for layer in reversed(self.layers)], name="decoder")

    def echo(self):
        return PipelineNetwork(self.get_encoder(), self.get_decoder(), name="echo")

    def training_mode(self):
        for layer in self.layers:
            layer.training_mode()

    def run_mode(self):
        for layer in self.layers:
            layer.run_mode()

    def grow_layer(self, dims, monitor=None, *, pretraining_size=None, pretraining_iterations=10):
        """
        Adds a stage encoding the current top representation into `dims`. The first stage
        is pretrained on a random subset of 100 rows unless `pretraining_size` says
        otherwise; the decoder is then re-tied to the encoder and the stage trained on
        every row.
        """
        self.training_mode()
        seed = None if self.seed is None else self.seed + 2 * len(self.layers)
        layer = AutoencoderNetwork(self.dimensions[-1], dims, noise=self.noise, dropout=self.dropout,
                                   seed=seed)
        data = self.representations[-1]
        self.dimensions.append(layer.inner_dims)
        self.layers.append(layer)
        if pretraining_size is None:
            pretraining_size = 100 if len(self.layers) == 1 else 0
        if pretraining_size > 0 and pretraining_iterations > 0:
            generator = torch.Generator(device=device)
            if seed is None:
                generator.seed()
            else:
                generator.manual_seed(seed)
            subset = data[torch.randperm(data.shape[0], generator=generator, device=device)[:pretraining_size]]
            options = dict(self.training, max_iterations=pretraining_iterations)
            layer.train(subset, monitor, **options)
            layer.retie()
        result = layer.train(data, monitor, **self.training)
        logger.info("Stage %d %s -> %s trained: %s", len(self.layers), layer.outer_dims, layer.inner_dims, result)
        self.run_mode()
        self.representations.append(layer.encode(data))
        return layer

    def tune(self, monitor=None):
        self.training_mode()
        try:
            return train_reconstruction(self.echo(), self.representations[0], monitor, **self.training)
        finally:
            self.run_mode()
