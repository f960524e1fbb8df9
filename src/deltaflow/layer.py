import uuid
import logging
import torch
from .config import device, dtype
from .errors import StructuralError
from .tensor import ReferenceCounted

logger = logging.getLogger(__name__)

# class name -> Layer subclass, used to rebuild layers from their json descriptor
_LAYER_CLASSES = {}


class Result(ReferenceCounted):
    """
    The output of one layer evaluation: forward data plus the closure that pushes a
    gradient back through the layer.

    accumulate(buffer, delta) borrows `delta`; an accumulator that needs it after
    returning must add_ref() it. Objects in `retained` (typically the input data the
    backward pass reads) are released together with the result.
    """
    __slots__ = ('_data', '_accumulator', '_retained')

    def __init__(self, data, accumulator=None, retained=()):
        super().__init__()
        self._data = data
        self._accumulator = accumulator
        self._retained = tuple(retained)

    @property
    def data(self):
        self.assert_alive()
        return self._data

    @property
    def is_alive(self):
        return self._accumulator is not None

    def accumulate(self, buffer, delta):
        self.assert_alive()
        if self._accumulator is not None:
            self._accumulator(buffer, delta)

    def _free(self):
        self._data.free()
        for r in self._retained:
            r.free()
        self._retained = ()
        self._accumulator = None


class ConstantResult(Result):
    """Input data that does not take a gradient. Takes ownership of `data`."""
    __slots__ = ()

    def __init__(self, data):
        super().__init__(data)


class MutableResult(Result):
    """Input data whose gradient is collected in the DeltaSet under `key`."""
    __slots__ = ('key',)

    def __init__(self, data, key=None):
        self.key = key if key is not None else uuid.uuid4()
        target = data.data

        def _accumulate(buffer, delta):
            buffer.get(self.key, target).accumulate(delta.data)

        super().__init__(data, _accumulate)


class Layer:
    """
    Base class of every differentiable operator. A layer owns zero or one parameter
    tensor; its gradient is stored in the DeltaSet under the layer id unless the layer
    is frozen. Gradients always flow through to the inputs.
    """
    __slots__ = ('id', 'name', 'frozen', '__weakref__')
    # expected number of inputs, None for any number
    arity = None

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        _LAYER_CLASSES[cls.__name__] = cls

    def __init__(self, *, name=None):
        self.id = uuid.uuid4()
        self.name = name if name is not None else type(self).__name__
        self.frozen = False

    def eval(self, *inputs):
        raise NotImplementedError("Subclasses of Layer must implement eval.")

    def __call__(self, *inputs):
        return self.eval(*inputs)

    def eval_tensors(self, *batches):
        """Evaluates on constant TensorLists; the caller keeps ownership of `batches`."""
        inputs = [ConstantResult(b.add_ref()) for b in batches]
        try:
            return self.eval(*inputs)
        finally:
            for r in inputs:
                r.free()

    def check_arity(self, count):
        if self.arity is not None and count != self.arity:
            raise StructuralError(f"{self.name} takes {self.arity} input(s), got {count}")

    def state(self):
        """The parameter tensors of this layer, updated in place by training."""
        return []

    def freeze(self):
        return self.set_frozen(True)

    def set_frozen(self, frozen):
        self.frozen = frozen
        return self

    def layers_by_id(self):
        return {self.id: self}

    def _accumulate_parameter(self, buffer, weights, gradient):
        if not self.frozen:
            buffer.get(self.id, weights).accumulate(gradient)

    def to_json(self):
        json = {
            "class": type(self).__name__,
            "id": str(self.id),
            "name": self.name,
            "frozen": self.frozen,
        }
        json.update(self._json_fields())
        return json

    def _json_fields(self):
        return {}

    @classmethod
    def _from_json(cls, json):
        return cls()

    @staticmethod
    def from_json(json):
        cls = _LAYER_CLASSES.get(json.get("class"))
        if cls is None:
            raise StructuralError(f"Unknown layer class {json.get('class')!r}")
        layer = cls._from_json(json)
        layer.id = uuid.UUID(json["id"])
        layer.name = json.get("name", layer.name)
        # own flag only, children of a network carry their own
        layer.frozen = json.get("frozen", False)
        return layer

    def copy(self):
        return Layer.from_json(self.to_json())

    def __repr__(self):
        return f"{type(self).__name__}(name={self.name!r}, id={self.id})"


def weights_to_json(weights):
    return {"dims": list(weights.shape), "values": weights.reshape(-1).tolist()}


def weights_from_json(json):
    return torch.tensor(json["values"], dtype=dtype, device=device).reshape(json["dims"])
