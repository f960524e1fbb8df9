import math
import threading
import torch
from .config import device, dtype
from .layer import Layer, Result, weights_to_json, weights_from_json
from .tensor import TensorList


def _dims(dims):
    if isinstance(dims, int):
        return (dims,)
    return tuple(int(d) for d in dims)


def _passback(input_result, buffer, values):
    """Hands a freshly computed gradient to `input_result` and releases it afterwards."""
    if values._base is not None or not values.is_contiguous():
        # views may alias live buffers, only exclusively owned storage goes to the pool
        values = values.clone(memory_format=torch.contiguous_format)
    delta = TensorList.wrap(values, owned=True)
    try:
        input_result.accumulate(buffer, delta)
    finally:
        delta.free()


class FullyConnectedLayer(Layer):
    """Applies y = x W with W of shape (prod(input_dims), prod(output_dims))."""
    __slots__ = ('input_dims', 'output_dims', 'weights')
    arity = 1

    def __new__(cls, input_dims, output_dims, **kwargs):
        assert all(d > 0 for d in _dims(input_dims))
        assert all(d > 0 for d in _dims(output_dims))
        return super().__new__(cls)

    def __init__(self, input_dims, output_dims, *, name=None):
        super().__init__(name=name)
        self.input_dims = _dims(input_dims)
        self.output_dims = _dims(output_dims)
        self.weights = torch.zeros(math.prod(self.input_dims), math.prod(self.output_dims), dtype=dtype, device=device)

    def set_weights(self, values):
        """Sets weights from a callable (called once per element) or from array-like values."""
        if callable(values):
            flat = self.weights.view(-1)
            for i in range(flat.numel()):
                flat[i] = values()
        else:
            self.weights.copy_(torch.as_tensor(values, dtype=dtype, device=device).reshape(self.weights.shape))
        return self

    def randomize(self, generator=None, gain=1.0):
        # xavier uniform bound
        fan_in, fan_out = self.weights.shape
        bound = gain * math.sqrt(6.0 / (fan_in + fan_out))
        self.weights.uniform_(-bound, bound, generator=generator)
        return self

    def transpose(self):
        """A new layer from output_dims back to input_dims holding a copy of W^T."""
        layer = FullyConnectedLayer(self.output_dims, self.input_dims)
        layer.weights.copy_(self.weights.transpose(0, 1))
        return layer

    def state(self):
        return [self.weights]

    def eval(self, *inputs):
        self.check_arity(len(inputs))
        input_result = inputs[0]
        input_data = input_result.data
        n = input_data.length()
        x = input_data.data.reshape(n, -1)
        output = TensorList.empty(n, self.output_dims)
        torch.matmul(x, self.weights, out=output.data.view(n, -1))
        return Result(output, self._create_backward(input_result, x), retained=(input_result.add_ref(),))

    def _create_backward(self, input_result, x):
        weights = self.weights
        input_shape = input_result.data.data.shape

        def _backward(buffer, delta):
            grad_output = delta.data.reshape(x.shape[0], -1)
            self._accumulate_parameter(buffer, weights, torch.matmul(x.transpose(0, 1), grad_output))
            if input_result.is_alive:
                _passback(input_result, buffer, torch.matmul(grad_output, weights.transpose(0, 1)).reshape(input_shape))

        return _backward

    def _json_fields(self):
        return {"inputDims": list(self.input_dims), "outputDims": list(self.output_dims),
                "weights": weights_to_json(self.weights)}

    @classmethod
    def _from_json(cls, json):
        layer = cls(json["inputDims"], json["outputDims"])
        layer.weights.copy_(weights_from_json(json["weights"]))
        return layer


class BiasLayer(Layer):
    """Adds a learned bias of shape `dims` to every sample."""
    __slots__ = ('bias',)
    arity = 1

    def __init__(self, dims, *, name=None):
        super().__init__(name=name)
        self.bias = torch.zeros(_dims(dims), dtype=dtype, device=device)

    def set_weights(self, values):
        if callable(values):
            flat = self.bias.view(-1)
            for i in range(flat.numel()):
                flat[i] = values(i)
        else:
            self.bias.copy_(torch.as_tensor(values, dtype=dtype, device=device).reshape(self.bias.shape))
        return self

    def state(self):
        return [self.bias]

    def eval(self, *inputs):
        self.check_arity(len(inputs))
        input_result = inputs[0]
        input_data = input_result.data
        n = input_data.length()
        output = TensorList.empty(n, input_data.dimensions)
        torch.add(input_data.data, self.bias.reshape(1, *input_data.dimensions), out=output.data)
        bias = self.bias

        def _backward(buffer, delta):
            self._accumulate_parameter(buffer, bias, delta.data.sum(dim=0))
            if input_result.is_alive:
                input_result.accumulate(buffer, delta)

        return Result(output, _backward, retained=(input_result.add_ref(),))

    def _json_fields(self):
        return {"bias": weights_to_json(self.bias)}

    @classmethod
    def _from_json(cls, json):
        bias = weights_from_json(json["bias"])
        layer = cls(tuple(bias.shape))
        layer.bias.copy_(bias)
        return layer


class LinearActivationLayer(Layer):
    """y = scale * x + bias with (scale, bias) as trainable weights."""
    __slots__ = ('weights',)
    arity = 1

    def __init__(self, scale=1.0, bias=0.0, *, name=None):
        super().__init__(name=name)
        self.weights = torch.tensor([scale, bias], dtype=dtype, device=device)

    @property
    def scale(self):
        return float(self.weights[0])

    @property
    def bias(self):
        return float(self.weights[1])

    def state(self):
        return [self.weights]

    def eval(self, *inputs):
        self.check_arity(len(inputs))
        input_result = inputs[0]
        x = input_result.data.data
        output = TensorList.empty(x.shape[0], x.shape[1:])
        torch.add(x * self.weights[0], self.weights[1], out=output.data)
        weights = self.weights

        def _backward(buffer, delta):
            g = delta.data
            self._accumulate_parameter(buffer, weights, torch.stack([(g * x).sum(), g.sum()]))
            if input_result.is_alive:
                _passback(input_result, buffer, g * weights[0])

        return Result(output, _backward, retained=(input_result.add_ref(),))

    def _json_fields(self):
        return {"scale": self.scale, "bias": self.bias}

    @classmethod
    def _from_json(cls, json):
        return cls(json["scale"], json["bias"])


class SigmoidActivationLayer(Layer):
    """Logistic sigmoid; balanced=True maps onto (-1, 1) as 2 * sigmoid(x) - 1."""
    __slots__ = ('balanced',)
    arity = 1

    def __init__(self, balanced=True, *, name=None):
        super().__init__(name=name)
        self.balanced = balanced

    def eval(self, *inputs):
        self.check_arity(len(inputs))
        input_result = inputs[0]
        x = input_result.data.data
        sigma = torch.sigmoid(x)
        output = TensorList.empty(x.shape[0], x.shape[1:])
        if self.balanced:
            torch.sub(sigma * 2, 1, out=output.data)
        else:
            output.data.copy_(sigma)
        factor = 2.0 if self.balanced else 1.0

        def _backward(buffer, delta):
            if input_result.is_alive:
                _passback(input_result, buffer, delta.data * sigma * (1 - sigma) * factor)

        return Result(output, _backward, retained=(input_result.add_ref(),))

    def _json_fields(self):
        return {"balanced": self.balanced}

    @classmethod
    def _from_json(cls, json):
        return cls(json.get("balanced", True))


class ReLuActivationLayer(Layer):
    __slots__ = ()
    arity = 1

    def eval(self, *inputs):
        self.check_arity(len(inputs))
        input_result = inputs[0]
        x = input_result.data.data
        output = TensorList.empty(x.shape[0], x.shape[1:])
        torch.clamp(x, min=0.0, out=output.data)
        mask = (x > 0).to(dtype)

        def _backward(buffer, delta):
            if input_result.is_alive:
                _passback(input_result, buffer, delta.data * mask)

        return Result(output, _backward, retained=(input_result.add_ref(),))


class NthPowerActivationLayer(Layer):
    """y = x ** power, element wise. Negative inputs with fractional powers give NaN."""
    __slots__ = ('power',)
    arity = 1

    def __init__(self, power=1.0, *, name=None):
        super().__init__(name=name)
        self.power = power

    def eval(self, *inputs):
        self.check_arity(len(inputs))
        input_result = inputs[0]
        x = input_result.data.data
        power = self.power
        output = TensorList.empty(x.shape[0], x.shape[1:])
        torch.pow(x, power, out=output.data)

        def _backward(buffer, delta):
            if input_result.is_alive:
                _passback(input_result, buffer, delta.data * power * torch.pow(x, power - 1))

        return Result(output, _backward, retained=(input_result.add_ref(),))

    def _json_fields(self):
        return {"power": self.power}

    @classmethod
    def _from_json(cls, json):
        return cls(json["power"])


class SoftmaxActivationLayer(Layer):
    """Softmax over all elements of each sample."""
    __slots__ = ()
    arity = 1

    def eval(self, *inputs):
        self.check_arity(len(inputs))
        input_result = inputs[0]
        x = input_result.data.data
        n = x.shape[0]
        output = TensorList.empty(n, x.shape[1:])
        output.data.view(n, -1).copy_(torch.softmax(x.reshape(n, -1), dim=1))
        y = output.data.reshape(n, -1)

        def _backward(buffer, delta):
            if input_result.is_alive:
                g = delta.data.reshape(n, -1)
                grad = y * (g - (g * y).sum(dim=1, keepdim=True))
                _passback(input_result, buffer, grad.reshape(x.shape))

        return Result(output, _backward, retained=(input_result.add_ref(),))


class SumInputsLayer(Layer):
    """Element wise sum of any number of equally shaped inputs."""
    __slots__ = ()

    def eval(self, *inputs):
        if not inputs:
            raise ValueError("SumInputsLayer needs at least one input")
        first = inputs[0].data
        output = first.copy()
        for r in inputs[1:]:
            output.add_in_place(r.data)

        def _backward(buffer, delta):
            for r in inputs:
                if r.is_alive:
                    r.accumulate(buffer, delta)

        return Result(output, _backward, retained=tuple(r.add_ref() for r in inputs))


class ProductInputsLayer(Layer):
    """
    Element wise product of its inputs. Inputs holding a single element per sample are
    broadcast against the others.
    """
    __slots__ = ()

    def eval(self, *inputs):
        if not inputs:
            raise ValueError("ProductInputsLayer needs at least one input")
        n = inputs[0].data.length()
        flats = [r.data.data.reshape(n, -1) for r in inputs]
        widest = max(range(len(inputs)), key=lambda i: flats[i].shape[1])
        out_dims = inputs[widest].data.dimensions
        product = flats[0]
        for f in flats[1:]:
            product = product * f
        output = TensorList.empty(n, out_dims)
        output.data.view(n, -1).copy_(product)

        def _backward(buffer, delta):
            g = delta.data.reshape(n, -1)
            for i, r in enumerate(inputs):
                if not r.is_alive:
                    continue
                others = g
                for j, f in enumerate(flats):
                    if j != i:
                        others = others * f
                if flats[i].shape[1] == 1 and others.shape[1] != 1:
                    others = others.sum(dim=1, keepdim=True)
                _passback(r, buffer, others.reshape(r.data.data.shape))

        return Result(output, _backward, retained=tuple(r.add_ref() for r in inputs))


class SumReducerLayer(Layer):
    """Sums every element of every input into one value per sample."""
    __slots__ = ()

    def eval(self, *inputs):
        if not inputs:
            raise ValueError("SumReducerLayer needs at least one input")
        n = inputs[0].data.length()
        output = TensorList.zeros(n, (1,))
        for r in inputs:
            output.data[:, 0].add_(r.data.data.reshape(n, -1).sum(dim=1))

        def _backward(buffer, delta):
            g = delta.data.reshape(n, 1)
            for r in inputs:
                if r.is_alive:
                    shape = r.data.data.shape
                    _passback(r, buffer, g.expand(n, math.prod(shape[1:])).reshape(shape))

        return Result(output, _backward, retained=tuple(r.add_ref() for r in inputs))


class _NoiseLayer(Layer):
    """
    Base for stochastic layers. Every eval() draws fresh noise from the seeded generator;
    the draw is captured by the returned Result and reused by its backward pass.
    """
    __slots__ = ('value', 'seed', '_generator', '_lock')
    arity = 1

    def __init__(self, value, *, seed=None, name=None):
        super().__init__(name=name)
        self.value = value
        self._lock = threading.Lock()
        self.reseed(seed)

    def reseed(self, seed):
        self.seed = seed
        self._generator = torch.Generator(device=device)
        if seed is None:
            self._generator.seed()
        else:
            self._generator.manual_seed(seed)
        return self

    def _json_fields(self):
        return {"value": self.value, "seed": self.seed}

    @classmethod
    def _from_json(cls, json):
        return cls(json["value"], seed=json.get("seed"))


class GaussianNoiseLayer(_NoiseLayer):
    """Adds value * N(0, 1) noise."""
    __slots__ = ()

    def __init__(self, value=1.0, *, seed=None, name=None):
        super().__init__(value, seed=seed, name=name)

    def eval(self, *inputs):
        self.check_arity(len(inputs))
        input_result = inputs[0]
        x = input_result.data.data
        output = TensorList.empty(x.shape[0], x.shape[1:])
        with self._lock:
            torch.randn(x.shape, generator=self._generator, out=output.data)
        output.data.mul_(self.value).add_(x)

        def _backward(buffer, delta):
            if input_result.is_alive:
                input_result.accumulate(buffer, delta)

        return Result(output, _backward, retained=(input_result.add_ref(),))


class DropoutNoiseLayer(_NoiseLayer):
    """Zeroes each element with probability `value`."""
    __slots__ = ()

    def __init__(self, value=0.5, *, seed=None, name=None):
        assert 0.0 <= value <= 1.0
        super().__init__(value, seed=seed, name=name)

    def eval(self, *inputs):
        self.check_arity(len(inputs))
        input_result = inputs[0]
        x = input_result.data.data
        with self._lock:
            mask = (torch.rand(x.shape, generator=self._generator, dtype=dtype, device=device) >= self.value).to(dtype)
        output = TensorList.empty(x.shape[0], x.shape[1:])
        torch.mul(x, mask, out=output.data)

        def _backward(buffer, delta):
            if input_result.is_alive:
                _passback(input_result, buffer, delta.data * mask)

        return Result(output, _backward, retained=(input_result.add_ref(),))
