import torch
from .layer import Layer, Result
from .layers import _passback
from .tensor import TensorList


class MeanSqLossLayer(Layer):
    """Per sample mean of the squared difference between prediction (input 0) and label (input 1)."""
    __slots__ = ()
    arity = 2

    def eval(self, *inputs):
        self.check_arity(len(inputs))
        prediction, label = inputs
        n = prediction.data.length()
        input_t = prediction.data.data.reshape(n, -1)
        target_t = label.data.data.reshape(n, -1)
        if input_t.shape != target_t.shape:
            raise ValueError(f"Prediction {tuple(input_t.shape)} and label {tuple(target_t.shape)} differ in shape")
        diff = input_t - target_t
        output = TensorList.empty(n, (1,))
        torch.mean(diff * diff, dim=1, keepdim=True, out=output.data)
        return Result(output, self._create_backward(prediction, label, diff),
                      retained=(prediction.add_ref(), label.add_ref()))

    def _create_backward(self, prediction, label, diff):
        def _backward(buffer, delta):
            grad = MeanSqLossLayer._calculate_input_grad(diff, delta.data.reshape(-1, 1))
            if prediction.is_alive:
                _passback(prediction, buffer, grad.reshape(prediction.data.data.shape))
            if label.is_alive:
                _passback(label, buffer, (-grad).reshape(label.data.data.shape))
        return _backward

    @staticmethod
    def _calculate_input_grad(diff, grad_output):
        return grad_output * 2 * diff / diff.shape[1]


class EntropyLossLayer(Layer):
    """Per sample cross entropy -sum(label * log(prediction)); prediction is a probability vector."""
    __slots__ = ()
    arity = 2

    def eval(self, *inputs):
        self.check_arity(len(inputs))
        prediction, label = inputs
        n = prediction.data.length()
        input_t = prediction.data.data.reshape(n, -1)
        target_t = label.data.data.reshape(n, -1)
        if input_t.shape != target_t.shape:
            raise ValueError(f"Prediction {tuple(input_t.shape)} and label {tuple(target_t.shape)} differ in shape")
        log_p = torch.log(input_t)
        output = TensorList.empty(n, (1,))
        # 0 * log(0) counts as 0, anything else propagates unchanged
        terms = torch.where(target_t == 0, torch.zeros_like(log_p), target_t * log_p)
        torch.neg(terms.sum(dim=1, keepdim=True), out=output.data)
        return Result(output, self._create_backward(prediction, label, input_t, target_t, log_p),
                      retained=(prediction.add_ref(), label.add_ref()))

    def _create_backward(self, prediction, label, input_t, target_t, log_p):
        def _backward(buffer, delta):
            grad_output = delta.data.reshape(-1, 1)
            if prediction.is_alive:
                grad = EntropyLossLayer._calculate_input_grad(input_t, target_t, grad_output)
                _passback(prediction, buffer, grad.reshape(prediction.data.data.shape))
            if label.is_alive:
                _passback(label, buffer, (-grad_output * log_p).reshape(label.data.data.shape))
        return _backward

    @staticmethod
    def _calculate_input_grad(input_t, target_t, grad_output):
        return -grad_output * target_t / input_t
