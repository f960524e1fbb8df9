"""Three gaussian blobs in the plane, classified by a 2 -> 16 -> 3 network.

Part 1 checks the hand written backward pass against torch autograd.
Part 2 trains with QQN on a growing sample and validates on held out rows.
Part 3 writes the trained network to json and reads it back.
"""

import json
import time
import torch
import torch.nn.functional as F
from deltaflow.config import dtype
from deltaflow.layer import ConstantResult, Layer
from deltaflow.layers import BiasLayer, FullyConnectedLayer, ReLuActivationLayer, SoftmaxActivationLayer
from deltaflow.losses import EntropyLossLayer
from deltaflow.monitor import TrainingMonitor
from deltaflow.network import PipelineNetwork, SimpleLossNetwork
from deltaflow.optimizers import QQN
from deltaflow.trainable import ArrayTrainable, SampledArrayTrainable
from deltaflow.tensor import TensorList
from deltaflow.trainer import TrainingPhase, ValidatingTrainer

CENTERS = torch.tensor([[0.0, 2.0], [-2.0, -1.0], [2.0, -1.0]], dtype=dtype)
generator = torch.Generator().manual_seed(7)


def make_rows(count):
    labels = torch.randint(0, 3, (count,), generator=generator)
    points = CENTERS[labels] + 0.8 * torch.randn(count, 2, dtype=dtype, generator=generator)
    one_hot = F.one_hot(labels, 3).to(dtype)
    return list(zip(points, one_hot))


train_rows = make_rows(600)
validation_rows = make_rows(200)

hidden = FullyConnectedLayer(2, 16).randomize(generator)
hidden_bias = BiasLayer(16)
output = FullyConnectedLayer(16, 3).randomize(generator)
output_bias = BiasLayer(3)
model = PipelineNetwork(hidden, hidden_bias, ReLuActivationLayer(), output, output_bias, SoftmaxActivationLayer(),
                        name="blobs")
loss_network = SimpleLossNetwork(model, EntropyLossLayer())

# Verifying Backward Pass with Torch
def torch_fitness(x, y, w1, b1, w2, b2):
    p = torch.softmax(torch.relu(x @ w1 + b1) @ w2 + b2, dim=1)
    return -(y * torch.log(p)).sum(dim=1).mean()


measured = ArrayTrainable(train_rows, loss_network).measure()
x = torch.stack([r[0] for r in train_rows])
y = torch.stack([r[1] for r in train_rows])
params = [p.clone().requires_grad_(True) for p in (hidden.weights, hidden_bias.bias, output.weights, output_bias.bias)]
with torch.enable_grad():
    fitness_torch = torch_fitness(x, y, *params)
    fitness_torch.backward()
print(f"fitness: deltaflow {measured.fitness:.8f}, torch {float(fitness_torch):.8f}")


def compare_grads(layer, torch_param, name):
    grad = measured.delta[layer.id].delta if layer.id in measured.delta else None
    if grad is None or torch_param.grad is None:
        print(f"{name}: One of the gradients is None.")
    else:
        equal = torch.allclose(grad, torch_param.grad, rtol=1e-6, atol=1e-10)
        print(f"{name}: {'Same' if equal else 'Different'}")


for layer, param, name in zip((hidden, hidden_bias, output, output_bias), params,
                              ("hidden.weights", "hidden.bias", "output.weights", "output.bias")):
    compare_grads(layer, param, name)

# Training
class PrintingMonitor(TrainingMonitor):
    def log(self, message):
        print(message)

    def on_step_complete(self, step):
        if step.iteration % 10 == 0:
            print(step)


phase = TrainingPhase(SampledArrayTrainable(train_rows, loss_network, 50, seed=1), QQN(), name="qqn")
trainer = ValidatingTrainer(phase, ArrayTrainable(validation_rows, loss_network), PrintingMonitor(),
                            min_training_size=50, max_training_size=len(train_rows), max_epochs=30, timeout=60,
                            seed=1)
st = time.time()
result = trainer.run()
et = time.time()
print(f"{result} in {et - st:.2f} seconds")


def accuracy(network, rows):
    features = torch.stack([r[0] for r in rows])
    labels = torch.stack([r[1] for r in rows]).argmax(dim=1)
    inp = ConstantResult(TensorList.from_values(features))
    out = network.eval(inp)
    try:
        predicted = out.data.data.argmax(dim=1)
        correct = int((predicted == labels).sum())
    finally:
        out.free()
        inp.free()
    return correct / len(rows)


print(f"validation accuracy {accuracy(model, validation_rows):.3f}")

# Round trip through json
descriptor = json.dumps(model.to_json())
restored = Layer.from_json(json.loads(descriptor))
print(f"restored network accuracy {accuracy(restored, validation_rows):.3f} ({len(descriptor)} bytes of json)")
