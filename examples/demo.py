#!/usr/bin/env python3
"""
TableGrad Demo: Reverse-Mode Autograd Driven by a Derivative Table
==================================================================

This demo shows the complete workflow:
1. Compute gradients of scalar expressions
2. Inspect the backward graph an expression records
3. Differentiate gradients again (double backward)
4. Train a small network on array operations
5. Look at what the derivative table declares

Run: python examples/demo.py
"""

from typing import List, Tuple

import matplotlib.pyplot as plt
import numpy as np

from tablegrad import (
    NotImplementedGradient,
    Variable,
    default_registry,
    draw_graph,
    grad,
    no_grad,
    ops,
    override,
)


def make_moons(
    n_samples: int = 100,
    noise: float = 0.1,
    seed: int = 42
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Generate the classic 'moons' dataset for binary classification.

    Args:
        n_samples: Total number of samples.
        noise: Standard deviation of Gaussian noise.
        seed: Random seed for reproducibility.

    Returns:
        X: Features array of shape (n_samples, 2)
        y: Labels array of shape (n_samples, 1) with values -1 or 1
    """
    rng = np.random.default_rng(seed)
    n_each = n_samples // 2

    theta = np.linspace(0, np.pi, n_each)
    top = np.column_stack([np.cos(theta), np.sin(theta)])
    bottom = np.column_stack([1 - np.cos(theta), 0.5 - np.sin(theta)])

    X = np.vstack([top, bottom]) + rng.normal(scale=noise, size=(2 * n_each, 2))
    y = np.array([1.0] * n_each + [-1.0] * n_each).reshape(-1, 1)
    return X, y


class TinyNet:
    """Two tanh layers and a linear output, stored as plain Variables."""

    def __init__(self, hidden: int = 16, seed: int = 0) -> None:
        rng = np.random.default_rng(seed)

        def param(*shape):
            return Variable(rng.normal(scale=1 / np.sqrt(shape[0]), size=shape), requires_grad=True)

        self.w1, self.b1 = param(2, hidden), Variable(np.zeros(hidden), requires_grad=True)
        self.w2, self.b2 = param(hidden, hidden), Variable(np.zeros(hidden), requires_grad=True)
        self.w3, self.b3 = param(hidden, 1), Variable(np.zeros(1), requires_grad=True)

    def parameters(self) -> List[Variable]:
        return [self.w1, self.b1, self.w2, self.b2, self.w3, self.b3]

    def __call__(self, x: Variable) -> Variable:
        h = (ops.matmul(x, self.w1) + self.b1).tanh()
        h = (ops.matmul(h, self.w2) + self.b2).tanh()
        return ops.matmul(h, self.w3) + self.b3


def hinge_loss(scores: Variable, y: Variable, model: TinyNet, alpha: float = 1e-4) -> Variable:
    data_loss = (1 - y * scores).relu().mean()
    reg_loss = sum((p * p).sum() for p in model.parameters()) * alpha
    return data_loss + reg_loss


def accuracy(model: TinyNet, X: np.ndarray, y: np.ndarray) -> float:
    with no_grad():
        scores = model(Variable(X)).data
    return float(np.mean((scores > 0) == (y > 0)))


def train(
    model: TinyNet,
    X: np.ndarray,
    y: np.ndarray,
    epochs: int = 100,
    lr: float = 0.5,
    verbose: bool = True
) -> List[float]:
    """
    Full-batch gradient descent.

    Returns:
        List of loss values per epoch.
    """
    inputs, targets = Variable(X), Variable(y)
    losses = []

    for epoch in range(epochs):
        loss = hinge_loss(model(inputs), targets, model)
        losses.append(loss.item())

        Variable.zero_grad_all(model.parameters())
        loss.backward()

        for p in model.parameters():
            p.data -= lr * p.grad.data

        if verbose and (epoch + 1) % 10 == 0:
            acc = accuracy(model, X, y)
            print(f"Epoch {epoch + 1:3d} | Loss: {loss.item():.4f} | Accuracy: {acc:.2%}")

    return losses


def plot_decision_boundary(model: TinyNet, X: np.ndarray, y: np.ndarray, title: str) -> None:
    x_min, x_max = X[:, 0].min() - 0.5, X[:, 0].max() + 0.5
    y_min, y_max = X[:, 1].min() - 0.5, X[:, 1].max() + 0.5
    xx, yy = np.meshgrid(np.linspace(x_min, x_max, 100), np.linspace(y_min, y_max, 100))

    with no_grad():
        Z = model(Variable(np.column_stack([xx.ravel(), yy.ravel()]))).data.reshape(xx.shape)

    plt.figure(figsize=(10, 8))
    plt.contourf(xx, yy, Z, levels=50, cmap='RdBu', alpha=0.8)
    plt.colorbar(label='Model output')
    plt.contour(xx, yy, Z, levels=[0], colors='black', linewidths=2)
    plt.scatter(X[:, 0], X[:, 1], c=y.ravel(), cmap='RdBu', edgecolors='black', s=50)
    plt.xlabel('x1')
    plt.ylabel('x2')
    plt.title(title)
    plt.tight_layout()
    plt.savefig('./decision_boundary.png', dpi=150)
    plt.close()
    print("Saved decision_boundary.png")


def plot_loss_curve(losses: List[float]) -> None:
    plt.figure(figsize=(10, 6))
    plt.plot(losses, 'b-', linewidth=2)
    plt.xlabel('Epoch')
    plt.ylabel('Loss')
    plt.title('Training Loss Curve')
    plt.grid(True, alpha=0.3)
    plt.tight_layout()
    plt.savefig('./loss_curve.png', dpi=150)
    plt.close()
    print("Saved loss_curve.png")


def demo_gradient_computation():
    """Basic gradients of scalar expressions."""
    print("=" * 60)
    print("DEMO 1: Automatic Gradient Computation")
    print("=" * 60)
    print()

    print("Computing gradients for f(x) = x² + 2x + 1 at x = 3")
    x = Variable(3.0, requires_grad=True, label='x')
    f = x ** 2 + 2 * x + 1
    f.backward()
    print(f"f(3) = {f.item()}")
    print(f"df/dx at x=3 = {x.grad.item()}")
    print("(Analytical: df/dx = 2x + 2 = 8)")
    print()

    print("Computing gradients for g(a,b) = tanh(a*b + a²)")
    a = Variable(0.5, requires_grad=True, label='a')
    b = Variable(-0.3, requires_grad=True, label='b')
    g = (a * b + a ** 2).tanh()
    g.backward()
    print(f"g(0.5, -0.3) = {g.item():.6f}")
    print(f"dg/da = {a.grad.item():.6f}")
    print(f"dg/db = {b.grad.item():.6f}")
    print()


def demo_backprop_visualization():
    """The backward graph recorded by a small expression."""
    print("=" * 60)
    print("DEMO 2: Backward Graph")
    print("=" * 60)
    print()

    x = Variable(np.array([1.0, 2.0]), requires_grad=True, label='x')
    y = Variable(np.array([3.0, -1.0]), requires_grad=True, label='y')
    out = (x * y + x).tanh().sum()

    print("Expression: out = sum(tanh(x*y + x))")
    print(draw_graph(out, format='text'))
    print()

    out.backward()
    print(f"d(out)/dx = {x.grad.numpy()}")
    print(f"d(out)/dy = {y.grad.numpy()}")
    print()


def demo_higher_order():
    """Differentiate tanh twice and plot all three curves."""
    print("=" * 60)
    print("DEMO 3: Higher-Order Gradients")
    print("=" * 60)
    print()

    xs = np.linspace(-4, 4, 200)
    x = Variable(xs, requires_grad=True)
    y = x.tanh()
    (dy,) = grad(y.sum(), x, create_graph=True)
    (d2y,) = grad(dy.sum(), x)

    t = np.tanh(xs)
    print(f"max |dy - (1 - tanh²)|       = {np.abs(dy.numpy() - (1 - t ** 2)).max():.2e}")
    print(f"max |d2y - (-2 tanh (1 - tanh²))| = {np.abs(d2y.numpy() + 2 * t * (1 - t ** 2)).max():.2e}")

    plt.figure(figsize=(10, 6))
    plt.plot(xs, y.numpy(), label='tanh(x)', linewidth=2)
    plt.plot(xs, dy.numpy(), label="tanh'(x)", linewidth=2)
    plt.plot(xs, d2y.numpy(), label="tanh''(x)", linewidth=2)
    plt.xlabel('x')
    plt.legend()
    plt.grid(True, alpha=0.3)
    plt.title('tanh and its derivatives via double backward')
    plt.tight_layout()
    plt.savefig('./tanh_derivatives.png', dpi=150)
    plt.close()
    print("Saved tanh_derivatives.png")
    print()


def demo_neural_network():
    """Train a small network on the moons dataset."""
    print("=" * 60)
    print("DEMO 4: Training a Neural Network")
    print("=" * 60)
    print()

    X, y = make_moons(n_samples=100, noise=0.15)
    model = TinyNet(hidden=16)
    n_params = sum(p.numel() for p in model.parameters())
    print(f"X shape: {X.shape}, parameters: {n_params}")
    print()

    print("Training for 100 epochs on 2 worker threads...")
    print("-" * 40)
    with override(num_workers=2):
        losses = train(model, X, y, epochs=100, lr=0.5)
    print("-" * 40)

    final_acc = accuracy(model, X, y)
    print(f"Final training accuracy: {final_acc:.2%}")
    plot_decision_boundary(model, X, y, f"Decision Boundary (Accuracy: {final_acc:.1%})")
    plot_loss_curve(losses)
    print()


def demo_derivative_table():
    """What the table declares, and what happens at a missing derivative."""
    print("=" * 60)
    print("DEMO 5: The Derivative Table")
    print("=" * 60)
    print()

    registry = default_registry()
    print(f"{len(registry)} operation overloads:")
    for kind, count in sorted(registry.summary().items()):
        print(f"  {kind:16s} {count}")
    print()

    x = Variable(np.array([1.5, 2.5]), requires_grad=True)
    try:
        ops.lgamma(x).sum().backward()
    except NotImplementedGradient as e:
        print(f"lgamma backward: {e}")
    print()


def main():
    """Run all demos."""
    demo_gradient_computation()
    demo_backprop_visualization()
    demo_higher_order()
    demo_neural_network()
    demo_derivative_table()

    print("=" * 60)
    print("ALL DEMOS COMPLETE")
    print("=" * 60)


if __name__ == "__main__":
    main()
