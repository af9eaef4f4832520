#!/usr/bin/env python
"""Benchmark the overhead of routing layers through apply().

Compares gradplug.nn.Linear against torch.nn.Linear on the same shapes.

Metrics:
- Time per forward + backward pass (ms)
- Overhead percentage vs PyTorch baseline

Example:
    python -m benchmarks.op_overhead
"""

import time
import torch
import torch.nn as nn
from gradplug.nn import Linear


def benchmark_layer(layer, x, n_steps=200):
    """
    Benchmark forward and backward time of a layer.

    Args:
        layer: Module to benchmark
        x: Input batch
        n_steps: Number of passes to time

    Returns:
        Average pass time in milliseconds
    """
    # Warmup
    for _ in range(10):
        layer.zero_grad()
        layer(x).sum().backward()

    start = time.perf_counter()
    for _ in range(n_steps):
        layer.zero_grad()
        layer(x).sum().backward()
    end = time.perf_counter()

    return (end - start) / n_steps * 1000


def run_benchmark():
    """Run layer overhead benchmarks."""
    print("Operation Overhead Benchmark")
    print("=" * 80)
    print()

    for batch, in_features, out_features in [(8, 16, 16), (128, 256, 256), (512, 1024, 1024)]:
        torch.manual_seed(0)
        x = torch.randn(batch, in_features)

        ours = Linear(in_features, out_features)
        ref = nn.Linear(in_features, out_features)

        ours_time = benchmark_layer(ours, x)
        ref_time = benchmark_layer(ref, x)

        print(f"Linear({in_features}, {out_features}), batch {batch}")
        print(f"  gradplug.nn.Linear: {ours_time:.3f} ms  "
              f"(+{(ours_time/ref_time - 1)*100:.1f}% vs torch)")
        print(f"  torch.nn.Linear:    {ref_time:.3f} ms  (baseline)")
        print()


if __name__ == '__main__':
    run_benchmark()
