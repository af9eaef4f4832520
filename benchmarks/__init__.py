"""Benchmark suite for GradPlug.

Measures the cost of running layers through differentiable operations
compared to the equivalent built-in PyTorch modules.

Usage:
    python -m benchmarks.run_all
    python -m benchmarks.op_overhead
"""
