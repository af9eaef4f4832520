#!/usr/bin/env python
"""Run every benchmark module in this package.

Each module listed in ``BENCHMARKS`` exposes ``run_benchmark()``.

Example:
    python -m benchmarks.run_all
    python -m benchmarks.run_all op_overhead
"""

import importlib
import sys
import time

BENCHMARKS = [
    'op_overhead',
]


def run_all_benchmarks(names=None):
    """Run the named benchmarks, or all of them."""
    names = names or BENCHMARKS
    unknown = sorted(set(names) - set(BENCHMARKS))
    if unknown:
        raise SystemExit(f"Unknown benchmarks: {', '.join(unknown)}")

    print("GradPlug Benchmarks")
    print("=" * 80)
    print()

    for name in names:
        module = importlib.import_module(f'{__package__}.{name}')
        start = time.perf_counter()
        module.run_benchmark()
        print(f"[{name}] finished in {time.perf_counter() - start:.1f} s")
        print()


if __name__ == '__main__':
    run_all_benchmarks(sys.argv[1:])
