"""
Executable scripts for the benchmark methods component.

Scripts:
    run_benchmark.py: Run one or all benchmark methods
"""
