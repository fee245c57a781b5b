"""
Feature Factory - workflow orchestration engine for multi-phase AI development tasks.

Drives a sequence of agent invocations (design, spec, tests, implementation,
review, docs) through a budgeted, checkpointed, resumable pipeline.
"""

__version__ = "0.4.0"
__all__ = ["__version__"]
