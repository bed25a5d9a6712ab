"""
conduit-ci: a minimal CI/CD pipeline orchestration engine.

Loads a declarative pipeline definition, runs its stages as a DAG with bounded
parallelism, passes artifacts between stages through a content-addressed store,
evaluates per-stage security gates and emits a run verdict.

Importing the package has no side effects (no config loading, no logging init).
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
