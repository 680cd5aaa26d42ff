"""Policy Hub: what-if simulation of Kubernetes security policies."""

__version__ = "0.1.0"
