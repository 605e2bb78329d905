"""Collect and remove unused and non-compliant container images on a Kubernetes node."""

__version__ = "1.1.0b0"