"""Kubernetes operator for Ray clusters, jobs and services."""

__version__ = "0.2.0"
