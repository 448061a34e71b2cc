"""Kubernetes operator for rack-aware Cassandra and DSE datacenters."""

__version__ = "0.1.0"
