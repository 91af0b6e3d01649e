"""Cluster API infrastructure provider for iCenter, built on kopf."""

__version__ = "0.1.0"
