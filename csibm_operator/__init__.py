"""Scheduler patching, extender readiness, RBAC validation and node operations for a bare-metal CSI driver, over an in-memory cluster model."""

__version__ = "1.4.0"