"""Ubuntu host hardening: idempotent config patches and GitHub key provisioning."""

__version__ = "1.0.0"
