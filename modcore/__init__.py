"""modcore: RBAC permission resolution and multi-tier caching."""

__version__ = "0.1.0"
