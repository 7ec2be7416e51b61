"""qms-core: authorization and lifecycle core of a multi-tenant quality-management system."""

__version__ = "0.1.0"
