"""Trust and access control core: permissions, security policy and monitoring."""

__version__ = "0.1.0"
