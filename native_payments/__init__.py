"""Multi-provider payments, subscription billing and memberships."""

__version__ = "1.0.0"
