"""switchboard: a routing DNS reverse proxy."""

__version__ = "0.1.0"
