"""Routing decisions: suffix route table and query classification."""

from .classifier import QueryCategory, classify
from .route_table import BackendAddress, RouteEntry, RouteTable, parse_backend

__all__ = [
    "BackendAddress",
    "QueryCategory",
    "RouteEntry",
    "RouteTable",
    "classify",
    "parse_backend",
]
