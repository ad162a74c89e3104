"""Core layer - Pure business logic and algorithms."""

from flowdash.core.encryption import AuthEncryption
from flowdash.core.errors import AuthError, ErrorKind, ExecutionError, GraphError
from flowdash.core.graph import CompiledGraph, compile_graph
from flowdash.core.interpolation import ExecutionScope, resolve

__all__ = [
    "AuthEncryption",
    "AuthError",
    "CompiledGraph",
    "ErrorKind",
    "ExecutionError",
    "ExecutionScope",
    "GraphError",
    "compile_graph",
    "resolve",
]
