"""Action nodes - talk to APIs and data tables."""

from flowdash.nodes.actions.http_request import HttpRequestNode
from flowdash.nodes.actions.table import TableReadNode, TableWriteNode

__all__ = [
    "HttpRequestNode",
    "TableReadNode",
    "TableWriteNode",
]
