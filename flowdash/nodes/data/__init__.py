"""Data nodes - compute and record values."""

from flowdash.nodes.data.log import LogNode
from flowdash.nodes.data.set_variable import SetVariableNode
from flowdash.nodes.data.transform import TransformNode

__all__ = [
    "LogNode",
    "SetVariableNode",
    "TransformNode",
]
