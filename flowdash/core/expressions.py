"""Sandboxed expression evaluation for transform and condition nodes.

Expressions are evaluated with simpleeval: no imports, no attribute access
to private or dunder names, and only the whitelisted functions below.
Dict values are reachable with attribute syntax (`fetch.result.id`) or
subscripts (`nodes["fetch-1"]["result"]`).
"""

import json
from typing import Any

from simpleeval import EvalWithCompoundTypes

SAFE_FUNCTIONS: dict[str, Any] = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "abs": abs,
    "min": min,
    "max": max,
    "sum": sum,
    "round": round,
    "any": any,
    "all": all,
    "sorted": sorted,
    "list": list,
    "dict": dict,
    "lower": lambda s: str(s).lower(),
    "upper": lambda s: str(s).upper(),
    "json_dumps": json.dumps,
    "json_loads": json.loads,
}

CONSTANTS: dict[str, Any] = {
    "true": True,
    "false": False,
    "null": None,
    "none": None,
    "True": True,
    "False": False,
    "None": None,
}


def evaluate(expression: str, names: dict[str, Any]) -> Any:
    """Evaluate an expression against the given names.

    Raises whatever simpleeval or the expression itself raises; callers
    wrap it into the node-specific error kind.
    """
    evaluator = EvalWithCompoundTypes(
        names={**CONSTANTS, **names},
        functions=SAFE_FUNCTIONS,
    )
    return evaluator.eval(expression)
