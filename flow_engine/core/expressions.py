"""Expression, condition and template evaluation over a flow context.

Decision expressions are authored in the canvas editor with JavaScript
operators, e.g. ``context.businessRole === "VIP客户" && context.sessionLength > 5``.
They are rewritten token by token into Python, parsed, and walked node by
node: only comparisons, boolean logic, arithmetic, literals, field access
into the context and a few whitelisted functions are evaluated. String
literals are never rewritten.
"""

import ast
import json
import operator
import re
from functools import lru_cache
from typing import Any, Dict, Optional

from .logging import get_logger

logger = get_logger(__name__)


_JS_TOKEN_RE = re.compile(
    r'("(?:[^"\\]|\\.)*"|\'(?:[^\'\\]|\\.)*\')'
    r'|(===|!==|&&|\|\||!(?!=)|\btrue\b|\bfalse\b|\bnull\b|\bundefined\b)'
)

_JS_REPLACEMENTS = {
    "===": "==",
    "!==": "!=",
    "&&": " and ",
    "||": " or ",
    "!": " not ",
    "true": "True",
    "false": "False",
    "null": "None",
    "undefined": "None",
}

_TEMPLATE_RE = re.compile(r'\$\{([^}]+)\}')

_SAFE_FUNCTIONS = {
    'len': len,
    'str': str,
    'int': int,
    'float': float,
    'bool': bool,
    'isinstance': isinstance,
}

_COMPARE_OPS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda left, right: left in right,
    ast.NotIn: lambda left, right: left not in right,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

_ARITHMETIC_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
}

_UNARY_OPS = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}


class ExpressionError(ValueError):
    """The expression uses syntax or names outside the evaluable subset."""


def translate_expression(expression: str) -> str:
    """Rewrite JavaScript comparison and boolean operators into Python."""
    def replace(match):
        if match.group(1) is not None:
            return match.group(1)
        return _JS_REPLACEMENTS[match.group(2)]

    return _JS_TOKEN_RE.sub(replace, expression).strip()


@lru_cache(maxsize=512)
def _parse(expression: str) -> ast.Expression:
    return ast.parse(translate_expression(expression), mode="eval")


def _field(value: Any, name: str) -> Any:
    """``value.name`` for a context object. Missing fields raise."""
    if name.startswith("_"):
        raise ExpressionError(f"Access to '{name}' is not allowed")
    if isinstance(value, dict):
        if name in value:
            return value[name]
        raise AttributeError(f"context has no field '{name}'")
    if name == "length" and isinstance(value, (str, list, tuple)):
        return len(value)
    raise ExpressionError(f"Field '{name}' is not available on {type(value).__name__}")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _arithmetic(op: ast.operator, left: Any, right: Any) -> Any:
    func = _ARITHMETIC_OPS.get(type(op))
    if func is None:
        raise ExpressionError(f"Unsupported operator: {type(op).__name__}")
    if isinstance(op, ast.Add) and isinstance(left, str) and isinstance(right, str):
        return left + right
    if not (_is_number(left) and _is_number(right)):
        raise ExpressionError("Arithmetic is only supported on numbers")
    return func(left, right)


def _evaluate_node(node: ast.AST, names: Dict[str, Any]) -> Any:
    if isinstance(node, ast.Expression):
        return _evaluate_node(node.body, names)

    if isinstance(node, ast.Constant):
        return node.value

    if isinstance(node, ast.Name):
        if node.id not in names:
            raise ExpressionError(f"Unknown name '{node.id}'")
        return names[node.id]

    if isinstance(node, ast.Attribute):
        return _field(_evaluate_node(node.value, names), node.attr)

    if isinstance(node, ast.Subscript):
        target = _evaluate_node(node.value, names)
        if not isinstance(target, (dict, list, tuple, str)):
            raise ExpressionError(f"Cannot index {type(target).__name__}")
        key = _evaluate_node(node.slice, names)
        if isinstance(key, str) and key.startswith("_"):
            raise ExpressionError(f"Access to '{key}' is not allowed")
        return target[key]

    if isinstance(node, ast.BoolOp):
        result = None
        for value in node.values:
            result = _evaluate_node(value, names)
            if isinstance(node.op, ast.And) and not result:
                return result
            if isinstance(node.op, ast.Or) and result:
                return result
        return result

    if isinstance(node, ast.UnaryOp):
        func = _UNARY_OPS.get(type(node.op))
        if func is None:
            raise ExpressionError(f"Unsupported operator: {type(node.op).__name__}")
        operand = _evaluate_node(node.operand, names)
        if not isinstance(node.op, ast.Not) and not _is_number(operand):
            raise ExpressionError("Sign operators are only supported on numbers")
        return func(operand)

    if isinstance(node, ast.BinOp):
        return _arithmetic(node.op, _evaluate_node(node.left, names), _evaluate_node(node.right, names))

    if isinstance(node, ast.Compare):
        left = _evaluate_node(node.left, names)
        for op, comparator in zip(node.ops, node.comparators):
            func = _COMPARE_OPS.get(type(op))
            if func is None:
                raise ExpressionError(f"Unsupported comparison: {type(op).__name__}")
            right = _evaluate_node(comparator, names)
            if not func(left, right):
                return False
            left = right
        return True

    if isinstance(node, ast.List):
        return [_evaluate_node(item, names) for item in node.elts]

    if isinstance(node, ast.Tuple):
        return tuple(_evaluate_node(item, names) for item in node.elts)

    if isinstance(node, ast.Call):
        if not isinstance(node.func, ast.Name) or node.func.id not in _SAFE_FUNCTIONS or node.keywords:
            raise ExpressionError("Only len, str, int, float, bool and isinstance can be called")
        args = [_evaluate_node(arg, names) for arg in node.args]
        return _SAFE_FUNCTIONS[node.func.id](*args)

    raise ExpressionError(f"Unsupported syntax: {type(node).__name__}")


def evaluate_expression(expression: str, variables: Dict[str, Any]) -> bool:
    """
    Evaluate a boolean expression against the flow context.

    Args:
        expression: Expression in JavaScript or Python syntax
        variables: The instance context, exposed to the expression as ``context``

    Returns:
        The truth value of the expression, or False if evaluation fails
    """
    if not expression or not expression.strip():
        return False

    try:
        names = dict(_SAFE_FUNCTIONS)
        names['context'] = variables
        return bool(_evaluate_node(_parse(expression), names))

    except Exception as e:
        logger.warning(f"Failed to evaluate expression '{expression}': {str(e)}")
        return False


def get_path(data: Any, path: str, default: Any = None) -> Any:
    """Look up a dotted path such as ``triggerData.senderId`` or ``items.0.name``."""
    if path.startswith("context."):
        path = path[len("context."):]

    current = data
    for key in path.split("."):
        if isinstance(current, dict) and key in current:
            current = current[key]
        elif isinstance(current, list) and key.isdigit() and int(key) < len(current):
            current = current[int(key)]
        else:
            return default
    return current


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def compare(field_value: Any, operator: str, value: Any) -> bool:
    """Apply one condition-node operator."""
    if operator == "==":
        return field_value == value
    if operator == "!=":
        return field_value != value

    if operator in (">", "<", ">=", "<="):
        left, right = _to_number(field_value), _to_number(value)
        if left is None or right is None:
            return False
        if operator == ">":
            return left > right
        if operator == "<":
            return left < right
        if operator == ">=":
            return left >= right
        return left <= right

    if operator in ("contains", "startsWith", "endsWith"):
        if field_value is None:
            return False
        if operator == "contains" and isinstance(field_value, (list, tuple)):
            return value in field_value
        text, needle = str(field_value), str(value)
        if operator == "contains":
            return needle in text
        if operator == "startsWith":
            return text.startswith(needle)
        return text.endswith(needle)

    if operator == "in":
        return isinstance(value, (list, tuple)) and field_value in value
    if operator == "notIn":
        return isinstance(value, (list, tuple)) and field_value not in value
    if operator == "exists":
        return field_value is not None
    if operator == "notExists":
        return field_value is None

    logger.warning(f"Unknown condition operator '{operator}'")
    return False


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)


def render_template(template: str, variables: Dict[str, Any]) -> str:
    """Replace ``${path}`` placeholders with context values."""
    if not template:
        return ""
    return _TEMPLATE_RE.sub(
        lambda match: _stringify(get_path(variables, match.group(1).strip(), "")),
        template,
    )


def render_value(value: Any, variables: Dict[str, Any]) -> Any:
    """Render templates inside nested request bodies.

    A string that is exactly one placeholder keeps the referenced value's type.
    """
    if isinstance(value, str):
        match = _TEMPLATE_RE.fullmatch(value.strip())
        if match:
            return get_path(variables, match.group(1).strip())
        return render_template(value, variables)
    if isinstance(value, dict):
        return {key: render_value(item, variables) for key, item in value.items()}
    if isinstance(value, list):
        return [render_value(item, variables) for item in value]
    return value
