"""Safe boolean formulas for formula-type condition nodes.

The grammar is a restricted Python expression subset:
  - and / or / not
  - comparisons (==, !=, <, <=, >, >=, in, not in)
  - numeric, string and boolean constants, lists of constants
  - + - * / on numbers
  - calls to attr("path"), count("event_name"[, days]) and in_segment("segment_id")

count() looks back at most MAX_LOOKBACK_DAYS, with or without a days argument.

Anything else (attribute access, subscripting, free names, lambdas, other
calls) is rejected at publish time.
"""
import ast
from typing import Any, Callable

ALLOWED_CALLS = {"attr", "count", "in_segment"}
ALLOWED_COMPARE_OPS = (ast.Eq, ast.NotEq, ast.Lt, ast.LtE, ast.Gt, ast.GtE, ast.In, ast.NotIn)
ALLOWED_BOOL_OPS = (ast.And, ast.Or)
ALLOWED_UNARY_OPS = (ast.Not, ast.USub)
ALLOWED_BIN_OPS = (ast.Add, ast.Sub, ast.Mult, ast.Div)
MAX_LOOKBACK_DAYS = 365

FormulaHelpers = dict[str, Callable[..., Any]]


class FormulaError(ValueError):
    pass


class _Validator(ast.NodeVisitor):
    def __init__(self) -> None:
        self.reason: str | None = None

    def fail(self, reason: str) -> None:
        if self.reason is None:
            self.reason = reason

    def visit_Expression(self, node: ast.Expression) -> None:
        self.visit(node.body)

    def visit_Call(self, node: ast.Call) -> None:
        if not isinstance(node.func, ast.Name) or node.func.id not in ALLOWED_CALLS:
            self.fail("call_not_allowed")
            return
        if node.keywords:
            self.fail("kwargs_not_allowed")
            return
        if not node.args or not all(isinstance(arg, ast.Constant) for arg in node.args):
            self.fail("arg_type_not_allowed")
            return
        if node.func.id == "count" and len(node.args) > 2:
            self.fail("too_many_args")
        elif node.func.id == "count" and len(node.args) == 2:
            if not _valid_days(node.args[1].value):  # type: ignore[attr-defined]
                self.fail("count_days_out_of_range")
        elif node.func.id != "count" and len(node.args) != 1:
            self.fail("too_many_args")

    def visit_BoolOp(self, node: ast.BoolOp) -> None:
        if not isinstance(node.op, ALLOWED_BOOL_OPS):
            self.fail("bool_op_not_allowed")
            return
        for value in node.values:
            self.visit(value)

    def visit_UnaryOp(self, node: ast.UnaryOp) -> None:
        if not isinstance(node.op, ALLOWED_UNARY_OPS):
            self.fail("unary_op_not_allowed")
            return
        self.visit(node.operand)

    def visit_BinOp(self, node: ast.BinOp) -> None:
        if not isinstance(node.op, ALLOWED_BIN_OPS):
            self.fail("bin_op_not_allowed")
            return
        self.visit(node.left)
        self.visit(node.right)

    def visit_Compare(self, node: ast.Compare) -> None:
        for op in node.ops:
            if not isinstance(op, ALLOWED_COMPARE_OPS):
                self.fail("compare_op_not_allowed")
                return
        self.visit(node.left)
        for comparator in node.comparators:
            self.visit(comparator)

    def visit_List(self, node: ast.List) -> None:
        if not all(isinstance(item, ast.Constant) for item in node.elts):
            self.fail("list_item_not_allowed")

    visit_Tuple = visit_List

    def visit_Constant(self, node: ast.Constant) -> None:
        if not isinstance(node.value, (int, float, str, bool)) and node.value is not None:
            self.fail("constant_not_allowed")

    def generic_visit(self, node: ast.AST) -> None:
        self.fail(f"{type(node).__name__.lower()}_not_allowed")


def validate_formula(expr: str) -> tuple[bool, str | None]:
    if not (expr or "").strip():
        return False, "empty_expression"
    try:
        tree = ast.parse(expr.strip(), mode="eval")
    except SyntaxError as exc:
        return False, f"syntax_error:{exc.msg}"
    validator = _Validator()
    validator.visit(tree)
    return validator.reason is None, validator.reason


def _valid_days(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return 0 <= value <= MAX_LOOKBACK_DAYS


def counted_events(expr: str) -> tuple[set[str], float]:
    """Event names a valid formula counts and the longest window it counts over, in days."""
    names: set[str] = set()
    longest = 0.0
    for node in ast.walk(ast.parse(expr.strip(), mode="eval")):
        if isinstance(node, ast.Call) and isinstance(node.func, ast.Name) and node.func.id == "count":
            names.add(str(node.args[0].value))  # type: ignore[attr-defined]
            days = node.args[1].value if len(node.args) > 1 else MAX_LOOKBACK_DAYS  # type: ignore[attr-defined]
            longest = max(longest, float(days))
    return names, longest


class _Evaluator(ast.NodeVisitor):
    def __init__(self, helpers: FormulaHelpers):
        self.helpers = helpers

    def visit_Expression(self, node: ast.Expression) -> Any:
        return self.visit(node.body)

    def visit_BoolOp(self, node: ast.BoolOp) -> Any:
        if isinstance(node.op, ast.And):
            for value in node.values:
                if not self.visit(value):
                    return False
            return True
        for value in node.values:
            if self.visit(value):
                return True
        return False

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        operand = self.visit(node.operand)
        if isinstance(node.op, ast.Not):
            return not bool(operand)
        return -operand

    def visit_BinOp(self, node: ast.BinOp) -> Any:
        left = self.visit(node.left)
        right = self.visit(node.right)
        if isinstance(node.op, ast.Add):
            return left + right
        if isinstance(node.op, ast.Sub):
            return left - right
        if isinstance(node.op, ast.Mult):
            return left * right
        return left / right

    def visit_Compare(self, node: ast.Compare) -> bool:
        current = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            right = self.visit(comparator)
            if isinstance(op, ast.Eq):
                ok = current == right
            elif isinstance(op, ast.NotEq):
                ok = current != right
            elif isinstance(op, ast.Lt):
                ok = current < right
            elif isinstance(op, ast.LtE):
                ok = current <= right
            elif isinstance(op, ast.Gt):
                ok = current > right
            elif isinstance(op, ast.GtE):
                ok = current >= right
            elif isinstance(op, ast.In):
                ok = current in right
            else:
                ok = current not in right
            if not ok:
                return False
            current = right
        return True

    def visit_Call(self, node: ast.Call) -> Any:
        helper = self.helpers[node.func.id]  # type: ignore[attr-defined]
        return helper(*[arg.value for arg in node.args])  # type: ignore[attr-defined]

    def visit_List(self, node: ast.List) -> list[Any]:
        return [item.value for item in node.elts]  # type: ignore[attr-defined]

    visit_Tuple = visit_List

    def visit_Constant(self, node: ast.Constant) -> Any:
        return node.value


def evaluate_formula(expr: str, helpers: FormulaHelpers) -> bool:
    ok, reason = validate_formula(expr)
    if not ok:
        raise FormulaError(reason or "invalid_expression")
    tree = ast.parse(expr.strip(), mode="eval")
    try:
        return bool(_Evaluator(helpers).visit(tree))
    except (TypeError, ZeroDivisionError) as exc:
        raise FormulaError(f"evaluation_error:{exc}") from exc
