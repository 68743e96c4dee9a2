"""
告警表达式拆解

把告警规则表达式拆成若干可出图的 (公式, 比较方向, 阈值) 三元组。
"""
from dataclasses import dataclass
from typing import List

from ..core.logging_config import get_logger
from .promql import Binary, Node, NumberLiteral, Paren, parse_expr

logger = get_logger()

DIRECTION_GREATER = ">"
DIRECTION_LESS = "<"

_DIRECTIONS = {
    ">": DIRECTION_GREATER,
    ">=": DIRECTION_GREATER,
    "<": DIRECTION_LESS,
    "<=": DIRECTION_LESS,
    # 等值比较没有天然方向，按大于处理
    "==": DIRECTION_GREATER,
    "!=": DIRECTION_GREATER,
}


@dataclass(frozen=True)
class PlotExpr:
    """可出图的子表达式"""
    formula: str
    operator: str
    level: float

    def __str__(self) -> str:
        return f"{self.formula} {self.operator} {self.level:.2f}"


def _level(node: Node, source: str) -> float:
    if isinstance(node, NumberLiteral):
        return node.value
    try:
        return float(node.text(source))
    except ValueError:
        # 右侧不是常量时无法画阈值线
        return 0.0


def _collect(node: Node, source: str) -> List[PlotExpr]:
    while isinstance(node, Paren):
        node = node.expr
    if not isinstance(node, Binary):
        return []
    if node.op == "and":
        return _collect(node.lhs, source) + _collect(node.rhs, source)
    direction = _DIRECTIONS.get(node.op)
    if direction is None:
        return []
    return [PlotExpr(
        formula=node.lhs.text(source),
        operator=direction,
        level=_level(node.rhs, source),
    )]


def decompose(expr: str) -> List[PlotExpr]:
    """
    拆解告警表达式

    顶层是比较运算时得到一条；`and` 连接的两侧分别拆解后按左右顺序拼接；
    括号剥掉后重新判断；其它形式（or、unless、算术、函数等）没有可画的内容。
    表达式无法解析时返回空列表。
    """
    try:
        root = parse_expr(expr)
    except ValueError as e:
        logger.warning(f"告警表达式解析失败: {e}, expr={expr}")
        return []
    return _collect(root, expr)
