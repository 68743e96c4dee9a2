"""
PromQL 表达式解析

只为拆解告警规则表达式服务：解析出语法树，每个节点记录它在原始表达式中的起止位置，
需要某个子表达式的文本时直接从原文截取。
支持的语法：数字/字符串字面量、向量选择器（含标签匹配器）、区间选择器与子查询、
函数调用、聚合（by/without 前置或后置）、一元运算、括号、带 bool / on / ignoring /
group_left / group_right 修饰的二元运算，以及 offset / @ 修饰符。
"""
import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple


class PromQLSyntaxError(ValueError):
    """表达式语法错误"""

    def __init__(self, message: str, pos: int):
        super().__init__(f"{message} (位置 {pos})")
        self.pos = pos


# ---------------------------------------------------------------------------
# 词法分析
# ---------------------------------------------------------------------------

NUMBER = "NUMBER"
DURATION = "DURATION"
STRING = "STRING"
IDENT = "IDENT"
OP = "OP"
PUNCT = "PUNCT"
EOF = "EOF"

_TOKEN_SPEC = [
    ("WS", r"\s+"),
    ("COMMENT", r"#[^\n]*"),
    (NUMBER + "_HEX", r"0[xX][0-9a-fA-F]+"),
    (DURATION, r"(?:\d+(?:ms|[smhdwy]))+(?![A-Za-z0-9_:])"),
    (NUMBER, r"(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?"),
    (STRING, r"\"(?:\\.|[^\"\\])*\"|'(?:\\.|[^'\\])*'|`[^`]*`"),
    (IDENT, r"[A-Za-z_:][A-Za-z0-9_:]*"),
    (OP, r"==|!=|<=|>=|=~|!~|[-+*/%^<>=]"),
    (PUNCT, r"[(){}\[\],@]"),
]
_TOKEN_RE = re.compile("|".join(f"(?P<{name}>{pattern})" for name, pattern in _TOKEN_SPEC))


@dataclass(frozen=True)
class Token:
    kind: str
    value: str
    start: int
    end: int


def tokenize(text: str) -> List[Token]:
    tokens = []
    pos = 0
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if not m:
            raise PromQLSyntaxError(f"无法识别的字符 {text[pos]!r}", pos)
        kind = m.lastgroup
        if kind not in ("WS", "COMMENT"):
            if kind == NUMBER + "_HEX":
                kind = NUMBER
            tokens.append(Token(kind, m.group(), m.start(), m.end()))
        pos = m.end()
    tokens.append(Token(EOF, "", len(text), len(text)))
    return tokens


# ---------------------------------------------------------------------------
# 语法树
# ---------------------------------------------------------------------------

@dataclass
class Node:
    start: int
    end: int

    def text(self, source: str) -> str:
        return source[self.start:self.end].strip()


@dataclass
class NumberLiteral(Node):
    value: float = 0.0


@dataclass
class StringLiteral(Node):
    value: str = ""


@dataclass
class VectorSelector(Node):
    name: str = ""
    matchers: List[Tuple[str, str, str]] = field(default_factory=list)


@dataclass
class RangeSelector(Node):
    """区间选择器 x[5m] 或子查询 expr[5m:1m]"""
    expr: Optional[Node] = None
    subquery: bool = False


@dataclass
class Call(Node):
    func: str = ""
    args: List[Node] = field(default_factory=list)


@dataclass
class Aggregate(Node):
    op: str = ""
    args: List[Node] = field(default_factory=list)
    grouping: List[str] = field(default_factory=list)
    without: bool = False


@dataclass
class Unary(Node):
    op: str = ""
    expr: Optional[Node] = None


@dataclass
class Paren(Node):
    expr: Optional[Node] = None


@dataclass
class Binary(Node):
    op: str = ""
    lhs: Optional[Node] = None
    rhs: Optional[Node] = None
    return_bool: bool = False


# ---------------------------------------------------------------------------
# 语法分析
# ---------------------------------------------------------------------------

AGGREGATORS = {
    "sum", "min", "max", "avg", "group", "stddev", "stdvar", "count",
    "count_values", "bottomk", "topk", "quantile", "limitk", "limit_ratio",
}

COMPARISON_OPS = {"==", "!=", "<", "<=", ">", ">="}

# 优先级从低到高
_PRECEDENCE = {
    "or": 1,
    "and": 2, "unless": 2,
    "==": 3, "!=": 3, "<": 3, "<=": 3, ">": 3, ">=": 3,
    "+": 4, "-": 4,
    "*": 5, "/": 5, "%": 5, "atan2": 5,
    "^": 6,
}
_RIGHT_ASSOC = {"^"}
_POW_PRECEDENCE = _PRECEDENCE["^"]

_KEYWORD_OPS = {"and", "or", "unless", "atan2"}


class _Parser:

    def __init__(self, source: str):
        self.source = source
        self.tokens = tokenize(source)
        self.pos = 0

    # -- token helpers ------------------------------------------------------

    @property
    def tok(self) -> Token:
        return self.tokens[self.pos]

    def peek(self, offset: int = 1) -> Token:
        idx = min(self.pos + offset, len(self.tokens) - 1)
        return self.tokens[idx]

    def advance(self) -> Token:
        tok = self.tok
        if tok.kind != EOF:
            self.pos += 1
        return tok

    def at(self, kind: str, value: Optional[str] = None) -> bool:
        tok = self.tok
        if tok.kind != kind:
            return False
        return value is None or tok.value == value

    def at_keyword(self, *words: str) -> bool:
        return self.tok.kind == IDENT and self.tok.value.lower() in words

    def expect(self, kind: str, value: Optional[str] = None) -> Token:
        if not self.at(kind, value):
            want = value or kind
            raise PromQLSyntaxError(f"期望 {want}，实际为 {self.tok.value or 'EOF'!r}", self.tok.start)
        return self.advance()

    # -- grammar ------------------------------------------------------------

    def parse(self) -> Node:
        if self.at(EOF):
            raise PromQLSyntaxError("表达式为空", 0)
        node = self.parse_binary(0)
        if not self.at(EOF):
            raise PromQLSyntaxError(f"多余的内容 {self.tok.value!r}", self.tok.start)
        return node

    def _binary_op(self) -> Optional[str]:
        tok = self.tok
        if tok.kind == OP and tok.value in _PRECEDENCE:
            return tok.value
        if tok.kind == IDENT and tok.value.lower() in _KEYWORD_OPS:
            return tok.value.lower()
        return None

    def parse_binary(self, min_prec: int) -> Node:
        lhs = self.parse_unary()
        while True:
            op = self._binary_op()
            if op is None or _PRECEDENCE[op] < min_prec:
                return lhs
            self.advance()
            return_bool = False
            if self.at_keyword("bool"):
                if op not in COMPARISON_OPS:
                    raise PromQLSyntaxError("bool 只能用于比较运算", self.tok.start)
                self.advance()
                return_bool = True
            self._parse_vector_matching()
            prec = _PRECEDENCE[op]
            next_min = prec if op in _RIGHT_ASSOC else prec + 1
            rhs = self.parse_binary(next_min)
            lhs = Binary(lhs.start, rhs.end, op=op, lhs=lhs, rhs=rhs, return_bool=return_bool)

    def _parse_vector_matching(self) -> None:
        if self.at_keyword("on", "ignoring"):
            self.advance()
            self.parse_label_list()
            if self.at_keyword("group_left", "group_right"):
                self.advance()
                if self.at(PUNCT, "("):
                    self.parse_label_list()

    def parse_unary(self) -> Node:
        if self.at(OP, "-") or self.at(OP, "+"):
            tok = self.advance()
            operand = self.parse_binary(_POW_PRECEDENCE)
            return Unary(tok.start, operand.end, op=tok.value, expr=operand)
        return self.parse_postfix(self.parse_primary())

    def parse_postfix(self, node: Node) -> Node:
        while True:
            if self.at(PUNCT, "["):
                node = self._parse_range(node)
            elif self.at_keyword("offset"):
                self.advance()
                if self.at(OP, "-") or self.at(OP, "+"):
                    self.advance()
                end_tok = self.expect(DURATION) if self.at(DURATION) else self.expect(NUMBER)
                node = self._extend(node, end_tok.end)
            elif self.at(PUNCT, "@"):
                self.advance()
                if self.at_keyword("start", "end"):
                    self.advance()
                    self.expect(PUNCT, "(")
                    end_tok = self.expect(PUNCT, ")")
                else:
                    if self.at(OP, "-") or self.at(OP, "+"):
                        self.advance()
                    end_tok = self.expect(NUMBER)
                node = self._extend(node, end_tok.end)
            else:
                return node

    @staticmethod
    def _extend(node: Node, end: int) -> Node:
        node.end = end
        return node

    def _parse_range(self, node: Node) -> Node:
        self.expect(PUNCT, "[")
        subquery = False
        while not self.at(PUNCT, "]"):
            if self.at(EOF):
                raise PromQLSyntaxError("区间选择器缺少 ]", self.tok.start)
            if self.tok.value == ":":
                subquery = True
            elif self.tok.kind == IDENT and ":" in self.tok.value:
                subquery = True
            self.advance()
        end_tok = self.expect(PUNCT, "]")
        if not subquery and not isinstance(node, VectorSelector):
            raise PromQLSyntaxError("区间选择器只能作用于向量选择器", node.start)
        return RangeSelector(node.start, end_tok.end, expr=node, subquery=subquery)

    def parse_primary(self) -> Node:
        tok = self.tok
        if tok.kind == NUMBER:
            self.advance()
            return NumberLiteral(tok.start, tok.end, value=_parse_number(tok.value))
        if tok.kind == DURATION:
            raise PromQLSyntaxError(f"此处不允许出现时长 {tok.value!r}", tok.start)
        if tok.kind == STRING:
            self.advance()
            return StringLiteral(tok.start, tok.end, value=_unquote(tok.value))
        if self.at(PUNCT, "("):
            self.advance()
            inner = self.parse_binary(0)
            end_tok = self.expect(PUNCT, ")")
            return Paren(tok.start, end_tok.end, expr=inner)
        if self.at(PUNCT, "{"):
            matchers, end = self.parse_matchers()
            if not matchers:
                raise PromQLSyntaxError("向量选择器至少需要一个匹配条件", tok.start)
            return VectorSelector(tok.start, end, matchers=matchers)
        if tok.kind == IDENT:
            return self.parse_identifier()
        raise PromQLSyntaxError(f"意外的符号 {tok.value or 'EOF'!r}", tok.start)

    def parse_identifier(self) -> Node:
        tok = self.advance()
        lowered = tok.value.lower()
        nxt = self.tok

        if lowered in AGGREGATORS and (
            self.at(PUNCT, "(") or self.at_keyword("by", "without")
        ):
            return self.parse_aggregate(tok)
        if self.at(PUNCT, "("):
            args, end = self.parse_args()
            return Call(tok.start, end, func=tok.value, args=args)
        if lowered in ("inf", "nan") and not (nxt.kind == PUNCT and nxt.value == "{"):
            return NumberLiteral(tok.start, tok.end, value=float(lowered))
        if lowered in _KEYWORD_OPS or lowered in ("bool", "on", "ignoring", "by", "without", "offset"):
            raise PromQLSyntaxError(f"意外的关键字 {tok.value!r}", tok.start)

        matchers: List[Tuple[str, str, str]] = []
        end = tok.end
        if self.at(PUNCT, "{"):
            matchers, end = self.parse_matchers()
        return VectorSelector(tok.start, end, name=tok.value, matchers=matchers)

    def parse_aggregate(self, op_tok: Token) -> Node:
        grouping: List[str] = []
        without = False
        if self.at_keyword("by", "without"):
            without = self.advance().value.lower() == "without"
            grouping = self.parse_label_list()
        args, end = self.parse_args()
        if self.at_keyword("by", "without"):
            without = self.advance().value.lower() == "without"
            grouping = self.parse_label_list()
            end = self.tokens[self.pos - 1].end
        if not args:
            raise PromQLSyntaxError(f"聚合 {op_tok.value} 缺少参数", op_tok.start)
        return Aggregate(op_tok.start, end, op=op_tok.value.lower(), args=args,
                         grouping=grouping, without=without)

    def parse_args(self) -> Tuple[List[Node], int]:
        self.expect(PUNCT, "(")
        args: List[Node] = []
        while not self.at(PUNCT, ")"):
            args.append(self.parse_binary(0))
            if not self.at(PUNCT, ","):
                break
            self.advance()
        end_tok = self.expect(PUNCT, ")")
        return args, end_tok.end

    def parse_label_list(self) -> List[str]:
        self.expect(PUNCT, "(")
        labels: List[str] = []
        while not self.at(PUNCT, ")"):
            if self.at(IDENT):
                labels.append(self.advance().value)
            elif self.at(STRING):
                labels.append(_unquote(self.advance().value))
            else:
                raise PromQLSyntaxError(f"非法的标签名 {self.tok.value!r}", self.tok.start)
            if not self.at(PUNCT, ","):
                break
            self.advance()
        self.expect(PUNCT, ")")
        return labels

    def parse_matchers(self) -> Tuple[List[Tuple[str, str, str]], int]:
        self.expect(PUNCT, "{")
        matchers: List[Tuple[str, str, str]] = []
        while not self.at(PUNCT, "}"):
            if self.at(STRING) and (self.peek().kind == PUNCT):
                # {"metric_name"} 形式
                matchers.append(("__name__", "=", _unquote(self.advance().value)))
            else:
                if self.at(IDENT):
                    name = self.advance().value
                elif self.at(STRING):
                    name = _unquote(self.advance().value)
                else:
                    raise PromQLSyntaxError(f"非法的标签名 {self.tok.value!r}", self.tok.start)
                if not (self.tok.kind == OP and self.tok.value in ("=", "!=", "=~", "!~")):
                    raise PromQLSyntaxError(f"期望标签匹配运算符，实际为 {self.tok.value!r}", self.tok.start)
                op = self.advance().value
                value = _unquote(self.expect(STRING).value)
                matchers.append((name, op, value))
            if not self.at(PUNCT, ","):
                break
            self.advance()
        end_tok = self.expect(PUNCT, "}")
        return matchers, end_tok.end


def _parse_number(text: str) -> float:
    if text.lower().startswith("0x"):
        return float(int(text, 16))
    return float(text)


def _unquote(text: str) -> str:
    body = text[1:-1]
    if text[0] == "`":
        return body
    return re.sub(r"\\(.)", lambda m: {"n": "\n", "t": "\t"}.get(m.group(1), m.group(1)), body)


def parse_expr(source: str) -> Node:
    """
    解析 PromQL 表达式

    Raises:
        PromQLSyntaxError: 语法错误
    """
    return _Parser(source).parse()
