"""
Small SQL expression tree rendered to SQL Server 2008 R2 syntax.

Nodes are immutable and render deterministically, so the same tree always produces
byte-identical text. Only constructs available on 2008 R2 are emitted: TOP instead of
OFFSET/FETCH, CONVERT(VARCHAR(n), x, 120) instead of FORMAT, no IIF/TRY_CAST/CONCAT.
COALESCE is used where ISNULL would do; both behave the same for the numeric
defaults used here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Optional, Sequence, Tuple, Union


def quote_ident(name: str) -> str:
    name = (name or '').strip()
    if name.startswith('[') and name.endswith(']'):
        return name
    return '[' + name.replace(']', ']]') + ']'


def quote_literal(value) -> str:
    if value is None:
        return 'NULL'
    if isinstance(value, bool):
        return '1' if value else '0'
    if isinstance(value, (int, float)):
        return repr(value) if isinstance(value, float) else str(value)
    if isinstance(value, date):
        return "'" + value.isoformat() + "'"
    return "'" + str(value).replace("'", "''") + "'"


class Expr:
    def render(self) -> str:
        raise NotImplementedError

    def __str__(self) -> str:
        return self.render()


@dataclass(frozen=True)
class Raw(Expr):
    sql: str

    def render(self) -> str:
        return self.sql


@dataclass(frozen=True)
class Column(Expr):
    name: str
    table: Optional[str] = None

    def render(self) -> str:
        col = quote_ident(self.name)
        return f"{self.table}.{col}" if self.table else col


@dataclass(frozen=True)
class Literal(Expr):
    value: object

    def render(self) -> str:
        return quote_literal(self.value)


@dataclass(frozen=True)
class Func(Expr):
    name: str
    args: Tuple[Expr, ...] = ()

    def render(self) -> str:
        return f"{self.name}({', '.join(a.render() for a in self.args)})"


@dataclass(frozen=True)
class Cast(Expr):
    expr: Expr
    type_name: str

    def render(self) -> str:
        return f"CAST({self.expr.render()} AS {self.type_name})"


@dataclass(frozen=True)
class Coalesce(Expr):
    expr: Expr
    default: Expr = Literal(0)

    def render(self) -> str:
        return f"COALESCE({self.expr.render()}, {self.default.render()})"


@dataclass(frozen=True)
class NullIf(Expr):
    expr: Expr
    value: Expr = Literal(0)

    def render(self) -> str:
        return f"NULLIF({self.expr.render()}, {self.value.render()})"


@dataclass(frozen=True)
class BinOp(Expr):
    left: Expr
    op: str
    right: Expr

    def render(self) -> str:
        return f"({self.left.render()} {self.op} {self.right.render()})"


@dataclass(frozen=True)
class Agg(Expr):
    func: str
    expr: Optional[Expr] = None
    distinct: bool = False

    def render(self) -> str:
        inner = self.expr.render() if self.expr is not None else '*'
        return f"{self.func}({'DISTINCT ' if self.distinct else ''}{inner})"


@dataclass(frozen=True)
class Case(Expr):
    whens: Tuple[Tuple[Expr, Expr], ...]
    else_: Optional[Expr] = None

    def render(self) -> str:
        parts = ['CASE']
        for cond, value in self.whens:
            parts.append(f"WHEN {cond.render()} THEN {value.render()}")
        if self.else_ is not None:
            parts.append(f"ELSE {self.else_.render()}")
        parts.append('END')
        return ' '.join(parts)


# Predicates

@dataclass(frozen=True)
class Compare(Expr):
    left: Expr
    op: str
    right: Expr

    def render(self) -> str:
        return f"{self.left.render()} {self.op} {self.right.render()}"


@dataclass(frozen=True)
class IsNotNull(Expr):
    expr: Expr

    def render(self) -> str:
        return f"{self.expr.render()} IS NOT NULL"


@dataclass(frozen=True)
class Between(Expr):
    expr: Expr
    low: Expr
    high: Expr

    def render(self) -> str:
        return f"{self.expr.render()} BETWEEN {self.low.render()} AND {self.high.render()}"


def _wrap_predicate(p: Expr) -> str:
    text = p.render()
    if isinstance(p, Raw) and ' OR ' in text.upper() and not (text.startswith('(') and text.endswith(')')):
        return f"({text})"
    return text


# Statements

@dataclass(frozen=True)
class SelectItem:
    expr: Expr
    alias: Optional[str] = None

    def render(self) -> str:
        text = self.expr.render()
        return f"{text} AS {quote_ident(self.alias)}" if self.alias else text


@dataclass(frozen=True)
class OrderItem:
    expr: Expr
    descending: bool = False

    def render(self) -> str:
        return f"{self.expr.render()} {'DESC' if self.descending else 'ASC'}"


@dataclass(frozen=True)
class Table:
    name: str

    def render(self) -> str:
        return quote_ident(self.name)


@dataclass(frozen=True)
class Subquery:
    query: 'Query'
    alias: str

    def render(self) -> str:
        return f"({self.query.render()}) AS {self.alias}"


@dataclass(frozen=True)
class CrossJoin:
    left: 'FromItem'
    right: 'FromItem'

    def render(self) -> str:
        return f"{self.left.render()} CROSS JOIN {self.right.render()}"


FromItem = Union[Table, Subquery, CrossJoin]


@dataclass(frozen=True)
class Select:
    items: Tuple[SelectItem, ...]
    from_: Optional[FromItem] = None
    where: Tuple[Expr, ...] = ()
    group_by: Tuple[Expr, ...] = ()
    order_by: Tuple[OrderItem, ...] = ()
    top: Optional[int] = None

    def render(self) -> str:
        parts = ['SELECT']
        if self.top is not None:
            parts.append(f"TOP {int(self.top)}")
        parts.append(', '.join(i.render() for i in self.items))
        if self.from_ is not None:
            parts.append(f"FROM {self.from_.render()}")
        if self.where:
            parts.append('WHERE ' + ' AND '.join(_wrap_predicate(w) for w in self.where))
        if self.group_by:
            parts.append('GROUP BY ' + ', '.join(g.render() for g in self.group_by))
        if self.order_by:
            parts.append('ORDER BY ' + ', '.join(o.render() for o in self.order_by))
        return ' '.join(parts)


@dataclass(frozen=True)
class UnionAll:
    selects: Tuple[Select, ...] = field(default_factory=tuple)

    def render(self) -> str:
        return ' UNION ALL '.join(s.render() for s in self.selects)


Query = Union[Select, UnionAll]


# T-SQL helpers

def day_key(column: str) -> Expr:
    return Raw(f"CONVERT(VARCHAR(10), {quote_ident(column)}, 120)")


def month_key(column: str) -> Expr:
    return Raw(f"CONVERT(VARCHAR(7), {quote_ident(column)}, 120)")


def year_key(column: str) -> Expr:
    return Func('YEAR', (Column(column),))


def composite_month_key(year_column: str, month_column: str) -> Expr:
    y, m = quote_ident(year_column), quote_ident(month_column)
    return Raw(f"CAST({y} AS VARCHAR(4)) + '-' + RIGHT('0' + CAST({m} AS VARCHAR(2)), 2)")


def composite_ym_number(year_column: str, month_column: str) -> Expr:
    return Raw(f"({quote_ident(year_column)} * 100 + {quote_ident(month_column)})")


def days_in_month_of_key(month_key_expr: Expr) -> Expr:
    """Days in the month named by a 'YYYY-MM' key expression."""
    k = month_key_expr.render()
    return Raw(f"DAY(DATEADD(DAY, -1, DATEADD(MONTH, 1, CAST({k} + '-01' AS DATETIME))))")


def date_range_predicate(column: str, start: date, end_exclusive: date) -> Tuple[Expr, Expr]:
    col = Column(column)
    return (Compare(col, '>=', Literal(start)), Compare(col, '<', Literal(end_exclusive)))


def year_month_predicate(year_column: str, month_column: str, start_key: int, end_key: int) -> Expr:
    return Between(composite_ym_number(year_column, month_column), Literal(start_key), Literal(end_key))


def concat_key(parts: Sequence[str], sep: str = '|') -> Expr:
    cols = [f"CAST({quote_ident(p)} AS NVARCHAR(100))" for p in parts]
    return Raw(f" + '{sep}' + ".join(cols))
