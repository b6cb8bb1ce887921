from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from functools import cached_property
from typing import Any, Dict, Iterable, Iterator, Optional, Tuple, Union

from sqlalchemy import case, column, func, insert, inspect, select, table, update
from sqlalchemy.orm import Session
from sqlalchemy.sql.expression import ColumnClause, TableClause

_log = logging.getLogger("travel.schema")


# ---- Catalog primitives ----

def has_table(s: Session, name: str) -> bool:
    """
    Uncached catalog probe. Any failure (broken connection, missing
    privileges) reads as "absent".
    """
    try:
        return bool(inspect(s.connection()).has_table(name))
    except Exception:
        return False


def has_column(s: Session, table_name: str, column_name: str) -> bool:
    try:
        cols = inspect(s.connection()).get_columns(table_name)
    except Exception:
        return False
    want = column_name.lower()
    return any(str(c.get("name", "")).lower() == want for c in cols)


# ---- Capabilities ----

@dataclass(frozen=True, eq=False)
class TableCaps:
    """Column set of one table as seen at the start of a sync."""

    name: str
    columns: Dict[str, str] = field(default_factory=dict)  # lower -> actual

    def has(self, name: str) -> bool:
        return name.lower() in self.columns

    def actual(self, name: str) -> Optional[str]:
        return self.columns.get(name.lower())

    def first_of(self, *candidates: str) -> Optional[str]:
        for c in candidates:
            got = self.columns.get(c.lower())
            if got:
                return got
        return None

    @cached_property
    def table(self) -> TableClause:
        return table(self.name, *[column(c) for c in self.columns.values()])

    def col(self, name: str) -> ColumnClause:
        actual = self.actual(name)
        if actual is None:
            raise KeyError(f"{self.name}.{name}")
        return self.table.c[actual]


class SchemaSnapshot:
    """
    Table and column presence memoized for one synchronization. All
    probes go through the session's connection so they see the same
    transaction as the reads and writes that follow.
    """

    def __init__(self, s: Session):
        self.s = s
        self._insp = None
        self._tables: Dict[str, bool] = {}
        self._caps: Dict[str, Optional[TableCaps]] = {}

    def _inspector(self):
        if self._insp is None:
            self._insp = inspect(self.s.connection())
        return self._insp

    def has_table(self, name: str) -> bool:
        key = name.lower()
        if key not in self._tables:
            try:
                self._tables[key] = bool(self._inspector().has_table(name))
            except Exception:
                self._tables[key] = False
        return self._tables[key]

    def caps(self, name: str) -> Optional[TableCaps]:
        key = name.lower()
        if key in self._caps:
            return self._caps[key]
        out: Optional[TableCaps] = None
        if self.has_table(name):
            try:
                cols = self._inspector().get_columns(name)
                out = TableCaps(name=name, columns={str(c["name"]).lower(): str(c["name"]) for c in cols})
            except Exception as e:
                _log.warning("schema: cannot read columns of %s: %s", name, e, extra={"table": name})
                out = None
        self._caps[key] = out
        return out

    def has_column(self, table_name: str, column_name: str) -> bool:
        caps = self.caps(table_name)
        return bool(caps and caps.has(column_name))

    def first_table(self, *names: str) -> Optional[TableCaps]:
        for n in names:
            caps = self.caps(n)
            if caps is not None:
                return caps
        return None


# ---- Statement builders ----

_OVERWRITE = "overwrite"
_TEXT = "text"
_COUNT = "count"
_MAX = "max"
_NOW = "now"
_DEFAULT = "default"

Names = Union[str, Tuple[str, ...]]


def as_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def as_int(value: Any) -> int:
    if value is None or value == "":
        return 0
    try:
        return int(float(str(value).strip()))
    except (TypeError, ValueError):
        return 0


class RowWriter:
    """
    Collects column assignments for one row of a table whose column set
    is only known at runtime. Assignments to columns the table does not
    have are dropped. Each assignment carries its merge rule, applied
    when the row already exists:

      set          overwrite
      set_text     COALESCE(NULLIF(new, ''), old)
      set_default  COALESCE(NULLIF(old, ''), new)
      set_count    CASE WHEN new > 0 THEN new ELSE old END
      set_max      CASE WHEN new > old THEN new ELSE old END
      touch        always advances

    On insert every collected value is written as given.
    """

    def __init__(self, caps: TableCaps):
        self.caps = caps
        self._fields: Dict[str, Tuple[str, Any]] = {}

    def __len__(self) -> int:
        return len(self._fields)

    def _put(self, names: Names, value: Any, mode: str) -> bool:
        if isinstance(names, str):
            names = (names,)
        wrote = False
        for n in names:
            actual = self.caps.actual(n)
            if actual is not None:
                self._fields[actual] = (mode, value)
                wrote = True
        return wrote

    def set(self, names: Names, value: Any) -> bool:
        return self._put(names, value, _OVERWRITE)

    def set_text(self, names: Names, value: Any) -> bool:
        return self._put(names, as_text(value), _TEXT)

    def set_default(self, names: Names, value: Any) -> bool:
        return self._put(names, as_text(value), _DEFAULT)

    def set_count(self, names: Names, value: Any) -> bool:
        return self._put(names, as_int(value), _COUNT)

    def set_max(self, names: Names, value: Any) -> bool:
        return self._put(names, as_int(value), _MAX)

    def touch(self, *names: str) -> bool:
        return self._put(names or ("updated_at",), None, _NOW)

    def insert_values(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for col, (mode, value) in self._fields.items():
            out[col] = func.now() if mode == _NOW else value
        return out

    def update_values(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        t = self.caps.table
        for col, (mode, value) in self._fields.items():
            if mode == _OVERWRITE:
                out[col] = value
            elif mode == _TEXT:
                if value != "":
                    out[col] = value
            elif mode == _COUNT:
                if value > 0:
                    out[col] = value
            elif mode == _MAX:
                if value > 0:
                    c = t.c[col]
                    out[col] = case((func.coalesce(c, 0) < value, value), else_=c)
            elif mode == _DEFAULT:
                if value != "":
                    c = t.c[col]
                    out[col] = case((func.coalesce(c, "") == "", value), else_=c)
            elif mode == _NOW:
                out[col] = func.now()
        return out

    def insert(self, s: Session) -> Optional[int]:
        values = self.insert_values()
        if not values:
            return None
        stmt = insert(self.caps.table).values(values)
        id_col = self.caps.actual("id")
        if id_col and getattr(s.get_bind().dialect, "insert_returning", False):
            return s.execute(stmt.returning(self.caps.table.c[id_col])).scalar()
        res = s.execute(stmt)
        return getattr(res, "lastrowid", None)

    def update(self, s: Session, where: Dict[str, Any]) -> int:
        values = self.update_values()
        if not values:
            return 0
        stmt = update(self.caps.table).values(values)
        for k, v in where.items():
            stmt = stmt.where(self.caps.col(k) == v)
        return s.execute(stmt).rowcount or 0


def find_row_id(
    s: Session,
    caps: TableCaps,
    match: Dict[str, Any],
    *,
    latest: bool = False,
    coalesce: Iterable[str] = (),
) -> Optional[int]:
    """
    First (or latest) id of a row whose columns equal `match`. Columns
    named in `coalesce` compare with NULL read as ''.
    """
    if not caps.has("id"):
        return None
    id_col = caps.col("id")
    stmt = select(id_col)
    soft = {c.lower() for c in coalesce}
    for k, v in match.items():
        col = caps.col(k)
        if k.lower() in soft:
            stmt = stmt.where(func.coalesce(col, "") == v)
        else:
            stmt = stmt.where(col == v)
    stmt = stmt.order_by(id_col.desc() if latest else id_col.asc()).limit(1)
    got = s.execute(stmt).scalar()
    return int(got) if got is not None else None


def read_row(s: Session, caps: TableCaps, row_id: int, names: Iterable[str]) -> Dict[str, Any]:
    """Selected columns of one row by id; absent columns are omitted."""
    wanted = [caps.actual(n) for n in names]
    cols = [caps.table.c[c] for c in wanted if c]
    if not cols or not caps.has("id"):
        return {}
    row = s.execute(select(*cols).where(caps.col("id") == row_id).limit(1)).mappings().first()
    if row is None:
        return {}
    return {k.lower(): v for k, v in dict(row).items()}


@contextmanager
def savepoint(s: Session) -> Iterator[None]:
    """
    Run a statement group under a SAVEPOINT so its failure leaves the
    enclosing transaction usable. SQLite runs the group directly.
    """
    if s.get_bind().dialect.name == "sqlite":
        yield
        return
    with s.begin_nested():
        yield
