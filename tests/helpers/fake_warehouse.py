"""In-memory stand-in for the Postgres warehouse.

Understands exactly the statements this project generates (CREATE TABLE,
INSERT, UPDATE/DELETE with ``"COL" = %s`` predicates, ALTER TABLE
ADD/DROP COLUMN, the control-table SELECT) and raises the real
``psycopg2.errors`` classes so error handling is exercised as in prod.
"""
from __future__ import annotations

import re
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

import psycopg2
import psycopg2.errors

_CREATE_RE = re.compile(r"^CREATE TABLE (\w+) \((.*)\)$", re.S)
_COLUMN_RE = re.compile(r'^"(\w+)" (.+)$')
_CONSTRAINT_RE = re.compile(r"^CONSTRAINT (\w+) (PRIMARY KEY|UNIQUE) \((.*)\)$")
_INSERT_RE = re.compile(r"^INSERT INTO (\w+)\s*\((.*?)\)\s*VALUES\s*\((.*)\)$", re.S)
_UPDATE_RE = re.compile(r'^UPDATE (\w+) SET "(\w+)" = %s WHERE (.+)$', re.S)
_DELETE_RE = re.compile(r"^DELETE FROM (\w+) WHERE (.+)$", re.S)
_SELECT_RE = re.compile(r"^SELECT (.+) FROM (\w+)$", re.S)
_ALTER_RE = re.compile(r"^ALTER TABLE (\w+) (.+)$", re.S)
_PREDICATE_RE = re.compile(r'"(\w+)" = %s')


def _names(raw: str) -> List[str]:
    return [part.strip().strip('"').upper() for part in raw.split(",") if part.strip()]


class _Diag:
    def __init__(self, constraint_name: Optional[str]) -> None:
        self.constraint_name = constraint_name


class FakeUniqueViolation(psycopg2.errors.UniqueViolation):
    """UniqueViolation reporting the violated constraint like the server does."""

    def __init__(self, message: str, constraint_name: str) -> None:
        super().__init__(message)
        self._diag = _Diag(constraint_name)

    @property
    def diag(self) -> _Diag:  # type: ignore[override]
        return self._diag


@dataclass
class FakeTable:
    name: str
    columns: List[str]
    types: Dict[str, str]
    primary_key: Tuple[str, ...] = ()
    primary_key_name: Optional[str] = None
    # (constraint name, columns)
    uniques: List[Tuple[str, Tuple[str, ...]]] = field(default_factory=list)
    rows: List[Dict[str, Any]] = field(default_factory=list)

    def copy(self) -> "FakeTable":
        return FakeTable(
            name=self.name,
            columns=list(self.columns),
            types=dict(self.types),
            primary_key=self.primary_key,
            primary_key_name=self.primary_key_name,
            uniques=list(self.uniques),
            rows=[dict(r) for r in self.rows],
        )


class FakeDatabase:
    def __init__(self) -> None:
        self.tables: Dict[str, FakeTable] = {}
        self.statements: List[str] = []
        self.commits = 0
        # Called with each SQL text; may raise to inject failures.
        self.on_execute: Optional[Callable[[str], None]] = None

    def table(self, name: str) -> FakeTable:
        return self.tables[name.lower()]

    def rows(self, name: str) -> List[Dict[str, Any]]:
        return self.table(name).rows


class FakeCursor:
    def __init__(self, conn: "FakeConnection") -> None:
        self._conn = conn
        self._result: List[Tuple[Any, ...]] = []

    def __enter__(self) -> "FakeCursor":
        return self

    def __exit__(self, *exc: object) -> None:
        return None

    def execute(self, sql: str, params: Optional[Sequence[Any]] = None) -> None:
        self._result = self._conn._execute(sql.strip(), tuple(params or ()))

    def executemany(self, sql: str, seq: Sequence[Sequence[Any]]) -> None:
        for params in seq:
            self.execute(sql, params)

    def fetchall(self) -> List[Tuple[Any, ...]]:
        return list(self._result)

    def fetchone(self) -> Optional[Tuple[Any, ...]]:
        return self._result[0] if self._result else None


class FakeConnection:
    def __init__(self, db: FakeDatabase) -> None:
        self._db = db
        self._pending: Optional[Dict[str, FakeTable]] = None
        self.closed = 0
        self.rollbacks = 0

    def cursor(self) -> FakeCursor:
        return FakeCursor(self)

    def commit(self) -> None:
        if self._pending is not None:
            self._db.tables = self._pending
            self._pending = None
        self._db.commits += 1

    def rollback(self) -> None:
        self._pending = None
        self.rollbacks += 1

    def close(self) -> None:
        self.closed = 1

    def _tables(self) -> Dict[str, FakeTable]:
        if self._pending is None:
            self._pending = {name: t.copy() for name, t in self._db.tables.items()}
        return self._pending

    def _lookup(self, name: str) -> FakeTable:
        table = self._tables().get(name.lower())
        if table is None:
            raise psycopg2.errors.UndefinedTable(f'relation "{name.lower()}" does not exist')
        return table

    def _execute(self, sql: str, params: Tuple[Any, ...]) -> List[Tuple[Any, ...]]:
        self._db.statements.append(sql)
        if self._db.on_execute is not None:
            self._db.on_execute(sql)

        if sql == "SELECT 1":
            return [(1,)]
        if sql.startswith("CREATE TABLE"):
            self._create(sql)
        elif sql.startswith("INSERT INTO"):
            self._insert(sql, params)
        elif sql.startswith("UPDATE"):
            self._update(sql, params)
        elif sql.startswith("DELETE FROM"):
            self._delete(sql, params)
        elif sql.startswith("ALTER TABLE"):
            self._alter(sql)
        elif sql.startswith("SELECT"):
            return self._select(sql)
        else:
            raise psycopg2.errors.SyntaxError(f"unsupported statement: {sql}")
        return []

    def _create(self, sql: str) -> None:
        match = _CREATE_RE.match(sql)
        assert match, sql
        name = match.group(1).lower()
        tables = self._tables()
        if name in tables:
            raise psycopg2.errors.DuplicateTable(f'relation "{name}" already exists')

        table = FakeTable(name=name, columns=[], types={})
        for line in re.split(r",\n", match.group(2)):
            line = line.strip()
            constraint = _CONSTRAINT_RE.match(line)
            if constraint:
                cols = tuple(_names(constraint.group(3)))
                if constraint.group(2) == "PRIMARY KEY":
                    table.primary_key = cols
                    table.primary_key_name = constraint.group(1).lower()
                else:
                    table.uniques.append((constraint.group(1).lower(), cols))
                continue
            column = _COLUMN_RE.match(line)
            assert column, line
            table.columns.append(column.group(1).upper())
            table.types[column.group(1).upper()] = column.group(2)
        tables[name] = table

    def _insert(self, sql: str, params: Tuple[Any, ...]) -> None:
        match = _INSERT_RE.match(sql)
        assert match, sql
        table = self._lookup(match.group(1))
        cols = _names(match.group(2))
        if len(cols) != len(params) or match.group(3).count("%s") != len(params):
            raise psycopg2.errors.SyntaxError(f"{len(params)} params for {len(cols)} columns")
        for col in cols:
            if col not in table.columns:
                raise psycopg2.errors.UndefinedColumn(f'column "{col}" does not exist')

        row = {col: None for col in table.columns}
        row.update(dict(zip(cols, params)))
        for constraint_name, key in [(table.primary_key_name, table.primary_key), *table.uniques]:
            if not key:
                continue
            value = tuple(row[c] for c in key)
            if any(tuple(r[c] for c in key) == value for r in table.rows):
                raise FakeUniqueViolation(
                    f'duplicate key value violates unique constraint "{constraint_name}"', constraint_name or ""
                )
        table.rows.append(row)

    def _matching(self, table: FakeTable, where: str, params: Tuple[Any, ...]) -> List[Dict[str, Any]]:
        cols = [c.upper() for c in _PREDICATE_RE.findall(where)]
        return [r for r in table.rows if all(r.get(c) == v for c, v in zip(cols, params))]

    def _update(self, sql: str, params: Tuple[Any, ...]) -> None:
        match = _UPDATE_RE.match(sql)
        assert match, sql
        table = self._lookup(match.group(1))
        column = match.group(2).upper()
        for row in self._matching(table, match.group(3), params[1:]):
            row[column] = params[0]

    def _delete(self, sql: str, params: Tuple[Any, ...]) -> None:
        match = _DELETE_RE.match(sql)
        assert match, sql
        table = self._lookup(match.group(1))
        doomed = self._matching(table, match.group(2), params)
        table.rows = [r for r in table.rows if not any(r is d for d in doomed)]

    def _alter(self, sql: str) -> None:
        match = _ALTER_RE.match(sql)
        assert match, sql
        table = self._lookup(match.group(1))
        for clause in match.group(2).split(", "):
            add = re.match(r'^ADD COLUMN "(\w+)" (.+)$', clause)
            drop = re.match(r'^DROP COLUMN "(\w+)"$', clause)
            if add:
                col = add.group(1).upper()
                if col in table.columns:
                    raise psycopg2.errors.DuplicateColumn(f'column "{col}" already exists')
                table.columns.append(col)
                table.types[col] = add.group(2)
                for row in table.rows:
                    row[col] = None
            elif drop:
                col = drop.group(1).upper()
                if col not in table.columns:
                    raise psycopg2.errors.UndefinedColumn(f'column "{col}" does not exist')
                table.columns.remove(col)
                del table.types[col]
                for row in table.rows:
                    row.pop(col, None)
            else:
                raise psycopg2.errors.SyntaxError(f"unsupported ALTER clause: {clause}")

    def _select(self, sql: str) -> List[Tuple[Any, ...]]:
        match = _SELECT_RE.match(sql)
        assert match, sql
        table = self._lookup(match.group(2))
        cols = _names(match.group(1))
        return [tuple(r[c] for c in cols) for r in table.rows]


class FakeWarehouse:
    """Drop-in for ``ledger_analytics.postgres.Warehouse``."""

    def __init__(self, db: Optional[FakeDatabase] = None) -> None:
        self.db = db or FakeDatabase()
        self.checkouts = 0
        self.closed = False

    @contextmanager
    def connection(self) -> Iterator[FakeConnection]:
        self.checkouts += 1
        conn = FakeConnection(self.db)
        try:
            yield conn
        finally:
            conn.rollback()

    def close(self) -> None:
        self.closed = True
