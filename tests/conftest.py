import math
import re
from copy import deepcopy

import pytest

from backend.intelligence import messages, progress, search, writer


def _row_to_dict(row):
    if isinstance(row, dict):
        return deepcopy(row)
    if hasattr(row, "model_dump"):
        return deepcopy(row.model_dump())
    return deepcopy(dict(row))


def _matches(row, clause):
    clause = str(clause or "").strip()
    many = re.fullmatch(r"id\s+IN\s+\((.*)\)", clause)
    if many:
        wanted = {v.strip().strip("'") for v in many.group(1).split(",")}
        return str(row.get("id")) in wanted
    one = re.fullmatch(r"id\s*=\s*'?([^']*)'?", clause)
    if one:
        return str(row.get("id")) == one.group(1)
    return True


def _cosine_distance(a, b):
    dot = sum(x * y for x, y in zip(a, b))
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(y * y for y in b))
    if na == 0 or nb == 0:
        return 1.0
    return 1.0 - dot / (na * nb)


class FakeQuery:
    def __init__(self, rows, vector=None):
        self._rows = list(rows)
        self._vector = vector
        self.metric = None

    def select(self, _columns):
        return self

    def distance_type(self, metric):
        self.metric = metric
        return self

    def where(self, clause):
        return FakeQuery([row for row in self._rows if _matches(row, clause)], self._vector)

    def limit(self, n):
        rows = self._rows
        if self._vector is not None:
            scored = []
            for row in rows:
                scored.append({**row, "_distance": _cosine_distance(self._vector, row.get("vector") or [])})
            rows = sorted(scored, key=lambda r: r["_distance"])
        return FakeQuery(rows[: int(n)])

    def to_list(self):
        return deepcopy(self._rows)


class FakeTable:
    def __init__(self, rows=None):
        self.rows = [_row_to_dict(r) for r in (rows or [])]
        self.fail_on = set()

    def search(self, vector=None, *_args, **_kwargs):
        if "search" in self.fail_on:
            raise RuntimeError("table unavailable")
        return FakeQuery(self.rows, vector)

    def count_rows(self, *_args):
        if "search" in self.fail_on:
            raise RuntimeError("table unavailable")
        return len(self.rows)

    def add(self, rows):
        if "add" in self.fail_on:
            raise RuntimeError("table is read-only")
        for row in rows:
            self.rows.append(_row_to_dict(row))

    def update(self, where, values):
        if "update" in self.fail_on:
            raise RuntimeError("table is read-only")
        for row in self.rows:
            if _matches(row, where):
                row.update(deepcopy(values or {}))

    def delete(self, where):
        self.rows = [row for row in self.rows if not _matches(row, where)]


class FakeDb:
    def __init__(self):
        self.tables = {
            "messages": FakeTable(),
            "conversation_chunks": FakeTable(),
            "chunk_vectors": FakeTable(),
            "pipeline_runs": FakeTable(),
        }

    def table_names(self):
        return list(self.tables.keys())

    def open_table(self, name):
        return self.tables[name]


@pytest.fixture
def fake_db(monkeypatch):
    db = FakeDb()

    async def _run_inline(write_op):
        return await write_op()

    for module in (messages, progress, writer, search):
        monkeypatch.setattr(module, "get_db", lambda: db)
    for module in (messages, progress, writer):
        monkeypatch.setattr(module, "enqueue_write", _run_inline)
    return db
