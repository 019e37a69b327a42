"""
In-memory stand-ins for the async SQLAlchemy session and the chat model.
"""
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

from kidcare.core.exceptions import LLMProviderError


class FakeResult:
    """Minimal stand-in for a SQLAlchemy Result."""

    def __init__(
        self,
        rows: Optional[List[Any]] = None,
        scalars: Optional[List[Any]] = None,
        rowcount: int = 0,
        scalar: Any = None,
    ):
        self._rows = rows or []
        self._scalars = scalars or []
        self.rowcount = rowcount
        self._scalar = scalar

    def all(self):
        return list(self._rows)

    def first(self):
        return self._rows[0] if self._rows else None

    def scalars(self):
        return SimpleNamespace(all=lambda: list(self._scalars))

    def scalar_one(self):
        return self._scalar


class FakeTransaction:
    def __init__(self, session: "FakeSession"):
        self.session = session

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if exc_type is None:
            if self.session.fail_on_commit is not None:
                raise self.session.fail_on_commit
            self.session._assign_ids()
            self.session.commits += 1
        else:
            self.session.rollbacks += 1
        return False


class FakeSession:
    """
    In-memory async session.

    ``objects`` answers ``get(Model, id)``; ``results`` is consumed in order
    by ``execute``; every executed statement is kept in ``executed``.
    """

    def __init__(
        self,
        objects: Optional[Dict] = None,
        results: Optional[List[FakeResult]] = None,
        fail_on_execute: Optional[Exception] = None,
        fail_on_commit: Optional[Exception] = None,
    ):
        self.objects = objects or {}
        self.results = list(results or [])
        self.fail_on_execute = fail_on_execute
        self.fail_on_commit = fail_on_commit
        self.executed: List[Any] = []
        self.added: List[Any] = []
        self.commits = 0
        self.rollbacks = 0

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    def begin(self):
        return FakeTransaction(self)

    async def get(self, model, ident):
        return self.objects.get((model, ident))

    async def execute(self, stmt):
        if self.fail_on_execute is not None:
            raise self.fail_on_execute
        self.executed.append(stmt)
        return self.results.pop(0) if self.results else FakeResult()

    def add(self, obj):
        self.added.append(obj)

    def add_all(self, objs):
        self.added.extend(objs)

    async def flush(self):
        self._assign_ids()

    async def refresh(self, obj):
        self._assign_ids()

    def _assign_ids(self):
        for i, obj in enumerate(self.added, start=1):
            if getattr(obj, "id", None) is None:
                obj.id = i


class FakeSessionFactory:
    """Callable returning the same FakeSession every time."""

    def __init__(self, session: FakeSession):
        self.session = session
        self.calls = 0

    def __call__(self):
        self.calls += 1
        return self.session



class FakeChatModel:
    """Chat model returning canned tokens; records whether its stream was closed."""

    def __init__(self, tokens=None, fail_after=None):
        self.tokens = tokens if tokens is not None else ["Try some grated cheese ", "with soft vegetables."]
        self.fail_after = fail_after
        self.closed = False
        self.messages = None

    async def generate(self, messages):
        self.messages = messages
        return "".join(self.tokens)

    async def stream_generate(self, messages):
        self.messages = messages
        try:
            for i, token in enumerate(self.tokens):
                if self.fail_after is not None and i == self.fail_after:
                    raise LLMProviderError("connection reset")
                yield token
        finally:
            self.closed = True

    async def aclose(self):
        pass
