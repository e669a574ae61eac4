"""Test helpers to stub the OpenAI Responses client used by ``afas_finance.llm``.

Two shapes are covered:

- ``MappingOpenAIStub`` answers category-mapping calls. It parses the
  embedded ``BEGIN_CATEGORIES_JSON`` block and asks a ``decide`` callable for
  each item, so tests only describe the mapping itself.
- ``ScriptedOpenAIStub`` replays a fixed list of responses (text answers or
  function-call requests) for the assistant loop.

Install either with ``monkeypatch.setattr(llm, "OpenAI", stub.factory)``.
"""

from __future__ import annotations

import json
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

BEGIN = "BEGIN_CATEGORIES_JSON\n"
END = "\nEND_CATEGORIES_JSON"


def extract_categories(user_content: str) -> list[dict[str, Any]]:
    b = user_content.find(BEGIN)
    e = user_content.rfind(END)
    if b == -1 or e == -1 or e <= b:
        raise AssertionError("category_mapping: user content missing embedded categories JSON block")
    return json.loads(user_content[b + len(BEGIN) : e])


@dataclass
class FunctionCall:
    name: str
    arguments: str
    call_id: str
    type: str = "function_call"


@dataclass
class StubResponse:
    output_text: str = ""
    output: list[Any] = field(default_factory=list)


def text_response(text: str) -> StubResponse:
    return StubResponse(output_text=text)


def function_call_response(*calls: tuple[str, dict[str, Any] | str]) -> StubResponse:
    items = [
        FunctionCall(
            name=name,
            arguments=args if isinstance(args, str) else json.dumps(args),
            call_id=f"call_{i}",
        )
        for i, (name, args) in enumerate(calls)
    ]
    return StubResponse(output_text="", output=items)


class StatusError(Exception):
    """Exception carrying an HTTP ``status_code`` like the OpenAI SDK errors."""

    def __init__(self, status_code: int) -> None:
        super().__init__(f"status {status_code}")
        self.status_code = status_code


class _Responses:
    def __init__(self, handler: Callable[[dict[str, Any]], Any], calls: list[dict[str, Any]]) -> None:
        self._handler = handler
        self._calls = calls
        self._lock = threading.Lock()

    def create(self, **kwargs: Any) -> Any:
        snapshot = dict(kwargs)
        if isinstance(snapshot.get("input"), list):
            # The caller keeps appending to the same list between rounds.
            snapshot["input"] = list(snapshot["input"])
        with self._lock:
            self._calls.append(snapshot)
        return self._handler(snapshot)


class _Client:
    def __init__(self, responses: _Responses) -> None:
        self.responses = responses


class MappingOpenAIStub:
    """Answer mapping batches with ``decide(item) -> (mapped_category, confidence)``."""

    def __init__(self, decide: Callable[[dict[str, Any]], tuple[str, float | None]]) -> None:
        self.calls: list[dict[str, Any]] = []
        self._decide = decide
        self._responses = _Responses(self._answer, self.calls)

    def _answer(self, kwargs: dict[str, Any]) -> StubResponse:
        results = []
        for item in extract_categories(kwargs["input"]):
            mapped, confidence = self._decide(item)
            results.append(
                {
                    "idx": item["idx"],
                    "category_3": item["category_3"],
                    "mapped_category": mapped,
                    "confidence": confidence,
                }
            )
        return text_response(json.dumps({"results": results}))

    def factory(self, *a: Any, **kw: Any) -> _Client:
        return _Client(self._responses)


class ScriptedOpenAIStub:
    """Return ``script`` items in order; exceptions in the script are raised."""

    def __init__(self, script: Sequence[Any]) -> None:
        self.calls: list[dict[str, Any]] = []
        self._script = list(script)
        self._responses = _Responses(self._next, self.calls)

    def _next(self, kwargs: dict[str, Any]) -> Any:
        if not self._script:
            raise AssertionError("ScriptedOpenAIStub: no scripted response left")
        item = self._script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    def factory(self, *a: Any, **kw: Any) -> _Client:
        return _Client(self._responses)
