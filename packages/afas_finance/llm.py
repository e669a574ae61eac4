"""Shared OpenAI Responses helpers for the assistant and the category mapper.

No side effects occur at import time: the client is created per call and the
model name is read from the environment when needed.
"""

from __future__ import annotations

import json
import os
from collections.abc import Callable, Mapping
from typing import Any

from openai import OpenAI

from . import retry

_DEFAULT_MODEL: str = "gpt-5"
_MODEL_ENV: str = "AFAS_FINANCE_MODEL"


def model_name() -> str:
    value = os.getenv(_MODEL_ENV)
    return value.strip() if value and value.strip() else _DEFAULT_MODEL


def create_client() -> OpenAI:
    return OpenAI()


def is_retryable(exc: BaseException) -> bool:
    """Retry HTTP 429 and 5xx only; parsing/validation errors are terminal."""

    return retry.is_retryable_status(getattr(exc, "status_code", None))


def call_with_retry[T](fn: Callable[[], T], *, area: str, label: str) -> T:
    return retry.call_with_retry(fn, area=area, label=label, is_retryable=is_retryable)


def extract_response_text(resp: Any) -> str:
    """Return the text output of a Responses API result.

    Prefers ``resp.output_text`` and falls back to the first output item that
    carries content. Raises ``ValueError`` when no text can be located.
    """

    text: str | None = getattr(resp, "output_text", None)
    if not text:
        try:
            first = next(
                (item for item in (getattr(resp, "output", None) or ()) if getattr(item, "content", None)),
                None,
            )
            content = getattr(first, "content", None)
            if content:
                txt_obj = getattr(content[0], "text", None)
                if isinstance(txt_obj, str):
                    text = txt_obj
                else:
                    # Some SDKs expose text as an object with a ``value`` string.
                    maybe_val = getattr(txt_obj, "value", None)
                    if isinstance(maybe_val, str):
                        text = maybe_val
        except Exception:  # noqa: BLE001 - tolerate SDK shape differences
            text = None
    if not text or not isinstance(text, str):
        raise ValueError("Unexpected Responses API shape; unable to locate text output")
    return text


def extract_response_json_mapping(resp: Any) -> Mapping[str, Any]:
    text = extract_response_text(resp)
    try:
        decoded = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError("Model output was not valid JSON per the requested schema") from e
    if not isinstance(decoded, Mapping):
        raise ValueError("Model output must be a JSON object")
    return decoded


__all__ = [
    "call_with_retry",
    "create_client",
    "extract_response_json_mapping",
    "extract_response_text",
    "is_retryable",
    "model_name",
]
