"""
Thin wrapper around the OpenAI chat completions API with an offline mode.

Behaviour:
1. If USE_OFFLINE_MODEL is set, return a deterministic placeholder without any
   external calls.
2. Otherwise call the OpenAI API with OPENAI_API_KEY.

Any exception during the OpenAI call is converted into a RuntimeError so
callers have a consistent error path.
"""

from typing import Dict, List
import hashlib
import os

# ``openai`` is imported lazily only when needed so offline mode does not
# require the dependency to be configured.


def _use_offline() -> bool:
    return os.getenv("USE_OFFLINE_MODEL", "").lower() in {"1", "true", "yes"}


def _get_api_key() -> str:
    return (os.getenv("OPENAI_API_KEY") or "").strip()


def _deterministic_placeholder(messages: List[Dict[str, str]]) -> str:
    """Return a deterministic placeholder shaped like a goal suggestion list."""
    joined = "\n".join(f"{m.get('role')}:{m.get('content', '')}" for m in messages)
    h = hashlib.sha1(joined.encode("utf-8")).hexdigest()[:12]
    return (
        f"• Daily check-in ({h})\n"
        "  Record how you feel each evening and share notes at your next visit."
    )


def call_openai(messages: List[Dict[str, str]], model: str = "gpt-4.1-mini", temperature: float = 0.2) -> str:
    """Chat completion with an offline fallback.

    Args:
        messages: OpenAI-style message dicts.
        model: Remote model name (ignored offline).
        temperature: Sampling temperature.
    Returns:
        Assistant response content string.
    Raises:
        RuntimeError when no key is configured or the API call fails.
    """
    if _use_offline():
        return _deterministic_placeholder(messages)

    api_key = _get_api_key()
    if not api_key:
        raise RuntimeError("OpenAI key not configured.")
    try:
        from openai import OpenAI  # type: ignore

        client = OpenAI(api_key=api_key)
        response = client.chat.completions.create(
            model=model,
            messages=messages,
            temperature=temperature,
        )
        content = response.choices[0].message.content
    except Exception as exc:  # pragma: no cover - network errors / SDK issues
        raise RuntimeError(f"Error calling OpenAI: {exc}") from exc
    if not content or not content.strip():
        raise RuntimeError("Empty response from OpenAI")
    return content.strip()


__all__ = ["call_openai"]
