"""Conversation service adapter over LiteLLM.

call_llm() is a generator: it yields text fragments as they stream in and
finishes with exactly one Completion carrying the assembled assistant message
and its usage metadata.
"""

from dataclasses import dataclass, field
from typing import Iterator

from .errors import AgentError
from .metrics import TurnUsage

DEFAULT_SEARCH_CONTEXT_SIZE = "medium"


@dataclass
class Completion:
    """Terminal record of one model response."""

    content: str = ""
    tool_calls: list[dict] = field(default_factory=list)
    usage: TurnUsage = field(default_factory=TurnUsage)
    finish_reason: str | None = None


def model_string(provider: str, model: str) -> str:
    """LiteLLM model route, e.g. ``gemini/gemini-2.0-flash``."""
    if not provider or model.startswith(f"{provider}/"):
        return model
    return f"{provider}/{model}"


def _completion_kwargs(
    provider: str,
    model: str,
    *,
    api_key: str | None,
    base_url: str | None,
    max_output_tokens: int | None,
    temperature: float | None,
) -> dict:
    kwargs: dict = {"model": model_string(provider, model)}
    if api_key:
        kwargs["api_key"] = api_key
    if base_url:
        kwargs["api_base"] = base_url
    if max_output_tokens is not None:
        kwargs["max_tokens"] = max_output_tokens
    if temperature is not None:
        kwargs["temperature"] = temperature
    return kwargs


def _usage_from(response) -> TurnUsage:
    usage = getattr(response, "usage", None)
    if usage is None:
        return TurnUsage()
    details = getattr(usage, "prompt_tokens_details", None)
    cached = getattr(details, "cached_tokens", None) if details is not None else None
    if not cached:
        cached = getattr(usage, "cache_read_input_tokens", None)
    return TurnUsage(
        input_tokens=int(getattr(usage, "prompt_tokens", 0) or 0),
        output_tokens=int(getattr(usage, "completion_tokens", 0) or 0),
        cached_tokens=int(cached or 0),
    )


def _tool_calls_from(message) -> list[dict]:
    calls = []
    for tc in getattr(message, "tool_calls", None) or []:
        calls.append(
            {
                "id": tc.id,
                "type": "function",
                "function": {
                    "name": tc.function.name,
                    "arguments": tc.function.arguments or "{}",
                },
            }
        )
    return calls


def _to_completion(response) -> Completion:
    choice = response.choices[0]
    tool_calls = _tool_calls_from(choice.message)
    usage = _usage_from(response)
    usage.tool_call = bool(tool_calls)
    return Completion(
        content=choice.message.content or "",
        tool_calls=tool_calls,
        usage=usage,
        finish_reason=choice.finish_reason,
    )


def call_llm(
    provider: str,
    model: str,
    messages: list[dict],
    tools: list[dict] | None = None,
    *,
    api_key: str | None = None,
    base_url: str | None = None,
    max_output_tokens: int | None = None,
    temperature: float | None = None,
    stream: bool = True,
) -> Iterator[str | Completion]:
    """Send the transcript to the model.

    Yields str fragments while streaming, then one Completion. With
    stream=False only the Completion is yielded. Every LiteLLM failure is
    raised as AgentError.
    """
    import litellm

    litellm.suppress_debug_info = True

    completion_kwargs = _completion_kwargs(
        provider,
        model,
        api_key=api_key,
        base_url=base_url,
        max_output_tokens=max_output_tokens,
        temperature=temperature,
    )
    completion_kwargs["messages"] = messages
    if tools:
        completion_kwargs["tools"] = tools
        completion_kwargs["tool_choice"] = "auto"

    if not stream:
        try:
            response = litellm.completion(**completion_kwargs)
        except Exception as e:
            raise AgentError(f"LLM call failed: {e}") from e
        yield _to_completion(response)
        return

    chunks = []
    try:
        response = litellm.completion(
            stream=True, stream_options={"include_usage": True}, **completion_kwargs
        )
        for chunk in response:
            chunks.append(chunk)
            if not chunk.choices:
                continue
            text = getattr(chunk.choices[0].delta, "content", None)
            if text:
                yield text
        assembled = litellm.stream_chunk_builder(chunks, messages=messages)
    except Exception as e:
        raise AgentError(f"LLM call failed: {e}") from e

    if assembled is None:
        raise AgentError("LLM call failed: empty response stream")
    yield _to_completion(assembled)


def web_search(
    query: str,
    *,
    provider: str,
    model: str,
    api_key: str | None = None,
    base_url: str | None = None,
    search_context_size: str = DEFAULT_SEARCH_CONTEXT_SIZE,
    **_ignored,
) -> str:
    """Answer query with a model call that has web search enabled."""
    import litellm

    litellm.suppress_debug_info = True

    completion_kwargs = _completion_kwargs(
        provider,
        model,
        api_key=api_key,
        base_url=base_url,
        max_output_tokens=None,
        temperature=None,
    )
    try:
        response = litellm.completion(
            messages=[{"role": "user", "content": query}],
            web_search_options={"search_context_size": search_context_size},
            **completion_kwargs,
        )
    except Exception as e:
        raise AgentError(f"web search failed: {e}") from e
    return response.choices[0].message.content or ""
