"""
AI gateway - one completion call with provider fallback.

Providers are tried in PROVIDER_ORDER (Anthropic, then OpenAI); a provider is
skipped when its key is empty and abandoned on any exception. Every call has
a hard timeout and reports cost, latency and token usage.
generate_response() never raises: when no provider answers, the result carries
"error" and empty content.
"""
import logging
import re
import time
from typing import Optional

logger = logging.getLogger(__name__)

PROVIDER_ORDER = ("anthropic", "openai")

# USD per million tokens (input/output)
COST_TABLE = {
    "claude-haiku-4-5-20251001": {"input": 1.00, "output": 5.00},
    "claude-sonnet-4-5-20250929": {"input": 3.00, "output": 15.00},
    "gpt-4o-mini": {"input": 0.15, "output": 0.60},
    "gpt-4o": {"input": 2.50, "output": 10.00},
}
DEFAULT_COST = {"input": 1.0, "output": 5.0}

_THINK_BLOCK = re.compile(r"<think>.*?</think>", re.DOTALL | re.IGNORECASE)


def calculate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    costs = COST_TABLE.get(model, DEFAULT_COST)
    return (input_tokens * costs["input"] + output_tokens * costs["output"]) / 1_000_000


def _sanitize_output_text(text: Optional[str]) -> str:
    """Drop reasoning blocks some models prepend to their answer."""
    if not text:
        return ""
    return _THINK_BLOCK.sub("", text).strip()


def _result(provider: str, model: str, content: str, started: float,
            input_tokens: int, output_tokens: int) -> dict:
    return {
        "content": _sanitize_output_text(content),
        "provider": provider,
        "model": model,
        "latency_ms": int((time.monotonic() - started) * 1000),
        "cost_usd": calculate_cost(model, input_tokens, output_tokens),
        "input_tokens": input_tokens,
        "output_tokens": output_tokens,
        "error": None,
    }


def _error_result(error_msg: str) -> dict:
    return {
        "content": "",
        "provider": "none",
        "model": "none",
        "latency_ms": 0,
        "cost_usd": 0.0,
        "input_tokens": 0,
        "output_tokens": 0,
        "error": error_msg,
    }


async def generate_response(
    system_prompt: str,
    user_message: str,
    max_tokens: Optional[int] = None,
    temperature: float = 0.7,
    json_mode: bool = False,
) -> dict:
    """
    Returns:
        {"content", "provider", "model", "latency_ms", "cost_usd",
         "input_tokens", "output_tokens", "error"}
    """
    from stylelab.config import get_settings
    settings = get_settings()

    callers = {
        "anthropic": (settings.anthropic_api_key, _generate_anthropic),
        "openai": (settings.openai_api_key, _generate_openai),
    }
    failures = []
    for provider in PROVIDER_ORDER:
        api_key, call = callers[provider]
        if not api_key:
            continue
        try:
            return await call(system_prompt, user_message, max_tokens or settings.anthropic_max_tokens,
                              temperature, json_mode)
        except Exception as e:
            failures.append(f"{provider}: {e}")
            logger.error("%s generation failed: %s", provider, str(e), extra={"provider": provider})

    if failures:
        return _error_result("All AI providers failed (" + "; ".join(failures) + ")")
    return _error_result("No AI provider available (check API keys)")


async def _generate_anthropic(
    system_prompt: str,
    user_message: str,
    max_tokens: int,
    temperature: float,
    json_mode: bool,
) -> dict:
    from anthropic import AsyncAnthropic
    from stylelab.config import get_settings
    settings = get_settings()

    model = settings.anthropic_model
    client = AsyncAnthropic(api_key=settings.anthropic_api_key, timeout=settings.anthropic_timeout_seconds)

    messages = [{"role": "user", "content": user_message}]
    if json_mode:
        # Prefilled brace keeps the answer to a bare JSON object
        messages.append({"role": "assistant", "content": "{"})

    started = time.monotonic()
    response = await client.messages.create(
        model=model,
        max_tokens=max_tokens,
        temperature=temperature,
        system=system_prompt,
        messages=messages,
    )

    content = "".join(block.text for block in response.content if block.type == "text")
    if json_mode and not content.lstrip().startswith("{"):
        content = "{" + content

    usage = response.usage
    return _result(
        "anthropic", model, content, started,
        usage.input_tokens if usage else 0,
        usage.output_tokens if usage else 0,
    )


async def _generate_openai(
    system_prompt: str,
    user_message: str,
    max_tokens: int,
    temperature: float,
    json_mode: bool,
) -> dict:
    from openai import AsyncOpenAI
    from stylelab.config import get_settings
    settings = get_settings()

    model = settings.openai_model
    client = AsyncOpenAI(api_key=settings.openai_api_key, timeout=settings.anthropic_timeout_seconds)

    options = {}
    if json_mode:
        options["response_format"] = {"type": "json_object"}

    started = time.monotonic()
    response = await client.chat.completions.create(
        model=model,
        max_tokens=max_tokens,
        temperature=temperature,
        messages=[
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_message},
        ],
        **options,
    )

    content = response.choices[0].message.content if response.choices else ""
    usage = response.usage
    return _result(
        "openai", model, content, started,
        usage.prompt_tokens if usage else 0,
        usage.completion_tokens if usage else 0,
    )
