# --- core/llm_utils.py ---
import json
import logging
import re
import time

import requests

log_llm = logging.getLogger("ppaper.llm")

MAX_RETRIES = 3
RETRY_DELAY_S = 2

SMART_QUOTES = {
    "“": '"',
    "”": '"',
    "„": '"',
    "‘": "'",
    "’": "'",
}
FENCE_RE = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)


class LLMError(Exception):
    """Raised when the completion service cannot produce usable output."""


def format_text_for_log(text: str) -> str:
    """Formats a long text block into a concise, single-line summary for logging."""
    single_line_text = str(text).replace("\n", " ").strip()
    if len(single_line_text) > 240:
        return f'"{single_line_text[:115]}...{single_line_text[-115:]}"'
    return f'"{single_line_text}"'


def _first_json_span(text: str) -> str | None:
    """Returns the first balanced {...} or [...] span, honoring string literals."""
    start = next((i for i, c in enumerate(text) if c in "{["), None)
    if start is None:
        return None
    stack = []
    in_string = escaped = False
    for i in range(start, len(text)):
        c = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif c == "\\":
                escaped = True
            elif c == '"':
                in_string = False
            continue
        if c == '"':
            in_string = True
        elif c in "{[":
            stack.append("}" if c == "{" else "]")
        elif c in "}]":
            if not stack or stack.pop() != c:
                return None
            if not stack:
                return text[start : i + 1]
    return None


def extract_json_from_llm_response(text: str) -> dict | list | None:
    """
    Finds and parses the first JSON object or array in a completion.

    Tolerates Markdown code fences, typographic quotes, trailing commas and
    commentary before or after the payload. Returns None when nothing usable
    is found.
    """
    if not text:
        return None
    fenced = FENCE_RE.search(text)
    candidate = fenced.group(1) if fenced else text
    for smart, plain in SMART_QUOTES.items():
        candidate = candidate.replace(smart, plain)

    json_str = _first_json_span(candidate)
    if json_str is None:
        log_llm.warning("No JSON object or array found in LLM response.")
        return None

    # Attempt to fix common errors, like trailing commas
    json_str = re.sub(r",\s*([\]}])", r"\1", json_str)
    try:
        return json.loads(json_str)
    except json.JSONDecodeError as e:
        log_llm.warning(
            "Failed to parse extracted JSON string. Error: %s\nString: %s",
            e,
            format_text_for_log(json_str),
        )
        return None


def query_chat_llm(
    system_prompt: str,
    user_prompt: str,
    api_url: str,
    model: str,
    api_key: str = "",
    temperature: float = None,
    max_tokens: int = None,
    timeout: int = 60,
) -> str:
    """
    Sends a system/user prompt pair to an OpenAI-compatible chat completions
    endpoint with a retry mechanism. Returns the message content.
    Raises:
        LLMError: After the last failed attempt, or when the reply is empty.
    """
    last_exception = None
    log_llm.debug(
        "Querying LLM:\n  - Model: %s\n  - System: %s\n  - User: %s",
        model,
        format_text_for_log(system_prompt),
        format_text_for_log(user_prompt),
    )

    payload = {
        "model": model,
        "messages": [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ],
        "stream": False,
    }
    if temperature is not None:
        payload["temperature"] = temperature
    if max_tokens is not None:
        payload["max_tokens"] = max_tokens
    headers = {"Content-Type": "application/json", "Accept": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"

    for attempt in range(MAX_RETRIES):
        try:
            start_time = time.monotonic()
            response = requests.post(
                f"{api_url.rstrip('/')}/chat/completions",
                json=payload,
                headers=headers,
                timeout=timeout,
            )
            response.raise_for_status()
            data = response.json()
            duration = time.monotonic() - start_time
            choices = data.get("choices") or [{}]
            content = ((choices[0].get("message") or {}).get("content") or "").strip()
            usage = data.get("usage") or {}
            log_llm.debug(
                "LLM Query OK: model=%s duration=%.2fs prompt_tk=%d response_tk=%d response=%s",
                model,
                duration,
                usage.get("prompt_tokens", 0),
                usage.get("completion_tokens", 0),
                format_text_for_log(content),
            )
            if not content:
                raise LLMError("LLM returned an empty response.")
            return content
        except (requests.exceptions.RequestException, ValueError) as e:
            last_exception = e
            log_llm.warning("LLM query failed on attempt %d/%d: %s", attempt + 1, MAX_RETRIES, e)
            if attempt < MAX_RETRIES - 1:
                time.sleep(RETRY_DELAY_S)
            else:
                log_llm.error("Failed to query chat LLM after %d retries.", MAX_RETRIES)

    raise LLMError(f"LLM API request failed: {last_exception}")


class ChatCompletionClient:
    """Binds `query_chat_llm` to the [LLM] settings section."""

    def __init__(self, settings: dict):
        llm = settings.get("LLM", settings)
        self.api_url = llm.get("url", "")
        self.model = llm.get("model", "")
        self.api_key = llm.get("api_key", "")
        self.max_tokens = int(llm.get("max_tokens", 4096))
        self.temperature = float(llm.get("temperature", 0.1))
        self.timeout = int(llm.get("timeout", 60))

    def is_configured(self) -> bool:
        return bool(self.api_url and self.model and self.api_key)

    def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int = None,
        temperature: float = None,
    ) -> str:
        return query_chat_llm(
            system_prompt,
            user_prompt,
            self.api_url,
            self.model,
            api_key=self.api_key,
            temperature=self.temperature if temperature is None else temperature,
            max_tokens=self.max_tokens if max_tokens is None else max_tokens,
            timeout=self.timeout,
        )
