"""AI calls behind background jobs, plus prompt building and response parsing."""
import json
import logging
import re
import sys
import threading
import time
from typing import Any

from .config import config, AVAILABLE_MODELS, TOKENS_PER_CHAR_ESTIMATE

logger = logging.getLogger(__name__)

class CancelledError(Exception): pass
class GenerationError(Exception): pass

MAX_LISTED_FILES = 2000

def calculate_cost(input_tokens: int, output_tokens: int, model_name: str) -> tuple[float, str]:
    pricing = AVAILABLE_MODELS.get(model_name)
    if not pricing:
        return 0.0, " | Cost: (unknown model pricing)"
    total_cost = (input_tokens / 1_000_000) * pricing.get("input", 0)
    total_cost += (output_tokens / 1_000_000) * pricing.get("output", 0)
    return total_cost, f" | Est. Cost: ${total_cost:.4f}"

def _create_openai_client():
    from openai import OpenAI
    # Access module directly to get latest values
    deck_cfg = sys.modules["deck.config"]
    return OpenAI(base_url=deck_cfg.API_BASE_URL, api_key=deck_cfg.API_KEY, timeout=config.job_timeout)

def complete(messages: list[dict[str, Any]], cancel_event: threading.Event | None = None,
             temperature: float | None = None) -> str:
    """Stream a chat completion and return the full text."""
    if not sys.modules["deck.config"].API_KEY:
        raise GenerationError("No API key configured (set CONTEXTDECK_API_KEY or api_key in settings.json)")

    client = _create_openai_client()
    start_time = time.time()
    input_tokens = 0
    output_tokens = 0
    result = ""

    logger.info(f"Requesting completion with model: {config.model}")
    try:
        kwargs: dict[str, Any] = {"model": config.model, "messages": messages, "stream": True}
        if temperature is not None:
            kwargs["temperature"] = temperature
        stream = client.chat.completions.create(**kwargs)

        for chunk in stream:
            if cancel_event and cancel_event.is_set():
                logger.info("Completion cancelled")
                raise CancelledError("Cancelled by user")
            if not chunk.choices:
                continue
            content = chunk.choices[0].delta.content
            if content:
                result += content
            if getattr(chunk, "usage", None):
                input_tokens = getattr(chunk.usage, "prompt_tokens", input_tokens)
                output_tokens = getattr(chunk.usage, "completion_tokens", output_tokens)
    except (CancelledError, GenerationError):
        raise
    except Exception as e:
        logger.exception(f"Error during completion: {e}")
        raise GenerationError(str(e)) from e

    if input_tokens == 0:
        input_tokens = len(str(messages)) // TOKENS_PER_CHAR_ESTIMATE
    if output_tokens == 0:
        output_tokens = len(result) // TOKENS_PER_CHAR_ESTIMATE
    _, cost_str = calculate_cost(input_tokens, output_tokens, config.model)
    logger.info(f"Tokens: {input_tokens} in / {output_tokens} out{cost_str}")
    logger.info(f"Time: {time.time() - start_time:.2f}s")
    return result

def build_file_finder_messages(task: str, paths: list[str]) -> list[dict[str, str]]:
    listed = paths[:MAX_LISTED_FILES]
    more = f"\n(... {len(paths) - len(listed)} more files not shown)" if len(paths) > len(listed) else ""
    system = (
        "You select the files a developer needs to read to complete a task.\n"
        "Answer with the relevant file paths only, one per line, exactly as they appear "
        "in the project file list. No commentary, no numbering, no code fences."
    )
    user = "Project files:\n" + "\n".join(listed) + more + f"\n\nTask:\n{task}"
    return [{"role": "system", "content": system}, {"role": "user", "content": user}]

def build_regex_messages(task: str) -> list[dict[str, str]]:
    system = (
        "You write regular expressions that filter a project's files for a task.\n"
        "Respond with a single JSON object with the keys titleRegex, contentRegex, "
        "negativeTitleRegex and negativeContentRegex. titleRegex matches file paths, "
        "contentRegex matches file contents, the negative patterns exclude. Use an empty "
        "string for any pattern that is not needed. Patterns are compiled case-insensitive."
    )
    return [{"role": "system", "content": system}, {"role": "user", "content": f"Task:\n{task}"}]

def build_improve_text_messages(text: str) -> list[dict[str, str]]:
    system = (
        "You improve task descriptions for a coding assistant: fix grammar, make the "
        "request clear and specific, keep the meaning and any code or paths intact. "
        "Respond with the improved text only."
    )
    return [{"role": "system", "content": system}, {"role": "user", "content": text}]

_SKIP_PREFIXES = ("//", "#", "Note:", "Analysis:", "Here are", "The following", "Based on", "```")
_NUMBERED = re.compile(r"^\d+[.)]\s*")

def parse_path_list(text: str) -> list[str]:
    """Pull file paths out of a newline-delimited answer, tolerating list markup."""
    paths = []
    seen = set()
    for raw in text.replace("\r\n", "\n").replace("\r", "\n").split("\n"):
        line = raw.strip()
        if len(line) < 2 or line.startswith(_SKIP_PREFIXES) or line.lower() == "json":
            continue
        line = _NUMBERED.sub("", line)
        if line.startswith(("- ", "* ")):
            line = line[2:]
        line = line.strip().strip("`\"'").strip()
        if line.startswith("./"):
            line = line[2:]
        if line and line not in seen:
            seen.add(line)
            paths.append(line)
    return paths

def _extract_json_object(text: str) -> dict | None:
    stripped = text.strip()
    if stripped.startswith("```"):
        stripped = re.sub(r"^```[a-zA-Z]*\s*", "", stripped)
        stripped = re.sub(r"\s*```$", "", stripped)
    start, end = stripped.find("{"), stripped.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        data = json.loads(stripped[start:end + 1])
    except ValueError:
        return None
    return data if isinstance(data, dict) else None

_REGEX_KEYS = {
    "titleRegex": "title_regex",
    "contentRegex": "content_regex",
    "negativeTitleRegex": "negative_title_regex",
    "negativeContentRegex": "negative_content_regex",
}

def parse_regex_patterns(text: str) -> dict[str, str]:
    """Map a JSON answer to regex field names. Raises GenerationError if unusable."""
    data = _extract_json_object(text)
    if data is None:
        raise GenerationError("Response did not contain a JSON object with regex patterns")
    patterns = {}
    for key, field_name in _REGEX_KEYS.items():
        value = data.get(key, data.get(field_name))
        if isinstance(value, str):
            patterns[field_name] = value
    if not patterns:
        raise GenerationError("Response contained no regex patterns")
    return patterns

def parse_improved_text(text: str) -> str:
    """Accept {"text": ...}, {"improvedText": ...} or plain text."""
    data = _extract_json_object(text) if text.strip().startswith(("{", "```")) else None
    if data:
        for key in ("text", "improvedText"):
            if isinstance(data.get(key), str):
                return data[key]
    return text.strip()
