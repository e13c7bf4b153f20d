"""
Tool-call format normalizer.

Models that do not emit tool calls through a provider-native channel write
them into their text output, each family in its own syntax:

  minimax    <minimax:tool_call><invoke name=..><parameter name=..>v</parameter></invoke>
  hermes     <tool_call>{"name": .., "arguments": {..}}</tool_call>
  anthropic  <tool_use><tool_name>..</tool_name><parameters>{..}</parameters></tool_use>
  qwen       ✿FUNCTION✿: name ✿ARGS✿: {..}
  glm        "action": .., "parameters": {..}  or a fenced JSON block with name/function
  openai     native tool_calls, nothing to parse in the text

Every parser is a pure function over the whole text that returns a list of
``CanonicalToolCall`` and never raises; malformed occurrences are skipped.
"""
from __future__ import annotations

import json
import re
import urllib.parse
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Sequence

import yaml

from .state import CanonicalToolCall, ToolDescriptor, ToolValue

FORMATS = ("openai", "minimax", "hermes", "anthropic", "qwen", "glm")

# Model id -> format; first match wins, default "openai".
_MODEL_FORMAT_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"^MiniMaxAI/", re.IGNORECASE), "minimax"),
    (re.compile(r"minimax", re.IGNORECASE), "minimax"),
    (re.compile(r"hermes", re.IGNORECASE), "hermes"),
    (re.compile(r"qwen-?agent|qwen1\.5", re.IGNORECASE), "qwen"),
    (re.compile(r"^Qwen/Qwen[23]", re.IGNORECASE), "openai"),
    (re.compile(r"zai-org/(?:Auto)?GLM", re.IGNORECASE), "glm"),
    (re.compile(r"claude", re.IGNORECASE), "anthropic"),
    (re.compile(r"deepseek", re.IGNORECASE), "openai"),
    (re.compile(r"CohereLabs/(?:c4ai-)?command", re.IGNORECASE), "openai"),
    (re.compile(r"meta-llama/", re.IGNORECASE), "openai"),
    (re.compile(r"google/gemma", re.IGNORECASE), "openai"),
]

_FENCED_JSON_RE = re.compile(r"```json\s*(.*?)\s*```", re.DOTALL)


def detect_tool_format(model_id: str) -> str:
    for pattern, fmt in _MODEL_FORMAT_PATTERNS:
        if pattern.search(model_id or ""):
            return fmt
    return "openai"


def detect_format_from_content(content: str) -> str | None:
    if "<minimax:tool_call>" in content:
        return "minimax"
    if "<tool_use>" in content:
        return "anthropic"
    if "<tool_call>" in content and '"name"' in content:
        return "hermes"
    if "✿FUNCTION✿" in content:
        return "qwen"
    if any('"function"' in block for block in _FENCED_JSON_RE.findall(content)):
        return "glm"
    return None


def has_tool_call_markers(content: str) -> bool:
    return (
        "<minimax:tool_call>" in content
        or "<tool_call>" in content
        or "<tool_use>" in content
        or "✿FUNCTION✿" in content
        or ('"action"' in content and '"parameters"' in content)
    )


# ---------------------------------------------------------------------------
# Value coercion by declared JSON-schema type
# ---------------------------------------------------------------------------

def _to_string(value: str) -> ToolValue:
    return value


def _to_int(value: str) -> ToolValue:
    try:
        return int(value.strip())
    except ValueError:
        pass
    try:
        number = float(value)
    except ValueError:
        return value
    return int(number) if number.is_integer() else value


def _to_number(value: str) -> ToolValue:
    try:
        number = float(value)
    except ValueError:
        return value
    if number != number or number in (float("inf"), float("-inf")):
        return value
    return int(number) if number.is_integer() else number


def _to_bool(value: str) -> ToolValue:
    return value.strip().lower() in {"true", "1"}


def _to_json(value: str) -> ToolValue:
    try:
        return json.loads(value)
    except (json.JSONDecodeError, ValueError):
        return value


_COERCERS: dict[str, Callable[[str], ToolValue]] = {
    "string": _to_string,
    "str": _to_string,
    "text": _to_string,
    "integer": _to_int,
    "int": _to_int,
    "number": _to_number,
    "float": _to_number,
    "boolean": _to_bool,
    "bool": _to_bool,
    "object": _to_json,
    "array": _to_json,
}


def coerce_value(value: str, declared_type: str | None = "string") -> ToolValue:
    """Convert a raw string parameter to the type its schema declares."""
    if value.strip().lower() == "null":
        return None
    coercer = _COERCERS.get((declared_type or "string").lower(), _to_json)
    return coercer(value)


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------

_MINIMAX_BLOCK_RE = re.compile(r"<minimax:tool_call>(.*?)</minimax:tool_call>", re.DOTALL)
_INVOKE_RE = re.compile(r"<invoke name=[\"']?([^\"'>]+)[\"']?>(.*?)</invoke>", re.DOTALL)
_PARAM_RE = re.compile(r"<parameter name=[\"']?([^\"'>]+)[\"']?>(.*?)</parameter>", re.DOTALL)
_HERMES_RE = re.compile(r"<tool_call>\s*(.*?)\s*</tool_call>", re.DOTALL)
_TOOL_USE_RE = re.compile(r"<tool_use>(.*?)</tool_use>", re.DOTALL)
_TOOL_NAME_RE = re.compile(r"<tool_name>(.*?)</tool_name>", re.DOTALL)
_PARAMETERS_RE = re.compile(r"<parameters>(.*?)</parameters>", re.DOTALL)
_QWEN_RE = re.compile(r"✿FUNCTION✿:\s*(\S+)\s*✿ARGS✿:\s*(.*?)(?=✿[A-Z]+✿|\Z)", re.DOTALL)
_ACTION_RE = re.compile(r"\"action\":\s*\"([^\"]+)\".*?\"parameters\":\s*(\{[^}]*\})", re.DOTALL)
_JSON_BLOCK_RE = re.compile(r"```(?:json)?\s*(\{.*?\"(?:name|function)\".*?\})\s*```", re.DOTALL)


def _tool_param_types(tools: Sequence[ToolDescriptor] | None, name: str) -> dict[str, str]:
    for tool in tools or ():
        if tool.name == name:
            return tool.param_types()
    return {}


def _json_object(text: str) -> dict[str, Any] | None:
    """Parse a leading JSON object, ignoring trailing prose."""
    text = text.strip()
    if not text:
        return None
    try:
        value, _ = json.JSONDecoder().raw_decode(text)
    except (json.JSONDecodeError, ValueError):
        return None
    return value if isinstance(value, dict) else None


def _arguments(raw: Any) -> dict[str, Any] | None:
    if raw is None:
        return {}
    if isinstance(raw, str):
        return {} if not raw.strip() else _json_object(raw)
    return raw if isinstance(raw, dict) else None


def parse_minimax_tool_calls(content: str, tools: Sequence[ToolDescriptor] | None = None) -> list[CanonicalToolCall]:
    calls: list[CanonicalToolCall] = []
    for block in _MINIMAX_BLOCK_RE.findall(content):
        for name, body in _INVOKE_RE.findall(block):
            name = name.strip()
            if not name:
                continue
            types = _tool_param_types(tools, name)
            args: dict[str, ToolValue] = {}
            for param, value in _PARAM_RE.findall(body):
                param = param.strip()
                if value.startswith("\n"):
                    value = value[1:]
                if value.endswith("\n"):
                    value = value[:-1]
                args[param] = coerce_value(value.strip(), types.get(param, "string"))
            calls.append(CanonicalToolCall(id=f"minimax_call_{len(calls)}", name=name, arguments=args))
    return calls


def _hermes_payload(text: str) -> tuple[str, dict[str, Any]] | None:
    parsed = _json_object(text)
    if parsed is None:
        fenced = _FENCED_JSON_RE.search(text)
        parsed = _json_object(fenced.group(1)) if fenced else None
    if parsed is None or not isinstance(parsed.get("name"), str) or not parsed["name"]:
        return None
    args = _arguments(parsed.get("arguments", parsed.get("parameters")))
    if args is None:
        return None
    return parsed["name"], args


def parse_hermes_tool_calls(content: str) -> list[CanonicalToolCall]:
    calls: list[CanonicalToolCall] = []
    for body in _HERMES_RE.findall(content):
        payload = _hermes_payload(body)
        if payload is None:
            continue
        name, args = payload
        calls.append(CanonicalToolCall(id=f"hermes_call_{len(calls)}", name=name, arguments=args))
    return calls


def parse_anthropic_tool_calls(content: str) -> list[CanonicalToolCall]:
    calls: list[CanonicalToolCall] = []
    for body in _TOOL_USE_RE.findall(content):
        name_match = _TOOL_NAME_RE.search(body)
        if not name_match or not name_match.group(1).strip():
            continue
        params_match = _PARAMETERS_RE.search(body)
        args = _json_object(params_match.group(1)) if params_match else None
        calls.append(
            CanonicalToolCall(
                id=f"anthropic_call_{len(calls)}",
                name=name_match.group(1).strip(),
                arguments=args or {},
            )
        )
    return calls


def parse_qwen_tool_calls(content: str) -> list[CanonicalToolCall]:
    calls: list[CanonicalToolCall] = []
    for name, args_text in _QWEN_RE.findall(content):
        args = {} if not args_text.strip() else _json_object(args_text)
        if args is None:
            continue
        calls.append(CanonicalToolCall(id=f"qwen_call_{len(calls)}", name=name.strip(), arguments=args))
    return calls


def parse_glm_tool_calls(content: str) -> list[CanonicalToolCall]:
    calls: list[CanonicalToolCall] = []
    for name, params in _ACTION_RE.findall(content):
        args = _json_object(params)
        if args is None:
            continue
        calls.append(CanonicalToolCall(id=f"glm_call_{len(calls)}", name=name, arguments=args))
    if calls:
        return calls
    for block in _JSON_BLOCK_RE.findall(content):
        parsed = _json_object(block)
        if parsed is None:
            continue
        function = parsed.get("function")
        if isinstance(function, dict):
            name = function.get("name")
            args = _arguments(function.get("arguments", function.get("parameters")))
        else:
            name = parsed.get("name") or function
            args = _arguments(parsed.get("arguments", parsed.get("parameters")))
        if not isinstance(name, str) or not name or args is None:
            continue
        calls.append(CanonicalToolCall(id=f"glm_call_{len(calls)}", name=name, arguments=args))
    return calls


def parse_tool_calls(
    content: str,
    model_id: str = "",
    tools: Sequence[ToolDescriptor] | None = None,
) -> list[CanonicalToolCall]:
    """Detect the format (content markers first, then model id) and parse."""
    if not content:
        return []
    fmt = detect_format_from_content(content) or detect_tool_format(model_id)
    if fmt == "minimax":
        return parse_minimax_tool_calls(content, tools)
    if fmt == "hermes":
        return parse_hermes_tool_calls(content)
    if fmt == "anthropic":
        return parse_anthropic_tool_calls(content)
    if fmt == "qwen":
        return parse_qwen_tool_calls(content)
    if fmt == "glm":
        return parse_glm_tool_calls(content)
    # Native tool calls arrive through the provider, not the text.
    return []


_INLINE_TOOL_BLOB_RE = re.compile(
    r"<minimax:tool_call>.*?</minimax:tool_call>"
    r"|<tool_call>.*?</tool_call>"
    r"|<tool_use>.*?</tool_use>"
    r"|✿FUNCTION✿:.*?(?=✿FUNCTION✿|\Z)",
    re.DOTALL,
)


def strip_tool_calls(content: str) -> str:
    """Remove tool-call blobs so only prose is left for display."""
    cleaned = _INLINE_TOOL_BLOB_RE.sub("", content or "")
    return re.sub(r"\n{3,}", "\n\n", cleaned).strip()


# ---------------------------------------------------------------------------
# Native (provider) tool calls
# ---------------------------------------------------------------------------

def parse_tool_args(name: str, args_text: str) -> tuple[dict[str, object], str | None]:
    """Parse the string ``arguments`` of a native tool call.

    Accepts JSON, YAML, fenced blocks and ``<arg_key>/<arg_value>`` pairs;
    ``run_command`` additionally accepts a bare command string.
    """
    if not args_text:
        return {}, None
    cleaned = args_text.strip()
    if cleaned.startswith("```") and cleaned.endswith("```"):
        cleaned = "\n".join(cleaned.splitlines()[1:-1]).strip()

    xml_args = _parse_xml_args(cleaned)
    if xml_args is not None:
        return xml_args, None

    parsed: object
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        try:
            parsed = yaml.safe_load(cleaned)
        except yaml.YAMLError as exc:
            if name == "run_command" and cleaned:
                return {"command": cleaned}, None
            return {}, f"invalid tool arguments: {exc}"
    if isinstance(parsed, dict):
        return parsed, None
    if name == "run_command" and cleaned:
        return {"command": parsed.strip() if isinstance(parsed, str) else cleaned}, None
    return {}, "invalid tool arguments: expected object payload"


def _parse_xml_args(text: str) -> dict[str, object] | None:
    """Parse XML-style arg key/value pairs emitted by some models.

    Handles both:
      <arg_key>path</arg_key><arg_value>src/app.py</arg_value>
      <arg_key>path</arg_key> <arg_value>src%2Fapp.py</arg_value>
    Returns a dict if any pairs found, otherwise None.
    """
    pairs = re.findall(
        r"<arg_key>\s*(.*?)\s*</arg_key>\s*<arg_value>\s*(.*?)\s*</arg_value>",
        text,
        re.DOTALL | re.IGNORECASE,
    )
    if not pairs:
        return None
    result: dict[str, object] = {}
    for key, value in pairs:
        value = urllib.parse.unquote(value.strip())
        if value.isdigit():
            result[key.strip()] = int(value)
        else:
            try:
                result[key.strip()] = float(value)
            except ValueError:
                result[key.strip()] = value
    return result


def canonical_from_native(raw: dict[str, Any], index: int = 0) -> CanonicalToolCall | None:
    """Convert an OpenAI-style ``tool_calls`` entry to a canonical call."""
    function = raw.get("function") if isinstance(raw.get("function"), dict) else raw
    name = function.get("name")
    if not isinstance(name, str) or not name:
        return None
    arguments = function.get("arguments")
    if isinstance(arguments, dict):
        args: dict[str, Any] = arguments
    else:
        args, error = parse_tool_args(name, arguments if isinstance(arguments, str) else "")
        if error:
            args = {}
    call_id = raw.get("id") if isinstance(raw.get("id"), str) and raw.get("id") else f"call_{index}"
    return CanonicalToolCall(id=call_id, name=name, arguments=args)


def canonical_from_native_list(raw_calls: Iterable[dict[str, Any]]) -> list[CanonicalToolCall]:
    calls = []
    for index, raw in enumerate(raw_calls):
        if isinstance(raw, dict):
            call = canonical_from_native(raw, index)
            if call is not None:
                calls.append(call)
    return calls


# ---------------------------------------------------------------------------
# Prompt descriptions and capabilities
# ---------------------------------------------------------------------------

_FORMAT_DESCRIPTIONS = {
    "minimax": (
        "When calling tools, use the MiniMax XML format:\n"
        "<minimax:tool_call>\n"
        '<invoke name="tool_name">\n'
        '<parameter name="param_name">param_value</parameter>\n'
        "</invoke>\n"
        "</minimax:tool_call>"
    ),
    "hermes": (
        "When calling tools, use JSON format inside tool_call tags:\n"
        "<tool_call>\n"
        '{"name": "tool_name", "arguments": {"param": "value"}}\n'
        "</tool_call>"
    ),
    "anthropic": (
        "When calling tools, use the tool_use format:\n"
        "<tool_use>\n"
        "<tool_name>tool_name</tool_name>\n"
        '<parameters>{"param": "value"}</parameters>\n'
        "</tool_use>"
    ),
    "qwen": (
        "When calling tools, use the Qwen function format:\n"
        "✿FUNCTION✿: tool_name\n"
        '✿ARGS✿: {"param": "value"}'
    ),
}


@dataclass(frozen=True)
class ToolFormatConfig:
    format: str
    supports_parallel_calls: bool = True
    supports_streaming: bool = True
    requires_special_prompt: bool = False
    prompt_template: str | None = None


_FORMAT_CONFIGS = {
    "openai": ToolFormatConfig(format="openai"),
    "minimax": ToolFormatConfig(format="minimax"),
    "hermes": ToolFormatConfig(
        format="hermes",
        requires_special_prompt=True,
        prompt_template=_FORMAT_DESCRIPTIONS["hermes"],
    ),
    "anthropic": ToolFormatConfig(format="anthropic"),
    "qwen": ToolFormatConfig(
        format="qwen",
        supports_parallel_calls=False,
        requires_special_prompt=True,
        prompt_template=_FORMAT_DESCRIPTIONS["qwen"],
    ),
    "glm": ToolFormatConfig(format="glm"),
}


def tool_format_description(model_id: str) -> str:
    return _FORMAT_DESCRIPTIONS.get(detect_tool_format(model_id), "")


def tool_format_config(model_id: str) -> ToolFormatConfig:
    return _FORMAT_CONFIGS.get(detect_tool_format(model_id), _FORMAT_CONFIGS["openai"])
