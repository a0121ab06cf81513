"""
Model transport and the Tool-Calling Session.

This is the core of the loop's model interaction. It:
1. Calls Ollama (or Anthropic) HTTP API directly via httpx
2. Exposes each response as a lazy stream of TextPart / ToolCallPart events
3. Implements the bounded tool-use conversation: send history + tool specs →
   collect text and tool calls → run each tool locally → feed the call and
   its result back → repeat until a round has no tool calls
"""

import os
import json
import time
import logging
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any, Iterator, Union

import httpx

from ralph_config import ModelConfig
from ralph_errors import TransportError
from ralph_events import CancellationToken, NONE_TOKEN
from ralph_models import ToolResult

logger = logging.getLogger(__name__)

MAX_TOOL_ROUNDS = 30


# ============================================================
# Context Budget Utilities
# ============================================================

def truncate_to_budget(text: str, max_chars: int, label: str = "") -> str:
    """
    Truncation that preserves head and tail of content.

    Guarantees output length <= max_chars.
    """
    if len(text) <= max_chars:
        return text

    marker = f"\n\n... ({label + ': ' if label else ''}truncated {len(text) - max_chars} chars) ...\n\n"
    usable = max_chars - len(marker)
    if usable < 20:
        return text[:max_chars]

    # 60% head, 40% tail
    head_budget = int(usable * 0.6)
    tail_budget = usable - head_budget
    return text[:head_budget] + marker + text[-tail_budget:]


# ============================================================
# Stream events
# ============================================================

@dataclass
class TextPart:
    value: str


@dataclass
class ToolCallPart:
    call_id: str
    name: str
    input: Dict[str, Any] = field(default_factory=dict)


ChatEvent = Union[TextPart, ToolCallPart]


def _parse_arguments(raw: Any) -> Dict[str, Any]:
    # Ollama sometimes returns arguments as a string
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str) and raw.strip():
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            return {"raw": raw}
        return parsed if isinstance(parsed, dict) else {"value": parsed}
    return {}


def call_record(call: ToolCallPart) -> dict:
    """Assistant message recording one tool call."""
    return {
        "role": "assistant",
        "content": "",
        "tool_calls": [{
            "id": call.call_id,
            "function": {"name": call.name, "arguments": call.input},
        }],
    }


def result_record(call: ToolCallPart, result: ToolResult) -> dict:
    """Tool message carrying the result paired with call_record(call)."""
    return {
        "role": "tool",
        "tool_call_id": call.call_id,
        "tool_name": call.name,
        "content": result.to_json(),
    }


# ============================================================
# LLM Client — talks to Ollama or Anthropic HTTP API directly
# ============================================================

class LLMClient:
    """
    Direct HTTP client for LLM APIs.

    Supports:
    - Ollama: POST /api/chat, streamed NDJSON, native tool calls
    - Anthropic: POST /v1/messages with tool_use blocks
    """

    def __init__(self, model_config: ModelConfig):
        self.config = model_config
        self.session = httpx.Client(timeout=model_config.timeout_seconds)
        self.session.headers.update({"Content-Type": "application/json"})

    def close(self):
        self.session.close()

    def send(self, messages: List[Dict[str, Any]], tools: Optional[List[dict]] = None) -> Iterator[ChatEvent]:
        """
        Send a chat request. Returns a single-use iterator of events.

        Transport failures surface as TransportError, possibly mid-iteration.
        """
        if self.config.provider == "ollama":
            return self._stream_ollama(messages, tools)
        elif self.config.provider == "anthropic":
            return self._stream_anthropic(messages, tools)
        else:
            raise ValueError(f"Unknown provider: {self.config.provider}")

    @staticmethod
    def _to_ollama_messages(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        converted = []
        for msg in messages:
            out = {"role": msg["role"], "content": msg.get("content", "")}
            if msg.get("tool_calls"):
                out["tool_calls"] = [
                    {"function": tc["function"]} for tc in msg["tool_calls"]
                ]
            if msg["role"] == "tool" and msg.get("tool_name"):
                out["tool_name"] = msg["tool_name"]
            converted.append(out)
        return converted

    def _stream_ollama(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[dict]] = None,
    ) -> Iterator[ChatEvent]:
        """Call Ollama /api/chat with stream=True and yield events as they arrive."""
        endpoint = (self.config.endpoint or "http://127.0.0.1:11434").rstrip("/")
        url = f"{endpoint}/api/chat"

        payload: Dict[str, Any] = {
            "model": self.config.model_id,
            "messages": self._to_ollama_messages(messages),
            "stream": True,
            "options": {
                "temperature": self.config.temperature,
                "num_predict": self.config.max_tokens,
            },
        }
        if tools:
            payload["tools"] = tools

        call_count = 0
        try:
            with self.session.stream("POST", url, json=payload) as resp:
                resp.raise_for_status()
                for line in resp.iter_lines():
                    if not line.strip():
                        continue
                    chunk = json.loads(line)
                    if chunk.get("error"):
                        raise TransportError(f"Ollama error: {chunk['error']}")
                    message = chunk.get("message") or {}
                    if message.get("content"):
                        yield TextPart(message["content"])
                    for tc in message.get("tool_calls") or []:
                        call_count += 1
                        func = tc.get("function", {})
                        yield ToolCallPart(
                            call_id=tc.get("id") or f"call_{call_count}",
                            name=func.get("name", ""),
                            input=_parse_arguments(func.get("arguments")),
                        )
                    if chunk.get("done"):
                        break
        except httpx.ConnectError as e:
            raise TransportError(f"Cannot connect to Ollama at {endpoint}: {e}") from e
        except httpx.TimeoutException as e:
            raise TransportError(f"Ollama request timed out after {self.config.timeout_seconds}s") from e
        except httpx.HTTPError as e:
            raise TransportError(f"Ollama API error: {e}") from e
        except json.JSONDecodeError as e:
            raise TransportError(f"Malformed Ollama stream chunk: {e}") from e

    @staticmethod
    def _to_anthropic_messages(messages: List[Dict[str, Any]]):
        """Split out the system text and convert tool records to content blocks."""
        system_text = ""
        api_messages: List[Dict[str, Any]] = []

        def _append(role: str, blocks: List[dict]):
            # Anthropic wants alternating roles; merge neighbours
            if api_messages and api_messages[-1]["role"] == role:
                api_messages[-1]["content"].extend(blocks)
            else:
                api_messages.append({"role": role, "content": list(blocks)})

        for msg in messages:
            role = msg["role"]
            if role == "system":
                system_text += msg["content"] + "\n"
            elif role == "tool":
                _append("user", [{
                    "type": "tool_result",
                    "tool_use_id": msg.get("tool_call_id", ""),
                    "content": msg.get("content", ""),
                }])
            elif role == "assistant" and msg.get("tool_calls"):
                blocks = []
                if msg.get("content"):
                    blocks.append({"type": "text", "text": msg["content"]})
                for tc in msg["tool_calls"]:
                    blocks.append({
                        "type": "tool_use",
                        "id": tc.get("id", ""),
                        "name": tc["function"]["name"],
                        "input": tc["function"].get("arguments") or {},
                    })
                _append("assistant", blocks)
            else:
                _append(role, [{"type": "text", "text": msg.get("content", "")}])
        return system_text.strip(), api_messages

    def _stream_anthropic(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[dict]] = None,
    ) -> Iterator[ChatEvent]:
        """Call Anthropic /v1/messages and yield the content blocks as events."""
        api_key = os.environ.get(self.config.api_key_env or "ANTHROPIC_API_KEY", "")
        if not api_key:
            raise TransportError(f"API key not found in env var: {self.config.api_key_env}")

        url = "https://api.anthropic.com/v1/messages"
        system_text, api_messages = self._to_anthropic_messages(messages)

        payload: Dict[str, Any] = {
            "model": self.config.model_id,
            "max_tokens": self.config.max_tokens,
            "messages": api_messages,
            "temperature": self.config.temperature,
        }
        if system_text:
            payload["system"] = system_text

        # Convert tools to Anthropic format
        if tools:
            payload["tools"] = [
                {
                    "name": t["function"]["name"],
                    "description": t["function"]["description"],
                    "input_schema": t["function"]["parameters"],
                }
                for t in tools if t.get("type") == "function"
            ]

        headers = {
            "x-api-key": api_key,
            "anthropic-version": "2023-06-01",
            "Content-Type": "application/json",
        }

        try:
            resp = self.session.post(url, json=payload, headers=headers)
            resp.raise_for_status()
            data = resp.json()
        except httpx.TimeoutException as e:
            raise TransportError(f"Anthropic request timed out after {self.config.timeout_seconds}s") from e
        except (httpx.HTTPError, json.JSONDecodeError) as e:
            raise TransportError(f"Anthropic API error: {e}") from e

        for block in data.get("content", []):
            if block.get("type") == "text":
                yield TextPart(block.get("text", ""))
            elif block.get("type") == "tool_use":
                yield ToolCallPart(
                    call_id=block.get("id", ""),
                    name=block.get("name", ""),
                    input=_parse_arguments(block.get("input")),
                )


# ============================================================
# Tool-Calling Session
# ============================================================

def request_text(model, messages: List[Dict[str, Any]], token: CancellationToken = NONE_TOKEN) -> str:
    """One request without tools; concatenates the text fragments."""
    return "".join(
        part.value for part in model.send(messages) if isinstance(part, TextPart)
    )


def request_with_tools(
    model,
    base_messages: List[Dict[str, Any]],
    tools: list,
    token: CancellationToken = NONE_TOKEN,
    max_rounds: int = MAX_TOOL_ROUNDS,
) -> str:
    """
    THE TOOL LOOP.

    Each round sends the full history plus tool specs. Text from every round
    is accumulated in arrival order. A round with no tool calls ends the
    session; otherwise each call runs in order and its call/result pair is
    appended before the next round. Running out of rounds returns whatever
    text was collected.
    """
    tool_map = {t.name: t for t in tools}
    tool_specs = [t.to_spec() for t in tools]
    messages = list(base_messages)
    final_text = ""
    start_time = time.time()

    for round_count in range(1, max_rounds + 1):
        tool_calls: List[ToolCallPart] = []
        chunk_text = ""
        for part in model.send(messages, tools=tool_specs):
            if isinstance(part, TextPart):
                chunk_text += part.value
            elif isinstance(part, ToolCallPart):
                tool_calls.append(part)

        final_text += chunk_text

        if not tool_calls:
            logger.debug(f"  Session finished after {round_count} round(s) ({time.time() - start_time:.0f}s)")
            return final_text

        logger.debug(f"  Round {round_count}: {len(tool_calls)} tool call(s)")

        for call in tool_calls:
            tool = tool_map.get(call.name)
            if tool is None:
                result = ToolResult(ok=False, error=f"Unknown tool: {call.name}")
            else:
                try:
                    result = tool.invoke(call.input, token)
                except Exception as e:
                    result = ToolResult(ok=False, error=str(e) or type(e).__name__)

            logger.info(f"  [tool] {call.name} -> {'ok' if result.ok else 'fail'}")
            if not result.ok:
                logger.debug(f"  [tool] {call.name} error: {result.error}")

            messages.append(call_record(call))
            messages.append(result_record(call, result))

    logger.warning(f"  Session hit max tool rounds ({max_rounds}); returning collected text")
    return final_text
