import json
import logging
from typing import Any, AsyncGenerator, Dict, List, Optional, Sequence

import httpx

from .errors import ModelCallFailure
from .schemas import (
    ChatMessage,
    FunctionCall,
    GenerationResult,
    GroundingChunk,
    GroundingMetadata,
    GroundingSupport,
)

logger = logging.getLogger("uvicorn.error")


def _history_contents(history: Optional[Sequence[ChatMessage]]) -> List[Dict[str, Any]]:
    contents = []
    for message in history or []:
        role = "model" if message.role == "assistant" else "user"
        contents.append({"role": role, "parts": [{"text": message.content}]})
    return contents


def parse_grounding(raw: Optional[Dict[str, Any]]) -> Optional[GroundingMetadata]:
    if not raw:
        return None
    chunks = []
    for chunk in raw.get("groundingChunks") or []:
        web = chunk.get("web") or {}
        chunks.append(GroundingChunk(uri=web.get("uri") or "", title=web.get("title") or ""))
    supports = []
    for support in raw.get("groundingSupports") or []:
        segment = support.get("segment") or {}
        supports.append(
            GroundingSupport(
                start_index=segment.get("startIndex"),
                end_index=segment.get("endIndex"),
                text=segment.get("text"),
                chunk_indices=list(support.get("groundingChunkIndices") or []),
            )
        )
    if not chunks and not supports:
        return None
    return GroundingMetadata(chunks=chunks, supports=supports)


def parse_response(data: Dict[str, Any]) -> GenerationResult:
    candidates = data.get("candidates") or []
    if not candidates:
        return GenerationResult()
    candidate = candidates[0]
    parts = (candidate.get("content") or {}).get("parts") or []
    texts: List[str] = []
    function_call: Optional[FunctionCall] = None
    for part in parts:
        if part.get("thought"):
            continue
        if isinstance(part.get("text"), str):
            texts.append(part["text"])
        if part.get("functionCall") and function_call is None:
            call = part["functionCall"]
            function_call = FunctionCall(name=call.get("name") or "", args=call.get("args") or {})
    return GenerationResult(
        text="".join(texts),
        function_call=function_call,
        grounding=parse_grounding(candidate.get("groundingMetadata")),
    )


class GeminiClient:
    """REST client for the Gemini generateContent API."""

    def __init__(
        self,
        api_key: Optional[str],
        model_id: str,
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        timeout_s: float = 60.0,
    ):
        self.api_key = api_key
        self.model_id = model_id
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(
            timeout=timeout_s,
            limits=httpx.Limits(max_connections=32, max_keepalive_connections=16),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def _payload(
        self,
        prompt: str,
        system_instruction: Optional[str],
        tools: Optional[List[Dict[str, Any]]],
        temperature: float,
        web_search: bool,
        history: Optional[Sequence[ChatMessage]],
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "contents": _history_contents(history) + [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {"temperature": temperature},
        }
        if system_instruction:
            payload["systemInstruction"] = {"parts": [{"text": system_instruction}]}
        tool_list: List[Dict[str, Any]] = []
        if tools:
            tool_list.append({"functionDeclarations": tools})
        if web_search:
            tool_list.append({"google_search": {}})
        if tool_list:
            payload["tools"] = tool_list
        return payload

    def _headers(self) -> Dict[str, str]:
        if not self.api_key:
            raise ModelCallFailure("missing model API key")
        return {"Content-Type": "application/json", "x-goog-api-key": self.api_key}

    async def generate(
        self,
        prompt: str,
        *,
        system_instruction: Optional[str] = None,
        tools: Optional[List[Dict[str, Any]]] = None,
        temperature: float = 0.7,
        web_search: bool = False,
        history: Optional[Sequence[ChatMessage]] = None,
    ) -> GenerationResult:
        url = f"{self.base_url}/models/{self.model_id}:generateContent"
        payload = self._payload(prompt, system_instruction, tools, temperature, web_search, history)
        try:
            resp = await self.client.post(url, json=payload, headers=self._headers())
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            logger.warning("Model call failed with status %s: %s", e.response.status_code, e.response.text[:500])
            raise ModelCallFailure(f"HTTP {e.response.status_code}", status=e.response.status_code) from e
        except httpx.RequestError as e:
            raise ModelCallFailure(f"request failed: {e}") from e
        except ValueError as e:
            raise ModelCallFailure(f"invalid JSON from model: {e}") from e
        return parse_response(data)

    async def stream_generate(
        self,
        prompt: str,
        *,
        system_instruction: Optional[str] = None,
        tools: Optional[List[Dict[str, Any]]] = None,
        temperature: float = 0.7,
        web_search: bool = False,
        history: Optional[Sequence[ChatMessage]] = None,
    ) -> AsyncGenerator[GenerationResult, None]:
        """Yield incremental results; each carries only the newly generated text."""
        url = f"{self.base_url}/models/{self.model_id}:streamGenerateContent"
        payload = self._payload(prompt, system_instruction, tools, temperature, web_search, history)
        try:
            async with self.client.stream(
                "POST", url, params={"alt": "sse"}, json=payload, headers=self._headers()
            ) as resp:
                if resp.status_code >= 400:
                    body = await resp.aread()
                    logger.warning("Model stream failed with status %s: %s", resp.status_code, body[:500])
                    raise ModelCallFailure(f"HTTP {resp.status_code}", status=resp.status_code)
                async for line in resp.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    raw = line[len("data:"):].strip()
                    if not raw:
                        continue
                    try:
                        data = json.loads(raw)
                    except json.JSONDecodeError:
                        logger.debug("Skipping malformed stream line: %s", raw[:200])
                        continue
                    yield parse_response(data)
        except httpx.RequestError as e:
            raise ModelCallFailure(f"stream request failed: {e}") from e

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
