"""OpenAI-compatible chat client used to extract structured company data."""

from __future__ import annotations

import json
import logging
import os
import re
import time
from typing import Any, Dict, List, Optional

import openai
from openai import AsyncOpenAI

from achei.providers import ProviderResponseError

logger = logging.getLogger("achei_leads")

DEFAULT_GATEWAY_URL = "https://ai.gateway.lovable.dev/v1"
DEFAULT_MODEL = "google/gemini-2.5-flash"


def extract_json(text: Optional[str]) -> Optional[Dict[str, Any]]:
    """Best-effort JSON object extraction from a model reply."""
    if not text:
        return None
    try:
        parsed = json.loads(text)
        return parsed if isinstance(parsed, dict) else None
    except json.JSONDecodeError:
        pass
    match = re.search(r"```(?:json)?\s*\n([\s\S]*?)\n```", text)
    if match:
        try:
            parsed = json.loads(match.group(1))
            return parsed if isinstance(parsed, dict) else None
        except json.JSONDecodeError:
            pass
    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end > start:
        try:
            parsed = json.loads(text[start : end + 1])
            return parsed if isinstance(parsed, dict) else None
        except json.JSONDecodeError:
            return None
    return None


class ExtractionClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self.api_key = api_key or os.getenv("AI_GATEWAY_API_KEY")
        self.base_url = base_url or os.getenv("AI_GATEWAY_BASE_URL", DEFAULT_GATEWAY_URL)
        self.model = model or os.getenv("AI_MODEL", DEFAULT_MODEL)
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            if not self.api_key:
                raise ProviderResponseError("Gateway de IA não está configurado", status_code=500)
            self._client = AsyncOpenAI(api_key=self.api_key, base_url=self.base_url)
        return self._client

    async def complete(self, messages: List[Dict[str, str]]) -> str:
        start = time.time()
        try:
            resp = await self.client.chat.completions.create(model=self.model, messages=messages)
        except openai.RateLimitError:
            raise ProviderResponseError("Limite de requisições excedido, tente novamente mais tarde", status_code=429)
        except openai.APIStatusError as exc:
            if exc.status_code == 402:
                raise ProviderResponseError("Créditos insuficientes para o gateway de IA", status_code=402)
            logger.error(
                "Gateway de IA erro",
                extra={"event_type": "error", "status": exc.status_code, "details": str(exc)[:200]},
            )
            raise ProviderResponseError("Erro ao processar com IA", status_code=500)
        except openai.APIConnectionError as exc:
            logger.error("Gateway de IA indisponivel", extra={"event_type": "error", "details": str(exc)[:200]})
            raise ProviderResponseError("Erro ao processar com IA", status_code=500)

        duration_ms = int((time.time() - start) * 1000)
        usage = getattr(resp, "usage", None)
        logger.info(
            "Extracao IA concluida",
            extra={
                "event_type": "enrich",
                "model": self.model,
                "duration_ms": duration_ms,
                "total_tokens": getattr(usage, "total_tokens", None) if usage else None,
            },
        )
        if not resp.choices:
            return ""
        return resp.choices[0].message.content or ""
