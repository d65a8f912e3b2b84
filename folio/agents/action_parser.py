"""Action parser adapters: the model call behind natural-language commands.

An ``ActionParser`` receives the menu prompt, the JSON schema and the user
text and returns the model's menu pick. Transport and model failures are
raised as PortfolioError so routes can map them to 503/404; the resolver
and catalog never see them.
"""
import json
import re
from typing import Any, Dict, Optional, Protocol

import httpx
from pydantic import ValidationError

from folio.agents.schemas import MenuResponse
from folio.core.config import Settings, get_settings
from folio.core.error_codes import PortfolioError, PortfolioErrorCode
from folio.core.logging import get_logger

logger = get_logger(__name__)


class ActionParser(Protocol):
    name: str

    async def parse(self, prompt: str, schema: Dict[str, Any], text: str) -> MenuResponse:
        ...


def _strip_fences(raw: str) -> str:
    raw = re.sub(r"^```(?:json)?\s*", "", raw.strip())
    return re.sub(r"\s*```$", "", raw)


def parse_menu_json(raw: Optional[str], source: str) -> MenuResponse:
    """Decode a model reply into a MenuResponse or raise UPSTREAM_UNAVAILABLE."""
    if not raw or not raw.strip():
        raise PortfolioError(
            PortfolioErrorCode.UPSTREAM_UNAVAILABLE,
            f"No response from {source}",
        )
    try:
        data = json.loads(_strip_fences(raw))
        return MenuResponse.model_validate(data)
    except (ValueError, ValidationError) as e:
        logger.warning("Unusable %s reply: %s | %r", source, e, raw[:200])
        raise PortfolioError(
            PortfolioErrorCode.UPSTREAM_UNAVAILABLE,
            f"{source} returned an unusable answer",
            details={"raw": raw[:500]},
        ) from e


class OllamaActionParser:
    """Schema-constrained chat call against a local Ollama server."""

    name = "ollama"

    def __init__(
        self,
        base_url: str,
        model: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self._transport = transport

    async def parse(self, prompt: str, schema: Dict[str, Any], text: str) -> MenuResponse:
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": prompt},
                {"role": "user", "content": text},
            ],
            "format": schema,
            "stream": False,
            "options": {"temperature": 0},
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(f"{self.base_url}/api/chat", json=payload)
        except (httpx.ConnectError, httpx.TimeoutException) as e:
            logger.warning("Ollama unreachable at %s: %s", self.base_url, e)
            raise PortfolioError(
                PortfolioErrorCode.UPSTREAM_UNAVAILABLE,
                "Cannot connect to Ollama. Make sure Ollama is running (ollama serve).",
            ) from e

        if response.status_code == 404:
            raise PortfolioError(
                PortfolioErrorCode.MODEL_NOT_FOUND,
                f'Model "{self.model}" not found. Run: ollama pull {self.model}',
                remediation=f"ollama pull {self.model}",
            )
        if response.status_code >= 400:
            raise PortfolioError(
                PortfolioErrorCode.UPSTREAM_UNAVAILABLE,
                f"Ollama error: {response.text[:300]}",
                details={"status_code": response.status_code},
            )

        try:
            content = (response.json().get("message") or {}).get("content")
        except ValueError:
            content = None
        return parse_menu_json(content, "Ollama")


class OpenAIActionParser:
    """Structured-output chat completion via the OpenAI SDK."""

    name = "openai"

    def __init__(self, api_key: Optional[str], model: str, timeout: float = 30.0, client: Any = None):
        self.model = model
        self._api_key = api_key
        self._timeout = timeout
        self._client = client

    def _get_client(self):
        if self._client is None:
            if not self._api_key:
                raise PortfolioError(
                    PortfolioErrorCode.UPSTREAM_UNAVAILABLE,
                    "OPENAI_API_KEY not configured",
                    remediation="Set OPENAI_API_KEY or switch LLM_PROVIDER to ollama.",
                )
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(api_key=self._api_key, timeout=self._timeout)
        return self._client

    async def parse(self, prompt: str, schema: Dict[str, Any], text: str) -> MenuResponse:
        import openai

        client = self._get_client()
        try:
            response = await client.chat.completions.create(
                model=self.model,
                temperature=0,
                messages=[
                    {"role": "system", "content": prompt},
                    {"role": "user", "content": text},
                ],
                response_format={
                    "type": "json_schema",
                    "json_schema": {"name": "menu_pick", "schema": schema},
                },
            )
        except openai.NotFoundError as e:
            raise PortfolioError(
                PortfolioErrorCode.MODEL_NOT_FOUND,
                f'Model "{self.model}" not found',
                remediation="Set OPENAI_MODEL to a model available to this key.",
            ) from e
        except openai.OpenAIError as e:
            logger.warning("OpenAI call failed: %s", e)
            raise PortfolioError(
                PortfolioErrorCode.UPSTREAM_UNAVAILABLE,
                f"OpenAI request failed: {type(e).__name__}",
            ) from e

        content = response.choices[0].message.content if response.choices else None
        return parse_menu_json(content, "OpenAI")


def build_action_parser(settings: Optional[Settings] = None) -> ActionParser:
    """Parser for the configured LLM_PROVIDER."""
    settings = settings or get_settings()
    settings.validate_llm_provider()
    if settings.llm_provider == "openai":
        return OpenAIActionParser(settings.openai_api_key, settings.openai_model, settings.llm_timeout_seconds)
    return OllamaActionParser(settings.ollama_url, settings.ollama_model, settings.llm_timeout_seconds)
