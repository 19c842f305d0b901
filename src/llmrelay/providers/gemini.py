"""Gemini provider (Generative Language API and CloudCode)."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from llmrelay.providers._runtime import (
    ProviderProfile,
    ProviderRuntime,
    RuntimeBackedProvider,
)
from llmrelay.providers.base import ProviderCapabilities
from llmrelay.ratelimit import ClientRateLimiter
from llmrelay.ratelimit.limiter import DEFAULT_REQUESTS_PER_MINUTE
from llmrelay.streaming import SSEStream
from llmrelay.streaming.parsers import GeminiStreamParser
from llmrelay.translation import gemini as wire
from llmrelay.types import AuthMethod, ProviderType, ToolFormat

if TYPE_CHECKING:
    import asyncio
    from typing import Any

    import httpx

    from llmrelay.auth.oauth import TokenRefreshCallback
    from llmrelay.config import ProviderConfig
    from llmrelay.providers._runtime import Credential
    from llmrelay.streaming import ChatStream
    from llmrelay.types import Completion, GenerateOptions, ModelInfo

logger = logging.getLogger(__name__)

CLOUDCODE_BASE_URL = "https://cloudcode-pa.googleapis.com/v1internal"

PROFILE = ProviderProfile(
    type=ProviderType.GEMINI,
    base_url="https://generativelanguage.googleapis.com/v1beta",
    default_model="gemini-2.5-flash",
    description="Google Gemini with multi-OAuth failover",
    tool_format=ToolFormat.GEMINI,
    capabilities=ProviderCapabilities(oauth=True),
)


class GeminiProvider(RuntimeBackedProvider):
    """Gemini ``generateContent`` provider.

    Gemini publishes no proactive quota headers, so every call also waits on
    a client-side token bucket sized by ``provider_config["requests_per_minute"]``.
    With OAuth and a ``project_id``, calls go through the CloudCode endpoint.
    """

    def __init__(
        self,
        config: ProviderConfig,
        *,
        client: httpx.AsyncClient | None = None,
        on_token_refresh: TokenRefreshCallback | None = None,
    ) -> None:
        self.runtime = ProviderRuntime(
            config, PROFILE, client=client, on_token_refresh=on_token_refresh
        )
        self.runtime.limiter = ClientRateLimiter(
            requests_per_minute=self._configured_rpm(),
            provider=self.runtime.name,
        )

    def _configured_rpm(self) -> int:
        rpm = self.runtime.config.provider_config.get("requests_per_minute")
        return int(rpm) if rpm else DEFAULT_REQUESTS_PER_MINUTE

    @property
    def limiter(self) -> ClientRateLimiter:
        if self.runtime.limiter is None:
            raise RuntimeError(f"{self.runtime.name}: limiter is not initialized")
        return self.runtime.limiter

    def update_rate_limit_tier(self, requests_per_minute: int) -> None:
        """Resize the client-side limiter, e.g. 360/min for a paid tier."""
        self.limiter.update_tier(requests_per_minute)

    def configure(self, config: ProviderConfig) -> None:
        super().configure(config)
        rpm = self._configured_rpm()
        if rpm != self.limiter.requests_per_minute:
            self.update_rate_limit_tier(rpm)

    @property
    def project_id(self) -> str:
        return str(self.runtime.config.provider_config.get("project_id") or "")

    def _uses_cloudcode(self, cred: Credential) -> bool:
        return cred.method is AuthMethod.OAUTH and bool(self.project_id)

    def _endpoint(
        self, model: str, cred: Credential, *, stream: bool
    ) -> tuple[str, dict[str, str]]:
        action = "streamGenerateContent" if stream else "generateContent"
        params = {"alt": "sse"} if stream else {}
        if self._uses_cloudcode(cred):
            return f"{CLOUDCODE_BASE_URL}:{action}", params
        return f"{self.runtime.base_url}/models/{model}:{action}", params

    async def get_models(self) -> list[ModelInfo]:
        """List models via ``GET /models``."""
        rt = self.runtime

        async def list_models(cred: Credential) -> list[ModelInfo]:
            body = await rt.send_json(
                "GET",
                f"{rt.base_url}/models",
                credential=cred,
                model="",
                phase="list_models",
            )
            return wire.parse_models(body)

        return await rt.with_credentials(list_models)

    async def generate_chat_completion(
        self,
        options: GenerateOptions,
        *,
        cancel: asyncio.Event | None = None,
    ) -> ChatStream:
        """Run one chat completion, streaming when ``options.stream`` is set."""
        rt = self.runtime

        async def call(model: str, cred: Credential) -> Completion | ChatStream:
            body: dict[str, Any] = wire.build_request(options, max_tokens=rt.max_tokens)
            if self._uses_cloudcode(cred):
                body = wire.wrap_cloudcode(body, model=model, project=self.project_id)
            url, params = self._endpoint(model, cred, stream=options.stream)
            if options.stream:
                response = await rt.send(
                    "POST",
                    url,
                    credential=cred,
                    model=model,
                    phase="stream",
                    json_body=body,
                    params=params,
                    stream=True,
                )
                return SSEStream(response, GeminiStreamParser(), provider=rt.name)
            payload = await rt.send_json(
                "POST",
                url,
                credential=cred,
                model=model,
                phase="generate",
                json_body=body,
                params=params,
            )
            return wire.parse_response(payload)

        return await rt.generate(options, call, cancel=cancel)
