"""State and plumbing shared by every HTTP-backed provider.

A provider variant owns one ``ProviderRuntime`` (config, auth facade,
rate-limit tracker, metrics, HTTP client) and contributes only its wire
format. ``RuntimeBackedProvider`` supplies the part of the public surface
that is identical across variants.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import time
from typing import TYPE_CHECKING, Any, TypeVar

import httpx

from llmrelay._http import transport_error
from llmrelay.auth import AuthHelper
from llmrelay.config import API_KEY_ENV_VARS
from llmrelay.errors import (
    APIError,
    ConfigurationError,
    ErrorKind,
    UnsupportedOperationError,
)
from llmrelay.metrics import MetricsRecorder
from llmrelay.providers._errors import error_from_response, wrap_provider_error
from llmrelay.ratelimit import RateLimitTracker, parser_for
from llmrelay.streaming import CancellableStream, MockStream, UsageRecordingStream
from llmrelay.types import AuthMethod, Completion, ProviderType, ToolFormat

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from llmrelay.auth import AuthStatus, OAuthCredential
    from llmrelay.auth.oauth import TokenRefreshCallback
    from llmrelay.config import AuthConfig, ProviderConfig
    from llmrelay.metrics import ProviderMetrics
    from llmrelay.providers.base import ProviderCapabilities
    from llmrelay.ratelimit import ClientRateLimiter, RateLimitInfo
    from llmrelay.streaming import ChatStream
    from llmrelay.types import GenerateOptions

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderProfile:
    """Static defaults for one backend."""

    type: ProviderType
    base_url: str
    default_model: str
    description: str
    tool_format: ToolFormat
    capabilities: ProviderCapabilities
    max_tokens: int = 0


@dataclass(frozen=True)
class Credential:
    """The secret chosen for one attempt, and how to present it."""

    secret: str
    method: AuthMethod
    oauth: OAuthCredential | None = None

    def __repr__(self) -> str:
        source = self.oauth.id if self.oauth is not None else "api_key"
        return f"Credential(method={self.method.value!r}, source={source!r})"


class ProviderRuntime:
    """Config, credentials, rate-limit state and HTTP for one provider."""

    def __init__(
        self,
        config: ProviderConfig,
        profile: ProviderProfile,
        *,
        client: httpx.AsyncClient | None = None,
        on_token_refresh: TokenRefreshCallback | None = None,
    ) -> None:
        if config.type is not profile.type:
            raise ConfigurationError(
                f"{profile.type.value} provider cannot be built from a "
                f"{config.type.value} config"
            )
        self.config = config
        self.profile = profile
        self.metrics = MetricsRecorder()
        self.tracker = RateLimitTracker()
        self.limiter: ClientRateLimiter | None = None
        self._header_parser = parser_for(profile.type)
        self._client = client
        self._owns_client = client is None
        self._on_token_refresh = on_token_refresh
        self.auth = AuthHelper(
            profile.type,
            name=config.display_name,
            provider_config=config.provider_config,
            client_getter=self.get_client,
        )
        self._setup_auth()

    # --- Configuration ---

    def _setup_auth(self) -> None:
        self.auth.clear_authentication()
        self.auth.provider_config = dict(self.config.provider_config)
        self.auth.name = self.config.display_name
        self.auth.setup_api_keys(self.config.resolved_api_keys())
        self.auth.setup_oauth(
            list(self.config.oauth_credentials),
            on_token_refresh=self._on_token_refresh,
        )

    def configure(self, config: ProviderConfig) -> None:
        """Merge the fields ``config`` set explicitly and rebuild auth."""
        if config.type is not self.config.type:
            raise ConfigurationError(
                f"cannot reconfigure {self.config.type.value} provider "
                f"as {config.type.value}"
            )
        self.config = self.config.merged(config)
        self._setup_auth()
        logger.debug("%s reconfigured", self.name)

    def authenticate(self, auth_config: AuthConfig) -> None:
        self.auth.validate_auth_config(auth_config)
        method = AuthMethod(auth_config.method)
        if method in (AuthMethod.API_KEY, AuthMethod.BEARER_TOKEN):
            if self.auth.key_pool is not None:
                self.auth.key_pool.clear()
                self.auth.key_pool = None
            self.auth.setup_api_keys([auth_config.api_key], method=method)
        updates: dict[str, Any] = {}
        if auth_config.base_url:
            updates["base_url"] = auth_config.base_url.rstrip("/")
        if auth_config.default_model:
            updates["default_model"] = auth_config.default_model
        if updates:
            self.config = self.config.model_copy(update=updates)
        logger.debug("%s authenticated via %s", self.name, method.value)

    def logout(self) -> None:
        self.auth.clear_authentication()

    @property
    def name(self) -> str:
        return self.config.display_name

    @property
    def description(self) -> str:
        return self.config.description or self.profile.description

    @property
    def base_url(self) -> str:
        return self.config.base_url or self.profile.base_url

    @property
    def env_var(self) -> str | None:
        return self.config.api_key_env or API_KEY_ENV_VARS.get(self.config.type)

    @property
    def default_model(self) -> str:
        return self.config.default_model or self.profile.default_model

    @property
    def max_tokens(self) -> int:
        return self.config.max_tokens or self.profile.max_tokens

    def resolve_model(self, options: GenerateOptions) -> str:
        """Request model, else configured default, else built-in default."""
        return options.model or self.default_model

    # --- HTTP ---

    def get_client(self) -> httpx.AsyncClient:
        """Lazily create the shared HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.config.timeout_s)
            )
            self._owns_client = True
        return self._client

    async def aclose(self) -> None:
        """Close the HTTP client if this runtime created it."""
        client = self._client
        if client is None or not self._owns_client:
            return
        self._client = None
        await client.aclose()

    def headers_for(self, credential: Credential) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        self.auth.set_auth_headers(headers, credential.secret, credential.method)
        self.auth.set_provider_specific_headers(headers, credential.method)
        return headers

    def observe_headers(self, response: httpx.Response, model: str) -> None:
        """Feed a response's rate-limit headers into the tracker."""
        if self._header_parser is None:
            return
        info = self._header_parser(response.headers, model)
        if info is not None:
            self.tracker.update(info)

    async def send(
        self,
        method: str,
        url: str,
        *,
        credential: Credential,
        model: str,
        phase: str,
        json_body: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
        stream: bool = False,
        extra_headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Send one request; non-2xx responses raise a classified APIError.

        With ``stream=True`` the caller owns the returned response and must
        close it.
        """
        client = self.get_client()
        headers = self.headers_for(credential)
        if stream:
            headers["Accept"] = "text/event-stream"
        if extra_headers:
            headers.update(extra_headers)
        query = dict(params or {})
        query.update(self.auth.auth_params(credential.secret, credential.method))
        request = client.build_request(
            method,
            url,
            json=json_body,
            headers=headers,
            params=query or None,
            timeout=self.config.timeout_s,
        )
        logger.debug(
            "%s %s %s", self.name, method, request.url.copy_remove_param("key")
        )
        try:
            response = await client.send(request, stream=stream)
        except httpx.HTTPError as e:
            raise transport_error(e, provider=self.name, phase=phase) from e

        self.observe_headers(response, model)
        if response.is_success:
            return response

        try:
            if stream:
                await response.aread()
        except httpx.HTTPError as e:
            raise transport_error(e, provider=self.name, phase=phase) from e
        finally:
            if stream:
                await response.aclose()
        err = error_from_response(
            response.status_code,
            response.text,
            provider=self.name,
            phase=phase,
            headers=response.headers,
            env_var=self.env_var,
            openai_family=self.profile.tool_format is ToolFormat.OPENAI,
        )
        if err.kind is ErrorKind.RATE_LIMIT and err.retry_after_s is not None:
            self.tracker.record_retry_after(
                model, err.retry_after_s, provider=self.name
            )
        raise err

    async def send_json(
        self,
        method: str,
        url: str,
        *,
        credential: Credential,
        model: str,
        phase: str,
        json_body: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        response = await self.send(
            method,
            url,
            credential=credential,
            model=model,
            phase=phase,
            json_body=json_body,
            params=params,
        )
        try:
            body = response.json()
        except ValueError as e:
            raise wrap_provider_error(e, provider=self.name, phase=phase) from e
        if not isinstance(body, dict):
            raise APIError(
                f"{self.name} {phase} returned a non-object JSON body",
                kind=ErrorKind.SERVER,
                body=response.text,
                provider=self.name,
                phase=phase,
            )
        return body

    # --- Dispatch ---

    async def with_credentials(
        self, op: Callable[[Credential], Awaitable[T]]
    ) -> T:
        """Run ``op`` under credential failover (OAuth first, then keys)."""
        return await self.auth.execute_with_auth(
            lambda cred: op(Credential(cred.access_token, AuthMethod.OAUTH, cred)),
            lambda key: op(Credential(key, self.auth.key_method)),
        )

    async def generate(
        self,
        options: GenerateOptions,
        call: Callable[[str, Credential], Awaitable[Completion | ChatStream]],
        *,
        cancel: asyncio.Event | None = None,
    ) -> ChatStream:
        """Validate, gate on rate limits, then run ``call`` with failover.

        ``call(model, credential)`` returns a Completion for non-streaming
        requests or an open stream. Metrics are recorded either way.
        """
        self.metrics.record_request()
        start = time.monotonic()
        try:
            options.validate()
            model = self.resolve_model(options)
            await self.tracker.check_and_wait(model)
            if self.limiter is not None:
                await self.limiter.acquire()
            result = await self.with_credentials(lambda cred: call(model, cred))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.metrics.record_error(e, time.monotonic() - start)
            logger.debug("%s completion failed: %s", self.name, e)
            raise

        latency = time.monotonic() - start
        if isinstance(result, Completion):
            tokens = result.usage.total_tokens if result.usage else 0
            self.metrics.record_success(latency, tokens)
            stream: ChatStream = MockStream([result.to_chunk()])
        else:
            self.metrics.record_success(latency)
            stream = UsageRecordingStream(
                result, lambda usage: self.metrics.record_tokens(usage.total_tokens)
            )
        if cancel is not None:
            return CancellableStream(stream, cancel)
        return stream


class RuntimeBackedProvider:
    """Public surface shared by every provider built on ``ProviderRuntime``."""

    runtime: ProviderRuntime

    @property
    def name(self) -> str:
        return self.runtime.name

    @property
    def type(self) -> ProviderType:
        return self.runtime.config.type

    @property
    def description(self) -> str:
        return self.runtime.description

    @property
    def config(self) -> ProviderConfig:
        return self.runtime.config

    @property
    def capabilities(self) -> ProviderCapabilities:
        return self.runtime.profile.capabilities

    def get_default_model(self) -> str:
        return self.runtime.default_model

    async def invoke_server_tool(self, name: str, params: dict[str, Any]) -> Any:
        raise UnsupportedOperationError(
            f"{self.name} does not support server-side tool {name!r}"
        )

    async def authenticate(self, auth_config: AuthConfig) -> None:
        self.runtime.authenticate(auth_config)

    def is_authenticated(self) -> bool:
        return self.runtime.auth.is_authenticated

    async def logout(self) -> None:
        self.runtime.logout()

    def configure(self, config: ProviderConfig) -> None:
        self.runtime.configure(config)

    def supports_streaming(self) -> bool:
        explicit = self.runtime.config.supports_streaming
        return self.capabilities.streaming if explicit is None else explicit

    def supports_tool_calling(self) -> bool:
        explicit = self.runtime.config.supports_tool_calling
        return self.capabilities.tool_calling if explicit is None else explicit

    def supports_responses_api(self) -> bool:
        explicit = self.runtime.config.supports_responses_api
        return self.capabilities.responses_api if explicit is None else explicit

    def get_tool_format(self) -> ToolFormat:
        return self.runtime.config.tool_format or self.runtime.profile.tool_format

    async def refresh_all_oauth_tokens(self) -> list[OAuthCredential]:
        """Refresh every OAuth credential; a no-op without OAuth."""
        oauth = self.runtime.auth.oauth
        if oauth is None:
            return []
        return await oauth.refresh_all()

    def get_metrics(self) -> ProviderMetrics:
        return self.runtime.metrics.snapshot()

    def get_rate_limit_info(self, model: str) -> RateLimitInfo | None:
        return self.runtime.tracker.get(model)

    def auth_status(self) -> AuthStatus:
        return self.runtime.auth.auth_status()

    async def aclose(self) -> None:
        """Close underlying HTTP client resources."""
        await self.runtime.aclose()

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"
