"""Auth facade: one entry point over the API-key pool and the OAuth manager."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import TYPE_CHECKING, Literal, TypeVar

from llmrelay.auth.keypool import DEFAULT_FAILURE_THRESHOLD, APIKeyPool
from llmrelay.auth.oauth import OAuthManager
from llmrelay.auth.refresh import refresh_func_for
from llmrelay.errors import AuthenticationError, ConfigurationError
from llmrelay.types import AuthMethod, ProviderType

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping, MutableMapping
    from typing import Any

    import httpx

    from llmrelay.auth.credentials import OAuthCredential
    from llmrelay.auth.oauth import RefreshFunc, TokenRefreshCallback
    from llmrelay.config import AuthConfig
    from llmrelay.types import Completion, Usage

T = TypeVar("T")

logger = logging.getLogger(__name__)

ActiveAuthMethod = Literal["oauth", "api_key", "none"]

ANTHROPIC_VERSION = "2023-06-01"
ANTHROPIC_OAUTH_BETA = (
    "oauth-2025-04-20,claude-code-20250219,"
    "interleaved-thinking-2025-05-14,fine-grained-tool-streaming-2025-05-14"
)


@dataclass(frozen=True)
class AuthStatus:
    """Read-only description of a provider's authentication. Never secrets."""

    provider: str
    authenticated: bool
    method: ActiveAuthMethod
    api_keys_configured: int
    oauth_credentials_configured: int

    @property
    def has_api_keys(self) -> bool:
        return self.api_keys_configured > 0

    @property
    def has_oauth(self) -> bool:
        return self.oauth_credentials_configured > 0


class AuthHelper:
    """Selects between OAuth and API-key paths and emits auth headers.

    OAuth is preferred when configured. If every OAuth credential fails and
    API keys are also configured, the key pool is tried next.
    """

    def __init__(
        self,
        provider_type: ProviderType,
        *,
        name: str = "",
        provider_config: Mapping[str, Any] | None = None,
        client_getter: Callable[[], httpx.AsyncClient] | None = None,
    ) -> None:
        self.provider_type = provider_type
        self.name = name or provider_type.value
        self.provider_config: dict[str, Any] = dict(provider_config or {})
        self._client_getter = client_getter
        self.key_pool: APIKeyPool | None = None
        self.oauth: OAuthManager | None = None
        #: How pooled keys are presented: plain API keys or bearer tokens.
        self.key_method: AuthMethod = AuthMethod.API_KEY

    # --- Setup ---

    def setup_api_keys(
        self, keys: list[str], *, method: AuthMethod = AuthMethod.API_KEY
    ) -> None:
        """Build the key pool; a no-op when ``keys`` is empty."""
        keys = [k for k in keys if k]
        if not keys:
            return
        threshold = self.provider_config.get(
            "failure_threshold", DEFAULT_FAILURE_THRESHOLD
        )
        self.key_pool = APIKeyPool(
            keys, provider=self.name, failure_threshold=int(threshold)
        )
        self.key_method = method

    def setup_oauth(
        self,
        credentials: list[OAuthCredential],
        refresh_func: RefreshFunc | None = None,
        *,
        on_token_refresh: TokenRefreshCallback | None = None,
    ) -> None:
        """Build the OAuth manager; a no-op when ``credentials`` is empty."""
        if not credentials:
            return
        if refresh_func is None and self._client_getter is not None:
            refresh_func = refresh_func_for(
                self.provider_type, self._client_getter, self.provider_config
            )
        self.oauth = OAuthManager(
            credentials,
            refresh_func,
            provider=self.name,
            on_token_refresh=on_token_refresh,
        )
        if not len(self.oauth):
            self.oauth = None

    def clear_authentication(self) -> None:
        if self.key_pool is not None:
            self.key_pool.clear()
        if self.oauth is not None:
            self.oauth.clear()
        self.key_pool = None
        self.oauth = None
        self.key_method = AuthMethod.API_KEY

    # --- Introspection ---

    @property
    def auth_method(self) -> ActiveAuthMethod:
        if self.oauth is not None and len(self.oauth):
            return "oauth"
        if self.key_pool is not None and len(self.key_pool):
            return "api_key"
        return "none"

    @property
    def is_authenticated(self) -> bool:
        return self.auth_method != "none"

    def auth_status(self) -> AuthStatus:
        return AuthStatus(
            provider=self.name,
            authenticated=self.is_authenticated,
            method=self.auth_method,
            api_keys_configured=len(self.key_pool) if self.key_pool else 0,
            oauth_credentials_configured=len(self.oauth) if self.oauth else 0,
        )

    # --- Headers ---

    def set_auth_headers(
        self,
        headers: MutableMapping[str, str],
        credential: str,
        method: AuthMethod | str,
    ) -> None:
        """Attach the credential the way this provider expects it.

        Gemini API keys travel in the query string instead; see ``auth_params``.
        """
        method = AuthMethod(method)
        if method in (AuthMethod.OAUTH, AuthMethod.BEARER_TOKEN):
            headers["Authorization"] = f"Bearer {credential}"
        elif self.provider_type is ProviderType.ANTHROPIC:
            headers["x-api-key"] = credential
        elif self.provider_type is ProviderType.GEMINI:
            return
        else:
            headers["Authorization"] = f"Bearer {credential}"

    def auth_params(self, credential: str, method: AuthMethod | str) -> dict[str, str]:
        """Query parameters carrying the credential, if any."""
        if (
            self.provider_type is ProviderType.GEMINI
            and AuthMethod(method) is AuthMethod.API_KEY
        ):
            return {"key": credential}
        return {}

    def set_provider_specific_headers(
        self,
        headers: MutableMapping[str, str],
        method: AuthMethod | str | None = None,
    ) -> None:
        if self.provider_type is ProviderType.ANTHROPIC:
            headers["anthropic-version"] = ANTHROPIC_VERSION
            if method is not None and AuthMethod(method) is AuthMethod.OAUTH:
                headers["anthropic-beta"] = self.provider_config.get(
                    "anthropic_beta", ANTHROPIC_OAUTH_BETA
                )
        elif self.provider_type is ProviderType.OPENAI:
            org = self.provider_config.get("organization_id")
            if org:
                headers["openai-organization"] = str(org)
        elif self.provider_type is ProviderType.OPENROUTER:
            site_url = self.provider_config.get("site_url")
            site_name = self.provider_config.get("site_name")
            if site_url:
                headers["HTTP-Referer"] = str(site_url)
            if site_name:
                headers["X-Title"] = str(site_name)

    # --- Validation ---

    def validate_auth_config(self, auth_config: AuthConfig) -> None:
        """Raise ConfigurationError when ``auth_config`` cannot authenticate."""
        try:
            method = AuthMethod(auth_config.method)
        except ValueError:
            raise ConfigurationError(
                f"unsupported authentication method: {auth_config.method!r}",
                hint="Use one of: " + ", ".join(m.value for m in AuthMethod),
            ) from None
        if method is AuthMethod.API_KEY and not auth_config.api_key:
            raise ConfigurationError("API key is required for api_key authentication")
        if method is AuthMethod.BEARER_TOKEN and not auth_config.api_key:
            raise ConfigurationError(
                "bearer token is required for bearer_token authentication"
            )
        if method is AuthMethod.OAUTH and self.oauth is None:
            raise ConfigurationError(
                "OAuth credentials are required for oauth authentication",
                hint="Configure OAuth through ProviderConfig.oauth_credentials.",
            )
        if method is AuthMethod.CUSTOM:
            raise ConfigurationError(
                f"unsupported authentication method: {method.value}"
            )

    # --- Execution ---

    async def execute_with_auth(
        self,
        oauth_op: Callable[[OAuthCredential], Awaitable[T]],
        api_key_op: Callable[[str], Awaitable[T]],
    ) -> T:
        """Run one provider operation with credential failover.

        Tries every OAuth credential, then every API key. Raises the last
        error when all credentials fail.
        """
        if self.oauth is None and self.key_pool is None:
            raise AuthenticationError(
                f"no authentication configured for {self.name}",
                hint="Provide an API key or OAuth credentials in ProviderConfig.",
            )
        if self.oauth is not None:
            try:
                return await self.oauth.execute_with_failover(oauth_op)
            except Exception as e:
                if self.key_pool is None:
                    raise
                logger.debug(
                    "%s OAuth credentials exhausted (%s); falling back to API keys",
                    self.name,
                    e,
                )
        if self.key_pool is None:
            raise AuthenticationError(f"no API keys configured for {self.name}")
        return await self.key_pool.execute_with_failover(api_key_op)

    async def execute_with_auth_text(
        self,
        oauth_op: Callable[[OAuthCredential], Awaitable[Completion]],
        api_key_op: Callable[[str], Awaitable[Completion]],
    ) -> tuple[str, Usage | None]:
        """Variant of ``execute_with_auth`` that keeps only the text content."""
        completion = await self.execute_with_auth(oauth_op, api_key_op)
        return completion.content, completion.usage
