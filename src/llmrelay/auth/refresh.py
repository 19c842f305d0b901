"""Provider-specific OAuth refresh strategies.

Each factory returns a refresh function that takes an ``OAuthCredential`` and
returns the refreshed record. The OAuth manager only ever sees the function.
"""

from __future__ import annotations

from dataclasses import replace
import logging
from typing import TYPE_CHECKING, Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from llmrelay._http import classify_status
from llmrelay.auth.oauth import refresh_not_configured
from llmrelay.errors import APIError, ErrorKind
from llmrelay.types import ProviderType

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from llmrelay.auth.credentials import OAuthCredential
    from llmrelay.auth.oauth import RefreshFunc

    ClientGetter = Callable[[], httpx.AsyncClient]

logger = logging.getLogger(__name__)

ANTHROPIC_TOKEN_URL = "https://console.anthropic.com/v1/oauth/token"
ANTHROPIC_CLIENT_ID = "9d1c250a-e61b-44d9-88ed-5944d1962f5e"
OPENAI_TOKEN_URL = "https://auth.openai.com/oauth/token"
OPENAI_CLIENT_ID = "app_EMoamEEZ73f0CkXaXp7hrann"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
QWEN_TOKEN_URL = "https://chat.qwen.ai/api/v1/oauth2/token"
QWEN_CLIENT_ID = "f0304373b74a44d2b584a3fb70ca9e56"

DEFAULT_REFRESH_TIMEOUT_S = 10.0


class TokenResponse(BaseModel):
    """Body of a successful refresh-token grant."""

    model_config = ConfigDict(extra="allow")

    access_token: str = Field(min_length=1)
    refresh_token: str | None = None
    expires_in: float | None = Field(default=None, ge=0)
    token_type: str | None = None
    id_token: str | None = None
    scope: str | None = None


async def _post_token_request(
    client: httpx.AsyncClient,
    url: str,
    *,
    provider: str,
    json_body: dict[str, str] | None = None,
    form: dict[str, str] | None = None,
    headers: Mapping[str, str] | None = None,
    timeout_s: float = DEFAULT_REFRESH_TIMEOUT_S,
) -> TokenResponse:
    try:
        response = await client.post(
            url,
            json=json_body,
            data=form,
            headers=dict(headers or {}),
            timeout=timeout_s,
        )
    except httpx.TimeoutException as e:
        raise APIError(
            f"{provider} token refresh timed out",
            kind=ErrorKind.TIMEOUT,
            provider=provider,
            phase="refresh",
        ) from e
    except httpx.RequestError as e:
        raise APIError(
            f"{provider} token refresh failed: {e}",
            kind=ErrorKind.NETWORK,
            provider=provider,
            phase="refresh",
        ) from e

    if response.status_code != 200:
        body = response.text
        raise APIError(
            f"refresh failed with status {response.status_code}: {body}",
            kind=classify_status(response.status_code),
            status_code=response.status_code,
            body=body,
            provider=provider,
            phase="refresh",
        )
    try:
        return TokenResponse.model_validate(response.json())
    except (ValueError, ValidationError) as e:
        raise APIError(
            f"{provider} token refresh returned an invalid body: {e}",
            kind=ErrorKind.SERVER,
            status_code=response.status_code,
            body=response.text,
            provider=provider,
            phase="refresh",
        ) from e


def _apply(cred: OAuthCredential, token: TokenResponse) -> OAuthCredential:
    updated = cred.refreshed(
        access_token=token.access_token,
        refresh_token=token.refresh_token,
        expires_in_s=token.expires_in,
    )
    # Provider extensions such as Qwen's resource_url ride along in extra.
    if token.model_extra:
        updated = replace(updated, extra={**updated.extra, **token.model_extra})
    return updated


def anthropic_refresh(
    client_getter: ClientGetter,
    *,
    token_url: str = ANTHROPIC_TOKEN_URL,
    client_id: str = ANTHROPIC_CLIENT_ID,
) -> RefreshFunc:
    """JSON-body refresh against Anthropic's console token endpoint."""

    async def refresh(cred: OAuthCredential) -> OAuthCredential:
        token = await _post_token_request(
            client_getter(),
            token_url,
            provider="anthropic",
            json_body={
                "grant_type": "refresh_token",
                "client_id": cred.client_id or client_id,
                "refresh_token": cred.refresh_token,
            },
            headers={"Content-Type": "application/json"},
        )
        return _apply(cred, token)

    return refresh


def form_refresh(
    client_getter: ClientGetter,
    *,
    provider: str,
    token_url: str,
    client_id: str = "",
    require_secret: bool = False,
    accept_json: bool = False,
) -> RefreshFunc:
    """Form-encoded refresh-token grant.

    The client secret is sent only when the credential has one, unless
    ``require_secret`` is set (standard Google OAuth2).
    """

    async def refresh(cred: OAuthCredential) -> OAuthCredential:
        form = {
            "grant_type": "refresh_token",
            "refresh_token": cred.refresh_token,
        }
        effective_client_id = cred.client_id or client_id
        if effective_client_id:
            form["client_id"] = effective_client_id
        if cred.client_secret or require_secret:
            form["client_secret"] = cred.client_secret
        headers = {"Content-Type": "application/x-www-form-urlencoded"}
        if accept_json:
            headers["Accept"] = "application/json"
        token = await _post_token_request(
            client_getter(),
            token_url,
            provider=provider,
            form=form,
            headers=headers,
        )
        return _apply(cred, token)

    return refresh


def refresh_func_for(
    provider_type: ProviderType,
    client_getter: ClientGetter,
    provider_config: Mapping[str, Any] | None = None,
) -> RefreshFunc:
    """Return the refresh strategy for a provider type.

    ``provider_config`` may override ``token_url`` and ``client_id``.
    """
    overrides = provider_config or {}
    token_url = overrides.get("token_url")
    client_id = overrides.get("client_id")

    if provider_type is ProviderType.ANTHROPIC:
        return anthropic_refresh(
            client_getter,
            token_url=token_url or ANTHROPIC_TOKEN_URL,
            client_id=client_id or ANTHROPIC_CLIENT_ID,
        )
    if provider_type is ProviderType.OPENAI:
        return form_refresh(
            client_getter,
            provider="openai",
            token_url=token_url or OPENAI_TOKEN_URL,
            client_id=client_id or OPENAI_CLIENT_ID,
        )
    if provider_type is ProviderType.GEMINI:
        return form_refresh(
            client_getter,
            provider="gemini",
            token_url=token_url or GOOGLE_TOKEN_URL,
            client_id=client_id or "",
            require_secret=True,
        )
    if provider_type is ProviderType.QWEN:
        return form_refresh(
            client_getter,
            provider="qwen",
            token_url=token_url or QWEN_TOKEN_URL,
            client_id=client_id or QWEN_CLIENT_ID,
            accept_json=True,
        )
    if token_url:
        return form_refresh(
            client_getter,
            provider=provider_type.value,
            token_url=token_url,
            client_id=client_id or "",
        )
    logger.debug("no OAuth refresh protocol for %s", provider_type.value)
    return refresh_not_configured
