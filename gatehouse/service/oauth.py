from __future__ import annotations

from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx

from gatehouse.config import Settings
from gatehouse.logging import get_logger
from gatehouse.service.errors import ServerError, ValidationError

OAUTH_PROVIDERS = {
    "github": {
        "auth_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "emails_url": "https://api.github.com/user/emails",
        "scope": "user:email",
    },
    "google": {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scope": "email profile",
    },
}


class OAuthExchangeError(Exception):
    """The provider rejected the code or returned an unusable identity."""


class OAuthService:
    """Authorization URLs and code-for-identity exchange for GitHub and Google.

    ``transport`` is handed to :class:`httpx.AsyncClient`; tests pass an
    ``httpx.MockTransport``.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ) -> None:
        self.settings = settings
        self.transport = transport
        self.timeout = timeout
        self.logger = get_logger(__name__)

    def _credentials(self, provider: str) -> tuple[str, str, str]:
        if provider not in OAUTH_PROVIDERS:
            raise ValidationError(f"Unsupported OAuth provider: {provider}")
        client_id, client_secret, redirect_uri = self.settings.oauth_credentials(provider)
        if not client_id or not redirect_uri:
            self.logger.error("oauth_not_configured", provider=provider)
            raise ServerError("OAuth configuration error")
        return client_id, client_secret or "", redirect_uri

    def authorization_url(self, provider: str, state: str) -> str:
        client_id, _, redirect_uri = self._credentials(provider)
        config = OAUTH_PROVIDERS[provider]
        params = {"client_id": client_id, "redirect_uri": redirect_uri}
        if provider == "google":
            params["response_type"] = "code"
        params["scope"] = config["scope"]
        params["state"] = state
        return f"{config['auth_url']}?{urlencode(params)}"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout, follow_redirects=False, transport=self.transport
        )

    async def exchange_code(self, provider: str, code: str) -> Dict[str, Any]:
        """Trade an authorization code for ``{provider, provider_id, email, login}``."""
        client_id, client_secret, redirect_uri = self._credentials(provider)
        config = OAUTH_PROVIDERS[provider]
        try:
            async with self._client() as client:
                if provider == "github":
                    token_response = await client.post(
                        config["token_url"],
                        json={
                            "client_id": client_id,
                            "client_secret": client_secret,
                            "code": code,
                            "redirect_uri": redirect_uri,
                        },
                        headers={"Accept": "application/json"},
                    )
                else:
                    token_response = await client.post(
                        config["token_url"],
                        data={
                            "client_id": client_id,
                            "client_secret": client_secret,
                            "code": code,
                            "redirect_uri": redirect_uri,
                            "grant_type": "authorization_code",
                        },
                        headers={"Accept": "application/json"},
                    )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = token_result.get("access_token") if isinstance(token_result, dict) else None
                if not access_token:
                    raise OAuthExchangeError("provider returned no access token")

                auth_headers = {"Authorization": f"Bearer {access_token}"}
                if provider == "github":
                    auth_headers["Accept"] = "application/vnd.github+json"
                userinfo_response = await client.get(config["userinfo_url"], headers=auth_headers)
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
                if not isinstance(userinfo, dict):
                    raise OAuthExchangeError("userinfo is not an object")

                identity = _parse_userinfo(provider, userinfo)
                if provider == "github":
                    emails_response = await client.get(config["emails_url"], headers=auth_headers)
                    if emails_response.status_code == 200:
                        identity["email"] = _verified_primary_email(emails_response.json())
        except httpx.HTTPStatusError as exc:
            self.logger.error(
                "oauth_exchange_http_error",
                provider=provider,
                status_code=exc.response.status_code,
            )
            raise OAuthExchangeError(f"{provider} returned {exc.response.status_code}") from exc
        except (httpx.HTTPError, ValueError) as exc:
            self.logger.error("oauth_exchange_error", provider=provider, error=str(exc))
            raise OAuthExchangeError(str(exc)) from exc

        if not identity.get("provider_id"):
            raise OAuthExchangeError("identity is missing the provider id")
        if not identity.get("email"):
            raise OAuthExchangeError("provider reported no verified email address")
        self.logger.info("oauth_exchange_success", provider=provider)
        return identity


def _verified_primary_email(emails: Any) -> Optional[str]:
    if not isinstance(emails, list):
        return None
    for entry in emails:
        if isinstance(entry, dict) and entry.get("primary") and entry.get("verified"):
            return entry.get("email")
    return None


def _parse_userinfo(provider: str, userinfo: dict) -> Dict[str, Any]:
    if provider == "github":
        return {
            "provider": provider,
            "provider_id": str(userinfo["id"]) if userinfo.get("id") is not None else None,
            # The profile email has no verification flag; the caller fills in
            # the verified primary from /user/emails.
            "email": None,
            "login": userinfo.get("login"),
        }
    email = userinfo.get("email")
    # v2 userinfo reports verified_email, the OpenID endpoint email_verified
    verified = userinfo.get("verified_email", userinfo.get("email_verified")) is True
    return {
        "provider": provider,
        "provider_id": userinfo.get("id") or userinfo.get("sub"),
        "email": email if verified else None,
        "login": userinfo.get("name") or (email or "").split("@")[0],
    }
