"""
auth/oauth.py -- Authlib provider registry and OAuth account linking.

Reads configuration from core.config.get_settings() at module load to decide
which providers are active. Only providers with both client ID and secret
configured get registered.

Security notes:
  [H1] Email verification is mandatory. extract_verified_identity() raises
       ValueError if the provider does not confirm the email is verified. An
       unverified email could be a victim's address added by an attacker.

  [H2] Link state is a signed JWT bound to (user_id, provider) with a random
       nonce and a 5-minute expiry (auth/tokens.py). A callback carrying a
       state minted for another user or provider is rejected and audited as
       suspicious activity. authlib additionally checks its own session-held
       state via Starlette SessionMiddleware.

  [H3] Provider access/refresh tokens are stored AES-GCM encrypted with
       "user_id:provider" as associated data.

  [H4] A provider account can be linked to at most one local user (UNIQUE
       constraint plus an explicit check that reports a clean conflict).

Supported providers:
  github -- Authorization code flow; static endpoints.
  google -- Authorization code flow; OIDC discovery.
  oidc   -- Generic OIDC discovery (Okta, Azure AD, Keycloak, Authentik, etc.)

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from authlib.integrations.starlette_client import OAuth
from sqlalchemy.exc import IntegrityError

from audit.log import SecurityAuditLog
from audit.models import SecurityAction, SecuritySeverity
from auth.errors import AccountLinkConflict, InvalidToken
from auth.models import LinkedAccount, OAuthIdentity
from auth.store import UserStore
from auth.tokens import create_link_state, decode_link_state, get_keyring
from core.config import Settings, get_settings
from core.crypto import SecretBox
from core.timeutil import Clock, utc_now

logger = logging.getLogger("gatekeeper.auth.oauth")

SUPPORTED_PROVIDERS = ("github", "google", "oidc")

# ---------------------------------------------------------------------------
# Authlib OAuth registry
# ---------------------------------------------------------------------------

oauth = OAuth()

_cfg = get_settings()

# GitHub -- static endpoints (no OIDC discovery document)
if _cfg.github_client_id and _cfg.github_client_secret:
    oauth.register(
        name="github",
        client_id=_cfg.github_client_id,
        client_secret=_cfg.github_client_secret,
        access_token_url="https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
        authorize_url="https://github.com/login/oauth/authorize",
        api_base_url="https://api.github.com/",
        client_kwargs={"scope": "read:user user:email"},
    )
    logger.info("GitHub OAuth provider registered")

# Google -- OIDC discovery
if _cfg.google_client_id and _cfg.google_client_secret:
    oauth.register(
        name="google",
        client_id=_cfg.google_client_id,
        client_secret=_cfg.google_client_secret,
        server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
        client_kwargs={"scope": "openid email profile"},
    )
    logger.info("Google OAuth provider registered")

# Generic OIDC
if _cfg.oidc_client_id and _cfg.oidc_client_secret and _cfg.oidc_discovery_url:
    oauth.register(
        name="oidc",
        client_id=_cfg.oidc_client_id,
        client_secret=_cfg.oidc_client_secret,
        server_metadata_url=_cfg.oidc_discovery_url,
        client_kwargs={"scope": "openid email profile"},
    )
    logger.info("Generic OIDC provider registered (display name: %s)", _cfg.oidc_display_name)


def get_enabled_providers(settings: Settings | None = None) -> list[dict]:
    """Return {"name", "label"} for every configured provider."""
    cfg = settings or get_settings()
    providers: list[dict] = []
    if cfg.github_client_id and cfg.github_client_secret:
        providers.append({"name": "github", "label": "GitHub"})
    if cfg.google_client_id and cfg.google_client_secret:
        providers.append({"name": "google", "label": "Google"})
    if cfg.oidc_client_id and cfg.oidc_client_secret and cfg.oidc_discovery_url:
        providers.append({"name": "oidc", "label": cfg.oidc_display_name})
    return providers


# ---------------------------------------------------------------------------
# Identity extraction -- provider-specific normalization [H1]
# ---------------------------------------------------------------------------


async def get_oauth_identity(client, provider: str, token: dict) -> OAuthIdentity:
    """Extract a verified identity from a provider token response.

    Raises ValueError if a verified email cannot be confirmed.
    """
    if provider == "github":
        return await _get_github_identity(client, token)
    if provider in ("google", "oidc"):
        return extract_verified_identity(provider, token.get("userinfo") or {})
    raise ValueError(f"Unknown OAuth provider: {provider!r}")


async def _get_github_identity(client, token: dict) -> OAuthIdentity:
    """GitHub omits email from the token; /user gives the id, /user/emails the primary verified email."""
    resp = await client.get("user", token=token)
    resp.raise_for_status()
    subject = str(resp.json()["id"])

    emails_resp = await client.get("user/emails", token=token)
    emails_resp.raise_for_status()
    email = next(
        (e["email"] for e in emails_resp.json() if e.get("primary") and e.get("verified")),
        None,
    )
    if not email:
        raise ValueError(
            "GitHub OAuth: no primary verified email found. "
            "The user must verify their email address on GitHub before linking."
        )
    return OAuthIdentity(provider="github", subject=subject, email=email.lower())


def extract_verified_identity(provider: str, userinfo: dict) -> OAuthIdentity:
    """Build an identity from OIDC userinfo claims, requiring email_verified [H1].

    Some OIDC providers omit email_verified entirely -- treated as unverified.
    """
    if not userinfo:
        raise ValueError(f"{provider} OAuth: no userinfo in token response")
    if not userinfo.get("email_verified", False):
        raise ValueError(
            f"{provider} OAuth: email is not verified. "
            "The provider must confirm email ownership before linking is allowed."
        )
    email = userinfo.get("email")
    subject = userinfo.get("sub")
    if not email or not subject:
        raise ValueError(f"{provider} OAuth: missing email or sub claim in userinfo")
    return OAuthIdentity(provider=provider, subject=str(subject), email=email.lower())


# ---------------------------------------------------------------------------
# Account linking
# ---------------------------------------------------------------------------


class LinkedAccountService:
    """Link, list, and unlink external OAuth identities for local users.

    Usage:
        links = LinkedAccountService(user_store, audit)
        state = links.create_link_state(user_id, "github")
        ...  # provider round-trip
        links.link(user_id, "github", state, identity, token_response)
    """

    def __init__(
        self,
        store: UserStore,
        audit: SecurityAuditLog,
        settings: Settings | None = None,
        clock: Clock = utc_now,
        box: SecretBox | None = None,
    ) -> None:
        self._store = store
        self._audit = audit
        self._settings = settings or get_settings()
        self._clock = clock
        self._box = box or get_keyring().secret_box()

    # ------------------------------------------------------------------
    # State [H2]
    # ------------------------------------------------------------------

    def create_link_state(self, user_id: int, provider: str) -> str:
        if provider not in SUPPORTED_PROVIDERS:
            raise ValueError(f"Unknown OAuth provider: {provider!r}")
        return create_link_state(user_id, provider, self._clock(), self._settings.oauth_state_minutes)

    def verify_link_state(self, state: str, user_id: int, provider: str) -> bool:
        payload = decode_link_state(state, self._clock())
        return payload is not None and payload["sub"] == str(user_id) and payload["provider"] == provider

    # ------------------------------------------------------------------
    # Link / unlink
    # ------------------------------------------------------------------

    def link(
        self,
        user_id: int,
        provider: str,
        state: str,
        identity: OAuthIdentity,
        token: dict | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> LinkedAccount:
        """Link identity to user_id after validating state.

        Raises InvalidToken for a bad/foreign/expired state, AccountLinkConflict
        if the provider account already belongs to another user.
        """
        if identity.provider != provider or not self.verify_link_state(state, user_id, provider):
            self._audit.log_security_event(
                SecurityAction.SUSPICIOUS_ACTIVITY,
                severity=SecuritySeverity.WARN,
                user_id=user_id,
                ip_address=ip_address,
                user_agent=user_agent,
                resource=f"oauth:{provider}",
                event_data={"reason": "invalid_link_state"},
            )
            raise InvalidToken("Invalid or expired OAuth state.")

        token = token or {}
        aad = f"{user_id}:{provider}"
        access = self._box.encrypt(token["access_token"], aad=aad) if token.get("access_token") else None
        refresh = self._box.encrypt(token["refresh_token"], aad=aad) if token.get("refresh_token") else None
        expires_at = None
        if token.get("expires_at"):
            expires_at = datetime.fromtimestamp(int(token["expires_at"]), tz=timezone.utc)
        elif token.get("expires_in"):
            expires_at = self._clock() + timedelta(seconds=int(token["expires_in"]))
        scope = token.get("scope")

        existing = self._store.get_linked_account(provider, identity.subject)
        if existing is not None and existing.user_id != user_id:
            self._audit.log_user_event(
                SecurityAction.OAUTH_LINKED,
                success=False,
                user_id=user_id,
                ip_address=ip_address,
                user_agent=user_agent,
                resource=f"oauth:{provider}",
                event_data={"reason": "linked_to_other_user"},
            )
            raise AccountLinkConflict("This account is already linked to another user.")

        if existing is not None:
            self._store.update_linked_tokens(existing.id, access, refresh, expires_at, scope)
            account = self._store.get_linked_account(provider, identity.subject)
        else:
            account = LinkedAccount(
                user_id=user_id,
                provider=provider,
                provider_account_id=identity.subject,
                email=identity.email,
                access_token_encrypted=access,
                refresh_token_encrypted=refresh,
                token_expires_at=expires_at,
                scope=scope,
            )
            try:
                account.id = self._store.create_linked_account(account, self._clock())
            except IntegrityError as exc:
                # Lost a race to another link of the same provider account, or
                # user already has a different account of this provider
                raise AccountLinkConflict("This provider is already linked.") from exc

        self._audit.log_user_event(
            SecurityAction.OAUTH_LINKED,
            user_id=user_id,
            email=identity.email,
            ip_address=ip_address,
            user_agent=user_agent,
            resource=f"oauth:{provider}",
        )
        logger.info("Linked %s account for user_id=%s", provider, user_id)
        return account

    def unlink(self, user_id: int, provider: str, ip_address: str | None = None) -> bool:
        removed = self._store.delete_linked_account(user_id, provider)
        if removed:
            self._audit.log_user_event(
                SecurityAction.OAUTH_UNLINKED,
                user_id=user_id,
                ip_address=ip_address,
                resource=f"oauth:{provider}",
            )
        return removed

    def list_accounts(self, user_id: int) -> list[LinkedAccount]:
        return self._store.list_linked_accounts(user_id)

    def get_access_token(self, user_id: int, provider: str) -> str | None:
        """Decrypt the stored provider access token for user_id, or None."""
        account = self._store.get_linked_account_for_user(user_id, provider)
        if account is None or account.access_token_encrypted is None:
            return None
        return self._box.decrypt(account.access_token_encrypted, aad=f"{user_id}:{provider}")
