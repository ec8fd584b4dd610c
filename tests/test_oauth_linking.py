"""Tests for auth/oauth.py -- verified identity extraction and account linking.

Covers:
- Unverified or incomplete provider identities are refused [H1]
- GitHub identity comes from the primary verified address
- Link state is bound to user and provider and expires on the injected clock [H2]
- Provider tokens are stored encrypted and bound to user/provider [H3]
- One provider account maps to at most one local user [H4]
- Unlink, listing, enabled-provider discovery
"""

import asyncio
from datetime import timedelta

import pytest

from audit.models import AuditLogFilter, SecurityAction
from auth.errors import AccountLinkConflict, InvalidToken
from auth.models import OAuthIdentity
from auth.oauth import LinkedAccountService, extract_verified_identity, get_enabled_providers, get_oauth_identity
from core.config import get_settings
from core.crypto import DecryptionError, SecretBox

_BOX_KEY = b"o" * 32


@pytest.fixture
def links(orchestrator, clock):
    return LinkedAccountService(
        orchestrator.users, orchestrator.audit, get_settings(), clock=clock, box=SecretBox(_BOX_KEY)
    )


@pytest.fixture
def ada(make_user):
    return make_user("ada@example.com")


@pytest.fixture
def grace(ada, make_user):
    return make_user("grace@example.com")


def _identity(provider="github", subject="583231", email="ada@example.com") -> OAuthIdentity:
    return OAuthIdentity(provider=provider, subject=subject, email=email)


# ---------------------------------------------------------------------------
# Identity extraction [H1]
# ---------------------------------------------------------------------------


def test_verified_userinfo_accepted():
    identity = extract_verified_identity(
        "google", {"sub": "1098", "email": "Ada@Example.com", "email_verified": True}
    )
    assert identity == OAuthIdentity(provider="google", subject="1098", email="ada@example.com")


@pytest.mark.parametrize(
    "userinfo",
    [
        {},
        {"sub": "1098", "email": "ada@example.com"},
        {"sub": "1098", "email": "ada@example.com", "email_verified": False},
        {"email": "ada@example.com", "email_verified": True},
        {"sub": "1098", "email_verified": True},
    ],
)
def test_unverified_or_incomplete_userinfo_refused(userinfo):
    with pytest.raises(ValueError):
        extract_verified_identity("oidc", userinfo)


class _FakeResponse:
    def __init__(self, payload):
        self._payload = payload

    def raise_for_status(self):
        return None

    def json(self):
        return self._payload


class _FakeGitHubClient:
    def __init__(self, emails):
        self._emails = emails

    async def get(self, path, token=None):
        if path == "user":
            return _FakeResponse({"id": 583231, "login": "ada"})
        return _FakeResponse(self._emails)


def test_github_identity_uses_primary_verified_email():
    client = _FakeGitHubClient(
        [
            {"email": "old@example.com", "primary": False, "verified": True},
            {"email": "Ada@Example.com", "primary": True, "verified": True},
        ]
    )
    identity = asyncio.run(get_oauth_identity(client, "github", {"access_token": "gho_x"}))
    assert identity == OAuthIdentity(provider="github", subject="583231", email="ada@example.com")


def test_github_without_verified_primary_refused():
    client = _FakeGitHubClient([{"email": "ada@example.com", "primary": True, "verified": False}])
    with pytest.raises(ValueError, match="no primary verified email"):
        asyncio.run(get_oauth_identity(client, "github", {"access_token": "gho_x"}))


def test_unknown_provider_refused():
    with pytest.raises(ValueError):
        asyncio.run(get_oauth_identity(None, "myspace", {}))


# ---------------------------------------------------------------------------
# Link state [H2]
# ---------------------------------------------------------------------------


def test_state_bound_to_user_and_provider(links, ada, grace):
    state = links.create_link_state(ada.id, "github")
    assert links.verify_link_state(state, ada.id, "github")
    assert not links.verify_link_state(state, grace.id, "github")
    assert not links.verify_link_state(state, ada.id, "google")


def test_state_expires_on_injected_clock(links, ada, clock):
    state = links.create_link_state(ada.id, "github")
    clock.advance(minutes=4)
    assert links.verify_link_state(state, ada.id, "github")
    clock.advance(minutes=2)
    assert not links.verify_link_state(state, ada.id, "github")


def test_tampered_state_rejected(links, ada):
    state = links.create_link_state(ada.id, "github")
    assert not links.verify_link_state(state[:-4] + "AAAA", ada.id, "github")
    assert not links.verify_link_state("not-a-jwt", ada.id, "github")


def test_unknown_provider_state_refused(links, ada):
    with pytest.raises(ValueError):
        links.create_link_state(ada.id, "myspace")


# ---------------------------------------------------------------------------
# Linking
# ---------------------------------------------------------------------------


def test_link_stores_encrypted_tokens(links, orchestrator, ada, clock):
    state = links.create_link_state(ada.id, "github")
    token = {"access_token": "gho_secret", "refresh_token": "ghr_secret", "expires_in": 3600, "scope": "read:user"}
    account = links.link(ada.id, "github", state, _identity(), token)

    assert account.id is not None
    assert "gho_secret" not in account.access_token_encrypted
    assert account.token_expires_at == clock() + timedelta(hours=1)
    assert links.get_access_token(ada.id, "github") == "gho_secret"
    assert [a.provider for a in links.list_accounts(ada.id)] == ["github"]
    actions = [e.action for e in orchestrator.audit.query(AuditLogFilter(user_id=ada.id)).items]
    assert actions[0] is SecurityAction.OAUTH_LINKED


def test_token_ciphertext_bound_to_user_and_provider(links, orchestrator, ada):
    links.link(ada.id, "github", links.create_link_state(ada.id, "github"), _identity(), {"access_token": "gho_x"})
    stored = orchestrator.users.get_linked_account_for_user(ada.id, "github")
    with pytest.raises(DecryptionError):
        SecretBox(_BOX_KEY).decrypt(stored.access_token_encrypted, aad=f"{ada.id}:google")


def test_link_with_foreign_state_is_suspicious(links, orchestrator, ada, grace):
    state = links.create_link_state(grace.id, "github")
    with pytest.raises(InvalidToken):
        links.link(ada.id, "github", state, _identity())
    assert links.list_accounts(ada.id) == []
    page = orchestrator.audit.query(AuditLogFilter(action=SecurityAction.SUSPICIOUS_ACTIVITY))
    assert page.total == 1
    assert page.items[0].resource == "oauth:github"


def test_identity_provider_must_match(links, ada):
    state = links.create_link_state(ada.id, "github")
    with pytest.raises(InvalidToken):
        links.link(ada.id, "github", state, _identity(provider="google"))


def test_provider_account_links_to_one_user_only(links, ada, grace):
    links.link(ada.id, "github", links.create_link_state(ada.id, "github"), _identity())
    with pytest.raises(AccountLinkConflict):
        links.link(grace.id, "github", links.create_link_state(grace.id, "github"), _identity())
    assert links.list_accounts(grace.id) == []


def test_relink_refreshes_tokens(links, ada):
    links.link(ada.id, "github", links.create_link_state(ada.id, "github"), _identity(), {"access_token": "one"})
    links.link(ada.id, "github", links.create_link_state(ada.id, "github"), _identity(), {"access_token": "two"})
    assert len(links.list_accounts(ada.id)) == 1
    assert links.get_access_token(ada.id, "github") == "two"


def test_unlink(links, ada):
    links.link(ada.id, "github", links.create_link_state(ada.id, "github"), _identity())
    assert links.unlink(ada.id, "github")
    assert links.list_accounts(ada.id) == []
    assert links.get_access_token(ada.id, "github") is None
    assert not links.unlink(ada.id, "github")


# ---------------------------------------------------------------------------
# Provider discovery
# ---------------------------------------------------------------------------


def test_enabled_providers_follow_settings():
    settings = get_settings().model_copy(
        update={
            "github_client_id": "gh-id",
            "github_client_secret": "gh-secret",
            "google_client_id": "",
            "google_client_secret": "",
            "oidc_client_id": "oidc-id",
            "oidc_client_secret": "oidc-secret",
            "oidc_discovery_url": "https://sso.example.com/.well-known/openid-configuration",
            "oidc_display_name": "Example SSO",
        }
    )
    assert get_enabled_providers(settings) == [
        {"name": "github", "label": "GitHub"},
        {"name": "oidc", "label": "Example SSO"},
    ]


def test_oidc_requires_discovery_url():
    settings = get_settings().model_copy(
        update={
            "github_client_id": "",
            "google_client_id": "",
            "oidc_client_id": "oidc-id",
            "oidc_client_secret": "oidc-secret",
            "oidc_discovery_url": "",
        }
    )
    assert get_enabled_providers(settings) == []
