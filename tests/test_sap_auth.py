"""
Tests for the certificate authenticator.

Covers:
  1. Single-flight login under concurrent callers
  2. Cache adoption and the 5-minute validity buffer
  3. Certificate validation
  4. Browser launch retry on resource exhaustion
  5. Login navigation failures and invalidation
"""

import asyncio

import pytest
from playwright.async_api import TimeoutError as PlaywrightTimeout

from sapnotes.auth.base_auth import Credential
from sapnotes.auth.sap_auth import CertificateAuthenticator, _on_login_page, validate_certificate
from sapnotes.auth.session_store import CredentialCache
from sapnotes.errors import (
    AuthenticationError,
    AuthTimeoutError,
    BrowserUnavailableError,
    CertificateError,
)

from conftest import FakeLauncher, FakePage

EXHAUSTED = "pthread_create: Resource temporarily unavailable (11)"


def make_auth(config, clock, sleeper, launcher=None):
    launcher = launcher or FakeLauncher()
    auth = CertificateAuthenticator(config, launcher=launcher, clock=clock, sleep=sleeper)
    return auth, launcher


def seed_cache(config, clock, remaining_s):
    CredentialCache(config.cache_path).save(Credential(
        raw_value="SAPSSO=cached",
        issued_at=clock(),
        expires_at=clock() + remaining_s,
        cookies=[{"name": "SAPSSO", "value": "cached", "domain": ".sap.com", "path": "/"}],
    ))


# ====================================================================
# 1. Single flight
# ====================================================================

class TestSingleFlight:

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_login(self, config, clock, sleeper):
        auth, launcher = make_auth(config, clock, sleeper)
        results = await asyncio.gather(*(auth.ensure_valid_credential() for _ in range(5)))
        assert launcher.launch_count == 1
        assert auth.login_count == 1
        assert all(r is results[0] for r in results)
        assert results[0].raw_value == "SAPSSO=abc; JSESSIONID=xyz"

    @pytest.mark.asyncio
    async def test_failure_reaches_every_waiter(self, config, clock, sleeper):
        launcher = FakeLauncher(always_fail=RuntimeError("browser crashed"))
        auth, _ = make_auth(config, clock, sleeper, launcher)
        results = await asyncio.gather(
            *(auth.ensure_valid_credential() for _ in range(3)), return_exceptions=True
        )
        assert launcher.attempts == 1
        assert all(isinstance(r, BrowserUnavailableError) for r in results)
        assert auth.credential is None

    @pytest.mark.asyncio
    async def test_valid_credential_needs_no_browser(self, config, clock, sleeper):
        auth, launcher = make_auth(config, clock, sleeper)
        first = await auth.ensure_valid_credential()
        clock.advance(3600)
        assert await auth.ensure_valid_credential() is first
        assert launcher.launch_count == 1

    @pytest.mark.asyncio
    async def test_relogin_near_expiry(self, config, clock, sleeper):
        auth, launcher = make_auth(config, clock, sleeper)
        await auth.ensure_valid_credential()
        clock.advance(12 * 3600 - 200)
        await auth.ensure_valid_credential()
        assert launcher.launch_count == 2


# ====================================================================
# 2. Cache
# ====================================================================

class TestCacheAdoption:

    @pytest.mark.asyncio
    async def test_cached_credential_used(self, config, clock, sleeper):
        seed_cache(config, clock, 3600)
        auth, launcher = make_auth(config, clock, sleeper)
        credential = await auth.ensure_valid_credential()
        assert credential.raw_value == "SAPSSO=cached"
        assert launcher.attempts == 0

    @pytest.mark.asyncio
    async def test_buffer_boundary_logs_in(self, config, clock, sleeper):
        seed_cache(config, clock, 300)
        auth, launcher = make_auth(config, clock, sleeper)
        credential = await auth.ensure_valid_credential()
        assert launcher.launch_count == 1
        assert credential.raw_value != "SAPSSO=cached"

    @pytest.mark.asyncio
    async def test_just_outside_buffer_reuses(self, config, clock, sleeper):
        seed_cache(config, clock, 301)
        auth, launcher = make_auth(config, clock, sleeper)
        await auth.ensure_valid_credential()
        assert launcher.attempts == 0

    @pytest.mark.asyncio
    async def test_login_persists_credential(self, config, clock, sleeper):
        auth, _ = make_auth(config, clock, sleeper)
        credential = await auth.ensure_valid_credential()
        cached = CredentialCache(config.cache_path).load()
        assert cached.raw_value == credential.raw_value
        assert cached.expires_at == pytest.approx(clock() + 12 * 3600)

    @pytest.mark.asyncio
    async def test_invalidate_bypasses_cache(self, config, clock, sleeper):
        seed_cache(config, clock, 3600)
        auth, launcher = make_auth(config, clock, sleeper)
        await auth.ensure_valid_credential()
        auth.invalidate()
        assert not auth.has_valid_credential()
        credential = await auth.ensure_valid_credential()
        assert launcher.launch_count == 1
        assert credential.raw_value == "SAPSSO=abc; JSESSIONID=xyz"


# ====================================================================
# 3. Certificate
# ====================================================================

class TestCertificate:

    def test_missing_file(self, tmp_path):
        with pytest.raises(CertificateError) as info:
            validate_certificate(str(tmp_path / "absent.pfx"))
        assert "not found" in str(info.value)

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.pfx"
        path.write_bytes(b"")
        with pytest.raises(CertificateError):
            validate_certificate(str(path))

    @pytest.mark.asyncio
    async def test_no_browser_without_certificate(self, config, clock, sleeper, tmp_path):
        config.pfx_path = str(tmp_path / "absent.pfx")
        auth, launcher = make_auth(config, clock, sleeper)
        with pytest.raises(CertificateError):
            await auth.ensure_valid_credential()
        assert launcher.attempts == 0

    @pytest.mark.asyncio
    async def test_certificate_bound_to_idp_origin(self, config, clock, sleeper):
        auth, launcher = make_auth(config, clock, sleeper)
        await auth.ensure_valid_credential()
        [context] = launcher.browsers[0].contexts
        assert context.options["client_certificates"] == [{
            "origin": "https://accounts.sap.com",
            "pfxPath": config.pfx_path,
            "passphrase": "secret",
        }]


# ====================================================================
# 4. Launch retry
# ====================================================================

class TestLaunchRetry:

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self, config, clock, sleeper):
        launcher = FakeLauncher(failures=[RuntimeError(EXHAUSTED), RuntimeError(EXHAUSTED)])
        auth, _ = make_auth(config, clock, sleeper, launcher)
        await auth.ensure_valid_credential()
        assert launcher.attempts == 3
        assert sleeper.calls[:2] == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_gives_up_after_three_retries(self, config, clock, sleeper):
        launcher = FakeLauncher(always_fail=RuntimeError(EXHAUSTED))
        auth, _ = make_auth(config, clock, sleeper, launcher)
        with pytest.raises(BrowserUnavailableError):
            await auth.ensure_valid_credential()
        assert launcher.attempts == 4
        assert sleeper.calls == [2.0, 4.0, 8.0]

    @pytest.mark.asyncio
    async def test_other_errors_are_not_retried(self, config, clock, sleeper):
        launcher = FakeLauncher(always_fail=RuntimeError("Executable doesn't exist at /ms-playwright"))
        auth, _ = make_auth(config, clock, sleeper, launcher)
        with pytest.raises(BrowserUnavailableError) as info:
            await auth.ensure_valid_credential()
        assert launcher.attempts == 1
        assert sleeper.calls == []
        assert isinstance(info.value.cause, RuntimeError)


# ====================================================================
# 5. Navigation
# ====================================================================

class TestLoginNavigation:

    def test_login_page_detection(self):
        assert _on_login_page("https://accounts.sap.com/saml2/idp/sso?SAMLRequest=x")
        assert _on_login_page("https://me.sap.com/home", "Log On - Login")
        assert not _on_login_page("https://me.sap.com/home", "SAP for Me")

    @pytest.mark.asyncio
    async def test_stuck_on_login_page_times_out(self, config, clock, sleeper):
        def stay_on_idp(page, url):
            page.url = "https://accounts.sap.com/saml2/idp/sso?SAMLRequest=abc"

        launcher = FakeLauncher(lambda: FakePage(
            on_goto=stay_on_idp, wait_for_url_error=PlaywrightTimeout("Timeout 30000ms exceeded"),
        ))
        auth, _ = make_auth(config, clock, sleeper, launcher)
        with pytest.raises(AuthTimeoutError):
            await auth.ensure_valid_credential()
        assert launcher.browsers[0].closed

    @pytest.mark.asyncio
    async def test_redirect_completes(self, config, clock, sleeper):
        def on_idp(page, url):
            page.url = "https://accounts.sap.com/saml2/idp/sso"

        launcher = FakeLauncher(lambda: FakePage(on_goto=on_idp))
        auth, _ = make_auth(config, clock, sleeper, launcher)
        credential = await auth.ensure_valid_credential()
        assert credential.is_valid(clock())

    @pytest.mark.asyncio
    async def test_navigation_error_wrapped(self, config, clock, sleeper):
        launcher = FakeLauncher(lambda: FakePage(
            on_goto=lambda page, url: RuntimeError("net::ERR_CONNECTION_RESET"),
        ))
        auth, _ = make_auth(config, clock, sleeper, launcher)
        with pytest.raises(AuthenticationError) as info:
            await auth.ensure_valid_credential()
        assert type(info.value) is AuthenticationError
        assert isinstance(info.value.cause, RuntimeError)

    @pytest.mark.asyncio
    async def test_browser_closed_after_login(self, config, clock, sleeper):
        auth, launcher = make_auth(config, clock, sleeper)
        await auth.ensure_valid_credential()
        assert launcher.browsers[0].closed
        assert 3.0 in sleeper.calls

    @pytest.mark.asyncio
    async def test_destroy_clears_state(self, config, clock, sleeper):
        auth, _ = make_auth(config, clock, sleeper)
        await auth.ensure_valid_credential()
        await auth.destroy()
        await auth.destroy()
        assert auth.credential is None
