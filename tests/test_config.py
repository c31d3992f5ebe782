"""Settings parsing and validation."""

import pytest
from pydantic import ValidationError

from sessionward.config import (
    Settings,
    SigningAlgorithm,
    get_settings,
    reset_settings_cache,
)

SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


class TestSecret:
    def test_secret_required_outside_test_mode(self):
        with pytest.raises(ValidationError):
            Settings(test_mode=False)

    def test_short_secret_rejected_outside_test_mode(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="short", test_mode=False)

    def test_test_mode_generates_ephemeral_secret(self):
        first = Settings(test_mode=True)
        second = Settings(test_mode=True)

        assert len(first.jwt_secret) >= 32
        assert first.jwt_secret != second.jwt_secret

    def test_signing_keys_include_previous(self):
        settings = Settings(
            jwt_secret=SECRET,
            jwt_key_id="k2",
            jwt_previous_secrets="k1:old-secret-one, k0:old-secret-zero",
        )

        assert settings.signing_keys() == {
            "k0": "old-secret-zero",
            "k1": "old-secret-one",
            "k2": SECRET,
        }

    def test_malformed_previous_secrets(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret=SECRET, jwt_previous_secrets="no-colon-here")


class TestAlgorithm:
    def test_default_is_hs256(self):
        assert Settings(jwt_secret=SECRET).jwt_algorithm is SigningAlgorithm.HS256

    def test_case_insensitive(self):
        assert Settings(jwt_secret=SECRET, jwt_algorithm="hs512").jwt_algorithm is SigningAlgorithm.HS512

    @pytest.mark.parametrize("alg", ["none", "RS256", "ES256", ""])
    def test_unsupported_algorithms(self, alg):
        with pytest.raises(ValidationError):
            Settings(jwt_secret=SECRET, jwt_algorithm=alg)


class TestBounds:
    @pytest.mark.parametrize("skew", [-1, 301])
    def test_clock_skew_bounds(self, skew):
        with pytest.raises(ValidationError):
            Settings(jwt_secret=SECRET, clock_skew_seconds=skew)

    @pytest.mark.parametrize(
        "field",
        ["access_token_ttl_minutes", "refresh_token_ttl_days", "csrf_tokens_per_session"],
    )
    def test_lifetimes_must_be_positive(self, field):
        with pytest.raises(ValidationError):
            Settings(jwt_secret=SECRET, **{field: 0})

    def test_ttl_helpers(self):
        settings = Settings(jwt_secret=SECRET, access_token_ttl_minutes=5, refresh_token_ttl_days=2)
        assert settings.access_token_ttl_seconds == 300
        assert settings.refresh_token_ttl_seconds == 2 * 24 * 3600


class TestCollections:
    def test_allowed_claims_from_string(self):
        settings = Settings(jwt_secret=SECRET, allowed_claims="role, tenant_id,,")
        assert settings.allowed_claims == ["role", "tenant_id"]

    def test_oauth_providers_merge_well_known_endpoints(self):
        settings = Settings(
            jwt_secret=SECRET,
            oauth_providers='{"google": {"client_id": "cid", "client_secret": "cs"}}',
        )

        google = settings.oauth_providers["google"]
        assert google.client_id == "cid"
        assert google.token_url == "https://oauth2.googleapis.com/token"
        assert google.authorize_url.startswith("https://accounts.google.com/")

    def test_custom_provider_needs_endpoints(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret=SECRET, oauth_providers={"acme": {"client_id": "cid"}})

    def test_oauth_providers_must_be_object(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret=SECRET, oauth_providers="[1, 2]")


class TestFromEnv:
    def test_reads_environment(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("JWT_SECRET", SECRET)
        monkeypatch.setenv("TEST_MODE", "false")
        monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "7")
        monkeypatch.setenv("JWT_ALGORITHM", "HS384")
        monkeypatch.setenv("SESSION_BIND_IP", "true")

        settings = Settings.from_env()

        assert settings.access_token_ttl_minutes == 7
        assert settings.jwt_algorithm is SigningAlgorithm.HS384
        assert settings.session_bind_ip is True

    def test_dotenv_fills_gaps(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("CLOCK_SKEW_SECONDS", raising=False)
        (tmp_path / ".env").write_text("CLOCK_SKEW_SECONDS=5\n")

        assert Settings.from_env().clock_skew_seconds == 5

    def test_environment_beats_dotenv(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("CLOCK_SKEW_SECONDS", "10")
        (tmp_path / ".env").write_text("CLOCK_SKEW_SECONDS=5\n")

        assert Settings.from_env().clock_skew_seconds == 10

    def test_settings_are_cached(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        reset_settings_cache()
        try:
            assert get_settings() is get_settings()
        finally:
            reset_settings_cache()
