from couchlogin.config import (
    DatabaseType,
    ProviderSettings,
    Settings,
    TokenStoreBackend,
    get_settings,
    reset_settings_cache,
)


def test_defaults():
    settings = Settings()
    assert settings.security.session_life == 86400
    assert settings.security.session_max_life == 0
    assert settings.security.default_roles == ["user"]
    assert settings.couch.user_db == "sl-users"
    assert settings.couch.couch_auth_db == "_users"
    assert settings.session_store.adapter is TokenStoreBackend.MEMORY
    assert settings.local.password_min_length == 6
    assert not settings.userdbs.has_default_dbs


def test_json_sections_and_double_underscore_overrides(monkeypatch):
    monkeypatch.setenv("USERDBS", '{"default_dbs": {"private": ["notes"]}, "model": {"notes": {"type": "private"}}}')
    monkeypatch.setenv("SECURITY__SESSION_LIFE", "3600")
    monkeypatch.setenv("SECURITY__MAX_FAILED_LOGINS", "5")
    monkeypatch.setenv("SESSION_STORE__ADAPTER", "redis")
    monkeypatch.setenv("PROVIDERS", '{"github": {"default_roles": ["coder"]}}')
    monkeypatch.setenv("COUCH__CLOUDANT", "true")
    settings = Settings.from_env()
    assert settings.userdbs.default_dbs.private == ["notes"]
    assert settings.userdbs.model["notes"].type is DatabaseType.PRIVATE
    assert settings.userdbs.has_default_dbs
    assert settings.security.session_life == 3600
    assert settings.security.max_failed_logins == 5
    assert settings.security.hash_time_cost == 1
    assert settings.session_store.adapter is TokenStoreBackend.REDIS
    assert settings.couch.cloudant is True
    assert settings.provider("github").default_roles == ["coder"]


def test_unknown_provider_gets_default_policy():
    settings = Settings(providers={"github": ProviderSettings(email_username=True)})
    assert settings.provider("github").email_username
    assert settings.provider("twitter") == ProviderSettings()


def test_settings_cache(monkeypatch):
    monkeypatch.setenv("SWEEP_INTERVAL_SECONDS", "15")
    reset_settings_cache()
    first = get_settings()
    assert first.sweep_interval_seconds == 15
    assert get_settings() is first
    monkeypatch.setenv("SWEEP_INTERVAL_SECONDS", "30")
    assert get_settings().sweep_interval_seconds == 15
    reset_settings_cache()
    assert get_settings().sweep_interval_seconds == 30
