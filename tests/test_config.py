from chatgate.config import Settings, get_settings, reset_settings_cache


def test_from_env_reads_declared_env_names(monkeypatch):
    monkeypatch.setenv("PUBLIC_DOMAIN", "  Chat.Example.COM ")
    monkeypatch.setenv("IDP_ENDPOINT", "https://door.example.com/")
    monkeypatch.setenv("DEFAULT_OWNER", "tenant-a")
    monkeypatch.setenv("BOOTSTRAP_LOCK_WAIT_SECONDS", "0.5")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")

    settings = Settings.from_env()

    assert settings.public_domain == "chat.example.com"
    assert settings.public_mode_enabled is True
    assert settings.idp_endpoint == "https://door.example.com"
    assert settings.default_owner == "tenant-a"
    assert settings.bootstrap_lock_wait_seconds == 0.5
    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]


def test_defaults_match_built_in_tenant():
    settings = Settings()
    assert settings.public_domain == ""
    assert settings.public_mode_enabled is False
    assert settings.default_owner == "admin"
    assert settings.idp_organization == "built-in"
    assert settings.default_store_name == "store-built-in"
    assert settings.anonymous_avatar_url.endswith("casibase-user.png")


def test_settings_cache_resets(monkeypatch):
    reset_settings_cache()
    first = get_settings()
    assert get_settings() is first

    monkeypatch.setenv("DEFAULT_OWNER", "tenant-b")
    reset_settings_cache()
    assert get_settings().default_owner == "tenant-b"
    reset_settings_cache()
