from zestswap.config import Settings


def test_defaults():
    settings = Settings(_env_file=None)

    assert settings.lifi_api_url == "https://li.quest/v1"
    assert settings.bridge_poll_interval_seconds == 10
    assert settings.bridge_max_wait_seconds == 1800
    assert settings.quote_cache_ttl_seconds == 30
    assert settings.is_chain_supported(5000)
    assert not settings.is_chain_supported(999)
    assert settings.get_rpc_url(5000) == "https://rpc.mantle.xyz"
    assert settings.get_rpc_url(999) == ""


def test_env_overrides(monkeypatch):
    """Environment variables win over defaults; lists and maps are JSON."""

    monkeypatch.setenv("LIFI_API_URL", "https://staging.li.quest/v1")
    monkeypatch.setenv("SUPPORTED_CHAINS", "[1, 10]")
    monkeypatch.setenv("BRIDGE_MAX_WAIT_SECONDS", "600")

    settings = Settings(_env_file=None)

    assert settings.lifi_api_url == "https://staging.li.quest/v1"
    assert settings.supported_chains == [1, 10]
    assert settings.bridge_max_wait_seconds == 600
    assert not settings.is_chain_supported(5000)


def test_lifi_headers(monkeypatch):
    monkeypatch.delenv("LIFI_API_KEY", raising=False)
    settings = Settings(_env_file=None)

    assert "x-lifi-api-key" not in settings.lifi_headers()
    assert not settings.has_lifi_key

    monkeypatch.setenv("LIFI_API_KEY", "key-123")
    settings = Settings(_env_file=None)

    assert settings.lifi_headers()["x-lifi-api-key"] == "key-123"
    assert settings.lifi_headers()["x-lifi-integrator"] == "zest"
