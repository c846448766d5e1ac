from pathlib import Path
from typing import Dict, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


BASE_DIR = Path(__file__).resolve().parents[1]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    log_level: str = Field(default="INFO", description="Logging level")

    # LI.FI aggregator
    lifi_api_url: str = Field(default="https://li.quest/v1", description="LI.FI API base URL")
    lifi_integrator: str = Field(default="zest", description="Integrator tag sent with every LI.FI request")
    lifi_api_key: str = Field(default="", description="Optional LI.FI API key")
    lifi_slippage_tolerance: float = Field(default=0.005, ge=0, le=1, description="Baseline slippage tolerance")
    request_timeout_seconds: int = Field(default=30, description="Upstream request timeout")

    # Retry policy for upstream calls
    max_retries: int = Field(default=4, ge=0, description="Retries for rate-limited or transient upstream failures")
    retry_delay_seconds: float = Field(default=2.0, ge=0, description="Fixed delay between transient retries")

    # Token bucket
    rate_limit_max_tokens: int = Field(default=50, ge=1, description="Token bucket capacity")
    rate_limit_refill_rate: float = Field(default=5.0, gt=0, description="Tokens refilled per second")
    rate_limit_min_interval_seconds: float = Field(default=0.2, ge=0, description="Minimum spacing between requests")
    rate_limit_default_retry_after: int = Field(
        default=3600,
        description="Wait used after a 429 when the upstream sends no Retry-After header",
    )

    # Cache Settings
    quote_cache_ttl_seconds: int = Field(default=30, description="Quote cache TTL")
    route_cache_ttl_seconds: int = Field(default=60, description="Route comparison cache TTL")
    gas_cache_ttl_seconds: int = Field(default=30, description="Gas optimization cache TTL")
    bridge_status_cache_ttl_seconds: int = Field(default=30, description="Bridge status cache TTL")
    tools_cache_ttl_seconds: int = Field(default=3600, description="Tool and token registry cache TTL")
    max_cache_size: int = Field(default=1000, description="Maximum entries per cache")
    cache_sweep_interval_seconds: int = Field(default=60, description="Expired cache entry sweep interval")

    # Bridge monitoring
    bridge_poll_interval_seconds: float = Field(default=10.0, description="Bridge status poll interval")
    bridge_max_wait_seconds: float = Field(default=1800.0, description="Maximum time to wait for a bridge")
    bridge_sweep_interval_seconds: int = Field(default=30, description="Background bridge refresh interval")

    # Execution
    execution_max_retries: int = Field(default=3, ge=0, description="Execution attempts after the first")
    execution_retry_delay_seconds: float = Field(default=5.0, ge=0, description="Delay between execution attempts")
    execution_timeout_seconds: int = Field(default=1800, description="Execution monitoring cap")
    max_slippage_increase: float = Field(default=0.02, description="Slippage increase accepted without user action")
    receipt_timeout_seconds: int = Field(default=300, description="Wait for a source transaction receipt")

    # Fallback routing
    fallback_max_routes: int = Field(default=3, ge=0, description="Alternative routes tried after a failure")
    retry_backoff_multiplier: float = Field(default=2.0, ge=1, description="Backoff multiplier for manual retries")
    retry_max_delay_seconds: float = Field(default=30.0, ge=0, description="Cap on the manual retry delay")

    # History
    history_max_age_seconds: int = Field(default=86400, description="Execution history retention")
    history_cleanup_interval_seconds: int = Field(default=86400, description="History cleanup interval")
    history_max_size: int = Field(default=1000, description="Maximum history entries kept in memory")

    # Chains
    supported_chains: List[int] = Field(
        default_factory=lambda: [1, 137, 56, 42161, 10, 43114, 250, 5000, 5003],
        description="Chain IDs accepted for quotes and execution",
    )
    rpc_urls: Dict[int, str] = Field(
        default_factory=lambda: {
            1: "https://eth.llamarpc.com",
            10: "https://mainnet.optimism.io",
            56: "https://bsc-dataseed.binance.org",
            137: "https://polygon-rpc.com",
            250: "https://rpc.ftm.tools",
            5000: "https://rpc.mantle.xyz",
            5003: "https://rpc.sepolia.mantle.xyz",
            42161: "https://arb1.arbitrum.io/rpc",
            43114: "https://api.avax.network/ext/bc/C/rpc",
        },
        description="JSON-RPC endpoints used for fee data and balance checks",
    )

    @property
    def has_lifi_key(self) -> bool:
        return bool(self.lifi_api_key)

    def is_chain_supported(self, chain_id: int) -> bool:
        return chain_id in self.supported_chains

    def get_rpc_url(self, chain_id: int) -> str:
        return self.rpc_urls.get(chain_id, "")

    def lifi_headers(self) -> Dict[str, str]:
        headers = {
            "accept": "application/json",
            "x-lifi-integrator": self.lifi_integrator,
        }
        if self.lifi_api_key:
            headers["x-lifi-api-key"] = self.lifi_api_key
        return headers


# Global settings instance
settings = Settings()
