"""Central environment-driven settings for the gateway process.

The process loads this once at startup. Rail credentials are optional; a rail
whose credentials are missing reports itself as unconfigured instead of
failing startup (see `.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class GatewaySettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "payment-gateway"
    log_level: str = "INFO"
    app_name: str = "Request Network"
    postgres_dsn: str
    redis_url: str = "redis://redis:6379/0"
    lock_backend: str = "local"
    lock_timeout_seconds: int = 30
    api_host: str = "http://localhost:8080"
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"

    validator_api_url: str = "http://localhost:3000"
    validator_api_key: str = ""
    validator_api_secret: str = ""
    validator_key_header: str = "x-taoshi-validator-request-key"
    notify_timeout_seconds: float = 10.0

    stripe_secret_key: str | None = None
    stripe_public_key: str | None = None
    stripe_webhook_secret: str | None = None
    paypal_client_id: str | None = None
    paypal_client_secret: str | None = None
    paypal_webhook_id: str | None = None
    paypal_base_url: str = "https://api-m.sandbox.paypal.com"
    rail_timeout_seconds: float = 15.0

    payment_enrollment_secret: str | None = None
    escrow_encryption_key: str | None = None
    enrollment_token_ttl_minutes: int = 10

    chain_network: str = "sepolia"
    chain_rpc_url: str | None = None
    infura_project_id: str | None = None
    chain_poll_interval_seconds: float = 12.0
    chain_reconnect_delay_seconds: float = 5.0
    chain_lookback_blocks: int = 50
    chain_max_block_range: int = 500
    chain_rpc_retries: int = 3
    chain_rpc_retry_delay_seconds: float = 2.0

    grace_period_days: int = 40
    count_unconfirmed_deposits: bool = True
    confirmation_max_checks: int = 720
    balance_sweep_cron: str = "0 0 1 * *"
    wallet_registry_refresh_seconds: int = 3600
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def rpc_url(self) -> str | None:
        """Explicit RPC url, else the Infura endpoint for `chain_network`."""

        if self.chain_rpc_url:
            return self.chain_rpc_url
        if self.infura_project_id:
            return f"https://{self.chain_network}.infura.io/v3/{self.infura_project_id}"
        return None


settings = GatewaySettings()

