from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

import relay.constants as constants


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="USEROP_", env_file=".env", extra="ignore", frozen=True
    )

    chain_id: int = 80001
    entry_point_address: str = constants.DEFAULT_ENTRY_POINT_ADDRESS
    validation_module_address: str = constants.DEFAULT_ECDSA_OWNERSHIP_MODULE
    account_index: int = 0
    rpc_endpoint_uri: str = ""
    bundler_url: str = ""
    paymaster_url: Optional[str] = None
    fee_token_address: Optional[str] = None
    allow_unsponsored_fallback: bool = True

    account_factory_address: Optional[str] = None
    account_implementation_address: Optional[str] = None
    fallback_handler_address: Optional[str] = None
    proxy_creation_code: str = constants.PROXY_CREATION_CODE

    rpc_timeout: float = 30.0
    rpc_max_attempts: int = 3
    rpc_backoff_base: float = 0.5
    rpc_backoff_max: float = 8.0
    receipt_poll_interval: float = 1.0
    receipt_poll_max_interval: float = 15.0
    inclusion_timeout: float = 180.0
    confirmations: int = 1

    db_url: str = "sqlite+aiosqlite:///userops.db"

    def get_factory_deployment(self, entry_point: str) -> Optional[dict]:
        deployment = dict(
            constants.ACCOUNT_FACTORIES.get(entry_point.lower(), {})
        )
        overrides = {
            "factory": self.account_factory_address,
            "implementation": self.account_implementation_address,
            "fallback_handler": self.fallback_handler_address,
        }
        deployment.update({k: v for k, v in overrides.items() if v})
        if set(deployment) != set(overrides):
            return None
        return deployment


settings = Settings()
