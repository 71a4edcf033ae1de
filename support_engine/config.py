"""
Engine Settings
===============
The explicit configuration object passed into every engine and router call.

Nothing in the engine reads ambient settings: the approval flag, warehouse
address and backend credentials all travel inside EngineSettings, so two
sellers with different setups can be processed side by side in one process.

settings_from_env() builds one from SUPPORT_* environment variables, the same
way providers.py reads its API keys. Tests construct EngineSettings directly.
"""
import os
from datetime import timedelta

from pydantic import BaseModel, Field

from .errors import ConfigurationError
from .models import FulfillmentMethod

ENV_PREFIX = "SUPPORT_"


class EngineSettings(BaseModel):
    approval_required: bool = False
    fulfillment_method: FulfillmentMethod = FulfillmentMethod.WAREHOUSE_EMAIL

    warehouse_email: str | None = None
    warehouse_test_email: str | None = None
    test_mode: bool = False

    shipbob_access_token: str | None = None
    shipbob_channel_id: str | None = None
    shipbob_sandbox: bool = False

    shipstation_api_key: str | None = None
    shipstation_api_secret: str | None = None

    woocommerce_url: str | None = None
    woocommerce_consumer_key: str | None = None
    woocommerce_consumer_secret: str | None = None

    store_timezone: str = "UTC"
    warehouse_reply_timeout: timedelta = timedelta(hours=8)
    duplicate_window: timedelta = timedelta(hours=1)
    velocity_limit: int = 5
    velocity_window: timedelta = timedelta(hours=24)
    max_order_age: timedelta = timedelta(days=30)

    auto_proceed_threshold: int = Field(default=80, ge=0, le=100)
    review_threshold: int = Field(default=70, ge=0, le=100)

    def warehouse_recipient(self) -> str | None:
        """Test mode redirects warehouse requests to the test inbox when one is set."""
        if self.test_mode and self.warehouse_test_email:
            return self.warehouse_test_email
        return self.warehouse_email

    def require_backend_config(self) -> None:
        """Raise ConfigurationError if the selected backend is missing credentials."""
        method = self.fulfillment_method
        if method is FulfillmentMethod.WAREHOUSE_EMAIL and not self.warehouse_recipient():
            raise ConfigurationError("Warehouse email not configured")
        if method is FulfillmentMethod.SHIPBOB and not (self.shipbob_access_token and self.shipbob_channel_id):
            raise ConfigurationError("ShipBob is not connected (access token and channel id required)")
        if method is FulfillmentMethod.SHIPSTATION and not (self.shipstation_api_key and self.shipstation_api_secret):
            raise ConfigurationError("ShipStation is not connected (API key and secret required)")


def _env(name: str, default: str | None = None) -> str | None:
    return os.getenv(ENV_PREFIX + name, default)


def _env_bool(name: str, default: bool = False) -> bool:
    raw = _env(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def settings_from_env() -> EngineSettings:
    """
    Build EngineSettings from the environment.

    Recognised variables (all optional):
      SUPPORT_APPROVAL_REQUIRED, SUPPORT_FULFILLMENT_METHOD,
      SUPPORT_WAREHOUSE_EMAIL, SUPPORT_WAREHOUSE_TEST_EMAIL, SUPPORT_TEST_MODE,
      SUPPORT_SHIPBOB_TOKEN, SUPPORT_SHIPBOB_CHANNEL_ID, SUPPORT_SHIPBOB_SANDBOX,
      SUPPORT_SHIPSTATION_KEY, SUPPORT_SHIPSTATION_SECRET,
      SUPPORT_WOOCOMMERCE_URL, SUPPORT_WOOCOMMERCE_KEY, SUPPORT_WOOCOMMERCE_SECRET,
      SUPPORT_STORE_TIMEZONE, SUPPORT_WAREHOUSE_TIMEOUT_HOURS
    """
    method = (_env("FULFILLMENT_METHOD") or FulfillmentMethod.WAREHOUSE_EMAIL.value).strip().lower()
    try:
        fulfillment_method = FulfillmentMethod(method)
    except ValueError as exc:
        raise ConfigurationError(f"Unknown fulfillment method: {method!r}") from exc

    return EngineSettings(
        approval_required=_env_bool("APPROVAL_REQUIRED"),
        fulfillment_method=fulfillment_method,
        warehouse_email=_env("WAREHOUSE_EMAIL"),
        warehouse_test_email=_env("WAREHOUSE_TEST_EMAIL"),
        test_mode=_env_bool("TEST_MODE"),
        shipbob_access_token=_env("SHIPBOB_TOKEN"),
        shipbob_channel_id=_env("SHIPBOB_CHANNEL_ID"),
        shipbob_sandbox=_env_bool("SHIPBOB_SANDBOX"),
        shipstation_api_key=_env("SHIPSTATION_KEY"),
        shipstation_api_secret=_env("SHIPSTATION_SECRET"),
        woocommerce_url=_env("WOOCOMMERCE_URL"),
        woocommerce_consumer_key=_env("WOOCOMMERCE_KEY"),
        woocommerce_consumer_secret=_env("WOOCOMMERCE_SECRET"),
        store_timezone=_env("STORE_TIMEZONE", "UTC"),
        warehouse_reply_timeout=timedelta(hours=float(_env("WAREHOUSE_TIMEOUT_HOURS", "8"))),
    )
