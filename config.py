"""Runtime settings read from the environment (and an optional .env file)."""

from dataclasses import dataclass
from decimal import Decimal
import os

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ('1', 'true', 'yes', 'on')


@dataclass
class Settings:
    database_url: str = 'sqlite:///./tickets.db'
    # Must match the countdown shown to buyers on the checkout page
    hold_duration_minutes: int = 10
    cash_hold_duration_minutes: int = 5
    sweep_enabled: bool = True
    sweep_interval_seconds: int = 10
    sweep_batch_size: int = 100
    marketplace_fee_percentage: Decimal = Decimal('5')
    default_currency: str = 'COP'
    app_url: str = 'http://localhost:5000'
    payment_gateway: str = 'sandbox'
    payment_gateway_url: str = ''
    payment_gateway_token: str = ''
    payment_gateway_timeout: float = 10.0
    webhook_secret: str = ''
    seed_demo_event: bool = False
    port: int = 5000

    @classmethod
    def from_env(cls) -> 'Settings':
        """Build settings from environment variables, falling back to defaults."""
        return cls(
            database_url=os.getenv('DATABASE_URL', cls.database_url),
            hold_duration_minutes=int(os.getenv('HOLD_DURATION_MINUTES', cls.hold_duration_minutes)),
            cash_hold_duration_minutes=int(
                os.getenv('CASH_HOLD_DURATION_MINUTES', cls.cash_hold_duration_minutes)
            ),
            sweep_enabled=_env_bool('SWEEP_ENABLED', cls.sweep_enabled),
            sweep_interval_seconds=int(os.getenv('SWEEP_INTERVAL_SECONDS', cls.sweep_interval_seconds)),
            sweep_batch_size=int(os.getenv('SWEEP_BATCH_SIZE', cls.sweep_batch_size)),
            marketplace_fee_percentage=Decimal(
                os.getenv('MARKETPLACE_FEE_PERCENTAGE', str(cls.marketplace_fee_percentage))
            ),
            default_currency=os.getenv('DEFAULT_CURRENCY', cls.default_currency),
            app_url=os.getenv('APP_URL', cls.app_url).rstrip('/'),
            payment_gateway=os.getenv('PAYMENT_GATEWAY', cls.payment_gateway),
            payment_gateway_url=os.getenv('PAYMENT_GATEWAY_URL', cls.payment_gateway_url),
            payment_gateway_token=os.getenv('PAYMENT_GATEWAY_TOKEN', cls.payment_gateway_token),
            payment_gateway_timeout=float(os.getenv('PAYMENT_GATEWAY_TIMEOUT', cls.payment_gateway_timeout)),
            webhook_secret=os.getenv('WEBHOOK_SECRET', cls.webhook_secret),
            seed_demo_event=_env_bool('SEED_DEMO_EVENT', cls.seed_demo_event),
            port=int(os.getenv('PORT', cls.port)),
        )
