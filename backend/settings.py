from dataclasses import dataclass
from pathlib import Path
from typing import Optional
import os

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent

# Settings the server refuses to start without, by environment variable
REQUIRED_SETTINGS = {
    "jwt_secret_key": "JWT_SECRET_KEY",
}


@dataclass
class Settings:
    """Process-wide configuration, read once by the entry point."""
    mongo_url: str = "mongodb://localhost:27017/?replicaSet=rs0"
    db_name: str = "topup_fulfillment"

    # Fulfillment provider (Digiflazz)
    digi_username: str = ""
    digi_api_key: str = ""
    digi_base_url: str = "https://api.digiflazz.com/v1"
    digi_callback_url: Optional[str] = None
    provider_timeout_seconds: float = 45.0

    # Payment gateway (Duitku)
    duitku_merchant_code: str = ""
    duitku_api_key: str = ""
    duitku_base_url: str = "https://passport.duitku.com/webapi/api/merchant"
    duitku_callback_url: Optional[str] = None
    duitku_return_url: Optional[str] = None
    duitku_expiry_period: int = 60 * 24
    gateway_timeout_seconds: float = 30.0

    jwt_secret_key: str = ""
    frontend_url: str = "http://localhost:3000"
    order_id_prefix: str = "VAZZ"

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None) -> "Settings":
        load_dotenv(env_file or ROOT_DIR / '.env')
        defaults = cls()
        return cls(
            mongo_url=os.environ.get('MONGO_URL', defaults.mongo_url),
            db_name=os.environ.get('DB_NAME', defaults.db_name),
            digi_username=os.environ.get('DIGI_USERNAME', ''),
            digi_api_key=os.environ.get('DIGI_API_KEY', ''),
            digi_base_url=os.environ.get('DIGI_BASE_URL', defaults.digi_base_url),
            digi_callback_url=os.environ.get('DIGI_CALLBACK_URL'),
            provider_timeout_seconds=float(
                os.environ.get('PROVIDER_TIMEOUT_SECONDS', defaults.provider_timeout_seconds)
            ),
            duitku_merchant_code=os.environ.get('DUITKU_MERCHANT_CODE', ''),
            duitku_api_key=os.environ.get('DUITKU_API_KEY', ''),
            duitku_base_url=os.environ.get('DUITKU_BASE_URL', defaults.duitku_base_url),
            duitku_callback_url=os.environ.get('DUITKU_CALLBACK_URL'),
            duitku_return_url=os.environ.get('DUITKU_RETURN_URL'),
            duitku_expiry_period=int(
                os.environ.get('DUITKU_EXPIRY_PERIOD', defaults.duitku_expiry_period)
            ),
            gateway_timeout_seconds=float(
                os.environ.get('GATEWAY_TIMEOUT_SECONDS', defaults.gateway_timeout_seconds)
            ),
            jwt_secret_key=os.environ.get('JWT_SECRET_KEY', ''),
            frontend_url=os.environ.get('FRONTEND_URL', defaults.frontend_url),
            order_id_prefix=os.environ.get('ORDER_ID_PREFIX', defaults.order_id_prefix),
        )

    def validate(self) -> None:
        """Raise when a setting without a usable default is unset."""
        missing = [env for name, env in REQUIRED_SETTINGS.items() if not getattr(self, name)]
        if missing:
            raise RuntimeError(f"Missing required environment variables: {', '.join(missing)}")
