import os
from typing import Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()

REQUIRED_VARIABLES = (
    "PHONEPE_CLIENT_ID",
    "PHONEPE_CLIENT_SECRET",
    "PHONEPE_CLIENT_VERSION",
    "PHONEPE_REDIRECT_URL",
    "JWT_SECRET",
)


class ConfigurationError(RuntimeError):
    pass


class Settings(BaseModel):
    database_url: Optional[str] = None
    database_name: Optional[str] = None

    phonepe_client_id: str
    phonepe_client_secret: str
    phonepe_client_version: int
    phonepe_env: str = "SANDBOX"
    phonepe_redirect_url: str
    phonepe_callback_username: Optional[str] = None
    phonepe_callback_password: Optional[str] = None

    jwt_secret: str

    cod_refund_deduction: float = Field(50, ge=0)
    payment_expiry_minutes: int = Field(30, ge=1)
    cheque_upload_dir: str = "uploads/cheques"
    log_level: str = "INFO"

    @property
    def is_production(self) -> bool:
        return self.phonepe_env.upper() == "PRODUCTION"


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Read settings from the environment, failing fast on missing secrets."""
    env = os.environ if environ is None else environ
    missing = [name for name in REQUIRED_VARIABLES if not env.get(name)]
    if missing:
        raise ConfigurationError(
            f"Missing required environment variables: {', '.join(missing)}"
        )
    try:
        client_version = int(env["PHONEPE_CLIENT_VERSION"])
    except ValueError:
        raise ConfigurationError("PHONEPE_CLIENT_VERSION must be an integer")

    values = {
        "database_url": env.get("DATABASE_URL"),
        "database_name": env.get("DATABASE_NAME"),
        "phonepe_client_id": env["PHONEPE_CLIENT_ID"],
        "phonepe_client_secret": env["PHONEPE_CLIENT_SECRET"],
        "phonepe_client_version": client_version,
        "phonepe_env": env.get("PHONEPE_ENV", "SANDBOX"),
        "phonepe_redirect_url": env["PHONEPE_REDIRECT_URL"],
        "phonepe_callback_username": env.get("PHONEPE_CALLBACK_USERNAME"),
        "phonepe_callback_password": env.get("PHONEPE_CALLBACK_PASSWORD"),
        "jwt_secret": env["JWT_SECRET"],
        "cheque_upload_dir": env.get("CHEQUE_UPLOAD_DIR", "uploads/cheques"),
        "log_level": env.get("LOG_LEVEL", "INFO"),
    }
    if env.get("COD_REFUND_DEDUCTION"):
        values["cod_refund_deduction"] = float(env["COD_REFUND_DEDUCTION"])
    if env.get("PAYMENT_EXPIRY_MINUTES"):
        values["payment_expiry_minutes"] = int(env["PAYMENT_EXPIRY_MINUTES"])
    return Settings(**values)
