from dataclasses import dataclass
import os
from dotenv import load_dotenv


load_dotenv()

DEFAULT_AUTH_URL = "https://identitytoolkit.googleapis.com/v1/accounts"


def _env(name: str, default: str = "") -> str:
    return os.getenv(f"FIREBASE_{name}") or os.getenv(f"NEXT_PUBLIC_FIREBASE_{name}") or default


def _split_csv(value: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in value.split(",") if item.strip())


def _flag(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    firebase_api_key: str = _env("API_KEY")
    firebase_auth_url: str = _env("AUTH_URL", DEFAULT_AUTH_URL)
    firebase_database_url: str = _env("DATABASE_URL")
    firebase_storage_bucket: str = _env("STORAGE_BUCKET")
    firebase_project_id: str = _env("PROJECT_ID")

    # Service account, either as a JSON file or as individual fields.
    firebase_credentials_file: str = os.getenv("FIREBASE_CREDENTIALS_FILE") or os.getenv(
        "GOOGLE_APPLICATION_CREDENTIALS", ""
    )
    firebase_client_email: str = os.getenv("FIREBASE_CLIENT_EMAIL", "")
    firebase_private_key: str = os.getenv("FIREBASE_PRIVATE_KEY", "").replace("\\n", "\n")

    use_emulator: bool = _flag(os.getenv("FIREKIT_USE_EMULATOR", "0"))
    log_level: str = os.getenv("FIREKIT_LOG_LEVEL", "INFO").upper()

    cors_allowed_origins: tuple[str, ...] = _split_csv(
        os.getenv("CORS_ALLOWED_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173")
    )


settings = Settings()
