import os
from pathlib import Path
from typing import List

from dotenv import load_dotenv

# Load environment variables from .env file
env_path = Path(__file__).parent.parent / ".env"
load_dotenv(dotenv_path=env_path)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """Runtime configuration, read from the environment when instantiated."""

    def __init__(self):
        # Storage
        self.STORAGE_BACKEND: str = os.getenv("STORAGE_BACKEND", "redis")  # memory, local or redis
        self.REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
        self.REDIS_KEY_PREFIX: str = os.getenv("REDIS_KEY_PREFIX", "modernchat")
        self.STORAGE_FALLBACK: bool = _env_bool("STORAGE_FALLBACK", "true")
        self.LOCAL_STORE_PATH: Path = Path(os.getenv("LOCAL_STORE_PATH", "./data"))

        # Fixed admin credential
        self.ADMIN_USERNAME: str = os.getenv("ADMIN_USERNAME", "admin")
        self.ADMIN_PASSWORD: str = os.getenv("ADMIN_PASSWORD", "admin")

        # Scripted reply after every outgoing text message (demo only)
        self.AUTO_REPLY_ENABLED: bool = _env_bool("AUTO_REPLY_ENABLED", "false")

        # API
        self.API_HOST: str = os.getenv("API_HOST", "0.0.0.0")
        self.API_PORT: int = int(os.getenv("API_PORT", "8000"))
        self.CORS_ORIGINS: List[str] = [
            origin.strip() for origin in os.getenv("CORS_ORIGINS", "*").split(",") if origin.strip()
        ]
        self.LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()


settings = Settings()
