# tripchat/core/config.py
import os
from typing import List, Literal

from dotenv import load_dotenv


def _bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """
    Setup environment variables.
        - MESSAGE_STORE where chat messages are persisted: "memory" or "redis"
        - MEMBERSHIP_BACKEND who decides room access: "open", "static" or "http"
        - AUTH_SECRET_KEY the key session tokens are signed with
    """

    # Load environment variables from the .env file
    load_dotenv()

    def __init__(self) -> None:
        self.MESSAGE_STORE: Literal["memory", "redis"] = os.getenv("MESSAGE_STORE", "memory")

        self.REDIS_HOST: str = os.getenv("REDIS_HOST", "localhost")
        self.REDIS_PORT: int = int(os.getenv("REDIS_PORT", "6379"))
        self.REDIS_ACCESS_KEY: str = os.getenv("REDIS_ACCESS_KEY", "")
        self.REDIS_SSL: bool = _bool("REDIS_SSL", "false")
        self.REDIS_KEY_PREFIX: str = os.getenv("REDIS_KEY_PREFIX", "tripchat")

        # Chat limits
        self.MAX_MESSAGE_LENGTH: int = int(os.getenv("MAX_MESSAGE_LENGTH", "2000"))
        self.STORE_APPEND_TIMEOUT: float = float(os.getenv("STORE_APPEND_TIMEOUT", "5.0"))
        self.IDEMPOTENCY_WINDOW_SECONDS: int = int(os.getenv("IDEMPOTENCY_WINDOW_SECONDS", "300"))
        self.BROADCAST_PRESENCE: bool = _bool("BROADCAST_PRESENCE", "false")

        # Room access
        self.MEMBERSHIP_BACKEND: Literal["open", "static", "http"] = os.getenv("MEMBERSHIP_BACKEND", "open")
        self.ROOM_MEMBERS: str = os.getenv("ROOM_MEMBERS", "{}")
        self.MEMBERSHIP_SERVICE_URL: str = os.getenv("MEMBERSHIP_SERVICE_URL", "http://localhost:3000/api")
        self.MEMBERSHIP_TIMEOUT: float = float(os.getenv("MEMBERSHIP_TIMEOUT", "3.0"))

        # Session tokens
        self.AUTH_SECRET_KEY: str = os.getenv("AUTH_SECRET_KEY", "")
        self.AUTH_ALGORITHM: str = os.getenv("AUTH_ALGORITHM", "HS256")
        self.AUTH_TOKEN_TTL: int = int(os.getenv("AUTH_TOKEN_TTL", "3600"))
        self.COOKIE_NAME: str = os.getenv("COOKIE_NAME", "session_token")

        self.CORS_ORIGINS: List[str] = [
            origin.strip() for origin in os.getenv("CORS_ORIGINS", "*").split(",") if origin.strip()
        ]

    @property
    def redis_url(self) -> str:
        scheme = "rediss" if self.REDIS_SSL else "redis"
        auth = f":{self.REDIS_ACCESS_KEY}@" if self.REDIS_ACCESS_KEY else ""
        return f"{scheme}://{auth}{self.REDIS_HOST}:{self.REDIS_PORT}"


settings = Settings()
