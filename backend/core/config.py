# backend/core/config.py
import os
from typing import Literal
from dotenv import load_dotenv


def _int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


class Settings:
    """
    Setup environment variables.
        - PUB_SUB_SERVICE the push backend to use: "redis" or "google_pub_sub"
        - REDIS_* connection details for the shared key-value store
        - PROJECT_ID / TOPIC_ID / SUBSCRIPTION_ID for Google Pub/Sub
        - ADMIN_USERNAME the single identity allowed to moderate
        - everything else is chat policy (TTLs, limits, lengths)
    """

    # Load environment variables from the .env file
    load_dotenv()

    PUB_SUB_SERVICE: Literal["redis", "google_pub_sub"] = (os.getenv("PUB_SUB_SERVICE", "redis"))

    REDIS_URL: str = os.getenv("REDIS_URL", "")
    REDIS_HOST: str = os.getenv("REDIS_HOST", "localhost")
    REDIS_PORT: int = _int("REDIS_PORT", 6379)
    REDIS_ACCESS_KEY: str = os.getenv("REDIS_ACCESS_KEY", "")
    REDIS_SSL: bool = os.getenv("REDIS_SSL", "false").lower() == "true"
    REDIS_SOCKET_TIMEOUT: float = float(os.getenv("REDIS_SOCKET_TIMEOUT", "5"))

    PROJECT_ID = os.getenv("PROJECT_ID", "")
    TOPIC_ID = os.getenv("TOPIC_ID", "")
    SUBSCRIPTION_ID = os.getenv("SUBSCRIPTION_ID", "")

    CORS_ORIGINS: list[str] = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

    ADMIN_USERNAME: str = os.getenv("ADMIN_USERNAME", "ryo").lower()

    # Tokens: 90 days of sliding validity, refreshable for a year after expiry
    TOKEN_BYTES: int = 32
    TOKEN_TTL_SECONDS: int = _int("TOKEN_TTL_SECONDS", 7776000)
    TOKEN_GRACE_PERIOD_SECONDS: int = _int("TOKEN_GRACE_PERIOD_SECONDS", 86400 * 365)

    ROOM_PRESENCE_TTL_SECONDS: int = _int("ROOM_PRESENCE_TTL_SECONDS", 86400)

    MAX_MESSAGE_LENGTH: int = _int("MAX_MESSAGE_LENGTH", 1000)
    MESSAGE_RETENTION: int = _int("MESSAGE_RETENTION", 100)
    MESSAGE_PAGE_SIZE: int = _int("MESSAGE_PAGE_SIZE", 20)

    MIN_USERNAME_LENGTH: int = 3
    MAX_USERNAME_LENGTH: int = 30
    USER_SEARCH_MIN_LENGTH: int = 2
    USER_SEARCH_LIMIT: int = 20

    PASSWORD_MIN_LENGTH: int = _int("PASSWORD_MIN_LENGTH", 8)
    PASSWORD_BCRYPT_ROUNDS: int = _int("PASSWORD_BCRYPT_ROUNDS", 10)

    # Sensitive actions (token issuance, passwords, signup)
    RATE_LIMIT_WINDOW_SECONDS: int = _int("RATE_LIMIT_WINDOW_SECONDS", 60)
    RATE_LIMIT_ATTEMPTS: int = _int("RATE_LIMIT_ATTEMPTS", 10)

    # Chat burst limiter, public rooms only
    CHAT_BURST_SHORT_WINDOW_SECONDS: int = _int("CHAT_BURST_SHORT_WINDOW_SECONDS", 10)
    CHAT_BURST_SHORT_LIMIT: int = _int("CHAT_BURST_SHORT_LIMIT", 3)
    CHAT_BURST_LONG_WINDOW_SECONDS: int = _int("CHAT_BURST_LONG_WINDOW_SECONDS", 60)
    CHAT_BURST_LONG_LIMIT: int = _int("CHAT_BURST_LONG_LIMIT", 20)
    CHAT_MIN_INTERVAL_SECONDS: int = _int("CHAT_MIN_INTERVAL_SECONDS", 2)

    def redis_url(self) -> str:
        if self.REDIS_URL:
            return self.REDIS_URL
        scheme = "rediss" if self.REDIS_SSL else "redis"
        auth = f":{self.REDIS_ACCESS_KEY}@" if self.REDIS_ACCESS_KEY else ""
        return f"{scheme}://{auth}{self.REDIS_HOST}:{self.REDIS_PORT}"

settings = Settings()
