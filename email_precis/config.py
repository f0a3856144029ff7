from typing import Optional

from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings

from email_precis.utils.logger import logger


def _hex_bytes(value: str, expected: int, name: str) -> bytes:
    try:
        raw = bytes.fromhex(value)
    except ValueError:
        raise ValueError(f"{name} must be a hex string")
    if len(raw) != expected:
        raise ValueError(
            f"{name} must decode to {expected} bytes ({expected * 2} hex chars), got {len(raw)}"
        )
    return raw


class Config(BaseSettings):
    package_name: str = "email_precis"
    log_level: str = "INFO"

    project_id: str = "email-precis"
    region: str = "europe-west1"

    # Firestore
    firestore_name: str = "(default)"
    users_collection: str = "users"
    accounts_collection: str = "accounts"
    emails_collection: str = "emails"
    mail_provider: str = "google"

    # LLM settings
    model_name: str = "gemini-2.0-flash"
    temperature: float = 0.0
    llm_max_retries: int = 0
    prompt_path: str = "prompts/classification_prompt.txt"
    quota_help_url: str = "https://ai.google.dev/gemini-api/docs/rate-limits"

    # Field encryption (AES-256-GCM)
    encryption_key: SecretStr
    legacy_nonce: Optional[SecretStr] = None

    # Processing queue
    max_concurrency: int = 5
    tick_interval: float = 5.0
    stats_interval: float = 60.0
    max_attempts: int = 3
    base_retry_delay: float = 60.0
    max_retry_delay: float = 300.0
    quota_base_delay: float = 60.0
    quota_max_delay: float = 300.0
    max_queue_size: int = 1000
    job_timeout: float = 120.0
    job_retention: float = 3600.0  # seconds a finished job stays visible

    # Mailbox sync
    sync_query: str = "newer_than:3d"
    sync_page_size: int = 100
    sync_max_pages: int = 5

    # Message tree walker
    max_part_depth: int = 32
    max_parts: int = 500
    max_body_tokens: int = 100_000

    @field_validator("encryption_key")
    @classmethod
    def _check_key(cls, v: SecretStr) -> SecretStr:
        _hex_bytes(v.get_secret_value(), 32, "ENCRYPTION_KEY")
        return v

    @field_validator("legacy_nonce")
    @classmethod
    def _check_nonce(cls, v: Optional[SecretStr]) -> Optional[SecretStr]:
        if v is not None:
            _hex_bytes(v.get_secret_value(), 12, "LEGACY_NONCE")
        return v

    @property
    def key_bytes(self) -> bytes:
        return bytes.fromhex(self.encryption_key.get_secret_value())

    @property
    def legacy_nonce_bytes(self) -> Optional[bytes]:
        if self.legacy_nonce is None:
            return None
        return bytes.fromhex(self.legacy_nonce.get_secret_value())


CFG = Config()

logger.setLevel(CFG.log_level)
logger.info(f"Config: {CFG}")
