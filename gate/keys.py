import hashlib
import secrets

from config.settings import settings
from storage.models import KEY_ENVIRONMENTS

RANDOM_BYTES = 24
DISPLAY_PREFIX_LENGTH = 12


def hash_api_key(key: str) -> str:
    """Hash an API key using SHA-256."""
    return hashlib.sha256(key.encode()).hexdigest()


def generate_api_key(environment: str = "live", prefix: str | None = None) -> str:
    """Generate a random API key of the form ``{prefix}_{env}_{random}``."""
    if environment not in KEY_ENVIRONMENTS:
        raise ValueError(f"environment must be one of: {', '.join(KEY_ENVIRONMENTS)}")
    prefix = prefix or settings.key_prefix
    return f"{prefix}_{environment}_{secrets.token_hex(RANDOM_BYTES)}"


def display_prefix(key: str) -> str:
    """The part of a key that is safe to show in listings."""
    return key[:DISPLAY_PREFIX_LENGTH] + "..."
