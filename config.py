import os


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# Store
STORE_NAME = os.getenv("STORE_NAME", "Cold Press Co.")
PRIMARY_CURRENCY = os.getenv("PRIMARY_CURRENCY", "INR")
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "*").split(",")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Security
JWT_SECRET = os.getenv("JWT_SECRET", "devsecret_change_me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_AUDIENCE = os.getenv("JWT_AUDIENCE") or None

# Catalog / checkout
RELATED_PRODUCTS_LIMIT = int(os.getenv("RELATED_PRODUCTS_LIMIT", "6"))
MIN_ADDRESS_LENGTH = int(os.getenv("MIN_ADDRESS_LENGTH", "10"))
CLAMP_FIXED_DISCOUNT = _env_flag("CLAMP_FIXED_DISCOUNT")
