import os
from typing import List, Mapping, Optional
from dotenv import load_dotenv

STORAGE_BACKENDS = ("local", "supabase")
MODERATION_PROVIDERS = ("gemini", "http", "none")


def _flag(value: Optional[str], default: str) -> bool:
    return (value if value is not None else default).strip().lower() == "true"


def _list(value: Optional[str], default: str) -> List[str]:
    raw = value if value is not None else default
    if raw.strip() == "*":
        return ["*"]
    return [item.strip() for item in raw.split(",") if item.strip()]


class Config:
    """
    Process configuration, read once from the environment and passed to
    every component explicitly.
    """

    def __init__(self, env: Optional[Mapping[str, str]] = None):
        env = os.environ if env is None else env

        self.LOG_LEVEL = env.get("LOG_LEVEL", "INFO").upper()

        # Database Configuration
        self.DATABASE_URL = env.get("DATABASE_URL") or None
        self.DB_TIMEOUT = float(env.get("DB_TIMEOUT", "10"))

        # Storage Configuration
        self.STORAGE_BACKEND = env.get("STORAGE_BACKEND", "local").strip().lower()
        self.UPLOAD_DIR = env.get("UPLOAD_DIR", "./uploads")
        self.PUBLIC_BASE_URL = env.get("PUBLIC_BASE_URL", "/uploads").rstrip("/")
        self.STORAGE_FOLDER = env.get("STORAGE_FOLDER", "pyq_papers").strip("/")
        self.SUPABASE_URL = env.get("SUPABASE_URL") or None
        self.SUPABASE_KEY = env.get("SUPABASE_KEY") or None
        self.SUPABASE_BUCKET = env.get("SUPABASE_BUCKET", "papers")
        self.STORAGE_TIMEOUT = float(env.get("STORAGE_TIMEOUT", "30"))
        self.STORAGE_RETRIES = int(env.get("STORAGE_RETRIES", "2"))

        # Moderation Configuration
        self.MODERATION_PROVIDER = env.get("MODERATION_PROVIDER", "none").strip().lower()
        self.MODERATION_THRESHOLD = float(env.get("MODERATION_THRESHOLD", "0.6"))
        self.MODERATION_TIMEOUT = float(env.get("MODERATION_TIMEOUT", "20"))
        self.MODERATION_FAIL_OPEN = _flag(env.get("MODERATION_FAIL_OPEN"), "false")
        self.MODERATION_URL = env.get("MODERATION_URL") or None
        self.GEMINI_API_KEY = env.get("GEMINI_API_KEY") or None
        self.GEMINI_MODERATION_MODEL = env.get("GEMINI_MODERATION_MODEL", "gemini-2.5-flash")

        # Compression Configuration
        self.IMAGE_MAX_WIDTH = int(env.get("IMAGE_MAX_WIDTH", "1200"))
        self.IMAGE_QUALITY = int(env.get("IMAGE_QUALITY", "70"))
        self.PDF_COMPRESSION = _flag(env.get("PDF_COMPRESSION"), "true")

        # Pipeline Configuration
        self.MAX_UPLOAD_BYTES = int(env.get("MAX_UPLOAD_BYTES", str(20 * 1024 * 1024)))
        self.PIPELINE_CONCURRENCY = int(env.get("PIPELINE_CONCURRENCY", "4"))

        # Admin Configuration
        self.ADMIN_USERNAME = env.get("ADMIN_USERNAME", "admin")
        self.ADMIN_PASSWORD = env.get("ADMIN_PASSWORD") or None

        # Redis Configuration
        self.REDIS_ENABLED = _flag(env.get("REDIS_ENABLED"), "false")
        self.REDIS_HOST = env.get("REDIS_HOST", "localhost")
        self.REDIS_PORT = int(env.get("REDIS_PORT", "6379"))
        self.REDIS_PASSWORD = env.get("REDIS_PASSWORD") or None
        self.CACHE_TTL = int(env.get("CACHE_TTL", "300"))

        # CORS Configuration
        self.CORS_ORIGINS = _list(env.get("CORS_ORIGINS"), "http://localhost:3000")
        self.CORS_ALLOW_CREDENTIALS = _flag(env.get("CORS_ALLOW_CREDENTIALS"), "true")
        self.CORS_ALLOW_METHODS = _list(env.get("CORS_ALLOW_METHODS"), "*")
        self.CORS_ALLOW_HEADERS = _list(env.get("CORS_ALLOW_HEADERS"), "*")

    def validate(self) -> "Config":
        """Validate required configuration"""
        if self.STORAGE_BACKEND not in STORAGE_BACKENDS:
            raise ValueError(f"STORAGE_BACKEND must be one of {STORAGE_BACKENDS}")
        if self.STORAGE_BACKEND == "supabase" and not (self.SUPABASE_URL and self.SUPABASE_KEY):
            raise ValueError("SUPABASE_URL and SUPABASE_KEY are required for the supabase backend")

        if self.MODERATION_PROVIDER not in MODERATION_PROVIDERS:
            raise ValueError(f"MODERATION_PROVIDER must be one of {MODERATION_PROVIDERS}")
        if self.MODERATION_PROVIDER == "gemini" and not self.GEMINI_API_KEY:
            raise ValueError("GEMINI_API_KEY is required for gemini moderation")
        if self.MODERATION_PROVIDER == "http" and not self.MODERATION_URL:
            raise ValueError("MODERATION_URL is required for http moderation")
        if not 0.0 <= self.MODERATION_THRESHOLD <= 1.0:
            raise ValueError("MODERATION_THRESHOLD must be within [0, 1]")

        positive = {
            "DB_TIMEOUT": self.DB_TIMEOUT,
            "STORAGE_TIMEOUT": self.STORAGE_TIMEOUT,
            "MODERATION_TIMEOUT": self.MODERATION_TIMEOUT,
            "IMAGE_MAX_WIDTH": self.IMAGE_MAX_WIDTH,
            "MAX_UPLOAD_BYTES": self.MAX_UPLOAD_BYTES,
            "PIPELINE_CONCURRENCY": self.PIPELINE_CONCURRENCY,
        }
        for name, value in positive.items():
            if value <= 0:
                raise ValueError(f"{name} must be positive")
        if self.STORAGE_RETRIES < 0:
            raise ValueError("STORAGE_RETRIES must not be negative")
        if not 1 <= self.IMAGE_QUALITY <= 95:
            raise ValueError("IMAGE_QUALITY must be within [1, 95]")
        return self


def load_config() -> Config:
    """Load .env, then build and validate the process configuration"""
    load_dotenv()
    return Config().validate()
