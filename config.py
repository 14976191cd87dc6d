import os

try:
    from dotenv import load_dotenv
    load_dotenv()
except ImportError:
    pass  # dotenv is optional for production, but useful locally

class Settings:
    # --- Database ---
    DATABASE_URL = os.environ.get("DATABASE_URL")
    DATABASE_PUBLIC_URL = os.environ.get("DATABASE_PUBLIC_URL")

    # --- Redis (Celery broker) ---
    REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")

    # --- OpenAI / LLM ---
    OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY")
    OPENAI_MODEL = os.environ.get("OPENAI_MODEL", "gpt-4o-mini")
    OPENAI_TIMEOUT = int(os.environ.get("OPENAI_TIMEOUT", "30"))

    # --- Resend (email) ---
    RESEND_API_KEY = os.environ.get("RESEND_API_KEY")
    EMAIL_FROM_ADDRESS = os.environ.get("EMAIL_FROM_ADDRESS", "noreply@bitescout.com")
    EMAIL_FROM_NAME = os.environ.get("EMAIL_FROM_NAME", "BiteScout")
    EMAIL_REPLY_TO = os.environ.get("EMAIL_REPLY_TO")

    # --- Nudge settings source (Airtable key/value table, optional) ---
    AIRTABLE_API_KEY = os.environ.get("AIRTABLE_API_KEY")
    AIRTABLE_BASE_ID = os.environ.get("AIRTABLE_BASE_ID")
    AIRTABLE_SETTINGS_TABLE = os.environ.get("AIRTABLE_SETTINGS_TABLE", "Settings")
    AIRTABLE_TIMEOUT = float(os.environ.get("AIRTABLE_TIMEOUT", "10"))

    # --- Nudge engine ---
    NUDGE_INTERVAL_SECONDS = float(os.environ.get("NUDGE_INTERVAL_SECONDS", "3600"))
    NUDGE_SETTINGS_TTL_SECONDS = float(os.environ.get("NUDGE_SETTINGS_TTL_SECONDS", "300"))
    NUDGE_DEDUP_WINDOW_HOURS = float(os.environ.get("NUDGE_DEDUP_WINDOW_HOURS", "20"))
    NUDGE_PROMPT_FILE = os.environ.get("NUDGE_PROMPT_FILE")  # overrides the built-in prompt

    # --- Logging ---
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

settings = Settings()
