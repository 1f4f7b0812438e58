from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    DATABASE_URL: str

    ENV: str = "dev"  # "dev" or "prod"

    # Public origin used to build document links handed to the gateway
    PUBLIC_BASE_URL: str | None = None
    FRONTEND_URL: str = "http://localhost:5173"

    # --- WHATSAPP GATEWAY (Evolution API) ---
    EVOLUTION_API_URL: str | None = None
    EVOLUTION_API_KEY: str | None = None
    EVOLUTION_INSTANCE_NAME: str = "msec_academics"
    WHATSAPP_DEFAULT_COUNTRY_CODE: str = "91"
    WHATSAPP_TIMEOUT_SECONDS: float = 30.0
    WHATSAPP_PROBE_TIMEOUT_SECONDS: float = 5.0
    WHATSAPP_DOCUMENT_ATTEMPTS: int = 3
    WHATSAPP_RETRY_BACKOFF_MS: int = 800
    WHATSAPP_TEXT_DELAY_MS: int = 1200

    # --- WEB PUSH ---
    VAPID_PUBLIC_KEY: str | None = None
    VAPID_PRIVATE_KEY: str | None = None
    VAPID_SUBJECT: str = "mailto:academics@msec.edu.in"

    # --- PDF RENDERING ---
    WKHTMLTOPDF_PATH: str = "/usr/bin/wkhtmltopdf"

    REDIS_URL: str | None = None

    TIMEZONE: str = "Asia/Kolkata"

    COLLEGE_NAME: str = "Meenakshi Sundararajan Engineering College"
    SENDER_SIGNATURE: str = "MSEC Academics Department"

    @property
    def is_production(self) -> bool:
        return self.ENV.lower() in ("prod", "production")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

settings = Settings()
