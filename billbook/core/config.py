from pydantic import Field
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    app_name: str = Field("billbook", alias="APP_NAME")
    app_env: str = Field("dev", alias="APP_ENV")
    log_level: str = Field("INFO", alias="LOG_LEVEL")

    # Relational store (single source of truth for documents, bills and ledger)
    database_path: str = Field("billbook.db", alias="DATABASE_PATH")
    upload_dir: str = Field("uploads", alias="UPLOAD_DIR")

    # Hosted model extraction
    ai_provider: str = Field("openai", alias="AI_PROVIDER")  # openai | groq | heuristic
    openai_api_key: str | None = Field(default=None, alias="OPENAI_API_KEY")
    openai_model: str = Field("gpt-4o-mini", alias="OPENAI_MODEL")
    openai_base_url: str = Field("https://api.openai.com/v1", alias="OPENAI_BASE_URL")
    groq_api_key: str | None = Field(default=None, alias="GROQ_API_KEY")
    groq_model: str = Field("openai/gpt-oss-20b", alias="GROQ_MODEL")
    groq_base_url: str = Field("https://api.groq.com/openai/v1", alias="GROQ_BASE_URL")
    ai_request_timeout: float = Field(30.0, alias="AI_REQUEST_TIMEOUT")

    # Call budget and input gates
    max_ai_calls_per_min: int = Field(8, alias="MAX_AI_CALLS_PER_MIN")
    max_ai_ocr_length: int = Field(12000, alias="MAX_AI_OCR_LENGTH")
    ai_text_char_cap: int = Field(12000, alias="AI_TEXT_CHAR_CAP")
    min_ocr_text_length: int = Field(10, alias="MIN_OCR_TEXT_LENGTH")

    # OCR
    ocr_engine: str = Field("tesseract", alias="OCR_ENGINE")  # tesseract | azure
    ocr_lang: str = Field("eng", alias="OCR_LANG")
    pdf_render_dpi: int = Field(300, alias="PDF_RENDER_DPI")
    native_text_min_quality: float = Field(0.5, alias="NATIVE_TEXT_MIN_QUALITY")
    ocr_enhance_below: float = Field(0.4, alias="OCR_ENHANCE_BELOW")

    # Azure Document Intelligence (optional hosted OCR engine)
    az_di_endpoint: str | None = Field(default=None, alias="AZ_DI_ENDPOINT")
    az_di_api_key: str | None = Field(default=None, alias="AZ_DI_API_KEY")

    # Verification and reprocessing
    verify_conf_threshold: float = Field(0.85, alias="VERIFY_CONF_THRESHOLD")
    verify_min_quality: int = Field(60, alias="VERIFY_MIN_QUALITY")
    verify_min_ai_confidence: float = Field(0.5, alias="VERIFY_MIN_AI_CONFIDENCE")
    max_reprocess_per_doc_per_day: int = Field(3, alias="MAX_REPROCESS_PER_DOC_PER_DAY")
    nightly_reverify_limit: int = Field(25, alias="NIGHTLY_REVERIFY_LIMIT")
    nightly_reverify_days: int = Field(30, alias="NIGHTLY_REVERIFY_DAYS")
    stale_processing_minutes: int = Field(30, alias="STALE_PROCESSING_MINUTES")

    # Ledger
    system_user_id: int = Field(1, alias="SYSTEM_USER_ID")

    # Service Bus event publishing (disabled when unset)
    service_bus_connection_string: str | None = Field(default=None, alias="SERVICE_BUS_CONNECTION_STRING")
    service_bus_queue: str = Field("bill-events", alias="SERVICE_BUS_QUEUE")

    # CORS allowed origins (comma-separated list for production deployment)
    cors_origins: str = Field("http://localhost:3000,http://127.0.0.1:3000", alias="CORS_ORIGINS")

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

settings = Settings()
