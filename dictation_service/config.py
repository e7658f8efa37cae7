"""
Central configuration for the Dictation Service
"""

from typing import Dict, List
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from enum import Enum


class Environment(str, Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class ModelName(str, Enum):
    GPT_4O_MINI = "gpt-4o-mini"
    GPT_4O = "gpt-4o"
    GPT_4_1_NANO = "gpt-4.1-nano"


class STTProvider(str, Enum):
    OPENAI = "openai"
    ASSEMBLYAI = "assemblyai"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Environment
    environment: Environment = Environment.DEVELOPMENT
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    # API Configuration
    api_title: str = Field(default="Dictation Service API")
    api_description: str = Field(default="Clinical dictation transcription and structured note extraction")
    api_version: str = Field(default="1.0.0")
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=3001)
    api_secret_key: str = Field(...)
    public_base_url: str = Field(default="http://localhost:3001")

    # External Service APIs
    openai_api_key: str = Field(...)
    assemblyai_api_key: str = Field(default="")
    assemblyai_api_base_url: str = Field(default="https://api.eu.assemblyai.com")

    # Rate Limiting
    rate_limit_enabled: bool = Field(default=True)
    rate_limit_requests: int = Field(default=10)
    rate_limit_window: int = Field(default=60)  # seconds

    # Audio Upload Limits
    max_file_size_mb: int = Field(default=10)
    supported_audio_formats: List[str] = Field(
        default=[
            "audio/webm", "audio/mpeg", "audio/wav", "audio/mp4", "audio/m4a", "audio/ogg",
            "audio/x-wav", "audio/x-m4a", "audio/mp3", "audio/flac",
        ]
    )

    # Storage
    database_path: str = Field(default="dictations.sqlite3")
    blob_storage_dir: str = Field(default="blob_storage")
    signed_url_ttl_seconds: int = Field(default=3600)

    # Timeouts and Retries
    download_timeout: float = Field(default=15.0)
    stt_timeout: float = Field(default=30.0)
    llm_timeout: float = Field(default=60.0)
    max_retries: int = Field(default=3)

    # Background transcription
    max_concurrent_transcriptions: int = Field(default=4)
    shutdown_grace_seconds: float = Field(default=10.0)

    # LLM Configuration
    llm_temperature: float = Field(default=0.0)
    llm_max_tokens: int = Field(default=2000)
    default_llm_model: str = Field(default=ModelName.GPT_4O_MINI.value)

    # STT Configuration
    stt_provider: STTProvider = Field(default=STTProvider.OPENAI)
    default_stt_model: str = Field(default="whisper-1")

    # CORS Configuration
    cors_origins: List[str] = Field(default=["http://localhost:3000", "http://localhost:8080"])
    cors_allow_credentials: bool = Field(default=True)
    cors_allow_methods: List[str] = Field(default=["GET", "POST"])
    cors_allow_headers: List[str] = Field(default=["*"])

    # Security
    token_algorithm: str = Field(default="HS256")
    access_token_expire_minutes: int = Field(default=30)
    # sha256 hex digest of an API key -> clinician id it acts as
    api_key_clinicians: Dict[str, str] = Field(default_factory=dict)
    data_encryption_key: str = Field(...)

    # Monitoring
    enable_metrics: bool = Field(default=True)

    @property
    def max_file_size_bytes(self) -> int:
        return self.max_file_size_mb * 1024 * 1024


# Global settings instance
settings = Settings()
