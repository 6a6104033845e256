"""Application configuration loaded from environment variables."""

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Central configuration for the reader-mesh job service."""

    # Provider credentials
    groq_api_key: str = Field(default="", description="Groq API key")
    siliconflow_api_key: str = Field(default="", description="SiliconFlow API key")
    gemini_api_key: str = Field(
        default="",
        validation_alias=AliasChoices("GOOGLE_GENERATIVE_AI_API_KEY", "GEMINI_API_KEY"),
        description="Google Gemini API key",
    )
    github_token: str = Field(default="", description="GitHub Models token")
    huggingface_api_key: str = Field(default="", description="HuggingFace Inference API key")

    # Provider models
    groq_model: str = Field(default="llama-3.1-8b-instant")
    groq_base_url: str = Field(default="https://api.groq.com/openai/v1")
    siliconflow_model: str = Field(default="Qwen/Qwen2.5-7B-Instruct")
    siliconflow_base_url: str = Field(default="https://api.siliconflow.cn/v1")
    github_model: str = Field(default="gpt-4o")
    github_base_url: str = Field(default="https://models.inference.ai.azure.com")
    gemini_model: str = Field(default="gemini-1.5-flash")
    gemini_base_url: str = Field(default="https://generativelanguage.googleapis.com/v1beta/openai/")
    huggingface_model: str = Field(default="meta-llama/Llama-3.1-8B-Instruct")
    huggingface_base_url: str = Field(default="https://api-inference.huggingface.co/v1")
    provider_timeout_seconds: float = Field(default=60.0, description="Per-request provider timeout")

    # Batching
    max_batch_pages: int = Field(default=20, ge=1, description="Maximum pages per summary batch")
    max_batch_tokens: int = Field(default=25000, ge=1, description="Estimated token budget per batch")
    batch_pacing_ms: int = Field(default=2000, ge=0, description="Delay between consecutive batches")

    # Status polling
    status_poll_interval_ms: int = Field(default=1000, ge=1, description="Status poll interval")
    status_poll_attempts: int = Field(default=300, ge=1, description="Client poll budget before timing out")

    # Jobs
    job_ttl_seconds: int = Field(default=3600, ge=1, description="Status store expiry for job records")
    stale_job_timeout_seconds: int = Field(
        default=600, ge=1, description="Processing jobs older than this are reclaimed by the sweep"
    )
    progress_flush_chars: int = Field(
        default=40, ge=1, description="New streamed characters required before a progress write"
    )

    # Redis / RQ
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")
    redis_key_prefix: str = Field(default="readermesh", description="Prefix for all Redis keys")
    rq_queue_name: str = Field(default="readermesh", description="RQ queue carrying worker ticks")

    # API
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")

    # Logging
    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=True, description="Render logs as JSON lines")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
        "populate_by_name": True,
    }


# Singleton instance
settings = Settings()
