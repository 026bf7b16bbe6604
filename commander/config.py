"""Settings via pydantic-settings with COMMANDER_ env prefix.

Provider API keys use validation_alias to read the same unprefixed env vars
(ANTHROPIC_API_KEY, OPENAI_API_KEY, ...) that the providers' own SDKs use,
so an existing shell environment works without renaming anything.
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="COMMANDER_", env_file=".env", extra="ignore")

    # LLM
    model: str = "anthropic/claude-sonnet-4-5"
    max_tokens: int = 4096
    context_window: int | None = None  # overrides the provider default when set

    # Provider credentials -- unprefixed aliases match the providers' own env vars
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    openai_api_key: str = Field("", validation_alias="OPENAI_API_KEY")
    groq_api_key: str = Field("", validation_alias="GROQ_API_KEY")
    xai_api_key: str = Field("", validation_alias="XAI_API_KEY")
    mistral_api_key: str = Field("", validation_alias="MISTRAL_API_KEY")
    openrouter_api_key: str = Field("", validation_alias="OPENROUTER_API_KEY")

    # Local / custom OpenAI-compatible endpoints
    ollama_base_url: str = Field("http://localhost:11434/v1", validation_alias="OLLAMA_BASE_URL")
    lmstudio_base_url: str = Field("http://localhost:1234/v1", validation_alias="LMSTUDIO_BASE_URL")
    vllm_base_url: str = "http://localhost:8000/v1"
    openai_compat_base_url: str = ""
    openai_compat_api_key: str = ""

    # Completion retry / timeouts (seconds)
    max_rounds: int = 30
    max_retries: int = 3
    retry_base_delay: float = 5.0
    llm_timeout: float = 120.0
    summary_timeout: float = 30.0
    handoff_timeout: float = 20.0
    llm_timeout_connect: int = 10

    # Game server
    game_base_url: str = "https://game.spacemolt.com/api/v1"
    game_username: str = ""
    game_password: str = ""
    game_timeout_connect: int = 10
    game_timeout_read: int = 60
    session_renew_margin: float = 60.0  # renew when fewer seconds than this remain
    rate_limit_warn_every: int = 5  # escalate logging every N consecutive rate-limit waits

    # Driver
    instruction: str = "Play the game. Check your status, then pursue your goals."
    turn_pause: float = 2.0  # seconds between turns
    log_level: str = "info"
    debug: bool = False  # log raw LLM payloads and tool results

    @model_validator(mode="after")
    def _validate_retry(self) -> "Settings":
        if self.max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        if self.max_rounds < 1:
            raise ValueError("max_rounds must be >= 1")
        if self.retry_base_delay < 0:
            raise ValueError("retry_base_delay must be >= 0")
        return self
