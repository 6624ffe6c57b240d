from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # OpenRouter
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    default_model: str = "openai:gpt-4o-mini"
    related_questions_model: str = ""  # optional override, falls back to the chat model
    enabled_providers: str = "openai,anthropic,google,deepseek"

    # Redis
    redis_url: str = "redis://localhost:6379/0"

    # Search provider
    search_provider: str = "tavily"  # tavily | brave
    tavily_api_key: str = ""
    brave_api_key: str = ""
    search_fallback_to_tavily: bool = True
    search_max_results: int = 10

    # Research depth rules
    research_max_depth: int = 7
    research_max_sources_per_depth: int = 5
    research_min_relevance_for_next_depth: float = 0.7
    research_quality_threshold: float = 0.6

    # Chat turn
    max_tool_steps: int = 5
    max_context_tokens: int = 120000
    max_output_tokens: int = 4096
    related_questions_enabled: bool = True
    usage_report_url: str = ""  # external accounting endpoint; turns are already tracked in-process
    default_user_id: str = "anonymous"

    # App
    cors_origins: str = "http://localhost:3000"
    app_log_level: str = "INFO"
    noisy_log_level: str = "WARNING"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",")]

    @property
    def enabled_provider_list(self) -> list[str]:
        return [p.strip().lower() for p in self.enabled_providers.split(",") if p.strip()]


settings = Settings()
