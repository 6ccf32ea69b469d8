"""
Configuration settings for the agent engine
"""
from pydantic_settings import BaseSettings
from typing import Optional
from enum import Enum


class Environment(str, Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class Settings(BaseSettings):
    # Planner LLM (OpenAI-compatible /v1/chat/completions endpoint)
    llm_api_url: Optional[str] = None
    llm_api_token: Optional[str] = None
    llm_model: str = "default"
    llm_timeout_seconds: float = 60.0
    llm_temperature: float = 0.2

    # Database Configuration
    database_url: str = "sqlite:///./agent_engine.db"

    # Application Configuration
    app_env: Environment = Environment.DEVELOPMENT
    debug: bool = False
    log_level: str = "INFO"
    sql_echo: bool = False  # Enable to show SQLAlchemy SQL statements in logs

    # Browser Configuration
    agent_browser: str = "chromium"  # chromium, firefox or webkit
    browser_headless: bool = True
    agent_workdir: str = "tmp/agent-runs"  # per-run screenshots and DOM dumps
    tool_watchdog_seconds: float = 20.0  # warn when a tool call runs longer than this
    navigation_timeout_ms: int = 30000

    # Run queue
    queue_poll_interval_seconds: float = 2.0
    stuck_run_threshold_seconds: int = 600
    max_concurrent_runs: int = 2

    # Control API
    api_host: str = "127.0.0.1"
    api_port: int = 8080

    # Default per-run plan settings (clamped per run)
    agent_max_steps: int = 12
    agent_max_step_attempts: int = 2
    agent_max_replan_calls: int = 2
    agent_replan_every_steps: int = 2
    agent_max_self_checks: int = 4
    agent_loop_guard_threshold: int = 2
    agent_loop_backoff_base_ms: int = 2000
    agent_loop_backoff_max_ms: int = 12000

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


# Global settings instance
settings = Settings()
