"""Application configuration via environment variables."""

from __future__ import annotations

import logging

from pydantic_settings import BaseSettings

log = logging.getLogger("coaching.config")


class Settings(BaseSettings):
    # LLM
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-haiku-4-5-20251001"
    suggestion_max_tokens: int = 200
    analysis_max_tokens: int = 1000
    summary_max_tokens: int = 1000
    context_summary_max_tokens: int = 300

    # Speech recognition (Deepgram Flux)
    deepgram_api_key: str = ""
    deepgram_url: str = "wss://api.deepgram.com/v2/listen"
    deepgram_model: str = "flux-general-en"
    deepgram_eot_threshold: float = 0.7
    deepgram_eot_timeout_ms: int = 5000
    speech_reconnect_attempts: int = 5
    speech_reconnect_base_delay: float = 1.0
    speech_reconnect_max_delay: float = 30.0

    # Conversation context
    recent_turns_limit: int = 6
    summarize_threshold: int = 10
    max_response_chars: int = 200

    # Speaker label for finalized telephony transcripts
    telephony_speaker: str = "seller"

    # Pause between scripted turns in the demo conversation (seconds)
    demo_turn_delay: float = 3.0

    # Server
    frontend_url: str = "http://localhost:3000"
    host: str = "127.0.0.1"
    port: int = 3001
    debug: bool = False

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    def validate_startup(self) -> list[str]:
        """Validate configuration at startup. Returns warnings, raises on errors."""
        warnings: list[str] = []
        _placeholders = {"sk-ant-...", "your-deepgram-key"}

        if not self.anthropic_api_key or self.anthropic_api_key in _placeholders:
            raise ValueError(
                "ANTHROPIC_API_KEY is missing or still a placeholder. "
                "Set it in .env to enable coaching suggestions."
            )

        if not self.deepgram_api_key or self.deepgram_api_key in _placeholders:
            warnings.append(
                "DEEPGRAM_API_KEY not set. Telephony audio will not be transcribed; "
                "only simulated speech will reach the coach."
            )

        if self.recent_turns_limit < 1:
            raise ValueError("RECENT_TURNS_LIMIT must be at least 1.")

        return warnings


settings = Settings()
