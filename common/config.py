from pydantic_settings import BaseSettings


class PipelineSettings(BaseSettings):
    analyze_chunk_size: int = 15000
    fix_chunk_size: int = 6000
    analyze_batch_size: int = 3
    fix_batch_size: int = 1
    analyze_delay_ms: int = 1000
    fix_delay_ms: int = 3000
    max_attempts: int = 15
    backoff_base_s: float = 1.0
    backoff_cap_s: float = 20.0
    rate_limit_wait_s: float = 15.0
    rate_limit_jitter_s: float = 5.0

    model_config = {"env_prefix": "PIPELINE_"}


class GeminiSettings(BaseSettings):
    api_key: str = ""
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    flash_model: str = "gemini-3-flash-preview"
    pro_model: str = "gemini-3-pro-preview"
    thinking_budget: int = 16000
    request_timeout_s: float = 300.0

    model_config = {"env_prefix": "GEMINI_"}


class TelemetrySettings(BaseSettings):
    supabase_url: str = ""
    supabase_key: str = ""
    table: str = "plagiafix_logs"

    model_config = {"env_prefix": "TELEMETRY_"}


class LLMServiceSettings(BaseSettings):
    host: str = "0.0.0.0"
    port: int = 8002

    model_config = {"env_prefix": "LLM_"}


class LiveSettings(BaseSettings):
    host: str = "0.0.0.0"
    port: int = 8000
    ws_url: str = (
        "wss://generativelanguage.googleapis.com/ws/"
        "google.ai.generativelanguage.v1beta.GenerativeService.BidiGenerateContent"
    )
    model_name: str = "gemini-2.5-flash-native-audio-preview-09-2025"
    voice_name: str = "Zephyr"
    input_sample_rate: int = 16000
    output_sample_rate: int = 24000
    frame_size: int = 4096
    max_sessions: int = 10

    model_config = {"env_prefix": "LIVE_"}
