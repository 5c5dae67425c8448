"""Load settings.yaml into typed dataclasses. Reports which upstream roles have API keys."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"


@dataclass
class ModelConfig:
    name: str
    sdk: str
    model: str
    api_key_env: str
    timeout_sec: int
    max_tokens: int
    base_url: str | None = None


@dataclass
class PromptsConfig:
    # Debate mode
    moderator_intro: str
    moderator_intro_user: str
    moderator_verdict: str
    moderator_verdict_user: str
    debater: str
    debater_opening: str
    debater_reply: str
    # Convergent mode
    kickoff: str
    kickoff_user: str
    debater_a: str
    debater_a_user: str
    debater_b: str
    debater_b_user: str
    judge: str
    judge_user: str
    executor: str
    executor_user: str
    # Plain chat
    chat_system: str
    # Document ingestion
    summarize_chunk: str
    summarize_chunk_user: str
    merge_summaries: str
    merge_summaries_user: str
    image_analysis: str
    image_analysis_user: str
    # Safety gate
    safety_gate: str
    safety_gate_user: str


@dataclass
class DefaultsConfig:
    mode: str = "convergent"
    rounds: int = 2
    min_rounds: int = 1
    max_rounds: int = 5
    convergent_max_rounds: int = 4
    request_timeout_sec: float = 600.0
    max_attachment_bytes: int = 10 * 1024 * 1024
    output_dir: Path = Path("./output")
    event_buffer: int = 64


@dataclass
class RetryConfig:
    max_retries: int = 5
    base_delay_sec: float = 5.0
    reset_margin_sec: float = 1.0
    max_reset_wait_sec: float = 120.0


@dataclass
class IngestionConfig:
    native_page_cap: int = 30
    ocr_page_cap: int = 8
    ocr_dpi: int = 200
    char_ceiling: int = 60_000
    chunk_chars: int = 12_000
    max_chunks: int = 5


@dataclass
class SanitizerConfig:
    debater_max_len: int = 400
    moderator_max_len: int = 500
    bullet_mode: bool = False
    meta_signals: list[str] | None = None  # None -> built-in list


@dataclass
class AppConfig:
    defaults: DefaultsConfig
    models: dict[str, ModelConfig]
    prompts: PromptsConfig
    retry: RetryConfig = field(default_factory=RetryConfig)
    ingestion: IngestionConfig = field(default_factory=IngestionConfig)
    sanitizer: SanitizerConfig = field(default_factory=SanitizerConfig)
    available_providers: set[str] = field(default_factory=set)


def _load_defaults(raw: dict) -> DefaultsConfig:
    base = DefaultsConfig()
    return DefaultsConfig(
        mode=str(raw.get("mode", base.mode)),
        rounds=int(raw.get("rounds", base.rounds)),
        min_rounds=int(raw.get("min_rounds", base.min_rounds)),
        max_rounds=int(raw.get("max_rounds", base.max_rounds)),
        convergent_max_rounds=int(raw.get("convergent_max_rounds", base.convergent_max_rounds)),
        request_timeout_sec=float(raw.get("request_timeout_sec", base.request_timeout_sec)),
        max_attachment_bytes=int(raw.get("max_attachment_bytes", base.max_attachment_bytes)),
        output_dir=Path(raw.get("output_dir", base.output_dir)),
        event_buffer=int(raw.get("event_buffer", base.event_buffer)),
    )


def load_config(settings_path: Path = _SETTINGS_PATH) -> AppConfig:
    """Load and validate configuration from settings.yaml.

    Raises FileNotFoundError if settings file missing.
    Logs roles whose API key is missing but does not raise. Callers check
    available_providers before building clients.
    """
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")

    with settings_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    defaults = _load_defaults(raw.get("defaults", {}))

    retry_raw = raw.get("retry", {})
    retry = RetryConfig(
        max_retries=int(retry_raw.get("max_retries", 5)),
        base_delay_sec=float(retry_raw.get("base_delay_sec", 5)),
        reset_margin_sec=float(retry_raw.get("reset_margin_sec", 1)),
        max_reset_wait_sec=float(retry_raw.get("max_reset_wait_sec", 120)),
    )

    ingestion_raw = raw.get("ingestion", {})
    ingestion = IngestionConfig(**{k: int(v) for k, v in ingestion_raw.items()})

    sanitizer_raw = raw.get("sanitizer", {})
    signals_raw = sanitizer_raw.get("meta_signals")
    sanitizer = SanitizerConfig(
        debater_max_len=int(sanitizer_raw.get("debater_max_len", 400)),
        moderator_max_len=int(sanitizer_raw.get("moderator_max_len", 500)),
        bullet_mode=bool(sanitizer_raw.get("bullet_mode", False)),
        meta_signals=[str(s) for s in signals_raw] if signals_raw else None,
    )

    prompts = PromptsConfig(**{k: str(v) for k, v in raw["prompts"].items()})

    models: dict[str, ModelConfig] = {}
    available_providers: set[str] = set()

    for role, model_raw in raw["models"].items():
        model_cfg = ModelConfig(
            name=role,
            sdk=model_raw["sdk"],
            model=model_raw["model"],
            api_key_env=model_raw["api_key_env"],
            timeout_sec=int(model_raw["timeout_sec"]),
            max_tokens=int(model_raw["max_tokens"]),
            base_url=model_raw.get("base_url"),
        )
        models[role] = model_cfg

        api_key = os.environ.get(model_raw["api_key_env"], "").strip()
        if api_key:
            available_providers.add(role)
            logger.info("Upstream role available: %s (%s)", role, model_cfg.model)
        else:
            logger.info(
                "Upstream role skipped (no API key): %s, set %s in .env",
                role,
                model_raw["api_key_env"],
            )

    return AppConfig(
        defaults=defaults,
        models=models,
        prompts=prompts,
        retry=retry,
        ingestion=ingestion,
        sanitizer=sanitizer,
        available_providers=available_providers,
    )
