# transcoder/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal

from transcoder.infra.logging_config import get_logger

logger = get_logger(__name__)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="TRANSCODER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: Literal["dev", "staging", "prod"] = "dev"
    log_level: str = "INFO"
    log_json: bool = False

    # Security policy defaults (a fresh SecurityPolicy is built from these per call)
    temp_dir: str | None = None  # None = system temp dir
    max_file_size_mb: int = 100
    command_timeout_seconds: float = 30.0
    validation_enabled: bool = True
    # SECURITY: Only these executables may ever be spawned
    allowed_commands: list[str] = ["darktable-cli"]

    # RAW conversion
    raw_converter_command: str = "darktable-cli"

    # Encoding defaults
    default_max_bytes: int = 7 * 1024 * 1024  # 7 MB
    default_quality: int = 85
    default_output_format: Literal["png", "jpeg"] = "png"

    # SECURITY: Decompression bomb protection (parsing limit, not output limit).
    # High-resolution RAW exports (60MP+) must still decode.
    max_image_pixels: int = 120_000_000

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def max_file_size_bytes(self) -> int:
        return self.max_file_size_mb * 1024 * 1024

    def validate_required_for_production(self) -> list[str]:
        """Settings that are invalid in production"""
        if not self.is_production:
            return []

        problems = []
        if not self.validation_enabled:
            problems.append("validation_enabled")
        if self.raw_converter_command not in self.allowed_commands:
            problems.append("raw_converter_command (not in allowed_commands)")
        return problems


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    if not s.validation_enabled:
        warnings.append("validation_enabled=False: path and argument checks are skipped.")

    if s.raw_converter_command not in s.allowed_commands:
        warnings.append(
            f"raw_converter_command={s.raw_converter_command!r} is not in allowed_commands "
            "(RAW conversion will be refused)."
        )

    extra = [c for c in s.allowed_commands if c != s.raw_converter_command]
    if extra:
        warnings.append(f"allowed_commands contains extra executables: {', '.join(extra)}")

    if s.command_timeout_seconds > 300:
        warnings.append(f"command_timeout_seconds={s.command_timeout_seconds} is unusually long.")

    if s.max_file_size_mb > 500:
        warnings.append(f"max_file_size_mb={s.max_file_size_mb} allows very large inputs.")

    return warnings


def validate_or_warn(s: "Settings") -> None:
    """
    In prod: enforce safe settings (hard fail).
    In non-prod: warn only.
    """
    problems = s.validate_required_for_production()
    if problems:
        raise RuntimeError(f"Unsafe settings for production: {', '.join(problems)}")

    for msg in warn_on_risky_config(s):
        logger.warning(f"[config] {msg}")


settings = Settings()
validate_or_warn(settings)
