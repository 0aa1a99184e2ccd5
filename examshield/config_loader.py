"""
Configuration loader for session settings.

Handles loading and validating the settings file that tunes warning
thresholds, tick rate, persistence timeouts and code execution limits.
"""

import json
import sys
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Optional, Tuple


@dataclass
class SessionSettings:
    """
    Tunable settings of an exam session.

    Attributes:
        warn_threshold: Highest violation total that only triggers the first warning
        auto_submit_threshold: Violation total that auto-submits the exam
        tick_interval_seconds: Seconds per coding timer tick
        persistence_timeout_seconds: Timeout of each record store call
        persistence_retries: Tries per store call on the normal path
        auto_submit_retries: Tries per store call while auto-submitting
        retry_backoff_seconds: Base delay between tries
        default_language: Language of new code buffers
        run_timeout_seconds: Time limit for a code run
        run_memory_limit_mb: Memory limit for a code run (Unix only)
    """
    warn_threshold: int = 5
    auto_submit_threshold: int = 10
    tick_interval_seconds: float = 1.0
    persistence_timeout_seconds: float = 10.0
    persistence_retries: int = 3
    auto_submit_retries: int = 1
    retry_backoff_seconds: float = 0.5
    default_language: str = "python"
    run_timeout_seconds: float = 5.0
    run_memory_limit_mb: int = 256

    @staticmethod
    def from_dict(data: dict) -> 'SessionSettings':
        """Create SessionSettings from a dictionary, falling back to defaults."""
        defaults = SessionSettings()
        return SessionSettings(
            warn_threshold=int(data.get('warn_threshold', defaults.warn_threshold)),
            auto_submit_threshold=int(data.get('auto_submit_threshold', defaults.auto_submit_threshold)),
            tick_interval_seconds=float(data.get('tick_interval_seconds', defaults.tick_interval_seconds)),
            persistence_timeout_seconds=float(
                data.get('persistence_timeout_seconds', defaults.persistence_timeout_seconds)
            ),
            persistence_retries=int(data.get('persistence_retries', defaults.persistence_retries)),
            auto_submit_retries=int(data.get('auto_submit_retries', defaults.auto_submit_retries)),
            retry_backoff_seconds=float(data.get('retry_backoff_seconds', defaults.retry_backoff_seconds)),
            default_language=data.get('default_language', defaults.default_language),
            run_timeout_seconds=float(data.get('run_timeout_seconds', defaults.run_timeout_seconds)),
            run_memory_limit_mb=int(data.get('run_memory_limit_mb', defaults.run_memory_limit_mb))
        )

    def validate(self) -> Tuple[bool, str]:
        """
        Validate settings consistency.

        Returns:
            Tuple of (is_valid, error_message)
        """
        if self.warn_threshold < 1:
            return False, "warn_threshold must be at least 1"

        if self.auto_submit_threshold <= self.warn_threshold:
            return False, (
                f"auto_submit_threshold ({self.auto_submit_threshold}) must be greater "
                f"than warn_threshold ({self.warn_threshold})"
            )

        if self.tick_interval_seconds <= 0:
            return False, "tick_interval_seconds must be positive"

        if self.persistence_timeout_seconds <= 0:
            return False, "persistence_timeout_seconds must be positive"

        if self.persistence_retries < 1 or self.auto_submit_retries < 1:
            return False, "Retry counts must be at least 1"

        if self.retry_backoff_seconds < 0:
            return False, "retry_backoff_seconds must be non-negative"

        if self.run_timeout_seconds <= 0 or self.run_memory_limit_mb <= 0:
            return False, "Code run limits must be positive"

        return True, ""


def load_config(config_path: Optional[Path] = None) -> SessionSettings:
    """
    Load session settings from a JSON file.

    Args:
        config_path: Path to the settings file. If None, looks for
                    'settings.json' next to the executable/script.

    Returns:
        SessionSettings with validated values

    Raises:
        ValueError: If the file is unreadable or the settings are invalid
    """
    if config_path is None:
        if getattr(sys, 'frozen', False):
            exe_dir = Path(sys.executable).parent
        else:
            exe_dir = Path(__file__).parent.parent

        config_path = exe_dir / "settings.json"

    if not config_path.exists():
        print(f"Warning: Settings file '{config_path}' not found. Using default settings.")
        return SessionSettings()

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in settings file: {e}")
    except OSError as e:
        raise ValueError(f"Error reading settings file: {e}")

    try:
        settings = SessionSettings.from_dict(data)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid settings value: {e}")

    is_valid, error_message = settings.validate()
    if not is_valid:
        raise ValueError(f"Invalid settings: {error_message}")

    return settings


def create_sample_config(output_path: Path):
    """
    Create a sample settings file.

    Args:
        output_path: Path where to save the sample settings
    """
    sample = asdict(SessionSettings())
    sample["_comment"] = "Sample session settings. Adjust values as needed."
    sample["_instructions"] = {
        "warn_threshold": "Violations up to this total show a gentle warning",
        "auto_submit_threshold": "At this many violations the exam is auto-submitted",
        "tick_interval_seconds": "Seconds per coding timer tick",
        "persistence_timeout_seconds": "How long a single save may take before it is retried",
        "persistence_retries": "How many times a save is tried before an error is shown",
        "auto_submit_retries": "How many times each save is tried during an auto-submit",
        "retry_backoff_seconds": "Base delay between save retries",
        "default_language": "Language of new code buffers (python or javascript)",
        "run_timeout_seconds": "Time limit for running candidate code",
        "run_memory_limit_mb": "Memory limit for running candidate code (Unix only)"
    }

    with open(output_path, 'w', encoding='utf-8') as f:
        json.dump(sample, f, indent=2)

    print(f"Sample settings created at: {output_path}")
