"""Settings for the download job core.

Values are loaded from the environment (prefix ``STEAMDL_``) or a ``.env``
file.  ``validate_config`` reports common misconfigurations without raising
so the host application can decide whether to start anyway.
"""
from __future__ import annotations

import logging
import os
import shutil
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class CoreSettings(BaseSettings):
    """Immutable settings loaded from environment / .env file."""

    # Download tool: invoked as ``<tool_path> <tool_args...>`` with
    # ``{target}`` and ``{destination}`` substituted in each argument.
    tool_path: str = "workshop-download"
    tool_args: List[str] = ["{target}", "{destination}"]
    download_root: Path = Path("downloads")
    job_db_path: str = "steamdl_jobs.db"

    max_runtime_seconds: float = 3600.0
    kill_grace_seconds: float = 5.0
    retention_seconds: float = 86400.0

    subscriber_buffer: int = 64
    overflow_wait_seconds: float = 0.0
    terminal_retention: int = 1024

    progress_save_interval: float = 1.0
    progress_pattern_version: str = "steamcmd-v1"
    persist_denied: bool = False
    line_limit: int = 1024 * 1024

    log_level: str = "INFO"
    log_format: str = "structured"  # "structured" or "json"

    model_config = SettingsConfigDict(env_prefix="STEAMDL_", env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> CoreSettings:
    return CoreSettings()


def validate_config(settings: Optional[CoreSettings] = None) -> List[Dict[str, str]]:
    """Check settings for common misconfigurations.

    Returns a list of dicts: [{"level": "WARNING"|"ERROR", "message": str}].
    """
    from .jobs.progress import PATTERN_TABLES

    if settings is None:
        settings = get_settings()
    issues: List[Dict[str, str]] = []

    # 1. Download tool must resolve to an executable
    if shutil.which(settings.tool_path) is None:
        issues.append({
            "level": "ERROR",
            "message": (
                f"Download tool {settings.tool_path!r} was not found on PATH or is not executable. "
                "Every submitted job will fail to launch."
            ),
        })

    # 2. Argument template must carry the target
    if not any("{target}" in arg for arg in settings.tool_args):
        issues.append({
            "level": "WARNING",
            "message": "tool_args does not reference {target}; the tool will not know what to download.",
        })

    # 3. Download root writable
    root = settings.download_root
    if root.exists() and not os.access(root, os.W_OK):
        issues.append({
            "level": "ERROR",
            "message": f"download_root ({root}) exists but is not writable.",
        })

    # 4. Unknown pattern table
    if settings.progress_pattern_version not in PATTERN_TABLES:
        issues.append({
            "level": "ERROR",
            "message": (
                f"progress_pattern_version={settings.progress_pattern_version!r} is unknown. "
                f"Known versions: {', '.join(sorted(PATTERN_TABLES))}"
            ),
        })

    # 5. Non-positive bounds
    for name in ("max_runtime_seconds", "kill_grace_seconds", "subscriber_buffer", "line_limit"):
        if getattr(settings, name) <= 0:
            issues.append({"level": "ERROR", "message": f"{name} must be > 0"})
    if settings.retention_seconds < 0:
        issues.append({"level": "ERROR", "message": "retention_seconds must be >= 0"})
    if settings.overflow_wait_seconds < 0:
        issues.append({"level": "ERROR", "message": "overflow_wait_seconds must be >= 0"})

    return issues
