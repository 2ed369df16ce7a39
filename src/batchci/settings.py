# settings.py
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional


def _truthy(value: str | None) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


def _opt_float(value: str | None, name: str) -> Optional[float]:
    if value is None or not value.strip():
        return None
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}") from None


def _opt_int(value: str | None, name: str) -> Optional[int]:
    if value is None or not value.strip():
        return None
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}") from None


@dataclass(frozen=True)
class Settings:
    """
    Process-level defaults, read from BATCHCI_* environment variables.

    CLI options override these.
    """
    workers: Optional[str] = None          # "2" or "a:production=true;b:platform=linux"
    workspace: str = "."
    stage_timeout: Optional[float] = None  # seconds
    max_parallel: Optional[int] = None
    fail_fast: bool = False
    report_api: Optional[str] = None


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    env = os.environ if environ is None else environ
    return Settings(
        workers=env.get("BATCHCI_WORKERS") or None,
        workspace=env.get("BATCHCI_WORKSPACE", "."),
        stage_timeout=_opt_float(env.get("BATCHCI_STAGE_TIMEOUT"), "BATCHCI_STAGE_TIMEOUT"),
        max_parallel=_opt_int(env.get("BATCHCI_MAX_PARALLEL"), "BATCHCI_MAX_PARALLEL"),
        fail_fast=_truthy(env.get("BATCHCI_FAIL_FAST")),
        report_api=env.get("BATCHCI_REPORT_API") or None,
    )
