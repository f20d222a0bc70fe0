# etk_config.py
from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from etk_core import ToolkitError
from etk_prompts import PRESETS, resolve_preset


class ConfigError(ToolkitError, ValueError):
    """Invalid or incomplete run configuration (raised before any work starts)."""


# --- rate budgets -------------------------------------------------------------

@dataclass(frozen=True)
class RateBudget:
    """
    Provider quota for one model.

    `slot_seconds` is the minimum spacing between two full-size requests;
    the quota window holds `window_requests` such requests of
    `max_tokens / window_requests` tokens each.
    """
    slot_seconds: float
    max_tokens: int = 1_000_000
    window_requests: int = 15

    @property
    def slot_tokens(self) -> float:
        return self.max_tokens / float(self.window_requests)


MODEL_BUDGETS: Dict[str, RateBudget] = {
    "gemini-1.5-pro":      RateBudget(slot_seconds=60.0 / 15),
    "gemini-1.5-flash":    RateBudget(slot_seconds=60.0 / 15),
    "gemini-1.5-flash-8b": RateBudget(slot_seconds=60.0 / 2),
}

# Gemini's OpenAI-compatible endpoint
DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai/"


def budget_for(model: str, table: Optional[Dict[str, RateBudget]] = None) -> RateBudget:
    table = MODEL_BUDGETS if table is None else table
    budget = table.get(model or "")
    if budget is None:
        valid = ", ".join(sorted(table))
        raise ConfigError(f"model {model!r} is not a valid model (available: {valid})")
    return budget


# --- run config ---------------------------------------------------------------

@dataclass
class RunConfig:
    file: Path
    api_key: str
    prompt: str
    instruction: str
    model: str
    budget: RateBudget
    directory: Path = Path("output")
    context_before: int = 0
    context_after: int = 0
    base_url: Optional[str] = DEFAULT_BASE_URL
    output: Optional[Path] = None
    max_attempts: int = 5
    backoff_base: float = 2.0
    backoff_max: float = 60.0
    estimator: str = "chars"
    max_workers: int = 0
    temperature: float = 0.3
    top_p: float = 0.8
    request_timeout: float = 300.0
    verbose: bool = False
    extras: Dict[str, str] = field(default_factory=dict)


# camelCase keys accepted in a JSON args file -> RunConfig field names
JSON_KEYS = {
    "file": "file",
    "directory": "directory",
    "contextBefore": "context_before",
    "contextAfter": "context_after",
    "APIKey": "api_key",
    "prompt": "prompt",
    "instruction": "instruction",
    "model": "model",
}

ESTIMATORS = ("chars", "tiktoken")


def load_json_config(path: Path) -> Dict[str, Any]:
    """
    Read a JSON args file and normalise its keys to RunConfig field names.
    Both the camelCase keys of the args file format and snake_case field
    names are accepted.
    """
    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigError(f"failed to read JSON file: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"failed to parse JSON file: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError("failed to parse JSON file: top level must be an object")

    values: Dict[str, Any] = {}
    for k, v in raw.items():
        values[JSON_KEYS.get(k, k)] = v
    return values


def validate_epub_path(path: str) -> Path:
    if not str(path or "").lower().endswith(".epub"):
        raise ConfigError("input file must be an .epub file")
    return Path(path)


def _int_field(values: Dict[str, Any], name: str, default: int, minimum: int = 0) -> int:
    v = values.get(name)
    if v is None:
        return default
    try:
        n = int(v)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be an integer, got {v!r}")
    if n < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {n}")
    return n


def _float_field(values: Dict[str, Any], name: str, default: float) -> float:
    v = values.get(name)
    if v is None:
        return default
    try:
        x = float(v)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be a number, got {v!r}")
    if x < 0:
        raise ConfigError(f"{name} must be >= 0, got {x}")
    return x


def _bool_field(values: Dict[str, Any], name: str, default: bool = False) -> bool:
    v = values.get(name)
    if v is None:
        return default
    if isinstance(v, bool):
        return v
    s = str(v).strip().lower()
    if s in ("1", "true", "yes", "on"):
        return True
    if s in ("0", "false", "no", "off", ""):
        return False
    raise ConfigError(f"{name} must be true or false, got {v!r}")


def _extras_field(values: Dict[str, Any]) -> Dict[str, str]:
    raw = values.get("extras")
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"extras must be an object of placeholder values, got {type(raw).__name__}")
    return {str(k): str(v) for k, v in raw.items()}


def build_config(values: Dict[str, Any], env: Optional[Dict[str, str]] = None) -> RunConfig:
    """
    Validate a flat mapping of settings (from flags or a JSON file) into a
    RunConfig. Missing or unknown settings raise ConfigError; nothing is
    opened or contacted here.
    """
    env = os.environ if env is None else env

    if not values.get("file"):
        raise ConfigError("file (-f) is required")
    file = validate_epub_path(values["file"])

    api_key = values.get("api_key") or env.get("GEMINI_API_KEY") or env.get("OPENAI_API_KEY")
    if not api_key:
        raise ConfigError("API key (-key) is required")

    model = values.get("model")
    if not model:
        raise ConfigError("model (-model) is required")
    budget = budget_for(model)

    extras = _extras_field(values)
    prompt = values.get("prompt")
    instruction = values.get("instruction")
    preset = values.get("preset")
    if preset:
        if preset not in PRESETS:
            raise ConfigError(f"unknown preset {preset!r} (available: {', '.join(sorted(PRESETS))})")
        p_instruction, p_prompt = resolve_preset(preset, **extras)
        instruction = instruction or p_instruction
        prompt = prompt or p_prompt
    if not prompt:
        raise ConfigError("prompt (-prompt) is required")
    if not instruction:
        raise ConfigError("instruction (-instruction) is required")

    estimator = values.get("estimator") or "chars"
    if estimator not in ESTIMATORS:
        raise ConfigError(f"estimator must be one of {', '.join(ESTIMATORS)}, got {estimator!r}")

    output = values.get("output")
    return RunConfig(
        file=file,
        api_key=str(api_key),
        prompt=str(prompt),
        instruction=str(instruction),
        model=str(model),
        budget=budget,
        directory=Path(os.path.normpath(values.get("directory") or "output")),
        context_before=_int_field(values, "context_before", 0),
        context_after=_int_field(values, "context_after", 0),
        base_url=values.get("base_url") or DEFAULT_BASE_URL,
        output=Path(output) if output else None,
        max_attempts=_int_field(values, "max_attempts", 5, minimum=1),
        backoff_base=_float_field(values, "backoff_base", 2.0),
        backoff_max=_float_field(values, "backoff_max", 60.0),
        estimator=estimator,
        max_workers=_int_field(values, "max_workers", 0),
        temperature=_float_field(values, "temperature", 0.3),
        top_p=_float_field(values, "top_p", 0.8),
        request_timeout=_float_field(values, "request_timeout", 300.0),
        verbose=_bool_field(values, "verbose"),
        extras=extras,
    )
