from __future__ import annotations

import copy
import logging
from pathlib import Path
from typing import Any

_DEFAULTS: dict[str, Any] = {
    "rbf": {"kernel": "gaussian", "epsilon": 1.0},
    "solver": {"xtol": 1e-10, "maxfev": 0},
    "mesh": {"suffix": ".vtu"},
    "fetch": {"timeout": 30.0},
    "probe": {"tolerance": None},
    "streamlines": {"initial_step": 0.5, "min_step": 0.1, "max_steps": 2000},
    "render": {"hue_range": [0.667, 0.0], "n_colors": 256},
    "logging": {"level": "INFO", "format": "%(asctime)s %(levelname)s %(name)s: %(message)s"},
    "archive": {"workers": 4},
}


def load_yaml(path: str | Path) -> dict[str, Any]:
    path = Path(path)
    try:
        import yaml  # type: ignore
    except Exception as exc:  # pragma: no cover
        raise RuntimeError(
            "PyYAML is required to read configs. In your venv, try `python -c \"import yaml\"`."
        ) from exc
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected YAML mapping at top-level: {path}")
    return data


def get(dct: dict[str, Any], path: str, default: Any = None) -> Any:
    cur: Any = dct
    for part in path.split("."):
        if not isinstance(cur, dict) or part not in cur:
            return default
        cur = cur[part]
    return cur


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    out = dict(base)
    for key, val in override.items():
        if isinstance(val, dict) and isinstance(out.get(key), dict):
            out[key] = _merge(out[key], val)
        else:
            out[key] = val
    return out


def default_config() -> dict[str, Any]:
    return copy.deepcopy(_DEFAULTS)


def load_config(path: str | Path | None = None) -> dict[str, Any]:
    cfg = default_config()
    if path is None:
        return cfg
    return _merge(cfg, load_yaml(path))


def configure_logging(cfg: dict[str, Any]) -> None:
    level = str(get(cfg, "logging.level", "INFO")).upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=get(cfg, "logging.format"))
