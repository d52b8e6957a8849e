import copy
import json
from pathlib import Path
from typing import Any, Dict


DEFAULT_CONFIG: Dict[str, Any] = {
    "input": {"video_path": "data/input.mp4", "frames": 5},
    "pyramid": {"levels": 4, "width": None, "height": None},
    "gauss": {"sigma": 1.0, "radius": None},
    "canny": {"low_thresh": 20, "high_thresh": 60, "hysteresis_passes": 8},
    "debug": {"enabled": False, "dir": "outputs/debug_pyramid"},
    "outputs": {"root": "outputs", "metrics_csv": "outputs/pyramid_metrics.csv"},
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge override into base without mutating inputs."""
    merged = dict(base)
    for k, v in override.items():
        if isinstance(v, dict) and isinstance(merged.get(k), dict):
            merged[k] = _deep_merge(merged[k], v)
        else:
            merged[k] = v
    return merged


def _read_json(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Config root must be an object: {path}")
    return data


def load_config(
    default_path: Path | str = Path("configs/default.json"),
    local_path: Path | str = Path("configs/local.json"),
) -> Dict[str, Any]:
    """
    Load the built-in defaults, then the default file (if present), then local overrides.

    Missing files are skipped so the pyramid can be driven from code without any
    config on disk; malformed files raise.
    """
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    for path in (Path(default_path), Path(local_path)):
        if path.exists():
            cfg = _deep_merge(cfg, _read_json(path))
    return cfg


def ensure_output_dirs(cfg: Dict[str, Any]) -> None:
    """
    Create output and debug directories referenced by the config if they do not exist.
    """
    outputs = cfg.get("outputs", {})
    debug = cfg.get("debug", {})
    paths = [
        outputs.get("root"),
        debug.get("dir") if debug.get("enabled") else None,
        Path(outputs.get("metrics_csv", "")).parent if outputs.get("metrics_csv") else None,
    ]
    for p in paths:
        if not p:
            continue
        Path(p).mkdir(parents=True, exist_ok=True)
