import json
import math
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional, Tuple

from perturbzoom.period import get_period_rule

DEFAULTS: Dict[str, Any] = {
    "center": ["-0.75", "0.0"],
    "pixel_size": 0.005,
    "width": 640,
    "height": 480,
    "exponent": 2,
    "iteration_cap": 2000,
    "worker_count": 4,
    "board_size": 64,
    "batch_iterations": 50,
    "period_rule": "fibonacci",
    "backend": "auto",
    "glitch_tolerance": 0.5,
    "escape_radius_sq": 1e10,
    "min_precision_digits": 50,
    "max_precision_digits": 3000,
    "rebalance_interval": 0.05,
    "output": "result.npz",
}

def load_config(config_path: Optional[str]) -> Dict[str, Any]:
    if config_path:
        with open(config_path, "r", encoding="utf-8") as f:
            cfg = json.load(f)
        if not isinstance(cfg, dict):
            raise ValueError("Config JSON must be an object.")
        return cfg
    return dict(DEFAULTS)

def _positive_int(cfg: Dict[str, Any], key: str) -> int:
    v = int(cfg[key])
    if v <= 0:
        raise ValueError(f"{key} must be positive.")
    return v

def normalise_config(cfg: Dict[str, Any]) -> Dict[str, Any]:
    required = ["center", "pixel_size", "width", "height", "iteration_cap"]
    for r in required:
        if r not in cfg:
            raise ValueError(f"Missing config field: {r}")

    out = dict(DEFAULTS)
    out.update(cfg)

    center = out["center"]
    if not (isinstance(center, (list, tuple)) and len(center) == 2):
        raise ValueError("center must be [re, im].")
    # Kept as strings so the reference centre is parsed at full precision.
    out["center"] = [str(center[0]), str(center[1])]

    pixel_size = float(out["pixel_size"])
    if not math.isfinite(pixel_size) or pixel_size <= 0:
        raise ValueError("pixel_size must be a positive finite number.")
    out["pixel_size"] = pixel_size

    for key in ("width", "height", "iteration_cap", "worker_count", "board_size", "batch_iterations"):
        out[key] = _positive_int(out, key)

    out["exponent"] = int(out["exponent"])
    if out["exponent"] < 2:
        raise ValueError("exponent must be >= 2.")

    out["period_rule"] = str(out["period_rule"])
    get_period_rule(out["period_rule"])

    out["backend"] = str(out["backend"])
    if out["backend"] not in ("auto", "cpu", "gpu"):
        raise ValueError("backend must be one of: auto, cpu, gpu")

    out["glitch_tolerance"] = float(out["glitch_tolerance"])
    if not 0 < out["glitch_tolerance"] < 1:
        raise ValueError("glitch_tolerance must be in (0, 1).")

    out["escape_radius_sq"] = float(out["escape_radius_sq"])
    if out["escape_radius_sq"] < 4.0:
        raise ValueError("escape_radius_sq must be >= 4.")

    out["min_precision_digits"] = int(out["min_precision_digits"])
    out["max_precision_digits"] = int(out["max_precision_digits"])
    if out["min_precision_digits"] > out["max_precision_digits"]:
        raise ValueError("min_precision_digits must not exceed max_precision_digits.")

    out["rebalance_interval"] = float(out["rebalance_interval"])
    out["output"] = str(out["output"])
    return out


@dataclass(frozen=True)
class SessionConfig:
    center: Tuple[str, str]
    pixel_size: float
    width: int
    height: int
    iteration_cap: int
    exponent: int = 2
    worker_count: int = 4
    board_size: int = 64
    batch_iterations: int = 50
    period_rule: str = "fibonacci"
    backend: str = "auto"
    glitch_tolerance: float = 0.5
    escape_radius_sq: float = 1e10
    min_precision_digits: int = 50
    max_precision_digits: int = 3000
    rebalance_interval: float = 0.05
    output: str = "result.npz"

    @classmethod
    def from_dict(cls, cfg: Dict[str, Any]) -> "SessionConfig":
        norm = normalise_config(cfg)
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in norm.items() if k in known}
        kwargs["center"] = tuple(kwargs["center"])
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        d = {f.name: getattr(self, f.name) for f in fields(self)}
        d["center"] = list(self.center)
        return d
