from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from common.gauss import GAUSS_MAX_RADIUS, gauss_radius_for_sigma


@dataclass(frozen=True)
class Parameters:
    levels: int = 4
    gauss_sigma: float = 1.0
    # None: derived from gauss_sigma.
    gauss_radius: Optional[int] = None
    canny_thr_low: int = 20
    canny_thr_high: int = 60
    hysteresis_passes: int = 8
    debug_dir: str | None = None

    def __post_init__(self) -> None:
        if self.levels < 1:
            raise ValueError(f"levels must be >= 1, got {self.levels}")
        if self.gauss_sigma <= 0:
            raise ValueError(f"gauss_sigma must be positive, got {self.gauss_sigma}")
        if self.gauss_radius is None:
            object.__setattr__(self, "gauss_radius", gauss_radius_for_sigma(self.gauss_sigma))
        if not 1 <= self.gauss_radius <= GAUSS_MAX_RADIUS:
            raise ValueError(f"gauss_radius must be in [1, {GAUSS_MAX_RADIUS}], got {self.gauss_radius}")
        if self.canny_thr_low < 0 or self.canny_thr_high < self.canny_thr_low:
            raise ValueError(
                f"Invalid thresholds: low={self.canny_thr_low} high={self.canny_thr_high}"
            )
        if self.hysteresis_passes < 0:
            raise ValueError(f"hysteresis_passes must be >= 0, got {self.hysteresis_passes}")

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "Parameters":
        pyramid_cfg = cfg.get("pyramid", {})
        gauss_cfg = cfg.get("gauss", {})
        canny_cfg = cfg.get("canny", {})
        debug_cfg = cfg.get("debug", {})

        radius = gauss_cfg.get("radius")
        return cls(
            levels=int(pyramid_cfg.get("levels", 4)),
            gauss_sigma=float(gauss_cfg.get("sigma", 1.0)),
            gauss_radius=int(radius) if radius is not None else None,
            canny_thr_low=int(canny_cfg.get("low_thresh", 20)),
            canny_thr_high=int(canny_cfg.get("high_thresh", 60)),
            hysteresis_passes=int(canny_cfg.get("hysteresis_passes", 8)),
            debug_dir=debug_cfg.get("dir") if debug_cfg.get("enabled") else None,
        )
