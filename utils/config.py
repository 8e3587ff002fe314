# utils/config.py – Config utilities (YAML merge, nested-dict channels/exposures)

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Any, List, Tuple, Mapping
import yaml

__all__ = [
    "load_config",
    "SweepSettings",
    "sweep_settings",
    "channel_entries",
    "exposure_entries",
    "find_channel_folder",
    "full_scale",
    "image_bit_depth",
    "ProcessingSettings",
    "processing_settings",
]

# ────────────────────────────────────────────────
# Load & merge config
# ────────────────────────────────────────────────
_DEFAULT_CFG_PATH = Path(__file__).parent.parent / "config" / "default_config.yaml"


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as fh:
            return yaml.safe_load(fh) or {}
    except yaml.YAMLError as exc:
        raise RuntimeError(f"Failed to parse YAML config: {path}\n{exc}") from exc


def _merge_dict(dst: Dict[str, Any], src: Dict[str, Any]) -> Dict[str, Any]:
    """Recursive dict merge (src overwrites dst)."""
    for k, v in src.items():
        if isinstance(v, dict) and isinstance(dst.get(k), dict):
            dst[k] = _merge_dict(dst[k], v)
        else:
            dst[k] = v
    return dst


def load_config(project_cfg_path: Path | str | None = None) -> Dict[str, Any]:
    """Return merged config dict (default <- project).

    ``project_cfg_path`` may be a YAML file or a project directory holding
    ``config.yaml``; a missing project file leaves the defaults untouched.
    """
    cfg = _read_yaml(_DEFAULT_CFG_PATH)
    project_dir = None
    if project_cfg_path is not None:
        project_yaml = Path(project_cfg_path)
        if project_yaml.is_dir():
            project_yaml = project_yaml / "config.yaml"
        project_dir = project_yaml.parent
        if project_yaml.exists():
            cfg = _merge_dict(cfg, _read_yaml(project_yaml))
            cfg.setdefault("_paths", {})["config_file"] = str(project_yaml)
    meas = cfg.get("measurement", {})
    meas["channels"] = {str(k): v for k, v in (meas.get("channels") or {}).items()}
    meas["exposures"] = {
        str(k): v for k, v in (meas.get("exposures") or {}).items()
    }
    cfg["measurement"] = meas
    proc = cfg.get("processing", {})
    proc["absorbance_mode"] = str(proc.get("absorbance_mode", "slope_ratio"))
    cfg["processing"] = proc
    if project_dir is not None:
        cfg.setdefault("_paths", {})["project_dir"] = str(project_dir)
    return cfg


# ────────────────────────────────────────────────
# Acquisition settings
# ────────────────────────────────────────────────
@dataclass(frozen=True)
class SweepSettings:
    """Explicit sweep configuration handed to the sweep controller."""

    min_exposure: float
    max_exposure: float
    max_steps: int = 40
    replicates: int = 10
    force_max: bool = False
    use_auto_shutter: bool = True
    shutter_settle_s: float = 0.1
    ready_timeout_s: float = 2.0

    def __post_init__(self) -> None:
        if self.min_exposure <= 0:
            raise ValueError("min_exposure must be positive")
        if self.max_exposure < self.min_exposure:
            raise ValueError("max_exposure must not be below min_exposure")
        if self.max_steps < 1:
            raise ValueError("max_steps must be at least 1")


def sweep_settings(cfg: Mapping[str, Any]) -> SweepSettings:
    """Return :class:`SweepSettings` from the ``acquisition`` section."""
    acq = cfg.get("acquisition", {})
    return SweepSettings(
        min_exposure=float(acq.get("min_exposure_ms", 1.0)),
        max_exposure=float(acq.get("max_exposure_ms", 5000.0)),
        max_steps=int(acq.get("max_steps", 40)),
        replicates=int(acq.get("replicates", 10)),
        force_max=bool(acq.get("force_max", False)),
        use_auto_shutter=bool(acq.get("use_auto_shutter", True)),
        shutter_settle_s=float(acq.get("shutter_settle_s", 0.1)),
        ready_timeout_s=float(acq.get("ready_timeout_s", 2.0)),
    )


# ────────────────────────────────────────────────
# Measurement helpers (nested-dict access)
# ────────────────────────────────────────────────
def channel_entries(cfg: Dict[str, Any]) -> List[Tuple[str, str]]:
    """Return list of (label, folder) in config order."""
    chans = cfg["measurement"].get("channels", {})
    return [
        (str(label), (meta or {}).get("folder", str(label)))
        for label, meta in chans.items()
    ]


def exposure_entries(cfg: Dict[str, Any]) -> List[Tuple[float, str]]:
    """Return sorted list of (exposure_ms, folder) ascending by exposure."""
    exps = cfg["measurement"].get("exposures", {})
    return sorted(
        [(float(e), meta["folder"]) for e, meta in exps.items()], key=lambda x: x[0]
    )


def find_channel_folder(
    project: Path | str, label: str, cfg: Dict[str, Any]
) -> Path:
    """Return <project>/<channel_folder>; blank/dark use their own keys."""
    project = Path(project)
    meas = cfg["measurement"]
    if label == "foreground":
        return project / meas.get("foreground_folder", "blank")
    if label == "background":
        return project / meas.get("background_folder", "dark")
    folder = (meas["channels"][str(label)] or {}).get("folder", str(label))
    return project / folder


def full_scale(cfg: Mapping[str, Any]) -> int:
    """Return full-scale DN ``2^bit_depth - 1`` from configuration."""
    bits = int(cfg.get("sensor", {}).get("bit_depth", 0))
    if bits <= 0:
        return 0
    return (1 << bits) - 1


def image_bit_depth(bit_depth: int) -> int:
    """Return the container bit depth used for images of ``bit_depth``."""
    return 16 if bit_depth in (12, 14) else int(bit_depth)


# ────────────────────────────────────────────────
# Processing settings
# ────────────────────────────────────────────────
@dataclass(frozen=True)
class ProcessingSettings:
    """Explicit processing configuration handed to channel computations."""

    absorbance_mode: str = "slope_ratio"
    bound_sigma: float = 3.0
    confidence_z: float = 1.96
    relative_error: float = 0.01
    noise_fit_subsample: int = 1
    regression_chunk_rows: int = 64
    workers: int = 0

    def __post_init__(self) -> None:
        if self.absorbance_mode not in ("slope_ratio", "direct"):
            raise ValueError(f"Unknown absorbance_mode: {self.absorbance_mode}")


def processing_settings(cfg: Mapping[str, Any]) -> ProcessingSettings:
    """Return :class:`ProcessingSettings` from the ``processing`` section."""
    proc = cfg.get("processing", {})
    return ProcessingSettings(
        absorbance_mode=str(proc.get("absorbance_mode", "slope_ratio")),
        bound_sigma=float(proc.get("bound_sigma", 3.0)),
        confidence_z=float(proc.get("confidence_z", 1.96)),
        relative_error=float(proc.get("relative_error", 0.01)),
        noise_fit_subsample=int(proc.get("noise_fit_subsample", 1)),
        regression_chunk_rows=int(proc.get("regression_chunk_rows", 64)),
        workers=int(proc.get("workers", 0)),
    )
