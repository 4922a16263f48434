# -*- coding: utf-8 -*-
"""
filament_core.py — filament weight / price estimator for FDM prints

Goals:
- No UI, no HTTP, no file-format knowledge (volumes come from stl_volume).
- One source of truth for: print profile, weight breakdown, price rounding, config loading, text report.
- CLI and web service are thin shells importing this module.

Two estimation models are supported and selected per profile (ProfileModel):
- SIMPLE       infill + walls
- SHELL_AWARE  infill + walls + top/bottom shells

Both are engineering heuristics, not slicer geometry. Formulas are kept exactly as
published; do not "fix" them.
"""
from __future__ import annotations

import enum
import json
import math
import os
from dataclasses import dataclass, asdict
from decimal import Decimal, ROUND_HALF_UP

import numpy as np

from stl_volume import decode_volume


# ---------- Utilities ----------
def nz(v, d=0.0) -> float:
    try:
        f = float(v)
        if np.isfinite(f):
            return f
    except (TypeError, ValueError):
        pass
    return d


def deep_merge(dst: dict, src: dict) -> dict:
    """Deep-merges src into dst (in place). Returns dst."""
    for k, v in (src or {}).items():
        if isinstance(v, dict) and isinstance(dst.get(k), dict):
            deep_merge(dst[k], v)
        else:
            dst[k] = v
    return dst


# ---------- Errors ----------
class InvalidParameterError(ValueError):
    """Out-of-range or non-finite print-profile parameter."""


# ---------- Profile ----------
class ProfileModel(str, enum.Enum):
    SIMPLE = "simple"
    SHELL_AWARE = "shell"

    @classmethod
    def parse(cls, value) -> "ProfileModel":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            choices = ", ".join(m.value for m in cls)
            raise InvalidParameterError(f"model must be one of: {choices}; got {value!r}") from None


MATERIAL_PRESETS = {"PLA": 1.24, "ABS": 1.04, "PETG": 1.27}


@dataclass(frozen=True)
class PrintProfile:
    infill_density: float = 15.0         # %
    wall_thickness: float = 2 * 0.4      # mm, wall loops x nozzle
    top_bottom_thickness: float = 0.8    # mm
    layer_height: float = 0.2            # mm
    filament_density: float = 1.24       # g/cm³
    price_per_gram: float = 5.0          # cents/g
    model: ProfileModel = ProfileModel.SIMPLE


_NON_NEGATIVE_FIELDS = (
    "wall_thickness",
    "top_bottom_thickness",
    "layer_height",
    "filament_density",
    "price_per_gram",
)


def _finite_float(name: str, value) -> float:
    try:
        f = float(value)
    except (TypeError, ValueError):
        raise InvalidParameterError(f"{name} must be a number, got {value!r}") from None
    if not math.isfinite(f):
        raise InvalidParameterError(f"{name} must be finite, got {value!r}")
    return f


def validate_profile(profile: PrintProfile) -> PrintProfile:
    """Returns profile unchanged or raises InvalidParameterError."""
    if not isinstance(profile.model, ProfileModel):
        raise InvalidParameterError(f"model must be a ProfileModel, got {profile.model!r}")
    infill = _finite_float("infill_density", profile.infill_density)
    if not 0.0 <= infill <= 100.0:
        raise InvalidParameterError(f"infill_density must be within [0, 100], got {profile.infill_density!r}")
    for name in _NON_NEGATIVE_FIELDS:
        value = _finite_float(name, getattr(profile, name))
        if value < 0:
            raise InvalidParameterError(f"{name} must be >= 0, got {value!r}")
    return profile


# ---------- Breakdown ----------
@dataclass(frozen=True)
class UsageBreakdown:
    model: ProfileModel
    volume_model_cm3: float
    wall_volume_cm3: float
    wall_weight_g: float
    outer_shell_volume_cm3: float
    outer_shell_weight_g: float
    inner_shell_volume_cm3: float
    inner_shell_weight_g: float
    top_bottom_volume_cm3: float
    top_bottom_weight_g: float
    infill_volume_cm3: float
    infill_weight_g: float
    total_volume_cm3: float
    total_weight_g: float
    price_raw: float
    price: float

    @property
    def price_text(self) -> str:
        return format_price(self.price)

    def as_dict(self) -> dict:
        out = asdict(self)
        out["model"] = self.model.value
        out["price_text"] = self.price_text
        return out


# ---------- Price ----------
def round_price(value: float) -> float:
    """
    Half-up rounding to cents on the exact binary value of `value`
    (1.005 is stored as 1.00499..., so it rounds to 1.00).
    """
    return float(Decimal(value).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def format_price(value: float, symbol: str = "$") -> str:
    return f"{symbol}{round_price(value):.2f}"


def price_from_weight(total_weight_g: float, price_per_gram: float) -> float:
    """Weight (g) x price (cents/g) -> major currency units, unrounded."""
    return total_weight_g * price_per_gram / 100


# ---------- Formulas ----------
def _wall_volume_cm3(volume_cm3: float, wall_thickness: float) -> float:
    # thickness x volume^(2/3) area proxy
    return wall_thickness * (volume_cm3 ** (2 / 3))


def _infill_volume_cm3(volume_cm3: float, infill_density: float) -> float:
    return volume_cm3 * (infill_density / 100)


def _shell_volumes_cm3(volume_cm3: float, layer_height: float) -> tuple[float, float]:
    footprint_area = float(np.cbrt(volume_cm3 * 6))
    outer = footprint_area * layer_height / 10
    # two solid infill layers under the outer shell
    inner = footprint_area * 2 * layer_height / 10
    return outer, inner


def estimate(volume_cm3: float, profile: PrintProfile) -> UsageBreakdown:
    """
    Filament usage and price for a part of `volume_cm3` printed with `profile`.

    Raises InvalidParameterError on out-of-range or non-finite input.
    """
    volume = _finite_float("volume_cm3", volume_cm3)
    if volume < 0:
        raise InvalidParameterError(f"volume_cm3 must be >= 0, got {volume_cm3!r}")
    validate_profile(profile)

    density = float(profile.filament_density)
    infill_volume = _infill_volume_cm3(volume, float(profile.infill_density))
    wall_volume = _wall_volume_cm3(volume, float(profile.wall_thickness))

    if profile.model is ProfileModel.SHELL_AWARE:
        outer_volume, inner_volume = _shell_volumes_cm3(volume, float(profile.layer_height))
        top_bottom_volume = outer_volume + inner_volume
        total_volume = wall_volume + top_bottom_volume + infill_volume
    else:
        outer_volume = inner_volume = top_bottom_volume = 0.0
        total_volume = infill_volume + wall_volume

    total_weight = total_volume * density
    price_raw = price_from_weight(total_weight, float(profile.price_per_gram))

    return UsageBreakdown(
        model=profile.model,
        volume_model_cm3=volume,
        wall_volume_cm3=wall_volume,
        wall_weight_g=wall_volume * density,
        outer_shell_volume_cm3=outer_volume,
        outer_shell_weight_g=outer_volume * density,
        inner_shell_volume_cm3=inner_volume,
        inner_shell_weight_g=inner_volume * density,
        top_bottom_volume_cm3=top_bottom_volume,
        top_bottom_weight_g=top_bottom_volume * density,
        infill_volume_cm3=infill_volume,
        infill_weight_g=infill_volume * density,
        total_volume_cm3=total_volume,
        total_weight_g=total_weight,
        price_raw=price_raw,
        price=round_price(price_raw),
    )


def quote_buffer(buffer: bytes, profile: PrintProfile, *, volume_mode: str = "fast") -> UsageBreakdown:
    """Decode a binary STL buffer and estimate it. Decoder errors propagate unchanged."""
    volume_cm3 = decode_volume(buffer, mode=volume_mode)
    return estimate(volume_cm3, profile)


# ---------- Defaults ----------
DEFAULT_PRICING = {
    "currency": "USD",
    "currency_symbol": "$",
    "price_cents_per_g": 5,
    "default_material": "PLA",
    "profile": {
        "model": "simple",
        "infill_pct": 15,
        "wall_loops": 2,
        "nozzle_mm": 0.4,
        "top_bottom_mm": 0.8,
        "layer_height_mm": 0.2,
    },
    "limits": {"max_upload_mb": 10},
}


# ---------- Config loading (shared by CLI and web) ----------
def get_default_config_dir() -> str:
    """Folder with materials.json / pricing.json by default: next to filament_core.py."""
    return os.path.dirname(os.path.abspath(__file__))


def get_default_materials_path(config_dir: str | None = None) -> str:
    base = config_dir or get_default_config_dir()
    return os.path.join(base, "materials.json")


def get_default_pricing_path(config_dir: str | None = None) -> str:
    base = config_dir or get_default_config_dir()
    return os.path.join(base, "pricing.json")


def load_materials_json(path: str) -> dict:
    """
    materials.json -> {name: {"density_g_cm3": float, "price_cents_per_g": float | None}}
    Format: { "PLA": {"density_g_cm3": 1.24, "price_cents_per_g": 5}, ... }
    price_cents_per_g is optional; pricing.json's value is used when absent.
    """
    if not os.path.exists(path):
        raise FileNotFoundError(path)

    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)

    if not isinstance(data, dict) or not data:
        raise ValueError("materials.json: expected object {material: {...}}")

    materials = {}
    for name, row in data.items():
        if not isinstance(row, dict):
            raise ValueError(f"materials.json: invalid row for '{name}'")
        if "density_g_cm3" not in row:
            raise ValueError(f"materials.json: '{name}' missing density_g_cm3")
        density = nz(row["density_g_cm3"], -1.0)
        if density <= 0:
            raise ValueError(f"materials.json: '{name}' density_g_cm3 must be > 0")
        price = row.get("price_cents_per_g")
        materials[name] = {
            "density_g_cm3": density,
            "price_cents_per_g": None if price is None else float(price),
        }
    return materials


def load_pricing_json(path: str, *, base: dict | None = None, override: dict | None = None) -> dict:
    """
    pricing.json -> pricing dict.
    base: merged under the file (defaults to DEFAULT_PRICING).
    override: merged over the result (CLI --set).
    """
    if not os.path.exists(path):
        raise FileNotFoundError(path)

    with open(path, "r", encoding="utf-8") as f:
        cfg = json.load(f)

    if not isinstance(cfg, dict) or not cfg:
        raise ValueError("pricing.json: expected object")

    out = json.loads(json.dumps(base if isinstance(base, dict) else DEFAULT_PRICING))
    deep_merge(out, cfg)
    if override:
        deep_merge(out, override)
    for section in ("profile", "limits"):
        if not isinstance(out.get(section), dict):
            raise ValueError(f"pricing.json: '{section}' must be an object")
    return out


def resolve_material(materials: dict, material: str | float | None, default: str = "PLA") -> tuple[str, float, float | None]:
    """
    Material name or numeric density -> (label, density g/cm³, price cents/g or None).
    Names are matched case-insensitively against materials, then MATERIAL_PRESETS.
    """
    if material is None or str(material).strip() == "":
        material = default
    key = str(material).strip()
    by_lower = {name.lower(): name for name in materials}
    if key.lower() in by_lower:
        name = by_lower[key.lower()]
        row = materials[name]
        return name, float(row["density_g_cm3"]), row.get("price_cents_per_g")
    presets_lower = {name.lower(): name for name in MATERIAL_PRESETS}
    if key.lower() in presets_lower:
        name = presets_lower[key.lower()]
        return name, MATERIAL_PRESETS[name], None
    try:
        density = float(key)
    except ValueError:
        raise InvalidParameterError(f"unknown material {material!r}") from None
    return f"custom ({density:g} g/cm³)", density, None


def build_profile(
    pricing: dict,
    materials: dict,
    *,
    material: str | float | None = None,
    infill: float | None = None,
    model: str | ProfileModel | None = None,
    wall_loops: int | None = None,
    nozzle_mm: float | None = None,
    top_bottom_mm: float | None = None,
    layer_height_mm: float | None = None,
    price_per_gram: float | None = None,
    density: float | None = None,
) -> tuple[str, PrintProfile]:
    """
    pricing/materials config + request overrides -> (material label, validated PrintProfile).
    Explicit arguments win over config; wall thickness = wall loops x nozzle diameter.
    """
    p = (pricing or {}).get("profile", {}) or {}
    if not isinstance(p, dict):
        raise InvalidParameterError(f"pricing profile must be an object, got {p!r}")
    label, mat_density, mat_price = resolve_material(
        materials, material, default=str((pricing or {}).get("default_material", "PLA"))
    )
    if density is not None:
        mat_density = density
        label = f"custom ({nz(density):g} g/cm³)"

    loops = wall_loops if wall_loops is not None else p.get("wall_loops", 2)
    nozzle = nozzle_mm if nozzle_mm is not None else p.get("nozzle_mm", 0.4)
    if price_per_gram is None:
        price_per_gram = mat_price if mat_price is not None else (pricing or {}).get("price_cents_per_g", 5)

    profile = PrintProfile(
        infill_density=_finite_float("infill_density", infill if infill is not None else p.get("infill_pct", 15)),
        wall_thickness=_finite_float("wall_loops", loops) * _finite_float("nozzle_mm", nozzle),
        top_bottom_thickness=_finite_float(
            "top_bottom_thickness", top_bottom_mm if top_bottom_mm is not None else p.get("top_bottom_mm", 0.8)
        ),
        layer_height=_finite_float(
            "layer_height", layer_height_mm if layer_height_mm is not None else p.get("layer_height_mm", 0.2)
        ),
        filament_density=_finite_float("filament_density", mat_density),
        price_per_gram=_finite_float("price_per_gram", price_per_gram),
        model=ProfileModel.parse(model if model is not None else p.get("model", "simple")),
    )
    return label, validate_profile(profile)


def max_upload_bytes(pricing: dict) -> int:
    limits = (pricing or {}).get("limits", {}) or {}
    return int(nz(limits.get("max_upload_mb"), 10.0) * 1024 * 1024)


# ---------- Report (shared by CLI) ----------
def _line(label: str, volume_cm3: float, weight_g: float) -> str:
    return f"  {label:<22}{volume_cm3:>10.3f} cm³{weight_g:>10.3f} g\n"


def render_report(
    *,
    file_name: str,
    material_name: str,
    breakdown: UsageBreakdown,
    price_per_gram: float,
    currency_symbol: str = "$",
    calc_time_s: float = 0.0,
    brief: bool = True,
) -> str:
    bd = breakdown
    head = []
    head.append(f"Part: {file_name}\n")
    head.append(f"• Volume: model {bd.volume_model_cm3:.2f} cm³ → print {bd.total_volume_cm3:.2f} cm³\n")
    head.append(f"• Weight: {bd.total_weight_g:.2f} g | Model: {bd.model.value}\n")
    head.append(f"• Material: {material_name} ({nz(price_per_gram):.2f} ¢/g)\n")
    head.append("-" * 46 + "\n")

    body = []
    if not brief:
        body.append(_line("Walls", bd.wall_volume_cm3, bd.wall_weight_g))
        if bd.model is ProfileModel.SHELL_AWARE:
            body.append(_line("Outer shell", bd.outer_shell_volume_cm3, bd.outer_shell_weight_g))
            body.append(_line("Inner shell", bd.inner_shell_volume_cm3, bd.inner_shell_weight_g))
            body.append(_line("Top/bottom total", bd.top_bottom_volume_cm3, bd.top_bottom_weight_g))
        body.append(_line("Infill", bd.infill_volume_cm3, bd.infill_weight_g))
        body.append("-" * 46 + "\n")
    body.append(f"TOTAL: {format_price(bd.price, currency_symbol)} (raw {bd.price_raw:.4f})\n")
    body.append(f"Calculated in {calc_time_s:.4f} s\n")
    return "".join(head + body)
