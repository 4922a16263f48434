import json

import pytest

import filament_core as core
from filament_core import InvalidParameterError, ProfileModel


def test_round_price_half_up():
    assert core.round_price(0.0589) == 0.06
    assert core.round_price(0.125) == 0.13
    assert core.round_price(2.675) == 2.67  # stored as 2.67499999...
    assert core.round_price(1.005) == 1.0  # stored as 1.00499999...
    assert core.round_price(0.0) == 0.0


def test_format_price():
    assert core.format_price(0.0589) == "$0.06"
    assert core.format_price(12.0) == "$12.00"
    assert core.format_price(3.14159, "€") == "€3.14"


def test_price_from_weight_is_cents_to_major_units():
    assert core.price_from_weight(100.0, 5.0) == 5.0
    assert core.price_from_weight(0.0, 5.0) == 0.0


def _write_configs(tmp_path, materials=None, pricing=None):
    materials = materials if materials is not None else {
        "PLA": {"density_g_cm3": 1.24},
        "Silk PLA": {"density_g_cm3": 1.3, "price_cents_per_g": 9},
    }
    pricing = pricing if pricing is not None else {"price_cents_per_g": 6, "profile": {"infill_pct": 25}}
    m = tmp_path / "materials.json"
    p = tmp_path / "pricing.json"
    m.write_text(json.dumps(materials), encoding="utf-8")
    p.write_text(json.dumps(pricing), encoding="utf-8")
    return m, p


def test_load_materials_json(tmp_path):
    m, _ = _write_configs(tmp_path)
    materials = core.load_materials_json(str(m))
    assert materials["PLA"] == {"density_g_cm3": 1.24, "price_cents_per_g": None}
    assert materials["Silk PLA"]["price_cents_per_g"] == 9.0


@pytest.mark.parametrize(
    "payload, message",
    [
        ([], "expected object"),
        ({}, "expected object"),
        ({"PLA": 1.24}, "invalid row"),
        ({"PLA": {"price_cents_per_g": 5}}, "missing density_g_cm3"),
        ({"PLA": {"density_g_cm3": 0}}, "must be > 0"),
    ],
)
def test_load_materials_json_validation(tmp_path, payload, message):
    path = tmp_path / "materials.json"
    path.write_text(json.dumps(payload), encoding="utf-8")
    with pytest.raises(ValueError, match=message):
        core.load_materials_json(str(path))


def test_load_materials_json_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        core.load_materials_json(str(tmp_path / "nope.json"))


def test_load_pricing_json_merges_over_defaults(tmp_path):
    _, p = _write_configs(tmp_path)
    pricing = core.load_pricing_json(str(p), override={"profile": {"model": "shell"}})
    assert pricing["price_cents_per_g"] == 6
    assert pricing["profile"]["infill_pct"] == 25
    assert pricing["profile"]["wall_loops"] == 2
    assert pricing["profile"]["model"] == "shell"
    assert pricing["limits"]["max_upload_mb"] == 10
    # defaults are not mutated by merging
    assert core.DEFAULT_PRICING["profile"]["infill_pct"] == 15


def test_shipped_configs_load():
    materials = core.load_materials_json(core.get_default_materials_path())
    pricing = core.load_pricing_json(core.get_default_pricing_path())
    assert materials["PLA"]["density_g_cm3"] == 1.24
    assert materials["ABS"]["density_g_cm3"] == 1.04
    assert materials["PETG"]["density_g_cm3"] == 1.27
    assert pricing["price_cents_per_g"] == 5
    assert core.max_upload_bytes(pricing) == 10 * 1024 * 1024


def test_build_profile_defaults():
    label, profile = core.build_profile(core.DEFAULT_PRICING, {})
    assert label == "PLA"
    assert profile == core.PrintProfile()
    assert profile.wall_thickness == 2 * 0.4


def test_build_profile_uses_material_price_and_overrides(tmp_path):
    m, p = _write_configs(tmp_path)
    materials = core.load_materials_json(str(m))
    pricing = core.load_pricing_json(str(p))

    label, profile = core.build_profile(pricing, materials, material="silk pla")
    assert label == "Silk PLA"
    assert profile.filament_density == 1.3
    assert profile.price_per_gram == 9.0
    assert profile.infill_density == 25

    label, profile = core.build_profile(
        pricing, materials, material="PLA", infill=40, model="shell", wall_loops=3, nozzle_mm=0.6,
        layer_height_mm=0.28, top_bottom_mm=1.2,
    )
    assert label == "PLA"
    assert profile.price_per_gram == 6
    assert profile.infill_density == 40
    assert profile.model is ProfileModel.SHELL_AWARE
    assert profile.wall_thickness == 3 * 0.6
    assert profile.layer_height == 0.28
    assert profile.top_bottom_thickness == 1.2


def test_build_profile_numeric_material_and_presets():
    label, profile = core.build_profile(core.DEFAULT_PRICING, {}, material="1.04")
    assert profile.filament_density == 1.04
    assert label.startswith("custom")

    label, profile = core.build_profile(core.DEFAULT_PRICING, {}, material="petg")
    assert label == "PETG"
    assert profile.filament_density == 1.27

    label, profile = core.build_profile(core.DEFAULT_PRICING, {}, material="PLA", density=2.0)
    assert profile.filament_density == 2.0


@pytest.mark.parametrize(
    "kwargs",
    [
        {"material": "unobtainium"},
        {"material": "-1.0"},
        {"infill": 150},
        {"infill": -5},
        {"model": "slicer"},
        {"layer_height_mm": float("nan")},
        {"price_per_gram": -1},
    ],
)
def test_build_profile_rejects_bad_input(kwargs):
    with pytest.raises(InvalidParameterError):
        core.build_profile(core.DEFAULT_PRICING, {}, **kwargs)


def test_render_report_full_lists_components():
    bd = core.estimate(1.0, core.PrintProfile(model=ProfileModel.SHELL_AWARE))
    text = core.render_report(file_name="cube.stl", material_name="PLA", breakdown=bd, price_per_gram=5, brief=False)
    assert "Part: cube.stl" in text
    assert "Outer shell" in text
    assert "Infill" in text
    assert "TOTAL: $0.07" in text

    brief = core.render_report(file_name="cube.stl", material_name="PLA", breakdown=bd, price_per_gram=5)
    assert "Outer shell" not in brief
    assert "TOTAL: $0.07" in brief


@pytest.mark.parametrize("override", [{"profile": 5}, {"limits": "big"}])
def test_load_pricing_json_rejects_non_object_sections(tmp_path, override):
    _, p = _write_configs(tmp_path)
    with pytest.raises(ValueError, match="must be an object"):
        core.load_pricing_json(str(p), override=override)


def test_build_profile_rejects_non_object_profile():
    pricing = dict(core.DEFAULT_PRICING, profile=5)
    with pytest.raises(InvalidParameterError, match="profile"):
        core.build_profile(pricing, {})
