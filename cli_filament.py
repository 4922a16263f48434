# -*- coding: utf-8 -*-
"""
CLI filament quote for binary STL files — no UI, same core as the web service.

Examples:
  python cli_filament.py part.stl --material PETG --infill 20 --json
  python cli_filament.py a.stl b.stl --model shell --per-object --text --full

Guarantees:
• Every file is decoded from its own bytes; nothing is cached between files.
• Formulas live in filament_core / stl_volume only.
• materials.json and pricing.json are supported (+ point overrides with --set).
• Files can be processed in parallel (--workers N) with deterministic aggregation.


JSON contract (--json):
  {
    "success": <bool>,             # false if any file failed
    "count": <int>,                # files processed successfully
    "per_object": [                # with --per-object, else null
      {
        "file": "<name>",
        "material": "<label>",
        "model": "simple" | "shell",
        "price_cents_per_g": <float>,
        "volume_model_cm3": <float>,
        "volume_print_cm3": <float>,
        "weight_g": <float>,
        "usage": {...},            # full UsageBreakdown
        "price": <float>,
        "price_text": "$X.XX"
      }, ...
    ],
    "summary": {                   # without --per-object, else null
      "material": "<label>",
      "model": "simple" | "shell",
      "price_cents_per_g": <float>,
      "volume_model_cm3": <float>,
      "volume_print_cm3": <float>,
      "weight_g": <float>,
      "price": <float>,            # sum of per-file rounded prices
      "price_text": "$X.XX"
    },
    "errors": [{"file": "<name>", "kind": "<error class>", "error": "<message>"}],
    "count_ok": <int>,
    "count_failed": <int>,
    "time_s": <float>
  }

Exit codes: 0 success; 1 one or more files failed; 2 bad arguments or config.
"""
from __future__ import annotations

import os, sys, json, time, argparse
from concurrent.futures import ProcessPoolExecutor, as_completed
from typing import List

import filament_core as core
from stl_volume import VOLUME_MODES, stl_file_volume_cm3

BASE_DIR = os.path.dirname(os.path.abspath(__file__))


# ---------- Utilities ----------
def set_by_dotted_path(d: dict, path: str, value):
    """Sets a value by dotted path (e.g. 'profile.infill_pct'), creating nested dicts as needed."""
    keys = path.split('.')
    cur = d
    for k in keys[:-1]:
        if k not in cur or not isinstance(cur[k], dict):
            cur[k] = {}
        cur = cur[k]
    cur[keys[-1]] = value


def parse_kv_override(pairs):
    """Parses key=val overrides from --set. Tries bool/int/float, otherwise keeps the string."""
    out = {}
    for kv in pairs or []:
        if '=' not in kv:
            raise ValueError(f"Invalid override '{kv}', expected key=val")
        k, v = kv.split('=', 1)
        vv = v
        try:
            if v.lower() in ('true', 'false'):
                vv = (v.lower() == 'true')
            elif '.' in v:
                vv = float(v)
            else:
                vv = int(v)
        except ValueError:
            pass
        set_by_dotted_path(out, k, vv)
    return out


# ---------- Config loading ----------
class ConfigError(Exception):
    """CLI configuration error (missing file, bad JSON, validation)."""


def resolve_config_paths(config_dir: str | None = None) -> tuple[str, str]:
    """Finds materials.json and pricing.json in config_dir, else cwd (if both exist), else next to the script."""
    if config_dir:
        base_dir = os.path.abspath(os.path.expanduser(config_dir))
    else:
        cwd = os.getcwd()
        cwd_materials = os.path.join(cwd, "materials.json")
        cwd_pricing = os.path.join(cwd, "pricing.json")
        if os.path.exists(cwd_materials) and os.path.exists(cwd_pricing):
            base_dir = cwd
        else:
            base_dir = BASE_DIR
    return (
        os.path.join(base_dir, "materials.json"),
        os.path.join(base_dir, "pricing.json"),
    )


def load_configs_via_core(config_dir: str | None, override: dict | None = None) -> tuple[dict, dict, str, str]:
    """Loads materials/pricing through filament_core as the single source of truth."""
    materials_path, pricing_path = resolve_config_paths(config_dir)
    try:
        materials = core.load_materials_json(materials_path)
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {e.filename or e}") from None
    except json.JSONDecodeError as e:
        raise ConfigError(
            f"materials.json: JSON error ({e.msg}, line {e.lineno}, column {e.colno})"
        ) from None
    except ValueError as e:
        raise ConfigError(str(e)) from None

    try:
        pricing = core.load_pricing_json(pricing_path, override=override)
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {e.filename or e}") from None
    except json.JSONDecodeError as e:
        raise ConfigError(
            f"pricing.json: JSON error ({e.msg}, line {e.lineno}, column {e.colno})"
        ) from None
    except ValueError as e:
        raise ConfigError(str(e)) from None
    return materials, pricing, materials_path, pricing_path


def finalize_json_payload(payload: dict, errors: List[dict], count_ok: int) -> dict:
    """Adds error fields and final counters to the JSON payload."""
    payload["errors"] = list(errors)
    payload["count_failed"] = len(errors)
    payload["count_ok"] = int(count_ok)
    payload["success"] = len(errors) == 0
    return payload


def _error_entry(path: str, exc: Exception) -> dict:
    return {"file": os.path.basename(path), "kind": type(exc).__name__, "error": str(exc)}


# ---------- One file ----------
def _compute_one_file(
    path: str,
    *,
    profile: core.PrintProfile,
    material_label: str,
    volume_mode: str,
) -> dict:
    """Process worker: decodes and estimates one file."""
    t0 = time.perf_counter()

    if not os.path.exists(path):
        raise FileNotFoundError(f"File not found: {path}")
    volume_cm3 = stl_file_volume_cm3(path, mode=volume_mode)
    bd = core.estimate(volume_cm3, profile)

    return {
        "file": os.path.basename(path),
        "material": material_label,
        "model": bd.model.value,
        "price_cents_per_g": float(profile.price_per_gram),
        "volume_model_cm3": float(bd.volume_model_cm3),
        "volume_print_cm3": float(bd.total_volume_cm3),
        "weight_g": float(bd.total_weight_g),
        "usage": bd.as_dict(),
        "price": float(bd.price),
        "price_text": bd.price_text,
        "calc_seconds": time.perf_counter() - t0,
    }


def _breakdown_from_result(r: dict) -> core.UsageBreakdown:
    usage = dict(r["usage"])
    usage.pop("price_text", None)
    usage["model"] = core.ProfileModel(usage["model"])
    return core.UsageBreakdown(**usage)


# ---------- File set ----------
def compute_for_files(
    files: List[str],
    *,
    profile: core.PrintProfile,
    material_label: str,
    currency_symbol: str = "$",
    brief: bool = True,
    per_object: bool = False,
    as_json: bool = False,
    workers: int = 1,
    volume_mode: str = "fast",
    errors: List[dict] | None = None,
) -> dict:
    """
    Computes a set of files, optionally in parallel.
    Returns a JSON payload (as_json=True) or {"text": "..."}.
    """
    t0 = time.time()

    results: List[dict] = []
    errors = errors if errors is not None else []
    file_list = list(files)

    if workers and workers > 1 and len(file_list) > 1:
        with ProcessPoolExecutor(max_workers=int(workers)) as ex:
            futs = {
                ex.submit(
                    _compute_one_file,
                    p,
                    profile=profile,
                    material_label=material_label,
                    volume_mode=volume_mode,
                ): p
                for p in file_list
            }
            for fut in as_completed(futs):
                path = futs[fut]
                try:
                    results.append(fut.result())
                except (OSError, ValueError) as exc:
                    errors.append(_error_entry(path, exc))
    else:
        for p in file_list:
            try:
                results.append(
                    _compute_one_file(
                        p,
                        profile=profile,
                        material_label=material_label,
                        volume_mode=volume_mode,
                    )
                )
            except (OSError, ValueError) as exc:
                errors.append(_error_entry(p, exc))

    # same order regardless of worker count
    results.sort(key=lambda r: r["file"])
    errors.sort(key=lambda e: e["file"])

    grand = {"V_model_cm3": 0.0, "V_print_cm3": 0.0, "weight_g": 0.0, "price": 0.0}
    for r in results:
        grand["V_model_cm3"] += r["volume_model_cm3"]
        grand["V_print_cm3"] += r["volume_print_cm3"]
        grand["weight_g"] += r["weight_g"]
        grand["price"] += r["price"]
    grand["price"] = core.round_price(grand["price"])

    calc_time_s = time.time() - t0

    # ---------- JSON ----------
    if as_json:
        payload = {
            "success": True,
            "count": len(results),
            "per_object": results if per_object else None,
            "summary": None,
            "time_s": calc_time_s,
        }
        if not per_object:
            payload["summary"] = {
                "material": material_label,
                "model": profile.model.value,
                "price_cents_per_g": float(profile.price_per_gram),
                "volume_model_cm3": grand["V_model_cm3"],
                "volume_print_cm3": grand["V_print_cm3"],
                "weight_g": grand["weight_g"],
                "price": grand["price"],
                "price_text": core.format_price(grand["price"], currency_symbol),
            }
        return finalize_json_payload(payload, errors, len(results))

    # ---------- TEXT ----------
    lines: List[str] = []
    if per_object:
        for r in results:
            lines.append(core.render_report(
                file_name=r["file"],
                material_name=r["material"],
                breakdown=_breakdown_from_result(r),
                price_per_gram=r["price_cents_per_g"],
                currency_symbol=currency_symbol,
                calc_time_s=r["calc_seconds"],
                brief=brief,
            ))
            lines.append("\n")
        return {"text": "".join(lines).rstrip()}

    lines.append(f"Assembly ({len(results)} files): {'; '.join(r['file'] for r in results)}\n")
    lines.append(f"• Volume: model {grand['V_model_cm3']:.2f} cm³ → print {grand['V_print_cm3']:.2f} cm³\n")
    lines.append(f"• Weight: {grand['weight_g']:.2f} g | Model: {profile.model.value}\n")
    lines.append(f"• Material: {material_label} ({profile.price_per_gram:.2f} ¢/g)\n")
    lines.append("-" * 46 + "\n")
    lines.append(f"TOTAL: {core.format_price(grand['price'], currency_symbol)}\n")
    lines.append(f"Calculated in {calc_time_s:.4f} s")
    return {"text": "".join(lines)}


# ---------- CLI ----------
def build_arg_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Filament weight and price quote for binary STL files")
    ap.add_argument('files', nargs='+', help='Paths to binary .stl models')
    ap.add_argument('--set', dest='overrides', action='append',
                    help='Override pricing.json values (key=val, e.g. profile.infill_pct=20). Repeatable.')
    ap.add_argument('--config-dir', default=None,
                    help='Folder with materials.json and pricing.json (default: cwd or next to the script)')

    ap.add_argument('--material', required=False, help='Material name from materials.json or a density in g/cm³')
    ap.add_argument('--density', type=float, default=None, help='Filament density g/cm³ (overrides --material density)')
    ap.add_argument('--infill', type=float, default=None, help='Infill %% (0-100)')
    ap.add_argument('--model', choices=[m.value for m in core.ProfileModel], default=None,
                    help='Estimation model: simple (walls + infill) or shell (walls + top/bottom + infill)')
    ap.add_argument('--wall-loops', type=int, default=None, help='Wall loop count')
    ap.add_argument('--nozzle', type=float, default=None, help='Nozzle diameter, mm')
    ap.add_argument('--layer-height', type=float, default=None, help='Layer height, mm')
    ap.add_argument('--top-bottom', type=float, default=None, help='Top/bottom shell thickness, mm')
    ap.add_argument('--price-per-gram', type=float, default=None, help='Price, cents per gram')
    ap.add_argument('--volume-mode', choices=list(VOLUME_MODES), default='fast',
                    help='Volume decoding: fast (numpy) or stream (sequential, reference arithmetic)')

    fmt = ap.add_mutually_exclusive_group()
    fmt.add_argument('--json', action='store_true', help='JSON output')
    fmt.add_argument('--text', action='store_true', help='Text report (default)')

    ap.add_argument('--full', dest='brief', action='store_false', help='Full report with per-component volumes')
    ap.add_argument('--per-object', action='store_true', help='Report each file separately (default: one summary)')
    ap.add_argument('--workers', type=int, default=1, help='Processes for parallel file handling (>1 enables it)')
    return ap


def main(argv: List[str] | None = None):
    """CLI entry point: parses arguments, loads configs, builds the profile, computes and prints."""
    if hasattr(sys.stdout, "reconfigure"):
        sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    if hasattr(sys.stderr, "reconfigure"):
        sys.stderr.reconfigure(encoding="utf-8", errors="replace")

    args = build_arg_parser().parse_args(argv)

    try:
        overrides = parse_kv_override(args.overrides)
    except ValueError as e:
        print(f"Invalid --set: {e}", file=sys.stderr)
        sys.exit(2)

    try:
        materials, pricing, materials_path, pricing_path = load_configs_via_core(args.config_dir, overrides)
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        sys.exit(2)

    print(f"[cli] using materials: {materials_path}", file=sys.stderr)
    print(f"[cli] using pricing  : {pricing_path}", file=sys.stderr)

    try:
        material_label, profile = core.build_profile(
            pricing,
            materials,
            material=args.material,
            infill=args.infill,
            model=args.model,
            wall_loops=args.wall_loops,
            nozzle_mm=args.nozzle,
            top_bottom_mm=args.top_bottom,
            layer_height_mm=args.layer_height,
            price_per_gram=args.price_per_gram,
            density=args.density,
        )
    except core.InvalidParameterError as e:
        print(f"Invalid parameter: {e}", file=sys.stderr)
        sys.exit(2)

    errors: List[dict] = []
    payload = compute_for_files(
        args.files,
        profile=profile,
        material_label=material_label,
        currency_symbol=str(pricing.get("currency_symbol", "$")),
        brief=bool(args.brief),
        per_object=bool(args.per_object),
        as_json=bool(args.json),
        workers=int(max(1, args.workers)),
        volume_mode=str(args.volume_mode),
        errors=errors,
    )

    if errors and not args.json:
        for err in errors:
            print(f"[cli] file {err.get('file')}: {err.get('kind')}: {err.get('error')}", file=sys.stderr)

    if args.json:
        print(json.dumps(payload, ensure_ascii=False, indent=2))
    else:
        print(payload["text"])

    if errors:
        sys.exit(1)


if __name__ == '__main__':
    main()
