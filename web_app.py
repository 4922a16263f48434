# -*- coding: utf-8 -*-
"""
web_app.py — HTTP upload front for the filament quote core (Flask)

POST /api/upload   multipart: file (binary STL), infill, material, model, layer_height
GET  /api/materials presets and default profile
GET  /              usage page

Run:  flask --app web_app run   (or: python web_app.py)
"""
from __future__ import annotations

import logging
import os

from flask import Flask, request, jsonify
from flask_cors import CORS
from werkzeug.exceptions import RequestEntityTooLarge

import filament_core as core
from stl_volume import VOLUME_MODES, MalformedInputError, ParseError


INDEX_HTML = """
<h1>STL Filament Cost Calculator</h1>
<p>Send a POST request to <code>/api/upload</code> with:</p>
<ul>
  <li><strong>file:</strong> STL file (binary, required)</li>
  <li><strong>infill:</strong> Infill density (%) [default: {infill}]</li>
  <li><strong>material:</strong> {materials} or a filament density in g/cm³ [default: {material}]</li>
  <li><strong>model:</strong> simple | shell [default: {model}]</li>
  <li><strong>layer_height:</strong> Layer height, mm [default: {layer_height}]</li>
</ul>
"""

# error kind -> (status, fixed message); exception text never leaves the server
_ERRORS = {
    "no_file": (400, "No file uploaded."),
    "malformed_stl": (400, "The file is not a complete binary STL."),
    "unparseable_stl": (422, "The STL file could not be parsed."),
    "invalid_parameter": (400, "Invalid print parameters."),
    "too_large": (413, "File is too large."),
}


def _error(kind: str):
    status, message = _ERRORS[kind]
    return jsonify({"error": message, "kind": kind}), status


def _form_float(name: str):
    raw = request.form.get(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        return float(raw)
    except ValueError:
        raise core.InvalidParameterError(f"{name} must be a number, got {raw!r}") from None


def create_app(config_dir: str | None = None) -> Flask:
    """Builds the Flask app with materials.json / pricing.json loaded from config_dir."""
    app = Flask(__name__)
    log = app.logger
    log.setLevel(logging.INFO)

    materials = core.load_materials_json(core.get_default_materials_path(config_dir))
    pricing = core.load_pricing_json(core.get_default_pricing_path(config_dir))
    app.config["MAX_CONTENT_LENGTH"] = core.max_upload_bytes(pricing)
    volume_mode = os.environ.get("FILAMENT_VOLUME_MODE", "fast").strip().lower()
    if volume_mode not in VOLUME_MODES:
        choices = ", ".join(VOLUME_MODES)
        raise ValueError(f"FILAMENT_VOLUME_MODE must be one of: {choices}; got {volume_mode!r}")
    app.config["VOLUME_MODE"] = volume_mode
    symbol = str(pricing.get("currency_symbol", "$"))

    CORS(
        app,
        resources={r"/api/*": {"origins": "*"}},
        methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
        send_wildcard=True,
    )

    @app.errorhandler(RequestEntityTooLarge)
    def too_large(e):
        log.warning("Upload rejected: larger than %d bytes", app.config["MAX_CONTENT_LENGTH"])
        return _error("too_large")

    @app.route("/")
    def index():
        p = pricing.get("profile", {})
        return INDEX_HTML.format(
            infill=p.get("infill_pct", 15),
            materials=", ".join(sorted(materials)),
            material=pricing.get("default_material", "PLA"),
            model=p.get("model", "simple"),
            layer_height=p.get("layer_height_mm", 0.2),
        )

    @app.route("/api/materials")
    def list_materials():
        return jsonify({
            "materials": materials,
            "default_material": pricing.get("default_material", "PLA"),
            "price_cents_per_g": pricing.get("price_cents_per_g"),
            "profile": pricing.get("profile", {}),
            "models": [m.value for m in core.ProfileModel],
        })

    @app.route("/api/upload", methods=["POST"])
    def upload():
        file = request.files.get("file")
        if file is None or file.filename == "":
            return _error("no_file")

        try:
            material_label, profile = core.build_profile(
                pricing,
                materials,
                material=request.form.get("material"),
                infill=_form_float("infill"),
                model=request.form.get("model") or None,
                layer_height_mm=_form_float("layer_height"),
            )
            buffer = file.read()
            usage = core.quote_buffer(buffer, profile, volume_mode=app.config["VOLUME_MODE"])
        except MalformedInputError as e:
            log.warning("Malformed STL %r: %s", file.filename, e)
            return _error("malformed_stl")
        except ParseError as e:
            log.warning("Unparseable STL %r: %s", file.filename, e)
            return _error("unparseable_stl")
        except core.InvalidParameterError as e:
            log.warning("Invalid parameters for %r: %s", file.filename, e)
            return _error("invalid_parameter")

        price_text = core.format_price(usage.price, symbol)
        log.info(
            "Quoted %r: %.3f cm³, %.3f g, %s (%s, %s)",
            file.filename, usage.volume_model_cm3, usage.total_weight_g, price_text,
            material_label, usage.model.value,
        )
        return jsonify({
            "price": price_text,
            "material": material_label,
            "volume_cm3": usage.volume_model_cm3,
            "usage": usage.as_dict(),
        })

    return app


app = create_app()


if __name__ == "__main__":
    app.run(port=int(os.environ.get("PORT", 3000)))
