"""
Tests for presentation helpers, crop fallback defaults and config overrides.
"""
import json
from datetime import date, timedelta

import pytest

from app.services import eos_fusion_rules
from app.services.eos_fusion_rules import (
    DEFAULT_CONFIG,
    build_fusion_config,
    clear_crop_defaults_cache,
    get_fallback_days,
    load_crop_defaults,
    normalize_key,
)
from app.services.eos_fusion_helpers import (
    format_date,
    get_confidence_label,
    get_gdd_projection_status,
    get_method_label,
    get_phenological_stage_label,
    get_projection_status,
)
from app.services.eos_fusion_service import calculate_fused_eos


class TestConfidenceLabel:

    @pytest.mark.parametrize("score,expected", [
        (100, "ALTA"),
        (80, "ALTA"),
        (70, "ALTA"),
        (69, "MEDIA"),
        (60, "MEDIA"),
        (40, "MEDIA"),
        (39, "BAIXA"),
        (30, "BAIXA"),
        (0, "BAIXA"),
    ])
    def test_bands(self, score, expected):
        assert get_confidence_label(score) == expected


class TestMethodLabel:

    def test_base_methods(self):
        assert get_method_label("NDVI") == "NDVI Histórico"
        assert get_method_label("GDD") == "Soma Térmica"
        assert get_method_label("FUSION") == "NDVI + GDD"

    def test_adjusted_methods(self):
        assert get_method_label("NDVI_ADJUSTED") == "NDVI + Hídrico"
        assert get_method_label("GDD_ADJUSTED") == "GDD + Hídrico"

    def test_unknown_method_passes_through(self):
        assert get_method_label("RADAR") == "RADAR"


class TestPhenologicalStageLabel:

    def test_labels(self):
        assert get_phenological_stage_label("VEGETATIVE") == "Vegetativo"
        assert get_phenological_stage_label("REPRODUCTIVE") == "Reprodutivo"
        assert get_phenological_stage_label("GRAIN_FILLING") == "Enchimento de Grãos"
        assert get_phenological_stage_label("SENESCENCE") == "Senescência"
        assert get_phenological_stage_label("MATURITY") == "Maturação"


class TestProjectionStatus:

    def test_format_date(self):
        assert format_date(date(2025, 3, 1)) == "01/03/25"
        assert format_date(None) == "N/A"

    def test_ndvi_status(self, today):
        assert get_projection_status(None, today) == "Indisponível"
        assert get_projection_status(today - timedelta(days=3), today) == "Passou (3d atrás)"
        assert get_projection_status(today, today) == "Hoje"
        assert get_projection_status(today + timedelta(days=5), today) == "Em 5d"

    def test_gdd_status(self, today):
        assert get_gdd_projection_status(1.05, today - timedelta(days=2), today) == "Maturação atingida (105%)"
        assert get_gdd_projection_status(0.5, None, today) == "Calculando..."
        assert get_gdd_projection_status(0.9, today - timedelta(days=1), today) == "Deveria ter maturado"
        assert get_gdd_projection_status(0.99, today, today) == "Maturação hoje"
        assert get_gdd_projection_status(0.5, today + timedelta(days=10), today) == "Em 10d (50%)"


class TestCropDefaults:
    """Tests for the crop fallback table."""

    @pytest.mark.parametrize("crop,expected", [
        ("SOJA", 30),
        ("soybean", 30),
        ("Milho", 40),
        ("corn", 40),
        ("Milho Safrinha", 40),
        ("Algodão", 50),
        ("Cana-de-açúcar", 60),
        ("Girassol", 30),
        (None, 30),
        ("", 30),
    ])
    def test_fallback_days(self, crop, expected):
        assert get_fallback_days(crop) == expected

    def test_unknown_crop_uses_config_default(self):
        config = build_fusion_config({"fallback_days": 21})

        assert get_fallback_days("Girassol", config) == 21

    def test_table_is_cached(self):
        assert load_crop_defaults() is load_crop_defaults()

    def test_missing_file_falls_back_to_builtin(self, monkeypatch, tmp_path):
        monkeypatch.setattr(eos_fusion_rules, "CROP_DEFAULTS_PATH", str(tmp_path / "missing.json"))
        clear_crop_defaults_cache()

        assert get_fallback_days("SOJA") == 30
        assert get_fallback_days("ALGODAO") == DEFAULT_CONFIG.fallback_days

    def test_custom_table(self, monkeypatch, tmp_path):
        path = tmp_path / "crops.json"
        path.write_text(json.dumps({"crops": {"GIRASSOL": {"fallback_days": 33, "aliases": ["SUNFLOWER"]}}}))
        monkeypatch.setattr(eos_fusion_rules, "CROP_DEFAULTS_PATH", str(path))
        clear_crop_defaults_cache()

        assert get_fallback_days("sunflower") == 33
        assert get_fallback_days("SOJA") == 30


class TestNormalizeKey:

    def test_accents_and_separators(self):
        assert normalize_key("Feijão") == "FEIJAO"
        assert normalize_key(" cana-de-açúcar ") == "CANA_DE_ACUCAR"

    def test_empty(self):
        assert normalize_key(None) == ""
        assert normalize_key("") == ""


class TestFusionConfig:
    """Tests for build_fusion_config()."""

    def test_no_overrides_returns_defaults(self):
        assert build_fusion_config() is DEFAULT_CONFIG
        assert build_fusion_config({}) is DEFAULT_CONFIG

    def test_override_field(self):
        config = build_fusion_config({"convergence_window_days": 3})

        assert config.convergence_window_days == 3
        assert config.ndvi_maturity == DEFAULT_CONFIG.ndvi_maturity

    def test_unknown_key_rejected(self):
        with pytest.raises(ValueError, match="convergence_days"):
            build_fusion_config({"convergence_days": 3})

    def test_stage_bands_stored_as_tuple(self):
        config = build_fusion_config({"gdd_stage_bands": [0.3, 0.6, 0.85, 1.0]})

        assert config.gdd_stage_bands == (0.3, 0.6, 0.85, 1.0)

    def test_gdd_score_unknown_level_uses_low(self):
        assert DEFAULT_CONFIG.gdd_score("UNKNOWN") == 30

    def test_narrow_window_changes_method(self, make_input, today):
        """Recalibrating the window is enough to turn FUSION into divergence."""
        data = make_input(
            eos_ndvi=today + timedelta(days=30),
            ndvi_confidence=70,
            eos_gdd=today + timedelta(days=33),
            gdd_confidence="MEDIUM",
            gdd_accumulated=1000,
            gdd_required=1500,
        )

        default = calculate_fused_eos(data, today=today)
        narrow = calculate_fused_eos(data, today=today, config=build_fusion_config({"convergence_window_days": 3}))

        assert default.method == "FUSION"
        assert narrow.method == "NDVI"

    def test_raised_conflict_cap(self, make_input, today):
        data = make_input(
            current_ndvi=0.72,
            ndvi_decline_rate=0.1,
            eos_gdd=today - timedelta(days=5),
            gdd_confidence="HIGH",
            gdd_accumulated=1600,
            gdd_required=1500,
        )
        config = build_fusion_config({"conflict_confidence_cap": 70})

        result = calculate_fused_eos(data, today=today, config=config)

        assert result.confidence == 70
