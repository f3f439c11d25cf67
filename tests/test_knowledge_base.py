"""
Unit tests for the clinical knowledge base
"""

import pytest
from pydantic import ValidationError

from alert_engine.modules.knowledge_base import (
    SubstringMatcher, ThresholdBand, default_knowledge_base
)
from alert_engine.schemas import AlertSeverity


class TestThresholdBand:
    """Test outer/panic band classification"""

    @pytest.fixture
    def potassium(self):
        return default_knowledge_base().find_analyte("Potassium")

    @pytest.mark.parametrize("value,expected", [
        (2.9, AlertSeverity.CRITICAL),
        (3.0, AlertSeverity.HIGH),
        (3.5, None),
        (4.5, None),
        (5.5, None),
        (6.0, AlertSeverity.HIGH),
        (6.1, AlertSeverity.CRITICAL),
    ])
    def test_potassium_boundaries(self, potassium, value, expected):
        """Bounds are inclusive: a value on a bound stays inside it"""
        assert potassium.classify(value) == expected

    def test_upper_bound_only(self):
        """Creatinine has no lower bound and no panic band"""
        creatinine = default_knowledge_base().find_analyte("Creatinine")

        assert creatinine.classify(0.1) is None
        assert creatinine.classify(2.5) is None
        assert creatinine.classify(2.6) == AlertSeverity.HIGH
        assert creatinine.classify(10.0) == AlertSeverity.HIGH

    def test_direction(self, potassium):
        assert potassium.direction(2.5) == "low"
        assert potassium.direction(6.5) == "high"

    def test_panic_band_inside_outer_band_rejected(self):
        with pytest.raises(ValidationError):
            ThresholdBand(min=3.5, max=5.5, panic_min=4.0)
        with pytest.raises(ValidationError):
            ThresholdBand(min=3.5, max=5.5, panic_max=5.0)


class TestNameMatching:
    """Test substring matching and analyte lookup"""

    def test_substring_matcher_is_case_insensitive(self):
        matcher = SubstringMatcher()

        assert matcher.matches("Warfarin 5mg", "warfarin")
        assert matcher.matches("ASPIRIN 81MG", "Aspirin")
        assert not matcher.matches("Metformin", "warfarin")

    def test_blank_term_never_matches(self):
        assert not SubstringMatcher().matches("Warfarin", "  ")

    def test_find_analyte_by_alias(self):
        kb = default_knowledge_base()

        assert kb.find_analyte("Serum K+").analyte == "potassium"
        assert kb.find_analyte("HGB").analyte == "hemoglobin"
        assert kb.find_analyte("Platelet Count").analyte == "platelets"
        assert kb.find_analyte("Lipase") is None

    def test_glycated_hemoglobin_is_not_hemoglobin(self):
        kb = default_knowledge_base()

        assert kb.find_analyte("Hemoglobin A1c") is None
        assert kb.find_analyte("Glycated Hemoglobin") is None
        assert kb.find_analyte("Mean Corpuscular Hemoglobin") is None
        assert kb.find_analyte("Hemoglobin").analyte == "hemoglobin"

    def test_default_tables(self):
        kb = default_knowledge_base()

        assert len(kb.interactions) == 2
        assert kb.interactions[0].natural_key == "interaction:anticoagulant+nsaid"
        assert kb.get_vital("oxygen").panic_min == 90
        assert kb.get_vital("respiratory-rate") is None
