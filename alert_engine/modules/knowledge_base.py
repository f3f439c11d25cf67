"""
ClinicalSentry Clinical Knowledge Base
Interaction, cross-reactivity and threshold tables consumed by the detectors
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from alert_engine.schemas import AlertSeverity


# =============================================================================
# Name Matching Strategy
# =============================================================================

class NameMatcher:
    """Decides whether a medication or allergy term appears in a name"""

    def matches(self, name: str, term: str) -> bool:
        raise NotImplementedError("Subclasses must implement matches()")

    def matches_any(self, name: str, terms: List[str]) -> bool:
        return any(self.matches(name, term) for term in terms)


class SubstringMatcher(NameMatcher):
    """
    Case-insensitive substring containment.

    Over-matches names that share a fragment and misses brand/generic
    synonyms; swap for a terminology-backed matcher when one is available.
    """

    def matches(self, name: str, term: str) -> bool:
        term = term.strip().lower()
        if not term:
            return False
        return term in name.lower()


# =============================================================================
# Table Entries
# =============================================================================

class InteractionRule(BaseModel):
    """Known dangerous pairing of two medication classes"""
    model_config = ConfigDict(frozen=True)

    rule_id: str
    class_a: str
    class_a_terms: List[str]
    class_b: str
    class_b_terms: List[str]
    severity: AlertSeverity
    title: str
    message: str

    @property
    def natural_key(self) -> str:
        return "interaction:" + "+".join(sorted([self.class_a, self.class_b]))


class CrossReactivityRule(BaseModel):
    """Allergy class that cross-reacts with another drug class"""
    model_config = ConfigDict(frozen=True)

    allergen_class: str
    allergen_terms: List[str]
    drug_class: str
    drug_terms: List[str]
    severity: AlertSeverity = AlertSeverity.HIGH
    title: str = "Cross-Allergy Warning"
    message: str


class ThresholdBand(BaseModel):
    """
    Outer (abnormal) band with a stricter panic band around it.

    All bounds are optional and inclusive: a value equal to a bound is
    inside it.
    """
    model_config = ConfigDict(frozen=True)

    min: Optional[float] = None
    max: Optional[float] = None
    panic_min: Optional[float] = None
    panic_max: Optional[float] = None

    @model_validator(mode="after")
    def validate_band_order(self) -> "ThresholdBand":
        """Panic bounds must lie outside the outer bounds"""
        if self.min is not None and self.panic_min is not None and self.panic_min > self.min:
            raise ValueError("panic_min must not be above min")
        if self.max is not None and self.panic_max is not None and self.panic_max < self.max:
            raise ValueError("panic_max must not be below max")
        return self

    def classify(self, value: float) -> Optional[AlertSeverity]:
        """Severity of a value, or None when it is within the outer band"""
        if (self.panic_min is not None and value < self.panic_min) or \
                (self.panic_max is not None and value > self.panic_max):
            return AlertSeverity.CRITICAL
        if (self.min is not None and value < self.min) or \
                (self.max is not None and value > self.max):
            return AlertSeverity.HIGH
        return None

    def direction(self, value: float) -> str:
        """'low' or 'high' relative to the band"""
        lower = self.min if self.min is not None else self.panic_min
        if lower is not None and value < lower:
            return "low"
        return "high"

    def describe_range(self) -> str:
        if self.min is not None and self.max is not None:
            return f"{self.min:g}-{self.max:g}"
        if self.max is not None:
            return f"<= {self.max:g}"
        if self.min is not None:
            return f">= {self.min:g}"
        return "n/a"


class AnalyteThreshold(ThresholdBand):
    """Lab analyte with the test-name aliases that identify it"""
    analyte: str
    display_name: str
    aliases: List[str]
    exclude_aliases: List[str] = Field(
        default_factory=list, description="Test-name terms that name a different analyte"
    )
    unit: str = ""


class VitalThreshold(ThresholdBand):
    """Single-value vital sign band"""
    kind: str
    display_name: str
    unit: str = ""


class BloodPressureThresholds(BaseModel):
    """Fixed blood pressure limits (mmHg)"""
    model_config = ConfigDict(frozen=True)

    systolic_min: int = 90
    systolic_max: int = 180
    diastolic_min: int = 60
    diastolic_max: int = 120


# =============================================================================
# Knowledge Base
# =============================================================================

class ClinicalKnowledgeBase(BaseModel):
    """Injectable tables and matching strategy shared by all detectors"""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    interactions: List[InteractionRule] = Field(default_factory=list)
    cross_reactivity: List[CrossReactivityRule] = Field(default_factory=list)
    analytes: List[AnalyteThreshold] = Field(default_factory=list)
    vitals: List[VitalThreshold] = Field(default_factory=list)
    blood_pressure: BloodPressureThresholds = Field(default_factory=BloodPressureThresholds)
    matcher: NameMatcher = Field(default_factory=SubstringMatcher)

    def find_analyte(self, test_name: str) -> Optional[AnalyteThreshold]:
        """First analyte whose alias appears in the test name and no exclusion does"""
        for analyte in self.analytes:
            if self.matcher.matches_any(test_name, analyte.exclude_aliases):
                continue
            if self.matcher.matches_any(test_name, analyte.aliases):
                return analyte
        return None

    def get_vital(self, kind: str) -> Optional[VitalThreshold]:
        for vital in self.vitals:
            if vital.kind == kind:
                return vital
        return None


DEFAULT_INTERACTIONS = [
    InteractionRule(
        rule_id="INTERACTION_001",
        class_a="anticoagulant",
        class_a_terms=["warfarin"],
        class_b="nsaid",
        class_b_terms=["aspirin", "ibuprofen", "naproxen"],
        severity=AlertSeverity.CRITICAL,
        title="Critical Drug Interaction",
        message="Warfarin + Aspirin/NSAIDs: Significantly increased bleeding risk",
    ),
    InteractionRule(
        rule_id="INTERACTION_002",
        class_a="ace-inhibitor",
        class_a_terms=["lisinopril", "enalapril", "ramipril"],
        class_b="potassium",
        class_b_terms=["potassium"],
        severity=AlertSeverity.HIGH,
        title="Drug Interaction Warning",
        message="ACE Inhibitor + Potassium: Risk of hyperkalemia",
    ),
]

DEFAULT_CROSS_REACTIVITY = [
    CrossReactivityRule(
        allergen_class="penicillin",
        allergen_terms=["penicillin"],
        drug_class="cephalosporin",
        drug_terms=["cef", "cephalexin"],
        message="Patient allergic to Penicillin - consider Cephalosporin cross-reactivity",
    ),
]

DEFAULT_ANALYTES = [
    AnalyteThreshold(analyte="potassium", display_name="Potassium", aliases=["potassium", "k+"],
                     unit="mmol/L", min=3.5, max=5.5, panic_min=3.0, panic_max=6.0),
    AnalyteThreshold(analyte="sodium", display_name="Sodium", aliases=["sodium", "na+"],
                     unit="mmol/L", min=130, max=150, panic_min=120, panic_max=160),
    AnalyteThreshold(analyte="glucose", display_name="Glucose", aliases=["glucose"],
                     unit="mg/dL", min=70, max=400, panic_min=50, panic_max=500),
    AnalyteThreshold(analyte="creatinine", display_name="Creatinine", aliases=["creatinine"],
                     unit="mg/dL", max=2.5),
    AnalyteThreshold(analyte="hemoglobin", display_name="Hemoglobin",
                     aliases=["hemoglobin", "haemoglobin", "hgb"],
                     exclude_aliases=["a1c", "glycated", "glycosylated", "corpuscular"],
                     unit="g/dL", min=7, max=18, panic_min=6, panic_max=20),
    AnalyteThreshold(analyte="platelets", display_name="Platelets", aliases=["platelet", "plt"],
                     unit="/uL", min=50000, max=1000000, panic_min=20000),
    AnalyteThreshold(analyte="wbc", display_name="WBC",
                     aliases=["wbc", "white blood cell", "leukocyte"],
                     unit="/uL", min=2000, max=30000, panic_min=1000, panic_max=50000),
]

DEFAULT_VITALS = [
    VitalThreshold(kind="heart-rate", display_name="Heart Rate", unit="bpm",
                   min=50, max=120, panic_min=40, panic_max=150),
    VitalThreshold(kind="temperature", display_name="Temperature", unit="F",
                   min=96.8, max=100.4, panic_min=95, panic_max=104),
    VitalThreshold(kind="oxygen", display_name="Oxygen Saturation", unit="%",
                   min=94, panic_min=90),
]


def default_knowledge_base() -> ClinicalKnowledgeBase:
    """Knowledge base with the built-in interaction and threshold tables"""
    return ClinicalKnowledgeBase(
        interactions=list(DEFAULT_INTERACTIONS),
        cross_reactivity=list(DEFAULT_CROSS_REACTIVITY),
        analytes=list(DEFAULT_ANALYTES),
        vitals=list(DEFAULT_VITALS),
    )
