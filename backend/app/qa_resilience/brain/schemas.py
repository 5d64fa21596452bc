"""
Schemas for structured language-model replies.

Field aliases follow the camelCase keys the prompts ask for; unknown keys
are ignored.
"""

from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

ImpactLevel = Literal["critical", "high", "medium", "low"]
IMPACT_LEVELS = ("critical", "high", "medium", "low")


def _clamp_unit(value: Any) -> float:
    score = float(value)
    if score > 1.0:
        # Percentages slip through now and then ("confidence": 90)
        score = score / 100.0 if score <= 100.0 else 1.0
    return max(0.0, min(1.0, score))


def _strings_only(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value if isinstance(v, (str, int, float)) and str(v).strip()]


class ServiceModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class HealSuggestion(ServiceModel):
    suggested_selector: str = Field(default="", alias="suggestedSelector")
    confidence: float = 0.5
    reasoning: str = ""
    alternatives: List[str] = Field(default_factory=list)

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence(cls, v):
        return _clamp_unit(v)

    @field_validator("alternatives", mode="before")
    @classmethod
    def _alternatives(cls, v):
        return _strings_only(v)


class ImpactedTest(ServiceModel):
    test_name: str = Field(alias="testName")
    impact_level: ImpactLevel = Field(default="medium", alias="impactLevel")
    affected_features: List[str] = Field(default_factory=list, alias="affectedFeatures")
    reason: str = ""

    @field_validator("impact_level", mode="before")
    @classmethod
    def _level(cls, v):
        level = str(v or "").strip().lower()
        return level if level in IMPACT_LEVELS else "medium"

    @field_validator("affected_features", mode="before")
    @classmethod
    def _features(cls, v):
        return _strings_only(v)


class ImpactRanking(ServiceModel):
    risk_score: float = Field(default=0.0, alias="riskScore")
    summary: str = ""
    impacted_tests: List[ImpactedTest] = Field(default_factory=list, alias="impactedTests")

    @field_validator("risk_score", mode="before")
    @classmethod
    def _risk(cls, v):
        return max(0.0, min(100.0, float(v)))


class SequentialEntry(ServiceModel):
    test: str
    order: int = 0


class ParallelEntry(ServiceModel):
    tests: List[str] = Field(default_factory=list)
    order: int = 0

    @field_validator("tests", mode="before")
    @classmethod
    def _tests(cls, v):
        return _strings_only(v)


class PlanBody(ServiceModel):
    sequential: List[SequentialEntry] = Field(default_factory=list)
    parallel: List[ParallelEntry] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)

    @field_validator("skipped", mode="before")
    @classmethod
    def _skipped(cls, v):
        return _strings_only(v)


class OptimizedPlan(ServiceModel):
    execution_plan: PlanBody = Field(alias="executionPlan")
    estimated_duration: Optional[float] = Field(default=None, alias="estimatedDuration")
    coverage: Optional[float] = None
    reasoning: str = ""


class LearnedPatterns(ServiceModel):
    common_patterns: List[str] = Field(default_factory=list, alias="commonPatterns")
    anti_patterns: List[str] = Field(default_factory=list, alias="antiPatterns")

    @field_validator("common_patterns", "anti_patterns", mode="before")
    @classmethod
    def _patterns(cls, v):
        return _strings_only(v)


class ApplicationModelInsight(ServiceModel):
    model: LearnedPatterns = Field(default_factory=LearnedPatterns)
    recommendations: List[str] = Field(default_factory=list)

    @field_validator("recommendations", mode="before")
    @classmethod
    def _recommendations(cls, v):
        return _strings_only(v)
