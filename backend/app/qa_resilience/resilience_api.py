"""
Resilience API Endpoints
========================
REST API over the resilience engine: learned model, flaky tests,
change-impact analysis and execution planning.
"""

import json
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from .engine import ResilienceEngine, get_engine
from .impact.change_detection import CatalogueTest
from .orchestration.models import ExecutionConstraints, TestSpec

router = APIRouter(prefix="/api/resilience", tags=["resilience"])


class CatalogueEntry(BaseModel):
    name: str
    coverage: List[str] = []
    path: str = ""


class ImpactRequest(BaseModel):
    catalogue: List[CatalogueEntry]
    changed_files: Optional[List[str]] = None  # None: detect from git / file times


class PlanRequest(BaseModel):
    tests: List[TestSpec]
    constraints: ExecutionConstraints = ExecutionConstraints()


class TestResult(BaseModel):
    __test__ = False

    test_name: str
    passed: bool


class TestResultsRequest(BaseModel):
    __test__ = False

    results: List[TestResult]


# =========================================================================
# MODEL ENDPOINTS
# =========================================================================

@router.get("/insights")
async def get_insights(engine: ResilienceEngine = Depends(get_engine)):
    """Summary of the learned model and this run's healing activity"""
    return engine.get_insights()


@router.get("/model")
async def get_model(engine: ResilienceEngine = Depends(get_engine)):
    """The full learned model, as persisted"""
    return json.loads(engine.export_model())


@router.get("/flaky-tests")
async def get_flaky_tests(
    threshold: Optional[float] = None,
    engine: ResilienceEngine = Depends(get_engine)
):
    """Tests whose stability is below threshold, least stable first"""
    threshold = engine.config.flaky_threshold if threshold is None else threshold
    if not 0 <= threshold <= 1:
        raise HTTPException(status_code=400, detail="threshold must be between 0 and 1")

    names = engine.store.get_flaky_tests(threshold)
    return {
        "threshold": threshold,
        "flaky_tests": [
            {"name": name, "stability": round(engine.store.get_test_stability(name), 3)}
            for name in names
        ]
    }


@router.post("/test-results")
async def record_test_results(
    request: TestResultsRequest,
    engine: ResilienceEngine = Depends(get_engine)
):
    """Feed pass/fail outcomes into test stability"""
    updated = {
        result.test_name: round(engine.record_test_result(result.test_name, result.passed), 4)
        for result in request.results
    }
    return {"success": True, "stability": updated}


# =========================================================================
# PLANNING ENDPOINTS
# =========================================================================

@router.post("/impact")
async def analyze_impact(
    request: ImpactRequest,
    engine: ResilienceEngine = Depends(get_engine)
):
    """Rank catalogue tests by how likely recent changes break them"""
    detector = engine.change_detector
    if request.changed_files is not None:
        changes = detector.records_for_paths(request.changed_files)
    else:
        changes = await detector.detect_changes_async()

    catalogue = [CatalogueTest(name=e.name, coverage=e.coverage, path=e.path) for e in request.catalogue]
    analysis = await detector.analyze_and_prioritize(changes, catalogue)
    return analysis.to_dict()


@router.post("/plan")
async def create_plan(
    request: PlanRequest,
    engine: ResilienceEngine = Depends(get_engine)
):
    """Build an execution plan under time and concurrency constraints"""
    plan = await engine.orchestrator.create_execution_plan(request.tests, request.constraints)
    return plan.model_dump(by_alias=True)
