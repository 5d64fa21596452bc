"""
Change Detection and Test Prioritization

Maps source changes to the tests most likely affected:

1. Detect changed files (git diff since the last seen revision, or an
   mtime scan when git is unavailable)
2. Tag each change with a language and a set of domain features
3. Rank catalogue tests by impact (language model, or a deterministic
   coverage/feature intersection when the service is unavailable)

Feature tagging is a heuristic over path segments, file names and a
keyword scan of source content. It is not guaranteed complete.
"""

import asyncio
import json
import logging
import os
import re
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..errors import ServiceError

logger = logging.getLogger(__name__)

LANGUAGE_BY_EXTENSION = {
    ".ts": "typescript",
    ".tsx": "typescript",
    ".js": "javascript",
    ".jsx": "javascript",
    ".py": "python",
    ".java": "java",
    ".go": "go",
    ".rs": "rust",
    ".cpp": "cpp",
    ".c": "c",
    ".cs": "csharp",
    ".php": "php",
    ".rb": "ruby",
    ".sql": "sql",
    ".css": "css",
    ".scss": "scss",
    ".html": "html",
    ".json": "json",
    ".xml": "xml",
    ".yaml": "yaml",
    ".yml": "yaml",
}

# Directory names that are features in their own right
FEATURE_VOCABULARY = (
    "orders", "stock", "inventory", "users", "auth",
    "shipping", "picking", "packing", "dashboard", "reports",
)

# Filename fragment(s) -> feature
FILENAME_FEATURES = (
    (("order",), "orders"),
    (("user",), "users"),
    (("auth",), "authentication"),
    (("stock", "inventory"), "inventory"),
    (("pick",), "picking"),
    (("pack",), "packing"),
)

CONTENT_KEYWORDS = (
    "order", "sku", "user", "auth", "role", "permission", "stock", "inventory",
    "location", "bin", "warehouse", "pick", "pack", "ship", "receive", "return",
)
CONTENT_SCANNED_LANGUAGES = ("typescript", "javascript", "python", "java")
_KEYWORD_PATTERNS = {k: re.compile(rf"\b{k}\w*\b", re.IGNORECASE) for k in CONTENT_KEYWORDS}

IMPACT_PRIORITY = {"critical": 100, "high": 75, "medium": 50, "low": 25}
FALLBACK_PRIORITY_PER_FEATURE = 10

FIRST_RUN_BASE = "HEAD@{1.day.ago}"
GIT_TIMEOUT_SECONDS = 30

SKIPPED_DIRS = {".git", "node_modules", "__pycache__", ".venv", "venv", "dist", "build"}


@dataclass
class ChangeRecord:
    """One changed file"""
    path: str
    change_kind: str  # added, modified, deleted
    language: str
    features: List[str] = field(default_factory=list)

    def describe(self) -> str:
        return f"{self.change_kind}: {self.path} ({self.language})"


@dataclass
class CatalogueTest:
    """A test the analyzer may recommend, with its declared coverage tags"""
    name: str
    coverage: List[str] = field(default_factory=list)
    path: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CatalogueTest":
        return cls(
            name=data["name"],
            coverage=list(data.get("coverage") or []),
            path=data.get("path") or ""
        )


@dataclass
class TestImpact:
    """How one catalogue test is affected by a change set"""
    __test__ = False

    test_name: str
    impact_level: str
    affected_features: List[str] = field(default_factory=list)
    reason: str = ""
    test_path: str = ""
    priority: int = 0


@dataclass
class ChangeAnalysis:
    """Result of analyze_and_prioritize"""
    summary: str
    total_files_changed: int
    languages: List[str]
    features: List[str]
    risk_score: float
    impacted_tests: List[TestImpact] = field(default_factory=list)
    source: str = "none"  # service, fallback, none

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary,
            "total_files_changed": self.total_files_changed,
            "languages": self.languages,
            "features": self.features,
            "risk_score": self.risk_score,
            "source": self.source,
            "impacted_tests": [
                {
                    "test_name": t.test_name,
                    "test_path": t.test_path,
                    "impact_level": t.impact_level,
                    "affected_features": t.affected_features,
                    "reason": t.reason,
                    "priority": t.priority,
                }
                for t in self.impacted_tests
            ],
        }


def _unique(items: Iterable[str]) -> List[str]:
    seen: List[str] = []
    for item in items:
        if item not in seen:
            seen.append(item)
    return seen


def detect_language(file_path: str) -> str:
    """Language tag from the file extension"""
    return LANGUAGE_BY_EXTENSION.get(Path(file_path).suffix.lower(), "unknown")


class ChangeDetectionSystem:
    """
    Detects code changes and prioritizes affected tests.

    State on disk:
    - <cache_path>: {"lastRevisionMarker": "<commit hash>"}
    - <cache_path>.mtime: {path: mtime} for the no-git fallback
    """

    def __init__(
        self,
        gateway=None,
        cache_path: str = "data/resilience/change-cache.json",
        repo_dir: str = ".",
        scan_paths: Optional[List[str]] = None
    ):
        """
        Initialize change detection.

        Args:
            gateway: Optional AIGateway for impact ranking
            cache_path: Where the revision marker is kept
            repo_dir: Working tree to diff and to read changed files from
            scan_paths: Files/directories for the mtime fallback
        """
        self.gateway = gateway
        self.cache_path = Path(cache_path)
        self.mtime_cache_path = Path(f"{cache_path}.mtime")
        self.repo_dir = Path(repo_dir)
        self.scan_paths = list(scan_paths or [])

        self.last_revision_marker = ""
        self.mtime_cache: Dict[str, float] = {}
        self._load_cache()
        self._load_mtime_cache()

    # ==================== Detection ====================

    def _git(self, *args: str) -> str:
        result = subprocess.run(
            ["git", *args],
            cwd=str(self.repo_dir),
            capture_output=True,
            text=True,
            check=True,
            timeout=GIT_TIMEOUT_SECONDS
        )
        return result.stdout

    def detect_changes(self) -> List[ChangeRecord]:
        """
        Files changed since the last seen revision.

        Returns [] exactly when HEAD is still the stored marker. Without git,
        falls back to detect_filesystem_changes(scan_paths).
        """
        try:
            current = self._git("rev-parse", "HEAD").strip()
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning(f"[IMPACT] Git unavailable ({e}), scanning file modification times")
            return self.detect_filesystem_changes(self.scan_paths)

        if current == self.last_revision_marker:
            return []

        base = self.last_revision_marker or FIRST_RUN_BASE
        try:
            diff = self._git("diff", "--name-status", base, "HEAD")
        except (OSError, subprocess.SubprocessError) as e:
            # Base unknown (fresh clone, rewritten history): use the HEAD commit itself
            logger.info(f"[IMPACT] Cannot diff from {base} ({e}), using files of HEAD")
            try:
                diff = self._git("diff-tree", "--no-commit-id", "--name-status", "-r", "--root", "HEAD")
            except (OSError, subprocess.SubprocessError) as e2:
                logger.warning(f"[IMPACT] Git change detection failed: {e2}")
                return self.detect_filesystem_changes(self.scan_paths)

        changes = self._parse_name_status(diff)
        logger.info(f"[IMPACT] {len(changes)} files changed between {base} and {current[:8]}")

        self.last_revision_marker = current
        self._save_cache()
        return changes

    def _parse_name_status(self, output: str) -> List[ChangeRecord]:
        changes = []
        for line in output.splitlines():
            parts = line.strip().split("\t")
            if len(parts) < 2 or not parts[0]:
                continue
            status = parts[0][0]
            if status == "A":
                kind = "added"
            elif status == "D":
                kind = "deleted"
            elif status in ("M", "R", "C", "T"):
                kind = "modified"
            else:
                continue
            # Renames/copies list old and new path; the new one is what exists now
            file_path = parts[-1]
            changes.append(self._build_record(file_path, kind))
        return changes

    def detect_filesystem_changes(self, paths: Iterable[str]) -> List[ChangeRecord]:
        """
        Changes by modification time: unseen paths are added, newer ones
        modified, vanished ones deleted. Updates and persists the mtime map.
        """
        changes: List[ChangeRecord] = []
        seen_under_roots = set()

        for root in paths:
            root_path = Path(root)
            if not root_path.exists():
                continue
            for file_path in self._iter_files(root_path):
                key = str(file_path)
                seen_under_roots.add(key)
                mtime = file_path.stat().st_mtime
                previous = self.mtime_cache.get(key)
                if previous is None:
                    changes.append(self._build_record(key, "added"))
                elif mtime > previous:
                    changes.append(self._build_record(key, "modified"))
                self.mtime_cache[key] = mtime

        roots = [str(Path(r)) for r in paths]
        for key in list(self.mtime_cache):
            if key in seen_under_roots:
                continue
            if any(key == r or key.startswith(r.rstrip(os.sep) + os.sep) for r in roots):
                changes.append(self._build_record(key, "deleted"))
                del self.mtime_cache[key]

        self._save_mtime_cache()
        return changes

    @staticmethod
    def _iter_files(root: Path) -> Iterable[Path]:
        if root.is_file():
            yield root
            return
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(d for d in dirnames if d not in SKIPPED_DIRS)
            for name in sorted(filenames):
                yield Path(dirpath) / name

    def records_for_paths(self, paths: Iterable[str], kind: str = "modified") -> List[ChangeRecord]:
        """ChangeRecords for an explicit list of paths (e.g. from a CI diff)"""
        return [self._build_record(p, kind) for p in paths]

    def _build_record(self, file_path: str, kind: str) -> ChangeRecord:
        language = detect_language(file_path)
        features = self.extract_features(file_path, language, scan_content=(kind != "deleted"))
        return ChangeRecord(path=file_path, change_kind=kind, language=language, features=features)

    # ==================== Feature Tagging ====================

    def extract_features(self, file_path: str, language: str, scan_content: bool = True) -> List[str]:
        """Domain features touched by a file (path segments, filename, content)"""
        features: List[str] = []

        for segment in re.split(r"[\\/]", file_path):
            if segment.lower() in FEATURE_VOCABULARY:
                features.append(segment.lower())

        filename = Path(file_path).name.lower()
        for needles, feature in FILENAME_FEATURES:
            if any(needle in filename for needle in needles):
                features.append(feature)

        if scan_content and language in CONTENT_SCANNED_LANGUAGES:
            features.extend(self._scan_content(file_path))

        return _unique(features)

    def _scan_content(self, file_path: str) -> List[str]:
        full_path = Path(file_path)
        if not full_path.is_absolute():
            full_path = self.repo_dir / full_path
        if not full_path.is_file():
            return []
        try:
            content = full_path.read_text(encoding="utf-8", errors="ignore")
        except OSError as e:
            logger.debug(f"[IMPACT] Could not read {full_path}: {e}")
            return []
        return [k for k, pattern in _KEYWORD_PATTERNS.items() if pattern.search(content)]

    # ==================== Prioritization ====================

    async def analyze_and_prioritize(
        self,
        changes: List[ChangeRecord],
        catalogue: List[CatalogueTest]
    ) -> ChangeAnalysis:
        """
        Rank catalogue tests by how likely the changes break them.

        Uses the language model when a gateway is configured; any service
        failure falls back to coverage/feature intersection.
        """
        if not changes:
            return ChangeAnalysis(
                summary="No changes detected",
                total_files_changed=0,
                languages=[],
                features=[],
                risk_score=0.0
            )

        languages = _unique(c.language for c in changes)
        features = _unique(f for c in changes for f in c.features)
        summary = f"Detected {len(changes)} file changes affecting {len(features)} features"
        logger.info(f"[IMPACT] Analyzing {len(changes)} changed files ({', '.join(features) or 'no features'})")

        if self.gateway is not None:
            try:
                ranking = await self.gateway.analyze_change_impact(
                    changes=[c.describe() for c in changes],
                    languages=languages,
                    features=features,
                    available_tests=[{"name": t.name, "coverage": t.coverage} for t in catalogue]
                )
            except ServiceError as e:
                logger.warning(f"[IMPACT] Impact service failed, using coverage rule: {e}")
            else:
                paths = {t.name: t.path for t in catalogue}
                impacted = [
                    TestImpact(
                        test_name=t.test_name,
                        impact_level=t.impact_level,
                        affected_features=t.affected_features,
                        reason=t.reason,
                        test_path=paths.get(t.test_name) or t.test_name,
                        priority=IMPACT_PRIORITY[t.impact_level]
                    )
                    for t in ranking.impacted_tests
                ]
                impacted.sort(key=lambda t: -t.priority)
                return ChangeAnalysis(
                    summary=ranking.summary or summary,
                    total_files_changed=len(changes),
                    languages=languages,
                    features=features,
                    risk_score=ranking.risk_score,
                    impacted_tests=impacted,
                    source="service"
                )

        return ChangeAnalysis(
            summary=summary,
            total_files_changed=len(changes),
            languages=languages,
            features=features,
            risk_score=float(min(100, FALLBACK_PRIORITY_PER_FEATURE * len(features))),
            impacted_tests=self._rank_by_coverage(features, catalogue),
            source="fallback"
        )

    @staticmethod
    def _fallback_level(overlap: int) -> str:
        if overlap >= 3:
            return "high"
        return "medium" if overlap == 2 else "low"

    def _rank_by_coverage(self, features: List[str], catalogue: List[CatalogueTest]) -> List[TestImpact]:
        """Impacted iff coverage meets the changed features; priority = 10 x overlap"""
        impacted = []
        for test in catalogue:
            overlap = [tag for tag in test.coverage if tag in features]
            if not overlap:
                continue
            impacted.append(TestImpact(
                test_name=test.name,
                impact_level=self._fallback_level(len(overlap)),
                affected_features=overlap,
                reason=f"Covers changed features: {', '.join(overlap)}",
                test_path=test.path or test.name,
                priority=FALLBACK_PRIORITY_PER_FEATURE * len(overlap)
            ))
        impacted.sort(key=lambda t: -t.priority)
        return impacted

    def get_prioritized_tests(
        self,
        analysis: ChangeAnalysis,
        catalogue: List[CatalogueTest]
    ) -> List[Tuple[CatalogueTest, int]]:
        """Catalogue tests with a priority, highest first; unknown names dropped"""
        by_name = {t.name: t for t in catalogue}

        impacts = analysis.impacted_tests or self._rank_by_coverage(analysis.features, catalogue)
        ranked = [
            (by_name[impact.test_name], impact.priority)
            for impact in impacts
            if impact.test_name in by_name
        ]
        ranked.sort(key=lambda item: -item[1])
        return ranked

    async def detect_changes_async(self) -> List[ChangeRecord]:
        """detect_changes() on the default executor; git and the mtime scan block"""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.detect_changes)

    async def detect_changes_and_prioritize(self, catalogue: List[CatalogueTest]) -> ChangeAnalysis:
        """detect_changes() followed by analyze_and_prioritize()"""
        changes = await self.detect_changes_async()
        return await self.analyze_and_prioritize(changes, catalogue)

    # ==================== Cache ====================

    def _read_json(self, path: Path) -> Optional[Dict[str, Any]]:
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"[IMPACT] Ignoring unreadable cache {path}: {e}")
            return None
        return data if isinstance(data, dict) else None

    def _write_json(self, path: Path, data: Dict[str, Any]):
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        except OSError as e:
            logger.error(f"[IMPACT] Failed to save cache {path}: {e}")

    def _load_cache(self):
        data = self._read_json(self.cache_path) or {}
        self.last_revision_marker = str(data.get("lastRevisionMarker") or "")

    def _save_cache(self):
        self._write_json(self.cache_path, {"lastRevisionMarker": self.last_revision_marker})

    def _load_mtime_cache(self):
        data = self._read_json(self.mtime_cache_path) or {}
        self.mtime_cache = {
            str(k): float(v) for k, v in data.items()
            if isinstance(v, (int, float)) and not isinstance(v, bool)
        }

    def _save_mtime_cache(self):
        self._write_json(self.mtime_cache_path, self.mtime_cache)
