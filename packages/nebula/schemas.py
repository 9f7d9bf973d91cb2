from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class PerformanceMetrics:
    performance_score: Optional[float] = None
    accessibility_score: Optional[float] = None
    best_practices_score: Optional[float] = None
    seo_score: Optional[float] = None
    cls: Optional[float] = None
    lcp: Optional[float] = None  # ms
    fcp: Optional[float] = None  # ms


@dataclass
class PageResult:
    url: str
    status_code: int
    html_content: str
    content: str = ""
    title: Optional[str] = None
    meta_description: Optional[str] = None
    load_time: float = 0.0  # ms
    content_size: int = 0
    metrics: Optional[PerformanceMetrics] = None


@dataclass
class PatchData:
    file_path: str
    new_content: Optional[str] = None
    old_content: Optional[str] = None
    type: str = "content"
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PatchData":
        # Accepts both the stored snake_case shape and the camelCase shape LLMs return.
        metadata = data.get("metadata")
        return cls(
            file_path=str(data.get("file_path") or data.get("filePath") or ""),
            new_content=data.get("new_content", data.get("newContent")),
            old_content=data.get("old_content", data.get("oldContent")),
            type=str(data.get("type") or "content"),
            metadata=metadata if isinstance(metadata, dict) else {},
        )


@dataclass
class OpportunityDraft:
    title: str
    description: str
    type: str
    priority: str
    revenue_delta: float = 0.0
    confidence: float = 0.5
    target_url: Optional[str] = None
    current_content: Optional[str] = None
    suggested_content: Optional[str] = None
    patch_data: Optional[PatchData] = None
    reasoning: Optional[str] = None


@dataclass
class SimilarContent:
    content: str
    similarity: float
    url: str
    source: str = "site"


@dataclass
class CompetitorContent:
    url: str
    content: str
    relevance: float


@dataclass
class RAGContext:
    query: str
    similar_content: List[SimilarContent] = field(default_factory=list)
    competitor_data: List[CompetitorContent] = field(default_factory=list)


@dataclass
class BaselineScores:
    performance: float = 0.5
    accessibility: float = 0.5
    best_practices: float = 0.5
    seo: float = 0.5
    cls: float = 0.25
    lcp: float = 3000.0
    fcp: float = 2000.0


@dataclass
class AuditReport:
    url: str
    performance: float
    accessibility: float
    best_practices: float
    seo: float
    cls: float
    lcp: float
    fcp: float
    total_ms: Optional[float] = None

    @property
    def categories(self) -> Dict[str, float]:
        return {
            "performance": self.performance,
            "accessibility": self.accessibility,
            "bestPractices": self.best_practices,
            "seo": self.seo,
        }

    @property
    def vitals(self) -> Dict[str, float]:
        return {"cls": self.cls, "lcp": self.lcp, "fcp": self.fcp}
