"""Data models for the research agent."""

from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional, TypedDict, Union

from pydantic import BaseModel, ConfigDict, Field

EvaluationType = Literal["definitive", "freshness", "plurality", "completeness", "attribution", "strict"]
KnowledgeType = Literal["url", "side-info", "qa", "coding"]
ActionName = Literal["search", "visit", "answer", "reflect", "coding"]


# ---------- references & urls ----------

class Reference(BaseModel):
    url: str
    exact_quote: str = ""
    title: str = ""
    date_time: str = ""
    relevance_score: Optional[float] = None
    answer_chunk: Optional[str] = None
    answer_chunk_position: Optional[List[int]] = None


class ImageObject(BaseModel):
    url: str
    alt: str = ""
    embedding: Optional[List[float]] = None


class ImageReference(BaseModel):
    url: str
    alt: str = ""
    relevance_score: Optional[float] = None
    answer_chunk: Optional[str] = None


class SearchSnippet(BaseModel):
    url: str
    title: str = ""
    description: str = ""
    weight: float = 1.0
    date: Optional[str] = None


class BoostedSearchSnippet(SearchSnippet):
    freq_boost: float = 0.0
    hostname_boost: float = 0.0
    path_boost: float = 0.0
    text_boost: float = 0.0
    score: float = 0.0
    merged: str = ""


class WebContent(BaseModel):
    title: str = ""
    chunks: List[str] = Field(default_factory=list)


class SERPQuery(BaseModel):
    q: str
    tbs: Optional[str] = None
    location: Optional[str] = None


# ---------- knowledge ----------

class KnowledgeItem(BaseModel):
    question: str
    answer: str
    type: KnowledgeType
    references: Optional[List[Any]] = None
    updated: Optional[str] = None
    source_code: Optional[str] = None


# ---------- actions ----------

class SearchAction(BaseModel):
    action: Literal["search"] = "search"
    think: str = ""
    search_requests: List[str] = Field(default_factory=list)


class VisitAction(BaseModel):
    action: Literal["visit"] = "visit"
    think: str = ""
    url_targets: List[Union[int, str]] = Field(default_factory=list)


class AnswerAction(BaseModel):
    action: Literal["answer"] = "answer"
    think: str = ""
    answer: str = ""
    references: List[Reference] = Field(default_factory=list)
    is_final: bool = False
    is_aggregated: bool = False
    image_references: Optional[List[ImageReference]] = None
    md_answer: Optional[str] = None


class ReflectAction(BaseModel):
    action: Literal["reflect"] = "reflect"
    think: str = ""
    questions_to_answer: List[str] = Field(default_factory=list)


class CodingAction(BaseModel):
    action: Literal["coding"] = "coding"
    think: str = ""
    coding_issue: str = ""


StepAction = Union[SearchAction, VisitAction, AnswerAction, ReflectAction, CodingAction]

_ACTION_MODELS = {
    "search": SearchAction,
    "visit": VisitAction,
    "answer": AnswerAction,
    "reflect": ReflectAction,
    "coding": CodingAction,
}


def parse_action(obj: Dict[str, Any]) -> StepAction:
    """Decode ``{"action": ..., "think": ..., "<action>": {...}}`` into a typed action.

    The generated object carries one optional sub-object per permitted
    action; only the one named by the ``action`` discriminator is used.
    """
    name = obj.get("action")
    if name not in _ACTION_MODELS:
        raise ValueError(f"Unknown action: {name!r}")
    payload = obj.get(name) or {}
    if not isinstance(payload, dict):
        payload = {}
    return _ACTION_MODELS[name].model_validate({
        **payload,
        "action": name,
        "think": obj.get("think") or "",
    })


# ---------- evaluation ----------

class EvaluationMetric(BaseModel):
    type: EvaluationType
    num_evals_required: int


class FreshnessAnalysis(BaseModel):
    days_ago: float = 0
    max_age_days: Optional[float] = None


class PluralityAnalysis(BaseModel):
    minimum_count_required: float = 0
    actual_count_provided: float = 0


class CompletenessAnalysis(BaseModel):
    aspects_expected: str = ""
    aspects_provided: str = ""


class EvaluationResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Optional[EvaluationType] = None
    pass_: bool = Field(False, alias="pass")
    think: str = ""
    freshness_analysis: Optional[FreshnessAnalysis] = None
    plurality_analysis: Optional[PluralityAnalysis] = None
    completeness_analysis: Optional[CompletenessAnalysis] = None
    exact_quote: Optional[str] = None
    improvement_plan: Optional[str] = None


class ErrorAnalysis(BaseModel):
    recap: str = ""
    blame: str = ""
    improvement: str = ""


# ---------- permissions ----------

class Permissions(BaseModel):
    """Which actions the model may choose in the next step."""

    model_config = ConfigDict(frozen=True)

    search: bool = True
    read: bool = True
    answer: bool = True
    reflect: bool = True
    coding: bool = True

    @classmethod
    def all(cls) -> "Permissions":
        return cls()

    @classmethod
    def answer_only(cls) -> "Permissions":
        return cls(search=False, read=False, answer=True, reflect=False, coding=False)

    def with_(self, **overrides: bool) -> "Permissions":
        return self.model_copy(update=overrides)

    def allowed_actions(self) -> List[str]:
        """Action names in schema order; ``read`` maps to the ``visit`` action."""
        names = []
        if self.search:
            names.append("search")
        if self.coding:
            names.append("coding")
        if self.answer:
            names.append("answer")
        if self.reflect:
            names.append("reflect")
        if self.read:
            names.append("visit")
        return names


# ---------- usage & session ----------

class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass
class TrackerContext:
    token_tracker: Any
    action_tracker: Any


@dataclass
class ResearchResult:
    result: StepAction
    context: TrackerContext
    visited_urls: List[str]
    read_urls: List[str]
    all_urls: List[str]
    image_references: Optional[List[ImageReference]] = None


# ---------- LangGraph state ----------

class AgentState(TypedDict, total=False):
    session: Any
    phase: str
