"""LLM-backed collaborators used by the research loop.

Every function takes the session's ``ObjectGenerator`` (which charges the
shared token budget) and ``SchemaBuilder`` (which phrases schemas in the
user's language) explicitly.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from langsmith import traceable

from .llm import ObjectGenerator
from .models import (
    AnswerAction,
    ErrorAnalysis,
    EvaluationResult,
    KnowledgeItem,
    SearchAction,
    SERPQuery,
)
from .prompts import (
    ERROR_ANALYSIS_SYSTEM,
    EVALUATOR_SYSTEMS,
    FINALIZER_SYSTEM,
    QUERY_REWRITER_SYSTEM,
    QUESTION_EVALUATE_SYSTEM,
    RESEARCH_PLANNER_SYSTEM,
    SERP_CLUSTER_SYSTEM,
    current_time,
    format_knowledge,
)
from .schemas import SchemaBuilder

logger = logging.getLogger(__name__)

QUESTION_CHECKS = ("definitive", "freshness", "plurality", "completeness")


def _time_vars() -> Dict[str, Any]:
    now = datetime.now(timezone.utc)
    return {"current_time": current_time(), "current_year": now.year, "current_month": now.month}


# ── evaluation ───────────────────────────────────────────────────────

@traceable(name="evaluate_question")
async def evaluate_question(
    question: str,
    generator: ObjectGenerator,
    schemas: SchemaBuilder,
) -> List[str]:
    """Which answer checks apply to *question*, in priority order.

    Falls back to ``["definitive"]`` when the classifier cannot be reached.
    """
    try:
        result = await generator.generate_object(
            "evaluator",
            schemas.question_evaluate_schema(),
            system=QUESTION_EVALUATE_SYSTEM,
            prompt=question,
        )
    except Exception as exc:
        logger.warning("Question evaluation failed, defaulting to definitive: %s", exc)
        return ["definitive"]

    obj = result.object
    types = [t for t in QUESTION_CHECKS if obj.get(f"needs_{t}")]
    # completeness covers plurality
    if "completeness" in types and "plurality" in types:
        types.remove("plurality")
    logger.info("Question checks for %r: %s", question[:60], types)
    return types


def _evaluation_prompt(question: str, answer: str, eval_type: str, knowledge: Sequence[KnowledgeItem]) -> str:
    parts = [f"<question>\n{question}\n</question>", f"<answer>\n{answer}\n</answer>"]
    if eval_type == "attribution":
        sources = "\n\n".join(
            f"<source-{i}>\n{k.answer}\n</source-{i}>" for i, k in enumerate(knowledge, start=1)
        )
        parts.append(f"<sources>\n{sources}\n</sources>")
    return "\n\n".join(parts)


def _enforce_numeric(result: EvaluationResult) -> EvaluationResult:
    """Recompute ``pass`` for freshness and plurality from the reported numbers."""
    if result.type == "freshness" and result.freshness_analysis:
        fa = result.freshness_analysis
        if fa.max_age_days is not None:
            result.pass_ = fa.days_ago <= fa.max_age_days
    elif result.type == "plurality" and result.plurality_analysis:
        pa = result.plurality_analysis
        result.pass_ = pa.actual_count_provided >= pa.minimum_count_required
    return result


@traceable(name="evaluate_answer")
async def evaluate_answer(
    question: str,
    action: AnswerAction,
    eval_types: Sequence[str],
    generator: ObjectGenerator,
    schemas: SchemaBuilder,
    knowledge: Sequence[KnowledgeItem] = (),
) -> Optional[EvaluationResult]:
    """Run *eval_types* in order; return the first failure, else the last pass.

    A check whose generation fails counts as a failure of that check.
    ``None`` means *eval_types* was empty.
    """
    result: Optional[EvaluationResult] = None
    for eval_type in eval_types:
        if eval_type == "attribution" and not knowledge:
            result = EvaluationResult(type="attribution", pass_=True, think="No knowledge to attribute against.")
            continue

        system = EVALUATOR_SYSTEMS[eval_type]
        if eval_type == "freshness":
            system = system.format(current_time=current_time())
        elif eval_type == "strict":
            system = system.format(knowledge=format_knowledge(knowledge))

        try:
            generated = await generator.generate_object(
                "evaluator",
                schemas.evaluator_schema(eval_type),
                system=system,
                prompt=_evaluation_prompt(question, action.answer, eval_type, knowledge),
            )
            result = _enforce_numeric(EvaluationResult.model_validate({**generated.object, "type": eval_type}))
        except Exception as exc:
            logger.warning("Evaluation [%s] could not be generated: %s", eval_type, exc)
            result = EvaluationResult(
                type=eval_type, pass_=False, think=f"The {eval_type} evaluation could not be completed: {exc}"
            )

        if not result.pass_:
            logger.info("Answer failed %s check: %s", eval_type, result.think[:200])
            return result
    return result


# ── error analysis ───────────────────────────────────────────────────

@traceable(name="analyze_steps")
async def analyze_steps(
    diary: Sequence[str],
    generator: ObjectGenerator,
    schemas: SchemaBuilder,
) -> ErrorAnalysis:
    steps = "\n".join(diary)
    result = await generator.generate_object(
        "error_analyzer",
        schemas.error_analysis_schema(),
        system=ERROR_ANALYSIS_SYSTEM,
        prompt=f"<steps>\n{steps}\n</steps>",
    )
    return ErrorAnalysis.model_validate(result.object)


# ── search helpers ───────────────────────────────────────────────────

@traceable(name="rewrite_query")
async def rewrite_query(
    action: SearchAction,
    soundbites: str,
    generator: ObjectGenerator,
    schemas: SchemaBuilder,
) -> List[SERPQuery]:
    """Expand each search request into several orthogonal keyword queries."""
    system = QUERY_REWRITER_SYSTEM.format(**_time_vars())

    async def _one(request: str) -> List[SERPQuery]:
        prompt = (
            f"My original search query is: \"{request}\"\n\n"
            f"My motivation is: {action.think}\n\n"
            f"So I briefly googled \"{request}\" and found some soundbites about this topic, "
            f"hope it gives you a rough idea about my context and topic:\n<random-soundbites>\n"
            f"{soundbites}\n</random-soundbites>\n\n"
            "Given those info, now please generate the best effective queries that follow "
            "JSON schema format; add correct 'tbs' you believe the query requires time-sensitive results."
        )
        result = await generator.generate_object(
            "query_rewriter",
            schemas.query_rewriter_schema(),
            system=system,
            prompt=prompt,
        )
        return [SERPQuery.model_validate(q) for q in result.object.get("queries") or []]

    batches = await asyncio.gather(*[_one(r) for r in action.search_requests])
    queries = [q for batch in batches for q in batch]
    logger.info("Query rewriter: %d requests → %d queries", len(action.search_requests), len(queries))
    return queries


@traceable(name="serp_cluster")
async def serp_cluster(
    results: Sequence[Dict[str, Any]],
    generator: ObjectGenerator,
    schemas: SchemaBuilder,
) -> List[Dict[str, Any]]:
    """Group raw search results into ``{insight, question, urls}`` clusters."""
    result = await generator.generate_object(
        "serp_cluster",
        schemas.serp_cluster_schema(),
        system=SERP_CLUSTER_SYSTEM,
        prompt=json.dumps(list(results), ensure_ascii=False),
    )
    clusters = result.object.get("clusters") or []
    logger.info("SERP clustering → %d clusters", len(clusters))
    return clusters


# ── team mode ────────────────────────────────────────────────────────

@traceable(name="research_plan")
async def research_plan(
    question: str,
    team_size: int,
    soundbites: str,
    generator: ObjectGenerator,
    schemas: SchemaBuilder,
) -> List[str]:
    system = RESEARCH_PLANNER_SYSTEM.format(team_size=team_size, **_time_vars())
    prompt = (
        f"{question}\n\n<soundbites>\n{soundbites}\n</soundbites>\n\n"
        "<think>First, I need to look at the soundbites and the question to understand the topic, "
        "then decompose it into orthogonal subproblems.</think>"
    )
    result = await generator.generate_object(
        "research_planner",
        schemas.research_plan_schema(team_size),
        system=system,
        prompt=prompt,
    )
    subproblems = [s for s in result.object.get("subproblems") or [] if s]
    logger.info("Research planner → %d subproblems", len(subproblems))
    return subproblems


# ── finalizer ────────────────────────────────────────────────────────

@traceable(name="finalize_answer")
async def finalize_answer(
    md_content: str,
    knowledge: Sequence[KnowledgeItem],
    generator: ObjectGenerator,
    schemas: SchemaBuilder,
) -> str:
    """Editorial rewrite of the answer. Returns the input unchanged on failure."""
    system = FINALIZER_SYSTEM.format(
        current_time=current_time(),
        knowledge=format_knowledge(knowledge),
        language_style=schemas.language_style,
    )
    try:
        revised = await generator.generate_text("finalizer", system, md_content)
    except Exception as exc:
        logger.warning("Finalizer failed, keeping the draft: %s", exc)
        return md_content
    # a near-empty rewrite means the model dropped the content
    if len(revised) < len(md_content) * 0.3:
        logger.warning("Finalizer output too short (%d vs %d chars), keeping the draft", len(revised), len(md_content))
        return md_content
    return revised
