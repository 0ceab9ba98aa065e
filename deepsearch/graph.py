"""LangGraph state machine for one research session.

    setup ──▶ step ──▶ step ... ──▶ beast ──▶ finalize ──▶ END
                 └──────────────────────────▶ finalize

``step`` repeats while the regular budget (85% of the token budget) lasts.
It leaves for ``finalize`` once an answer is accepted (or a team-mode
aggregate is ready) and for ``beast`` when the evaluation attempts run
out, the budget is spent or ``MAX_STEPS`` is reached. Beast mode forces a
single answer-only step whose result is always final.
"""

import asyncio
import logging
import uuid
from typing import Any, Dict, List, Optional, Sequence

from langgraph.graph import END, StateGraph
from langsmith import traceable

from . import agents, prompts, references
from .config import get_config
from .executor import Session, StepExecutor
from .llm import ObjectGenerator
from .models import (
    AgentState,
    AnswerAction,
    EvaluationMetric,
    Permissions,
    ResearchResult,
    TrackerContext,
    parse_action,
)
from .persistence import FileSessionSink, SessionSink
from .schemas import MAX_REFLECT_PER_STEP, SchemaBuilder, json_schema
from .text_tools import (
    build_md_from_answer,
    convert_html_tables_to_md,
    fix_code_block_indentation,
    repair_markdown_final,
    repair_markdown_footnotes_outer,
)
from .tracking import ActionTracker, TokenTracker
from .url_tools import (
    add_to_all_urls,
    extract_urls_with_description,
    filter_urls,
    fix_bad_url_md_links,
    keep_k_per_hostname,
    rank_urls,
)

logger = logging.getLogger(__name__)

MAX_URLS_BEFORE_NO_SEARCH = 50
URLS_PER_HOSTNAME = 2
MAX_AGGREGATED_IMAGES = 10
NO_ACTIONS = Permissions(search=False, read=False, answer=False, reflect=False, coding=False)


def _message_text(message: Dict[str, Any], last_only: bool = False) -> str:
    """Text of a chat message whose content is a string or a list of parts."""
    content = message.get("content")
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, list):
        texts = [p.get("text", "") for p in content if isinstance(p, dict) and p.get("type") == "text"]
        if last_only:
            return texts[-1].strip() if texts else ""
        return "\n".join(texts).strip()
    return ""


def _route(state: AgentState) -> str:
    s: Session = state["session"]
    if s.is_final:
        return "finalize"
    if s.abandoned or s.budget_exhausted or s.total_step >= get_config().max_steps:
        return "beast"
    return "step"


# ── nodes ────────────────────────────────────────────────────────────

async def setup_node(state: AgentState) -> Dict[str, Any]:
    s: Session = state["session"]
    for message in s.messages:
        for snippet in extract_urls_with_description(_message_text(message)):
            add_to_all_urls(snippet, s.all_urls)
    logger.info(
        "Session start: %r (budget %d tokens, %d seeded URLs)",
        s.question[:80], s.token_budget, len(s.all_urls),
    )
    return {"phase": "setup"}


async def step_node(state: AgentState) -> Dict[str, Any]:
    s: Session = state["session"]
    s.step += 1
    s.total_step += 1

    perms = s.permissions
    perms = perms.with_(reflect=perms.reflect and len(s.gaps) <= MAX_REFLECT_PER_STEP)
    current_question = s.gaps[s.total_step % len(s.gaps)]
    logger.info(
        "Step %d (total %d): %d gaps, %d knowledge, %d URLs, %d tokens used",
        s.step, s.total_step, len(s.gaps), len(s.all_knowledge), len(s.all_urls),
        s.token_tracker.get_total_usage().total_tokens,
    )

    if current_question.strip() == s.question and s.total_step == 1:
        checks = await agents.evaluate_question(current_question, s.generator, s.schemas)
        s.evaluation_metrics[current_question] = [
            EvaluationMetric(type=t, num_evals_required=s.max_bad_attempts) for t in checks
        ] + [EvaluationMetric(type="strict", num_evals_required=s.max_bad_attempts)]
    elif current_question.strip() != s.question:
        s.evaluation_metrics[current_question] = []

    if s.total_step == 1 and any(m.type == "freshness" for m in s.evaluation_metrics.get(current_question, [])):
        # time-sensitive: no answering from memory on the first step
        perms = perms.with_(answer=False, reflect=False)

    if s.all_urls:
        s.weighted_urls = keep_k_per_hostname(
            rank_urls(
                filter_urls(s.all_urls, s.visited_urls, s.bad_hostnames, s.only_hostnames),
                current_question,
                s.boost_hostnames,
            ),
            URLS_PER_HOSTNAME,
        )
    perms = perms.with_(
        read=perms.read and len(s.weighted_urls) > 0,
        search=perms.search and len(s.weighted_urls) < MAX_URLS_BEFORE_NO_SEARCH,
    )

    system, s.url_list = prompts.get_prompt(s.diary, s.all_keywords, perms, s.weighted_urls)
    schema = s.schemas.build_agent_schema(perms, current_question)
    messages = prompts.compose_msgs(
        s.messages,
        s.all_knowledge,
        current_question,
        s.final_answer_pip if current_question == s.question else None,
    )
    s.last_prompt, s.last_schema, s.last_messages = system, json_schema(schema), messages

    result = await s.generator.generate_object("agent", schema, system=system, messages=messages, num_retries=2)
    action = parse_action(result.object)
    logger.info("Step %d: allowed [%s], chose %s", s.total_step, ", ".join(perms.allowed_actions()), action.action)
    s.this_step = action
    s.action_tracker.track_action({"total_step": s.total_step, "this_step": action, "gaps": list(s.gaps)})

    if action.action in perms.allowed_actions():
        s.permissions = await StepExecutor(s).execute(action, current_question)
    else:
        logger.warning("Step %d: %s is not allowed at this step, skipping it", s.total_step, action.action)
        s.diary.append(f"""
At step {s.step}, you chose **{action.action}** action, but it was not available at that step. Nothing was done.
""")

    s.sink.record(s.snapshot())
    if _route(state) == "step":
        await asyncio.sleep(get_config().step_sleep)
    return {"phase": "step"}


async def beast_node(state: AgentState) -> Dict[str, Any]:
    s: Session = state["session"]
    logger.info(
        "Beast mode: %d tokens used of %d after %d steps",
        s.token_tracker.get_total_usage().total_tokens, s.token_budget, s.total_step,
    )
    s.step += 1
    s.total_step += 1

    system, _ = prompts.get_prompt(s.diary, s.all_keywords, NO_ACTIONS, s.weighted_urls, beast_mode=True)
    schema = s.schemas.build_agent_schema(Permissions.answer_only(), s.question)
    messages = prompts.compose_msgs(s.messages, s.all_knowledge, s.question, s.final_answer_pip)
    s.last_prompt, s.last_schema, s.last_messages = system, json_schema(schema), messages

    result = await s.generator.generate_object(
        "agent_beast_mode", schema, system=system, messages=messages, num_retries=2
    )
    action = parse_action(result.object)
    if not isinstance(action, AnswerAction):
        action = AnswerAction(think=action.think)
    action.is_final = True
    s.this_step = action
    s.action_tracker.track_action({"total_step": s.total_step, "this_step": action, "gaps": list(s.gaps)})
    s.sink.record(s.snapshot())
    return {"phase": "beast"}


async def finalize_node(state: AgentState) -> Dict[str, Any]:
    s: Session = state["session"]
    answer: AnswerAction = s.this_step

    if s.trivial:
        answer.md_answer = build_md_from_answer(answer)
    elif not answer.is_aggregated:
        finalized = await agents.finalize_answer(answer.answer, s.all_knowledge, s.generator, s.schemas)
        answer.answer = repair_markdown_final(
            convert_html_tables_to_md(
                fix_bad_url_md_links(
                    fix_code_block_indentation(repair_markdown_footnotes_outer(finalized)),
                    s.all_urls,
                )
            )
        )
        answer.answer, answer.references = await references.build_references(
            answer.answer,
            s.web_contents,
            s.token_tracker,
            80,
            s.max_ref,
            s.min_rel_score,
            s.only_hostnames,
        )
        await references.update_references(answer, s.all_urls)
        answer.md_answer = repair_markdown_footnotes_outer(build_md_from_answer(answer))

        if s.image_objects and s.with_images:
            try:
                answer.image_references = await references.build_image_references(
                    answer.answer, s.image_objects, s.token_tracker
                )
            except Exception as exc:
                logger.warning("Image reference building failed: %s", exc)
                answer.image_references = []
    else:
        answer.answer = "\n\n".join(s.candidate_answers)
        answer.md_answer = repair_markdown_footnotes_outer(build_md_from_answer(answer))
        if s.with_images and answer.image_references:
            ranked = sorted(answer.image_references, key=lambda i: i.relevance_score or 0, reverse=True)
            answer.image_references = (await references.dedup_images(ranked, s.token_tracker))[:MAX_AGGREGATED_IMAGES]

    logger.info(
        "Finished after %d steps: %d chars, %d references, %d tokens",
        s.total_step, len(answer.answer or ""), len(answer.references or []),
        s.token_tracker.get_total_usage().total_tokens,
    )
    return {"phase": "done"}


def build_graph() -> StateGraph:
    graph = StateGraph(AgentState)

    graph.add_node("setup", setup_node)
    graph.add_node("step", step_node)
    graph.add_node("beast", beast_node)
    graph.add_node("finalize", finalize_node)

    graph.set_entry_point("setup")
    graph.add_conditional_edges("setup", _route, {"step": "step", "beast": "beast", "finalize": "finalize"})
    graph.add_conditional_edges("step", _route, {"step": "step", "beast": "beast", "finalize": "finalize"})
    graph.add_edge("beast", "finalize")
    graph.add_edge("finalize", END)
    return graph


# ── entry point ──────────────────────────────────────────────────────

@traceable(name="get_response")
async def get_response(
    question: Optional[str] = None,
    token_budget: int = 1_000_000,
    max_bad_attempts: int = 2,
    existing_context: Optional[TrackerContext] = None,
    messages: Optional[List[Dict[str, Any]]] = None,
    num_returned_urls: int = 100,
    no_direct_answer: bool = False,
    boost_hostnames: Sequence[str] = (),
    bad_hostnames: Sequence[str] = (),
    only_hostnames: Sequence[str] = (),
    max_ref: int = 10,
    min_rel_score: float = 0.80,
    language_code: Optional[str] = None,
    search_language_code: Optional[str] = None,
    search_provider: Optional[str] = None,
    with_images: bool = False,
    team_size: int = 1,
    sink: Optional[SessionSink] = None,
) -> ResearchResult:
    """Research *question* (or the last user message) and return the final answer.

    Only ``SearchUnauthorizedError`` is raised for a normal session; every
    other failure inside a step is logged and recorded in the diary.
    """
    question = (question or "").strip()
    messages = [m for m in messages or [] if m.get("role") != "system"]
    if messages:
        question = _message_text(messages[-1], last_only=True)
    else:
        messages = [{"role": "user", "content": question}]
    if not question:
        raise ValueError("A question or a message history is required")

    context = TrackerContext(
        token_tracker=existing_context.token_tracker if existing_context else TokenTracker(token_budget),
        action_tracker=existing_context.action_tracker if existing_context else ActionTracker(),
    )
    generator = ObjectGenerator(context.token_tracker)
    schemas = SchemaBuilder()
    await schemas.set_language(language_code or question, generator)
    if search_language_code:
        schemas.search_language_code = search_language_code

    session = Session(
        question=question,
        messages=messages,
        context=context,
        generator=generator,
        schemas=schemas,
        sink=sink or FileSessionSink(),
        token_budget=token_budget,
        max_bad_attempts=max_bad_attempts,
        num_returned_urls=num_returned_urls,
        no_direct_answer=no_direct_answer,
        boost_hostnames=list(boost_hostnames),
        bad_hostnames=list(bad_hostnames),
        only_hostnames=list(only_hostnames),
        max_ref=max_ref,
        min_rel_score=min_rel_score,
        search_provider=search_provider,
        with_images=with_images,
        team_size=team_size,
    )

    async def _sub_session(subproblem: str) -> ResearchResult:
        return await get_response(
            subproblem,
            token_budget=token_budget,
            max_bad_attempts=max_bad_attempts,
            existing_context=context,
            num_returned_urls=num_returned_urls,
            no_direct_answer=no_direct_answer,
            boost_hostnames=boost_hostnames,
            bad_hostnames=bad_hostnames,
            only_hostnames=only_hostnames,
            max_ref=max_ref,
            min_rel_score=min_rel_score,
            language_code=schemas.language_code,
            search_language_code=search_language_code,
            search_provider=search_provider,
            with_images=with_images,
            team_size=1,
            sink=session.sink,
        )

    session.spawn = _sub_session

    app = build_graph().compile()
    run_id = str(uuid.uuid4())
    logger.debug("Running session %s", run_id)
    await app.ainvoke(
        {"session": session, "phase": "init"},
        config={"recursion_limit": get_config().max_steps + 10, "run_name": f"deepsearch-{run_id}"},
    )

    answer = session.this_step
    return ResearchResult(
        result=answer,
        context=context,
        visited_urls=[u.url for u in session.weighted_urls[:num_returned_urls] if u.url],
        read_urls=[u for u in session.visited_urls if u not in session.bad_urls],
        all_urls=[u.url for u in session.weighted_urls],
        image_references=answer.image_references if with_images and isinstance(answer, AnswerAction) else None,
    )
