"""Session state and the per-action step executor.

``Session`` holds everything one research call accumulates. The executor
performs the side effects of the action the model chose and returns the
``Permissions`` for the next step; it never mutates permission flags in
place.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from . import agents, dedup, sandbox, search
from .config import get_config
from .llm import ObjectGenerator
from .models import (
    AnswerAction,
    BoostedSearchSnippet,
    CodingAction,
    EvaluationMetric,
    EvaluationResult,
    ImageObject,
    KnowledgeItem,
    Permissions,
    ReflectAction,
    ResearchResult,
    SearchAction,
    SearchSnippet,
    SERPQuery,
    StepAction,
    TrackerContext,
    VisitAction,
    WebContent,
)
from .persistence import SessionSink
from .schemas import MAX_QUERIES_PER_STEP, MAX_REFLECT_PER_STEP, MAX_URLS_PER_STEP, SchemaBuilder
from .text_tools import chunk_text, choose_k, format_date, format_date_range, remove_extra_line_breaks, remove_html_tags
from .url_tools import add_to_all_urls, normalize_url

logger = logging.getLogger(__name__)

BUDGET_RESERVE = 0.85
MAX_LINKS_PER_PAGE = 20
LINK_WEIGHT = 0.5
NO_NEW_INFO = "You must think out of the box or different angle!!!"

SubSession = Callable[[str], Awaitable[ResearchResult]]


@dataclass
class Session:
    question: str
    messages: List[Dict[str, Any]]
    context: TrackerContext
    generator: ObjectGenerator
    schemas: SchemaBuilder
    sink: SessionSink
    token_budget: int = 1_000_000
    max_bad_attempts: int = 2
    num_returned_urls: int = 100
    no_direct_answer: bool = False
    boost_hostnames: List[str] = field(default_factory=list)
    bad_hostnames: List[str] = field(default_factory=list)
    only_hostnames: List[str] = field(default_factory=list)
    max_ref: int = 10
    min_rel_score: float = 0.8
    search_provider: Optional[str] = None
    with_images: bool = False
    team_size: int = 1
    spawn: Optional[SubSession] = None

    step: int = 0
    total_step: int = 0
    gaps: List[str] = field(default_factory=list)
    all_questions: List[str] = field(default_factory=list)
    all_keywords: List[str] = field(default_factory=list)
    all_knowledge: List[KnowledgeItem] = field(default_factory=list)
    diary: List[str] = field(default_factory=list)
    all_context: List[Dict[str, Any]] = field(default_factory=list)
    all_urls: Dict[str, SearchSnippet] = field(default_factory=dict)
    web_contents: Dict[str, WebContent] = field(default_factory=dict)
    visited_urls: List[str] = field(default_factory=list)
    bad_urls: List[str] = field(default_factory=list)
    image_objects: List[ImageObject] = field(default_factory=list)
    evaluation_metrics: Dict[str, List[EvaluationMetric]] = field(default_factory=dict)
    final_answer_pip: List[str] = field(default_factory=list)
    candidate_answers: List[str] = field(default_factory=list)
    weighted_urls: List[BoostedSearchSnippet] = field(default_factory=list)
    url_list: List[str] = field(default_factory=list)
    permissions: Permissions = field(default_factory=lambda: Permissions(coding=False))
    this_step: Optional[StepAction] = None
    trivial: bool = False
    abandoned: bool = False
    last_prompt: str = ""
    last_schema: Dict[str, Any] = field(default_factory=dict)
    last_messages: List[Dict[str, str]] = field(default_factory=list)

    def __post_init__(self):
        if not self.gaps:
            self.gaps = [self.question]
        if not self.all_questions:
            self.all_questions = [self.question]

    @property
    def token_tracker(self):
        return self.context.token_tracker

    @property
    def action_tracker(self):
        return self.context.action_tracker

    @property
    def regular_budget(self) -> float:
        return self.token_budget * BUDGET_RESERVE

    @property
    def budget_exhausted(self) -> bool:
        return self.token_tracker.get_total_usage().total_tokens >= self.regular_budget

    @property
    def is_final(self) -> bool:
        return isinstance(self.this_step, AnswerAction) and self.this_step.is_final

    def update_context(self, entry: Dict[str, Any]):
        self.all_context.append({"total_step": self.total_step, **entry})

    def snapshot(self) -> Dict[str, Any]:
        return {
            "step": self.step,
            "total_step": self.total_step,
            "question": self.question,
            "prompt": self.last_prompt,
            "schema": self.last_schema,
            "context": list(self.all_context),
            "queries": list(self.all_keywords),
            "questions": list(self.all_questions),
            "knowledge": [k.model_dump() for k in self.all_knowledge],
            "urls": [u.model_dump() for u in self.weighted_urls],
            "messages": list(self.last_messages),
        }


class StepExecutor:
    def __init__(self, session: Session):
        self.session = session

    async def execute(self, action: StepAction, current_question: str) -> Permissions:
        """Run *action* and return the permissions for the next step."""
        s = self.session
        if isinstance(action, AnswerAction) and action.answer:
            return await self.answer(action, current_question)
        if isinstance(action, ReflectAction):
            return await self.reflect(action, current_question)
        if isinstance(action, SearchAction):
            return await self.search(action, current_question)
        if isinstance(action, VisitAction) and action.url_targets and s.url_list:
            return await self.visit(action, current_question)
        if isinstance(action, CodingAction) and action.coding_issue:
            return await self.coding(action, current_question)
        logger.info("Step %d: empty %s action, nothing to do", s.total_step, action.action)
        return Permissions.all()

    # ── answer ───────────────────────────────────────────────────────

    async def answer(self, action: AnswerAction, current_question: str) -> Permissions:
        s = self.session
        if s.total_step == 1 and not s.no_direct_answer:
            # confident first-step answer, no evaluation
            action.is_final = True
            s.trivial = True
            logger.info("Trivial answer at step 1")
            return Permissions.all()

        s.update_context({"question": current_question, **action.model_dump()})

        metrics = s.evaluation_metrics.get(current_question, [])
        evaluation = EvaluationResult(pass_=True, think="")
        if metrics:
            s.action_tracker.track_think("eval_first", s.schemas.language_code)
            result = await agents.evaluate_answer(
                current_question,
                action,
                [m.type for m in metrics if m.num_evals_required > 0],
                s.generator,
                s.schemas,
                s.all_knowledge,
            )
            evaluation = result or EvaluationResult(pass_=False, think="No evaluation result was produced.")

        if current_question.strip() == s.question:
            # coding stays off after an attempt at the original question
            next_perms = Permissions.all().with_(coding=False)
            if evaluation.pass_:
                s.diary.append(f"""
At step {s.step}, you took **answer** action and finally found the answer to the original question:

Original question:
{current_question}

Your answer:
{action.answer}

The evaluator thinks your answer is good because:
{evaluation.think}

Your journey ends here. You have successfully answered the original question. Congratulations! 🎉
""")
                action.is_final = True
                return next_perms

            for m in metrics:
                if m.type == evaluation.type:
                    m.num_evals_required -= 1
            s.evaluation_metrics[current_question] = [m for m in metrics if m.num_evals_required > 0]
            if evaluation.type == "strict" and evaluation.improvement_plan:
                s.final_answer_pip.append(evaluation.improvement_plan)

            if not s.evaluation_metrics[current_question]:
                logger.info("All evaluation attempts used up, giving up on regular answering")
                action.is_final = False
                s.abandoned = True
                return next_perms

            s.diary.append(f"""
At step {s.step}, you took **answer** action but evaluator thinks it is not a good answer:

Original question:
{current_question}

Your answer:
{action.answer}

The evaluator thinks your answer is bad because:
{evaluation.think}
""")
            analysis = await agents.analyze_steps(s.diary, s.generator, s.schemas)
            s.all_knowledge.append(KnowledgeItem(
                question=f"""
Why is the following answer bad for the question? Please reflect

<question>
{current_question}
</question>

<answer>
{action.answer}
</answer>
""",
                answer=f"""
{evaluation.think}

{analysis.recap}

{analysis.blame}

{analysis.improvement}
""",
                type="qa",
            ))
            s.diary = []
            s.step = 0
            return next_perms.with_(answer=False)

        if evaluation.pass_:
            s.diary.append(f"""
At step {s.step}, you took **answer** action. You found a good answer to the sub-question:

Sub-question:
{current_question}

Your answer:
{action.answer}

The evaluator thinks your answer is good because:
{evaluation.think}

Although you solved a sub-question, you still need to find the answer to the original question. You need to keep going.
""")
            s.all_knowledge.append(KnowledgeItem(
                question=current_question,
                answer=action.answer,
                type="qa",
                updated=format_date(),
            ))
            s.gaps.remove(current_question)
            logger.info("Solved sub-question, %d gaps left", len(s.gaps))
        return Permissions.all()

    # ── reflect ──────────────────────────────────────────────────────

    async def reflect(self, action: ReflectAction, current_question: str) -> Permissions:
        s = self.session
        unique = await dedup.dedup_queries(action.questions_to_answer, s.all_questions, s.token_tracker)
        action.questions_to_answer = choose_k(unique, MAX_REFLECT_PER_STEP)
        new_questions = action.questions_to_answer

        if new_questions:
            listed = "\n".join(f"- {q}" for q in new_questions)
            s.diary.append(f"""
At step {s.step}, you took **reflect** and think about the knowledge gaps. You found some sub-questions are important to the question: "{current_question}"
You realize you need to know the answers to the following sub-questions:
{listed}

You will now figure out the answers to these sub-questions and see if they can help you find the answer to the original question.
""")
            s.gaps.extend(new_questions)
            s.all_questions.extend(new_questions)
            s.update_context(action.model_dump())
        else:
            s.diary.append(f"""
At step {s.step}, you took **reflect** and think about the knowledge gaps. You tried to break down the question "{current_question}" into gap-questions like this: {', '.join(new_questions)}
But then you realized you have asked them before. You decided to to think out of the box or cut from a completely different angle.
""")
            s.update_context({
                **action.model_dump(),
                "result": f"You have tried all possible questions and found no useful information. {NO_NEW_INFO}",
            })
        return Permissions.all().with_(reflect=False)

    # ── search ───────────────────────────────────────────────────────

    async def execute_search_queries(
        self,
        queries: Sequence[SERPQuery],
        only_hostnames: Sequence[str] = (),
    ) -> Tuple[List[str], List[KnowledgeItem]]:
        """Run each query, merge hits into the registry and digest them into knowledge.

        Returns the queries that produced results and the new knowledge
        items. Only ``SearchUnauthorizedError`` escapes.
        """
        s = self.session
        searched: List[str] = []
        new_knowledge: List[KnowledgeItem] = []
        s.action_tracker.track_think(
            "search_for", s.schemas.language_code, {"keywords": ", ".join(q.q for q in queries)}
        )
        utility = 0
        step_sleep = get_config().step_sleep

        for query in queries:
            old_q = query.q
            if only_hostnames:
                query = query.model_copy(update={"q": f"{query.q} site:{' OR site:'.join(only_hostnames)}"})
            try:
                results = await asyncio.to_thread(search.search, query, s.search_provider)
                if not results:
                    raise ValueError("No results found")
            except search.SearchUnauthorizedError:
                raise
            except Exception as exc:
                logger.warning("Search failed for %r: %s", query.q, exc)
                continue
            finally:
                await asyncio.sleep(step_sleep)

            snippets: List[SearchSnippet] = []
            for r in results:
                url = normalize_url(r.get("url") or r.get("link") or "")
                if not url:
                    continue
                snippets.append(SearchSnippet(
                    url=url,
                    title=r.get("title") or "",
                    description=r.get("description") or r.get("snippet") or "",
                    weight=1,
                    date=r.get("date"),
                ))
            for snippet in snippets:
                utility += add_to_all_urls(snippet, s.all_urls)
                s.web_contents[snippet.url] = WebContent(title=snippet.title, chunks=[snippet.description])
            searched.append(query.q)

            try:
                clusters = await agents.serp_cluster([sn.model_dump() for sn in snippets], s.generator, s.schemas)
                for c in clusters:
                    new_knowledge.append(KnowledgeItem(
                        question=c.get("question") or "",
                        answer=c.get("insight") or "",
                        references=c.get("urls") or [],
                        type="url",
                    ))
            except Exception as exc:
                logger.warning("SERP clustering failed for %r: %s", old_q, exc)
            new_knowledge.append(KnowledgeItem(
                question=f'What do Internet say about "{old_q}"?',
                answer=remove_html_tags("; ".join(sn.description for sn in snippets)),
                type="side-info",
                updated=format_date_range(query.tbs),
            ))
            s.action_tracker.track_action({"this_step": SearchAction(search_requests=[old_q])})

        if not searched and only_hostnames:
            logger.warning("No results for %s on %s", [q.q for q in queries], only_hostnames)
            s.action_tracker.track_think(
                "hostnames_no_results", s.schemas.language_code, {"hostnames": ", ".join(only_hostnames)}
            )
        elif searched:
            logger.info("Searched %d queries, %d new URLs", len(searched), utility)
        return searched, new_knowledge

    async def search(self, action: SearchAction, current_question: str) -> Permissions:
        s = self.session
        unique = await dedup.dedup_queries(action.search_requests, [], s.token_tracker)
        action.search_requests = choose_k(unique, MAX_QUERIES_PER_STEP)

        searched, new_knowledge = await self.execute_search_queries([SERPQuery(q=q) for q in action.search_requests])
        s.all_keywords.extend(searched)
        s.all_knowledge.extend(new_knowledge)
        soundbites = " ".join(k.answer for k in new_knowledge)

        if s.team_size > 1:
            subproblems = await agents.research_plan(s.question, s.team_size, soundbites, s.generator, s.schemas)
            if len(subproblems) > 1:
                await self._run_team(action, subproblems)
                return Permissions.all()
            if subproblems:
                s.gaps.append(subproblems[0])

        rewritten = await agents.rewrite_query(action, soundbites, s.generator, s.schemas)
        q_only = [q.q for q in rewritten if q.q]
        unique_q = choose_k(await dedup.dedup_queries(q_only, s.all_keywords, s.token_tracker), MAX_QUERIES_PER_STEP)
        keyword_queries: List[SERPQuery] = []
        for q in unique_q:
            matches = [kq for kq in rewritten if kq.q == q]
            # the same text with different filters collapses into a plain query
            keyword_queries.append(SERPQuery(q=q) if len(matches) > 1 else matches[0])

        any_result = False
        keywords = ", ".join(q.q for q in keyword_queries)
        if keyword_queries:
            searched, new_knowledge = await self.execute_search_queries(keyword_queries, s.only_hostnames)
            if searched:
                any_result = True
                s.all_keywords.extend(searched)
                s.all_knowledge.extend(new_knowledge)
                s.diary.append(f"""
At step {s.step}, you took the **search** action and look for external information for the question: "{current_question}".
In particular, you tried to search for the following keywords: "{keywords}".
You found quite some information and add them to your URL list and **visit** them later when needed.
""")
                s.update_context({
                    "question": current_question,
                    **action.model_dump(),
                    "result": [k.model_dump() for k in new_knowledge],
                })
        if not any_result:
            s.diary.append(f"""
At step {s.step}, you took the **search** action and look for external information for the question: "{current_question}".
In particular, you tried to search for the following keywords:  "{keywords}".
But then you realized you have already searched for these keywords before, no new information is returned.
You decided to think out of the box or cut from a completely different angle.
""")
            s.update_context({
                **action.model_dump(),
                "result": f"You have tried all possible queries and found no new information. {NO_NEW_INFO}",
            })
        # no answering straight off fresh snippets
        return Permissions.all().with_(search=False, answer=False)

    async def _run_team(self, action: SearchAction, subproblems: List[str]):
        """Research each subproblem in its own session and aggregate the answers."""
        s = self.session
        if s.spawn is None:
            raise RuntimeError("Team mode needs a sub-session factory")
        logger.info("Team mode: %d parallel sub-sessions", len(subproblems))
        outcomes = await asyncio.gather(*[s.spawn(p) for p in subproblems], return_exceptions=True)
        errors = [o for o in outcomes if isinstance(o, BaseException)]
        if errors:
            raise errors[0]

        answers = [o.result for o in outcomes if isinstance(o.result, AnswerAction)]
        references = []
        seen = set()
        for a in answers:
            for ref in a.references or []:
                if ref.url and ref.url not in seen:
                    seen.add(ref.url)
                    references.append(ref)
        images = [img for a in answers for img in a.image_references or []]

        s.this_step = AnswerAction(
            think=action.think,
            answer="\n\n".join(a.answer for a in answers),
            md_answer="\n\n".join(a.md_answer or "" for a in answers),
            references=references,
            image_references=images or None,
            is_final=True,
            is_aggregated=True,
        )
        s.candidate_answers = [a.md_answer for a in answers if a.md_answer]
        s.visited_urls = list(dict.fromkeys([*s.visited_urls, *(url for o in outcomes for url in o.read_urls)]))
        s.weighted_urls = [
            BoostedSearchSnippet(url=url) for url in dict.fromkeys(url for o in outcomes for url in o.all_urls)
        ]

    # ── visit ────────────────────────────────────────────────────────

    async def process_urls(self, urls: Sequence[str], question: str) -> Tuple[List[Dict[str, str]], bool]:
        """Read *urls* concurrently; every page read becomes a ``url`` knowledge item."""
        s = self.session
        s.action_tracker.track_think("read_for", s.schemas.language_code, {"urls": ", ".join(urls)})
        pages = await asyncio.gather(
            *[asyncio.to_thread(search.read_url, url, s.with_images) for url in urls],
            return_exceptions=True,
        )

        results: List[Dict[str, str]] = []
        for url, page in zip(urls, pages):
            s.visited_urls.append(url)
            if isinstance(page, BaseException):
                logger.warning("Failed to read %s: %s", url, page)
                s.bad_urls.append(url)
                continue
            content = remove_extra_line_breaks(page.get("content") or "")
            if not content:
                s.bad_urls.append(url)
                continue
            title = page.get("title") or ""
            s.all_knowledge.append(KnowledgeItem(
                question=f'What do expert say about "{question}"?',
                answer=content,
                references=[url],
                type="url",
                updated=page.get("date") or None,
            ))
            s.web_contents[url] = WebContent(title=title, chunks=chunk_text(content))
            entry = s.all_urls.get(url)
            if entry is not None and not entry.title:
                entry.title = title
            for text, href in (page.get("links") or [])[:MAX_LINKS_PER_PAGE]:
                add_to_all_urls(SearchSnippet(url=href, title=text, description=text), s.all_urls, LINK_WEIGHT)
            if s.with_images:
                for img in page.get("images") or []:
                    s.image_objects.append(ImageObject(url=img["url"], alt=img.get("alt") or ""))
            results.append({"url": url, "title": title})
        return results, bool(results)

    async def visit(self, action: VisitAction, current_question: str) -> Permissions:
        s = self.session
        targets: List[str] = []
        for idx in action.url_targets:
            try:
                i = int(idx)
            except (TypeError, ValueError):
                continue
            if not 1 <= i <= len(s.url_list):
                continue
            url = normalize_url(s.url_list[i - 1])
            if url and url not in s.visited_urls and url not in targets:
                targets.append(url)
        ranked = [u.url for u in s.weighted_urls if u.url not in s.visited_urls]
        urls = list(dict.fromkeys(targets + ranked))[:MAX_URLS_PER_STEP]
        action.url_targets = urls

        if urls:
            results, success = await self.process_urls(urls, current_question)
            if success:
                read = "\n".join(r["url"] for r in results)
                s.diary.append(f"""
At step {s.step}, you took the **visit** action and deep dive into the following URLs:
{read}
You found some useful information on the web and add them to your knowledge for future reference.
""")
                s.update_context({"question": current_question, **action.model_dump(), "result": results})
            else:
                s.diary.append(
                    f"At step {s.step}, you took the **visit** action and try to visit some URLs but failed to "
                    "read the content. You need to think out of the box or cut from a completely different angle."
                )
                s.update_context({
                    **action.model_dump(),
                    "result": f"You have tried all possible URLs and found no new information. {NO_NEW_INFO}",
                })
        else:
            s.diary.append(f"""
At step {s.step}, you took the **visit** action. But then you realized you have already visited these URLs and you already know very well about their contents.
You decided to think out of the box or cut from a completely different angle.
""")
            s.update_context({
                **action.model_dump(),
                "result": f"You have visited all possible URLs and found no new information. {NO_NEW_INFO}",
            })
        return Permissions.all().with_(read=False)

    # ── coding ───────────────────────────────────────────────────────

    async def coding(self, action: CodingAction, current_question: str) -> Permissions:
        s = self.session
        box = sandbox.CodeSandbox(
            {
                "all_context": s.all_context,
                "urls": [u.model_dump() for u in s.weighted_urls[:20]],
                "all_knowledge": [k.model_dump() for k in s.all_knowledge],
            },
            s.generator,
            s.schemas,
        )
        try:
            result = await box.solve(action.coding_issue)
        except Exception as exc:
            logger.warning("Coding action failed: %s", exc)
            s.diary.append(f"""
At step {s.step}, you took the **coding** action and try to solve the coding issue: {action.coding_issue}.
But unfortunately, you failed to solve the issue. You need to think out of the box or cut from a completely different angle.
""")
            s.update_context({
                **action.model_dump(),
                "result": f"You have tried all possible solutions and found no new information. {NO_NEW_INFO}",
            })
        else:
            solution = result["solution"]
            s.all_knowledge.append(KnowledgeItem(
                question=f"What is the solution to the coding issue: {action.coding_issue}?",
                answer=solution["output"],
                source_code=solution["code"],
                type="coding",
                updated=format_date(),
            ))
            s.diary.append(f"""
At step {s.step}, you took the **coding** action and try to solve the coding issue: {action.coding_issue}.
You found the solution and add it to your knowledge for future reference.
""")
            s.update_context({**action.model_dump(), "result": result})
        return Permissions.all().with_(coding=False)
