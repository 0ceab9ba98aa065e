"""Structured-output schemas.

Every LLM call in the agent asks for JSON matching a pydantic model built
here. The agent schema is rebuilt every step from the current
``Permissions`` so the model can only pick an action that is allowed.
"""

import copy
import logging
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Type

from pydantic import BaseModel, Field, StringConstraints, create_model

from .models import Permissions
from .prompts import LANGUAGE_DETECT_SYSTEM

logger = logging.getLogger(__name__)

MAX_URLS_PER_STEP = 5
MAX_QUERIES_PER_STEP = 5
MAX_REFLECT_PER_STEP = 2
MAX_CLUSTERS = 5

LANGUAGE_NAMES: Dict[str, str] = {
    "en": "English",
    "zh": "Chinese",
    "zh-CN": "Simplified Chinese",
    "zh-TW": "Traditional Chinese",
    "de": "German",
    "fr": "French",
    "es": "Spanish",
    "it": "Italian",
    "ja": "Japanese",
    "ko": "Korean",
    "pt": "Portuguese",
    "ru": "Russian",
    "ar": "Arabic",
    "hi": "Hindi",
    "bn": "Bengali",
    "tr": "Turkish",
    "nl": "Dutch",
    "pl": "Polish",
    "sv": "Swedish",
    "no": "Norwegian",
    "da": "Danish",
    "fi": "Finnish",
    "el": "Greek",
    "he": "Hebrew",
    "hu": "Hungarian",
    "id": "Indonesian",
    "ms": "Malay",
    "th": "Thai",
    "vi": "Vietnamese",
    "ro": "Romanian",
    "bg": "Bulgarian",
}


# ── schema helpers ──────────────────────────────────────────────────

def json_schema(model: Type[BaseModel]) -> Dict[str, Any]:
    return model.model_json_schema()


def distill_schema(schema: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of a JSON schema with every description and title removed.

    Used for the fallback model, which gets the bare structure plus the
    failed output and only has to extract fields.
    """
    def _strip(node: Any) -> Any:
        if isinstance(node, dict):
            return {
                k: _strip(v)
                for k, v in node.items()
                if k not in ("description", "title") or not isinstance(v, str)
            }
        if isinstance(node, list):
            return [_strip(v) for v in node]
        return node

    return _strip(copy.deepcopy(schema))


def _str(max_length: int, description: str = "", min_length: int = 0):
    return (str, Field(..., min_length=min_length, max_length=max_length, description=description))


# ── schema builder ──────────────────────────────────────────────────

class SchemaBuilder:
    """Builds schemas phrased in the user's language and style."""

    def __init__(self, language_code: str = "en", language_style: str = "formal English"):
        self.language_code = language_code
        self.language_style = language_style
        self.search_language_code: Optional[str] = None

    def apply_language(self, code: str, style: Optional[str] = None) -> None:
        self.language_code = code
        self.language_style = style or f"formal {LANGUAGE_NAMES.get(code, code)}"

    async def set_language(self, query: str, generator) -> None:
        """Detect the language and tone of *query*.

        A bare ISO 639-1 code is taken as-is; anything else goes to the
        evaluator model.
        """
        if query in LANGUAGE_NAMES:
            self.apply_language(query)
            return
        result = await generator.generate_object(
            "evaluator",
            self.language_schema(),
            system=LANGUAGE_DETECT_SYSTEM,
            prompt=query,
        )
        self.apply_language(result.object.get("lang_code") or "en", result.object.get("lang_style"))
        logger.info("Detected language: %s (%s)", self.language_code, self.language_style)

    def language_prompt(self) -> str:
        return f'Must in the first-person in "lang:{self.language_code}"; in the style of "{self.language_style}".'

    # ---- agent ----

    def build_agent_schema(
        self,
        permissions: Permissions,
        current_question: Optional[str] = None,
    ) -> Type[BaseModel]:
        actions = permissions.allowed_actions()
        if not actions:
            raise ValueError("At least one action must be permitted to build the agent schema")

        action_fields: Dict[str, Any] = {}
        if permissions.search:
            payload = create_model(
                "SearchPayload",
                search_requests=(
                    List[Annotated[str, StringConstraints(min_length=1, max_length=30)]],
                    Field(
                        ...,
                        max_length=MAX_QUERIES_PER_STEP,
                        description=(
                            "Required when action='search'. Always prefer a single search query, only add "
                            "another search query if the original question covers multiple aspects or elements "
                            "and one search request is definitely not enough, each request focus on one specific "
                            "aspect of the original question. Minimize mutual information between each query. "
                            f"Maximum {MAX_QUERIES_PER_STEP} search queries."
                        ),
                    ),
                ),
            )
            action_fields["search"] = (Optional[payload], Field(None))
        if permissions.coding:
            payload = create_model(
                "CodingPayload",
                coding_issue=_str(
                    500,
                    "Required when action='coding'. Describe what issue to solve with coding, format like a "
                    "github issue ticket. Specify the input value when it is short.",
                ),
            )
            action_fields["coding"] = (Optional[payload], Field(None))
        if permissions.answer:
            payload = create_model(
                "AnswerPayload",
                answer=(str, Field(
                    ...,
                    description=(
                        "Required when action='answer'. Use all your knowledge you have collected, cover multiple "
                        "aspects if needed. Must be definitive, no ambiguity, no uncertainty, no disclaimers. "
                        f"Must in {self.language_style} and confident. DO NOT contain any placeholder variables in "
                        "the final answer. If you have to output tables, always use basic HTML table syntax with "
                        "proper <table> <thead> <tr> <th> <td> without any CSS styling. STRICTLY AVOID any "
                        "markdown table syntax."
                    ),
                )),
            )
            action_fields["answer"] = (Optional[payload], Field(None))
        if permissions.reflect:
            payload = create_model(
                "ReflectPayload",
                questions_to_answer=(
                    List[str],
                    Field(
                        ...,
                        max_length=MAX_REFLECT_PER_STEP,
                        description=(
                            "Required when action='reflect'. Reflection and planing, generate a list of most "
                            "important questions to fill the knowledge gaps to <og-question> "
                            f"{current_question or ''} </og-question>. Maximum provide {MAX_REFLECT_PER_STEP} "
                            "reflect questions."
                        ),
                    ),
                ),
            )
            action_fields["reflect"] = (Optional[payload], Field(None))
        if permissions.read:
            payload = create_model(
                "VisitPayload",
                url_targets=(
                    List[int],
                    Field(
                        ...,
                        max_length=MAX_URLS_PER_STEP,
                        description=(
                            "Required when action='visit'. Must be the index of the URL in from the original "
                            f"list of URLs. Maximum {MAX_URLS_PER_STEP} URLs allowed."
                        ),
                    ),
                ),
            )
            action_fields["visit"] = (Optional[payload], Field(None))

        logger.debug("Agent schema with actions: %s", ", ".join(actions))
        return create_model(
            "AgentAction",
            think=_str(500, f"Concisely explain your reasoning process in {self.language_prompt()}."),
            action=(
                Literal[tuple(actions)],
                Field(
                    ...,
                    description=(
                        "Choose exactly one best action from the available actions, fill in the corresponding "
                        "action schema required."
                    ),
                ),
            ),
            **action_fields,
        )

    # ---- collaborators ----

    def language_schema(self) -> Type[BaseModel]:
        return create_model(
            "LanguageDetection",
            lang_code=_str(10, "ISO 639-1 language code"),
            lang_style=_str(
                100,
                "[vibe & tone] in [what language], such as formal english, informal chinese, technical german, "
                "humor english, slang, genZ, emojis etc.",
            ),
        )

    def question_evaluate_schema(self) -> Type[BaseModel]:
        return create_model(
            "QuestionEvaluation",
            think=_str(500, f"A very concise explain of why those checks are needed. {self.language_prompt()}"),
            needs_definitive=(bool, Field(...)),
            needs_freshness=(bool, Field(...)),
            needs_plurality=(bool, Field(...)),
            needs_completeness=(bool, Field(...)),
        )

    def evaluator_schema(self, eval_type: str) -> Type[BaseModel]:
        think = _str(
            500,
            f"Explanation the thought process why the answer does not pass the evaluation, {self.language_prompt()}",
        )
        passed = (bool, Field(..., alias="pass", description="If the answer passes the test defined by the evaluator"))
        name = f"{eval_type.capitalize()}Evaluation"

        if eval_type == "definitive":
            return create_model(name, type=(Literal["definitive"], Field(...)), think=think, pass_=passed)
        if eval_type == "freshness":
            today = datetime.now(timezone.utc).date().isoformat()
            analysis = create_model(
                "FreshnessAnalysisSchema",
                days_ago=(float, Field(..., ge=0, description=f"datetime of the **answer** and relative to {today}.")),
                max_age_days=(Optional[float], Field(
                    None,
                    description="Maximum allowed age in days for this kind of question-answer type before it is "
                                "considered outdated",
                )),
            )
            return create_model(
                name,
                type=(Literal["freshness"], Field(...)),
                think=think,
                freshness_analysis=(analysis, Field(...)),
                pass_=(bool, Field(..., alias="pass", description='If "days_ago" <= "max_age_days" then pass!')),
            )
        if eval_type == "plurality":
            analysis = create_model(
                "PluralityAnalysisSchema",
                minimum_count_required=(float, Field(..., description="Minimum required number of items from the **question**")),
                actual_count_provided=(float, Field(..., description="Number of items provided in **answer**")),
            )
            return create_model(
                name,
                type=(Literal["plurality"], Field(...)),
                think=think,
                plurality_analysis=(analysis, Field(...)),
                pass_=(bool, Field(..., alias="pass", description="If count_provided >= count_expected then pass!")),
            )
        if eval_type == "attribution":
            return create_model(
                name,
                type=(Literal["attribution"], Field(...)),
                think=think,
                exact_quote=(Optional[str], Field(
                    None,
                    max_length=200,
                    description="Exact relevant quote and evidence from the source that strongly support the "
                                "answer and justify this question-answer pair",
                )),
                pass_=passed,
            )
        if eval_type == "completeness":
            analysis = create_model(
                "CompletenessAnalysisSchema",
                aspects_expected=_str(100, "Comma-separated list of all aspects or dimensions that the question explicitly asks for."),
                aspects_provided=_str(100, "Comma-separated list of all aspects or dimensions that were actually addressed in the answer"),
            )
            return create_model(
                name,
                type=(Literal["completeness"], Field(...)),
                think=think,
                completeness_analysis=(analysis, Field(...)),
                pass_=passed,
            )
        if eval_type == "strict":
            return create_model(
                name,
                type=(Literal["strict"], Field(...)),
                think=think,
                improvement_plan=_str(
                    1000,
                    'Explain how a perfect answer should look like and what are needed to improve the current '
                    'answer. Starts with "For the best answer, you must..."',
                ),
                pass_=passed,
            )
        raise ValueError(f"Unknown evaluation type: {eval_type}")

    def error_analysis_schema(self) -> Type[BaseModel]:
        return create_model(
            "ErrorAnalysisSchema",
            recap=_str(500, "Recap of the actions taken and the steps conducted in first person narrative."),
            blame=_str(500, f"Which action or the step was the root cause of the answer rejection. {self.language_prompt()}"),
            improvement=_str(
                500,
                "Suggested key improvement for the next iteration, do not use bullet points, be concise and "
                f"hot-take vibe. {self.language_prompt()}",
            ),
        )

    def research_plan_schema(self, team_size: int = 3) -> Type[BaseModel]:
        return create_model(
            "ResearchPlan",
            think=_str(300, "Explain your decomposition strategy and how you ensured orthogonality between subproblems"),
            subproblems=(
                List[Annotated[str, StringConstraints(max_length=500)]],
                Field(
                    ...,
                    min_length=team_size,
                    max_length=team_size,
                    description=f"Array of exactly {team_size} orthogonal research plans, each focusing on a "
                                "different fundamental dimension of the main topic",
                ),
            ),
        )

    def serp_cluster_schema(self) -> Type[BaseModel]:
        cluster = create_model(
            "SerpClusterItem",
            insight=(str, Field(
                ...,
                description="Summary and list key numbers, data, soundbites, and insights that worth to be "
                            "highlighted. End with an actionable advice such as \"Visit these URLs if you want to "
                            "understand [what...]\". Do not use \"This cluster...\"",
            )),
            question=(str, Field(
                ...,
                description="What concrete and specific question this cluster answers. Should not be general "
                            "question like \"where can I find [what...]\"",
            )),
            urls=(List[str], Field(..., description="URLs in this cluster.")),
        )
        return create_model(
            "SerpClusters",
            think=_str(500, f"Short explain of why you group the search results like this. {self.language_prompt()}"),
            clusters=(
                List[cluster],
                Field(
                    ...,
                    max_length=MAX_CLUSTERS,
                    description="The optimal clustering of search engine results, orthogonal to each other. "
                                f"Maximum {MAX_CLUSTERS} clusters allowed.",
                ),
            ),
        )

    def query_rewriter_schema(self) -> Type[BaseModel]:
        lang_hint = f"Must in {self.search_language_code}" if self.search_language_code else ""
        query = create_model(
            "RewrittenQuery",
            tbs=(Optional[Literal["qdr:h", "qdr:d", "qdr:w", "qdr:m", "qdr:y"]], Field(
                None,
                description="time-based search filter, must use this field if the search request asks for latest "
                            "info. qdr:h for past hour, qdr:d for past 24 hours, qdr:w for past week, qdr:m for "
                            "past month, qdr:y for past year. Choose exactly one.",
            )),
            location=(Optional[str], Field(
                None,
                description="defines from where you want the search to originate. It is recommended to specify "
                            "location at the city level in order to simulate a real user's search.",
            )),
            q=_str(50, f"keyword-based search query, 2-3 words preferred, total length < 30 characters. {lang_hint}".strip()),
        )
        return create_model(
            "QueryRewrite",
            think=_str(500, f"Explain why you choose those search queries. {self.language_prompt()}"),
            queries=(
                List[query],
                Field(
                    ...,
                    max_length=MAX_QUERIES_PER_STEP,
                    description="Array of search keywords queries, orthogonal to each other. "
                                f"Maximum {MAX_QUERIES_PER_STEP} queries allowed.",
                ),
            ),
        )

    def code_generator_schema(self) -> Type[BaseModel]:
        return create_model(
            "GeneratedCode",
            think=_str(200, f"Short explain or comments on the thought process behind the code. {self.language_prompt()}"),
            code=(str, Field(
                ...,
                description="The Python code that solves the problem and always assigns the final value to a "
                            "variable named `result`. Focus on solving the core problem; No need for error handling "
                            "or try-except blocks or code comments. No need to declare variables that are already "
                            "available, especially big long strings or lists.",
            )),
        )
