"""Structured generation on top of the provider layer.

``ObjectGenerator.generate_object`` asks the model configured for a role to
answer with JSON matching a pydantic schema, and degrades through several
recovery tiers before giving up:

  1. primary call, validated against the schema
  2. tolerant parse of the raw failed text (json, then hjson)
  3. ``num_retries`` fresh attempts of tier 1
  4. the ``fallback`` role, given a description-free schema and the failed
     text as an extraction prompt
  5. tolerant parse of the fallback's failed text

Every model call is charged to the shared ``TokenTracker``. When all tiers
fail the error from tier 1 is raised.
"""

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Type

import hjson
from pydantic import BaseModel, ValidationError

from .config import get_config
from .models import TokenUsage
from .providers import ChatResponse, get_provider
from .schemas import distill_schema, json_schema
from .tracking import TokenTracker

logger = logging.getLogger(__name__)

FALLBACK_PROMPT = "Following the given JSON schema, extract the field from below: \n\n {failed_output}"
MAX_FAILED_OUTPUT = 8000


class NoObjectGeneratedError(Exception):
    """The model answered, but not with an object matching the schema."""

    def __init__(self, message: str, text: str = "", usage: Optional[TokenUsage] = None):
        super().__init__(message)
        self.text = text
        self.usage = usage or TokenUsage()


@dataclass
class GenerateResult:
    object: Dict[str, Any]
    usage: TokenUsage = field(default_factory=TokenUsage)


# ── helpers ──────────────────────────────────────────────────────────

def _extract_json(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        text = re.sub(r"^```(?:json)?\s*|\s*```$", "", text).strip()
    if text.startswith("{") and text.endswith("}"):
        return text
    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end != -1 and end > start:
        return text[start : end + 1]
    return text


def _clean_think_tags(content: str) -> str:
    if "<think>" in content and "</think>" in content:
        return re.sub(r"<think>.*?</think>", "", content, flags=re.DOTALL).strip()
    return content


def _estimate_usage(messages: List[Dict[str, str]], text: str) -> TokenUsage:
    # rough 4-chars-per-token estimate for providers that report nothing
    prompt = sum(len(m.get("content") or "") for m in messages) // 4
    completion = len(text) // 4
    return TokenUsage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=prompt + completion)


def parse_tolerant(text: str) -> Dict[str, Any]:
    """Parse *text* as strict JSON, then as Hjson. Raises ``ValueError``."""
    try:
        obj = json.loads(text)
    except json.JSONDecodeError as json_err:
        try:
            obj = hjson.loads(text)
        except Exception as hjson_err:
            raise ValueError(f"JSON: {json_err}; Hjson: {hjson_err}") from hjson_err
    if not isinstance(obj, dict):
        raise ValueError(f"Expected a JSON object, got {type(obj).__name__}")
    return json.loads(json.dumps(obj))


def _failed_output_for_fallback(text: str) -> str:
    cut = text.rfind('"url":')
    if cut <= 0:
        cut = len(text)
    return text[: min(cut, MAX_FAILED_OUTPUT)]


def _chat(
    role: str,
    messages: List[Dict[str, str]],
    json_mode: bool = True,
    max_retries: int = 3,
) -> ChatResponse:
    """Call the LLM configured for *role*, backing off on transient errors."""
    cfg = get_config().get_role(role)
    provider = get_provider(cfg.provider)

    for attempt in range(max_retries):
        try:
            response = provider.chat(
                model=cfg.model,
                messages=messages,
                temperature=cfg.temperature,
                max_tokens=cfg.max_tokens,
                response_format={"type": "json_object"} if json_mode else None,
            )
            response.text = _clean_think_tags(response.text)
            if not response.usage.total_tokens:
                response.usage = _estimate_usage(messages, response.text)
            return response
        except Exception as exc:
            err = str(exc).lower()
            logger.warning("LLM call failed [%s/%s] attempt %d: %s", role, cfg.model, attempt + 1, str(exc)[:200])
            # Fatal – don't retry
            if any(c in err for c in ["401", "402", "403", "invalid api key"]):
                raise
            if attempt < max_retries - 1:
                time.sleep(2.0 * (2 ** attempt))
                continue
            raise

    raise RuntimeError(f"LLM call exhausted retries for [{role}]")  # never reached


# ── generator ────────────────────────────────────────────────────────

class ObjectGenerator:
    def __init__(self, token_tracker: Optional[TokenTracker] = None):
        self.token_tracker = token_tracker or TokenTracker()

    async def generate_object(
        self,
        role: str,
        schema: Type[BaseModel],
        system: Optional[str] = None,
        prompt: Optional[str] = None,
        messages: Optional[List[Dict[str, str]]] = None,
        num_retries: int = 0,
    ) -> GenerateResult:
        schema_dict = json_schema(schema)
        try:
            return await self._generate(role, schema_dict, schema, system, prompt, messages)
        except Exception as error:
            logger.warning("Primary generation failed for [%s]: %s", role, error)
            try:
                return self._recover(error, schema)
            except Exception as parse_error:
                logger.warning("Manual parsing failed for [%s]: %s", role, parse_error)

            if num_retries > 0:
                logger.warning("Retrying [%s], %d attempts left", role, num_retries - 1)
                return await self.generate_object(role, schema, system, prompt, messages, num_retries - 1)

            failed_output = ""
            if isinstance(error, NoObjectGeneratedError):
                failed_output = _failed_output_for_fallback(error.text)
            try:
                return await self._generate(
                    "fallback",
                    distill_schema(schema_dict),
                    None,
                    system=None,
                    prompt=FALLBACK_PROMPT.format(failed_output=failed_output),
                    messages=None,
                )
            except Exception as fallback_error:
                logger.warning("Fallback model failed: %s", fallback_error)
                try:
                    return self._recover(fallback_error)
                except Exception as final_error:
                    logger.error(
                        "All recovery mechanisms failed for [%s]: %s / %s", role, error, final_error
                    )
                    raise error

    async def _generate(
        self,
        role: str,
        schema_dict: Dict[str, Any],
        validator: Optional[Type[BaseModel]],
        system: Optional[str],
        prompt: Optional[str],
        messages: Optional[List[Dict[str, str]]],
    ) -> GenerateResult:
        system_text = (
            (system.strip() + "\n\n" if system else "")
            + "Respond with a single JSON object that conforms to this JSON schema:\n"
            + json.dumps(schema_dict, ensure_ascii=False)
        )
        convo: List[Dict[str, str]] = [{"role": "system", "content": system_text}]
        convo.extend(messages or [])
        if prompt:
            convo.append({"role": "user", "content": prompt})

        response = await asyncio.to_thread(_chat, role, convo)
        self.token_tracker.track_usage(role, response.usage)

        raw = _extract_json(response.text)
        try:
            obj = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise NoObjectGeneratedError(f"Invalid JSON from [{role}]: {exc}", raw, response.usage) from exc
        if not isinstance(obj, dict):
            raise NoObjectGeneratedError(f"Expected a JSON object from [{role}]", raw, response.usage)

        if validator is not None:
            try:
                obj = validator.model_validate(obj).model_dump(by_alias=True)
            except ValidationError as exc:
                raise NoObjectGeneratedError(
                    f"Output of [{role}] does not match schema: {exc.error_count()} errors", raw, response.usage
                ) from exc
        return GenerateResult(object=obj, usage=response.usage)

    async def generate_text(self, role: str, system: str, prompt: str) -> str:
        """Free-form completion for roles that write prose rather than objects."""
        convo = [{"role": "system", "content": system}, {"role": "user", "content": prompt}]
        response = await asyncio.to_thread(_chat, role, convo, False)
        self.token_tracker.track_usage(role, response.usage)
        return response.text.strip()

    @staticmethod
    def _recover(error: Exception, validator: Optional[Type[BaseModel]] = None) -> GenerateResult:
        """Parse the raw text of a failed generation leniently.

        With a *validator* the parsed object must still satisfy it;
        ``ValidationError`` propagates.
        """
        if not isinstance(error, NoObjectGeneratedError):
            raise error
        obj = parse_tolerant(error.text)
        if validator is not None:
            obj = validator.model_validate(obj).model_dump(by_alias=True)
        logger.info("Recovered object by manual parsing")
        return GenerateResult(object=obj, usage=error.usage)
