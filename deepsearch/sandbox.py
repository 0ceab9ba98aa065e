"""Sandboxed Python execution for the ``coding`` action.

The coder model writes a snippet that assigns ``result``; it runs in a
separate interpreter (``python -I``) with the session context delivered
as JSON on stdin. Failed attempts are fed back to the model.

The child gets a throwaway working directory and, on Linux, CPU-time and
address-space rlimits. It is not a security boundary: the code can still
reach the network and any file the parent user can read or write.
"""

import asyncio
import json
import logging
import subprocess
import sys
import tempfile
from typing import Any, Dict, List, Optional

from langsmith import traceable

from .config import get_config
from .llm import ObjectGenerator
from .prompts import CODE_GENERATOR_SYSTEM
from .schemas import SchemaBuilder

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
RESULT_MARKER = "__DEEPSEARCH_RESULT__"
MEMORY_LIMIT_BYTES = 1024 * 1024 * 1024

_RUNNER = f"""
import json, sys
if sys.platform.startswith("linux"):
    import resource
    cpu = int(sys.argv[1])
    resource.setrlimit(resource.RLIMIT_CPU, (cpu, cpu))
    resource.setrlimit(resource.RLIMIT_AS, ({MEMORY_LIMIT_BYTES}, {MEMORY_LIMIT_BYTES}))
payload = json.load(sys.stdin)
env = dict(payload["context"])
exec(payload["code"], env)
if "result" not in env:
    raise NameError("The code must assign its final value to a variable named `result`")
print({RESULT_MARKER!r} + json.dumps(env["result"], default=str, ensure_ascii=False))
"""


class CodeExecutionError(Exception):
    """Generated code failed in every attempt."""


def _describe(context: Dict[str, Any]) -> str:
    lines = []
    for name, value in context.items():
        kind = type(value).__name__
        size = f" (length {len(value)})" if hasattr(value, "__len__") else ""
        sample = json.dumps(value, default=str, ensure_ascii=False)[:200]
        lines.append(f"- {name}: {kind}{size}, e.g. {sample}")
    return "\n".join(lines)


def run_code(code: str, context: Dict[str, Any], timeout: float) -> str:
    """Execute *code* in a fresh isolated interpreter and return ``result`` as text."""
    payload = json.dumps({"code": code, "context": context}, default=str, ensure_ascii=False)
    cpu_seconds = str(int(timeout) + 1)
    with tempfile.TemporaryDirectory(prefix="deepsearch-sandbox-") as workdir:
        try:
            proc = subprocess.run(
                [sys.executable, "-I", "-c", _RUNNER, cpu_seconds],
                input=payload,
                capture_output=True,
                text=True,
                timeout=timeout,
                cwd=workdir,
            )
        except subprocess.TimeoutExpired as exc:
            raise CodeExecutionError(f"Execution timed out after {timeout}s") from exc
    if proc.returncode != 0:
        err = proc.stderr.strip().splitlines()
        raise CodeExecutionError(err[-1] if err else f"exit code {proc.returncode}")
    for line in reversed(proc.stdout.splitlines()):
        if line.startswith(RESULT_MARKER):
            value = json.loads(line[len(RESULT_MARKER):])
            return value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)
    raise CodeExecutionError("No result was produced")


class CodeSandbox:
    def __init__(
        self,
        context: Dict[str, Any],
        generator: ObjectGenerator,
        schemas: SchemaBuilder,
        timeout: Optional[float] = None,
    ):
        self.context = context
        self.generator = generator
        self.schemas = schemas
        self.timeout = timeout if timeout is not None else get_config().sandbox_timeout

    async def _generate_code(self, issue: str, attempts: List[Dict[str, str]]) -> Dict[str, Any]:
        previous = ""
        if attempts:
            previous = "Previous attempts and their errors:\n" + "\n".join(
                f"<attempt-{i}>\n{a['code']}\nError: {a['error']}\n</attempt-{i}>"
                for i, a in enumerate(attempts, start=1)
            )
        system = CODE_GENERATOR_SYSTEM.format(available_vars=_describe(self.context), previous_attempts=previous)
        result = await self.generator.generate_object(
            "coder",
            self.schemas.code_generator_schema(),
            system=system,
            prompt=f"<problem>\n{issue}\n</problem>",
        )
        return result.object

    @traceable(name="code_sandbox")
    async def solve(self, issue: str) -> Dict[str, Any]:
        """Returns ``{"solution": {"code", "output"}, "attempts": [...]}``.

        Raises ``CodeExecutionError`` after ``MAX_ATTEMPTS`` failures.
        """
        attempts: List[Dict[str, str]] = []
        for attempt in range(MAX_ATTEMPTS):
            generated = await self._generate_code(issue, attempts)
            code = generated.get("code") or ""
            try:
                output = await asyncio.to_thread(run_code, code, self.context, self.timeout)
            except CodeExecutionError as exc:
                logger.warning("Sandbox attempt %d failed: %s", attempt + 1, exc)
                attempts.append({"code": code, "error": str(exc)})
                continue
            logger.info("Sandbox solved the issue in %d attempt(s)", attempt + 1)
            return {"solution": {"code": code, "output": output}, "attempts": attempts}
        raise CodeExecutionError(f"Failed to solve the issue after {MAX_ATTEMPTS} attempts: {attempts[-1]['error']}")
