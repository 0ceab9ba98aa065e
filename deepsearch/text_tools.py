"""Markdown and plain-text post-processing."""

import random
import re
import textwrap
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence, TypeVar

from bs4 import BeautifulSoup

from .models import AnswerAction

T = TypeVar("T")

_FENCE_RE = re.compile(r"^([ \t]*)(```|~~~)")
_TABLE_RE = re.compile(r"<table\b.*?</table>", re.IGNORECASE | re.DOTALL)

TBS_DAYS = {"qdr:h": 1 / 24, "qdr:d": 1, "qdr:w": 7, "qdr:m": 30, "qdr:y": 365}


def remove_extra_line_breaks(text: str) -> str:
    return re.sub(r"\n{3,}", "\n\n", text or "").strip()


def remove_html_tags(text: str) -> str:
    return re.sub(r"\s+", " ", re.sub(r"<[^>]*>", " ", text or "")).strip()


def choose_k(items: Sequence[T], k: int) -> List[T]:
    """Random sample of at most *k* items, in their original order."""
    items = list(items)
    if len(items) <= k:
        return items
    picked = sorted(random.sample(range(len(items)), k))
    return [items[i] for i in picked]


def format_date(dt: Optional[datetime] = None) -> str:
    dt = dt or datetime.now(timezone.utc)
    return dt.strftime("%Y-%m-%d %H:%M:%S UTC")


def format_date_range(tbs: Optional[str], now: Optional[datetime] = None) -> Optional[str]:
    """Human-readable window a ``tbs`` time filter covers, ``None`` for no filter."""
    if not tbs or tbs not in TBS_DAYS:
        return None
    now = now or datetime.now(timezone.utc)
    start = now - timedelta(days=TBS_DAYS[tbs])
    fmt = "%Y-%m-%d %H:%M" if tbs == "qdr:h" else "%Y-%m-%d"
    return f"Between {start.strftime(fmt)} and {now.strftime(fmt)}"


# ── markdown repair ──────────────────────────────────────────────────

def repair_markdown_footnotes_outer(markdown: str) -> str:
    """Strip a wrapping ```markdown fence and normalise footnote markers to ``[^n]``."""
    text = (markdown or "").strip()
    m = re.match(r"^```(?:markdown|md)?\s*\n(.*)\n```$", text, re.DOTALL)
    if m:
        text = m.group(1).strip()
    text = re.sub(r"\[\s*\^\s*(\d+)\s*\]", r"[^\1]", text)
    text = re.sub(r"\^\[(\d+)\]", r"[^\1]", text)
    return text


def fix_code_block_indentation(markdown: str) -> str:
    """Dedent fenced code blocks whose fences were indented with the surrounding text."""
    lines = (markdown or "").split("\n")
    out: List[str] = []
    block: List[str] = []
    fence = None
    for line in lines:
        m = _FENCE_RE.match(line)
        if fence is None:
            if m:
                fence = m.group(2)
                block = [line]
            else:
                out.append(line)
            continue
        block.append(line)
        if m and m.group(2) == fence and line.strip() == fence:
            body = textwrap.dedent("\n".join(block[1:-1]))
            out.append(block[0].lstrip())
            if body:
                out.append(body)
            out.append(fence)
            fence = None
    if fence is not None:
        out.extend(block)
    return "\n".join(out)


def _table_to_md(table_html: str) -> Optional[str]:
    soup = BeautifulSoup(table_html, "html.parser")
    rows = []
    for tr in soup.find_all("tr"):
        cells = [
            c.get_text(" ", strip=True).replace("|", "\\|")
            for c in tr.find_all(["th", "td"])
        ]
        if cells:
            rows.append(cells)
    if not rows:
        return None
    width = max(len(r) for r in rows)
    rows = [r + [""] * (width - len(r)) for r in rows]
    md = ["| " + " | ".join(rows[0]) + " |", "| " + " | ".join(["---"] * width) + " |"]
    md.extend("| " + " | ".join(r) + " |" for r in rows[1:])
    return "\n".join(md)


def convert_html_tables_to_md(markdown: str) -> str:
    def _repl(m: "re.Match[str]") -> str:
        converted = _table_to_md(m.group(0))
        return f"\n\n{converted}\n\n" if converted else m.group(0)

    return _TABLE_RE.sub(_repl, markdown or "")


def repair_markdown_final(markdown: str) -> str:
    text = re.sub(r"[ \t]+\n", "\n", markdown or "")
    if text.count("```") % 2 == 1:
        text = text.rstrip() + "\n```"
    return remove_extra_line_breaks(text)


def build_md_from_answer(answer: AnswerAction) -> str:
    """Answer text plus footnote definitions for its references."""
    text = repair_markdown_footnotes_outer(answer.answer)
    refs = [r for r in answer.references or [] if r.url]
    if not refs:
        # drop dangling markers
        return re.sub(r"\[\^\d+\]", "", text).strip()

    text = re.sub(
        r"\[\^(\d+)\]",
        lambda m: m.group(0) if 1 <= int(m.group(1)) <= len(refs) else "",
        text,
    )
    footnotes = []
    for i, ref in enumerate(refs, start=1):
        quote = (ref.exact_quote or "").strip()
        title = ref.title or ref.url
        line = f"[^{i}]: {quote + ' ' if quote else ''}[{title}]({ref.url})"
        footnotes.append(line)
    return f"{text}\n\n" + "\n\n".join(footnotes)


def chunk_text(text: str, min_length: int = 80) -> List[str]:
    """Split into paragraphs, merging short ones until each is at least *min_length*."""
    paragraphs = [p.strip() for p in re.split(r"\n\s*\n", text or "") if p.strip()]
    chunks: List[str] = []
    buf = ""
    for p in paragraphs:
        buf = f"{buf}\n\n{p}" if buf else p
        if len(buf) >= min_length:
            chunks.append(buf)
            buf = ""
    if buf:
        if chunks and len(buf) < min_length:
            chunks[-1] = f"{chunks[-1]}\n\n{buf}"
        else:
            chunks.append(buf)
    return chunks
