"""Token budget accounting and the step/think event stream.

Both trackers are shared by reference between a parent session and its
team-mode sub-sessions, so every mutation happens under a lock.
Listeners are called synchronously from whichever thread records the
event; the SSE server subscribes to ``ActionTracker`` to stream progress.
"""

import copy
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from .models import TokenUsage

logger = logging.getLogger(__name__)

Listener = Callable[[dict], None]


class _ListenerMixin:
    def _init_listeners(self):
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()

    def add_listener(self, fn: Listener):
        with self._lock:
            self._listeners.append(fn)

    def remove_listener(self, fn: Listener):
        with self._lock:
            try:
                self._listeners.remove(fn)
            except ValueError:
                pass

    def _emit(self, event: dict):
        event.setdefault("timestamp", time.time())
        with self._lock:
            listeners = list(self._listeners)
        for fn in listeners:
            try:
                fn(event)
            except Exception as exc:
                logger.warning("Listener %r failed: %s", fn, exc)


class TokenTracker(_ListenerMixin):
    def __init__(self, budget: Optional[int] = None):
        self.budget = budget
        self._usages: List[Tuple[str, TokenUsage]] = []
        self._init_listeners()

    def track_usage(self, tool: str, usage: TokenUsage):
        with self._lock:
            self._usages.append((tool, usage))
        total = self.get_total_usage().total_tokens
        if self.budget and total > self.budget:
            logger.warning("Token budget exceeded: %d / %d", total, self.budget)
        self._emit({"type": "usage", "tool": tool, "usage": usage.model_dump(), "total_tokens": total})

    def get_total_usage(self) -> TokenUsage:
        with self._lock:
            usages = [u for _, u in self._usages]
        return TokenUsage(
            prompt_tokens=sum(u.prompt_tokens for u in usages),
            completion_tokens=sum(u.completion_tokens for u in usages),
            total_tokens=sum(u.total_tokens for u in usages),
        )

    def get_total_usage_snake_case(self) -> Dict[str, int]:
        return self.get_total_usage().model_dump()

    def get_usage_breakdown(self) -> Dict[str, int]:
        """Total tokens per tool, largest first."""
        breakdown: Dict[str, int] = {}
        with self._lock:
            for tool, usage in self._usages:
                breakdown[tool] = breakdown.get(tool, 0) + usage.total_tokens
        return dict(sorted(breakdown.items(), key=lambda kv: kv[1], reverse=True))

    def print_summary(self):
        total = self.get_total_usage()
        print("\n" + "=" * 50)
        print("Token usage")
        print("=" * 50)
        budget = f"{self.budget:,}" if self.budget else "unlimited"
        print(f"  total:      {total.total_tokens:,} (budget {budget})")
        print(f"  prompt:     {total.prompt_tokens:,}")
        print(f"  completion: {total.completion_tokens:,}")
        for tool, tokens in self.get_usage_breakdown().items():
            print(f"  - {tool:<20} {tokens:,}")

    def reset(self):
        with self._lock:
            self._usages = []


# ── action tracker ──────────────────────────────────────────────────

THINK_MESSAGES: Dict[str, Dict[str, str]] = {
    "en": {
        "eval_first": "But wait, let me evaluate the answer first.",
        "search_for": "Let me search for ${keywords} to gather more information.",
        "read_for": "Let me read ${urls} to gather more information.",
        "read_for_verify": "Let me fetch the source content to verify the answer.",
        "hostnames_no_results": "Can't find any results from ${hostnames}.",
        "cross_reference": "Let me cross-reference the information from the web to verify the answer.",
    },
    "zh": {
        "eval_first": "等等，让我先自己评估一下答案。",
        "search_for": "让我搜索${keywords}来获取更多信息。",
        "read_for": "让我读取网页${urls}来获取更多信息。",
        "read_for_verify": "让我读取源网页内容来验证答案。",
        "hostnames_no_results": "没有找到${hostnames}的结果。",
        "cross_reference": "让我交叉验证网页上的信息。",
    },
    "de": {
        "eval_first": "Aber warte, lass mich die Antwort zuerst bewerten.",
        "search_for": "Lass mich nach ${keywords} suchen, um mehr Informationen zu sammeln.",
        "read_for": "Lass mich ${urls} lesen, um mehr Informationen zu sammeln.",
        "read_for_verify": "Lass mich den Quellinhalt abrufen, um die Antwort zu überprüfen.",
        "hostnames_no_results": "Keine Ergebnisse von ${hostnames} gefunden.",
        "cross_reference": "Lass mich die Informationen aus dem Web abgleichen, um die Antwort zu überprüfen.",
    },
    "ja": {
        "eval_first": "ちょっと待って、まず答えを評価します。",
        "search_for": "${keywords}で検索して、情報を集めます。",
        "read_for": "${urls}を読んで、情報を集めます。",
        "read_for_verify": "答えを確認するために、ソースコンテンツを取得します。",
        "hostnames_no_results": "${hostnames}から結果が見つかりません。",
        "cross_reference": "答えを確認するために、ウェブの情報を照合します。",
    },
    "es": {
        "eval_first": "Pero espera, déjame evaluar la respuesta primero.",
        "search_for": "Déjame buscar ${keywords} para recopilar más información.",
        "read_for": "Déjame leer ${urls} para recopilar más información.",
        "read_for_verify": "Déjame obtener el contenido de la fuente para verificar la respuesta.",
        "hostnames_no_results": "No se encontraron resultados de ${hostnames}.",
        "cross_reference": "Déjame contrastar la información de la web para verificar la respuesta.",
    },
    "fr": {
        "eval_first": "Un instant, laisse-moi d'abord évaluer la réponse.",
        "search_for": "Laisse-moi rechercher ${keywords} pour obtenir plus d'informations.",
        "read_for": "Laisse-moi lire ${urls} pour obtenir plus d'informations.",
        "read_for_verify": "Laisse-moi récupérer le contenu source pour vérifier la réponse.",
        "hostnames_no_results": "Aucun résultat trouvé sur ${hostnames}.",
        "cross_reference": "Laisse-moi recouper les informations du web pour vérifier la réponse.",
    },
}


class ActionTracker(_ListenerMixin):
    """Records the latest step and broadcasts it.

    Event shapes::

        {"type": "action", "total_step": 3, "action": {...}, "gaps": [...]}
        {"type": "think", "think": "Let me search for ..."}
    """

    def __init__(self):
        self._state: Dict[str, Any] = {"this_step": None, "gaps": [], "total_step": 0}
        self._init_listeners()

    def track_action(self, payload: Dict[str, Any]):
        with self._lock:
            self._state.update(payload)
            state = copy.copy(self._state)
        step = state.get("this_step")
        self._emit({
            "type": "action",
            "total_step": state.get("total_step", 0),
            "action": step.model_dump() if hasattr(step, "model_dump") else step,
            "gaps": list(state.get("gaps") or []),
        })

    def track_think(self, key: str, lang: Optional[str] = None, params: Optional[Dict[str, str]] = None):
        table = THINK_MESSAGES.get((lang or "en").split("-")[0], THINK_MESSAGES["en"])
        think = table.get(key, key)
        for name, value in (params or {}).items():
            think = think.replace(f"${{{name}}}", value)
        with self._lock:
            step = self._state.get("this_step")
            if hasattr(step, "model_copy"):
                self._state["this_step"] = step.model_copy(update={"think": think})
        self._emit({"type": "think", "think": think})

    def get_state(self) -> Dict[str, Any]:
        with self._lock:
            return copy.copy(self._state)
