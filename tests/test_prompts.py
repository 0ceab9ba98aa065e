"""Agent prompt assembly."""

from deepsearch.models import BoostedSearchSnippet, KnowledgeItem, Permissions
from deepsearch.prompts import compose_msgs, get_prompt


def snippet(url, score, title=""):
    return BoostedSearchSnippet(url=url, title=title, score=score)


class TestGetPrompt:
    def test_sections_follow_permissions(self):
        prompt, urls = get_prompt([], [], Permissions.answer_only())
        assert "<action-answer>" in prompt
        assert "<action-search>" not in prompt
        assert "<action-visit>" not in prompt
        assert urls == []

    def test_url_list_is_ranked_and_indexed(self):
        weighted = [snippet("https://low.com", 0.1, "Low"), snippet("https://high.com", 0.9, "High")]
        prompt, urls = get_prompt(["I searched."], [], Permissions.all(), weighted)
        assert urls == ["https://high.com", "https://low.com"]
        assert '[idx=1] [weight=0.90] "https://high.com"' in prompt
        assert "<context>\nI searched.\n</context>" in prompt

    def test_bad_requests_are_listed(self):
        prompt, _ = get_prompt([], ["paris population"], Permissions.all())
        assert "<bad-requests>\nparis population\n</bad-requests>" in prompt

    def test_beast_mode(self):
        prompt, _ = get_prompt([], [], Permissions.answer_only(), beast_mode=True)
        assert "ENGAGE MAXIMUM FORCE" in prompt


class TestComposeMsgs:
    def test_knowledge_then_conversation_then_question(self):
        knowledge = [KnowledgeItem(question="Where is the Louvre?", answer="In Paris.", type="qa")]
        msgs = compose_msgs([{"role": "user", "content": "hello"}], knowledge, "What is in Paris?")

        assert [m["role"] for m in msgs] == ["user", "assistant", "user", "user"]
        assert msgs[1]["content"] == "In Paris."
        assert msgs[-1]["content"] == "What is in Paris?"

    def test_reviewer_plans_are_attached(self):
        msgs = compose_msgs([], [], "Q?", ["Cite sources.", "Be specific."])
        content = msgs[-1]["content"]
        assert "<reviewer-1>\nCite sources.\n</reviewer-1>" in content
        assert "<reviewer-2>\nBe specific.\n</reviewer-2>" in content
