"""Token accounting and the action/think event stream."""

import threading

from deepsearch.models import SearchAction, TokenUsage
from deepsearch.tracking import ActionTracker, TokenTracker


def usage(total):
    return TokenUsage(prompt_tokens=total // 2, completion_tokens=total - total // 2, total_tokens=total)


class TestTokenTracker:
    def test_totals_and_breakdown(self):
        tracker = TokenTracker(budget=1000)
        tracker.track_usage("agent", usage(100))
        tracker.track_usage("evaluator", usage(40))
        tracker.track_usage("agent", usage(60))

        assert tracker.get_total_usage().total_tokens == 200
        assert tracker.get_total_usage_snake_case() == {"prompt_tokens": 100, "completion_tokens": 100, "total_tokens": 200}
        assert tracker.get_usage_breakdown() == {"agent": 160, "evaluator": 40}

    def test_usage_events(self):
        tracker = TokenTracker()
        events = []
        tracker.add_listener(events.append)
        tracker.track_usage("agent", usage(10))
        tracker.remove_listener(events.append)
        tracker.track_usage("agent", usage(10))

        assert len(events) == 1
        assert events[0]["type"] == "usage"
        assert events[0]["tool"] == "agent"
        assert events[0]["total_tokens"] == 10

    def test_failing_listener_does_not_break_tracking(self):
        tracker = TokenTracker()

        def _broken(event):
            raise RuntimeError("listener bug")

        tracker.add_listener(_broken)
        tracker.track_usage("agent", usage(10))
        assert tracker.get_total_usage().total_tokens == 10

    def test_concurrent_tracking(self):
        tracker = TokenTracker()
        threads = [threading.Thread(target=lambda: [tracker.track_usage("t", usage(1)) for _ in range(100)])
                   for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert tracker.get_total_usage().total_tokens == 800

    def test_reset(self):
        tracker = TokenTracker()
        tracker.track_usage("agent", usage(10))
        tracker.reset()
        assert tracker.get_total_usage().total_tokens == 0


class TestActionTracker:
    def test_track_action_broadcasts_serialised_step(self):
        tracker = ActionTracker()
        events = []
        tracker.add_listener(events.append)
        tracker.track_action({"total_step": 2, "this_step": SearchAction(search_requests=["paris"]), "gaps": ["q"]})

        assert events[0]["type"] == "action"
        assert events[0]["total_step"] == 2
        assert events[0]["action"]["search_requests"] == ["paris"]
        assert events[0]["gaps"] == ["q"]

    def test_partial_update_keeps_previous_fields(self):
        tracker = ActionTracker()
        tracker.track_action({"total_step": 4, "gaps": ["q"]})
        tracker.track_action({"this_step": SearchAction(search_requests=["lyon"])})
        state = tracker.get_state()
        assert state["total_step"] == 4
        assert state["this_step"].search_requests == ["lyon"]

    def test_think_is_localised_and_attached_to_the_step(self):
        tracker = ActionTracker()
        events = []
        tracker.add_listener(events.append)
        tracker.track_action({"this_step": SearchAction(search_requests=["x"])})
        tracker.track_think("search_for", "de", {"keywords": "Paris"})

        think = events[-1]["think"]
        assert think == "Lass mich nach Paris suchen, um mehr Informationen zu sammeln."
        assert tracker.get_state()["this_step"].think == think

    def test_unknown_language_falls_back_to_english(self):
        tracker = ActionTracker()
        events = []
        tracker.add_listener(events.append)
        tracker.track_think("eval_first", "sw")
        assert events[-1]["think"] == "But wait, let me evaluate the answer first."
