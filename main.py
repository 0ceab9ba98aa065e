import asyncio
import logging
import os
import sys

from dotenv import load_dotenv

from deepsearch.graph import get_response
from deepsearch.models import AnswerAction, ResearchResult

load_dotenv()


def run_deep_research(user_query: str, **options) -> ResearchResult:
    return asyncio.run(get_response(user_query, **options))


def main():
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    query = " ".join(sys.argv[1:]).strip()
    if not query:
        print('Usage: deepsearch "your question"', file=sys.stderr)
        sys.exit(2)

    result = run_deep_research(query)
    answer = result.result

    print("\n" + "=" * 50)
    print("Final answer")
    print("=" * 50)
    if isinstance(answer, AnswerAction):
        print(answer.md_answer or answer.answer)
    else:
        print(answer.think)

    print("\nVisited URLs:")
    for url in result.visited_urls:
        print(f"  - {url}")

    result.context.token_tracker.print_summary()


if __name__ == "__main__":
    main()
