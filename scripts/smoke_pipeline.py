import asyncio
import os
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv

from ragcore.core.config import get_settings
from ragcore.core.log import configure_logging
from ragcore.core.types import Query, TimeFilter, TimeRange, TopicScope
from ragcore.pipeline import RAGPipeline, RetrieveOptions

load_dotenv()

USER_ID = os.environ.get("SMOKE_USER_ID", "demo-user")
QUERY = os.environ.get("SMOKE_QUERY", "What does the onboarding policy say about mentors?")


async def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    pipeline = RAGPipeline.from_settings(settings)

    topic = None
    if os.environ.get("SMOKE_TOPIC"):
        topic = TopicScope(name=os.environ["SMOKE_TOPIC"], strict=os.environ.get("SMOKE_TOPIC_STRICT") == "1")
    query = Query(text=QUERY, user_id=USER_ID, topic=topic, time_filter=TimeFilter(time_range=TimeRange.YEAR))

    result = await pipeline.answer(query, RetrieveOptions())

    ctx = result.context
    print(f"\nCONTEXT: {len(ctx.documents)} documents, {len(ctx.web_results)} web, {ctx.context_tokens} tokens")
    for w in result.warnings:
        print("WARNING:", w)
    print("\nANSWER:\n", result.answer)
    v = result.validation
    print(f"\nCITATIONS: valid={v.is_valid} matched={v.matched_count} unmatched={v.unmatched_count}")
    for e in v.errors:
        print("  error:", e)
    for s in v.suggestions:
        print("  suggestion:", s)


if __name__ == "__main__":
    asyncio.run(main())
