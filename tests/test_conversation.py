import asyncio

from conftest import FakeLLM, provider_down
from ragcore.conversation.manager import ConversationConfig, ConversationManager, filter_relevant, keyword_relevance
from ragcore.core.types import ConversationTurn


def _turns(n):
    return [
        ConversationTurn("user" if i % 2 == 0 else "assistant", f"turn {i + 1} message [Document 1]")
        for i in range(n)
    ]


async def test_long_history_summarizes_all_but_recent_window():
    llm = FakeLLM("They discussed vacation policy.")
    manager = ConversationManager(llm, ConversationConfig(window=5, summary_threshold=20))
    turns = _turns(25)

    summary = await manager.prepare(turns, "what about sick leave?")

    assert len(llm.calls) == 1
    prompt = llm.calls[0]["messages"][1]["content"]
    for i in range(1, 21):
        assert f"turn {i} message" in prompt
    for i in range(21, 26):
        assert f"turn {i} message" not in prompt
    assert "[Document 1]" not in prompt

    assert summary.summary_text == "They discussed vacation policy."
    assert summary.summarized_turn_count == 20
    assert list(summary.preserved_recent_turns) == turns[20:]
    history = summary.as_turns()
    assert history[0].content == "[CONVERSATION SUMMARY] They discussed vacation policy."
    assert list(history[1:]) == turns[20:]


async def test_short_history_is_kept_verbatim():
    llm = FakeLLM("unused")
    summary = await ConversationManager(llm).prepare(_turns(8))
    assert llm.calls == []
    assert len(summary.preserved_recent_turns) == 8
    assert summary.summary_text == ""


async def test_summary_failure_falls_back_to_recent_window():
    manager = ConversationManager(FakeLLM(error=provider_down("openai")))
    turns = _turns(25)
    summary = await manager.prepare(turns)
    assert summary.summary_text == ""
    assert list(summary.as_turns()) == turns[20:]


async def test_slow_summary_times_out_without_blocking():
    manager = ConversationManager(FakeLLM("late", delay=1.0), ConversationConfig(timeout=0.05))
    turns = _turns(25)
    summary = await asyncio.wait_for(manager.prepare(turns), timeout=0.5)
    assert list(summary.preserved_recent_turns) == turns[20:]
    assert summary.summary_text == ""


def test_relevance_filter_drops_stale_topics_but_keeps_recent_window():
    old = [
        ConversationTurn("user", "How many vacation days do employees get?"),
        ConversationTurn("assistant", "Football results from last weekend."),
    ] + [ConversationTurn("user", f"filler {i}") for i in range(9)]
    recent = [ConversationTurn("user", f"recent {i}") for i in range(5)]
    turns = old + recent

    kept = filter_relevant(turns, "vacation days for employees", ConversationConfig(window=5, max_history=10))

    assert kept[-5:] == recent
    assert old[0] in kept
    assert old[1] not in kept


def test_keyword_relevance_ignores_stop_words():
    assert keyword_relevance("the and of", "the and of") == 0.0
    assert keyword_relevance("vacation policy", "vacation policy") == 1.0
