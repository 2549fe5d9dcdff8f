import pytest

from conftest import FakeLLM, provider_down
from ragcore.core.cache import TTLCache
from ragcore.core.resilience import NO_RETRY, ExternalCall
from ragcore.core.types import Query, QueryType, TopicScope
from ragcore.query.classifier import classify_query, extract_keywords
from ragcore.query.processor import QueryProcessor, merge_topic, parse_variations

BENEFITS = TopicScope("Employee Benefits", "health insurance and leave")


@pytest.mark.parametrize(
    "text,expected",
    [
        ("What is the notice period?", QueryType.FACTUAL),
        ("How many vacation days do I get?", QueryType.FACTUAL),
        ("Explain vector search", QueryType.CONCEPTUAL),
        ("Compare term life vs whole life", QueryType.CONCEPTUAL),
        ("How to reset my password", QueryType.PROCEDURAL),
        ("Tell me about solar subsidies", QueryType.EXPLORATORY),
        ("solar subsidies", QueryType.EXPLORATORY),
        ("Recent changes to the federal tax code for small businesses", QueryType.FACTUAL),
    ],
)
def test_classify_query(text, expected):
    assert classify_query(text) is expected


def test_extract_keywords_drops_stop_words_and_duplicates():
    assert extract_keywords("What are the vacation days for employees? Vacation!") == ["vacation", "days", "employees"]


@pytest.mark.parametrize(
    "text,query_type,expected",
    [
        ("How many vacation days?", QueryType.FACTUAL, "How many vacation days? employee benefits"),
        ("Explain parental leave", QueryType.CONCEPTUAL, 'Explain parental leave related to "Employee Benefits"'),
        ("How do I file a claim", QueryType.PROCEDURAL, 'How do I file a claim in "Employee Benefits"'),
        ("overview", QueryType.EXPLORATORY, '"Employee Benefits" overview'),
    ],
)
def test_topic_is_woven_in_by_query_type(text, query_type, expected):
    assert merge_topic(text, BENEFITS, query_type) == expected


def test_no_topic_leaves_text_alone():
    assert merge_topic("vacation days", None, QueryType.FACTUAL) == "vacation days"


@pytest.mark.parametrize(
    "content,expected",
    [
        ('{"variations": ["a", " b "]}', ["a", "b"]),
        ('["x"]', ["x"]),
        ('Sure! ["p", "q"] hope that helps', ["p", "q"]),
        ('{"queries": ["m"]}', ["m"]),
    ],
)
def test_parse_variations_accepts_common_shapes(content, expected):
    assert parse_variations(content) == expected


def test_parse_variations_rejects_prose():
    with pytest.raises(ValueError):
        parse_variations("I could not think of any.")


async def test_process_adds_rewrites_after_original():
    llm = FakeLLM('{"variations": ["paid leave days", "Vacation Days", "vacation allowance"]}')
    processed = await QueryProcessor(llm).process(Query("vacation days", user_id="u1"))

    assert processed.query_type is QueryType.EXPLORATORY
    assert processed.variants == ("vacation days", "paid leave days", "vacation allowance")
    assert processed.query.variants == ("paid leave days", "vacation allowance")
    assert processed.keywords == ("vacation", "days")
    assert llm.calls[0]["options"].extra["response_format"] == {"type": "json_object"}


async def test_rewrite_failure_falls_back_to_original_query():
    processor = QueryProcessor(FakeLLM(error=provider_down("openai")), call=ExternalCall("rewrite", retry=NO_RETRY))
    processed = await processor.process(Query("vacation days", user_id="u1"))
    assert processed.variants == ("vacation days",)


async def test_caller_supplied_variants_skip_the_llm():
    llm = FakeLLM("unused")
    processed = await QueryProcessor(llm).process(Query("vacation days", user_id="u1", variants=("annual leave",)))
    assert llm.calls == []
    assert processed.variants == ("vacation days", "annual leave")


async def test_rewrites_are_cached_by_normalized_text():
    llm = FakeLLM('{"variations": ["annual leave"]}')
    processor = QueryProcessor(llm, cache=TTLCache("query", ttl=60))

    await processor.process(Query("Vacation days", user_id="u1"))
    await processor.process(Query("  vacation   DAYS ", user_id="u2"))

    assert len(llm.calls) == 1
