from conftest import FakeLLM, doc_item, provider_down, ranked
from ragcore.context.compressor import ContextCompressor, key_sentences
from ragcore.core.cancellation import CancellationToken


def _filler(n):
    return " ".join(["lorem"] * n)


def _items():
    tail = _filler(35) + ". The fee was 5 dollars."
    return [
        ranked(doc_item("head", _filler(40), 0.9), 0.9),
        ranked(doc_item("t1", tail, 0.5), 0.5),
        ranked(doc_item("t2", tail, 0.4), 0.4),
    ]


def test_key_sentences_keep_numbers_dates_and_quotes():
    text = 'Nothing here. Revenue grew 12%. It closed in March. She said "never again". Done'
    assert key_sentences(text) == ["Revenue grew 12%.", "It closed in March.", 'She said "never again".']


def test_compression_triggers_at_overflow_ratio(counter):
    compressor = ContextCompressor(FakeLLM(), counter)
    items = [ranked(doc_item("a", _filler(100), 0.5), 0.5)]
    assert compressor.needs_compression(items, 80)
    assert not compressor.needs_compression(items, 81)
    assert not compressor.needs_compression([], 80)


async def test_tail_is_summarized_and_key_facts_reappended(counter):
    llm = FakeLLM("Short summary.")
    out = await ContextCompressor(llm, counter).compress("fees", _items(), 80)

    assert len(llm.calls) == 2
    assert out[0].content == _filler(40)
    for r in out[1:]:
        assert r.content == "Short summary. The fee was 5 dollars."
        assert r.provenance[-1] == "compressed"


async def test_under_budget_is_left_alone(counter):
    llm = FakeLLM("unused")
    out = await ContextCompressor(llm, counter).compress("fees", _items(), 1000)
    assert llm.calls == []
    assert [r.item.id for r in out] == ["head", "t1", "t2"]


async def test_skipped_when_deadline_is_too_close(counter):
    llm = FakeLLM("unused")
    out = await ContextCompressor(llm, counter, timeout=2.0).compress(
        "fees", _items(), 80, CancellationToken(deadline_s=0.5)
    )
    assert llm.calls == []
    assert out[1].content == _items()[1].content


async def test_failed_summary_keeps_original_text(counter):
    out = await ContextCompressor(FakeLLM(error=provider_down("openai")), counter).compress("fees", _items(), 80)
    assert [r.content for r in out] == [r.content for r in _items()]


async def test_summary_longer_than_original_is_discarded(counter):
    out = await ContextCompressor(FakeLLM(_filler(60)), counter).compress("fees", _items(), 80)
    assert "compressed" not in out[1].provenance
