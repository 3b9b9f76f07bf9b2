import pytest

from companion.agent.bonding import BondTracker
from companion.agent.sentiment import SentimentReading
from companion.memory.context_builder import MemoryContext, MemoryContextBuilder
from companion.memory.memory_log import MemoryEntry, MemoryLog, new_entry, summarize_exchange
from companion.memory.topics import extract_topics, primary_topic
from companion.memory.trends import SentimentTrendTracker, SynchronyTracker

DAY = 24 * 3600.0


def _entry(summary, ts, tags=(), trust=0, weight=0.5):
    return MemoryEntry(type="conversation", trust_threshold=trust, summary=summary, timestamp=ts, weight=weight, tags=tags)


def test_topics_use_aliases_and_skip_stopwords():
    assert extract_topics("My boss moved the deadline again, work is chaos") == ["work", "moved", "chaos"]
    assert primary_topic("ok so") is None


def test_summarize_exchange_prefers_message():
    assert summarize_exchange("I adopted a cat", "Congratulations!") == "You told me: I adopted a cat"
    assert summarize_exchange("", "Good morning.") == "I said: Good morning."


@pytest.mark.asyncio
async def test_memory_log_is_trust_gated(store, clock, identity):
    log = MemoryLog(store)
    await log.add(identity, _entry("You told me: the weather was nice", clock()))
    await log.add(identity, _entry("You told me: the funeral was hard", clock(), trust=2))

    assert len(await log.get_recent(identity, trust_level=0)) == 1
    assert len(await log.get_recent(identity, trust_level=2)) == 2


@pytest.mark.asyncio
async def test_memory_log_capacity_evicts_oldest(store, clock, identity):
    log = MemoryLog(store, capacity=2)
    for i in range(3):
        await log.add(identity, _entry(f"You told me: note {i}", clock() + i))

    summaries = [e.summary for e in await log.all(identity)]
    assert summaries == ["You told me: note 1", "You told me: note 2"]


@pytest.mark.asyncio
async def test_soft_reflection_uses_weightiest_unlocked_memory(store, clock, identity):
    log = MemoryLog(store)
    assert await log.soft_reflection(identity, 0) is None

    await log.add(identity, _entry("You told me: my sister visited", clock(), weight=0.9))
    await log.add(identity, _entry("You told me: it was cloudy", clock(), weight=0.2))
    line = await log.soft_reflection(identity, 0)
    assert line == "I was thinking about something… you told me: my sister visited."


@pytest.mark.asyncio
async def test_context_ranks_by_overlap_and_respects_trust(store, clock, identity):
    log = MemoryLog(store)
    guitar = _entry("You told me: I practiced guitar for an hour", clock(), tags=("music",))
    dinner = _entry("You told me: We had pasta for dinner", clock(), tags=("food",))
    locked = _entry("You told me: guitar reminds me of dad", clock(), tags=("music",), trust=2)
    stale = _entry("You told me: nothing much", clock() - 60 * DAY, weight=0.0)
    for entry in (stale, guitar, dinner, locked):
        await log.add(identity, entry)

    context = await MemoryContextBuilder(log, BondTracker(store)).build(
        identity, "I played my guitar all evening", now=clock()
    )

    assert context.entries[0] == guitar
    assert locked not in context.entries
    assert stale not in context.entries
    assert "music" in context.topics
    assert context.trust_tier == 0


@pytest.mark.asyncio
async def test_context_empty_without_memories(store, clock, identity):
    context = await MemoryContextBuilder(MemoryLog(store), BondTracker(store)).build(identity, "hello", now=clock())
    assert context.is_empty
    assert MemoryContext.empty().summary_lines() == []


@pytest.mark.asyncio
async def test_trend_prune_drops_expired_points(store, clock, identity):
    trends = SentimentTrendTracker(store, retention_seconds=100)
    reading = SentimentReading(0.4, 0.5, 0.3, 0.0)
    start = clock()
    for offset in (0, 50, 150):
        await trends.record(identity, reading, start + offset)

    assert await trends.prune(identity, start + 160) is True
    assert [p.timestamp for p in await trends.points(identity)] == [start + 50, start + 150]
    assert await trends.prune(identity, start + 160) is False


@pytest.mark.asyncio
async def test_synchrony_moves_toward_agreement(store, clock, identity):
    tracker = SynchronyTracker(store)
    reading = SentimentReading(0.5, 0.5, 0.5, 0.0)

    assert await tracker.get(identity) == 0.5
    assert await tracker.update(identity, reading, reading, clock()) == pytest.approx(0.65)
    assert await tracker.get(identity) == pytest.approx(0.65)


def test_new_entry_keeps_exchange_details():
    entry = new_entry("I adopted a cat", "Lovely!", ["adopted"], "thread_1", now=10.0)
    assert entry.details == {"message": "I adopted a cat", "reply": "Lovely!"}
    assert MemoryEntry.from_dict(entry.to_dict()) == entry
