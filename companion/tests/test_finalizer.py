import pytest

from companion.agent.bonding import BondTracker, TrustTier
from companion.agent.sentiment import SentimentReading
from companion.conversation.fallbacks import FINAL_FALLBACK
from companion.conversation.finalizer import TurnResultFinalizer
from companion.conversation.types import OutcomeKind, TurnContext, TurnMeta, TurnOutcome, TurnResult
from companion.core.tasks import CancellationToken
from companion.db.state_store import InMemoryStateStore
from companion.memory.memory_log import MemoryLog
from companion.memory.trends import SentimentTrendTracker, SynchronyTracker

class FailingAppendStore(InMemoryStateStore):
    async def append(self, namespace, key, item, capacity=None):
        raise RuntimeError("disk full")

def _finalizer(store, clock, telemetry=None):
    return TurnResultFinalizer(
        MemoryLog(store),
        SentimentTrendTracker(store),
        SynchronyTracker(store),
        BondTracker(store),
        telemetry=telemetry,
        clock=clock,
    )

def _ok(text="I'm glad you told me about the guitar.", engine="stub", bypassed=False):
    return TurnResult(text=text, outcome=TurnOutcome(OutcomeKind.OK, engine), bypassed=bypassed)

def _context(identity, message="I finally played my guitar again, I'm so happy", sentiment=None):
    return TurnContext(identity=identity, message=message, meta=TurnMeta(conversation_id="thread-a"),
                       sentiment=sentiment)

@pytest.mark.asyncio
async def test_short_reply_becomes_clarifying_fallback(store, clock, identity):
    final = await _finalizer(store, clock).finalize(_ok(), "ok", _context(identity))
    assert final.text == FINAL_FALLBACK

@pytest.mark.asyncio
async def test_missing_shaped_text_becomes_fallback(store, clock, identity):
    final = await _finalizer(store, clock).finalize(_ok(), None, _context(identity))
    assert final.text == FINAL_FALLBACK

@pytest.mark.asyncio
async def test_ok_reply_commits_everything(store, clock, identity):
    finalizer = _finalizer(store, clock)
    final = await finalizer.finalize(_ok(), "I'm glad you told me about the guitar.", _context(identity))

    assert final.committed
    assert final.text == "I'm glad you told me about the guitar."

    entries = await finalizer.memory_log.all(identity)
    assert len(entries) == 1
    assert entries[0].thread_id == "thread-a"
    assert entries[0].timestamp == clock()
    assert entries[0].trust_threshold == int(TrustTier.UNFAMILIAR)
    assert "music" in entries[0].tags
    assert len(await finalizer.trends.points(identity)) == 1
    assert await store.get("synchrony", identity.key) is not None
    bond = await finalizer.bonds.get(identity)
    assert bond.trust > 0.1

@pytest.mark.asyncio
async def test_painful_memory_waits_for_comfortable_tier(store, clock, identity):
    painful = SentimentReading(valence=-0.8, activation=0.6, warmth=0.0, tension=0.7)
    finalizer = _finalizer(store, clock)
    await finalizer.finalize(_ok(), "That sounds really hard. I'm here.", _context(identity, "Everything hurts", painful))

    (entry,) = await finalizer.memory_log.all(identity)
    assert entry.trust_threshold == int(TrustTier.COMFORTABLE)
    assert entry.weight == pytest.approx(0.62)

@pytest.mark.asyncio
async def test_cancelled_turn_is_not_committed(store, clock, identity):
    token = CancellationToken()
    token.cancel("superseded")
    finalizer = _finalizer(store, clock)

    final = await finalizer.finalize(_ok(), "I'm glad you told me.", _context(identity), cancel_token=token)

    assert not final.committed
    assert final.text == "I'm glad you told me."
    assert await finalizer.memory_log.all(identity) == []
    assert await store.get("bond", identity.key) is None

@pytest.mark.asyncio
@pytest.mark.parametrize("result", [
    TurnResult(text="Sorry, slow today.", outcome=TurnOutcome(OutcomeKind.TIMEOUT, "fallback", "timeout")),
    TurnResult(text="Trouble.", outcome=TurnOutcome(OutcomeKind.ERROR, "fallback", "internal_error")),
    _ok(text="I'm in a safe state right now.", engine="mode_gate", bypassed=True),
])
async def test_non_ok_or_bypassed_results_are_not_committed(store, clock, identity, result):
    finalizer = _finalizer(store, clock)
    final = await finalizer.finalize(result, result.text, _context(identity))

    assert not final.committed
    assert final.outcome == result.outcome
    assert await finalizer.memory_log.all(identity) == []

@pytest.mark.asyncio
async def test_store_failure_is_reported_not_raised(clock, telemetry, identity):
    finalizer = _finalizer(FailingAppendStore(), clock, telemetry)
    final = await finalizer.finalize(_ok(), "I'm glad you told me.", _context(identity))

    assert not final.committed
    assert final.text == "I'm glad you told me."
    events = telemetry.of_type("commit_failed")
    assert {e["step"] for e in events} == {"memory", "trend"}
    assert all("disk full" in e["error"] for e in events)

class BrokenMemoryLog(MemoryLog):
    async def add(self, identity, entry):
        raise RuntimeError("memory unavailable")

@pytest.mark.asyncio
async def test_memory_failure_does_not_block_other_commit_steps(store, clock, telemetry, identity):
    finalizer = TurnResultFinalizer(
        BrokenMemoryLog(store),
        SentimentTrendTracker(store),
        SynchronyTracker(store),
        BondTracker(store),
        telemetry=telemetry,
        clock=clock,
    )
    final = await finalizer.finalize(_ok(), "I'm glad you told me about the guitar.", _context(identity))

    assert not final.committed
    assert len(await finalizer.trends.points(identity)) == 1
    assert await store.get("synchrony", identity.key) is not None
    assert (await finalizer.bonds.get(identity)).trust > 0.1
    (event,) = telemetry.of_type("commit_failed")
    assert event["step"] == "memory"

class CancellingMemoryLog(MemoryLog):
    def __init__(self, store, token):
        super().__init__(store)
        self.token = token

    async def add(self, identity, entry):
        self.token.cancel("superseded")
        return await super().add(identity, entry)

@pytest.mark.asyncio
async def test_cancel_during_commit_still_commits_every_step(store, clock, identity):
    token = CancellationToken()
    finalizer = TurnResultFinalizer(
        CancellingMemoryLog(store, token),
        SentimentTrendTracker(store),
        SynchronyTracker(store),
        BondTracker(store),
        clock=clock,
    )
    final = await finalizer.finalize(_ok(), "I'm glad you told me.", _context(identity), cancel_token=token)

    assert token.cancelled
    assert final.committed
    assert len(await finalizer.memory_log.all(identity)) == 1
    assert len(await finalizer.trends.points(identity)) == 1
    assert (await finalizer.bonds.get(identity)).trust > 0.1

@pytest.mark.asyncio
async def test_interrupted_flag_is_carried(store, clock, identity):
    final = await _finalizer(store, clock).finalize(
        _ok(), "Let's try something different.", _context(identity), interrupted=True
    )
    assert final.interrupted
