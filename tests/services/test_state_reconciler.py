"""StateReconciler: optimistic creation, id resolution and TTL cleanup.

Tests cover:
    - A provisional rule with a temporary id is returned before anything is persisted
    - rule_exists(temp_id) holds before and after persistence resolves
    - Concurrent readers of one temporary id share one creation (one stored rule)
    - Failed creations re-raise the original error; readers get None
    - Timeouts and cancelled waiters never cancel the creation itself
    - Expired bookkeeping is dropped; an in-flight creation still completes
"""

import asyncio

import pytest

from exception_rules.core.domain_types import RuleScope, RuleStatus, RuleType
from exception_rules.core.errors import (
    DuplicateNameError, OperationTimeoutError, RuleNotFoundError, RuleValidationError,
)
from exception_rules.core.identifiers import is_temporary_id
from exception_rules.infrastructure.memory_backend import InMemoryBackend
from exception_rules.services.rule_store import RuleStore
from exception_rules.services.state_reconciler import StateReconciler


class GatedBackend(InMemoryBackend):
    """Saves block until the test opens the gate."""

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()

    async def save(self, collection, items):
        await self.gate.wait()
        await super().save(collection, items)


@pytest.fixture
def gated():
    return GatedBackend()


@pytest.fixture
def gated_reconciler(gated, settings, clock):
    return StateReconciler(RuleStore(gated, settings, clock), settings, clock)


# ─── Optimistic Creation ─────────────────────────────────────────

@pytest.mark.asyncio
async def test_provisional_rule_is_immediate_and_exists(reconciler, store):
    handle = reconciler.start_optimistic_creation("Bathroom break", RuleType.PAUSE_ONLY)

    assert not handle.done()
    assert is_temporary_id(handle.temporary_id)
    assert handle.provisional_rule.id == handle.temporary_id
    assert handle.provisional_rule.name == "Bathroom break"
    assert await store.list_rules() == []

    assert await reconciler.rule_exists(handle.temporary_id)
    rule = await handle.result()
    assert await reconciler.rule_exists(handle.temporary_id)
    assert not is_temporary_id(rule.id)
    assert reconciler.get_real_rule_id(handle.temporary_id) == rule.id


@pytest.mark.asyncio
async def test_state_moves_from_creating_to_active(reconciler):
    handle = reconciler.start_optimistic_creation("Water", RuleType.PAUSE_ONLY)
    assert reconciler.get_rule_state(handle.temporary_id).status == RuleStatus.CREATING

    rule = await handle.result()
    temp_state = reconciler.get_rule_state(handle.temporary_id)
    assert temp_state.status == RuleStatus.ACTIVE
    assert temp_state.real_id == rule.id
    assert reconciler.get_rule_state(rule.id).temporary_id == handle.temporary_id
    assert reconciler.snapshot()["pending_creations"] == {}


@pytest.mark.asyncio
async def test_chain_rule_creation(reconciler):
    handle = reconciler.start_optimistic_creation(
        "Standup", RuleType.PAUSE_ONLY, "Daily", RuleScope.CHAIN, "t1",
    )
    rule = await handle.result()
    assert rule.scope == RuleScope.CHAIN
    assert rule.task_id == "t1"
    assert rule.description == "Daily"


@pytest.mark.asyncio
async def test_concurrent_readers_share_one_creation(reconciler, store, backend):
    handle = reconciler.start_optimistic_creation("Water", RuleType.PAUSE_ONLY)
    results = await asyncio.gather(*(reconciler.get_rule(handle.temporary_id) for _ in range(10)))

    assert len({r.id for r in results}) == 1
    assert len(await store.list_rules()) == 1
    assert backend.save_count == 1


@pytest.mark.asyncio
async def test_field_errors_raise_synchronously(reconciler):
    with pytest.raises(RuleValidationError):
        reconciler.start_optimistic_creation("   ", RuleType.PAUSE_ONLY)
    with pytest.raises(RuleValidationError):
        reconciler.start_optimistic_creation("Standup", RuleType.PAUSE_ONLY, scope=RuleScope.CHAIN)
    assert reconciler.snapshot()["states"] == {}


@pytest.mark.asyncio
async def test_failed_creation_reraises_original_error(reconciler, make_rule):
    await make_rule("Water")
    handle = reconciler.start_optimistic_creation("water", RuleType.PAUSE_ONLY)

    with pytest.raises(DuplicateNameError) as first:
        await handle.result()
    with pytest.raises(DuplicateNameError) as second:
        await reconciler.wait_for_creation(handle.temporary_id)
    assert second.value is first.value

    assert await reconciler.get_rule(handle.temporary_id) is None
    assert not await reconciler.rule_exists(handle.temporary_id)
    state = reconciler.get_rule_state(handle.temporary_id)
    assert state.status == RuleStatus.ERROR
    assert state.error is first.value


@pytest.mark.asyncio
async def test_readers_of_failed_creation_get_none(reconciler, make_rule):
    await make_rule("Water")
    handle = reconciler.start_optimistic_creation("Water", RuleType.PAUSE_ONLY)
    results = await asyncio.gather(*(reconciler.get_rule(handle.temporary_id) for _ in range(3)))
    assert results == [None, None, None]


@pytest.mark.asyncio
async def test_no_automatic_retry(reconciler, make_rule, store):
    await make_rule("Water")
    handle = reconciler.start_optimistic_creation("Water", RuleType.PAUSE_ONLY)
    with pytest.raises(DuplicateNameError):
        await handle.result()
    await asyncio.sleep(0)
    assert len(await store.list_rules()) == 1
    assert reconciler.snapshot()["pending_creations"] == {}


# ─── Timeouts and Cancellation ───────────────────────────────────

@pytest.mark.asyncio
async def test_wait_timeout_does_not_cancel_creation(gated_reconciler, gated):
    handle = gated_reconciler.start_optimistic_creation("Water", RuleType.PAUSE_ONLY)

    with pytest.raises(OperationTimeoutError):
        await gated_reconciler.wait_for_creation(handle.temporary_id, timeout=0.01)
    with pytest.raises(OperationTimeoutError):
        await handle.result(timeout=0.01)

    gated.gate.set()
    rule = await handle.result()
    assert rule.name == "Water"


@pytest.mark.asyncio
async def test_cancelled_reader_does_not_cancel_creation(gated_reconciler, gated):
    handle = gated_reconciler.start_optimistic_creation("Water", RuleType.PAUSE_ONLY)
    reader = asyncio.create_task(gated_reconciler.get_rule(handle.temporary_id))
    await asyncio.sleep(0)
    reader.cancel()
    with pytest.raises(asyncio.CancelledError):
        await reader

    gated.gate.set()
    assert (await handle.result()).name == "Water"


@pytest.mark.asyncio
async def test_validate_pending_temporary_id(gated_reconciler, gated):
    handle = gated_reconciler.start_optimistic_creation("Water", RuleType.PAUSE_ONLY)
    validation = await gated_reconciler.validate_rule_id(handle.temporary_id)
    assert validation.is_valid
    assert validation.is_temporary
    assert validation.real_id is None

    gated.gate.set()
    rule = await handle.result()
    validation = await gated_reconciler.validate_rule_id(handle.temporary_id)
    assert validation.real_id == rule.id


# ─── Resolution ──────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_real_ids_resolve_to_themselves(reconciler):
    assert reconciler.get_real_rule_id("rule_abc") == "rule_abc"
    assert reconciler.get_real_rule_id("temp_unknown") is None


@pytest.mark.asyncio
async def test_wait_for_unknown_temporary_id(reconciler):
    with pytest.raises(RuleNotFoundError):
        await reconciler.wait_for_creation("temp_unknown")


@pytest.mark.asyncio
async def test_validate_real_ids(reconciler, make_rule, store):
    rule = await make_rule("Water")
    assert (await reconciler.validate_rule_id(rule.id)).is_valid

    await store.delete_rule(rule.id)
    validation = await reconciler.validate_rule_id(rule.id)
    assert not validation.is_valid
    assert validation.error == "Rule does not exist"


@pytest.mark.asyncio
async def test_validate_failed_temporary_id(reconciler, make_rule):
    await make_rule("Water")
    handle = reconciler.start_optimistic_creation("Water", RuleType.PAUSE_ONLY)
    with pytest.raises(DuplicateNameError):
        await handle.result()

    validation = await reconciler.validate_rule_id(handle.temporary_id)
    assert not validation.is_valid
    assert "already exists" in validation.error


# ─── Maintenance ─────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_cleanup_drops_expired_entries(reconciler, store, clock):
    handle = reconciler.start_optimistic_creation("Water", RuleType.PAUSE_ONLY)
    rule = await handle.result()

    clock.advance(minutes=5)
    assert reconciler.cleanup_expired_states() == 0

    clock.advance(minutes=6)
    assert reconciler.cleanup_expired_states() == 3
    assert reconciler.get_real_rule_id(handle.temporary_id) is None
    assert await store.get_rule(rule.id) is not None


@pytest.mark.asyncio
async def test_cleanup_never_cancels_inflight_creation(gated_reconciler, gated, clock):
    handle = gated_reconciler.start_optimistic_creation("Water", RuleType.PAUSE_ONLY)
    clock.advance(minutes=11)
    assert gated_reconciler.cleanup_expired_states() == 2

    gated.gate.set()
    rule = await handle.result()
    assert gated_reconciler.get_real_rule_id(handle.temporary_id) == rule.id


@pytest.mark.asyncio
async def test_sync_rule_states(reconciler, make_rule):
    rule = await make_rule("Water")
    reconciler.track_rule_state("rule_ghost", RuleStatus.ACTIVE)

    await reconciler.sync_rule_states()
    assert reconciler.get_rule_state(rule.id).status == RuleStatus.ACTIVE
    assert reconciler.get_rule_state("rule_ghost") is None


@pytest.mark.asyncio
async def test_sync_drops_soft_deleted_rules(reconciler, make_rule, store):
    kept = await make_rule("Water")
    gone = await make_rule("Stretch")
    await reconciler.sync_rule_states()
    await store.delete_rule(gone.id)

    await reconciler.sync_rule_states()
    assert reconciler.get_rule_state(kept.id).status == RuleStatus.ACTIVE
    assert reconciler.get_rule_state(gone.id) is None


@pytest.mark.asyncio
async def test_reconcilers_do_not_share_state(store, settings, clock):
    first = StateReconciler(store, settings, clock)
    second = StateReconciler(store, settings, clock)
    handle = first.start_optimistic_creation("Water", RuleType.PAUSE_ONLY)
    await handle.result()

    assert second.snapshot() == {"states": {}, "pending_creations": {}, "id_mappings": {}}
    assert second.get_real_rule_id(handle.temporary_id) is None


@pytest.mark.asyncio
async def test_clear(reconciler):
    await reconciler.start_optimistic_creation("Water", RuleType.PAUSE_ONLY).result()
    reconciler.clear()
    assert reconciler.snapshot() == {"states": {}, "pending_creations": {}, "id_mappings": {}}
