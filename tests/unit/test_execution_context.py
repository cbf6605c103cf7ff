"""Unit tests for execution contexts, snapshots and rollback."""

import pytest

from bulkops.errors import ErrorCategory, ErrorType
from bulkops.queue import RequestQueue
from bulkops.state import (
    FileKeyValueStore,
    InMemoryKeyValueStore,
    InvalidTransitionError,
    OperationStage,
    ResourceDescriptor,
    SnapshotNotFoundError,
    StateError,
    StateManager,
)
from bulkops.state.manager import COMPENSATION_FAILED, NO_COMPENSATOR


async def create_execution_resources(context, keys):
    """Record one ad group per key with a deterministic remote id."""
    for key in keys:
        context.record_resource("ad_group", key, {"remote_id": f"ag-{key}"})


class TestResourceMappings:
    """Test cases for recording resources."""

    @pytest.mark.asyncio
    async def test_record_is_idempotent_per_key(self, context):
        context.record_resource("campaign", "summer", {"remote_id": "c-1"})
        context.record_resource("campaign", "summer", {"remote_id": "c-2"})

        assert context.resource_count == 1
        assert context.get_resource("campaign", "summer").remote_id == "c-2"

    @pytest.mark.asyncio
    async def test_descriptor_forms(self, context):
        """Descriptors, mappings with an id and bare ids are all accepted."""
        context.record_resource("campaign", "a", ResourceDescriptor(kind="x", local_key="y", remote_id="c-a"))
        context.record_resource("campaign", "b", {"id": 42, "name": "B"})
        context.record_resource("campaign", "c", 1234)

        assert context.mapping_view() == {"campaign": {"a": "c-a", "b": "42", "c": "1234"}}
        assert context.get_resource("campaign", "a").kind == "campaign"
        assert context.get_resource("campaign", "b").attributes["name"] == "B"

    @pytest.mark.asyncio
    async def test_resources_in_creation_order(self, context):
        context.record_resource("campaign", "c1", "1")
        context.record_resource("ad_group", "a1", "2")
        context.record_resource("campaign", "c2", "3")

        assert [r.local_key for r in context.resources()] == ["c1", "a1", "c2"]
        assert [r.local_key for r in context.resources("campaign")] == ["c1", "c2"]


class TestStageTransitions:
    """Test cases for stage advancement."""

    @pytest.mark.asyncio
    async def test_opened_in_first_stage(self, context, state_manager):
        assert context.current_stage == "VALIDATION"
        assert context.last_stable_stage is None
        assert await state_manager.store.keys("op-test") == ["op-test:VALIDATION"]

    @pytest.mark.asyncio
    async def test_advance_checkpoints_stage(self, context, state_manager):
        await context.advance_stage(OperationStage.EXECUTION)

        assert context.current_stage == "EXECUTION"
        assert context.last_stable_stage == "EXECUTION"
        assert "op-test:EXECUTION" in await state_manager.store.keys("op-test")
        assert [entry.reason for entry in context.stage_history] == ["start", "advance"]

    @pytest.mark.asyncio
    async def test_skipping_a_stage_is_rejected(self, context):
        with pytest.raises(InvalidTransitionError):
            await context.advance_stage(OperationStage.COMPLETION)
        assert context.current_stage == "VALIDATION"

    @pytest.mark.asyncio
    async def test_moving_backwards_is_rejected(self, context):
        await context.advance_stage("EXECUTION")
        with pytest.raises(InvalidTransitionError):
            await context.advance_stage("VALIDATION")

    @pytest.mark.asyncio
    async def test_terminal_stage_archives(self, context, state_manager):
        await context.advance_stage("EXECUTION")
        context.record_resource("campaign", "c1", "1")
        await context.advance_stage("COMPLETION")

        archived = await state_manager.store.get("op-test:archive")
        assert archived["current_stage"] == "COMPLETION"
        assert len(archived["resources"]) == 1


class TestRollback:
    """Test cases for compensating rollback."""

    @pytest.mark.asyncio
    async def test_compensates_in_reverse_order(self, context, compensations):
        context.record_resource("campaign", "validated", "v-1")
        await context.advance_stage("EXECUTION")
        context.record_resource("campaign", "c1", "c-1")
        context.record_resource("ad_group", "a1", "ag-1")
        context.record_resource("ad_group", "a2", "ag-2")

        report = await context.rollback_to("EXECUTION")

        assert report.ok
        assert compensations == [("ad_group", "a2"), ("ad_group", "a1"), ("campaign", "c1")]
        assert context.mapping_view() == {"campaign": {"validated": "v-1"}}
        assert context.current_stage == "EXECUTION"

    @pytest.mark.asyncio
    async def test_rollback_to_earlier_stage_regresses(self, context, compensations):
        await context.advance_stage("EXECUTION")
        context.record_resource("campaign", "c1", "c-1")
        await context.advance_stage("COMPLETION")
        context.record_resource("keyword", "k1", "k-1")

        await context.rollback_to("EXECUTION")

        assert context.current_stage == "EXECUTION"
        assert compensations == [("keyword", "k1"), ("campaign", "c1")]
        assert context.stage_history[-1].reason == "rollback"
        assert context.resource_count == 0

    @pytest.mark.asyncio
    async def test_failed_compensation_keeps_entry(self, context):
        async def broken(local_key, descriptor):
            raise RuntimeError("remote delete refused")

        context.state_manager.register_compensator("ad_group", broken)
        await context.advance_stage("EXECUTION")
        context.record_resource("campaign", "c1", "c-1")
        context.record_resource("ad_group", "a1", "ag-1")

        report = await context.rollback_to("EXECUTION")

        assert not report.ok
        assert context.mapping_view() == {"ad_group": {"a1": "ag-1"}}
        assert [r.local_key for r in report.compensated] == ["c1"]

        error = context.errors[-1]
        assert error.code == COMPENSATION_FAILED
        assert error.error_type == ErrorType.SYSTEM
        assert error.category == ErrorCategory.SYSTEM
        assert error.context.resource_id == "a1"
        assert isinstance(error.cause, RuntimeError)

    @pytest.mark.asyncio
    async def test_missing_compensator_recorded(self, state_manager):
        context = await state_manager.open_context(operation_id="op-nocomp")
        await context.advance_stage("EXECUTION")
        context.record_resource("budget", "b1", "b-1")

        report = await context.rollback_to("EXECUTION")

        assert report.failed[0].code == NO_COMPENSATOR
        assert context.get_resource("budget", "b1") is not None

    @pytest.mark.asyncio
    async def test_rollback_forward_is_rejected(self, context):
        with pytest.raises(StateError):
            await context.rollback_to("COMPLETION")
        with pytest.raises(StateError):
            await context.rollback_to("PUBLISH")

    @pytest.mark.asyncio
    async def test_compensation_through_queue(self, fast_queue_config, compensations):
        queue = RequestQueue(fast_queue_config)

        async def undo(local_key, descriptor):
            compensations.append(local_key)

        manager = StateManager(compensators={"campaign": undo}, queue=queue)
        context = await manager.open_context()
        await context.advance_stage("EXECUTION")
        context.record_resource("campaign", "c1", "c-1")
        context.record_resource("campaign", "c2", "c-2")

        report = await context.rollback_to("EXECUTION")
        await queue.close()

        assert report.ok
        assert compensations == ["c2", "c1"]

    @pytest.mark.asyncio
    async def test_rerun_after_rollback_matches_fresh_run(self, state_manager):
        """Rollback followed by a re-run ends with the mappings of a clean run."""
        fresh = await state_manager.open_context(operation_id="op-fresh")
        await fresh.advance_stage("EXECUTION")
        await create_execution_resources(fresh, ["a", "b", "c"])

        rerun = await state_manager.open_context(operation_id="op-rerun")
        await rerun.advance_stage("EXECUTION")
        await create_execution_resources(rerun, ["a", "b"])
        await rerun.rollback_to("EXECUTION")
        await create_execution_resources(rerun, ["a", "b", "c"])

        assert rerun.mapping_view() == fresh.mapping_view()
        assert rerun.current_stage == fresh.current_stage


class TestRestoreState:
    """Test cases for snapshot restore."""

    @pytest.mark.asyncio
    async def test_restore_reloads_latest_stage_snapshot(self, context, compensations):
        await context.advance_stage("EXECUTION")
        context.record_resource("campaign", "kept", "c-1")
        await context.checkpoint()
        context.add_warning("Budget near limit")

        await context.restore_state("EXECUTION")

        assert context.mapping_view() == {"campaign": {"kept": "c-1"}}
        assert context.warnings == ["Budget near limit"]
        assert context.stage_history[-1].reason == "restore"
        assert compensations == []

    @pytest.mark.asyncio
    async def test_restore_keeps_resources_recorded_after_snapshot(self, context, compensations):
        """Restoring never drops a mapping; later rollback still undoes it."""
        await context.advance_stage("EXECUTION")
        context.record_resource("campaign", "kept", "c-1")
        await context.checkpoint()
        context.record_resource("campaign", "unsaved", "c-2")

        await context.restore_state("EXECUTION")

        assert context.mapping_view() == {"campaign": {"kept": "c-1", "unsaved": "c-2"}}
        assert compensations == []

        await context.rollback_to("EXECUTION")
        assert compensations == [("campaign", "unsaved"), ("campaign", "kept")]

    @pytest.mark.asyncio
    async def test_sequence_continues_after_restore(self, context):
        await context.advance_stage("EXECUTION")
        context.record_resource("campaign", "a", "1")
        await context.checkpoint()
        context.record_resource("campaign", "b", "2")

        await context.restore_state("EXECUTION")
        record = context.record_resource("campaign", "c", "3")

        assert record.sequence == 3

    @pytest.mark.asyncio
    async def test_restore_unknown_stage(self, context):
        with pytest.raises(SnapshotNotFoundError):
            await context.restore_state("COMPLETION")


class TestFileKeyValueStore:
    """Test cases for the JSON file snapshot store."""

    @pytest.mark.asyncio
    async def test_put_get_keys_delete(self, tmp_path):
        store = FileKeyValueStore(tmp_path / "snapshots")

        await store.put("op-1:EXECUTION", {"resources": [1, 2]})
        await store.put("op-1:archive", {"resources": []})
        await store.put("op-2:VALIDATION", {"resources": []})

        assert await store.get("op-1:EXECUTION") == {"resources": [1, 2]}
        assert await store.keys("op-1") == ["op-1:EXECUTION", "op-1:archive"]
        assert await store.delete("op-1:archive") is True
        assert await store.delete("op-1:archive") is False
        assert await store.get("missing") is None

    @pytest.mark.asyncio
    async def test_context_restored_from_files(self, tmp_path):
        """Snapshots written by one manager are restored by another."""
        first = StateManager(store=FileKeyValueStore(tmp_path))
        context = await first.open_context(operation_id="op-file")
        await context.advance_stage("EXECUTION")
        context.record_resource("campaign", "c1", {"remote_id": "c-1", "budget": 50})
        await context.checkpoint()

        second = StateManager(store=FileKeyValueStore(tmp_path))
        restored = await second.open_context(operation_id="op-file")
        await restored.restore_state("EXECUTION")

        assert restored.current_stage == "EXECUTION"
        assert restored.mapping_view() == {"campaign": {"c1": "c-1"}}
        assert restored.get_resource("campaign", "c1").attributes == {"budget": 50}

    @pytest.mark.asyncio
    async def test_in_memory_store_copies_values(self):
        store = InMemoryKeyValueStore()
        value = {"resources": []}
        await store.put("k", value)
        value["resources"].append("mutated")

        assert await store.get("k") == {"resources": []}
