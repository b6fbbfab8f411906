"""
View-Model Tests

TEST CATEGORIES:
================
1. Reads        - load, lookups and tree helpers
2. Create       - temporary id, confirmation re-key, rollback removal
3. Edit/Delete  - partial snapshots and tombstones
4. Upvote       - paired fields move together and roll back together
5. Races        - overlapping mutations each restore their own snapshot
6. Validation   - rejected before anything changes
7. Events       - optimistic strictly before confirmed/reverted
"""

import asyncio

import pytest

from commentview import (
    AttachmentRecord, AuditEventType, CommentViewModel, ErrorCode, EventPhase,
    GatewayResponse, MockGateway, MutationOutcome, SortMode, ValidationError,
    ViewModelEvent,
)

from .fixtures import (
    CURRENT_USER, NOW, EventRecorder, make_context, make_viewmodel,
    thread_records, wire,
)


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def gateway():
    return MockGateway(id_prefix="s")


@pytest.fixture
def vm(gateway):
    return make_viewmodel(gateway=gateway, records=thread_records())


# =============================================================================
# READS
# =============================================================================

class TestReads:

    def test_load_builds_the_tree(self, vm):
        assert vm.get_comment("c1").child_ids == ("c2",)
        assert vm.get_comment("c2").child_ids == ("c4",)
        assert len(vm.get_comments()) == 4

    def test_load_orders_by_creation_time(self, gateway):
        records = list(reversed(thread_records()))

        vm = make_viewmodel(gateway=gateway, records=records)

        assert [r.id for r in vm.get_comments()] == ["c1", "c2", "c3", "c4"]

    def test_top_level_comments_use_default_sort(self, vm):
        assert [r.id for r in vm.top_level_comments()] == ["c3", "c1"]
        assert [r.id for r in vm.top_level_comments(SortMode.OLDEST)] == ["c1", "c3"]

    def test_popularity_counts_replies_and_upvotes(self, vm):
        # c1: 1 reply + 1 upvote, c3: 0 replies + 4 upvotes
        assert [r.id for r in vm.top_level_comments(SortMode.POPULARITY)] == ["c3", "c1"]

    def test_replies_are_flattened_in_arrival_order(self, vm):
        assert [r.id for r in vm.replies("c1")] == ["c2", "c4"]
        assert vm.replies("c3") == []
        assert vm.replies("missing") == []

    def test_reply_to_names_a_parent_reply(self, vm):
        assert vm.reply_to("c4").id == "c2"
        assert vm.reply_to("c2") is None
        assert vm.reply_to("c1") is None

    def test_comments_with_attachments(self, gateway):
        files = [{"mime_type": "image/png", "file": "https://f/a.png"}]
        vm = make_viewmodel(gateway=gateway, records=[
            wire("c1", created=NOW.replace(hour=1), attachments=files),
            wire("c2", created=NOW.replace(hour=2), attachments=files),
            wire("c3", created=NOW.replace(hour=3), attachments=files, is_deleted=True),
            wire("c4", created=NOW.replace(hour=4)),
        ])

        assert [r.id for r in vm.comments_with_attachments()] == ["c2", "c1"]

    def test_load_is_audited(self, vm):
        entries = vm.observer.audit.get_entries(event_type=AuditEventType.SYSTEM, action="loaded")

        assert dict(entries[0].metadata) == {"count": "4"}


# =============================================================================
# CREATE
# =============================================================================

class TestCreate:

    def test_create_is_visible_before_confirmation(self, vm):
        async def scenario():
            pending = vm.create_comment("first!")
            optimistic = vm.get_comment(pending.comment_id)
            result = await pending
            return pending, optimistic, result

        pending, optimistic, result = run(scenario())

        assert pending.comment_id == "tmp_1"
        assert optimistic.content == "first!"
        assert optimistic.creator_user_id == CURRENT_USER
        assert optimistic.created_at == NOW
        assert optimistic.is_new
        assert optimistic.created_by_current_user
        assert result.confirmed
        assert result.comment_id == "s1"
        assert result.previous_id == "tmp_1"

    def test_confirmation_rekeys_temporary_id(self, vm):
        async def scenario():
            await vm.create_comment("reply", parent_id="c3")

        run(scenario())

        assert "tmp_1" not in vm.store
        assert vm.get_comment("s1").parent_id == "c3"
        assert vm.get_comment("c3").child_ids == ("s1",)
        # the temporary id keeps resolving
        assert vm.get_comment("tmp_1").id == "s1"
        assert vm.canonical_id("tmp_1") == "s1"

    def test_confirmed_event_carries_previous_id(self, vm):
        recorder = EventRecorder()
        vm.subscribe(ViewModelEvent.COMMENT_ADDED, recorder)

        async def scenario():
            await vm.create_comment("hello there")

        run(scenario())

        assert recorder.phases() == [EventPhase.OPTIMISTIC, EventPhase.CONFIRMED]
        assert recorder.ids() == ["tmp_1", "s1"]
        assert recorder.events[1].previous_id == "tmp_1"

    def test_reply_refreshes_parent_action_bar(self, vm):
        recorder = EventRecorder()
        vm.subscribe(ViewModelEvent.ACTION_BAR_REFRESH, recorder)

        async def scenario():
            await vm.create_comment("reply", parent_id="c3")

        run(scenario())

        assert recorder.ids() == ["c3"]
        assert recorder.events[0].record is None

    def test_failed_create_removes_the_comment(self, vm, gateway):
        gateway.fail_next()
        added = EventRecorder()
        refresh = EventRecorder()
        vm.subscribe(ViewModelEvent.COMMENT_ADDED, added)
        vm.subscribe(ViewModelEvent.ACTION_BAR_REFRESH, refresh)

        async def scenario():
            return await vm.create_comment("doomed", parent_id="c3")

        result = run(scenario())

        assert result.outcome == MutationOutcome.ROLLED_BACK
        assert result.error.code == ErrorCode.GATEWAY_REJECTED
        assert "tmp_1" not in vm.store
        assert vm.get_comment("c3").child_ids == ()
        assert added.phases() == [EventPhase.OPTIMISTIC, EventPhase.REVERTED]
        assert added.events[1].record is None
        assert added.events[1].is_error
        assert refresh.phases() == [EventPhase.OPTIMISTIC, EventPhase.REVERTED]

    def test_reply_to_unconfirmed_parent_rejected(self, vm, gateway):
        gateway.fail_next()

        async def scenario():
            parent = vm.create_comment("parent")
            with pytest.raises(ValidationError) as excinfo:
                vm.create_comment("reply", parent_id=parent.comment_id)
            await vm.drain()
            return excinfo.value

        error = run(scenario())

        assert error.code == ErrorCode.PARENT_NOT_CONFIRMED
        assert gateway.operations() == ["create"]
        # the failed parent leaves nothing behind pointing at it
        assert "tmp_1" not in vm.store
        assert all(r.parent_id != "tmp_1" for r in vm.get_comments())
        assert len(vm.store) == 4

    def test_reply_to_confirmed_temporary_id(self, vm):
        async def scenario():
            parent = vm.create_comment("parent")
            await parent
            return await vm.create_comment("reply", parent_id=parent.comment_id)

        result = run(scenario())

        assert result.confirmed
        assert result.record.parent_id == "s1"
        assert vm.get_comment("s1").child_ids == (result.comment_id,)

    def test_server_id_collision_rolls_back(self):
        vm = make_viewmodel(gateway=MockGateway(id_prefix="c"), records=thread_records())

        async def scenario():
            return await vm.create_comment("collides with c1")

        result = run(scenario())

        assert result.error.code == ErrorCode.INVALID_RESPONSE
        assert "tmp_1" not in vm.store
        assert len(vm.store) == 4

    def test_attachment_only_comment(self, gateway):
        vm = make_viewmodel(gateway=gateway, enable_attachments=True)
        image = AttachmentRecord(url="https://f/a.png", mime_type="image/png")

        async def scenario():
            return await vm.create_comment("", attachments=[image, image])

        result = run(scenario())

        assert result.record.attachments == (image,)
        assert gateway.calls[0][1]["attachments"] == [
            {"mime_type": "image/png", "file": "https://f/a.png"},
        ]

    def test_payload_uses_wire_names(self, vm, gateway):
        async def scenario():
            await vm.create_comment("hi @bob", parent_id="c1", pings=["u_bob"])

        run(scenario())

        operation, payload = gateway.calls[0]
        assert operation == "create"
        assert payload["parent"] == "c1"
        assert payload["creator"] == CURRENT_USER
        assert payload["pings"] == ["u_bob"]
        assert "created_by_current_user" not in payload


# =============================================================================
# EDIT AND DELETE
# =============================================================================

class TestEdit:

    def test_edit_confirms(self, vm):
        async def scenario():
            return await vm.edit_comment("c1", "edited")

        result = run(scenario())

        assert result.confirmed
        assert vm.get_comment("c1").content == "edited"
        assert vm.get_comment("c1").modified_at == NOW

    def test_failed_edit_restores_content(self, vm, gateway):
        gateway.fail_next(ErrorCode.HTTP_ERROR)

        async def scenario():
            return await vm.edit_comment("c1", "edited")

        result = run(scenario())

        assert result.error.code == ErrorCode.HTTP_ERROR
        assert vm.get_comment("c1").content == "hello"
        assert vm.get_comment("c1").modified_at is None

    def test_edit_keeps_parent(self, vm):
        async def scenario():
            await vm.edit_comment("c4", "still a reply")

        run(scenario())

        assert vm.get_comment("c4").parent_id == "c2"
        assert vm.get_comment("c2").child_ids == ("c4",)


class TestDelete:

    def test_delete_leaves_child_ids_untouched(self, gateway):
        vm = make_viewmodel(
            gateway=gateway, records=thread_records(),
            enable_deleting_comment_with_replies=True,
        )

        async def scenario():
            return await vm.delete_comment("c1")

        result = run(scenario())

        assert result.confirmed
        assert vm.get_comment("c1").is_deleted
        assert vm.get_comment("c1").child_ids == ("c2",)
        assert vm.get_comment("c2").parent_id == "c1"

    def test_delete_reply_keeps_parent_child_ids(self, vm):
        async def scenario():
            await vm.delete_comment("c4")

        run(scenario())

        assert vm.get_comment("c4").is_deleted
        assert vm.get_comment("c2").child_ids == ("c4",)

    def test_delete_refreshes_parent_eligibility(self, gateway):
        vm = make_viewmodel(gateway=gateway, records=thread_records(), current_user_is_admin=True)
        refresh = EventRecorder()
        vm.subscribe(ViewModelEvent.ACTION_BAR_REFRESH, refresh)
        assert not vm.permitted_actions("c2").delete

        async def scenario():
            await vm.delete_comment("c4")

        run(scenario())

        assert refresh.ids() == ["c2"]
        assert vm.permitted_actions("c2").delete

    def test_failed_delete_restores_flag(self, vm, gateway):
        gateway.fail_next()
        refresh = EventRecorder()
        vm.subscribe(ViewModelEvent.ACTION_BAR_REFRESH, refresh)

        async def scenario():
            return await vm.delete_comment("c4")

        result = run(scenario())

        assert not result.confirmed
        assert not vm.get_comment("c4").is_deleted
        assert refresh.phases() == [EventPhase.OPTIMISTIC, EventPhase.REVERTED]


# =============================================================================
# UPVOTE
# =============================================================================

class TestUpvote:

    def test_toggle_twice_restores_original(self, vm):
        async def scenario():
            await vm.toggle_upvote("c3")
            middle = vm.get_comment("c3")
            await vm.toggle_upvote("c3")
            return middle

        middle = run(scenario())

        assert (middle.upvote_count, middle.user_has_upvoted) == (3, False)
        final = vm.get_comment("c3")
        assert (final.upvote_count, final.user_has_upvoted) == (4, True)

    def test_failed_toggle_restores_pair(self, vm, gateway):
        gateway.fail_next(ErrorCode.TRANSPORT_ERROR)

        async def scenario():
            pending = vm.toggle_upvote("c1")
            optimistic = vm.get_comment("c1")
            return optimistic, await pending

        optimistic, result = run(scenario())

        assert (optimistic.upvote_count, optimistic.user_has_upvoted) == (2, True)
        restored = vm.get_comment("c1")
        assert (restored.upvote_count, restored.user_has_upvoted) == (1, False)
        assert result.error.code == ErrorCode.TRANSPORT_ERROR

    def test_revoke_never_goes_negative(self, gateway):
        vm = make_viewmodel(gateway=gateway, records=[wire("c1", user_has_upvoted=True)])

        async def scenario():
            await vm.toggle_upvote("c1")

        run(scenario())

        assert vm.get_comment("c1").upvote_count == 0
        assert not vm.get_comment("c1").user_has_upvoted

    def test_rollback_metric_recorded(self, vm, gateway):
        gateway.fail_next()

        async def scenario():
            await vm.toggle_upvote("c1")

        run(scenario())

        metrics = vm.observer.metrics
        assert metrics.total("mutations_total", {"kind": "upvote"}) == 1
        assert metrics.total("rollbacks_total", {"kind": "upvote"}) == 1
        assert metrics.compute_aggregates("gateway_latency_ms")["count"] == 1


# =============================================================================
# RACES
# =============================================================================

class TestOverlappingMutations:

    def test_edit_rollback_keeps_concurrent_upvote(self, vm, gateway):
        gateway.fail_next()
        gateway.queue_response(GatewayResponse.ok(
            {"id": "c1", "upvote_count": 2, "user_has_upvoted": True}
        ))

        async def scenario():
            gateway.hold()
            edit = vm.edit_comment("c1", "edited")
            upvote = vm.toggle_upvote("c1")
            await asyncio.sleep(0)
            gateway.release()
            return await edit, await upvote

        edit, upvote = run(scenario())

        assert not edit.confirmed
        assert upvote.confirmed
        record = vm.get_comment("c1")
        assert record.content == "hello"
        assert (record.upvote_count, record.user_has_upvoted) == (2, True)

    def test_upvote_rollback_keeps_concurrent_edit(self, vm, gateway):
        gateway.queue_response(GatewayResponse.ok({"id": "c1", "content": "edited"}))
        gateway.fail_next()

        async def scenario():
            edit = vm.edit_comment("c1", "edited")
            upvote = vm.toggle_upvote("c1")
            await vm.drain()
            return edit.result(), upvote.result()

        edit, upvote = run(scenario())

        assert edit.confirmed
        assert not upvote.confirmed
        record = vm.get_comment("c1")
        assert record.content == "edited"
        assert (record.upvote_count, record.user_has_upvoted) == (1, False)

    def test_edit_of_temporary_id_lands_on_canonical_id(self, vm):
        async def scenario():
            create = vm.create_comment("draft")
            edit = vm.edit_comment(create.comment_id, "final")
            await vm.drain()
            return edit.result()

        result = run(scenario())

        assert result.confirmed
        assert result.comment_id == "s1"
        assert vm.get_comment("s1").content == "final"
        assert "tmp_1" not in vm.store

    def test_mutation_of_rolled_back_create_is_noop(self, vm, gateway):
        gateway.fail_next()

        async def scenario():
            create = vm.create_comment("draft")
            edit = vm.edit_comment(create.comment_id, "final")
            await vm.drain()
            return edit.result()

        result = run(scenario())

        assert result.record is None
        assert "tmp_1" not in vm.store
        assert vm.observer.audit.get_entries(action="skipped", entity_id="tmp_1")

    def test_drain_waits_for_everything(self, vm):
        async def scenario():
            vm.toggle_upvote("c1")
            vm.toggle_upvote("c3")
            vm.create_comment("new")
            in_flight = vm.in_flight
            await vm.drain()
            return in_flight

        assert run(scenario()) == 3
        assert vm.in_flight == 0


# =============================================================================
# VALIDATION AND CONSISTENCY
# =============================================================================

class TestValidation:

    def expect_rejection(self, vm, gateway, code, mutate):
        before = vm.get_comments()

        async def scenario():
            with pytest.raises(ValidationError) as excinfo:
                mutate()
            return excinfo.value

        error = run(scenario())

        assert error.code == code
        assert vm.get_comments() == before
        assert gateway.calls == []
        assert vm.observer.audit.get_entries(action="rejected")

    def test_empty_content(self, vm, gateway):
        self.expect_rejection(vm, gateway, ErrorCode.EMPTY_CONTENT,
                              lambda: vm.create_comment("   "))

    def test_missing_parent(self, vm, gateway):
        self.expect_rejection(vm, gateway, ErrorCode.PARENT_NOT_FOUND,
                              lambda: vm.create_comment("hi", parent_id="nope"))

    def test_attachments_disabled(self, vm, gateway):
        image = AttachmentRecord(url="https://f/a.png", mime_type="image/png")
        self.expect_rejection(vm, gateway, ErrorCode.FEATURE_DISABLED,
                              lambda: vm.create_comment("hi", attachments=[image]))

    def test_edit_someone_elses_comment(self, vm, gateway):
        self.expect_rejection(vm, gateway, ErrorCode.NOT_PERMITTED,
                              lambda: vm.edit_comment("c3", "mine now"))

    def test_delete_with_live_replies(self, vm, gateway):
        self.expect_rejection(vm, gateway, ErrorCode.NOT_PERMITTED,
                              lambda: vm.delete_comment("c1"))

    def test_reply_to_deleted_comment(self, gateway):
        vm = make_viewmodel(gateway=gateway, records=[wire("c1", is_deleted=True)])
        self.expect_rejection(vm, gateway, ErrorCode.NOT_PERMITTED,
                              lambda: vm.create_comment("hi", parent_id="c1"))

    def test_replying_disabled(self, gateway):
        vm = make_viewmodel(gateway=gateway, records=thread_records(), enable_replying=False)
        self.expect_rejection(vm, gateway, ErrorCode.FEATURE_DISABLED,
                              lambda: vm.create_comment("hi", parent_id="c1"))

    def test_mutation_requires_running_loop(self, vm):
        with pytest.raises(RuntimeError):
            vm.toggle_upvote("c1")


class TestConsistency:

    def test_unknown_id_is_silent_noop(self, vm, gateway):
        async def scenario():
            return (
                vm.edit_comment("missing", "x"),
                vm.delete_comment("missing"),
                vm.toggle_upvote("missing"),
            )

        assert run(scenario()) == (None, None, None)
        assert gateway.calls == []
        assert len(vm.observer.audit.get_entries(action="skipped", entity_id="missing")) == 3

    def test_tombstoned_target_is_silent_noop(self, gateway):
        vm = make_viewmodel(gateway=gateway, records=[wire("c1", is_deleted=True)])
        before = vm.get_comment("c1")

        async def scenario():
            return (
                vm.edit_comment("c1", "x"),
                vm.delete_comment("c1"),
                vm.toggle_upvote("c1"),
            )

        assert run(scenario()) == (None, None, None)
        assert gateway.calls == []
        assert vm.get_comment("c1") == before
        skipped = vm.observer.audit.get_entries(action="skipped", entity_id="c1")
        assert [dict(e.metadata)["code"] for e in skipped] == ["already_deleted"] * 3

    def test_click_racing_a_delete_is_ignored(self, vm, gateway):
        async def scenario():
            delete = vm.delete_comment("c4")
            upvote = vm.toggle_upvote("c4")
            await delete
            return upvote

        assert run(scenario()) is None
        assert gateway.operations() == ["delete"]
        assert vm.get_comment("c4").upvote_count == 0


# =============================================================================
# GATEWAY FAILURE SHAPES
# =============================================================================

class RaisingGateway(MockGateway):

    async def submit_update(self, payload):
        raise ConnectionError("socket closed")


class ListGateway(MockGateway):

    async def submit_update(self, payload):
        return [payload]


class TestGatewayFailures:

    def test_raised_exception_becomes_rollback(self):
        vm = CommentViewModel(gateway=RaisingGateway(), context=make_context())
        vm.load(thread_records())

        async def scenario():
            return await vm.edit_comment("c1", "edited")

        result = run(scenario())

        assert result.error.code == ErrorCode.GATEWAY_EXCEPTION
        assert "socket closed" in result.error.message
        assert vm.get_comment("c1").content == "hello"

    def test_wrong_return_type_becomes_rollback(self):
        vm = CommentViewModel(gateway=ListGateway(), context=make_context())
        vm.load(thread_records())

        async def scenario():
            return await vm.edit_comment("c1", "edited")

        result = run(scenario())

        assert result.error.code == ErrorCode.INVALID_RESPONSE
        assert vm.get_comment("c1").content == "hello"

    def test_unusable_server_record_becomes_rollback(self, vm, gateway):
        gateway.queue_response(GatewayResponse.ok({"id": "c1", "created": "not a date"}))

        async def scenario():
            return await vm.edit_comment("c1", "edited")

        result = run(scenario())

        assert result.error.code == ErrorCode.INVALID_RESPONSE
        assert vm.get_comment("c1").content == "hello"

    @pytest.mark.parametrize("server_record", [
        {"id": "c1", "created": 10 ** 20},
        {"id": "c1", "upvote_count": float("inf")},
        ["c1"],
    ])
    def test_malformed_server_record_rolls_back(self, vm, gateway, server_record):
        gateway.queue_response(GatewayResponse(success=True, record=server_record))
        recorder = EventRecorder()
        vm.subscribe(ViewModelEvent.COMMENT_UPDATED, recorder)

        async def scenario():
            return await vm.toggle_upvote("c1")

        result = run(scenario())

        assert result.error.code == ErrorCode.INVALID_RESPONSE
        assert recorder.phases() == [EventPhase.OPTIMISTIC, EventPhase.REVERTED]
        record = vm.get_comment("c1")
        assert (record.upvote_count, record.user_has_upvoted) == (1, False)


# =============================================================================
# EVENTS
# =============================================================================

class TestEvents:

    def test_optimistic_precedes_completion(self, vm):
        recorder = EventRecorder()
        vm.subscribe(ViewModelEvent.COMMENT_UPDATED, recorder)

        async def scenario():
            pending = vm.toggle_upvote("c1")
            seen = recorder.phases()
            await pending
            return seen

        seen_before_await = run(scenario())

        assert seen_before_await == [EventPhase.OPTIMISTIC]
        assert recorder.phases() == [EventPhase.OPTIMISTIC, EventPhase.CONFIRMED]

    def test_failing_handler_is_isolated(self, vm):
        recorder = EventRecorder()

        def broken(event):
            raise RuntimeError("render failed")

        vm.subscribe(ViewModelEvent.COMMENT_ADDED, broken)
        vm.subscribe(ViewModelEvent.COMMENT_ADDED, recorder)

        async def scenario():
            return await vm.create_comment("still works")

        result = run(scenario())

        assert result.confirmed
        assert len(recorder.events) == 2
        failures = vm.observer.audit.get_entries(
            event_type=AuditEventType.ERROR, action="handler_failed"
        )
        assert len(failures) == 2

    def test_unsubscribe_stops_delivery(self, vm):
        recorder = EventRecorder()
        subscription = vm.subscribe(ViewModelEvent.COMMENT_DELETED, recorder)
        subscription.unsubscribe()

        async def scenario():
            await vm.delete_comment("c4")

        run(scenario())

        assert recorder.events == []
