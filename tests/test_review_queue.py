import asyncio

from reviewdesk.core.models import EntityKind, EntityRef, Role, Scope
from reviewdesk.services.errors import TransientNetworkError
from reviewdesk.services.review_queue import (
    ReviewNavigator,
    ReviewQueue,
    _pending_layout,
    advance,
    filter_pending,
    pending_status_for_role,
    position_of,
)


def _ref(ref_id, status="pending_ca_approval", kind=EntityKind.INVOICE, deleted=False):
    return EntityRef(id=ref_id, kind=kind, status=status, is_deleted=deleted)


class TestQueueFunctions:
    def test_pending_status_depends_on_role(self):
        assert pending_status_for_role(Role.CA_ACCOUNTANT) == "pending_ca_approval"
        assert pending_status_for_role(Role.CA_TEAM) == "pending_ca_approval"
        assert pending_status_for_role(Role.CLIENT_MASTER_ADMIN) == "pending_master_admin_approval"
        assert pending_status_for_role(Role.CLIENT_USER) is None

    def test_filter_keeps_role_status_and_drops_deleted(self):
        items = [
            _ref("1"),
            _ref("2", status="pending_master_admin_approval"),
            _ref("3", deleted=True),
            _ref("4"),
        ]

        assert [r.id for r in filter_pending(items, Role.CA_TEAM)] == ["1", "4"]
        assert [r.id for r in filter_pending(items, Role.CLIENT_MASTER_ADMIN)] == ["2"]

    def test_position_compares_ids_as_strings(self):
        items = [_ref("10"), _ref("11")]
        assert position_of(items, 11) == 1
        assert position_of(items, "12") == -1
        assert position_of(items, None) == -1

    def test_advance_uses_pre_action_index(self):
        items = [_ref("A"), _ref("B"), _ref("C")]
        index = position_of(items, "B")

        assert advance(items, index).id == "C"
        assert advance(items, 2) is None
        assert advance(items, -1) is None
        assert advance(items, 1, step=-1).id == "A"


class TestReviewQueue:
    def test_build_filters_and_locates_current(self):
        queue = ReviewQueue.build([_ref("1"), _ref("2", status="verified"), _ref("3")], Role.CA_ACCOUNTANT, "3")

        assert [r.id for r in queue.items] == ["1", "3"]
        assert queue.current_index == 1
        assert queue.has_navigation
        assert queue.neighbour(-1).id == "1"
        assert queue.neighbour(1) is None

    def test_single_item_has_no_navigation(self):
        queue = ReviewQueue.build([_ref("1")], Role.CA_ACCOUNTANT, "1")
        assert not queue.has_navigation

    def test_build_is_memoized_on_list_signature(self):
        items = [_ref("m1"), _ref("m2")]
        ReviewQueue.build(items, Role.CA_TEAM, "m1")
        hits = _pending_layout.cache_info().hits

        ReviewQueue.build(list(items), Role.CA_TEAM, "m1")

        assert _pending_layout.cache_info().hits == hits + 1

    def test_open_work_items_are_reviewable_for_anyone(self):
        items = [
            _ref("t1", status="open", kind=EntityKind.TASK),
            _ref("t2", status="closed", kind=EntityKind.TASK),
            _ref("t3", status="closure_requested", kind=EntityKind.TASK),
        ]
        queue = ReviewQueue.build(items, Role.CLIENT_USER, "t1")
        assert [r.id for r in queue.items] == ["t1", "t3"]


class TestNavigator:
    def test_next_item_comes_from_pre_action_queue(self, backend, scope):
        for inv in ("A", "B", "C"):
            backend.add(EntityKind.INVOICE, inv, "pending_ca_approval")
        navigator = ReviewNavigator(backend)
        queue = asyncio.run(navigator.queue_for(EntityKind.INVOICE, scope, Role.CA_ACCOUNTANT, "B"))
        backend.entities[(EntityKind.INVOICE, "B")]["status"] = "verified"

        target = asyncio.run(navigator.next_after_action(EntityKind.INVOICE, queue, "B", Role.CA_ACCOUNTANT, scope))

        assert target.ref.id == "C"
        assert not target.is_fallback

    def test_exhausted_invoices_fall_back_to_vouchers(self, backend, scope):
        backend.add(EntityKind.INVOICE, "inv1", "pending_ca_approval")
        backend.add(EntityKind.VOUCHER, "v1", "pending_ca_approval")
        navigator = ReviewNavigator(backend)
        queue = asyncio.run(navigator.queue_for(EntityKind.INVOICE, scope, Role.CA_ACCOUNTANT, "inv1"))
        backend.entities[(EntityKind.INVOICE, "inv1")]["status"] = "verified"

        target = asyncio.run(navigator.next_after_action(EntityKind.INVOICE, queue, "inv1", Role.CA_ACCOUNTANT, scope))

        assert target.kind == EntityKind.VOUCHER
        assert target.ref.id == "v1"
        assert target.is_fallback
        assert not target.all_done

    def test_both_queues_empty_is_all_done(self, backend, scope):
        backend.add(EntityKind.INVOICE, "inv1", "verified")
        backend.add(EntityKind.VOUCHER, "v1", "verified")
        navigator = ReviewNavigator(backend)
        queue = ReviewQueue.build([_ref("inv1")], Role.CA_ACCOUNTANT, "inv1")

        target = asyncio.run(navigator.next_after_action(EntityKind.INVOICE, queue, "inv1", Role.CA_ACCOUNTANT, scope))

        assert target.all_done
        assert target.ref is None

    def test_vouchers_fall_back_to_invoices(self, backend, scope):
        backend.add(EntityKind.INVOICE, "inv9", "pending_master_admin_approval")
        navigator = ReviewNavigator(backend)
        queue = ReviewQueue.build(
            [_ref("v1", status="pending_master_admin_approval", kind=EntityKind.VOUCHER)],
            Role.CLIENT_MASTER_ADMIN,
            "v1",
        )

        target = asyncio.run(
            navigator.next_after_action(EntityKind.VOUCHER, queue, "v1", Role.CLIENT_MASTER_ADMIN, scope)
        )

        assert target.kind == EntityKind.INVOICE
        assert target.ref.id == "inv9"

    def test_missing_current_rebuilds_from_fresh_list(self, backend, scope):
        backend.add(EntityKind.INVOICE, "A", "pending_ca_approval")
        backend.add(EntityKind.INVOICE, "D", "pending_ca_approval")
        navigator = ReviewNavigator(backend)
        stale_queue = ReviewQueue.build([_ref("X"), _ref("Y")], Role.CA_ACCOUNTANT, "A")

        target = asyncio.run(navigator.next_after_action(EntityKind.INVOICE, stale_queue, "A", Role.CA_ACCOUNTANT, scope))

        assert target.ref.id == "D"
        assert backend.calls["fetch_sibling_list"] == 1

    def test_failed_fallback_fetch_is_treated_as_empty(self, backend, scope):
        backend.fail("fetch_sibling_list", TransientNetworkError("list_vouchers", "down"))
        navigator = ReviewNavigator(backend)
        queue = ReviewQueue.build([_ref("inv1")], Role.CA_ACCOUNTANT, "inv1")

        target = asyncio.run(navigator.next_after_action(EntityKind.INVOICE, queue, "inv1", Role.CA_ACCOUNTANT, scope))

        assert target.all_done

    def test_all_scope_merges_entities_newest_first(self, backend):
        backend.add(EntityKind.INVOICE, "old", "pending_ca_approval", scope_entity="e1", created_date="2026-01-01")
        backend.add(EntityKind.INVOICE, "new", "pending_ca_approval", scope_entity="e2", created_date="2026-03-01")
        backend.add(EntityKind.INVOICE, "mid", "pending_ca_approval", scope_entity="e1", created_date="2026-02-01")
        navigator = ReviewNavigator(backend)
        scope = Scope(entity_id="all", entity_ids=("e1", "e2"))

        refs = asyncio.run(navigator.sibling_refs(EntityKind.INVOICE, scope, Role.CA_TEAM))

        assert [r.id for r in refs] == ["new", "mid", "old"]
        assert backend.calls["fetch_sibling_list"] == 2

    def test_sibling_lists_are_cached_until_invalidated(self, backend, scope):
        backend.add(EntityKind.INVOICE, "A", "pending_ca_approval")
        navigator = ReviewNavigator(backend)

        asyncio.run(navigator.sibling_refs(EntityKind.INVOICE, scope, Role.CA_TEAM))
        asyncio.run(navigator.sibling_refs(EntityKind.INVOICE, scope, Role.CA_TEAM))
        assert backend.calls["fetch_sibling_list"] == 1

        navigator.invalidate()
        asyncio.run(navigator.sibling_refs(EntityKind.INVOICE, scope, Role.CA_TEAM))
        assert backend.calls["fetch_sibling_list"] == 2
