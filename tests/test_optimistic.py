import pytest

from reviewdesk.services.api_cache import ApiCache
from reviewdesk.services.errors import ConflictError, ErrorCode
from reviewdesk.services.optimistic import OptimisticValue


class TestOptimisticValue:
    def test_commit_replaces_with_server_value(self):
        value = OptimisticValue({"status": "pending_ca_approval"})

        change = value.apply(lambda v: {**v, "status": "verified"})
        assert value.value["status"] == "verified"
        assert value.committed["status"] == "pending_ca_approval"

        value.commit(change, {"status": "verified", "verified_by": "Asha"})
        assert value.committed == {"status": "verified", "verified_by": "Asha"}
        assert not value.has_pending

    def test_rollback_restores_pre_attempt_value(self):
        value = OptimisticValue({"status": "pending_ca_approval"})
        change = value.apply(lambda v: {**v, "status": "rejected_by_ca"})

        value.rollback(change)

        assert value.value == {"status": "pending_ca_approval"}

    def test_mutator_cannot_touch_committed_value(self):
        original = {"tags": ["a"]}
        value = OptimisticValue(original)

        def mutate(v):
            v["tags"].append("b")
            return v

        value.apply(mutate)
        assert original == {"tags": ["a"]}

    def test_settling_a_handle_twice_conflicts(self):
        value = OptimisticValue(1)
        change = value.apply(lambda v: v + 1)
        value.commit(change)

        with pytest.raises(ConflictError) as exc_info:
            value.rollback(change)
        assert exc_info.value.code == ErrorCode.STALE_UPDATE


class _Clock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class TestApiCache:
    def test_key_is_stable_across_param_order(self):
        assert ApiCache.key("invoices", {"b": 1, "a": 2}) == ApiCache.key("invoices", {"a": 2, "b": 1})

    def test_entries_expire_after_ttl(self):
        clock = _Clock()
        cache = ApiCache(ttl_seconds=300, clock=clock)
        cache.set("invoices", {"entity_id": "e1"}, [1, 2])

        clock.now += 299
        assert cache.get("invoices", {"entity_id": "e1"}) == [1, 2]
        clock.now += 1
        assert cache.get("invoices", {"entity_id": "e1"}) is None
        assert len(cache) == 0

    def test_invalidate_by_endpoint_or_params(self):
        cache = ApiCache()
        cache.set("invoices", {"entity_id": "e1"}, [1])
        cache.set("invoices", {"entity_id": "e2"}, [2])
        cache.set("vouchers", {"entity_id": "e1"}, [3])

        assert cache.invalidate("invoices", {"entity_id": "e1"}) == 1
        assert cache.get("invoices", {"entity_id": "e2"}) == [2]
        assert cache.invalidate("invoices") == 1
        assert cache.get("vouchers", {"entity_id": "e1"}) == [3]
