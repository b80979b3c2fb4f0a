"""
docmirror State Mutations -- pure function tests

The containers here are plain dicts and lists, so no client is involved
except where a relation needs a parent.
"""

import pytest

from docmirror.kernel import mutations
from docmirror.kernel.errors import InvalidMergeError
from docmirror.kernel.ops import AddOp, IncrementOp, RelationOp, SetOp, UnsetOp
from docmirror.kernel.relation import Relation
from docmirror.kernel.types import ObjectIdentity


def _identity(object_id="abc"):
    return ObjectIdentity("Item", object_id)


# ============================================================================
# Server data
# ============================================================================


class TestServerData:
    def test_set_server_data_overwrites_and_deletes(self):
        data = {"a": 1, "b": 2}
        mutations.set_server_data(data, {"a": 10, "b": None, "c": 3})
        assert data == {"a": 10, "c": 3}

    def test_commit_writes_nested_keys(self):
        data = {"stats": {"wins": 1, "losses": 2}}
        cache = {}
        mutations.commit_server_changes(data, cache, {"stats.wins": 5})
        assert data == {"stats": {"wins": 5, "losses": 2}}

    def test_commit_creates_missing_parents(self):
        data = {}
        mutations.commit_server_changes(data, {}, {"a.b.c": 1})
        assert data == {"a": {"b": {"c": 1}}}

    def test_commit_writes_into_list_parents(self):
        data, cache = {"rounds": [{"score": 1}, {"score": 4}]}, {}
        mutations.commit_server_changes(data, cache, {"rounds.1.score": 6})
        assert data == {"rounds": [{"score": 1}, {"score": 6}]}
        assert cache["rounds"] == mutations.fingerprint(data["rounds"])

    def test_commit_fingerprints_containers(self):
        data, cache = {}, {}
        mutations.commit_server_changes(data, cache, {"tags": ["x"], "meta": {"k": 1}, "n": 3})
        assert set(cache) == {"tags", "meta"}
        assert cache["tags"] == mutations.fingerprint(["x"])

    def test_commit_none_drops_value_and_fingerprint(self):
        data, cache = {"tags": ["x"]}, {"tags": mutations.fingerprint(["x"])}
        mutations.commit_server_changes(data, cache, {"tags": None})
        assert data == {}
        assert cache == {}

    def test_fingerprint_ignores_key_order(self):
        assert mutations.fingerprint({"a": 1, "b": 2}) == mutations.fingerprint({"b": 2, "a": 1})
        assert mutations.fingerprint([1, 2]) != mutations.fingerprint([2, 1])

    def test_tracked_values(self):
        assert mutations.is_tracked_value([1])
        assert mutations.is_tracked_value({"a": 1})
        assert not mutations.is_tracked_value("text")
        assert not mutations.is_tracked_value(4)
        assert not mutations.is_tracked_value(None)
        assert not mutations.is_tracked_value(Relation(None, "k"))


# ============================================================================
# Pending batches
# ============================================================================


class TestPendingBatches:
    def test_set_pending_op_targets_current_batch(self):
        pending = [{"a": SetOp(1)}, {}]
        mutations.set_pending_op(pending, "a", SetOp(2))
        assert pending == [{"a": SetOp(1)}, {"a": SetOp(2)}]

    def test_set_pending_op_none_clears(self):
        pending = [{"a": SetOp(1)}]
        mutations.set_pending_op(pending, "a", None)
        assert pending == [{}]

    def test_push_and_pop(self):
        pending = [{"a": SetOp(1)}]
        mutations.push_pending_state(pending)
        assert pending == [{"a": SetOp(1)}, {}]
        assert mutations.pop_pending_state(pending) == {"a": SetOp(1)}
        assert pending == [{}]

    def test_pop_never_leaves_stack_empty(self):
        pending = [{}]
        mutations.pop_pending_state(pending)
        assert pending == [{}]

    def test_merge_first_combines_into_next(self):
        pending = [{"score": IncrementOp(1), "name": SetOp("a")}, {"score": IncrementOp(2)}]
        mutations.merge_first_pending_state(pending)
        assert pending == [{"score": IncrementOp(3), "name": SetOp("a")}]

    def test_merge_first_later_set_wins(self):
        pending = [{"name": SetOp("old")}, {"name": SetOp("new")}]
        mutations.merge_first_pending_state(pending)
        assert pending == [{"name": SetOp("new")}]

    def test_merge_first_with_single_batch_is_noop(self):
        pending = [{"a": SetOp(1)}]
        mutations.merge_first_pending_state(pending)
        assert pending == [{"a": SetOp(1)}]

    def test_failed_merge_leaves_stack_untouched(self):
        pending = [{"tags": AddOp([1])}, {"tags": IncrementOp(1)}]
        with pytest.raises(InvalidMergeError):
            mutations.merge_first_pending_state(pending)
        assert pending == [{"tags": AddOp([1])}, {"tags": IncrementOp(1)}]


# ============================================================================
# Estimation
# ============================================================================


class TestEstimation:
    def test_folds_every_batch_in_order(self):
        pending = [{"x": IncrementOp(2)}, {"x": IncrementOp(3)}]
        assert mutations.estimate_attribute({"x": 5}, pending, _identity(), "x") == 10
        assert mutations.estimate_attributes({"x": 5}, pending, _identity()) == {"x": 10}

    def test_pop_then_merge_round_trip(self):
        """A failed save folds its batch back; the estimate is unchanged."""
        server = {"x": 5}
        pending = [{"x": IncrementOp(2)}, {"x": IncrementOp(3)}]
        before = mutations.estimate_attributes(server, pending, _identity())
        mutations.merge_first_pending_state(pending)
        assert pending == [{"x": IncrementOp(5)}]
        assert mutations.estimate_attributes(server, pending, _identity()) == before

    def test_successful_save_leaves_later_batch(self):
        server = {"x": 5}
        pending = [{"x": IncrementOp(2)}, {"x": IncrementOp(3)}]
        mutations.pop_pending_state(pending)
        mutations.commit_server_changes(server, {}, {"x": 7})
        assert mutations.estimate_attributes(server, pending, _identity()) == {"x": 10}

    def test_unset_removes_from_estimate(self):
        pending = [{"gone": UnsetOp()}]
        assert mutations.estimate_attributes({"gone": 1, "kept": 2}, pending, _identity()) == {"kept": 2}

    def test_nested_keys_do_not_touch_server_data(self):
        server = {"stats": {"wins": 1}}
        pending = [{"stats.wins": IncrementOp(1), "stats.draws": SetOp(0)}]
        estimate = mutations.estimate_attributes(server, pending, _identity())
        assert estimate == {"stats": {"wins": 2, "draws": 0}}
        assert server == {"stats": {"wins": 1}}

    def test_nested_keys_keep_list_parents(self):
        server = {"rounds": [{"score": 1}, {"score": 4}]}
        pending = [{"rounds.1.score": IncrementOp(2)}]
        estimate = mutations.estimate_attributes(server, pending, _identity())
        assert estimate == {"rounds": [{"score": 1}, {"score": 6}]}
        assert server == {"rounds": [{"score": 1}, {"score": 4}]}

    def test_relation_estimate_needs_saved_identity(self):
        op = RelationOp(["m1"], [])
        op.target_class_name = "Member"
        unsaved = ObjectIdentity("Item", None)
        assert "members" not in mutations.estimate_attributes({}, [{"members": op}], unsaved)
        estimated = mutations.estimate_attributes({}, [{"members": op}], _identity())
        assert isinstance(estimated["members"], Relation)
        assert estimated["members"].target_class_name == "Member"

    def test_missing_attribute_is_none(self):
        assert mutations.estimate_attribute({}, [{}], _identity(), "nothing") is None
