"""Unit tests for the JSON-file store."""

from __future__ import annotations

from pathlib import Path

import pytest

from flow_engine.engine.models import Execution, ExecutionStatus, Job, JobStatus, Workflow
from flow_engine.store import (
    ConflictError,
    IntegrityError,
    JsonStore,
    NotFoundError,
    StoreError,
    match_filter,
)


def _workflow(store: JsonStore, *, transaction=None, **values) -> Workflow:
    values.setdefault("type", "collection")
    return store.save_workflow(Workflow(**values), transaction=transaction)


def test_state_survives_reload(tmp_path: Path) -> None:
    path = tmp_path / "state" / "store.json"
    store = JsonStore(path)
    workflow = _workflow(store, title="persisted", enabled=True, current=True)
    execution = store.create_execution(
        Execution(workflow_id=workflow.id, key=workflow.key, context={"a": 1})
    )
    store.save_job(Job(execution_id=execution.id, node_id=1, node_key="n1", result=[1, 2]))
    store.create_record("posts", {"title": "hello"})

    reloaded = JsonStore(path)

    assert reloaded.get_workflow(workflow.id).title == "persisted"
    assert reloaded.get_execution(execution.id).context == {"a": 1}
    assert reloaded.list_jobs(execution.id)[0].result == [1, 2]
    assert reloaded.find_records("posts")[0]["title"] == "hello"
    # Sequences continue after a reload.
    assert _workflow(reloaded).id == workflow.id + 1


def test_unreadable_file_starts_empty(tmp_path: Path) -> None:
    path = tmp_path / "store.json"
    path.write_text("{not json", encoding="utf-8")

    assert JsonStore(path).list_workflows() == []


def test_transaction_rolls_back_on_error() -> None:
    store = JsonStore()
    workflow = _workflow(store)

    with pytest.raises(RuntimeError):
        with store.transaction() as tx:
            store.update_workflow(workflow, title="changed", transaction=tx)
            assert store.get_workflow(workflow.id, transaction=tx).title == "changed"
            raise RuntimeError("boom")

    assert store.get_workflow(workflow.id).title == ""


def test_nested_transaction_is_reused() -> None:
    store = JsonStore()
    committed = []

    with store.transaction() as outer:
        with store.transaction(outer) as inner:
            assert inner is outer
            inner.after_commit(lambda: committed.append("inner"))
        assert committed == []
        _workflow(store, transaction=outer)
        assert store.list_workflows() == []

    assert committed == ["inner"]
    assert len(store.list_workflows()) == 1


def test_transaction_of_another_store_is_not_reused() -> None:
    first, second = JsonStore(), JsonStore()

    with first.transaction() as tx:
        with second.transaction(tx) as own:
            assert own is not tx


def test_only_one_current_version_per_key() -> None:
    store = JsonStore()
    _workflow(store, key="k", current=True)

    with pytest.raises(IntegrityError):
        _workflow(store, key="k", current=True)

    other = _workflow(store, key="k")
    assert other.current is None
    assert store.find_current_workflow("k", exclude_id=other.id) is not None


def test_duplicate_event_key_is_rejected() -> None:
    store = JsonStore()
    workflow = _workflow(store)
    store.create_execution(Execution(workflow_id=workflow.id, key=workflow.key, event_key="e1"))

    with pytest.raises(IntegrityError):
        store.create_execution(
            Execution(workflow_id=workflow.id, key=workflow.key, event_key="e1")
        )
    assert len(store.list_executions()) == 1


def test_duplicate_event_key_across_overlapping_transactions() -> None:
    store = JsonStore()
    workflow = _workflow(store)

    with pytest.raises(IntegrityError):
        with store.transaction() as tx:
            store.create_execution(
                Execution(workflow_id=workflow.id, key=workflow.key, event_key="k"),
                transaction=tx,
            )
            store.create_execution(
                Execution(workflow_id=workflow.id, key=workflow.key, event_key="k")
            )

    assert [e.event_key for e in store.list_executions()] == ["k"]


def test_overlapping_increments_conflict_instead_of_losing_one() -> None:
    store = JsonStore()
    workflow = _workflow(store)

    with pytest.raises(ConflictError):
        with store.transaction() as tx:
            store.increment_workflow(workflow.id, ["executed"], transaction=tx)
            store.increment_workflow(workflow.id, ["executed"])

    assert store.get_workflow(workflow.id).executed == 1


def test_row_read_before_a_concurrent_commit_conflicts() -> None:
    store = JsonStore()
    workflow = _workflow(store)

    with pytest.raises(ConflictError):
        with store.transaction() as tx:
            stale = store.get_workflow(workflow.id, transaction=tx)
            store.update_workflow(store.get_workflow(workflow.id), title="theirs")
            store.update_workflow(stale, title="ours", transaction=tx)

    assert store.get_workflow(workflow.id).title == "theirs"


def test_current_version_is_checked_at_commit() -> None:
    store = JsonStore()

    with pytest.raises(IntegrityError):
        with store.transaction() as tx:
            _workflow(store, key="k", current=True, transaction=tx)
            _workflow(store, key="k", current=True)

    assert [w.current for w in store.list_workflows(key="k")] == [True]


def test_failed_save_leaves_store_unchanged(tmp_path: Path) -> None:
    path = tmp_path / "store.json"
    store = JsonStore(path)
    store.create_record("posts", {"title": "kept"})
    fired = []
    store.hooks.on("posts.after_create", lambda r, c: fired.append(r))

    with pytest.raises(TypeError):
        store.create_record("posts", {"title": "broken", "tags": {"a", "b"}})

    assert [r["title"] for r in store.find_records("posts")] == ["kept"]
    assert fired == []
    store.create_record("posts", {"title": "next"})
    assert [r["title"] for r in JsonStore(path).find_records("posts")] == ["kept", "next"]


def test_update_and_destroy_missing_rows_raise() -> None:
    store = JsonStore()

    with pytest.raises(NotFoundError):
        store.save_workflow(Workflow(id=42, type="collection"))
    with pytest.raises(NotFoundError):
        store.increment_workflow(42, ["executed"])
    with pytest.raises(NotFoundError):
        store.update_execution(
            Execution(id=7, workflow_id=1, key="k"), status=ExecutionStatus.STARTED
        )
    assert isinstance(NotFoundError("x"), LookupError)


def test_increment_without_returning() -> None:
    store = JsonStore(returning=False)
    workflow = _workflow(store)

    assert store.increment_workflow(workflow.id, ["executed", "all_executed"]) is None
    assert store.get_workflow(workflow.id).all_executed == 1


def test_update_workflows_by_key() -> None:
    store = JsonStore()
    a = _workflow(store, key="k")
    b = _workflow(store, key="k")
    c = _workflow(store, key="other")

    assert store.update_workflows(key="k", values={"all_executed": 9}) == 2

    assert store.get_workflow(a.id).all_executed == 9
    assert store.get_workflow(b.id).all_executed == 9
    assert store.get_workflow(c.id).all_executed == 0


def test_find_queueing_execution_skips_disabled_and_started() -> None:
    store = JsonStore()
    disabled = _workflow(store, enabled=False)
    enabled = _workflow(store, enabled=True)
    store.create_execution(Execution(workflow_id=disabled.id, key=disabled.key))
    started = store.create_execution(
        Execution(workflow_id=enabled.id, key=enabled.key, status=ExecutionStatus.STARTED)
    )
    first = store.create_execution(Execution(workflow_id=enabled.id, key=enabled.key))
    store.create_execution(Execution(workflow_id=enabled.id, key=enabled.key))

    found = store.find_queueing_execution()

    assert found.id == first.id
    assert found.id != started.id
    assert found.workflow.id == enabled.id


def test_destroy_execution_removes_its_jobs() -> None:
    store = JsonStore()
    workflow = _workflow(store)
    execution = store.create_execution(Execution(workflow_id=workflow.id, key=workflow.key))
    store.save_job(Job(execution_id=execution.id, node_id=1, node_key="a"))
    store.save_job(
        Job(execution_id=execution.id, node_id=2, node_key="b", status=JobStatus.RESOLVED)
    )

    assert [j.node_key for j in store.list_pending_jobs(execution.id)] == ["a"]

    store.destroy_execution(execution.id)

    assert store.get_execution(execution.id) is None
    assert store.list_jobs(execution.id) == []


def test_record_hooks_fire_after_commit_only() -> None:
    store = JsonStore()
    seen: list[tuple[str, dict, list]] = []
    store.hooks.on("posts.after_create", lambda r, c: seen.append(("create", r, c)))
    store.hooks.on("posts.after_update", lambda r, c: seen.append(("update", r, c)))
    store.hooks.on("posts.after_destroy", lambda r, c: seen.append(("destroy", r, c)))

    with pytest.raises(RuntimeError):
        with store.transaction() as tx:
            store.create_record("posts", {"title": "lost"}, transaction=tx)
            raise RuntimeError("rollback")
    assert seen == []

    with store.transaction() as tx:
        record = store.create_record("posts", {"title": "a", "score": 1}, transaction=tx)
        assert seen == []
    store.update_records("posts", {"id": record["id"]}, {"title": "a", "score": 2})
    store.destroy_records("posts", {"score": {"$gte": 2}})

    assert [kind for kind, _, _ in seen] == ["create", "update", "destroy"]
    assert seen[0][2] == ["score", "title"]
    assert seen[1][1]["score"] == 2
    assert seen[1][2] == ["score"]
    assert store.find_records("posts") == []


def test_find_records_sort_and_limit() -> None:
    store = JsonStore()
    for score in (3, 1, 2):
        store.create_record("items", {"score": score})

    assert [r["score"] for r in store.find_records("items", sort="score")] == [1, 2, 3]
    assert [r["score"] for r in store.find_records("items", sort="-score", limit=2)] == [3, 2]
    assert [r["score"] for r in store.find_records("items")] == [3, 1, 2]


def test_collection_name_is_required() -> None:
    with pytest.raises(ValueError):
        JsonStore().create_record("", {"a": 1})


@pytest.mark.parametrize(
    ("filter_", "expected"),
    [
        (None, True),
        ({"status": "paid"}, True),
        ({"status": "draft"}, False),
        ({"total": {"$gt": 10, "$lte": 20}}, True),
        ({"total": {"$in": [1, 2]}}, False),
        ({"tags": {"$empty": True}}, True),
        ({"missing": {"$ne": None}}, False),
        ({"$or": [{"status": "draft"}, {"total": 15}]}, True),
        ({"$and": [{"status": "paid"}, {"total": {"$lt": 10}}]}, False),
        ({"total": {"$gt": "x"}}, False),
    ],
)
def test_match_filter(filter_, expected: bool) -> None:
    record = {"status": "paid", "total": 15, "tags": []}
    assert match_filter(record, filter_) is expected


def test_match_filter_rejects_unknown_operator() -> None:
    with pytest.raises(StoreError):
        match_filter({"a": 1}, {"a": {"$regex": "x"}})
