from __future__ import annotations

import threading
from pathlib import Path

import pytest

from app.complaint_store import (
    InMemoryComplaintStore,
    SqliteComplaintStore,
    create_store_from_env,
)
from app.errors import NotFound, ValidationError
from app.models import Mutation, Subject


@pytest.fixture(params=["memory", "sqlite"])
def any_store(request, tmp_path: Path) -> InMemoryComplaintStore:
    if request.param == "sqlite":
        return SqliteComplaintStore(tmp_path / "complaints.sqlite3")
    return InMemoryComplaintStore()


def _create(store: InMemoryComplaintStore, owner_id: str, title: str = "Broken heater"):
    return store.create(owner_id=owner_id, title=title, description="No heating in room 214.")


def test_create_starts_pending_without_response(any_store):
    complaint = any_store.create(
        owner_id="s1",
        title="  Leaky faucet  ",
        description="Drips all night.",
        image_ref="uploads/faucet.jpg",
    )
    assert complaint.id.startswith("cmp_")
    assert complaint.status == "pending"
    assert complaint.response is None
    assert complaint.title == "Leaky faucet"
    assert complaint.image_ref == "uploads/faucet.jpg"
    assert complaint.created_at == complaint.updated_at
    assert any_store.get(complaint.id) == complaint


def test_create_rejects_blank_and_oversized_fields(any_store):
    with pytest.raises(ValidationError, match="title"):
        any_store.create(owner_id="s1", title="   ", description="valid description")
    with pytest.raises(ValidationError, match="description"):
        any_store.create(owner_id="s1", title="ok title", description="x" * 2001)


def test_get_unknown_id_raises_not_found(any_store):
    with pytest.raises(NotFound):
        any_store.get("cmp_missing")


def test_list_for_is_newest_first_and_role_scoped(any_store):
    first = _create(any_store, "s1", "first")
    second = _create(any_store, "s2", "second")
    third = _create(any_store, "s1", "third")

    reviewer_view = any_store.list_for(Subject(id="r1", role="reviewer"))
    assert [x.id for x in reviewer_view] == [third.id, second.id, first.id]

    own_view = any_store.list_for(Subject(id="s1", role="submitter"))
    assert [x.id for x in own_view] == [third.id, first.id]

    assert any_store.list_for(Subject(id="s3", role="submitter")) == []


def test_list_for_filters_by_status(any_store):
    a = _create(any_store, "s1", "a")
    _create(any_store, "s1", "b")
    any_store.apply_mutation(a.id, Mutation(status="resolved"))

    resolved = any_store.list_for(Subject(id="s1", role="submitter"), status="resolved")
    assert [x.id for x in resolved] == [a.id]
    with pytest.raises(ValidationError):
        any_store.list_for(Subject(id="s1", role="submitter"), status="closed")


def test_status_counts_cover_every_status(any_store):
    a = _create(any_store, "s1")
    _create(any_store, "s1")
    _create(any_store, "s2")
    any_store.apply_mutation(a.id, Mutation(status="in_progress"))

    assert any_store.status_counts(Subject(id="s1", role="submitter")) == {
        "pending": 1,
        "in_progress": 1,
        "resolved": 0,
    }
    assert any_store.status_counts(Subject(id="r1", role="reviewer"))["pending"] == 2


def test_apply_mutation_returns_previous_and_current(any_store):
    created = _create(any_store, "s1")
    previous, current = any_store.apply_mutation(
        created.id,
        Mutation(status="in_progress", response="Looking into it."),
    )
    assert previous.status == "pending"
    assert current.status == "in_progress"
    assert current.response == "Looking into it."
    assert current.updated_at > previous.updated_at
    assert current.created_at == created.created_at
    assert any_store.get(created.id) == current


def test_apply_mutation_leaves_unset_fields_alone(any_store):
    created = _create(any_store, "s1")
    any_store.apply_mutation(created.id, Mutation(response="Plumber booked."))
    _previous, current = any_store.apply_mutation(created.id, Mutation(status="resolved"))
    assert current.response == "Plumber booked."

    _previous, cleared = any_store.apply_mutation(created.id, Mutation(response=None))
    assert cleared.response is None
    assert cleared.status == "resolved"


def test_apply_mutation_rejects_empty_and_unknown_status(any_store):
    created = _create(any_store, "s1")
    with pytest.raises(ValidationError, match="status or response"):
        any_store.apply_mutation(created.id, Mutation())
    with pytest.raises(ValidationError, match="unsupported status"):
        any_store.apply_mutation(created.id, Mutation(status="archived"))
    assert any_store.get(created.id) == created


def test_apply_mutation_unknown_id_raises_not_found(any_store):
    with pytest.raises(NotFound):
        any_store.apply_mutation("cmp_missing", Mutation(status="resolved"))


def test_updated_at_is_strictly_increasing_per_complaint(any_store):
    created = _create(any_store, "s1")
    stamps = [created.updated_at]
    for status in ["in_progress", "in_progress", "pending", "resolved", "resolved"]:
        _previous, current = any_store.apply_mutation(created.id, Mutation(status=status))
        stamps.append(current.updated_at)
    assert all(earlier < later for earlier, later in zip(stamps, stamps[1:]))


def test_after_write_sees_every_write_in_order_under_concurrency(any_store):
    created = _create(any_store, "s1")
    observed: list[tuple[str, str]] = []
    barrier = threading.Barrier(8)

    def _record(previous, current):
        observed.append((previous.updated_at.isoformat(), current.updated_at.isoformat()))

    def _worker(idx: int):
        barrier.wait()
        any_store.apply_mutation(
            created.id,
            Mutation(response=f"note {idx}"),
            after_write=_record,
        )

    threads = [threading.Thread(target=_worker, args=(i,)) for i in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(observed) == 8
    # Each write builds on the one before it: no update was lost.
    for (_prev_a, cur_a), (prev_b, _cur_b) in zip(observed, observed[1:]):
        assert cur_a == prev_b
    assert any_store.get(created.id).updated_at.isoformat() == observed[-1][1]


def test_mutations_on_different_ids_do_not_block_each_other(any_store):
    held = _create(any_store, "s1", "held")
    other = _create(any_store, "s2", "other")
    entered = threading.Event()
    release = threading.Event()

    def _block(_previous, _current):
        entered.set()
        release.wait(timeout=5.0)

    blocker = threading.Thread(
        target=any_store.apply_mutation,
        args=(held.id, Mutation(status="in_progress")),
        kwargs={"after_write": _block},
    )
    blocker.start()
    try:
        assert entered.wait(timeout=2.0)
        finished = threading.Event()

        def _mutate_other():
            any_store.apply_mutation(other.id, Mutation(status="resolved"))
            finished.set()

        threading.Thread(target=_mutate_other).start()
        assert finished.wait(timeout=2.0)
        assert release.is_set() is False
        assert any_store.get(other.id).status == "resolved"
    finally:
        release.set()
        blocker.join(timeout=5.0)
    assert any_store.get(held.id).status == "in_progress"


def test_sqlite_store_persists_across_instances(tmp_path: Path):
    db_path = tmp_path / "complaints.sqlite3"
    store1 = SqliteComplaintStore(db_path)
    created = _create(store1, "s1")
    store1.apply_mutation(created.id, Mutation(status="resolved", response="Fixed."))

    store2 = SqliteComplaintStore(db_path)
    reloaded = store2.get(created.id)
    assert reloaded.status == "resolved"
    assert reloaded.response == "Fixed."
    assert reloaded.created_at == created.created_at


def test_reset_clears_all_complaints(any_store):
    created = _create(any_store, "s1")
    any_store.reset()
    with pytest.raises(NotFound):
        any_store.get(created.id)


def test_store_factory_defaults_to_in_memory(monkeypatch):
    monkeypatch.delenv("CDESK_STORE_BACKEND", raising=False)
    store = create_store_from_env()
    assert type(store) is InMemoryComplaintStore


def test_store_factory_uses_sqlite_backend_when_configured(tmp_path: Path):
    sqlite_path = tmp_path / "factory.sqlite3"
    env = {"CDESK_STORE_BACKEND": "sqlite", "CDESK_STORE_SQLITE_PATH": str(sqlite_path)}

    store = create_store_from_env(env)
    assert isinstance(store, SqliteComplaintStore)
    created = _create(store, "s1")

    reloaded = create_store_from_env(env).get(created.id)
    assert reloaded.id == created.id


def test_store_factory_rejects_memory_when_durable_store_required():
    with pytest.raises(RuntimeError, match="CDESK_STORE_BACKEND"):
        create_store_from_env({"CDESK_STORE_BACKEND": "memory", "CDESK_REQUIRE_DURABLE_STORE": "true"})


def test_store_factory_rejects_unknown_backend():
    with pytest.raises(RuntimeError, match="unsupported store backend"):
        create_store_from_env({"CDESK_STORE_BACKEND": "mongo"})


def test_store_factory_requires_dsn_for_postgres():
    with pytest.raises(ValueError, match="POSTGRES_DSN"):
        create_store_from_env({"CDESK_STORE_BACKEND": "postgres"})
