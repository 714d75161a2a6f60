import pytest

from rdbinit.core.detector import backup_name
from rdbinit.core.errors import CatalogAmbiguity, DirectoryError, ErrorKind, LockFailure, ReconciliationFailure
from rdbinit.core.lock import SchemaLock
from rdbinit.core.models import ConflictPolicy, TableSpec
from rdbinit.core.reconciler import ReconcileState, Reconciler, RowOutcome


def _names(directory):
    return sorted(directory.dbs.values())


def test_row_outcome_rejects_invalid_transition():
    o = RowOutcome(row_id="x", backup="t_x")
    o.advance(ReconcileState.RENAMED)
    with pytest.raises(ValueError, match="RENAMED -> MERGED"):
        o.advance(ReconcileState.MERGED)
    o.advance(ReconcileState.FAILED)
    assert o.history == [ReconcileState.DETECTED, ReconcileState.RENAMED, ReconcileState.FAILED]


def test_reconciler_validates_arguments(directory):
    with pytest.raises(ValueError):
        Reconciler(directory, max_attempts=0)
    with pytest.raises(ValueError):
        Reconciler(directory, max_parallel=0)


def test_duplicate_tables_collapse_into_one(directory):
    """One full and one empty table named "users" end up as one table with the data."""
    db = directory.add_database("app")
    full = directory.add_table(db, "users", [{"id": i} for i in range(5)])
    empty = directory.add_table(db, "users")

    report = Reconciler(directory).reconcile_table("app", TableSpec(name="users"))

    assert directory.list_tables("app") == ["users"]
    assert directory.count_rows("app", "users") == 5
    assert report.verified is True
    assert report.attempts == 1
    assert report.dropped == [backup_name("users", empty)]
    assert [m.backup for m in report.merged] == [backup_name("users", full)]
    assert {o.state for o in report.outcomes} == {ReconcileState.VERIFIED}
    assert report.leftovers == []


def test_two_full_duplicates_conserve_rows(directory):
    db = directory.add_database("app")
    directory.add_table(db, "users", [{"id": 1, "v": "a"}, {"id": 2, "v": "a"}])
    directory.add_table(db, "users", [{"id": 2, "v": "b"}, {"id": 3, "v": "b"}])

    report = Reconciler(directory).reconcile_table("app", TableSpec(name="users"))

    assert directory.list_tables("app") == ["users"]
    # Four source rows, one primary key collision.
    assert sorted(r["id"] for r in directory.read_rows("app", "users")) == [1, 2, 3]
    assert len(report.merged) == 2


def test_prefer_source_policy_replaces_colliding_rows(directory):
    db = directory.add_database("app")
    first = directory.add_table(db, "users", [{"id": 1, "v": "first"}])
    second = directory.add_table(db, "users", [{"id": 1, "v": "second"}])

    report = Reconciler(directory, policy=ConflictPolicy.PREFER_SOURCE, max_parallel=1).reconcile_table(
        "app", TableSpec(name="users")
    )

    # The first staged backup is renamed into place, the second is copied over it.
    merged = [m.source_id for m in report.merged]
    assert merged == [first, second]
    assert directory.read_rows("app", "users") == [{"id": 1, "v": "second"}]


def test_all_empty_duplicates_are_recreated(directory):
    db = directory.add_database("app")
    directory.add_table(db, "users")
    directory.add_table(db, "users")

    report = Reconciler(directory).reconcile_table("app", TableSpec(name="users", primary_key="uid"))

    assert directory.list_tables("app") == ["users"]
    assert directory.table("app", "users")["primary_key"] == "uid"
    assert report.recreated is True
    assert len(report.dropped) == 2


def test_duplicate_databases_are_merged(directory):
    empty = directory.add_database("app")
    full = directory.add_database("app")
    directory.add_table(full, "orders", [{"id": 1}, {"id": 2}, {"id": 3}])
    directory.add_table(full, "scratch")

    report = Reconciler(directory).reconcile_database("app")

    assert _names(directory) == ["app"]
    assert directory.list_tables("app") == ["orders"]
    assert directory.count_rows("app", "orders") == 3
    assert report.dropped == [backup_name("app", empty)]
    assert [m.backup for m in report.merged] == [backup_name("app", full)]
    assert report.verified is True


def test_stray_backup_is_folded_back(directory):
    """A backup left behind by a crashed pass is merged on the next run."""
    db = directory.add_database("app")
    directory.add_table(db, "users", [{"id": 1}])
    stray = directory.add_table(db, "tmp", [{"id": 2}])
    directory.tables[stray]["name"] = backup_name("users", stray)

    report = Reconciler(directory).reconcile_table("app", TableSpec(name="users"))

    assert directory.list_tables("app") == ["users"]
    assert sorted(r["id"] for r in directory.read_rows("app", "users")) == [1, 2]
    assert report.merged[0].source_id == stray


def test_gives_up_after_max_attempts(directory):
    class _StillAmbiguous(type(directory)):
        def count_rows(self, db, table):
            if table == "users":
                raise CatalogAmbiguity("Table `app.users` is ambiguous")
            return super().count_rows(db, table)

    d = _StillAmbiguous()
    db = d.add_database("app")
    d.add_table(db, "users")

    with pytest.raises(ReconciliationFailure, match=r"Still ambiguous after 2 attempt\(s\)") as exc_info:
        Reconciler(d, max_attempts=2).reconcile_table("app", TableSpec(name="users"))
    assert exc_info.value.target == "table 'app.users'"


def test_faults_are_wrapped_with_cause(directory):
    class _RenameFails(type(directory)):
        def rename_table_by_id(self, row_id, new_name):
            raise DirectoryError(ErrorKind.OTHER, "Cannot perform write: lost contact with primary replica")

    d = _RenameFails()
    db = d.add_database("app")
    d.add_table(db, "users")
    d.add_table(db, "users")

    with pytest.raises(ReconciliationFailure, match="Could not fix duplicates") as exc_info:
        Reconciler(d).reconcile_table("app", TableSpec(name="users"))
    assert isinstance(exc_info.value.__cause__, DirectoryError)


def test_lost_lease_stops_destructive_steps(directory):
    db = directory.add_database("app")
    directory.add_table(db, "users")
    directory.add_table(db, "users")

    def _lost():
        raise LockFailure("Lock 'app' was lost")

    with pytest.raises(ReconciliationFailure) as exc_info:
        Reconciler(directory, lease_check=_lost).reconcile_table("app", TableSpec(name="users"))

    assert isinstance(exc_info.value.__cause__, LockFailure)
    assert not any(c.startswith("drop_table:") for c in directory.calls)
    assert len(directory.tables) == 2


def test_unexpected_faults_are_wrapped_with_cause(directory):
    class _Garbled(type(directory)):
        def rename_table_by_id(self, row_id, new_name):
            raise RuntimeError("socket buffer garbled")

    d = _Garbled()
    db = d.add_database("app")
    d.add_table(db, "users")
    d.add_table(db, "users")

    with pytest.raises(ReconciliationFailure, match="Could not fix duplicates") as exc_info:
        Reconciler(d).reconcile_table("app", TableSpec(name="users"))
    assert isinstance(exc_info.value.__cause__, RuntimeError)


def test_lease_is_renewed_before_destructive_steps(directory, tmp_path):
    db = directory.add_database("app")
    directory.add_table(db, "users", [{"id": 1}])
    directory.add_table(db, "users")

    lock = SchemaLock("app", lock_dir=str(tmp_path / "locks"), lease_ttl=60)
    first = lock.acquire()
    renewals = []

    def _renew():
        renewals.append(lock.renew())

    Reconciler(directory, lease_check=_renew).reconcile_table("app", TableSpec(name="users"))

    assert len(renewals) >= 2
    assert all(lease.token == first.token for lease in renewals)
    assert lock.lease.expires_at >= first.expires_at
    lock.release()
