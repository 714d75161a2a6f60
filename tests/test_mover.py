import pytest

from rdbinit.core.errors import DirectoryError, ErrorKind
from rdbinit.core.models import ConflictPolicy, TableRef
from rdbinit.core.mover import ensure_database, move_table, move_tables, non_empty_tables


def test_ensure_database_is_idempotent(directory):
    assert ensure_database(directory, "app") is True
    assert ensure_database(directory, "app") is False
    assert directory.list_databases() == ["app"]


def test_ensure_database_propagates_other_faults(directory):
    class _Broken(type(directory)):
        def create_database(self, name):
            raise DirectoryError(ErrorKind.OTHER, "permission denied")

    with pytest.raises(DirectoryError):
        ensure_database(_Broken(), "app")


def test_move_table_renames_when_destination_is_missing(directory):
    src = directory.add_database("backup")
    directory.add_database("app")
    directory.add_table(src, "orders", [{"id": 1}, {"id": 2}])

    move_table(directory, TableRef("backup", "orders"), TableRef("app", "orders"))

    assert directory.list_tables("backup") == []
    assert directory.count_rows("app", "orders") == 2
    assert any(c.startswith("relocate_table:") for c in directory.calls)


@pytest.mark.parametrize(
    ("policy", "expected"),
    [
        (ConflictPolicy.KEEP_DESTINATION, {1: "dest", 2: "src"}),
        (ConflictPolicy.PREFER_SOURCE, {1: "src", 2: "src"}),
    ],
)
def test_move_table_copies_into_existing_destination(directory, policy, expected):
    db = directory.add_database("app")
    directory.add_table(db, "orders_x", [{"id": 1, "v": "src"}, {"id": 2, "v": "src"}])
    directory.add_table(db, "orders", [{"id": 1, "v": "dest"}])

    move_table(directory, TableRef("app", "orders_x"), TableRef("app", "orders"), policy=policy)

    assert directory.list_tables("app") == ["orders"]
    rows = {r["id"]: r["v"] for r in directory.read_rows("app", "orders")}
    assert rows == expected
    assert "drop_table:app.orders_x" in directory.calls


def test_non_empty_tables(directory):
    db = directory.add_database("app")
    directory.add_table(db, "empty")
    directory.add_table(db, "full", [{"id": 1}])

    assert non_empty_tables(directory, "app") == ["full"]


def test_move_tables_moves_only_non_empty_tables(directory):
    src = directory.add_database("backup")
    directory.add_table(src, "empty")
    directory.add_table(src, "orders", [{"id": 1}, {"id": 2}, {"id": 3}])
    directory.add_table(src, "users", [{"id": "u1"}])

    moved = move_tables(directory, "backup", "app", max_parallel=2)

    assert sorted(str(m) for m in moved) == ["app.orders", "app.users"]
    assert directory.list_tables("app") == ["orders", "users"]
    assert directory.list_tables("backup") == ["empty"]
    assert directory.count_rows("app", "orders") == 3


def test_move_tables_rejects_bad_parallelism(directory):
    with pytest.raises(ValueError):
        move_tables(directory, "a", "b", max_parallel=0)
