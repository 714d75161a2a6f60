import pytest

from rdbinit.core.detector import (
    backup_name,
    database_needs_fix,
    find_stray_backups,
    is_database_duplicated,
    is_table_duplicated,
    table_needs_fix,
)
from rdbinit.core.errors import DirectoryError, ErrorKind
from rdbinit.core.models import CatalogRow


def test_backup_name_uses_first_id_segment():
    assert backup_name("app", "0f3a9c1e-5b2d-4e7f-9a1b-2c3d4e5f6a7b") == "app_0f3a9c1e"
    assert backup_name("app", "plainid") == "app_plainid"


def test_missing_database_is_not_duplicated(directory):
    assert is_database_duplicated(directory, "app") is False
    assert database_needs_fix(directory, "app") is False


def test_single_database_is_not_duplicated(directory):
    directory.add_database("app")
    assert is_database_duplicated(directory, "app") is False


def test_duplicate_databases_are_detected(directory):
    directory.add_database("app")
    directory.add_database("app")
    assert is_database_duplicated(directory, "app") is True
    assert database_needs_fix(directory, "app") is True


def test_duplicate_tables_are_detected(directory):
    db = directory.add_database("app")
    directory.add_table(db, "users")
    assert is_table_duplicated(directory, "app", "users") is False

    directory.add_table(db, "users", [{"id": 1}])
    assert is_table_duplicated(directory, "app", "users") is True
    assert table_needs_fix(directory, "app", "users") is True


def test_missing_table_is_not_duplicated(directory):
    directory.add_database("app")
    assert is_table_duplicated(directory, "app", "users") is False
    assert is_table_duplicated(directory, "nope", "users") is False


def test_other_faults_propagate(directory):
    class _Broken(type(directory)):
        def list_tables(self, db):
            raise DirectoryError(ErrorKind.OTHER, "Cannot perform read: primary replica not available")

    with pytest.raises(DirectoryError) as exc_info:
        is_database_duplicated(_Broken(), "app")
    assert exc_info.value.kind is ErrorKind.OTHER


def test_find_stray_backups_matches_own_id_only():
    rows = [
        CatalogRow(id="aaaa1111-0000", name="app"),
        CatalogRow(id="bbbb2222-0000", name="app_bbbb2222"),
        CatalogRow(id="cccc3333-0000", name="app_aaaa1111"),
        CatalogRow(id="dddd4444-0000", name="app_archive"),
    ]
    assert find_stray_backups(rows, "app") == [rows[1]]


def test_stray_backup_needs_fix(directory):
    db = directory.add_database("app")
    stray = directory.add_table(db, "placeholder", [{"id": 1}])
    directory.tables[stray]["name"] = backup_name("users", stray)

    assert is_table_duplicated(directory, "app", "users") is False
    assert table_needs_fix(directory, "app", "users") is True
