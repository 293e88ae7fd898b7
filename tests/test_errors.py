from sqlalchemy.exc import NoSuchTableError, OperationalError, ProgrammingError

from app.core.errors import (
    ConflictError,
    SchemaMissingError,
    StoreUnavailableError,
    classify_store_error,
    is_missing_relation,
    is_missing_table,
)


class PgError(Exception):
    def __init__(self, message, sqlstate):
        super().__init__(message)
        self.sqlstate = sqlstate


def _programming(message, sqlstate=None):
    orig = PgError(message, sqlstate) if sqlstate else Exception(message)
    return ProgrammingError("SELECT 1", {}, orig)


def test_missing_table_messages():
    assert is_missing_table(NoSuchTableError("achievements"))
    assert is_missing_table(OperationalError("SELECT 1", {}, Exception("no such table: achievements")))
    assert is_missing_table(_programming('relation "achievements" does not exist'))
    assert is_missing_table(_programming("undefined table", "42P01"))


def test_missing_column_is_not_a_missing_table():
    column_sqlite = OperationalError("SELECT 1", {}, Exception("no such column: last_accessed"))
    column_pg = _programming('column "last_accessed" of relation "user_courses" does not exist')
    column_code = _programming('relation "user_courses" does not exist', "42703")

    for exc in (column_sqlite, column_pg, column_code):
        assert is_missing_table(exc) is False
        assert is_missing_relation(exc) is True
        assert isinstance(classify_store_error(exc), SchemaMissingError)


def test_classify_store_error():
    from sqlalchemy.exc import IntegrityError

    assert isinstance(classify_store_error(IntegrityError("INSERT", {}, Exception("UNIQUE"))), ConflictError)
    error = classify_store_error(OperationalError("SELECT 1", {}, Exception("database is locked")))
    assert type(error) is StoreUnavailableError
    assert error.status_code == 503
