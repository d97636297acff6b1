from dataclasses import replace
from datetime import datetime, timezone

import pytest

from config import settings
from library import Library

NOW = datetime(2026, 3, 20, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def db_file(tmp_path, monkeypatch):
    # A unique database file per test, picked up by Library() and by the CLI
    path = str(tmp_path / "library_test.db")
    monkeypatch.setenv("LIBRARY_DB_FILE", path)
    return path


@pytest.fixture
def make_library(db_file):
    def factory(**overrides):
        config = replace(
            settings,
            person_type_loan_limits=overrides.pop("person_type_loan_limits", {}),
            stock_release_backoff=overrides.pop("stock_release_backoff", 0),
            **overrides,
        )
        return Library(db_file=db_file, config=config)

    return factory


@pytest.fixture
def lib(make_library):
    lib = make_library()
    yield lib
    lib.close()


@pytest.fixture
def resource(lib):
    return lib.add_resource("Cien años de soledad", total_quantity=5)


@pytest.fixture
def person(lib):
    return lib.add_person("Ana Torres", "student")
