"""
tests/conftest.py
"""
from __future__ import annotations

import datetime as _dt
import itertools
from pathlib import Path
from typing import Generator

import pytest
from flask.testing import FlaskClient
from pytest import MonkeyPatch

# The single-file app lives here:
from quire.blog import app, articles_root, get_db, init_db  # noqa: WPS433


@pytest.fixture(autouse=True)
def _configure_app(tmp_path: Path) -> Generator[None, None, None]:
    """
    Point the app at a fresh DB + articles tree for every test, so the
    rebuild tests can count rows without leftovers from earlier tests.
    """
    saved = dict(app.config)
    app.config.update(
        TESTING=True,
        DATABASE=str(tmp_path / "test.sqlite3"),
        ARTICLES_DIR=str(tmp_path / "articles"),
        UPLOAD_TMP_DIR=str(tmp_path / "staging"),
    )
    with app.app_context():
        init_db()
    yield
    app.config.clear()
    app.config.update(saved)


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    """
    Gives each test an application context *and* test client.

    Yields:
        `flask.testing.FlaskClient`
    """
    with app.test_client() as client:
        with app.app_context():
            yield client


@pytest.fixture
def store(client) -> dict:
    """Keyword arguments for the store functions: the db handle + articles root."""
    return {"db": get_db(), "root": articles_root()}


@pytest.fixture
def staging(tmp_path: Path) -> Path:
    return tmp_path / "staging"


@pytest.fixture(autouse=True, scope="session")
def _ticking_clock():
    """
    Patch quire.blog.utc_now for the whole test session so every call
    returns an ever-increasing timestamp.  No need for time.sleep().
    """
    from quire import blog  # import here to avoid early import

    counter = itertools.count()         # 0, 1, 2, …

    base = _dt.datetime(2099, 1, 1, tzinfo=_dt.timezone.utc)
    def _fake_now():
        return base + _dt.timedelta(seconds=next(counter))

    mp = MonkeyPatch()
    mp.setattr(blog, "utc_now", _fake_now)

    yield                               # tests run here

    mp.undo()                           # clean up at session end
