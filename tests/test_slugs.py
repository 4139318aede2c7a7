import re

import pytest

from quire.blog import SLUG_MAX_LEN, slugify

ALLOWED = re.compile(r"^[a-z0-9_\u0400-\u04FF-]*$")


@pytest.mark.parametrize("title, slug", [
    ("Hello World",           "hello-world"),
    ("Hello World v2",        "hello-world-v2"),
    ("  --Leading & trailing!!  ", "leading-trailing"),
    ("snake_case stays",      "snake_case-stays"),
    ("Привет, мир!",          "привет-мир"),
    ("Ünïcödé Latin",         "n-c-d-latin"),     # only ASCII word chars survive
    ("!!!",                   ""),
])
def test_slugify_examples(title, slug):
    assert slugify(title) == slug


def test_slugify_is_deterministic():
    title = "Same Title, Same Slug"
    assert slugify(title) == slugify(title)


def test_slugify_collapses_runs_into_one_dash():
    assert slugify("a  --  b///c") == "a-b-c"


@pytest.mark.parametrize("title", [
    "x" * 250,
    "word " * 60,
    "Заголовок " * 30,
])
def test_slugify_length_and_alphabet(title):
    slug = slugify(title)
    assert len(slug) <= SLUG_MAX_LEN
    assert ALLOWED.match(slug)
