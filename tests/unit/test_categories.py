"""Unit tests for built-in and custom categories."""

from __future__ import annotations

from pathlib import Path

import pytest

from pveimport.categories import BUILTIN_CATEGORIES, CategoryStore
from pveimport.errors import InvalidCategory


@pytest.fixture
def store(tmp_path: Path) -> CategoryStore:
    return CategoryStore(tmp_path / "data" / "categories.json")


def test_builtins_are_always_listed(store: CategoryStore) -> None:
    categories = store.all()

    assert [item.id for item in categories] == list(BUILTIN_CATEGORIES)
    assert store.require(14).name == "Custom"
    assert store.get(99) is None
    with pytest.raises(InvalidCategory):
        store.require(99)


def test_add_assigns_ids_from_100(store: CategoryStore) -> None:
    first = store.add("  Game   Servers ")
    second = store.add("Backups")

    assert (first.id, first.name, first.custom) == (100, "Game Servers", True)
    assert second.id == 101
    assert CategoryStore(store.path).require(101).name == "Backups"


@pytest.mark.parametrize("name", ["", "   ", "media", "Game Servers"])
def test_add_rejects_empty_and_duplicate_names(store: CategoryStore, name: str) -> None:
    store.add("Game Servers")

    with pytest.raises(InvalidCategory):
        store.add(name)


def test_delete_custom_only(store: CategoryStore) -> None:
    added = store.add("Backups")

    with pytest.raises(InvalidCategory):
        store.delete(7)
    with pytest.raises(InvalidCategory):
        store.delete(150)
    assert store.delete(added.id).name == "Backups"
    assert store.get(added.id) is None


def test_invalid_file_falls_back_to_builtins(store: CategoryStore) -> None:
    store.path.parent.mkdir(parents=True)
    store.path.write_text("{oops")

    assert len(store.all()) == len(BUILTIN_CATEGORIES)
