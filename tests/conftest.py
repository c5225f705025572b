#!/usr/bin/env python3
"""
Pytest fixtures for mesh traceroute monitor tests
"""

import random

import pytest

import config
import database


@pytest.fixture
def test_db(tmp_path, monkeypatch):
    """Point the app at a fresh file-based SQLite database.

    Uses tmp_path (not :memory:) so every connection opened by the
    database module sees the same tables.
    """
    monkeypatch.setattr(config, 'DATABASE_PATH', str(tmp_path / 'test.db'))
    monkeypatch.setattr(config, 'LOCAL_NODE_NUM', None)
    database.init_db()
    return database


@pytest.fixture
def seeded_rng():
    """Deterministic random source for scheduler selection."""
    return random.Random(1234)


@pytest.fixture
def now():
    """Fixed 'current time' in epoch ms."""
    return 1_700_000_000_000
