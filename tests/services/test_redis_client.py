"""Tests for the shared Redis client helpers."""

import pytest

import subscription_engine.db.redis as redis_mod
from subscription_engine.db.redis import get_redis, ping_redis

pytestmark = pytest.mark.unit


async def test_ping_reports_ready_with_client(monkeypatch, fake_redis):
    monkeypatch.setattr(redis_mod, "_redis", fake_redis)

    assert await ping_redis() is True
    assert get_redis() is fake_redis


async def test_ping_reports_not_ready_before_init(monkeypatch):
    monkeypatch.setattr(redis_mod, "_redis", None)

    assert await ping_redis() is False
    with pytest.raises(RuntimeError):
        get_redis()
