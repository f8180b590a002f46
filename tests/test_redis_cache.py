from datetime import datetime, timedelta, timezone

from authcore.storage.redis_cache import RedisCache


class FakePipeline:
    def __init__(self, client):
        self.client = client
        self.ops = []

    def set(self, key, value, ex=None):
        self.ops.append(("set", key, value, ex))
        return self

    def sadd(self, key, member):
        self.ops.append(("sadd", key, member))
        return self

    def srem(self, key, member):
        self.ops.append(("srem", key, member))
        return self

    def expire(self, key, ttl):
        self.ops.append(("expire", key, ttl))
        return self

    def delete(self, key):
        self.ops.append(("delete", key))
        return self

    async def execute(self):
        for op in self.ops:
            name, key, *args = op
            if name == "set":
                self.client.values[key] = args[0]
                self.client.ttls[key] = args[1]
            elif name == "sadd":
                self.client.sets.setdefault(key, set()).add(args[0])
            elif name == "srem":
                self.client.sets.get(key, set()).discard(args[0])
            elif name == "expire":
                self.client.ttls[key] = args[0]
            elif name == "delete":
                self.client.values.pop(key, None)
        self.client.executed.append(list(self.ops))
        self.ops = []


class FakeAsyncRedis:
    def __init__(self):
        self.values = {}
        self.sets = {}
        self.ttls = {}
        self.executed = []
        self.closed = False

    def pipeline(self):
        return FakePipeline(self)

    async def get(self, key):
        return self.values.get(key)

    async def smembers(self, key):
        return set(self.sets.get(key, set()))

    async def aclose(self):
        self.closed = True


def _cache():
    client = FakeAsyncRedis()
    return RedisCache("redis://unused", default_ttl_seconds=3600, client=client), client


async def test_remember_valid_is_not_known_invalid():
    cache, client = _cache()
    expires = datetime.now(timezone.utc) + timedelta(minutes=10)

    await cache.remember_valid("u1", "s1", expires)

    assert client.values["auth:session_state:u1:s1"] == "valid"
    assert "s1" in client.sets["auth:user_sessions:u1"]
    assert not await cache.is_known_invalid("u1", "s1")
    assert 0 < client.ttls["auth:session_state:u1:s1"] <= 600


async def test_mark_invalid_is_known_invalid_and_keyed_by_user():
    cache, _ = _cache()

    await cache.mark_invalid("u1", "s1")

    assert await cache.is_known_invalid("u1", "s1")
    assert not await cache.is_known_invalid("u2", "s1")
    assert not await cache.is_known_invalid("u1", "unknown")


async def test_mark_invalid_without_expiry_uses_default_ttl():
    cache, client = _cache()

    await cache.mark_invalid("u1", "s1")

    assert client.ttls["auth:session_state:u1:s1"] == 3600


async def test_writes_are_pipelined():
    cache, client = _cache()

    await cache.remember_valid("u1", "s1", None)

    assert len(client.executed) == 1
    assert [op[0] for op in client.executed[0]] == ["set", "sadd", "expire"]


async def test_clear_for_user_keeps_excepted_session():
    cache, client = _cache()
    for session_id in ("s1", "s2", "s3"):
        await cache.remember_valid("u1", session_id, None)
    await cache.remember_valid("u2", "s9", None)

    cleared = await cache.clear_for_user("u1", except_session_id="s2")

    assert cleared == 2
    assert "auth:session_state:u1:s2" in client.values
    assert "auth:session_state:u1:s1" not in client.values
    assert "auth:session_state:u2:s9" in client.values
    assert client.sets["auth:user_sessions:u1"] == {"s2"}


async def test_clear_for_user_without_entries():
    cache, client = _cache()
    assert await cache.clear_for_user("nobody") == 0
    assert client.executed == []


def test_ttl_is_clamped_and_accepts_naive_timestamps():
    cache, _ = _cache()
    past = datetime.now(timezone.utc) - timedelta(hours=1)
    naive_future = datetime.now(timezone.utc).replace(tzinfo=None) + timedelta(seconds=120)

    assert cache._ttl_seconds(past) == 1
    assert 100 <= cache._ttl_seconds(naive_future) <= 120
    assert cache._ttl_seconds(None) == 3600


async def test_close_closes_client():
    cache, client = _cache()
    await cache.close()
    assert client.closed
