from tokenward.storage.redis_cache import (
    RedisCache,
    SyncRedisCache,
    refresh_token_key,
)


class FakeAsyncRedis:
    def __init__(self):
        self.data = {}
        self.expiries = {}
        self.closed = False

    async def set(self, key, value, ex=None):
        self.data[key] = value
        self.expiries[key] = ex

    async def get(self, key):
        return self.data.get(key)

    async def delete(self, key):
        return 1 if self.data.pop(key, None) is not None else 0

    async def aclose(self):
        self.closed = True


class FakeSyncRedis:
    def __init__(self):
        self.data = {}
        self.expiries = {}
        self.closed = False

    def set(self, key, value, ex=None):
        self.data[key] = value
        self.expiries[key] = ex

    def get(self, key):
        return self.data.get(key)

    def delete(self, key):
        return 1 if self.data.pop(key, None) is not None else 0

    def close(self):
        self.closed = True


def test_key_layout():
    assert refresh_token_key("abc") == "refresh_token:abc"


async def test_async_cache_uses_prefixed_keys_and_ttl():
    cache = RedisCache("redis://localhost:6379/0")
    fake = FakeAsyncRedis()
    cache.client = fake

    await cache.put_refresh_token("jti-1", "user-1", 604800)

    assert fake.data == {"refresh_token:jti-1": "user-1"}
    assert fake.expiries["refresh_token:jti-1"] == 604800
    assert await cache.get_refresh_token_user("jti-1") == "user-1"

    await cache.delete_refresh_token("jti-1")
    await cache.delete_refresh_token("jti-1")
    assert await cache.get_refresh_token_user("jti-1") is None

    await cache.close()
    assert fake.closed is True


async def test_ttl_never_below_one_second():
    cache = RedisCache("redis://localhost:6379/0")
    fake = FakeAsyncRedis()
    cache.client = fake

    await cache.put_refresh_token("jti-1", "user-1", 0.2)

    assert fake.expiries["refresh_token:jti-1"] == 1


async def test_sync_cache_exposes_same_interface():
    cache = SyncRedisCache("redis://localhost:6379/0")
    fake = FakeSyncRedis()
    cache._sync_client = fake

    await cache.put_refresh_token("jti-2", "user-2", 60)
    assert await cache.get_refresh_token_user("jti-2") == "user-2"
    assert fake.expiries["refresh_token:jti-2"] == 60

    await cache.delete_refresh_token("jti-2")
    assert await cache.get_refresh_token_user("jti-2") is None

    await cache.close()
    assert fake.closed is True
