import os

# Settings are read and the engine is built at import time.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ADMIN_TOKEN"] = "test-admin-token"
os.environ["DELIVERY_WORKER_ENABLED"] = "false"

import asyncio  # noqa: E402
import fnmatch  # noqa: E402
import uuid  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine, event  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

import courier.models  # noqa: E402,F401
from courier.database import Base  # noqa: E402
from courier.models import Bot  # noqa: E402
from courier.services.delivery_queue import PROMOTE_DUE_SCRIPT  # noqa: E402


class FakePipeline:
    """Queues commands and runs them in order on execute()."""

    def __init__(self, redis):
        self._redis = redis
        self._commands = []

    def __getattr__(self, name):
        method = getattr(self._redis, name)

        def queue(*args, **kwargs):
            self._commands.append((method, args, kwargs))
            return self

        return queue

    async def execute(self):
        if self._redis.fail_next_execute:
            self._redis.fail_next_execute = False
            self._commands = []
            raise ConnectionError("redis unavailable")
        results = []
        for method, args, kwargs in self._commands:
            results.append(await method(*args, **kwargs))
        self._commands = []
        return results


class FakeScript:
    """Runs a registered Lua script as one uninterrupted Python call."""

    def __init__(self, redis, script):
        self._redis = redis
        self._script = script

    async def __call__(self, keys=(), args=(), client=None):
        if self._redis.fail_next_script:
            self._redis.fail_next_script = False
            raise ConnectionError("redis unavailable")
        if self._script == PROMOTE_DUE_SCRIPT:
            return self._redis._promote_due(keys[0], keys[1], float(args[0]), int(args[1]))
        raise NotImplementedError("unknown script")


class FakeRedis:
    """In-memory stand-in for the subset of redis.asyncio the services use."""

    def __init__(self):
        self.strings = {}
        self.lists = {}
        self.zsets = {}
        self.ttls = {}
        self.fail_next_execute = False
        self.fail_next_script = False

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    def register_script(self, script):
        return FakeScript(self, script)

    def _promote_due(self, delayed_key, waiting_key, now, limit):
        zset = self.zsets.get(delayed_key, {})
        due = [member for member, score in sorted(zset.items(), key=lambda item: item[1]) if score <= now][:limit]
        for member in due:
            del zset[member]
            self.lists.setdefault(waiting_key, []).append(member)
        if not zset:
            self.zsets.pop(delayed_key, None)
        return len(due)

    async def ping(self):
        return True

    async def set(self, key, value, ex=None, nx=False):
        if nx and key in self.strings:
            return None
        self.strings[key] = str(value)
        if ex is not None:
            self.ttls[key] = ex
        return True

    async def get(self, key):
        return self.strings.get(key)

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            for store in (self.strings, self.lists, self.zsets):
                if key in store:
                    del store[key]
                    removed += 1
            self.ttls.pop(key, None)
        return removed

    async def expire(self, key, seconds):
        if key in self.strings or key in self.lists or key in self.zsets:
            self.ttls[key] = seconds
            return True
        return False

    async def ttl(self, key):
        return self.ttls.get(key, -1)

    async def keys(self, pattern="*"):
        all_keys = set(self.strings) | set(self.lists) | set(self.zsets)
        return [key for key in all_keys if fnmatch.fnmatch(key, pattern)]

    async def rpush(self, key, *values):
        items = self.lists.setdefault(key, [])
        items.extend(str(v) for v in values)
        return len(items)

    async def lpush(self, key, *values):
        items = self.lists.setdefault(key, [])
        for value in values:
            items.insert(0, str(value))
        return len(items)

    async def lrange(self, key, start, end):
        items = self.lists.get(key, [])
        end = len(items) - 1 if end == -1 else end
        return list(items[start : end + 1])

    async def llen(self, key):
        return len(self.lists.get(key, []))

    async def lrem(self, key, count, value):
        items = self.lists.get(key, [])
        removed = 0
        kept = []
        for item in items:
            if item == value and (count == 0 or removed < abs(count)):
                removed += 1
                continue
            kept.append(item)
        if kept:
            self.lists[key] = kept
        else:
            self.lists.pop(key, None)
        return removed

    async def ltrim(self, key, start, end):
        items = self.lists.get(key, [])
        end = len(items) - 1 if end == -1 else end
        self.lists[key] = items[start : end + 1]
        return True

    async def lmove(self, source, destination, src="LEFT", dest="RIGHT"):
        items = self.lists.get(source)
        if not items:
            return None
        value = items.pop(0) if src == "LEFT" else items.pop()
        if not items:
            self.lists.pop(source, None)
        target = self.lists.setdefault(destination, [])
        if dest == "LEFT":
            target.insert(0, value)
        else:
            target.append(value)
        return value

    async def blmove(self, first_list, second_list, timeout, src="LEFT", dest="RIGHT"):
        value = await self.lmove(first_list, second_list, src, dest)
        if value is None:
            # Yield like a blocking pop would, so idle worker loops do not spin.
            await asyncio.sleep(0.01 if timeout else 0)
        return value

    async def zadd(self, key, mapping, nx=False):
        zset = self.zsets.setdefault(key, {})
        added = 0
        for member, score in mapping.items():
            if nx and member in zset:
                continue
            if member not in zset:
                added += 1
            zset[member] = float(score)
        return added

    async def zrem(self, key, *members):
        zset = self.zsets.get(key, {})
        removed = 0
        for member in members:
            if member in zset:
                del zset[member]
                removed += 1
        if not zset:
            self.zsets.pop(key, None)
        return removed

    async def zscore(self, key, member):
        return self.zsets.get(key, {}).get(member)

    async def zcard(self, key):
        return len(self.zsets.get(key, {}))

    async def zrangebyscore(self, key, min, max):
        low = float("-inf") if min == "-inf" else float(min)
        high = float("inf") if max == "+inf" else float(max)
        zset = self.zsets.get(key, {})
        return [member for member, score in sorted(zset.items(), key=lambda item: item[1]) if low <= score <= high]


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def db_engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'courier.db'}")

    # pysqlite needs these hooks for SAVEPOINT to work. WAL lets a reading
    # session stay open while a service session commits.
    @event.listens_for(engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        dbapi_connection.execute("PRAGMA journal_mode=WAL")

    @event.listens_for(engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_bot(db_session):
    def _make_bot(**overrides):
        values = {
            "name": "Support Bot",
            "identifier": f"{uuid.uuid4().int % 10**12}@s.whatsapp.net",
            "api_key": "crr_" + uuid.uuid4().hex,
            "webhook_url": "https://flows.example.com/hook",
            "response_delay": 0,
        }
        values.update(overrides)
        bot = Bot(**values)
        db_session.add(bot)
        db_session.commit()
        db_session.refresh(bot)
        return bot

    return _make_bot
