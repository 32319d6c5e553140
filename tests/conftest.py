import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment must be in place before anything imports parley.config
_test_tmp_dir = tempfile.mkdtemp(prefix="parley_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("USER_KEY_ENCRYPTION_KEY", "test-user-key-encryption-material")
os.environ.setdefault("MODEL_API_KEY", "test-shared-model-key")
# Empty REDIS_URL keeps run admission in-process; point it at a server to exercise SyncRedisCache
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from parley.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402


class ScriptedBackend:
    """Model stand-in that plays back one scripted turn per ``stream`` call.

    A turn is a list of items: strings become token deltas, dicts are yielded
    as-is (tool calls, final messages), numbers are a pause in seconds and
    exception instances are raised at that point in the stream.
    """

    def __init__(self, turns, *, summary="A short summary.", gate=None):
        self.turns = [list(turn) for turn in turns]
        self.summary = summary
        self.gate = gate
        self.requests = []
        self.summary_prompts = []
        self.configs = []

    def bind(self, config):
        self.configs.append(config)
        return self

    async def stream(self, messages, tools=None):
        self.requests.append({"messages": [dict(m) for m in messages], "tools": tools})
        turn = self.turns.pop(0) if self.turns else ["ok"]
        for item in turn:
            if self.gate is not None:
                await self.gate.wait()
            if isinstance(item, BaseException):
                raise item
            if isinstance(item, (int, float)):
                await asyncio.sleep(item)
                continue
            if isinstance(item, str):
                yield {"event": "token", "data": item}
            else:
                yield item

    async def complete(self, prompt):
        self.summary_prompts.append(prompt)
        if isinstance(self.summary, BaseException):
            raise self.summary
        return self.summary


def tool_call(name, value="", call_id=None):
    return {
        "event": "tool_call",
        "data": {"id": call_id or f"call_{name}", "name": name, "input": value},
    }


@pytest.fixture(autouse=True)
def reset_runtime_state():
    # fresh state directory so the memory store starts empty for every test
    os.environ["SHARED_FS_ROOT"] = tempfile.mkdtemp(prefix="parley_test_")
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def script_model():
    """Install a ScriptedBackend on the runtime and return it."""

    def install(*turns, summary="A short summary.", gate=None):
        backend = ScriptedBackend(turns, summary=summary, gate=gate)
        get_runtime().backend_factory = backend.bind
        return backend

    return install


@pytest.fixture
def make_user():
    counter = {"n": 0}

    def create(**kwargs):
        counter["n"] += 1
        runtime = get_runtime()
        return runtime.store.create_user(f"user{counter['n']}@example.com", **kwargs)

    return create


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
