"""
Shared fixtures: loaded sessions over FakeRuntime and a ByteTokenizer.
"""

import pytest

from tokengen.runtime.fake_runtime import ByteTokenizer, FakeRuntime
from tokengen.session import InferenceSession


@pytest.fixture
def tokenizer():
    return ByteTokenizer()


@pytest.fixture
def make_session():
    """Factory building loaded sessions over FakeRuntime; unloaded on teardown."""
    sessions = []

    def factory(name: str = "target", **runtime_kwargs) -> InferenceSession:
        runtime = FakeRuntime(name=name, **runtime_kwargs)
        session = InferenceSession(runtime, name=name)
        session.load()
        sessions.append(session)
        return session

    yield factory
    for session in sessions:
        session.unload()


@pytest.fixture
def session(make_session):
    return make_session()
