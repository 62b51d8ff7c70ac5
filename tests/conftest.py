# tests/conftest.py
import pathlib, sys
import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient

ROOT_DIR = pathlib.Path(__file__).resolve().parents[1]

# Make the top-level modules importable
sys.path.insert(0, str(ROOT_DIR))

from kpi_endpoints import create_kpi_router  # noqa: E402
from kpi_models import parse_filter_request  # noqa: E402
from query_cache import QueryCache  # noqa: E402

API_KEY = "test-key"


class RecordingDataSource:
    """Stands in for PoolDataSource: records every (sql, params) and replays canned rows.

    ``responses`` is either a list of row lists consumed in call order, or a
    callable ``(sql, params) -> rows``. With nothing left, queries return no rows.
    """

    def __init__(self, responses=None, error=None):
        self.calls = []
        self.responses = responses if callable(responses) else list(responses or [])
        self.error = error

    async def query(self, sql, params=()):
        self.calls.append((sql, list(params)))
        if self.error is not None:
            raise self.error
        if callable(self.responses):
            return self.responses(sql, params)
        if self.responses:
            return self.responses.pop(0)
        return []


class FakeClock:
    def __init__(self, now=1_000.0):
        self.now = now

    def __call__(self):
        return self.now


def make_request(**overrides):
    body = {"dateRange": {"start": "2025-01-01", "end": "2025-01-31"}}
    body.update(overrides)
    return parse_filter_request(body)


def _verify_api_key(api_key: str):
    if api_key != API_KEY:
        raise HTTPException(status_code=401, detail="Invalid API key")


def make_client(data_source, cache=None):
    app = FastAPI()
    app.include_router(create_kpi_router(lambda: data_source, _verify_api_key, cache or QueryCache()))
    return TestClient(app)


@pytest.fixture()
def data_source():
    return RecordingDataSource()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def client(data_source):
    return make_client(data_source)
