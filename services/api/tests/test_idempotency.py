import json
import uuid
from unittest.mock import AsyncMock, patch

import pytest
from fakeredis import FakeAsyncRedis
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError

from decision_os.infra.idempotency import (
    idempotency_clear_key,
    idempotency_precheck,
    idempotency_store_result,
)


@pytest.fixture
def fake_redis():
    return FakeAsyncRedis(decode_responses=True)


@pytest.fixture(autouse=True)
def patch_redis_client(fake_redis):
    with patch("decision_os.infra.idempotency.get_redis", return_value=fake_redis):
        yield


def make_request(idem_key=None, body=b'{"eventId": "evt-1"}'):
    req = AsyncMock(spec=Request)
    req.headers = {"Idempotency-Key": idem_key} if idem_key else {}
    req.method = "POST"
    req.url.path = "/api/decision-os/feedback"
    req.body = AsyncMock(return_value=body)
    return req


@pytest.mark.asyncio
async def test_precheck_missing_header():
    with pytest.raises(HTTPException) as exc:
        await idempotency_precheck(make_request(), household_key="hh1", route_key="feedback")
    assert exc.value.status_code == 400


@pytest.mark.asyncio
async def test_idempotency_flow(fake_redis):
    idem_key = str(uuid.uuid4())
    req = make_request(idem_key)

    # First call proceeds and takes the processing lock
    res = await idempotency_precheck(req, household_key="hh1", route_key="feedback")
    assert isinstance(res, tuple)
    rkey, rhash = res
    assert rkey == f"decision_os:idemp:hh1:feedback:{idem_key}"
    assert json.loads(await fake_redis.get(rkey))["state"] == "processing"

    # Concurrent repeat while processing
    with pytest.raises(HTTPException) as exc:
        await idempotency_precheck(req, household_key="hh1", route_key="feedback")
    assert exc.value.status_code == 409

    await idempotency_store_result(rkey, rhash, status=200, body={"recorded": True})
    data = json.loads(await fake_redis.get(rkey))
    assert data["state"] == "done"
    assert data["body"] == {"recorded": True}

    # Completed request is replayed
    replay = await idempotency_precheck(req, household_key="hh1", route_key="feedback")
    assert isinstance(replay, JSONResponse)
    assert json.loads(replay.body) == {"recorded": True}
    assert replay.status_code == 200


@pytest.mark.asyncio
async def test_key_reused_with_different_payload():
    idem_key = str(uuid.uuid4())
    await idempotency_precheck(make_request(idem_key), household_key="hh1", route_key="feedback")

    other = make_request(idem_key, body=b'{"eventId": "evt-2"}')
    with pytest.raises(HTTPException) as exc:
        await idempotency_precheck(other, household_key="hh1", route_key="feedback")
    assert exc.value.status_code == 409


@pytest.mark.asyncio
async def test_keys_are_scoped_per_household():
    idem_key = str(uuid.uuid4())
    first = await idempotency_precheck(make_request(idem_key), household_key="hh1", route_key="feedback")
    second = await idempotency_precheck(make_request(idem_key), household_key="hh2", route_key="feedback")
    assert isinstance(second, tuple)
    assert first[0] != second[0]


@pytest.mark.asyncio
async def test_clear_key_releases_lock(fake_redis):
    idem_key = str(uuid.uuid4())
    rkey, _ = await idempotency_precheck(make_request(idem_key), household_key="hh1", route_key="feedback")

    await idempotency_clear_key(rkey)
    assert await fake_redis.get(rkey) is None


@pytest.mark.asyncio
async def test_clear_key_tolerates_redis_outage():
    broken = AsyncMock()
    broken.delete.side_effect = RedisError("down")
    with patch("decision_os.infra.idempotency.get_redis", return_value=broken):
        await idempotency_clear_key("decision_os:idemp:hh1:feedback:x")
