from __future__ import annotations

import io
import json
from unittest.mock import patch

import pytest
from botocore.exceptions import ClientError

from stackgate.backend.s3 import S3StateBackend, create_s3_client
from stackgate.domain.resources import ResourceState, StateSnapshot
from stackgate.errors import ConfigurationError, ConflictError, LockError


def _client_error(code: str, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class FakeS3:
    """Honours IfNoneMatch/IfMatch the way S3 conditional writes do."""

    def __init__(self) -> None:
        self.objects: dict[str, tuple[bytes, str]] = {}
        self._counter = 0

    def put_object(self, *, Bucket, Key, Body, ContentType, IfNoneMatch=None, IfMatch=None):
        current = self.objects.get(Key)
        if IfNoneMatch == "*" and current is not None:
            raise _client_error("PreconditionFailed", "PutObject")
        if IfMatch is not None and (current is None or current[1] != IfMatch):
            raise _client_error("PreconditionFailed", "PutObject")
        self._counter += 1
        etag = f'"etag-{self._counter}"'
        self.objects[Key] = (Body, etag)
        return {"ETag": etag}

    def get_object(self, *, Bucket, Key):
        if Key not in self.objects:
            raise _client_error("NoSuchKey", "GetObject")
        body, etag = self.objects[Key]
        return {"Body": io.BytesIO(body), "ETag": etag}

    def delete_object(self, *, Bucket, Key):
        self.objects.pop(Key, None)
        return {}


@pytest.fixture
def s3() -> FakeS3:
    return FakeS3()


@pytest.fixture
def backend(s3: FakeS3) -> S3StateBackend:
    return S3StateBackend("tf-state", s3, lock_timeout_seconds=0)


def test_lock_object_created_and_removed(backend, s3, make_unit) -> None:
    unit = make_unit("app", kind="s3", location="tf-state")
    handle = backend.acquire_lock(unit, owner="run-1")

    body, _ = s3.objects["app/state.json.lock"]
    assert json.loads(body)["lock_id"] == handle.lock_id

    with pytest.raises(LockError) as excinfo:
        backend.acquire_lock(unit, owner="run-2", wait=False)
    assert excinfo.value.holder["owner"] == "run-1"

    backend.release_lock(handle)
    assert "app/state.json.lock" not in s3.objects


def test_state_written_with_etag_condition(backend, s3, make_unit) -> None:
    unit = make_unit("app", kind="s3", location="tf-state")
    resources = {"x": ResourceState(resource_id="x", type="bucket")}

    with backend.locked(unit, owner="run-1") as handle:
        initial = StateSnapshot.empty("app").evolve(resources)
        first = backend.write_state(unit, initial, handle=handle)
        second = backend.write_state(unit, first.evolve({}), handle=handle)

    assert first.version == '"etag-2"'
    assert second.version == '"etag-3"'
    assert backend.read_state(unit).serial == 2


def test_precondition_failure_is_conflict(backend, s3, make_unit) -> None:
    unit = make_unit("app", kind="s3", location="tf-state")
    stale = StateSnapshot(unit="app", version='"etag-old"')
    s3.objects["app/state.json"] = (b'{"serial": 3, "resources": {}}', '"etag-new"')

    with backend.locked(unit, owner="run-1") as handle:
        with pytest.raises(ConflictError) as excinfo:
            backend.write_state(unit, stale.evolve({}), handle=handle)

    assert excinfo.value.expected == '"etag-old"'
    assert excinfo.value.actual == '"etag-new"'


def test_other_client_errors_propagate(backend, make_unit) -> None:
    unit = make_unit("app", kind="s3", location="tf-state")
    with patch.object(
        backend._client, "get_object", side_effect=_client_error("AccessDenied", "GetObject")
    ):
        with pytest.raises(ClientError):
            backend.read_state(unit)


def test_corrupt_state_object(backend, s3, make_unit) -> None:
    unit = make_unit("app", kind="s3", location="tf-state")
    s3.objects["app/state.json"] = (b"not json", '"e"')
    with pytest.raises(ConfigurationError, match="Corrupt JSON"):
        backend.read_state(unit)


def test_bucket_required(s3) -> None:
    with pytest.raises(ConfigurationError):
        S3StateBackend("", s3)


@patch("stackgate.backend.s3.boto3.Session")
def test_create_s3_client_uses_session(mock_session) -> None:
    create_s3_client("eu-west-1", "ops", timeout_seconds=5)

    mock_session.assert_called_once_with(profile_name="ops", region_name="eu-west-1")
    args, kwargs = mock_session.return_value.client.call_args
    assert args == ("s3",)
    assert kwargs["config"].read_timeout == 5
