"""S3 state backend using conditional writes for locks and state."""

from __future__ import annotations

import json
import logging

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from stackgate.backend.base import LockHandle, StateBackend
from stackgate.domain.resources import StateSnapshot
from stackgate.domain.units import Unit
from stackgate.errors import ConfigurationError, ConflictError, LockError
from stackgate.utils.serialization import json_default

logger = logging.getLogger(__name__)

_LOCK_SUFFIX = ".lock"
_PRECONDITION_CODES = frozenset({"PreconditionFailed", "ConditionalRequestConflict", "412", "409"})
_MISSING_CODES = frozenset({"NoSuchKey", "404", "NotFound"})


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def create_s3_client(
    region: str | None,
    profile: str | None,
    timeout_seconds: int = 30,
):
    session = boto3.Session(profile_name=profile, region_name=region)
    config = Config(
        read_timeout=timeout_seconds,
        connect_timeout=timeout_seconds,
        retries={"max_attempts": 2},
    )
    return session.client("s3", config=config)


class S3StateBackend(StateBackend):
    """All units share one bucket; each unit owns ``key`` and ``key.lock``."""

    def __init__(self, bucket: str, client, **kwargs) -> None:
        super().__init__(**kwargs)
        if not bucket:
            raise ConfigurationError("S3 state backend requires a bucket name")
        self._bucket = bucket
        self._client = client

    def _try_acquire(self, unit: Unit, handle: LockHandle) -> None:
        body = json.dumps(handle.holder_info()).encode("utf-8")
        try:
            self._client.put_object(
                Bucket=self._bucket,
                Key=handle.key + _LOCK_SUFFIX,
                Body=body,
                ContentType="application/json",
                IfNoneMatch="*",
            )
        except ClientError as exc:
            if _error_code(exc) in _PRECONDITION_CODES:
                raise LockError(unit.name, self._holder(handle.key)) from None
            raise

    def _release(self, handle: LockHandle) -> None:
        if not self.is_held(handle):
            logger.warning("State lock for %s is no longer held by %s", handle.unit, handle.lock_id)
            return
        self._client.delete_object(Bucket=self._bucket, Key=handle.key + _LOCK_SUFFIX)

    def _holder(self, key: str) -> dict[str, object] | None:
        payload = self._get_json(key + _LOCK_SUFFIX)
        if payload is None:
            return None
        data, _etag = payload
        return data if isinstance(data, dict) else {"owner": "unknown"}

    def _get_json(self, key: str) -> tuple[object, str] | None:
        try:
            response = self._client.get_object(Bucket=self._bucket, Key=key)
        except ClientError as exc:
            if _error_code(exc) in _MISSING_CODES:
                return None
            raise
        raw = response["Body"].read()
        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ConfigurationError(
                f"Corrupt JSON object s3://{self._bucket}/{key}: {exc}"
            ) from exc
        return data, str(response.get("ETag", ""))

    def read_state(self, unit: Unit) -> StateSnapshot:
        payload = self._get_json(unit.backend.key)
        if payload is None:
            return StateSnapshot.empty(unit.name)
        data, etag = payload
        if not isinstance(data, dict):
            raise ConfigurationError(f"State for unit '{unit.name}' is not a JSON object")
        return StateSnapshot.from_payload(unit.name, data, etag)

    def _write(self, unit: Unit, snapshot: StateSnapshot) -> StateSnapshot:
        payload = snapshot.to_payload()
        body = json.dumps(payload, ensure_ascii=True, sort_keys=True, default=json_default).encode(
            "utf-8"
        )
        condition: dict[str, str]
        if snapshot.version is None:
            condition = {"IfNoneMatch": "*"}
        else:
            condition = {"IfMatch": snapshot.version}
        try:
            response = self._client.put_object(
                Bucket=self._bucket,
                Key=unit.backend.key,
                Body=body,
                ContentType="application/json",
                **condition,
            )
        except ClientError as exc:
            if _error_code(exc) in _PRECONDITION_CODES:
                current = self._get_json(unit.backend.key)
                raise ConflictError(
                    unit.name, snapshot.version, current[1] if current else None
                ) from None
            raise
        return StateSnapshot.from_payload(unit.name, payload, str(response.get("ETag", "")))
