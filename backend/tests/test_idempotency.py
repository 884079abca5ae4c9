from datetime import datetime, timedelta, timezone

import pytest

from courierhub import models
from courierhub.database import atomic
from courierhub.services.errors import IdempotencyConflictError
from courierhub.services.idempotency import request_hash, run_idempotent


class Counter:
    def __init__(self):
        self.calls = 0

    def __call__(self):
        self.calls += 1
        return {"call": self.calls}


def _run(db, fn, *, key="k-1", payload=None, actor_id=10, **kwargs):
    with atomic(db):
        return run_idempotent(
            db,
            actor_id=actor_id,
            operation="order.confirm",
            key=key,
            payload=payload if payload is not None else {"order_id": 1},
            fn=fn,
            **kwargs,
        )


def test_same_key_and_payload_replays_the_stored_response(db_session):
    fn = Counter()

    first = _run(db_session, fn, status_code=201)
    second = _run(db_session, fn, status_code=201)

    assert fn.calls == 1
    assert first.replayed is False
    assert second.replayed is True
    assert second.body == {"call": 1}
    assert second.status_code == 201


def test_same_key_with_a_different_payload_is_rejected(db_session):
    fn = Counter()
    _run(db_session, fn)

    with pytest.raises(IdempotencyConflictError) as exc:
        _run(db_session, fn, payload={"order_id": 2})
    assert exc.value.code == "idempotency_key_reused"
    assert fn.calls == 1


def test_no_key_runs_every_time(db_session):
    fn = Counter()
    _run(db_session, fn, key=None)
    _run(db_session, fn, key=None)

    assert fn.calls == 2
    assert db_session.query(models.IdempotencyKey).count() == 0


def test_keys_are_scoped_per_actor(db_session):
    fn = Counter()
    _run(db_session, fn, actor_id=10)
    outcome = _run(db_session, fn, actor_id=11)

    assert outcome.replayed is False
    assert fn.calls == 2


def test_expired_key_runs_again(db_session):
    fn = Counter()
    t0 = datetime(2026, 10, 1, 9, 0, tzinfo=timezone.utc)
    _run(db_session, fn, ttl_hours=1, now=t0)

    outcome = _run(db_session, fn, ttl_hours=1, now=t0 + timedelta(hours=2))

    assert outcome.replayed is False
    assert fn.calls == 2
    assert db_session.query(models.IdempotencyKey).count() == 1


def test_failed_work_does_not_store_the_key(db_session):
    def boom():
        raise RuntimeError("downstream failure")

    with pytest.raises(RuntimeError):
        _run(db_session, boom)
    assert db_session.query(models.IdempotencyKey).count() == 0


def test_request_hash_ignores_key_order():
    assert request_hash({"a": 1, "b": 2}) == request_hash({"b": 2, "a": 1})
    assert request_hash({"a": 1}) != request_hash({"a": 2})
