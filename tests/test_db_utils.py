import pytest
from sqlalchemy.exc import DisconnectionError, IntegrityError, OperationalError

from db_utils import RetryPolicy, is_transient_error, retry_with_backoff, run_in_transaction
from errors import TransientStoreError, ValidationError
from models import Tenant, db


def _connection_lost():
    return OperationalError('SELECT 1', {}, Exception('server closed the connection unexpectedly'))


class Flaky:
    def __init__(self, failures, exc_factory=_connection_lost):
        self.failures = failures
        self.exc_factory = exc_factory
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc_factory()
        return 'ok'


def _policy(sleeps):
    return RetryPolicy(max_retries=3, base_delay=1.0, sleep=sleeps.append)


def test_transient_error_classification():
    assert is_transient_error(_connection_lost())
    assert is_transient_error(DisconnectionError('gone'))
    assert is_transient_error(OperationalError('SELECT 1', {}, Exception('x'), connection_invalidated=True))
    assert not is_transient_error(OperationalError('SELECT 1', {}, Exception('database is locked')))
    assert not is_transient_error(IntegrityError('INSERT', {}, Exception('UNIQUE constraint failed')))
    assert not is_transient_error(ValueError('bad input'))


def test_backoff_schedule_is_exponential():
    assert RetryPolicy().delays() == [1.0, 2.0, 4.0]


def test_transient_failures_are_retried_until_success():
    sleeps = []
    func = Flaky(failures=2)
    assert retry_with_backoff(func, _policy(sleeps)) == 'ok'
    assert func.calls == 3
    assert sleeps == [1.0, 2.0]


def test_retries_exhausted_raise_transient_store_error():
    sleeps = []
    func = Flaky(failures=10)
    with pytest.raises(TransientStoreError) as info:
        retry_with_backoff(func, _policy(sleeps))
    assert func.calls == 4
    assert sleeps == [1.0, 2.0, 4.0]
    assert isinstance(info.value.__cause__, OperationalError)
    assert info.value.status_code == 500


def test_non_transient_errors_are_not_retried():
    sleeps = []
    func = Flaky(failures=1, exc_factory=lambda: ValidationError('nope'))
    with pytest.raises(ValidationError):
        retry_with_backoff(func, _policy(sleeps))
    assert func.calls == 1
    assert sleeps == []


def test_run_in_transaction_rolls_back_on_error(app):
    with app.app_context():
        def work():
            db.session.add(Tenant(name='half written'))
            db.session.flush()
            raise RuntimeError('boom')

        with pytest.raises(RuntimeError):
            run_in_transaction(work)
        assert db.session.execute(db.select(Tenant)).first() is None


def test_run_in_transaction_replays_whole_unit(app):
    attempts = []
    with app.app_context():
        def work():
            attempts.append(1)
            db.session.add(Tenant(name=f'attempt {len(attempts)}'))
            db.session.flush()
            if len(attempts) == 1:
                raise _connection_lost()
            return 'done'

        assert run_in_transaction(work) == 'done'
        names = db.session.execute(db.select(Tenant.name)).scalars().all()
        assert names == ['attempt 2']


def test_constraint_violation_becomes_validation_error(app):
    with app.app_context():
        def work():
            raise IntegrityError('INSERT', {}, Exception('UNIQUE constraint failed'))

        with pytest.raises(ValidationError):
            run_in_transaction(work)


def test_policy_reads_config():
    policy = RetryPolicy.from_config({'DB_RETRY_MAX_RETRIES': '2', 'DB_RETRY_BASE_DELAY': '0.5'})
    assert policy.delays() == [0.5, 1.0]
