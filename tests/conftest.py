import pytest

from tv_executor.config import Timings, get_broker_profile
from tv_executor.execution_log import ExecutionLog
from tests.fakes import FakeClock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def timings(clock):
    return Timings.instant(sleep=clock.sleep, clock=clock)


@pytest.fixture
def paper_profile():
    return get_broker_profile('paper', 'main')


@pytest.fixture
def prod_profile():
    return get_broker_profile('prod', 'main')


@pytest.fixture
def log(clock):
    return ExecutionLog(clock=clock)
