import pytest

from cnpg_dispatcher import OperationDispatcher
from fakes import FakeResourceClient


@pytest.fixture
def fake_client():
    return FakeResourceClient()


@pytest.fixture
def dispatcher(fake_client):
    return OperationDispatcher(fake_client)
