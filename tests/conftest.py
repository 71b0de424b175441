import pytest
from ethproto.contracts import Contract


@pytest.fixture(autouse=True)
def clean_contracts():
    """Cleans the contract registry after each test"""
    yield
    Contract.manager.clean_all()
