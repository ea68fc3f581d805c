import pytest
from conftest import FakeMailbox

from billsync.services.mailbox import load_message_source


def test_unconfigured_source_is_none():
    assert load_message_source(None) is None
    assert load_message_source("") is None


def test_load_source_from_module_and_class():
    source = load_message_source("conftest:FakeMailbox")

    assert isinstance(source, FakeMailbox)
    assert source.messages == []


@pytest.mark.parametrize("path", ["conftest", "conftest:", ":FakeMailbox"])
def test_malformed_source_path_rejected(path):
    with pytest.raises(ValueError):
        load_message_source(path)


def test_non_source_class_rejected():
    with pytest.raises(TypeError):
        load_message_source("conftest:FakeClock")
