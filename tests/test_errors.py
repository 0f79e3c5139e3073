import pytest

from txindex.errors import ConnectionFailure, IndexerError, Interrupted, TooPopular


def test_connection_failure_message_and_attribute():
    err = ConnectionFailure("refused")
    assert str(err) == "Connection error: refused"
    assert err.msg == "refused"


def test_interrupted_keeps_signal_number():
    err = Interrupted(15)
    assert err.sig == 15
    assert str(err).endswith("signal 15")


def test_too_popular_message():
    assert str(TooPopular()) == "Too many history entries"


@pytest.mark.parametrize(
    "error", [ConnectionFailure("x"), Interrupted(2), TooPopular()]
)
def test_all_errors_are_indexer_errors(error):
    with pytest.raises(IndexerError) as info:
        raise error
    assert info.value is error