import pytest

import webshare


@pytest.fixture(autouse=True)
def clear_log_history():
    """Each test starts with an empty log history."""
    webshare.logger.history.clear()
    yield
    webshare.logger.history.clear()


def logged(fragment):
    return [line for line in webshare.logger.history if fragment in line]
