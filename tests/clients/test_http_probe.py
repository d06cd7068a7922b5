"""
Tests for the HTTP health probe client
"""

# Standard
from unittest import mock

# Third Party
import pytest
import urllib3

# Local
from upgr8.clients import HttpProbeClient

URL = "http://web-canary.test.svc/healthz"


def make_client(status=None, error=None):
    pool_manager = mock.Mock()
    if error is not None:
        pool_manager.request.side_effect = error
    else:
        pool_manager.request.return_value = mock.Mock(status=status)
    return HttpProbeClient(pool_manager), pool_manager


@pytest.mark.parametrize(
    ["status", "passed"],
    [(200, True), (204, True), (302, True), (404, False), (500, False), (503, False)],
)
def test_http_probe_status(status, passed):
    """Make sure 2xx and 3xx responses pass and everything else fails"""
    client, _ = make_client(status=status)
    assert client.http_probe(URL, 2) is passed


@pytest.mark.parametrize(
    "error",
    [
        urllib3.exceptions.ConnectTimeoutError("timed out"),
        urllib3.exceptions.ReadTimeoutError(None, URL, "timed out"),
        urllib3.exceptions.NewConnectionError(None, "refused"),
    ],
)
def test_http_probe_transport_error(error):
    """Make sure transport errors are a failed probe"""
    client, _ = make_client(error=error)
    assert client.http_probe(URL, 2) is False


def test_http_probe_request():
    """Make sure a single GET is made with the timeout and no retries"""
    client, pool_manager = make_client(status=200)
    client.http_probe(URL, 1.5)
    args, kwargs = pool_manager.request.call_args
    assert args == ("GET", URL)
    assert kwargs["retries"] is False
    assert kwargs["timeout"].total == 1.5


def test_default_pool_manager():
    """Make sure a pool manager is created when none is given"""
    assert isinstance(HttpProbeClient().pool_manager, urllib3.PoolManager)
