"""
Tests for the FreeTDS binding that do not need the library itself.

Run with: python -m pytest tests/test_freetds.py
"""

import os
from unittest import mock

import pytest

from tdsclient import ResourceError
from tdsclient import _freetds as tds
from tdsclient.messages import NO_HANDLE, get_message_center


def test_missing_library_is_a_resource_error():
    env = {k: v for k, v in os.environ.items() if k != tds.LIBRARY_ENV_VAR}
    with mock.patch.dict(os.environ, env, clear=True), \
            mock.patch.object(tds.ctypes.util, "find_library", return_value=None):
        with pytest.raises(ResourceError, match="libsybdb"):
            tds._load_library()


def test_unloadable_library_is_a_resource_error():
    with mock.patch.dict(os.environ, {tds.LIBRARY_ENV_VAR: "/nonexistent/libsybdb.so"}):
        with pytest.raises(ResourceError, match="Could not load"):
            tds._load_library()


def test_message_callback_publishes():
    received = []
    unsubscribe = get_message_center().subscribe(received.append)
    try:
        result = tds._on_message(4242, 5701, 2, 0, b"Changed database context to 'x'.", b"srv01", None, 1)
    finally:
        unsubscribe()
    assert result == 0
    message = received[-1]
    assert message.code == 5701
    assert message.handle == 4242
    assert message.server == "srv01"
    assert message.procedure is None
    assert not message.is_error


def test_error_callback_records_last_error():
    center = get_message_center()
    center.clear(NO_HANDLE)
    result = tds._on_error(None, 9, 20009, 111, b"Unable to connect", b"Connection refused")
    assert result == tds.INT_CANCEL
    assert center.last_error(NO_HANDLE) == "Unable to connect (Connection refused)"
    center.clear(NO_HANDLE)
