from __future__ import annotations

import pytest
from kubernetes.client import ApiException
from urllib3.exceptions import ProtocolError

from codeserver.src.errors import (
    LXDError,
    TransientError,
    ValidationError,
    is_conflict,
    is_not_found,
    is_transient,
)


def test_status_helpers_only_match_api_exceptions() -> None:
    assert is_not_found(ApiException(status=404))
    assert not is_not_found(LXDError("gone", status=404))
    assert is_conflict(ApiException(status=409))
    assert not is_conflict(ApiException(status=422))


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (ApiException(status=409), True),
        (ApiException(status=429), True),
        (ApiException(status=503), True),
        (ApiException(status=0), True),
        (ApiException(status=403), False),
        (ApiException(status=422), False),
        (TransientError("cleanup pending"), True),
        (LXDError("host unreachable"), True),
        (ProtocolError("connection reset"), True),
        (ConnectionRefusedError(), True),
        (ValidationError("bad spec"), False),
        (KeyError("status"), False),
    ],
)
def test_is_transient(exc: BaseException, expected: bool) -> None:
    assert is_transient(exc) is expected
