from __future__ import annotations

import pytest
from aiohttp.test_utils import make_mocked_request

from roomrelay.auth import AdmissionGate, Unauthorized, extract_token


def test_known_token_admitted():
    gate = AdmissionGate(["a", "b"])
    gate.admit("b")
    assert gate.verify_token("a")


@pytest.mark.parametrize("token", [None, "", "c", "a "])
def test_unknown_or_missing_token_rejected(token):
    gate = AdmissionGate(["a", "b"])
    with pytest.raises(Unauthorized) as exc:
        gate.admit(token)
    assert exc.value.reason == "unauthorized"


def test_empty_token_set_is_open_mode():
    gate = AdmissionGate([])
    assert gate.open_mode
    gate.admit(None)
    gate.admit("anything")


def test_blank_tokens_are_ignored():
    gate = AdmissionGate(["  ", ""])
    assert gate.open_mode
    assert AdmissionGate([" x "]).token_count == 1


def test_extract_token_from_query():
    request = make_mocked_request("GET", "/ws?token=abc")
    assert extract_token(request) == "abc"


def test_extract_token_from_bearer_header():
    request = make_mocked_request("GET", "/ws", headers={"Authorization": "Bearer xyz"})
    assert extract_token(request) == "xyz"


def test_extract_token_absent():
    request = make_mocked_request("GET", "/ws", headers={"Authorization": "Basic Zm9v"})
    assert extract_token(request) is None
