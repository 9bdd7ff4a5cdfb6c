import json

from core import protocol
from core.protocol import Notification, Request, Response


def test_decode_request_response_notification():
    req = protocol.decode('{"jsonrpc": "2.0", "id": 3, "method": "ping", "params": []}')
    assert req == Request(id=3, method="ping", params=[])

    resp = protocol.decode('{"jsonrpc": "2.0", "id": 3, "result": "pong"}')
    assert isinstance(resp, Response)
    assert resp.result == "pong" and not resp.is_error

    err = protocol.decode('{"jsonrpc": "2.0", "id": 4, "error": {"code": -32601, "message": "nope"}}')
    assert err.is_error
    assert err.error == {"code": -32601, "message": "nope"}

    note = protocol.decode('{"jsonrpc": "2.0", "method": "welcome", "params": {"version": "1.0.0"}}')
    assert note == Notification(method="welcome", params={"version": "1.0.0"})


def test_response_with_null_result_is_valid():
    resp = protocol.decode('{"jsonrpc": "2.0", "id": 1, "result": null}')
    assert isinstance(resp, Response)
    assert resp.result is None


def test_request_without_params_gets_empty_list():
    req = protocol.decode('{"jsonrpc": "2.0", "id": 1, "method": "getAllUnits"}')
    assert req.params == []


def test_malformed_frames_are_dropped():
    assert protocol.decode("not json") is None
    assert protocol.decode("[1, 2, 3]") is None
    assert protocol.decode('{"id": 1, "result": "x"}') is None  # missing version
    assert protocol.decode('{"jsonrpc": "1.0", "id": 1, "result": "x"}') is None
    assert protocol.decode('{"jsonrpc": "2.0", "id": true, "result": "x"}') is None
    assert protocol.decode('{"jsonrpc": "2.0", "id": "7", "method": "ping"}') is None
    assert protocol.decode('{"jsonrpc": "2.0", "id": 1, "method": "ping", "params": {"a": 1}}') is None
    assert protocol.decode('{"jsonrpc": "2.0", "id": 1}') is None
    assert protocol.decode('{"jsonrpc": "2.0", "id": 1, "error": "boom"}') is None
    assert protocol.decode(b"\xff\xfe") is None


def test_encode_omits_result_on_error():
    frame = json.loads(protocol.encode(protocol.make_error(5, protocol.SELF_PROTECTED, "no")))
    assert frame == {"jsonrpc": "2.0", "id": 5, "error": {"code": -32001, "message": "no"}}

    frame = json.loads(protocol.encode(protocol.make_response(6, False)))
    assert frame == {"jsonrpc": "2.0", "id": 6, "result": False}


def test_encode_decode_request_preserves_params():
    raw = protocol.encode(Request(id=9, method="setUnitStatus", params=["sample", True]))
    assert protocol.decode(raw) == Request(id=9, method="setUnitStatus", params=["sample", True])
