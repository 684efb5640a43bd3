import pytest

from mcpgate.shared.exceptions import InvalidCursor
from mcpgate.shared.pagination import CursorCodec, fingerprint


def test_fingerprint_ignores_pagination_keys_and_none():
    assert fingerprint({"q": "x", "limit": 5, "cursor": "abc"}) == fingerprint({"q": "x"})
    assert fingerprint({"q": "x", "tag": None}) == fingerprint({"q": "x"})
    assert fingerprint({"b": 1, "a": 2}) == fingerprint({"a": 2, "b": 1})


def test_fingerprint_depends_on_filters_and_scope():
    assert fingerprint({"q": "x"}) != fingerprint({"q": "y"})
    assert fingerprint({"q": "x"}, scope="search") != fingerprint({"q": "x"}, scope="list")


def test_cursor_decodes_to_its_position():
    codec = CursorCodec()
    fp = fingerprint({"q": "x"})
    cursor = codec.encode(20, fp)
    assert codec.decode(cursor, fp) == 20


def test_cursor_is_bound_to_filters():
    codec = CursorCodec()
    cursor = codec.encode(20, fingerprint({"q": "x"}))
    with pytest.raises(InvalidCursor, match="different set of filters"):
        codec.decode(cursor, fingerprint({"q": "y"}))


def test_cursor_from_another_key_is_rejected():
    fp = fingerprint({})
    cursor = CursorCodec(b"one").encode(20, fp)
    with pytest.raises(InvalidCursor):
        CursorCodec(b"two").decode(cursor, fp)


def test_configured_key_survives_new_codec():
    fp = fingerprint({})
    cursor = CursorCodec(b"shared-key").encode(40, fp)
    assert CursorCodec(b"shared-key").decode(cursor, fp) == 40


@pytest.mark.parametrize("cursor", ["", "not-a-cursor", "abc.def", "....", "eyJwIjoxfQ.AAAA"])
def test_malformed_cursor(cursor: str):
    with pytest.raises(InvalidCursor):
        CursorCodec().decode(cursor, fingerprint({}))


def test_tampered_cursor():
    codec = CursorCodec()
    fp = fingerprint({})
    body, signature = codec.encode(20, fp).split(".")
    forged = codec.encode(1000, fp).split(".")[0]
    with pytest.raises(InvalidCursor):
        codec.decode(f"{forged}.{signature}", fp)
    assert codec.decode(f"{body}.{signature}", fp) == 20
