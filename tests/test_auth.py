import hashlib

import pytest

from softphone.sip.auth import digest_authorization, parse_challenge

# RFC 2617 §3.5 worked example
RFC_CHALLENGE = (
    'Digest realm="testrealm@host.com", qop="auth,auth-int",'
    ' nonce="dcd98b7102dd2f0e8b11d0f600bfb0c093",'
    ' opaque="5ccc069c403ebaf9f0171e9517f40e41"'
)


def _params(authorization: str) -> dict[str, str]:
    assert authorization.startswith("Digest ")
    return parse_challenge(authorization)


def test_parse_challenge_handles_quoted_commas():
    params = parse_challenge(RFC_CHALLENGE)
    assert params["realm"] == "testrealm@host.com"
    assert params["qop"] == "auth,auth-int"
    assert params["nonce"] == "dcd98b7102dd2f0e8b11d0f600bfb0c093"
    assert params["opaque"] == "5ccc069c403ebaf9f0171e9517f40e41"


def test_parse_challenge_lowercases_keys():
    params = parse_challenge('Digest Realm="r", NONCE="n", algorithm=MD5')
    assert params == {"realm": "r", "nonce": "n", "algorithm": "MD5"}


def test_rfc2617_example_response():
    authorization = digest_authorization(
        RFC_CHALLENGE,
        method="GET",
        uri="/dir/index.html",
        username="Mufasa",
        password="Circle Of Life",
        cnonce="0a4f113b",
    )
    params = _params(authorization)
    assert params["response"] == "6629fae49393a05397450978507c4ef1"
    assert params["qop"] == "auth"
    assert params["nc"] == "00000001"
    assert params["cnonce"] == "0a4f113b"
    assert params["opaque"] == "5ccc069c403ebaf9f0171e9517f40e41"


def test_response_without_qop():
    challenge = 'Digest realm="sip.example.com", nonce="abc123"'
    authorization = digest_authorization(
        challenge,
        method="REGISTER",
        uri="sip:sip.example.com",
        username="101",
        password="secret",
    )
    ha1 = hashlib.md5(b"101:sip.example.com:secret").hexdigest()
    ha2 = hashlib.md5(b"REGISTER:sip:sip.example.com").hexdigest()
    expected = hashlib.md5(f"{ha1}:abc123:{ha2}".encode()).hexdigest()
    params = _params(authorization)
    assert params["response"] == expected
    assert params["username"] == "101"
    assert params["uri"] == "sip:sip.example.com"
    assert "qop" not in params
    assert "opaque" not in params


def test_nonce_count_formatting():
    authorization = digest_authorization(
        RFC_CHALLENGE,
        method="INVITE",
        uri="sip:202@x",
        username="u",
        password="p",
        nonce_count=26,
    )
    assert _params(authorization)["nc"] == "0000001a"


def test_missing_nonce_rejected():
    with pytest.raises(ValueError):
        digest_authorization(
            'Digest realm="r"', method="REGISTER", uri="sip:x", username="u", password="p"
        )
