import base64
import json

import pytest
import requests
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction

from conftest import FakeResponse, ScriptedSession
from swap_router import (
    ExecutionUnreachableError,
    SwapError,
    SwapRejectedError,
    SwapRouter,
    SwapUnconfirmedError,
    WRAPPED_SOL_MINT,
    load_keypair,
    unwrap_proxy_payload,
)

RPC_URL = "https://rpc.test"
ENDPOINTS = ("https://mirror-a.test/v6", "https://mirror-b.test/v6", "https://mirror-c.test/v6")
TARGET_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
QUOTE = {"inputMint": WRAPPED_SOL_MINT, "outputMint": TARGET_MINT, "outAmount": "1234"}


def _proxy(prefix):
    return lambda target: prefix + target


PROXIES = (_proxy("https://proxy-one.test/"), _proxy("https://proxy-two.test/?url="))


def _router(handler, sleeps=None, **options):
    session = ScriptedSession(handler)
    router = SwapRouter(
        RPC_URL,
        endpoints=ENDPOINTS,
        proxies=PROXIES,
        session=session,
        sleep=(sleeps.append if sleeps is not None else (lambda _s: None)),
        **options,
    )
    return router, session


def _encoded_tx(payer: Keypair) -> str:
    ix = transfer(TransferParams(from_pubkey=payer.pubkey(), to_pubkey=Keypair().pubkey(), lamports=1))
    message = MessageV0.try_compile(payer.pubkey(), [ix], [], Hash.default())
    return base64.b64encode(bytes(VersionedTransaction(message, [payer]))).decode("ascii")


def _rpc_handler(balance=0, status="confirmed"):
    def handle(kwargs):
        body = kwargs["json"]
        method = body["method"]
        if method == "sendTransaction":
            return FakeResponse(200, {"jsonrpc": "2.0", "id": 1, "result": "5igSig"})
        if method == "getSignatureStatuses":
            return FakeResponse(
                200, {"result": {"value": [{"confirmationStatus": status, "err": None}]}}
            )
        if method == "getBalance":
            return FakeResponse(200, {"result": {"context": {"slot": 1}, "value": balance}})
        raise AssertionError(method)

    return handle


# ---------------------------------------------------------------------------
# Quotes
# ---------------------------------------------------------------------------
def test_quote_from_first_mirror():
    router, session = _router(lambda m, url, kw: FakeResponse(200, QUOTE))

    assert router.get_quote(WRAPPED_SOL_MINT, TARGET_MINT, 5_000_000, 1500) == QUOTE
    (method, url, kwargs), = session.calls
    assert url == "https://mirror-a.test/v6/quote"
    assert kwargs["params"]["slippageBps"] == 1500
    assert kwargs["params"]["amount"] == "5000000"
    assert kwargs["params"]["onlyDirectRoutes"] == "false"


def test_unauthorized_mirror_is_abandoned_after_one_wait():
    sleeps = []

    def handler(method, url, kwargs):
        if "mirror-a" in url:
            return FakeResponse(401, {"error": "unauthorized"})
        return FakeResponse(200, QUOTE)

    router, session = _router(handler, sleeps)

    assert router.get_quote(WRAPPED_SOL_MINT, TARGET_MINT, 1) == QUOTE
    assert sleeps == [2.0]
    assert [url for _m, url, _k in session.calls] == [
        "https://mirror-a.test/v6/quote",
        "https://mirror-b.test/v6/quote",
    ]


def test_rate_limited_mirror_is_retried_with_backoff():
    sleeps = []
    replies = iter([FakeResponse(429, {}), FakeResponse(200, QUOTE)])
    router, session = _router(lambda m, url, kw: next(replies), sleeps)

    assert router.get_quote(WRAPPED_SOL_MINT, TARGET_MINT, 1) == QUOTE
    assert sleeps == [2.0, 1.0]
    assert all("mirror-a" in url for _m, url, _k in session.calls)


def test_quote_without_out_amount_is_retried_then_next_mirror():
    def handler(method, url, kwargs):
        if "mirror-a" in url:
            return FakeResponse(200, {"outAmount": ""})
        return FakeResponse(200, QUOTE)

    router, session = _router(handler)

    assert router.get_quote(WRAPPED_SOL_MINT, TARGET_MINT, 1) == QUOTE
    assert sum("mirror-a" in url for _m, url, _k in session.calls) == 3


def test_dns_failure_skips_each_mirror_then_proxy_unwraps_contents():
    def handler(method, url, kwargs):
        if "mirror" in url:
            return requests.ConnectionError("Failed to resolve host: Name or service not known")
        if "proxy-one" in url:
            return FakeResponse(502, {})
        return FakeResponse(200, {"contents": json.dumps(QUOTE)})

    router, session = _router(handler)

    assert router.get_quote(WRAPPED_SOL_MINT, TARGET_MINT, 1) == QUOTE
    urls = [url for _m, url, _k in session.calls]
    assert sum("mirror" in url for url in urls) == len(ENDPOINTS)
    assert urls[-1].startswith("https://proxy-two.test/?url=https://quote-api.jup.ag/v6/quote?")
    assert "outputMint=" + TARGET_MINT in urls[-1]


def test_everything_unreachable_raises_fixed_message():
    router, _ = _router(lambda m, url, kw: requests.ConnectionError("getaddrinfo failed"))

    with pytest.raises(ExecutionUnreachableError) as info:
        router.get_quote(WRAPPED_SOL_MINT, TARGET_MINT, 1)
    assert str(info.value).startswith("Execution failed: Trade routes are currently unreachable.")


def test_unwrap_proxy_payload_shapes():
    assert unwrap_proxy_payload(QUOTE) == QUOTE
    assert unwrap_proxy_payload({"contents": QUOTE}) == QUOTE
    assert unwrap_proxy_payload({"contents": "not json"}) is None
    assert unwrap_proxy_payload({"contents": json.dumps({"error": "x"})}) is None
    assert unwrap_proxy_payload(["list"]) is None


# ---------------------------------------------------------------------------
# Swaps
# ---------------------------------------------------------------------------
def test_swap_signs_submits_and_confirms():
    payer = Keypair()
    rpc = _rpc_handler()

    def handler(method, url, kwargs):
        if url == RPC_URL:
            return rpc(kwargs)
        return FakeResponse(200, {"swapTransaction": _encoded_tx(payer)})

    router, session = _router(handler)

    assert router.swap(payer, QUOTE, "0.0015") == "5igSig"
    swap_call = session.calls[0]
    assert swap_call[1] == "https://mirror-a.test/v6/swap"
    body = swap_call[2]["json"]
    assert body["userPublicKey"] == str(payer.pubkey())
    assert body["prioritizationFeeLamports"] == 1_500_000
    assert body["wrapAndUnwrapSol"] is True
    methods = [kw["json"]["method"] for _m, url, kw in session.calls if url == RPC_URL]
    assert methods == ["sendTransaction", "getSignatureStatuses"]
    sent = session.calls[1][2]["json"]["params"]
    signed = VersionedTransaction.from_bytes(base64.b64decode(sent[0]))
    assert signed.message.account_keys[0] == payer.pubkey()
    assert sent[1]["encoding"] == "base64"


def test_swap_network_error_moves_to_next_mirror():
    payer = Keypair()
    rpc = _rpc_handler(status="finalized")

    def handler(method, url, kwargs):
        if url == RPC_URL:
            return rpc(kwargs)
        if "mirror-a" in url:
            return requests.ConnectionError("reset")
        return FakeResponse(200, {"swapTransaction": _encoded_tx(payer)})

    router, session = _router(handler)

    assert router.swap(payer, QUOTE) == "5igSig"
    assert session.calls[1][1] == "https://mirror-b.test/v6/swap"


def test_swap_rejection_is_not_retried_elsewhere():
    router, session = _router(lambda m, url, kw: FakeResponse(400, {"error": "slippage"}))

    with pytest.raises(SwapRejectedError) as info:
        router.swap(Keypair(), QUOTE)
    assert info.value.status == 400
    assert info.value.body == {"error": "slippage"}
    assert len(session.calls) == 1


def test_swap_exhausted_reports_last_error():
    router, session = _router(lambda m, url, kw: requests.Timeout("read timed out"))

    with pytest.raises(SwapError, match="Failed to execute swap on Jupiter. Last error: read timed out"):
        router.swap(Keypair(), QUOTE)
    assert len(session.calls) == len(ENDPOINTS)


def test_get_balance_reads_rpc_value():
    router, session = _router(lambda m, url, kw: _rpc_handler(balance=42_000)(kw))
    wallet = str(Keypair().pubkey())

    assert router.get_balance(wallet) == 42_000
    assert session.calls[0][2]["json"]["params"][0] == wallet


def test_rpc_error_object_raises():
    router, _ = _router(lambda m, url, kw: FakeResponse(200, {"error": {"code": -32602, "message": "bad"}}))

    with pytest.raises(SwapRejectedError):
        router.get_balance("wallet")


def test_load_keypair_from_base58_and_bytes():
    kp = Keypair()

    assert load_keypair(str(kp)).pubkey() == kp.pubkey()
    assert load_keypair(bytes(kp)).pubkey() == kp.pubkey()
    assert load_keypair(kp) is kp


def _swap_handler(payer, rpc):
    def handler(method, url, kwargs):
        if url == RPC_URL:
            return rpc(kwargs)
        return FakeResponse(200, {"swapTransaction": _encoded_tx(payer)})

    return handler


def _rpc_methods(session):
    return [kw["json"]["method"] for _m, url, kw in session.calls if url == RPC_URL]


def _swap_posts(session):
    return [url for _m, url, _kw in session.calls if url.endswith("/swap")]


def test_rpc_http_refusal_is_not_resubmitted():
    payer = Keypair()

    def rpc(kwargs):
        return FakeResponse(500, {"error": "node rejected tx"})

    router, session = _router(_swap_handler(payer, rpc))

    with pytest.raises(SwapRejectedError) as info:
        router.swap(payer, QUOTE)
    assert info.value.status == 500
    assert info.value.body == {"error": "node rejected tx"}
    assert _swap_posts(session) == ["https://mirror-a.test/v6/swap"]
    assert _rpc_methods(session) == ["sendTransaction"]


def test_confirmation_network_error_reports_unconfirmed_signature():
    payer = Keypair()
    confirmed = _rpc_handler()

    def rpc(kwargs):
        if kwargs["json"]["method"] == "getSignatureStatuses":
            return requests.ConnectionError("connection reset")
        return confirmed(kwargs)

    router, session = _router(_swap_handler(payer, rpc))

    with pytest.raises(SwapUnconfirmedError) as info:
        router.swap(payer, QUOTE)
    assert info.value.signature == "5igSig"
    assert len(_swap_posts(session)) == 1
    assert _rpc_methods(session) == ["sendTransaction", "getSignatureStatuses"]


def test_confirmation_timeout_reports_unconfirmed_signature():
    payer = Keypair()
    router, session = _router(
        _swap_handler(payer, _rpc_handler(status="processed")), confirm_timeout=0
    )

    with pytest.raises(SwapUnconfirmedError) as info:
        router.swap(payer, QUOTE)
    assert info.value.signature == "5igSig"
    assert len(_swap_posts(session)) == 1


def test_submission_read_timeout_reports_locally_computed_signature():
    payer = Keypair()

    def rpc(kwargs):
        return requests.ReadTimeout("read timed out")

    router, session = _router(_swap_handler(payer, rpc))

    with pytest.raises(SwapUnconfirmedError) as info:
        router.swap(payer, QUOTE)
    sent = session.calls[1][2]["json"]["params"][0]
    signed = VersionedTransaction.from_bytes(base64.b64decode(sent))
    assert info.value.signature == str(signed.signatures[0])
    assert len(_swap_posts(session)) == 1


def test_failed_transaction_status_is_a_rejection():
    payer = Keypair()

    def rpc(kwargs):
        if kwargs["json"]["method"] == "getSignatureStatuses":
            return FakeResponse(200, {"result": {"value": [{"err": {"InstructionError": [0, "Custom"]}}]}})
        return _rpc_handler()(kwargs)

    router, _ = _router(_swap_handler(payer, rpc))

    with pytest.raises(SwapRejectedError, match="failed"):
        router.swap(payer, QUOTE)


def test_undecodable_swap_transaction_is_rejected_before_submission():
    router, session = _router(lambda m, url, kw: FakeResponse(200, {"swapTransaction": "not-base64!!"}))

    with pytest.raises(SwapRejectedError, match="could not be signed"):
        router.swap(Keypair(), QUOTE)
    assert _rpc_methods(session) == []
    assert len(_swap_posts(session)) == 1


def test_malformed_rpc_replies_raise_swap_errors():
    not_an_object, _ = _router(lambda m, url, kw: FakeResponse(200, ["unexpected"]))
    not_json, _ = _router(lambda m, url, kw: FakeResponse(200, None, text="<html>bad gateway</html>"))
    bad_value, _ = _router(lambda m, url, kw: FakeResponse(200, {"result": {"value": "lots"}}))
    unreachable, _ = _router(lambda m, url, kw: requests.ConnectionError("rpc down"))

    for router in (not_an_object, not_json, bad_value, unreachable):
        with pytest.raises(SwapError):
            router.get_balance("wallet")


def test_mev_protection_flag_is_accepted_and_not_sent():
    payer = Keypair()
    router, session = _router(_swap_handler(payer, _rpc_handler()))

    assert router.swap(payer, QUOTE, mev_protection=False) == "5igSig"
    body = session.calls[0][2]["json"]
    assert not any("mev" in key.lower() for key in body)
