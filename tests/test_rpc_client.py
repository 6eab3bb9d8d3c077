import hashlib
import struct

import pytest

import riakprobe.clients.rpc_client as rpc_client
from riakprobe.clients.rpc_client import RpcClient, build_args, is_badrpc, split_rex_reply
from riakprobe.core.exceptions import RpcCallError, RpcConnectError
from riakprobe.domain.evaluator import ProbeResult, evaluate
from riakprobe.domain.probes import ProbeSpec, default_probes
from riakprobe.erlang.dist import (
    DFLAG_EXTENDED_PIDS_PORTS,
    DFLAG_EXTENDED_REFERENCES,
    DFLAG_NEW_FLOATS,
    DFLAG_PUBLISHED,
    DFLAG_SMALL_ATOM_TAGS,
    LOCAL_FLAGS,
    Challenge,
    DistConnection,
    encoder_for,
    gen_digest,
    parse_challenge,
)
from riakprobe.erlang.epmd import decode_port_response, encode_port_please, split_node_name
from riakprobe.erlang.etf import (
    NEW_PID_EXT,
    PID_EXT,
    SMALL_ATOM_EXT,
    SMALL_ATOM_UTF8_EXT,
    SMALL_TUPLE_EXT,
    VERSION,
    Atom,
    binary_to_term,
    term_to_binary,
)

LOCAL = "probe@127.0.0.1"

# What an R16 node advertises: no UTF-8 atoms, no 32-bit creation.
R16_FLAGS = (
    DFLAG_PUBLISHED
    | DFLAG_EXTENDED_REFERENCES
    | DFLAG_EXTENDED_PIDS_PORTS
    | DFLAG_NEW_FLOATS
    | DFLAG_SMALL_ATOM_TAGS
)


def client_for(node) -> RpcClient:
    return RpcClient(local_node=LOCAL, timeout_sec=2.0, epmd_port=node.epmd_port)


def ping(node) -> ProbeSpec:
    return ProbeSpec(node.node_name, "riak", "net_adm", "ping", node.node_name, 1, "pong")


@pytest.mark.asyncio
async def test_ping_round_trip(fake_node) -> None:
    reply = await client_for(fake_node).call(ping(fake_node))

    assert binary_to_term(reply) == (Atom("pong"), b"")
    assert fake_node.calls == [("net_adm", "ping", [Atom(fake_node.node_name)])]
    assert fake_node.peer_names == [LOCAL]


@pytest.mark.asyncio
async def test_default_probes_against_healthy_node(fake_node) -> None:
    client = client_for(fake_node)
    results = {}
    for spec in default_probes(fake_node.node_name, "riak"):
        reply = await client.call(spec)
        results[spec.function] = evaluate(reply, spec.match_window, spec.expected_atom)

    assert results == {
        "ring_status": ProbeResult.MATCHED,
        "ringready": ProbeResult.MATCHED,
        "services": ProbeResult.MATCHED,
        "ping": ProbeResult.MATCHED,
    }
    assert [c[2] for c in fake_node.calls] == [[], [], [], [Atom(fake_node.node_name)]]


@pytest.mark.asyncio
async def test_new_style_challenge_gets_a_complement(fake_node) -> None:
    fake_node.new_challenge = True

    await client_for(fake_node).call(ping(fake_node))

    assert len(fake_node.complements) == 1
    assert fake_node.complements[0][:1] == b"c"


@pytest.mark.asyncio
async def test_ticks_and_unrelated_messages_are_skipped(fake_node) -> None:
    fake_node.send_noise = True

    reply = await client_for(fake_node).call(ping(fake_node))

    assert binary_to_term(reply)[0] == Atom("pong")


@pytest.mark.asyncio
async def test_cookie_mismatch_is_a_connect_error(fake_node) -> None:
    fake_node.cookie = "not-riak"

    with pytest.raises(RpcConnectError):
        await client_for(fake_node).call(ping(fake_node))
    assert fake_node.calls == []


@pytest.mark.asyncio
async def test_refused_status(fake_node) -> None:
    fake_node.status = "not_allowed"

    with pytest.raises(RpcConnectError, match="refused"):
        await client_for(fake_node).call(ping(fake_node))


@pytest.mark.asyncio
async def test_unregistered_node(fake_node) -> None:
    fake_node.registered = False

    with pytest.raises(RpcConnectError, match="not registered"):
        await client_for(fake_node).call(ping(fake_node))


@pytest.mark.asyncio
async def test_badrpc_is_a_call_error(fake_node) -> None:
    spec = ProbeSpec(fake_node.node_name, "riak", "no_such_module", "nope")

    with pytest.raises(RpcCallError, match="badrpc"):
        await client_for(fake_node).call(spec)


@pytest.mark.asyncio
async def test_malformed_node_name() -> None:
    spec = ProbeSpec("no-at-sign", "riak", "net_adm", "ping")

    with pytest.raises(RpcConnectError):
        await RpcClient(local_node=LOCAL).call(spec)


@pytest.mark.asyncio
async def test_direct_connection_reports_peer_flags(fake_node) -> None:
    conn = await DistConnection.open(LOCAL, fake_node.node_name, "riak", epmd_port=fake_node.epmd_port, timeout_sec=2.0)
    try:
        assert conn.peer_flags != 0
        first, second = conn.make_pid(), conn.make_pid()
        assert first.node == LOCAL
        assert first.id != second.id
    finally:
        await conn.close()


@pytest.mark.asyncio
async def test_undecodable_reply_is_returned_for_judgement(fake_node) -> None:
    fake_node.raw_replies[("net_adm", "ping")] = b"\x77\x01\xff"

    reply = await client_for(fake_node).call(ping(fake_node))

    assert reply == b"\x83\x77\x01\xff"
    assert evaluate(reply, 1, "pong") == ProbeResult.NOT_MATCHED


@pytest.mark.asyncio
async def test_unexpected_receive_failure_is_a_call_error(fake_node, monkeypatch) -> None:
    def broken(message):
        raise struct.error("unpack requires a buffer of 4 bytes")

    monkeypatch.setattr(rpc_client, "split_rex_reply", broken)

    with pytest.raises(RpcCallError) as exc_info:
        await client_for(fake_node).call(ping(fake_node))
    assert isinstance(exc_info.value.cause, struct.error)


@pytest.mark.asyncio
async def test_old_node_gets_short_pids_and_latin1_atoms(fake_node) -> None:
    fake_node.flags = R16_FLAGS

    reply = await client_for(fake_node).call(ping(fake_node))

    message = fake_node.messages[0]
    assert message[:3] == bytes([VERSION, SMALL_TUPLE_EXT, 2])
    assert message[3] == PID_EXT
    assert message[4] == SMALL_ATOM_EXT
    sender, _request = binary_to_term(message)[0]
    assert sender.node == LOCAL
    assert sender.creation == 0
    assert binary_to_term(reply)[0] == Atom("pong")


@pytest.mark.asyncio
async def test_current_node_gets_new_pids(fake_node) -> None:
    fake_node.new_challenge = True

    await client_for(fake_node).call(ping(fake_node))

    message = fake_node.messages[0]
    assert message[3] == NEW_PID_EXT
    assert message[4] == SMALL_ATOM_UTF8_EXT


def test_encoder_follows_peer_flags() -> None:
    assert encoder_for(R16_FLAGS).big_creation is False
    assert encoder_for(R16_FLAGS).utf8_atoms is False
    assert encoder_for(LOCAL_FLAGS).big_creation is True
    assert encoder_for(LOCAL_FLAGS).utf8_atoms is True


def test_split_rex_reply() -> None:
    message = term_to_binary((Atom("rex"), [Atom("riak_kv")]))

    assert split_rex_reply(message) == term_to_binary([Atom("riak_kv")])
    assert split_rex_reply(term_to_binary((Atom("other"), 1))) is None
    assert split_rex_reply(term_to_binary([Atom("rex"), 1])) is None


def test_is_badrpc() -> None:
    assert is_badrpc(term_to_binary((Atom("badrpc"), Atom("nodedown"))))
    assert not is_badrpc(term_to_binary((Atom("ok"), Atom("nodedown"))))
    assert not is_badrpc(term_to_binary(Atom("badrpc")))
    assert not is_badrpc(b"\x83")


def test_build_args() -> None:
    assert build_args("") == []
    assert build_args("riak@h") == [Atom("riak@h")]


def test_digest_matches_erlang() -> None:
    # erlang:md5("riak" ++ integer_to_list(42))
    assert gen_digest(42, "riak") == hashlib.md5(b"riak42").digest()
    assert gen_digest(42, "riak") != gen_digest(43, "riak")


def test_parse_challenge_both_forms() -> None:
    old = b"n" + struct.pack(">HII", 5, 0x0F, 99) + b"riak@h"
    new = b"N" + struct.pack(">QIIH", 0x1_0000_000F, 99, 3, 6) + b"riak@h"

    assert parse_challenge(old) == Challenge("riak@h", 0x0F, 99)
    assert parse_challenge(new) == Challenge("riak@h", 0x1_0000_000F, 99, 3)
    with pytest.raises(RpcConnectError):
        parse_challenge(b"x")


def test_epmd_codec() -> None:
    assert encode_port_please("riak") == b"\x00\x05zriak"
    response = b"w\x00" + struct.pack(">HBBHHH", 39999, 77, 0, 6, 5, 4) + b"riak" + b"\x00\x00"
    info = decode_port_response(response, "riak")

    assert (info.name, info.port, info.highest_version) == ("riak", 39999, 6)
    with pytest.raises(RpcConnectError):
        decode_port_response(b"w\x00\x01", "riak")
    assert split_node_name("riak@10.0.0.1") == ("riak", "10.0.0.1")
