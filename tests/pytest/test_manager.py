# SPDX-FileCopyrightText: AISEC Pentesting Team
#
# SPDX-License-Identifier: Apache-2.0

import asyncio
from collections.abc import AsyncIterator
from typing import Any

import pytest

from ecudiag.manager import UDSClientManager, parse_service_id
from ecudiag.services.uds.core.client import SessionState, UDSClient
from ecudiag.services.uds.core.security import compute_key
from ecudiag.transports.doip import (
    DiagnosticMessage,
    DiagnosticMessageAcknowledgement,
    GenericHeader,
    PayloadTypes,
    RoutingActivationResponse,
    RoutingActivationResponseCodes,
    pack_frame,
)
from ecudiag.types import ConnectionConfig, DiagnosticResult

SERVER = 0x1001
VIN = b"WAUZZZ8V5KA000000"
SEED = 0xB418E1A8
# Larger than any single read from the socket buffer.
LARGE_DID = 0x0100
LARGE_RECORD = bytes(i % 251 for i in range(6000))


class ECUSimulator:
    """A tiny DoIP entity answering a handful of UDS services."""

    def __init__(
        self,
        routing_code: int = RoutingActivationResponseCodes.Success,
        security_constant: int = 0x1234,
        split_writes: bool = False,
    ) -> None:
        self.routing_code = routing_code
        self.security_constant = security_constant
        self.split_writes = split_writes
        self.requests: list[bytes] = []
        self.tester_hung_up = asyncio.Event()

    async def start(self) -> int:
        self.server = await asyncio.start_server(self._handle, host="127.0.0.1", port=0)
        return self.server.sockets[0].getsockname()[1]

    def close(self) -> None:
        self.server.close()

    @staticmethod
    async def _read_frame(reader: asyncio.StreamReader) -> tuple[GenericHeader, bytes]:
        header = GenericHeader.unpack(await reader.readexactly(8))
        payload = await reader.readexactly(header.PayloadLength)
        return header, payload

    async def _send(self, writer: asyncio.StreamWriter, payload_type: int, payload: bytes) -> None:
        frame = pack_frame(payload_type, payload)
        if self.split_writes:
            # Header and payload travel in separate segments.
            writer.write(frame[:8])
            await writer.drain()
            await asyncio.sleep(0.05)
            frame = frame[8:]
        writer.write(frame)
        await writer.drain()

    def answer(self, pdu: bytes) -> list[bytes]:
        sid = pdu[0]
        match sid:
            case 0x10:
                if pdu[1] > 0x03:
                    return []
                return [bytes([0x50, pdu[1], 0x00, 0x32, 0x01, 0xF4])]
            case 0x11:
                return [bytes.fromhex("7f1178"), bytes([0x51, pdu[1]])]
            case 0x14:
                return [bytes([0x54])]
            case 0x22:
                if pdu[1:3] == bytes.fromhex("f190"):
                    return [bytes.fromhex("62f190") + VIN]
                if pdu[1:3] == LARGE_DID.to_bytes(2, "big"):
                    return [bytes([0x62]) + pdu[1:3] + LARGE_RECORD]
                return [bytes.fromhex("7f2231")]
            case 0x27:
                level = pdu[1]
                if level % 2 == 1:
                    return [bytes([0x67, level]) + SEED.to_bytes(4, "big")]
                expected = compute_key(level, SEED, self.security_constant)
                if pdu[2:6] == expected.to_bytes(4, "big"):
                    return [bytes([0x67, level])]
                return [bytes.fromhex("7f2735")]
            case 0x3E:
                return [bytes.fromhex("7e00")] if pdu[1] == 0x00 else []
            case _:
                return [bytes([0x7F, sid, 0x11])]

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            _, payload = await self._read_frame(reader)
            client = int.from_bytes(payload[:2], "big")
            response = RoutingActivationResponse(client, SERVER, self.routing_code)
            await self._send(writer, PayloadTypes.RoutingActivationResponse, response.pack())
            if self.routing_code != RoutingActivationResponseCodes.Success:
                # Nothing but the end of the stream may follow a denial.
                if await reader.read() == b"":
                    self.tester_hung_up.set()
                return

            while True:
                _, payload = await self._read_frame(reader)
                pdu = DiagnosticMessage.unpack(payload).UserData
                self.requests.append(pdu)

                # A key off on reset drops the connection.
                if pdu == bytes.fromhex("1102"):
                    return

                ack = DiagnosticMessageAcknowledgement(SERVER, client, 0x00, b"")
                await self._send(
                    writer, PayloadTypes.DiagnosticMessagePositiveAcknowledgement, ack.pack()
                )
                for answer in self.answer(pdu):
                    message = DiagnosticMessage(SERVER, client, answer)
                    await self._send(writer, PayloadTypes.DiagnosticMessage, message.pack())
                    await asyncio.sleep(0.01)
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            writer.close()


class StateRecordingClient(UDSClient):
    """Remembers every session state it passes through."""

    created: list["StateRecordingClient"] = []

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        self.states: list[SessionState] = []
        super().__init__(*args, **kwargs)
        StateRecordingClient.created.append(self)

    def __setattr__(self, name: str, value: Any) -> None:
        if name == "state":
            self.states.append(value)
        super().__setattr__(name, value)


def make_config(port: int) -> ConnectionConfig:
    return ConnectionConfig(
        host="127.0.0.1",
        port=port,
        client_logical_address="0e80",
        server_logical_address="1001",
        timeout=2.0,
    )


@pytest.fixture()
async def ecu() -> AsyncIterator[tuple[ECUSimulator, int]]:
    sim = ECUSimulator()
    port = await sim.start()
    yield sim, port
    sim.close()


@pytest.fixture()
async def manager(ecu: tuple[ECUSimulator, int]) -> AsyncIterator[UDSClientManager]:
    _, port = ecu
    manager = UDSClientManager()
    result = await manager.connect(make_config(port))
    assert result.success, result.message
    yield manager
    await manager.disconnect()


def test_parse_service_id() -> None:
    assert parse_service_id("22") == 0x22
    assert parse_service_id("0x3E") == 0x3E

    with pytest.raises(ValueError):
        parse_service_id("zz")
    with pytest.raises(ValueError):
        parse_service_id("100")


@pytest.mark.asyncio
async def test_connect_and_status(ecu: tuple[ECUSimulator, int]) -> None:
    _, port = ecu
    manager = UDSClientManager()
    assert not manager.get_connection_status()
    assert manager.get_connection_config() is None

    result = await manager.connect(make_config(port))

    assert result.success
    assert manager.get_connection_status()
    config = manager.get_connection_config()
    assert config is not None
    assert config.server_logical_address == SERVER

    await manager.disconnect()
    assert not manager.get_connection_status()
    assert manager.get_connection_config() is None


@pytest.mark.asyncio
async def test_duplicate_connect_rejected(
    ecu: tuple[ECUSimulator, int], manager: UDSClientManager
) -> None:
    _, port = ecu
    result = await manager.connect(make_config(port))

    assert not result.success
    assert "already connected" in result.message
    assert manager.get_connection_status()


@pytest.mark.asyncio
async def test_concurrent_connect_rejected(ecu: tuple[ECUSimulator, int]) -> None:
    _, port = ecu
    manager = UDSClientManager()

    results = await asyncio.gather(
        manager.connect(make_config(port)),
        manager.connect(make_config(port)),
    )

    assert [r.success for r in results].count(True) == 1
    assert any("in progress" in r.message for r in results)
    await manager.disconnect()


@pytest.mark.asyncio
async def test_disconnect_is_idempotent() -> None:
    manager = UDSClientManager()
    assert (await manager.disconnect()).success
    assert (await manager.disconnect()).success


@pytest.mark.asyncio
async def test_routing_activation_denied(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("ecudiag.manager.UDSClient", StateRecordingClient)
    monkeypatch.setattr(StateRecordingClient, "created", [])
    sim = ECUSimulator(routing_code=RoutingActivationResponseCodes.UnknownSourceAddress)
    port = await sim.start()
    manager = UDSClientManager()

    result = await manager.connect(make_config(port))

    assert not result.success
    assert "UnknownSourceAddress" in result.message
    assert not manager.get_connection_status()
    assert manager.transport is None
    assert manager.client is None

    (client,) = StateRecordingClient.created
    assert client.transport.is_closed
    assert SessionState.ACTIVE not in client.states
    assert client.states[-1] == SessionState.IDLE
    await asyncio.wait_for(sim.tester_hung_up.wait(), 2)
    assert sim.requests == []
    sim.close()


@pytest.mark.asyncio
async def test_connection_refused() -> None:
    sim = ECUSimulator()
    port = await sim.start()
    sim.close()
    await sim.server.wait_closed()

    manager = UDSClientManager()
    result = await manager.connect(make_config(port))

    assert not result.success
    assert not manager.get_connection_status()


@pytest.mark.asyncio
async def test_send_without_connection() -> None:
    manager = UDSClientManager()
    result = await manager.send_command("10", "1001")

    assert not result.success
    assert "not connected" in result.message


@pytest.mark.asyncio
async def test_session_control(ecu: tuple[ECUSimulator, int], manager: UDSClientManager) -> None:
    sim, _ = ecu

    result = await manager.send_command("10", "10 03")
    assert result.success
    assert result.data == bytes.fromhex("5003003201f4")

    result = await manager.send_command("0x10", "")
    assert result.success
    assert sim.requests == [bytes.fromhex("1003"), bytes.fromhex("1001")]


@pytest.mark.asyncio
async def test_ecu_reset_with_pending(
    ecu: tuple[ECUSimulator, int], manager: UDSClientManager
) -> None:
    sim, _ = ecu

    result = await manager.send_command("11", "")

    assert result.success
    assert sim.requests[-1] == bytes.fromhex("1101")


@pytest.mark.asyncio
async def test_read_vin(manager: UDSClientManager) -> None:
    result = await manager.send_command("22", "22f190")

    assert result.success
    assert VIN.decode() in result.message
    assert result.data == bytes.fromhex("62f190") + VIN


@pytest.mark.asyncio
async def test_read_unknown_did(manager: UDSClientManager) -> None:
    result = await manager.send_command("22", "22f1a0")

    assert not result.success
    assert "requestOutOfRange" in result.message


@pytest.mark.asyncio
async def test_read_large_record(manager: UDSClientManager) -> None:
    result = await manager.send_command("22", f"22{LARGE_DID:04x}")

    assert result.success, result.message
    assert result.data == bytes([0x62]) + LARGE_DID.to_bytes(2, "big") + LARGE_RECORD
    assert result.data is not None and len(result.data) == 6003

    # The next answer is not polluted by leftovers of the record.
    result = await manager.send_command("3e", "3e00")
    assert result.success
    assert result.data == bytes.fromhex("7e00")


@pytest.mark.asyncio
async def test_frames_split_across_segments() -> None:
    sim = ECUSimulator(split_writes=True)
    port = await sim.start()
    manager = UDSClientManager()

    result = await manager.connect(make_config(port))
    assert result.success, result.message

    result = await manager.send_command("22", "22f190")
    assert result.success, result.message
    assert result.data == bytes.fromhex("62f190") + VIN

    result = await manager.send_command("11", "")
    assert result.success, result.message
    assert result.data == bytes.fromhex("5101")

    await manager.disconnect()
    sim.close()


@pytest.mark.asyncio
async def test_security_access(ecu: tuple[ECUSimulator, int], manager: UDSClientManager) -> None:
    sim, _ = ecu

    assert (await manager.send_command("27", "2701")).success
    result = await manager.send_command("27", "2702")

    assert result.success
    expected = compute_key(0x02, SEED, 0x1234)
    assert sim.requests[-1] == bytes([0x27, 0x02]) + expected.to_bytes(4, "big")


@pytest.mark.asyncio
async def test_security_access_explicit_constant(manager: UDSClientManager) -> None:
    assert (await manager.send_command("27", "2701")).success
    result = await manager.send_command("27", "2702e455")

    assert not result.success
    assert "invalidKey" in result.message


@pytest.mark.asyncio
async def test_security_access_without_seed(manager: UDSClientManager) -> None:
    result = await manager.send_command("27", "2702")

    assert not result.success
    assert "no seed available" in result.message
    assert manager.get_connection_status()


@pytest.mark.asyncio
async def test_tester_present(ecu: tuple[ECUSimulator, int], manager: UDSClientManager) -> None:
    sim, _ = ecu

    assert (await manager.send_command("3e", "3e80")).success
    assert (await manager.send_command("3e", "3e00")).success
    assert sim.requests == [bytes.fromhex("3e80"), bytes.fromhex("3e00")]


@pytest.mark.asyncio
async def test_tester_present_unknown_sub_function(
    ecu: tuple[ECUSimulator, int], manager: UDSClientManager
) -> None:
    sim, _ = ecu

    for data in ["3e01", "3e 81"]:
        result = await manager.send_command("3e", data)
        assert not result.success, data
        assert "unsupported sub-function" in result.message

    assert sim.requests == []
    assert manager.get_connection_status()


@pytest.mark.asyncio
async def test_clear_dtc_group_too_short(
    ecu: tuple[ECUSimulator, int], manager: UDSClientManager
) -> None:
    sim, _ = ecu

    for data in ["14 01", "14 01 02"]:
        result = await manager.send_command("14", data)
        assert not result.success, data
        assert "groupOfDTC must be 3 bytes long" in result.message

    assert sim.requests == []
    assert manager.get_connection_status()

    assert (await manager.send_command("14", "14 01 02 03")).success
    assert (await manager.send_command("14", "")).success
    assert sim.requests == [bytes.fromhex("14010203"), bytes.fromhex("14ffffff")]


@pytest.mark.asyncio
async def test_invalid_input(manager: UDSClientManager) -> None:
    for sid, data in [
        ("zz", ""),
        ("22", "22f"),
        ("22", "22f1"),
        ("10", "2201"),
        ("27", ""),
        ("27", "2702aabbccddee"),
    ]:
        result = await manager.send_command(sid, data)
        assert not result.success, (sid, data)

    assert manager.get_connection_status()


@pytest.mark.asyncio
async def test_unsupported_service(manager: UDSClientManager) -> None:
    result = await manager.send_command("99", "")

    assert not result.success
    assert "unsupported UDS service" in result.message


@pytest.mark.asyncio
async def test_negative_response_is_result(manager: UDSClientManager) -> None:
    result = await manager.send_command("85", "8502")

    assert not result.success
    assert "serviceNotSupported" in result.message
    assert result.data == bytes.fromhex("7f8511")


@pytest.mark.asyncio
async def test_connection_lost(manager: UDSClientManager) -> None:
    result = await manager.send_command("11", "1102")

    assert not result.success
    assert not manager.get_connection_status()
    assert manager.transport is None

    result = await manager.send_command("3e", "3e00")
    assert not result.success
    assert "not connected" in result.message


def test_diagnostic_result_json() -> None:
    result = DiagnosticResult.ok("granted", data=bytes.fromhex("5001"))
    dumped = result.model_dump(mode="json")

    assert dumped["success"] is True
    assert dumped["data"] == "5001"
    assert isinstance(dumped["timestamp"], str)


def test_connection_config() -> None:
    config = make_config(13400)

    assert config.client_logical_address == 0x0E80
    assert ConnectionConfig(
        host="ecu", client_logical_address="0x0e80", server_logical_address=0x1001
    ).port == 13400
    assert str(config.to_tcp_uri()) == "tcp://127.0.0.1:13400"

    with pytest.raises(ValueError):
        ConnectionConfig(host="ecu", client_logical_address="10000", server_logical_address="1")
    with pytest.raises(ValueError):
        ConnectionConfig(host="ecu", client_logical_address="xyz", server_logical_address="1")
