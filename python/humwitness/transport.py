"""
Mesh Transport - peer discovery and signed request/response messaging.

Each enabled transport protocol gets one discovery loop that only inserts
or refreshes registry entries and posts ``PeerDiscoveryEvent``s on the
transport's ``discovery_events`` queue. Connections move through
``Discovered -> Connecting -> Connected -> Disconnected``; connecting runs
an X25519 key exchange to derive a per-connection session key.

Every connection owns one inbox queue and one reader task. Outbound
requests wait on futures keyed by request id, so cancelling a connection
resolves everything it was waiting for.

Usage:
    medium = LoopbackMedium()
    transport = MeshTransport(Ed25519Crypto(), [medium.backend(TransportProtocol.WEBRTC)])
    await transport.start_discovery()
    ...
    await transport.stop_discovery()
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple

from .config import MeshConfig
from .crypto import CryptoProvider, CryptoUtils, EphemeralIdentity
from .errors import (
    MalformedMessageError,
    PeerConnectionError,
    PeerTimeoutError,
)
from .messages import FingerprintRequest, FingerprintResponse, PeerMessage
from .registry import PeerRegistry
from .types import (
    ConnectionState,
    MeshPeer,
    MessageType,
    PeerCapabilities,
    PeerDiscoveryEvent,
    PeerReport,
    TransportProtocol,
)

logger = logging.getLogger(__name__)

RequestHandler = Callable[[FingerprintRequest, MeshPeer], Awaitable[FingerprintResponse]]

# Allowed connection state transitions
_TRANSITIONS = {
    ConnectionState.DISCOVERED: {ConnectionState.CONNECTING, ConnectionState.CONNECTED},
    ConnectionState.CONNECTING: {ConnectionState.CONNECTED, ConnectionState.DISCOVERED},
    ConnectionState.CONNECTED: {ConnectionState.DISCONNECTED},
    ConnectionState.DISCONNECTED: {ConnectionState.CONNECTING, ConnectionState.CONNECTED,
                                   ConnectionState.DISCOVERED},
}


# ---------------------------------------------------------------------------
# Links and discovery backends
# ---------------------------------------------------------------------------

class Link:
    """One end of an in-order, bidirectional message pipe.

    ``None`` on the inbox signals that the link was closed.
    """

    def __init__(self):
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.closed = False
        self._remote: Optional["Link"] = None

    @classmethod
    def pair(cls) -> Tuple["Link", "Link"]:
        a, b = cls(), cls()
        a._remote, b._remote = b, a
        return a, b

    async def send(self, data: bytes) -> None:
        if self.closed or self._remote is None or self._remote.closed:
            raise ConnectionResetError("link closed")
        await self._remote.inbox.put(data)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.inbox.put_nowait(None)
        if self._remote is not None:
            self._remote.close()


class DiscoveryBackend:
    """Per-protocol discovery and dialing.

    Real radio stacks (BLE scanning, Wi-Fi Direct, WebRTC signalling)
    implement this interface; ``LoopbackDiscovery`` is the in-process one.
    """

    protocol: TransportProtocol

    async def advertise(self, local: MeshPeer, transport: "MeshTransport") -> None:
        raise NotImplementedError

    async def withdraw(self, peer_id: str) -> None:
        raise NotImplementedError

    async def scan(self) -> List[MeshPeer]:
        """One discovery tick: peers currently visible."""
        raise NotImplementedError

    async def dial(self, local: MeshPeer, remote: MeshPeer) -> Link:
        raise NotImplementedError


class LoopbackMedium:
    """In-process stand-in for the radio environment.

    Holds one advertisement table per protocol and hands out paired links
    when a station dials another.
    """

    def __init__(self):
        self._stations: Dict[TransportProtocol, Dict[str, Tuple[MeshPeer, "MeshTransport"]]] = {}

    def backend(self, protocol: TransportProtocol) -> "LoopbackDiscovery":
        return LoopbackDiscovery(self, protocol)

    def backends(self, protocols: Iterable[TransportProtocol]) -> List["LoopbackDiscovery"]:
        return [self.backend(p) for p in protocols]

    def advertise(self, protocol: TransportProtocol, peer: MeshPeer,
                  transport: "MeshTransport") -> None:
        self._stations.setdefault(protocol, {})[peer.peer_id] = (peer, transport)

    def withdraw(self, protocol: TransportProtocol, peer_id: str) -> None:
        self._stations.get(protocol, {}).pop(peer_id, None)

    def visible(self, protocol: TransportProtocol) -> List[MeshPeer]:
        return [peer for peer, _ in self._stations.get(protocol, {}).values()]

    def dial(self, protocol: TransportProtocol, local: MeshPeer, remote_id: str) -> Link:
        entry = self._stations.get(protocol, {}).get(remote_id)
        if entry is None:
            raise ConnectionRefusedError(f"{remote_id} is not reachable over {protocol.value}")
        _, remote_transport = entry
        local_end, remote_end = Link.pair()
        remote_transport.accept_link(local, remote_end)
        return local_end


class LoopbackDiscovery(DiscoveryBackend):
    """``DiscoveryBackend`` over a ``LoopbackMedium``."""

    def __init__(self, medium: LoopbackMedium, protocol: TransportProtocol):
        self.medium = medium
        self.protocol = protocol

    async def advertise(self, local: MeshPeer, transport: "MeshTransport") -> None:
        self.medium.advertise(self.protocol, local, transport)

    async def withdraw(self, peer_id: str) -> None:
        self.medium.withdraw(self.protocol, peer_id)

    async def scan(self) -> List[MeshPeer]:
        return self.medium.visible(self.protocol)

    async def dial(self, local: MeshPeer, remote: MeshPeer) -> Link:
        return self.medium.dial(self.protocol, local, remote.peer_id)


# ---------------------------------------------------------------------------
# MeshTransport
# ---------------------------------------------------------------------------

@dataclass(eq=False)
class PeerConnection:
    """Live state of one peer connection."""
    peer: MeshPeer
    link: Link
    outbound: bool = True
    state: ConnectionState = ConnectionState.CONNECTING
    session_key: Optional[bytes] = None
    reader: Optional[asyncio.Task] = None
    pending: Dict[str, asyncio.Future] = field(default_factory=dict)
    tasks: Set[asyncio.Task] = field(default_factory=set)


class MeshTransport:
    """
    Peer discovery, connection management and signed messaging.

    The transport is the only writer of its ``PeerRegistry`` and its
    connection table; other components read through ``get_live_peers`` /
    ``is_connected`` and ask for connections via ``connect_to_peer``.
    """

    def __init__(
        self,
        crypto: CryptoProvider,
        backends: Iterable[DiscoveryBackend],
        config: Optional[MeshConfig] = None,
        identity: Optional[EphemeralIdentity] = None,
        registry: Optional[PeerRegistry] = None,
    ):
        self.config = config or MeshConfig()
        self.crypto = crypto
        self.identity = identity or EphemeralIdentity.generate(crypto)
        self.registry = registry or PeerRegistry(stale_after=self.config.peer_stale_after)
        self.discovery_events: asyncio.Queue = asyncio.Queue()
        self.received_reports: asyncio.Queue = asyncio.Queue()

        self._backends: Dict[TransportProtocol, DiscoveryBackend] = {
            b.protocol: b for b in backends
            if b.protocol in self.config.enabled_transports
        }
        self._discovery_tasks: Dict[TransportProtocol, asyncio.Task] = {}
        self._connections: Dict[str, PeerConnection] = {}
        self._connecting: Dict[str, asyncio.Task] = {}
        self._inbound: Set[PeerConnection] = set()
        self._states: Dict[str, ConnectionState] = {}
        self._request_handler: Optional[RequestHandler] = None

    @property
    def peer_id(self) -> str:
        return self.identity.peer_id

    def local_peer(self, protocol: TransportProtocol) -> MeshPeer:
        """How this device describes itself on ``protocol``."""
        return MeshPeer(
            peer_id=self.identity.peer_id,
            public_key=self.identity.public_key,
            address=f"{protocol.value}://{self.config.service_name}/{self.identity.peer_id}",
            transport=protocol,
            signal_strength=1.0,
            capabilities=PeerCapabilities(fingerprint_comparison=self._request_handler is not None),
            last_seen=CryptoUtils.utc_now(),
            name=self.config.peer_name,
        )

    def set_request_handler(self, handler: Optional[RequestHandler]) -> None:
        """Install the responder used for inbound comparison requests."""
        self._request_handler = handler

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------
    def get_discovered_peers(self) -> List[MeshPeer]:
        return self.registry.all_peers()

    def get_live_peers(self) -> List[MeshPeer]:
        return self.registry.live_peers()

    def is_connected(self, peer_id: str) -> bool:
        return peer_id in self._connections

    def connected_peers(self) -> List[str]:
        return list(self._connections)

    def connection_state(self, peer_id: str) -> ConnectionState:
        state = self._states.get(peer_id)
        if state is not None:
            return state
        if peer_id in self.registry:
            return ConnectionState.DISCOVERED
        return ConnectionState.DISCONNECTED

    def session_key(self, peer_id: str) -> Optional[bytes]:
        conn = self._connections.get(peer_id)
        return conn.session_key if conn else None

    @property
    def active_discovery_protocols(self) -> List[TransportProtocol]:
        return [p for p, t in self._discovery_tasks.items() if not t.done()]

    def _set_state(self, peer_id: str, state: ConnectionState) -> None:
        current = self.connection_state(peer_id)
        if current != state and state not in _TRANSITIONS[current]:
            logger.warning(f"Unexpected transition for {peer_id}: {current.value} -> {state.value}")
        self._states[peer_id] = state

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------
    async def start_discovery(self) -> None:
        """Start one discovery loop per enabled protocol (idempotent)."""
        started = []
        for protocol, backend in self._backends.items():
            task = self._discovery_tasks.get(protocol)
            if task is not None and not task.done():
                continue
            await backend.advertise(self.local_peer(protocol), self)
            self._discovery_tasks[protocol] = asyncio.create_task(
                self._discovery_loop(backend), name=f"discovery-{protocol.value}"
            )
            started.append(protocol.value)
        if started:
            logger.info(f"Started peer discovery on {', '.join(started)}")

    async def stop_discovery(self) -> None:
        """Cancel discovery loops, withdraw advertisements, drop all peers (idempotent)."""
        tasks = list(self._discovery_tasks.values())
        self._discovery_tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        for backend in self._backends.values():
            await backend.withdraw(self.identity.peer_id)

        connecting = list(self._connecting.values())
        for task in connecting:
            task.cancel()
        await asyncio.gather(*connecting, return_exceptions=True)
        for peer_id in list(self._connections):
            await self.disconnect_peer(peer_id)
        for conn in list(self._inbound):
            await self._teardown(conn, PeerConnectionError(conn.peer.peer_id, "transport stopped"))

        if tasks:
            logger.info("Stopped peer discovery")

    async def _discovery_loop(self, backend: DiscoveryBackend) -> None:
        while True:
            try:
                peers = await backend.scan()
            except Exception as e:
                logger.error(f"{backend.protocol.value} discovery scan failed: {e}")
                peers = []
            for peer in peers:
                if peer.peer_id != self.identity.peer_id:
                    self._record_peer(peer)
            self.registry.prune_stale()
            await asyncio.sleep(self.config.discovery_interval)

    def _record_peer(self, peer: MeshPeer) -> None:
        if self.registry.upsert(peer):
            self._states.setdefault(peer.peer_id, ConnectionState.DISCOVERED)
            self.discovery_events.put_nowait(PeerDiscoveryEvent(
                peer=peer,
                transport=peer.transport,
                timestamp=CryptoUtils.utc_now(),
            ))
            logger.info(f"Discovered peer {peer.peer_id} ({peer.name}) via {peer.transport.value}")

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------
    async def connect_to_peer(self, peer_id: str) -> None:
        """
        Connect and run the key exchange with a discovered peer.

        Concurrent calls for the same peer share one handshake.

        Raises:
            PeerConnectionError: Unknown peer, capacity reached, dial or
                handshake failure. No connection entry is left behind.
        """
        if peer_id in self._connections:
            return
        task = self._connecting.get(peer_id)
        if task is None:
            task = asyncio.ensure_future(self._connect(peer_id))
            self._connecting[peer_id] = task
            task.add_done_callback(lambda _t: self._connecting.pop(peer_id, None))
        await task

    async def _connect(self, peer_id: str) -> None:
        peer = self.registry.get(peer_id)
        if peer is None:
            raise PeerConnectionError(peer_id, "unknown peer")
        if len(self._connections) >= self.config.max_connections:
            raise PeerConnectionError(peer_id, "connection limit reached")
        backend = self._backends.get(peer.transport)
        if backend is None:
            raise PeerConnectionError(peer_id, f"transport {peer.transport.value} not enabled")

        self._set_state(peer_id, ConnectionState.CONNECTING)
        logger.info(f"Connecting to peer {peer_id} via {peer.transport.value}")
        conn: Optional[PeerConnection] = None
        error: Optional[PeerConnectionError] = None
        try:
            link = await backend.dial(self.local_peer(peer.transport), peer)
            conn = PeerConnection(peer=peer, link=link, outbound=True)
            conn.reader = asyncio.create_task(self._read_loop(conn))
            await asyncio.wait_for(self._handshake(conn), timeout=self.config.connection_timeout)
        except asyncio.CancelledError:
            await self._abort_connect(peer_id, conn)
            raise
        except asyncio.TimeoutError:
            error = PeerConnectionError(peer_id, "handshake timed out")
        except PeerConnectionError as e:
            error = e
        except (OSError, MalformedMessageError, KeyError, ValueError) as e:
            error = PeerConnectionError(peer_id, str(e))

        if error is not None:
            await self._abort_connect(peer_id, conn)
            if peer_id in self._connections:
                # The peer dialed us at the same time and its link won
                logger.info(f"Connected to peer {peer_id} over its inbound link")
                return
            raise error

        await self._install(peer_id, conn)
        logger.info(f"Connected to peer {peer_id}")

    async def _handshake(self, conn: PeerConnection) -> None:
        public, private = self.crypto.generate_exchange_key_pair()
        reply = await self._request(conn, MessageType.KEY_EXCHANGE, {
            "requestId": CryptoUtils.generate_uuid(),
            "publicKey": CryptoUtils.b64encode(public),
            "reply": False,
        })
        peer_public = CryptoUtils.b64decode(reply["publicKey"])
        conn.session_key = self.crypto.derive_shared_key(
            private, peer_public, self._session_info(conn.peer.peer_id)
        )

    def _session_info(self, remote_id: str) -> bytes:
        return "|".join(sorted([self.identity.peer_id, remote_id])).encode()

    async def _abort_connect(self, peer_id: str, conn: Optional[PeerConnection]) -> None:
        if conn is not None:
            await self._teardown(conn, PeerConnectionError(peer_id, "connection aborted"))
        if peer_id not in self._connections:
            self._set_state(peer_id, ConnectionState.DISCOVERED)

    def _dialer(self, conn: PeerConnection) -> str:
        return self.identity.peer_id if conn.outbound else conn.peer.peer_id

    async def _install(self, peer_id: str, conn: PeerConnection) -> PeerConnection:
        """
        Register a handshaken connection, keeping one link per peer.

        When both peers dialed each other, both sides keep the link dialed
        by the lower peer id and close the other one. A second link in the
        same direction replaces the first.

        Returns:
            The connection now registered for the peer
        """
        previous = self._connections.get(peer_id)
        if previous is not None and previous is not conn:
            if previous.outbound != conn.outbound and self._dialer(previous) < self._dialer(conn):
                logger.info(f"Dropping duplicate link to {peer_id}")
                await self._teardown(conn, PeerConnectionError(peer_id, "duplicate link"))
                return previous
            await self._teardown(previous, PeerConnectionError(peer_id, "superseded"))

        self._inbound.discard(conn)
        self._connections[peer_id] = conn
        conn.state = ConnectionState.CONNECTED
        self._set_state(peer_id, ConnectionState.CONNECTED)
        return conn

    def accept_link(self, remote: MeshPeer, link: Link) -> None:
        """Take an inbound link; the remote side drives the key exchange."""
        if not self.config.auto_accept_connections:
            logger.info(f"Refusing inbound connection from {remote.peer_id}")
            link.close()
            return
        self._record_peer(remote)
        conn = PeerConnection(peer=remote, link=link, outbound=False)
        conn.reader = asyncio.get_running_loop().create_task(self._read_loop(conn))
        self._inbound.add(conn)

    async def disconnect_peer(self, peer_id: str) -> None:
        """Close a connection; outstanding requests resolve as timeouts (idempotent)."""
        task = self._connecting.pop(peer_id, None)
        if task is not None:
            task.cancel()
        conn = self._connections.pop(peer_id, None)
        if conn is None:
            return
        logger.info(f"Disconnecting from peer {peer_id}")
        await self._teardown(conn, PeerTimeoutError(peer_id, 0))
        self._set_state(peer_id, ConnectionState.DISCONNECTED)

    async def _teardown(self, conn: PeerConnection, error: Exception) -> None:
        """Fail pending requests, cancel tasks and close the link."""
        for future in conn.pending.values():
            if not future.done():
                future.set_exception(error)
        conn.pending.clear()
        conn.state = ConnectionState.DISCONNECTED
        self._inbound.discard(conn)
        conn.link.close()

        current = asyncio.current_task()
        to_cancel = [t for t in [conn.reader, *conn.tasks] if t is not None and t is not current]
        for task in to_cancel:
            task.cancel()
        await asyncio.gather(*to_cancel, return_exceptions=True)
        conn.tasks.clear()

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------
    async def _send(self, conn: PeerConnection, msg_type: MessageType, body: Dict) -> None:
        message = PeerMessage.create(msg_type, body, self.identity, self.crypto)
        try:
            await conn.link.send(message.to_bytes())
        except ConnectionError as e:
            raise PeerConnectionError(conn.peer.peer_id, str(e))

    async def _request(self, conn: PeerConnection, msg_type: MessageType, body: Dict) -> Dict:
        request_id = body["requestId"]
        future = asyncio.get_running_loop().create_future()
        conn.pending[request_id] = future
        try:
            await self._send(conn, msg_type, body)
            return await future
        finally:
            conn.pending.pop(request_id, None)

    async def send_fingerprint_request(
        self,
        peer_id: str,
        request: FingerprintRequest,
        timeout: Optional[float] = None,
    ) -> FingerprintResponse:
        """
        Send a signed comparison request and wait for the response.

        Raises:
            PeerConnectionError: Not connected, or the link dropped
            PeerTimeoutError: No response before the deadline, or the
                peer was disconnected while waiting
            MalformedMessageError: Response body could not be decoded
        """
        conn = self._connections.get(peer_id)
        if conn is None:
            raise PeerConnectionError(peer_id, "not connected")
        timeout = timeout if timeout is not None else self.config.request_timeout

        try:
            body = await asyncio.wait_for(
                self._request(conn, MessageType.FINGERPRINT_REQUEST, request.to_dict()),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            raise PeerTimeoutError(peer_id, timeout)
        return FingerprintResponse.from_dict(body)

    async def broadcast(self, msg_type: MessageType, body: Dict) -> int:
        """Send a signed message to every connected peer; returns deliveries."""
        conns = list(self._connections.values())
        results = await asyncio.gather(
            *[self._send(conn, msg_type, body) for conn in conns],
            return_exceptions=True,
        )
        delivered = 0
        for conn, result in zip(conns, results):
            if isinstance(result, Exception):
                logger.error(f"Failed to send to {conn.peer.peer_id}: {result}")
            else:
                delivered += 1
        return delivered

    async def broadcast_report(self, report: PeerReport) -> int:
        return await self.broadcast(MessageType.REPORT, report.to_dict())

    async def _read_loop(self, conn: PeerConnection) -> None:
        while True:
            data = await conn.link.inbox.get()
            if data is None:
                break
            message = self._accept_message(conn, data)
            if message is None:
                continue
            try:
                await self._dispatch(conn, message)
            except (MalformedMessageError, PeerConnectionError, KeyError, TypeError, ValueError) as e:
                logger.warning(f"Dropping {message.type.value} from {conn.peer.peer_id}: {e}")
        await self._release(conn)

    def _accept_message(self, conn: PeerConnection, data: bytes) -> Optional[PeerMessage]:
        """Decode and authenticate inbound data; ``None`` means dropped."""
        peer_id = conn.peer.peer_id
        try:
            message = PeerMessage.from_bytes(data)
        except MalformedMessageError as e:
            logger.warning(f"Dropping malformed message from {peer_id}: {e}")
            return None
        if message.sender_id != peer_id:
            logger.warning(f"Dropping message claiming sender {message.sender_id} on link to {peer_id}")
            return None
        if not message.verify(self.crypto, conn.peer.public_key):
            logger.warning(f"Dropping {message.type.value} with invalid signature from {peer_id}")
            return None
        return message

    async def _dispatch(self, conn: PeerConnection, message: PeerMessage) -> None:
        body = message.body()
        if message.type == MessageType.KEY_EXCHANGE:
            if body.get("reply"):
                self._resolve(conn, body)
            else:
                await self._answer_key_exchange(conn, body)
        elif message.type == MessageType.FINGERPRINT_RESPONSE:
            self._resolve(conn, body)
        elif message.type == MessageType.FINGERPRINT_REQUEST:
            if conn.state != ConnectionState.CONNECTED:
                logger.warning(f"Dropping request from {conn.peer.peer_id} before key exchange")
                return
            task = asyncio.create_task(self._serve_request(conn, body))
            conn.tasks.add(task)
            task.add_done_callback(conn.tasks.discard)
        elif message.type == MessageType.REPORT:
            report = PeerReport.from_dict(body)
            self.received_reports.put_nowait(report)
            logger.debug(f"Received report {report.id} from {conn.peer.peer_id}")

    def _resolve(self, conn: PeerConnection, body: Dict) -> None:
        future = conn.pending.get(body.get("requestId"))
        if future is None or future.done():
            logger.debug(f"Ignoring late or unknown response from {conn.peer.peer_id}")
            return
        future.set_result(body)

    async def _answer_key_exchange(self, conn: PeerConnection, body: Dict) -> None:
        peer_id = conn.peer.peer_id
        if peer_id not in self._connections and len(self._connections) >= self.config.max_connections:
            logger.warning(f"Connection limit reached, refusing {peer_id}")
            await self._teardown(conn, PeerConnectionError(peer_id, "connection limit reached"))
            return

        peer_public = CryptoUtils.b64decode(body["publicKey"])
        public, private = self.crypto.generate_exchange_key_pair()
        conn.session_key = self.crypto.derive_shared_key(
            private, peer_public, self._session_info(peer_id)
        )

        if await self._install(peer_id, conn) is not conn:
            return

        await self._send(conn, MessageType.KEY_EXCHANGE, {
            "requestId": body["requestId"],
            "publicKey": CryptoUtils.b64encode(public),
            "reply": True,
        })
        logger.info(f"Accepted connection from peer {peer_id}")

    async def _serve_request(self, conn: PeerConnection, body: Dict) -> None:
        peer_id = conn.peer.peer_id
        try:
            request = FingerprintRequest.from_dict(body)
        except MalformedMessageError as e:
            logger.warning(f"Dropping malformed request from {peer_id}: {e}")
            return
        if self._request_handler is None:
            logger.warning(f"No comparison handler installed, ignoring request from {peer_id}")
            return
        try:
            response = await self._request_handler(request, conn.peer)
            await self._send(conn, MessageType.FINGERPRINT_RESPONSE, response.to_dict())
        except PeerConnectionError as e:
            logger.warning(f"Could not answer {peer_id}: {e}")
        except Exception as e:
            logger.error(f"Comparison handler failed for {peer_id}: {e}")

    async def _release(self, conn: PeerConnection) -> None:
        """Clean up after the remote end closed the link."""
        peer_id = conn.peer.peer_id
        if self._connections.get(peer_id) is conn:
            del self._connections[peer_id]
            self._set_state(peer_id, ConnectionState.DISCONNECTED)
            logger.info(f"Peer {peer_id} closed the connection")
        await self._teardown(conn, PeerConnectionError(peer_id, "link closed"))
