"""Electrum peer discovery: a health-checked list of other public servers."""

from __future__ import annotations

import heapq
import ipaddress
import itertools
import json
import logging
import socket
import ssl
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any, Union

from esplorad.chain import Network
from esplorad.config import SocketAddr
from esplorad.default_servers import add_default_servers
from esplorad.electrum import Hostname, ProtocolVersion, ServerFeatures, Service
from esplorad.errors import ConnectionFailure, ElectrsError

log = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

HEALTH_CHECK_FREQ = 3600.0  # check servers every hour
JOB_INTERVAL = 1.0  # run one health check job every second
MAX_CONSECUTIVE_FAILURES = 24  # drop servers after ~24 hours of failed checks
MAX_QUEUE_SIZE = 500  # refuse new servers with that many jobs queued
MAX_SERVERS_PER_REQUEST = 3  # hosts considered per server.add_peer call
MAX_SERVICES_PER_REQUEST = 6  # services queued per server.add_peer call
MAX_HOSTNAME_LEN = 100
CONNECT_TIMEOUT = 30.0

_PRIVATE_V4 = tuple(
    ipaddress.IPv4Network(net) for net in ("10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16")
)


@dataclass(frozen=True)
class ServerAddr:
    """A server's address: an IP for clearnet hosts, the host name for onion ones."""

    host: str
    ip: IPAddress | None = None

    @property
    def is_onion(self) -> bool:
        return self.ip is None

    @classmethod
    def resolve(cls, host: str) -> ServerAddr:
        if host.endswith(".onion"):
            return cls(host)
        try:
            ip = ipaddress.ip_address(host)
        except ValueError:
            try:
                infos = socket.getaddrinfo(host, 1, type=socket.SOCK_STREAM)
            except (OSError, UnicodeError) as exc:
                raise ElectrsError("hostname resolution failed") from exc
            if not infos:
                raise ElectrsError("hostname resolution failed") from None
            ip = ipaddress.ip_address(str(infos[0][4][0]).split("%")[0])
        return cls(str(ip), ip)

    def __str__(self) -> str:
        return self.host


def is_remote_addr(addr: ServerAddr) -> bool:
    """Whether the address can belong to a public server."""
    ip = addr.ip
    if ip is None:
        return True
    if ip.is_loopback or ip.is_unspecified or ip.is_multicast:
        return False
    if isinstance(ip, ipaddress.IPv4Address):
        return not any(ip in net for net in _PRIVATE_V4)
    return True


@dataclass(eq=False)
class HealthCheck:
    """A queued health check job, one per service rather than per server."""

    addr: ServerAddr
    hostname: Hostname
    service: Service
    added_by: IPAddress | None = None
    last_check: float | None = None
    last_healthy: float | None = None
    consecutive_failures: int = 0

    @property
    def is_default(self) -> bool:
        return self.added_by is None

    def is_healthy(self) -> bool:
        return (
            self.last_check is not None
            and self.last_healthy is not None
            and self.last_check == self.last_healthy
        )

    def should_retry(self) -> bool:
        """Servers that never passed a check are dropped at once, unless default."""
        return (
            self.last_healthy is not None or self.is_default
        ) and self.consecutive_failures < MAX_CONSECUTIVE_FAILURES

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, HealthCheck):
            return NotImplemented
        return self.hostname == other.hostname and self.service == other.service


@dataclass
class Server:
    """A healthy server: one address with one or more healthy services."""

    hostname: Hostname
    features: ServerFeatures
    services: set[Service] = field(default_factory=set)

    def feature_strs(self) -> list[str]:
        """Features and services in the compact form of `server.peers.subscribe`."""
        strs = [f"v{self.features.protocol_max}"]
        if self.features.pruning is not None:
            strs.append(f"p{self.features.pruning}")
        ordered = sorted(self.services, key=lambda s: (s.protocol != "tcp", s.port))
        strs.extend(str(service) for service in ordered)
        return strs


@dataclass(frozen=True)
class ServerEntry:
    """One entry of the `server.peers.subscribe` reply."""

    addr: ServerAddr
    hostname: Hostname
    features: list[str]

    def to_json(self) -> list[Any]:
        return [str(self.addr), self.hostname, list(self.features)]


def _recv_exact(sock: socket.socket, size: int) -> bytes:
    data = b""
    while len(data) < size:
        chunk = sock.recv(size - len(data))
        if not chunk:
            raise ConnectionFailure("proxy closed the connection")
        data += chunk
    return data


def _socks5_connect(sock: socket.socket, host: str, port: int) -> None:
    sock.sendall(b"\x05\x01\x00")
    if _recv_exact(sock, 2) != b"\x05\x00":
        raise ConnectionFailure("socks proxy refused the handshake")
    name = host.encode("ascii")
    if len(name) > 255:
        raise ElectrsError("host name too long for socks proxy")
    sock.sendall(b"\x05\x01\x00\x03" + bytes([len(name)]) + name + port.to_bytes(2, "big"))
    version, reply, _, address_type = _recv_exact(sock, 4)
    if version != 5 or reply != 0:
        raise ConnectionFailure(f"socks proxy connect failed with code {reply}")
    if address_type == 1:
        _recv_exact(sock, 4)
    elif address_type == 4:
        _recv_exact(sock, 16)
    elif address_type == 3:
        _recv_exact(sock, _recv_exact(sock, 1)[0])
    else:
        raise ConnectionFailure(f"unknown socks address type {address_type}")
    _recv_exact(sock, 2)


class _ElectrumClient:
    """A line-delimited JSON-RPC client for one Electrum connection."""

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock
        self._reader = sock.makefile("rb")
        self._ids = itertools.count(1)

    def __enter__(self) -> _ElectrumClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        for resource in (self._reader, self._sock):
            try:
                resource.close()
            except OSError:
                pass

    def call(self, method: str, params: list[Any]) -> Any:
        request_id = next(self._ids)
        request = {"jsonrpc": "2.0", "method": method, "params": params, "id": request_id}
        self._sock.sendall((json.dumps(request) + "\n").encode())
        while True:
            raw = self._reader.readline()
            if not raw:
                raise ConnectionFailure("connection closed by server")
            reply = json.loads(raw)
            if not isinstance(reply, dict) or reply.get("id") != request_id:
                continue  # notifications or unrelated replies
            if reply.get("error") is not None:
                raise ElectrsError(f"{method} failed: {reply['error']}")
            return reply.get("result")


class DiscoveryManager:
    """Keeps a queue of health checks and the set of servers found healthy."""

    def __init__(
        self,
        our_network: Network,
        our_features: ServerFeatures,
        our_version: ProtocolVersion,
        announce: bool = False,
        tor_proxy: SocketAddr | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.our_features = our_features
        self.our_version = our_version
        self.announce = announce
        self.tor_proxy = tor_proxy
        self._clock = clock
        self._queue: list[tuple[tuple[int, float], int, HealthCheck]] = []
        self._seq = itertools.count()
        self._queue_lock = threading.Lock()
        self._healthy: dict[ServerAddr, Server] = {}
        self._healthy_lock = threading.Lock()
        self._stop = threading.Event()

        addrs = set()
        for hostname in our_features.hosts:
            try:
                addrs.add(ServerAddr.resolve(hostname))
            except ElectrsError as exc:
                log.warning("failed resolving own hostname %s: %s", hostname, exc)
        self.our_addrs = frozenset(addrs)
        add_default_servers(self, our_network)

    def __len__(self) -> int:
        with self._queue_lock:
            return len(self._queue)

    def _push(self, job: HealthCheck) -> None:
        order = (0, 0.0) if job.last_check is None else (1, job.last_check)
        heapq.heappush(self._queue, (order, next(self._seq), job))

    def _candidate_jobs(
        self,
        added_by: IPAddress,
        features: ServerFeatures,
        existing: dict[ServerAddr, set[Service]],
    ) -> Iterator[HealthCheck]:
        for raw_hostname, ports in itertools.islice(
            features.hosts.items(), MAX_SERVERS_PER_REQUEST
        ):
            hostname = raw_hostname.lower()
            if len(hostname) > MAX_HOSTNAME_LEN:
                log.warning("skipping invalid hostname")
                continue
            try:
                addr = ServerAddr.resolve(hostname)
            except ElectrsError as exc:
                log.warning("failed resolving %s: %s", hostname, exc)
                continue
            if not is_remote_addr(addr) or addr in self.our_addrs:
                log.warning("skipping own or non-remote server addr")
                continue
            if addr.ip is not None and addr.ip != added_by:
                log.warning(
                    "server ip does not match source ip (%s, %s != %s)", hostname, addr.ip, added_by
                )
                continue
            services = []
            if ports.tcp_port is not None:
                services.append(Service.tcp(ports.tcp_port))
            if ports.ssl_port is not None:
                services.append(Service.ssl(ports.ssl_port))
            known = existing.get(addr, set())
            for service in services:
                if service not in known:
                    yield HealthCheck(addr, hostname, service, added_by)

    def add_server_request(self, added_by: str | IPAddress, features: ServerFeatures) -> None:
        """Queue the servers a peer announced through `server.add_peer`."""
        source = ipaddress.ip_address(added_by)
        self.verify_compatibility(features)
        with self._queue_lock:
            if len(self._queue) >= MAX_QUEUE_SIZE:
                raise ElectrsError("queue size exceeded")
            existing: dict[ServerAddr, set[Service]] = {}
            for _, _, job in self._queue:
                existing.setdefault(job.addr, set()).add(job.service)
            jobs = list(
                itertools.islice(
                    self._candidate_jobs(source, features, existing), MAX_SERVICES_PER_REQUEST
                )
            )
            if len(self._queue) + len(jobs) > MAX_QUEUE_SIZE:
                raise ElectrsError("queue size exceeded")
            for job in jobs:
                self._push(job)

    def add_default_server(self, hostname: Hostname, services: list[Service]) -> None:
        """Queue a default server; these skip the limits and are retried longer."""
        addr = ServerAddr.resolve(hostname)
        with self._queue_lock:
            for service in services:
                self._push(HealthCheck(addr, hostname, service))

    def get_servers(self) -> list[ServerEntry]:
        """The healthy servers, formatted for `server.peers.subscribe`."""
        with self._healthy_lock:
            return [
                ServerEntry(addr, server.hostname, server.feature_strs())
                for addr, server in self._healthy.items()
            ]

    def run_health_check(self) -> None:
        """Run the next due health check, if any; raise if the check fails."""
        with self._queue_lock:
            if not self._queue:
                return
            job = self._queue[0][2]
            if job.last_check is not None and self._clock() - job.last_check < HEALTH_CHECK_FREQ:
                return
            heapq.heappop(self._queue)
        log.debug("processing %r", job)
        was_healthy = job.is_healthy()
        try:
            features = self.check_server(job.addr, job.hostname, job.service)
        except ElectrsError as exc:
            log.debug("%s %s is unavailable: %s", job.hostname, job.service, exc)
            if was_healthy:
                self._remove_unhealthy_service(job)
            job.last_check = self._clock()
            job.consecutive_failures += 1
            if job.should_retry():
                with self._queue_lock:
                    self._push(job)
            else:
                log.debug("giving up on %r", job)
            raise
        log.debug("%s %s is available", job.hostname, job.service)
        if not was_healthy:
            self._save_healthy_service(job, features)
        now = self._clock()
        job.last_check = now
        job.last_healthy = now
        job.consecutive_failures = 0
        with self._queue_lock:
            self._push(job)

    def _save_healthy_service(self, job: HealthCheck, features: ServerFeatures) -> None:
        with self._healthy_lock:
            server = self._healthy.setdefault(job.addr, Server(job.hostname, features))
            server.services.add(job.service)

    def _remove_unhealthy_service(self, job: HealthCheck) -> None:
        with self._healthy_lock:
            server = self._healthy.get(job.addr)
            if server is None or job.service not in server.services:
                raise RuntimeError("missing expected server, corrupted state")
            server.services.discard(job.service)
            if not server.services:
                del self._healthy[job.addr]

    def _connect(self, addr: ServerAddr, hostname: Hostname, service: Service) -> socket.socket:
        if addr.is_onion:
            if self.tor_proxy is None:
                raise ElectrsError("no tor proxy configured, onion hosts are unsupported")
            sock = socket.create_connection(self.tor_proxy, timeout=CONNECT_TIMEOUT)
            try:
                _socks5_connect(sock, addr.host, service.port)
            except BaseException:
                sock.close()
                raise
            server_name = addr.host
        else:
            target = hostname if service.protocol == "ssl" else str(addr.ip)
            sock = socket.create_connection((target, service.port), timeout=CONNECT_TIMEOUT)
            server_name = hostname
        if service.protocol == "ssl":
            context = ssl.create_default_context()
            try:
                sock = context.wrap_socket(sock, server_hostname=server_name)
            except BaseException:
                sock.close()
                raise
        return sock

    def check_server(
        self, addr: ServerAddr, hostname: Hostname, service: Service
    ) -> ServerFeatures:
        """Query a service's features, check them, and announce ourselves if asked to."""
        log.debug("checking service %s %s", addr, service)
        try:
            with _ElectrumClient(self._connect(addr, hostname, service)) as client:
                reply = client.call("server.features", [])
                if not isinstance(reply, Mapping):
                    raise ElectrsError(f"invalid server.features reply: {reply!r}")
                features = ServerFeatures.from_client_features(reply)
                self.verify_compatibility(features)
                if self.announce:
                    accepted = client.call("server.add_peer", [self.our_features.to_json()])
                    if accepted is not True:
                        raise ElectrsError("server does not reciprocate")
        except (OSError, ValueError) as exc:
            raise ConnectionFailure(f"failed to query {hostname} {service}: {exc}") from exc
        return features

    def verify_compatibility(self, features: ServerFeatures) -> None:
        if features.genesis_hash != self.our_features.genesis_hash:
            raise ElectrsError("incompatible networks")
        if not features.protocol_min <= self.our_version <= features.protocol_max:
            raise ElectrsError("incompatible protocol versions")
        if features.hash_function != "sha256":
            raise ElectrsError("incompatible hash function")

    def spawn_jobs_thread(self) -> threading.Thread:
        """Run health checks in the background, one per JOB_INTERVAL, until stopped."""

        def run() -> None:
            while not self._stop.is_set():
                try:
                    self.run_health_check()
                except ElectrsError as exc:
                    log.debug("health check failed: %s", exc)
                self._stop.wait(JOB_INTERVAL)

        thread = threading.Thread(target=run, name="discovery-jobs", daemon=True)
        thread.start()
        return thread

    def stop(self) -> None:
        """Ask the background jobs thread to finish."""
        self._stop.set()