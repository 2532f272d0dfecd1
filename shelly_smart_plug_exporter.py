from __future__ import annotations

import json
import logging
import math
import os
import re
import signal
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from socketserver import ThreadingMixIn
from threading import Thread
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

import click
import requests
import yaml
from prometheus_client import CONTENT_TYPE_LATEST

EXPORTER_VERSION = "1.0.0"

DEFAULT_SERVER_PORT = 9001
DEFAULT_TELEMETRY_PATH = "/metrics"
FETCH_TIMEOUT_SECONDS = 10.0
READ_CHUNK_BYTES = 1
STATUS_URL_TEMPLATE = "http://{address}/rpc/Switch.GetStatus?id=0"
LABEL_KEY = "hostname"

METRIC_NAMES = (
    "current_datetime",
    "power_watts",
    "voltage",
    "current_amps",
    "temperature_celsius",
    "temperature_fahrenheit",
    "running_total_power_consumed_watts",
)

_ADDRESS_RE = re.compile(r"^[A-Za-z0-9.\-:\[\]_]+$")
# label values are written unquoted, so they must not break the line syntax
_LABEL_RE = re.compile(r"^[^\s{}=,\"]+$")


class ConfigError(Exception):
    pass


class DuplicateAddress(ConfigError):
    def __init__(self, address: str) -> None:
        super().__init__(f"device address {address} is registered more than once")
        self.address = address


class InvalidAddress(ConfigError):
    def __init__(self, address: str) -> None:
        super().__init__(f"invalid device address: {address!r}")
        self.address = address


class InvalidLabel(ConfigError):
    def __init__(self, address: str, label: str) -> None:
        super().__init__(f"invalid hostname {label!r} for device {address}")
        self.label = label


class StatusParseError(ValueError):
    pass


class ErrorKind(Enum):
    UNREACHABLE = "unreachable"
    TIMEOUT = "timeout"
    MALFORMED_RESPONSE = "malformed_response"


@dataclass(frozen=True)
class Device:
    address: str
    alias: Optional[str] = None

    @property
    def label(self) -> str:
        return self.alias or self.address

    @property
    def url(self) -> str:
        host = self.address
        if host.count(":") > 1 and not host.startswith("["):
            host = f"[{host}]"
        return STATUS_URL_TEMPLATE.format(address=host)


@dataclass(frozen=True)
class RawDeviceStatus:
    power_watts: float
    voltage: float
    current_amps: float
    temperature_celsius: float
    temperature_fahrenheit: float
    total_energy: float
    device_timestamp: float


@dataclass(frozen=True)
class Success:
    label: str
    status: RawDeviceStatus
    query_timestamp: float
    ok = True


@dataclass(frozen=True)
class Failure:
    label: str
    kind: ErrorKind
    message: str
    ok = False


DeviceResult = Union[Success, Failure]
Snapshot = List[DeviceResult]


class DeviceRegistry:
    def __init__(self, devices: Iterable[Tuple[str, Optional[str]]] = ()) -> None:
        self._devices: List[Device] = []
        self._addresses: set = set()
        for address, alias in devices:
            self.register(address, alias)

    def register(self, address: str, label: Optional[str] = None) -> Device:
        address = (address or "").strip()
        if not address or not _ADDRESS_RE.match(address):
            raise InvalidAddress(address)
        if address in self._addresses:
            raise DuplicateAddress(address)

        alias = label.strip() if label else None
        if alias and not _LABEL_RE.match(alias):
            raise InvalidLabel(address, alias)
        dev = Device(address=address, alias=alias or None)
        self._addresses.add(address)
        self._devices.append(dev)
        return dev

    def all(self) -> Tuple[Device, ...]:
        return tuple(self._devices)

    def __len__(self) -> int:
        return len(self._devices)

    def __iter__(self) -> Iterator[Device]:
        return iter(self.all())


def _is_number(x: Any) -> bool:
    return isinstance(x, (int, float)) and not isinstance(x, bool)


def _number(payload: Dict[str, Any], *path: str) -> Optional[Union[int, float]]:
    node: Any = payload
    for key in path:
        if not isinstance(node, dict) or node.get(key) is None:
            return None
        node = node[key]
    if not _is_number(node):
        raise StatusParseError(f"field {'.'.join(path)} is not numeric: {node!r}")
    return node


def _required(payload: Dict[str, Any], *path: str) -> Union[int, float]:
    v = _number(payload, *path)
    if v is None:
        raise StatusParseError(f"missing field {'.'.join(path)}")
    return v


def celsius_to_fahrenheit(c: float) -> float:
    return round(c * 9.0 / 5.0 + 32.0, 2)


def fahrenheit_to_celsius(f: float) -> float:
    return round((f - 32.0) * 5.0 / 9.0, 2)


def parse_status(payload: Any, query_timestamp: float) -> RawDeviceStatus:
    if not isinstance(payload, dict):
        raise StatusParseError("status payload is not an object")

    temp_c = _number(payload, "temperature", "tC")
    temp_f = _number(payload, "temperature", "tF")
    if temp_c is None and temp_f is None:
        raise StatusParseError("missing field temperature.tC/temperature.tF")
    if temp_f is None:
        temp_f = celsius_to_fahrenheit(temp_c)
    elif temp_c is None:
        temp_c = fahrenheit_to_celsius(temp_f)

    # minute_ts is the start of the current minute on the device clock
    device_ts = _number(payload, "aenergy", "minute_ts")
    if device_ts is not None:
        try:
            datetime.fromtimestamp(device_ts, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as e:
            raise StatusParseError(f"field aenergy.minute_ts out of range: {device_ts!r}") from e

    return RawDeviceStatus(
        power_watts=_required(payload, "apower"),
        voltage=_required(payload, "voltage"),
        current_amps=_required(payload, "current"),
        temperature_celsius=temp_c,
        temperature_fahrenheit=temp_f,
        total_energy=_required(payload, "aenergy", "total"),
        device_timestamp=float(device_ts) if device_ts is not None else query_timestamp,
    )


def _read_body(resp: Any, deadline: float) -> Optional[bytes]:
    body = bytearray()
    # status bodies are a few hundred bytes; small reads let a trickling
    # device be cut off at the deadline instead of after the whole body
    for chunk in resp.iter_content(chunk_size=READ_CHUNK_BYTES):
        body.extend(chunk)
        if time.monotonic() > deadline:
            return None
    return bytes(body)


def fetch_status(device: Device, session: Any = None, timeout: float = FETCH_TIMEOUT_SECONDS) -> DeviceResult:
    http = session if session is not None else requests
    now = time.time()
    deadline = time.monotonic() + timeout
    try:
        resp = http.get(device.url, timeout=timeout, stream=True)
        try:
            if resp.status_code < 200 or resp.status_code > 299:
                return Failure(device.label, ErrorKind.MALFORMED_RESPONSE, f"unexpected http status {resp.status_code}")
            body = _read_body(resp, deadline)
        finally:
            resp.close()
    except requests.exceptions.Timeout as e:
        return Failure(device.label, ErrorKind.TIMEOUT, str(e) or "request timed out")
    except requests.exceptions.RequestException as e:
        return Failure(device.label, ErrorKind.UNREACHABLE, str(e) or "connection failed")

    if body is None:
        return Failure(device.label, ErrorKind.TIMEOUT, f"response not complete within {timeout:.1f}s")

    try:
        payload = json.loads(body)
    except ValueError as e:
        return Failure(device.label, ErrorKind.MALFORMED_RESPONSE, f"non-json response: {e}")

    try:
        status = parse_status(payload, now)
    except StatusParseError as e:
        return Failure(device.label, ErrorKind.MALFORMED_RESPONSE, str(e))

    return Success(device.label, status, now)



class PollCoordinator:
    def __init__(self, registry: DeviceRegistry, fetch: Callable[[Device], DeviceResult] = fetch_status) -> None:
        self.registry = registry
        self.fetch = fetch

    def _fetch_one(self, device: Device) -> DeviceResult:
        try:
            return self.fetch(device)
        except Exception as e:
            logging.exception("unexpected error polling device=%s", device.label)
            return Failure(device.label, ErrorKind.MALFORMED_RESPONSE, str(e))

    def poll(self) -> Snapshot:
        devices = self.registry.all()
        if not devices:
            return []

        t0 = time.time()
        # one worker per device so a slow plug never queues the others
        with ThreadPoolExecutor(max_workers=len(devices), thread_name_prefix="shelly-poll") as executor:
            futs = [executor.submit(self._fetch_one, d) for d in devices]
            snapshot: Snapshot = [f.result() for f in futs]
        dt = time.time() - t0

        failures = 0
        for dev, r in zip(devices, snapshot):
            if not r.ok:
                failures += 1
                logging.warning("device=%s address=%s error=%s msg=%s", r.label, dev.address, r.kind.value, r.message)

        logging.debug("poll devices=%s failures=%s duration=%.3fs", len(devices), failures, dt)
        return snapshot


def format_timestamp(ts: float) -> str:
    dt = datetime.fromtimestamp(ts, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def format_value(v: Union[int, float]) -> str:
    if isinstance(v, float) and not math.isfinite(v):
        return "NaN" if math.isnan(v) else ("+Inf" if v > 0 else "-Inf")
    return repr(v)


def render_device(result: Success) -> List[str]:
    st = result.status
    values = (
        format_timestamp(st.device_timestamp),
        format_value(st.power_watts),
        format_value(st.voltage),
        format_value(st.current_amps),
        format_value(st.temperature_celsius),
        format_value(st.temperature_fahrenheit),
        format_value(st.total_energy),
    )
    return [f"{name}{{{LABEL_KEY}={result.label}}} {value}" for name, value in zip(METRIC_NAMES, values)]


def render(snapshot: Sequence[DeviceResult]) -> str:
    lines: List[str] = []
    for r in snapshot:
        # failed devices are left out entirely, there is no up/down series
        if r.ok:
            lines.extend(render_device(r))
    if not lines:
        return ""
    return "\n".join(lines) + "\n"


class ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    daemon_threads = True
    allow_reuse_address = True


class QuietHandler(WSGIRequestHandler):
    def log_message(self, format: str, *args: Any) -> None:
        return


def make_app(coordinator: PollCoordinator, telemetry_path: str = DEFAULT_TELEMETRY_PATH):
    def app(environ, start_response):
        path = environ.get("PATH_INFO", "")
        if path == telemetry_path:
            try:
                output = render(coordinator.poll())
            except Exception:
                logging.exception("scrape failed")
                output = ""
            start_response("200 OK", [("Content-Type", CONTENT_TYPE_LATEST)])
            return [output.encode("utf-8")]
        if path in ("/-/healthy", "/healthz"):
            start_response("200 OK", [("Content-Type", "text/plain")])
            return [b"ok"]
        start_response("404 Not Found", [("Content-Type", "text/plain")])
        return [b"not found"]

    return app


def setup_logging(level: str) -> None:
    lvl = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=lvl, format="%(asctime)s %(levelname)s %(message)s")


def _port(s: str) -> int:
    port = int(s)
    if not 0 <= port <= 65535:
        raise ValueError(f"port out of range: {port}")
    return port


def parse_listen_address(s: str) -> Tuple[str, int]:
    s = s.strip()
    if s.startswith(":"):
        return "", _port(s[1:])
    if ":" in s:
        host, port_s = s.rsplit(":", 1)
        return host, _port(port_s)
    return "", _port(s)


def load_config_file(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        raw = f.read()

    try:
        if path.lower().endswith(".json"):
            data = json.loads(raw)
        else:
            data = yaml.safe_load(raw)
    except (ValueError, yaml.YAMLError) as e:
        raise ConfigError(f"cannot parse {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError("config root must be a mapping/object")
    return data


def to_device_entries(cfg: Dict[str, Any]) -> List[Tuple[str, Optional[str]]]:
    devices = cfg.get("devices") or []
    if not isinstance(devices, list):
        raise ConfigError("'devices' must be a list")

    out: List[Tuple[str, Optional[str]]] = []
    for item in devices:
        if isinstance(item, str):
            out.append((item, None))
        elif isinstance(item, dict) and item.get("ip"):
            name = str(item.get("name", "")).strip()
            out.append((str(item["ip"]), name or None))
        else:
            raise ConfigError(f"device entry needs an 'ip': {item!r}")
    return out


def split_addresses(values: Iterable[str]) -> List[str]:
    out: List[str] = []
    for v in values:
        out.extend(v.split())
    return out


def parse_hostname_mapping(mappings: Iterable[str]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for m in mappings:
        if ":" not in m:
            logging.warning("invalid mapping %r, use format ip:hostname", m)
            continue
        address, hostname = m.rsplit(":", 1)
        address, hostname = address.strip(), hostname.strip()
        if not address or not hostname:
            logging.warning("invalid mapping %r, use format ip:hostname", m)
            continue
        out[address] = hostname
    return out


def build_registry(
    file_devices: Sequence[Tuple[str, Optional[str]]],
    ip_addrs: Iterable[str],
    mappings: Iterable[str],
) -> DeviceRegistry:
    hostnames = parse_hostname_mapping(mappings)
    registry = DeviceRegistry()
    for address, name in file_devices:
        registry.register(address, hostnames.get(address.strip()) or name)
    for address in split_addresses(ip_addrs):
        registry.register(address, hostnames.get(address))

    unused = set(hostnames) - {d.address for d in registry}
    for address in sorted(unused):
        logging.warning("mapping for %s does not match any configured device", address)
    return registry


@click.command(help="Prometheus exporter for Shelly smart plugs.")
@click.version_option(EXPORTER_VERSION)
@click.option("-i", "--ip-addr", "ip_addrs", multiple=True, help="IP address of a smart plug on your local network (repeatable, space separated).")
@click.option("-p", "--server-port", "server_port", type=click.IntRange(0, 65535), default=None, help=f"Port to run the webserver at. [default: {DEFAULT_SERVER_PORT}]")
@click.option("-m", "--hostname-ip-mapping", "mappings", multiple=True, help="IP -> hostname mapping in ip_address:hostname format (repeatable).")
@click.option("--config.file", "config_file", default=None, help="YAML or JSON file listing devices.")
@click.option("--web.listen-address", "web_listen_address", default=None, help="Address to listen on, e.g. 0.0.0.0:9001 or :9001.")
@click.option("--web.telemetry-path", "web_telemetry_path", default=None, help="Path under which to expose metrics.")
@click.option("--log.level", "log_level", default=lambda: os.environ.get("LOG_LEVEL", "INFO"), help="Log level.")
def main(ip_addrs, server_port, mappings, config_file, web_listen_address, web_telemetry_path, log_level):
    setup_logging(log_level)

    cfg_path = config_file or os.environ.get("SHELLY_EXPORTER_CONFIG", "").strip() or None

    try:
        cfg = load_config_file(cfg_path) if cfg_path else {}
        file_devices = to_device_entries(cfg)
        registry = build_registry(file_devices, ip_addrs, mappings)
    except OSError as e:
        raise SystemExit(f"cannot read config file: {e}")
    except ConfigError as e:
        raise SystemExit(f"configuration error: {e}")

    if cfg_path:
        logging.info("config_file=%s", cfg_path)

    web_cfg = cfg.get("web", {}) if isinstance(cfg.get("web", {}), dict) else {}
    telemetry_path = web_telemetry_path or str(web_cfg.get("telemetry_path", DEFAULT_TELEMETRY_PATH))

    try:
        if web_listen_address:
            host, port = parse_listen_address(web_listen_address)
        elif server_port is not None:
            host, port = "0.0.0.0", server_port
        else:
            host, port = parse_listen_address(str(web_cfg.get("listen_address", f"0.0.0.0:{DEFAULT_SERVER_PORT}")))
    except ValueError as e:
        raise SystemExit(f"invalid listen address: {e}")

    if not len(registry):
        logging.warning("no devices configured, /metrics will be empty")

    coordinator = PollCoordinator(registry)
    app = make_app(coordinator, telemetry_path)

    try:
        httpd = make_server(
            host,
            port,
            app,
            server_class=ThreadingWSGIServer,
            handler_class=QuietHandler,
        )
    except (OSError, OverflowError) as e:
        raise SystemExit(f"cannot listen on {host or '0.0.0.0'}:{port}: {e}")

    def _sig(*_):
        Thread(target=httpd.shutdown, daemon=True).start()

    signal.signal(signal.SIGTERM, _sig)
    signal.signal(signal.SIGINT, _sig)

    logging.info(
        "listening=%s:%s telemetry_path=%s devices=%s timeout=%.1fs",
        host if host else "0.0.0.0",
        port,
        telemetry_path,
        ",".join(f"{d.address}={d.label}" for d in registry) or "-",
        FETCH_TIMEOUT_SECONDS,
    )

    try:
        httpd.serve_forever()
    finally:
        httpd.server_close()


if __name__ == "__main__":
    main()
