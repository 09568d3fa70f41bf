#!/usr/bin/env python3
"""
mpv link opener

Open a media link (local file or URL, optionally with a start offset) in mpv,
reusing the player already running for that link when there is one. Each link
maps to its own mpv IPC endpoint; seeks are sent over that endpoint.
"""

from __future__ import annotations

import argparse
import asyncio
import base64
import dataclasses
import hashlib
import json
import os
import platform
import re
import shlex
import shutil
import subprocess
import sys
import time
from pathlib import Path
from typing import Dict, List, Optional, Sequence

# -----------------
# Constants / config
# -----------------

DEFAULT_PLAYER = "mpv"
ENDPOINT_PREFIX = "mpv-"
WINDOWS_PIPE_PREFIX = "\\\\.\\pipe\\"
WINDOWS_PIPE_MAX = 256
UNIX_SOCKET_PATH_MAX = 100  # sun_path is 108 bytes on Linux, 104 on macOS
UNIX_SOCKET_SUFFIX = ".sock"
# Fixed rather than taken from the environment: every caller must agree on it.
DEFAULT_SOCKET_DIR = "/tmp"
ENCODED_SCHEME = "b"
HASHED_SCHEME = "h"
MIN_HASH_LEN = 32
CONNECT_TIMEOUT = 0.3
READY_RETRIES = 10
READY_INTERVAL = 0.01
LAUNCH_GUARD = 1.0
CONFIG_ENV = "MPV_LINK_CONFIG"
CONFIG_DIR_NAME = "mpv-link-opener"
VIDEO_EXTS = ["mp4", "webm", "ogv", "mov", "mkv", "avi", "flv", "m3u"]
VIDEO_LINK_PREFIXES = ["https://www.bilibili.com/video", "https://www.youtube.com/watch"]
TIMESTAMP_FRAGMENT = "#t="

DEBUG = os.environ.get("MPV_LINK_DEBUG") == "1"

UNSAFE_OFFSET_RE = re.compile(r"[\s\x00-\x1f\x7f]")
OFFSET_RE = re.compile(r"-?\d+(?:[:.]\d+)*")
URL_RE = re.compile(r"^[A-Za-z][A-Za-z0-9+.-]*://")

# --------------
# Logging helpers
# --------------

def log_debug(msg: str) -> None:
    if DEBUG:
        print(f"[debug] {msg}", file=sys.stderr)


def log_info(msg: str) -> None:
    print(f"[info] {msg}", file=sys.stderr)


def log_warn(msg: str) -> None:
    print(f"[warn] {msg}", file=sys.stderr)


def log_error(msg: str) -> None:
    print(f"[error] {msg}", file=sys.stderr)


def die(msg: str, code: int = 1) -> None:
    log_error(msg)
    sys.exit(code)


# -------
# Errors
# -------

class PlayerError(Exception):
    pass


class SpawnError(PlayerError):
    """The player process could not be created. Fatal to the open request."""


class ProbeError(PlayerError):
    """Nothing answered on the endpoint. Only ever read as "not live"."""


class CommandSendError(PlayerError):
    """A control command could not be written. Logged, never raised to callers."""


# -------------
# Data classes
# -------------

@dataclasses.dataclass(frozen=True)
class MediaReference:
    source: str
    start_time: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.source:
            raise ValueError("media source must not be empty")
        if "\x00" in self.source:
            raise ValueError("media source must not contain NUL bytes")
        if self.start_time is None:
            return
        start = self.start_time.strip()
        if not start:
            object.__setattr__(self, "start_time", None)
            return
        # The offset is written verbatim onto a line-oriented command channel.
        if UNSAFE_OFFSET_RE.search(start):
            raise ValueError(f"invalid start offset: {self.start_time!r}")
        object.__setattr__(self, "start_time", start)


@dataclasses.dataclass(frozen=True)
class EndpointAddress:
    address: str
    is_windows_pipe: bool

    def __str__(self) -> str:
        return self.address


@dataclasses.dataclass
class LaunchOutcome:
    started: bool
    pid: Optional[int] = None
    error: Optional[BaseException] = None


@dataclasses.dataclass
class OpenResult:
    endpoint: EndpointAddress
    launched: bool
    ready: Optional[bool] = None  # None when no start offset was requested
    seek_sent: Optional[bool] = None


@dataclasses.dataclass
class PlayerConfig:
    mpv_path: str = DEFAULT_PLAYER
    mpv_additional_args: List[str] = dataclasses.field(default_factory=list)
    socket_dir: Optional[str] = None
    connect_timeout: float = CONNECT_TIMEOUT
    ready_retries: int = READY_RETRIES
    ready_interval: float = READY_INTERVAL
    launch_guard: float = LAUNCH_GUARD

    def __post_init__(self) -> None:
        if not self.mpv_path:
            raise ValueError("mpv_path must not be empty")
        if self.connect_timeout <= 0:
            raise ValueError("connect_timeout must be positive")
        if self.ready_retries < 0:
            raise ValueError("ready_retries must not be negative")
        if self.ready_interval < 0:
            raise ValueError("ready_interval must not be negative")
        if self.launch_guard < 0:
            raise ValueError("launch_guard must not be negative")

    def resolved_socket_dir(self) -> str:
        if self.socket_dir:
            return str(Path(self.socket_dir).expanduser())
        return DEFAULT_SOCKET_DIR


# ---------------
# Platform helpers
# ---------------

def current_system() -> str:
    return platform.system().lower()


def is_windows(system: Optional[str] = None) -> bool:
    return (system or current_system()) == "windows"


# ---------------
# Endpoint naming
# ---------------

def encode_source(source: str) -> str:
    # base32 is case-insensitive, so lowercasing keeps it injective; Windows
    # pipe names compare case-insensitively.
    raw = base64.b32encode(source.encode("utf-8")).decode("ascii")
    return ENCODED_SCHEME + raw.rstrip("=").lower()


def hash_source(source: str, length: int = 64) -> str:
    return HASHED_SCHEME + hashlib.sha256(source.encode("utf-8")).hexdigest()[:length]


def endpoint_token(source: str, budget: int) -> str:
    """
    Pick the token for `source` that fits in `budget` characters.

    The reversible encoding is used when it fits, a SHA-256 digest otherwise.
    The leading scheme character keeps the two forms from ever colliding.
    """
    token = encode_source(source)
    if len(token) <= budget:
        return token
    hash_len = min(64, budget - len(HASHED_SCHEME))
    if hash_len < MIN_HASH_LEN:
        raise ValueError(f"no room for an endpoint name ({budget} characters available)")
    return hash_source(source, hash_len)


def derive_endpoint(source: str, system: Optional[str] = None, socket_dir: Optional[str] = None) -> EndpointAddress:
    """
    Map a media source to the IPC endpoint its player listens on.

    Pure and deterministic: the same source always gives the same endpoint, so
    a player started by an earlier process can be found again.
    """
    if is_windows(system):
        budget = WINDOWS_PIPE_MAX - len(WINDOWS_PIPE_PREFIX) - len(ENDPOINT_PREFIX)
        token = endpoint_token(source, budget)
        return EndpointAddress(WINDOWS_PIPE_PREFIX + ENDPOINT_PREFIX + token, is_windows_pipe=True)

    base = (socket_dir or DEFAULT_SOCKET_DIR).rstrip("/") or "/"
    dir_len = len(os.fsencode(base)) + (0 if base.endswith("/") else 1)
    budget = UNIX_SOCKET_PATH_MAX - dir_len - len(ENDPOINT_PREFIX) - len(UNIX_SOCKET_SUFFIX)
    token = endpoint_token(source, budget)
    name = ENDPOINT_PREFIX + token + UNIX_SOCKET_SUFFIX
    address = base + name if base.endswith("/") else f"{base}/{name}"
    return EndpointAddress(address, is_windows_pipe=False)


def source_from_endpoint(endpoint: EndpointAddress) -> Optional[str]:
    """Recover the source from an encoded endpoint; None for hashed names."""
    name = re.split(r"[\\/]", endpoint.address)[-1]
    if not name.startswith(ENDPOINT_PREFIX):
        return None
    token = name[len(ENDPOINT_PREFIX):]
    if token.endswith(UNIX_SOCKET_SUFFIX):
        token = token[: -len(UNIX_SOCKET_SUFFIX)]
    if not token.startswith(ENCODED_SCHEME):
        return None
    raw = token[len(ENCODED_SCHEME):].upper()
    raw += "=" * (-len(raw) % 8)
    try:
        return base64.b32decode(raw).decode("utf-8")
    except ValueError:
        return None


# --------------
# mpv IPC helpers
# --------------

def _touch_pipe(path: str) -> None:
    with open(path, "r+b", buffering=0):
        pass


def _write_pipe(path: str, payload: bytes) -> None:
    with open(path, "r+b", buffering=0) as pipe:
        pipe.write(payload)
        pipe.flush()


async def _close_writer(writer: asyncio.StreamWriter) -> None:
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass


async def _touch_endpoint(endpoint: EndpointAddress, timeout: float) -> None:
    try:
        if endpoint.is_windows_pipe:
            await asyncio.wait_for(asyncio.to_thread(_touch_pipe, endpoint.address), timeout)
            return
        _, writer = await asyncio.wait_for(asyncio.open_unix_connection(endpoint.address), timeout)
    except (OSError, asyncio.TimeoutError) as exc:
        raise ProbeError(f"{endpoint}: {exc!r}") from exc
    await _close_writer(writer)


async def _write_endpoint(endpoint: EndpointAddress, payload: bytes, timeout: float) -> None:
    try:
        if endpoint.is_windows_pipe:
            await asyncio.wait_for(asyncio.to_thread(_write_pipe, endpoint.address, payload), timeout)
            return
        _, writer = await asyncio.wait_for(asyncio.open_unix_connection(endpoint.address), timeout)
    except (OSError, asyncio.TimeoutError) as exc:
        raise CommandSendError(f"connect to {endpoint} failed: {exc!r}") from exc

    try:
        writer.write(payload)
        await asyncio.wait_for(writer.drain(), timeout)
    except (OSError, asyncio.TimeoutError) as exc:
        raise CommandSendError(f"write to {endpoint} failed: {exc!r}") from exc
    finally:
        await _close_writer(writer)


async def probe_endpoint(endpoint: EndpointAddress, timeout: float = CONNECT_TIMEOUT) -> bool:
    """
    Return True when something accepts connections on `endpoint`.

    The connection is closed straight away without sending anything. Refused,
    missing and timed-out endpoints all count as not live; this never raises.
    """
    try:
        await _touch_endpoint(endpoint, timeout)
    except ProbeError as exc:
        log_debug(f"probe: not live: {exc}")
        return False
    log_debug(f"probe: live: {endpoint}")
    return True


def format_seek(offset: str) -> str:
    return f"seek {offset} absolute"


async def send_command(endpoint: EndpointAddress, command: str, timeout: float = CONNECT_TIMEOUT) -> bool:
    """
    Write one newline-terminated command to `endpoint` and hang up.

    Best effort: a failure is logged and reported through the return value.
    """
    line = command if command.endswith("\n") else command + "\n"
    if "\n" in line[:-1]:
        raise ValueError(f"command must be a single line: {command!r}")
    try:
        await _write_endpoint(endpoint, line.encode("utf-8"), timeout)
    except CommandSendError as exc:
        log_warn(f"mpv command {command.strip()!r} not delivered: {exc}")
        return False
    log_debug(f"sent {command.strip()!r} to {endpoint}")
    return True


# ------------------
# mpv start
# ------------------

def build_player_args(reference: MediaReference, endpoint: EndpointAddress, config: PlayerConfig) -> List[str]:
    args = [config.mpv_path, *config.mpv_additional_args]
    args.extend([reference.source, f"--input-ipc-server={endpoint.address}"])
    if reference.start_time is not None:
        args.append(f"--start={reference.start_time}")
    return args


def detached_popen_kwargs(system: Optional[str] = None) -> Dict[str, object]:
    kwargs: Dict[str, object] = {
        "stdin": subprocess.DEVNULL,
        "stdout": subprocess.DEVNULL,
        "stderr": subprocess.DEVNULL,
        "close_fds": True,
    }
    if is_windows(system):
        creationflags = 0
        creationflags |= int(getattr(subprocess, "DETACHED_PROCESS", 0))
        creationflags |= int(getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0))
        kwargs["creationflags"] = creationflags
    else:
        kwargs["start_new_session"] = True
    return kwargs


def launch_player(reference: MediaReference, endpoint: EndpointAddress, config: PlayerConfig) -> LaunchOutcome:
    """
    Start a detached mpv bound to `endpoint`.

    Returns as soon as the process exists; readiness of its IPC server is the
    caller's concern. A process that cannot be created is reported, not retried.
    """
    args = build_player_args(reference, endpoint, config)
    log_debug(f"launching: {shlex.join(args)}")
    try:
        proc = subprocess.Popen(args, **detached_popen_kwargs())
    except (OSError, ValueError) as exc:
        log_error(f"failed to start {config.mpv_path}: {exc}")
        return LaunchOutcome(started=False, error=exc)
    log_debug(f"started {config.mpv_path} pid={proc.pid}")
    return LaunchOutcome(started=True, pid=proc.pid)


# ---------------------
# Session orchestration
# ---------------------

class PlayerSessionManager:
    """
    Decide reuse vs launch for a media reference and deliver its seek.

    Sessions are never tracked: liveness is probed on every call. The only
    state kept is a short record of recent launches per endpoint, so that a
    quick second request does not start another player while the first one
    is still coming up.
    """

    def __init__(self, config: Optional[PlayerConfig] = None):
        self.config = config or PlayerConfig()
        self._recent_launches: Dict[str, float] = {}

    def endpoint_for(self, source: str) -> EndpointAddress:
        return derive_endpoint(source, socket_dir=self.config.resolved_socket_dir())

    def _launch_in_flight(self, endpoint: EndpointAddress) -> bool:
        if self.config.launch_guard <= 0:
            return False
        now = time.monotonic()
        expired = [addr for addr, ts in self._recent_launches.items() if now - ts >= self.config.launch_guard]
        for addr in expired:
            del self._recent_launches[addr]
        return endpoint.address in self._recent_launches

    async def _wait_until_ready(self, endpoint: EndpointAddress) -> bool:
        retries = self.config.ready_retries
        for attempt in range(retries):
            if await probe_endpoint(endpoint, self.config.connect_timeout):
                log_debug(f"endpoint ready after {attempt + 1} probe(s)")
                return True
            if attempt + 1 < retries:
                await asyncio.sleep(self.config.ready_interval)
        return False

    async def open(self, reference: MediaReference) -> OpenResult:
        endpoint = self.endpoint_for(reference.source)
        log_debug(f"open {reference.source} start={reference.start_time} endpoint={endpoint}")

        alive = await probe_endpoint(endpoint, self.config.connect_timeout)
        launched = False
        if not alive:
            if self._launch_in_flight(endpoint):
                log_debug(f"launch already in flight for {endpoint}; not starting another player")
            else:
                outcome = launch_player(reference, endpoint, self.config)
                if not outcome.started:
                    raise SpawnError(f"could not start {self.config.mpv_path} for {reference.source}") from outcome.error
                self._recent_launches[endpoint.address] = time.monotonic()
                launched = True

        if reference.start_time is None:
            return OpenResult(endpoint=endpoint, launched=launched)

        ready = alive or await self._wait_until_ready(endpoint)
        if not ready:
            log_warn(f"mpv IPC endpoint {endpoint} not ready after {self.config.ready_retries} probe(s); seeking anyway")
        seek_sent = await send_command(endpoint, format_seek(reference.start_time), self.config.connect_timeout)
        return OpenResult(endpoint=endpoint, launched=launched, ready=ready, seek_sent=seek_sent)


async def open_media_async(source: str, start_time: Optional[str] = None, config: Optional[PlayerConfig] = None) -> OpenResult:
    return await PlayerSessionManager(config).open(MediaReference(source, start_time))


def open_media(source: str, start_time: Optional[str] = None, config: Optional[PlayerConfig] = None) -> OpenResult:
    """
    Open `source` in mpv, seeking to `start_time` when given.

    Raises SpawnError when no player could be started; seek problems are only
    logged. Callers already running an event loop use open_media_async().
    """
    return asyncio.run(open_media_async(source, start_time, config))


# ------------
# Link helpers
# ------------

def is_url(link: str) -> bool:
    return URL_RE.match(link) is not None


def is_video_link(link: str) -> bool:
    return any(link.startswith(prefix) for prefix in VIDEO_LINK_PREFIXES)


def is_video_ext(ext: str) -> bool:
    return ext.lstrip(".").lower() in VIDEO_EXTS


def reference_from_link(link: str, start_time: Optional[str] = None) -> MediaReference:
    """
    Build a MediaReference from a link as typed or clicked.

    Local paths are made absolute so the same file maps to the same player,
    and a trailing `#t=<offset>` becomes the start offset unless one is given.
    URLs are passed through untouched.
    """
    if not link:
        raise ValueError("link must not be empty")
    if is_url(link):
        return MediaReference(link, start_time)
    path, sep, fragment = link.rpartition(TIMESTAMP_FRAGMENT)
    # `clip#t=1.mkv` is a file name, not a path with an offset.
    if sep and path and OFFSET_RE.fullmatch(fragment):
        link = path
        if start_time is None:
            start_time = fragment
    return MediaReference(os.path.abspath(os.path.expanduser(link)), start_time)


def looks_like_video(source: str) -> bool:
    if is_url(source):
        return is_video_link(source)
    return is_video_ext(Path(source).suffix)


# -------------
# Configuration
# -------------

def default_config_path() -> Path:
    system = current_system()
    if system == "windows":
        base = Path(os.environ.get("APPDATA", Path.home() / "AppData" / "Roaming"))
    elif system == "darwin":
        base = Path.home() / "Library" / "Application Support"
    else:
        base = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    return base / CONFIG_DIR_NAME / "config.json"


def resolve_config_path() -> Path:
    override = os.environ.get(CONFIG_ENV)
    if override:
        return Path(override).expanduser()
    return default_config_path()


def _config_value(name: str, value: object) -> object:
    if name == "mpv_path":
        if isinstance(value, str):
            return value
    elif name == "mpv_additional_args":
        if isinstance(value, str):
            return shlex.split(value)
        if isinstance(value, list) and all(isinstance(v, str) for v in value):
            return list(value)
    elif name == "socket_dir":
        if value is None or isinstance(value, str):
            return value
    elif name == "ready_retries":
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    raise TypeError(f"unsupported value for {name}: {value!r}")


def apply_config_overrides(config: PlayerConfig, data: Dict[str, object], origin: str = "config") -> PlayerConfig:
    """Merge `data` over `config`, skipping unknown keys and bad values with a warning."""
    known = {f.name for f in dataclasses.fields(PlayerConfig)}
    for name, value in data.items():
        if name not in known:
            log_warn(f"{origin}: ignoring unknown setting {name!r}")
            continue
        # One key at a time, so a bad value only costs that key.
        try:
            config = dataclasses.replace(config, **{name: _config_value(name, value)})
        except (TypeError, ValueError) as exc:
            log_warn(f"{origin}: {exc}; keeping {name}={getattr(config, name)!r}")
    return config


def load_config(path: Optional[Path] = None) -> PlayerConfig:
    path = path or resolve_config_path()
    config = PlayerConfig()
    if not path.is_file():
        log_debug(f"config: {path} not found, using defaults")
        return config
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        log_warn(f"config: failed to read {path}: {exc}")
        return config
    if not isinstance(data, dict):
        log_warn(f"config: {path} does not hold a JSON object; using defaults")
        return config
    return apply_config_overrides(config, data, origin=f"config {path}")


def save_config(config: PlayerConfig, path: Optional[Path] = None) -> None:
    path = path or resolve_config_path()
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as fh:
            json.dump(dataclasses.asdict(config), fh, indent=2)
        log_info(f"config: saved to {path}")
    except OSError as exc:
        log_warn(f"config: failed to write {path}: {exc}")


# -----------------
# Argument parsing
# -----------------

def usage_text() -> str:
    return (
        "Usage:\n"
        "  mpv-link-opener LINK [--start OFFSET] [--mpv-path PATH] [--mpv-additional-args='...']\n"
        "  mpv-link-opener --save-config [--mpv-path PATH] [--mpv-additional-args='...']\n\n"
        "LINK is a URL or a local file path. A local path may end in '#t=OFFSET'.\n"
        "Opening the same LINK again reuses the mpv already playing it.\n\n"
        "Options:\n"
        "  --start <offset>             Start (or seek) to OFFSET: seconds or HH:MM:SS.\n"
        "  --mpv-path <path>            mpv executable (default: mpv on PATH).\n"
        "  --mpv-additional-args <str>  Extra args for mpv (string, split like a shell).\n"
        "  --config <file>              Settings file (default: platform config dir,\n"
        f"                               or ${CONFIG_ENV}).\n"
        "  --save-config                Write the effective settings to the settings file.\n"
        "  -h, --help                   Show this help.\n\n"
        "Examples:\n"
        "  mpv-link-opener https://www.youtube.com/watch?v=xyz --start 90\n"
        "  mpv-link-opener '~/videos/talk.mkv#t=00:12:30'\n"
        "  mpv-link-opener --save-config --mpv-path /opt/mpv/bin/mpv\n"
    )


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(add_help=False)
    parser.add_argument("link", nargs="?")
    parser.add_argument("--start")
    parser.add_argument("--mpv-path")
    parser.add_argument("--mpv-additional-args")
    parser.add_argument("--config")
    parser.add_argument("--save-config", action="store_true")
    parser.add_argument("-h", "--help", action="store_true")

    known, unknown = parser.parse_known_args(argv)
    if known.help:
        print(usage_text())
        sys.exit(0)
    if unknown:
        die(f"Unsupported argument(s): {' '.join(unknown)}")
    if not known.link and not known.save_config:
        die("A LINK is required (see --help)")

    mpv_additional_args: Optional[List[str]] = None
    if known.mpv_additional_args is not None:
        try:
            mpv_additional_args = shlex.split(known.mpv_additional_args)
        except ValueError as e:
            die(f"Failed to parse --mpv-additional-args: {e}")

    return argparse.Namespace(
        link=known.link,
        start=known.start,
        mpv_path=known.mpv_path,
        mpv_additional_args=mpv_additional_args,
        config=Path(known.config).expanduser() if known.config else None,
        save_config=known.save_config,
    )


def check_player(mpv_path: str) -> None:
    if shutil.which(mpv_path) is None:
        die(f"{mpv_path} not found in PATH")


def main(argv: Sequence[str]) -> None:
    args = parse_args(argv)
    config_path = args.config or resolve_config_path()
    config = load_config(config_path)

    overrides: Dict[str, object] = {}
    if args.mpv_path:
        overrides["mpv_path"] = args.mpv_path
    if args.mpv_additional_args is not None:
        overrides["mpv_additional_args"] = args.mpv_additional_args
    config = apply_config_overrides(config, overrides, origin="command line")

    if args.save_config:
        save_config(config, config_path)
    if not args.link:
        return

    check_player(config.mpv_path)
    try:
        reference = reference_from_link(args.link, args.start)
    except ValueError as e:
        die(str(e))
    if not looks_like_video(reference.source):
        log_warn(f"{reference.source} does not look like a video link; opening anyway")

    try:
        result = open_media(reference.source, reference.start_time, config=config)
    except (SpawnError, ValueError) as e:
        die(str(e))

    state = "started" if result.launched else "reusing"
    log_info(f"{state} mpv for {reference.source} (socket: {result.endpoint})")
    if result.seek_sent is False:
        log_warn(f"seek to {reference.start_time} was not delivered")


def cli() -> None:
    main(sys.argv[1:])


if __name__ == "__main__":
    cli()
