#!/usr/bin/env python3
"""
Cassette decoder command line and service

- decode:  decode a WAV file, print sections as hex/bits or write raw bytes
- listen:  record from an input device and decode, re-prompting on failure
- devices: list input devices
- serve:   aiohttp server, POST WAVs to /api/decode or stream live decodes
           over /ws

Run:
  cassette-decode decode tape.wav
  cassette-decode serve --host 127.0.0.1 --port 8088
"""

from __future__ import annotations

import argparse, asyncio, io, logging, sys
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set

import numpy as np
from aiohttp import web

from cassette_audio import AudioSourceError, CaptureConfig, LiveCapture, list_input_devices, read_wav
from cassette_decode import AudioFormat, CassetteDecodeError, bits_to_bytes, decode, format_bits

logger = logging.getLogger(__name__)


# ---------------- config ----------------
@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 8088
    capture: CaptureConfig = field(default_factory=CaptureConfig)


# ---------------- rendering ----------------
def render_section(bits: np.ndarray, mode: str = "hex") -> str:
    if mode == "bits":
        return format_bits(bits)
    return bits_to_bytes(bits).hex()


def section_payload(index: int, bits: np.ndarray) -> Dict[str, Any]:
    return {
        "index": index,
        "bit_count": int(len(bits)),
        "bits": format_bits(bits),
        "hex": bits_to_bytes(bits).hex(),
    }


def decode_payload(samples: np.ndarray, fmt: AudioFormat) -> Dict[str, Any]:
    """Decode a buffer into a JSON-able result. Decode errors propagate."""
    sections = decode(samples, fmt)
    return {
        "ok": True,
        "format": {"sample_rate": fmt.sample_rate, "channel_count": fmt.channel_count},
        "sections": [section_payload(i, bits) for i, bits in enumerate(sections)],
    }


def error_payload(e: Exception) -> Dict[str, Any]:
    return {"ok": False, "kind": type(e).__name__, "error": str(e)}


# ---------------- backend ----------------
class CassetteBackend:
    """Live capture loop plus the WebSocket clients that receive its decodes."""
    def __init__(self, cfg: Optional[ServerConfig] = None):
        self.cfg = cfg or ServerConfig()
        self.capture = LiveCapture(self.cfg.capture)
        self._ws_clients: Set[web.WebSocketResponse] = set()
        self._listen_task: Optional[asyncio.Task] = None

    @property
    def listening(self) -> bool:
        return self._listen_task is not None and not self._listen_task.done()

    async def broadcast(self, msg: Dict[str, Any]) -> None:
        for ws in list(self._ws_clients):
            try:
                await ws.send_json(msg)
            except ConnectionResetError:
                self._ws_clients.discard(ws)

    async def info(self, text: str) -> None:
        logger.info(text)
        await self.broadcast({"type": "info", "text": text})

    async def _listen_loop(self) -> None:
        try:
            async for samples, fmt in self.capture.batches():
                try:
                    result = decode_payload(samples, fmt)
                    logger.info("Live batch: %d section(s)", len(result["sections"]))
                except CassetteDecodeError as e:
                    logger.warning("Live batch failed: %s", e)
                    result = error_payload(e)
                await self.broadcast({"type": "decode", **result})
        except AudioSourceError as e:
            logger.error("Capture stopped: %s", e)
            await self.broadcast({"type": "decode", **error_payload(e)})

    def start_listening(self) -> bool:
        if self.listening:
            return False
        self._listen_task = asyncio.create_task(self._listen_loop())
        return True

    async def stop_listening(self) -> bool:
        if not self.listening:
            return False
        self.capture.stop()
        self._listen_task.cancel()
        try:
            await self._listen_task
        except asyncio.CancelledError:
            pass
        self._listen_task = None
        return True


BACKEND = web.AppKey("backend", CassetteBackend)


# ---------------- aiohttp server ----------------
async def ws_handler(request: web.Request) -> web.WebSocketResponse:
    backend = request.app[BACKEND]
    ws = web.WebSocketResponse(heartbeat=20)
    await ws.prepare(request)
    backend._ws_clients.add(ws)
    await backend.info("UI connected")
    try:
        async for _ in ws:
            pass
    finally:
        backend._ws_clients.discard(ws)
    return ws


async def api_health(_: web.Request) -> web.Response:
    return web.json_response({"ok": True})


async def api_devices(_: web.Request) -> web.Response:
    try:
        devices = list_input_devices()
    except AudioSourceError as e:
        return web.json_response(error_payload(e), status=503)
    return web.json_response({"ok": True, "devices": devices})


async def api_decode(request: web.Request) -> web.Response:
    body = await request.read()
    if not body:
        return web.json_response({"ok": False, "error": "empty body"}, status=400)

    try:
        samples, fmt = read_wav(io.BytesIO(body))
        result = decode_payload(samples, fmt)
    except (AudioSourceError, CassetteDecodeError) as e:
        logger.info("Upload rejected: %s", e)
        return web.json_response(error_payload(e), status=422)
    return web.json_response(result)


async def api_listen_start(request: web.Request) -> web.Response:
    backend = request.app[BACKEND]
    started = backend.start_listening()
    if started:
        await backend.info("Live capture started")
    return web.json_response({"ok": True, "started": started})


async def api_listen_stop(request: web.Request) -> web.Response:
    backend = request.app[BACKEND]
    stopped = await backend.stop_listening()
    if stopped:
        await backend.info("Live capture stopped")
    return web.json_response({"ok": True, "stopped": stopped})


async def _on_shutdown(app: web.Application) -> None:
    await app[BACKEND].stop_listening()


def make_app(backend: Optional[CassetteBackend] = None) -> web.Application:
    app = web.Application()
    app[BACKEND] = backend or CassetteBackend()
    app.router.add_get("/ws", ws_handler)
    app.router.add_get("/api/health", api_health)
    app.router.add_get("/api/devices", api_devices)
    app.router.add_post("/api/decode", api_decode)
    app.router.add_post("/api/listen/start", api_listen_start)
    app.router.add_post("/api/listen/stop", api_listen_stop)
    app.on_shutdown.append(_on_shutdown)
    return app


# ---------------- command line ----------------
def _print_sections(sections: List[np.ndarray], mode: str) -> None:
    if not sections:
        print("no sections found")
    for i, bits in enumerate(sections):
        print(f"section {i}: {render_section(bits, mode)}")


def cmd_decode(args: argparse.Namespace) -> int:
    try:
        samples, fmt = read_wav(args.file)
        sections = decode(samples, fmt)
    except (AudioSourceError, CassetteDecodeError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    if args.output:
        try:
            with open(args.output, "wb") as f:
                for bits in sections:
                    f.write(bits_to_bytes(bits))
        except OSError as e:
            print(f"error: cannot write {args.output}: {e}", file=sys.stderr)
            return 1
        logger.info("Wrote %d section(s) to %s", len(sections), args.output)
    else:
        _print_sections(sections, args.format)
    return 0


async def _record_and_decode(capture: LiveCapture, seconds: float) -> List[np.ndarray]:
    samples, fmt = await capture.capture_window(seconds)
    return decode(samples, fmt)


def cmd_listen(args: argparse.Namespace) -> int:
    capture = LiveCapture(CaptureConfig(
        device_index=args.device,
        sample_rate=args.rate,
        channels=args.channels,
        window_seconds=args.seconds,
    ))
    attempts = 0
    while True:
        try:
            sections = asyncio.run(_record_and_decode(capture, args.seconds))
        except AudioSourceError as e:
            print(f"error: {e}", file=sys.stderr)
            return 1
        except CassetteDecodeError as e:
            print(f"decode failed: {e}", file=sys.stderr)
            if attempts >= args.retries:
                return 1
            attempts += 1
            try:
                input(f"Press Enter to record again ({attempts}/{args.retries})...")
            except EOFError:
                # stdin is not interactive
                return 1
            continue

        _print_sections(sections, args.format)
        return 0


def cmd_devices(_: argparse.Namespace) -> int:
    try:
        devices = list_input_devices()
    except AudioSourceError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    for d in devices:
        print(f"{d['index']:3d}  {d['name']}  ({d['max_input_channels']}ch, {d['default_samplerate']:.0f} Hz)")
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    cfg = ServerConfig(
        host=args.host,
        port=args.port,
        capture=CaptureConfig(
            device_index=args.device,
            sample_rate=args.rate,
            channels=args.channels,
            window_seconds=args.seconds,
        ),
    )
    web.run_app(make_app(CassetteBackend(cfg)), host=cfg.host, port=cfg.port)
    return 0


def _add_capture_args(p: argparse.ArgumentParser) -> None:
    defaults = CaptureConfig()
    p.add_argument("--device", type=int, default=defaults.device_index,
                   help="input device index (default: system default)")
    p.add_argument("--rate", type=int, default=defaults.sample_rate, help="sample rate in Hz")
    p.add_argument("--channels", type=int, default=defaults.channels)
    p.add_argument("--seconds", type=float, default=defaults.window_seconds,
                   help="length of each recording window")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="cassette-decode",
                                description="Decode cassette tone recordings into bytes")
    p.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    sub = p.add_subparsers(dest="command", required=True)

    d = sub.add_parser("decode", help="decode a WAV file")
    d.add_argument("file")
    d.add_argument("-o", "--output", help="write section bytes to this file")
    d.add_argument("--format", choices=("hex", "bits"), default="hex")
    d.set_defaults(func=cmd_decode)

    live = sub.add_parser("listen", help="record from an input device and decode")
    _add_capture_args(live)
    live.add_argument("--retries", type=int, default=3,
                   help="times to re-prompt after a failed decode")
    live.add_argument("--format", choices=("hex", "bits"), default="hex")
    live.set_defaults(func=cmd_listen)

    s = sub.add_parser("devices", help="list input devices")
    s.set_defaults(func=cmd_devices)

    srv = sub.add_parser("serve", help="run the HTTP/WebSocket service")
    srv.add_argument("--host", default="127.0.0.1")
    srv.add_argument("--port", type=int, default=8088)
    _add_capture_args(srv)
    srv.set_defaults(func=cmd_serve)
    return p


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
