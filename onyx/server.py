"""
HTTP request boundary and WebSocket push channel, built on aiohttp.

`POST /api/download` starts a download in the background and answers
immediately; the outcome of every job is pushed to connected WebSocket
clients on `/ws` as `{"event": <name>, "data": <payload>}` frames.
"""

import asyncio
import json
import logging
import webbrowser
from typing import Any, Dict, Optional, Set, Tuple

from aiohttp import WSCloseCode, WSMsgType, web
from pydantic import ValidationError

from ._version import __version__
from .constants import PUSH_SEND_TIMEOUT
from .exceptions import OnyxError
from .formats import DownloadRequest
from .jobs import AggregateSnapshot, JobEvent
from .service import DownloadService

logger = logging.getLogger(__name__)

_EVENT_NAMES = {
    'start': 'download-start',
    'progress': 'download-progress',
    'complete': 'download-complete',
    'fail': 'download-error',
}


def event_message(event: JobEvent) -> Tuple[str, Dict[str, Any]]:
    """Maps a job event to its push-channel event name and payload."""
    payload: Dict[str, Any] = {'id': event.job_id}
    if event.kind == 'progress' and event.progress is not None:
        payload.update(event.progress.to_dict())
    elif event.kind == 'fail':
        payload['error'] = event.error
    return _EVENT_NAMES[event.kind], payload


class PushChannelHub:
    """
    Fans every published snapshot out to the connected WebSocket clients.

    Frames go to all clients concurrently. A client that does not accept a frame
    within `send_timeout` seconds is disconnected.
    """

    def __init__(self, send_timeout: float = PUSH_SEND_TIMEOUT):
        self.clients: Set[web.WebSocketResponse] = set()
        self.send_timeout = send_timeout
        self.logger = logging.getLogger(__name__)

    async def publish(self, event: JobEvent, snapshot: AggregateSnapshot) -> None:
        name, payload = event_message(event)
        await self.broadcast(name, payload)
        await self.broadcast('download-snapshot', snapshot.counters())

    async def broadcast(self, name: str, data: Dict[str, Any]):
        message = {'event': name, 'data': data}
        await asyncio.gather(*(self._send(ws, message) for ws in list(self.clients)))

    async def _send(self, ws: web.WebSocketResponse, message: Dict[str, Any]):
        if ws.closed:
            self.clients.discard(ws)
            return
        try:
            await asyncio.wait_for(ws.send_json(message), timeout=self.send_timeout)
        except asyncio.TimeoutError:
            self.logger.warning(f"Dropping push-channel client that stalled for {self.send_timeout}s.")
            self.clients.discard(ws)
            try:
                await asyncio.wait_for(ws.close(code=WSCloseCode.POLICY_VIOLATION, message=b'Too slow'),
                                       timeout=self.send_timeout)
            except (asyncio.TimeoutError, ConnectionResetError, RuntimeError) as e:
                self.logger.debug(f"Stalled client did not close cleanly: {e!r}")
        except (ConnectionResetError, RuntimeError) as e:
            self.logger.debug(f"Dropping WebSocket client: {e}")
            self.clients.discard(ws)

    async def close_all(self):
        for ws in list(self.clients):
            await ws.close(code=WSCloseCode.GOING_AWAY, message=b'Server shutdown')
        self.clients.clear()


SERVICE_KEY = web.AppKey("service", DownloadService)
HUB_KEY = web.AppKey("hub", PushChannelHub)


async def handle_download(request: web.Request) -> web.Response:
    """Validates a download request and starts it without waiting for the result."""
    try:
        body = await request.json()
    except json.JSONDecodeError:
        return web.json_response({'error': 'Request body must be JSON.'}, status=400)
    if not isinstance(body, dict):
        return web.json_response({'error': 'Request body must be a JSON object.'}, status=400)

    try:
        download_request = DownloadRequest.model_validate(body)
    except ValidationError as e:
        error_details = e.errors()[0]
        field = '.'.join(str(part) for part in error_details['loc']) or 'body'
        return web.json_response({'error': f"Error in field '{field}': {error_details['msg']}"}, status=400)

    service = request.app[SERVICE_KEY]
    hub = request.app[HUB_KEY]

    async def report_error(error: OnyxError):
        await hub.broadcast('download-error', {'id': download_request.url, 'error': str(error)})

    service.start_download(download_request, on_error=report_error)
    return web.json_response({'status': 'started'})


async def handle_status(request: web.Request) -> web.Response:
    snapshot = request.app[SERVICE_KEY].snapshot()
    if snapshot is None:
        return web.json_response({'total': 0, 'pending': 0, 'active': 0, 'completed': 0, 'failed': 0})
    return web.json_response(snapshot.counters())


async def handle_index(request: web.Request) -> web.Response:
    return web.json_response({'name': 'onyx-dl', 'version': __version__, 'push_channel': '/ws'})


async def handle_websocket(request: web.Request) -> web.WebSocketResponse:
    """Registers a push-channel client until it disconnects."""
    ws = web.WebSocketResponse(heartbeat=30)
    await ws.prepare(request)
    hub = request.app[HUB_KEY]
    hub.clients.add(ws)
    logger.info(f"Push-channel client connected ({len(hub.clients)} total).")
    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT and msg.data == 'ping':
                await ws.send_str('pong')
            elif msg.type == WSMsgType.ERROR:
                logger.warning(f"WebSocket closed with exception {ws.exception()}")
    finally:
        hub.clients.discard(ws)
        logger.info("Push-channel client disconnected.")
    return ws


async def _on_shutdown(app: web.Application):
    await app[SERVICE_KEY].stop_all()
    await app[HUB_KEY].close_all()


def create_app(service: DownloadService, hub: Optional[PushChannelHub] = None) -> web.Application:
    """
    Builds the aiohttp application.

    The hub is registered as an observer of the service so every batch started
    through any boundary reaches WebSocket clients.
    """
    hub = hub or PushChannelHub()
    if hub not in service.observers:
        service.observers.append(hub)

    app = web.Application()
    app[SERVICE_KEY] = service
    app[HUB_KEY] = hub
    app.router.add_get('/', handle_index)
    app.router.add_post('/api/download', handle_download)
    app.router.add_get('/api/status', handle_status)
    app.router.add_get('/ws', handle_websocket)
    app.on_shutdown.append(_on_shutdown)
    return app


async def serve(service: DownloadService, host: str, port: int, open_browser: bool = False,
                stop_event: Optional[asyncio.Event] = None):
    """
    Runs the server until `stop_event` is set (or forever).

    Runs inside the caller's event loop, so the CLI can keep using the same loop.
    """
    app = create_app(service)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    url = f"http://{'localhost' if host in ('0.0.0.0', '127.0.0.1') else host}:{port}"
    logger.info(f"Server running at {url}")
    if open_browser:
        await asyncio.to_thread(webbrowser.open, url)
    try:
        await (stop_event or asyncio.Event()).wait()
    finally:
        await runner.cleanup()
