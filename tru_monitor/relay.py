"""
Minimal WebSocket relay for the federation bus.

Clients send {"op": "sub", "subject": pattern} to register interest and
{"op": "pub", "subject": ..., "payload": ...} to publish; every client with a
matching pattern (including the publisher) receives {"op": "msg", ...}.
The relay keeps no history.
"""

import json
import logging

import aiohttp
from aiohttp import web

from .bus import subject_matches

log = logging.getLogger("TruMonitor.Relay")

MAX_SUBSCRIPTIONS_PER_CLIENT = 64


async def relay_handler(request):
    ws = web.WebSocketResponse(heartbeat=30)
    await ws.prepare(request)
    clients = request.app['clients']
    clients[ws] = set()
    log.info(f"Bus client connected. Total clients: {len(clients)}")

    try:
        async for msg in ws:
            if msg.type != aiohttp.WSMsgType.TEXT:
                continue
            try:
                frame = json.loads(msg.data)
            except ValueError:
                log.warning("Ignoring malformed frame from bus client")
                continue
            if not isinstance(frame, dict) or not isinstance(frame.get('subject'), str):
                continue

            op = frame.get('op')
            if op == 'sub':
                if len(clients[ws]) < MAX_SUBSCRIPTIONS_PER_CLIENT:
                    clients[ws].add(frame['subject'])
            elif op == 'pub' and isinstance(frame.get('payload'), str):
                await _fan_out(clients, frame['subject'], frame['payload'])
    finally:
        clients.pop(ws, None)
        log.info(f"Bus client disconnected. Total clients: {len(clients)}")

    return ws


async def _fan_out(clients, subject, payload):
    out = json.dumps({'op': 'msg', 'subject': subject, 'payload': payload})
    for client, patterns in list(clients.items()):
        if client.closed or not any(subject_matches(p, subject) for p in patterns):
            continue
        try:
            await client.send_str(out)
        except (ConnectionResetError, aiohttp.ClientError, RuntimeError) as e:
            log.debug(f"Could not relay to a closing client: {type(e).__name__}")


def make_relay_app(path: str = '/bus') -> web.Application:
    app = web.Application()
    app['clients'] = {}
    app.router.add_get(path, relay_handler)
    return app


def run_relay(host: str, port: int):
    log.info(f"Starting federation bus relay on ws://{host}:{port}/bus")
    web.run_app(make_relay_app(), host=host, port=port)
