import asyncio
from unittest.mock import MagicMock

ACK_FRAME = b'\x0f\x00\x00\x1b\x00\x00{"code":200,"message":"OK"}'

LANDING_HTML = (
    '<script>{"_js_datr":{"value":"jsdatr123","expiration":1},'
    '"datr":{"value":"datr123","expiration":1},'
    '"abra_csrf":{"value":"csrf123","expiration":1}}'
    '["LSD",[],{"token":"lsd123"},323]'
    '["DTSGInitData",[],{"token":"dtsg123","async_get_token":""}]</script>'
)

CHALLENGE_HTML = (
    "<html><body><script>"
    "fetch('/__rd_verify_abc123?challenge=2', {method: 'POST'})"
    ".finally(() => window.location.reload());"
    "</script></body></html>"
)


def make_response(status_code=200, text="", headers=None, payload=None):
    response = MagicMock()
    response.status_code = status_code
    response.text = text
    response.headers = headers or {}
    if payload is None:
        response.json.side_effect = ValueError("not json")
    else:
        response.json.return_value = payload
    return response


def answer_frame(text, complete=False, side_channel=None, fetch_id=None):
    body = (
        '{"response_id":"r1","sections":[{"view_model":{"primitive":'
        '{"__typename":"GenAIMarkdownTextUXPrimitive","text":"%s"}}}]' % text
    )
    if side_channel is not None:
        body += (
            ',"embedded_screens":[{"primitive":'
            '{"__typename":"GenAIMarkdownTextUXPrimitive","text":"%s"}}]' % side_channel
        )
    if fetch_id is not None:
        body += ',"fetch_id":"%s"' % fetch_id
    body += "}"
    frame = b"\x0d\x00\x00\x10\x00\x00\x00\x80" + body.encode("utf-8")
    if complete:
        frame += b"\x28\x01"
    return frame


class FakeWebSocket:
    """Replays scripted inbound frames and records what was sent."""

    def __init__(self, frames, hang=False):
        self.frames = list(frames)
        self.hang = hang
        self.sent = []
        self.closed = False

    async def send(self, data):
        self.sent.append(data)

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for frame in self.frames:
            yield frame
        if self.hang:
            await asyncio.Event().wait()


class FakeConnect:
    """Stands in for ``websockets.asyncio.client.connect``.

    Each call hands out the next scripted websocket; the last one is reused
    when the script runs out.
    """

    def __init__(self, *websockets):
        self.websockets = list(websockets)
        self.calls = []
        self.opened = []

    def __call__(self, url, **kwargs):
        self.calls.append((url, kwargs))
        index = min(len(self.calls) - 1, len(self.websockets) - 1)
        return _FakeConnection(self, self.websockets[index])


class _FakeConnection:
    def __init__(self, owner, websocket):
        self.owner = owner
        self.websocket = websocket

    async def __aenter__(self):
        self.owner.opened.append(self.websocket)
        return self.websocket

    async def __aexit__(self, *exc_info):
        self.websocket.closed = True
        return False
