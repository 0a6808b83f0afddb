import httpx


def backend_response(status_code=200, headers=None, body=b"ok"):
    """Build a streamable httpx response, as a real transport would return."""
    return httpx.Response(
        status_code, headers=headers or {}, stream=httpx.ByteStream(body)
    )


class BackendRecorder:
    """MockTransport handler that records every forwarded request."""

    def __init__(self):
        self.requests = []
        self.responder = lambda request: backend_response()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responder(request)

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]


class InterruptedStream(httpx.AsyncByteStream):
    """Response body that yields some chunks, then drops the connection."""

    def __init__(self, chunks):
        self.chunks = chunks

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk
        raise httpx.ReadError("connection reset by peer")
