"""aiohttp hosting: request adapter, application factory and server lifecycle."""

import asyncio
import logging
import re
import threading
import time
from typing import Callable, Dict, Optional

from aiohttp import web
from aiohttp.http_exceptions import HttpProcessingError

from dali_server.chain import PatternBuffer, ResponseChain, ZeroSource
from dali_server.config import PayloadConfig
from dali_server.errors import BodyDiscardFailure
from dali_server.handler import CONTEXT_KEY, Exchange, PayloadHandler, RequestContext, SendResult
from dali_server.stats import ServerStats
from dali_server.timing import Timestamp, monotonic

logger = logging.getLogger("dali-server")

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8080

HANDLER_KEY = web.AppKey("handler", PayloadHandler)
CONTEXT_REQUEST_KEY = web.RequestKey(CONTEXT_KEY, RequestContext)

# A zero-length suffix; aiohttp reads it as the whole entity
_EMPTY_SUFFIX = re.compile(r"^bytes=-0+$")


class AiohttpExchange(Exchange):
    """Exchange backed by an aiohttp request and a streamed response."""

    context_key = CONTEXT_REQUEST_KEY

    def __init__(self, request: web.Request):
        super().__init__(request.path, request.method)
        self.request = request
        # aiohttp requests are mutable mappings scoped to the request
        self.storage = request
        self.response: Optional[web.StreamResponse] = None

    @property
    def has_body(self) -> bool:
        return self.request.body_exists

    @property
    def byte_range(self) -> Optional[slice]:
        header = self.request.headers.get("Range")
        if header is None:
            return None
        if _EMPTY_SUFFIX.match(header.strip()):
            # Never satisfiable
            return slice(0, 0)
        try:
            return self.request.http_range
        except ValueError:
            logger.debug(f"Ignoring malformed Range header: {self.request.headers['Range']!r}")
            return None

    async def discard_body(self) -> int:
        total = 0
        try:
            while True:
                chunk = await self.request.content.readany()
                if not chunk:
                    break
                total += len(chunk)
        except HttpProcessingError as e:
            raise BodyDiscardFailure(f"Malformed request body after {total} bytes: {e}") from e
        return total

    async def send_headers(self, status: int, headers: Dict[str, str]) -> SendResult:
        self.response = web.StreamResponse(status=status, headers=headers)
        try:
            await self.response.prepare(self.request)
        except ConnectionError as e:
            logger.debug(f"Header send failed for {self.path}: {e}")
            return SendResult.ERROR
        if self.request.method == "HEAD":
            return SendResult.HEADER_ONLY
        return SendResult.OK

    async def send_chain(self, chain: ResponseChain) -> None:
        # StreamResponse writes every chain through the transport; the hint is reported only
        logger.debug(
            f"Writing {chain.total_length} bytes for {self.path} "
            f"(sendfile {'allowed' if chain.sendfile else 'disabled'})"
        )
        for chunk in chain.chunks():
            await self.response.write(chunk)
        await self.response.write_eof()


async def handle_request(request: web.Request) -> web.StreamResponse:
    handler = request.app[HANDLER_KEY]
    exchange = AiohttpExchange(request)
    async with exchange:
        await handler.handle(exchange)
    if exchange.response is None:
        # Nothing was sent; aiohttp still needs a response object
        exchange.response = web.Response(status=500, content_type="application/octet-stream")
    return exchange.response


def create_app(
    config: PayloadConfig,
    pattern: Optional[PatternBuffer] = None,
    stats: Optional[ServerStats] = None,
    clock: Callable[[], Timestamp] = monotonic,
    device_factory: Callable[[], ZeroSource] = ZeroSource,
) -> web.Application:
    """Build the aiohttp application serving every path from ``config``."""
    handler = PayloadHandler(
        config,
        pattern or PatternBuffer.create(),
        clock=clock,
        device_factory=device_factory,
        stats=stats,
    )
    app = web.Application()
    app[HANDLER_KEY] = handler
    app.router.add_route("*", "/{tail:.*}", handle_request)
    return app


class PayloadServer:
    """Main class that owns the configuration, counters and the listening server."""

    def __init__(
        self,
        config: PayloadConfig,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        access_log: bool = False,
    ):
        config.finalize()
        self.config = config
        self.host = host
        self.port = port
        self.access_log = access_log
        self.stats = ServerStats()
        self.pattern = PatternBuffer.create()
        self.running = False

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._runner: Optional[web.AppRunner] = None
        self._thread: Optional[threading.Thread] = None

        for scope in self.config.scopes():
            self.stats.for_scope(scope.path)

    def url(self, path: str = "/") -> str:
        return f"http://{self.host}:{self.port}{path}"

    def start(self) -> bool:
        """Start serving in a background thread."""
        app = create_app(self.config, self.pattern, self.stats)
        self._loop = asyncio.new_event_loop()
        access_log = logging.getLogger("dali-server.access") if self.access_log else None
        self._runner = web.AppRunner(app, access_log=access_log)
        try:
            self._loop.run_until_complete(self._runner.setup())
            site = web.TCPSite(self._runner, self.host, self.port)
            self._loop.run_until_complete(site.start())
        except OSError as e:
            logger.error(f"Failed to listen on {self.host}:{self.port}: {e}")
            self._loop.run_until_complete(self._runner.cleanup())
            self._loop.close()
            self._loop = None
            return False

        self.running = True
        self._thread = threading.Thread(
            target=self._loop.run_forever,
            daemon=True,
            name=f"Server-{self.port}",
        )
        self._thread.start()

        for scope in self.config.scopes():
            length = "unset" if scope.length is None else f"{scope.length} bytes"
            logger.info(f"✓ {self.url(scope.path)} -> {length} ({scope.strategy.value})")
        logger.info(f"✓ Serving payloads on {self.url()}")
        return True

    def run(self):
        """Serve until interrupted."""
        if not self.start():
            logger.error("Failed to start server. Exiting.")
            return

        try:
            while self.running:
                time.sleep(1)
        except KeyboardInterrupt:
            logger.info("\nReceived interrupt signal, shutting down...")
        finally:
            self.shutdown()

    def run_dashboard(self):
        """Run with interactive dashboard."""
        from dali_server.dashboard import LogHandler
        log_handler = LogHandler()  # No dashboard yet, will buffer logs
        log_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", "%H:%M:%S"))
        logging.getLogger("dali-server").addHandler(log_handler)

        if not self.start():
            logger.error("Failed to start server. Exiting.")
            logging.getLogger("dali-server").removeHandler(log_handler)
            return

        # Console output would corrupt the dashboard; logs go to its panel instead
        root = logging.getLogger()
        console_handlers = [
            h for h in root.handlers
            if isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        ]
        for handler in console_handlers:
            root.removeHandler(handler)

        try:
            # Launch dashboard (this blocks)
            from dali_server.dashboard import run_dashboard
            run_dashboard(self)

        except KeyboardInterrupt:
            logger.info("\nReceived interrupt signal, shutting down...")
        finally:
            for handler in console_handlers:
                root.addHandler(handler)
            logging.getLogger("dali-server").removeHandler(log_handler)
            self.shutdown()

    def shutdown(self):
        """Stop the server and release the event loop."""
        self.running = False
        if self._loop is None:
            return

        self._loop.call_soon_threadsafe(self._loop.stop)
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
        self._loop.run_until_complete(self._runner.cleanup())
        self._loop.close()
        self._loop = None
        logger.info(f"✗ Server stopped after {self.stats.total_requests} request(s)")
